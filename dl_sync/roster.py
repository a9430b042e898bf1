"""
Roster reduction and archival.

The personnel export is projected down to the configured columns and written to a
dated file in the output directory. The same reduced data is kept as raw CSV text so
it can be archived with the run and replayed during a rollback.
"""

import csv
import glob
import io
import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from dl_sync.config import InvalidConfig
from dl_sync.models import RosterRecord

logger = logging.getLogger(__name__)

SNAPSHOT_PREFIX = 'roster_'
SNAPSHOT_PATTERN = re.compile(r'^roster_(\d{4}-\d{2}-\d{2})\.csv$')


class InputNotFound(Exception):
    """Raised when the source roster file does not exist."""
    pass


@dataclass
class ReducedRoster:
    """Output of one reduction."""

    records: List[RosterRecord]
    output_path: str
    raw_text: str
    source_path: str
    source_mtime: datetime


class RosterReducer:
    """Projects personnel exports down to the configured column set."""

    def __init__(self, config: Dict[str, Any]):
        """
        Args:
            config: The ``roster`` configuration section
        """
        self.columns = list(config.get('columns') or [])
        self.email_column = config.get('email_column', 'Email')
        self.output_dir = config.get('output_dir', 'output')
        self.retention_days = config.get('retention_days', 30)

    def reduce(self, input_path: str, run_date: Optional[datetime] = None) -> ReducedRoster:
        """
        Reduce the export at ``input_path`` and write the dated output file.

        Raises:
            InvalidConfig: If no columns are configured
            InputNotFound: If the export does not exist
        """
        if not self.columns:
            raise InvalidConfig("No roster columns configured")
        if not os.path.isfile(input_path):
            raise InputNotFound(f"Roster file not found: {input_path}")

        run_date = run_date or datetime.now()
        source_mtime = datetime.fromtimestamp(os.path.getmtime(input_path))

        with open(input_path, 'r', encoding='utf-8-sig', newline='') as f:
            records = self._project(csv.DictReader(f))

        raw_text = self.to_raw_text(records)
        output_path = self.snapshot_path(run_date)
        os.makedirs(self.output_dir, exist_ok=True)
        with open(output_path, 'w', encoding='utf-8', newline='') as f:
            f.write(raw_text)

        logger.info(f"Reduced {len(records)} roster entries from {input_path} to {output_path}")
        return ReducedRoster(
            records=records,
            output_path=output_path,
            raw_text=raw_text,
            source_path=input_path,
            source_mtime=source_mtime
        )

    def _project(self, reader: csv.DictReader) -> List[RosterRecord]:
        header = {str(name).strip() for name in (reader.fieldnames or []) if name is not None}
        for column in self.columns:
            if column not in header:
                logger.warning(f"Roster is missing column '{column}', using empty values")

        records = []
        for row in reader:
            cleaned = {str(key).strip(): value for key, value in row.items() if key is not None}
            # Short rows leave trailing columns as None
            values = {column: cleaned.get(column) or '' for column in self.columns}
            records.append(RosterRecord(values))
        return records

    def to_raw_text(self, records: List[RosterRecord]) -> str:
        """Serialize reduced records as CSV text, header first."""
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=self.columns, extrasaction='ignore', lineterminator='\n')
        writer.writeheader()
        for record in records:
            writer.writerow({column: record.get(column) for column in self.columns})
        return buffer.getvalue()

    def parse_raw_text(self, raw_text: str) -> List[RosterRecord]:
        """Read records back from archived CSV text."""
        reader = csv.DictReader(io.StringIO(raw_text.lstrip('\ufeff')))
        return self._project(reader)

    def load(self, path: str) -> List[RosterRecord]:
        if not os.path.isfile(path):
            raise InputNotFound(f"Roster file not found: {path}")
        with open(path, 'r', encoding='utf-8-sig', newline='') as f:
            return self.parse_raw_text(f.read())

    def snapshot_path(self, run_date: datetime) -> str:
        return os.path.join(self.output_dir, f"{SNAPSHOT_PREFIX}{run_date.strftime('%Y-%m-%d')}.csv")

    def list_snapshot_dates(self) -> List[str]:
        """Dates of the retained reduced rosters, most recent first."""
        dates = []
        for path in glob.glob(os.path.join(self.output_dir, f"{SNAPSHOT_PREFIX}*.csv")):
            match = SNAPSHOT_PATTERN.match(os.path.basename(path))
            if match:
                dates.append(match.group(1))
        return sorted(dates, reverse=True)

    def cleanup_old_rosters(self, now: Optional[datetime] = None) -> List[str]:
        """
        Delete dated rosters older than the retention window.

        Failures are logged and skipped; they never fail the run.

        Returns:
            Paths that were removed
        """
        if not self.retention_days or self.retention_days <= 0:
            return []

        now = now or datetime.now()
        cutoff = (now - timedelta(days=self.retention_days)).strftime('%Y-%m-%d')
        removed = []

        for date in self.list_snapshot_dates():
            if date >= cutoff:
                continue
            path = os.path.join(self.output_dir, f"{SNAPSHOT_PREFIX}{date}.csv")
            try:
                os.remove(path)
                removed.append(path)
                logger.info(f"Removed old roster file: {path}")
            except OSError as e:
                logger.warning(f"Could not remove old roster file {path}: {e}")

        return removed
