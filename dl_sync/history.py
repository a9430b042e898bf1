"""
Run history and rollback points.

Two stores share one interface. ``SQLiteHistoryStore`` keeps a row per run (with the
reduced roster as raw CSV) and, at ``change`` granularity, a row per directory
mutation. ``FileHistoryStore`` is used when history persistence is disabled and relies
only on the dated roster files left in the output directory.
"""

import logging
import os
import sqlite3
from contextlib import closing
from datetime import datetime
from typing import Any, Dict, List

from dl_sync.models import ChangeRecord, RunRecord, STATUS_SUCCESS
from dl_sync.roster import RosterReducer

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS run_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_at TEXT NOT NULL,
    run_date TEXT NOT NULL,
    mode TEXT NOT NULL,
    input_file TEXT,
    entry_count INTEGER NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    log_excerpt TEXT,
    raw_csv TEXT
);
CREATE INDEX IF NOT EXISTS run_records__run_date ON run_records (run_date);
CREATE TABLE IF NOT EXISTS change_records (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    change_date TEXT NOT NULL,
    action TEXT NOT NULL,
    target TEXT NOT NULL,
    attribute TEXT,
    before_value TEXT,
    after_value TEXT
);
CREATE INDEX IF NOT EXISTS change_records__change_date ON change_records (change_date);
"""


class RollbackTargetMissing(Exception):
    """Raised when no archived roster exists for the requested date."""
    pass


class FileHistoryStore:
    """History backed only by the dated roster files in the output directory."""

    granularity = 'run'

    def __init__(self, reducer: RosterReducer):
        self.reducer = reducer

    def record_run(self, record: RunRecord):
        logger.debug(f"History persistence disabled, not recording {record.status} run")

    def record_change(self, change: ChangeRecord):
        pass

    def list_rollback_dates(self) -> List[str]:
        return self.reducer.list_snapshot_dates()

    def changes_for_date(self, date: str) -> List[ChangeRecord]:
        logger.warning("Change history is not recorded when history persistence is disabled")
        return []

    def load_snapshot(self, date: str) -> str:
        """
        Return the raw CSV of the roster retained for ``date``.

        Raises:
            RollbackTargetMissing: If no dated roster file exists
        """
        path = self.reducer.snapshot_path(datetime.strptime(date, '%Y-%m-%d'))
        if not os.path.isfile(path):
            raise RollbackTargetMissing(f"No archived roster for {date}")
        with open(path, 'r', encoding='utf-8-sig', newline='') as f:
            return f.read()


class SQLiteHistoryStore(FileHistoryStore):
    """Append-only run and change history in a SQLite database."""

    def __init__(self, database: str, reducer: RosterReducer, granularity: str = 'run'):
        super().__init__(reducer)
        self.database = database
        self.granularity = granularity
        self._initialize()

    def _connect(self) -> sqlite3.Connection:
        con = sqlite3.connect(self.database)
        con.row_factory = sqlite3.Row
        return con

    def _initialize(self):
        directory = os.path.dirname(self.database)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with closing(self._connect()) as con:
            con.executescript(SCHEMA)
        logger.debug(f"History store ready at {self.database} (granularity={self.granularity})")

    def record_run(self, record: RunRecord):
        with closing(self._connect()) as con, con:
            cursor = con.execute(
                "INSERT INTO run_records (run_at, run_date, mode, input_file, entry_count, status, "
                "log_excerpt, raw_csv) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                (record.run_at.isoformat(), record.run_date, record.mode, record.input_file,
                 record.entry_count, record.status, record.log_excerpt, record.raw_csv)
            )
            record.id = cursor.lastrowid
        logger.info(f"Recorded {record.status} run {record.id} in history")

    def record_change(self, change: ChangeRecord):
        if self.granularity != 'change':
            return
        with closing(self._connect()) as con, con:
            cursor = con.execute(
                "INSERT INTO change_records (timestamp, change_date, action, target, attribute, "
                "before_value, after_value) VALUES (?, ?, ?, ?, ?, ?, ?)",
                (change.timestamp.isoformat(), change.timestamp.strftime('%Y-%m-%d'), change.action,
                 change.target, change.attribute, change.before, change.after)
            )
            change.id = cursor.lastrowid

    def list_rollback_dates(self) -> List[str]:
        """
        Dates that can be rolled back to, most recent first.

        Combines successful runs that archived a roster with retained dated files.
        """
        with closing(self._connect()) as con:
            rows = con.execute(
                "SELECT DISTINCT run_date FROM run_records WHERE status = ? AND raw_csv IS NOT NULL",
                (STATUS_SUCCESS,)
            ).fetchall()
        dates = {row['run_date'] for row in rows}
        dates.update(self.reducer.list_snapshot_dates())
        return sorted(dates, reverse=True)

    def changes_for_date(self, date: str) -> List[ChangeRecord]:
        if self.granularity != 'change':
            logger.warning("Change history is only recorded at 'change' granularity")
        with closing(self._connect()) as con:
            rows = con.execute(
                "SELECT * FROM change_records WHERE change_date = ? ORDER BY timestamp, id",
                (date,)
            ).fetchall()
        return [_change_from_row(row) for row in rows]

    def load_snapshot(self, date: str) -> str:
        """
        Return the raw CSV archived by the latest successful run on ``date``.

        Falls back to the dated roster file when the database holds none.
        """
        with closing(self._connect()) as con:
            row = con.execute(
                "SELECT raw_csv FROM run_records WHERE run_date = ? AND status = ? AND raw_csv IS NOT NULL "
                "ORDER BY run_at DESC, id DESC LIMIT 1",
                (date, STATUS_SUCCESS)
            ).fetchone()
        if row is not None:
            return row['raw_csv']
        return super().load_snapshot(date)


def _change_from_row(row: sqlite3.Row) -> ChangeRecord:
    return ChangeRecord(
        id=row['id'],
        timestamp=datetime.fromisoformat(row['timestamp']),
        action=row['action'],
        target=row['target'],
        attribute=row['attribute'],
        before=row['before_value'],
        after=row['after_value']
    )


def create_history_store(config: Dict[str, Any], reducer: RosterReducer) -> FileHistoryStore:
    """Build the history store selected by the ``history`` configuration section."""
    history_config = config or {}
    if not history_config.get('enabled', False):
        return FileHistoryStore(reducer)
    return SQLiteHistoryStore(
        history_config.get('database', 'history.db'),
        reducer,
        history_config.get('granularity', 'run')
    )
