"""
Main orchestrator for Distribution List Sync.

This module wires the stages together: the roster is reduced, its emails are resolved
and diffed against the group, the group and its membership are reconciled, history is
written and the run report is mailed. Rollback mode replays an archived roster through
the same stages.
"""

import os
import sys
import json
import sqlite3
import logging
import argparse
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from dl_sync.config import load_config, ConfigurationError
from dl_sync.differ import MembershipDiffer, diff_membership
from dl_sync.directory_client import DirectoryClient, DirectoryUnavailable
from dl_sync.history import create_history_store, RollbackTargetMissing
from dl_sync.logging_setup import setup_logging, read_log_excerpt
from dl_sync.models import (
    ChangeRecord,
    RunContext,
    RunRecord,
    MODE_ROLLBACK,
    MODE_SYNC,
    STATUS_FAILURE,
    STATUS_SUCCESS,
)
from dl_sync.notifications import NotificationFailed, send_test_email
from dl_sync.reconciler import GroupReconciler
from dl_sync.reporter import RunReporter
from dl_sync.roster import RosterReducer, InputNotFound

logger = logging.getLogger(__name__)

EXIT_SUCCESS = 0
EXIT_PARTIAL_FAILURE = 1
EXIT_CONFIG_ERROR = 2
EXIT_DIRECTORY_UNAVAILABLE = 3
EXIT_FAILURE = 4
EXIT_NOT_SUPPORTED = 5
EXIT_ROLLBACK_TARGET_MISSING = 6


class NotSupported(Exception):
    """Raised for operations that exist on the command line but have no defined behavior."""
    pass


class SyncOrchestrator:
    """
    Main orchestrator for distribution list synchronization.

    Every sync or rollback invocation writes exactly one run record (when history is
    enabled) and ends with either a success report or a failure report.
    """

    def __init__(self, config_path: Optional[str] = None, dry_run: bool = False):
        """
        Initialize sync orchestrator.

        Args:
            config_path: Path to configuration file
            dry_run: Compute and report changes without applying them
        """
        self.config_path = config_path
        self.dry_run = dry_run
        self.config = None
        self.directory = None
        self.reducer = None
        self.history = None
        self.log_file = None
        self.context = None

    def run(self) -> int:
        """
        Run a normal sync from the live roster.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        context = RunContext(mode=MODE_SYNC, dry_run=self.dry_run)
        return self._execute(context, self._sync)

    def rollback(self, date: str) -> int:
        """
        Re-synchronize membership to the roster archived on ``date``.

        Returns:
            Exit code; a missing archive is reported and nothing further is done
        """
        context = RunContext(mode=MODE_ROLLBACK, dry_run=self.dry_run, rollback_date=date)
        return self._execute(context, self._rollback)

    def _execute(self, context: RunContext, stage: Callable[[RunContext], None]) -> int:
        self.context = context
        try:
            self._load_configuration()
            self._setup_logging(context)
            self._setup_history()

            logger.info(f"Starting Distribution List Sync ({context.mode}"
                        f"{', dry run' if self.dry_run else ''})")

            stage(context)
            return self._complete(context)

        except RollbackTargetMissing as e:
            logger.warning(f"Rollback not performed: {e}")
            self._fail(context, e)
            return EXIT_ROLLBACK_TARGET_MISSING
        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            self._fail(context, e)
            return EXIT_CONFIG_ERROR
        except DirectoryUnavailable as e:
            logger.error(f"Directory unavailable: {e}", exc_info=True)
            self._fail(context, e)
            return EXIT_DIRECTORY_UNAVAILABLE
        except InputNotFound as e:
            logger.error(f"Input not found: {e}")
            self._fail(context, e)
            return EXIT_FAILURE
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            self._fail(context, e)
            return EXIT_FAILURE
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load and validate configuration."""
        if self.config is None:
            self.config = load_config(self.config_path)
            self.reducer = RosterReducer(self.config['roster'])
            logger.debug("Configuration loaded successfully")

    def _setup_logging(self, context: Optional[RunContext] = None):
        """Configure logging based on configuration."""
        run_date = context.started_at if context else None
        self.log_file = setup_logging(self.config.get('logging', {}), run_date)
        if context:
            context.log_file = self.log_file

    def _setup_history(self):
        if self.history is None:
            self.history = create_history_store(self.config.get('history', {}), self.reducer)

    def _connect_directory(self):
        """Establish directory connection."""
        self.directory = DirectoryClient(self.config['directory'], self.config.get('error_handling', {}))
        try:
            self.directory.connect()
        except DirectoryUnavailable:
            self.directory = None
            raise

    def _sync(self, context: RunContext):
        roster_config = self.config['roster']
        reduced = self.reducer.reduce(roster_config['input_path'], context.started_at)

        context.input_file = reduced.source_path
        context.input_mtime = reduced.source_mtime
        context.entry_count = len(reduced.records)
        context.reduced_file = reduced.output_path
        context.raw_csv = reduced.raw_text

        self._connect_directory()
        self._reconcile(context, reduced.records)

    def _rollback(self, context: RunContext):
        date = context.rollback_date
        raw_csv = self.history.load_snapshot(date)
        records = self.reducer.parse_raw_text(raw_csv)
        logger.info(f"Rolling back membership to roster of {date} ({len(records)} entries)")

        context.input_file = f"archived roster {date}"
        context.entry_count = len(records)
        context.raw_csv = raw_csv

        self._connect_directory()
        self._reconcile(context, records)

    def _reconcile(self, context: RunContext, records: List[Any]):
        """Ensure the group, then diff and apply membership."""
        reconciler = GroupReconciler(self.directory, self.config['group'], dry_run=self.dry_run)
        differ = MembershipDiffer(self.directory, self.config['roster'].get('email_column', 'Email'))

        group_dn = reconciler.ensure_group(context)

        if self.dry_run and context.group_created:
            target = differ.resolve_targets(records, context)
            delta = diff_membership(target, frozenset())
            context.target_size = len(target)
        else:
            delta = differ.compute(records, group_dn, context)

        reconciler.apply_delta(group_dn, delta, context)

        if self.dry_run:
            context.final_group_size = context.current_size + len(context.added) - len(context.removed)
            return

        try:
            context.final_group_size = len(self.directory.get_group_members(group_dn))
        except DirectoryUnavailable as e:
            logger.warning(f"Could not read final group size: {e}")

    def _complete(self, context: RunContext) -> int:
        context.status = STATUS_SUCCESS
        context.finished_at = datetime.now()

        self._log_sync_summary(context)
        self._record_history(context)
        self._send_report(context)

        if context.mode == MODE_SYNC and not self.dry_run:
            self.reducer.cleanup_old_rosters(context.started_at)

        if context.has_failures:
            logger.warning(f"Sync completed with {len(context.failed_mutations)} failed membership changes")
            return EXIT_PARTIAL_FAILURE

        logger.info("Sync completed successfully")
        return EXIT_SUCCESS

    def _fail(self, context: RunContext, error: Exception):
        """Record and report a fatal error. Nothing here raises."""
        context.status = STATUS_FAILURE
        context.error = f"{type(error).__name__}: {error}"
        context.finished_at = datetime.now()

        if self.config is None:
            # Without configuration there is no history store or notification channel
            return

        self._record_history(context)
        self._send_report(context)

    def _record_history(self, context: RunContext):
        """Append the run record of this invocation, then its changes."""
        if self.history is None:
            return
        if self.dry_run:
            logger.info("Dry run, history not recorded")
            return

        failed = context.status == STATUS_FAILURE
        record = RunRecord(
            run_at=context.started_at,
            mode=context.mode,
            input_file=context.input_file,
            entry_count=0 if failed else context.entry_count,
            status=context.status,
            log_excerpt=read_log_excerpt(self.log_file),
            raw_csv=None if failed else context.raw_csv
        )

        try:
            self.history.record_run(record)
        except (sqlite3.Error, OSError) as e:
            logger.error(f"Failed to write run record: {e}")

        try:
            for change in context.changes:
                self.history.record_change(change)
        except (sqlite3.Error, OSError) as e:
            logger.error(f"Failed to write change history: {e}")

    def _send_report(self, context: RunContext):
        """Send the run report. Notification failures never change the run outcome."""
        try:
            RunReporter(self.config.get('notifications', {})).dispatch(context)
        except NotificationFailed as e:
            logger.error(f"Failed to send {context.status} notification: {e}")

    def _log_sync_summary(self, context: RunContext):
        """Log final synchronization statistics."""
        runtime = (context.finished_at - context.started_at).total_seconds()

        logger.info("=== Sync Summary ===")
        logger.info(f"Total runtime: {runtime:.2f} seconds")
        logger.info(f"Roster entries: {context.entry_count}")
        logger.info(f"Group: {context.group_name} ({context.group_dn})")
        logger.info(f"Attribute changes: {len(context.attribute_changes)}")
        logger.info(f"Members added: {len(context.added)}")
        logger.info(f"Members removed: {len(context.removed)}")
        logger.info(f"Failed lookups: {len(context.failed_lookups)}")
        logger.info(f"Failed membership changes: {len(context.failed_mutations)}")
        logger.info(f"Final group size: {context.final_group_size}")

    def list_rollback_dates(self) -> List[str]:
        """Dates with an archived roster, most recent first."""
        self._load_configuration()
        self._setup_logging()
        self._setup_history()
        return self.history.list_rollback_dates()

    def show_changes(self, date: str) -> List[ChangeRecord]:
        """Changes recorded on ``date``, oldest first."""
        self._load_configuration()
        self._setup_logging()
        self._setup_history()
        return self.history.changes_for_date(date)

    def undo_change(self, change_id: int):
        """Reverting a single recorded change has no defined behavior yet."""
        raise NotSupported(f"Undoing an individual change ({change_id}) is not supported; "
                           f"use --rollback DATE to re-synchronize to an archived roster")

    def health_check(self) -> Dict[str, Any]:
        """
        Perform a health check of the sync system.

        Returns:
            Dictionary containing health status and details
        """
        health_status = {
            'status': 'healthy',
            'timestamp': datetime.now().isoformat(),
            'checks': {}
        }

        try:
            self._load_configuration()
            health_status['checks']['configuration'] = {
                'status': 'pass',
                'message': 'Configuration loaded successfully'
            }
        except ConfigurationError as e:
            health_status['checks']['configuration'] = {
                'status': 'fail',
                'message': f'Configuration error: {e}'
            }
            health_status['status'] = 'unhealthy'
            return health_status

        # Directory connectivity and group presence
        client = DirectoryClient(self.config['directory'], {'max_retries': 1, 'retry_wait_seconds': 1})
        try:
            client.connect()
            group_dn = client.find_group(self.config['group']['name'])
            health_status['checks']['directory'] = {
                'status': 'pass',
                'message': f"Group found: {group_dn}" if group_dn
                else 'Connected; group does not exist yet and will be created on the next sync'
            }
        except DirectoryUnavailable as e:
            health_status['checks']['directory'] = {
                'status': 'fail',
                'message': f'Directory connection failed: {e}'
            }
            health_status['status'] = 'unhealthy'
        finally:
            client.disconnect()

        # Roster input
        input_path = self.config['roster']['input_path']
        present = os.path.isfile(input_path)
        health_status['checks']['roster'] = {
            'status': 'pass' if present else 'fail',
            'message': f"Roster file {'found' if present else 'not found'}: {input_path}"
        }
        if not present:
            health_status['status'] = 'unhealthy'

        # Notification settings, validated without sending
        notifications_config = self.config.get('notifications', {})
        if notifications_config.get('enable_email', False):
            required_fields = ['smtp_server', 'email_from', 'email_to']
            missing_fields = [f for f in required_fields if not notifications_config.get(f)]
            if missing_fields:
                health_status['checks']['notifications'] = {
                    'status': 'fail',
                    'message': f'Missing notification config: {missing_fields}'
                }
                health_status['status'] = 'unhealthy'
            else:
                health_status['checks']['notifications'] = {
                    'status': 'pass',
                    'message': 'Email notification configuration valid'
                }
        else:
            health_status['checks']['notifications'] = {
                'status': 'skip',
                'message': 'Email notifications disabled'
            }

        return health_status

    def _cleanup(self):
        """Clean up resources."""
        if self.directory:
            self.directory.disconnect()
            self.directory = None


def _parse_date(value: str) -> str:
    try:
        return datetime.strptime(value, '%Y-%m-%d').strftime('%Y-%m-%d')
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date '{value}', expected YYYY-MM-DD")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Distribution List Sync')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--dry-run', action='store_true',
                        help='Show the changes a sync or rollback would make without applying them')

    modes = parser.add_mutually_exclusive_group()
    modes.add_argument('--list-rollback-dates', action='store_true',
                       help='List dates with an archived roster, most recent first')
    modes.add_argument('--show-changes', metavar='DATE', type=_parse_date,
                       help='Show the directory changes recorded on DATE (YYYY-MM-DD)')
    modes.add_argument('--rollback', metavar='DATE', type=_parse_date,
                       help='Re-synchronize membership to the roster archived on DATE (YYYY-MM-DD)')
    modes.add_argument('--undo-change', metavar='ID', type=int,
                       help='Undo a single recorded change (not supported)')
    modes.add_argument('--health-check', action='store_true',
                       help='Perform health check instead of sync')
    modes.add_argument('--test-email', action='store_true',
                       help='Send test email notification')
    return parser


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    args = build_parser().parse_args(argv)
    orchestrator = SyncOrchestrator(config_path=args.config, dry_run=args.dry_run)

    if args.health_check:
        health_status = orchestrator.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    elif args.test_email:
        try:
            orchestrator._load_configuration()
        except ConfigurationError as e:
            print(f"Configuration error: {e}")
            sys.exit(EXIT_CONFIG_ERROR)
        if send_test_email(orchestrator.config.get('notifications', {})):
            print("Test email sent successfully")
            sys.exit(EXIT_SUCCESS)
        print("Failed to send test email")
        sys.exit(1)

    elif args.list_rollback_dates or args.show_changes:
        try:
            if args.list_rollback_dates:
                dates = orchestrator.list_rollback_dates()
                if not dates:
                    print("No rollback points available")
                for date in dates:
                    print(date)
            else:
                changes = orchestrator.show_changes(args.show_changes)
                if not changes:
                    print(f"No changes recorded on {args.show_changes}")
                for change in changes:
                    print(format_change(change))
        except ConfigurationError as e:
            print(f"Configuration error: {e}")
            sys.exit(EXIT_CONFIG_ERROR)
        sys.exit(EXIT_SUCCESS)

    elif args.undo_change is not None:
        try:
            orchestrator.undo_change(args.undo_change)
        except NotSupported as e:
            print(str(e))
            sys.exit(EXIT_NOT_SUPPORTED)

    elif args.rollback:
        sys.exit(orchestrator.rollback(args.rollback))

    else:
        sys.exit(orchestrator.run())


def format_change(change: ChangeRecord) -> str:
    line = f"[{change.id}] {change.timestamp.strftime('%Y-%m-%d %H:%M:%S')} {change.action} {change.target}"
    if change.attribute:
        line += f" {change.attribute}"
    if change.before is not None or change.after is not None:
        line += f": {change.before or '(none)'} -> {change.after or '(none)'}"
    return line


if __name__ == "__main__":
    main()
