"""
Logging setup and configuration for Distribution List Sync.

This module provides centralized logging configuration: one dated log file per day
in the log directory, optional console output, scrubbing of secrets, and removal of
log files older than the retention window.
"""

import os
import re
import glob
import logging
from collections import deque
from typing import Dict, Any, List, Optional
from datetime import datetime, timedelta

LOG_FILE_PREFIX = 'dl_sync_'
LOG_FILE_PATTERN = re.compile(r'^dl_sync_(\d{4}-\d{2}-\d{2})\.log$')


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'smtp_password', 'token', 'secret',
        'credential', 'pwd', 'api_key', 'client_secret'
    ]

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if hasattr(record, 'msg'):
            msg = record.getMessage() if record.args else str(record.msg)

            # Pattern for key=value (simple assignment)
            for keyword in self.SENSITIVE_KEYWORDS:
                msg = re.sub(rf'({keyword}\s*=\s*)[^\s,}}\]]+(\s|,|$)', r'\1****\2', msg, flags=re.IGNORECASE)

            # Pattern for 'key': 'value' in dict reprs and JSON
            for keyword in self.SENSITIVE_KEYWORDS:
                msg = re.sub(rf'''(["']{keyword}["']\s*:\s*["'])[^"']*(["'])''', r'\1****\2', msg,
                             flags=re.IGNORECASE)

            record.msg = msg
            record.args = None

        return True


class LoggingManager:
    """
    Manages logging configuration for Distribution List Sync.

    Every run appends to the log file named after the current day, so one day's
    runs share a file.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.log_file = None
        self.retention_days = 30

    def setup_logging(self, config: Dict[str, Any], run_date: Optional[datetime] = None) -> str:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary
            run_date: Day the log file is named after (defaults to today)

        Returns:
            Path of the log file for this run
        """
        if self.configured:
            return self.log_file

        logging_config = config if config else {}

        log_level = str(logging_config.get('level', 'INFO')).upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        self.retention_days = logging_config.get('retention_days', 30)
        console_enabled = logging_config.get('console_output', True)
        console_level = str(logging_config.get('console_level', 'WARNING')).upper()

        self._ensure_log_directory()
        self.log_file = log_file_path(self.log_dir, run_date or datetime.now())

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        root_logger.handlers.clear()

        detailed_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        console_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%H:%M:%S'
        )
        sensitive_filter = SensitiveDataFilter()

        file_handler = logging.FileHandler(self.log_file, encoding='utf-8')
        file_handler.setLevel(getattr(logging, log_level, logging.INFO))
        file_handler.setFormatter(detailed_formatter)
        file_handler.addFilter(sensitive_filter)
        root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.WARNING))
            console_handler.setFormatter(console_formatter)
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        self._cleanup_old_logs(run_date or datetime.now())

        self.configured = True

        logger = logging.getLogger(__name__)
        logger.info(f"Logging configured: level={log_level}, file={self.log_file}, "
                    f"retention={self.retention_days} days, console={console_enabled}")
        return self.log_file

    def _ensure_log_directory(self) -> None:
        """Ensure the log directory exists."""
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                print(f"Warning: Could not create log directory {self.log_dir}: {e}")
                print("Falling back to current directory for logs")
                self.log_dir = '.'

    def _cleanup_old_logs(self, now: datetime) -> List[str]:
        """Remove dated log files older than the retention period."""
        if not self.log_dir or not self.retention_days or self.retention_days <= 0:
            return []

        cutoff = (now - timedelta(days=self.retention_days)).strftime('%Y-%m-%d')
        removed = []

        for path in glob.glob(os.path.join(self.log_dir, f"{LOG_FILE_PREFIX}*.log")):
            match = LOG_FILE_PATTERN.match(os.path.basename(path))
            if not match or match.group(1) >= cutoff:
                continue
            try:
                os.remove(path)
                removed.append(path)
            except OSError as e:
                print(f"Warning: Could not remove old log file {path}: {e}")

        return removed


def log_file_path(log_dir: str, run_date: datetime) -> str:
    return os.path.join(log_dir, f"{LOG_FILE_PREFIX}{run_date.strftime('%Y-%m-%d')}.log")


def read_log_excerpt(path: Optional[str], max_lines: int = 50) -> str:
    """Return the last ``max_lines`` lines of a log file, or an empty string."""
    if not path or not os.path.isfile(path):
        return ''
    for handler in logging.getLogger().handlers:
        if isinstance(handler, logging.FileHandler):
            handler.flush()
    try:
        with open(path, 'r', encoding='utf-8', errors='replace') as f:
            return ''.join(deque(f, maxlen=max_lines))
    except OSError:
        return ''


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any], run_date: Optional[datetime] = None) -> str:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
        run_date: Day the log file is named after

    Returns:
        Path of the log file
    """
    return _logging_manager.setup_logging(config, run_date)
