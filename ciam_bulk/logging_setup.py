"""
Logging setup for CIAM Bulk Tools.

Configures the root logger with a daily-rotating log file, optional console
output and a filter that masks credentials before anything is written. Bulk
runs can last hours, so the file log is the operator's record of which
batches failed and which sequence ranges need a re-run.
"""

import os
import re
import glob
import logging
import logging.handlers
from datetime import datetime, timedelta
from typing import Dict, Any, List

LOG_FILE_NAME = 'ciam_bulk.log'


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub credentials from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'client_secret', 'secret', 'token',
        'access_token', 'refresh_token', 'authorization', 'credential', 'pwd'
    ]

    _ASSIGNMENT_PATTERNS = [
        re.compile(rf'({keyword}\s*=\s*)[^\s,&}}\]]+', re.IGNORECASE)
        for keyword in SENSITIVE_KEYWORDS
    ]
    _QUOTED_JSON_PATTERNS = [
        re.compile(rf'(["\']{keyword}["\']\s*:\s*["\'])[^"\']*(["\'])', re.IGNORECASE)
        for keyword in SENSITIVE_KEYWORDS
    ]
    _BEARER_PATTERN = re.compile(r'(Bearer\s+)[A-Za-z0-9\-._~+/]+=*', re.IGNORECASE)

    def filter(self, record):
        """Mask sensitive values in the record's message."""
        if record.args:
            try:
                record.msg = record.getMessage()
                record.args = None
            except (TypeError, ValueError):
                pass

        msg = str(record.msg)
        for pattern in self._ASSIGNMENT_PATTERNS:
            msg = pattern.sub(r'\1****', msg)
        for pattern in self._QUOTED_JSON_PATTERNS:
            msg = pattern.sub(r'\1****\2', msg)
        msg = self._BEARER_PATTERN.sub(r'\1****', msg)

        record.msg = msg
        return True


class LoggingManager:
    """
    Manages logging configuration for a bulk run.

    Provides file logging with rotation and retention plus console output for
    the interactive operator.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: The ``logging`` configuration section
        """
        if self.configured:
            return

        logging_config = config if config else {}

        log_level = logging_config.get('level', 'INFO').upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = logging_config.get('console_level', 'INFO').upper()

        self._ensure_log_directory()

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

        file_handler = self._create_file_handler(rotation)
        file_handler.setLevel(getattr(logging, log_level, logging.INFO))
        file_handler.setFormatter(detailed_formatter)
        file_handler.addFilter(sensitive_filter)
        root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.INFO))
            console_handler.setFormatter(console_formatter)
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        self._cleanup_old_logs()
        self.configured = True

        logger = logging.getLogger(__name__)
        logger.info(f"Logging configured: level={log_level}, dir={self.log_dir}, "
                    f"retention={self.retention_days} days, console={console_enabled}")

    def reset(self) -> None:
        """Forget the current configuration so ``setup_logging`` applies again."""
        root_logger = logging.getLogger()
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()
        self.configured = False

    def _ensure_log_directory(self) -> None:
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                print(f"Warning: Could not create log directory {self.log_dir}: {e}")
                print("Falling back to current directory for logs")
                self.log_dir = '.'

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        """
        Create the file handler for the rotation setting.

        Args:
            rotation: 'daily', 'midnight' or 'none'
        """
        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)

        if rotation.lower() in ['daily', 'midnight']:
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                interval=1,
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(log_file, encoding='utf-8')

        return handler

    def _cleanup_old_logs(self) -> None:
        """Remove rotated log files older than the retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)
        for log_file in glob.glob(os.path.join(self.log_dir, f'{LOG_FILE_NAME}.*')):
            try:
                file_time = datetime.fromtimestamp(os.path.getmtime(log_file))
                if file_time < cutoff_date:
                    os.remove(log_file)
            except OSError as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")

    def get_log_files(self) -> List[str]:
        if not self.log_dir:
            return []
        return sorted(glob.glob(os.path.join(self.log_dir, f'{LOG_FILE_NAME}*')))


_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
    """
    _logging_manager.setup_logging(config)


def reset_logging() -> None:
    _logging_manager.reset()


class OperationAuditLogger:
    """Writes one line per remote write call to the ``audit`` logger."""

    def __init__(self):
        self.logger = logging.getLogger('audit')

    def log_batch(self, workflow: str, kind: str, size: int, succeeded: int, failed: int):
        status = "SUCCESS" if failed == 0 else "PARTIAL" if succeeded else "FAILURE"
        self.logger.info(f"Batch {status}: workflow={workflow} kind={kind} "
                         f"size={size} succeeded={succeeded} failed={failed}")

    def log_batch_error(self, workflow: str, kind: str, size: int, error: Exception):
        self.logger.error(f"Batch FAILURE: workflow={workflow} kind={kind} size={size} "
                          f"error={type(error).__name__}: {error}")

    def log_membership_update(self, group_id: str, size: int, success: bool):
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Membership update {status}: group={group_id} members={size}")

    def log_delete(self, identifier: str, success: bool):
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Delete {status}: entry={identifier}")


audit_logger = OperationAuditLogger()
