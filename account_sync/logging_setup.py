"""
Logging setup and configuration for Account Sync.

This module provides centralized logging configuration with file rotation,
retention, scrubbing of credential material, and an audit trail of every
account operation a run performs.
"""

import os
import sys
import re
import glob
import logging
import logging.handlers
from typing import Dict, Any, Optional
from datetime import datetime, timedelta


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub secrets and credential material from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'password_digest', 'secret_key', 'secret', 'token',
        'authorization', 'bearer', 'api_key', 'access_token', 'credential'
    ]

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if hasattr(record, 'msg'):
            msg = str(record.msg)

            # key=value
            for keyword in self.SENSITIVE_KEYWORDS:
                pattern1 = rf'({keyword}\s*=\s*)[^\s,}}\]]+(\s|,|$)'
                msg = re.sub(pattern1, r'\1****\2', msg, flags=re.IGNORECASE)

            # "key": "value" and "key": value in JSON
            for keyword in self.SENSITIVE_KEYWORDS:
                pattern2 = rf'("{keyword}"\s*:\s*")[^"]*(")'
                msg = re.sub(pattern2, r'\1****\2', msg, flags=re.IGNORECASE)

                pattern3 = rf'("{keyword}"\s*:\s*)([^",}}\s]+)(\s*[,}}\]])'
                msg = re.sub(pattern3, r'\1****\3', msg, flags=re.IGNORECASE)

            # 'key': 'value' as printed for Python dicts
            for keyword in self.SENSITIVE_KEYWORDS:
                pattern4 = rf"('{keyword}'\s*:\s*')[^']*(')"
                msg = re.sub(pattern4, r'\1****\2', msg, flags=re.IGNORECASE)

            msg = re.sub(r'(Authorization:\s*Bearer\s+)[^\s,}}\]]+(\s|,|$)', r'\1****\2', msg, flags=re.IGNORECASE)

            record.msg = msg

        return True


LOG_FILE_NAME = 'account_sync.log'

FILE_FORMAT = '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s'
CONSOLE_FORMAT = '%(asctime)s [%(levelname)s] %(message)s'


def _level(name: str) -> int:
    return getattr(logging, str(name).upper(), logging.INFO)


class LoggingManager:
    """
    Owns the handlers Account Sync installs on the root logger.

    Only handlers created here are ever removed, so handlers installed by an
    embedding application or a test runner survive. Calling setup_logging
    again with the same settings is a no-op; different settings replace the
    handlers.
    """

    def __init__(self):
        self.handlers = []
        self.settings = None
        self.log_dir = None

    def setup_logging(self, config: Optional[Dict[str, Any]]) -> None:
        settings = self._settings(config or {})
        if settings == self.settings:
            return
        self.reset()

        level, log_dir, rotation, retention_days, console_enabled, console_level = settings
        self.log_dir = self._ensure_log_directory(log_dir)

        sensitive_filter = SensitiveDataFilter()

        file_handler = self._create_file_handler(rotation, retention_days)
        file_handler.setLevel(_level(level))
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))
        self.handlers.append(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(_level(console_level))
            console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt='%H:%M:%S'))
            self.handlers.append(console_handler)

        root_logger = logging.getLogger()
        root_logger.setLevel(_level(level))
        for handler in self.handlers:
            handler.addFilter(sensitive_filter)
            root_logger.addHandler(handler)

        self.settings = settings
        removed = self._cleanup_old_logs(retention_days)

        logger = logging.getLogger(__name__)
        logger.info(f"Logging to {os.path.join(self.log_dir, LOG_FILE_NAME)} at {level}, "
                    f"keeping {retention_days} days")
        for log_file in removed:
            logger.info(f"Removed old log file: {log_file}")

    @staticmethod
    def _settings(config: Dict[str, Any]) -> tuple:
        return (
            str(config.get('level', 'INFO')).upper(),
            config.get('log_dir', 'logs'),
            str(config.get('rotation', 'daily')).lower(),
            config.get('retention_days', 7),
            bool(config.get('console_output', True)),
            str(config.get('console_level', 'INFO')).upper(),
        )

    def reset(self) -> None:
        """Detach and close the handlers installed by the last setup."""
        root_logger = logging.getLogger()
        for handler in self.handlers:
            root_logger.removeHandler(handler)
            handler.close()
        self.handlers = []
        self.settings = None

    @staticmethod
    def _ensure_log_directory(log_dir: str) -> str:
        try:
            os.makedirs(log_dir, exist_ok=True)
        except OSError as e:
            sys.stderr.write(f"Could not create log directory {log_dir} ({e}), logging to current directory\n")
            return '.'
        return log_dir

    def _create_file_handler(self, rotation: str, retention_days: int) -> logging.Handler:
        """
        Create the file handler for the main log.

        ``daily`` and ``midnight`` rotate at midnight and keep
        ``retention_days`` backups; anything else writes a single file.
        """
        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)

        if rotation in ('daily', 'midnight'):
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                backupCount=retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
            return handler
        return logging.FileHandler(log_file, encoding='utf-8')

    def _cleanup_old_logs(self, retention_days: int) -> list:
        """Delete rotated log files older than the retention period."""
        if retention_days <= 0:
            return []

        cutoff = datetime.now() - timedelta(days=retention_days)
        removed = []
        for log_file in glob.glob(os.path.join(self.log_dir, LOG_FILE_NAME + '.*')):
            try:
                if datetime.fromtimestamp(os.path.getmtime(log_file)) < cutoff:
                    os.remove(log_file)
                    removed.append(log_file)
            except OSError as e:
                logging.getLogger(__name__).warning(f"Could not remove old log file {log_file}: {e}")
        return removed


_logging_manager = LoggingManager()


def setup_logging(config: Optional[Dict[str, Any]]) -> None:
    """Install file and console handlers from the ``logging`` config section."""
    _logging_manager.setup_logging(config)


def reset_logging() -> None:
    """Remove the installed handlers so setup_logging starts fresh."""
    _logging_manager.reset()


class AuditLogger:
    """Special logger for the account operation audit trail."""

    def __init__(self):
        self.logger = logging.getLogger('audit')

    def log_account_operation(self, operation: str, user_id: str, outcome: str, detail: str = ""):
        """Log one account operation and its final outcome."""
        message = f"Account operation {outcome.upper()}: {operation} user={user_id}"
        if detail:
            message += f" - {detail}"
        if outcome.lower() == 'fatal':
            self.logger.warning(message)
        else:
            self.logger.info(message)

    def log_configuration_access(self, config_file: str):
        """Log configuration file access."""
        self.logger.info(f"Configuration loaded: {config_file}")

    def log_run_boundary(self, event: str, operation: str, details: str = ""):
        """Log the start or end of a run."""
        message = f"Run {event}: {operation}"
        if details:
            message += f" - {details}"
        self.logger.info(message)


# Global audit logger instance
audit_logger = AuditLogger()
