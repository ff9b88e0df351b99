"""
Logging setup and configuration for Directory Identity Sync.

This module provides centralized logging configuration with file rotation,
retention of rotated files, scrubbing of secrets and a scoped level override
used while the bulk of the users is synchronized.
"""

import os
import re
import glob
import logging
import logging.handlers
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Dict, Any, Optional, Union


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'smtp_password', 'token', 'secret',
        'credential', 'pwd', 'authorization', 'api_key', 'client_secret',
        'access_token', 'refresh_token', 'unicodePwd'
    ]

    def __init__(self, name: str = ''):
        super().__init__(name)
        self._patterns = []
        for keyword in self.SENSITIVE_KEYWORDS:
            # key=value
            self._patterns.append((re.compile(rf'({keyword}\s*=\s*)[^\s,}}\]]+(\s|,|$)', re.IGNORECASE),
                                   r'\1****\2'))
            # "key": "value"
            self._patterns.append((re.compile(rf'("{keyword}"\s*:\s*")[^"]*(")', re.IGNORECASE),
                                   r'\1****\2'))
            # 'key': 'value' as printed for dicts
            self._patterns.append((re.compile(rf"('{keyword}'\s*:\s*')[^']*(')", re.IGNORECASE),
                                   r'\1****\2'))
        self._patterns.append((re.compile(r'(Authorization:\s*(?:Bearer|Basic)\s+)[^\s,}\]]+', re.IGNORECASE),
                               r'\1****'))

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if hasattr(record, 'msg'):
            msg = str(record.msg)
            for pattern, replacement in self._patterns:
                msg = pattern.sub(replacement, msg)
            record.msg = msg

        return True


class LoggingManager:
    """
    Manages logging configuration for the sync application.

    Provides file-based logging with rotation, retention policies, and
    container-friendly console output.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary
        """
        if self.configured:
            return

        logging_config = config if config else {}

        log_level = logging_config.get('level', 'INFO').upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = logging_config.get('console_level', 'WARNING').upper()

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

        # Handlers pass everything; the root logger level decides
        file_handler = self._create_file_handler(rotation)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(detailed_formatter)
        file_handler.addFilter(sensitive_filter)
        root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.WARNING))
            console_handler.setFormatter(console_formatter)
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        self._cleanup_old_logs()

        self.configured = True

        logger = logging.getLogger(__name__)
        logger.info(f"Logging configured: level={log_level}, dir={self.log_dir}, "
                    f"retention={self.retention_days} days, console={console_enabled}")

    def _ensure_log_directory(self) -> None:
        """Ensure the log directory exists."""
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                # Fall back to current directory if log directory creation fails
                print(f"Warning: Could not create log directory {self.log_dir}: {e}")
                print("Falling back to current directory for logs")
                self.log_dir = '.'

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        """
        Create appropriate file handler based on rotation setting.

        Args:
            rotation: Rotation setting ('daily', 'midnight', or 'none')

        Returns:
            Configured logging handler
        """
        log_file = os.path.join(self.log_dir, 'identity-sync.log')

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
        """Clean up log files older than retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)
        log_pattern = os.path.join(self.log_dir, 'identity-sync.log.*')

        for log_file in glob.glob(log_pattern):
            try:
                file_time = datetime.fromtimestamp(os.path.getmtime(log_file))
                if file_time < cutoff_date:
                    os.remove(log_file)
                    print(f"Removed old log file: {log_file}")
            except OSError as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")


_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
    """
    _logging_manager.setup_logging(config)


@contextmanager
def log_level_override(level: Union[str, int, None], logger_name: Optional[str] = None):
    """
    Temporarily set the level of a logger (the root logger by default).

    The previous level is restored when the block exits, whatever the exit path.

    Args:
        level: Level name or number; None leaves the level untouched
        logger_name: Logger to adjust
    """
    target = logging.getLogger(logger_name)
    previous = target.level

    if level is not None:
        if isinstance(level, str):
            level = getattr(logging, level.upper(), logging.INFO)
        target.setLevel(level)

    try:
        yield target
    finally:
        target.setLevel(previous)
