"""
Logging setup and configuration for Grafana Team Sync.

This module provides centralized logging configuration with file rotation,
retention policies, secret scrubbing, optional JSON line output for container
log collectors, and an audit logger for changes made to Grafana.
"""

import os
import re
import glob
import json
import logging
import logging.handlers
import sys
from typing import Dict, Any, Optional
from datetime import datetime, timedelta


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub sensitive data from log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'bind_password', 'token', 'secret', 'credential',
        'pwd', 'authorization', 'api_key', 'access_token'
    ]

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if hasattr(record, 'msg'):
            msg = str(record.msg)

            for keyword in self.SENSITIVE_KEYWORDS:
                # key=value
                msg = re.sub(rf'({keyword}\s*=\s*)[^\s,}}\]]+(\s|,|$)', r'\1****\2', msg, flags=re.IGNORECASE)
                # "key": "value"
                msg = re.sub(rf'("{keyword}"\s*:\s*")[^"]*(")', r'\1****\2', msg, flags=re.IGNORECASE)
                # 'key': 'value' as printed from a dict
                msg = re.sub(rf"('{keyword}'\s*:\s*')[^']*(')", r'\1****\2', msg, flags=re.IGNORECASE)

            # Authorization: Bearer/Basic <credentials>
            msg = re.sub(r'(Authorization:\s*(?:Bearer|Basic)\s+)[^\s,}\]]+', r'\1****', msg, flags=re.IGNORECASE)

            record.msg = msg

        return True


class JsonFormatter(logging.Formatter):
    """Render each record as one JSON object per line."""

    def format(self, record):
        payload = {
            'time': datetime.fromtimestamp(record.created).isoformat(timespec='seconds'),
            'level': record.levelname,
            'logger': record.name,
            'msg': record.getMessage(),
        }
        if record.exc_info:
            payload['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(payload)


class LoggingManager:
    """
    Manages logging configuration for the Grafana Team Sync application.

    Provides file-based logging with rotation, retention policies, and
    container-friendly console output.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Dict[str, Any], level_override: Optional[str] = None) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary
            level_override: Level from the command line, wins over config
        """
        if self.configured:
            return

        logging_config = config if config else {}

        log_level = (level_override or logging_config.get('level', 'INFO')).upper()
        self.log_dir = logging_config.get('log_dir', 'logs')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = (level_override or logging_config.get('console_level', 'INFO')).upper()
        use_json = str(logging_config.get('format', 'text')).lower() == 'json'

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        root_logger.handlers.clear()

        if use_json:
            file_formatter = console_formatter = JsonFormatter()
        else:
            file_formatter = logging.Formatter(
                '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            console_formatter = logging.Formatter(
                '%(asctime)s [%(levelname)s] %(message)s',
                datefmt='%H:%M:%S'
            )

        sensitive_filter = SensitiveDataFilter()

        if self.log_dir:
            self._ensure_log_directory()
            file_handler = self._create_file_handler(rotation)
            file_handler.setLevel(getattr(logging, log_level, logging.INFO))
            file_handler.setFormatter(file_formatter)
            file_handler.addFilter(sensitive_filter)
            root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler(sys.stdout)
            console_handler.setLevel(getattr(logging, console_level, logging.INFO))
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
        if not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
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
        log_file = os.path.join(self.log_dir, 'app.log')

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

        for log_file in glob.glob(os.path.join(self.log_dir, 'app.log*')):
            if log_file.endswith('app.log'):
                continue
            try:
                file_time = datetime.fromtimestamp(os.path.getmtime(log_file))
                if file_time < cutoff_date:
                    os.remove(log_file)
            except OSError as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")

    def reset(self) -> None:
        """Forget previous configuration so setup_logging() applies again."""
        for handler in logging.getLogger().handlers[:]:
            handler.close()
        logging.getLogger().handlers.clear()
        self.configured = False


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any], level_override: Optional[str] = None) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
        level_override: Optional level name from the command line
    """
    _logging_manager.setup_logging(config, level_override)


def reset_logging() -> None:
    _logging_manager.reset()


class AuditLogger:
    """Special logger for changes made to Grafana."""

    def __init__(self):
        self.logger = logging.getLogger('audit')

    def log_team_created(self, org_id: int, team: str, team_id: int):
        self.logger.info(f"Team created: org={org_id} team={team} team_id={team_id}")

    def log_membership_replaced(self, org_id: int, team: str, team_id: int,
                                members: int, admins: int, success: bool):
        status = "SUCCESS" if success else "FAILURE"
        self.logger.info(f"Membership replace {status}: org={org_id} team={team} "
                         f"team_id={team_id} members={members} admins={admins}")


# Global audit logger instance
audit_logger = AuditLogger()
