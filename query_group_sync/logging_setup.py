"""
Logging setup and configuration for Query Group Sync.

The root logger writes a detailed run log to ``app.log`` and, optionally, a
short form to stderr. Membership decisions also go to the ``audit`` logger,
which keeps its own ``audit.log`` next to the run log.
"""

import os
import re
import glob
import logging
import logging.handlers
from typing import Dict, Any, List, Optional
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)

RUN_LOG = 'app.log'
AUDIT_LOGGER = 'audit'

SENSITIVE_KEYWORDS = (
    'bind_password', 'smtp_password', 'password', 'secret', 'token',
    'credential', 'pwd', 'authorization'
)
_KEYWORDS = '|'.join(SENSITIVE_KEYWORDS)
# password=value, and 'password': 'value' as printed for dicts or JSON
_ASSIGNMENT = re.compile(rf'((?:{_KEYWORDS})\s*=\s*)[^\s,}}\]]+', re.IGNORECASE)
_QUOTED = re.compile(rf'([\'"](?:{_KEYWORDS})[\'"]\s*:\s*[\'"])[^\'"]*([\'"])', re.IGNORECASE)


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub credentials from log messages."""

    def filter(self, record):
        msg = _ASSIGNMENT.sub(r'\1****', str(record.msg))
        record.msg = _QUOTED.sub(r'\1****\2', msg)
        return True


class LoggingManager:
    """
    Manages logging configuration for a run.

    Handlers are installed once; a second call is ignored so that a health
    check and a sync in the same process share one set of files.
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

        logging_config = config or {}
        log_level = getattr(logging, logging_config.get('level', 'INFO').upper(), logging.INFO)
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = getattr(logging, logging_config.get('console_level', 'INFO').upper(), logging.INFO)
        audit_file = logging_config.get('audit_file', 'audit.log')

        directory_error = self._ensure_log_directory(logging_config.get('log_dir', 'logs'))

        sensitive_filter = SensitiveDataFilter()
        root_logger = logging.getLogger()
        root_logger.setLevel(log_level)
        root_logger.handlers.clear()

        run_handler = self._file_handler(RUN_LOG, rotation)
        run_handler.setLevel(log_level)
        run_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        run_handler.addFilter(sensitive_filter)
        root_logger.addHandler(run_handler)

        # stderr, never stdout: pass-through records own stdout
        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(console_level)
            console_handler.setFormatter(logging.Formatter('%(asctime)s [%(levelname)s] %(message)s',
                                                           datefmt='%H:%M:%S'))
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        if audit_file:
            audit_handler = self._file_handler(audit_file, rotation)
            audit_handler.setFormatter(logging.Formatter('%(asctime)s %(levelname)s %(message)s',
                                                         datefmt='%Y-%m-%dT%H:%M:%S'))
            audit = logging.getLogger(AUDIT_LOGGER)
            audit.setLevel(logging.INFO)
            audit.addHandler(audit_handler)

        self.configured = True

        if directory_error:
            logger.warning(f"Could not create log directory, logging to current directory: {directory_error}")
        logger.info(f"Logging configured: level={logging.getLevelName(log_level)}, dir={self.log_dir}, "
                    f"retention={self.retention_days} days, console={console_enabled}")
        self._cleanup_old_logs()

    def _ensure_log_directory(self, log_dir: str) -> Optional[OSError]:
        self.log_dir = log_dir or '.'
        try:
            os.makedirs(self.log_dir, exist_ok=True)
        except OSError as e:
            self.log_dir = '.'
            return e
        return None

    def _file_handler(self, filename: str, rotation: str) -> logging.Handler:
        """Daily rotated handler for ``filename``, or a plain one when rotation is 'none'."""
        path = os.path.join(self.log_dir, filename)
        if rotation.lower() in ('daily', 'midnight'):
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=path,
                when='midnight',
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
            return handler
        return logging.FileHandler(path, encoding='utf-8')

    def _cleanup_old_logs(self) -> None:
        """Remove rotated logs older than the retention period; active logs are kept."""
        if self.retention_days <= 0:
            return

        cutoff = datetime.now() - timedelta(days=self.retention_days)
        active = {os.path.join(self.log_dir, RUN_LOG)}
        active.update(getattr(h, 'baseFilename', None) for h in logging.getLogger(AUDIT_LOGGER).handlers)
        for log_file in self.get_log_files():
            if log_file in active or os.path.abspath(log_file) in active:
                continue
            try:
                if datetime.fromtimestamp(os.path.getmtime(log_file)) < cutoff:
                    os.remove(log_file)
                    logger.info(f"Removed old log file: {log_file}")
            except OSError as e:
                logger.warning(f"Could not remove old log file {log_file}: {e}")

    def get_log_files(self) -> List[str]:
        """Run and audit log files, including rotated copies."""
        if not self.log_dir:
            return []
        files = set()
        for pattern in (f'{RUN_LOG}*', 'audit*.log*'):
            files.update(glob.glob(os.path.join(self.log_dir, pattern)))
        return sorted(files)


_logging_manager = LoggingManager()


def setup_logging(config: Dict[str, Any]) -> None:
    """Configure logging for the process once."""
    _logging_manager.setup_logging(config)


class AuditLogger:
    """Dedicated logger recording every membership change decision."""

    def __init__(self):
        self.logger = logging.getLogger(AUDIT_LOGGER)

    def log_membership_change(self, action: str, group: str, user: str, success: bool, dry_run: bool = False):
        """Log one add/remove for the audit trail."""
        if dry_run:
            status = "SIMULATED"
        else:
            status = "SUCCESS" if success else "FAILURE"
        message = f"Membership {action} {status}: group={group} user={user}"
        if success or dry_run:
            self.logger.info(message)
        else:
            self.logger.warning(message)

    def log_configuration_access(self, config_file: str):
        self.logger.info(f"Configuration loaded: {config_file}")


audit_logger = AuditLogger()
