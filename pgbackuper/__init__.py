import os
import json
import logging
from logging.handlers import RotatingFileHandler
from typing import Optional

from pgbackuper.models import LoggingSettings


LOG_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warn': logging.WARNING,
    'warning': logging.WARNING,
    'error': logging.ERROR,
}


class JSONFormatter(logging.Formatter):
    """One JSON object per log line"""

    def format(self, record):
        entry = {
            'time': self.formatTime(record),
            'level': record.levelname.lower(),
            'logger': record.name,
            'msg': record.getMessage(),
        }
        if record.exc_info:
            entry['error'] = self.formatException(record.exc_info)
        return json.dumps(entry)


def configure_logging(logging_settings: Optional[LoggingSettings] = None, log_dir: Optional[str] = None):
    """
    Configure application logging.

    Args:
        logging_settings: Level and format ('text' or 'json')
        log_dir: Directory for the rotating log file (None: console only)
    """
    if logging_settings is None:
        logging_settings = LoggingSettings()

    log_level = LOG_LEVELS.get(logging_settings.level.lower(), logging.INFO)

    if logging_settings.format == 'json':
        console_formatter = JSONFormatter()
        file_formatter = JSONFormatter()
    else:
        console_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
        )
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'pgbackuper.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # APScheduler is chatty at INFO
    logging.getLogger('apscheduler').setLevel(max(log_level, logging.WARNING))

    logging.getLogger(__name__).info(
        f"Logging configured (level: {logging.getLevelName(log_level)}, format: {logging_settings.format})"
    )
