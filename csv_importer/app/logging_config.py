"""
Structured logging configuration for worker and submitting processes.
"""
import json
import logging
import logging.handlers
import sys
from datetime import datetime
from typing import Any, Dict, Optional
import os

from csv_importer.settings import Settings, settings as default_settings


_RESERVED_ATTRS = {
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "message", "pathname", "process", "processName", "relativeCreated",
    "thread", "threadName", "exc_info", "exc_text", "stack_info",
    "taskName",
}


class JSONLogFormatter(logging.Formatter):
    """
    JSON formatter for log records.
    One JSON object per line so worker logs can be shipped and queried as-is.
    """

    def format(self, record: logging.LogRecord) -> str:
        """Render one record, with its pid and any extra={...} fields, as a JSON line."""
        log_data: Dict[str, Any] = {
            "timestamp": datetime.utcnow().isoformat() + "Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "pid": record.process,
        }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        # Fields passed through extra={...}
        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith("_"):
                continue
            log_data[key] = value

        return json.dumps(log_data, default=str)


def setup_logging(config: Optional[Settings] = None) -> logging.Logger:
    """
    Configure logging for the application.

    Logs always go to stdout. When LOG_FILE is set they are also appended to
    a rotating file, bounded by LOG_FILE_MAX_BYTES * LOG_FILE_BACKUP_COUNT.

    Args:
        config: Settings to read logging options from

    Returns:
        The configured root logger
    """
    config = config or default_settings

    log_level = os.getenv("LOG_LEVEL", config.LOG_LEVEL).upper()
    level = getattr(logging, log_level, logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    use_json = os.getenv("LOG_FORMAT", config.LOG_FORMAT).lower() == "json"
    if use_json:
        formatter: logging.Formatter = JSONLogFormatter()
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - [%(process)d] %(message)s"
        )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if config.LOG_FILE:
        file_handler = logging.handlers.RotatingFileHandler(
            config.LOG_FILE,
            mode="a",
            maxBytes=config.LOG_FILE_MAX_BYTES,
            backupCount=config.LOG_FILE_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)

    return root_logger


def get_logger(name: str) -> logging.Logger:
    """Module logger; every record passes through the root handlers set up above."""
    return logging.getLogger(name)
