"""
Structured logging configuration for the coordinator.

Provides:
- JSON formatted logs for production
- Coloured text logs for development
- Configurable log levels
- Rotating file handler for non-development environments
"""

import logging
import sys
import os
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from typing import Optional

from pythonjsonlogger import jsonlogger

from coordinator.config import settings


JSON_FORMAT = '%(timestamp)s %(level)s %(name)s %(message)s'
TEXT_FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter with service and source-location fields."""

    def add_fields(self, log_record: dict, record: logging.LogRecord, message_dict: dict) -> None:
        super().add_fields(log_record, record, message_dict)

        log_record['timestamp'] = datetime.now(timezone.utc).isoformat()
        log_record['environment'] = settings.effective_env
        log_record['service'] = 'coordinator'
        log_record['level'] = record.levelname

        log_record['logger'] = record.name
        log_record['module'] = record.module
        log_record['function'] = record.funcName
        log_record['line'] = record.lineno

        # Request / coordination context if available
        for key in ('request_id', 'workspace_id', 'agent_id'):
            if hasattr(record, key):
                log_record[key] = getattr(record, key)


class ColoredFormatter(logging.Formatter):
    """Colored formatter for development console output."""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
    }
    RESET = '\033[0m'

    def format(self, record: logging.LogRecord) -> str:
        # Records are shared between handlers; restore the plain level name
        levelname = record.levelname
        color = self.COLORS.get(levelname, self.RESET)
        record.levelname = f"{color}{levelname}{self.RESET}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


def setup_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    log_file_enabled: Optional[bool] = None,
    log_file_path: Optional[str] = None,
) -> None:
    """Configure application logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Log format ('json' or 'text')
        log_file_enabled: Whether to enable file logging
        log_file_path: Path to log file
    """
    log_level = log_level or settings.log_level
    log_format = log_format or settings.log_format
    if log_file_enabled is None:
        log_file_enabled = settings.log_file_enabled
    if log_file_path is None:
        log_file_path = settings.log_file_path

    level = getattr(logging, log_level.upper(), logging.INFO)

    logger = logging.getLogger()
    logger.setLevel(level)
    logger.handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    if log_format == "json":
        formatter = CustomJsonFormatter(JSON_FORMAT)
    elif settings.is_development:
        formatter = ColoredFormatter(TEXT_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')
    else:
        formatter = logging.Formatter(TEXT_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')

    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # File handler (if enabled and not in development)
    if log_file_enabled and not settings.is_development:
        log_dir = os.path.dirname(log_file_path)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file_path,
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
        )
        file_handler.setLevel(level)
        # Always use JSON for file logs
        file_handler.setFormatter(CustomJsonFormatter(JSON_FORMAT))
        logger.addHandler(file_handler)

    # Silence noisy libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)

    logger.info("Logging configured", extra={
        "log_level": log_level,
        "log_format": log_format,
        "environment": settings.effective_env,
    })


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance with the given name."""
    return logging.getLogger(name)
