"""Logging setup for the calendar engine

Conventions:
- obtain loggers through get_module_logger(__name__)
- calendar_<date>.log holds everything, calendar_error_<date>.log ERROR+
- alert.log collects WARNING+ raised by our own modules (oracle timeouts,
  skipped rules, store outages); third-party warnings stay out of it
"""

import inspect
import logging
import logging.handlers
import sys
from datetime import datetime
from pathlib import Path
from typing import Iterable, Optional


DEFAULT_LOG_LEVEL = logging.INFO
DEFAULT_LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
DEFAULT_LOG_DIR = "logs"
DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10MB
DEFAULT_BACKUP_COUNT = 5

LOG_FILE_PREFIX = "calendar"
ALERT_HANDLER_NAME = "alert_handler"
ERROR_HANDLER_NAME = "error_handler"

LOG_LEVEL_MAP = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}

# capped at WARNING and kept out of alert.log
NOISY_LOGGERS = (
    "aiosqlite",
    "asyncio",
    "httpx",
    "redis",
    "sqlalchemy.engine",
    "sqlalchemy.pool",
    "sqlalchemy.dialects",
    "sqlalchemy.orm",
    "uvicorn.access",
)


def parse_log_level(name: Optional[str]) -> int:
    """Level for a settings string, INFO when unknown"""
    return LOG_LEVEL_MAP.get((name or "").lower(), DEFAULT_LOG_LEVEL)


class ColoredFormatter(logging.Formatter):
    """Console formatter colouring the level name on a tty"""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        if not (hasattr(sys.stdout, "isatty") and sys.stdout.isatty()):
            return super().format(record)

        plain = record.levelname
        record.levelname = f"{self.COLORS.get(plain, self.RESET)}{plain}{self.RESET}"
        try:
            return super().format(record)
        finally:
            # file handlers format the same record afterwards
            record.levelname = plain


class AlertFilter(logging.Filter):
    """WARNING+ records that do not come from a noisy dependency"""

    def __init__(self, excluded: Iterable[str] = NOISY_LOGGERS):
        super().__init__()
        self.excluded = tuple(excluded)

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno < logging.WARNING:
            return False
        return not any(
            record.name == prefix or record.name.startswith(prefix + ".")
            for prefix in self.excluded
        )


def _rotating_handler(
    path: Path, level: int, formatter: logging.Formatter, max_bytes: int, backup_count: int
) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(
    log_dir: str = DEFAULT_LOG_DIR,
    log_level: int = DEFAULT_LOG_LEVEL,
    log_format: str = DEFAULT_LOG_FORMAT,
    date_format: str = DEFAULT_DATE_FORMAT,
    max_bytes: int = DEFAULT_MAX_BYTES,
    backup_count: int = DEFAULT_BACKUP_COUNT,
    console_output: bool = True,
    file_output: bool = True,
    enable_alert_log: bool = True,
) -> None:
    """Configure the root logger

    Args:
        log_dir: directory for log files, created only when file_output is set
        log_level: root log level
        log_format: record format
        date_format: timestamp format
        max_bytes: size limit of a single log file
        backup_count: number of rotated files kept
        console_output: emit to stdout
        file_output: emit to files under log_dir
        enable_alert_log: copy our own WARNING+ records to alert.log
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers.clear()

    if console_output:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(log_level)
        console_handler.setFormatter(ColoredFormatter(log_format, datefmt=date_format))
        root_logger.addHandler(console_handler)

    if file_output:
        directory = Path(log_dir)
        directory.mkdir(parents=True, exist_ok=True)
        day = datetime.now().strftime("%Y-%m-%d")
        formatter = logging.Formatter(log_format, datefmt=date_format)

        root_logger.addHandler(_rotating_handler(
            directory / f"{LOG_FILE_PREFIX}_{day}.log", log_level, formatter, max_bytes, backup_count
        ))
        error_handler = _rotating_handler(
            directory / f"{LOG_FILE_PREFIX}_error_{day}.log", logging.ERROR, formatter,
            max_bytes, backup_count,
        )
        error_handler.name = ERROR_HANDLER_NAME
        root_logger.addHandler(error_handler)
        if enable_alert_log:
            alert_handler = _rotating_handler(
                directory / "alert.log", logging.WARNING, formatter, max_bytes, backup_count
            )
            alert_handler.name = ALERT_HANDLER_NAME
            alert_handler.addFilter(AlertFilter())
            root_logger.addHandler(alert_handler)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(logging.WARNING)

    root_logger.info(
        "Logging initialised - level: %s, dir: %s",
        logging.getLevelName(log_level),
        log_dir if file_output else "-",
    )


def setup_logging_from_settings(settings) -> None:
    """Apply the LOG_* fields of the application settings"""
    setup_logging(
        log_dir=settings.LOG_DIR,
        log_level=parse_log_level(settings.LOG_LEVEL),
        file_output=settings.LOG_FILE_OUTPUT,
        enable_alert_log=settings.LOG_ALERT_OUTPUT,
    )


def get_module_logger(module_name: Optional[str] = None) -> logging.Logger:
    """Return a module level logger, named after the caller when no name is given"""
    if module_name is None:
        frame = inspect.currentframe()
        caller = frame.f_back if frame else None
        module_name = caller.f_globals.get("__name__", "unknown") if caller else "unknown"
    return logging.getLogger(module_name)


def set_log_level(level: str) -> None:
    """Change the root level and every root handler at runtime

    The error and alert files keep their own thresholds.
    """
    log_level = parse_log_level(level)
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    for handler in root_logger.handlers:
        if handler.name not in (ERROR_HANDLER_NAME, ALERT_HANDLER_NAME):
            handler.setLevel(log_level)

    logging.info("Log level set to %s", logging.getLevelName(log_level))
