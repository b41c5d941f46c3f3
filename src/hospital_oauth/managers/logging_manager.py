"""
Centralized logging manager for the application.

Every module obtains its logger through get_logger(). Loggers share one
format and get:
- a console StreamHandler on stdout,
- a per-worker file handler under logs/ when LOG_TO_FILE is enabled,
- a LokiLoggerHandler when LOKI_ENABLED is set,
- an optional message prefix (e.g. "[OAuth2 Token Service]").

Loki Downtime Handling:
----------------------
Records sent while Loki is unreachable are dropped by the handler; console
and file output are unaffected. Use a log shipper (Promtail, Fluentd) on the
worker files when delivery must be guaranteed.
"""

import logging
import os
import sys

from loki_logger_handler.loki_logger_handler import LokiLoggerHandler

from hospital_oauth.config import settings

LOKI_URL: str = settings.LOKI_URL
LOKI_TAGS: dict[str, str] = {
    "app": settings.APP_NAME,
    "env": settings.ENV,
}
LOG_LEVEL: str = settings.LOG_LEVEL.upper()
LOKI_COMPRESS: bool = settings.LOKI_COMPRESS

DEFAULT_LOGGER_NAME = "Hospital_OAuth"
LOG_FORMAT = "[%(asctime)s] %(levelname)s in %(name)s: %(message)s"


class PrefixFilter(logging.Filter):
    """Prepend a fixed prefix to every record passing through a logger."""

    def __init__(self, prefix: str):
        super().__init__()
        self.prefix = prefix

    def filter(self, record: logging.LogRecord) -> bool:
        if self.prefix and not getattr(record, "_prefix_applied", False):
            record.msg = f"{self.prefix} {record.msg}"
            record._prefix_applied = True
        return True


def _ensure_console_handler(logger: logging.Logger, formatter: logging.Formatter) -> bool:
    """
    Ensure logger has a StreamHandler for console output.

    Returns:
        bool: True if a new StreamHandler was added, False if one already existed
    """
    for handler in logger.handlers:
        if isinstance(handler, logging.StreamHandler) and getattr(handler, "stream", None) is sys.stdout:
            return False

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    console_handler.setLevel(logger.level)
    logger.addHandler(console_handler)
    return True


def get_worker_log_filename() -> str:
    return os.path.join("logs", f"worker_{os.getpid()}.log")


def _ensure_file_handler(logger: logging.Logger, formatter: logging.Formatter) -> None:
    log_filename = get_worker_log_filename()
    os.makedirs(os.path.dirname(log_filename), exist_ok=True)
    if any(
        isinstance(h, logging.FileHandler) and getattr(h, "baseFilename", None) == os.path.abspath(log_filename)
        for h in logger.handlers
    ):
        return
    file_handler = logging.FileHandler(log_filename)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)


def _ensure_loki_handler(logger: logging.Logger, name: str) -> None:
    if any(isinstance(h, LokiLoggerHandler) for h in logger.handlers):
        return
    try:
        loki_handler = LokiLoggerHandler(
            url=LOKI_URL,
            labels=LOKI_TAGS,
            auth=None,
            compressed=LOKI_COMPRESS,
        )
    except (ValueError, OSError) as e:
        logger.error("[LoggingManager] Failed to attach LokiLoggerHandler to '%s': %s", name, e, exc_info=True)
        return
    logger.addHandler(loki_handler)
    logger.debug("[LoggingManager] LokiLoggerHandler attached to logger '%s' (url=%s)", name, LOKI_URL)


def get_logger(name: str = DEFAULT_LOGGER_NAME, add_loki: bool = True, prefix: str = "") -> logging.Logger:
    """
    Get a configured logger.

    Loggers are keyed by name, so modules that share a name also share
    handlers; the prefix filter is installed once per distinct prefix.

    Args:
        name: Logger name
        add_loki: Attach the Loki handler when LOKI_ENABLED is set
        prefix: Text prepended to every message

    Returns:
        logging.Logger: The configured logger
    """
    logger_name = f"{name}-{prefix.strip('[] ').replace(' ', '_')}" if prefix else name
    logger = logging.getLogger(logger_name)
    logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))

    formatter = logging.Formatter(LOG_FORMAT)
    _ensure_console_handler(logger, formatter)

    if settings.LOG_TO_FILE:
        _ensure_file_handler(logger, formatter)

    if prefix and not any(isinstance(f, PrefixFilter) for f in logger.filters):
        logger.addFilter(PrefixFilter(prefix))

    if add_loki and settings.LOKI_ENABLED:
        _ensure_loki_handler(logger, logger_name)

    return logger
