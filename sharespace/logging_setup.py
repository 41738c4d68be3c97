import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from flask import g, has_request_context

from . import config

numeric_level = getattr(logging, config.LOG_LEVEL, logging.INFO)
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s request_id=%(request_id)s %(message)s"


class RequestIdFilter(logging.Filter):
    """Stamp each record with the id of the request being served, or ``-``."""

    def filter(self, record: logging.LogRecord) -> bool:
        request_id = None
        if has_request_context():
            request_id = g.get("request_id")
        record.request_id = request_id or "-"
        return True


_request_filter = RequestIdFilter()


def _attach(handler: logging.Handler, formatter: logging.Formatter) -> None:
    handler.setLevel(numeric_level)
    handler.setFormatter(formatter)
    if not any(isinstance(existing, RequestIdFilter) for existing in handler.filters):
        handler.addFilter(_request_filter)


def configure_logging() -> Path:
    """Set the root level and attach the rotating application log handler."""

    config.ensure_directories()
    log_path = config.LOGS_DIR / "application.log"
    formatter = logging.Formatter(LOG_FORMAT)
    root_logger = logging.getLogger()
    if not root_logger.handlers:
        logging.basicConfig(level=numeric_level)
        for handler in root_logger.handlers:
            _attach(handler, formatter)
    root_logger.setLevel(numeric_level)

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and handler.baseFilename == str(log_path):
            _attach(handler, formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=config.LOG_FILE_MAX_BYTES,
        backupCount=config.LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    _attach(file_handler, formatter)
    root_logger.addHandler(file_handler)
    return log_path


def get_logger(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(numeric_level)
    return logger
