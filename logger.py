"""
Logging configuration for the router

Module loggers share one set of handlers: console, logs/canary_router.log and
logs/errors.log. Routing decisions go to their own JSON-lines file,
logs/decisions.log, so the per-request volume never drowns the service log.
"""
import logging
import sys
import threading
from pathlib import Path
from logging.handlers import RotatingFileHandler
from typing import Dict, List, Optional
from config import settings

LOG_DIR = Path("logs")
SERVICE_LOG = "canary_router.log"
ERROR_LOG = "errors.log"
DECISION_LOG = "decisions.log"
DECISION_LOGGER_NAME = "canary.decisions"

CONSOLE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
FILE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

_handlers_lock = threading.Lock()
_file_handlers: Dict[str, RotatingFileHandler] = {}


def _log_level() -> int:
    return getattr(logging, settings.log_level.upper(), logging.INFO)


def _file_handler(filename: str, level: int, formatter: logging.Formatter) -> RotatingFileHandler:
    # One handler per file: several handlers rotating the same file lose records
    with _handlers_lock:
        handler = _file_handlers.get(filename)
        if handler is None:
            LOG_DIR.mkdir(exist_ok=True)
            handler = RotatingFileHandler(
                LOG_DIR / filename,
                maxBytes=settings.log_file_max_bytes,
                backupCount=settings.log_file_backup_count
            )
            handler.setLevel(level)
            handler.setFormatter(formatter)
            _file_handlers[filename] = handler
        return handler


def _service_handlers(log_file: Optional[str]) -> List[logging.Handler]:
    file_format = logging.Formatter(FILE_FORMAT, datefmt=DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(_log_level())
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt=DATE_FORMAT))

    return [
        console_handler,
        _file_handler(log_file or SERVICE_LOG, logging.DEBUG, file_format),
        _file_handler(ERROR_LOG, logging.ERROR, file_format),
    ]


def get_logger(name: str, log_file: Optional[str] = None) -> logging.Logger:
    """Get configured logger instance with rotation"""
    logger = logging.getLogger(name)
    logger.setLevel(_log_level())

    # Prevent duplicate logs
    if logger.handlers:
        return logger

    for handler in _service_handlers(log_file):
        logger.addHandler(handler)
    logger.propagate = False

    return logger


def get_decision_logger() -> logging.Logger:
    """
    Logger for routing decision events

    Writes bare JSON lines to logs/decisions.log and nothing to the console.
    Disabled when ``log_decisions`` is off.
    """
    logger = logging.getLogger(DECISION_LOGGER_NAME)
    if logger.handlers:
        return logger

    logger.propagate = False
    if not settings.log_decisions:
        logger.addHandler(logging.NullHandler())
        return logger

    logger.setLevel(logging.INFO)
    logger.addHandler(_file_handler(DECISION_LOG, logging.INFO, logging.Formatter('%(message)s')))
    return logger


def configure_root_logger():
    """Configure the root logger for third-party libraries (redis, uvicorn)"""
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.WARNING)

    if not root_logger.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
        root_logger.addHandler(handler)


configure_root_logger()
