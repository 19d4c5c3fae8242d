"""
Logging setup for applications embedding gamequery

The library itself only emits structlog events (``structlog.get_logger()``
in each module, snake_case event names). setup_logging() is for the
embedding application: it attaches handlers to the ``gamequery`` stdlib
logger, so the host application's root logger is left alone, and renders
structlog events as JSON lines.
"""
from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from typing import List, Optional

import structlog
import structlog.stdlib

from gamequery.config import Settings, settings as default_settings

PACKAGE_LOGGER = "gamequery"

_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_MAX_BYTES = 5 * 1024 * 1024
_BACKUPS = 5


def _build_handlers(component: str, settings: Settings) -> List[logging.Handler]:
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if settings.log_dir is not None:
        settings.log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(settings.log_dir / f"{component}.log", maxBytes=_MAX_BYTES, backupCount=_BACKUPS)
        )
    formatter = logging.Formatter(_FORMAT)
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def setup_logging(
    component: str = "gamequery",
    level: Optional[int] = None,
    settings: Optional[Settings] = None,
) -> logging.Logger:
    """
    Route gamequery's log events to stderr and ``<log_dir>/<component>.log``.

    Args:
        component: Log file name stem
        level: Log level; defaults to DEBUG when ``settings.debug`` is on,
            INFO otherwise
        settings: Settings providing ``debug`` and ``log_dir``

    Calling it again replaces the handlers installed by the previous call.
    """
    settings = settings or default_settings
    if level is None:
        level = logging.DEBUG if settings.debug else logging.INFO

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()
    for handler in _build_handlers(component, settings):
        package_logger.addHandler(handler)
    package_logger.setLevel(level)
    package_logger.propagate = False

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    package_logger.debug("logging_initialized component=%s", component)
    return package_logger
