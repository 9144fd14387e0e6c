"""Logging setup for pairlink processes.

Every module logs through a child of the "pairlink" logger. The relay also
routes aiohttp's access log through the same handlers, so a single log file
shows both the HTTP traffic and what the store did with it.
"""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from pairlink.config import Config

PACKAGE_LOGGER = "pairlink"
ACCESS_LOGGER = "aiohttp.access"

# 2025-01-27 10:30:45 [INFO] pairlink.server: message
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

MAX_LOG_BYTES = 1_000_000
LOG_BACKUPS = 3

# Handlers shared by every configured logger, and the loggers they are on
_handlers: list[logging.Handler] = []
_configured: list[logging.Logger] = []


def _build_handlers(config: Config) -> list[logging.Handler]:
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if config.log_file:
        log_path = Path(config.log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            RotatingFileHandler(
                log_path, maxBytes=MAX_LOG_BYTES, backupCount=LOG_BACKUPS
            )
        )

    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def _attach(logger: logging.Logger, level: int) -> None:
    logger.setLevel(level)
    for handler in _handlers:
        logger.addHandler(handler)
    logger.propagate = False
    _configured.append(logger)


def setup_logging(config: Config, access_log: bool = False) -> logging.Logger:
    """Attach console and (optionally) rotating file handlers.

    The first call decides level and destinations. Later calls reuse them
    and only add the access log if it was not attached yet.

    Args:
        config: Supplies log_level and log_file.
        access_log: Also route aiohttp's access log (the relay does).

    Returns:
        The "pairlink" package logger.
    """
    package = logging.getLogger(PACKAGE_LOGGER)

    if not _configured:
        _handlers.extend(_build_handlers(config))
        _attach(package, getattr(logging, config.log_level.upper(), logging.INFO))

    access = logging.getLogger(ACCESS_LOGGER)
    if access_log and access not in _configured:
        _attach(access, package.level)

    return package


def reset_logging() -> None:
    """Detach and close every handler added by setup_logging."""
    for logger in _configured:
        for handler in _handlers:
            logger.removeHandler(handler)
        logger.propagate = True
    for handler in _handlers:
        handler.close()
    _configured.clear()
    _handlers.clear()
