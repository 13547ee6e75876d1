"""Logging configuration for qrlink.

Three groups of loggers are wired to the same handlers:

- ``qrlink``: the service itself, at ``logging.level``.
- ``aiohttp.server``, ``aiohttp.web`` and ``asyncio``: held at
  ``logging.library_level`` so handler tracebacks still surface.
- ``aiohttp.access``: one line per finished request. Event streams only
  finish when the lineage ends or the observer leaves, so the access log is
  off unless ``logging.access_log`` is set.
"""

import logging
from pathlib import Path

from qrlink.config import Config, LoggingConfig

PACKAGE_LOGGER = "qrlink"
ACCESS_LOGGER = "aiohttp.access"
LIBRARY_LOGGERS = ("aiohttp.server", "aiohttp.web", "asyncio")

# 2025-01-27 10:30:45 [INFO] qrlink.pairing.session: message
LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_logger: logging.Logger | None = None
_handlers: list[logging.Handler] = []


def _level(name: str, default: int) -> int:
    level = logging.getLevelName(str(name).upper())
    return level if isinstance(level, int) else default


def _build_handlers(settings: LoggingConfig) -> list[logging.Handler]:
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    handlers: list[logging.Handler] = []

    if settings.file:
        log_path = Path(settings.file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_path))

    handlers.append(logging.StreamHandler())
    for handler in handlers:
        handler.setFormatter(formatter)
    return handlers


def _attach(name: str, level: int) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.handlers.clear()
    for handler in _handlers:
        logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    logger.disabled = False
    return logger


def setup_logging(config: Config) -> logging.Logger:
    """Set up logging from the ``logging`` config section.

    Args:
        config: Service configuration.

    Returns:
        The ``qrlink`` package logger. Later calls return it unchanged until
        ``reset_logging`` runs.
    """
    global _logger

    if _logger is not None:
        return _logger

    settings = config.logging
    _handlers.extend(_build_handlers(settings))

    logger = _attach(PACKAGE_LOGGER, _level(settings.level, logging.INFO))
    for name in LIBRARY_LOGGERS:
        _attach(name, _level(settings.library_level, logging.WARNING))

    access = _attach(ACCESS_LOGGER, logging.INFO)
    if not settings.access_log:
        access.disabled = True

    _logger = logger
    return logger


def access_logger(config: Config) -> logging.Logger | None:
    """Access logger to hand to the aiohttp runner, or None to turn it off."""
    if not config.logging.access_log:
        return None
    return logging.getLogger(ACCESS_LOGGER)


def reset_logging() -> None:
    """Detach and close every configured handler. Used for testing."""
    global _logger

    for name in (PACKAGE_LOGGER, ACCESS_LOGGER, *LIBRARY_LOGGERS):
        logger = logging.getLogger(name)
        logger.handlers.clear()
        logger.setLevel(logging.NOTSET)
        logger.propagate = True
        logger.disabled = False

    for handler in _handlers:
        handler.close()
    _handlers.clear()
    _logger = None
