"""Structured logging for dockside.

Configured at import time from the environment (``LOG_LEVEL``, ``LOG_FORMAT``)
so every module can log before Settings load. ``[logging] level`` from the
config file is applied later through :func:`set_level`, and only when
``LOG_LEVEL`` is not set: the environment always wins.
"""

from __future__ import annotations

import logging
import os
import sys

import structlog

LOGGER_NAME = "dockside"
DEFAULT_LEVEL = "INFO"


def _level(name: str | None) -> int:
    return logging.getLevelNamesMapping().get((name or DEFAULT_LEVEL).upper(), logging.INFO)


def _renderer(fmt: str | None) -> structlog.types.Processor:
    if (fmt or "").lower() == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())


def configure(
    level_name: str | None = None, fmt: str | None = None
) -> structlog.stdlib.BoundLogger:
    """(Re)build the dockside logger: one stderr handler, structlog on top."""
    stdlib_logger = logging.getLogger(LOGGER_NAME)
    for handler in list(stdlib_logger.handlers):
        stdlib_logger.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(message)s"))
    stdlib_logger.addHandler(handler)
    stdlib_logger.setLevel(_level(level_name))
    stdlib_logger.propagate = False

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.format_exc_info,
            _renderer(fmt),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    return structlog.get_logger(LOGGER_NAME)


logger = configure(os.environ.get("LOG_LEVEL"), os.environ.get("LOG_FORMAT"))


def set_level(level_name: str | None) -> bool:
    """Apply a configured level. Returns False when LOG_LEVEL or None keeps the current one."""
    if level_name is None or os.environ.get("LOG_LEVEL"):
        return False
    logging.getLogger(LOGGER_NAME).setLevel(_level(level_name))
    return True


def _log_uncaught(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: object,
) -> None:
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)  # type: ignore[arg-type]
        return
    logger.critical("Uncaught exception", exc_info=(exc_type, exc_value, exc_tb))


sys.excepthook = _log_uncaught
