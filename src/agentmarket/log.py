"""Logging helpers for the agentmarket runtime.

All runtime modules log under the ``agentmarket`` logger hierarchy. Nothing is
configured at import time; applications (or the CLI) call
:func:`configure_logging`.
"""

from __future__ import annotations

import logging

_root_logger = logging.getLogger("agentmarket")

_PREVIEW_LENGTH = 6


def configure_logging(
    level: int | str = logging.INFO,
    handler: logging.Handler | None = None,
    format_string: str | None = None,
) -> None:
    """
    Configure the agentmarket loggers.

    Args:
        level: Log level for the whole hierarchy (default: INFO)
        handler: Custom handler (default: StreamHandler to stderr)
        format_string: Custom format string; ignored when the handler already
            has a formatter
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    if handler is None:
        handler = logging.StreamHandler()
    if handler.formatter is None:
        handler.setFormatter(
            logging.Formatter(format_string or "%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )

    for existing in list(_root_logger.handlers):
        _root_logger.removeHandler(existing)
    _root_logger.addHandler(handler)
    _root_logger.setLevel(level)


def get_logger(name: str | None = None) -> logging.Logger:
    """Return ``agentmarket`` or ``agentmarket.<name>``."""
    if name is None:
        return _root_logger
    return logging.getLogger(f"agentmarket.{name}")


def redact(value: str | None) -> str:
    """Shorten a transaction ref or challenge token for log output."""
    if not value:
        return "<none>"
    if len(value) <= _PREVIEW_LENGTH * 2:
        return "[REDACTED]"
    return f"{value[:_PREVIEW_LENGTH]}...{value[-_PREVIEW_LENGTH:]}"
