"""Structured logging for the snapshot storage tooling."""
from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog import contextvars

from .store import REDACTED_VALUE

_SECRET_FIELDS = frozenset({"secret_access_key", "client_secret", "json_file", "password", "credentials"})


def _mask_secret_values(_: Any, __: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    for key in list(event_dict):
        if key.lower() in _SECRET_FIELDS and event_dict[key]:
            event_dict[key] = REDACTED_VALUE
    return event_dict


def configure_logging(level: str = "INFO", log_format: str = "console") -> None:
    """Route structlog through stdlib logging on stderr so command output stays parseable."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=[logging.StreamHandler(sys.stderr)],
        format="%(message)s",
        force=True,
    )
    renderer: Any = (
        structlog.processors.JSONRenderer()
        if log_format == "json"
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            _mask_secret_values,
            renderer,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def get_logger(name: str | None = None, **initial_values: Any) -> structlog.stdlib.BoundLogger:
    if name is not None:
        return structlog.get_logger(name, **initial_values)
    return structlog.get_logger(**initial_values)


__all__ = ["configure_logging", "get_logger"]
