"""Structured logging for the authentication core.

structlog renders either coloured console lines (development) or one JSON
object per event (production). Credential material never reaches a sink:
``redact_sensitive`` runs before any renderer and masks passwords, secrets,
tokens and codes, including inside nested mappings such as audit details.
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Mapping
from typing import Any

import structlog

SENSITIVE_KEYS = frozenset(
    {
        "password",
        "secret",
        "token",
        "code",
        "backup_code",
        "backup_codes",
    }
)
SENSITIVE_SUFFIXES = ("_password", "_secret", "_token")

REDACTED = "***"

# Third-party loggers that are chatty at DEBUG (aiosqlite logs every call).
NOISY_LOGGERS = ("aiosqlite", "sqlalchemy.engine", "sqlalchemy.pool")


def _is_sensitive(key: Any) -> bool:
    if not isinstance(key, str):
        return False
    lowered = key.lower()
    return lowered in SENSITIVE_KEYS or lowered.endswith(SENSITIVE_SUFFIXES)


def _redact(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {k: REDACTED if _is_sensitive(k) else _redact(v) for k, v in value.items()}
    return value


def redact_sensitive(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """structlog processor masking credential values at any depth."""
    for key, value in event_dict.items():
        event_dict[key] = REDACTED if _is_sensitive(key) else _redact(value)
    return event_dict


def setup_logging(
    level: str | None = None,
    log_format: str | None = None,
) -> None:
    """Configure structlog and the standard library root logger.

    Args:
        level: DEBUG, INFO, WARNING or ERROR. Falls back to ``AUTH_LOG_LEVEL``,
            then INFO.
        log_format: 'console' or 'json'. Falls back to ``AUTH_LOG_FORMAT``,
            then 'console'.
    """
    level = level or os.environ.get("AUTH_LOG_LEVEL", "INFO")
    log_format = log_format or os.environ.get("AUTH_LOG_FORMAT", "console")
    log_level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=log_level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.PositionalArgumentsFormatter(),
        redact_sensitive,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    renderer: list[Any]
    if log_format == "json":
        renderer = [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        renderer = [
            structlog.dev.ConsoleRenderer(
                colors=sys.stdout.isatty(),
                exception_formatter=structlog.dev.plain_traceback,
            )
        ]

    structlog.configure(
        processors=[*shared_processors, *renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


class LogContext:
    """Bind request-scoped fields (user_id, session_id) to log events.

    Nested contexts may rebind a key; the outer value comes back on exit.

    Example:
        with LogContext(user_id=user.id, session_id=session.id):
            logger.info("Session refreshed")
    """

    def __init__(self, **kwargs: Any) -> None:
        self._context = kwargs
        self._previous: dict[str, Any] = {}

    def __enter__(self) -> LogContext:
        current = structlog.contextvars.get_contextvars()
        self._previous = {k: current[k] for k in self._context if k in current}
        structlog.contextvars.bind_contextvars(**self._context)
        return self

    def __exit__(self, *args: Any) -> None:
        structlog.contextvars.unbind_contextvars(*self._context.keys())
        if self._previous:
            structlog.contextvars.bind_contextvars(**self._previous)
