"""Audit trail for security-relevant events.

Records logins, logouts, session creation and destruction, 2FA changes
and backup-code use. Detail values under sensitive keys are masked before
they are stored or logged.
"""

from __future__ import annotations

import asyncio
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import structlog

from logistics_auth.domain.clock import utc_now

if TYPE_CHECKING:
    from datetime import datetime

    from logistics_auth.domain.clock import Clock

logger = structlog.get_logger(__name__)

# Keys that should not be logged (contain sensitive values)
_SENSITIVE_KEYS = frozenset(
    {
        "password",
        "secret",
        "token",
        "code",
        "credential",
        "private",
    }
)

MASK = "***"

_RESERVED_LOG_KEYS = frozenset({"event", "category", "audit_message", "success"})


class AuditCategory:
    AUTH = "auth"
    SESSION = "session"
    TWO_FACTOR = "two_factor"
    SECURITY = "security"


def _is_sensitive(key: str) -> bool:
    """Check if a key name suggests sensitive content."""
    key_lower = key.lower()
    return any(sensitive in key_lower for sensitive in _SENSITIVE_KEYS)


def mask_sensitive(data: dict[str, Any]) -> dict[str, Any]:
    return {k: (MASK if _is_sensitive(k) else v) for k, v in data.items()}


@dataclass
class AuditEntry:
    """One audit record.

    Attributes:
        category: Event family (auth, session, two_factor, security)
        message: Short event description
        details: Event details with sensitive values masked
        success: Whether the audited operation succeeded
        timestamp: When the event was recorded
    """

    category: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)
    success: bool = True
    timestamp: datetime | None = None

    @property
    def user_id(self) -> str | None:
        value = self.details.get("user_id")
        return str(value) if value is not None else None


class AuditTrail:
    """Bounded in-memory audit log.

    Example:
        ```python
        audit = AuditTrail(max_entries=1000)

        await audit.log("auth", "Login successful", {"user_id": "u1"})

        entries = audit.get_entries(category="auth")
        ```
    """

    def __init__(self, max_entries: int = 10000, clock: Clock = utc_now) -> None:
        """Initialize the audit trail.

        Args:
            max_entries: Maximum number of entries to retain.
                         Oldest entries are discarded when limit is reached.
            clock: Source of entry timestamps
        """
        self._entries: deque[AuditEntry] = deque(maxlen=max_entries)
        self._lock = asyncio.Lock()
        self._clock = clock

    async def log(
        self,
        category: str,
        message: str,
        data: dict[str, Any] | None = None,
        *,
        success: bool = True,
    ) -> None:
        """Record an audit event.

        Args:
            category: Event family
            message: Short description
            data: Event details (sensitive values are masked)
            success: Whether the operation succeeded
        """
        details = mask_sensitive(data or {})
        entry = AuditEntry(
            category=category,
            message=message,
            details=details,
            success=success,
            timestamp=self._clock(),
        )

        async with self._lock:
            self._entries.append(entry)

        log_func = logger.info if success else logger.warning
        log_func(
            "Audit event",
            category=category,
            audit_message=message,
            success=success,
            **{
                k: v
                for k, v in details.items()
                if not _is_sensitive(k) and k not in _RESERVED_LOG_KEYS
            },
        )

    def get_entries(
        self,
        category: str | None = None,
        user_id: str | None = None,
        limit: int | None = None,
    ) -> list[AuditEntry]:
        """Get audit entries in chronological order, optionally filtered."""
        entries = list(self._entries)

        if category is not None:
            entries = [e for e in entries if e.category == category]

        if user_id is not None:
            entries = [e for e in entries if e.user_id == user_id]

        if limit is not None:
            entries = entries[-limit:]

        return entries

    def clear(self) -> None:
        """Clear all audit entries."""
        self._entries.clear()
        logger.info("Audit trail cleared")

    @property
    def entry_count(self) -> int:
        return len(self._entries)


__all__ = [
    "AuditCategory",
    "AuditEntry",
    "AuditTrail",
    "mask_sensitive",
]
