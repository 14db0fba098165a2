"""Interfaces of the collaborators the core consumes.

Implementations live in ``logistics_auth.adapters``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from logistics_auth.domain.model.sessions import Session
    from logistics_auth.domain.model.users import User


@runtime_checkable
class AuditSink(Protocol):
    """Fire-and-forget audit log."""

    async def log(
        self,
        category: str,
        message: str,
        data: dict[str, Any] | None = None,
        *,
        success: bool = True,
    ) -> None: ...


@runtime_checkable
class UserService(Protocol):
    """Credential storage and lookup."""

    async def get_user_by_email(self, email: str) -> User | None: ...

    async def get_user_by_username(self, username: str) -> User | None: ...

    async def get_user_by_id(self, user_id: str) -> User | None: ...

    async def create_user(self, data: dict[str, Any]) -> User: ...

    async def update_user(self, user_id: str, patch: dict[str, Any]) -> User | None: ...


@runtime_checkable
class SessionStore(Protocol):
    """Snapshot storage used to survive process restarts."""

    async def get(self, session_id: str) -> Session | None: ...

    async def put(self, session: Session) -> None: ...

    async def delete(self, session_id: str) -> bool: ...

    async def scan(self) -> list[Session]: ...


@runtime_checkable
class TwoFactorStore(Protocol):
    """Per-user TOTP secret, enabled flag and backup-code hashes."""

    async def get_secret(self, user_id: str) -> str | None: ...

    async def set_secret(self, user_id: str, secret: str) -> None: ...

    async def is_enabled(self, user_id: str) -> bool: ...

    async def set_enabled(self, user_id: str, enabled: bool) -> None: ...

    async def get_backup_codes(self, user_id: str) -> frozenset[str]: ...

    async def set_backup_codes(self, user_id: str, code_hashes: frozenset[str]) -> None: ...

    async def consume_backup_code(self, user_id: str, code_hash: str) -> bool:
        """Remove ``code_hash`` if present; True only for the call that removed it."""
        ...

    async def clear(self, user_id: str) -> None: ...


__all__ = ["AuditSink", "SessionStore", "TwoFactorStore", "UserService"]
