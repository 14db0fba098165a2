"""In-memory collaborators for development and tests.

Each store guards its dict with an ``asyncio.Lock`` so that concurrent
coroutines observe linearizable reads and writes.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import TYPE_CHECKING, Any

import structlog

from logistics_auth.domain.clock import utc_now
from logistics_auth.domain.model.users import User
from logistics_auth.errors import RegistrationError

if TYPE_CHECKING:
    from logistics_auth.domain.clock import Clock
    from logistics_auth.domain.model.sessions import Session

logger = structlog.get_logger(__name__)


class InMemorySessionStore:
    """SessionStore backed by a dict of deep copies."""

    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()

    async def get(self, session_id: str) -> Session | None:
        async with self._lock:
            session = self._sessions.get(session_id)
            return session.model_copy(deep=True) if session else None

    async def put(self, session: Session) -> None:
        async with self._lock:
            self._sessions[session.id] = session.model_copy(deep=True)

    async def delete(self, session_id: str) -> bool:
        async with self._lock:
            return self._sessions.pop(session_id, None) is not None

    async def scan(self) -> list[Session]:
        async with self._lock:
            return [s.model_copy(deep=True) for s in self._sessions.values()]

    def __len__(self) -> int:
        return len(self._sessions)


class InMemoryTwoFactorStore:
    """TwoFactorStore backed by dicts."""

    def __init__(self) -> None:
        self._secrets: dict[str, str] = {}
        self._enabled: set[str] = set()
        self._backup_codes: dict[str, set[str]] = {}
        self._lock = asyncio.Lock()

    async def get_secret(self, user_id: str) -> str | None:
        async with self._lock:
            return self._secrets.get(user_id)

    async def set_secret(self, user_id: str, secret: str) -> None:
        async with self._lock:
            self._secrets[user_id] = secret

    async def is_enabled(self, user_id: str) -> bool:
        async with self._lock:
            return user_id in self._enabled

    async def set_enabled(self, user_id: str, enabled: bool) -> None:
        async with self._lock:
            if enabled:
                self._enabled.add(user_id)
            else:
                self._enabled.discard(user_id)

    async def get_backup_codes(self, user_id: str) -> frozenset[str]:
        async with self._lock:
            return frozenset(self._backup_codes.get(user_id, ()))

    async def set_backup_codes(self, user_id: str, code_hashes: frozenset[str]) -> None:
        async with self._lock:
            self._backup_codes[user_id] = set(code_hashes)

    async def consume_backup_code(self, user_id: str, code_hash: str) -> bool:
        async with self._lock:
            codes = self._backup_codes.get(user_id)
            if not codes or code_hash not in codes:
                return False
            codes.remove(code_hash)
            return True

    async def clear(self, user_id: str) -> None:
        async with self._lock:
            self._secrets.pop(user_id, None)
            self._enabled.discard(user_id)
            self._backup_codes.pop(user_id, None)


class InMemoryUserService:
    """UserService keeping accounts in memory, keyed by ID.

    Emails are compared case-insensitively and must be unique, as must
    usernames when given.
    """

    def __init__(self, clock: Clock = utc_now) -> None:
        self._users: dict[str, User] = {}
        self._lock = asyncio.Lock()
        self._clock = clock

    async def get_user_by_email(self, email: str) -> User | None:
        needle = email.strip().lower()
        async with self._lock:
            user = next((u for u in self._users.values() if u.email == needle), None)
            return user.model_copy(deep=True) if user else None

    async def get_user_by_username(self, username: str) -> User | None:
        async with self._lock:
            user = next((u for u in self._users.values() if u.username == username), None)
            return user.model_copy(deep=True) if user else None

    async def get_user_by_id(self, user_id: str) -> User | None:
        async with self._lock:
            user = self._users.get(user_id)
            return user.model_copy(deep=True) if user else None

    async def create_user(self, data: dict[str, Any]) -> User:
        """Store a new account.

        Raises:
            RegistrationError: If the email or username is already registered
        """
        now = self._clock()
        fields = {**data, "email": str(data.get("email", "")).strip().lower()}
        fields.setdefault("id", uuid.uuid4().hex)
        fields.setdefault("created_at", now)
        fields.setdefault("updated_at", now)
        user = User.model_validate(fields)

        async with self._lock:
            if any(u.email == user.email for u in self._users.values()):
                raise RegistrationError("email already registered")
            if user.username and any(u.username == user.username for u in self._users.values()):
                raise RegistrationError("username already taken")
            self._users[user.id] = user

        logger.debug("User created", user_id=user.id, role=user.role)
        return user.model_copy(deep=True)

    async def update_user(self, user_id: str, patch: dict[str, Any]) -> User | None:
        async with self._lock:
            user = self._users.get(user_id)
            if user is None:
                return None
            updated = User.model_validate(
                {**user.model_dump(), **patch, "id": user_id, "updated_at": self._clock()}
            )
            self._users[user_id] = updated
            return updated.model_copy(deep=True)

    def __len__(self) -> int:
        return len(self._users)
