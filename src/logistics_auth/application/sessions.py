"""Session lifecycle management.

Sessions live in an in-memory dict guarded by one ``asyncio.Lock``. All
reads and writes of the dict take that lock, and callers only ever receive
copies. Snapshot I/O against the optional SessionStore happens after the
lock is released and is bounded by ``store_timeout``. Writes and deletes
of one session's snapshot are serialized by a per-session lock, and a
write only goes out while the session is still in memory.

A session is usable while both its absolute expiry (``expires_at``) and
its rolling idle expiry (``idle_expires_at``) lie in the future. Reads
never extend the idle expiry; only ``update_session``/``refresh_session``
record activity.
"""

from __future__ import annotations

import asyncio
import contextlib
import secrets
from datetime import timedelta
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import ValidationError

from logistics_auth.application.audit import AuditCategory
from logistics_auth.domain.clock import utc_now
from logistics_auth.domain.model.sessions import DeviceInfo, Session, SessionState
from logistics_auth.errors import SessionStoreTimeoutError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Mapping
    from datetime import datetime

    from logistics_auth.application.ports import AuditSink, SessionStore
    from logistics_auth.domain.clock import Clock
    from logistics_auth.domain.model.users import User
    from logistics_auth.security.tokens import TokenService

logger = structlog.get_logger(__name__)

_UPDATABLE_FIELDS = frozenset(
    {"device_info", "two_factor_pending", "user_role", "user_permissions"}
)
# Changing any of these invalidates the claims of the current access token.
_CLAIM_FIELDS = frozenset({"two_factor_pending", "user_role", "user_permissions"})


class SessionManager:
    """Creates, reads, refreshes and destroys sessions.

    Example:
        manager = SessionManager(tokens, audit=audit_trail, store=snapshot_store)
        await manager.start()
        session = await manager.create_session(user)
        ...
        await manager.destroy_session(session.id, reason="logout")
        await manager.stop()
    """

    def __init__(
        self,
        tokens: TokenService,
        audit: AuditSink,
        store: SessionStore | None = None,
        *,
        session_timeout: timedelta = timedelta(hours=24),
        idle_timeout: timedelta = timedelta(minutes=30),
        max_sessions_per_user: int = 3,
        refresh_threshold: timedelta = timedelta(minutes=5),
        cleanup_interval: float = 3600.0,
        store_timeout: float = 5.0,
        clock: Clock = utc_now,
    ) -> None:
        """Initialize the session manager.

        Args:
            tokens: Token service minting the session's tokens
            audit: Audit sink for create/destroy events
            store: Optional snapshot store for restart recovery
            session_timeout: Absolute session lifetime
            idle_timeout: Max gap between activities
            max_sessions_per_user: Concurrent sessions kept per user
            refresh_threshold: Re-mint the access token when it expires within this window
            cleanup_interval: Seconds between background sweeps
            store_timeout: Deadline in seconds for each snapshot store call
            clock: Source of the current time
        """
        if max_sessions_per_user < 1:
            raise ValueError("max_sessions_per_user must be at least 1")

        self._tokens = tokens
        self._audit = audit
        self._store = store
        self.session_timeout = session_timeout
        self.idle_timeout = idle_timeout
        self.max_sessions_per_user = max_sessions_per_user
        self.refresh_threshold = refresh_threshold
        self._cleanup_interval = cleanup_interval
        self._store_timeout = store_timeout
        self._clock = clock

        self._sessions: dict[str, Session] = {}
        self._lock = asyncio.Lock()
        # Per-session locks ordering snapshot writes against deletes.
        self._store_locks: dict[str, asyncio.Lock] = {}

        self._running = False
        self._cleanup_task: asyncio.Task[None] | None = None

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start the periodic cleanup sweep."""
        if self._running:
            return

        self._cleanup_task = asyncio.create_task(self._periodic_cleanup())
        self._running = True
        logger.info(
            "Session manager started",
            cleanup_interval=self._cleanup_interval,
            max_sessions_per_user=self.max_sessions_per_user,
        )

    async def stop(self) -> None:
        """Stop the periodic cleanup sweep."""
        if not self._running:
            return

        if self._cleanup_task:
            self._cleanup_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._cleanup_task
            self._cleanup_task = None

        self._running = False
        logger.info("Session manager stopped", active_sessions=len(self._sessions))

    @property
    def is_running(self) -> bool:
        return self._running

    async def _periodic_cleanup(self) -> None:
        while True:
            try:
                await asyncio.sleep(self._cleanup_interval)
                await self.cleanup_expired_sessions()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in periodic session cleanup", error=str(e))

    # -------------------------------------------------------------------------
    # Snapshot store helpers
    # -------------------------------------------------------------------------

    async def _with_deadline(self, operation: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(operation, timeout=self._store_timeout)
        except TimeoutError as e:
            logger.warning("Session store timeout", timeout=self._store_timeout)
            raise SessionStoreTimeoutError() from e

    def _store_lock(self, session_id: str) -> asyncio.Lock:
        return self._store_locks.setdefault(session_id, asyncio.Lock())

    async def _persist(self, session: Session) -> None:
        """Write the in-memory state of ``session`` to the store.

        Skipped once the session has left memory, so a write racing a
        destroy cannot bring a deleted snapshot back.
        """
        if self._store is None:
            return
        async with self._store_lock(session.id):
            async with self._lock:
                current = self._sessions.get(session.id)
                snapshot = current.model_copy(deep=True) if current else None
            if snapshot is not None:
                await self._with_deadline(self._store.put(snapshot))

    async def _forget(self, session_id: str) -> None:
        if self._store is None:
            return
        async with self._store_lock(session_id):
            await self._with_deadline(self._store.delete(session_id))
        self._store_locks.pop(session_id, None)

    async def _finish_destroy(self, session: Session, reason: str) -> None:
        """Clear the snapshot and audit a session already removed from memory."""
        await self._forget(session.id)

        duration = (self._clock() - session.created_at).total_seconds()
        await self._audit.log(
            AuditCategory.SESSION,
            "Session destroyed",
            {
                "session_id": session.id,
                "user_id": session.user_id,
                "reason": reason,
                "duration_seconds": round(duration, 3),
            },
        )

    # -------------------------------------------------------------------------
    # Core operations
    # -------------------------------------------------------------------------

    async def create_session(
        self,
        user: User,
        device_info: DeviceInfo | Mapping[str, Any] | None = None,
        *,
        two_factor_pending: bool = False,
    ) -> Session:
        """Create a session with fresh access and refresh tokens.

        When the user already holds ``max_sessions_per_user`` sessions, the
        oldest ones are destroyed so the count stays at the limit.
        """
        now = self._clock()
        session_id = secrets.token_urlsafe(32)
        device = (
            device_info
            if isinstance(device_info, DeviceInfo)
            else DeviceInfo.model_validate(dict(device_info or {}))
        )

        session = Session(
            id=session_id,
            user_id=user.id,
            user_role=user.role,
            user_permissions=list(user.permissions),
            created_at=now,
            last_activity=now,
            expires_at=now + self.session_timeout,
            idle_expires_at=now + self.idle_timeout,
            device_info=device,
            access_token=self._tokens.create_access_token(
                user.id,
                user.role,
                list(user.permissions),
                session_id,
                two_factor_pending=two_factor_pending,
            ),
            refresh_token=self._tokens.create_refresh_token(user.id, session_id),
            two_factor_pending=two_factor_pending,
        )

        async with self._lock:
            owned = sorted(
                (s for s in self._sessions.values() if s.user_id == user.id),
                key=lambda s: s.created_at,
            )
            overflow = len(owned) - self.max_sessions_per_user + 1
            evicted = owned[:overflow] if overflow > 0 else []
            for old in evicted:
                del self._sessions[old.id]
            self._sessions[session_id] = session
            result = session.model_copy(deep=True)

        for old in evicted:
            await self._finish_destroy(old, "session_limit")

        await self._persist(session)
        await self._audit.log(
            AuditCategory.SESSION,
            "Session created",
            {
                "session_id": session_id,
                "user_id": user.id,
                "role": user.role,
                "platform": device.platform,
                "ip_address": device.ip_address,
            },
        )
        return result

    async def get_session(self, session_id: str) -> Session | None:
        """Return a copy of a live session; expired sessions are evicted."""
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            state = session.state_at(self._clock())
            if state is SessionState.ACTIVE:
                return session.model_copy(deep=True)
            del self._sessions[session_id]

        await self._finish_destroy(session, state.value)
        return None

    async def update_session(self, session_id: str, **changes: Any) -> Session | None:
        """Record activity on a session and apply ``changes``.

        Extends the idle expiry and rotates the access token when it is
        close to expiry or when the role, permissions or two-factor flag
        change.

        Returns:
            The updated session, or None if it is missing or expired

        Raises:
            ValueError: If ``changes`` names a field that cannot be updated
        """
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"cannot update session fields: {', '.join(sorted(unknown))}")
        return await self._touch(session_id, changes, force=bool(_CLAIM_FIELDS & set(changes)))

    async def refresh_session(self, session_id: str, force: bool = False) -> Session | None:
        """Record activity; with ``force`` always re-mint the access token."""
        return await self._touch(session_id, {}, force=force)

    async def _touch(
        self, session_id: str, changes: dict[str, Any], force: bool
    ) -> Session | None:
        now = self._clock()
        async with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            state = session.state_at(now)
            if state is not SessionState.ACTIVE:
                del self._sessions[session_id]
                expired: Session | None = session
            else:
                expired = None
                if "device_info" in changes and not isinstance(changes["device_info"], DeviceInfo):
                    changes["device_info"] = DeviceInfo.model_validate(changes["device_info"])
                updated = session.model_copy(update=changes, deep=True)
                updated.last_activity = now
                updated.idle_expires_at = now + self.idle_timeout

                rotated = force or self._needs_rotation(updated.access_token, now)
                if rotated:
                    updated.access_token = self._tokens.create_access_token(
                        updated.user_id,
                        updated.user_role,
                        updated.user_permissions,
                        updated.id,
                        two_factor_pending=updated.two_factor_pending,
                    )
                self._sessions[session_id] = updated
                result = updated.model_copy(deep=True)

        if expired is not None:
            await self._finish_destroy(expired, state.value)
            return None

        await self._persist(result)
        if rotated:
            logger.debug("Access token rotated", session_id=session_id, user_id=result.user_id)
        return result

    def _needs_rotation(self, access_token: str, now: datetime) -> bool:
        expiration = self._tokens.get_token_expiration(access_token)
        return expiration is None or expiration - now <= self.refresh_threshold

    async def destroy_session(self, session_id: str, reason: str = "logout") -> bool:
        """Destroy a session. Destroying an unknown session is a no-op returning False."""
        async with self._lock:
            session = self._sessions.pop(session_id, None)

        if session is None:
            return False

        await self._finish_destroy(session, reason)
        return True

    async def is_valid_session(self, session: Session) -> bool:
        """True if the session is live and its access token verifies for it."""
        async with self._lock:
            current = self._sessions.get(session.id)
            if current is None or not current.is_active_at(self._clock()):
                return False

        verification = self._tokens.verify_token(session.access_token)
        if not verification.valid or verification.payload is None:
            return False
        return verification.payload.get("session_id") == session.id

    def get_state(self, session: Session) -> SessionState:
        return session.state_at(self._clock())

    async def cleanup_expired_sessions(self) -> int:
        """Evict every idle- or absolute-expired session.

        Expired IDs are collected under the lock, then each one is evicted
        with its own short lock hold.

        Returns:
            Number of sessions evicted
        """
        now = self._clock()
        async with self._lock:
            candidates = [s.id for s in self._sessions.values() if not s.is_active_at(now)]

        evicted = 0
        for session_id in candidates:
            async with self._lock:
                session = self._sessions.get(session_id)
                if session is None or session.is_active_at(self._clock()):
                    continue
                state = session.state_at(self._clock())
                del self._sessions[session_id]
            await self._finish_destroy(session, state.value)
            evicted += 1

        if evicted:
            logger.info("Expired sessions cleaned up", count=evicted)
        return evicted

    # -------------------------------------------------------------------------
    # Bulk operations and inspection
    # -------------------------------------------------------------------------

    async def get_user_sessions(self, user_id: str) -> list[Session]:
        """Live sessions of a user, oldest first."""
        now = self._clock()
        async with self._lock:
            sessions = [
                s.model_copy(deep=True)
                for s in self._sessions.values()
                if s.user_id == user_id and s.is_active_at(now)
            ]
        return sorted(sessions, key=lambda s: s.created_at)

    async def destroy_user_sessions(self, user_id: str, reason: str = "logout_all") -> int:
        async with self._lock:
            doomed = [s for s in self._sessions.values() if s.user_id == user_id]
            for session in doomed:
                del self._sessions[session.id]

        for session in doomed:
            await self._finish_destroy(session, reason)
        return len(doomed)

    async def get_sessions_by_device(
        self, user_agent: str, platform: str | None = None
    ) -> list[Session]:
        async with self._lock:
            return [
                s.model_copy(deep=True)
                for s in self._sessions.values()
                if s.device_info.user_agent == user_agent
                and (platform is None or s.device_info.platform == platform)
            ]

    async def force_logout_all(self, reason: str = "force_logout") -> int:
        """Destroy every session."""
        async with self._lock:
            doomed = list(self._sessions.values())
            self._sessions.clear()

        for session in doomed:
            await self._finish_destroy(session, reason)

        logger.warning("All sessions force logged out", count=len(doomed))
        return len(doomed)

    async def get_session_statistics(self) -> dict[str, Any]:
        now = self._clock()
        async with self._lock:
            sessions = list(self._sessions.values())

        active = [s for s in sessions if s.is_active_at(now)]
        by_role: dict[str, int] = {}
        for session in active:
            by_role[session.user_role] = by_role.get(session.user_role, 0) + 1

        durations = [(now - s.created_at).total_seconds() for s in active]
        ordered = sorted(active, key=lambda s: s.created_at)

        return {
            "total_sessions": len(sessions),
            "active_sessions": len(active),
            "expired_sessions": len(sessions) - len(active),
            "sessions_by_role": by_role,
            "average_session_duration_seconds": (
                sum(durations) / len(durations) if durations else 0.0
            ),
            "oldest_session_id": ordered[0].id if ordered else None,
            "newest_session_id": ordered[-1].id if ordered else None,
        }

    async def export_sessions(self) -> list[dict[str, Any]]:
        """JSON-serializable dump of all sessions in memory."""
        async with self._lock:
            return [s.model_dump(mode="json") for s in self._sessions.values()]

    async def import_sessions(self, records: list[dict[str, Any]]) -> int:
        """Load sessions from ``export_sessions`` output, skipping invalid or expired ones.

        Returns:
            Number of sessions imported
        """
        now = self._clock()
        accepted: list[Session] = []
        for record in records:
            try:
                session = Session.model_validate(record)
            except ValidationError as e:
                logger.warning("Skipping invalid session record", error_count=e.error_count())
                continue
            if session.is_active_at(now):
                accepted.append(session)

        async with self._lock:
            for session in accepted:
                self._sessions[session.id] = session

        logger.info("Sessions imported", count=len(accepted), skipped=len(records) - len(accepted))
        return len(accepted)

    async def restore(self) -> int:
        """Reload live snapshots from the store after a restart; drop expired ones.

        Returns:
            Number of sessions restored
        """
        if self._store is None:
            return 0

        snapshots: list[Session] = await self._with_deadline(self._store.scan())
        now = self._clock()
        live = [s for s in snapshots if s.is_active_at(now)]
        stale = [s for s in snapshots if not s.is_active_at(now)]

        async with self._lock:
            for session in live:
                self._sessions.setdefault(session.id, session)

        for session in stale:
            await self._forget(session.id)

        logger.info("Sessions restored", restored=len(live), dropped=len(stale))
        return len(live)

    @property
    def session_count(self) -> int:
        return len(self._sessions)
