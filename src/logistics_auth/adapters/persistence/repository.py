"""SQLite-backed session store.

Implements the SessionStore port with SQLAlchemy 2.0 async mode and the
aiosqlite driver. Transient ``OperationalError`` failures (typically a
locked database file) are retried with exponential backoff.
"""

from __future__ import annotations

from datetime import datetime, timezone

import structlog
from sqlalchemy import delete, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from logistics_auth.adapters.persistence.models import Base, SessionSnapshotRecord
from logistics_auth.domain.model.sessions import Session

logger = structlog.get_logger(__name__)

_retry_locked = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.1, min=0.1, max=1),
    retry=retry_if_exception_type(OperationalError),
    reraise=True,
)


class SqlSessionStore:
    """Session store persisting snapshots to SQLite.

    Example:
        >>> store = SqlSessionStore(db_path="sessions.db")
        >>> await store.initialize()
        >>> await store.put(session)
    """

    def __init__(self, db_path: str = "logistics_auth.db") -> None:
        """Initialize the store.

        Args:
            db_path: Path to SQLite database file.
                     Use ":memory:" for an in-memory database (tests).
        """
        self._db_path = db_path
        if db_path == ":memory:":
            # A single shared connection keeps the in-memory schema alive
            self._engine = create_async_engine(
                "sqlite+aiosqlite:///:memory:",
                echo=False,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
            )
        else:
            self._engine = create_async_engine(
                f"sqlite+aiosqlite:///{db_path}",
                echo=False,
                pool_pre_ping=True,
            )
        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )
        logger.debug("Session store initialized", db_path=db_path)

    async def initialize(self) -> None:
        """Create database tables if they don't exist.

        Safe to call multiple times (idempotent).
        """
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Session tables initialized", db_path=self._db_path)

    async def close(self) -> None:
        """Close database connections."""
        await self._engine.dispose()
        logger.debug("Session store closed")

    @_retry_locked
    async def get(self, session_id: str) -> Session | None:
        async with self._session_factory() as db:
            record = await db.get(SessionSnapshotRecord, session_id)
            if record is None:
                return None
            return Session.model_validate_json(record.payload)

    @_retry_locked
    async def put(self, session: Session) -> None:
        """Insert or replace the snapshot for ``session.id``."""
        payload = session.model_dump_json()
        now = datetime.now(timezone.utc)

        async with self._session_factory() as db:
            stmt = sqlite_insert(SessionSnapshotRecord).values(
                session_id=session.id,
                user_id=session.user_id,
                payload=payload,
                expires_at=session.expires_at,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["session_id"],
                set_={
                    "payload": payload,
                    "expires_at": session.expires_at,
                    "updated_at": now,
                },
            )
            await db.execute(stmt)
            await db.commit()
        logger.debug("Session snapshot saved", session_id=session.id)

    @_retry_locked
    async def delete(self, session_id: str) -> bool:
        """Delete a snapshot. Returns False if it did not exist."""
        async with self._session_factory() as db:
            result = await db.execute(
                delete(SessionSnapshotRecord).where(
                    SessionSnapshotRecord.session_id == session_id
                )
            )
            await db.commit()
            return bool(result.rowcount)

    @_retry_locked
    async def scan(self) -> list[Session]:
        """All stored snapshots, oldest first."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(SessionSnapshotRecord).order_by(SessionSnapshotRecord.updated_at)
            )
            records = list(result.scalars().all())

        sessions: list[Session] = []
        for record in records:
            try:
                sessions.append(Session.model_validate_json(record.payload))
            except ValueError as e:
                logger.warning(
                    "Skipping unreadable session snapshot",
                    session_id=record.session_id,
                    error=str(e),
                )
        return sessions

    async def delete_expired(self, now: datetime) -> int:
        """Drop snapshots whose absolute expiry has passed.

        Returns:
            Number of rows removed
        """
        async with self._session_factory() as db:
            result = await db.execute(
                delete(SessionSnapshotRecord).where(SessionSnapshotRecord.expires_at <= now)
            )
            await db.commit()
        removed = result.rowcount or 0
        if removed:
            logger.info("Expired session snapshots pruned", count=removed)
        return removed
