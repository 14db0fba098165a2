"""SQLAlchemy ORM models for the session snapshot store.

Uses SQLAlchemy 2.0 declarative style. The session itself is kept as a
JSON document so the table does not need to track every field of the
pydantic model.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class SessionSnapshotRecord(Base):
    """Persisted session for restart recovery.

    Attributes:
        session_id: Session identifier (primary key)
        user_id: Owning user, indexed for per-user scans
        payload: JSON-serialized session
        expires_at: Absolute expiry, copied out of the payload for pruning
        updated_at: Last write timestamp
    """

    __tablename__ = "session_snapshots"

    session_id: Mapped[str] = mapped_column(String(128), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(255), index=True)
    payload: Mapped[str] = mapped_column(Text)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
