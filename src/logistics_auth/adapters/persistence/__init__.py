"""Persistence layer for session snapshots.

Provides SQLite-based storage so active sessions survive a restart.
"""

from logistics_auth.adapters.persistence.models import SessionSnapshotRecord
from logistics_auth.adapters.persistence.repository import SqlSessionStore

__all__ = [
    "SessionSnapshotRecord",
    "SqlSessionStore",
]
