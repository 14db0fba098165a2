"""Session records.

A session is valid only while both ``expires_at`` (absolute) and
``idle_expires_at`` (rolling) lie in the future.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class SessionState(str, Enum):
    """Lifecycle state of a stored session.

    ACTIVE is the only non-terminal state; both expired states lead to
    eviction.
    """

    ACTIVE = "active"
    IDLE_EXPIRED = "idle_expired"
    ABSOLUTE_EXPIRED = "absolute_expired"


class DeviceInfo(BaseModel):
    """Opaque client metadata captured at login."""

    model_config = ConfigDict(extra="forbid")

    user_agent: str = "unknown"
    ip_address: str | None = None
    platform: str = "unknown"
    browser: str = "unknown"
    device_id: str | None = None
    location: str | None = None
    extra: dict[str, Any] = Field(default_factory=dict)


class Session(BaseModel):
    """Authenticated session.

    Attributes:
        id: Unguessable session ID
        user_id: Owning user
        user_role: Role code at creation time
        user_permissions: Permission snapshot at creation time
        created_at: Creation time
        last_activity: Last confirmed activity
        expires_at: Absolute expiry
        idle_expires_at: Rolling idle expiry
        device_info: Client metadata
        access_token: Current access token (rotated near expiry)
        refresh_token: Refresh token, fixed for the session's lifetime
        two_factor_pending: True until the second factor is verified
    """

    id: str
    user_id: str
    user_role: str
    user_permissions: list[str] = Field(default_factory=list)
    created_at: datetime
    last_activity: datetime
    expires_at: datetime
    idle_expires_at: datetime
    device_info: DeviceInfo = Field(default_factory=DeviceInfo)
    access_token: str
    refresh_token: str
    two_factor_pending: bool = False

    def state_at(self, now: datetime) -> SessionState:
        if self.expires_at <= now:
            return SessionState.ABSOLUTE_EXPIRED
        if self.idle_expires_at <= now:
            return SessionState.IDLE_EXPIRED
        return SessionState.ACTIVE

    def is_active_at(self, now: datetime) -> bool:
        return self.state_at(now) is SessionState.ACTIVE
