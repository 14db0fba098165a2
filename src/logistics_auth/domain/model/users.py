"""User records and the authenticated principal seen by the guard."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

from logistics_auth.domain.model.roles import ADMIN_ROLE, DEFAULT_ROLE


class User(BaseModel):
    """Stored user account.

    Attributes:
        id: Opaque user ID
        email: Unique login email (stored lower-case)
        username: Optional unique username
        name: Display name
        role: Role code
        permissions: Permission snapshot, refreshed from the role on login
        password_hash: Argon2id hash, never exposed through ``public_dict``
        is_active: Inactive accounts cannot log in
    """

    model_config = ConfigDict(validate_assignment=True)

    id: str
    email: str
    username: str | None = None
    name: str = ""
    role: str = DEFAULT_ROLE
    permissions: list[str] = Field(default_factory=list)
    password_hash: str = ""
    is_active: bool = True
    created_at: datetime | None = None
    updated_at: datetime | None = None
    last_login: datetime | None = None
    reset_token: str | None = None
    reset_token_expires: datetime | None = None

    def public_dict(self) -> dict[str, object]:
        """Serializable view without credential material."""
        return self.model_dump(
            mode="json",
            exclude={"password_hash", "reset_token", "reset_token_expires"},
        )


class Principal(BaseModel):
    """The identity an authorization decision is made for.

    Built from the current session; middlewares read the request facts
    (address, device, location, last activity) from here.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    role: str
    permissions: frozenset[str] = frozenset()
    email: str | None = None
    session_id: str | None = None
    two_factor_pending: bool = False
    last_activity: datetime | None = None
    ip_address: str | None = None
    device_id: str | None = None
    location: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE
