from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from logistics_auth.adapters.memory import (
    InMemorySessionStore,
    InMemoryTwoFactorStore,
    InMemoryUserService,
)
from logistics_auth.application.audit import AuditTrail
from logistics_auth.application.authentication import AuthenticationService
from logistics_auth.application.guard import SecurityGuard
from logistics_auth.application.rbac import RolePermissionService
from logistics_auth.application.sessions import SessionManager
from logistics_auth.domain.model.users import User
from logistics_auth.security.password import PasswordService
from logistics_auth.security.tokens import TokenService
from logistics_auth.security.totp import TwoFactorAuthService

SECRET = "test-secret-key-that-is-at-least-32-characters-long"


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    for item in items:
        item.add_marker(pytest.mark.unit)


class FakeClock:
    """Settable clock; call it to read the time."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    """Clock fixed at a 30 second boundary, noon UTC."""
    return FakeClock(datetime(2024, 1, 15, 12, 0, 0, tzinfo=UTC))


@pytest.fixture
def secret() -> str:
    return SECRET


@pytest.fixture
def audit(clock: FakeClock) -> AuditTrail:
    return AuditTrail(clock=clock)


@pytest.fixture
def tokens(secret: str, clock: FakeClock) -> TokenService:
    return TokenService(secret=secret, clock=clock)


@pytest.fixture
def passwords() -> PasswordService:
    """Argon2id with minimal cost so tests stay fast."""
    return PasswordService(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def rbac() -> RolePermissionService:
    return RolePermissionService()


@pytest.fixture
def guard(rbac: RolePermissionService, clock: FakeClock) -> SecurityGuard:
    return SecurityGuard(rbac, clock=clock)


@pytest.fixture
def session_store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def session_manager(
    tokens: TokenService,
    audit: AuditTrail,
    session_store: InMemorySessionStore,
    clock: FakeClock,
) -> SessionManager:
    return SessionManager(
        tokens,
        audit,
        session_store,
        session_timeout=timedelta(hours=24),
        idle_timeout=timedelta(minutes=30),
        max_sessions_per_user=3,
        refresh_threshold=timedelta(minutes=5),
        clock=clock,
    )


@pytest.fixture
def two_factor_store() -> InMemoryTwoFactorStore:
    return InMemoryTwoFactorStore()


@pytest.fixture
def two_factor(
    two_factor_store: InMemoryTwoFactorStore, audit: AuditTrail, clock: FakeClock
) -> TwoFactorAuthService:
    return TwoFactorAuthService(two_factor_store, audit, clock=clock)


@pytest.fixture
def users(clock: FakeClock) -> InMemoryUserService:
    return InMemoryUserService(clock=clock)


@pytest.fixture
def auth_service(
    users: InMemoryUserService,
    passwords: PasswordService,
    tokens: TokenService,
    rbac: RolePermissionService,
    session_manager: SessionManager,
    guard: SecurityGuard,
    two_factor: TwoFactorAuthService,
    audit: AuditTrail,
    clock: FakeClock,
) -> AuthenticationService:
    return AuthenticationService(
        users,
        passwords,
        tokens,
        rbac,
        session_manager,
        guard,
        two_factor,
        audit,
        clock=clock,
    )


@pytest.fixture
def make_user(rbac: RolePermissionService) -> Any:
    """Factory for User records carrying their role's permissions."""

    def _make(user_id: str = "user-1", role: str = "operator", **fields: Any) -> User:
        return User(
            id=user_id,
            email=fields.pop("email", f"{user_id}@example.com"),
            role=role,
            permissions=sorted(rbac.get_role_permissions(role)),
            **fields,
        )

    return _make
