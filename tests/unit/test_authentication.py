"""Tests for the authentication facade.

Tests for:
- Registration
- Login, including generic failures and the two-factor path
- Logout and session continuity
- Password reset and change
- Authorization shortcuts for the current user
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING, Any

import pytest

from logistics_auth.application.audit import AuditCategory
from logistics_auth.application.authentication import (
    AuthenticationService,
    LoginCredentials,
)
from logistics_auth.application.guard import RoutePolicy
from logistics_auth.application.sessions import SessionManager
from logistics_auth.domain.state_machine.auth_state import AuthState
from logistics_auth.errors import (
    InvalidCredentialsError,
    InvalidTwoFactorCodeError,
    NotAuthenticatedError,
    PasswordPolicyError,
    PasswordResetError,
    RegistrationError,
    SessionExpiredError,
    TwoFactorError,
)
from logistics_auth.security.password import PasswordService

if TYPE_CHECKING:
    from collections.abc import Callable

    from conftest import FakeClock

    from logistics_auth.adapters.memory import InMemoryUserService
    from logistics_auth.application.audit import AuditTrail
    from logistics_auth.application.guard import SecurityGuard
    from logistics_auth.application.rbac import RolePermissionService
    from logistics_auth.domain.model.users import User
    from logistics_auth.security.tokens import TokenService
    from logistics_auth.security.totp import TwoFactorAuthService

PASSWORD = "correct-horse-battery"


@pytest.fixture
def make_auth_service(
    users: InMemoryUserService,
    passwords: PasswordService,
    tokens: TokenService,
    rbac: RolePermissionService,
    session_manager: SessionManager,
    guard: SecurityGuard,
    two_factor: TwoFactorAuthService,
    audit: AuditTrail,
    clock: FakeClock,
) -> Callable[..., AuthenticationService]:
    """Factory for further clients sharing the same services."""

    def _make(**kwargs: Any) -> AuthenticationService:
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
            **kwargs,
        )

    return _make


@pytest.fixture
def create_account(
    users: InMemoryUserService, passwords: PasswordService
) -> Callable[..., Any]:
    """Store an account with any role, bypassing self-registration."""

    async def _create(
        email: str = "ops@example.com", role: str = "operator", **fields: Any
    ) -> User:
        return await users.create_user(
            {
                "email": email,
                "role": role,
                "password_hash": passwords.hash_password(PASSWORD),
                **fields,
            }
        )

    return _create


@pytest.fixture
async def enrolled(
    two_factor: TwoFactorAuthService, create_account: Callable[..., Any]
) -> tuple[str, list[str]]:
    """An operator account with 2FA enabled; returns its secret and backup codes."""
    account = await create_account()
    setup = await two_factor.generate_secret_key(account.id)
    codes = await two_factor.enable_2fa(account.id, two_factor.generate_totp_code(setup.secret))
    return setup.secret, codes


def _login_failures(audit: AuditTrail) -> list[str]:
    return [
        e.details["failure"]
        for e in audit.get_entries(category=AuditCategory.AUTH)
        if e.message == "Login failed"
    ]


class TestRegistration:
    """Tests for register()."""

    @pytest.mark.asyncio
    async def test_register_creates_viewer(
        self, auth_service: AuthenticationService, passwords: PasswordService
    ) -> None:
        user = await auth_service.register(
            {"email": "New@Example.com", "password": PASSWORD, "name": "New User"}
        )

        assert user.email == "new@example.com"
        assert user.role == "viewer"
        assert user.permissions == ["read:transport", "read:warehouse", "view:notifications"]
        assert user.password_hash != PASSWORD
        assert passwords.verify_password(PASSWORD, user.password_hash)
        assert auth_service.state is AuthState.UNAUTHENTICATED

    @pytest.mark.asyncio
    async def test_requested_role_is_ignored(self, auth_service: AuthenticationService) -> None:
        user = await auth_service.register(
            {"email": "sneaky@example.com", "password": PASSWORD, "role": "admin"}
        )
        assert user.role == "viewer"

    @pytest.mark.asyncio
    async def test_duplicate_email_rejected(
        self, auth_service: AuthenticationService, audit: AuditTrail
    ) -> None:
        await auth_service.register({"email": "dup@example.com", "password": PASSWORD})

        with pytest.raises(RegistrationError) as exc_info:
            await auth_service.register({"email": "DUP@example.com", "password": PASSWORD})

        assert exc_info.value.reason == "email already registered"
        assert audit.get_entries(category=AuditCategory.AUTH)[-1].success is False

    @pytest.mark.asyncio
    async def test_duplicate_username_rejected(self, auth_service: AuthenticationService) -> None:
        await auth_service.register(
            {"email": "a@example.com", "password": PASSWORD, "username": "ana"}
        )

        with pytest.raises(RegistrationError, match="username"):
            await auth_service.register(
                {"email": "b@example.com", "password": PASSWORD, "username": "ana"}
            )

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "data",
        [{"email": "not-an-email", "password": PASSWORD}, {"password": PASSWORD}, {}],
    )
    async def test_invalid_data_rejected(
        self, auth_service: AuthenticationService, data: dict[str, Any]
    ) -> None:
        with pytest.raises(RegistrationError):
            await auth_service.register(data)

    @pytest.mark.asyncio
    async def test_weak_password_rejected(
        self, auth_service: AuthenticationService, users: InMemoryUserService
    ) -> None:
        with pytest.raises(PasswordPolicyError):
            await auth_service.register({"email": "weak@example.com", "password": "short"})
        assert len(users) == 0


class TestLogin:
    """Tests for login() without a second factor."""

    @pytest.mark.asyncio
    async def test_login_opens_session(
        self,
        auth_service: AuthenticationService,
        tokens: TokenService,
        clock: FakeClock,
        create_account: Callable[..., Any],
    ) -> None:
        account = await create_account()

        result = await auth_service.login(
            {"email": " OPS@example.com ", "password": PASSWORD},
            {"user_agent": "Firefox", "ip_address": "10.0.0.1"},
        )

        assert not result.requires_two_factor
        assert result.user.id == account.id
        assert result.user.last_login == clock.now
        assert "write:transport" in result.user.permissions
        assert auth_service.state is AuthState.AUTHENTICATED
        assert auth_service.is_logged_in
        assert auth_service.current_session == result.session

        payload = tokens.verify_token(result.access_token).payload
        assert payload is not None
        assert payload["user_id"] == account.id
        assert payload["role"] == "operator"
        assert tokens.verify_refresh_token(result.refresh_token).valid

    @pytest.mark.asyncio
    async def test_login_accepts_model(
        self, auth_service: AuthenticationService, create_account: Callable[..., Any]
    ) -> None:
        await create_account()
        credentials = LoginCredentials(email="ops@example.com", password=PASSWORD)

        assert (await auth_service.login(credentials)).session is not None

    @pytest.mark.asyncio
    async def test_principal_carries_device_facts(
        self, auth_service: AuthenticationService, create_account: Callable[..., Any]
    ) -> None:
        assert await auth_service.current_principal() is None
        await create_account()

        await auth_service.login(
            {"email": "ops@example.com", "password": PASSWORD},
            {"ip_address": "10.0.0.1", "device_id": "tablet-7"},
        )
        principal = await auth_service.current_principal()

        assert principal is not None
        assert principal.role == "operator"
        assert principal.email == "ops@example.com"
        assert principal.ip_address == "10.0.0.1"
        assert principal.device_id == "tablet-7"
        assert not principal.two_factor_pending

    @pytest.mark.asyncio
    async def test_failures_are_indistinguishable(
        self,
        auth_service: AuthenticationService,
        users: InMemoryUserService,
        audit: AuditTrail,
        create_account: Callable[..., Any],
    ) -> None:
        """Unknown email, wrong password and inactive account raise the same error."""
        inactive = await create_account("gone@example.com")
        await users.update_user(inactive.id, {"is_active": False})
        await create_account()

        attempts = [
            {"email": "nobody@example.com", "password": PASSWORD},
            {"email": "ops@example.com", "password": "wrong-password"},
            {"email": "gone@example.com", "password": PASSWORD},
        ]
        reasons = []
        for credentials in attempts:
            with pytest.raises(InvalidCredentialsError) as exc_info:
                await auth_service.login(credentials)
            reasons.append(exc_info.value.reason)

        assert reasons == ["invalid email or password"] * 3
        assert _login_failures(audit) == ["unknown_email", "wrong_password", "inactive_account"]
        assert auth_service.state is AuthState.UNAUTHENTICATED
        assert auth_service.current_user is None

    @pytest.mark.asyncio
    async def test_failed_attempt_audit_omits_password(
        self, auth_service: AuthenticationService, audit: AuditTrail
    ) -> None:
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login({"email": "x@example.com", "password": "secret-pw"})

        entry = audit.get_entries(category=AuditCategory.AUTH)[-1]
        assert entry.details == {"email": "x@example.com", "failure": "unknown_email"}
        assert entry.success is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize("credentials", [{}, {"email": "a@example.com", "password": ""}])
    async def test_incomplete_credentials(
        self, auth_service: AuthenticationService, credentials: dict[str, str]
    ) -> None:
        with pytest.raises(InvalidCredentialsError):
            await auth_service.login(credentials)

    @pytest.mark.asyncio
    async def test_outdated_hash_is_upgraded(
        self,
        auth_service: AuthenticationService,
        users: InMemoryUserService,
        passwords: PasswordService,
    ) -> None:
        legacy = PasswordService(time_cost=2, memory_cost=16, parallelism=1)
        account = await users.create_user(
            {"email": "old@example.com", "password_hash": legacy.hash_password(PASSWORD)}
        )
        assert passwords.needs_rehash(account.password_hash)

        await auth_service.login({"email": "old@example.com", "password": PASSWORD})

        stored = await users.get_user_by_id(account.id)
        assert stored is not None
        assert not passwords.needs_rehash(stored.password_hash)
        assert passwords.verify_password(PASSWORD, stored.password_hash)

    @pytest.mark.asyncio
    async def test_logout(
        self,
        auth_service: AuthenticationService,
        session_manager: SessionManager,
        create_account: Callable[..., Any],
    ) -> None:
        await create_account()
        result = await auth_service.login({"email": "ops@example.com", "password": PASSWORD})

        assert await auth_service.logout()

        assert auth_service.state is AuthState.UNAUTHENTICATED
        assert auth_service.current_session is None
        assert await session_manager.get_session(result.session.id) is None
        assert await auth_service.logout()


class TestTwoFactorLogin:
    """Tests for the two-factor-pending login path."""

    @pytest.mark.asyncio
    async def test_login_leaves_session_pending(
        self,
        auth_service: AuthenticationService,
        guard: SecurityGuard,
        enrolled: tuple[str, list[str]],
    ) -> None:
        guard.register_route("/dashboard")

        result = await auth_service.login({"email": "ops@example.com", "password": PASSWORD})

        assert result.requires_two_factor
        assert result.session.two_factor_pending
        assert auth_service.state is AuthState.TWO_FACTOR_PENDING
        assert not auth_service.is_logged_in
        assert not await auth_service.has_permission("read:transport")
        decision = await auth_service.can_access_route("/dashboard")
        assert decision.reason == "Two-factor authentication required"
        assert decision.redirect_to == "/login/2fa"

    @pytest.mark.asyncio
    async def test_pending_login_denies_actions(
        self, auth_service: AuthenticationService, enrolled: tuple[str, list[str]]
    ) -> None:
        await auth_service.login({"email": "ops@example.com", "password": PASSWORD})

        decision = await auth_service.can_perform_action("read:transport")

        assert not decision.allowed
        assert decision.reason == "Two-factor authentication required"
        assert decision.redirect_to == "/login/2fa"

    @pytest.mark.asyncio
    async def test_pending_access_token_is_not_accepted(
        self,
        auth_service: AuthenticationService,
        two_factor: TwoFactorAuthService,
        tokens: TokenService,
        enrolled: tuple[str, list[str]],
    ) -> None:
        """The token handed out before the second factor cannot grant access."""
        secret, _ = enrolled
        result = await auth_service.login({"email": "ops@example.com", "password": PASSWORD})

        pending = tokens.verify_access_token(result.access_token)
        assert not pending.valid
        assert pending.error == "two-factor verification pending"

        session = await auth_service.complete_two_factor(two_factor.generate_totp_code(secret))

        assert session.access_token != result.access_token
        verified = tokens.verify_access_token(session.access_token)
        assert verified.valid
        assert verified.payload is not None
        assert "two_factor_pending" not in verified.payload
        assert (await auth_service.can_perform_action("read:transport")).allowed

    @pytest.mark.asyncio
    async def test_complete_with_totp(
        self,
        auth_service: AuthenticationService,
        two_factor: TwoFactorAuthService,
        guard: SecurityGuard,
        enrolled: tuple[str, list[str]],
    ) -> None:
        secret, _ = enrolled
        guard.register_route("/dashboard")
        await auth_service.login({"email": "ops@example.com", "password": PASSWORD})

        session = await auth_service.complete_two_factor(two_factor.generate_totp_code(secret))

        assert not session.two_factor_pending
        assert auth_service.state is AuthState.AUTHENTICATED
        assert (await auth_service.can_access_route("/dashboard")).allowed

    @pytest.mark.asyncio
    async def test_wrong_code_keeps_pending(
        self, auth_service: AuthenticationService, enrolled: tuple[str, list[str]]
    ) -> None:
        await auth_service.login({"email": "ops@example.com", "password": PASSWORD})

        with pytest.raises(InvalidTwoFactorCodeError):
            await auth_service.complete_two_factor("abcdef")

        assert auth_service.state is AuthState.TWO_FACTOR_PENDING
        assert auth_service.current_session is not None

    @pytest.mark.asyncio
    async def test_complete_with_backup_code(
        self,
        auth_service: AuthenticationService,
        two_factor: TwoFactorAuthService,
        enrolled: tuple[str, list[str]],
    ) -> None:
        _, codes = enrolled
        result = await auth_service.login({"email": "ops@example.com", "password": PASSWORD})

        await auth_service.complete_two_factor_with_backup_code(codes[0])

        assert auth_service.is_logged_in
        assert await two_factor.get_remaining_backup_codes(result.user.id) == 9

    @pytest.mark.asyncio
    async def test_nothing_pending(
        self, auth_service: AuthenticationService, create_account: Callable[..., Any]
    ) -> None:
        with pytest.raises(NotAuthenticatedError):
            await auth_service.complete_two_factor("123456")

        await create_account()
        await auth_service.login({"email": "ops@example.com", "password": PASSWORD})

        with pytest.raises(TwoFactorError, match="no two-factor verification pending"):
            await auth_service.complete_two_factor("123456")

    @pytest.mark.asyncio
    async def test_expired_pending_session(
        self,
        auth_service: AuthenticationService,
        two_factor: TwoFactorAuthService,
        clock: FakeClock,
        enrolled: tuple[str, list[str]],
    ) -> None:
        secret, _ = enrolled
        await auth_service.login({"email": "ops@example.com", "password": PASSWORD})
        clock.advance(minutes=31)

        with pytest.raises(SessionExpiredError):
            await auth_service.complete_two_factor(two_factor.generate_totp_code(secret))
        assert auth_service.state is AuthState.UNAUTHENTICATED


class TestPasswordReset:
    """Tests for reset_password() and confirm_reset_password()."""

    @pytest.fixture
    def outbox(self) -> list[tuple[User, str]]:
        return []

    @pytest.fixture
    def resetting_service(
        self,
        make_auth_service: Callable[..., AuthenticationService],
        outbox: list[tuple[User, str]],
    ) -> AuthenticationService:
        return make_auth_service(reset_notifier=lambda user, token: outbox.append((user, token)))

    @pytest.mark.asyncio
    async def test_reset_flow(
        self,
        resetting_service: AuthenticationService,
        session_manager: SessionManager,
        users: InMemoryUserService,
        outbox: list[tuple[User, str]],
        create_account: Callable[..., Any],
    ) -> None:
        account = await create_account()
        await resetting_service.login({"email": "ops@example.com", "password": PASSWORD})

        await resetting_service.reset_password("OPS@example.com")
        [(recipient, token)] = outbox
        stored = await users.get_user_by_id(account.id)
        assert recipient.id == account.id
        assert stored is not None and stored.reset_token is not None
        assert stored.reset_token != token

        await resetting_service.confirm_reset_password(token, "brand-new-password")

        assert await session_manager.get_user_sessions(account.id) == []
        with pytest.raises(InvalidCredentialsError):
            await resetting_service.login({"email": "ops@example.com", "password": PASSWORD})
        result = await resetting_service.login(
            {"email": "ops@example.com", "password": "brand-new-password"}
        )
        assert result.user.id == account.id

    @pytest.mark.asyncio
    async def test_reset_token_is_single_use(
        self,
        resetting_service: AuthenticationService,
        outbox: list[tuple[User, str]],
        create_account: Callable[..., Any],
    ) -> None:
        await create_account()
        await resetting_service.reset_password("ops@example.com")
        token = outbox[0][1]

        await resetting_service.confirm_reset_password(token, "brand-new-password")
        with pytest.raises(PasswordResetError):
            await resetting_service.confirm_reset_password(token, "another-password")

    @pytest.mark.asyncio
    async def test_reset_token_expires(
        self,
        resetting_service: AuthenticationService,
        outbox: list[tuple[User, str]],
        clock: FakeClock,
        create_account: Callable[..., Any],
    ) -> None:
        await create_account()
        await resetting_service.reset_password("ops@example.com")
        clock.advance(hours=1, seconds=1)

        with pytest.raises(PasswordResetError):
            await resetting_service.confirm_reset_password(outbox[0][1], "brand-new-password")

    @pytest.mark.asyncio
    async def test_access_token_is_not_a_reset_token(
        self, resetting_service: AuthenticationService, create_account: Callable[..., Any]
    ) -> None:
        await create_account()
        result = await resetting_service.login({"email": "ops@example.com", "password": PASSWORD})

        with pytest.raises(PasswordResetError) as exc_info:
            await resetting_service.confirm_reset_password(result.access_token, "new-password-1")
        assert exc_info.value.reason == "invalid or expired reset token"

    @pytest.mark.asyncio
    async def test_unknown_email_is_silent(
        self, resetting_service: AuthenticationService, outbox: list[tuple[User, str]]
    ) -> None:
        await resetting_service.reset_password("nobody@example.com")
        assert outbox == []

    @pytest.mark.asyncio
    async def test_weak_new_password_keeps_token(
        self,
        resetting_service: AuthenticationService,
        outbox: list[tuple[User, str]],
        create_account: Callable[..., Any],
    ) -> None:
        await create_account()
        await resetting_service.reset_password("ops@example.com")
        token = outbox[0][1]

        with pytest.raises(PasswordPolicyError):
            await resetting_service.confirm_reset_password(token, "short")
        await resetting_service.confirm_reset_password(token, "long-enough-now")

    @pytest.mark.asyncio
    async def test_async_notifier(
        self,
        make_auth_service: Callable[..., AuthenticationService],
        create_account: Callable[..., Any],
    ) -> None:
        delivered: list[str] = []

        async def notify(user: User, token: str) -> None:
            delivered.append(user.email)

        service = make_auth_service(reset_notifier=notify)
        await create_account()

        await service.reset_password("ops@example.com")

        assert delivered == ["ops@example.com"]


class TestChangePassword:
    """Tests for change_password()."""

    @pytest.mark.asyncio
    async def test_change_password(
        self, auth_service: AuthenticationService, create_account: Callable[..., Any]
    ) -> None:
        account = await create_account()

        await auth_service.change_password(account.id, PASSWORD, "a-different-password")

        result = await auth_service.login(
            {"email": "ops@example.com", "password": "a-different-password"}
        )
        assert result.user.id == account.id

    @pytest.mark.asyncio
    async def test_wrong_current_password(
        self, auth_service: AuthenticationService, create_account: Callable[..., Any]
    ) -> None:
        account = await create_account()

        with pytest.raises(InvalidCredentialsError):
            await auth_service.change_password(account.id, "not-it", "a-different-password")
        with pytest.raises(InvalidCredentialsError):
            await auth_service.change_password("missing", PASSWORD, "a-different-password")

    @pytest.mark.asyncio
    async def test_policy_applies(
        self, auth_service: AuthenticationService, create_account: Callable[..., Any]
    ) -> None:
        account = await create_account()

        with pytest.raises(PasswordPolicyError):
            await auth_service.change_password(account.id, PASSWORD, "short")


class TestSessionContinuity:
    """Tests for refresh_session() and restore_session()."""

    @pytest.mark.asyncio
    async def test_refresh_records_activity(
        self,
        auth_service: AuthenticationService,
        clock: FakeClock,
        create_account: Callable[..., Any],
    ) -> None:
        await create_account()
        await auth_service.login({"email": "ops@example.com", "password": PASSWORD})
        clock.advance(minutes=20)

        session = await auth_service.refresh_session()

        assert session.last_activity == clock.now
        assert auth_service.current_session == session

    @pytest.mark.asyncio
    async def test_refresh_after_idle_expiry_logs_out(
        self,
        auth_service: AuthenticationService,
        clock: FakeClock,
        create_account: Callable[..., Any],
    ) -> None:
        await create_account()
        await auth_service.login({"email": "ops@example.com", "password": PASSWORD})
        clock.advance(minutes=30)

        with pytest.raises(SessionExpiredError):
            await auth_service.refresh_session()

        assert auth_service.state is AuthState.UNAUTHENTICATED
        assert auth_service.current_user is None

    @pytest.mark.asyncio
    async def test_refresh_without_session(self, auth_service: AuthenticationService) -> None:
        with pytest.raises(NotAuthenticatedError):
            await auth_service.refresh_session()

    @pytest.mark.asyncio
    async def test_restore_session(
        self,
        auth_service: AuthenticationService,
        make_auth_service: Callable[..., AuthenticationService],
        create_account: Callable[..., Any],
    ) -> None:
        account = await create_account()
        result = await auth_service.login({"email": "ops@example.com", "password": PASSWORD})

        other = make_auth_service()
        session = await other.restore_session(result.session.id)

        assert session is not None
        assert other.is_logged_in
        assert other.current_user is not None
        assert other.current_user.id == account.id
        assert await other.restore_session("missing") is None

    @pytest.mark.asyncio
    async def test_restore_for_deactivated_user(
        self,
        auth_service: AuthenticationService,
        make_auth_service: Callable[..., AuthenticationService],
        session_manager: SessionManager,
        users: InMemoryUserService,
        create_account: Callable[..., Any],
    ) -> None:
        account = await create_account()
        result = await auth_service.login({"email": "ops@example.com", "password": PASSWORD})
        await users.update_user(account.id, {"is_active": False})

        other = make_auth_service()

        assert await other.restore_session(result.session.id) is None
        assert not other.is_logged_in
        assert await session_manager.get_session(result.session.id) is None


class TestAuthorizationShortcuts:
    """Tests for permission, role and guard checks on the current user."""

    @pytest.mark.asyncio
    async def test_logged_out_user_has_nothing(self, auth_service: AuthenticationService) -> None:
        assert not await auth_service.has_permission("read:transport")
        assert not await auth_service.has_role("viewer")
        assert not await auth_service.has_any_role(["viewer", "admin"])
        decision = await auth_service.can_perform_action("read:transport")
        assert decision.reason == "Not authenticated"

    @pytest.mark.asyncio
    async def test_operator_checks(
        self,
        auth_service: AuthenticationService,
        guard: SecurityGuard,
        create_account: Callable[..., Any],
    ) -> None:
        await create_account()
        await auth_service.login({"email": "ops@example.com", "password": PASSWORD})
        guard.register_route("/reports", RoutePolicy(required_roles=("manager",)))

        assert await auth_service.has_permission("write:transport")
        assert not await auth_service.has_permission("manage:users")
        assert await auth_service.has_role("viewer")
        assert not await auth_service.has_role("manager")
        assert await auth_service.has_any_role(["manager", "operator"])
        assert (await auth_service.can_access_route("/reports")).reason == "Insufficient role"
        assert (await auth_service.can_access_component("Anything")).allowed

    @pytest.mark.asyncio
    async def test_expired_session_grants_nothing(
        self,
        auth_service: AuthenticationService,
        guard: SecurityGuard,
        clock: FakeClock,
        create_account: Callable[..., Any],
    ) -> None:
        await create_account(role="manager")
        await auth_service.login({"email": "ops@example.com", "password": PASSWORD})
        guard.register_route("/reports", RoutePolicy(required_roles=("manager",)))
        assert (await auth_service.can_access_route("/reports")).allowed

        clock.advance(hours=30)

        decision = await auth_service.can_access_route("/reports")
        assert decision.reason == "Not authenticated"
        assert decision.redirect_to == "/login"
        assert auth_service.state is AuthState.UNAUTHENTICATED
        assert auth_service.current_session is None
        assert not await auth_service.has_permission("read:all")

    @pytest.mark.asyncio
    async def test_session_destroyed_elsewhere_grants_nothing(
        self,
        auth_service: AuthenticationService,
        guard: SecurityGuard,
        session_manager: SessionManager,
        create_account: Callable[..., Any],
    ) -> None:
        account = await create_account(role="manager")
        await auth_service.login({"email": "ops@example.com", "password": PASSWORD})
        guard.register_route("/reports", RoutePolicy(required_roles=("manager",)))

        assert await session_manager.destroy_user_sessions(account.id) == 1

        assert not (await auth_service.can_access_route("/reports")).allowed
        assert not await auth_service.has_role("manager")
        assert await auth_service.current_principal() is None
        assert not auth_service.is_logged_in

    @pytest.mark.asyncio
    async def test_role_change_elsewhere_applies(
        self,
        auth_service: AuthenticationService,
        guard: SecurityGuard,
        session_manager: SessionManager,
        create_account: Callable[..., Any],
    ) -> None:
        await create_account(role="manager")
        result = await auth_service.login({"email": "ops@example.com", "password": PASSWORD})
        guard.register_route("/reports", RoutePolicy(required_roles=("manager",)))

        await session_manager.update_session(result.session.id, user_role="viewer")

        assert (await auth_service.can_access_route("/reports")).reason == "Insufficient role"
        assert not await auth_service.has_role("manager")

    @pytest.mark.asyncio
    async def test_driver_ownership(
        self, auth_service: AuthenticationService, create_account: Callable[..., Any]
    ) -> None:
        driver = await create_account("driver@example.com", role="driver")
        await auth_service.login({"email": "driver@example.com", "password": PASSWORD})

        action = "update:transport:own"
        own = await auth_service.can_perform_action(action, {"created_by": driver.id})
        other = await auth_service.can_perform_action(action, {"created_by": "x"})

        assert own.allowed
        assert other.reason == "Not resource owner"

    @pytest.mark.asyncio
    async def test_statistics(
        self, auth_service: AuthenticationService, create_account: Callable[..., Any]
    ) -> None:
        account = await create_account()
        await auth_service.login({"email": "ops@example.com", "password": PASSWORD})

        stats = await auth_service.get_auth_statistics()

        assert stats["state"] == "authenticated"
        assert stats["is_logged_in"] is True
        assert stats["user_id"] == account.id
        assert stats["role"] == "operator"
        assert stats["sessions"]["total_sessions"] == 1
        assert stats["roles"]["total_roles"] == 7


class TestTwoFactorManagement:
    """The facade delegates 2FA management to the two-factor service."""

    @pytest.mark.asyncio
    async def test_enable_and_disable(
        self,
        auth_service: AuthenticationService,
        two_factor: TwoFactorAuthService,
        clock: FakeClock,
    ) -> None:
        setup = await two_factor.generate_secret_key("u1")
        code = two_factor.generate_totp_code(setup.secret)

        codes = await auth_service.enable_2fa("u1", code)
        assert await auth_service.verify_totp_code("u1", code)
        assert await auth_service.verify_backup_code("u1", codes[0])
        assert len(await auth_service.regenerate_backup_codes("u1")) == 10

        clock.advance(seconds=30)
        await auth_service.disable_2fa("u1", two_factor.generate_totp_code(setup.secret))
        assert not await two_factor.is_2fa_enabled("u1")

    @pytest.mark.asyncio
    async def test_backup_code_use_is_audited(
        self,
        auth_service: AuthenticationService,
        two_factor: TwoFactorAuthService,
        audit: AuditTrail,
    ) -> None:
        setup = await two_factor.generate_secret_key("u1")
        codes = await auth_service.enable_2fa("u1", two_factor.generate_totp_code(setup.secret))

        await auth_service.verify_backup_code("u1", codes[0])

        entry = audit.get_entries(category=AuditCategory.TWO_FACTOR, user_id="u1")[-1]
        assert entry.message == "Backup code used"
        assert entry.details == {"user_id": "u1", "remaining": 9}


@pytest.mark.asyncio
async def test_idle_timeout_is_configurable(
    users: InMemoryUserService,
    passwords: PasswordService,
    tokens: TokenService,
    rbac: RolePermissionService,
    guard: SecurityGuard,
    two_factor: TwoFactorAuthService,
    audit: AuditTrail,
    clock: FakeClock,
    create_account: Callable[..., Any],
) -> None:
    sessions = SessionManager(tokens, audit, idle_timeout=timedelta(minutes=5), clock=clock)
    service = AuthenticationService(
        users, passwords, tokens, rbac, sessions, guard, two_factor, audit, clock=clock
    )
    await create_account()
    await service.login({"email": "ops@example.com", "password": PASSWORD})
    clock.advance(minutes=5)

    with pytest.raises(SessionExpiredError):
        await service.refresh_session()
