"""Authentication orchestration.

``AuthenticationService`` is the surface an HTTP layer calls for one
client: it combines credential lookup (UserService), password hashing,
the role catalog, session management, the guard and two-factor
authentication, and tracks the client's login state with the
``AuthState`` machine.

Every credential failure raises the same InvalidCredentialsError so the
caller cannot tell unknown emails from wrong passwords.
"""

from __future__ import annotations

import hashlib
import inspect
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from logistics_auth.application.audit import AuditCategory
from logistics_auth.domain.clock import utc_now
from logistics_auth.domain.model.roles import DEFAULT_ROLE
from logistics_auth.domain.model.users import Principal, User
from logistics_auth.domain.state_machine.auth_state import (
    AuthEvent,
    AuthState,
    AuthStateMachine,
    TransitionResult,
)
from logistics_auth.errors import (
    InvalidCredentialsError,
    NotAuthenticatedError,
    PasswordResetError,
    RegistrationError,
    SessionExpiredError,
    TwoFactorError,
)
from logistics_auth.security.tokens import PASSWORD_RESET_TOKEN_TYPE

if TYPE_CHECKING:
    from logistics_auth.application.guard import AccessDecision, SecurityGuard
    from logistics_auth.application.ports import AuditSink, UserService
    from logistics_auth.application.rbac import RolePermissionService
    from logistics_auth.application.sessions import SessionManager
    from logistics_auth.domain.clock import Clock
    from logistics_auth.domain.model.sessions import DeviceInfo, Session
    from logistics_auth.security.password import PasswordService
    from logistics_auth.security.tokens import TokenService
    from logistics_auth.security.totp import TwoFactorAuthService

logger = structlog.get_logger(__name__)

ResetNotifier = Callable[[User, str], Any]


class LoginCredentials(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class RegistrationRequest(BaseModel):
    """Self-service registration. New accounts always get the default role."""

    model_config = ConfigDict(extra="ignore")

    email: str = Field(..., min_length=3)
    password: str
    username: str | None = None
    name: str = ""


@dataclass(frozen=True)
class LoginResult:
    """Outcome of a successful credential check.

    Attributes:
        user: The authenticated account
        session: The new session
        requires_two_factor: True when a second factor must still be verified
    """

    user: User
    session: Session
    requires_two_factor: bool = False

    @property
    def access_token(self) -> str:
        return self.session.access_token

    @property
    def refresh_token(self) -> str:
        return self.session.refresh_token


def _hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


class AuthenticationService:
    """Per-client authentication facade.

    Shared services are injected; the instance itself only holds the
    client's current user, session and AuthState.
    """

    def __init__(
        self,
        users: UserService,
        passwords: PasswordService,
        tokens: TokenService,
        rbac: RolePermissionService,
        sessions: SessionManager,
        guard: SecurityGuard,
        two_factor: TwoFactorAuthService,
        audit: AuditSink,
        *,
        reset_token_ttl: timedelta = timedelta(hours=1),
        reset_notifier: ResetNotifier | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self._users = users
        self._passwords = passwords
        self._tokens = tokens
        self._rbac = rbac
        self._sessions = sessions
        self._guard = guard
        self._two_factor = two_factor
        self._audit = audit
        self._reset_token_ttl = reset_token_ttl
        self._reset_notifier = reset_notifier
        self._clock = clock

        self._state = AuthStateMachine()
        self._user: User | None = None
        self._session: Session | None = None

    # -------------------------------------------------------------------------
    # State
    # -------------------------------------------------------------------------

    @property
    def state(self) -> AuthState:
        return self._state.current_state

    @property
    def current_user(self) -> User | None:
        return self._user

    @property
    def current_session(self) -> Session | None:
        return self._session

    @property
    def is_logged_in(self) -> bool:
        return self._state.current_state is AuthState.AUTHENTICATED

    def _fire(self, event: AuthEvent) -> TransitionResult:
        result = self._state.send(event)
        if not result.success:
            logger.warning("Ignored auth event", auth_event=event.name, error=result.error)
        return result

    def _clear(self) -> None:
        self._user = None
        self._session = None

    async def ensure_session(self) -> Session | None:
        """Re-read the current session from the SessionManager.

        A session that expired, or was destroyed by another client, a
        password reset or a forced logout, logs this client out.
        """
        if self._session is None:
            return None
        session = await self._sessions.get_session(self._session.id)
        if session is None:
            logger.info("Current session no longer live", session_id=self._session.id)
            self._clear()
            self._fire(AuthEvent.SESSION_EXPIRED)
            return None
        self._session = session
        return session

    async def current_principal(self) -> Principal | None:
        """Identity for authorization checks, or None when nobody is logged in."""
        session = await self.ensure_session()
        if self._user is None or session is None:
            return None
        return Principal(
            id=session.user_id,
            role=session.user_role,
            permissions=frozenset(session.user_permissions),
            email=self._user.email,
            session_id=session.id,
            two_factor_pending=session.two_factor_pending,
            last_activity=session.last_activity,
            ip_address=session.device_info.ip_address,
            device_id=session.device_info.device_id,
            location=session.device_info.location,
        )

    def _require_session(self) -> Session:
        if self._session is None:
            raise NotAuthenticatedError()
        return self._session

    # -------------------------------------------------------------------------
    # Login / logout
    # -------------------------------------------------------------------------

    async def login(
        self,
        credentials: LoginCredentials | Mapping[str, Any],
        device_info: DeviceInfo | Mapping[str, Any] | None = None,
    ) -> LoginResult:
        """Check credentials and open a session.

        When the user has 2FA enabled the session starts in the
        two-factor-pending state; the guard denies protected surfaces until
        ``complete_two_factor`` succeeds. Its access token carries the
        ``two_factor_pending`` claim until then and is re-minted on
        completion.

        Raises:
            InvalidCredentialsError: For any credential failure
        """
        try:
            creds = (
                credentials
                if isinstance(credentials, LoginCredentials)
                else LoginCredentials.model_validate(dict(credentials))
            )
        except ValidationError as e:
            self._fire(AuthEvent.LOGIN_FAILED)
            raise InvalidCredentialsError() from e

        email = creds.email.strip().lower()
        user = await self._users.get_user_by_email(email)

        failure: str | None = None
        if user is None:
            failure = "unknown_email"
        elif not user.is_active:
            failure = "inactive_account"
        elif not self._passwords.verify_password(creds.password, user.password_hash):
            failure = "wrong_password"

        if failure is not None or user is None:
            await self._audit.log(
                AuditCategory.AUTH,
                "Login failed",
                {"email": email, "failure": failure},
                success=False,
            )
            self._fire(AuthEvent.LOGIN_FAILED)
            self._clear()
            raise InvalidCredentialsError()

        permissions = sorted(self._rbac.get_role_permissions(user.role))
        patch: dict[str, Any] = {"permissions": permissions, "last_login": self._clock()}
        if self._passwords.needs_rehash(user.password_hash):
            patch["password_hash"] = self._passwords.hash_password(creds.password)
        user = await self._users.update_user(user.id, patch) or user.model_copy(update=patch)

        requires_two_factor = await self._two_factor.is_2fa_enabled(user.id)
        session = await self._sessions.create_session(
            user, device_info, two_factor_pending=requires_two_factor
        )

        self._user = user
        self._session = session
        self._fire(
            AuthEvent.TWO_FACTOR_REQUIRED if requires_two_factor else AuthEvent.LOGIN_SUCCEEDED
        )

        await self._audit.log(
            AuditCategory.AUTH,
            "Login successful",
            {
                "user_id": user.id,
                "email": user.email,
                "session_id": session.id,
                "two_factor_pending": requires_two_factor,
            },
        )
        return LoginResult(user=user, session=session, requires_two_factor=requires_two_factor)

    async def complete_two_factor(self, code: str) -> Session:
        """Finish a pending login with a TOTP code."""
        session = self._require_pending_session()
        try:
            await self._two_factor.verify_totp_code(session.user_id, code)
        except TwoFactorError:
            self._fire(AuthEvent.TWO_FACTOR_FAILED)
            raise
        return await self._finish_two_factor(session)

    async def complete_two_factor_with_backup_code(self, code: str) -> Session:
        """Finish a pending login with a single-use backup code."""
        session = self._require_pending_session()
        try:
            await self._two_factor.verify_backup_code(session.user_id, code)
        except TwoFactorError:
            self._fire(AuthEvent.TWO_FACTOR_FAILED)
            raise
        return await self._finish_two_factor(session)

    def _require_pending_session(self) -> Session:
        session = self._require_session()
        if self.state is not AuthState.TWO_FACTOR_PENDING:
            raise TwoFactorError("no two-factor verification pending")
        return session

    async def _finish_two_factor(self, session: Session) -> Session:
        updated = await self._sessions.update_session(session.id, two_factor_pending=False)
        if updated is None:
            self._fire(AuthEvent.SESSION_EXPIRED)
            self._clear()
            raise SessionExpiredError()
        self._session = updated
        self._fire(AuthEvent.TWO_FACTOR_VERIFIED)
        return updated

    async def logout(self, reason: str = "logout") -> bool:
        """Destroy the current session, if any. Always succeeds."""
        session = self._session
        if session is not None:
            await self._sessions.destroy_session(session.id, reason=reason)
            await self._audit.log(
                AuditCategory.AUTH,
                "Logout",
                {"user_id": session.user_id, "session_id": session.id, "reason": reason},
            )
        self._clear()
        self._fire(AuthEvent.LOGOUT)
        return True

    # -------------------------------------------------------------------------
    # Registration and passwords
    # -------------------------------------------------------------------------

    async def register(self, data: RegistrationRequest | Mapping[str, Any]) -> User:
        """Create an account with the default role. Does not log in.

        Raises:
            RegistrationError: Invalid data, or email/username already in use
            PasswordPolicyError: Password rejected by policy
        """
        try:
            request = (
                data
                if isinstance(data, RegistrationRequest)
                else RegistrationRequest.model_validate(dict(data))
            )
        except ValidationError as e:
            raise RegistrationError("invalid registration data") from e

        email = request.email.strip().lower()
        if "@" not in email:
            raise RegistrationError("invalid email address")
        self._passwords.check_policy(request.password)

        if await self._users.get_user_by_email(email) is not None:
            await self._audit.log(
                AuditCategory.AUTH,
                "Registration failed",
                {"email": email, "failure": "email_taken"},
                success=False,
            )
            raise RegistrationError("email already registered")
        if request.username and await self._users.get_user_by_username(request.username):
            await self._audit.log(
                AuditCategory.AUTH,
                "Registration failed",
                {"email": email, "failure": "username_taken"},
                success=False,
            )
            raise RegistrationError("username already taken")

        user = await self._users.create_user(
            {
                "email": email,
                "username": request.username,
                "name": request.name,
                "role": DEFAULT_ROLE,
                "permissions": sorted(self._rbac.get_role_permissions(DEFAULT_ROLE)),
                "password_hash": self._passwords.hash_password(request.password),
                "is_active": True,
            }
        )

        await self._audit.log(
            AuditCategory.AUTH,
            "Registration successful",
            {"user_id": user.id, "email": user.email},
        )
        return user

    async def reset_password(self, email: str) -> None:
        """Issue a password reset token and hand it to the notifier.

        Unknown emails are accepted silently.
        """
        normalized = email.strip().lower()
        user = await self._users.get_user_by_email(normalized)
        if user is None or not user.is_active:
            logger.debug("Password reset for unknown or inactive account")
            return

        token = self._tokens.create_token(
            {"user_id": user.id, "email": user.email, "type": PASSWORD_RESET_TOKEN_TYPE},
            ttl=self._reset_token_ttl,
        )
        await self._users.update_user(
            user.id,
            {
                "reset_token": _hash_reset_token(token),
                "reset_token_expires": self._clock() + self._reset_token_ttl,
            },
        )

        if self._reset_notifier is not None:
            outcome = self._reset_notifier(user, token)
            if inspect.isawaitable(outcome):
                await outcome

        await self._audit.log(
            AuditCategory.AUTH, "Password reset requested", {"user_id": user.id}
        )

    async def confirm_reset_password(self, token: str, new_password: str) -> None:
        """Set a new password using a reset token; ends all of the user's sessions.

        Raises:
            PasswordResetError: Token invalid, expired, already used or not a reset token
            PasswordPolicyError: New password rejected by policy
        """
        verification = self._tokens.verify_token(token)
        if not verification.valid or verification.payload is None:
            raise PasswordResetError()
        if verification.payload.get("type") != PASSWORD_RESET_TOKEN_TYPE:
            raise PasswordResetError()

        user_id = str(verification.payload.get("user_id", ""))
        user = await self._users.get_user_by_id(user_id)
        if (
            user is None
            or user.reset_token != _hash_reset_token(token)
            or user.reset_token_expires is None
            or user.reset_token_expires <= self._clock()
        ):
            await self._audit.log(
                AuditCategory.AUTH,
                "Password reset rejected",
                {"user_id": user_id},
                success=False,
            )
            raise PasswordResetError()

        self._passwords.check_policy(new_password)
        await self._users.update_user(
            user.id,
            {
                "password_hash": self._passwords.hash_password(new_password),
                "reset_token": None,
                "reset_token_expires": None,
            },
        )
        ended = await self._sessions.destroy_user_sessions(user.id, reason="password_reset")

        await self._audit.log(
            AuditCategory.AUTH,
            "Password reset successful",
            {"user_id": user.id, "sessions_ended": ended},
        )

    async def change_password(self, user_id: str, old_password: str, new_password: str) -> None:
        """Replace a password after checking the current one.

        Raises:
            InvalidCredentialsError: Unknown user or wrong current password
            PasswordPolicyError: New password rejected by policy
        """
        user = await self._users.get_user_by_id(user_id)
        if user is None or not self._passwords.verify_password(old_password, user.password_hash):
            await self._audit.log(
                AuditCategory.AUTH,
                "Password change rejected",
                {"user_id": user_id},
                success=False,
            )
            raise InvalidCredentialsError()

        self._passwords.check_policy(new_password)
        await self._users.update_user(
            user_id, {"password_hash": self._passwords.hash_password(new_password)}
        )
        await self._audit.log(AuditCategory.AUTH, "Password changed", {"user_id": user_id})

    # -------------------------------------------------------------------------
    # Session continuity
    # -------------------------------------------------------------------------

    async def refresh_session(self) -> Session:
        """Record activity on the current session, rotating the access token if due.

        Raises:
            NotAuthenticatedError: No current session
            SessionExpiredError: The session expired; the client is logged out
        """
        session = self._require_session()
        refreshed = await self._sessions.refresh_session(session.id)
        if refreshed is None:
            self._clear()
            self._fire(AuthEvent.SESSION_EXPIRED)
            raise SessionExpiredError()
        self._session = refreshed
        return refreshed

    async def restore_session(self, session_id: str) -> Session | None:
        """Adopt an existing live session, e.g. after a page reload."""
        session = await self._sessions.get_session(session_id)
        if session is None:
            return None

        user = await self._users.get_user_by_id(session.user_id)
        if user is None or not user.is_active:
            await self._sessions.destroy_session(session_id, reason="user_unavailable")
            return None

        self._user = user
        self._session = session
        self._fire(
            AuthEvent.TWO_FACTOR_REQUIRED
            if session.two_factor_pending
            else AuthEvent.LOGIN_SUCCEEDED
        )
        return session

    # -------------------------------------------------------------------------
    # Authorization shortcuts for the current user
    # -------------------------------------------------------------------------

    async def _active_role(self) -> str | None:
        """Role of a live, fully verified session; None otherwise."""
        session = await self.ensure_session()
        if session is None or not self.is_logged_in:
            return None
        return session.user_role

    async def has_permission(self, permission: str) -> bool:
        role = await self._active_role()
        return role is not None and self._rbac.has_permission(role, permission)

    async def has_role(self, role: str) -> bool:
        current = await self._active_role()
        return current is not None and self._rbac.has_role(current, role)

    async def has_any_role(self, roles: Iterable[str]) -> bool:
        current = await self._active_role()
        return current is not None and self._rbac.has_any_role(current, roles)

    async def can_access_route(self, route: str) -> AccessDecision:
        return self._guard.can_access_route(await self.current_principal(), route)

    async def can_access_component(self, name: str) -> AccessDecision:
        return self._guard.can_access_component(await self.current_principal(), name)

    async def can_perform_action(self, action: str, resource: Any = None) -> AccessDecision:
        return self._guard.can_perform_action(await self.current_principal(), action, resource)

    # -------------------------------------------------------------------------
    # Two-factor management
    # -------------------------------------------------------------------------

    async def enable_2fa(self, user_id: str, code: str) -> list[str]:
        return await self._two_factor.enable_2fa(user_id, code)

    async def disable_2fa(self, user_id: str, code: str) -> None:
        await self._two_factor.disable_2fa(user_id, code)

    async def verify_totp_code(self, user_id: str, code: str) -> bool:
        return await self._two_factor.verify_totp_code(user_id, code)

    async def verify_backup_code(self, user_id: str, code: str) -> bool:
        return await self._two_factor.verify_backup_code(user_id, code)

    async def regenerate_backup_codes(self, user_id: str) -> list[str]:
        return await self._two_factor.regenerate_backup_codes(user_id)

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------

    async def get_auth_statistics(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "is_logged_in": self.is_logged_in,
            "user_id": self._user.id if self._user else None,
            "role": self._session.user_role if self._session else None,
            "session_id": self._session.id if self._session else None,
            "sessions": await self._sessions.get_session_statistics(),
            "roles": self._rbac.get_role_statistics(),
            "guard": self._guard.get_security_statistics(),
        }
