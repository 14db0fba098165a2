"""Exception hierarchy for the authentication core.

Every error carries a stable ``reason`` string that callers can map to
UI messages or HTTP responses. Reasons are part of the public contract:
change them only together with their consumers.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for all authentication and authorization errors.

    Attributes:
        reason: Stable, machine-comparable failure reason.
    """

    default_reason = "authentication error"

    def __init__(self, reason: str | None = None) -> None:
        self.reason = reason or self.default_reason
        super().__init__(self.reason)


# =============================================================================
# CREDENTIALS
# =============================================================================


class CredentialError(AuthError):
    """Credential-level failure (login, registration, password management)."""

    default_reason = "credential error"


class InvalidCredentialsError(CredentialError):
    """Raised for any failed login.

    The reason never reveals whether the email exists.
    """

    default_reason = "invalid email or password"


class RegistrationError(CredentialError):
    """Raised when a new account cannot be created."""

    default_reason = "registration failed"


class PasswordPolicyError(CredentialError):
    """Raised when a new password does not satisfy the password policy."""

    default_reason = "password does not satisfy policy"


class PasswordResetError(CredentialError):
    """Raised when a password reset token cannot be honoured."""

    default_reason = "invalid or expired reset token"


# =============================================================================
# TOKENS
# =============================================================================


class TokenError(AuthError):
    """Base class for token failures."""

    default_reason = "invalid token"


class InvalidTokenError(TokenError):
    """Raised when a token fails verification.

    ``reason`` is the verification error (e.g. ``token expired``).
    """


# =============================================================================
# SESSIONS
# =============================================================================


class SessionError(AuthError):
    """Base class for session failures."""

    default_reason = "session error"


class SessionNotFoundError(SessionError):
    default_reason = "session not found"


class SessionExpiredError(SessionError):
    default_reason = "session expired"


class SessionStoreTimeoutError(SessionError):
    """Raised when the snapshot store does not answer within its deadline."""

    default_reason = "session store timeout"


# =============================================================================
# AUTHORIZATION
# =============================================================================


class AuthorizationError(AuthError):
    default_reason = "access denied"


class NotAuthenticatedError(AuthorizationError):
    default_reason = "not authenticated"


class PermissionDeniedError(AuthorizationError):
    """Raised when a user attempts an action they don't have permission for.

    Attributes:
        user_id: The user who was denied
        action: The action that was denied
        required_permission: The permission that was required
    """

    default_reason = "insufficient permissions"

    def __init__(
        self,
        user_id: str,
        action: str,
        required_permission: str | None = None,
        reason: str | None = None,
    ) -> None:
        self.user_id = user_id
        self.action = action
        self.required_permission = required_permission
        super().__init__(reason)


# =============================================================================
# TWO-FACTOR AUTHENTICATION
# =============================================================================


class TwoFactorError(AuthError):
    default_reason = "two-factor authentication failed"


class InvalidTwoFactorCodeError(TwoFactorError):
    default_reason = "invalid 2FA code"


class InvalidBackupCodeError(TwoFactorError):
    default_reason = "invalid backup code"


class TwoFactorNotConfiguredError(TwoFactorError):
    default_reason = "no 2FA secret key found"


class TwoFactorNotEnabledError(TwoFactorError):
    default_reason = "2FA is not enabled"


# =============================================================================
# ROLE CATALOG
# =============================================================================


class RoleError(AuthError):
    default_reason = "role error"


class RoleExistsError(RoleError):
    default_reason = "role already exists"


class RoleNotFoundError(RoleError):
    default_reason = "role not found"


class ProtectedRoleError(RoleError):
    default_reason = "cannot delete admin role"


class PermissionExistsError(RoleError):
    default_reason = "permission already exists"


__all__ = [
    "AuthError",
    "AuthorizationError",
    "CredentialError",
    "InvalidBackupCodeError",
    "InvalidCredentialsError",
    "InvalidTokenError",
    "InvalidTwoFactorCodeError",
    "NotAuthenticatedError",
    "PasswordPolicyError",
    "PasswordResetError",
    "PermissionDeniedError",
    "PermissionExistsError",
    "ProtectedRoleError",
    "RegistrationError",
    "RoleError",
    "RoleExistsError",
    "RoleNotFoundError",
    "SessionError",
    "SessionExpiredError",
    "SessionNotFoundError",
    "SessionStoreTimeoutError",
    "TokenError",
    "TwoFactorError",
    "TwoFactorNotConfiguredError",
    "TwoFactorNotEnabledError",
]
