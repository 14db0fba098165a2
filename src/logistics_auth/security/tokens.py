"""Signed token handling.

Tokens are compact JWS strings (``header.payload.signature``) signed with
HMAC. Every token carries ``iat``, ``exp``, ``iss`` and ``aud``; access
tokens add the user, role, permissions and session id, refresh tokens add
``type: "refresh"`` and a random ``token_id``.

Verification is pure and never raises: it returns a ``TokenVerification``
whose ``error`` names the first failed check.
"""

from __future__ import annotations

import json
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import structlog
from jose import JWTError, jws, jwt
from jose.exceptions import JWSError

from logistics_auth.domain.clock import utc_now
from logistics_auth.errors import InvalidTokenError

if TYPE_CHECKING:
    from logistics_auth.domain.clock import Clock

logger = structlog.get_logger(__name__)

DEFAULT_ISSUER = "mia-logistics-manager"
DEFAULT_AUDIENCE = "mia-logistics-users"

REFRESH_TOKEN_TYPE = "refresh"
PASSWORD_RESET_TOKEN_TYPE = "password_reset"

# Verification errors, in the order the checks run.
ERROR_FORMAT = "invalid token format"
ERROR_STRUCTURE = "invalid token structure"
ERROR_SIGNATURE = "invalid signature"
ERROR_EXPIRED = "token expired"
ERROR_ISSUER_AUDIENCE = "invalid issuer/audience"
ERROR_TOKEN_TYPE = "invalid token type"
ERROR_TWO_FACTOR_PENDING = "two-factor verification pending"

# Set on access tokens minted before the second factor is verified.
TWO_FACTOR_PENDING_CLAIM = "two_factor_pending"

_STAMPED_CLAIMS = ("iat", "exp", "iss", "aud")


@dataclass(frozen=True)
class TokenVerification:
    """Outcome of a token verification.

    Exactly one of ``payload`` / ``error`` is set.
    """

    valid: bool
    payload: dict[str, Any] | None = None
    error: str | None = None

    @classmethod
    def ok(cls, payload: dict[str, Any]) -> TokenVerification:
        return cls(valid=True, payload=payload)

    @classmethod
    def fail(cls, error: str) -> TokenVerification:
        return cls(valid=False, error=error)


class TokenService:
    """Service for creating and validating signed tokens.

    Attributes:
        issuer: Value stamped into and required from ``iss``
        audience: Value stamped into and required from ``aud``
        access_ttl: Default lifetime of access tokens
        refresh_ttl: Lifetime of refresh tokens
    """

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        issuer: str = DEFAULT_ISSUER,
        audience: str = DEFAULT_AUDIENCE,
        access_ttl: timedelta = timedelta(hours=1),
        refresh_ttl: timedelta = timedelta(hours=24),
        clock: Clock = utc_now,
    ) -> None:
        """Initialize token service.

        Args:
            secret: Secret key for signing tokens. Must be kept secure.
            algorithm: HMAC signing algorithm (default: HS256)
            issuer: Token issuer
            audience: Token audience
            access_ttl: Default access token lifetime
            refresh_ttl: Refresh token lifetime
            clock: Source of the current time

        Raises:
            ValueError: If secret is empty or too short
        """
        if not secret or len(secret) < 32:
            raise ValueError("Secret must be at least 32 characters long")

        self._secret = secret
        self._algorithm = algorithm
        self.issuer = issuer
        self.audience = audience
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self._clock = clock

    # -------------------------------------------------------------------------
    # Creation
    # -------------------------------------------------------------------------

    def create_token(self, claims: dict[str, Any], ttl: timedelta | None = None) -> str:
        """Sign ``claims`` with fresh ``iat``/``exp`` and the fixed ``iss``/``aud``.

        Args:
            claims: Application claims. Any ``iat``/``exp``/``iss``/``aud`` are replaced.
            ttl: Lifetime of the token (default: access TTL)

        Returns:
            Compact JWS string
        """
        now = self._clock()
        expires = now + (ttl if ttl is not None else self.access_ttl)

        payload = {
            **claims,
            "iat": int(now.timestamp()),
            "exp": int(expires.timestamp()),
            "iss": self.issuer,
            "aud": self.audience,
        }

        token: str = jwt.encode(payload, self._secret, algorithm=self._algorithm)
        return token

    def create_access_token(
        self,
        user_id: str,
        role: str,
        permissions: list[str],
        session_id: str | None = None,
        two_factor_pending: bool = False,
    ) -> str:
        """Create an access token for an authenticated user.

        Tokens minted while a second factor is outstanding carry
        ``two_factor_pending: true`` and fail ``verify_access_token``.
        """
        claims: dict[str, Any] = {
            "user_id": user_id,
            "role": role,
            "permissions": list(permissions),
        }
        if session_id is not None:
            claims["session_id"] = session_id
        if two_factor_pending:
            claims[TWO_FACTOR_PENDING_CLAIM] = True

        token = self.create_token(claims, self.access_ttl)

        logger.debug(
            "Created access token",
            user_id=user_id,
            role=role,
            permission_count=len(permissions),
            two_factor_pending=two_factor_pending,
        )
        return token

    def create_refresh_token(self, user_id: str, session_id: str | None = None) -> str:
        """Create a refresh token.

        Refresh tokens carry no permissions and live as long as a session.
        """
        claims: dict[str, Any] = {
            "user_id": user_id,
            "type": REFRESH_TOKEN_TYPE,
            "token_id": secrets.token_hex(16),
        }
        if session_id is not None:
            claims["session_id"] = session_id

        token = self.create_token(claims, self.refresh_ttl)
        logger.debug("Created refresh token", user_id=user_id)
        return token

    # -------------------------------------------------------------------------
    # Verification
    # -------------------------------------------------------------------------

    def verify_token(self, token: Any) -> TokenVerification:
        """Verify a token's format, structure, signature, expiry, issuer and audience.

        Never raises. No payload is returned on failure.
        """
        if not isinstance(token, str) or not token:
            return TokenVerification.fail(ERROR_FORMAT)

        if len(token.split(".")) != 3:
            return TokenVerification.fail(ERROR_STRUCTURE)

        # Decode first so malformed segments are told apart from bad signatures
        try:
            jws.get_unverified_header(token)
            payload = json.loads(jws.get_unverified_claims(token))
        except (JWSError, ValueError):
            return TokenVerification.fail(ERROR_STRUCTURE)

        try:
            jws.verify(token, self._secret, algorithms=[self._algorithm])
        except JWSError:
            logger.warning("Token signature verification failed")
            return TokenVerification.fail(ERROR_SIGNATURE)

        if not isinstance(payload, dict):
            return TokenVerification.fail(ERROR_STRUCTURE)

        exp = payload.get("exp")
        if not isinstance(exp, int | float) or isinstance(exp, bool):
            return TokenVerification.fail(ERROR_STRUCTURE)

        if exp < self._clock().timestamp():
            return TokenVerification.fail(ERROR_EXPIRED)

        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            return TokenVerification.fail(ERROR_ISSUER_AUDIENCE)

        return TokenVerification.ok(payload)

    def verify_refresh_token(self, token: Any) -> TokenVerification:
        """Verify a token and additionally require ``type == "refresh"``."""
        result = self.verify_token(token)
        if not result.valid or result.payload is None:
            return result
        if result.payload.get("type") != REFRESH_TOKEN_TYPE:
            return TokenVerification.fail(ERROR_TOKEN_TYPE)
        return result

    def verify_access_token(self, token: Any) -> TokenVerification:
        """Verify a token that is to grant access.

        Besides ``verify_token``, rejects refresh and password reset tokens
        and tokens whose second factor is still pending.
        """
        result = self.verify_token(token)
        if not result.valid or result.payload is None:
            return result
        if "type" in result.payload:
            return TokenVerification.fail(ERROR_TOKEN_TYPE)
        if result.payload.get(TWO_FACTOR_PENDING_CLAIM):
            return TokenVerification.fail(ERROR_TWO_FACTOR_PENDING)
        return result

    def refresh_token(self, token: str, ttl: timedelta | None = None) -> str:
        """Re-issue a valid token with fresh timestamps.

        Raises:
            InvalidTokenError: If the token does not verify
        """
        result = self.verify_token(token)
        if not result.valid or result.payload is None:
            raise InvalidTokenError(result.error)

        claims = {k: v for k, v in result.payload.items() if k not in _STAMPED_CLAIMS}
        return self.create_token(claims, ttl)

    # -------------------------------------------------------------------------
    # Unverified inspection
    # -------------------------------------------------------------------------

    def decode_token(self, token: str) -> dict[str, Any] | None:
        """Decode a token's payload without verifying it. For display only."""
        try:
            claims: dict[str, Any] = jwt.get_unverified_claims(token)
        except (JWTError, AttributeError):
            return None
        return claims

    def get_token_expiration(self, token: str) -> datetime | None:
        payload = self.decode_token(token)
        if not payload or not isinstance(payload.get("exp"), int | float):
            return None
        return datetime.fromtimestamp(payload["exp"], tz=UTC)

    def is_token_expired(self, token: str) -> bool:
        """True if the token cannot be decoded or its ``exp`` has passed."""
        expiration = self.get_token_expiration(token)
        if expiration is None:
            return True
        return expiration < self._clock()
