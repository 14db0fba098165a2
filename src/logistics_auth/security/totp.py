"""TOTP two-factor authentication with single-use backup codes.

Codes follow RFC 6238 (HMAC-SHA1, 6 digits, 30 second period) via pyotp,
so any authenticator app can be enrolled from the provisioning URI.
Verification accepts the current time step and one step on either side;
the window is fixed.

Backup codes are shown to the user once and stored only as SHA-256
hashes. Consuming a code removes its hash in the store, so each code
works exactly once.
"""

from __future__ import annotations

import hashlib
import secrets
import string
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING
from urllib.parse import quote

import pyotp
import structlog

from logistics_auth.application.audit import AuditCategory
from logistics_auth.domain.clock import utc_now
from logistics_auth.errors import (
    InvalidBackupCodeError,
    InvalidTwoFactorCodeError,
    TwoFactorError,
    TwoFactorNotConfiguredError,
    TwoFactorNotEnabledError,
)

if TYPE_CHECKING:
    from logistics_auth.application.ports import AuditSink, TwoFactorStore
    from logistics_auth.domain.clock import Clock

logger = structlog.get_logger(__name__)

SECRET_LENGTH = 32
TOTP_DIGITS = 6
TOTP_PERIOD = 30
TOTP_VALID_WINDOW = 1
BACKUP_CODE_ALPHABET = string.digits + string.ascii_uppercase
DEFAULT_QR_CODE_BASE_URL = "https://api.qrserver.com/v1/create-qr-code/?size=200x200&data="


@dataclass(frozen=True)
class TwoFactorSetup:
    """Enrollment material returned by ``generate_secret_key``.

    Attributes:
        secret: Base32 secret (also stored server-side)
        provisioning_uri: ``otpauth://`` URI for authenticator apps
        qr_code_url: Image URL rendering the provisioning URI as a QR code
    """

    secret: str
    provisioning_uri: str
    qr_code_url: str


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(normalize_backup_code(code).encode()).hexdigest()


def normalize_backup_code(code: str) -> str:
    return code.strip().upper()


class TwoFactorAuthService:
    """Per-user TOTP enrollment, verification and backup codes.

    Every outcome is audited; failures raise a TwoFactorError subclass.
    """

    def __init__(
        self,
        store: TwoFactorStore,
        audit: AuditSink,
        issuer: str = "MIA Logistics Manager",
        backup_code_count: int = 10,
        backup_code_length: int = 8,
        qr_code_base_url: str = DEFAULT_QR_CODE_BASE_URL,
        clock: Clock = utc_now,
    ) -> None:
        self._store = store
        self._audit = audit
        self.issuer = issuer
        self.backup_code_count = backup_code_count
        self.backup_code_length = backup_code_length
        self._qr_code_base_url = qr_code_base_url
        self._clock = clock

    # -------------------------------------------------------------------------
    # Code primitives
    # -------------------------------------------------------------------------

    def _totp(self, secret: str) -> pyotp.TOTP:
        return pyotp.TOTP(secret, digits=TOTP_DIGITS, interval=TOTP_PERIOD, issuer=self.issuer)

    def generate_totp_code(self, secret: str, for_time: datetime | int | None = None) -> str:
        """Code for the time step containing ``for_time`` (default: now)."""
        moment = self._clock() if for_time is None else for_time
        timestamp = int(moment.timestamp()) if isinstance(moment, datetime) else int(moment)
        return self._totp(secret).at(timestamp)

    def _matches(self, secret: str, code: str) -> bool:
        if len(code) != TOTP_DIGITS or not code.isdigit():
            return False
        now = int(self._clock().timestamp())
        return self._totp(secret).verify(code, for_time=now, valid_window=TOTP_VALID_WINDOW)

    def _generate_backup_codes(self) -> list[str]:
        codes: set[str] = set()
        while len(codes) < self.backup_code_count:
            codes.add(
                "".join(
                    secrets.choice(BACKUP_CODE_ALPHABET) for _ in range(self.backup_code_length)
                )
            )
        return sorted(codes)

    async def _store_backup_codes(self, user_id: str) -> list[str]:
        codes = self._generate_backup_codes()
        await self._store.set_backup_codes(
            user_id, frozenset(hash_backup_code(c) for c in codes)
        )
        return codes

    # -------------------------------------------------------------------------
    # Enrollment
    # -------------------------------------------------------------------------

    async def generate_secret_key(
        self, user_id: str, account_name: str | None = None
    ) -> TwoFactorSetup:
        """Create and store a new secret. 2FA stays disabled until ``enable_2fa``.

        Raises:
            TwoFactorError: If 2FA is already enabled for the user
        """
        if await self._store.is_enabled(user_id):
            raise TwoFactorError("2FA is already enabled")

        secret = pyotp.random_base32(length=SECRET_LENGTH)
        uri = self._totp(secret).provisioning_uri(name=account_name or user_id)
        await self._store.set_secret(user_id, secret)

        logger.info("2FA secret generated", user_id=user_id)
        return TwoFactorSetup(
            secret=secret,
            provisioning_uri=uri,
            qr_code_url=self._qr_code_base_url + quote(uri, safe=""),
        )

    async def verify_totp_code(self, user_id: str, code: str) -> bool:
        """Check ``code`` against the user's secret.

        Raises:
            TwoFactorNotConfiguredError: If the user has no secret
            InvalidTwoFactorCodeError: If the code is outside the window
        """
        secret = await self._store.get_secret(user_id)
        if not secret:
            await self._audit.log(
                AuditCategory.TWO_FACTOR,
                "TOTP verification without secret",
                {"user_id": user_id},
                success=False,
            )
            raise TwoFactorNotConfiguredError()

        if not self._matches(secret, str(code).strip()):
            await self._audit.log(
                AuditCategory.TWO_FACTOR,
                "TOTP verification failed",
                {"user_id": user_id},
                success=False,
            )
            raise InvalidTwoFactorCodeError()

        await self._audit.log(
            AuditCategory.TWO_FACTOR, "TOTP verification succeeded", {"user_id": user_id}
        )
        return True

    async def enable_2fa(self, user_id: str, code: str) -> list[str]:
        """Enable 2FA after proof of possession.

        Returns:
            The new backup codes in clear text (shown once)
        """
        await self.verify_totp_code(user_id, code)

        await self._store.set_enabled(user_id, True)
        codes = await self._store_backup_codes(user_id)

        await self._audit.log(
            AuditCategory.TWO_FACTOR,
            "2FA enabled",
            {"user_id": user_id, "issued": len(codes)},
        )
        return codes

    async def disable_2fa(self, user_id: str, code: str) -> None:
        """Disable 2FA after proof of possession; clears secret and backup codes."""
        await self.verify_totp_code(user_id, code)

        await self._store.clear(user_id)
        await self._audit.log(AuditCategory.TWO_FACTOR, "2FA disabled", {"user_id": user_id})

    # -------------------------------------------------------------------------
    # Backup codes
    # -------------------------------------------------------------------------

    async def verify_backup_code(self, user_id: str, code: str) -> bool:
        """Consume a backup code.

        Raises:
            InvalidBackupCodeError: If 2FA is disabled or the code is unknown or used
        """
        if not await self._store.is_enabled(user_id):
            await self._audit.log(
                AuditCategory.TWO_FACTOR,
                "Backup code rejected, 2FA disabled",
                {"user_id": user_id},
                success=False,
            )
            raise InvalidBackupCodeError()

        consumed = await self._store.consume_backup_code(user_id, hash_backup_code(code))
        if not consumed:
            await self._audit.log(
                AuditCategory.TWO_FACTOR,
                "Backup code rejected",
                {"user_id": user_id},
                success=False,
            )
            raise InvalidBackupCodeError()

        remaining = len(await self._store.get_backup_codes(user_id))
        await self._audit.log(
            AuditCategory.TWO_FACTOR,
            "Backup code used",
            {"user_id": user_id, "remaining": remaining},
        )
        return True

    async def regenerate_backup_codes(self, user_id: str) -> list[str]:
        """Replace all backup codes.

        Raises:
            TwoFactorNotEnabledError: If 2FA is not enabled
        """
        if not await self._store.is_enabled(user_id):
            raise TwoFactorNotEnabledError()

        codes = await self._store_backup_codes(user_id)
        await self._audit.log(
            AuditCategory.TWO_FACTOR,
            "Backup codes regenerated",
            {"user_id": user_id, "issued": len(codes)},
        )
        return codes

    async def is_2fa_enabled(self, user_id: str) -> bool:
        return await self._store.is_enabled(user_id)

    async def get_remaining_backup_codes(self, user_id: str) -> int:
        return len(await self._store.get_backup_codes(user_id))
