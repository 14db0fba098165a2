"""Security primitives.

Provides:
- Argon2id password hashing and policy checks
- Signed token issuance and verification
- TOTP two-factor authentication and backup codes
"""

from logistics_auth.security.password import PasswordService
from logistics_auth.security.tokens import TokenService, TokenVerification
from logistics_auth.security.totp import TwoFactorAuthService, TwoFactorSetup

__all__ = [
    "PasswordService",
    "TokenService",
    "TokenVerification",
    "TwoFactorAuthService",
    "TwoFactorSetup",
]
