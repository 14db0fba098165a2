"""Logistics Auth - authentication and authorization core for a logistics dashboard.

This package provides:
- Credential login with Argon2id password hashing and password reset
- Signed access and refresh tokens with rotation near expiry
- Sessions with idle and absolute expiry and a per-user limit
- TOTP two-factor authentication with single-use backup codes
- A role hierarchy with permission checks and route/component/action guards
"""

__version__ = "0.1.0"

__author__ = "Logistics Auth Team"

from logistics_auth.domain.model.users import Principal, User

__all__ = [
    "Principal",
    "User",
    "__version__",
]
