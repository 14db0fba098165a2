"""Password hashing and password policy.

Uses Argon2id, the winner of the Password Hashing Competition. Stored
hashes embed their parameters, so changing the configured cost only
affects new hashes; ``needs_rehash`` reports old ones.
"""

from __future__ import annotations

import structlog
from argon2 import PasswordHasher
from argon2.exceptions import (
    HashingError,
    InvalidHashError,
    VerificationError,
    VerifyMismatchError,
)

from logistics_auth.errors import PasswordPolicyError

logger = structlog.get_logger(__name__)


class PasswordService:
    """Service for password hashing, verification, and policy checks.

    Attributes:
        min_length: Minimum accepted password length
        max_length: Maximum accepted password length
    """

    def __init__(
        self,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
        hash_len: int = 32,
        salt_len: int = 16,
        min_length: int = 8,
        max_length: int = 128,
    ) -> None:
        """Initialize password service.

        Args:
            time_cost: Number of iterations (higher = slower/more secure)
            memory_cost: Memory usage in KiB (higher = more GPU resistant)
            parallelism: Number of parallel threads
            hash_len: Length of resulting hash in bytes
            salt_len: Length of random salt in bytes
            min_length: Minimum password length accepted by ``check_policy``
            max_length: Maximum password length accepted by ``check_policy``
        """
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=hash_len,
            salt_len=salt_len,
        )
        self.min_length = min_length
        self.max_length = max_length

    def check_policy(self, password: str) -> None:
        """Raise PasswordPolicyError if the password is not acceptable."""
        if not password or len(password) < self.min_length:
            raise PasswordPolicyError(
                f"password must be at least {self.min_length} characters"
            )
        if len(password) > self.max_length:
            raise PasswordPolicyError(
                f"password must be at most {self.max_length} characters"
            )

    def hash_password(self, password: str) -> str:
        """Hash a password using Argon2id.

        Args:
            password: Plain text password to hash

        Returns:
            Argon2id hash string (format: $argon2id$v=19$m=65536,t=3,p=4$salt$hash)

        Raises:
            HashingError: If hashing fails
            ValueError: If password is empty
        """
        if not password:
            raise ValueError("Password cannot be empty")

        try:
            return self._hasher.hash(password)
        except HashingError:
            logger.exception("Failed to hash password")
            raise

    def verify_password(self, password: str, hash_value: str) -> bool:
        """Verify a password against a stored hash.

        Returns:
            True if password matches, False otherwise (including malformed hashes)
        """
        if not password or not hash_value:
            logger.debug(
                "Password verification failed - empty input",
                has_password=bool(password),
                has_hash=bool(hash_value),
            )
            return False

        try:
            self._hasher.verify(hash_value, password)
            return True

        except VerifyMismatchError:
            logger.debug("Password verification failed - mismatch")
            return False

        except InvalidHashError:
            logger.warning("Password verification failed - invalid hash format")
            return False

        except VerificationError as e:
            logger.warning("Password verification failed", error=str(e))
            return False

    def needs_rehash(self, hash_value: str) -> bool:
        """Check whether a stored hash was made with different parameters."""
        try:
            return self._hasher.check_needs_rehash(hash_value)
        except InvalidHashError:
            return True
