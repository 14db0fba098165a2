"""Configuration schema for the authentication core.

Uses Pydantic v2 for validation, serialization, and documentation.
Configuration is loaded from YAML files and validated against these models.
"""

from __future__ import annotations

from datetime import timedelta
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

# =============================================================================
# ENUMERATIONS
# =============================================================================


class PersistenceBackend(str, Enum):
    """Where session snapshots are kept between restarts."""

    MEMORY = "memory"
    SQLITE = "sqlite"


class LogFormat(str, Enum):
    CONSOLE = "console"
    JSON = "json"


# =============================================================================
# SECTIONS
# =============================================================================


class ServiceInfo(BaseModel):
    """Identity of the deployment."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(default="logistics-auth", min_length=1)
    environment: str = Field(default="development")


class TokenConfig(BaseModel):
    """Signed token settings."""

    model_config = ConfigDict(extra="forbid")

    secret: str = Field(..., min_length=32, description="HMAC signing secret")
    algorithm: Literal["HS256", "HS384", "HS512"] = "HS256"
    issuer: str = "mia-logistics-manager"
    audience: str = "mia-logistics-users"
    access_ttl_seconds: int = Field(default=3600, gt=0)
    refresh_ttl_seconds: int = Field(default=86400, gt=0)

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(seconds=self.access_ttl_seconds)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(seconds=self.refresh_ttl_seconds)


class SessionConfig(BaseModel):
    """Session lifetime and housekeeping settings."""

    model_config = ConfigDict(extra="forbid")

    session_timeout_seconds: int = Field(default=86400, gt=0, description="Absolute lifetime")
    idle_timeout_seconds: int = Field(default=1800, gt=0, description="Max gap between activity")
    max_sessions_per_user: int = Field(default=3, ge=1)
    cleanup_interval_seconds: float = Field(default=3600.0, gt=0)
    refresh_threshold_seconds: int = Field(
        default=300,
        ge=0,
        description="Re-mint the access token when it expires within this window",
    )
    store_timeout_seconds: float = Field(default=5.0, gt=0)

    @property
    def session_timeout(self) -> timedelta:
        return timedelta(seconds=self.session_timeout_seconds)

    @property
    def idle_timeout(self) -> timedelta:
        return timedelta(seconds=self.idle_timeout_seconds)

    @property
    def refresh_threshold(self) -> timedelta:
        return timedelta(seconds=self.refresh_threshold_seconds)

    @model_validator(mode="after")
    def validate_timeouts(self) -> SessionConfig:
        if self.idle_timeout_seconds > self.session_timeout_seconds:
            raise ValueError("idle_timeout_seconds must not exceed session_timeout_seconds")
        return self


class TwoFactorConfig(BaseModel):
    """TOTP settings. Digits and period are fixed by authenticator apps."""

    model_config = ConfigDict(extra="forbid")

    issuer: str = "MIA Logistics Manager"
    digits: Literal[6] = 6
    period: Literal[30] = 30
    backup_code_count: int = Field(default=10, ge=1, le=50)
    backup_code_length: int = Field(default=8, ge=6, le=32)
    qr_code_base_url: str = "https://api.qrserver.com/v1/create-qr-code/?size=200x200&data="


class GuardConfig(BaseModel):
    """Authorization guard defaults."""

    model_config = ConfigDict(extra="forbid")

    default_redirect: str = "/unauthorized"
    login_redirect: str = "/login"
    two_factor_redirect: str = "/login/2fa"
    allowed_ips: list[str] = Field(
        default_factory=list,
        description="IP allow-list used by the ip_allowlist middleware (empty = any)",
    )


class PasswordConfig(BaseModel):
    """Password policy and Argon2id parameters."""

    model_config = ConfigDict(extra="forbid")

    min_length: int = Field(default=8, ge=1)
    max_length: int = Field(default=128, ge=8)
    reset_token_ttl_seconds: int = Field(default=3600, gt=0)
    time_cost: int = Field(default=3, ge=1)
    memory_cost: int = Field(default=65536, ge=8)
    parallelism: int = Field(default=4, ge=1)

    @property
    def reset_token_ttl(self) -> timedelta:
        return timedelta(seconds=self.reset_token_ttl_seconds)


class PersistenceConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    backend: PersistenceBackend = PersistenceBackend.MEMORY
    db_path: str = Field(default="logistics_auth.db")


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: LogFormat = LogFormat.CONSOLE


# =============================================================================
# ROOT CONFIGURATION
# =============================================================================


class AuthConfig(BaseModel):
    """Root configuration model for the authentication core."""

    model_config = ConfigDict(extra="forbid")

    schema_version: str = Field(
        default="1.0.0",
        description="Configuration schema version",
    )
    service: ServiceInfo = Field(default_factory=ServiceInfo)
    tokens: TokenConfig
    sessions: SessionConfig = Field(default_factory=SessionConfig)
    two_factor: TwoFactorConfig = Field(default_factory=TwoFactorConfig)
    guard: GuardConfig = Field(default_factory=GuardConfig)
    passwords: PasswordConfig = Field(default_factory=PasswordConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @model_validator(mode="after")
    def validate_lifetimes(self) -> AuthConfig:
        """Validate that token and session lifetimes are consistent."""
        if self.sessions.refresh_threshold_seconds >= self.tokens.access_ttl_seconds:
            raise ValueError(
                "sessions.refresh_threshold_seconds must be shorter than "
                "tokens.access_ttl_seconds"
            )
        if self.tokens.refresh_ttl_seconds < self.sessions.session_timeout_seconds:
            raise ValueError(
                "tokens.refresh_ttl_seconds must cover sessions.session_timeout_seconds"
            )
        return self
