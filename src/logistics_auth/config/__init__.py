"""Configuration loading for the authentication core."""

from logistics_auth.config.loader import (
    ConfigurationError,
    generate_example_config,
    load_config,
    parse_config,
    validate_config_file,
)
from logistics_auth.config.schema import (
    AuthConfig,
    GuardConfig,
    PasswordConfig,
    PersistenceBackend,
    SessionConfig,
    TokenConfig,
    TwoFactorConfig,
)

__all__ = [
    "AuthConfig",
    "ConfigurationError",
    "GuardConfig",
    "PasswordConfig",
    "PersistenceBackend",
    "SessionConfig",
    "TokenConfig",
    "TwoFactorConfig",
    "generate_example_config",
    "load_config",
    "parse_config",
    "validate_config_file",
]
