"""Configuration loading and validation for the authentication core."""

from __future__ import annotations

import os
from typing import TYPE_CHECKING, Any, cast

if TYPE_CHECKING:
    from pathlib import Path

import structlog
import yaml
from pydantic import ValidationError

from logistics_auth.config.schema import AuthConfig

logger = structlog.get_logger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration loading or validation fails."""

    def __init__(self, message: str, errors: list[dict[str, Any]] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []


def load_yaml_file(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dictionary.

    Args:
        path: Path to the YAML file

    Returns:
        Dictionary containing the parsed YAML

    Raises:
        ConfigurationError: If the file cannot be read or parsed
    """
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")

    if not path.is_file():
        raise ConfigurationError(f"Configuration path is not a file: {path}")

    try:
        with path.open("r", encoding="utf-8") as f:
            content = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e
    except OSError as e:
        raise ConfigurationError(f"Cannot read configuration file {path}: {e}") from e

    if content is None:
        return {}
    if not isinstance(content, dict):
        raise ConfigurationError(f"Configuration must be a YAML mapping, got {type(content)}")
    return content


def expand_env_vars(config: dict[str, Any]) -> dict[str, Any]:
    """Recursively expand environment variables in string values.

    Supports ``$VAR`` and ``${VAR}`` syntax. Unset variables are left as-is,
    which makes the secret length check fail loudly instead of silently
    signing with a placeholder.
    """

    def expand_value(value: Any) -> Any:
        if isinstance(value, str):
            return os.path.expandvars(value)
        elif isinstance(value, dict):
            return {k: expand_value(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [expand_value(item) for item in value]
        return value

    return cast("dict[str, Any]", expand_value(config))


def merge_configs(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Deep merge two configuration dictionaries.

    Override values take precedence. Lists are replaced, not merged.
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = merge_configs(result[key], value)
        else:
            result[key] = value

    return result


def parse_config(config_dict: dict[str, Any]) -> AuthConfig:
    """Validate a configuration mapping.

    Raises:
        ConfigurationError: With one line per validation error
    """
    try:
        return AuthConfig.model_validate(config_dict)
    except ValidationError as e:
        errors = cast("list[dict[str, Any]]", e.errors())
        error_messages = []
        for error in errors:
            loc = ".".join(str(x) for x in error["loc"])
            msg = error["msg"]
            error_messages.append(f"  - {loc}: {msg}")

        raise ConfigurationError(
            "Configuration validation failed:\n" + "\n".join(error_messages),
            errors=errors,
        ) from e


def load_config(
    config_path: Path,
    *,
    override_path: Path | None = None,
    expand_env: bool = True,
) -> AuthConfig:
    """Load and validate configuration from YAML file(s).

    Args:
        config_path: Path to the main configuration file
        override_path: Optional path to override configuration file
        expand_env: Whether to expand environment variables

    Returns:
        Validated AuthConfig instance

    Raises:
        ConfigurationError: If configuration is invalid
    """
    logger.info("Loading configuration", path=str(config_path))

    config_dict = load_yaml_file(config_path)

    if override_path:
        logger.info("Loading configuration override", path=str(override_path))
        config_dict = merge_configs(config_dict, load_yaml_file(override_path))

    if expand_env:
        config_dict = expand_env_vars(config_dict)

    config = parse_config(config_dict)

    logger.info(
        "Configuration loaded successfully",
        service=config.service.name,
        environment=config.service.environment,
        persistence=config.persistence.backend.value,
        max_sessions_per_user=config.sessions.max_sessions_per_user,
    )

    return config


def validate_config_file(config_path: Path) -> list[str]:
    """Validate a configuration file without keeping the result.

    Returns:
        List of validation error messages (empty if valid)
    """
    errors: list[str] = []

    try:
        load_config(config_path)
    except ConfigurationError as e:
        errors.append(str(e))

    return errors


def generate_example_config() -> str:
    """Generate an example configuration YAML string."""
    example = {
        "service": {
            "name": "logistics-auth",
            "environment": "production",
        },
        "tokens": {
            "secret": "${AUTH_TOKEN_SECRET}",
            "algorithm": "HS256",
            "issuer": "mia-logistics-manager",
            "audience": "mia-logistics-users",
            "access_ttl_seconds": 3600,
            "refresh_ttl_seconds": 86400,
        },
        "sessions": {
            "session_timeout_seconds": 86400,
            "idle_timeout_seconds": 1800,
            "max_sessions_per_user": 3,
            "cleanup_interval_seconds": 3600,
            "refresh_threshold_seconds": 300,
        },
        "two_factor": {
            "issuer": "MIA Logistics Manager",
            "backup_code_count": 10,
        },
        "guard": {
            "default_redirect": "/unauthorized",
            "allowed_ips": [],
        },
        "passwords": {
            "min_length": 8,
            "reset_token_ttl_seconds": 3600,
        },
        "persistence": {
            "backend": "sqlite",
            "db_path": "logistics_auth.db",
        },
        "logging": {
            "level": "INFO",
            "format": "json",
        },
    }

    return yaml.dump(example, default_flow_style=False, sort_keys=False, allow_unicode=True)
