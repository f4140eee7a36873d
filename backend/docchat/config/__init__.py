"""Configuration module for backend services."""

from docchat.config.auth import (
    AuthConfig,
    EncryptionConfig,
    get_auth_config,
    parse_env_bool,
    parse_env_int,
)

__all__ = [
    "AuthConfig",
    "EncryptionConfig",
    "get_auth_config",
    "parse_env_bool",
    "parse_env_int",
]
