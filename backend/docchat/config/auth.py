"""
Authentication timing and retry configuration.

Centralizes every timing constant used by the token lifecycle:
- Token refresh threshold and default expiry
- Credential store TTL grace window
- Session max age
- Proactive refresh interval, jitter and retry backoff
- Visibility (absence) thresholds
- Session-expiry prompt thresholds

All values can be overridden via environment variables. Invalid values
fall back to the default rather than failing startup.
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

# Insecure placeholder that must never be used as the server-wide secret
PLACEHOLDER_SERVER_KEY = "default-key-change-in-production"


def parse_env_int(name: str, default: int) -> int:
    """Read an integer environment variable, falling back to default."""
    raw = os.getenv(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(
            "Ignoring non-integer environment value",
            extra={"env_var": name, "default": default},
        )
        return default


def parse_env_bool(name: str, default: bool) -> bool:
    """Read a boolean environment variable, falling back to default."""
    raw = os.getenv(name)
    if not raw:
        return default
    return raw.lower() in ("true", "1", "yes")


@dataclass(frozen=True)
class AuthConfig:
    """Token lifecycle configuration (seconds unless noted)."""

    # Tokens
    refresh_threshold_seconds: int = 120
    default_token_expiry_seconds: int = 3600
    store_ttl_grace_seconds: int = 7200

    # Session proof
    session_secret: Optional[str] = None
    session_max_age_seconds: int = 1800
    session_cookie_name: str = "docchat_session"
    login_state_cookie_name: str = "docchat_login_state"
    secure_cookies: bool = True
    post_login_redirect: str = "/"

    # Proactive refresh
    refresh_interval_seconds: int = 240
    refresh_jitter_seconds: int = 30
    refresh_max_retries: int = 3
    refresh_base_delay_ms: int = 1000
    refresh_max_delay_ms: int = 30000
    refresh_timeout_seconds: int = 15

    # Visibility thresholds
    short_absence_seconds: int = 120
    medium_absence_seconds: int = 240
    long_absence_seconds: int = 600

    # Session-expiry prompt
    unauthorized_prompt_count: int = 3
    unauthorized_window_seconds: int = 30

    # Diagnostics
    token_log_length: int = 20

    @classmethod
    def from_env(cls) -> "AuthConfig":
        """Load configuration from environment variables."""
        return cls(
            refresh_threshold_seconds=parse_env_int("AUTH_TOKEN_REFRESH_THRESHOLD", 120),
            default_token_expiry_seconds=parse_env_int("AUTH_TOKEN_DEFAULT_EXPIRY", 3600),
            store_ttl_grace_seconds=parse_env_int("AUTH_REDIS_TTL_EXTRA", 7200),
            session_secret=os.getenv("AUTH_SECRET"),
            session_max_age_seconds=parse_env_int("AUTH_SESSION_MAX_AGE", 1800),
            session_cookie_name=os.getenv("AUTH_SESSION_COOKIE", "docchat_session"),
            secure_cookies=parse_env_bool(
                "AUTH_SECURE_COOKIES",
                os.getenv("ENV", "production").lower() == "production",
            ),
            post_login_redirect=os.getenv("AUTH_POST_LOGIN_REDIRECT", "/"),
            refresh_interval_seconds=parse_env_int("AUTH_REFRESH_INTERVAL", 4) * 60,
            refresh_jitter_seconds=parse_env_int("AUTH_REFRESH_RANDOM_OFFSET", 30),
            refresh_max_retries=parse_env_int("AUTH_REFRESH_MAX_RETRIES", 3),
            refresh_base_delay_ms=parse_env_int("AUTH_REFRESH_BASE_DELAY", 1000),
            refresh_max_delay_ms=parse_env_int("AUTH_REFRESH_MAX_DELAY", 30000),
            refresh_timeout_seconds=parse_env_int("AUTH_REFRESH_TIMEOUT", 15),
            short_absence_seconds=parse_env_int("AUTH_SHORT_ABSENCE_THRESHOLD", 2) * 60,
            medium_absence_seconds=parse_env_int("AUTH_MEDIUM_ABSENCE_THRESHOLD", 4) * 60,
            long_absence_seconds=parse_env_int("AUTH_LONG_ABSENCE_THRESHOLD", 10) * 60,
            unauthorized_prompt_count=parse_env_int("AUTH_MAX_UNAUTHORIZED_ERRORS", 3),
            unauthorized_window_seconds=parse_env_int("AUTH_UNAUTHORIZED_WINDOW", 30),
            token_log_length=parse_env_int("AUTH_DEBUG_TOKEN_LENGTH", 20),
        )

    def retry_delay(self, attempt: int) -> float:
        """
        Exponential backoff delay in seconds for a retry attempt.

        Args:
            attempt: Zero-based retry attempt index

        Returns:
            base * 2**attempt, capped at the configured maximum
        """
        delay_ms = self.refresh_base_delay_ms * (2 ** attempt)
        return min(delay_ms, self.refresh_max_delay_ms) / 1000.0

    def randomized_interval(self, rand_value: float) -> float:
        """
        Proactive refresh interval with jitter, in seconds.

        Args:
            rand_value: Uniform random value in [0, 1)
        """
        offset = (rand_value - 0.5) * self.refresh_jitter_seconds
        return self.refresh_interval_seconds + offset


@dataclass(frozen=True)
class EncryptionConfig:
    """Server-wide encryption secret configuration."""

    server_key: Optional[str]

    @classmethod
    def from_env(cls) -> "EncryptionConfig":
        return cls(server_key=os.getenv("SERVER_KEY"))

    @property
    def is_configured(self) -> bool:
        """True when a real (non-placeholder) secret is present."""
        return bool(self.server_key) and self.server_key != PLACEHOLDER_SERVER_KEY


_auth_config: Optional[AuthConfig] = None


def get_auth_config() -> AuthConfig:
    """Get or create the process-wide AuthConfig."""
    global _auth_config
    if _auth_config is None:
        _auth_config = AuthConfig.from_env()
    return _auth_config
