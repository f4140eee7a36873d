"""
Secret redaction utilities for logging.

SECURITY REQUIREMENTS:
- Access/refresh/identity tokens NEVER appear in logs
- Decrypted setting values and derived keys NEVER appear in logs
- Encrypted payloads are logged only as a truncated prefix
- ALLOWED in logs: subject, brand code, setting key, role names

Usage:
    from docchat.platform.redaction import truncate_for_log, setup_secret_logging

    logger.warning("Decrypt failed", extra={"prefix": truncate_for_log(payload)})
"""

import logging
import re
from typing import Any

logger = logging.getLogger(__name__)

REDACTED_VALUE = "[REDACTED]"

# Default number of characters kept by truncate_for_log
DEFAULT_LOG_PREFIX_LENGTH = 20

SECRET_KEY_PATTERNS = [
    "token", "secret", "credential", "bearer", "password",
    "api_key", "apikey", "server_key", "authorization", "cookie",
]

SECRET_VALUE_PATTERNS = [
    re.compile(r"(Bearer\s+[A-Za-z0-9\-._~+/]+=*)", re.IGNORECASE),
    re.compile(r"(sk-[A-Za-z0-9_\-]{8,})"),  # OpenAI-style API keys
    re.compile(r"(eyJ[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]+\.[A-Za-z0-9_\-]*)"),  # JWTs
    re.compile(r"([0-9a-fA-F]{32}:[0-9a-fA-F]+)"),  # iv:ciphertext payloads
]


def is_secret_key(key: str) -> bool:
    """
    Check if a key name indicates a secret.

    Args:
        key: The key name to check

    Returns:
        True if the key likely contains a secret
    """
    key_lower = key.lower()
    return any(pattern in key_lower for pattern in SECRET_KEY_PATTERNS)


def redact_value(value: Any) -> Any:
    """Redact known secret shapes from a string value."""
    if not isinstance(value, str):
        return value

    result = value
    for pattern in SECRET_VALUE_PATTERNS:
        result = pattern.sub(REDACTED_VALUE, result)
    return result


def redact_data(data: Any, _depth: int = 0) -> Any:
    """
    Recursively redact secrets from a data structure.

    Args:
        data: Dictionary, list, or other data structure

    Returns:
        Copy of data with secrets redacted
    """
    if _depth > 10:
        return data

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            if isinstance(key, str) and is_secret_key(key):
                result[key] = REDACTED_VALUE
            else:
                result[key] = redact_data(value, _depth + 1)
        return result

    if isinstance(data, (list, tuple)):
        return [redact_data(item, _depth + 1) for item in data]

    return redact_value(data)


def truncate_for_log(value: Any, length: int = DEFAULT_LOG_PREFIX_LENGTH) -> str:
    """
    Render at most the first ``length`` characters of a sensitive value.

    This is the only sanctioned way to put part of a secret-bearing value
    (e.g. an encrypted payload) into a log record.
    """
    if value is None:
        return "<none>"
    text = str(value)
    if len(text) <= length:
        return text
    return text[:length] + "..."


class SecretLoggingFilter(logging.Filter):
    """
    Logging filter that redacts secrets from log records.

    Usage:
        handler.addFilter(SecretLoggingFilter())
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = redact_value(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = redact_data(record.args)
            elif isinstance(record.args, tuple):
                record.args = tuple(
                    redact_value(arg) if isinstance(arg, str) else arg
                    for arg in record.args
                )

        for key in list(record.__dict__.keys()):
            if is_secret_key(key):
                setattr(record, key, REDACTED_VALUE)
            elif isinstance(record.__dict__[key], str):
                setattr(record, key, redact_value(record.__dict__[key]))

        return True


def setup_secret_logging() -> None:
    """
    Attach the redaction filter to every root handler.

    Call this during application startup, after logging is configured.
    """
    secret_filter = SecretLoggingFilter()
    for handler in logging.getLogger().handlers:
        handler.addFilter(secret_filter)

    logger.info("Logging configured with secret redaction filter")
