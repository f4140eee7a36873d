"""
Utility modules for the document chat backend.

This package contains shared utilities used across the application.
"""

from docchat.utils.encryption import (
    SecretEncryptor,
    EncryptionServiceError,
    ConfigurationError,
    MalformedPayloadError,
    DecryptionError,
    encrypt_value,
    decrypt_value,
    validate_encryption_ready,
)

__all__ = [
    "SecretEncryptor",
    "EncryptionServiceError",
    "ConfigurationError",
    "MalformedPayloadError",
    "DecryptionError",
    "encrypt_value",
    "decrypt_value",
    "validate_encryption_ready",
]
