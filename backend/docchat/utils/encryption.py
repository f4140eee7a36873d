"""
Encryption utilities for brand secret settings.

Implements AES-256-CBC encryption for storing secret configuration values
(API keys) at rest.

SECURITY:
- Key is derived from the server-wide SERVER_KEY with scrypt (static salt)
- Each encryption uses a fresh random 16-byte IV
- Refuses to run when SERVER_KEY is unset or still the placeholder default
- Payloads and derived keys are never logged; at most a truncated prefix

Payload format:
    <iv as 32 hex chars>:<ciphertext as hex>

Key derivation is intentionally slow. Use these helpers only for
configuration reads/writes, never on a per-request hot path.

Usage:
    from docchat.utils.encryption import encrypt_value, decrypt_value

    payload = encrypt_value("sk-live-...")
    plaintext = decrypt_value(payload)
"""

import logging
import secrets
from typing import Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

from docchat.config.auth import EncryptionConfig, PLACEHOLDER_SERVER_KEY
from docchat.platform.redaction import truncate_for_log

logger = logging.getLogger(__name__)


# AES-CBC constants
IV_SIZE = 16          # 128-bit block size
IV_HEX_LENGTH = IV_SIZE * 2
KEY_SIZE = 32         # 256 bits for AES-256

# scrypt parameters (N=2^14, r=8, p=1) with a static salt.
# The server secret is the trust root, so the salt is not user-controlled.
KDF_SALT = b"salt"
KDF_N = 2 ** 14
KDF_R = 8
KDF_P = 1

PAYLOAD_SEPARATOR = ":"


class EncryptionServiceError(Exception):
    """Base class for encryption service failures."""
    pass


class ConfigurationError(EncryptionServiceError):
    """Raised when the server-wide secret is missing or still the placeholder."""
    pass


class MalformedPayloadError(EncryptionServiceError):
    """Raised when a stored payload is structurally invalid (corrupted data)."""
    pass


class DecryptionError(EncryptionServiceError):
    """Raised when the cipher rejects a payload (wrong key or tampering)."""
    pass


def derive_key(server_key: str) -> bytes:
    """
    Derive the 32-byte AES key from the server secret.

    Args:
        server_key: Server-wide secret

    Returns:
        32-byte derived key
    """
    kdf = Scrypt(salt=KDF_SALT, length=KEY_SIZE, n=KDF_N, r=KDF_R, p=KDF_P)
    return kdf.derive(server_key.encode("utf-8"))


def parse_payload(payload: str) -> tuple[bytes, bytes]:
    """
    Split and validate an ``iv:ciphertext`` payload.

    Returns:
        Tuple of (iv, ciphertext) bytes

    Raises:
        MalformedPayloadError: On any structural violation
    """
    if not isinstance(payload, str) or not payload:
        raise MalformedPayloadError("Encrypted value must be a non-empty string")

    parts = payload.split(PAYLOAD_SEPARATOR)
    if len(parts) != 2:
        raise MalformedPayloadError(
            "Invalid encrypted value format. Expected format: iv:encrypted_data"
        )

    iv_hex, ciphertext_hex = parts
    if len(iv_hex) != IV_HEX_LENGTH:
        raise MalformedPayloadError(
            f"Invalid IV length. Expected {IV_HEX_LENGTH} hex characters."
        )
    if not ciphertext_hex:
        raise MalformedPayloadError("Encrypted data is empty")

    try:
        iv = bytes.fromhex(iv_hex)
        ciphertext = bytes.fromhex(ciphertext_hex)
    except ValueError as e:
        raise MalformedPayloadError("Encrypted value is not valid hex") from e

    return iv, ciphertext


class SecretEncryptor:
    """
    AES-256-CBC encryptor bound to one server secret.

    SECURITY:
    - Construction fails closed when the secret is missing or a placeholder
    - Never reuse IVs; every encrypt() call generates a fresh one
    - The derived key is not cached and never logged
    """

    def __init__(self, server_key: Optional[str]):
        """
        Initialize encryptor with the server-wide secret.

        Raises:
            ConfigurationError: If the secret is unset or the placeholder
        """
        if not server_key or server_key == PLACEHOLDER_SERVER_KEY:
            raise ConfigurationError(
                "SERVER_KEY environment variable must be set to a non-default value"
            )
        self._server_key = server_key

    @classmethod
    def from_env(cls) -> "SecretEncryptor":
        return cls(EncryptionConfig.from_env().server_key)

    @staticmethod
    def generate_iv() -> bytes:
        """Generate a new random 16-byte IV."""
        return secrets.token_bytes(IV_SIZE)

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a secret string.

        Args:
            plaintext: Non-empty secret value

        Returns:
            ``iv_hex:ciphertext_hex`` payload

        Raises:
            ValueError: If plaintext is empty
        """
        if not plaintext:
            raise ValueError("Cannot encrypt empty value")

        key = derive_key(self._server_key)
        iv = self.generate_iv()

        padder = padding.PKCS7(algorithms.AES.block_size).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()

        encryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()

        return iv.hex() + PAYLOAD_SEPARATOR + ciphertext.hex()

    def decrypt(self, payload: str) -> str:
        """
        Decrypt an ``iv:ciphertext`` payload.

        Raises:
            MalformedPayloadError: If the payload structure is invalid
            DecryptionError: If the cipher rejects the ciphertext
        """
        iv, ciphertext = parse_payload(payload)
        key = derive_key(self._server_key)

        try:
            decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
            padded = decryptor.update(ciphertext) + decryptor.finalize()

            unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
            plaintext = unpadder.update(padded) + unpadder.finalize()

            return plaintext.decode("utf-8")
        except ValueError as e:
            # Covers bad block length, bad padding and non-UTF-8 output
            logger.warning(
                "Decryption rejected by cipher",
                extra={
                    "payload_prefix": truncate_for_log(payload),
                    "error_type": type(e).__name__,
                },
            )
            raise DecryptionError(
                "Failed to decrypt value. Data may be corrupted or the encryption key changed."
            ) from e


def validate_encryption_configured() -> bool:
    """Return True if SERVER_KEY is set to a usable value."""
    return EncryptionConfig.from_env().is_configured


def validate_encryption_ready() -> bool:
    """
    Validate that encryption is properly configured.

    Call this during application startup to fail fast.

    Raises:
        ConfigurationError: If encryption is not configured
    """
    if not validate_encryption_configured():
        raise ConfigurationError(
            "SERVER_KEY environment variable is required for encrypted settings."
        )
    logger.info("Settings encryption validated successfully")
    return True


def encrypt_value(plaintext: str) -> str:
    """Encrypt with the process-wide SERVER_KEY."""
    return SecretEncryptor.from_env().encrypt(plaintext)


def decrypt_value(payload: str) -> str:
    """Decrypt with the process-wide SERVER_KEY."""
    return SecretEncryptor.from_env().decrypt(payload)
