"""
Tests for settings encryption.

Verifies:
- Round trip under one server key
- Fresh IV per encryption
- Structural payload validation
- Fail-closed behaviour for missing / placeholder SERVER_KEY
- Wrong key surfaces as DecryptionError
"""

import pytest

from docchat.config.auth import PLACEHOLDER_SERVER_KEY
from docchat.utils.encryption import (
    ConfigurationError,
    DecryptionError,
    MalformedPayloadError,
    SecretEncryptor,
    decrypt_value,
    encrypt_value,
    parse_payload,
    validate_encryption_configured,
    validate_encryption_ready,
)


@pytest.fixture
def encryptor():
    return SecretEncryptor("unit-test-secret")


# ============================================================================
# ROUND TRIP
# ============================================================================

class TestRoundTrip:

    def test_decrypt_returns_original(self, encryptor):
        payload = encryptor.encrypt("sk-test-123")
        assert encryptor.decrypt(payload) == "sk-test-123"

    def test_unicode_value(self, encryptor):
        payload = encryptor.encrypt("clé-秘密")
        assert encryptor.decrypt(payload) == "clé-秘密"

    def test_same_plaintext_different_ciphertexts(self, encryptor):
        """Every call uses a fresh IV."""
        first = encryptor.encrypt("sk-test-123")
        second = encryptor.encrypt("sk-test-123")

        assert first != second
        assert first.split(":")[0] != second.split(":")[0]

    def test_payload_shape(self, encryptor):
        iv_hex, ct_hex = encryptor.encrypt("value").split(":")

        assert len(iv_hex) == 32
        assert len(ct_hex) % 32 == 0
        int(iv_hex, 16)
        int(ct_hex, 16)

    def test_empty_value_rejected(self, encryptor):
        with pytest.raises(ValueError):
            encryptor.encrypt("")

    def test_module_helpers_use_server_key(self):
        assert decrypt_value(encrypt_value("flow-secret")) == "flow-secret"


# ============================================================================
# MALFORMED PAYLOADS
# ============================================================================

class TestMalformedPayloads:

    @pytest.mark.parametrize("payload", [
        "invalid-format",
        "short:data",
        "0" * 32 + ":",
        "a:b:c",
        "",
        "zz" * 16 + ":abcd",
    ])
    def test_rejected_before_cipher(self, encryptor, payload):
        with pytest.raises(MalformedPayloadError):
            encryptor.decrypt(payload)

    def test_parse_payload_splits_iv_and_ciphertext(self):
        iv, ciphertext = parse_payload("00" * 16 + ":" + "ff" * 16)

        assert iv == bytes(16)
        assert ciphertext == b"\xff" * 16


# ============================================================================
# KEY HANDLING
# ============================================================================

class TestKeyHandling:

    def test_unset_key_fails_closed(self, monkeypatch):
        monkeypatch.delenv("SERVER_KEY", raising=False)

        with pytest.raises(ConfigurationError):
            SecretEncryptor.from_env()
        assert validate_encryption_configured() is False

    def test_placeholder_key_fails_closed(self, monkeypatch):
        monkeypatch.setenv("SERVER_KEY", PLACEHOLDER_SERVER_KEY)

        with pytest.raises(ConfigurationError):
            encrypt_value("anything")
        with pytest.raises(ConfigurationError):
            validate_encryption_ready()

    def test_configured_key_is_ready(self):
        assert validate_encryption_configured() is True
        assert validate_encryption_ready() is True

    def test_wrong_key_is_decryption_error(self, encryptor):
        payload = encryptor.encrypt("sk-test-123")

        with pytest.raises(DecryptionError):
            SecretEncryptor("a-different-secret").decrypt(payload)

    def test_tampered_ciphertext_is_decryption_error(self, encryptor):
        iv_hex, ct_hex = encryptor.encrypt("sk-test-123").split(":")

        with pytest.raises(DecryptionError):
            encryptor.decrypt(iv_hex + ":" + ct_hex[:-2])
