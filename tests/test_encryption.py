"""
Tests for password-based secret encryption.
"""

from __future__ import annotations

import pytest

from rgbwallet.errors import EncryptionError
from rgbwallet.storage.encryption import (
    MIN_PAYLOAD_SIZE,
    decrypt_secret,
    derive_key,
    encrypt_secret,
)

ITERATIONS = 1000


class TestEncryption:
    """Tests for encrypt_secret and decrypt_secret."""

    def test_round_trip(self, test_mnemonic: str) -> None:
        """The right password recovers the secret."""
        payload = encrypt_secret(test_mnemonic, "hunter2", ITERATIONS)
        assert decrypt_secret(payload, "hunter2", ITERATIONS) == test_mnemonic

    def test_fresh_salt_and_nonce(self) -> None:
        """Encrypting twice gives different payloads."""
        first = encrypt_secret("secret", "pw", ITERATIONS)
        assert first != encrypt_secret("secret", "pw", ITERATIONS)

    def test_payload_is_not_plaintext(self, test_mnemonic: str) -> None:
        """The mnemonic never appears in the stored form."""
        payload = encrypt_secret(test_mnemonic, "pw", ITERATIONS)
        assert test_mnemonic.encode().hex() not in payload

    def test_wrong_password(self) -> None:
        """A wrong password is an error, never an empty unlock."""
        payload = encrypt_secret("secret", "right", ITERATIONS)
        with pytest.raises(EncryptionError):
            decrypt_secret(payload, "wrong", ITERATIONS)

    def test_tampered_ciphertext(self) -> None:
        """Flipping a ciphertext byte fails authentication."""
        payload = bytearray.fromhex(encrypt_secret("secret", "pw", ITERATIONS))
        payload[-1] ^= 0x01
        with pytest.raises(EncryptionError):
            decrypt_secret(payload.hex(), "pw", ITERATIONS)

    def test_short_payload(self) -> None:
        """Payloads shorter than salt, nonce and tag are rejected."""
        with pytest.raises(EncryptionError) as exc_info:
            decrypt_secret("00" * (MIN_PAYLOAD_SIZE - 1), "pw", ITERATIONS)
        assert "too short" in str(exc_info.value)

    def test_not_hex(self) -> None:
        """Non-hex payloads are rejected."""
        with pytest.raises(EncryptionError):
            decrypt_secret("zz" * MIN_PAYLOAD_SIZE, "pw", ITERATIONS)

    def test_iterations_must_match(self) -> None:
        """The key depends on the iteration count."""
        payload = encrypt_secret("secret", "pw", ITERATIONS)
        with pytest.raises(EncryptionError):
            decrypt_secret(payload, "pw", ITERATIONS + 1)


class TestDeriveKey:
    """Tests for derive_key."""

    def test_key_size(self) -> None:
        """Keys are 32 bytes and deterministic."""
        key = derive_key("pw", b"\x01" * 16, ITERATIONS)
        assert len(key) == 32
        assert key == derive_key("pw", b"\x01" * 16, ITERATIONS)

    def test_bad_salt(self) -> None:
        """The salt length is fixed."""
        with pytest.raises(EncryptionError):
            derive_key("pw", b"\x01" * 8, ITERATIONS)
