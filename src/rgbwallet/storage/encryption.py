"""
Password-based encryption of wallet secrets at rest.

The key is derived with PBKDF2-HMAC-SHA256 and used with a NaCl SecretBox
(XSalsa20-Poly1305). The stored form is hex(salt || nonce || ciphertext),
where the ciphertext includes the Poly1305 tag.
"""

from __future__ import annotations

import binascii
import hashlib
import secrets

from nacl.exceptions import CryptoError
from nacl.secret import SecretBox

from rgbwallet.constants import KDF_ITERATIONS, KDF_SALT_SIZE
from rgbwallet.errors import EncryptionError

MIN_PAYLOAD_SIZE = KDF_SALT_SIZE + SecretBox.NONCE_SIZE + SecretBox.MACBYTES


def derive_key(password: str, salt: bytes, iterations: int = KDF_ITERATIONS) -> bytes:
    """Derive a SecretBox key from a password."""
    if len(salt) != KDF_SALT_SIZE:
        raise EncryptionError(f"Salt must be {KDF_SALT_SIZE} bytes")
    return hashlib.pbkdf2_hmac(
        "sha256", password.encode("utf-8"), salt, iterations, dklen=SecretBox.KEY_SIZE
    )


def encrypt_secret(plaintext: str, password: str, iterations: int = KDF_ITERATIONS) -> str:
    """
    Encrypt a secret with a password.

    Args:
        plaintext: Secret text (mnemonic, hex private key)
        password: User password
        iterations: PBKDF2 iterations

    Returns:
        Hex-encoded salt || nonce || ciphertext
    """
    salt = secrets.token_bytes(KDF_SALT_SIZE)
    box = SecretBox(derive_key(password, salt, iterations))
    encrypted = box.encrypt(plaintext.encode("utf-8"))
    return (salt + bytes(encrypted)).hex()


def decrypt_secret(payload: str, password: str, iterations: int = KDF_ITERATIONS) -> str:
    """
    Decrypt a secret produced by :func:`encrypt_secret`.

    Raises:
        EncryptionError: wrong password, tampered or malformed payload
    """
    try:
        data = binascii.unhexlify(payload)
    except (TypeError, binascii.Error) as exc:
        raise EncryptionError("Encrypted payload is not valid hex") from exc

    if len(data) < MIN_PAYLOAD_SIZE:
        raise EncryptionError(
            f"Encrypted payload too short: {len(data)} bytes, need at least {MIN_PAYLOAD_SIZE}"
        )

    salt, encrypted = data[:KDF_SALT_SIZE], data[KDF_SALT_SIZE:]
    box = SecretBox(derive_key(password, salt, iterations))
    try:
        plaintext = box.decrypt(encrypted)
    except CryptoError as exc:
        raise EncryptionError("Decryption failed: wrong password or corrupted data") from exc

    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise EncryptionError("Decrypted secret is not valid UTF-8") from exc
