"""
Credential encryption for source passwords.

Envelope format: base64("Salted__" + 16-byte IV + AES-256-CBC ciphertext),
with PKCS7 padding and key = SHA-256(encryption key). The format is shared
with the admin UI, so it must stay byte-compatible.
"""

import base64
import hashlib
import os
from typing import Optional

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .errors import ConfigError


DEFAULT_ENCRYPTION_KEY = "kitchen-kiosk-calendar-key"
ENVELOPE_PREFIX = b"Salted__"
IV_SIZE = 16

_encryption_key: str = os.environ.get("ENCRYPTION_KEY") or DEFAULT_ENCRYPTION_KEY


def set_encryption_key(key: Optional[str]) -> None:
    """Set the process-wide encryption key (falls back to the default key)."""
    global _encryption_key
    _encryption_key = key or DEFAULT_ENCRYPTION_KEY


def _derive_key(key: Optional[str]) -> bytes:
    return hashlib.sha256((key or _encryption_key).encode("utf-8")).digest()


def encrypt_password(password: Optional[str], key: Optional[str] = None) -> str:
    """
    Encrypt a password into the envelope format.

    Args:
        password: Plain text password; empty or None yields ''
        key: Encryption key; defaults to the configured key

    Returns:
        Base64 envelope string.
    """
    if not password:
        return ""

    iv = os.urandom(IV_SIZE)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(password.encode("utf-8")) + padder.finalize()

    encryptor = Cipher(algorithms.AES(_derive_key(key)), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()

    return base64.b64encode(ENVELOPE_PREFIX + iv + ciphertext).decode("ascii")


def decrypt_password(envelope: Optional[str], key: Optional[str] = None) -> str:
    """
    Decrypt an envelope produced by encrypt_password.

    Returns '' for empty input.

    Raises:
        ConfigError: if the envelope cannot be decrypted (wrong key,
            truncated or foreign data).
    """
    if not envelope:
        return ""

    try:
        raw = base64.b64decode(envelope, validate=True)
        if not raw.startswith(ENVELOPE_PREFIX) or len(raw) <= len(ENVELOPE_PREFIX) + IV_SIZE:
            raise ValueError("not a salted envelope")
        iv = raw[len(ENVELOPE_PREFIX):len(ENVELOPE_PREFIX) + IV_SIZE]
        ciphertext = raw[len(ENVELOPE_PREFIX) + IV_SIZE:]

        decryptor = Cipher(algorithms.AES(_derive_key(key)), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()

        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        plain = unpadder.update(padded) + unpadder.finalize()
        return plain.decode("utf-8")
    except ValueError as e:
        # Also covers binascii.Error and UnicodeDecodeError
        raise ConfigError(f"Stored password cannot be decrypted, check ENCRYPTION_KEY ({e})") from e
