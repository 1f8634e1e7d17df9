# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Symmetric encryption of stored secrets and message content.

Values are sealed with AES-256-GCM. Each value gets its own random salt and
the AES key is derived from the server secret with PBKDF2-SHA512, so the same
plaintext never produces the same ciphertext.

Stored format (base64 of the concatenation)::

    salt (64 bytes) | iv (16 bytes) | tag (16 bytes) | ciphertext

Two decryption flavours exist:

- :func:`decrypt_strict` raises :class:`DecryptionError` on anything it
  cannot authenticate. Use it for SMTP passwords, where a garbled value must
  never reach the server.
- :func:`decrypt_maybe_legacy` returns values that do not *look* encrypted
  unchanged (rows written before encryption was introduced) and otherwise
  behaves like the strict variant.

Example:
    >>> secret = generate_secret()
    >>> token = encrypt("smtp-password", secret)
    >>> decrypt_strict(token, secret)
    'smtp-password'
"""

from __future__ import annotations

import base64
import binascii
import os
import re
import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .logger import get_logger

SALT_LENGTH = 64
IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32
PBKDF2_ITERATIONS = 100_000

# salt + iv + tag + at least one byte of ciphertext
MIN_ENCRYPTED_LENGTH = SALT_LENGTH + IV_LENGTH + TAG_LENGTH + 1
MIN_ENCODED_LENGTH = 100

_BASE64_RE = re.compile(r"^[A-Za-z0-9+/]+=*$")

logger = get_logger("Encryption")


class DecryptionError(ValueError):
    """Raised when a value cannot be decrypted and authenticated."""

    def __init__(self, message: str = "Decryption failed"):
        super().__init__(message)


def generate_secret() -> str:
    """Return a fresh random server secret suitable for ``encryption_key``."""
    return secrets.token_urlsafe(48)


def _derive_key(secret: str, salt: bytes) -> bytes:
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA512(),
        length=KEY_LENGTH,
        salt=salt,
        iterations=PBKDF2_ITERATIONS,
    )
    return kdf.derive(secret.encode("utf-8"))


def encrypt(value: str, secret: str) -> str:
    """Encrypt ``value`` with a key derived from ``secret``.

    Args:
        value: Plaintext to seal.
        secret: Server-held secret.

    Returns:
        Base64 text in the stored format described in the module docstring.
    """
    salt = os.urandom(SALT_LENGTH)
    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(_derive_key(secret, salt)).encrypt(iv, value.encode("utf-8"), None)
    # AESGCM appends the tag; the stored layout keeps it in front of the ciphertext
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
    return base64.b64encode(salt + iv + tag + ciphertext).decode("ascii")


def looks_encrypted(value: str | None) -> bool:
    """Return True when ``value`` has the shape of an encrypted token."""
    if not value or len(value) < MIN_ENCODED_LENGTH:
        return False
    if not _BASE64_RE.match(value):
        return False
    try:
        raw = base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        return False
    return len(raw) >= MIN_ENCRYPTED_LENGTH


def decrypt_strict(value: str, secret: str) -> str:
    """Decrypt ``value`` or raise :class:`DecryptionError`.

    The error message is deliberately generic; the underlying reason is only
    logged at debug level.
    """
    try:
        raw = base64.b64decode(value or "", validate=True)
    except (binascii.Error, ValueError) as exc:
        logger.debug("Rejecting non-base64 ciphertext: %s", exc)
        raise DecryptionError() from None
    if len(raw) < MIN_ENCRYPTED_LENGTH:
        raise DecryptionError()

    salt = raw[:SALT_LENGTH]
    iv = raw[SALT_LENGTH:SALT_LENGTH + IV_LENGTH]
    tag = raw[SALT_LENGTH + IV_LENGTH:SALT_LENGTH + IV_LENGTH + TAG_LENGTH]
    ciphertext = raw[SALT_LENGTH + IV_LENGTH + TAG_LENGTH:]
    try:
        plain = AESGCM(_derive_key(secret, salt)).decrypt(iv, ciphertext + tag, None)
        return plain.decode("utf-8")
    except (InvalidTag, UnicodeDecodeError) as exc:
        logger.debug("Ciphertext failed authentication: %s", type(exc).__name__)
        raise DecryptionError() from None


def decrypt_maybe_legacy(value: str, secret: str) -> str:
    """Decrypt ``value``, passing through legacy plaintext unchanged.

    Raises:
        DecryptionError: If the value looks encrypted but fails to decrypt
            (corruption or wrong key).
    """
    if not looks_encrypted(value):
        return value
    return decrypt_strict(value, secret)


def encrypt_optional(value: str | None, secret: str) -> str | None:
    """Encrypt ``value`` unless it is ``None`` or empty."""
    if not value:
        return value
    return encrypt(value, secret)
