# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Password hashing and session tokens for campaign owners.

Passwords are stored as ``scrypt$<salt b64>$<hash b64>`` using the scrypt KDF
from ``cryptography``.
"""

from __future__ import annotations

import base64
import binascii
import hmac
import os
import secrets

from cryptography.exceptions import InvalidKey
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

_SCHEME = "scrypt"
_SALT_BYTES = 16
_N, _R, _P = 2**14, 8, 1
_LENGTH = 32

MIN_PASSWORD_LENGTH = 8


def _kdf(salt: bytes) -> Scrypt:
    return Scrypt(salt=salt, length=_LENGTH, n=_N, r=_R, p=_P)


def hash_password(password: str) -> str:
    salt = os.urandom(_SALT_BYTES)
    digest = _kdf(salt).derive(password.encode("utf-8"))
    return "$".join(
        (_SCHEME, base64.b64encode(salt).decode("ascii"), base64.b64encode(digest).decode("ascii"))
    )


def verify_password(password: str, stored: str) -> bool:
    """Check ``password`` against a hash produced by :func:`hash_password`."""
    try:
        scheme, salt_b64, digest_b64 = stored.split("$")
        salt = base64.b64decode(salt_b64, validate=True)
        digest = base64.b64decode(digest_b64, validate=True)
    except (ValueError, binascii.Error):
        return False
    if scheme != _SCHEME:
        return False
    try:
        _kdf(salt).verify(password.encode("utf-8"), digest)
    except InvalidKey:
        return False
    return True


def new_session_token() -> str:
    return secrets.token_urlsafe(32)


def tokens_match(provided: str | None, expected: str | None) -> bool:
    """Constant-time comparison; an unset ``expected`` never matches."""
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
