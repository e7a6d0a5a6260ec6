"""PBKDF2-SHA256 password hashes for local EarnSight accounts.

Stored form: ``pbkdf2_sha256$<iterations>$<salt>$<digest>`` with unpadded
urlsafe base64 salt and digest.
"""
from __future__ import annotations

import base64
import hashlib
import hmac
import os

ALGORITHM = "pbkdf2_sha256"
ITERATIONS = 200_000
SALT_BYTES = 16


def _encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _decode(text: str) -> bytes:
    return base64.urlsafe_b64decode((text + "=" * (-len(text) % 4)).encode("ascii"))


def _derive(password: str, salt: bytes, iterations: int) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations)


def hash_password(password: str, iterations: int = ITERATIONS) -> str:
    if not password:
        raise ValueError("Password is required.")
    salt = os.urandom(SALT_BYTES)
    return f"{ALGORITHM}${iterations}${_encode(salt)}${_encode(_derive(password, salt, iterations))}"


def verify_password(password: str, stored_hash: str) -> bool:
    """False for a wrong password and for any hash not in the stored form."""
    if not password or not stored_hash:
        return False
    parts = stored_hash.split("$")
    if len(parts) != 4 or parts[0] != ALGORITHM:
        return False
    try:
        iterations = int(parts[1])
        salt, expected = _decode(parts[2]), _decode(parts[3])
    except ValueError:
        # binascii.Error is a ValueError
        return False
    return hmac.compare_digest(_derive(password, salt, iterations), expected)
