"""
auth/passwords.py -- Password hashing, the unusable placeholder credential,
and timing-equalized local authentication.

Passwords: bcrypt, used directly (no passlib wrapper). bcrypt's cost factor
makes brute force of low-entropy secrets expensive.

Unusable credential: users created by proxy provisioning must still carry a
credential column value so downstream code need not distinguish origin, but
that value must never verify. make_unusable_password() returns "!" followed
by random hex -- not a bcrypt hash, and verify_password() rejects any
"!"-prefixed value before bcrypt sees it.

Timing: authenticate_user() always runs one bcrypt check, against
_DUMMY_HASH when the user is unknown or has no usable password, so response
time does not reveal whether a username exists.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import secrets
from typing import TYPE_CHECKING

import bcrypt

if TYPE_CHECKING:
    from auth.models import User
    from auth.store import UserStore

logger = logging.getLogger("homeboard.auth")

UNUSABLE_PASSWORD_PREFIX = "!"

# bcrypt rejects (5.x) or truncates (4.x) longer input.
BCRYPT_MAX_BYTES = 72


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises ValueError for input over BCRYPT_MAX_BYTES once UTF-8 encoded;
    the API models reject such passwords before they get here.
    """
    encoded = plain.encode("utf-8")
    if len(encoded) > BCRYPT_MAX_BYTES:
        raise ValueError(f"password is longer than {BCRYPT_MAX_BYTES} bytes")
    return bcrypt.hashpw(encoded, bcrypt.gensalt()).decode("utf-8")


def make_unusable_password() -> str:
    return UNUSABLE_PASSWORD_PREFIX + secrets.token_hex(16)


def is_usable_password(hashed: str | None) -> bool:
    return bool(hashed) and not hashed.startswith(UNUSABLE_PASSWORD_PREFIX)


def verify_password(plain: str, hashed: str | None) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    if not is_usable_password(hashed):
        return False
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Malformed hash in storage; treat as a mismatch.
        return False


# Computed once at module load so the first login is not measurably slower.
_DUMMY_HASH: str = hash_password("homeboard_timing_dummy")


def authenticate_user(store: UserStore, username: str, password: str) -> User | None:
    """Authenticate a local username/password login with timing equalization.

    Returns the User on success, None on any failure.
    """
    user = store.get_by_username(username)
    if user is None or not is_usable_password(user.hashed_password):
        # Equalize timing -- do NOT return before running bcrypt.
        bcrypt.checkpw(password.encode("utf-8")[:BCRYPT_MAX_BYTES], _DUMMY_HASH.encode("utf-8"))
        return None
    if not verify_password(password, user.hashed_password):
        return None
    return user
