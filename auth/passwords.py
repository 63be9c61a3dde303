"""
auth/passwords.py -- Password hashing and temporary password generation.

Security design decisions:
  bcrypt (direct usage, no passlib wrapper). Its cost factor makes brute force
       of low-entropy secrets expensive, and gensalt() gives every user their
       own salt.

  _DUMMY_HASH enables timing equalization: verify_password_or_dummy() always
       runs one bcrypt check, whether or not the account exists, so response
       time does not reveal which usernames are registered [C1].

  Temporary passwords come from secrets.choice over an alphanumeric alphabet,
       never from the random module.

Layer rule: no imports from api/ or gateway/.
"""

from __future__ import annotations

import secrets
import string

import bcrypt

_TEMP_PASSWORD_ALPHABET = string.ascii_letters + string.digits
TEMP_PASSWORD_LENGTH = 12


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    bcrypt only looks at the first 72 bytes. The API layer caps password
    length (Pydantic field) well below that.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        # Corrupt or non-bcrypt hash in the store
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("authgate_timing_dummy")


def verify_password_or_dummy(plain: str, hashed: str | None) -> bool:
    """Check a password against hashed, or burn the same bcrypt work and fail.

    Use this wherever the account might not exist [C1]. Do NOT return early
    before calling it.
    """
    if hashed is None:
        verify_password(plain, _DUMMY_HASH)
        return False
    return verify_password(plain, hashed)


def generate_temporary_password(length: int = TEMP_PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(_TEMP_PASSWORD_ALPHABET) for _ in range(length))
