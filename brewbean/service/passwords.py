from __future__ import annotations

import re
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
SPECIAL_CHARACTERS = '!@#$%^&*(),.?":{}|<>'

_SPECIAL_RE = re.compile("[" + re.escape(SPECIAL_CHARACTERS) + "]")

# time_cost=3 with 64 MiB memory is well above bcrypt at cost 12
_hasher = PasswordHasher(time_cost=3, memory_cost=64 * 1024, parallelism=4, type=Type.ID)


def validate_strength(password: str) -> Optional[str]:
    """Return the first password rule ``password`` breaks, or None if it passes."""
    if len(password) < MIN_PASSWORD_LENGTH:
        return f"Password must be at least {MIN_PASSWORD_LENGTH} characters long"
    if len(password) > MAX_PASSWORD_LENGTH:
        return f"Password must be at most {MAX_PASSWORD_LENGTH} characters long"
    if not re.search(r"[A-Z]", password):
        return "Password must contain at least one uppercase letter"
    if not re.search(r"[a-z]", password):
        return "Password must contain at least one lowercase letter"
    if not re.search(r"\d", password):
        return "Password must contain at least one number"
    if not _SPECIAL_RE.search(password):
        return "Password must contain at least one special character"
    return None


def hash_password(password: str) -> str:
    return _hasher.hash(password)


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    """Check ``password`` against an argon2 hash without raising on bad input."""
    if not password_hash:
        return False
    try:
        return _hasher.verify(password_hash, password)
    except (InvalidHash, VerifyMismatchError, VerificationError):
        return False


def needs_rehash(password_hash: str) -> bool:
    try:
        return _hasher.check_needs_rehash(password_hash)
    except InvalidHash:
        return True
