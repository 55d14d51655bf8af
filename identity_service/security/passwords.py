"""Password hashing (argon2id) and the platform password policy."""

from __future__ import annotations

import re

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

MIN_LENGTH = 8
MAX_LENGTH = 128
_SPECIAL = re.compile(r"[!@#$%^&*()_+\-=\[\]{}|;:,.<>?]")

_hasher = PasswordHasher(type=Type.ID)
# verified against when the email is unknown so both login failures cost the same
_DUMMY_HASH = _hasher.hash("not-a-real-password")


def password_policy_errors(password: str) -> list[str]:
    """Return the unmet requirements for ``password``; empty when it is acceptable."""
    if not password:
        return ["Password is required"]
    errors: list[str] = []
    if len(password) < MIN_LENGTH:
        errors.append(f"Password must be at least {MIN_LENGTH} characters")
    if len(password) > MAX_LENGTH:
        errors.append(f"Password must be less than {MAX_LENGTH} characters")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter (A-Z)")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter (a-z)")
    if not re.search(r"[0-9]", password):
        errors.append("Password must contain at least one number (0-9)")
    if not _SPECIAL.search(password):
        errors.append("Password must contain at least one special character (!@#$%^&*...)")
    return errors


def hash_password(password: str) -> str:
    return _hasher.hash(password)


def verify_password(password_hash: str | None, password: str) -> bool:
    """Check ``password`` against ``password_hash``; a missing hash still costs one verification."""
    try:
        return _hasher.verify(password_hash or _DUMMY_HASH, password) and password_hash is not None
    except (VerificationError, InvalidHash):
        return False
