from __future__ import annotations

import hashlib
import re
import secrets

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from tenantgate.core.errors import ValidationError


MIN_LENGTH = 8
SPECIAL_CHARACTERS = "!@#$%^&*()_+-=[]{}|;:,.<>?"

_SPECIAL_RE = re.compile(r"[!@#$%^&*()_+\-=\[\]{}|;:,.<>?]")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9]")

COMMON_PASSWORDS = frozenset(
    {
        "password",
        "password1",
        "password123",
        "123456",
        "123456789",
        "qwerty",
        "qwerty123",
        "abc123",
        "monkey",
        "1234567",
        "letmein",
        "trustno1",
        "dragon",
        "baseball",
        "iloveyou",
        "master",
        "sunshine",
        "ashley",
        "bailey",
        "passw0rd",
        "shadow",
        "123123",
        "654321",
        "superman",
        "qazwsx",
        "michael",
        "football",
        "welcome1",
        "admin123",
    }
)

_hasher = PasswordHasher(type=Type.ID)
# Verified against when the account does not exist so timing does not leak existence.
_DUMMY_HASH = _hasher.hash(secrets.token_urlsafe(16))


def hash_password(password: str) -> str:
    return _hasher.hash(password)


def verify_password(password_hash: str | None, password: str) -> bool:
    if not password_hash:
        _verify_dummy(password)
        return False
    try:
        return _hasher.verify(password_hash, password)
    except (InvalidHash, VerifyMismatchError, VerificationError):
        return False


def _verify_dummy(password: str) -> None:
    try:
        _hasher.verify(_DUMMY_HASH, password)
    except (VerifyMismatchError, VerificationError):
        pass


def needs_rehash(password_hash: str) -> bool:
    try:
        return _hasher.check_needs_rehash(password_hash)
    except InvalidHash:
        return True


def is_common_password(password: str) -> bool:
    # Also catch decorated variants such as "Password123!".
    lowered = password.lower()
    return lowered in COMMON_PASSWORDS or _NON_ALNUM_RE.sub("", lowered) in COMMON_PASSWORDS


def password_errors(password: str | None) -> list[str]:
    if not password:
        return ["Password is required"]
    errors: list[str] = []
    if len(password) < MIN_LENGTH:
        errors.append(f"Password must be at least {MIN_LENGTH} characters long")
    if not re.search(r"[A-Z]", password):
        errors.append("Password must contain at least one uppercase letter")
    if not re.search(r"[a-z]", password):
        errors.append("Password must contain at least one lowercase letter")
    if not re.search(r"[0-9]", password):
        errors.append("Password must contain at least one number")
    if not _SPECIAL_RE.search(password):
        errors.append(f"Password must contain at least one special character ({SPECIAL_CHARACTERS})")
    if is_common_password(password):
        errors.append("Password is too common")
    return errors


def validate_password_complexity(password: str | None, *, field: str = "password") -> None:
    errors = password_errors(password)
    if errors:
        raise ValidationError("Password does not meet requirements", field=field, errors=errors)


def generate_token() -> str:
    return secrets.token_urlsafe(32)


def hash_token(raw_token: str) -> str:
    # Use SHA-256 for deterministic, non-reversible token storage.
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()
