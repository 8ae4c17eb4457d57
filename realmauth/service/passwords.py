"""Email normalization, password policy and argon2id hashing."""

from __future__ import annotations

import re
import unicodedata
from typing import Optional, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from realmauth.config import Settings
from realmauth.logging import get_logger
from realmauth.service.errors import ValidationError

logger = get_logger(__name__)

PASSWORD_ALGO = "argon2id"

_EMAIL_LOCAL_PART = re.compile(r"^[a-z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-z0-9](?:[a-z0-9-]{0,61}[a-z0-9])?$")


def normalize_email(value: Optional[str]) -> str:
    if value is None:
        return ""
    return unicodedata.normalize("NFKC", value).strip().lower()


def validate_email(value: Optional[str]) -> str:
    """Return the normalized email or raise ``ValidationError``."""

    normalized = normalize_email(value)
    if not normalized:
        raise ValidationError("email is required", detail={"field": "email"})
    if len(normalized) > 254:
        raise ValidationError("email address too long", detail={"field": "email"})
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValidationError("invalid email address", detail={"field": "email"})
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValidationError("invalid email address", detail={"field": "email"})
    labels = domain.split(".")
    if len(labels) < 2:
        raise ValidationError("invalid email address", detail={"field": "email"})
    for label in labels:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValidationError("invalid email address", detail={"field": "email"})
    return normalized


def check_password_policy(password: Optional[str], settings: Settings) -> str:
    """Require length bounds plus upper, lower, digit and symbol characters."""

    if not password:
        raise ValidationError("password is required", detail={"field": "password"})
    problems = []
    if len(password) < settings.password_min_length:
        problems.append(f"at least {settings.password_min_length} characters")
    if len(password) > settings.password_max_length:
        problems.append(f"at most {settings.password_max_length} characters")
    if not any(c.isupper() for c in password):
        problems.append("an uppercase letter")
    if not any(c.islower() for c in password):
        problems.append("a lowercase letter")
    if not any(c.isdigit() for c in password):
        problems.append("a digit")
    if all(c.isalnum() for c in password):
        problems.append("a symbol")
    if problems:
        raise ValidationError(
            "password must contain " + ", ".join(problems),
            detail={"field": "password", "requirements": problems},
        )
    return password


class PasswordService:
    def __init__(self) -> None:
        self._pwd_hasher = PasswordHasher(type=Type.ID)

    def hash_password(self, password: str) -> Tuple[str, str]:
        return self._pwd_hasher.hash(password), PASSWORD_ALGO

    def verify(self, stored_hash: Optional[str], algo: Optional[str], password: str) -> bool:
        if not stored_hash:
            return False
        if algo != PASSWORD_ALGO:
            logger.warning("password_algo_mismatch", algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerificationError):
            return False

    def needs_rehash(self, stored_hash: str) -> bool:
        try:
            return self._pwd_hasher.check_needs_rehash(stored_hash)
        except InvalidHash:
            return True


__all__ = [
    "PASSWORD_ALGO",
    "PasswordService",
    "check_password_policy",
    "normalize_email",
    "validate_email",
]
