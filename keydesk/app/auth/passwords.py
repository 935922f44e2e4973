"""Password hash formats accepted for reseller accounts.

Accounts created by older tooling store an unsalted SHA-256 hex digest; newer
accounts store a bcrypt hash. The stored value's shape decides which variant
verifies it.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
import re
from dataclasses import dataclass
from typing import Optional, Union

from passlib.hash import bcrypt

logger = logging.getLogger("keydesk.auth")

_SHA256_HEX = re.compile(r"^[a-f0-9]{64}$")


@dataclass(frozen=True)
class LegacyDigest:
    digest: str

    def verify(self, password: str) -> bool:
        candidate = hashlib.sha256(password.encode("utf-8")).hexdigest()
        return hmac.compare_digest(candidate, self.digest)


@dataclass(frozen=True)
class ModernHash:
    value: str

    def verify(self, password: str) -> bool:
        try:
            return bcrypt.verify(password, self.value)
        except (ValueError, TypeError):
            logger.warning("Stored bcrypt hash could not be parsed")
            return False


PasswordHash = Union[LegacyDigest, ModernHash]


def parse_password_hash(stored: Optional[str]) -> Optional[PasswordHash]:
    if not stored or not isinstance(stored, str):
        return None
    value = stored.strip()
    if _SHA256_HEX.match(value.lower()):
        return LegacyDigest(value.lower())
    if bcrypt.identify(value):
        return ModernHash(value)
    return None


def verify_password(password: str, stored: Optional[str]) -> bool:
    parsed = parse_password_hash(stored)
    if parsed is None or not password:
        return False
    return parsed.verify(password)


def hash_password(password: str) -> str:
    return bcrypt.hash(password)


__all__ = ["LegacyDigest", "ModernHash", "PasswordHash", "hash_password", "parse_password_hash", "verify_password"]
