"""Time-based one-time passwords for accounts with a second factor enabled."""
from __future__ import annotations

import hashlib
import hmac
import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional, Union

import pyotp

logger = logging.getLogger("keydesk.auth")

TOTP_INTERVAL_SECONDS = 30
TOTP_VALID_WINDOW = 1

_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class TotpCheck:
    valid: bool
    used_backup: Optional[str] = None


def normalize_totp_secret(secret: Optional[str]) -> Optional[str]:
    if not secret:
        return None
    normalized = _WHITESPACE.sub("", secret).upper()
    return normalized or None


def verify_totp(token: str, secret: Optional[str], *, at: Union[int, float, None] = None) -> bool:
    """Check ``token`` against ``secret`` allowing one step of clock drift."""

    normalized = normalize_totp_secret(secret)
    if normalized is None or not token:
        return False
    try:
        totp = pyotp.TOTP(normalized, interval=TOTP_INTERVAL_SECONDS)
        return totp.verify(token, for_time=at, valid_window=TOTP_VALID_WINDOW)
    except (TypeError, ValueError) as exc:
        logger.warning("Failed to verify TOTP token: %s", exc)
        return False


def hash_backup_code(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


def verify_totp_with_backups(
    token: str,
    secret: Optional[str],
    backup_hashes: Iterable[str] = (),
    *,
    at: Union[int, float, None] = None,
) -> TotpCheck:
    """Accept a current TOTP code or one of the stored backup-code digests.

    ``used_backup`` is the stored digest that matched, so the caller can
    retire it.
    """

    trimmed = (token or "").strip()
    if not trimmed:
        return TotpCheck(valid=False)

    if secret and verify_totp(trimmed, secret, at=at):
        return TotpCheck(valid=True)

    candidate = hash_backup_code(trimmed)
    for stored in backup_hashes:
        if stored and hmac.compare_digest(stored.lower(), candidate):
            return TotpCheck(valid=True, used_backup=stored)
    return TotpCheck(valid=False)


__all__ = [
    "TOTP_INTERVAL_SECONDS",
    "TOTP_VALID_WINDOW",
    "TotpCheck",
    "hash_backup_code",
    "normalize_totp_secret",
    "verify_totp",
    "verify_totp_with_backups",
]
