"""Double-submit CSRF tokens."""
from __future__ import annotations

import hmac
import secrets
from typing import Optional

STATE_CHANGING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})


def generate_csrf_token() -> str:
    return secrets.token_hex(32)


def validate_csrf(header_token: Optional[str], cookie_token: Optional[str]) -> bool:
    """True when both tokens are present and identical byte for byte."""

    if not header_token or not cookie_token:
        return False
    return hmac.compare_digest(header_token.encode("utf-8"), cookie_token.encode("utf-8"))


def requires_csrf(method: str) -> bool:
    return method.upper() in STATE_CHANGING_METHODS
