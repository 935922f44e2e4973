"""Signed session tokens carrying the reseller's claims."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from jose import JWTError, jwt
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..config import Settings

logger = logging.getLogger("keydesk.auth")


class SessionClaims(BaseModel):
    """Claims embedded in the session token; never stored server side."""

    sub: str = Field(min_length=1)
    role: str = "reseller"
    name: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)
    email: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    @field_validator("permissions", mode="before")
    @classmethod
    def _coerce_permissions(cls, value):
        if value is None:
            return []
        return [str(item) for item in value]


def create_session_token(
    claims: SessionClaims,
    settings: Settings,
    *,
    expires_delta: Optional[timedelta] = None,
) -> str:
    if expires_delta is None:
        expires_delta = timedelta(seconds=settings.session_expiration_seconds)
    payload = claims.model_dump()
    payload["exp"] = datetime.now(timezone.utc) + expires_delta
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def verify_session_token(token: Optional[str], settings: Settings) -> Optional[SessionClaims]:
    """Return the claims for a valid, unexpired token or ``None``."""

    if not token:
        return None
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None
    try:
        return SessionClaims.model_validate(payload)
    except ValidationError:
        logger.warning("Session token carried malformed claims")
        return None


__all__ = ["SessionClaims", "create_session_token", "verify_session_token"]
