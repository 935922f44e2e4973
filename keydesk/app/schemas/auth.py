"""API schemas for authentication endpoints."""
from __future__ import annotations

import re
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from ..auth.sessions import SessionClaims

_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9._-]+$")
_PASSWORD_PATTERN = re.compile(r"^(?=.*[A-Za-z])(?=.*\d).+$")
_TOTP_PATTERN = re.compile(r"^(?:[0-9]{6}|[A-Za-z0-9-]{8,32})$")


class LoginRequest(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)
    totp: Optional[str] = None

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("username")
    @classmethod
    def _normalise_username(cls, value: str) -> str:
        cleaned = value.strip().lower()
        if not cleaned:
            raise ValueError("Username is required")
        return cleaned

    @field_validator("totp")
    @classmethod
    def _validate_totp(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        cleaned = value.strip()
        if not cleaned:
            return None
        if not _TOTP_PATTERN.match(cleaned):
            raise ValueError("TOTP must be a 6-digit code or a backup code")
        return cleaned


class RegisterRequest(BaseModel):
    username: str = Field(min_length=3, max_length=32)
    email: EmailStr
    password: str = Field(min_length=10, max_length=128)
    repeat_password: str = Field(alias="repeatPassword")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        cleaned = value.strip()
        if not _USERNAME_PATTERN.match(cleaned):
            raise ValueError("Username may only contain letters, digits, '.', '_' and '-'")
        return cleaned.lower()

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        if not _PASSWORD_PATTERN.match(value):
            raise ValueError("Password must include letters and numbers")
        return value

    @model_validator(mode="after")
    def _passwords_match(self) -> "RegisterRequest":
        if self.password != self.repeat_password:
            raise ValueError("Passwords must match")
        return self


class CsrfTokenResponse(BaseModel):
    csrf_token: str = Field(alias="csrfToken")

    model_config = ConfigDict(populate_by_name=True)


class OkResponse(BaseModel):
    ok: bool = True


class SessionUser(BaseModel):
    sub: str
    role: str
    name: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)
    email: Optional[str] = None

    @classmethod
    def from_claims(cls, claims: SessionClaims) -> "SessionUser":
        return cls(**claims.model_dump())


class SessionResponse(BaseModel):
    user: SessionUser
