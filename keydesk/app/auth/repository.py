"""Reseller account persistence used by login and registration."""
from __future__ import annotations

from typing import Any, List, Optional, Protocol

import psycopg2
import psycopg2.errors
from psycopg2.extensions import connection as PgConnection
from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..errors import Conflict
from ..storage import dict_cursor


class TotpConfig(BaseModel):
    """Second-factor settings stored as JSON on the reseller row."""

    enabled: bool = False
    secret: Optional[str] = None
    backup_codes: List[str] = Field(default_factory=list, alias="backupCodes")

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    @field_validator("enabled", mode="before")
    @classmethod
    def _coerce_enabled(cls, value: Any) -> Any:
        return value is True

    @field_validator("backup_codes", mode="before")
    @classmethod
    def _coerce_backup_codes(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return []
        return [entry for entry in value if isinstance(entry, str) and entry]


class Account(BaseModel):
    id: str
    password_hash: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    role: str = "reseller"
    permissions: List[str] = Field(default_factory=list)
    disabled: bool = False
    totp: Optional[TotpConfig] = None

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def totp_required(self) -> bool:
        return self.totp is not None and self.totp.enabled

    @field_validator("permissions", mode="before")
    @classmethod
    def _coerce_permissions(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("disabled", mode="before")
    @classmethod
    def _coerce_disabled(cls, value: Any) -> Any:
        return value is True

    @field_validator("role", mode="before")
    @classmethod
    def _coerce_role(cls, value: Any) -> Any:
        return value or "reseller"

    @field_validator("totp", mode="before")
    @classmethod
    def _coerce_totp(cls, value: Any) -> Any:
        return value if isinstance(value, (dict, TotpConfig)) else None


class AccountRepository(Protocol):
    def get_account(self, account_id: str) -> Optional[Account]:
        ...

    def create_account(self, *, account_id: str, email: str, password_hash: str) -> Account:
        ...

    def consume_backup_code(self, account_id: str, stored_hash: str) -> bool:
        ...


class PostgresAccountRepository:
    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    def get_account(self, account_id: str) -> Optional[Account]:
        with dict_cursor(self._conn) as cursor:
            cursor.execute(
                """
                SELECT id, password AS password_hash, name, email, role, permissions, disabled, totp
                FROM resellers
                WHERE id = %s
                LIMIT 1
                """,
                (account_id,),
            )
            row = cursor.fetchone()
            return Account.model_validate(dict(row)) if row else None

    def create_account(self, *, account_id: str, email: str, password_hash: str) -> Account:
        try:
            with dict_cursor(self._conn) as cursor:
                cursor.execute(
                    """
                    INSERT INTO resellers (
                        id, password, name, email, email_verified, role, permissions,
                        allowed_games, credits, disabled, created_at, updated_at
                    )
                    VALUES (%s, %s, %s, %s, FALSE, 'reseller', '{}', '{}', 0, FALSE, NOW(), NOW())
                    RETURNING id, password AS password_hash, name, email, role, permissions, disabled, totp
                    """,
                    (account_id, password_hash, account_id, email),
                )
                row = cursor.fetchone()
        except psycopg2.errors.UniqueViolation as exc:
            raise Conflict(message="Username already exists") from exc
        return Account.model_validate(dict(row))

    def consume_backup_code(self, account_id: str, stored_hash: str) -> bool:
        """Remove a used backup-code digest; ``False`` when it was already gone."""

        with dict_cursor(self._conn) as cursor:
            cursor.execute(
                """
                UPDATE resellers
                SET totp = jsonb_set(
                        totp,
                        '{backupCodes}',
                        COALESCE(
                            (
                                SELECT jsonb_agg(code)
                                FROM jsonb_array_elements_text(totp->'backupCodes') AS code
                                WHERE code <> %(code)s
                            ),
                            '[]'::jsonb
                        )
                    ),
                    updated_at = NOW()
                WHERE id = %(id)s AND totp->'backupCodes' @> to_jsonb(ARRAY[%(code)s::text])
                """,
                {"id": account_id, "code": stored_hash},
            )
            return cursor.rowcount > 0


__all__ = ["Account", "AccountRepository", "PostgresAccountRepository", "TotpConfig"]
