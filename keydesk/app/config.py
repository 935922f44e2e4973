"""Runtime configuration helpers."""
from __future__ import annotations

import math
import os
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional


@dataclass(frozen=True)
class Settings:
    """Configuration for the reseller key service."""

    app_env: str
    db_host: str
    db_port: int
    db_name: str
    db_user: str
    db_password: str
    db_connect_timeout: int
    db_statement_timeout_ms: int
    jwt_secret_key: str
    jwt_algorithm: str
    session_expiration_seconds: int
    session_cookie_name: str
    base_session_cookie_name: str
    csrf_cookie_name: str
    csrf_header_name: str
    csrf_cookie_max_age: int
    rate_limit_window_seconds: float
    rate_limit_max_attempts: int
    rate_limit_capacity: int
    session_cookie_secure: bool

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def session_cookie_candidates(self) -> tuple[str, ...]:
        if self.session_cookie_name == self.base_session_cookie_name:
            return (self.session_cookie_name,)
        return (self.session_cookie_name, self.base_session_cookie_name)

    def db_config(self) -> Dict[str, Any]:
        return dict(
            host=self.db_host,
            port=self.db_port,
            dbname=self.db_name,
            user=self.db_user,
            password=self.db_password,
            connect_timeout=self.db_connect_timeout,
            options=f"-c statement_timeout={self.db_statement_timeout_ms}",
        )


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def _parse_connect_timeout(raw_value: Optional[str]) -> int:
    timeout = _to_float(raw_value, default=5.0)
    if timeout < 0:
        raise ValueError("DB_CONNECT_TIMEOUT must be non-negative")
    return int(math.ceil(timeout))


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Load :class:`Settings` from environment variables."""

    env_mapping = os.environ if env is None else env

    app_env = (env_mapping.get("APP_ENV") or "development").strip().lower() or "development"

    jwt_secret_key = env_mapping.get("JWT_SECRET_KEY") or ""
    if not jwt_secret_key:
        if app_env == "production":
            raise ValueError("Missing JWT_SECRET_KEY environment variable")
        jwt_secret_key = "dev-secret-change-me"

    base_cookie = env_mapping.get("SESSION_COOKIE_NAME") or "keydesk_session"
    session_cookie = f"__Host-{base_cookie}" if app_env == "production" else base_cookie

    window_ms = max(1, _to_int(env_mapping.get("RATE_LIMIT_WINDOW"), default=60_000))

    return Settings(
        app_env=app_env,
        db_host=env_mapping.get("DB_HOST", "127.0.0.1"),
        db_port=_to_int(env_mapping.get("DB_PORT"), default=5432),
        db_name=env_mapping.get("DB_NAME", "keydesk"),
        db_user=env_mapping.get("DB_USER", "keydesk"),
        db_password=env_mapping.get("DB_PASSWORD", "keydesk"),
        db_connect_timeout=_parse_connect_timeout(env_mapping.get("DB_CONNECT_TIMEOUT")),
        db_statement_timeout_ms=max(1, _to_int(env_mapping.get("DB_STATEMENT_TIMEOUT_MS"), default=10_000)),
        jwt_secret_key=jwt_secret_key,
        jwt_algorithm="HS256",
        session_expiration_seconds=max(60, _to_int(env_mapping.get("SESSION_EXPIRATION_SECONDS"), default=60 * 60 * 12)),
        session_cookie_name=session_cookie,
        base_session_cookie_name=base_cookie,
        csrf_cookie_name=env_mapping.get("CSRF_COOKIE_NAME") or "keydesk_csrf",
        csrf_header_name=(env_mapping.get("CSRF_HEADER_NAME") or "x-csrf-token").lower(),
        csrf_cookie_max_age=max(60, _to_int(env_mapping.get("CSRF_COOKIE_MAX_AGE"), default=60 * 30)),
        rate_limit_window_seconds=window_ms / 1000.0,
        rate_limit_max_attempts=max(1, _to_int(env_mapping.get("RATE_LIMIT_MAX"), default=5)),
        rate_limit_capacity=max(1, _to_int(env_mapping.get("RATE_LIMIT_CAPACITY"), default=5000)),
        session_cookie_secure=_to_bool(env_mapping.get("SESSION_COOKIE_SECURE"), default=app_env != "development"),
    )


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the process-wide settings, loading them on first use."""

    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def set_settings(settings: Optional[Settings]) -> None:
    """Replace the process-wide settings (``None`` forces a reload)."""

    global _settings
    _settings = settings
