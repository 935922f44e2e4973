"""Application wiring for the subscription, admission and auth services."""
from __future__ import annotations

import logging
from functools import lru_cache

from ..admission import AdmissionGuard, InMemoryRateLimitStore, RateLimiter
from ..audit import AuditSink, LoggingAuditSink
from ..auth import AuthService, PostgresAccountRepository
from ..config import get_settings
from ..subscriptions import SubscriptionService
from ..subscriptions.repository import PostgresSubscriptionRepository

logger = logging.getLogger("keydesk.subscriptions")


@lru_cache(maxsize=1)
def get_audit_sink() -> AuditSink:
    return LoggingAuditSink()


@lru_cache(maxsize=1)
def get_rate_limiter() -> RateLimiter:
    settings = get_settings()
    store = InMemoryRateLimitStore(capacity=settings.rate_limit_capacity)
    logger.debug(
        "Rate limiter window=%ss max=%s capacity=%s",
        settings.rate_limit_window_seconds,
        settings.rate_limit_max_attempts,
        settings.rate_limit_capacity,
    )
    return RateLimiter(
        store,
        window_seconds=settings.rate_limit_window_seconds,
        max_attempts=settings.rate_limit_max_attempts,
    )


@lru_cache(maxsize=1)
def get_admission_guard() -> AdmissionGuard:
    return AdmissionGuard(get_settings(), get_rate_limiter(), get_audit_sink())


@lru_cache(maxsize=1)
def get_subscription_service() -> SubscriptionService:
    repository = PostgresSubscriptionRepository()
    return SubscriptionService(repository=repository, audit_sink=get_audit_sink())


@lru_cache(maxsize=1)
def get_auth_service() -> AuthService:
    return AuthService(
        repository=PostgresAccountRepository(),
        settings=get_settings(),
        limiter=get_rate_limiter(),
        audit_sink=get_audit_sink(),
    )


def reset_services() -> None:
    """Drop cached instances so the next call rebuilds them from settings."""

    for factory in (
        get_audit_sink,
        get_rate_limiter,
        get_admission_guard,
        get_subscription_service,
        get_auth_service,
    ):
        factory.cache_clear()


__all__ = [
    "get_admission_guard",
    "get_audit_sink",
    "get_auth_service",
    "get_rate_limiter",
    "get_subscription_service",
    "reset_services",
]
