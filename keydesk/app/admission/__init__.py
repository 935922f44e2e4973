"""Admission checks applied before any business logic."""

from .csrf import generate_csrf_token, requires_csrf, validate_csrf
from .guard import AdmissionGuard, AdmissionRequest, admission_request_from, client_origin
from .rate_limit import InMemoryRateLimitStore, RateLimitResult, RateLimitStore, RateLimiter

__all__ = [
    "AdmissionGuard",
    "AdmissionRequest",
    "InMemoryRateLimitStore",
    "RateLimitResult",
    "RateLimitStore",
    "RateLimiter",
    "admission_request_from",
    "client_origin",
    "generate_csrf_token",
    "requires_csrf",
    "validate_csrf",
]
