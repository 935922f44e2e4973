"""Pre-business-logic checks for incoming requests.

Checks run in a fixed order and the first failure wins: CSRF (state-changing
methods only), authentication, rate limit, then authorization.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

from fastapi import Request

from ..audit import AuditSink, emit_audit
from ..auth.rbac import Action, Principal, authorize, resolve_principal
from ..auth.sessions import SessionClaims, verify_session_token
from ..config import Settings
from ..errors import AdmissionRejected, AuthorizationDenied
from .csrf import requires_csrf, validate_csrf
from .rate_limit import RateLimiter

logger = logging.getLogger("keydesk.admission")

LOGIN_RATE_LIMIT_MESSAGE = "Too many attempts. Try again later."


@dataclass(frozen=True)
class AdmissionRequest:
    """Transport-independent view of the parts of a request the guard reads."""

    method: str
    origin: str = "unknown"
    csrf_header: Optional[str] = None
    csrf_cookie: Optional[str] = None
    session_tokens: Tuple[str, ...] = ()
    rate_limit_action: Optional[str] = None
    action: Optional[Action] = None


def client_origin(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def session_tokens_from(request: Request, settings: Settings) -> Tuple[str, ...]:
    tokens = []
    for name in settings.session_cookie_candidates:
        value = request.cookies.get(name)
        if value:
            tokens.append(value)
    return tuple(tokens)


def admission_request_from(
    request: Request,
    settings: Settings,
    *,
    rate_limit_action: Optional[str] = None,
    action: Optional[Action] = None,
) -> AdmissionRequest:
    return AdmissionRequest(
        method=request.method,
        origin=client_origin(request),
        csrf_header=request.headers.get(settings.csrf_header_name),
        csrf_cookie=request.cookies.get(settings.csrf_cookie_name),
        session_tokens=session_tokens_from(request, settings),
        rate_limit_action=rate_limit_action,
        action=action,
    )


class AdmissionGuard:
    def __init__(
        self,
        settings: Settings,
        limiter: RateLimiter,
        audit_sink: Optional[AuditSink] = None,
    ) -> None:
        self._settings = settings
        self._limiter = limiter
        self._audit_sink = audit_sink

    @property
    def limiter(self) -> RateLimiter:
        return self._limiter

    def check_csrf(self, request: AdmissionRequest) -> None:
        if not requires_csrf(request.method):
            return
        if not validate_csrf(request.csrf_header, request.csrf_cookie):
            logger.warning("CSRF validation failed origin=%s method=%s", request.origin, request.method)
            raise AdmissionRejected.invalid_csrf()

    def authenticate(self, request: AdmissionRequest) -> SessionClaims:
        for token in request.session_tokens:
            claims = verify_session_token(token, self._settings)
            if claims is not None:
                return claims
        raise AdmissionRejected.unauthenticated()

    def optional_session(self, request: AdmissionRequest) -> Optional[SessionClaims]:
        try:
            return self.authenticate(request)
        except AdmissionRejected:
            return None

    def check_admission(self, request: AdmissionRequest) -> Principal:
        """Run every applicable check and return the admitted caller."""

        self.check_csrf(request)
        principal = resolve_principal(self.authenticate(request))

        if request.rate_limit_action:
            key = f"{request.rate_limit_action}:{principal.subject}:{request.origin}"
            result = self._limiter.hit(key)
            if not result.allowed:
                emit_audit(
                    self._audit_sink,
                    "admission.rate_limited",
                    actor=principal.subject,
                    action=request.rate_limit_action,
                    origin=request.origin,
                )
                raise AdmissionRejected.rate_limited(result.retry_after)

        if request.action is not None and not authorize(principal, request.action):
            logger.warning("Authorization denied actor=%s action=%s", principal.subject, request.action.value)
            emit_audit(
                self._audit_sink,
                "admission.forbidden",
                actor=principal.subject,
                action=request.action.value,
            )
            raise AuthorizationDenied()
        return principal

    def check_login(self, request: AdmissionRequest, username: str) -> str:
        """CSRF then origin+username rate limit; returns the limiter key."""

        self.check_csrf(request)
        key = f"{request.origin}:{username}"
        result = self._limiter.hit(key)
        if not result.allowed:
            emit_audit(self._audit_sink, "auth.login_rate_limited", subject=username, origin=request.origin)
            raise AdmissionRejected.rate_limited(result.retry_after, message=LOGIN_RATE_LIMIT_MESSAGE)
        return key


__all__ = [
    "AdmissionGuard",
    "AdmissionRequest",
    "admission_request_from",
    "client_origin",
    "session_tokens_from",
]
