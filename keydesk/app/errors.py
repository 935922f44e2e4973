"""Error taxonomy surfaced by admission, authorization and provisioning."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from fastapi import HTTPException, status


@dataclass
class KeydeskError(Exception):
    """Represents an actionable failure surfaced to API callers."""

    code: str
    message: str
    status_code: int = status.HTTP_400_BAD_REQUEST
    detail: Optional[Mapping[str, Any]] = None
    headers: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        base_detail: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.detail:
            base_detail.update(self.detail)
        object.__setattr__(self, "_payload", base_detail)
        super().__init__(self.message)

    @property
    def payload(self) -> Mapping[str, Any]:
        """Serialized representation suitable for JSON responses."""

        return self._payload

    def to_http_exception(self) -> HTTPException:
        """Convert the domain error into a FastAPI HTTPException."""

        return HTTPException(
            status_code=self.status_code,
            detail=dict(self.payload),
            headers=dict(self.headers) or None,
        )


@dataclass
class AdmissionRejected(KeydeskError):
    """Request rejected before any business logic ran."""

    @classmethod
    def invalid_csrf(cls) -> "AdmissionRejected":
        return cls(code="csrf_invalid", message="Invalid CSRF token", status_code=status.HTTP_403_FORBIDDEN)

    @classmethod
    def unauthenticated(cls) -> "AdmissionRejected":
        return cls(code="unauthenticated", message="Unauthorized", status_code=status.HTTP_401_UNAUTHORIZED)

    @classmethod
    def totp_required(cls) -> "AdmissionRejected":
        return cls(
            code="totp_required",
            message="TOTP required",
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail={"totpRequired": True},
        )

    @classmethod
    def rate_limited(cls, retry_after: int, *, message: str = "Too many attempts") -> "AdmissionRejected":
        seconds = max(1, int(retry_after))
        return cls(
            code="rate_limited",
            message=message,
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail={"retryAfter": seconds},
            headers={"Retry-After": str(seconds)},
        )


@dataclass
class AuthorizationDenied(KeydeskError):
    code: str = "forbidden"
    message: str = "Forbidden"
    status_code: int = status.HTTP_403_FORBIDDEN


@dataclass
class ValidationFailed(KeydeskError):
    code: str = "validation_failed"
    message: str = "Invalid request"
    status_code: int = status.HTTP_400_BAD_REQUEST


@dataclass
class NotFound(ValidationFailed):
    code: str = "not_found"
    message: str = "Not found"
    status_code: int = status.HTTP_404_NOT_FOUND


@dataclass
class Conflict(KeydeskError):
    code: str = "conflict"
    message: str = "Already exists"
    status_code: int = status.HTTP_409_CONFLICT


@dataclass
class InsufficientCredits(KeydeskError):
    """Expected business outcome: the debit precondition did not hold."""

    code: str = "insufficient_credits"
    message: str = "Insufficient credits"
    status_code: int = status.HTTP_402_PAYMENT_REQUIRED


@dataclass
class TransientStorageFailure(KeydeskError):
    """Retryable storage error; the atomic section left no partial effects."""

    code: str = "storage_unavailable"
    message: str = "Unable to complete the request, please retry"
    status_code: int = status.HTTP_503_SERVICE_UNAVAILABLE
