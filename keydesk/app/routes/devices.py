"""API routes for device administration."""
from __future__ import annotations

from fastapi import APIRouter, HTTPException, Request, status

from ..auth import Action
from ..errors import KeydeskError
from ..schemas.auth import OkResponse
from ..services import subscriptions as subscription_services
from .subscriptions import admit

router = APIRouter(prefix="/api/devices", tags=["devices"])


@router.post("/{udid}/disable", response_model=OkResponse)
def disable_device(udid: str, request: Request) -> OkResponse:
    principal = admit(request, action=Action.MANAGE_DEVICES)
    cleaned = udid.strip()
    if not 3 <= len(cleaned) <= 128:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail={"error": "Invalid device identifier"})
    try:
        subscription_services.get_subscription_service().disable_device(principal, cleaned)
    except KeydeskError as exc:
        raise exc.to_http_exception() from exc
    return OkResponse()
