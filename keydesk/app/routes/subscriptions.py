"""API routes for listing, provisioning and managing subscription keys."""
from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Body, HTTPException, Request, status
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..admission import admission_request_from
from ..auth import Action, Principal
from ..config import get_settings
from ..errors import KeydeskError
from ..schemas.auth import OkResponse
from ..schemas.subscriptions import (
    CreateSubscriptionRequest,
    CreateSubscriptionResponse,
    KeyMetricsResponse,
    RecentKeyDevice,
    RecentKeysResponse,
    RecentKeyItem,
    SubscriptionListResponse,
)
from ..services import subscriptions as subscription_services
from ..subscriptions import SubscriptionFilters

CREATE_RATE_LIMIT_ACTION = "create-subscription"

router = APIRouter(tags=["subscriptions"])


class _RecentKeysQuery(BaseModel):
    limit: int = Field(default=10, ge=1, le=50)
    game_uid: Optional[str] = Field(default=None, min_length=1, max_length=128)
    device: Optional[RecentKeyDevice] = None

    model_config = ConfigDict(str_strip_whitespace=True)


class _SubscriptionIdParams(BaseModel):
    id: str = Field(min_length=1, max_length=128)


def admit(
    request: Request,
    *,
    rate_limit_action: Optional[str] = None,
    action: Optional[Action] = None,
) -> Principal:
    guard = subscription_services.get_admission_guard()
    admission = admission_request_from(
        request,
        get_settings(),
        rate_limit_action=rate_limit_action,
        action=action,
    )
    try:
        return guard.check_admission(admission)
    except KeydeskError as exc:
        raise exc.to_http_exception() from exc


def _bad_request(message: str, exc: Optional[ValidationError] = None) -> HTTPException:
    detail: dict = {"error": message}
    if exc is not None:
        detail["details"] = exc.errors(include_url=False, include_context=False)
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=detail)


def _query_dict(request: Request) -> dict:
    return {key: value for key, value in request.query_params.items() if value != ""}


@router.get("/api/subscriptions", response_model=SubscriptionListResponse)
def list_subscriptions(request: Request) -> SubscriptionListResponse:
    """List keys visible to the caller.

    Query parameters are validated after admission so unauthenticated callers
    always see 401: ``page``, ``pageSize``, ``status``, ``q``, ``game_uid``,
    ``from``, ``to`` and ``sort``.
    """

    principal = admit(request, action=Action.VIEW_SUBSCRIPTIONS)
    try:
        filters = SubscriptionFilters.model_validate(_query_dict(request))
    except ValidationError as exc:
        raise _bad_request("Invalid query parameters", exc) from exc

    service = subscription_services.get_subscription_service()
    try:
        page = service.query_page(principal, filters)
    except KeydeskError as exc:
        raise exc.to_http_exception() from exc
    return SubscriptionListResponse.from_page(page)


@router.post("/api/subscriptions", response_model=CreateSubscriptionResponse)
def create_subscriptions(request: Request, payload: Any = Body(default=None)) -> CreateSubscriptionResponse:
    principal = admit(
        request,
        rate_limit_action=CREATE_RATE_LIMIT_ACTION,
        action=Action.CREATE_SUBSCRIPTIONS,
    )
    try:
        body = CreateSubscriptionRequest.model_validate(payload if payload is not None else {})
    except ValidationError as exc:
        raise _bad_request("Invalid payload", exc) from exc

    service = subscription_services.get_subscription_service()
    try:
        result = service.provision(
            principal,
            game_uid=body.game_uid,
            device=body.device,
            duration=body.duration,
            quantity=body.quantity,
        )
    except KeydeskError as exc:
        raise exc.to_http_exception() from exc
    return CreateSubscriptionResponse.from_result(result)


def _subscription_id(raw: str) -> str:
    try:
        return _SubscriptionIdParams(id=raw).id
    except ValidationError as exc:
        raise _bad_request("Invalid subscription id", exc) from exc


@router.post("/api/subscriptions/{subscription_id}/disable", response_model=OkResponse)
def disable_subscription(subscription_id: str, request: Request) -> OkResponse:
    principal = admit(request)
    key_id = _subscription_id(subscription_id)
    try:
        subscription_services.get_subscription_service().disable_subscription(principal, key_id)
    except KeydeskError as exc:
        raise exc.to_http_exception() from exc
    return OkResponse()


@router.post("/api/subscriptions/{subscription_id}/reset", response_model=OkResponse)
def reset_subscription(subscription_id: str, request: Request) -> OkResponse:
    principal = admit(request)
    key_id = _subscription_id(subscription_id)
    try:
        subscription_services.get_subscription_service().reset_subscription(principal, key_id)
    except KeydeskError as exc:
        raise exc.to_http_exception() from exc
    return OkResponse()


@router.get("/api/keys/recent", response_model=RecentKeysResponse)
def list_recent_keys(request: Request) -> RecentKeysResponse:
    principal = admit(request, action=Action.VIEW_SUBSCRIPTIONS)
    try:
        query = _RecentKeysQuery.model_validate(_query_dict(request))
    except ValidationError as exc:
        raise _bad_request("Invalid query parameters", exc) from exc

    service = subscription_services.get_subscription_service()
    try:
        recent = service.recent_keys(
            principal,
            limit=query.limit,
            game_uid=query.game_uid,
            device=query.device.value if query.device else None,
        )
    except KeydeskError as exc:
        raise exc.to_http_exception() from exc
    return RecentKeysResponse(keys=[RecentKeyItem.from_recent(item) for item in recent])


@router.get("/api/metrics/keys", response_model=KeyMetricsResponse)
def read_key_metrics(request: Request) -> KeyMetricsResponse:
    principal = admit(request, action=Action.VIEW_METRICS)
    try:
        counts = subscription_services.get_subscription_service().key_metrics(principal)
    except KeydeskError as exc:
        raise exc.to_http_exception() from exc
    return KeyMetricsResponse.from_counts(counts)
