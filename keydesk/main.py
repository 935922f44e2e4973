import logging
from typing import Any

import psycopg2
from dotenv import load_dotenv
from fastapi import Body, FastAPI, HTTPException, Request, Response, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from keydesk import app_context
from keydesk.app.admission import admission_request_from, generate_csrf_token
from keydesk.app.audit import emit_audit
from keydesk.app.config import Settings, get_settings
from keydesk.app.errors import KeydeskError
from keydesk.app.routes.devices import router as devices_router
from keydesk.app.routes.subscriptions import router as subscriptions_router
from keydesk.app.schemas.auth import (
    CsrfTokenResponse,
    LoginRequest,
    OkResponse,
    RegisterRequest,
    SessionResponse,
    SessionUser,
)
from keydesk.app.services import subscriptions as subscription_services

load_dotenv()

logger = logging.getLogger("keydesk.auth")


def get_conn():
    return psycopg2.connect(**get_settings().db_config())


app_context.configure(get_conn=get_conn)

app = FastAPI(title="Keydesk Reseller API")

app.include_router(subscriptions_router)
app.include_router(devices_router)


@app.exception_handler(RequestValidationError)
async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": {"error": "Invalid request", "details": jsonable_encoder(exc.errors())}},
    )


def _set_session_cookie(response: Response, token: str, settings: Settings) -> None:
    response.set_cookie(
        key=settings.session_cookie_name,
        value=token,
        httponly=True,
        samesite="lax",
        secure=settings.session_cookie_secure,
        max_age=settings.session_expiration_seconds,
        path="/",
    )


def _clear_session_cookies(response: Response, settings: Settings) -> None:
    for name in settings.session_cookie_candidates:
        response.delete_cookie(
            name,
            path="/",
            httponly=True,
            samesite="lax",
            secure=settings.session_cookie_secure,
        )


def _parse_body(model, payload: Any, message: str):
    try:
        return model.model_validate(payload if payload is not None else {})
    except ValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": message, "details": exc.errors(include_url=False, include_context=False)},
        ) from exc


@app.get("/api/auth/csrf", response_model=CsrfTokenResponse)
def issue_csrf_token(response: Response):
    settings = get_settings()
    token = generate_csrf_token()
    response.set_cookie(
        key=settings.csrf_cookie_name,
        value=token,
        httponly=False,
        samesite="lax",
        secure=settings.session_cookie_secure,
        max_age=settings.csrf_cookie_max_age,
        path="/",
    )
    return CsrfTokenResponse(csrf_token=token)


@app.post("/api/auth/login", response_model=OkResponse)
def login(request: Request, response: Response, payload: Any = Body(default=None)):
    settings = get_settings()
    guard = subscription_services.get_admission_guard()
    admission = admission_request_from(request, settings)
    try:
        guard.check_csrf(admission)
    except KeydeskError as exc:
        raise exc.to_http_exception() from exc

    try:
        credentials = LoginRequest.model_validate(payload if payload is not None else {})
    except ValidationError as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail={"error": "Invalid credentials"}) from exc

    try:
        rate_limit_key = guard.check_login(admission, credentials.username)
        _claims, token = subscription_services.get_auth_service().login(
            credentials.username,
            credentials.password,
            rate_limit_key=rate_limit_key,
            origin=admission.origin,
            totp=credentials.totp,
        )
    except KeydeskError as exc:
        raise exc.to_http_exception() from exc

    _set_session_cookie(response, token, settings)
    return OkResponse()


@app.post("/api/auth/logout", response_model=OkResponse)
def logout(request: Request, response: Response):
    settings = get_settings()
    guard = subscription_services.get_admission_guard()
    admission = admission_request_from(request, settings)
    try:
        guard.check_csrf(admission)
    except KeydeskError as exc:
        raise exc.to_http_exception() from exc

    session = guard.optional_session(admission)
    _clear_session_cookies(response, settings)
    if session is not None:
        emit_audit(subscription_services.get_audit_sink(), "auth.logout", actor=session.sub)
    return OkResponse()


@app.get("/api/auth/me", response_model=SessionResponse)
def read_current_session(request: Request):
    settings = get_settings()
    guard = subscription_services.get_admission_guard()
    try:
        claims = guard.authenticate(admission_request_from(request, settings))
    except KeydeskError as exc:
        raise exc.to_http_exception() from exc
    return SessionResponse(user=SessionUser.from_claims(claims))


@app.post("/api/auth/register", response_model=OkResponse, status_code=status.HTTP_201_CREATED)
def register(request: Request, payload: Any = Body(default=None)):
    settings = get_settings()
    guard = subscription_services.get_admission_guard()
    try:
        guard.check_csrf(admission_request_from(request, settings))
    except KeydeskError as exc:
        raise exc.to_http_exception() from exc

    data: RegisterRequest = _parse_body(RegisterRequest, payload, "Validation failed")
    try:
        account = subscription_services.get_auth_service().register(data.username, str(data.email), data.password)
    except KeydeskError as exc:
        raise exc.to_http_exception() from exc

    logger.info("New reseller registered %s", account.id)
    return OkResponse()
