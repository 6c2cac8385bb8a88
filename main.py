from __future__ import annotations

import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from sqlalchemy.exc import SQLAlchemyError

from auth import AuthError, AuthIdentity, decode_access_token, extract_bearer_token
from config import (
    APP_ENV,
    APP_VERSION,
    AUTH_ENABLED,
    AUTH_TOKEN_SECRET,
    LOG_LEVEL,
    MIDTRANS_SERVER_KEY,
    PAYMENT_PROVIDER,
    STARTUP_BOOTSTRAP_ENABLED,
    SUBSCRIPTION_RENEWAL_WINDOW_DAYS,
)
from errors import explain_error
from observability import bind_trace_id, configure_json_logging, get_logger, log_event, reset_trace_id
from subscriptions import (
    AppliedDowngrade,
    SubscriptionChangeRequest,
    SubscriptionError,
    SubscriptionRepository,
    SubscriptionTransaction,
    SubscriptionValidationError,
    UnknownOrderError,
    UnauthorizedError,
    check_downgrade_eligibility,
    create_subscription_transaction,
    get_subscription_status,
    get_tenant_entitlement,
    init_subscription_db,
    invalidate_tenant_entitlement,
    list_transaction_history,
    ping_database,
    plan_label,
    process_midtrans_webhook,
    session_scope,
)
from subscriptions.periods import optional_utc

APP_LOGGER = get_logger("hrsaas.api")

PUBLIC_AUTH_PATHS = {
    "/health",
    "/company/subscription/webhook",
    "/docs",
    "/redoc",
    "/openapi.json",
}


@asynccontextmanager
async def lifespan(_: FastAPI):
    configure_json_logging(level=LOG_LEVEL)
    if AUTH_ENABLED and not AUTH_TOKEN_SECRET:
        raise RuntimeError("AUTH_TOKEN_SECRET is required when AUTH_ENABLED=true")
    if STARTUP_BOOTSTRAP_ENABLED:
        init_subscription_db()
    log_event(
        APP_LOGGER,
        logging.INFO,
        "app.started",
        app_env=APP_ENV,
        version=APP_VERSION,
        payment_provider=PAYMENT_PROVIDER,
    )
    yield


app = FastAPI(title="HR SaaS Subscriptions", version=APP_VERSION, lifespan=lifespan)


# --------------------------------------------------------------------- schema


class SubscriptionCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    target_level: int = Field(validation_alias=AliasChoices("target_level", "level_plan"), ge=0, le=2)
    duration_months: Optional[int] = Field(default=None, ge=1, le=12)


class SubscriptionCreateResponse(BaseModel):
    downgrade: bool = False
    message: Optional[str] = None
    token: Optional[str] = None
    redirect_url: Optional[str] = None
    order_id: Optional[str] = None
    gross_amount: Optional[int] = None
    change_type: Optional[str] = None


class SubscriptionTransactionInfo(BaseModel):
    order_id: str
    change_type: str
    from_level: int
    to_level: int
    duration_months: int
    gross_amount: int
    status: str
    gateway_status: str
    payment_method: Optional[str] = None
    redirect_url: Optional[str] = None
    paid_at: Optional[datetime] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    created_at: Optional[datetime] = None


class SubscriptionStatusResponse(BaseModel):
    level_plan: int
    plan_label: str
    plan_expiration: Optional[datetime] = None


class DowngradeCheckResponse(BaseModel):
    can_downgrade: bool
    message: str
    days_left: Optional[int] = None


class WebhookResponse(BaseModel):
    status: str
    order_id: str
    outcome: str


# ---------------------------------------------------------------- middleware


def _is_public_path(path: str) -> bool:
    normalized = path or "/"
    if normalized in PUBLIC_AUTH_PATHS:
        return True
    return normalized.startswith("/docs/") or normalized.startswith("/redoc/")


def _request_user_id(request: Request) -> str:
    identity = getattr(request.state, "auth_identity", None)
    if isinstance(identity, AuthIdentity):
        return str(identity.username or "anonymous")
    return "anonymous"


def _request_trace_id(request: Request) -> str:
    raw = str(getattr(request.state, "trace_id", "") or "").strip()
    if raw:
        return raw
    return uuid.uuid4().hex


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    trace_id = str(request.headers.get("X-Trace-Id") or uuid.uuid4().hex).strip()[:64]
    request.state.trace_id = trace_id
    token = bind_trace_id(trace_id)
    started = time.perf_counter()
    try:
        response = await call_next(request)
        log_event(
            APP_LOGGER,
            logging.INFO,
            "request.completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=int((time.perf_counter() - started) * 1000),
            user_id=_request_user_id(request),
        )
    finally:
        reset_trace_id(token)
    response.headers["X-Trace-Id"] = trace_id
    return response


@app.middleware("http")
async def auth_middleware(request: Request, call_next):
    if request.method.upper() == "OPTIONS" or _is_public_path(request.url.path):
        return await call_next(request)
    authorization = request.headers.get("Authorization")
    if not AUTH_ENABLED and not authorization:
        return await call_next(request)
    try:
        token = extract_bearer_token(authorization)
        identity = decode_access_token(token, AUTH_TOKEN_SECRET)
    except AuthError as exc:
        return _error_response(request, UnauthorizedError.http_status, UnauthorizedError.error_code, str(exc))
    request.state.auth_identity = identity
    return await call_next(request)


# ---------------------------------------------------------------- errors


def _error_response(request: Request, status_code: int, error_code: str, detail: str) -> JSONResponse:
    info = explain_error(error_code) or {}
    return JSONResponse(
        status_code=status_code,
        content={
            "error_code": error_code,
            "message": info.get("message", error_code),
            "hint": info.get("hint", ""),
            "detail": detail,
        },
        headers={"X-Trace-Id": _request_trace_id(request)},
    )


@app.exception_handler(SubscriptionError)
async def subscription_error_handler(request: Request, exc: SubscriptionError) -> JSONResponse:
    level = logging.ERROR if exc.http_status >= 500 else logging.WARNING
    log_event(
        APP_LOGGER,
        level,
        "request.subscription_error",
        method=request.method,
        path=request.url.path,
        error_code=exc.error_code,
        error=str(exc),
    )
    return _error_response(request, exc.http_status, exc.error_code, str(exc))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    problems = "; ".join(
        f"{'.'.join(str(part) for part in item.get('loc', ()))}: {item.get('msg', 'invalid')}"
        for item in exc.errors()
    )
    return _error_response(request, 400, SubscriptionValidationError.error_code, problems or "invalid request")


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    log_event(
        APP_LOGGER,
        logging.ERROR,
        "request.unhandled_exception",
        user_id=_request_user_id(request),
        method=request.method,
        path=request.url.path,
        exception_type=type(exc).__name__,
        exception_message=str(exc),
    )
    return _error_response(request, 500, "INTERNAL_SERVER_ERROR", "internal server error")


def get_current_identity(request: Request) -> AuthIdentity:
    identity = getattr(request.state, "auth_identity", None)
    if isinstance(identity, AuthIdentity):
        return identity
    raise UnauthorizedError("unauthorized")


def get_current_tenant_id(identity: AuthIdentity = Depends(get_current_identity)) -> str:
    tenant_id = identity.company_id
    if not tenant_id:
        raise UnauthorizedError("token carries no company")
    return tenant_id


def _to_transaction_info(txn: SubscriptionTransaction) -> SubscriptionTransactionInfo:
    return SubscriptionTransactionInfo(
        order_id=txn.order_id,
        change_type=txn.change_type.value,
        from_level=int(txn.from_level),
        to_level=int(txn.to_level),
        duration_months=int(txn.duration_months),
        gross_amount=int(txn.gross_amount),
        status=txn.status.value,
        gateway_status=str(txn.gateway_status or ""),
        payment_method=txn.payment_method,
        redirect_url=txn.redirect_url,
        paid_at=optional_utc(txn.paid_at),
        period_start=optional_utc(txn.period_start),
        period_end=optional_utc(txn.period_end),
        created_at=optional_utc(txn.created_at),
    )


def _parse_webhook_body(raw: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise SubscriptionValidationError(f"invalid webhook payload: {exc}") from exc
    if not isinstance(payload, dict):
        raise SubscriptionValidationError("invalid webhook payload: expected a JSON object")
    return payload


# ---------------------------------------------------------------- routes


@app.get("/health")
async def health() -> dict:
    report: Dict[str, Any] = {"status": "ok", "version": APP_VERSION, "db": "ok"}
    try:
        ping_database()
    except SQLAlchemyError as exc:
        log_event(APP_LOGGER, logging.WARNING, "health.db_unavailable", error=str(exc))
        report["status"] = "degraded"
        report["db"] = "unavailable"
    return report


@app.post(
    "/company/subscription",
    status_code=201,
    response_model=SubscriptionCreateResponse,
    response_model_exclude_none=True,
)
async def create_subscription(
    payload: SubscriptionCreateRequest,
    tenant_id: str = Depends(get_current_tenant_id),
) -> SubscriptionCreateResponse:
    with session_scope() as session:
        result = create_subscription_transaction(
            SubscriptionRepository(session),
            tenant_id,
            SubscriptionChangeRequest(target_level=payload.target_level, duration_months=payload.duration_months),
            renewal_window_days=SUBSCRIPTION_RENEWAL_WINDOW_DAYS,
        )
    if isinstance(result, AppliedDowngrade):
        invalidate_tenant_entitlement(tenant_id)
        return SubscriptionCreateResponse(downgrade=True, message=result.message, order_id=result.order_id)
    return SubscriptionCreateResponse(**result.as_dict())


@app.get("/company/subscription", response_model=List[SubscriptionTransactionInfo])
async def subscription_history(
    tenant_id: str = Depends(get_current_tenant_id),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> List[SubscriptionTransactionInfo]:
    with session_scope() as session:
        items = list_transaction_history(SubscriptionRepository(session), tenant_id, limit=limit, offset=offset)
        return [_to_transaction_info(item) for item in items]


@app.get("/company/subscription/status", response_model=SubscriptionStatusResponse)
async def subscription_status(tenant_id: str = Depends(get_current_tenant_id)) -> SubscriptionStatusResponse:
    with session_scope() as session:
        status = get_subscription_status(SubscriptionRepository(session), tenant_id)
    return SubscriptionStatusResponse(
        level_plan=status.level,
        plan_label=plan_label(status.level),
        plan_expiration=status.expiration,
    )


@app.get("/company/subscription/entitlement", response_model=SubscriptionStatusResponse)
async def subscription_entitlement(tenant_id: str = Depends(get_current_tenant_id)) -> SubscriptionStatusResponse:
    status = get_tenant_entitlement(tenant_id)
    return SubscriptionStatusResponse(
        level_plan=status.level,
        plan_label=plan_label(status.level),
        plan_expiration=status.expiration,
    )


@app.get("/company/subscription/check-downgrade", response_model=DowngradeCheckResponse)
async def subscription_check_downgrade(tenant_id: str = Depends(get_current_tenant_id)) -> DowngradeCheckResponse:
    with session_scope() as session:
        eligibility = check_downgrade_eligibility(
            SubscriptionRepository(session),
            tenant_id,
            renewal_window_days=SUBSCRIPTION_RENEWAL_WINDOW_DAYS,
        )
    return DowngradeCheckResponse(
        can_downgrade=eligibility.can_downgrade,
        message=eligibility.message,
        days_left=eligibility.days_left,
    )


@app.post("/company/subscription/webhook", response_model=WebhookResponse)
async def midtrans_webhook(request: Request) -> WebhookResponse:
    if not MIDTRANS_SERVER_KEY:
        return _error_response(request, 503, "PAYMENT_WEBHOOK_NOT_CONFIGURED", "MIDTRANS_SERVER_KEY is missing")
    payload = _parse_webhook_body(await request.body())
    try:
        with session_scope() as session:
            result = process_midtrans_webhook(
                SubscriptionRepository(session),
                payload,
                server_key=MIDTRANS_SERVER_KEY,
            )
    except UnknownOrderError as exc:
        with session_scope() as session:
            SubscriptionRepository(session).record_audit_log(
                raw_payload=json.dumps(payload, ensure_ascii=False, default=str),
                outcome="rejected_unknown_order",
                order_id=str(payload.get("order_id") or "") or None,
                gateway_status=str(payload.get("transaction_status") or "") or None,
                detail=str(exc),
            )
        raise
    if result.applied:
        invalidate_tenant_entitlement(result.tenant_id)
    return WebhookResponse(status="ok", order_id=result.order_id, outcome=result.outcome)
