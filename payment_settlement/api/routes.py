"""
API routes for payment settlement.
"""
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Depends, Header, Request, Response, status
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from sqlalchemy.ext.asyncio import AsyncSession

from payment_settlement.config import get_settings
from payment_settlement.core.abuse_tracker import (
    AbuseTracker,
    LoginGuard,
    RateLimitPolicy,
    RateLimitStatus,
)
from payment_settlement.core.context import Caller, network_context_from_headers
from payment_settlement.core.errors import MalformedRequest
from payment_settlement.core.intent_manager import IntentManager
from payment_settlement.core.verification import VerificationEngine
from payment_settlement.database.connection import get_db
from payment_settlement.monitoring.health import HealthCheck

from .auth import get_current_caller, get_optional_caller
from .schemas import (
    CreateIntentRequest,
    CreateIntentResponse,
    ErrorResponse,
    FormRateLimitResponse,
    GatewayConfigResponse,
    HealthCheckResponse,
    LoginRateLimitRequest,
    RateLimitResponse,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)

logger = structlog.get_logger(__name__)

# Create routers
payment_router = APIRouter(prefix="/payments", tags=["payments"])
rate_limit_router = APIRouter(prefix="/rate-limit", tags=["rate-limit"])
monitoring_router = APIRouter(tags=["monitoring"])

_ERROR_RESPONSES: Dict[int | str, Dict[str, Any]] = {
    400: {"model": ErrorResponse},
    401: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
    429: {"model": ErrorResponse},
    502: {"model": ErrorResponse},
    504: {"model": ErrorResponse},
}

# Services are built on first use so importing the app does not require
# gateway credentials; tests replace these dependencies.
_services: Dict[str, Any] = {}


def get_intent_manager() -> IntentManager:
    if "intent_manager" not in _services:
        _services["intent_manager"] = IntentManager()
    return _services["intent_manager"]


def get_verification_engine() -> VerificationEngine:
    if "verification_engine" not in _services:
        _services["verification_engine"] = VerificationEngine()
    return _services["verification_engine"]


def get_login_guard() -> LoginGuard:
    if "login_guard" not in _services:
        _services["login_guard"] = LoginGuard()
    return _services["login_guard"]


def get_form_tracker() -> AbuseTracker:
    if "form_tracker" not in _services:
        _services["form_tracker"] = AbuseTracker(RateLimitPolicy.form_submission(get_settings()))
    return _services["form_tracker"]


def get_health_check() -> HealthCheck:
    if "health_check" not in _services:
        _services["health_check"] = HealthCheck()
    return _services["health_check"]


def _rate_limit_response(limit: RateLimitStatus) -> Dict[str, Any]:
    return {
        "allowed": limit.allowed,
        "state": limit.state,
        "attempts_remaining": limit.attempts_remaining,
        "blocked_until": limit.blocked_until,
    }


@payment_router.post(
    "/intents",
    response_model=CreateIntentResponse,
    responses=_ERROR_RESPONSES,
    summary="Create a payment intent",
    description="Create a gateway order for an order; idempotent per X-Idempotency-Key",
)
async def create_intent(
    body: CreateIntentRequest,
    request: Request,
    idempotency_key: Optional[str] = Header(None, alias="X-Idempotency-Key"),
    caller: Optional[Caller] = Depends(get_optional_caller),
    intent_manager: IntentManager = Depends(get_intent_manager),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """
    Create a payment intent.

    The claimed amount is checked against the order total; it is never used
    as the charged amount.
    """
    result = await intent_manager.create_intent(
        db,
        caller,
        order_id=body.order_id,
        amount=body.amount,
        currency=body.currency,
        idempotency_key=idempotency_key or body.idempotency_key,
        network=network_context_from_headers(request.headers),
    )
    return {
        "success": True,
        "gateway_order_id": result.gateway_order_id,
        "amount": result.amount,
        "currency": result.currency,
        "key_id": result.key_id,
        "order_id": str(result.order_id),
        "transaction_id": str(result.transaction_id),
        "idempotent": result.idempotent,
        "processing_time_ms": result.processing_time_ms,
    }


@payment_router.post(
    "/verify",
    response_model=VerifyPaymentResponse,
    responses=_ERROR_RESPONSES,
    summary="Verify a payment",
    description="Verify the gateway callback signature and settle the order",
)
async def verify_payment(
    body: VerifyPaymentRequest,
    request: Request,
    caller: Optional[Caller] = Depends(get_optional_caller),
    engine: VerificationEngine = Depends(get_verification_engine),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Verify a gateway callback."""
    result = await engine.verify(
        db,
        caller,
        gateway_order_id=body.gateway_order_id,
        gateway_payment_id=body.gateway_payment_id,
        signature=body.gateway_signature,
        order_id=body.order_id,
        network=network_context_from_headers(request.headers),
    )
    return {
        "success": True,
        "verified": result.verified,
        "idempotent": result.idempotent,
        "order_id": str(result.order_id),
        "gateway_payment_id": result.gateway_payment_id,
        "processing_time_ms": result.processing_time_ms,
    }


@payment_router.get(
    "/config",
    response_model=GatewayConfigResponse,
    summary="Public gateway configuration",
)
async def gateway_config() -> Dict[str, Any]:
    """Public key id for the client-side checkout."""
    settings = get_settings()
    return {"key_id": settings.gateway_key_id, "test_mode": settings.is_test_mode}


@rate_limit_router.post(
    "/login/check",
    response_model=RateLimitResponse,
    summary="Check login throttling",
)
async def check_login(
    body: LoginRateLimitRequest,
    request: Request,
    guard: LoginGuard = Depends(get_login_guard),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Whether a login attempt for this account and client IP may proceed."""
    limit = await guard.check(db, body.email, network_context_from_headers(request.headers))
    return _rate_limit_response(limit)


@rate_limit_router.post(
    "/login/failure",
    response_model=RateLimitResponse,
    summary="Record a failed login",
)
async def record_login_failure(
    body: LoginRateLimitRequest,
    request: Request,
    guard: LoginGuard = Depends(get_login_guard),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Count a failed login for this account and client IP."""
    limit = await guard.record_failure(
        db, body.email, network_context_from_headers(request.headers)
    )
    return _rate_limit_response(limit)


@rate_limit_router.post(
    "/login/reset",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={401: {"model": ErrorResponse}},
    summary="Reset login throttling after a successful login",
)
async def reset_login(
    request: Request,
    caller: Caller = Depends(get_current_caller),
    guard: LoginGuard = Depends(get_login_guard),
    db: AsyncSession = Depends(get_db),
) -> Response:
    """Clear the caller's login counters."""
    if not caller.email:
        raise MalformedRequest("Access token carries no email")
    await guard.reset(db, caller.email, network_context_from_headers(request.headers))
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@rate_limit_router.get(
    "/forms",
    response_model=FormRateLimitResponse,
    summary="Form submission throttle status",
)
async def form_status(
    request: Request,
    tracker: AbuseTracker = Depends(get_form_tracker),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Current form submission allowance for the client IP."""
    network = network_context_from_headers(request.headers)
    limit = await tracker.check_allowed(db, network.ip_address)
    return {
        "allowed": limit.allowed,
        "submissions_remaining": limit.attempts_remaining,
        "reset_time": limit.reset_time,
    }


@rate_limit_router.post(
    "/forms",
    response_model=FormRateLimitResponse,
    responses={429: {"model": FormRateLimitResponse}},
    summary="Count a form submission",
)
async def consume_form_submission(
    request: Request,
    response: Response,
    tracker: AbuseTracker = Depends(get_form_tracker),
    db: AsyncSession = Depends(get_db),
) -> Dict[str, Any]:
    """Count one form submission for the client IP; 429 once the window is used up."""
    network = network_context_from_headers(request.headers)
    limit = await tracker.consume(db, network.ip_address)
    if not limit.allowed:
        response.status_code = status.HTTP_429_TOO_MANY_REQUESTS
    return {
        "allowed": limit.allowed,
        "submissions_remaining": limit.attempts_remaining,
        "reset_time": limit.reset_time,
    }


@monitoring_router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check",
    description="Check health of all system dependencies",
)
async def health(
    response: Response, checker: HealthCheck = Depends(get_health_check)
) -> Dict[str, Any]:
    """Overall health check."""
    result = await checker.check_all()
    if result["status"] != "healthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return result


@monitoring_router.get(
    "/health/live",
    response_model=HealthCheckResponse,
    summary="Liveness probe",
)
async def liveness(checker: HealthCheck = Depends(get_health_check)) -> Dict[str, Any]:
    """Kubernetes liveness probe."""
    return await checker.liveness()


@monitoring_router.get(
    "/health/ready",
    response_model=HealthCheckResponse,
    summary="Readiness probe",
)
async def readiness(
    response: Response, checker: HealthCheck = Depends(get_health_check)
) -> Dict[str, Any]:
    """Kubernetes readiness probe."""
    result = await checker.readiness()
    if result["status"] != "healthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return result


@monitoring_router.get("/metrics", summary="Prometheus metrics")
async def prometheus_metrics() -> Response:
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
