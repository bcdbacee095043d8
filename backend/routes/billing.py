"""Billing Routes - plans, entitlements, usage and subscription management.

Endpoints:
- GET /api/billing/plans - Public plan catalog
- GET /api/billing/subscription - Subscription overview (plan, status, period, usage)
- GET /api/billing/usage/limits - Pro and draft decisions + suggested model
- GET /api/billing/usage/history - Past usage periods
- POST /api/billing/entitlement/check - May the user run one generation?
- POST /api/billing/usage/record - Record one completed generation
- POST /api/billing/subscription/cancel - Cancel at period end or immediately
- POST /api/billing/subscription/reactivate - Undo a scheduled cancellation
- POST /api/billing/checkout - Stripe checkout for a paid plan
- GET /api/billing/history - Payment history
"""
from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from typing import Optional
from middleware import require_auth, get_billing_engine
from models import Decision, ModelClass
from services.billing_errors import (
    BillingError, ConfigurationError, ExternalServiceError, InvalidSignature,
    QuotaExhaustedError, ValidationError,
)
from services.plan_catalog import plan_catalog
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/billing", tags=["billing"])


class GenerationRequest(BaseModel):
    """Entitlement check / usage record for one generation."""
    model_class: ModelClass


class CancelRequest(BaseModel):
    """Request to cancel subscription."""
    cancel_immediately: bool = False


class CheckoutRequest(BaseModel):
    """Request to create checkout session."""
    plan_name: str  # starter, creator, pro, teams
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None
    email: Optional[str] = None


def billing_http_exception(e: BillingError) -> HTTPException:
    """Map an engine error to the HTTP status the caller sees."""
    if isinstance(e, (ValidationError, InvalidSignature)):
        return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if isinstance(e, QuotaExhaustedError):
        return HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail=str(e))
    if isinstance(e, ExternalServiceError):
        logger.error(f"Billing dependency unavailable service={e.service} retryable={e.retryable}: {e}")
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Billing service temporarily unavailable. Please try again.",
        )
    if isinstance(e, ConfigurationError):
        logger.error(f"Billing configuration error: {e}")
    else:
        logger.error(f"Billing error {type(e).__name__}: {e}")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail="Billing error. Please contact support.",
    )


def _origin(request: Request) -> str:
    origin = request.headers.get("origin", "")
    if not origin:
        host = request.headers.get("host", "localhost")
        origin = f"http://{host}"
    return origin.rstrip("/")


@router.get("/plans")
async def get_plans():
    """Public plan catalog in tier order."""
    return {"plans": [plan.to_public_dict() for plan in plan_catalog.list_plans()]}


@router.get("/subscription")
async def get_subscription(request: Request):
    user = await require_auth(request)
    engine = get_billing_engine(request)
    try:
        return await engine.get_subscription_overview(user.user_id)
    except BillingError as e:
        raise billing_http_exception(e)


@router.get("/usage/limits")
async def get_usage_limits(request: Request):
    """Both decisions plus the model the client should default to."""
    user = await require_auth(request)
    engine = get_billing_engine(request)
    try:
        limits = await engine.get_usage_limits(user.user_id)
        optimal = await engine.determine_optimal_model(user.user_id)
    except BillingError as e:
        raise billing_http_exception(e)
    return {
        "limits": {name: decision.model_dump(mode="json") for name, decision in limits.items()},
        "optimal_model": optimal.value,
    }


@router.get("/usage/history")
async def get_usage_history(request: Request, limit: int = 12):
    user = await require_auth(request)
    engine = get_billing_engine(request)
    try:
        rows = await engine.get_usage_history(user.user_id, min(max(limit, 1), 36))
    except BillingError as e:
        raise billing_http_exception(e)
    return {"periods": [row.model_dump(mode="json") for row in rows]}


@router.post("/entitlement/check")
async def check_entitlement(request: Request, body: GenerationRequest):
    """
    Entitlement decision for one generation.

    Fails closed: when storage or Stripe is unavailable the answer is a
    denial with reason=service_unavailable and can_retry=true (HTTP 503).
    """
    user = await require_auth(request)
    engine = get_billing_engine(request)
    try:
        decision = await engine.check_entitlement(user.user_id, body.model_class)
    except ExternalServiceError as e:
        logger.error(
            f"ENTITLEMENT_FAIL_CLOSED user_id={user.user_id} model={body.model_class.value} "
            f"service={e.service} error={e}"
        )
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content=Decision.service_unavailable(body.model_class).model_dump(mode="json"),
        )
    except BillingError as e:
        raise billing_http_exception(e)
    return decision.model_dump(mode="json")


@router.post("/usage/record")
async def record_usage(request: Request, body: GenerationRequest):
    """Record one completed generation. Called once, after an allow decision."""
    user = await require_auth(request)
    engine = get_billing_engine(request)
    try:
        receipt = await engine.record_generation(user.user_id, body.model_class)
    except BillingError as e:
        raise billing_http_exception(e)
    return {"success": True, **receipt.model_dump(mode="json")}


@router.post("/subscription/cancel")
async def cancel_subscription(request: Request, body: Optional[CancelRequest] = None):
    user = await require_auth(request)
    engine = get_billing_engine(request)
    cancel_immediately = body.cancel_immediately if body else False
    try:
        record = await engine.cancel_subscription(user.user_id, at_period_end=not cancel_immediately)
    except BillingError as e:
        raise billing_http_exception(e)
    return {
        "success": True,
        "cancel_at_period_end": record.cancel_at_period_end,
        "message": (
            "Subscription will be canceled at the end of the billing period"
            if not cancel_immediately
            else "Subscription cancellation requested"
        ),
    }


@router.post("/subscription/reactivate")
async def reactivate_subscription(request: Request):
    user = await require_auth(request)
    engine = get_billing_engine(request)
    try:
        await engine.reactivate_subscription(user.user_id)
    except BillingError as e:
        raise billing_http_exception(e)
    return {"success": True, "cancel_at_period_end": False}


@router.post("/checkout")
async def create_checkout(request: Request, body: CheckoutRequest):
    """Create Stripe checkout session for a paid plan."""
    user = await require_auth(request)
    engine = get_billing_engine(request)
    origin = _origin(request)
    try:
        return await engine.create_checkout_session(
            user_id=user.user_id,
            plan_name=body.plan_name,
            success_url=body.success_url or f"{origin}/billing?checkout=success",
            cancel_url=body.cancel_url or f"{origin}/billing?checkout=canceled",
            email=body.email or user.email,
        )
    except BillingError as e:
        raise billing_http_exception(e)


@router.get("/history")
async def get_payment_history(request: Request, limit: int = 20):
    user = await require_auth(request)
    engine = get_billing_engine(request)
    try:
        payments = await engine.get_payment_history(user.user_id, min(max(limit, 1), 100))
    except BillingError as e:
        raise billing_http_exception(e)
    return {"payments": [p.model_dump(mode="json") for p in payments]}
