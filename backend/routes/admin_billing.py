"""Admin Billing Routes - read-only views for support and reconciliation.

Endpoints:
- GET /api/admin/billing/webhook-events - Recorded Stripe events (filter by processed)
- GET /api/admin/billing/users/{user_id}/ledger - Subscription mirror + usage periods
- GET /api/admin/billing/users/{user_id}/audit - Billing audit trail for a user

Stripe is the billing authority; nothing here changes billing state.
"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, Request
from middleware import require_admin, get_billing_engine
from routes.billing import billing_http_exception
from services.billing_errors import BillingError
from utils.audit import get_audit_logs_for_user

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/admin/billing", tags=["admin-billing"], dependencies=[Depends(require_admin)])


@router.get("/webhook-events")
async def list_webhook_events(request: Request, processed: Optional[bool] = None, limit: int = 50):
    """Most recent events first; processed=false lists what Stripe is still retrying."""
    engine = get_billing_engine(request)
    try:
        events = await engine.reconciler.list_events(processed=processed, limit=min(max(limit, 1), 200))
    except BillingError as e:
        raise billing_http_exception(e)
    return {
        "events": [e.model_dump(mode="json", exclude={"payload"}) for e in events],
        "count": len(events),
    }


@router.get("/users/{user_id}/ledger")
async def get_user_ledger(request: Request, user_id: str, limit: int = 12):
    engine = get_billing_engine(request)
    try:
        record = await engine.subscriptions.get(user_id)
        rows = await engine.ledger.list_history(user_id, min(max(limit, 1), 36))
    except BillingError as e:
        raise billing_http_exception(e)
    return {
        "user_id": user_id,
        "subscription": record.model_dump(mode="json") if record else None,
        "periods": [row.model_dump(mode="json") for row in rows],
    }


@router.get("/users/{user_id}/audit")
async def get_user_audit(request: Request, user_id: str, limit: int = 50):
    engine = get_billing_engine(request)
    logs = await get_audit_logs_for_user(user_id, min(max(limit, 1), 200), db=engine.db)
    return {"user_id": user_id, "audit_logs": logs}
