"""Stripe Webhook Reconciler - applies provider events to local billing state.

CRITICAL RULES:
1. Signature verified against the raw body before anything is recorded
2. Idempotent by provider event id: a processed event is never re-applied
3. Absolute values only: subscription fields are copied verbatim from the payload
4. Out-of-order safe: events older than the last applied subscription event
   are acknowledged as stale_event without touching state
5. A failed handler leaves processed=false and returns 5xx so Stripe redelivers

Handled events (closed set, see WebhookEventKind):
- customer.subscription.created / updated / deleted
- invoice.payment_succeeded (renewal resets usage) / invoice.payment_failed
- checkout.session.completed (links the Stripe customer to the user)
"""
import os
import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import storage_operation
from models import (
    AuditAction, LedgerOpenReason, PaymentRecord, PaymentStatus, Plan,
    SubscriptionRecord, SubscriptionStatus, WebhookEventRecord, WebhookOutcome,
    WebhookResult, utc_now,
)
from services.billing_errors import (
    ConfigurationError, ProcessingFailed, StaleEventError, ValidationError,
)
from services.period_rollover import PeriodRolloverManager
from services.plan_catalog import PlanCatalog, plan_catalog
from services.subscription_records import SubscriptionRecords
from services.usage_ledger import UsageLedger
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)

WEBHOOK_LEASE_SECONDS = int(os.getenv("WEBHOOK_LEASE_SECONDS", "60"))

# Statuses whose paid plan currently earns a usage period
PERIOD_EARNING_STATUSES = (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)

HandlerResult = Tuple[WebhookOutcome, Optional[str]]


class WebhookEventKind(str, Enum):
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    CHECKOUT_SESSION_COMPLETED = "checkout.session.completed"

    @classmethod
    def parse(cls, event_type: str) -> Optional["WebhookEventKind"]:
        try:
            return cls(event_type)
        except ValueError:
            return None


def _ts(value) -> Optional[datetime]:
    """Stripe unix seconds -> aware UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _first_item(subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = (subscription.get("items") or {}).get("data") or []
    return items[0] if items else {}


def _subscription_period(subscription: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    """Current period bounds; newer API versions carry them on the subscription item."""
    item = _first_item(subscription)
    start = subscription.get("current_period_start") or item.get("current_period_start")
    end = subscription.get("current_period_end") or item.get("current_period_end")
    return _ts(start), _ts(end)


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    subscription = invoice.get("subscription")
    if isinstance(subscription, dict):
        return subscription.get("id")
    if subscription:
        return subscription
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return details.get("subscription")


def _invoice_period(invoice: Dict[str, Any]) -> Tuple[Optional[datetime], Optional[datetime]]:
    lines = (invoice.get("lines") or {}).get("data") or []
    if not lines:
        return None, None
    period = lines[0].get("period") or {}
    return _ts(period.get("start")), _ts(period.get("end"))


def _record_snapshot(record: SubscriptionRecord) -> Dict[str, Any]:
    return {
        "plan_name": record.plan_name,
        "status": record.status,
        "provider_subscription_id": record.provider_subscription_id,
        "cancel_at_period_end": record.cancel_at_period_end,
    }


class StripeWebhookReconciler:
    """Idempotent Stripe event handler over the subscription mirror and usage ledger."""

    def __init__(
        self,
        db,
        payments,
        subscriptions: SubscriptionRecords,
        ledger: UsageLedger,
        rollover: PeriodRolloverManager,
        catalog: PlanCatalog = plan_catalog,
        clock: Callable[[], datetime] = utc_now,
        webhook_secret: Optional[str] = None,
        lease_seconds: int = WEBHOOK_LEASE_SECONDS,
    ):
        self.db = db
        self.payments = payments
        self.subscriptions = subscriptions
        self.ledger = ledger
        self.rollover = rollover
        self.catalog = catalog
        self.clock = clock
        self.webhook_secret = webhook_secret
        self.lease_seconds = lease_seconds

        self.handlers = {
            WebhookEventKind.SUBSCRIPTION_CREATED: self._on_subscription_created,
            WebhookEventKind.SUBSCRIPTION_UPDATED: self._on_subscription_updated,
            WebhookEventKind.SUBSCRIPTION_DELETED: self._on_subscription_deleted,
            WebhookEventKind.INVOICE_PAYMENT_SUCCEEDED: self._on_invoice_payment_succeeded,
            WebhookEventKind.INVOICE_PAYMENT_FAILED: self._on_invoice_payment_failed,
            WebhookEventKind.CHECKOUT_SESSION_COMPLETED: self._on_checkout_session_completed,
        }
        missing = set(WebhookEventKind) - set(self.handlers)
        if missing:
            raise ConfigurationError(f"No webhook handler for: {sorted(k.value for k in missing)}")

    # =========================================================================
    # Event Processing Entry Point
    # =========================================================================

    async def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> WebhookResult:
        """
        Verify, deduplicate, apply.

        Raises InvalidSignature (nothing recorded) or ProcessingFailed (event
        recorded with processed=false, retry_count incremented).
        """
        # Step 1: Verify signature against the exact bytes received
        event = self.payments.construct_event(raw_body, signature, self.webhook_secret)
        event_id = event.get("id")
        event_type = event.get("type")
        if not event_id or not event_type:
            raise ValidationError("Webhook event is missing id or type")

        obj = (event.get("data") or {}).get("object") or {}
        logger.info(
            "WEBHOOK_RECEIVED event_id=%s event_type=%s livemode=%s object_id=%s customer=%s",
            event_id, event_type, event.get("livemode"), obj.get("id"), obj.get("customer"),
        )

        # Step 2: Record + idempotency claim
        claim = await self._claim(event)
        if claim != "claimed":
            logger.info("WEBHOOK_SKIPPED event_id=%s event_type=%s status=%s", event_id, event_type, claim)
            return WebhookResult(event_id=event_id, event_type=event_type, status=claim)

        # Step 3: Dispatch
        try:
            outcome, user_id = await self._dispatch(event)
        except StaleEventError as e:
            logger.info("WEBHOOK_STALE_EVENT event_id=%s event_type=%s reason=%s", event_id, event_type, e.reason)
            outcome, user_id = WebhookOutcome.STALE_EVENT, None
        except Exception as e:
            await self._mark_failed(event_id, e)
            logger.error(
                "WEBHOOK_PROCESSING_FAILED event_id=%s event_type=%s error_type=%s error=%s",
                event_id, event_type, type(e).__name__, e,
            )
            await create_audit_log(
                action=AuditAction.WEBHOOK_PROCESSING_FAILED,
                actor_role="SYSTEM",
                resource_type="webhook_event",
                resource_id=event_id,
                metadata={"event_type": event_type, "error": str(e)},
                db=self.db,
            )
            retryable = not isinstance(e, ConfigurationError)
            raise ProcessingFailed(event_id, str(e), retryable=retryable) from e

        # Step 4: Mark processed
        await self._mark_processed(event_id, outcome, user_id)
        logger.info(
            "WEBHOOK_PROCESSED_OK event_id=%s event_type=%s outcome=%s user_id=%s",
            event_id, event_type, outcome.value, user_id,
        )
        return WebhookResult(
            event_id=event_id,
            event_type=event_type,
            status="processed",
            outcome=outcome,
            user_id=user_id,
        )

    async def _dispatch(self, event: Dict[str, Any]) -> HandlerResult:
        kind = WebhookEventKind.parse(event.get("type"))
        if kind is None:
            logger.info(f"Unhandled event type: {event.get('type')}")
            return WebhookOutcome.IGNORED, None
        return await self.handlers[kind](event)

    # =========================================================================
    # Event Record (idempotency guard)
    # =========================================================================

    @storage_operation
    async def _claim(self, event: Dict[str, Any]) -> str:
        """'claimed', 'duplicate' (already processed) or 'in_progress' (another worker holds the lease)."""
        event_id = event["id"]
        now = self.clock()
        lease_until = now + timedelta(seconds=self.lease_seconds)

        record = WebhookEventRecord(
            provider_event_id=event_id,
            event_type=event["type"],
            event_created_at=event.get("created"),
            payload=(event.get("data") or {}).get("object") or {},
            processing_until=lease_until,
            received_at=now,
        )
        try:
            await self.db.webhook_events.insert_one(record.model_dump())
            return "claimed"
        except DuplicateKeyError:
            pass

        claimed = await self.db.webhook_events.find_one_and_update(
            {
                "provider_event_id": event_id,
                "processed": False,
                "$or": [
                    {"processing_until": None},
                    {"processing_until": {"$lt": now}},
                ],
            },
            {"$set": {"processing_until": lease_until}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if claimed is not None:
            logger.info(f"Event {event_id} reclaimed for retry (retry_count={claimed.get('retry_count', 0)})")
            return "claimed"

        existing = await self.db.webhook_events.find_one({"provider_event_id": event_id}, {"_id": 0})
        if existing and existing.get("processed"):
            return "duplicate"
        return "in_progress"

    @storage_operation
    async def _mark_processed(self, event_id: str, outcome: WebhookOutcome, user_id: Optional[str]):
        await self.db.webhook_events.update_one(
            {"provider_event_id": event_id},
            {"$set": {
                "processed": True,
                "processed_at": self.clock(),
                "processing_until": None,
                "processing_error": None,
                "outcome": outcome.value,
                "user_id": user_id,
            }},
        )

    @storage_operation
    async def _mark_failed(self, event_id: str, error: Exception):
        await self.db.webhook_events.update_one(
            {"provider_event_id": event_id},
            {
                "$set": {
                    "processed": False,
                    "processing_error": f"{type(error).__name__}: {error}",
                    "processing_until": None,
                },
                "$inc": {"retry_count": 1},
            },
        )

    @storage_operation
    async def list_events(self, processed: Optional[bool] = None, limit: int = 50):
        query = {} if processed is None else {"processed": processed}
        cursor = self.db.webhook_events.find(query, {"_id": 0}).sort("received_at", -1).limit(limit)
        return [WebhookEventRecord(**d) for d in await cursor.to_list(length=limit)]

    # =========================================================================
    # Resolution helpers
    # =========================================================================

    async def _resolve_user_id(self, obj: Dict[str, Any], subscription_id: Optional[str] = None) -> str:
        """metadata.user_id, then the mirrored customer id, then the mirrored subscription id."""
        user_id = (obj.get("metadata") or {}).get("user_id")
        if user_id:
            return user_id
        record = await self.subscriptions.find_by_customer_id(obj.get("customer"))
        if record is None and subscription_id:
            record = await self.subscriptions.find_by_subscription_id(subscription_id)
        if record is None:
            # Raised so the event is redelivered once checkout has linked the customer
            raise ValidationError(
                f"No user for customer={obj.get('customer')} subscription={subscription_id}"
            )
        return record.user_id

    def _plan_for_subscription(self, subscription: Dict[str, Any]) -> Plan:
        """Plan from the line item price id; metadata plan_name is the fallback."""
        price_id = (_first_item(subscription).get("price") or {}).get("id")
        if price_id:
            try:
                return self.catalog.get_plan_by_price_id(price_id)
            except ConfigurationError:
                logger.warning(f"Price {price_id} not mapped to a plan, falling back to metadata")
        plan_name = (subscription.get("metadata") or {}).get("plan_name")
        if not plan_name:
            raise ConfigurationError(
                f"Cannot determine plan for subscription {subscription.get('id')} (price={price_id})"
            )
        return self.catalog.get_plan(plan_name)

    def _check_stale(self, record: SubscriptionRecord, event: Dict[str, Any], subscription_id: str):
        created = event.get("created")
        if created is not None and record.state_event_at is not None and created < record.state_event_at:
            raise StaleEventError(
                event.get("id"),
                f"event created {created} precedes last applied subscription event {record.state_event_at}",
            )
        if subscription_id and subscription_id == record.last_deleted_subscription_id:
            raise StaleEventError(event.get("id"), f"subscription {subscription_id} was already deleted")

    async def _ensure_subscription_period(
        self,
        user_id: str,
        plan: Plan,
        reason: LedgerOpenReason,
        subscription_id: str,
        period_start: Optional[datetime],
        period_end: Optional[datetime],
    ) -> bool:
        """Open the subscription's period unless the current row already belongs to it."""
        current = await self.ledger.get_current_row(user_id)
        if current is not None and current.provider_subscription_id == subscription_id:
            return False
        await self.rollover.start_new_period(
            user_id,
            plan,
            reason,
            period_start=period_start,
            period_end=period_end,
            provider_subscription_id=subscription_id,
        )
        return True

    # =========================================================================
    # Subscription Events
    # =========================================================================

    async def _on_subscription_created(self, event: Dict[str, Any]) -> HandlerResult:
        subscription = event["data"]["object"]
        subscription_id = subscription["id"]
        user_id = await self._resolve_user_id(subscription, subscription_id)
        record = await self.subscriptions.get(user_id) or SubscriptionRecord.free(user_id)
        self._check_stale(record, event, subscription_id)

        if record.provider_subscription_id == subscription_id:
            # A failed earlier attempt may have mirrored the record without opening the period
            if record.status in PERIOD_EARNING_STATUSES:
                period_start, period_end = _subscription_period(subscription)
                opened = await self._ensure_subscription_period(
                    user_id,
                    self.catalog.get_plan(record.plan_name),
                    LedgerOpenReason.SUBSCRIPTION_CREATED,
                    subscription_id,
                    period_start,
                    period_end,
                )
                if opened:
                    logger.info(f"Subscription {subscription_id} for {user_id}: paid period opened on redelivery")
                    return WebhookOutcome.APPLIED, user_id
            logger.info(f"Subscription {subscription_id} already mirrored for {user_id} - created is a no-op")
            return WebhookOutcome.PRECONDITION_FAILED, user_id
        if record.status not in (SubscriptionStatus.FREE, SubscriptionStatus.CANCELED):
            logger.warning(
                f"subscription.created {subscription_id} ignored: user {user_id} already "
                f"{record.status} on {record.provider_subscription_id}"
            )
            return WebhookOutcome.PRECONDITION_FAILED, user_id

        plan = self._plan_for_subscription(subscription)
        status = self.catalog.map_provider_status(subscription.get("status"))
        period_start, period_end = _subscription_period(subscription)

        updated = await self.subscriptions.apply(user_id, {
            "plan_name": plan.name,
            "status": status,
            "provider_subscription_id": subscription_id,
            "provider_customer_id": subscription.get("customer") or record.provider_customer_id,
            "current_period_end": period_end,
            "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
            "state_event_at": event.get("created"),
        })

        if status in PERIOD_EARNING_STATUSES:
            await self.rollover.start_new_period(
                user_id,
                plan,
                LedgerOpenReason.SUBSCRIPTION_CREATED,
                period_start=period_start,
                period_end=period_end,
                provider_subscription_id=subscription_id,
            )

        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_STARTED,
            actor_role="SYSTEM",
            user_id=user_id,
            resource_type="subscription",
            resource_id=subscription_id,
            before_state=_record_snapshot(record),
            after_state=_record_snapshot(updated),
            reason_code=event.get("id"),
            db=self.db,
        )
        return WebhookOutcome.APPLIED, user_id

    async def _on_subscription_updated(self, event: Dict[str, Any]) -> HandlerResult:
        subscription = event["data"]["object"]
        subscription_id = subscription["id"]
        user_id = await self._resolve_user_id(subscription, subscription_id)
        record = await self.subscriptions.get(user_id) or SubscriptionRecord.free(user_id)
        self._check_stale(record, event, subscription_id)

        if record.provider_subscription_id not in (None, subscription_id):
            logger.warning(
                f"subscription.updated {subscription_id} ignored: user {user_id} mirrors "
                f"{record.provider_subscription_id}"
            )
            return WebhookOutcome.PRECONDITION_FAILED, user_id

        plan = self._plan_for_subscription(subscription)
        status = self.catalog.map_provider_status(subscription.get("status"))
        period_start, period_end = _subscription_period(subscription)

        updated = await self.subscriptions.apply(user_id, {
            "plan_name": plan.name,
            "status": status,
            "provider_subscription_id": subscription_id,
            "provider_customer_id": subscription.get("customer") or record.provider_customer_id,
            "current_period_end": period_end,
            "cancel_at_period_end": bool(subscription.get("cancel_at_period_end")),
            "state_event_at": event.get("created"),
        })

        if status in PERIOD_EARNING_STATUSES:
            await self._ensure_subscription_period(
                user_id, plan, LedgerOpenReason.SUBSCRIPTION_UPDATED, subscription_id, period_start, period_end
            )

        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_UPDATED,
            actor_role="SYSTEM",
            user_id=user_id,
            resource_type="subscription",
            resource_id=subscription_id,
            before_state=_record_snapshot(record),
            after_state=_record_snapshot(updated),
            reason_code=event.get("id"),
            db=self.db,
        )
        return WebhookOutcome.APPLIED, user_id

    async def _on_subscription_deleted(self, event: Dict[str, Any]) -> HandlerResult:
        subscription = event["data"]["object"]
        subscription_id = subscription["id"]
        user_id = await self._resolve_user_id(subscription, subscription_id)
        record = await self.subscriptions.get(user_id) or SubscriptionRecord.free(user_id)
        self._check_stale(record, event, subscription_id)

        deletion_marker = {
            "last_deleted_subscription_id": subscription_id,
            "last_deleted_event_at": event.get("created"),
            "state_event_at": event.get("created"),
        }

        if record.provider_subscription_id is None:
            # Never mirrored: remember the deletion so a late created is stale
            await self.subscriptions.apply(user_id, deletion_marker)
            logger.info(f"subscription.deleted {subscription_id} for {user_id} with no mirrored subscription")
            return WebhookOutcome.PRECONDITION_FAILED, user_id
        if record.provider_subscription_id != subscription_id:
            logger.warning(
                f"subscription.deleted {subscription_id} ignored: user {user_id} mirrors "
                f"{record.provider_subscription_id}"
            )
            return WebhookOutcome.PRECONDITION_FAILED, user_id

        # Free period first: the deletion marker makes a redelivery stale, so it must be written last
        free_plan = self.catalog.free_plan()
        ended_at = _ts(subscription.get("ended_at")) or _ts(event.get("created"))
        await self.rollover.start_new_period(
            user_id,
            free_plan,
            LedgerOpenReason.SUBSCRIPTION_DELETED,
            period_start=ended_at,
        )

        updated = await self.subscriptions.apply(user_id, {
            "plan_name": free_plan.name,
            "status": SubscriptionStatus.FREE,
            "provider_subscription_id": None,
            "current_period_end": None,
            "cancel_at_period_end": False,
            **deletion_marker,
        })

        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_ENDED,
            actor_role="SYSTEM",
            user_id=user_id,
            resource_type="subscription",
            resource_id=subscription_id,
            before_state=_record_snapshot(record),
            after_state=_record_snapshot(updated),
            reason_code=event.get("id"),
            db=self.db,
        )
        return WebhookOutcome.APPLIED, user_id

    # =========================================================================
    # Invoice Events
    # =========================================================================

    async def _on_invoice_payment_succeeded(self, event: Dict[str, Any]) -> HandlerResult:
        invoice = event["data"]["object"]
        subscription_id = _invoice_subscription_id(invoice)
        user_id = await self._resolve_user_id(invoice, subscription_id)
        await self._record_payment(user_id, invoice, subscription_id, PaymentStatus.SUCCEEDED)

        if invoice.get("billing_reason") != "subscription_cycle":
            logger.info(
                f"Invoice {invoice.get('id')} billing_reason={invoice.get('billing_reason')} - no usage reset"
            )
            return WebhookOutcome.IGNORED, user_id

        record = await self.subscriptions.get(user_id)
        if record is None or record.status != SubscriptionStatus.ACTIVE or record.provider_subscription_id != subscription_id:
            logger.warning(
                f"Renewal invoice {invoice.get('id')} for {user_id} skipped: status="
                f"{record.status if record else None} subscription={record.provider_subscription_id if record else None}"
            )
            return WebhookOutcome.PRECONDITION_FAILED, user_id

        plan = self.catalog.get_plan(record.plan_name)
        period_start, period_end = _invoice_period(invoice)
        if period_start is None:
            subscription = await self.payments.retrieve_subscription(subscription_id)
            period_start, period_end = _subscription_period(subscription)

        row = await self.rollover.start_new_period(
            user_id,
            plan,
            LedgerOpenReason.RENEWAL,
            period_start=period_start or _ts(event.get("created")),
            period_end=period_end,
            provider_subscription_id=subscription_id,
        )
        if period_end is not None:
            await self.subscriptions.apply(user_id, {"current_period_end": period_end})

        await create_audit_log(
            action=AuditAction.USAGE_PERIOD_RENEWED,
            actor_role="SYSTEM",
            user_id=user_id,
            resource_type="usage_ledger",
            resource_id=row.row_id,
            metadata={
                "invoice_id": invoice.get("id"),
                "period_start": row.period_start.isoformat(),
                "period_end": row.period_end.isoformat(),
            },
            reason_code=event.get("id"),
            db=self.db,
        )
        return WebhookOutcome.APPLIED, user_id

    async def _on_invoice_payment_failed(self, event: Dict[str, Any]) -> HandlerResult:
        invoice = event["data"]["object"]
        subscription_id = _invoice_subscription_id(invoice)
        user_id = await self._resolve_user_id(invoice, subscription_id)
        await self._record_payment(user_id, invoice, subscription_id, PaymentStatus.FAILED)

        record = await self.subscriptions.get(user_id)
        if record is None or record.status != SubscriptionStatus.ACTIVE:
            logger.info(
                f"payment_failed for {user_id} with status={record.status if record else None} - no transition"
            )
            return WebhookOutcome.PRECONDITION_FAILED, user_id

        fields = {"status": SubscriptionStatus.PAST_DUE}
        created = event.get("created")
        if created is not None and (record.state_event_at is None or created > record.state_event_at):
            fields["state_event_at"] = created
        updated = await self.subscriptions.apply(user_id, fields)

        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_PAST_DUE,
            actor_role="SYSTEM",
            user_id=user_id,
            resource_type="subscription",
            resource_id=record.provider_subscription_id,
            before_state=_record_snapshot(record),
            after_state=_record_snapshot(updated),
            metadata={"invoice_id": invoice.get("id"), "attempt_count": invoice.get("attempt_count")},
            reason_code=event.get("id"),
            db=self.db,
        )
        return WebhookOutcome.APPLIED, user_id

    @storage_operation
    async def _record_payment(self, user_id: str, invoice: Dict[str, Any], subscription_id: Optional[str], status: PaymentStatus):
        invoice_id = invoice.get("id")
        if not invoice_id:
            return
        amount = invoice.get("amount_paid") if status == PaymentStatus.SUCCEEDED else invoice.get("amount_due")
        payment = PaymentRecord(
            user_id=user_id,
            provider_invoice_id=invoice_id,
            provider_subscription_id=subscription_id,
            amount=amount or 0,
            currency=invoice.get("currency") or "usd",
            status=status,
            billing_reason=invoice.get("billing_reason"),
            created_at=self.clock(),
        )
        try:
            await self.db.payment_history.insert_one(payment.model_dump())
        except DuplicateKeyError:
            logger.info(f"Payment for invoice {invoice_id} ({status.value}) already recorded")

    # =========================================================================
    # Checkout
    # =========================================================================

    async def _on_checkout_session_completed(self, event: Dict[str, Any]) -> HandlerResult:
        session = event["data"]["object"]
        user_id = session.get("client_reference_id") or (session.get("metadata") or {}).get("user_id")
        customer_id = session.get("customer")
        if not user_id or not customer_id:
            logger.info(f"Checkout session {session.get('id')} without user or customer - nothing to link")
            return WebhookOutcome.IGNORED, user_id

        await self.subscriptions.apply(user_id, {"provider_customer_id": customer_id})
        logger.info(f"Linked Stripe customer {customer_id} to user {user_id}")
        return WebhookOutcome.APPLIED, user_id
