"""Billing Engine - the one object the route layer talks to.

Constructed once per process (server lifespan) with an injected database
handle, payments client and clock; tests build their own with fakes.
"""
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional
import logging

from database import ensure_billing_indexes, storage_operation
from models import (
    AuditAction, Decision, GenerationReceipt, ModelClass, PaymentRecord,
    SubscriptionRecord, SubscriptionStatus, UsageLedgerRow, WebhookResult, utc_now,
)
from services.billing_errors import ConfigurationError, ValidationError
from services.entitlement_evaluator import EntitlementEvaluator
from services.generation_recorder import GenerationRecorder
from services.period_rollover import PeriodRolloverManager
from services.plan_catalog import PlanCatalog, plan_catalog
from services.stripe_webhook_service import StripeWebhookReconciler
from services.subscription_records import SubscriptionRecords
from services.usage_ledger import UsageLedger
from utils.audit import create_audit_log

logger = logging.getLogger(__name__)


class BillingEngine:
    def __init__(
        self,
        db,
        payments,
        catalog: PlanCatalog = plan_catalog,
        clock: Callable[[], datetime] = utc_now,
        webhook_secret: Optional[str] = None,
    ):
        self.db = db
        self.payments = payments
        self.catalog = catalog
        self.clock = clock

        self.ledger = UsageLedger(db, clock)
        self.subscriptions = SubscriptionRecords(db, clock)
        self.rollover = PeriodRolloverManager(self.ledger, self.subscriptions, catalog, clock)
        self.evaluator = EntitlementEvaluator(self.ledger, self.subscriptions, self.rollover, catalog)
        self.recorder = GenerationRecorder(self.ledger, self.evaluator)
        self.reconciler = StripeWebhookReconciler(
            db,
            payments,
            self.subscriptions,
            self.ledger,
            self.rollover,
            catalog=catalog,
            clock=clock,
            webhook_secret=webhook_secret,
        )

    async def ensure_indexes(self):
        await ensure_billing_indexes(self.db)

    # =========================================================================
    # Entitlements & Usage
    # =========================================================================

    async def check_entitlement(self, user_id: str, model_class) -> Decision:
        return await self.evaluator.evaluate(user_id, model_class)

    async def record_generation(self, user_id: str, model_class) -> GenerationReceipt:
        return await self.recorder.record(user_id, model_class)

    async def determine_optimal_model(self, user_id: str) -> ModelClass:
        """pro while base or overage quota remains, otherwise draft."""
        decision = await self.evaluator.evaluate(user_id, ModelClass.PRO)
        return ModelClass.PRO if decision.can_generate else ModelClass.DRAFT

    async def get_usage_limits(self, user_id: str) -> Dict[str, Decision]:
        return {
            ModelClass.PRO.value: await self.evaluator.evaluate(user_id, ModelClass.PRO),
            ModelClass.DRAFT.value: await self.evaluator.evaluate(user_id, ModelClass.DRAFT),
        }

    async def get_usage_history(self, user_id: str, limit: int = 12) -> List[UsageLedgerRow]:
        return await self.ledger.list_history(user_id, limit)

    # =========================================================================
    # Webhooks
    # =========================================================================

    async def handle_webhook(self, raw_body: bytes, signature: Optional[str]) -> WebhookResult:
        return await self.reconciler.handle_webhook(raw_body, signature)

    # =========================================================================
    # Subscription Overview (read-only)
    # =========================================================================

    async def get_subscription_overview(self, user_id: str) -> Dict[str, Any]:
        """Plan, status, period end and usage for display. Never writes."""
        record = await self.subscriptions.get(user_id) or SubscriptionRecord.free(user_id)
        plan = self.catalog.get_plan(record.plan_name)
        row = await self.ledger.get_current_row(user_id)

        usage = None
        if row is not None:
            usage = {
                "period_start": row.period_start,
                "period_end": row.period_end,
                "pro_used": row.pro_used,
                "pro_limit": row.pro_limit,
                "pro_overage_used": row.pro_overage_used,
                "max_overage": row.max_overage,
                "draft_used": row.draft_used,
                "draft_limit": row.draft_limit,
                "overage_charge": row.overage_charge,
                "plan_name": row.plan_name,
            }

        paid = record.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING, SubscriptionStatus.PAST_DUE)
        next_billing_amount = None
        if paid and not record.cancel_at_period_end:
            next_billing_amount = plan.price + (row.overage_charge if row else 0)

        return {
            "plan": plan.to_public_dict(),
            "status": record.status,
            "period_end": record.current_period_end or (row.period_end if row else None),
            "cancel_at_period_end": record.cancel_at_period_end,
            "usage": usage,
            "next_billing_amount": next_billing_amount,
            "has_payment_method": record.provider_customer_id is not None and record.provider_subscription_id is not None,
        }

    @storage_operation
    async def get_payment_history(self, user_id: str, limit: int = 20) -> List[PaymentRecord]:
        cursor = self.db.payment_history.find(
            {"user_id": user_id}, {"_id": 0}
        ).sort("created_at", -1).limit(limit)
        return [PaymentRecord(**d) for d in await cursor.to_list(length=limit)]

    # =========================================================================
    # User Actions
    # =========================================================================

    async def _require_subscription(self, user_id: str) -> SubscriptionRecord:
        record = await self.subscriptions.get(user_id)
        if record is None or record.provider_subscription_id is None:
            raise ValidationError("No active subscription to modify")
        return record

    async def cancel_subscription(self, user_id: str, at_period_end: bool = True) -> SubscriptionRecord:
        """
        Cancel at period end (default) or immediately.

        Immediate cancellation only asks Stripe; the move to free happens
        when customer.subscription.deleted is reconciled.
        """
        record = await self._require_subscription(user_id)
        if at_period_end:
            await self.payments.update_subscription(record.provider_subscription_id, cancel_at_period_end=True)
            updated = await self.subscriptions.apply(user_id, {"cancel_at_period_end": True})
        else:
            await self.payments.cancel_subscription(record.provider_subscription_id)
            updated = record

        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_CANCEL_REQUESTED,
            actor_role="USER",
            actor_id=user_id,
            user_id=user_id,
            resource_type="subscription",
            resource_id=record.provider_subscription_id,
            metadata={"at_period_end": at_period_end},
            db=self.db,
        )
        logger.info(f"SUBSCRIPTION_CANCEL_REQUESTED user_id={user_id} at_period_end={at_period_end}")
        return updated

    async def reactivate_subscription(self, user_id: str) -> SubscriptionRecord:
        record = await self._require_subscription(user_id)
        if not record.cancel_at_period_end:
            raise ValidationError("Subscription is not scheduled for cancellation")

        await self.payments.update_subscription(record.provider_subscription_id, cancel_at_period_end=False)
        updated = await self.subscriptions.apply(user_id, {"cancel_at_period_end": False})

        await create_audit_log(
            action=AuditAction.SUBSCRIPTION_REACTIVATED,
            actor_role="USER",
            actor_id=user_id,
            user_id=user_id,
            resource_type="subscription",
            resource_id=record.provider_subscription_id,
            db=self.db,
        )
        logger.info(f"SUBSCRIPTION_REACTIVATED user_id={user_id}")
        return updated

    async def ensure_customer(self, user_id: str, email: Optional[str] = None) -> str:
        """Stripe customer id for the user, created on first use."""
        record = await self.subscriptions.ensure(user_id)
        if record.provider_customer_id:
            return record.provider_customer_id
        customer = await self.payments.create_customer(user_id, email)
        await self.subscriptions.apply(user_id, {"provider_customer_id": customer["id"]})
        logger.info(f"Created Stripe customer {customer['id']} for user {user_id}")
        return customer["id"]

    async def create_checkout_session(
        self,
        user_id: str,
        plan_name: str,
        success_url: str,
        cancel_url: str,
        email: Optional[str] = None,
    ) -> Dict[str, Any]:
        plan = self.catalog.get_plan(plan_name)
        if plan.price <= 0:
            raise ValidationError(f"Plan {plan.name} does not require checkout")
        price_id = self.catalog.get_price_id(plan.name)
        if not price_id:
            raise ConfigurationError(f"Plan {plan.name} has no Stripe price configured (STRIPE_PRICE_{plan.name.upper()})")

        record = await self.subscriptions.get(user_id)
        if record is not None and record.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING):
            raise ValidationError("User already has an active subscription")

        customer_id = await self.ensure_customer(user_id, email)
        session = await self.payments.create_checkout_session(
            user_id=user_id,
            customer_id=customer_id,
            price_id=price_id,
            plan_name=plan.name,
            success_url=success_url,
            cancel_url=cancel_url,
            trial_period_days=plan.trial_period_days,
        )
        return {"checkout_url": session.get("url"), "session_id": session.get("id")}
