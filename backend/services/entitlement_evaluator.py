"""Entitlement Evaluator - may this user run one more generation?

Read-only apart from the rollover it may trigger. Decisions are never made
against an expired ledger row: a missing or expired row is rolled over first,
inside a bounded retry loop.

Decision order:
1. Subscription record (absent = free)
2. Current ledger row (rollover if absent / expired)
3. Model class gate -> model_not_allowed + cheapest plan allowing it
4. Inactive paid subscription -> subscription_inactive for paid-only models
5. Draft: remaining draft quota
6. Pro: base quota, then overage allowance, else limit_reached + next tier
"""
from typing import Optional
import logging

from models import (
    Decision, DenialReason, ModelClass, Plan, SubscriptionRecord, UpgradeHint,
    UsageLedgerRow, UsageLevel,
)
from services.billing_errors import (
    AlreadyInitializedError, StorageUnavailable, ValidationError,
)
from services.period_rollover import PeriodRolloverManager
from services.plan_catalog import (
    PlanCatalog, plan_catalog, WARNING_THRESHOLD, CRITICAL_THRESHOLD,
)
from services.subscription_records import SubscriptionRecords
from services.usage_ledger import UsageLedger, check_row_invariants

logger = logging.getLogger(__name__)

MAX_ROW_ATTEMPTS = 2


def coerce_model_class(model_class) -> ModelClass:
    try:
        return ModelClass(model_class)
    except ValueError:
        raise ValidationError(f"Unknown model class: {model_class!r}")


def usage_percentage(used: int, limit: Optional[int], max_overage: int = 0) -> float:
    """used / (limit + max_overage) * 100, or 0 when unlimited."""
    if limit is None:
        return 0.0
    capacity = limit + max_overage
    if capacity <= 0:
        return 100.0
    return round(used / capacity * 100, 2)


def usage_level(percentage: float) -> UsageLevel:
    if percentage >= CRITICAL_THRESHOLD * 100:
        return UsageLevel.CRITICAL
    if percentage >= WARNING_THRESHOLD * 100:
        return UsageLevel.WARNING
    return UsageLevel.OK


class EntitlementEvaluator:
    def __init__(
        self,
        ledger: UsageLedger,
        subscriptions: SubscriptionRecords,
        rollover: PeriodRolloverManager,
        catalog: PlanCatalog = plan_catalog,
    ):
        self.ledger = ledger
        self.subscriptions = subscriptions
        self.rollover = rollover
        self.catalog = catalog

    async def evaluate(self, user_id: str, model_class) -> Decision:
        model_class = coerce_model_class(model_class)

        record = await self.subscriptions.get(user_id) or SubscriptionRecord.free(user_id)
        row = await self.load_current_row(user_id)
        plan = self.catalog.get_plan(record.plan_name)

        decision = self.decide(record, plan, row, model_class)
        logger.debug(
            f"ENTITLEMENT_DECISION user_id={user_id} model={model_class.value} "
            f"allowed={decision.can_generate} reason={decision.reason} overage={decision.is_overage}"
        )
        return decision

    async def load_current_row(self, user_id: str) -> UsageLedgerRow:
        """Current row, rolling over first when absent or expired."""
        for attempt in range(1, MAX_ROW_ATTEMPTS + 1):
            row = await self.ledger.get_current_row(user_id)
            if row is not None:
                return row
            try:
                return await self.rollover.rollover_if_expired(user_id)
            except AlreadyInitializedError:
                logger.info(f"LEDGER_ROLLOVER_CONTENDED user_id={user_id} attempt={attempt}")
        raise StorageUnavailable(
            f"No current usage ledger row for {user_id} after {MAX_ROW_ATTEMPTS} attempts"
        )

    # -------------------------------------------------------------------------
    # Decision (pure)
    # -------------------------------------------------------------------------

    def decide(
        self,
        record: SubscriptionRecord,
        plan: Plan,
        row: UsageLedgerRow,
        model_class: ModelClass,
    ) -> Decision:
        check_row_invariants(row)

        remaining_pro = self._remaining(row.pro_limit, row.pro_used)
        remaining_draft = self._remaining(row.draft_limit, row.draft_used)
        if model_class == ModelClass.PRO:
            percentage = usage_percentage(row.pro_used + row.pro_overage_used, row.pro_limit, row.max_overage)
        else:
            percentage = usage_percentage(row.draft_used, row.draft_limit)

        base = dict(
            model_class=model_class,
            plan_name=plan.name,
            remaining_pro=remaining_pro,
            remaining_draft=remaining_draft,
            usage_percentage=percentage,
            usage_level=usage_level(percentage),
        )

        if not plan.allows(model_class):
            target = self.catalog.cheapest_plan_allowing(model_class)
            return Decision(
                can_generate=False,
                reason=DenialReason.MODEL_NOT_ALLOWED,
                upgrade_hint=self._hint(plan, target),
                message=f"The {model_class.value} model is not included in the {plan.display_name} plan.",
                **base,
            )

        # Past-due / canceled paid plans keep only what the free plan offers
        if not record.is_active and not self.catalog.free_plan().allows(model_class):
            return Decision(
                can_generate=False,
                reason=DenialReason.SUBSCRIPTION_INACTIVE,
                message="Your subscription is not active. Update your payment method to keep using Smart AI.",
                **base,
            )

        if model_class == ModelClass.DRAFT:
            if remaining_draft is None or remaining_draft > 0:
                return Decision(can_generate=True, **base)
            return self._limit_reached(plan, base)

        if remaining_pro is None or remaining_pro > 0:
            return Decision(can_generate=True, **base)

        if row.pro_overage_used < row.max_overage:
            return Decision(
                can_generate=True,
                is_overage=True,
                message=(
                    f"You've used all {row.pro_limit} Smart AI generations this period. "
                    f"Additional generations are billed at ${row.overage_unit_price / 100:.2f} each."
                ),
                **base,
            )

        return self._limit_reached(plan, base)

    def _limit_reached(self, plan: Plan, base: dict) -> Decision:
        target = self.catalog.get_upgrade_plan(plan.name)
        return Decision(
            can_generate=False,
            reason=DenialReason.LIMIT_REACHED,
            upgrade_hint=self._hint(plan, target),
            message="You've reached your generation limit for this period.",
            **base,
        )

    def _hint(self, current: Plan, target: Optional[Plan]) -> Optional[UpgradeHint]:
        if target is None:
            return None
        return UpgradeHint(
            plan_name=target.name,
            display_name=target.display_name,
            message=self.catalog.upgrade_message(current.name, target),
        )

    @staticmethod
    def _remaining(limit: Optional[int], used: int) -> Optional[int]:
        if limit is None:
            return None
        return max(limit - used, 0)
