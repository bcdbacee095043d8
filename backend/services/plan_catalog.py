"""Plan Catalog - single source of truth for subscription tiers.

This is the AUTHORITATIVE source for:
- Plan names and tier order (free -> starter -> creator -> pro -> teams)
- Pro / draft generation limits and allowed model classes
- Overage allowance and overage unit price
- Stripe price ID mappings (configured per environment)

Rules:
1. Ledger rows snapshot limits at period start; catalog changes apply at the next period only
2. Plan is derived from the subscription line item price_id, metadata plan_name is a fallback
3. Unknown plan names or price ids are configuration errors, never silently defaulted

Plan Structure:
- free: 5 draft generations / month, no pro model
- starter: $9/mo, 100 pro, unlimited draft, 7-day trial
- creator: $15/mo, 200 pro, unlimited draft
- pro: $24/mo, 400 pro, unlimited draft
- teams: $59/mo, unlimited pro and draft, 3 seats
"""
from typing import Dict, List, Optional
import os
import logging

from models import Plan, ModelClass, BillingInterval, SubscriptionStatus
from services.billing_errors import ConfigurationError

logger = logging.getLogger(__name__)

FREE_PLAN_NAME = "free"
OVERAGE_PRICE_PER_GENERATION = 10  # cents
PAID_PLAN_OVERAGE_ALLOWANCE = 0.1

# Usage thresholds for user-facing warnings
WARNING_THRESHOLD = 0.8
CRITICAL_THRESHOLD = 0.95

_BOTH_MODELS = frozenset({ModelClass.DRAFT, ModelClass.PRO})


# ============================================================================
# PLAN DEFINITIONS
# ============================================================================
PLAN_DEFINITIONS: Dict[str, Plan] = {
    "free": Plan(
        name="free",
        display_name="Free",
        price=0,
        pro_generations_limit=0,
        draft_generations_limit=5,
        allowed_model_classes=frozenset({ModelClass.DRAFT}),
        billing_interval=BillingInterval.MONTH,
        tier_rank=0,
        features=[
            "5 Draft generations per month",
            "Basic hook formulas",
        ],
    ),
    "starter": Plan(
        name="starter",
        display_name="Starter",
        price=900,
        pro_generations_limit=100,
        draft_generations_limit=None,
        allowed_model_classes=_BOTH_MODELS,
        billing_interval=BillingInterval.MONTH,
        overage_allowance_percent=PAID_PLAN_OVERAGE_ALLOWANCE,
        overage_unit_price=OVERAGE_PRICE_PER_GENERATION,
        trial_period_days=7,
        tier_rank=1,
        features=[
            "100 Smart AI generations per month",
            "Unlimited Draft generations",
            "All hook formulas",
        ],
    ),
    "creator": Plan(
        name="creator",
        display_name="Creator",
        price=1500,
        pro_generations_limit=200,
        draft_generations_limit=None,
        allowed_model_classes=_BOTH_MODELS,
        billing_interval=BillingInterval.MONTH,
        overage_allowance_percent=PAID_PLAN_OVERAGE_ALLOWANCE,
        overage_unit_price=OVERAGE_PRICE_PER_GENERATION,
        popular=True,
        tier_rank=2,
        features=[
            "200 Smart AI generations per month",
            "Unlimited Draft generations",
            "Advanced analytics",
        ],
    ),
    "pro": Plan(
        name="pro",
        display_name="Pro",
        price=2400,
        pro_generations_limit=400,
        draft_generations_limit=None,
        allowed_model_classes=_BOTH_MODELS,
        billing_interval=BillingInterval.MONTH,
        overage_allowance_percent=PAID_PLAN_OVERAGE_ALLOWANCE,
        overage_unit_price=OVERAGE_PRICE_PER_GENERATION,
        tier_rank=3,
        features=[
            "400 Smart AI generations per month",
            "Unlimited Draft generations",
            "Priority support",
        ],
    ),
    "teams": Plan(
        name="teams",
        display_name="Teams",
        price=5900,
        pro_generations_limit=None,
        draft_generations_limit=None,
        allowed_model_classes=_BOTH_MODELS,
        billing_interval=BillingInterval.MONTH,
        team_seats=3,
        tier_rank=4,
        features=[
            "Unlimited Smart AI generations",
            "Unlimited Draft generations",
            "3 team seats",
        ],
    ),
}

# Deterministic upgrade path
UPGRADE_PATH = {
    "free": "starter",
    "starter": "creator",
    "creator": "pro",
    "pro": "teams",
}

# Provider status -> local subscription status
PROVIDER_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.PAST_DUE,
    "incomplete": SubscriptionStatus.PAST_DUE,
    "canceled": SubscriptionStatus.CANCELED,
    "incomplete_expired": SubscriptionStatus.CANCELED,
}


class PlanCatalog:
    """Read-only lookups over PLAN_DEFINITIONS."""

    def __init__(self, plans: Optional[Dict[str, Plan]] = None):
        self._plans = plans if plans is not None else PLAN_DEFINITIONS

    # -------------------------------------------------------------------------
    # Plan Information
    # -------------------------------------------------------------------------

    def get_plan(self, name: str) -> Plan:
        plan = self._plans.get((name or "").lower())
        if plan is None:
            raise ConfigurationError(f"Unknown plan: {name!r}")
        return plan

    def list_plans(self) -> List[Plan]:
        return sorted(self._plans.values(), key=lambda p: p.tier_rank)

    def free_plan(self) -> Plan:
        return self.get_plan(FREE_PLAN_NAME)

    # -------------------------------------------------------------------------
    # Stripe Price ID Mappings
    # -------------------------------------------------------------------------

    def get_price_id(self, name: str) -> Optional[str]:
        """Stripe price id for a plan, from STRIPE_PRICE_<PLAN>."""
        plan = self.get_plan(name)
        return os.getenv(f"STRIPE_PRICE_{plan.name.upper()}") or None

    def get_plan_by_price_id(self, price_id: str) -> Plan:
        """
        Derive plan from a Stripe price id.
        Price ids are read from the environment on every call so rotated
        prices take effect without a restart.
        """
        if price_id:
            for plan in self._plans.values():
                if self.get_price_id(plan.name) == price_id:
                    return plan
        raise ConfigurationError(f"Unknown Stripe price id: {price_id!r}")

    # -------------------------------------------------------------------------
    # Upgrade Messaging
    # -------------------------------------------------------------------------

    def get_upgrade_plan(self, name: str) -> Optional[Plan]:
        next_name = UPGRADE_PATH.get(self.get_plan(name).name)
        return self.get_plan(next_name) if next_name else None

    def cheapest_plan_allowing(self, model_class: ModelClass) -> Optional[Plan]:
        candidates = [p for p in self._plans.values() if p.allows(model_class)]
        if not candidates:
            return None
        return min(candidates, key=lambda p: (p.price, p.tier_rank))

    def upgrade_message(self, current: str, target: Plan) -> str:
        price = f"${target.price // 100}/month"
        if current == FREE_PLAN_NAME and target.name == "starter":
            return f"Get {target.pro_generations_limit} Smart AI generations for just {price}"
        if target.pro_generations_limit is None:
            return f"Upgrade to {target.display_name} for unlimited Smart AI generations ({price})"
        return (
            f"Upgrade to {target.display_name} for {target.pro_generations_limit} "
            f"Smart AI generations ({price})"
        )

    # -------------------------------------------------------------------------
    # Status Mapping
    # -------------------------------------------------------------------------

    def map_provider_status(self, provider_status: str) -> SubscriptionStatus:
        """
        Map Stripe subscription status to local status.

        active -> active, trialing -> trialing
        past_due, unpaid, incomplete -> past_due
        canceled, incomplete_expired -> canceled
        """
        status = PROVIDER_STATUS_MAP.get((provider_status or "").lower())
        if status is None:
            logger.warning(f"Unmapped Stripe subscription status {provider_status!r}, treating as past_due")
            return SubscriptionStatus.PAST_DUE
        return status


# Catalog is static data, safe to share
plan_catalog = PlanCatalog()
