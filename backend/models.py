from pydantic import BaseModel, Field, ConfigDict
from typing import Optional, Dict, Any, List, FrozenSet
from datetime import datetime, timezone
from enum import Enum
import math
import uuid

# ============================================================================
# ENUMS (System Constants)
# ============================================================================

class ModelClass(str, Enum):
    DRAFT = "draft"
    PRO = "pro"

class BillingInterval(str, Enum):
    MONTH = "month"
    YEAR = "year"
    NONE = "none"

class SubscriptionStatus(str, Enum):
    FREE = "free"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"

class DenialReason(str, Enum):
    MODEL_NOT_ALLOWED = "model_not_allowed"
    LIMIT_REACHED = "limit_reached"
    SUBSCRIPTION_INACTIVE = "subscription_inactive"
    SERVICE_UNAVAILABLE = "service_unavailable"

class UsageLevel(str, Enum):
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"

class LedgerOpenReason(str, Enum):
    INITIAL = "initial"
    ROLLOVER = "rollover"
    RENEWAL = "renewal"
    SUBSCRIPTION_CREATED = "subscription_created"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_DELETED = "subscription_deleted"

class WebhookOutcome(str, Enum):
    APPLIED = "applied"
    STALE_EVENT = "stale_event"
    IGNORED = "ignored"
    PRECONDITION_FAILED = "precondition_failed"

class PaymentStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"

class UserRole(str, Enum):
    ROLE_ADMIN = "ROLE_ADMIN"
    ROLE_USER = "ROLE_USER"

class AuditAction(str, Enum):
    # Subscription lifecycle (webhook driven)
    SUBSCRIPTION_STARTED = "SUBSCRIPTION_STARTED"
    SUBSCRIPTION_UPDATED = "SUBSCRIPTION_UPDATED"
    SUBSCRIPTION_ENDED = "SUBSCRIPTION_ENDED"
    SUBSCRIPTION_PAST_DUE = "SUBSCRIPTION_PAST_DUE"

    # User actions
    SUBSCRIPTION_CANCEL_REQUESTED = "SUBSCRIPTION_CANCEL_REQUESTED"
    SUBSCRIPTION_REACTIVATED = "SUBSCRIPTION_REACTIVATED"

    # Usage ledger
    USAGE_PERIOD_RENEWED = "USAGE_PERIOD_RENEWED"

    # Webhooks
    WEBHOOK_PROCESSING_FAILED = "WEBHOOK_PROCESSING_FAILED"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_storage_precision(value: datetime) -> datetime:
    """BSON dates carry milliseconds; truncate so equality lookups round-trip."""
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def compute_max_overage(limit: Optional[int], allowance_percent: float) -> int:
    """floor(limit * allowance), rounded first so 0.29 * 100 stays 29."""
    if limit is None:
        return 0
    return math.floor(round(limit * allowance_percent, 6))


# ============================================================================
# PLAN CATALOG
# ============================================================================

class Plan(BaseModel):
    """A subscription tier. Catalog entries are frozen."""
    model_config = ConfigDict(frozen=True)

    name: str
    display_name: str
    price: int = 0  # minor units (cents)
    currency: str = "usd"
    pro_generations_limit: Optional[int] = None  # None = unlimited
    draft_generations_limit: Optional[int] = None
    allowed_model_classes: FrozenSet[ModelClass] = frozenset({ModelClass.DRAFT})
    billing_interval: BillingInterval = BillingInterval.MONTH
    overage_allowance_percent: float = Field(default=0.0, ge=0.0, le=1.0)
    overage_unit_price: int = 0
    trial_period_days: int = 0
    team_seats: int = 1
    popular: bool = False
    tier_rank: int = 0
    features: List[str] = Field(default_factory=list)

    def allows(self, model_class: ModelClass) -> bool:
        return model_class in self.allowed_model_classes

    @property
    def max_overage(self) -> int:
        return compute_max_overage(self.pro_generations_limit, self.overage_allowance_percent)

    def to_public_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "display_name": self.display_name,
            "price": self.price,
            "currency": self.currency,
            "pro_generations_limit": self.pro_generations_limit,
            "draft_generations_limit": self.draft_generations_limit,
            "allowed_model_classes": sorted(m.value for m in self.allowed_model_classes),
            "billing_interval": self.billing_interval.value,
            "overage_allowance_percent": self.overage_allowance_percent,
            "overage_unit_price": self.overage_unit_price,
            "trial_period_days": self.trial_period_days,
            "team_seats": self.team_seats,
            "popular": self.popular,
            "features": list(self.features),
        }


# ============================================================================
# PERSISTED DOCUMENTS
# ============================================================================

class SubscriptionRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True, validate_default=True)

    user_id: str
    plan_name: str = "free"
    status: SubscriptionStatus = SubscriptionStatus.FREE
    provider_subscription_id: Optional[str] = None
    provider_customer_id: Optional[str] = None
    current_period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    state_event_at: Optional[int] = None  # provider event `created` (unix seconds)
    last_deleted_subscription_id: Optional[str] = None
    last_deleted_event_at: Optional[int] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @classmethod
    def free(cls, user_id: str) -> "SubscriptionRecord":
        return cls(user_id=user_id)

    @property
    def is_active(self) -> bool:
        return self.status in (
            SubscriptionStatus.FREE,
            SubscriptionStatus.TRIALING,
            SubscriptionStatus.ACTIVE,
        )


class UsageLedgerRow(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True, validate_default=True)

    row_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    period_start: datetime
    period_end: datetime
    next_reset_at: Optional[datetime] = None
    pro_used: int = 0
    draft_used: int = 0
    pro_overage_used: int = 0
    pro_limit: Optional[int] = None
    draft_limit: Optional[int] = None
    plan_name: str
    overage_allowance_percent: float = 0.0
    overage_unit_price: int = 0
    overage_charge: int = 0
    provider_subscription_id: Optional[str] = None
    billing_interval: BillingInterval = BillingInterval.MONTH
    cycle_anchor: Optional[datetime] = None  # boundaries are computed from here to avoid month-end drift
    opened_reason: LedgerOpenReason = LedgerOpenReason.INITIAL
    superseded_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def max_overage(self) -> int:
        return compute_max_overage(self.pro_limit, self.overage_allowance_percent)

    def is_current(self, now: datetime) -> bool:
        return self.period_start <= now < self.period_end


class WebhookEventRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True, validate_default=True)

    provider_event_id: str
    event_type: str
    event_created_at: Optional[int] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    processed: bool = False
    processing_error: Optional[str] = None
    retry_count: int = 0
    outcome: Optional[WebhookOutcome] = None
    user_id: Optional[str] = None
    processing_until: Optional[datetime] = None
    received_at: datetime = Field(default_factory=utc_now)
    processed_at: Optional[datetime] = None


class PaymentRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True, validate_default=True)

    payment_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    provider_invoice_id: str
    provider_subscription_id: Optional[str] = None
    amount: int = 0
    currency: str = "usd"
    status: PaymentStatus
    billing_reason: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class AuditLog(BaseModel):
    model_config = ConfigDict(extra="ignore", use_enum_values=True, validate_default=True)

    audit_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    action: AuditAction
    actor_role: Optional[str] = None
    actor_id: Optional[str] = None
    user_id: Optional[str] = None
    resource_type: Optional[str] = None
    resource_id: Optional[str] = None
    before_state: Optional[Dict[str, Any]] = None
    after_state: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    reason_code: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)


# ============================================================================
# ENGINE RESULTS
# ============================================================================

class UpgradeHint(BaseModel):
    plan_name: str
    display_name: str
    message: str


class Decision(BaseModel):
    can_generate: bool
    model_class: ModelClass
    reason: Optional[DenialReason] = None
    plan_name: Optional[str] = None
    remaining_pro: Optional[int] = None  # None = unlimited
    remaining_draft: Optional[int] = None
    usage_percentage: float = 0.0
    usage_level: UsageLevel = UsageLevel.OK
    is_overage: bool = False
    upgrade_hint: Optional[UpgradeHint] = None
    can_retry: bool = False
    message: Optional[str] = None

    @classmethod
    def service_unavailable(cls, model_class: ModelClass) -> "Decision":
        return cls(
            can_generate=False,
            model_class=model_class,
            reason=DenialReason.SERVICE_UNAVAILABLE,
            can_retry=True,
            message="Usage service is temporarily unavailable. Please try again.",
        )


class WebhookResult(BaseModel):
    event_id: str
    event_type: str
    status: str  # processed | duplicate | in_progress
    outcome: Optional[WebhookOutcome] = None
    user_id: Optional[str] = None


class GenerationReceipt(BaseModel):
    row_id: str
    model_class: ModelClass
    is_overage: bool = False
    charge: int = 0
