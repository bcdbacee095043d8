"""Period Rollover Manager.

Opens the next usage period when the current one has expired. Rollover is
lazy (triggered by entitlement checks and generation records), never polled.

Key rules:
- The next period is anchored at the previous period_end, not at now, so a
  late check does not shift the billing cycle
- Boundaries are computed from the row's cycle_anchor, so a cycle that began
  on the 31st returns to the 31st after February
- Insert-if-absent on (user_id, period_start): concurrent callers produce one row
- Expired rows are kept untouched as history
"""
from calendar import monthrange
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Tuple
import logging

from models import (
    Plan, UsageLedgerRow, BillingInterval, LedgerOpenReason, SubscriptionStatus, utc_now,
)
from services.billing_errors import AlreadyInitializedError, StorageUnavailable
from services.plan_catalog import PlanCatalog, plan_catalog
from services.subscription_records import SubscriptionRecords
from services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)

# A plan without a billing interval gets one period that never ends
OPEN_PERIOD_END = datetime.max.replace(tzinfo=timezone.utc, microsecond=0)

# Statuses whose paid plan no longer governs new periods
ROLLOVER_TO_FREE_STATUSES = (SubscriptionStatus.FREE, SubscriptionStatus.CANCELED)

# Same-instant period collisions between different plans
MAX_OPEN_ATTEMPTS = 3


def add_months(value: datetime, months: int) -> datetime:
    """Shift by whole months, clamping the day to the target month's length."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_boundary(anchor: datetime, interval: BillingInterval, after: datetime) -> datetime:
    """Smallest cycle boundary anchor + k * interval that is strictly after `after`."""
    if interval == BillingInterval.NONE:
        return OPEN_PERIOD_END
    step = 12 if interval == BillingInterval.YEAR else 1
    elapsed = (after.year - anchor.year) * 12 + (after.month - anchor.month)
    k = max(elapsed // step, 0)
    boundary = add_months(anchor, k * step)
    while boundary <= after:
        k += 1
        boundary = add_months(anchor, k * step)
    return boundary


def first_period_bounds(anchor: datetime, interval: BillingInterval, now: datetime) -> Tuple[datetime, datetime]:
    """The cycle period anchored at `anchor` that contains now."""
    start = anchor
    end = next_boundary(anchor, interval, start)
    while end <= now:
        start = end
        end = next_boundary(anchor, interval, start)
    return start, end


def next_period_bounds(previous: UsageLedgerRow, interval: BillingInterval, now: datetime) -> Tuple[datetime, datetime, datetime]:
    """(period_start, period_end, cycle_anchor) for the period after `previous`.

    Starts at previous.period_end and skips forward over whole periods that
    were missed entirely, so the result always contains now.
    """
    start = previous.period_end
    same_cycle = previous.billing_interval == interval
    anchor = (previous.cycle_anchor or previous.period_start) if same_cycle else start
    end = next_boundary(anchor, interval, start)
    while end <= now:
        start = end
        end = next_boundary(anchor, interval, start)
    return start, end, anchor


class PeriodRolloverManager:
    def __init__(
        self,
        ledger: UsageLedger,
        subscriptions: SubscriptionRecords,
        catalog: PlanCatalog = plan_catalog,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.ledger = ledger
        self.subscriptions = subscriptions
        self.catalog = catalog
        self.clock = clock

    async def plan_for_new_period(self, user_id: str) -> Plan:
        """Plan whose limits the next row snapshots. Unknown plans raise ConfigurationError."""
        record = await self.subscriptions.get(user_id)
        if record is None or record.status in ROLLOVER_TO_FREE_STATUSES:
            return self.catalog.free_plan()
        return self.catalog.get_plan(record.plan_name)

    async def rollover_if_expired(self, user_id: str) -> UsageLedgerRow:
        """Return the current row, opening the next period first if needed."""
        current = await self.ledger.get_current_row(user_id)
        if current is not None:
            return current

        now = self.clock()
        # Plan lookup happens before any write: a failure leaves the expired row in place
        plan = await self.plan_for_new_period(user_id)
        previous = await self.ledger.get_latest_row(user_id)

        if previous is None:
            # Anchored on the record's created_at so concurrent first checks agree on period_start
            record = await self.subscriptions.ensure(user_id)
            anchor = min(record.created_at, now)
            period_start, period_end = first_period_bounds(anchor, plan.billing_interval, now)
            reason = LedgerOpenReason.INITIAL
        else:
            period_start, period_end, anchor = next_period_bounds(previous, plan.billing_interval, now)
            reason = LedgerOpenReason.ROLLOVER

        try:
            row = await self.ledger.initialize_row(
                user_id,
                plan,
                period_start,
                period_end,
                reason=reason,
                provider_subscription_id=previous.provider_subscription_id if previous else None,
                cycle_anchor=anchor,
            )
        except AlreadyInitializedError:
            row = await self.ledger.get_current_row(user_id)
            if row is None:
                raise
            return row

        logger.info(
            f"LEDGER_ROLLOVER user_id={user_id} plan={plan.name} "
            f"period_start={row.period_start.isoformat()} period_end={row.period_end.isoformat()} "
            f"previous_period_end={previous.period_end.isoformat() if previous else None}"
        )
        return row

    async def start_new_period(
        self,
        user_id: str,
        plan: Plan,
        reason: LedgerOpenReason,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
        provider_subscription_id: Optional[str] = None,
    ) -> UsageLedgerRow:
        """Open a fresh period immediately, regardless of the stored period_end.

        Used for renewals and subscription start / end. Idempotent per
        (user_id, period_start): replaying the same boundary returns the
        existing row. Overlapping rows are closed so the new one is current.
        """
        now = self.clock()
        # Provider timestamps can run slightly ahead of our clock
        start = min(period_start or now, now)
        if period_end is None or period_end <= now:
            period_end = next_boundary(start, plan.billing_interval, now)

        row = None
        for _ in range(MAX_OPEN_ATTEMPTS):
            try:
                row = await self.ledger.initialize_row(
                    user_id,
                    plan,
                    start,
                    period_end,
                    reason=reason,
                    provider_subscription_id=provider_subscription_id,
                    check_current=False,
                )
                break
            except AlreadyInitializedError:
                existing = await self.ledger.get_row_by_period_start(user_id, start)
                if existing is None:
                    raise StorageUnavailable(
                        f"Ledger row for {user_id} at {start.isoformat()} vanished after insert race"
                    )
                if existing.plan_name == plan.name and existing.provider_subscription_id == provider_subscription_id:
                    logger.info(
                        f"LEDGER_PERIOD_ALREADY_OPEN user_id={user_id} period_start={existing.period_start.isoformat()} "
                        f"reason={reason.value}"
                    )
                    row = existing
                    break
                # Another plan's period opened at the same instant; ours begins right after it
                start = existing.period_start + timedelta(milliseconds=1)
        if row is None:
            raise StorageUnavailable(f"Could not open a ledger period for {user_id} after {MAX_OPEN_ATTEMPTS} attempts")

        await self.ledger.supersede_rows(user_id, row)
        logger.info(
            f"LEDGER_FORCED_PERIOD user_id={user_id} plan={plan.name} reason={reason.value} "
            f"period_start={row.period_start.isoformat()} period_end={row.period_end.isoformat()}"
        )
        return row
