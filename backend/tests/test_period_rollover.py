"""
Period rollover: cycle arithmetic, anchoring at the previous period end,
insert-if-absent under concurrency, and forced periods.
"""
import asyncio
from datetime import timedelta

import pytest

from models import BillingInterval, LedgerOpenReason, ModelClass
from services.billing_errors import ConfigurationError
from services.period_rollover import (
    OPEN_PERIOD_END, add_months, first_period_bounds, next_boundary,
)
from services.plan_catalog import plan_catalog
from fakes import utc


class TestCycleArithmetic:

    def test_add_months_clamps_to_month_end(self):
        assert add_months(utc(2026, 1, 31, 10), 1) == utc(2026, 2, 28, 10)
        assert add_months(utc(2028, 1, 31, 10), 1) == utc(2028, 2, 29, 10)
        assert add_months(utc(2026, 11, 30), 3) == utc(2027, 2, 28)

    def test_boundary_returns_to_anchor_day_after_short_month(self):
        anchor = utc(2026, 1, 31, 10)
        assert next_boundary(anchor, BillingInterval.MONTH, utc(2026, 2, 28, 10)) == utc(2026, 3, 31, 10)

    def test_boundary_is_strictly_after(self):
        anchor = utc(2026, 1, 15, 9)
        assert next_boundary(anchor, BillingInterval.MONTH, anchor) == utc(2026, 2, 15, 9)
        assert next_boundary(anchor, BillingInterval.MONTH, utc(2026, 2, 15, 8, 59)) == utc(2026, 2, 15, 9)

    def test_yearly_boundary(self):
        anchor = utc(2024, 2, 29)
        assert next_boundary(anchor, BillingInterval.YEAR, anchor) == utc(2025, 2, 28)
        assert next_boundary(anchor, BillingInterval.YEAR, utc(2027, 6, 1)) == utc(2028, 2, 29)

    def test_no_interval_never_ends(self):
        assert next_boundary(utc(2026, 1, 1), BillingInterval.NONE, utc(2026, 1, 1)) == OPEN_PERIOD_END

    def test_first_period_contains_now(self):
        start, end = first_period_bounds(utc(2025, 11, 20, 12), BillingInterval.MONTH, utc(2026, 1, 25))
        assert (start, end) == (utc(2026, 1, 20, 12), utc(2026, 2, 20, 12))


class TestRolloverIfExpired:

    @pytest.mark.asyncio
    async def test_first_check_opens_initial_free_row(self, engine, clock, db):
        row = await engine.rollover.rollover_if_expired("user-new")
        assert row.plan_name == "free"
        assert row.period_start == clock()
        assert row.period_end == utc(2026, 2, 15, 9)
        assert row.opened_reason == LedgerOpenReason.INITIAL.value
        record = await engine.subscriptions.get("user-new")
        assert record.status == "free"

    @pytest.mark.asyncio
    async def test_noop_while_current(self, engine, clock):
        first = await engine.rollover.rollover_if_expired("user-a")
        clock.advance(days=10)
        again = await engine.rollover.rollover_if_expired("user-a")
        assert again.row_id == first.row_id

    @pytest.mark.asyncio
    async def test_next_period_anchored_at_previous_end_not_now(self, engine, clock):
        await engine.check_entitlement("user-a", ModelClass.DRAFT)
        await engine.record_generation("user-a", ModelClass.DRAFT)
        old = await engine.ledger.get_current_row("user-a")

        clock.set(old.period_end + timedelta(minutes=7))
        new = await engine.rollover.rollover_if_expired("user-a")

        assert new.period_start == old.period_end
        assert new.period_end == utc(2026, 3, 15, 9)
        assert (new.pro_used, new.draft_used, new.pro_overage_used) == (0, 0, 0)
        assert new.opened_reason == LedgerOpenReason.ROLLOVER.value
        history = await engine.ledger.list_history("user-a")
        kept = next(r for r in history if r.row_id == old.row_id)
        assert kept.draft_used == 1
        assert kept.period_end == old.period_end

    @pytest.mark.asyncio
    async def test_missed_periods_are_skipped(self, engine, clock):
        await engine.rollover.rollover_if_expired("user-a")
        clock.set(utc(2026, 4, 20, 12))
        row = await engine.rollover.rollover_if_expired("user-a")
        assert row.period_start == utc(2026, 4, 15, 9)
        assert row.period_end == utc(2026, 5, 15, 9)

    @pytest.mark.asyncio
    async def test_month_end_cycle_does_not_drift(self, engine, clock):
        clock.set(utc(2026, 1, 31, 10))
        first = await engine.rollover.rollover_if_expired("user-eom")
        assert first.period_end == utc(2026, 2, 28, 10)

        clock.set(utc(2026, 3, 1, 8))
        second = await engine.rollover.rollover_if_expired("user-eom")
        assert second.period_start == utc(2026, 2, 28, 10)
        assert second.period_end == utc(2026, 3, 31, 10)

    @pytest.mark.asyncio
    async def test_concurrent_first_checks_produce_one_row(self, engine, db):
        rows = await asyncio.gather(*[engine.rollover.rollover_if_expired("user-race") for _ in range(6)])
        assert len({r.row_id for r in rows}) == 1
        assert await db.usage_ledger.count_documents({"user_id": "user-race"}) == 1

    @pytest.mark.asyncio
    async def test_concurrent_rollovers_produce_one_new_row(self, engine, clock, db):
        old = await engine.rollover.rollover_if_expired("user-race")
        clock.set(old.period_end + timedelta(seconds=1))

        rows = await asyncio.gather(*[engine.rollover.rollover_if_expired("user-race") for _ in range(6)])

        assert len({r.row_id for r in rows}) == 1
        assert rows[0].period_start == old.period_end
        assert await db.usage_ledger.count_documents({"user_id": "user-race"}) == 2

    @pytest.mark.asyncio
    async def test_plan_lookup_failure_leaves_expired_row(self, engine, clock, db):
        starter = plan_catalog.get_plan("starter")
        await engine.subscriptions.apply("user-legacy", {
            "plan_name": "starter",
            "status": "active",
            "provider_subscription_id": "sub_legacy",
        })
        old = await engine.rollover.start_new_period(
            "user-legacy", starter, LedgerOpenReason.SUBSCRIPTION_CREATED, provider_subscription_id="sub_legacy"
        )
        await engine.subscriptions.apply("user-legacy", {"plan_name": "gold_legacy"})
        clock.set(old.period_end + timedelta(hours=1))

        with pytest.raises(ConfigurationError):
            await engine.rollover.rollover_if_expired("user-legacy")
        assert await db.usage_ledger.count_documents({"user_id": "user-legacy"}) == 1

        await engine.subscriptions.apply("user-legacy", {"plan_name": "creator"})
        row = await engine.rollover.rollover_if_expired("user-legacy")
        assert row.plan_name == "creator"
        assert row.period_start == old.period_end
        assert row.provider_subscription_id == "sub_legacy"

    @pytest.mark.asyncio
    async def test_canceled_subscription_rolls_over_to_free(self, engine, clock):
        starter = plan_catalog.get_plan("starter")
        await engine.subscriptions.apply("user-c", {
            "plan_name": "starter",
            "status": "canceled",
            "provider_subscription_id": "sub_c",
        })
        old = await engine.rollover.start_new_period("user-c", starter, LedgerOpenReason.SUBSCRIPTION_CREATED)
        clock.set(old.period_end + timedelta(minutes=1))
        row = await engine.rollover.rollover_if_expired("user-c")
        assert row.plan_name == "free"
        assert row.pro_limit == 0


class TestStartNewPeriod:

    @pytest.mark.asyncio
    async def test_replayed_boundary_returns_existing_row(self, engine, clock, db):
        starter = plan_catalog.get_plan("starter")
        first = await engine.rollover.start_new_period(
            "user-s", starter, LedgerOpenReason.RENEWAL, period_start=clock(), provider_subscription_id="sub_s"
        )
        again = await engine.rollover.start_new_period(
            "user-s", starter, LedgerOpenReason.RENEWAL, period_start=clock(), provider_subscription_id="sub_s"
        )
        assert again.row_id == first.row_id
        assert await db.usage_ledger.count_documents({"user_id": "user-s"}) == 1

    @pytest.mark.asyncio
    async def test_future_provider_start_clamped_to_now(self, engine, clock):
        row = await engine.rollover.start_new_period(
            "user-s", plan_catalog.get_plan("starter"), LedgerOpenReason.SUBSCRIPTION_CREATED,
            period_start=clock() + timedelta(seconds=3),
        )
        assert row.period_start == clock()
        assert row.is_current(clock())

    @pytest.mark.asyncio
    async def test_past_period_end_recomputed(self, engine, clock):
        row = await engine.rollover.start_new_period(
            "user-s", plan_catalog.get_plan("starter"), LedgerOpenReason.RENEWAL,
            period_start=clock() - timedelta(days=40),
            period_end=clock() - timedelta(days=10),
        )
        assert row.period_end > clock()

    @pytest.mark.asyncio
    async def test_different_plan_at_same_instant_opens_right_after(self, engine, clock):
        paid = await engine.rollover.start_new_period(
            "user-s", plan_catalog.get_plan("starter"), LedgerOpenReason.SUBSCRIPTION_CREATED,
            provider_subscription_id="sub_s",
        )
        free = await engine.rollover.start_new_period(
            "user-s", plan_catalog.free_plan(), LedgerOpenReason.SUBSCRIPTION_DELETED,
        )
        assert free.row_id != paid.row_id
        assert free.period_start == paid.period_start + timedelta(milliseconds=1)

        clock.advance(seconds=1)
        current = await engine.ledger.get_current_row("user-s")
        assert current.row_id == free.row_id
