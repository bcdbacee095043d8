"""
Usage ledger: row initialization, guarded atomic increments, supersede and
invariant checks.
"""
from datetime import timedelta

import pytest
from pymongo.errors import ServerSelectionTimeoutError

from models import LedgerOpenReason, UsageLedgerRow
from services.billing_errors import (
    AlreadyInitializedError, InvariantViolation, StorageUnavailable, ValidationError,
)
from services.plan_catalog import plan_catalog
from services.usage_ledger import check_row_invariants


async def _open(engine, clock, user_id="user-ledger", plan_name="free", days=30, **kwargs):
    start = clock()
    return await engine.ledger.initialize_row(
        user_id,
        plan_catalog.get_plan(plan_name),
        start,
        start + timedelta(days=days),
        **kwargs,
    )


class TestInitializeRow:

    @pytest.mark.asyncio
    async def test_snapshots_plan_limits_with_zero_counters(self, engine, clock):
        row = await _open(engine, clock, plan_name="starter")
        assert row.plan_name == "starter"
        assert row.pro_limit == 100
        assert row.draft_limit is None
        assert row.overage_allowance_percent == 0.1
        assert row.overage_unit_price == 10
        assert (row.pro_used, row.draft_used, row.pro_overage_used, row.overage_charge) == (0, 0, 0, 0)
        assert row.next_reset_at == row.period_end
        assert row.opened_reason == LedgerOpenReason.INITIAL.value

    @pytest.mark.asyncio
    async def test_current_row_returned_while_period_open(self, engine, clock):
        row = await _open(engine, clock)
        current = await engine.ledger.get_current_row("user-ledger")
        assert current.row_id == row.row_id

    @pytest.mark.asyncio
    async def test_no_current_row_after_period_end(self, engine, clock):
        await _open(engine, clock, days=1)
        clock.advance(days=1)
        assert await engine.ledger.get_current_row("user-ledger") is None
        assert (await engine.ledger.get_latest_row("user-ledger")) is not None

    @pytest.mark.asyncio
    async def test_second_init_while_current_raises_already_initialized(self, engine, clock):
        await _open(engine, clock)
        clock.advance(minutes=1)
        with pytest.raises(AlreadyInitializedError):
            await _open(engine, clock)

    @pytest.mark.asyncio
    async def test_same_period_start_is_rejected_by_unique_index(self, engine, clock, db):
        await _open(engine, clock)
        with pytest.raises(AlreadyInitializedError):
            await _open(engine, clock, check_current=False)
        assert await db.usage_ledger.count_documents({"user_id": "user-ledger"}) == 1

    @pytest.mark.asyncio
    async def test_empty_period_is_invalid(self, engine, clock):
        with pytest.raises(ValidationError):
            await _open(engine, clock, days=0)

    @pytest.mark.asyncio
    async def test_period_start_truncated_to_storage_precision(self, engine, clock):
        clock.advance(microseconds=123456)
        row = await _open(engine, clock)
        assert row.period_start.microsecond == 123000
        found = await engine.ledger.get_row_by_period_start("user-ledger", clock())
        assert found.row_id == row.row_id


class TestIncrementCounter:

    @pytest.mark.asyncio
    async def test_guarded_increment_stops_at_limit(self, engine, clock):
        row = await _open(engine, clock)
        for expected in range(1, 6):
            updated = await engine.ledger.increment_counter(row.row_id, "draft_used", 1, below=5)
            assert updated.draft_used == expected
        assert await engine.ledger.increment_counter(row.row_id, "draft_used", 1, below=5) is None

    @pytest.mark.asyncio
    async def test_extra_inc_applied_in_same_update(self, engine, clock):
        row = await _open(engine, clock, plan_name="starter")
        updated = await engine.ledger.increment_counter(
            row.row_id, "pro_overage_used", 1, below=10, extra_inc={"overage_charge": 10}
        )
        assert updated.pro_overage_used == 1
        assert updated.overage_charge == 10

    @pytest.mark.asyncio
    async def test_expired_row_is_not_incremented(self, engine, clock):
        row = await _open(engine, clock, days=1)
        clock.advance(days=2)
        assert await engine.ledger.increment_counter(row.row_id, "draft_used", 1, below=5) is None

    @pytest.mark.asyncio
    async def test_unknown_counter_rejected(self, engine, clock):
        row = await _open(engine, clock)
        with pytest.raises(ValidationError):
            await engine.ledger.increment_counter(row.row_id, "pro_limit", 1)

    @pytest.mark.asyncio
    async def test_counters_never_decrement(self, engine, clock):
        row = await _open(engine, clock)
        with pytest.raises(ValidationError):
            await engine.ledger.increment_counter(row.row_id, "draft_used", -1)
        with pytest.raises(ValidationError):
            await engine.ledger.increment_counter(row.row_id, "draft_used", 0)

    @pytest.mark.asyncio
    async def test_storage_timeout_surfaces_as_storage_unavailable(self, engine, clock, db):
        row = await _open(engine, clock)
        db.usage_ledger.fail_next = ServerSelectionTimeoutError("No servers found yet")
        with pytest.raises(StorageUnavailable) as exc_info:
            await engine.ledger.increment_counter(row.row_id, "draft_used", 1, below=5)
        assert exc_info.value.retryable is True
        assert exc_info.value.service == "storage"


class TestSupersedeRows:

    @pytest.mark.asyncio
    async def test_overlapping_row_closed_at_new_start(self, engine, clock):
        old = await _open(engine, clock)
        await engine.ledger.increment_counter(old.row_id, "draft_used", 1, below=5)
        clock.advance(days=3)
        new = await _open(engine, clock, plan_name="starter", check_current=False)

        closed = await engine.ledger.supersede_rows("user-ledger", new)

        assert closed == 1
        history = await engine.ledger.list_history("user-ledger")
        old_after = next(r for r in history if r.row_id == old.row_id)
        assert old_after.period_end == new.period_start
        assert old_after.superseded_at is not None
        assert old_after.draft_used == 1
        assert (await engine.ledger.get_current_row("user-ledger")).row_id == new.row_id

    @pytest.mark.asyncio
    async def test_later_local_row_collapses_to_empty_window(self, engine, clock):
        early_start = clock()
        clock.advance(hours=2)
        local = await _open(engine, clock)
        paid = await engine.ledger.initialize_row(
            "user-ledger",
            plan_catalog.get_plan("starter"),
            early_start,
            early_start + timedelta(days=30),
            check_current=False,
        )

        await engine.ledger.supersede_rows("user-ledger", paid)

        rows = {r.row_id: r for r in await engine.ledger.list_history("user-ledger")}
        assert rows[local.row_id].period_end == rows[local.row_id].period_start
        assert (await engine.ledger.get_current_row("user-ledger")).row_id == paid.row_id


class TestRowInvariants:

    def _row(self, clock, **overrides):
        fields = dict(
            user_id="user-ledger",
            period_start=clock(),
            period_end=clock() + timedelta(days=30),
            plan_name="starter",
            pro_limit=100,
            overage_allowance_percent=0.1,
        )
        fields.update(overrides)
        return UsageLedgerRow(**fields)

    def test_valid_row_passes(self, clock):
        check_row_invariants(self._row(clock, pro_used=100, pro_overage_used=10))

    def test_negative_counter_is_violation(self, clock):
        with pytest.raises(InvariantViolation):
            check_row_invariants(self._row(clock, draft_used=-1))

    def test_pro_used_above_limit_is_violation(self, clock):
        with pytest.raises(InvariantViolation):
            check_row_invariants(self._row(clock, pro_used=101))

    def test_overage_above_allowance_is_violation(self, clock):
        with pytest.raises(InvariantViolation):
            check_row_invariants(self._row(clock, pro_used=100, pro_overage_used=11))
