"""Usage Ledger - per-user, per-period generation counters.

One row per (user_id, period_start). Exactly one row per user is current
(period_start <= now < period_end) outside of an in-flight rollover.

Counters only ever move up, through a single conditional find_one_and_update,
so concurrent generations from the same user cannot lose updates or overspend.
"""
from typing import Optional, Dict, List, Callable
from datetime import datetime
import logging

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import storage_operation
from models import (
    UsageLedgerRow, Plan, LedgerOpenReason, utc_now, to_storage_precision,
)
from services.billing_errors import (
    AlreadyInitializedError, ValidationError, InvariantViolation,
)

logger = logging.getLogger(__name__)

COUNTERS = ("pro_used", "draft_used", "pro_overage_used")


def check_row_invariants(row: UsageLedgerRow) -> None:
    """Raise InvariantViolation for ledger state that must never exist.

    Never clamps: a violation aborts the operation and is logged at CRITICAL.
    """
    problems = []
    for counter in COUNTERS:
        if getattr(row, counter) < 0:
            problems.append(f"{counter}={getattr(row, counter)} is negative")
    if row.overage_charge < 0:
        problems.append(f"overage_charge={row.overage_charge} is negative")
    if row.pro_limit is not None and row.pro_used > row.pro_limit:
        problems.append(f"pro_used={row.pro_used} exceeds pro_limit={row.pro_limit}")
    if row.draft_limit is not None and row.draft_used > row.draft_limit:
        problems.append(f"draft_used={row.draft_used} exceeds draft_limit={row.draft_limit}")
    if row.pro_overage_used > row.max_overage:
        problems.append(f"pro_overage_used={row.pro_overage_used} exceeds max_overage={row.max_overage}")
    if problems:
        logger.critical(
            f"LEDGER_INVARIANT_VIOLATION user_id={row.user_id} row_id={row.row_id} "
            f"problems={'; '.join(problems)}"
        )
        raise InvariantViolation(f"Ledger row {row.row_id}: {'; '.join(problems)}")


class UsageLedger:
    """Reads and atomic writes over the usage_ledger collection."""

    def __init__(self, db, clock: Callable[[], datetime] = utc_now):
        self.db = db
        self.clock = clock

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    @storage_operation
    async def get_current_row(self, user_id: str, now: Optional[datetime] = None) -> Optional[UsageLedgerRow]:
        """Row whose period contains now, or None (never initialized or expired)."""
        now = now or self.clock()
        doc = await self.db.usage_ledger.find_one(
            {
                "user_id": user_id,
                "period_start": {"$lte": now},
                "period_end": {"$gt": now},
            },
            {"_id": 0},
            sort=[("period_start", -1)],
        )
        return UsageLedgerRow(**doc) if doc else None

    @storage_operation
    async def get_latest_row(self, user_id: str) -> Optional[UsageLedgerRow]:
        """Row that ends last, regardless of expiry; the anchor for the next rollover."""
        doc = await self.db.usage_ledger.find_one(
            {"user_id": user_id},
            {"_id": 0},
            sort=[("period_end", -1), ("period_start", -1)],
        )
        return UsageLedgerRow(**doc) if doc else None

    @storage_operation
    async def get_row_by_period_start(self, user_id: str, period_start: datetime) -> Optional[UsageLedgerRow]:
        period_start = to_storage_precision(period_start)
        doc = await self.db.usage_ledger.find_one(
            {"user_id": user_id, "period_start": period_start},
            {"_id": 0},
        )
        return UsageLedgerRow(**doc) if doc else None

    @storage_operation
    async def list_history(self, user_id: str, limit: int = 12) -> List[UsageLedgerRow]:
        cursor = self.db.usage_ledger.find(
            {"user_id": user_id},
            {"_id": 0},
        ).sort("period_start", -1).limit(limit)
        docs = await cursor.to_list(length=limit)
        return [UsageLedgerRow(**d) for d in docs]

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    @storage_operation
    async def initialize_row(
        self,
        user_id: str,
        plan: Plan,
        period_start: datetime,
        period_end: datetime,
        reason: LedgerOpenReason = LedgerOpenReason.INITIAL,
        provider_subscription_id: Optional[str] = None,
        cycle_anchor: Optional[datetime] = None,
        check_current: bool = True,
    ) -> UsageLedgerRow:
        """Insert a zeroed row with limits snapshotted from plan.

        Raises AlreadyInitializedError when a current row exists (check_current)
        or when another writer already inserted a row for this period_start.
        """
        period_start = to_storage_precision(period_start)
        period_end = to_storage_precision(period_end)
        if period_end <= period_start:
            raise ValidationError(f"Empty period {period_start} -> {period_end}")

        if check_current:
            existing = await self.get_current_row(user_id)
            if existing is not None:
                raise AlreadyInitializedError(user_id, existing.period_start)

        now = self.clock()
        row = UsageLedgerRow(
            user_id=user_id,
            period_start=period_start,
            period_end=period_end,
            next_reset_at=period_end,
            pro_limit=plan.pro_generations_limit,
            draft_limit=plan.draft_generations_limit,
            plan_name=plan.name,
            overage_allowance_percent=plan.overage_allowance_percent,
            overage_unit_price=plan.overage_unit_price,
            provider_subscription_id=provider_subscription_id,
            billing_interval=plan.billing_interval,
            cycle_anchor=to_storage_precision(cycle_anchor) if cycle_anchor else period_start,
            opened_reason=reason,
            created_at=now,
            updated_at=now,
        )
        try:
            await self.db.usage_ledger.insert_one(row.model_dump())
        except DuplicateKeyError:
            logger.info(
                f"LEDGER_INIT_RACE user_id={user_id} period_start={period_start.isoformat()} - another writer won"
            )
            raise AlreadyInitializedError(user_id, period_start)

        logger.info(
            f"LEDGER_ROW_OPENED user_id={user_id} row_id={row.row_id} plan={plan.name} "
            f"reason={row.opened_reason} period_start={period_start.isoformat()} "
            f"period_end={period_end.isoformat()}"
        )
        return row

    @storage_operation
    async def increment_counter(
        self,
        row_id: str,
        counter: str,
        amount: int = 1,
        below: Optional[int] = None,
        extra_inc: Optional[Dict[str, int]] = None,
        require_current: bool = True,
    ) -> Optional[UsageLedgerRow]:
        """Atomically add amount to one counter.

        Single conditional update. With `below`, the update only applies while
        counter + amount <= below; with `require_current`, only while the row's
        period still contains now. Returns the updated row, or None when a
        guard did not match.
        """
        if counter not in COUNTERS:
            raise ValidationError(f"Unknown ledger counter: {counter}")
        if amount <= 0:
            raise ValidationError("Ledger counters are never decremented")

        now = self.clock()
        query = {"row_id": row_id}
        if require_current:
            query["period_start"] = {"$lte": now}
            query["period_end"] = {"$gt": now}
        if below is not None:
            query[counter] = {"$lte": below - amount}

        inc = {counter: amount}
        if extra_inc:
            inc.update(extra_inc)

        doc = await self.db.usage_ledger.find_one_and_update(
            query,
            {"$inc": inc, "$set": {"updated_at": now}},
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            return None

        row = UsageLedgerRow(**doc)
        check_row_invariants(row)
        return row

    @storage_operation
    async def supersede_rows(self, user_id: str, new_row: UsageLedgerRow) -> int:
        """Close every other row whose window overlaps new_row's start.

        Counters are untouched; only period_end moves so that new_row is the
        single current row. Returns the number of rows closed.
        """
        now = self.clock()
        closed = 0

        # Rows that began earlier and would still be open past the new start
        result = await self.db.usage_ledger.update_many(
            {
                "user_id": user_id,
                "row_id": {"$ne": new_row.row_id},
                "period_start": {"$lt": new_row.period_start},
                "period_end": {"$gt": new_row.period_start},
            },
            {"$set": {
                "period_end": new_row.period_start,
                "next_reset_at": new_row.period_start,
                "superseded_at": now,
                "updated_at": now,
            }},
        )
        closed += result.modified_count

        # Rows opened at or after the new start (provider period began before
        # our local row) collapse to an empty window
        cursor = self.db.usage_ledger.find(
            {
                "user_id": user_id,
                "row_id": {"$ne": new_row.row_id},
                "period_start": {"$gte": new_row.period_start},
                "superseded_at": None,
            },
            {"_id": 0, "row_id": 1, "period_start": 1},
        )
        for doc in await cursor.to_list(length=100):
            await self.db.usage_ledger.update_one(
                {"row_id": doc["row_id"]},
                {"$set": {
                    "period_end": doc["period_start"],
                    "next_reset_at": doc["period_start"],
                    "superseded_at": now,
                    "updated_at": now,
                }},
            )
            closed += 1

        if closed:
            logger.info(f"LEDGER_ROWS_SUPERSEDED user_id={user_id} by_row_id={new_row.row_id} closed={closed}")
        return closed
