"""Subscription Record - local mirror of each user's provider subscription.

Written only by the webhook reconciler and by explicit user actions
(cancel / reactivate / customer creation). The entitlement evaluator reads it.

Invariant: status == free  <=>  provider_subscription_id is None
"""
from typing import Optional, Dict, Any, Callable
from datetime import datetime
import logging

from pymongo import ReturnDocument

from database import storage_operation
from models import SubscriptionRecord, SubscriptionStatus, utc_now
from services.billing_errors import InvariantViolation

logger = logging.getLogger(__name__)


def check_record_invariant(record: SubscriptionRecord) -> None:
    is_free = record.status == SubscriptionStatus.FREE
    has_subscription = record.provider_subscription_id is not None
    if is_free == has_subscription:
        logger.critical(
            f"SUBSCRIPTION_INVARIANT_VIOLATION user_id={record.user_id} status={record.status} "
            f"provider_subscription_id={record.provider_subscription_id}"
        )
        raise InvariantViolation(
            f"Subscription record for {record.user_id}: status={record.status} "
            f"provider_subscription_id={record.provider_subscription_id}"
        )


class SubscriptionRecords:
    def __init__(self, db, clock: Callable[[], datetime] = utc_now):
        self.db = db
        self.clock = clock

    @storage_operation
    async def get(self, user_id: str) -> Optional[SubscriptionRecord]:
        doc = await self.db.subscription_records.find_one({"user_id": user_id}, {"_id": 0})
        return SubscriptionRecord(**doc) if doc else None

    @storage_operation
    async def find_by_customer_id(self, customer_id: str) -> Optional[SubscriptionRecord]:
        if not customer_id:
            return None
        doc = await self.db.subscription_records.find_one(
            {"provider_customer_id": customer_id}, {"_id": 0}
        )
        return SubscriptionRecord(**doc) if doc else None

    @storage_operation
    async def find_by_subscription_id(self, subscription_id: str) -> Optional[SubscriptionRecord]:
        if not subscription_id:
            return None
        doc = await self.db.subscription_records.find_one(
            {"provider_subscription_id": subscription_id}, {"_id": 0}
        )
        return SubscriptionRecord(**doc) if doc else None

    @storage_operation
    async def ensure(self, user_id: str) -> SubscriptionRecord:
        """Create the free record on first sight of a user; existing records are untouched."""
        now = self.clock()
        initial = SubscriptionRecord.free(user_id)
        initial.created_at = now
        initial.updated_at = now
        doc = await self.db.subscription_records.find_one_and_update(
            {"user_id": user_id},
            {"$setOnInsert": initial.model_dump()},
            upsert=True,
            projection={"_id": 0},
            return_document=ReturnDocument.AFTER,
        )
        return SubscriptionRecord(**doc)

    @storage_operation
    async def apply(self, user_id: str, fields: Dict[str, Any]) -> SubscriptionRecord:
        """Set absolute field values on a user's record, creating it if needed.

        The merged result is checked against the free/provider-id invariant
        before anything is written.
        """
        current = await self.get(user_id) or SubscriptionRecord.free(user_id)
        now = self.clock()
        merged = current.model_copy(update={**fields, "updated_at": now})
        merged = SubscriptionRecord(**merged.model_dump())
        check_record_invariant(merged)

        updates = {k: v for k, v in merged.model_dump().items() if k in fields}
        updates["updated_at"] = now
        on_insert = {
            k: v for k, v in merged.model_dump().items()
            if k not in updates
        }
        await self.db.subscription_records.update_one(
            {"user_id": user_id},
            {"$set": updates, "$setOnInsert": on_insert},
            upsert=True,
        )
        logger.info(
            f"SUBSCRIPTION_RECORD_UPDATED user_id={user_id} status={merged.status} "
            f"plan={merged.plan_name} fields={sorted(fields)}"
        )
        return merged
