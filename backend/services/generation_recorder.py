"""Generation Recorder - the only writer of usage counters.

Called once per completed generation. Base vs overage is re-derived at write
time through conditional increments instead of trusting an earlier Decision,
so two requests racing for the last unit cannot both spend it.
"""
from typing import Optional
import logging

from models import GenerationReceipt, ModelClass, UsageLedgerRow
from services.billing_errors import QuotaExhaustedError
from services.entitlement_evaluator import EntitlementEvaluator, coerce_model_class
from services.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)

# Retries only cover a period boundary passing between read and write
MAX_RECORD_ATTEMPTS = 3


class GenerationRecorder:
    def __init__(self, ledger: UsageLedger, evaluator: EntitlementEvaluator):
        self.ledger = ledger
        self.evaluator = evaluator

    async def record(self, user_id: str, model_class) -> GenerationReceipt:
        model_class = coerce_model_class(model_class)

        for attempt in range(1, MAX_RECORD_ATTEMPTS + 1):
            row = await self.evaluator.load_current_row(user_id)
            receipt = await self._increment(row, model_class)
            if receipt is not None:
                logger.info(
                    f"GENERATION_RECORDED user_id={user_id} model={model_class.value} "
                    f"overage={receipt.is_overage} charge={receipt.charge} row_id={row.row_id}"
                )
                return receipt

            # Guards failed: either quota is gone or the period rolled over under us
            current = await self.ledger.get_current_row(user_id)
            if current is not None and current.row_id == row.row_id:
                logger.warning(
                    f"GENERATION_QUOTA_EXHAUSTED user_id={user_id} model={model_class.value} row_id={row.row_id}"
                )
                raise QuotaExhaustedError(user_id, model_class.value, row.row_id)
            logger.info(f"GENERATION_RECORD_RETRY user_id={user_id} attempt={attempt} stale_row_id={row.row_id}")

        raise QuotaExhaustedError(user_id, model_class.value)

    async def _increment(self, row: UsageLedgerRow, model_class: ModelClass) -> Optional[GenerationReceipt]:
        if model_class == ModelClass.DRAFT:
            updated = await self.ledger.increment_counter(
                row.row_id, "draft_used", 1, below=row.draft_limit
            )
            if updated is None:
                return None
            return GenerationReceipt(row_id=row.row_id, model_class=model_class)

        updated = await self.ledger.increment_counter(
            row.row_id, "pro_used", 1, below=row.pro_limit
        )
        if updated is not None:
            return GenerationReceipt(row_id=row.row_id, model_class=model_class)

        # Base quota spent (or never existed); overage is bounded by the snapshot allowance
        if row.max_overage <= 0:
            return None
        updated = await self.ledger.increment_counter(
            row.row_id,
            "pro_overage_used",
            1,
            below=row.max_overage,
            extra_inc={"overage_charge": row.overage_unit_price},
        )
        if updated is None:
            return None
        return GenerationReceipt(
            row_id=row.row_id,
            model_class=model_class,
            is_overage=True,
            charge=row.overage_unit_price,
        )
