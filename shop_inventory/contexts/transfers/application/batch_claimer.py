from __future__ import annotations

import logging
import threading
from typing import Dict

from shop_inventory.contexts.transfers.application.transfer_processor import (
    OUTCOME_COMPLETED,
    OUTCOME_FAILED,
    OUTCOME_REQUIRES_REVIEW,
    OUTCOME_SETTLE_LOST,
    OUTCOME_SKIPPED,
    TransferProcessor,
)
from shop_inventory.contexts.transfers.domain.store import QueueStore


DEFAULT_BATCH_SIZE = 5


def empty_summary() -> Dict[str, int]:
    return {
        "claimed": 0,
        "processed": 0,
        OUTCOME_COMPLETED: 0,
        OUTCOME_FAILED: 0,
        OUTCOME_REQUIRES_REVIEW: 0,
        OUTCOME_SKIPPED: 0,
        OUTCOME_SETTLE_LOST: 0,
        "cancelled": 0,
    }


class BatchClaimer:
    def __init__(self, store: QueueStore, processor: TransferProcessor, *, batch_size: int = DEFAULT_BATCH_SIZE) -> None:
        self._store = store
        self._processor = processor
        self.batch_size = max(1, int(batch_size))
        self._logger = logging.getLogger("shop_inventory")

    def claim_and_process(self, stop_event: threading.Event | None = None) -> Dict[str, int]:
        summary = empty_summary()
        batch = self._store.get_next_batch(self.batch_size)
        if not batch:
            self._logger.debug("transfer_posting_batch_empty")
            return summary

        summary["claimed"] = len(batch)
        self._logger.info("transfer_posting_batch_claimed", extra={"batch_size": len(batch)})
        for index, entry in enumerate(batch):
            if stop_event is not None and stop_event.is_set():
                summary["cancelled"] = len(batch) - index
                self._logger.info(
                    "transfer_posting_batch_cancelled",
                    extra={"remaining": summary["cancelled"], "processed": summary["processed"]},
                )
                break
            outcome = self._processor.process(entry)
            summary[outcome] = summary.get(outcome, 0) + 1
            if outcome != OUTCOME_SKIPPED:
                summary["processed"] += 1
        return summary
