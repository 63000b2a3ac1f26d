from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Callable

from shop_inventory.contexts.transfers.domain.contracts import (
    ErpDocumentResultV1,
    build_transfer_document,
    parse_transfer_payload,
)
from shop_inventory.contexts.transfers.domain.gateway import ErpGateway, ErpGatewayError
from shop_inventory.contexts.transfers.domain.queue_entry import (
    TRANSFER_QUEUE_STATUS_COMPLETED,
    QueueEntry,
    utcnow,
)
from shop_inventory.contexts.transfers.domain.retry_policy import (
    DEFAULT_BACKOFF_BASE_SECONDS,
    RetryDecision,
    apply_retry_policy,
)
from shop_inventory.contexts.transfers.domain.store import QueueEntryNotFoundError, QueueStore
from shop_inventory.observability import (
    observe_transfer_posting_backoff,
    observe_transfer_posting_outcome,
    observe_transfer_posting_processing,
)


OUTCOME_COMPLETED = "completed"
OUTCOME_FAILED = "failed"
OUTCOME_REQUIRES_REVIEW = "requires_review"
OUTCOME_SKIPPED = "skipped"
OUTCOME_SETTLE_LOST = "settle_lost"


def _error_text(exc: BaseException) -> str:
    message = str(exc).strip()
    return message or exc.__class__.__name__


class TransferProcessor:
    """Posts one claimed queue entry to the ERP and records the outcome.

    The claim is taken before any external call. Whatever happens between the
    claim and the ERP answer (bad payload, gateway error, unexpected bug) is
    turned into a retry decision so one entry never aborts its batch. Errors
    raised by the store itself are not caught here.
    """

    def __init__(
        self,
        store: QueueStore,
        gateway: ErpGateway,
        *,
        retry_base_seconds: int = DEFAULT_BACKOFF_BASE_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._retry_base_seconds = max(1, int(retry_base_seconds))
        self._clock = clock
        self._logger = logging.getLogger("shop_inventory")

    def process(self, entry: QueueEntry) -> str:
        started = time.perf_counter()
        try:
            claimed = self._store.mark_processing(entry.id)
        except QueueEntryNotFoundError:
            self._logger.warning(
                "transfer_queue_entry_missing",
                extra={"queue_id": entry.id, "external_reference": entry.external_reference},
            )
            return OUTCOME_SKIPPED
        if not claimed:
            self._logger.warning(
                "transfer_queue_claim_lost",
                extra={"queue_id": entry.id, "external_reference": entry.external_reference},
            )
            return OUTCOME_SKIPPED

        self._logger.info(
            "transfer_queue_entry_processing",
            extra={
                "queue_id": entry.id,
                "external_reference": entry.external_reference,
                "attempt": entry.attempt_number,
                "document_kind": entry.document_kind.value,
            },
        )
        try:
            result = self._post(entry)
        except Exception as exc:  # noqa: BLE001 - every per-entry failure goes through the retry policy
            return self._record_failure(entry, exc, started)
        return self._record_success(entry, result, started)

    def _post(self, entry: QueueEntry) -> ErpDocumentResultV1:
        request = parse_transfer_payload(entry.payload)
        document = build_transfer_document(
            entry.document_kind,
            request,
            external_reference=entry.external_reference,
            today=self._clock().strftime("%Y-%m-%d"),
        )
        return self._gateway.post_document(document)

    def _settle_lost(self, entry: QueueEntry, target_status: str, duration_ms: float, **details) -> str:
        # The row left "processing" while the ERP call was in flight; the write was not applied.
        observe_transfer_posting_outcome(OUTCOME_SETTLE_LOST)
        self._logger.warning(
            "transfer_queue_settle_lost",
            extra={
                "queue_id": entry.id,
                "external_reference": entry.external_reference,
                "attempt": entry.attempt_number,
                "target_status": target_status,
                "duration_ms": round(duration_ms, 2),
                **details,
            },
        )
        return OUTCOME_SETTLE_LOST

    def _record_success(self, entry: QueueEntry, result: ErpDocumentResultV1, started: float) -> str:
        settled = self._store.update_status(
            entry.id,
            TRANSFER_QUEUE_STATUS_COMPLETED,
            doc_entry=int(result.doc_entry),
            doc_num=result.doc_num,
        )
        duration_ms = (time.perf_counter() - started) * 1000.0
        observe_transfer_posting_processing(duration_ms)
        if not settled:
            return self._settle_lost(
                entry,
                TRANSFER_QUEUE_STATUS_COMPLETED,
                duration_ms,
                doc_entry=int(result.doc_entry),
                doc_num=result.doc_num,
            )
        observe_transfer_posting_outcome(OUTCOME_COMPLETED)
        self._logger.info(
            "transfer_queue_entry_completed",
            extra={
                "queue_id": entry.id,
                "external_reference": entry.external_reference,
                "attempt": entry.attempt_number,
                "doc_entry": int(result.doc_entry),
                "doc_num": result.doc_num,
                "duration_ms": round(duration_ms, 2),
            },
        )
        return OUTCOME_COMPLETED

    def _record_failure(self, entry: QueueEntry, exc: Exception, started: float) -> str:
        decision: RetryDecision = apply_retry_policy(
            entry.retry_count,
            entry.max_retries,
            _error_text(exc),
            now=self._clock(),
            base_seconds=self._retry_base_seconds,
        )
        settled = self._store.update_status(
            entry.id,
            decision.status,
            retry_count=decision.retry_count,
            next_retry_at=decision.next_retry_at,
            error=decision.error,
        )
        duration_ms = (time.perf_counter() - started) * 1000.0
        observe_transfer_posting_processing(duration_ms)
        if not settled:
            return self._settle_lost(entry, decision.status, duration_ms, error_type=exc.__class__.__name__)
        observe_transfer_posting_outcome(decision.status)
        if decision.backoff is not None:
            observe_transfer_posting_backoff(decision.backoff.total_seconds())

        log_extra = {
            "queue_id": entry.id,
            "external_reference": entry.external_reference,
            "attempt": entry.attempt_number,
            "retry_count": decision.retry_count,
            "max_retries": entry.max_retries,
            "error_type": exc.__class__.__name__,
            "error_code": getattr(exc, "code", None) if isinstance(exc, ErpGatewayError) else None,
            "duration_ms": round(duration_ms, 2),
        }
        if decision.is_terminal:
            self._logger.error("transfer_queue_entry_requires_review", extra=log_extra)
            return OUTCOME_REQUIRES_REVIEW
        log_extra["next_retry_at"] = decision.next_retry_at.isoformat() if decision.next_retry_at else None
        log_extra["backoff_seconds"] = decision.backoff.total_seconds() if decision.backoff else None
        self._logger.warning("transfer_queue_entry_failed", extra=log_extra)
        return OUTCOME_FAILED
