from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List

from shop_inventory.contexts.transfers.domain.contracts import DesktopTransferRequestV1, parse_transfer_payload
from shop_inventory.contexts.transfers.domain.queue_entry import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_SOURCE_SYSTEM,
    TRANSFER_QUEUE_STATUS_PENDING,
    QueueEntry,
    iso_utc,
    utcnow,
)
from shop_inventory.contexts.transfers.infrastructure.sql_queue_store import SqlQueueStore
from shop_inventory.errors import ConflictError, NotFoundError, UserActionError


def generate_external_reference(now: datetime | None = None) -> str:
    stamp = (now or utcnow()).strftime("%Y%m%d%H%M%S")
    return f"DESKTOP-TRF-{stamp}-{uuid.uuid4().hex[:8]}"


class TransferQueueService:
    def __init__(
        self,
        store: SqlQueueStore,
        *,
        default_max_retries: int = DEFAULT_MAX_RETRIES,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._default_max_retries = max(1, int(default_max_retries))
        self._clock = clock
        self._logger = logging.getLogger("shop_inventory")

    def enqueue(
        self,
        raw_payload: str | bytes | dict | None,
        *,
        reservation_id: str | None = None,
        created_by: str | None = None,
    ) -> QueueEntry:
        request = self._coerce_request(raw_payload)
        external_reference = request.external_reference or generate_external_reference(self._clock())
        request.external_reference = external_reference

        existing = self._store.get_by_reference(external_reference)
        if existing is not None:
            raise ConflictError(
                code="already_queued",
                message_key="transfer_already_queued",
                details=f"Transfer with reference '{external_reference}' is already queued",
                payload={
                    "queue_id": existing.id,
                    "external_reference": external_reference,
                    "status": existing.status,
                },
            )

        entry = self._store.insert(
            external_reference=external_reference,
            payload=request.to_json(),
            is_transfer_request=request.is_transfer_request,
            from_warehouse=request.from_warehouse,
            to_warehouse=request.to_warehouse,
            source_system=request.source_system or DEFAULT_SOURCE_SYSTEM,
            priority=request.priority or 0,
            max_retries=self._default_max_retries,
            total_quantity=request.total_quantity,
            line_count=len(request.lines),
            created_by=created_by,
            comments=request.comments,
            journal_memo=request.journal_memo,
            due_date=request.due_date,
            reservation_id=reservation_id,
        )
        self._logger.info(
            "transfer_queue_entry_enqueued",
            extra={
                "queue_id": entry.id,
                "external_reference": external_reference,
                "from_warehouse": entry.from_warehouse,
                "to_warehouse": entry.to_warehouse,
                "document_kind": entry.document_kind.value,
            },
        )
        return entry

    def get_status(self, external_reference: str) -> Dict[str, Any]:
        return self._require(external_reference).to_status_dict(now=self._clock())

    def list_pending(self, *, source_system: str | None = None, limit: int = 100) -> List[Dict[str, Any]]:
        now = self._clock()
        entries = self._store.list_active(source_system=source_system, limit=_clamp(limit, 1, 500))
        return [entry.to_status_dict(now=now) for entry in entries]

    def list_requiring_review(self, *, limit: int = 50) -> List[Dict[str, Any]]:
        now = self._clock()
        entries = self._store.list_requiring_review(limit=_clamp(limit, 1, 500))
        return [entry.to_status_dict(now=now) for entry in entries]

    def cancel(self, external_reference: str, *, cancelled_by: str | None = None) -> None:
        entry = self._require(external_reference)
        if entry.status != TRANSFER_QUEUE_STATUS_PENDING or not self._store.cancel(
            entry.external_reference, cancelled_by=cancelled_by
        ):
            raise UserActionError(
                code="transfer_not_cancellable",
                message_key="transfer_not_cancellable",
                details=f"Transfer '{entry.external_reference}' is {entry.status}; only pending transfers can be cancelled",
            )
        self._logger.info(
            "transfer_queue_entry_cancelled",
            extra={"queue_id": entry.id, "external_reference": entry.external_reference},
        )

    def retry(self, external_reference: str) -> Dict[str, Any]:
        entry = self._require(external_reference)
        if not self._store.reset_for_retry(entry.external_reference):
            raise UserActionError(
                code="transfer_not_retryable",
                message_key="transfer_not_retryable",
                details=f"Transfer '{entry.external_reference}' is {entry.status}; only failed transfers can be retried",
            )
        self._logger.info(
            "transfer_queue_entry_retry_requested",
            extra={
                "queue_id": entry.id,
                "external_reference": entry.external_reference,
                "previous_status": entry.status,
                "previous_retry_count": entry.retry_count,
            },
        )
        return self.get_status(entry.external_reference)

    def stats(self) -> Dict[str, Any]:
        raw = self._store.stats()
        counts = dict(raw["counts"])
        oldest = raw.get("oldest_pending_at")
        oldest_age_seconds = 0
        if oldest is not None:
            oldest_age_seconds = max(0, int((self._clock() - oldest).total_seconds()))
        return {
            "total_queued": int(sum(counts.values())),
            **counts,
            "oldest_pending_at": iso_utc(oldest) if oldest else None,
            "oldest_pending_age_seconds": oldest_age_seconds,
            "total_pending_quantity": float(raw.get("total_pending_quantity") or 0.0),
        }

    def _require(self, external_reference: str) -> QueueEntry:
        entry = self._store.get_by_reference(external_reference)
        if entry is None:
            raise NotFoundError(
                code="transfer_not_found",
                message_key="transfer_not_found",
                details=f"Transfer '{external_reference}' not found in queue",
            )
        return entry

    @staticmethod
    def _coerce_request(raw_payload: str | bytes | dict | None) -> DesktopTransferRequestV1:
        if isinstance(raw_payload, dict):
            raw_payload = json.dumps(raw_payload)
        return parse_transfer_payload(raw_payload)


def _clamp(value: object, min_value: int, max_value: int) -> int:
    try:
        number = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        number = min_value
    return max(min_value, min(number, max_value))
