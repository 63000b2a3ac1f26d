from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict


TRANSFER_QUEUE_STATUS_PENDING = "pending"
TRANSFER_QUEUE_STATUS_PROCESSING = "processing"
TRANSFER_QUEUE_STATUS_COMPLETED = "completed"
TRANSFER_QUEUE_STATUS_FAILED = "failed"
TRANSFER_QUEUE_STATUS_REQUIRES_REVIEW = "requires_review"
TRANSFER_QUEUE_STATUS_CANCELLED = "cancelled"

TRANSFER_QUEUE_STATUSES = (
    TRANSFER_QUEUE_STATUS_PENDING,
    TRANSFER_QUEUE_STATUS_PROCESSING,
    TRANSFER_QUEUE_STATUS_COMPLETED,
    TRANSFER_QUEUE_STATUS_FAILED,
    TRANSFER_QUEUE_STATUS_REQUIRES_REVIEW,
    TRANSFER_QUEUE_STATUS_CANCELLED,
)

DEFAULT_SOURCE_SYSTEM = "Desktop"
DEFAULT_MAX_RETRIES = 3


class DocumentKind(str, Enum):
    DIRECT = "direct"
    REQUEST = "request"

    @classmethod
    def for_entry(cls, is_transfer_request: bool) -> "DocumentKind":
        return cls.REQUEST if is_transfer_request else cls.DIRECT


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso_utc(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def parse_iso_utc(value: str | None) -> datetime | None:
    raw = str(value or "").strip()
    if not raw:
        return None
    normalized = raw
    if normalized.endswith("Z"):
        normalized = normalized[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _safe_int(value: object, default: int = 0) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def _safe_float(value: object, default: float = 0.0) -> float:
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def _safe_str(value: object | None) -> str | None:
    if value is None:
        return None
    raw = str(value).strip()
    return raw or None


@dataclass
class QueueEntry:
    """One inventory transfer waiting to be posted to the ERP."""

    id: int
    external_reference: str
    payload: str
    is_transfer_request: bool = True
    status: str = TRANSFER_QUEUE_STATUS_PENDING
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    next_retry_at: datetime | None = None
    result_doc_entry: int | None = None
    result_doc_num: str | None = None
    last_error: str | None = None
    from_warehouse: str = ""
    to_warehouse: str = ""
    source_system: str = DEFAULT_SOURCE_SYSTEM
    priority: int = 0
    total_quantity: float = 0.0
    line_count: int = 0
    created_by: str | None = None
    comments: str | None = None
    journal_memo: str | None = None
    due_date: str | None = None
    reservation_id: str | None = None
    created_at: datetime | None = None
    processing_started_at: datetime | None = None
    processed_at: datetime | None = None

    @property
    def document_kind(self) -> DocumentKind:
        return DocumentKind.for_entry(self.is_transfer_request)

    @property
    def attempt_number(self) -> int:
        return self.retry_count + 1

    @staticmethod
    def from_row(row: Dict[str, Any]) -> "QueueEntry":
        data = dict(row or {})
        return QueueEntry(
            id=_safe_int(data.get("id")),
            external_reference=str(data.get("external_reference") or ""),
            payload=str(data.get("transfer_payload") or ""),
            is_transfer_request=bool(_safe_int(data.get("is_transfer_request"), 1)),
            status=str(data.get("status") or TRANSFER_QUEUE_STATUS_PENDING),
            retry_count=_safe_int(data.get("retry_count")),
            max_retries=_safe_int(data.get("max_retries"), DEFAULT_MAX_RETRIES),
            next_retry_at=parse_iso_utc(data.get("next_retry_at")),
            result_doc_entry=(
                None if data.get("result_doc_entry") in (None, "") else _safe_int(data.get("result_doc_entry"))
            ),
            result_doc_num=_safe_str(data.get("result_doc_num")),
            last_error=_safe_str(data.get("last_error")),
            from_warehouse=str(data.get("from_warehouse") or ""),
            to_warehouse=str(data.get("to_warehouse") or ""),
            source_system=str(data.get("source_system") or DEFAULT_SOURCE_SYSTEM),
            priority=_safe_int(data.get("priority")),
            total_quantity=_safe_float(data.get("total_quantity")),
            line_count=_safe_int(data.get("line_count")),
            created_by=_safe_str(data.get("created_by")),
            comments=_safe_str(data.get("comments")),
            journal_memo=_safe_str(data.get("journal_memo")),
            due_date=_safe_str(data.get("due_date")),
            reservation_id=_safe_str(data.get("reservation_id")),
            created_at=parse_iso_utc(data.get("created_at")),
            processing_started_at=parse_iso_utc(data.get("processing_started_at")),
            processed_at=parse_iso_utc(data.get("processed_at")),
        )

    def to_status_dict(self, *, now: datetime | None = None) -> Dict[str, Any]:
        current = now or utcnow()
        is_failed = self.status in {TRANSFER_QUEUE_STATUS_FAILED, TRANSFER_QUEUE_STATUS_REQUIRES_REVIEW}
        wait_seconds = 0
        if self.created_at is not None:
            wait_seconds = max(0, int((current - self.created_at).total_seconds()))
        return {
            "queue_id": self.id,
            "external_reference": self.external_reference,
            "from_warehouse": self.from_warehouse,
            "to_warehouse": self.to_warehouse,
            "status": self.status,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "last_error": self.last_error,
            "result_doc_entry": self.result_doc_entry,
            "result_doc_num": self.result_doc_num,
            "created_at": iso_utc(self.created_at) if self.created_at else None,
            "processing_started_at": iso_utc(self.processing_started_at) if self.processing_started_at else None,
            "processed_at": iso_utc(self.processed_at) if self.processed_at else None,
            "next_retry_at": iso_utc(self.next_retry_at) if self.next_retry_at else None,
            "source_system": self.source_system,
            "priority": self.priority,
            "total_quantity": self.total_quantity,
            "line_count": self.line_count,
            "is_transfer_request": self.is_transfer_request,
            "wait_time_seconds": wait_seconds,
            "is_complete": self.status == TRANSFER_QUEUE_STATUS_COMPLETED,
            "is_failed": is_failed,
            "can_retry": is_failed,
            "can_cancel": self.status == TRANSFER_QUEUE_STATUS_PENDING,
        }
