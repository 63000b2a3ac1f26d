from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from shop_inventory.contexts.transfers.domain.queue_entry import DEFAULT_SOURCE_SYSTEM, DocumentKind
from shop_inventory.errors import ValidationError


class TransferPayloadError(ValidationError):
    default_code = "transfer_payload_invalid"
    default_message_key = "payload_invalid"


def _today() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d")


def _normalize_key(key: object) -> str:
    return str(key or "").replace("_", "").replace("-", "").strip().lower()


def _normalized(payload: dict[str, Any]) -> dict[str, Any]:
    return {_normalize_key(key): value for key, value in payload.items()}


def _safe_str(value: object | None) -> str | None:
    if value is None:
        return None
    raw = str(value).strip()
    return raw or None


def _safe_float(value: object | None, default: float = 0.0) -> float:
    if value is None or isinstance(value, bool):
        return float(default)
    try:
        return float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return float(default)


def _safe_int(value: object | None, default: int = 0) -> int:
    if value is None or isinstance(value, bool):
        return default
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def _safe_bool(value: object | None, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class TransferBatchV1:
    batch_number: str
    quantity: float

    def to_dict(self) -> dict[str, Any]:
        return {"batch_number": self.batch_number, "quantity": float(self.quantity)}

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "TransferBatchV1":
        data = _normalized(dict(payload or {}))
        return TransferBatchV1(
            batch_number=str(data.get("batchnumber") or "").strip(),
            quantity=_safe_float(data.get("quantity")),
        )


@dataclass
class DesktopTransferLineV1:
    item_code: str
    quantity: float
    line_num: int = 0
    item_description: str | None = None
    uom_code: str | None = None
    from_warehouse_code: str | None = None
    warehouse_code: str | None = None
    batch_numbers: list[TransferBatchV1] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "lineNum": self.line_num,
            "itemCode": self.item_code,
            "itemDescription": self.item_description,
            "quantity": float(self.quantity),
            "uomCode": self.uom_code,
            "fromWarehouseCode": self.from_warehouse_code,
            "warehouseCode": self.warehouse_code,
            "batchNumbers": [
                {"batchNumber": batch.batch_number, "quantity": float(batch.quantity)} for batch in self.batch_numbers
            ],
        }

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "DesktopTransferLineV1":
        data = _normalized(dict(payload or {}))
        batches_raw = data.get("batchnumbers")
        batches: list[TransferBatchV1] = []
        if isinstance(batches_raw, list):
            batches = [TransferBatchV1.from_dict(batch) for batch in batches_raw if isinstance(batch, dict)]
        return DesktopTransferLineV1(
            line_num=_safe_int(data.get("linenum")),
            item_code=str(data.get("itemcode") or "").strip(),
            item_description=_safe_str(data.get("itemdescription")),
            quantity=_safe_float(data.get("quantity")),
            uom_code=_safe_str(data.get("uomcode")),
            from_warehouse_code=_safe_str(data.get("fromwarehousecode")),
            warehouse_code=_safe_str(data.get("warehousecode")),
            batch_numbers=batches,
        )


@dataclass
class DesktopTransferRequestV1:
    """Transfer description serialized into a queue entry by the enqueuing caller."""

    from_warehouse: str
    to_warehouse: str
    lines: list[DesktopTransferLineV1] = field(default_factory=list)
    external_reference: str | None = None
    source_system: str | None = None
    doc_date: str | None = None
    due_date: str | None = None
    comments: str | None = None
    journal_memo: str | None = None
    priority: int | None = None
    is_transfer_request: bool = True

    @property
    def total_quantity(self) -> float:
        return float(sum(float(line.quantity) for line in self.lines))

    def to_dict(self) -> dict[str, Any]:
        return {
            "externalReference": self.external_reference,
            "sourceSystem": self.source_system,
            "fromWarehouse": self.from_warehouse,
            "toWarehouse": self.to_warehouse,
            "docDate": self.doc_date,
            "dueDate": self.due_date,
            "comments": self.comments,
            "journalMemo": self.journal_memo,
            "priority": self.priority,
            "isTransferRequest": self.is_transfer_request,
            "lines": [line.to_dict() for line in self.lines],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=True)

    @staticmethod
    def from_dict(payload: dict[str, Any]) -> "DesktopTransferRequestV1":
        data = _normalized(dict(payload or {}))
        lines_raw = data.get("lines")
        lines: list[DesktopTransferLineV1] = []
        if isinstance(lines_raw, list):
            lines = [DesktopTransferLineV1.from_dict(line) for line in lines_raw if isinstance(line, dict)]
        priority = data.get("priority")
        return DesktopTransferRequestV1(
            external_reference=_safe_str(data.get("externalreference")),
            source_system=_safe_str(data.get("sourcesystem")),
            from_warehouse=str(data.get("fromwarehouse") or "").strip(),
            to_warehouse=str(data.get("towarehouse") or "").strip(),
            doc_date=_safe_str(data.get("docdate")),
            due_date=_safe_str(data.get("duedate")),
            comments=_safe_str(data.get("comments")),
            journal_memo=_safe_str(data.get("journalmemo")),
            priority=None if priority in (None, "") else _safe_int(priority),
            is_transfer_request=_safe_bool(data.get("istransferrequest"), True),
            lines=lines,
        )


def validate_transfer_request(request: DesktopTransferRequestV1) -> list[str]:
    errors: list[str] = []
    if not request.from_warehouse:
        errors.append("fromWarehouse is required")
    if not request.to_warehouse:
        errors.append("toWarehouse is required")
    if not request.lines:
        errors.append("lines must be a non-empty list")
    for idx, line in enumerate(request.lines):
        if not line.item_code:
            errors.append(f"lines[{idx}].itemCode is required")
        if float(line.quantity) <= 0:
            errors.append(f"lines[{idx}].quantity must be > 0")
        for batch_idx, batch in enumerate(line.batch_numbers):
            if not batch.batch_number:
                errors.append(f"lines[{idx}].batchNumbers[{batch_idx}].batchNumber is required")
            if float(batch.quantity) <= 0:
                errors.append(f"lines[{idx}].batchNumbers[{batch_idx}].quantity must be > 0")
    return errors


def parse_transfer_payload(raw: str | bytes | None) -> DesktopTransferRequestV1:
    text = raw.decode("utf-8") if isinstance(raw, bytes) else str(raw or "")
    if not text.strip():
        raise TransferPayloadError(details="Transfer payload is empty")
    try:
        decoded = json.loads(text)
    except json.JSONDecodeError as exc:
        raise TransferPayloadError(details=f"Failed to deserialize transfer payload: {exc}") from exc
    if not isinstance(decoded, dict):
        raise TransferPayloadError(details="Failed to deserialize transfer payload: expected a JSON object")

    request = DesktopTransferRequestV1.from_dict(decoded)
    errors = validate_transfer_request(request)
    if errors:
        raise TransferPayloadError(details="; ".join(errors), payload={"errors": errors})
    return request


@dataclass
class TransferDocumentLineV1:
    item_code: str
    quantity: float
    from_warehouse_code: str
    to_warehouse_code: str
    batch_numbers: list[TransferBatchV1] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "item_code": self.item_code,
            "quantity": float(self.quantity),
            "from_warehouse_code": self.from_warehouse_code,
            "to_warehouse_code": self.to_warehouse_code,
            "batch_numbers": [batch.to_dict() for batch in self.batch_numbers],
        }


@dataclass
class TransferDocumentV1:
    kind: DocumentKind
    from_warehouse: str
    to_warehouse: str
    doc_date: str
    lines: list[TransferDocumentLineV1] = field(default_factory=list)
    due_date: str | None = None
    comments: str | None = None
    journal_memo: str | None = None
    external_reference: str | None = None
    source_system: str = DEFAULT_SOURCE_SYSTEM

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "from_warehouse": self.from_warehouse,
            "to_warehouse": self.to_warehouse,
            "doc_date": self.doc_date,
            "due_date": self.due_date,
            "comments": self.comments,
            "journal_memo": self.journal_memo,
            "external_reference": self.external_reference,
            "source_system": self.source_system,
            "lines": [line.to_dict() for line in self.lines],
        }


@dataclass
class ErpDocumentResultV1:
    doc_entry: int
    doc_num: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"doc_entry": int(self.doc_entry), "doc_num": self.doc_num}


def build_transfer_document(
    kind: DocumentKind,
    request: DesktopTransferRequestV1,
    *,
    external_reference: str | None = None,
    today: str | None = None,
) -> TransferDocumentV1:
    # Both document kinds share one shape; only the ERP operation differs.
    lines = [
        TransferDocumentLineV1(
            item_code=line.item_code,
            quantity=float(line.quantity),
            from_warehouse_code=line.from_warehouse_code or request.from_warehouse,
            to_warehouse_code=line.warehouse_code or request.to_warehouse,
            batch_numbers=list(line.batch_numbers),
        )
        for line in request.lines
    ]
    return TransferDocumentV1(
        kind=kind,
        from_warehouse=request.from_warehouse,
        to_warehouse=request.to_warehouse,
        doc_date=request.doc_date or today or _today(),
        due_date=request.due_date,
        comments=request.comments,
        journal_memo=request.journal_memo,
        external_reference=external_reference or request.external_reference,
        source_system=request.source_system or DEFAULT_SOURCE_SYSTEM,
        lines=lines,
    )
