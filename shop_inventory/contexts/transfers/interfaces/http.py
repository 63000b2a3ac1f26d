from __future__ import annotations

from flask import Blueprint, current_app, jsonify, request, url_for

from shop_inventory.contexts.transfers.application.queue_service import TransferQueueService
from shop_inventory.contexts.transfers.domain.queue_entry import DEFAULT_MAX_RETRIES
from shop_inventory.contexts.transfers.infrastructure.sql_queue_store import SqlQueueStore
from shop_inventory.db import get_db
from shop_inventory.errors import ValidationError
from shop_inventory.ui_strings import success_message


transfers_bp = Blueprint("transfers", __name__, url_prefix="/api/desktop")


def _queue_service() -> TransferQueueService:
    try:
        default_max_retries = int(current_app.config.get("TRANSFER_QUEUE_DEFAULT_MAX_RETRIES", DEFAULT_MAX_RETRIES))
    except (TypeError, ValueError):
        default_max_retries = DEFAULT_MAX_RETRIES
    return TransferQueueService(SqlQueueStore(get_db()), default_max_retries=default_max_retries)


def _request_user(payload: dict | None = None) -> str | None:
    candidates = [
        (payload or {}).get("createdBy"),
        request.headers.get("X-User"),
    ]
    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return None


def _int_arg(name: str, default: int) -> int:
    raw = request.args.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValidationError(
            code="validation_error",
            message_key="payload_invalid",
            details=f"Query parameter '{name}' must be an integer",
            payload={"field": name},
        ) from exc


@transfers_bp.route("/transfers/queued", methods=["POST"])
def enqueue_transfer():
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError(
            code="validation_error",
            message_key="payload_invalid",
            details="Request body must be a JSON object",
        )

    reservation_id = payload.get("reservationId")
    entry = _queue_service().enqueue(
        payload,
        reservation_id=str(reservation_id).strip() if reservation_id else None,
        created_by=_request_user(payload),
    )
    response = {
        "success": True,
        "queue_id": entry.id,
        "external_reference": entry.external_reference,
        "status": entry.status,
        "message": success_message("transfer_queued"),
        "status_url": url_for("transfers.transfer_status", external_reference=entry.external_reference),
    }
    return jsonify(response), 202


@transfers_bp.route("/transfer-queue", methods=["GET"])
def list_pending_transfers():
    source_system = (request.args.get("source_system") or "").strip() or None
    items = _queue_service().list_pending(source_system=source_system, limit=_int_arg("limit", 100))
    return jsonify({"items": items, "count": len(items)})


@transfers_bp.route("/transfer-queue/review", methods=["GET"])
def list_transfers_requiring_review():
    items = _queue_service().list_requiring_review(limit=_int_arg("limit", 50))
    return jsonify({"items": items, "count": len(items)})


@transfers_bp.route("/transfer-queue/stats", methods=["GET"])
def transfer_queue_stats():
    return jsonify(_queue_service().stats())


@transfers_bp.route("/transfer-queue/<external_reference>", methods=["GET"])
def transfer_status(external_reference: str):
    return jsonify(_queue_service().get_status(external_reference))


@transfers_bp.route("/transfer-queue/<external_reference>", methods=["DELETE"])
def cancel_transfer(external_reference: str):
    cancelled_by = (request.args.get("cancelled_by") or "").strip() or _request_user()
    _queue_service().cancel(external_reference, cancelled_by=cancelled_by)
    return "", 204


@transfers_bp.route("/transfer-queue/<external_reference>/retry", methods=["POST"])
def retry_transfer(external_reference: str):
    status = _queue_service().retry(external_reference)
    return jsonify({"success": True, "message": success_message("transfer_retry_queued"), "transfer": status})
