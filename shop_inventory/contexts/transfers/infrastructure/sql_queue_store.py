from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, List

from shop_inventory.contexts.transfers.domain.queue_entry import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_SOURCE_SYSTEM,
    TRANSFER_QUEUE_STATUS_CANCELLED,
    TRANSFER_QUEUE_STATUS_COMPLETED,
    TRANSFER_QUEUE_STATUS_FAILED,
    TRANSFER_QUEUE_STATUS_PENDING,
    TRANSFER_QUEUE_STATUS_PROCESSING,
    TRANSFER_QUEUE_STATUS_REQUIRES_REVIEW,
    TRANSFER_QUEUE_STATUSES,
    QueueEntry,
    iso_utc,
    parse_iso_utc,
    utcnow,
)
from shop_inventory.contexts.transfers.domain.store import QueueEntryNotFoundError, QueueStore


TRANSFER_QUEUE_TABLE = "inventory_transfer_queue"

_ACTIVE_STATUSES = (
    TRANSFER_QUEUE_STATUS_PENDING,
    TRANSFER_QUEUE_STATUS_PROCESSING,
    TRANSFER_QUEUE_STATUS_FAILED,
)

# Same predicate in get_next_batch and mark_processing: pending, or failed with
# attempts left and a retry time that has passed.
_ELIGIBLE_CLAUSE = """
    (
        status = ?
        OR (
            status = ?
            AND retry_count < max_retries
            AND (next_retry_at IS NULL OR next_retry_at <= ?)
        )
    )
"""


def _row_to_dict(row) -> Dict[str, Any]:
    if row is None:
        return {}
    if isinstance(row, dict):
        return dict(row)
    keys = getattr(row, "keys", None)
    if callable(keys):
        return {key: row[key] for key in row.keys()}
    return dict(row)


def _rowcount(cursor) -> int:
    return int(getattr(cursor, "rowcount", 0) or 0)


class SqlQueueStore(QueueStore):
    """Queue entries stored in ``inventory_transfer_queue``.

    Timestamps are ISO-8601 UTC strings with a ``Z`` suffix and second
    precision, so ordering and ``<=`` comparisons work as plain text on both
    sqlite and PostgreSQL.
    """

    def __init__(self, db, *, clock=utcnow) -> None:
        self._db = db
        self._clock = clock

    def _now(self) -> str:
        return iso_utc(self._clock())

    # Core operations used by the posting pipeline.

    def get_next_batch(self, limit: int) -> List[QueueEntry]:
        rows = self._db.execute(
            f"""
            SELECT *
            FROM {TRANSFER_QUEUE_TABLE}
            WHERE {_ELIGIBLE_CLAUSE}
            ORDER BY priority DESC, created_at ASC, id ASC
            LIMIT ?
            """,
            (
                TRANSFER_QUEUE_STATUS_PENDING,
                TRANSFER_QUEUE_STATUS_FAILED,
                self._now(),
                max(1, int(limit)),
            ),
        ).fetchall()
        return [QueueEntry.from_row(_row_to_dict(row)) for row in rows]

    def mark_processing(self, entry_id: int) -> bool:
        now = self._now()
        cursor = self._db.execute(
            f"""
            UPDATE {TRANSFER_QUEUE_TABLE}
            SET status = ?,
                processing_started_at = ?
            WHERE id = ?
              AND {_ELIGIBLE_CLAUSE}
            """,
            (
                TRANSFER_QUEUE_STATUS_PROCESSING,
                now,
                int(entry_id),
                TRANSFER_QUEUE_STATUS_PENDING,
                TRANSFER_QUEUE_STATUS_FAILED,
                now,
            ),
        )
        claimed = _rowcount(cursor) > 0
        self._db.commit()
        if not claimed and self.get_by_id(entry_id) is None:
            raise QueueEntryNotFoundError(entry_id)
        return claimed

    def update_status(
        self,
        entry_id: int,
        status: str,
        *,
        retry_count: int | None = None,
        next_retry_at: datetime | None = None,
        doc_entry: int | None = None,
        doc_num: str | None = None,
        error: str | None = None,
    ) -> bool:
        if status not in TRANSFER_QUEUE_STATUSES:
            raise ValueError(f"Unknown transfer queue status: {status}")
        if status == TRANSFER_QUEUE_STATUS_COMPLETED and doc_entry is None:
            raise ValueError("doc_entry is required to complete a transfer queue entry")

        assignments = ["status = ?", "processed_at = ?", "next_retry_at = ?", "last_error = ?"]
        params: List[Any] = [
            status,
            self._now(),
            iso_utc(next_retry_at) if next_retry_at is not None and status == TRANSFER_QUEUE_STATUS_FAILED else None,
            None if status == TRANSFER_QUEUE_STATUS_COMPLETED else error,
        ]
        if retry_count is not None:
            assignments.append("retry_count = ?")
            params.append(max(0, int(retry_count)))
        if status == TRANSFER_QUEUE_STATUS_COMPLETED:
            assignments.extend(["result_doc_entry = ?", "result_doc_num = ?"])
            params.extend([int(doc_entry), doc_num])

        cursor = self._db.execute(
            f"""
            UPDATE {TRANSFER_QUEUE_TABLE}
            SET {", ".join(assignments)}
            WHERE id = ? AND status = ?
            """,
            (*params, int(entry_id), TRANSFER_QUEUE_STATUS_PROCESSING),
        )
        updated = _rowcount(cursor) > 0
        self._db.commit()
        return updated

    # Queue management used by the HTTP surface.

    def get_by_id(self, entry_id: int) -> QueueEntry | None:
        row = self._db.execute(
            f"SELECT * FROM {TRANSFER_QUEUE_TABLE} WHERE id = ? LIMIT 1",
            (int(entry_id),),
        ).fetchone()
        return QueueEntry.from_row(_row_to_dict(row)) if row else None

    def get_by_reference(self, external_reference: str) -> QueueEntry | None:
        row = self._db.execute(
            f"SELECT * FROM {TRANSFER_QUEUE_TABLE} WHERE external_reference = ? LIMIT 1",
            (str(external_reference or "").strip(),),
        ).fetchone()
        return QueueEntry.from_row(_row_to_dict(row)) if row else None

    def insert(
        self,
        *,
        external_reference: str,
        payload: str,
        is_transfer_request: bool,
        from_warehouse: str,
        to_warehouse: str,
        source_system: str | None = None,
        priority: int = 0,
        max_retries: int = DEFAULT_MAX_RETRIES,
        total_quantity: float = 0.0,
        line_count: int = 0,
        created_by: str | None = None,
        comments: str | None = None,
        journal_memo: str | None = None,
        due_date: str | None = None,
        reservation_id: str | None = None,
    ) -> QueueEntry:
        cursor = self._db.execute(
            f"""
            INSERT INTO {TRANSFER_QUEUE_TABLE} (
                external_reference, transfer_payload, is_transfer_request, status,
                retry_count, max_retries, from_warehouse, to_warehouse, source_system,
                priority, total_quantity, line_count, created_by, comments, journal_memo,
                due_date, reservation_id, created_at
            )
            VALUES (?, ?, ?, ?, 0, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            RETURNING id
            """,
            (
                external_reference,
                payload,
                1 if is_transfer_request else 0,
                TRANSFER_QUEUE_STATUS_PENDING,
                max(1, int(max_retries)),
                from_warehouse,
                to_warehouse,
                source_system or DEFAULT_SOURCE_SYSTEM,
                int(priority or 0),
                float(total_quantity or 0.0),
                int(line_count or 0),
                created_by,
                comments,
                journal_memo,
                due_date,
                reservation_id,
                self._now(),
            ),
        )
        row = cursor.fetchone()
        entry_id = int(row["id"] if isinstance(row, dict) else row[0])
        self._db.commit()
        entry = self.get_by_id(entry_id)
        if entry is None:
            raise QueueEntryNotFoundError(entry_id)
        return entry

    def list_active(self, *, source_system: str | None = None, limit: int = 100) -> List[QueueEntry]:
        placeholders = ", ".join("?" for _ in _ACTIVE_STATUSES)
        params: List[Any] = list(_ACTIVE_STATUSES)
        source_clause = ""
        if source_system:
            source_clause = "AND source_system = ?"
            params.append(source_system)
        params.append(max(1, int(limit)))
        rows = self._db.execute(
            f"""
            SELECT *
            FROM {TRANSFER_QUEUE_TABLE}
            WHERE status IN ({placeholders})
              {source_clause}
            ORDER BY priority DESC, created_at ASC, id ASC
            LIMIT ?
            """,
            params,
        ).fetchall()
        return [QueueEntry.from_row(_row_to_dict(row)) for row in rows]

    def list_requiring_review(self, *, limit: int = 50) -> List[QueueEntry]:
        rows = self._db.execute(
            f"""
            SELECT *
            FROM {TRANSFER_QUEUE_TABLE}
            WHERE status = ?
            ORDER BY created_at ASC, id ASC
            LIMIT ?
            """,
            (TRANSFER_QUEUE_STATUS_REQUIRES_REVIEW, max(1, int(limit))),
        ).fetchall()
        return [QueueEntry.from_row(_row_to_dict(row)) for row in rows]

    def cancel(self, external_reference: str, *, cancelled_by: str | None = None) -> bool:
        cursor = self._db.execute(
            f"""
            UPDATE {TRANSFER_QUEUE_TABLE}
            SET status = ?, processed_at = ?, last_error = ?
            WHERE external_reference = ? AND status = ?
            """,
            (
                TRANSFER_QUEUE_STATUS_CANCELLED,
                self._now(),
                f"Cancelled by {cancelled_by or 'user'}",
                str(external_reference or "").strip(),
                TRANSFER_QUEUE_STATUS_PENDING,
            ),
        )
        cancelled = _rowcount(cursor) > 0
        self._db.commit()
        return cancelled

    def reset_for_retry(self, external_reference: str) -> bool:
        cursor = self._db.execute(
            f"""
            UPDATE {TRANSFER_QUEUE_TABLE}
            SET status = ?,
                retry_count = 0,
                next_retry_at = NULL,
                last_error = NULL,
                processing_started_at = NULL,
                processed_at = NULL
            WHERE external_reference = ? AND status IN (?, ?)
            """,
            (
                TRANSFER_QUEUE_STATUS_PENDING,
                str(external_reference or "").strip(),
                TRANSFER_QUEUE_STATUS_FAILED,
                TRANSFER_QUEUE_STATUS_REQUIRES_REVIEW,
            ),
        )
        reset = _rowcount(cursor) > 0
        self._db.commit()
        return reset

    def stats(self) -> Dict[str, Any]:
        rows = self._db.execute(
            f"""
            SELECT status, COUNT(*) AS total
            FROM {TRANSFER_QUEUE_TABLE}
            GROUP BY status
            """
        ).fetchall()
        counts = {status: 0 for status in TRANSFER_QUEUE_STATUSES}
        for raw_row in rows:
            row = _row_to_dict(raw_row)
            status = str(row.get("status") or "")
            if status in counts:
                counts[status] = int(row.get("total") or 0)

        pending_row = _row_to_dict(
            self._db.execute(
                f"""
                SELECT MIN(created_at) AS oldest_created_at,
                       COALESCE(SUM(total_quantity), 0) AS total_quantity
                FROM {TRANSFER_QUEUE_TABLE}
                WHERE status = ?
                """,
                (TRANSFER_QUEUE_STATUS_PENDING,),
            ).fetchone()
        )
        return {
            "counts": counts,
            "oldest_pending_at": parse_iso_utc(pending_row.get("oldest_created_at")),
            "total_pending_quantity": float(pending_row.get("total_quantity") or 0.0),
        }

    def count_stale_processing(self, older_than: timedelta) -> int:
        cutoff = iso_utc(self._clock() - older_than)
        row = self._db.execute(
            f"""
            SELECT COUNT(*) AS total
            FROM {TRANSFER_QUEUE_TABLE}
            WHERE status = ?
              AND processing_started_at IS NOT NULL
              AND processing_started_at < ?
            """,
            (TRANSFER_QUEUE_STATUS_PROCESSING, cutoff),
        ).fetchone()
        return int(_row_to_dict(row).get("total") or 0)
