"""Retry and backoff rules for failed transfer postings.

Everything here is pure: no store, no clock reads beyond the ``now`` argument
callers may pass, no logging.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from shop_inventory.contexts.transfers.domain.queue_entry import (
    TRANSFER_QUEUE_STATUS_FAILED,
    TRANSFER_QUEUE_STATUS_REQUIRES_REVIEW,
    utcnow,
)


DEFAULT_BACKOFF_BASE_SECONDS = 10
MAX_ERROR_LENGTH = 1900
TRUNCATION_MARKER = "..."


@dataclass(frozen=True)
class RetryDecision:
    status: str
    retry_count: int
    next_retry_at: datetime | None
    backoff: timedelta | None
    error: str

    @property
    def is_terminal(self) -> bool:
        return self.status == TRANSFER_QUEUE_STATUS_REQUIRES_REVIEW


def backoff_seconds(attempt_number: int, base_seconds: int = DEFAULT_BACKOFF_BASE_SECONDS) -> int:
    """``base * 2^n``: 20s, 40s, 80s, 160s... for attempts 1, 2, 3, 4 with the default base."""
    return int(base_seconds) * (2 ** max(0, int(attempt_number)))


def retry_delay(
    attempt_number: int,
    max_retries: int,
    base_seconds: int = DEFAULT_BACKOFF_BASE_SECONDS,
) -> tuple[str, timedelta | None]:
    if int(attempt_number) >= int(max_retries):
        return TRANSFER_QUEUE_STATUS_REQUIRES_REVIEW, None
    return TRANSFER_QUEUE_STATUS_FAILED, timedelta(seconds=backoff_seconds(attempt_number, base_seconds))


def truncate_error(message: object, limit: int = MAX_ERROR_LENGTH) -> str:
    text = str(message or "")
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATION_MARKER


def apply_retry_policy(
    retry_count: int,
    max_retries: int,
    error: object,
    *,
    now: datetime | None = None,
    base_seconds: int = DEFAULT_BACKOFF_BASE_SECONDS,
) -> RetryDecision:
    # retry_count is the number of attempts made before the one that just failed.
    new_retry_count = max(0, int(retry_count)) + 1
    status, delay = retry_delay(new_retry_count, max_retries, base_seconds)
    next_retry_at = None
    if delay is not None:
        next_retry_at = (now or utcnow()) + delay
    return RetryDecision(
        status=status,
        retry_count=new_retry_count,
        next_retry_at=next_retry_at,
        backoff=delay,
        error=truncate_error(error),
    )
