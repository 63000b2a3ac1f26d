from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

from shop_inventory.contexts.transfers.domain.queue_entry import (
    TRANSFER_QUEUE_STATUS_FAILED,
    TRANSFER_QUEUE_STATUS_REQUIRES_REVIEW,
)
from shop_inventory.contexts.transfers.domain.retry_policy import (
    MAX_ERROR_LENGTH,
    apply_retry_policy,
    backoff_seconds,
    retry_delay,
    truncate_error,
)


NOW = datetime(2026, 10, 18, 12, 0, 0, tzinfo=timezone.utc)


class RetryPolicyTest(unittest.TestCase):
    def test_backoff_doubles_from_configured_base(self) -> None:
        self.assertEqual([backoff_seconds(n) for n in (1, 2, 3, 4)], [20, 40, 80, 160])
        self.assertEqual(backoff_seconds(2, base_seconds=5), 20)

    def test_retry_delay_is_terminal_once_attempts_reach_max(self) -> None:
        self.assertEqual(retry_delay(1, 3), (TRANSFER_QUEUE_STATUS_FAILED, timedelta(seconds=20)))
        self.assertEqual(retry_delay(2, 3), (TRANSFER_QUEUE_STATUS_FAILED, timedelta(seconds=40)))
        self.assertEqual(retry_delay(3, 3), (TRANSFER_QUEUE_STATUS_REQUIRES_REVIEW, None))
        self.assertEqual(retry_delay(5, 3), (TRANSFER_QUEUE_STATUS_REQUIRES_REVIEW, None))

    def test_failures_below_limit_schedule_next_attempt(self) -> None:
        max_retries = 5
        for retry_count in range(max_retries - 1):
            decision = apply_retry_policy(retry_count, max_retries, "ERP HTTP 503", now=NOW)
            self.assertEqual(decision.status, TRANSFER_QUEUE_STATUS_FAILED)
            self.assertEqual(decision.retry_count, retry_count + 1)
            self.assertEqual(decision.next_retry_at, NOW + timedelta(seconds=10 * 2 ** (retry_count + 1)))
            self.assertFalse(decision.is_terminal)

    def test_last_allowed_failure_requires_review(self) -> None:
        decision = apply_retry_policy(2, 3, "ERP HTTP 503", now=NOW)
        self.assertEqual(decision.status, TRANSFER_QUEUE_STATUS_REQUIRES_REVIEW)
        self.assertEqual(decision.retry_count, 3)
        self.assertIsNone(decision.next_retry_at)
        self.assertIsNone(decision.backoff)
        self.assertTrue(decision.is_terminal)

    def test_single_attempt_budget_goes_straight_to_review(self) -> None:
        decision = apply_retry_policy(0, 1, "boom", now=NOW)
        self.assertEqual(decision.status, TRANSFER_QUEUE_STATUS_REQUIRES_REVIEW)
        self.assertEqual(decision.retry_count, 1)

    def test_long_errors_are_truncated_with_marker(self) -> None:
        message = "x" * 3000
        truncated = truncate_error(message)
        self.assertEqual(len(truncated), MAX_ERROR_LENGTH + 3)
        self.assertTrue(truncated.endswith("..."))
        self.assertEqual(truncate_error("short"), "short")
        self.assertEqual(apply_retry_policy(0, 3, message, now=NOW).error, truncated)


if __name__ == "__main__":
    unittest.main()
