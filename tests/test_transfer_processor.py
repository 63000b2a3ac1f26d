from __future__ import annotations

import unittest
from datetime import timedelta

from shop_inventory.contexts.transfers.application.transfer_processor import (
    OUTCOME_COMPLETED,
    OUTCOME_FAILED,
    OUTCOME_REQUIRES_REVIEW,
    OUTCOME_SETTLE_LOST,
    OUTCOME_SKIPPED,
    TransferProcessor,
)
from shop_inventory.contexts.transfers.domain.contracts import ErpDocumentResultV1
from shop_inventory.contexts.transfers.domain.gateway import ErpGatewayError
from shop_inventory.contexts.transfers.domain.queue_entry import (
    TRANSFER_QUEUE_STATUS_COMPLETED,
    TRANSFER_QUEUE_STATUS_FAILED,
    TRANSFER_QUEUE_STATUS_PENDING,
    TRANSFER_QUEUE_STATUS_PROCESSING,
    TRANSFER_QUEUE_STATUS_REQUIRES_REVIEW,
)
from shop_inventory.contexts.transfers.domain.retry_policy import MAX_ERROR_LENGTH
from shop_inventory.observability import metrics_snapshot, reset_metrics_for_tests
from tests.transfer_fakes import FIXED_NOW, InMemoryQueueStore, ScriptedGateway, fixed_clock, make_entry


class TransferProcessorTest(unittest.TestCase):
    def setUp(self) -> None:
        reset_metrics_for_tests()

    def tearDown(self) -> None:
        reset_metrics_for_tests()

    def _processor(self, store, gateway) -> TransferProcessor:
        return TransferProcessor(store, gateway, clock=fixed_clock)

    def test_successful_transfer_request_completes_entry(self) -> None:
        store = InMemoryQueueStore([make_entry(1, is_transfer_request=True)])
        gateway = ScriptedGateway(ErpDocumentResultV1(doc_entry=100, doc_num="TR-1"))

        with self.assertLogs("shop_inventory", level="INFO") as logs:
            outcome = self._processor(store, gateway).process(store.entries[1])

        entry = store.entries[1]
        self.assertEqual(outcome, OUTCOME_COMPLETED)
        self.assertEqual(entry.status, TRANSFER_QUEUE_STATUS_COMPLETED)
        self.assertEqual(entry.result_doc_entry, 100)
        self.assertEqual(entry.result_doc_num, "TR-1")
        self.assertEqual(entry.retry_count, 0)
        self.assertEqual(gateway.kinds, ["request"])
        self.assertEqual(gateway.documents[0].doc_date, "2026-10-18")
        self.assertEqual(gateway.documents[0].external_reference, "TRF-1")
        self.assertTrue(any("transfer_queue_entry_completed" in line for line in logs.output))
        self.assertEqual(metrics_snapshot()["transfer_posting"]["outcomes"].get("completed"), 1)

    def test_direct_transfer_uses_direct_operation(self) -> None:
        store = InMemoryQueueStore([make_entry(1, is_transfer_request=False)])
        gateway = ScriptedGateway(ErpDocumentResultV1(doc_entry=7))

        self._processor(store, gateway).process(store.entries[1])

        self.assertEqual(gateway.kinds, ["direct"])
        self.assertEqual(store.entries[1].status, TRANSFER_QUEUE_STATUS_COMPLETED)

    def test_claim_precedes_external_call(self) -> None:
        store = InMemoryQueueStore([make_entry(1)])
        seen_status = []

        class _Observing(ScriptedGateway):
            def post_transfer_request(self, document):
                seen_status.append(store.entries[1].status)
                return ErpDocumentResultV1(doc_entry=1)

        self._processor(store, _Observing()).process(store.entries[1])

        self.assertEqual(seen_status, [TRANSFER_QUEUE_STATUS_PROCESSING])
        self.assertEqual(store.write_calls()[0], ("mark_processing", 1))

    def test_three_failures_move_entry_to_review(self) -> None:
        store = InMemoryQueueStore([make_entry(1, max_retries=3)])
        gateway = ScriptedGateway(ErpGatewayError("ERP HTTP 503: unavailable"))
        processor = self._processor(store, gateway)

        outcomes = []
        for _ in range(3):
            entry = store.entries[1]
            outcomes.append(processor.process(entry))
            # Make the entry eligible again without waiting for the backoff.
            if entry.status == TRANSFER_QUEUE_STATUS_FAILED:
                entry.next_retry_at = FIXED_NOW - timedelta(seconds=1)

        entry = store.entries[1]
        self.assertEqual(outcomes, [OUTCOME_FAILED, OUTCOME_FAILED, OUTCOME_REQUIRES_REVIEW])
        self.assertEqual(entry.status, TRANSFER_QUEUE_STATUS_REQUIRES_REVIEW)
        self.assertEqual(entry.retry_count, 3)
        self.assertIsNone(entry.next_retry_at)
        self.assertEqual(entry.last_error, "ERP HTTP 503: unavailable")

    def test_failure_schedules_exponential_backoff(self) -> None:
        store = InMemoryQueueStore([make_entry(1, retry_count=1, status=TRANSFER_QUEUE_STATUS_FAILED)])
        gateway = ScriptedGateway(ErpGatewayError("ERP HTTP 503"))

        outcome = self._processor(store, gateway).process(store.entries[1])

        entry = store.entries[1]
        self.assertEqual(outcome, OUTCOME_FAILED)
        self.assertEqual(entry.retry_count, 2)
        self.assertEqual(entry.next_retry_at, FIXED_NOW + timedelta(seconds=40))

    def test_malformed_payload_follows_retry_path(self) -> None:
        store = InMemoryQueueStore([make_entry(1, payload="{not json")])
        gateway = ScriptedGateway(ErpDocumentResultV1(doc_entry=1))

        outcome = self._processor(store, gateway).process(store.entries[1])

        entry = store.entries[1]
        self.assertEqual(outcome, OUTCOME_FAILED)
        self.assertEqual(entry.status, TRANSFER_QUEUE_STATUS_FAILED)
        self.assertEqual(entry.retry_count, 1)
        self.assertEqual(entry.next_retry_at, FIXED_NOW + timedelta(seconds=20))
        self.assertIn("Failed to deserialize transfer payload", entry.last_error)
        self.assertEqual(gateway.documents, [])

    def test_long_error_message_is_truncated(self) -> None:
        store = InMemoryQueueStore([make_entry(1)])
        gateway = ScriptedGateway(ErpGatewayError("E" * 3000))

        self._processor(store, gateway).process(store.entries[1])

        last_error = store.entries[1].last_error
        self.assertEqual(len(last_error), MAX_ERROR_LENGTH + 3)
        self.assertTrue(last_error.endswith("..."))

    def test_lost_claim_is_skipped_without_external_call(self) -> None:
        store = InMemoryQueueStore([make_entry(1, status=TRANSFER_QUEUE_STATUS_PROCESSING)])
        gateway = ScriptedGateway(ErpDocumentResultV1(doc_entry=1))

        outcome = self._processor(store, gateway).process(store.entries[1])

        self.assertEqual(outcome, OUTCOME_SKIPPED)
        self.assertEqual(gateway.documents, [])
        self.assertEqual(store.write_calls(), [("mark_processing", 1)])

    def test_vanished_entry_is_skipped(self) -> None:
        store = InMemoryQueueStore([])
        gateway = ScriptedGateway(ErpDocumentResultV1(doc_entry=1))

        outcome = self._processor(store, gateway).process(make_entry(99))

        self.assertEqual(outcome, OUTCOME_SKIPPED)
        self.assertEqual(gateway.documents, [])

    def test_store_error_while_recording_propagates(self) -> None:
        store = InMemoryQueueStore([make_entry(1)])

        def _broken_update(*_args, **_kwargs):
            raise RuntimeError("database is locked")

        store.update_status = _broken_update
        gateway = ScriptedGateway(ErpDocumentResultV1(doc_entry=1))

        with self.assertRaises(RuntimeError):
            self._processor(store, gateway).process(store.entries[1])

    def test_completion_not_counted_when_row_left_processing(self) -> None:
        store = InMemoryQueueStore([make_entry(1)])

        class _RequeuedDuringCall(ScriptedGateway):
            def post_transfer_request(self, document):
                store.entries[1].status = TRANSFER_QUEUE_STATUS_PENDING
                return ErpDocumentResultV1(doc_entry=55, doc_num="TR-55")

        with self.assertLogs("shop_inventory", level="INFO") as logs:
            outcome = self._processor(store, _RequeuedDuringCall()).process(store.entries[1])

        self.assertEqual(outcome, OUTCOME_SETTLE_LOST)
        entry = store.entries[1]
        self.assertEqual(entry.status, TRANSFER_QUEUE_STATUS_PENDING)
        self.assertIsNone(entry.result_doc_entry)
        self.assertTrue(any("transfer_queue_settle_lost" in line for line in logs.output))
        self.assertFalse(any("transfer_queue_entry_completed" in line for line in logs.output))
        outcomes = metrics_snapshot()["transfer_posting"]["outcomes"]
        self.assertIsNone(outcomes.get("completed"))
        self.assertEqual(outcomes.get("settle_lost"), 1)

    def test_failure_not_recorded_when_row_left_processing(self) -> None:
        store = InMemoryQueueStore([make_entry(1, max_retries=3)])

        class _CompletedElsewhere(ScriptedGateway):
            def post_transfer_request(self, document):
                store.entries[1].status = TRANSFER_QUEUE_STATUS_COMPLETED
                raise ErpGatewayError("ERP HTTP 503: unavailable")

        with self.assertLogs("shop_inventory", level="WARNING") as logs:
            outcome = self._processor(store, _CompletedElsewhere()).process(store.entries[1])

        self.assertEqual(outcome, OUTCOME_SETTLE_LOST)
        self.assertEqual(store.entries[1].status, TRANSFER_QUEUE_STATUS_COMPLETED)
        self.assertEqual(store.entries[1].retry_count, 0)
        self.assertTrue(any("transfer_queue_settle_lost" in line for line in logs.output))
        self.assertIsNone(metrics_snapshot()["transfer_posting"]["outcomes"].get("failed"))


if __name__ == "__main__":
    unittest.main()
