from __future__ import annotations

import unittest
from unittest import mock

from shop_inventory import create_app
from shop_inventory.config import Config
from shop_inventory.contexts.transfers.infrastructure.service_layer_gateway import ServiceLayerErpGateway
from shop_inventory.contexts.transfers.infrastructure.simulator.deterministic_erp import (
    DeterministicErpSimulatorGateway,
)
from shop_inventory.contexts.transfers.interfaces.workers.runtime import build_gateway
from shop_inventory.db import close_db
from shop_inventory.scheduler import _should_start_scheduler, start_transfer_posting_scheduler
from shop_inventory.workers import transfer_posting_worker
from tests.helpers.temp_db import TempDbSandbox


class TransferPostingRuntimeTest(unittest.TestCase):
    def setUp(self) -> None:
        self._temp_db = TempDbSandbox(prefix="transfer_worker")

    def tearDown(self) -> None:
        self._temp_db.cleanup()

    def _app(self, **overrides):
        attrs = {"TESTING": True}
        attrs.update(overrides)
        app = create_app(self._temp_db.make_config(Config, **attrs))
        self.addCleanup(self._close, app)
        return app

    @staticmethod
    def _close(app) -> None:
        with app.app_context():
            close_db()

    def test_build_gateway_by_mode(self) -> None:
        self.assertIsInstance(build_gateway(self._app(ERP_MODE="simulator")), DeterministicErpSimulatorGateway)
        service_layer = self._app(
            ERP_MODE="service_layer",
            ERP_BASE_URL="https://sap.example.test/b1s/v1",
            ERP_COMPANY_DB="SBODEMO",
        )
        self.assertIsInstance(build_gateway(service_layer), ServiceLayerErpGateway)
        with self.assertRaises(RuntimeError):
            build_gateway(self._app(ERP_MODE="carrier-pigeon"))

    def test_scheduler_is_not_started_for_tests_or_when_disabled(self) -> None:
        app = self._app(TRANSFER_POSTING_ENABLED=True)
        self.assertFalse(_should_start_scheduler(app))
        self.assertIsNone(start_transfer_posting_scheduler(app))
        self.assertNotIn("transfer_posting_scheduler", app.extensions)

        disabled = self._app(TESTING=False, TRANSFER_POSTING_ENABLED=False)
        self.assertFalse(_should_start_scheduler(disabled))

    def _enqueue(self, app, external_reference: str) -> None:
        response = app.test_client().post(
            "/api/desktop/transfers/queued",
            json={
                "externalReference": external_reference,
                "fromWarehouse": "WH-01",
                "toWarehouse": "WH-02",
                "lines": [{"itemCode": "ITEM-1", "quantity": 1}],
            },
        )
        self.assertEqual(response.status_code, 202)

    def test_worker_config_overrides_posting_flags(self) -> None:
        base = self._temp_db.make_config(Config, TRANSFER_POSTING_ENABLED=True, DB_AUTO_INIT=True)
        config = transfer_posting_worker.worker_config(base)
        self.assertTrue(issubclass(config, base))
        self.assertFalse(config.TRANSFER_POSTING_ENABLED)
        self.assertFalse(config.DB_AUTO_INIT)
        self.assertEqual(config.DB_PATH, self._temp_db.db_path)

    def test_worker_once_does_not_start_in_app_scheduler(self) -> None:
        # Schema comes from a test app; the worker app itself never auto-inits.
        self._enqueue(self._app(), "TRF-WORKER-1")

        base = self._temp_db.make_config(Config, TESTING=False, TRANSFER_POSTING_ENABLED=True)
        built_apps = []

        def _create_app(config_class):
            app = create_app(config_class)
            built_apps.append(app)
            self.addCleanup(self._stop_scheduler, app)
            return app

        with mock.patch.object(transfer_posting_worker, "create_app", side_effect=_create_app):
            exit_code = transfer_posting_worker.main(["--once", "--limit", "3"], config_class=base)

        self.assertEqual(exit_code, 0)
        self.assertEqual(len(built_apps), 1)
        worker_app = built_apps[0]
        self.assertFalse(worker_app.testing)
        self.assertFalse(worker_app.config["TRANSFER_POSTING_ENABLED"])
        self.assertNotIn("transfer_posting_scheduler", worker_app.extensions)

        status = self._app().test_client().get("/api/desktop/transfer-queue/TRF-WORKER-1").get_json()
        self.assertNotIn(status["status"], ("pending", "processing"))

    @staticmethod
    def _stop_scheduler(app) -> None:
        scheduler = app.extensions.get("transfer_posting_scheduler")
        if scheduler is not None:
            scheduler.stop()

if __name__ == "__main__":
    unittest.main()
