from __future__ import annotations

import threading
from typing import Callable, Dict

from flask import Flask

from shop_inventory.contexts.transfers.application.batch_claimer import DEFAULT_BATCH_SIZE, BatchClaimer
from shop_inventory.contexts.transfers.application.transfer_processor import TransferProcessor
from shop_inventory.contexts.transfers.domain.gateway import ErpGateway
from shop_inventory.contexts.transfers.domain.retry_policy import DEFAULT_BACKOFF_BASE_SECONDS
from shop_inventory.contexts.transfers.infrastructure.sql_queue_store import SqlQueueStore
from shop_inventory.db import close_db, get_db


SUPPORTED_ERP_MODES = ("simulator", "service_layer")


def _config_int(app: Flask, key: str, default: int) -> int:
    try:
        return int(app.config.get(key, default))
    except (TypeError, ValueError):
        return default


def build_gateway(app: Flask) -> ErpGateway:
    mode = str(app.config.get("ERP_MODE") or "simulator").strip().lower()
    if mode == "simulator":
        from shop_inventory.contexts.transfers.infrastructure.simulator.deterministic_erp import (
            DeterministicErpSimulatorGateway,
        )

        return DeterministicErpSimulatorGateway(seed=_config_int(app, "ERP_SIMULATOR_SEED", 42))
    if mode == "service_layer":
        from shop_inventory.contexts.transfers.infrastructure.service_layer_client import ServiceLayerClient
        from shop_inventory.contexts.transfers.infrastructure.service_layer_gateway import ServiceLayerErpGateway

        client = ServiceLayerClient(
            str(app.config.get("ERP_BASE_URL") or ""),
            company_db=str(app.config.get("ERP_COMPANY_DB") or ""),
            username=str(app.config.get("ERP_USERNAME") or ""),
            password=str(app.config.get("ERP_PASSWORD") or ""),
            timeout_seconds=_config_int(app, "ERP_TIMEOUT_SECONDS", 20),
            verify_ssl=bool(app.config.get("ERP_VERIFY_SSL", True)),
        )
        return ServiceLayerErpGateway(client)
    raise RuntimeError(f"Invalid ERP_MODE: {mode} (expected one of: {', '.join(SUPPORTED_ERP_MODES)})")


def run_posting_round(
    app: Flask,
    gateway: ErpGateway,
    stop_event: threading.Event | None = None,
    *,
    limit: int | None = None,
) -> Dict[str, int]:
    batch_size = int(limit or _config_int(app, "TRANSFER_POSTING_BATCH_SIZE", DEFAULT_BATCH_SIZE))
    with app.app_context():
        db = get_db()
        try:
            store = SqlQueueStore(db)
            processor = TransferProcessor(
                store,
                gateway,
                retry_base_seconds=_config_int(app, "TRANSFER_RETRY_BASE_SECONDS", DEFAULT_BACKOFF_BASE_SECONDS),
            )
            return BatchClaimer(store, processor, batch_size=batch_size).claim_and_process(stop_event)
        finally:
            close_db()


def build_round_fn(app: Flask, gateway: ErpGateway | None = None) -> Callable[[threading.Event], Dict[str, int]]:
    resolved_gateway = gateway or build_gateway(app)

    def _round(stop_event: threading.Event) -> Dict[str, int]:
        return run_posting_round(app, resolved_gateway, stop_event)

    return _round
