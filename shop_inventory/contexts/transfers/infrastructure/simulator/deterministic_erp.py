from __future__ import annotations

import hashlib

from shop_inventory.contexts.transfers.domain.contracts import ErpDocumentResultV1, TransferDocumentV1
from shop_inventory.contexts.transfers.domain.gateway import ErpGateway, ErpGatewayError
from shop_inventory.contexts.transfers.domain.queue_entry import DocumentKind
from shop_inventory.observability import observe_erp_simulator_result


_DOC_NUM_PREFIX = {
    DocumentKind.DIRECT: "SIM-TR",
    DocumentKind.REQUEST: "SIM-TRQ",
}


class DeterministicErpSimulator:
    def __init__(self, seed: int = 42) -> None:
        self.seed = int(seed)

    def _digest(self, *parts: object) -> str:
        raw = ":".join(str(part) for part in (self.seed, *parts))
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()

    def _bucket(self, external_ref: str) -> int:
        return int(self._digest(external_ref)[:8], 16) % 100

    def post(self, document: TransferDocumentV1) -> ErpDocumentResultV1:
        external_ref = str(document.external_reference or "").strip()
        for line in document.lines:
            if float(line.quantity) <= 0:
                observe_erp_simulator_result("rejected")
                raise ErpGatewayError(
                    f"ERP HTTP 400: Quantity must be greater than zero for item {line.item_code}",
                    code="erp_document_rejected",
                    definitive=True,
                )
            if line.from_warehouse_code == line.to_warehouse_code:
                observe_erp_simulator_result("rejected")
                raise ErpGatewayError(
                    f"ERP HTTP 400: Source and destination warehouse are the same ({line.from_warehouse_code})",
                    code="erp_document_rejected",
                    definitive=True,
                )

        bucket = self._bucket(external_ref)
        if bucket < 80:
            observe_erp_simulator_result("accepted")
            doc_entry = 100_000 + int(self._digest("entry", external_ref)[:8], 16) % 900_000
            return ErpDocumentResultV1(
                doc_entry=doc_entry,
                doc_num=f"{_DOC_NUM_PREFIX[document.kind]}-{doc_entry % 1_000_000:06d}",
            )
        if bucket < 92:
            observe_erp_simulator_result("temporary_failure")
            raise ErpGatewayError(
                "ERP HTTP 503: Service Layer temporarily unavailable",
                code="erp_temporarily_unavailable",
                definitive=False,
            )

        observe_erp_simulator_result("rejected")
        first_item = document.lines[0].item_code if document.lines else "?"
        raise ErpGatewayError(
            f"ERP HTTP 400: Quantity falls into negative inventory for item {first_item}",
            code="erp_document_rejected",
            definitive=True,
        )


class DeterministicErpSimulatorGateway(ErpGateway):
    def __init__(self, seed: int = 42) -> None:
        self._simulator = DeterministicErpSimulator(seed=seed)

    def post_transfer_request(self, document: TransferDocumentV1) -> ErpDocumentResultV1:
        return self._simulator.post(document)

    def post_direct_transfer(self, document: TransferDocumentV1) -> ErpDocumentResultV1:
        return self._simulator.post(document)
