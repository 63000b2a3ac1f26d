from __future__ import annotations

from typing import Any, Dict

from shop_inventory.contexts.transfers.domain.contracts import ErpDocumentResultV1, TransferDocumentV1
from shop_inventory.contexts.transfers.domain.gateway import ErpGateway, ErpGatewayError
from shop_inventory.contexts.transfers.domain.queue_entry import DocumentKind
from shop_inventory.contexts.transfers.infrastructure.service_layer_client import ServiceLayerClient, ServiceLayerError
from shop_inventory.errors import classify_erp_failure


RESOURCE_BY_KIND = {
    DocumentKind.DIRECT: "StockTransfers",
    DocumentKind.REQUEST: "InventoryTransferRequests",
}


def map_document_to_service_layer_payload(document: TransferDocumentV1) -> Dict[str, Any]:
    lines = []
    for index, line in enumerate(document.lines):
        line_payload: Dict[str, Any] = {
            "ItemCode": line.item_code,
            "Quantity": float(line.quantity),
            "FromWarehouseCode": line.from_warehouse_code,
            "WarehouseCode": line.to_warehouse_code,
        }
        if line.batch_numbers:
            line_payload["StockTransferLinesBinAllocations"] = [
                {
                    "BatchNumber": batch.batch_number,
                    "Quantity": float(batch.quantity),
                    "BaseLineNumber": index,
                }
                for batch in line.batch_numbers
            ]
        lines.append(line_payload)

    payload: Dict[str, Any] = {
        "DocDate": document.doc_date,
        "FromWarehouse": document.from_warehouse,
        "ToWarehouse": document.to_warehouse,
        "StockTransferLines": lines,
    }
    if document.due_date:
        payload["DueDate"] = document.due_date
    if document.comments:
        payload["Comments"] = document.comments
    if document.journal_memo:
        payload["JournalMemo"] = document.journal_memo
    return payload


def map_service_layer_response(response: Dict[str, Any]) -> ErpDocumentResultV1:
    raw_entry = response.get("DocEntry")
    try:
        doc_entry = int(raw_entry)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ErpGatewayError("ERP response without DocEntry.", code="erp_response_invalid") from exc
    doc_num = response.get("DocNum")
    return ErpDocumentResultV1(doc_entry=doc_entry, doc_num=None if doc_num is None else str(doc_num))


class ServiceLayerErpGateway(ErpGateway):
    def __init__(self, client: ServiceLayerClient) -> None:
        self._client = client

    def post_transfer_request(self, document: TransferDocumentV1) -> ErpDocumentResultV1:
        return self._post(DocumentKind.REQUEST, document)

    def post_direct_transfer(self, document: TransferDocumentV1) -> ErpDocumentResultV1:
        return self._post(DocumentKind.DIRECT, document)

    def _post(self, kind: DocumentKind, document: TransferDocumentV1) -> ErpDocumentResultV1:
        payload = map_document_to_service_layer_payload(document)
        try:
            response = self._client.post(RESOURCE_BY_KIND[kind], payload)
        except ServiceLayerError as exc:
            details = str(exc)
            code, _message_key, _status = classify_erp_failure(details)
            raise ErpGatewayError(details, code=code, definitive=code == "erp_document_rejected") from exc
        return map_service_layer_response(response)
