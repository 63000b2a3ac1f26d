from __future__ import annotations

from abc import ABC, abstractmethod

from shop_inventory.contexts.transfers.domain.contracts import ErpDocumentResultV1, TransferDocumentV1
from shop_inventory.contexts.transfers.domain.queue_entry import DocumentKind


class ErpGatewayError(RuntimeError):
    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        definitive: bool = False,
    ) -> None:
        super().__init__(message)
        self.code = str(code or "").strip() or None
        self.definitive = bool(definitive)


class ErpGateway(ABC):
    @abstractmethod
    def post_transfer_request(self, document: TransferDocumentV1) -> ErpDocumentResultV1:
        raise NotImplementedError

    @abstractmethod
    def post_direct_transfer(self, document: TransferDocumentV1) -> ErpDocumentResultV1:
        raise NotImplementedError

    def post_document(self, document: TransferDocumentV1) -> ErpDocumentResultV1:
        if document.kind is DocumentKind.REQUEST:
            return self.post_transfer_request(document)
        return self.post_direct_transfer(document)
