from __future__ import annotations

from typing import Dict


ERROR_MESSAGES: Dict[str, str] = {
    "unexpected_error": "The operation could not be completed.",
    "action_invalid": "This action is not allowed right now.",
    "payload_invalid": "The transfer request is invalid.",
    "not_found": "The requested record was not found.",
    "transfer_not_found": "No queued transfer found with this reference.",
    "transfer_already_queued": "A transfer with this reference is already queued.",
    "transfer_not_cancellable": "Only pending transfers can be cancelled.",
    "transfer_not_retryable": "Only failed transfers or transfers under review can be retried.",
    "erp_temporarily_unavailable": "The ERP is temporarily unavailable. The transfer will be retried.",
    "erp_document_rejected": "The ERP rejected the transfer document.",
}


SUCCESS_MESSAGES: Dict[str, str] = {
    "transfer_queued": "Inventory transfer queued for processing. Poll the status endpoint to check completion.",
    "transfer_retry_queued": "Transfer will be retried shortly.",
    "erp_accepted": "Document accepted by the ERP.",
}


def error_message(key: str, fallback: str | None = None) -> str:
    return ERROR_MESSAGES.get(key) or fallback or ERROR_MESSAGES["unexpected_error"]


def success_message(key: str, fallback: str | None = None) -> str:
    return SUCCESS_MESSAGES.get(key) or fallback or key
