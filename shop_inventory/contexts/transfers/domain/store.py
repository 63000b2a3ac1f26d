from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import List

from shop_inventory.contexts.transfers.domain.queue_entry import QueueEntry


class QueueEntryNotFoundError(LookupError):
    def __init__(self, entry_id: int) -> None:
        super().__init__(f"Transfer queue entry not found: {entry_id}")
        self.entry_id = int(entry_id)


class QueueStore(ABC):
    """Durable home of queue entries.

    Status changes are compare-and-set: ``mark_processing`` only claims entries
    that are still eligible and ``update_status`` only settles entries that are
    still ``processing``. Both return ``False`` when the guard did not match.
    """

    @abstractmethod
    def get_next_batch(self, limit: int) -> List[QueueEntry]:
        raise NotImplementedError

    @abstractmethod
    def mark_processing(self, entry_id: int) -> bool:
        raise NotImplementedError

    @abstractmethod
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
        raise NotImplementedError
