"""
InMemoryQueueStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies (no file I/O)
  - Full interface compatibility with FileQueueStore
  - Documents are deep-copied in and out, so a queue can never mutate
    what is "persisted" behind the store's back
  - All data lost on process restart

Best for: local development, unit tests, ephemeral work queues.
"""
from __future__ import annotations

import copy
import structlog
from typing import Any, Optional

from storage.store_base import BaseQueueStore

logger = structlog.get_logger()


class InMemoryQueueStore(BaseQueueStore):

    storage_type = "memory"

    def __init__(self):
        self._queues: dict[str, dict[str, Any]] = {}   # name → document
        logger.info("inmemory_queue_store_initialized")

    async def is_available(self) -> bool:
        return True

    async def list_queues(self, prefix: Optional[str] = None) -> list[str]:
        names = sorted(self._queues)
        if prefix:
            names = [n for n in names if n.startswith(prefix)]
        return names

    async def load_queue(self, queue_name: str) -> Optional[dict[str, Any]]:
        document = self._queues.get(queue_name)
        return copy.deepcopy(document) if document is not None else None

    async def save_queue(self, queue_name: str, document: dict[str, Any]) -> None:
        self._queues[queue_name] = copy.deepcopy(document)

    async def delete_queue(self, queue_name: str) -> bool:
        return self._queues.pop(queue_name, None) is not None
