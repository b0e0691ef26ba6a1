"""
Abstract Queue Store — Interface for all queue persistence backends.

Implementations:
  - InMemoryQueueStore (dict-based, single-process, no persistence)
  - FileQueueStore     (one JSON snapshot per queue, durable, atomic writes)

A store only ever sees whole-queue documents:

    {type, options, deadLetterQueueName, nextSequence, stats, messages: [...]}

Queues own all ordering and leasing logic; the store just keeps the latest
snapshot of each queue.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional


class BaseQueueStore(ABC):
    """Interface that all queue store backends must implement."""

    storage_type: str = ""

    @abstractmethod
    async def is_available(self) -> bool:
        """Health check, run when the queue system starts."""
        ...

    @abstractmethod
    async def list_queues(self, prefix: Optional[str] = None) -> list[str]:
        ...

    @abstractmethod
    async def load_queue(self, queue_name: str) -> Optional[dict[str, Any]]:
        """Return the stored document, or None if the queue was never saved."""
        ...

    @abstractmethod
    async def save_queue(self, queue_name: str, document: dict[str, Any]) -> None:
        """Replace the stored document. Must be all-or-nothing."""
        ...

    @abstractmethod
    async def delete_queue(self, queue_name: str) -> bool:
        """Remove a queue's data. Returns False if nothing was stored."""
        ...
