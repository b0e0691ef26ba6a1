"""
Store Factory — Create the right queue store backend from configuration.

Configuration in settings.yaml:
    broker:
      # Queue store backend
      #   "memory"   — In-memory dicts (development, testing)
      #   "file"     — JSON snapshots on disk (durable)
      storage_type: "memory"

      # For file backend: directory path
      storage_dir: "./data/queues"

Usage:
    from storage.store_factory import create_store
    store = create_store("file", {"data_dir": "./data/queues"})

There is no module-level instance: each MessageQueueSystem owns the store
it was given.
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

from broker.errors import QueueValidationError
from storage.store_base import BaseQueueStore

logger = structlog.get_logger()


def create_store(storage_type: str = "memory", options: Optional[dict[str, Any]] = None) -> BaseQueueStore:
    """
    Factory: create the appropriate queue store backend.

    Args:
        storage_type: "memory" | "file"  (default: "memory")
        options: backend options; the file backend reads "data_dir"
            (default: "./data/queues")
    """
    options = options or {}
    backend = (storage_type or "memory").lower()

    if backend == "file":
        from storage.store_file import FileQueueStore
        data_dir = options.get("data_dir", "./data/queues")
        store = FileQueueStore(data_dir=data_dir)
        logger.info("queue_store_created", backend="file", data_dir=data_dir)
        return store

    if backend == "memory":
        from storage.store_memory import InMemoryQueueStore
        store = InMemoryQueueStore()
        logger.info("queue_store_created", backend="memory")
        return store

    raise QueueValidationError(f"Unsupported storage type: {storage_type}")
