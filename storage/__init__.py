"""
Storage layer — Pluggable persistence for queue state.

Backends:
  - In-memory (dict-based, for development/testing)
  - File (one JSON snapshot per queue, atomic writes)

Quick start:
  from storage import create_store
  store = create_store("file", {"data_dir": "./data/queues"})
"""
from storage.store_base import BaseQueueStore
from storage.store_memory import InMemoryQueueStore
from storage.store_file import FileQueueStore
from storage.store_factory import create_store

__all__ = [
    "BaseQueueStore",
    "InMemoryQueueStore", "FileQueueStore",
    "create_store",
]
