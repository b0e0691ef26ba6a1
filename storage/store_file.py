"""
FileQueueStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    orders.json
    orders-dlq.json
    ...

One document per queue. Queue names are percent-encoded into file names so
any name maps to exactly one file inside data_dir.

Features:
  - Survives process restarts (unlike InMemoryQueueStore)
  - No external services (no database server, no Redis)
  - Every save writes a temp file, fsyncs it and atomically renames it over
    the previous snapshot, so a crash leaves either the old or the new
    snapshot, never a torn one
  - Single-process only; writers for one queue are serialized by that
    queue's lock

Best for: small deployments, demos, edge devices, air-gapped environments.
"""
from __future__ import annotations

import json
import os
import structlog
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote, unquote

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from broker.errors import StorageError
from storage.store_base import BaseQueueStore

logger = structlog.get_logger()

_SUFFIX = ".json"
_TMP_SUFFIX = ".json.tmp"


class FileQueueStore(BaseQueueStore):

    storage_type = "file"

    def __init__(self, data_dir: str = "./data/queues"):
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        logger.info("file_queue_store_initialized", data_dir=str(self._data_dir))

    @property
    def data_dir(self) -> Path:
        return self._data_dir

    # ── Paths ─────────────────────────────────────────────

    def _file_path(self, queue_name: str) -> Path:
        return self._data_dir / f"{quote(queue_name, safe='')}{_SUFFIX}"

    # ── Interface ─────────────────────────────────────────

    async def is_available(self) -> bool:
        try:
            self._data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning("file_queue_store_unavailable",
                           data_dir=str(self._data_dir), error=str(e))
            return False
        return os.access(self._data_dir, os.R_OK | os.W_OK)

    async def list_queues(self, prefix: Optional[str] = None) -> list[str]:
        try:
            names = sorted(
                unquote(p.name[: -len(_SUFFIX)])
                for p in self._data_dir.iterdir()
                if p.is_file() and p.name.endswith(_SUFFIX)
            )
        except OSError as e:
            raise StorageError("list_queues", e) from e
        if prefix:
            names = [n for n in names if n.startswith(prefix)]
        return names

    async def load_queue(self, queue_name: str) -> Optional[dict[str, Any]]:
        path = self._file_path(queue_name)
        if not path.exists():
            return None
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError("load_queue", e, queue_name) from e

    async def save_queue(self, queue_name: str, document: dict[str, Any]) -> None:
        try:
            self._write_snapshot(self._file_path(queue_name), document)
        except (OSError, TypeError, ValueError) as e:
            raise StorageError("save_queue", e, queue_name) from e

    async def delete_queue(self, queue_name: str) -> bool:
        path = self._file_path(queue_name)
        tmp_path = path.with_name(path.name[: -len(_SUFFIX)] + _TMP_SUFFIX)
        try:
            tmp_path.unlink(missing_ok=True)
            if not path.exists():
                return False
            path.unlink()
        except OSError as e:
            raise StorageError("delete_queue", e, queue_name) from e
        logger.info("file_queue_deleted", queue=queue_name)
        return True

    # ── Atomic write ──────────────────────────────────────

    @retry(
        retry=retry_if_exception_type(OSError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.05, max=1),
        reraise=True,
    )
    def _write_snapshot(self, path: Path, document: dict[str, Any]) -> None:
        tmp_path = path.with_name(path.name[: -len(_SUFFIX)] + _TMP_SUFFIX)
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)  # atomic on POSIX and Windows
