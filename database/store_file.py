"""
FileKeyValueStore — JSON file-backed store with persistence across restarts.

Data layout:
  {data_dir}/
    profiles.json
    webhooks.json
    webhook_queue.json
    messages_<profile>.json
    contacts_<profile>.json
    flows_<profile>.json
    sessions_<profile>.json

Features:
  - Survives process restarts (unlike InMemoryKeyValueStore)
  - Lazy load: a key's file is read the first time the key is requested
  - Debounced write-back: a set() arms one write per key; further sets
    before it fires only update the cache, so the write always serialises
    the latest value
  - Atomic replace via tmp file + rename
  - Single-process only (no concurrent write safety)
"""
from __future__ import annotations

import json
import re
import structlog
from pathlib import Path
from typing import Any, Optional

from database.store_memory import InMemoryKeyValueStore
from utils.scheduler import AsyncioScheduler, Scheduler

logger = structlog.get_logger()

_UNSAFE = re.compile(r"[^A-Za-z0-9_\-]")


class FileKeyValueStore(InMemoryKeyValueStore):
    """
    Extends InMemoryKeyValueStore with JSON file persistence.

    Unreadable files fall back to the caller's default so a corrupted
    document never stops the process.
    """

    def __init__(
        self,
        data_dir: str = "./data",
        flush_debounce_s: float = 1.0,
        scheduler: Optional[Scheduler] = None,
    ):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._debounce = flush_debounce_s
        self._scheduler = scheduler or AsyncioScheduler()
        self._pending: set[str] = set()
        logger.info("file_store_initialized", data_dir=str(self._data_dir))

    # ── Load / Save ───────────────────────────────────────

    def file_path(self, key: str) -> Path:
        return self._data_dir / f"{_UNSAFE.sub('_', key)}.json"

    def _load(self, key: str, default: Any) -> Any:
        path = self.file_path(key)
        if not path.exists():
            return super()._load(key, default)
        try:
            with open(path, "r") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            logger.warning("file_store_load_error", key=key, path=str(path), error=str(e))
            return super()._load(key, default)

    def _write(self, key: str):
        """Write a single key's cached value to disk."""
        self._pending.discard(key)
        if key not in self._cache:
            return
        path = self.file_path(key)
        tmp_path = path.with_suffix(".tmp")
        try:
            with open(tmp_path, "w") as f:
                json.dump(self._cache[key], f, indent=2, default=str)
            tmp_path.replace(path)  # atomic on POSIX
        except (OSError, TypeError, ValueError) as e:
            logger.error("file_store_write_error", key=key, error=str(e))
            raise

    def _timer_key(self, key: str):
        return ("store_flush", key)

    # ── Writes ────────────────────────────────────────────

    def set(self, key: str, value: Any) -> None:
        super().set(key, value)
        if self._debounce <= 0:
            self._write(key)
            return
        if key in self._pending:
            return  # already scheduled
        self._pending.add(key)
        self._scheduler.arm(self._timer_key(key), self._debounce, lambda: self._deferred_write(key))

    def _deferred_write(self, key: str):
        try:
            self._write(key)
        except (OSError, TypeError, ValueError):
            pass  # logged in _write; next set() re-arms

    def delete(self, key: str) -> None:
        super().delete(key)
        self._pending.discard(key)
        self._scheduler.cancel(self._timer_key(key))
        path = self.file_path(key)
        if path.exists():
            path.unlink()

    async def flush(self, key: Optional[str] = None) -> None:
        keys = [key] if key is not None else list(self._pending)
        for k in keys:
            self._scheduler.cancel(self._timer_key(k))
            self._write(k)

    async def close(self) -> None:
        await self.flush()
        logger.info("file_store_flushed_all", data_dir=str(self._data_dir))
