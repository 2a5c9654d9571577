"""
InMemoryKeyValueStore — Dict-backed store for development and testing.

Features:
  - Zero dependencies
  - Full interface compatibility with FileKeyValueStore
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import copy
import structlog
from typing import Any

from database.store_base import BaseKeyValueStore

logger = structlog.get_logger()

_MISSING = object()


class InMemoryKeyValueStore(BaseKeyValueStore):

    def __init__(self):
        self._cache: dict[str, Any] = {}
        logger.info("inmemory_store_initialized")

    def get(self, key: str, default: Any = None) -> Any:
        value = self._cache.get(key, _MISSING)
        if value is _MISSING:
            value = self._load(key, default)
            self._cache[key] = value
        return value

    def _load(self, key: str, default: Any) -> Any:
        # Copy so callers mutating the result never mutate a shared default
        return copy.deepcopy(default)

    def set(self, key: str, value: Any) -> None:
        self._cache[key] = value

    def delete(self, key: str) -> None:
        self._cache.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._cache)
