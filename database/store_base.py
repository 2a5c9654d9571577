"""
Abstract Key-Value Store — Interface for all storage backends.

Implementations:
  - InMemoryKeyValueStore (dict-based, single-process, no persistence)
  - FileKeyValueStore     (JSON file per key, debounced write-back, durable)

Values are JSON-compatible structures. The in-memory cache is the source of
truth; durable backends write the latest cached value back in the background.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional


class BaseKeyValueStore(ABC):
    """Interface that all key-value store backends must implement."""

    @abstractmethod
    def get(self, key: str, default: Any = None) -> Any:
        """Return the cached value, loading it from durable storage on first access."""
        ...

    @abstractmethod
    def set(self, key: str, value: Any) -> None:
        """Replace the cached value and schedule a durable write."""
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def keys(self) -> list[str]:
        ...

    async def flush(self, key: Optional[str] = None) -> None:
        """Force pending writes for `key` (or all keys) to durable storage."""
        return None

    async def close(self) -> None:
        await self.flush()
