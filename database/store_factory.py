"""
Store Factory — Create the right key-value store backend from configuration.

Configuration in settings.yaml:
    store:
      #   "file"     — JSON files on disk (default)
      #   "memory"   — In-memory dicts (development, testing)
      backend: "file"
      data_dir: "./data"
      flush_debounce_s: 1.0

Usage:
    from database.store_factory import create_store, get_store
    store = create_store(config)     # Create from config
    store = get_store()              # Get singleton instance
"""
from __future__ import annotations

import structlog
from typing import Optional

from config.settings import StoreConfig
from database.store_base import BaseKeyValueStore
from utils.scheduler import Scheduler

logger = structlog.get_logger()

_instance: Optional[BaseKeyValueStore] = None


def create_store(config: StoreConfig = None, scheduler: Scheduler = None) -> BaseKeyValueStore:
    """Factory: create the appropriate store backend."""
    global _instance
    if _instance is not None:
        return _instance

    config = config or StoreConfig()

    if config.backend == "file":
        from database.store_file import FileKeyValueStore
        _instance = FileKeyValueStore(
            data_dir=config.data_dir,
            flush_debounce_s=config.flush_debounce_s,
            scheduler=scheduler,
        )
        logger.info("store_created", backend="file", data_dir=config.data_dir)

    else:  # "memory" or unknown
        from database.store_memory import InMemoryKeyValueStore
        _instance = InMemoryKeyValueStore()
        logger.info("store_created", backend="memory")

    return _instance


def get_store() -> BaseKeyValueStore:
    """Return the singleton store instance, creating a memory store if none exists."""
    global _instance
    if _instance is None:
        _instance = create_store(StoreConfig(backend="memory"))
    return _instance


def reset_store() -> None:
    """Reset the singleton (for testing)."""
    global _instance
    _instance = None
