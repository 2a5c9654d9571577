"""
Database layer — key-value persistence.

Backends:
  - In-memory (dict-based, for development/testing)
  - File (one JSON file per key, debounced write-back)

Quick start:
  from database import create_store, ProfileDataStore
  store = create_store(StoreConfig(backend="memory"))
  profiles = ProfileDataStore(store)
"""
from database.store_base import BaseKeyValueStore
from database.store_memory import InMemoryKeyValueStore
from database.store_file import FileKeyValueStore
from database.store_factory import create_store, get_store, reset_store
from database.profile_store import ProfileDataStore, MESSAGE_HISTORY_LIMIT

__all__ = [
    "BaseKeyValueStore",
    "InMemoryKeyValueStore", "FileKeyValueStore",
    "create_store", "get_store", "reset_store",
    "ProfileDataStore", "MESSAGE_HISTORY_LIMIT",
]
