"""Storage sub-package — key-value persistence for baselines and sessions."""

from behavioral_stress.storage.base import KeyValueStore, MemoryStore, StorageUnavailableError
from behavioral_stress.storage.repository import SQLKeyValueStore

__all__ = ["KeyValueStore", "MemoryStore", "SQLKeyValueStore", "StorageUnavailableError"]
