"""
Repository layer exports.
"""

from db.repositories.errors import StoreError
from db.repositories.kv_store import InMemoryKeyValueStore, KeyValueStore, SQLAlchemyKeyValueStore

__all__ = [
    "InMemoryKeyValueStore",
    "KeyValueStore",
    "SQLAlchemyKeyValueStore",
    "StoreError",
]
