"""Stores for workflow definitions and markings."""

from petriflow.store.base import GraphStore, MarkingStore, Store
from petriflow.store.json_file import JsonFileStore
from petriflow.store.memory import InMemoryStore, StoreSnapshot

__all__ = [
    "GraphStore",
    "InMemoryStore",
    "JsonFileStore",
    "MarkingStore",
    "Store",
    "StoreSnapshot",
]
