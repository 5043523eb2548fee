from __future__ import annotations
from ..errors import StoreError
from .base import ProductionStore
from .memory import MemoryStore
from .sqlite_store import SqliteStore


def get_store(kind: str = "memory", **options) -> ProductionStore:
    kind = (kind or "memory").lower()
    if kind == "memory":
        return MemoryStore()
    if kind == "sqlite":
        return SqliteStore(options.get("path") or "zara.db")
    raise ValueError(f"Unknown store: {kind}")


__all__ = ["ProductionStore", "MemoryStore", "SqliteStore", "StoreError", "get_store"]
