from __future__ import annotations

from typing import Optional

from freezegate.config.settings import Settings, get_settings

from .base import ANY_BRANCH, FreezeStore
from .memory import InMemoryFreezeStore
from .sqlite import SQLiteFreezeStore


def get_store(settings: Optional[Settings] = None) -> FreezeStore:
    cfg = settings or get_settings()
    backend = cfg.STORE_BACKEND.lower()
    if backend == "sqlite":
        return SQLiteFreezeStore(cfg.SQLITE_PATH)
    if backend == "memory":
        return InMemoryFreezeStore()
    raise ValueError(f"unknown store backend: {cfg.STORE_BACKEND}")


__all__ = ["FreezeStore", "InMemoryFreezeStore", "SQLiteFreezeStore", "ANY_BRANCH", "get_store"]
