"""
Wiring of store, platform adapter, permissions and services from settings.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from freezegate.common.clock import now_utc
from freezegate.config.settings import Settings, get_settings
from freezegate.platform.base import PlatformAdapter
from freezegate.platform.github import GitHubPlatform
from freezegate.policy.permissions import PermissionResolver, PermissionsConfig
from freezegate.storage import get_store
from freezegate.storage.base import FreezeStore

from .manager import FreezeManager
from .reconcile import PrReconciler
from .service import CommandService
from .worker import FreezeWorker

log = logging.getLogger(__name__)


@dataclass
class FreezeEngine:
    store: FreezeStore
    platform: PlatformAdapter
    resolver: PermissionResolver
    reconciler: PrReconciler
    manager: FreezeManager
    service: CommandService
    settings: Settings

    def worker(self) -> FreezeWorker:
        return FreezeWorker(self.manager, interval_sec=self.settings.TICK_INTERVAL_SEC)

    async def aclose(self) -> None:
        await self.platform.aclose()
        await self.store.close()


def load_resolver(settings: Settings) -> PermissionResolver:
    path = Path(settings.PERMISSIONS_PATH)
    if not path.exists():
        # every actor resolves to deny-all
        log.warning("permissions_missing", extra={"path": str(path)})
        return PermissionResolver(PermissionsConfig())
    return PermissionResolver.from_file(path)


def build_engine(
    settings: Optional[Settings] = None,
    *,
    store: Optional[FreezeStore] = None,
    platform: Optional[PlatformAdapter] = None,
    resolver: Optional[PermissionResolver] = None,
    clock: Callable[[], datetime] = now_utc,
) -> FreezeEngine:
    cfg = settings or get_settings()
    store = store or get_store(cfg)
    platform = platform or GitHubPlatform.from_settings(cfg)
    resolver = resolver or load_resolver(cfg)
    reconciler = PrReconciler(store, platform, settings=cfg, clock=clock)
    manager = FreezeManager(store, platform, reconciler, settings=cfg, clock=clock)
    return FreezeEngine(
        store=store,
        platform=platform,
        resolver=resolver,
        reconciler=reconciler,
        manager=manager,
        service=CommandService(manager, resolver, clock=clock),
        settings=cfg,
    )


__all__ = ["FreezeEngine", "build_engine", "load_resolver"]
