from __future__ import annotations

import asyncio
import logging
from typing import Optional

from .errors import FreezeGateError
from .manager import FreezeManager
from .results import TickReport

log = logging.getLogger(__name__)


class FreezeWorker:
    """Periodic tick loop. Every instance may run one; ticks are idempotent."""

    def __init__(self, manager: FreezeManager, *, interval_sec: float = 60.0) -> None:
        self.manager = manager
        self.interval_sec = max(1.0, float(interval_sec))
        self._stop = asyncio.Event()
        self.last_report: Optional[TickReport] = None

    async def run_once(self) -> Optional[TickReport]:
        try:
            self.last_report = await self.manager.tick()
        except FreezeGateError as exc:
            log.error("tick_failed", extra={"error": str(exc)})
            return None
        return self.last_report

    async def run_forever(self) -> None:
        log.info("worker_started", extra={"interval_sec": self.interval_sec})
        while not self._stop.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval_sec)
            except asyncio.TimeoutError:
                continue
        log.info("worker_stopped")

    def stop(self) -> None:
        self._stop.set()


__all__ = ["FreezeWorker"]
