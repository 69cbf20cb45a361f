from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from freezegate.freezer.models import FreezeRecord, FreezeStatus, UnlockedPr

from .base import FreezeStore, raise_on_conflict


class InMemoryFreezeStore(FreezeStore):
    def __init__(self):
        self._freezes: Dict[str, FreezeRecord] = {}
        # (installation_id, repository, pr_number) -> UnlockedPr
        self._unlocks: Dict[Tuple[int, str, int], UnlockedPr] = {}
        self._lock = asyncio.Lock()

    async def create_freeze(self, record: FreezeRecord, *, now: datetime) -> str:
        async with self._lock:
            raise_on_conflict(self._freezes.values(), record, now)
            self._freezes[record.id] = record.copy()
            return record.id

    async def get_freeze(self, freeze_id: str) -> Optional[FreezeRecord]:
        async with self._lock:
            rec = self._freezes.get(freeze_id)
            return rec.copy() if rec else None

    async def list_freezes(
        self,
        *,
        repository: Optional[str] = None,
        installation_id: Optional[int] = None,
        statuses: Optional[Iterable[FreezeStatus]] = None,
    ) -> List[FreezeRecord]:
        wanted = set(statuses) if statuses is not None else None
        async with self._lock:
            out = [
                rec.copy()
                for rec in self._freezes.values()
                if (repository is None or rec.repository == repository)
                and (installation_id is None or rec.installation_id == installation_id)
                and (wanted is None or rec.status in wanted)
            ]
        out.sort(key=lambda rec: (rec.started_at, rec.created_at))
        return out

    async def update_status(
        self,
        freeze_id: str,
        status: FreezeStatus,
        *,
        expected: FreezeStatus,
        ended_by: Optional[str] = None,
        ended_at: Optional[datetime] = None,
    ) -> Optional[FreezeRecord]:
        async with self._lock:
            rec = self._freezes.get(freeze_id)
            if rec is None or rec.status != expected:
                return None
            rec.status = status
            if ended_at is not None:
                rec.ended_at = ended_at
            if ended_by is not None:
                rec.ended_by = ended_by
            return rec.copy()

    async def create_unlock(
        self,
        installation_id: int,
        repository: str,
        pr_number: int,
        actor: str,
        *,
        at: datetime,
        reason: Optional[str] = None,
    ) -> str:
        unlock = UnlockedPr(
            installation_id=installation_id,
            repository=repository,
            pr_number=pr_number,
            unlocked_by=actor,
            unlocked_at=at,
            reason=reason,
        )
        async with self._lock:
            self._unlocks[(installation_id, repository, pr_number)] = unlock
        return unlock.id

    async def find_unlock(self, installation_id: int, repository: str, pr_number: int) -> Optional[UnlockedPr]:
        async with self._lock:
            return self._unlocks.get((installation_id, repository, pr_number))


__all__ = ["InMemoryFreezeStore"]
