from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Iterable, List, Optional

from freezegate.freezer.errors import FreezeAlreadyActive
from freezegate.freezer.models import FreezeRecord, FreezeStatus, UnlockedPr

ANY_BRANCH = object()


def find_conflict(existing: Iterable[FreezeRecord], record: FreezeRecord, now: datetime) -> Optional[FreezeRecord]:
    """Open record of the exact same scope whose window overlaps the new one and is not over yet."""
    for rec in existing:
        if rec.id == record.id or rec.scope != record.scope or not rec.status.is_open:
            continue
        if rec.installation_id != record.installation_id:
            continue
        if rec.expires_at is not None and rec.expires_at <= now:
            continue
        if rec.overlaps(record.started_at, record.expires_at):
            return rec
    return None


class FreezeStore(ABC):
    """Transactional CRUD for freeze records and unlocked PRs.

    ``create_freeze`` performs its conflict check atomically with the insert and
    ``update_status`` is a compare-and-set on the current status, so several
    service instances can share one store without in-process locking.
    """

    @abstractmethod
    async def create_freeze(self, record: FreezeRecord, *, now: datetime) -> str:
        """Persist ``record``; raise ``FreezeAlreadyActive`` on a same-scope overlap."""

    @abstractmethod
    async def get_freeze(self, freeze_id: str) -> Optional[FreezeRecord]: ...

    @abstractmethod
    async def list_freezes(
        self,
        *,
        repository: Optional[str] = None,
        installation_id: Optional[int] = None,
        statuses: Optional[Iterable[FreezeStatus]] = None,
    ) -> List[FreezeRecord]:
        """Records ordered by ``started_at``."""

    @abstractmethod
    async def update_status(
        self,
        freeze_id: str,
        status: FreezeStatus,
        *,
        expected: FreezeStatus,
        ended_by: Optional[str] = None,
        ended_at: Optional[datetime] = None,
    ) -> Optional[FreezeRecord]:
        """Apply the transition only if the stored status is still ``expected``; None otherwise."""

    @abstractmethod
    async def create_unlock(
        self,
        installation_id: int,
        repository: str,
        pr_number: int,
        actor: str,
        *,
        at: datetime,
        reason: Optional[str] = None,
    ) -> str: ...

    @abstractmethod
    async def find_unlock(self, installation_id: int, repository: str, pr_number: int) -> Optional[UnlockedPr]: ...

    async def find_active(
        self,
        repository: Optional[str] = None,
        branch=ANY_BRANCH,
        *,
        installation_id: Optional[int] = None,
    ) -> List[FreezeRecord]:
        records = await self.list_freezes(
            repository=repository, installation_id=installation_id, statuses=[FreezeStatus.ACTIVE]
        )
        if branch is ANY_BRANCH:
            return records
        return [rec for rec in records if rec.branch == branch]

    async def find_open(
        self, repository: Optional[str] = None, *, installation_id: Optional[int] = None
    ) -> List[FreezeRecord]:
        return await self.list_freezes(
            repository=repository,
            installation_id=installation_id,
            statuses=[FreezeStatus.ACTIVE, FreezeStatus.SCHEDULED],
        )

    async def find_expiring(self, before: datetime) -> List[FreezeRecord]:
        records = await self.list_freezes(statuses=[FreezeStatus.ACTIVE])
        return [rec for rec in records if rec.expires_at is not None and rec.expires_at <= before]

    async def find_scheduled_due(self, before: datetime) -> List[FreezeRecord]:
        records = await self.list_freezes(statuses=[FreezeStatus.SCHEDULED])
        return [rec for rec in records if rec.started_at <= before]

    async def close(self) -> None:
        pass


def raise_on_conflict(existing: Iterable[FreezeRecord], record: FreezeRecord, now: datetime) -> None:
    conflict = find_conflict(existing, record, now)
    if conflict is not None:
        raise FreezeAlreadyActive(record.repository, record.branch, existing_id=conflict.id)


__all__ = ["FreezeStore", "ANY_BRANCH", "find_conflict", "raise_on_conflict"]
