from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Iterable, List, Optional

from freezegate.common.clock import isoformat_z, now_utc


class FreezeStatus(str, Enum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    EXPIRED = "expired"
    ENDED = "ended"

    @property
    def is_open(self) -> bool:
        return self in (FreezeStatus.SCHEDULED, FreezeStatus.ACTIVE)


@dataclass(frozen=True)
class FreezeScope:
    """(repository, branch) unit a freeze applies to; branch None means every branch."""

    repository: str
    branch: Optional[str] = None

    def covers(self, branch: Optional[str]) -> bool:
        if self.branch is None:
            return True
        return branch is not None and branch == self.branch

    @property
    def label(self) -> str:
        return f"{self.repository}@{self.branch}" if self.branch else self.repository


def _new_id() -> str:
    return uuid.uuid4().hex


@dataclass
class FreezeRecord:
    repository: str
    installation_id: int
    started_at: datetime
    initiated_by: str
    branch: Optional[str] = None
    expires_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    reason: Optional[str] = None
    ended_by: Optional[str] = None
    status: FreezeStatus = FreezeStatus.ACTIVE
    id: str = field(default_factory=_new_id)
    created_at: datetime = field(default_factory=now_utc)

    @property
    def scope(self) -> FreezeScope:
        return FreezeScope(self.repository, self.branch)

    def is_active_at(self, instant: datetime) -> bool:
        if self.status in (FreezeStatus.ENDED, FreezeStatus.EXPIRED) or self.ended_at is not None:
            return False
        if self.started_at > instant:
            return False
        return self.expires_at is None or self.expires_at > instant

    def overlaps(self, start: datetime, end: Optional[datetime]) -> bool:
        """True when [started_at, expires_at) intersects [start, end); None is unbounded."""
        if end is not None and end <= self.started_at:
            return False
        if self.expires_at is not None and self.expires_at <= start:
            return False
        return True

    def copy(self, **changes) -> "FreezeRecord":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "repository": self.repository,
            "installation_id": self.installation_id,
            "branch": self.branch,
            "started_at": isoformat_z(self.started_at),
            "expires_at": isoformat_z(self.expires_at),
            "ended_at": isoformat_z(self.ended_at),
            "reason": self.reason,
            "initiated_by": self.initiated_by,
            "ended_by": self.ended_by,
            "status": self.status.value,
        }


@dataclass
class UnlockedPr:
    installation_id: int
    repository: str
    pr_number: int
    unlocked_by: str
    unlocked_at: datetime = field(default_factory=now_utc)
    reason: Optional[str] = None
    id: str = field(default_factory=_new_id)

    def valid_for(self, freezing: Iterable[FreezeRecord]) -> bool:
        """An unlock survives only while it is newer than every freeze generation covering the PR."""
        starts = [rec.started_at for rec in freezing]
        if not starts:
            return False
        return self.unlocked_at > max(starts)


def freezing_records(records: Iterable[FreezeRecord], repository: str, branch: Optional[str], at: datetime) -> List[FreezeRecord]:
    return [
        rec
        for rec in records
        if rec.repository == repository and rec.scope.covers(branch) and rec.is_active_at(at)
    ]


def is_frozen(records: Iterable[FreezeRecord], repository: str, branch: Optional[str], at: datetime) -> bool:
    return bool(freezing_records(records, repository, branch, at))


__all__ = [
    "FreezeStatus",
    "FreezeScope",
    "FreezeRecord",
    "UnlockedPr",
    "freezing_records",
    "is_frozen",
]
