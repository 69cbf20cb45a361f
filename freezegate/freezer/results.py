from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from freezegate.common.clock import isoformat_z

from .models import FreezeRecord


class Outcome(str, Enum):
    SUCCESS = "success"
    PARTIAL = "partial"
    PARSE_ERROR = "parse_error"
    PERMISSION_DENIED = "permission_denied"
    CONFLICT = "conflict"
    ADAPTER_FAILURE = "adapter_failure"
    IGNORED = "ignored"


@dataclass
class RepoOutcome:
    """Result of one repository inside a multi-repository operation."""

    repository: str
    ok: bool
    records: List[FreezeRecord] = field(default_factory=list)
    error: Optional[str] = None
    error_code: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class BatchResult:
    outcomes: List[RepoOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> List[RepoOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> List[RepoOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def ok(self) -> bool:
        return bool(self.outcomes) and not self.failed


class Signal(str, Enum):
    BLOCK = "block"
    CLEAR = "clear"


@dataclass
class PrOutcome:
    number: int
    target_branch: str
    desired: Signal
    pushed: bool = False
    unchanged: bool = False
    unlocked: bool = False
    error: Optional[str] = None
    retryable: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass
class RepositoryReport:
    repository: str
    installation_id: int
    prs: List[PrOutcome] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def failed(self) -> List[PrOutcome]:
        return [pr for pr in self.prs if not pr.ok]

    @property
    def ok(self) -> bool:
        return self.error is None and not self.failed

    def signals(self) -> Dict[int, Signal]:
        return {pr.number: pr.desired for pr in self.prs}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "repository": self.repository,
            "installation_id": self.installation_id,
            "error": self.error,
            "total_prs": len(self.prs),
            "pushed": sum(1 for pr in self.prs if pr.pushed),
            "unchanged": sum(1 for pr in self.prs if pr.unchanged),
            "failed": [{"number": pr.number, "error": pr.error} for pr in self.failed],
        }


@dataclass
class ReconciliationReport:
    repositories: List[RepositoryReport] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(r.ok for r in self.repositories)

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "repositories": [r.to_dict() for r in self.repositories]}


@dataclass
class TickReport:
    now: datetime
    expired: List[FreezeRecord] = field(default_factory=list)
    activated: List[FreezeRecord] = field(default_factory=list)
    conflicts: List[FreezeRecord] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    reconciliation: ReconciliationReport = field(default_factory=ReconciliationReport)

    @property
    def ok(self) -> bool:
        return not self.errors and self.reconciliation.ok

    def to_dict(self) -> Dict[str, Any]:
        return {
            "now": isoformat_z(self.now),
            "expired": [r.id for r in self.expired],
            "activated": [r.id for r in self.activated],
            "conflicts": [r.id for r in self.conflicts],
            "errors": list(self.errors),
            "reconciliation": self.reconciliation.to_dict(),
        }


@dataclass
class StatusEntry:
    repository: str
    active: List[FreezeRecord] = field(default_factory=list)
    scheduled: List[FreezeRecord] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def frozen(self) -> bool:
        return bool(self.active)


@dataclass
class CommandResult:
    ok: bool
    outcome: Outcome
    message: str
    intent: Optional[str] = None
    repositories: List[str] = field(default_factory=list)
    branch: Optional[str] = None
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    denial: Optional[Dict[str, Any]] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "outcome": self.outcome.value,
            "message": self.message,
            "intent": self.intent,
            "repositories": list(self.repositories),
            "branch": self.branch,
            "window": {"start": isoformat_z(self.window_start), "end": isoformat_z(self.window_end)},
            "denial": self.denial,
            "details": self.details,
        }


__all__ = [
    "Outcome",
    "RepoOutcome",
    "BatchResult",
    "Signal",
    "PrOutcome",
    "RepositoryReport",
    "ReconciliationReport",
    "TickReport",
    "StatusEntry",
    "CommandResult",
]
