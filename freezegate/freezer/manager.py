"""
Freeze manager: the freeze state machine.

States per (repository, branch) scope::

    none -> scheduled -> active -> expired | ended

Store writes are the commit point of every transition. Protection toggles and
PR reconciliation run after the commit; their failures are reported as
warnings and converge on the next tick.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from freezegate.common.clock import isoformat_z, now_utc
from freezegate.config.settings import Settings, get_settings
from freezegate.platform.base import PlatformAdapter
from freezegate.storage.base import FreezeStore

from .calls import guarded
from .errors import AdapterFailure, AdapterTimeout, FreezeGateError, InvalidTimestamp, NoActiveFreeze
from .models import FreezeRecord, FreezeScope, FreezeStatus, is_frozen
from .reconcile import PrReconciler
from .results import BatchResult, RepoOutcome, StatusEntry, TickReport

log = logging.getLogger(__name__)

_DEFAULT = object()


class FreezeManager:
    def __init__(
        self,
        store: FreezeStore,
        platform: PlatformAdapter,
        reconciler: Optional[PrReconciler] = None,
        *,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        cfg = settings or get_settings()
        self.store = store
        self.platform = platform
        self.reconciler = reconciler or PrReconciler(store, platform, settings=cfg, clock=clock)
        self.timeout = cfg.ADAPTER_TIMEOUT_SEC
        self.batch_concurrency = max(1, cfg.BATCH_MAX_CONCURRENCY)
        self.default_duration = cfg.get_default_freeze_duration()
        self._clock = clock

    # ===== queries =====

    async def is_frozen(self, repository: str, branch: Optional[str], *, at: Optional[datetime] = None) -> bool:
        at = at or self._clock()
        records = await guarded("find_open", self.store.find_open(repository), self.timeout)
        return is_frozen(records, repository, branch, at)

    async def status(
        self, installation_id: int, repositories: Sequence[str], *, now: Optional[datetime] = None
    ) -> List[StatusEntry]:
        now = now or self._clock()
        entries: List[StatusEntry] = []
        for repository in repositories:
            try:
                records = await guarded(
                    "find_open", self.store.find_open(repository, installation_id=installation_id), self.timeout
                )
            except AdapterFailure as exc:
                entries.append(StatusEntry(repository=repository, error=str(exc)))
                continue
            entries.append(
                StatusEntry(
                    repository=repository,
                    active=[rec for rec in records if rec.is_active_at(now)],
                    scheduled=[
                        rec for rec in records if rec.status == FreezeStatus.SCHEDULED and rec.started_at > now
                    ],
                )
            )
        return entries

    async def installation_repositories(self, installation_id: int) -> List[str]:
        return await guarded(
            "list_installation_repositories",
            self.platform.list_installation_repositories(installation_id),
            self.timeout,
        )

    async def active_repositories(self, installation_id: int) -> List[str]:
        active = await guarded("find_active", self.store.find_active(installation_id=installation_id), self.timeout)
        return list(dict.fromkeys(rec.repository for rec in active))

    # ===== create =====

    async def freeze(
        self,
        installation_id: int,
        repository: str,
        actor: str,
        *,
        branch: Optional[str] = None,
        duration=_DEFAULT,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RepoOutcome:
        """Start a freeze now. ``duration=None`` freezes until lifted; omitted uses the default."""
        now = now or self._clock()
        if duration is _DEFAULT:
            duration = self.default_duration
        record = FreezeRecord(
            repository=repository,
            installation_id=installation_id,
            branch=branch,
            started_at=now,
            expires_at=now + duration if duration else None,
            reason=reason,
            initiated_by=actor,
            status=FreezeStatus.ACTIVE,
        )
        return await self._create(record, now)

    async def schedule_freeze(
        self,
        installation_id: int,
        repository: str,
        actor: str,
        *,
        start_at: datetime,
        expires_at: Optional[datetime] = None,
        duration: Optional[timedelta] = None,
        branch: Optional[str] = None,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RepoOutcome:
        now = now or self._clock()
        if expires_at is None and duration:
            expires_at = start_at + duration
        if expires_at is not None and expires_at <= now:
            raise InvalidTimestamp(isoformat_z(expires_at), "window already ended")
        record = FreezeRecord(
            repository=repository,
            installation_id=installation_id,
            branch=branch,
            started_at=start_at,
            expires_at=expires_at,
            reason=reason,
            initiated_by=actor,
            status=FreezeStatus.SCHEDULED if start_at > now else FreezeStatus.ACTIVE,
        )
        return await self._create(record, now)

    async def _create(self, record: FreezeRecord, now: datetime) -> RepoOutcome:
        warnings: List[str] = []
        try:
            await guarded("create_freeze", self.store.create_freeze(record, now=now), self.timeout)
        except AdapterTimeout:
            if not await self._stored(record.id):
                raise
            log.warning("create_freeze_late_commit", extra={"freeze_id": record.id, "repository": record.repository})
            warnings.append(f"{record.scope.label}: store was slow to confirm the freeze; it was saved")
        log.info(
            "freeze_created",
            extra={
                "freeze_id": record.id,
                "repository": record.repository,
                "branch": record.branch,
                "status": record.status.value,
                "actor": record.initiated_by,
            },
        )
        outcome = RepoOutcome(repository=record.repository, ok=True, records=[record], warnings=warnings)
        if record.status == FreezeStatus.ACTIVE:
            await self._apply(record.installation_id, record.scope, outcome.warnings)
            await self._reconcile(record.installation_id, record.repository, now, outcome.warnings)
        return outcome

    async def _stored(self, freeze_id: str) -> bool:
        """Whether a create that timed out still committed."""
        try:
            return await guarded("get_freeze", self.store.get_freeze(freeze_id), self.timeout) is not None
        except AdapterFailure:
            return False

    async def freeze_all(
        self,
        installation_id: int,
        actor: str,
        *,
        repositories: Optional[Sequence[str]] = None,
        branch: Optional[str] = None,
        duration=_DEFAULT,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> BatchResult:
        now = now or self._clock()
        if not repositories:
            repositories = await self.installation_repositories(installation_id)

        async def _one(repository: str) -> RepoOutcome:
            return await self.freeze(
                installation_id, repository, actor, branch=branch, duration=duration, reason=reason, now=now
            )

        return await self.for_each(repositories, _one)

    # ===== end =====

    async def unfreeze(
        self,
        installation_id: int,
        repository: str,
        actor: str,
        *,
        branch: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RepoOutcome:
        """End the active freeze of the exact scope; a branchless call never ends branch freezes."""
        now = now or self._clock()
        candidates = await guarded(
            "find_active",
            self.store.find_active(repository, branch, installation_id=installation_id),
            self.timeout,
        )
        return await self._end(installation_id, repository, actor, candidates, now, branch=branch)

    async def unfreeze_all(
        self,
        installation_id: int,
        actor: str,
        *,
        repositories: Optional[Sequence[str]] = None,
        now: Optional[datetime] = None,
    ) -> BatchResult:
        now = now or self._clock()
        if not repositories:
            repositories = await self.active_repositories(installation_id)

        async def _one(repository: str) -> RepoOutcome:
            candidates = await guarded(
                "find_active",
                self.store.find_active(repository, installation_id=installation_id),
                self.timeout,
            )
            return await self._end(installation_id, repository, actor, candidates, now)

        return await self.for_each(repositories, _one)

    async def _end(
        self,
        installation_id: int,
        repository: str,
        actor: str,
        candidates: Iterable[FreezeRecord],
        now: datetime,
        *,
        branch: Optional[str] = None,
    ) -> RepoOutcome:
        ended: List[FreezeRecord] = []
        for rec in candidates:
            updated = await guarded(
                "update_status",
                self.store.update_status(
                    rec.id, FreezeStatus.ENDED, expected=FreezeStatus.ACTIVE, ended_by=actor, ended_at=now
                ),
                self.timeout,
            )
            if updated is not None:
                ended.append(updated)
        if not ended:
            raise NoActiveFreeze(repository, branch)
        log.info(
            "freeze_ended",
            extra={"repository": repository, "branch": branch, "count": len(ended), "actor": actor},
        )
        outcome = RepoOutcome(repository=repository, ok=True, records=ended)
        for scope in dict.fromkeys(rec.scope for rec in ended):
            await self._remove(installation_id, scope, outcome.warnings)
        await self._reconcile(installation_id, repository, now, outcome.warnings)
        return outcome

    # ===== unlock =====

    async def unlock_pr(
        self,
        installation_id: int,
        repository: str,
        pr_number: int,
        actor: str,
        *,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RepoOutcome:
        now = now or self._clock()
        records = await guarded(
            "find_open", self.store.find_open(repository, installation_id=installation_id), self.timeout
        )
        if not any(rec.is_active_at(now) for rec in records):
            raise NoActiveFreeze(repository)
        await guarded(
            "create_unlock",
            self.store.create_unlock(installation_id, repository, pr_number, actor, at=now, reason=reason),
            self.timeout,
        )
        log.info("pr_unlocked", extra={"repository": repository, "pr": pr_number, "actor": actor})
        outcome = RepoOutcome(repository=repository, ok=True)
        await self._reconcile(installation_id, repository, now, outcome.warnings)
        return outcome

    # ===== tick =====

    async def tick(self, *, now: Optional[datetime] = None) -> TickReport:
        """Expire, promote and re-assert protection. Safe to run concurrently on several instances."""
        now = now or self._clock()
        report = TickReport(now=now)
        touched: Dict[Tuple[int, str], None] = {}

        try:
            await self._expire_due(now, report, touched)
            await self._promote_due(now, report, touched)
            active = await guarded("find_active", self.store.find_active(), self.timeout)
        except AdapterFailure as exc:
            log.error("tick_store_failed", extra={"error": str(exc)})
            report.errors.append(str(exc))
            return report

        asserted: Set[Tuple[int, FreezeScope]] = {(rec.installation_id, rec.scope) for rec in report.activated}
        for rec in active:
            if not rec.is_active_at(now):
                continue
            touched[(rec.installation_id, rec.repository)] = None
            key = (rec.installation_id, rec.scope)
            if key in asserted:
                continue
            asserted.add(key)
            await self._apply(rec.installation_id, rec.scope, report.errors)

        report.reconciliation = await self.reconciler.reconcile_many(list(touched), now=now)
        log.info(
            "tick",
            extra={
                "expired": len(report.expired),
                "activated": len(report.activated),
                "conflicts": len(report.conflicts),
                "errors": len(report.errors),
            },
        )
        return report

    async def _expire_due(self, now: datetime, report: TickReport, touched: Dict) -> None:
        for rec in await guarded("find_expiring", self.store.find_expiring(now), self.timeout):
            updated = await guarded(
                "update_status",
                self.store.update_status(rec.id, FreezeStatus.EXPIRED, expected=FreezeStatus.ACTIVE),
                self.timeout,
            )
            if updated is None:
                # another instance got there first
                continue
            report.expired.append(updated)
            touched[(rec.installation_id, rec.repository)] = None
            log.info("freeze_expired", extra={"freeze_id": rec.id, "repository": rec.repository, "branch": rec.branch})

        for installation_id, scope in dict.fromkeys((rec.installation_id, rec.scope) for rec in report.expired):
            remaining = await guarded(
                "find_active",
                self.store.find_active(scope.repository, scope.branch, installation_id=installation_id),
                self.timeout,
            )
            if not any(rec.is_active_at(now) for rec in remaining):
                await self._remove(installation_id, scope, report.errors)

    async def _promote_due(self, now: datetime, report: TickReport, touched: Dict) -> None:
        for rec in await guarded("find_scheduled_due", self.store.find_scheduled_due(now), self.timeout):
            if rec.expires_at is not None and rec.expires_at <= now:
                # whole window elapsed before any tick saw it
                await guarded(
                    "update_status",
                    self.store.update_status(rec.id, FreezeStatus.EXPIRED, expected=FreezeStatus.SCHEDULED),
                    self.timeout,
                )
                continue
            holders = await guarded(
                "find_active",
                self.store.find_active(rec.repository, rec.branch, installation_id=rec.installation_id),
                self.timeout,
            )
            if any(other.id != rec.id and other.is_active_at(now) for other in holders):
                log.warning(
                    "scheduled_freeze_conflict",
                    extra={"freeze_id": rec.id, "repository": rec.repository, "branch": rec.branch},
                )
                report.conflicts.append(rec)
                continue
            updated = await guarded(
                "update_status",
                self.store.update_status(rec.id, FreezeStatus.ACTIVE, expected=FreezeStatus.SCHEDULED),
                self.timeout,
            )
            if updated is None:
                continue
            report.activated.append(updated)
            touched[(rec.installation_id, rec.repository)] = None
            await self._apply(rec.installation_id, rec.scope, report.errors)
            log.info("freeze_activated", extra={"freeze_id": rec.id, "repository": rec.repository, "branch": rec.branch})

    # ===== side effects =====

    async def _apply(self, installation_id: int, scope: FreezeScope, problems: List[str]) -> None:
        try:
            await guarded(
                "apply_protection",
                self.platform.apply_protection(installation_id, scope.repository, scope.branch),
                self.timeout,
            )
        except AdapterFailure as exc:
            log.warning("protection_apply_failed", extra={"scope": scope.label, "error": str(exc)})
            problems.append(f"{scope.label}: {exc}")

    async def _remove(self, installation_id: int, scope: FreezeScope, problems: List[str]) -> None:
        try:
            await guarded(
                "remove_protection",
                self.platform.remove_protection(installation_id, scope.repository, scope.branch),
                self.timeout,
            )
        except AdapterFailure as exc:
            log.warning("protection_remove_failed", extra={"scope": scope.label, "error": str(exc)})
            problems.append(f"{scope.label}: {exc}")

    async def _reconcile(self, installation_id: int, repository: str, now: datetime, problems: List[str]) -> None:
        report = await self.reconciler.reconcile(installation_id, repository, now=now)
        if report.error:
            problems.append(f"{repository}: PR refresh failed: {report.error}")
        for pr in report.failed:
            problems.append(f"{repository}#{pr.number}: {pr.error}")

    async def for_each(
        self, repositories: Sequence[str], run: Callable[[str], Awaitable[RepoOutcome]]
    ) -> BatchResult:
        """Run ``run`` per repository with bounded parallelism; freeze errors become failed outcomes."""
        semaphore = asyncio.Semaphore(self.batch_concurrency)

        async def _guard(repository: str) -> RepoOutcome:
            async with semaphore:
                try:
                    return await run(repository)
                except FreezeGateError as exc:
                    return RepoOutcome(
                        repository=repository,
                        ok=False,
                        error=str(exc),
                        error_code=getattr(exc, "code", "error"),
                    )

        unique = list(dict.fromkeys(repositories))
        return BatchResult(outcomes=list(await asyncio.gather(*(_guard(repo) for repo in unique))))


__all__ = ["FreezeManager"]
