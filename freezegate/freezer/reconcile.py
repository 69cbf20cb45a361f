"""
PR reconciliation: make every open pull request's merge signal match freeze state.

Each pass loads the repository's open freeze records once, computes the desired
signal per PR (``block`` when a covering freeze is active and the PR holds no
unlock newer than every covering freeze), reads the current signal and only
pushes when it differs. Failures are recorded per PR and never abort the pass.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence, Tuple

from freezegate.common.clock import now_utc
from freezegate.config.settings import Settings, get_settings
from freezegate.platform.base import PlatformAdapter, PullRequest
from freezegate.storage.base import FreezeStore

from .calls import guarded
from .errors import AdapterFailure
from .models import FreezeRecord, freezing_records
from .results import PrOutcome, ReconciliationReport, RepositoryReport, Signal

log = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


class PrReconciler:
    def __init__(
        self,
        store: FreezeStore,
        platform: PlatformAdapter,
        *,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = now_utc,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        cfg = settings or get_settings()
        self.store = store
        self.platform = platform
        self.timeout = cfg.ADAPTER_TIMEOUT_SEC
        self.max_concurrency = max(1, cfg.RECONCILE_MAX_CONCURRENCY)
        self.max_retries = max(0, cfg.RECONCILE_MAX_RETRIES)
        self.retry_base_ms = cfg.RECONCILE_RETRY_BASE_MS
        self._clock = clock
        self._sleep = sleep

    async def reconcile(
        self, installation_id: int, repository: str, *, now: Optional[datetime] = None
    ) -> RepositoryReport:
        now = now or self._clock()
        report = RepositoryReport(repository=repository, installation_id=installation_id)
        try:
            records = await guarded("find_open", self.store.find_open(repository, installation_id=installation_id), self.timeout)
            prs = await guarded(
                "list_open_pull_requests",
                self.platform.list_open_pull_requests(installation_id, repository),
                self.timeout,
            )
        except AdapterFailure as exc:
            log.error("reconcile_repository_failed", extra={"repository": repository, "error": str(exc)})
            report.error = str(exc)
            return report

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _one(pr: PullRequest) -> PrOutcome:
            async with semaphore:
                return await self._reconcile_pr(installation_id, repository, pr, records, now)

        report.prs = list(await asyncio.gather(*(_one(pr) for pr in prs)))
        log.info(
            "reconcile_repository",
            extra={
                "repository": repository,
                "total_prs": len(report.prs),
                "pushed": sum(1 for pr in report.prs if pr.pushed),
                "failed": len(report.failed),
            },
        )
        return report

    async def reconcile_many(
        self, targets: Iterable[Tuple[int, str]], *, now: Optional[datetime] = None
    ) -> ReconciliationReport:
        now = now or self._clock()
        seen: List[Tuple[int, str]] = []
        for target in targets:
            if target not in seen:
                seen.append(target)
        result = ReconciliationReport()
        for installation_id, repository in seen:
            result.repositories.append(await self.reconcile(installation_id, repository, now=now))
        return result

    async def reconcile_all(self, *, now: Optional[datetime] = None) -> ReconciliationReport:
        """Reconcile every repository that currently has an active freeze."""
        now = now or self._clock()
        try:
            active = await guarded("find_active", self.store.find_active(), self.timeout)
        except AdapterFailure as exc:
            log.error("reconcile_all_failed", extra={"error": str(exc)})
            return ReconciliationReport(
                repositories=[RepositoryReport(repository="*", installation_id=0, error=str(exc))]
            )
        return await self.reconcile_many(((rec.installation_id, rec.repository) for rec in active), now=now)

    async def reconcile_pull_request(
        self, installation_id: int, repository: str, pr: PullRequest, *, now: Optional[datetime] = None
    ) -> PrOutcome:
        now = now or self._clock()
        try:
            records = await guarded("find_open", self.store.find_open(repository, installation_id=installation_id), self.timeout)
        except AdapterFailure as exc:
            return PrOutcome(number=pr.number, target_branch=pr.target_branch, desired=Signal.BLOCK, error=str(exc), retryable=True)
        return await self._reconcile_pr(installation_id, repository, pr, records, now)

    async def desired_signal(
        self,
        installation_id: int,
        repository: str,
        pr: PullRequest,
        records: Sequence[FreezeRecord],
        now: datetime,
    ) -> Tuple[Signal, Optional[FreezeRecord], bool]:
        freezing = freezing_records(records, repository, pr.target_branch, now)
        if not freezing:
            return Signal.CLEAR, None, False
        latest = max(freezing, key=lambda rec: rec.started_at)
        unlock = await guarded(
            "find_unlock", self.store.find_unlock(installation_id, repository, pr.number), self.timeout
        )
        if unlock is not None and unlock.valid_for(freezing):
            return Signal.CLEAR, latest, True
        return Signal.BLOCK, latest, False

    async def _reconcile_pr(
        self,
        installation_id: int,
        repository: str,
        pr: PullRequest,
        records: Sequence[FreezeRecord],
        now: datetime,
    ) -> PrOutcome:
        outcome = PrOutcome(number=pr.number, target_branch=pr.target_branch, desired=Signal.BLOCK)
        try:
            desired, freeze, unlocked = await self.desired_signal(installation_id, repository, pr, records, now)
        except AdapterFailure as exc:
            outcome.error = str(exc)
            outcome.retryable = exc.retryable
            return outcome
        outcome.desired = desired
        outcome.unlocked = unlocked
        block = desired == Signal.BLOCK

        try:
            current = await guarded(
                "get_merge_signal", self.platform.get_merge_signal(installation_id, repository, pr), self.timeout
            )
        except AdapterFailure as exc:
            log.debug("merge_signal_unknown", extra={"repository": repository, "pr": pr.number, "error": str(exc)})
            current = None
        if current is not None and current == block:
            outcome.unchanged = True
            return outcome

        attempt = 0
        while True:
            try:
                await guarded(
                    "push_merge_signal",
                    self.platform.push_merge_signal(installation_id, repository, pr, block, freeze),
                    self.timeout,
                )
                outcome.pushed = True
                if attempt:
                    log.info("merge_signal_retry_ok", extra={"repository": repository, "pr": pr.number, "attempt": attempt})
                return outcome
            except AdapterFailure as exc:
                attempt += 1
                if not exc.retryable or attempt > self.max_retries:
                    log.warning(
                        "merge_signal_failed",
                        extra={"repository": repository, "pr": pr.number, "attempts": attempt, "error": str(exc)},
                    )
                    outcome.error = str(exc)
                    outcome.retryable = exc.retryable
                    return outcome
                await self._sleep(self.retry_base_ms * (2 ** (attempt - 1)) / 1000)


__all__ = ["PrReconciler"]
