"""
Command service: comment text in, ``CommandResult`` out.

Pipeline: parse -> authorize every target repository -> freeze manager ->
markdown reply. Parse and permission failures are rejected before any
mutation; every other error is turned into a single reply message.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from freezegate.common.clock import now_utc
from freezegate.policy.permissions import PermissionResolver

from . import messages
from .commands import Command, Intent, parse
from .errors import AdapterFailure, NoActiveFreeze, ParseError, StateConflict
from .manager import FreezeManager
from .results import BatchResult, CommandResult, Outcome, RepoOutcome

log = logging.getLogger(__name__)

_TITLES = {
    Intent.FREEZE: "Freeze Failed",
    Intent.FREEZE_ALL: "Freeze All Failed",
    Intent.UNFREEZE: "Unfreeze Failed",
    Intent.UNFREEZE_ALL: "Unfreeze All Failed",
    Intent.STATUS: "Status Failed",
    Intent.SCHEDULE_FREEZE: "Schedule Failed",
    Intent.UNLOCK_PR: "Unlock Failed",
    Intent.HELP: "Help Failed",
}

_CONFLICT_CODES = {"conflict", "freeze_already_active", "no_active_freeze"}
_DENIED = "permission_denied"


@dataclass(frozen=True)
class CommandContext:
    """Where a comment was posted and who posted it."""

    installation_id: int
    repository: str
    actor: str
    pr_number: Optional[int] = None


class CommandService:
    def __init__(
        self,
        manager: FreezeManager,
        resolver: PermissionResolver,
        *,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.manager = manager
        self.resolver = resolver
        self._clock = clock

    async def handle(self, text: str, context: CommandContext, *, now: Optional[datetime] = None) -> CommandResult:
        if not (text or "").lstrip().startswith("/"):
            return CommandResult(ok=True, outcome=Outcome.IGNORED, message="")

        try:
            command = parse(text, current_pr=context.pr_number)
        except ParseError as exc:
            log.info("command_rejected", extra={"actor": context.actor, "error_code": exc.code})
            return CommandResult(
                ok=False,
                outcome=Outcome.PARSE_ERROR,
                message=messages.parse_error(str(exc)),
                details={"error_code": exc.code},
            )

        result = self._authorize(command, context)
        if result is None:
            result = await self._execute(command, context, now or self._clock())
        log.info(
            "command_handled",
            extra={
                "actor": context.actor,
                "repository": context.repository,
                "intent": command.intent.value,
                "outcome": result.outcome.value,
            },
        )
        return result

    # ===== authorization =====

    def _permission_targets(self, command: Command, context: CommandContext) -> Sequence[str]:
        return command.repositories or (context.repository,)

    def _authorize(self, command: Command, context: CommandContext) -> Optional[CommandResult]:
        for repository in self._permission_targets(command, context):
            decision = self.resolver.check(context.installation_id, repository, context.actor, command.intent)
            if decision.allowed:
                continue
            return CommandResult(
                ok=False,
                outcome=Outcome.PERMISSION_DENIED,
                message=messages.permission_denied(context.actor, decision.reason),
                intent=command.intent.value,
                repositories=[repository],
                denial={
                    "repository": repository,
                    "role": decision.role.value if decision.role else None,
                    "missing_capability": decision.missing_capability,
                },
            )
        return None

    def _split_permitted(
        self, repositories: Sequence[str], command: Command, context: CommandContext
    ) -> Tuple[List[str], List[RepoOutcome]]:
        """Filter an expanded repository list down to the ones the actor may act on."""
        allowed: List[str] = []
        denied: List[RepoOutcome] = []
        for repository in dict.fromkeys(repositories):
            decision = self.resolver.check(context.installation_id, repository, context.actor, command.intent)
            if decision.allowed:
                allowed.append(repository)
            else:
                denied.append(RepoOutcome(repository=repository, ok=False, error=decision.reason, error_code=_DENIED))
        return allowed, denied

    # ===== dispatch =====

    async def _execute(self, command: Command, context: CommandContext, now: datetime) -> CommandResult:
        handler = getattr(self, "_do_" + command.intent.value.replace("-", "_"))
        try:
            return await handler(command, context, now)
        except ParseError as exc:
            return CommandResult(
                ok=False,
                outcome=Outcome.PARSE_ERROR,
                message=messages.parse_error(str(exc)),
                intent=command.intent.value,
                details={"error_code": exc.code},
            )
        except StateConflict as exc:
            return CommandResult(
                ok=False,
                outcome=Outcome.CONFLICT,
                message=messages.conflict(_conflict_title(exc), str(exc)),
                intent=command.intent.value,
                repositories=[exc.repository],
                branch=exc.branch,
                details={"error_code": exc.code},
            )
        except AdapterFailure as exc:
            log.error(
                "command_failed",
                extra={"intent": command.intent.value, "operation": exc.operation, "error": str(exc)},
            )
            return CommandResult(
                ok=False,
                outcome=Outcome.ADAPTER_FAILURE,
                message=messages.operation_failed(_TITLES[command.intent], str(exc)),
                intent=command.intent.value,
                repositories=list(command.repositories or (context.repository,)),
                details={"error_code": exc.code, "retryable": exc.retryable},
            )

    def _freeze_kwargs(self, command: Command) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {"branch": command.branch, "reason": command.reason}
        if command.duration is not None:
            kwargs["duration"] = command.duration
        return kwargs

    async def _do_help(self, command: Command, context: CommandContext, now: datetime) -> CommandResult:
        return CommandResult(ok=True, outcome=Outcome.SUCCESS, message=messages.help_message(), intent=command.intent.value)

    async def _do_status(self, command: Command, context: CommandContext, now: datetime) -> CommandResult:
        repositories = list(command.repositories or (context.repository,))
        entries = await self.manager.status(context.installation_id, repositories, now=now)
        return CommandResult(
            ok=all(entry.error is None for entry in entries),
            outcome=Outcome.SUCCESS if all(entry.error is None for entry in entries) else Outcome.PARTIAL,
            message=messages.status_table(entries),
            intent=command.intent.value,
            repositories=repositories,
            details={"frozen": {entry.repository: entry.frozen for entry in entries}},
        )

    async def _do_freeze(self, command: Command, context: CommandContext, now: datetime) -> CommandResult:
        repositories = list(command.repositories or (context.repository,))
        if len(repositories) > 1:
            batch = await self.manager.freeze_all(
                context.installation_id, context.actor, repositories=repositories, now=now, **self._freeze_kwargs(command)
            )
            return _batch_result(command, batch, freezing=True)
        outcome = await self.manager.freeze(
            context.installation_id, repositories[0], context.actor, now=now, **self._freeze_kwargs(command)
        )
        record = outcome.records[0]
        return _single_result(command, outcome, messages.freeze_success(record, outcome.warnings), record)

    async def _do_freeze_all(self, command: Command, context: CommandContext, now: datetime) -> CommandResult:
        repositories, denied = list(command.repositories), []
        if not repositories:
            targets = await self.manager.installation_repositories(context.installation_id)
            repositories, denied = self._split_permitted(targets, command, context)
        batch = BatchResult()
        if repositories:
            batch = await self.manager.freeze_all(
                context.installation_id,
                context.actor,
                repositories=repositories,
                now=now,
                **self._freeze_kwargs(command),
            )
        batch.outcomes.extend(denied)
        return _batch_result(command, batch, freezing=True)

    async def _do_schedule_freeze(self, command: Command, context: CommandContext, now: datetime) -> CommandResult:
        duration = command.duration
        if command.end_at is None and duration is None:
            duration = self.manager.default_duration

        async def _one(repository: str) -> RepoOutcome:
            return await self.manager.schedule_freeze(
                context.installation_id,
                repository,
                context.actor,
                start_at=command.start_at,
                expires_at=command.end_at,
                duration=duration,
                branch=command.branch,
                reason=command.reason,
                now=now,
            )

        repositories = list(command.repositories or (context.repository,))
        if len(repositories) > 1:
            return _batch_result(command, await self.manager.for_each(repositories, _one), freezing=True)
        outcome = await _one(repositories[0])
        record = outcome.records[0]
        if record.started_at > now:
            message = messages.schedule_success(record)
        else:
            message = messages.freeze_success(record, outcome.warnings)
        return _single_result(command, outcome, message, record)

    async def _do_unfreeze(self, command: Command, context: CommandContext, now: datetime) -> CommandResult:
        async def _one(repository: str) -> RepoOutcome:
            return await self.manager.unfreeze(
                context.installation_id, repository, context.actor, branch=command.branch, now=now
            )

        repositories = list(command.repositories or (context.repository,))
        if len(repositories) > 1:
            return _batch_result(command, await self.manager.for_each(repositories, _one), freezing=False)
        outcome = await _one(repositories[0])
        return _single_result(
            command, outcome, messages.unfreeze_success(outcome.repository, command.branch, outcome.warnings)
        )

    async def _do_unfreeze_all(self, command: Command, context: CommandContext, now: datetime) -> CommandResult:
        repositories, denied = list(command.repositories), []
        if not repositories:
            targets = await self.manager.active_repositories(context.installation_id)
            repositories, denied = self._split_permitted(targets, command, context)
        batch = BatchResult()
        if repositories:
            batch = await self.manager.unfreeze_all(
                context.installation_id, context.actor, repositories=repositories, now=now
            )
        batch.outcomes.extend(denied)
        if not batch.outcomes:
            raise NoActiveFreeze("any repository")
        return _batch_result(command, batch, freezing=False)

    async def _do_unlock_pr(self, command: Command, context: CommandContext, now: datetime) -> CommandResult:
        repository = (command.repositories or (context.repository,))[0]
        outcome = await self.manager.unlock_pr(
            context.installation_id, repository, command.pr_number, context.actor, reason=command.reason, now=now
        )
        result = _single_result(command, outcome, messages.unlock_success(repository, command.pr_number, command.reason))
        result.details["pr_number"] = command.pr_number
        return result


def _conflict_title(exc: StateConflict) -> str:
    if isinstance(exc, NoActiveFreeze):
        return "Not Frozen"
    return "Already Frozen"


def _single_result(command: Command, outcome: RepoOutcome, message: str, record=None) -> CommandResult:
    details: Dict[str, Any] = {"warnings": list(outcome.warnings)}
    if outcome.records:
        details["freeze_ids"] = [rec.id for rec in outcome.records]
    return CommandResult(
        ok=True,
        outcome=Outcome.SUCCESS,
        message=message,
        intent=command.intent.value,
        repositories=[outcome.repository],
        branch=command.branch,
        window_start=record.started_at if record else None,
        window_end=record.expires_at if record else None,
        details=details,
    )


def _batch_outcome(batch: BatchResult) -> Outcome:
    if not batch.failed:
        return Outcome.SUCCESS
    if batch.succeeded:
        return Outcome.PARTIAL
    if all(o.error_code == _DENIED for o in batch.failed):
        return Outcome.PERMISSION_DENIED
    if all(o.error_code in _CONFLICT_CODES for o in batch.failed):
        return Outcome.CONFLICT
    return Outcome.ADAPTER_FAILURE


def _batch_result(command: Command, batch: BatchResult, *, freezing: bool) -> CommandResult:
    per_repo: List[Dict[str, Any]] = [
        {
            "repository": o.repository,
            "ok": o.ok,
            "error": o.error,
            "error_code": o.error_code,
            "warnings": list(o.warnings),
        }
        for o in batch.outcomes
    ]
    return CommandResult(
        ok=batch.ok,
        outcome=_batch_outcome(batch),
        message=messages.batch_result(batch, freezing=freezing),
        intent=command.intent.value,
        repositories=[o.repository for o in batch.outcomes],
        branch=command.branch,
        details={"repositories": per_repo},
    )


__all__ = ["CommandContext", "CommandService"]
