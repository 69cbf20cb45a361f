"""
User-facing markdown for command replies and check-run output.
"""
from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional, Sequence

from .commands import usage
from .models import FreezeRecord
from .results import BatchResult, StatusEntry
from .timeparse import format_duration

MAX_LISTED_ERRORS = 5


def format_time(value: Optional[datetime]) -> str:
    if value is None:
        return "-"
    return value.strftime("%Y-%m-%d %H:%M:%S UTC")


def format_window(record: FreezeRecord) -> str:
    if record.expires_at is None:
        return f"from {format_time(record.started_at)} until lifted"
    span = format_duration(record.expires_at - record.started_at)
    return f"from {format_time(record.started_at)} to {format_time(record.expires_at)} ({span})"


def format_reason(reason: Optional[str]) -> str:
    if reason and reason.strip():
        return f"\n\n**Reason**: _{reason.strip()}_"
    return ""


def _scope(repository: str, branch: Optional[str]) -> str:
    return f"`{repository}` (branch `{branch}`)" if branch else f"`{repository}`"


def _error_list(errors: Sequence[str]) -> str:
    shown = list(errors[:MAX_LISTED_ERRORS])
    lines = "\n".join(f"- {e}" for e in shown)
    if len(errors) > MAX_LISTED_ERRORS:
        lines += f"\n- ... and {len(errors) - MAX_LISTED_ERRORS} more"
    return lines


def _warnings(warnings: Sequence[str]) -> str:
    if not warnings:
        return ""
    return "\n\n> ⚠️ Follow-up needed (will be retried automatically):\n" + "\n".join(f"> - {w}" for w in warnings)


def freeze_success(record: FreezeRecord, warnings: Sequence[str] = ()) -> str:
    return (
        "## ❄️ Repository Frozen\n\n"
        f"🔒 **{_scope(record.repository, record.branch)} has been frozen** {format_window(record)}"
        f"{format_reason(record.reason)}\n\n"
        "> 🚨 **Important**: pull requests are blocked until the freeze is lifted.\n\n"
        "*Use `/unfreeze` to lift the freeze when ready.*"
        f"{_warnings(warnings)}"
    )


def schedule_success(record: FreezeRecord) -> str:
    return (
        "## ⏰ Freeze Scheduled\n\n"
        f"🗓️ **{_scope(record.repository, record.branch)} will be frozen** {format_window(record)}"
        f"{format_reason(record.reason)}\n\n"
        "*The freeze starts automatically at the scheduled time.*"
    )


def unfreeze_success(repository: str, branch: Optional[str] = None, warnings: Sequence[str] = ()) -> str:
    return (
        "## 🌞 Repository Unfrozen\n\n"
        f"✅ **{_scope(repository, branch)} has been unfrozen**\n\n"
        "> 🎉 **All systems go**: pull requests can be merged again.\n\n"
        "*The freeze has been successfully lifted.*"
        f"{_warnings(warnings)}"
    )


def batch_result(batch: BatchResult, *, freezing: bool) -> str:
    verb = "froze" if freezing else "unfroze"
    ok = len(batch.succeeded)
    failed = batch.failed
    if not failed:
        title = "## ❄️ All Repositories Frozen" if freezing else "## 🌞 All Repositories Unfrozen"
        body = f"{title}\n\n✅ **Successfully {verb} {ok} repositories**"
    else:
        title = "## ⚠️ Partial Freeze Success" if freezing else "## ⚠️ Partial Unfreeze Success"
        errors = [f"`{o.repository}`: {o.error}" for o in failed]
        body = (
            f"{title}\n\n"
            f"✅ **Successfully {verb} {ok} repositories**\n"
            f"❌ **Failed for {len(failed)} repositories**\n\n"
            f"**Errors encountered:**\n{_error_list(errors)}"
        )
    rows = "\n".join(
        f"| `{o.repository}` | {'✅' if o.ok else '❌'} | {o.error or '-'} |" for o in batch.outcomes
    )
    table = f"\n\n| Repository | Result | Detail |\n|---|---|---|\n{rows}" if batch.outcomes else ""
    hint = "\n\n*Use `/unfreeze-all` to lift all freezes when ready.*" if freezing else ""
    return body + table + hint


def unlock_success(repository: str, pr_number: int, reason: Optional[str] = None) -> str:
    return (
        "## 🔓 Pull Request Unlocked\n\n"
        f"✅ **PR #{pr_number} in `{repository}` can be merged during the current freeze**"
        f"{format_reason(reason)}\n\n"
        "*The unlock ends when a new freeze starts.*"
    )


def status_table(entries: List[StatusEntry]) -> str:
    table = "## 📊 Repository Freeze Status\n\n"
    table += "| Repository | Branch | Status | Start | End | Reason |\n"
    table += "|------------|--------|--------|-------|-----|--------|\n"
    for entry in entries:
        if entry.error:
            table += f"| {entry.repository} | - | ❌ Error: {entry.error} | - | - | - |\n"
            continue
        rows = [("🔒 Active", rec) for rec in entry.active] + [("⏰ Scheduled", rec) for rec in entry.scheduled]
        if not rows:
            table += f"| {entry.repository} | - | 🌞 Off | - | - | - |\n"
            continue
        for label, rec in rows:
            table += (
                f"| {entry.repository} | {rec.branch or 'all'} | {label} | {format_time(rec.started_at)} | "
                f"{format_time(rec.expires_at)} | {rec.reason or '-'} |\n"
            )
    table += "\n*Use `/freeze` or `/unfreeze` to manage individual repositories.*"
    return table


def permission_denied(actor: str, reason: str) -> str:
    return (
        "## ❌ Permission Denied\n\n"
        f"🚫 **Access denied for user `{actor}`**\n\n"
        f"**Reason**: {reason}\n\n"
        "*Contact your repository administrator to request access.*"
    )


def parse_error(error: str) -> str:
    return (
        "## ❌ Invalid Command\n\n"
        f"🚫 **{error}**\n\n"
        "*Use `/help` to list the available commands.*"
    )


def conflict(title: str, error: str) -> str:
    return f"## ℹ️ {title}\n\n{error}"


def operation_failed(title: str, error: str) -> str:
    return (
        f"## ❌ {title}\n\n"
        f"```\n{error}\n```\n\n"
        "*Please try again later.*"
    )


def help_message() -> str:
    lines = "\n".join(f"- `{cmd}` - {text}" for cmd, text in usage())
    return (
        "## ❄️ Freeze Commands\n\n"
        f"{lines}\n\n"
        "Durations accept `30m`, `2h`, `1d` or ISO 8601 (`PT2H30M`). "
        "Repositories may be comma-separated or repeated with `--repo`."
    )


def check_run_output(freeze: Optional[FreezeRecord]) -> Dict[str, str]:
    if freeze is None:
        return {
            "title": "Repository is not frozen",
            "summary": "This repository is currently not under any freeze restrictions",
            "text": "PRs can be merged normally.",
        }
    return {
        "title": f"Repository is frozen by {freeze.initiated_by}",
        "summary": "This repository is currently under a freeze restriction",
        "text": (
            "**Repository Freeze Details**\n\n"
            f"- **Author**: {freeze.initiated_by}\n"
            f"- **Scope**: {freeze.branch or 'all branches'}\n"
            f"- **Start**: {format_time(freeze.started_at)}\n"
            f"- **End**: {format_time(freeze.expires_at) if freeze.expires_at else 'No end time set'}\n"
            f"- **Reason**: {freeze.reason or 'No reason provided'}\n\n"
            "This PR cannot be merged while the repository is frozen. "
            "Please wait for the freeze to end or contact the freeze author."
        ),
    }
