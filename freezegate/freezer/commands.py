"""
Command parsing for comment-based freeze commands.

Supported commands (leading ``/`` optional)::

    /freeze [--repo R[,R...]] [--branch B] [--duration D] [--reason TEXT]
    /freeze-all [--repo R[,R...]] [--branch B] [--duration D] [--reason TEXT]
    /unfreeze [--repo R[,R...]] [--branch B] [--reason TEXT]
    /unfreeze-all [--repo R[,R...]] [--reason TEXT]
    /status [--repos R[,R...]]
    /schedule-freeze --from TS [--to TS | --duration D] [--repo R] [--branch B] [--reason TEXT]
    /unlock-pr [--pr-number N] [--repo R] [--reason TEXT]
    /help

``--repo`` and ``--repos`` are aliases; values may be repeated and/or
comma-separated. Arguments are split with shell quoting rules.
"""
from __future__ import annotations

import argparse
import shlex
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import (
    EmptyCommand,
    InvalidTimestamp,
    MalformedCommand,
    MissingPrContext,
    NotACommand,
    UnrecognizedCommand,
)
from .timeparse import parse_duration, parse_timestamp


class Intent(str, Enum):
    FREEZE = "freeze"
    FREEZE_ALL = "freeze-all"
    UNFREEZE = "unfreeze"
    UNFREEZE_ALL = "unfreeze-all"
    STATUS = "status"
    SCHEDULE_FREEZE = "schedule-freeze"
    UNLOCK_PR = "unlock-pr"
    HELP = "help"

    @property
    def is_mutating(self) -> bool:
        return self not in (Intent.STATUS, Intent.HELP)


@dataclass(frozen=True)
class Command:
    intent: Intent
    repositories: Tuple[str, ...] = ()
    branch: Optional[str] = None
    duration: Optional[timedelta] = None
    reason: Optional[str] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    pr_number: Optional[int] = None


HELP_TEXT: Dict[Intent, str] = {
    Intent.FREEZE: "Freeze the current repository (or --repo list), optionally one --branch",
    Intent.FREEZE_ALL: "Freeze every repository of the installation (or the --repo list)",
    Intent.UNFREEZE: "End the active freeze of the current repository (or --branch scope)",
    Intent.UNFREEZE_ALL: "End every active freeze of the installation (or the --repo list)",
    Intent.STATUS: "Show freeze status for the current repository (or --repos list)",
    Intent.SCHEDULE_FREEZE: "Schedule a freeze starting --from an RFC 3339 time",
    Intent.UNLOCK_PR: "Exempt one pull request from the current freeze",
    Intent.HELP: "Show this help",
}


class _CommandArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that raises instead of printing usage and exiting."""

    def error(self, message: str):  # type: ignore[override]
        raise MalformedCommand(message)

    def exit(self, status: int = 0, message: Optional[str] = None):  # type: ignore[override]
        raise MalformedCommand(message or "invalid command")


def _add_repo_flag(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--repo", "--repos", dest="repos", action="append", default=[])


def _build_parsers() -> Dict[Intent, argparse.ArgumentParser]:
    parsers: Dict[Intent, argparse.ArgumentParser] = {}
    for intent in Intent:
        parser = _CommandArgumentParser(prog=intent.value, add_help=False, allow_abbrev=False)
        if intent in (Intent.FREEZE, Intent.FREEZE_ALL):
            _add_repo_flag(parser)
            parser.add_argument("--branch")
            parser.add_argument("--duration")
            parser.add_argument("--reason")
        elif intent == Intent.UNFREEZE:
            _add_repo_flag(parser)
            parser.add_argument("--branch")
            parser.add_argument("--reason")
        elif intent == Intent.UNFREEZE_ALL:
            _add_repo_flag(parser)
            parser.add_argument("--reason")
        elif intent == Intent.STATUS:
            _add_repo_flag(parser)
        elif intent == Intent.SCHEDULE_FREEZE:
            _add_repo_flag(parser)
            parser.add_argument("--from", dest="start", required=True)
            parser.add_argument("--to", dest="end")
            parser.add_argument("--duration")
            parser.add_argument("--branch")
            parser.add_argument("--reason")
        elif intent == Intent.UNLOCK_PR:
            _add_repo_flag(parser)
            parser.add_argument("--pr-number", "--pr", dest="pr_number")
            parser.add_argument("--reason")
        parsers[intent] = parser
    return parsers


_PARSERS = _build_parsers()
_KEYWORDS = {intent.value: intent for intent in Intent}


def split_repositories(values: Iterable[str]) -> Tuple[str, ...]:
    seen: List[str] = []
    for value in values:
        for part in value.split(","):
            name = part.strip()
            if name and name not in seen:
                seen.append(name)
    return tuple(seen)


def _clean(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _parse_pr_number(raw: str) -> int:
    try:
        number = int(raw.lstrip("#"))
    except ValueError as exc:
        raise MalformedCommand(f"invalid pull request number '{raw}'") from exc
    if number <= 0:
        raise MalformedCommand(f"invalid pull request number '{raw}'")
    return number


def tokenize(raw_text: str) -> List[str]:
    text = (raw_text or "").strip()
    if not text:
        raise EmptyCommand()
    line = text.splitlines()[0].strip()
    if line.startswith("/"):
        line = line[1:]
    try:
        tokens = shlex.split(line)
    except ValueError as exc:
        raise MalformedCommand(f"malformed command: {exc}") from exc
    if not tokens:
        raise EmptyCommand()
    return tokens


def is_command(raw_text: str) -> bool:
    """True when a comment body is addressed to the bot (starts with a slash keyword)."""
    text = (raw_text or "").lstrip()
    if not text.startswith("/"):
        return False
    parts = text[1:].split(None, 1)
    return bool(parts) and parts[0] in _KEYWORDS


def parse(raw_text: str, *, current_pr: Optional[int] = None) -> Command:
    tokens = tokenize(raw_text)
    keyword, argv = tokens[0], tokens[1:]
    intent = _KEYWORDS.get(keyword)
    if intent is None:
        raise UnrecognizedCommand(keyword)
    return _build_command(intent, _PARSERS[intent].parse_args(argv), current_pr)


def parse_comment(raw_text: str, *, current_pr: Optional[int] = None) -> Command:
    """Like ``parse`` but insists on the leading slash used in review comments."""
    if not (raw_text or "").lstrip().startswith("/"):
        raise NotACommand()
    return parse(raw_text, current_pr=current_pr)


def _build_command(intent: Intent, ns: argparse.Namespace, current_pr: Optional[int]) -> Command:
    repositories = split_repositories(getattr(ns, "repos", []) or [])
    branch = _clean(getattr(ns, "branch", None))
    reason = _clean(getattr(ns, "reason", None))
    raw_duration = _clean(getattr(ns, "duration", None))
    duration = parse_duration(raw_duration) if raw_duration else None

    if intent == Intent.SCHEDULE_FREEZE:
        start_at = parse_timestamp(ns.start)
        end_at = parse_timestamp(ns.end) if _clean(ns.end) else None
        if end_at is not None and duration is not None:
            raise MalformedCommand("use either --to or --duration, not both")
        if end_at is not None and end_at <= start_at:
            raise InvalidTimestamp(ns.end, "--to must be after --from")
        return Command(
            intent=intent,
            repositories=repositories,
            branch=branch,
            duration=duration,
            reason=reason,
            start_at=start_at,
            end_at=end_at,
        )

    if intent == Intent.UNLOCK_PR:
        raw_pr = _clean(ns.pr_number)
        pr_number = _parse_pr_number(raw_pr) if raw_pr else current_pr
        if pr_number is None:
            raise MissingPrContext()
        if len(repositories) > 1:
            raise MalformedCommand("unlock-pr takes a single --repo")
        return Command(intent=intent, repositories=repositories, reason=reason, pr_number=pr_number)

    return Command(
        intent=intent,
        repositories=repositories,
        branch=branch,
        duration=duration,
        reason=reason,
    )


def usage() -> Sequence[Tuple[str, str]]:
    return [(f"/{intent.value}", HELP_TEXT[intent]) for intent in Intent]


__all__ = [
    "Intent",
    "Command",
    "parse",
    "parse_comment",
    "is_command",
    "tokenize",
    "split_repositories",
    "usage",
]
