from __future__ import annotations

from typing import Optional


class FreezeGateError(Exception):
    """Base class for freezegate errors."""


# ===== Parse errors (user-correctable, reported verbatim) =====


class ParseError(FreezeGateError):
    code = "parse_error"


class NotACommand(ParseError):
    code = "not_a_command"

    def __init__(self, message: str = "a command should start with a '/'"):
        super().__init__(message)


class EmptyCommand(ParseError):
    code = "empty_command"

    def __init__(self, message: str = "please use a valid command"):
        super().__init__(message)


class UnrecognizedCommand(ParseError):
    code = "unrecognized_command"

    def __init__(self, keyword: str):
        self.keyword = keyword
        super().__init__(f"unrecognized command '{keyword}'")


class MalformedCommand(ParseError):
    code = "malformed_command"


class InvalidDuration(ParseError):
    code = "invalid_duration"

    def __init__(self, value: str):
        self.value = value
        super().__init__(f"invalid duration '{value}' (use e.g. 30m, 2h, 1d or PT2H30M)")


class InvalidTimestamp(ParseError):
    code = "invalid_timestamp"

    def __init__(self, value: str, detail: Optional[str] = None):
        self.value = value
        message = f"invalid timestamp '{value}' (use RFC 3339, e.g. 2025-01-31T18:00:00Z)"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class MissingPrContext(ParseError):
    code = "missing_pr_context"

    def __init__(self, message: str = "unlock-pr needs --pr-number when not used on a pull request"):
        super().__init__(message)


# ===== State conflicts (informational) =====


class StateConflict(FreezeGateError):
    code = "conflict"

    def __init__(self, repository: str, branch: Optional[str], message: str):
        self.repository = repository
        self.branch = branch
        super().__init__(message)


class FreezeAlreadyActive(StateConflict):
    code = "freeze_already_active"

    def __init__(self, repository: str, branch: Optional[str] = None, existing_id: Optional[str] = None):
        self.existing_id = existing_id
        scope = f"{repository}@{branch}" if branch else repository
        super().__init__(repository, branch, f"a freeze is already active or scheduled for {scope}")


class NoActiveFreeze(StateConflict):
    code = "no_active_freeze"

    def __init__(self, repository: str, branch: Optional[str] = None):
        scope = f"{repository}@{branch}" if branch else repository
        super().__init__(repository, branch, f"no active freeze for {scope}")


# ===== External collaborator failures =====


class AdapterFailure(FreezeGateError):
    code = "adapter_failure"

    def __init__(self, operation: str, message: str, *, retryable: bool = True):
        self.operation = operation
        self.retryable = retryable
        super().__init__(f"{operation}: {message}")


class AdapterTimeout(AdapterFailure):
    code = "adapter_timeout"

    def __init__(self, operation: str, timeout: float):
        self.timeout = timeout
        super().__init__(operation, f"timed out after {timeout:g}s", retryable=True)


__all__ = [
    "FreezeGateError",
    "ParseError",
    "NotACommand",
    "EmptyCommand",
    "UnrecognizedCommand",
    "MalformedCommand",
    "InvalidDuration",
    "InvalidTimestamp",
    "MissingPrContext",
    "StateConflict",
    "FreezeAlreadyActive",
    "NoActiveFreeze",
    "AdapterFailure",
    "AdapterTimeout",
]
