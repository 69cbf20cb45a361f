"""
Duration and timestamp parsing for freeze commands.

Two duration grammars are accepted:

* simple suffix notation: ``<integer>[smhd]`` (``45s``, ``30m``, ``2h``, ``1d``)
* ISO 8601 durations: ``P[nW][nD][T[nH][nM][nS]]`` (``PT2H30M``, ``P1D``, ``P1DT2H``)

Both reduce to a single positive ``timedelta``; zero-length spans are rejected.
"""
from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone

from .errors import InvalidDuration, InvalidTimestamp

_SIMPLE_RE = re.compile(r"^(\d+)([smhd])$")
_ISO_RE = re.compile(
    r"^P(?:(?P<weeks>\d+)W)?(?:(?P<days>\d+)D)?"
    r"(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)
_UNIT_SECONDS = {"s": 1, "m": 60, "h": 3600, "d": 86400}


def parse_duration(value: str) -> timedelta:
    raw = (value or "").strip().strip('"').strip("'")
    match = _SIMPLE_RE.match(raw)
    if match:
        seconds = int(match.group(1)) * _UNIT_SECONDS[match.group(2)]
    else:
        seconds = _parse_iso8601(raw)
    if seconds <= 0:
        raise InvalidDuration(value)
    return timedelta(seconds=seconds)


def _parse_iso8601(raw: str) -> int:
    match = _ISO_RE.match(raw.upper())
    # a bare "P" or a trailing "T" carries no component
    if not match or raw.upper().endswith(("P", "T")):
        raise InvalidDuration(raw)
    parts = {k: int(v) for k, v in match.groupdict().items() if v is not None}
    if not parts:
        raise InvalidDuration(raw)
    return (
        parts.get("weeks", 0) * 7 * 86400
        + parts.get("days", 0) * 86400
        + parts.get("hours", 0) * 3600
        + parts.get("minutes", 0) * 60
        + parts.get("seconds", 0)
    )


def duration_to_seconds(value: timedelta) -> int:
    return int(value.total_seconds())


def parse_timestamp(value: str) -> datetime:
    """Parse an RFC 3339 timestamp; an explicit offset (or ``Z``) is required."""
    raw = (value or "").strip().strip('"').strip("'")
    if not raw:
        raise InvalidTimestamp(value)
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00").replace("z", "+00:00"))
    except ValueError as exc:
        raise InvalidTimestamp(value) from exc
    if parsed.tzinfo is None:
        raise InvalidTimestamp(value, "missing UTC offset")
    return parsed.astimezone(timezone.utc)


def format_duration(value: timedelta) -> str:
    """Render a span as ``1d 2h 30m``; sub-minute spans render in seconds."""
    total = duration_to_seconds(value)
    if total < 60:
        return f"{total}s"
    days, rest = divmod(total, 86400)
    hours, rest = divmod(rest, 3600)
    minutes = rest // 60
    parts = []
    if days:
        parts.append(f"{days}d")
    if hours:
        parts.append(f"{hours}h")
    if minutes:
        parts.append(f"{minutes}m")
    return " ".join(parts)


__all__ = ["parse_duration", "parse_timestamp", "duration_to_seconds", "format_duration"]
