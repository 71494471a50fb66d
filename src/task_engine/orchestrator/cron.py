"""Five-field cron expressions: validation, next fire time, and descriptions.

Fields are ``minute hour day-of-month month day-of-week`` evaluated in UTC,
with Sunday as day-of-week 0. Each field accepts ``*``, an integer, an
inclusive range ``a-b``, a step ``*/n``, or a comma list of those.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta

from task_engine.storage.common import to_utc_aware_datetime, utc_now

# Search horizon for next_run_time; rarer expressions get the fallback below.
SEARCH_HORIZON_MINUTES = 2 * 24 * 60
FALLBACK_DELAY = timedelta(hours=24)

_INT_RE = re.compile(r"^\d+$")
_RANGE_RE = re.compile(r"^(\d+)-(\d+)$")
_STEP_RE = re.compile(r"^\*/(\d+)$")

_DAY_NAMES = ("Sun", "Mon", "Tue", "Wed", "Thu", "Fri", "Sat")

_PRESETS = {
    "0 0 * * *": "Every day at midnight UTC",
    "0 1 * * *": "Every day at 01:00 UTC",
    "0 2 * * *": "Every day at 02:00 UTC",
    "0 3 * * *": "Every day at 03:00 UTC",
    "0 9 * * 1": "Every Monday at 09:00 UTC",
    "0 9 * * 5": "Every Friday at 09:00 UTC",
    "0 0 * * 0": "Every Sunday at midnight UTC",
    "0 * * * *": "Every hour",
    "*/30 * * * *": "Every 30 minutes",
    "0 0 1 * *": "First day of every month",
    "0 0 * * 1-5": "Every weekday at midnight UTC",
}


@dataclass(frozen=True, slots=True)
class _FieldDomain:
    name: str
    low: int
    high: int


_DOMAINS = (
    _FieldDomain("minute", 0, 59),
    _FieldDomain("hour", 0, 23),
    _FieldDomain("day_of_month", 1, 31),
    _FieldDomain("month", 1, 12),
    _FieldDomain("day_of_week", 0, 6),
)


def is_valid_cron_expr(expr: str) -> bool:
    """Return whether ``expr`` is a well-formed five-field cron expression."""

    fields = expr.split()
    if len(fields) != len(_DOMAINS):
        return False
    return all(
        _is_valid_field(field, domain) for field, domain in zip(fields, _DOMAINS, strict=True)
    )


def _is_valid_field(field: str, domain: _FieldDomain) -> bool:
    if field == "*":
        return True
    parts = field.split(",")
    return all(_is_valid_atom(part, domain) for part in parts)


def _is_valid_atom(atom: str, domain: _FieldDomain) -> bool:
    if _INT_RE.match(atom):
        return domain.low <= int(atom) <= domain.high
    range_match = _RANGE_RE.match(atom)
    if range_match:
        low, high = int(range_match.group(1)), int(range_match.group(2))
        return domain.low <= low <= high <= domain.high
    step_match = _STEP_RE.match(atom)
    if step_match:
        return int(step_match.group(1)) >= 1
    return False


def _match_field(field: str, value: int, low: int) -> bool:
    if field == "*":
        return True
    if "," in field:
        return any(_match_field(part, value, low) for part in field.split(","))
    if field.startswith("*/"):
        step = int(field[2:])
        return (value - low) % step == 0
    if "-" in field:
        start, end = (int(part) for part in field.split("-", 1))
        return start <= value <= end
    return int(field) == value


def _matches(fields: list[str], candidate: datetime) -> bool:
    values = (
        candidate.minute,
        candidate.hour,
        candidate.day,
        candidate.month,
        (candidate.weekday() + 1) % 7,
    )
    return all(
        _match_field(field, value, domain.low)
        for field, value, domain in zip(fields, values, _DOMAINS, strict=True)
    )


def next_run_time(expr: str, from_time: datetime | None = None) -> datetime | None:
    """Return the next matching minute strictly after ``from_time``.

    ``None`` when ``expr`` is invalid. Probing stops after two days; an
    expression with no match inside that window (yearly dates, Feb 29)
    gets ``reference + 24h`` instead of its exact next fire.
    """

    if not is_valid_cron_expr(expr):
        return None

    reference = to_utc_aware_datetime(from_time) if from_time is not None else utc_now()
    candidate = reference.replace(second=0, microsecond=0) + timedelta(minutes=1)
    fields = expr.split()
    for _ in range(SEARCH_HORIZON_MINUTES):
        if _matches(fields, candidate):
            return candidate
        candidate += timedelta(minutes=1)
    return reference + FALLBACK_DELAY


def describe_cron_expr(expr: str) -> str:
    """Human-readable description of common shapes, else the expression itself."""

    normalized = " ".join(expr.split())
    if normalized in _PRESETS:
        return _PRESETS[normalized]

    parts = normalized.split(" ")
    if len(parts) != len(_DOMAINS):
        return expr
    minute, hour, dom, month, dow = parts

    if dom == "*" and month == "*" and dow == "*":
        if hour == "*" and minute != "*":
            return f"Every hour at minute {minute}"
        if hour != "*" and minute == "0":
            return f"Every day at {hour.zfill(2)}:00 UTC"
        if hour != "*" and minute != "*":
            return f"Every day at {hour.zfill(2)}:{minute.zfill(2)} UTC"

    if dom == "*" and month == "*" and dow != "*" and hour != "*" and minute == "0":
        day_name = _DAY_NAMES[int(dow)] if _INT_RE.match(dow) and int(dow) < 7 else f"day {dow}"
        return f"Every {day_name} at {hour.zfill(2)}:00 UTC"

    return expr
