"""
scheduler/cadence.py — Cadence parsing

The Clock depends only on "give me the next fire time after T". Any object
with next_fire() and validate() satisfies CadenceParser; the default
implementation parses standard 5-field cron expressions with croniter,
evaluated in a configurable IANA timezone.

Example cadences:
    "*/30 * * * *" — every 30 minutes
    "0 2 * * *"    — every day at 02:00 in the parser's timezone
    "0 9 * * 1"    — every Monday at 09:00
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Protocol
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import CroniterError, croniter

from pipeline_scheduler.exceptions import InvalidCadenceError


class CadenceParser(Protocol):
    def next_fire(self, expression: str, after: datetime) -> datetime:
        """Return the first fire time strictly after `after` (aware UTC)."""
        ...

    def validate(self, expression: str) -> None:
        """Raise InvalidCadenceError if `expression` cannot be scheduled."""
        ...


class CronCadenceParser:
    """croniter-backed CadenceParser. Results are always aware UTC datetimes."""

    def __init__(self, timezone_name: str = "UTC") -> None:
        try:
            self._tz = ZoneInfo(timezone_name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone '{timezone_name}'") from exc
        self.timezone_name = timezone_name

    def validate(self, expression: str) -> None:
        if not isinstance(expression, str) or not expression.strip():
            raise InvalidCadenceError(str(expression), "expression is empty")
        fields = expression.split()
        if len(fields) != 5:
            raise InvalidCadenceError(
                expression, f"need 5 fields (minute hour day month weekday), got {len(fields)}"
            )
        if not croniter.is_valid(expression):
            raise InvalidCadenceError(expression, "not a valid cron expression")

    def next_fire(self, expression: str, after: datetime) -> datetime:
        self.validate(expression)
        if after.tzinfo is None:
            after = after.replace(tzinfo=timezone.utc)
        local_after = after.astimezone(self._tz)
        try:
            nxt = croniter(expression, local_after).get_next(datetime)
        except (CroniterError, ValueError) as exc:
            raise InvalidCadenceError(expression, str(exc)) from exc
        return nxt.astimezone(timezone.utc)


def cadence_interval(parser: CadenceParser, expression: str, at: datetime) -> timedelta:
    """
    Gap between the two fires following `at`.

    For irregular cadences (e.g. "0 9,17 * * *") this is the gap that is
    about to elapse, which is what staleness checks need.
    """
    first = parser.next_fire(expression, at)
    second = parser.next_fire(expression, first)
    return second - first
