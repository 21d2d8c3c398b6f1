"""
ISO-8601 durations for recurring schedules.

Only the P(nY)(nM)(nW)(nD)(T(nH)(nM)(nS)) form is accepted. Years and
months are applied as calendar arithmetic, clamped to the last day of
the target month; the remaining components are exact time deltas.
"""

from __future__ import annotations

import calendar
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Union

from .errors import ValidationError


_DURATION_RE = re.compile(
    r"^P(?:(?P<years>\d+)Y)?(?:(?P<months>\d+)M)?(?:(?P<weeks>\d+)W)?(?:(?P<days>\d+)D)?"
    r"(?:T(?:(?P<hours>\d+)H)?(?:(?P<minutes>\d+)M)?(?:(?P<seconds>\d+)S)?)?$"
)


@dataclass(frozen=True)
class Duration:
    years: int = 0
    months: int = 0
    weeks: int = 0
    days: int = 0
    hours: int = 0
    minutes: int = 0
    seconds: int = 0

    def fixed_delta(self) -> timedelta:
        """The non-calendar part of the duration."""
        return timedelta(
            weeks=self.weeks,
            days=self.days,
            hours=self.hours,
            minutes=self.minutes,
            seconds=self.seconds,
        )

    def is_zero(self) -> bool:
        return self.years == 0 and self.months == 0 and self.fixed_delta() == timedelta(0)


def is_valid_duration(value: str) -> bool:
    try:
        parse_duration(value)
    except ValidationError:
        return False
    return True


def parse_duration(value: str) -> Duration:
    if not isinstance(value, str):
        raise ValidationError(f"Invalid interval: {value!r}")
    text = value.strip().upper()
    match = _DURATION_RE.match(text)
    if not match or text in ("P", "PT") or text.endswith("T"):
        raise ValidationError(
            f"Invalid interval format: {value!r}. Use ISO-8601 durations like P1D, P1W, P1M"
        )
    parts = {k: int(v) for k, v in match.groupdict().items() if v is not None}
    duration = Duration(**parts)
    if duration.is_zero():
        raise ValidationError(f"Interval must be longer than zero: {value!r}")
    return duration


def add_months(start: datetime, months: int) -> datetime:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def add_duration(start: datetime, duration: Union[Duration, str]) -> datetime:
    if isinstance(duration, str):
        duration = parse_duration(duration)
    result = start
    if duration.years or duration.months:
        result = add_months(result, duration.years * 12 + duration.months)
    return result + duration.fixed_delta()


def add_intervals(start: datetime, duration: Union[Duration, str], count: int) -> datetime:
    """`start` advanced by `count` whole intervals in one step."""
    if isinstance(duration, str):
        duration = parse_duration(duration)
    result = start
    if duration.years or duration.months:
        result = add_months(result, (duration.years * 12 + duration.months) * count)
    return result + duration.fixed_delta() * count
