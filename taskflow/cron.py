"""Six-field cron expressions: second, minute, hour, day of month, month, day of week."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

_YEAR_LIMIT = 5
_NUMBER = re.compile(r"\+?\d+")

_MONTH_NAMES = {
    name: number
    for number, name in enumerate(
        ("jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"),
        start=1,
    )
}
_DOW_NAMES = {
    name: number
    for number, name in enumerate(("sun", "mon", "tue", "wed", "thu", "fri", "sat"))
}


class CronError(ValueError):
    """Raised for a cron expression that cannot be parsed."""


@dataclass(frozen=True)
class _Bounds:
    low: int
    high: int
    names: Mapping[str, int] = field(default_factory=dict)


_FIELDS = (
    _Bounds(0, 59),
    _Bounds(0, 59),
    _Bounds(0, 23),
    _Bounds(1, 31),
    _Bounds(1, 12, _MONTH_NAMES),
    _Bounds(0, 6, _DOW_NAMES),
)


def _parse_number(text: str) -> int:
    if not _NUMBER.fullmatch(text):
        raise CronError(f"failed to parse int from {text!r}")
    return int(text)


def _parse_value(text: str, bounds: _Bounds) -> int:
    named = bounds.names.get(text.lower())
    if named is not None:
        return named
    return _parse_number(text)


def _parse_range(expr: str, bounds: _Bounds) -> tuple[set[int], bool]:
    range_and_step = expr.split("/")
    low_and_high = range_and_step[0].split("-")
    single = len(low_and_high) == 1
    star = False

    if low_and_high[0] in ("*", "?"):
        start, end, star = bounds.low, bounds.high, True
    else:
        start = _parse_value(low_and_high[0], bounds)
        if len(low_and_high) == 1:
            end = start
        elif len(low_and_high) == 2:
            end = _parse_value(low_and_high[1], bounds)
        else:
            raise CronError(f"too many hyphens: {expr}")

    if len(range_and_step) == 1:
        step = 1
    elif len(range_and_step) == 2:
        step = _parse_number(range_and_step[1])
        if single:
            end = bounds.high
        if step > 1:
            star = False
    else:
        raise CronError(f"too many slashes: {expr}")

    if start < bounds.low:
        raise CronError(f"beginning of range ({start}) below minimum ({bounds.low}): {expr}")
    if end > bounds.high:
        raise CronError(f"end of range ({end}) above maximum ({bounds.high}): {expr}")
    if start > end:
        raise CronError(f"beginning of range ({start}) beyond end of range ({end}): {expr}")
    if step == 0:
        raise CronError(f"step of range should be a positive number: {expr}")
    return set(range(start, end + 1, step)), star


def _parse_field(text: str, bounds: _Bounds) -> tuple[frozenset[int], bool]:
    values: set[int] = set()
    star = False
    for part in text.split(","):
        part_values, part_star = _parse_range(part, bounds)
        values |= part_values
        star = star or part_star
    return frozenset(values), star


def _load_location(name: str) -> Optional[tzinfo]:
    if name in ("", "UTC"):
        return timezone.utc
    if name == "Local":
        return None
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise CronError(f"provided bad location {name}: {exc}") from exc


def _start_of_next_month(moment: datetime) -> datetime:
    moment = moment.replace(day=1, hour=0, minute=0, second=0)
    if moment.month == 12:
        return moment.replace(year=moment.year + 1, month=1)
    return moment.replace(month=moment.month + 1)


@dataclass(frozen=True)
class CronSchedule:
    """The sets of values each field of a cron expression accepts.

    ``location`` of None means times are matched in the zone of the moment given.
    """

    seconds: frozenset[int]
    minutes: frozenset[int]
    hours: frozenset[int]
    days_of_month: frozenset[int]
    months: frozenset[int]
    days_of_week: frozenset[int]
    dom_any: bool = False
    dow_any: bool = False
    location: Optional[tzinfo] = None

    def _day_matches(self, moment: datetime) -> bool:
        dom = moment.day in self.days_of_month
        dow = (moment.weekday() + 1) % 7 in self.days_of_week
        if self.dom_any or self.dow_any:
            return dom and dow
        return dom or dow

    def next(self, after: datetime) -> Optional[datetime]:
        """Return the first matching moment strictly after ``after``, or None if
        nothing matches within five years."""
        original = after.tzinfo
        moment = after if self.location is None else after.astimezone(self.location)
        moment = moment.replace(microsecond=0) + timedelta(seconds=1)
        limit = moment.year + _YEAR_LIMIT

        while moment.year <= limit:
            if moment.month not in self.months:
                moment = _start_of_next_month(moment)
            elif not self._day_matches(moment):
                moment = moment.replace(hour=0, minute=0, second=0) + timedelta(days=1)
            elif moment.hour not in self.hours:
                moment = moment.replace(minute=0, second=0) + timedelta(hours=1)
            elif moment.minute not in self.minutes:
                moment = moment.replace(second=0) + timedelta(minutes=1)
            elif moment.second not in self.seconds:
                moment = moment + timedelta(seconds=1)
            else:
                break
        else:
            return None

        if self.location is None:
            return moment
        if original is None:
            return moment.astimezone().replace(tzinfo=None)
        return moment.astimezone(original)


def parse_cron(expr: str) -> CronSchedule:
    """Parse a six-field cron expression, optionally prefixed by TZ= or CRON_TZ=."""
    spec = expr.strip()
    if not spec:
        raise CronError("empty spec string")

    location: Optional[tzinfo] = None
    if spec.startswith(("TZ=", "CRON_TZ=")):
        space = spec.find(" ")
        if space < 0:
            raise CronError(f"missing fields after time zone: {spec}")
        location = _load_location(spec[spec.index("=") + 1:space])
        spec = spec[space:].strip()

    if spec.startswith("@"):
        raise CronError(f"parser does not accept descriptors: {spec}")

    fields = spec.split()
    if len(fields) != len(_FIELDS):
        raise CronError(f"expected exactly {len(_FIELDS)} fields, found {len(fields)}: {spec}")

    parsed = [_parse_field(text, bounds) for text, bounds in zip(fields, _FIELDS)]
    return CronSchedule(
        seconds=parsed[0][0],
        minutes=parsed[1][0],
        hours=parsed[2][0],
        days_of_month=parsed[3][0],
        months=parsed[4][0],
        days_of_week=parsed[5][0],
        dom_any=parsed[3][1],
        dow_any=parsed[5][1],
        location=location,
    )