# cron.py
# Five-field cron expressions: minute hour day-of-month month day-of-week.
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import FrozenSet, Iterator, List, Tuple

from .errors import ConfigurationError

MONTHS = {
    "jan": 1, "feb": 2, "mar": 3, "apr": 4, "may": 5, "jun": 6,
    "jul": 7, "aug": 8, "sep": 9, "oct": 10, "nov": 11, "dec": 12,
}
DAYS = {"sun": 0, "mon": 1, "tue": 2, "wed": 3, "thu": 4, "fri": 5, "sat": 6}

# (name, low, high, aliases)
FIELDS: Tuple[Tuple[str, int, int, dict], ...] = (
    ("minute", 0, 59, {}),
    ("hour", 0, 23, {}),
    ("day-of-month", 1, 31, {}),
    ("month", 1, 12, MONTHS),
    ("day-of-week", 0, 7, DAYS),
)


def _value(token: str, name: str, aliases: dict) -> int:
    key = token.lower()
    if key in aliases:
        return aliases[key]
    if not token.isdigit():
        raise ConfigurationError(f"cron {name}: invalid value {token!r}")
    return int(token)


def _parse_field(text: str, name: str, low: int, high: int, aliases: dict) -> FrozenSet[int]:
    values: set[int] = set()
    for part in text.split(","):
        if not part:
            raise ConfigurationError(f"cron {name}: empty list item in {text!r}")

        base, _, step_text = part.partition("/")
        step = 1
        if step_text:
            if not step_text.isdigit() or int(step_text) == 0:
                raise ConfigurationError(f"cron {name}: invalid step {step_text!r}")
            step = int(step_text)

        if base == "*":
            start, end = low, high
        elif "-" in base:
            a, _, b = base.partition("-")
            start, end = _value(a, name, aliases), _value(b, name, aliases)
        else:
            start = _value(base, name, aliases)
            # "5/10" means 5, 15, 25, ... up to the field maximum
            end = high if step_text else start

        if start < low or end > high:
            raise ConfigurationError(f"cron {name}: {part!r} outside {low}-{high}")
        if start > end:
            raise ConfigurationError(f"cron {name}: reversed range {part!r}")

        values.update(range(start, end + 1, step))
    return frozenset(values)


@dataclass(frozen=True)
class CronExpression:
    """
    Parsed cron expression.

    Day matching follows classic cron: when both day-of-month and day-of-week
    are restricted, a day matches if either one does.
    """
    text: str
    minutes: FrozenSet[int] = field(compare=False)
    hours: FrozenSet[int] = field(compare=False)
    days: FrozenSet[int] = field(compare=False)
    months: FrozenSet[int] = field(compare=False)
    weekdays: FrozenSet[int] = field(compare=False)
    days_restricted: bool = field(default=False, compare=False)
    weekdays_restricted: bool = field(default=False, compare=False)

    @classmethod
    def parse(cls, text: str) -> CronExpression:
        if not isinstance(text, str):
            raise ConfigurationError(f"cron expression must be a string, got {type(text).__name__}")
        parts = text.split()
        if len(parts) != len(FIELDS):
            raise ConfigurationError(
                f"cron expression {text!r} must have {len(FIELDS)} fields, got {len(parts)}"
            )

        parsed = [
            _parse_field(p, name, low, high, aliases)
            for p, (name, low, high, aliases) in zip(parts, FIELDS)
        ]
        # Sunday may be written as 0 or 7
        weekdays = frozenset(0 if d == 7 else d for d in parsed[4])

        return cls(
            text=" ".join(parts),
            minutes=parsed[0],
            hours=parsed[1],
            days=parsed[2],
            months=parsed[3],
            weekdays=weekdays,
            days_restricted=not parts[2].startswith("*"),
            weekdays_restricted=not parts[4].startswith("*"),
        )

    def _day_matches(self, dt: datetime) -> bool:
        weekday = (dt.weekday() + 1) % 7  # python: Monday=0; cron: Sunday=0
        dom = dt.day in self.days
        dow = weekday in self.weekdays
        if self.days_restricted and self.weekdays_restricted:
            return dom or dow
        return dom and dow

    def matches(self, dt: datetime) -> bool:
        return (
            dt.minute in self.minutes
            and dt.hour in self.hours
            and dt.month in self.months
            and self._day_matches(dt)
        )

    def iter_due(self, since: datetime, until: datetime) -> Iterator[datetime]:
        """Yield every due minute in the half-open window (since, until]."""
        t = since.replace(second=0, microsecond=0) + timedelta(minutes=1)
        while t <= until:
            if t.month not in self.months or not self._day_matches(t):
                t = (t + timedelta(days=1)).replace(hour=0, minute=0)
                continue
            if t.hour not in self.hours:
                t = (t + timedelta(hours=1)).replace(minute=0)
                continue
            if t.minute in self.minutes:
                yield t
            t += timedelta(minutes=1)

    def due_times(self, since: datetime, until: datetime) -> List[datetime]:
        return list(self.iter_due(since, until))

    def __str__(self) -> str:
        return self.text
