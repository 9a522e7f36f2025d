"""Schedule expressions: five-field cron, ``@`` macros and fixed intervals."""

from __future__ import annotations

import abc
from datetime import datetime, timedelta, timezone
from typing import Iterator, Set

from .errors import DefinitionError

MACROS = {
    "@hourly": "0 * * * *",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@weekly": "0 0 * * 0",
    "@monthly": "0 0 1 * *",
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
}

_UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}

# A valid expression that has not fired within this window never will (e.g. Feb 30).
_SEARCH_HORIZON = timedelta(days=366 * 5)


def _utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


class ScheduleExpression(abc.ABC):
    """A parsed schedule that can enumerate its occurrences."""

    def __init__(self, raw: str) -> None:
        self.raw = raw

    @abc.abstractmethod
    def next_after(self, moment: datetime) -> datetime:
        """Return the first occurrence strictly after ``moment``."""
        raise NotImplementedError

    def occurrences(self, start: datetime, end: datetime) -> Iterator[datetime]:
        """Yield occurrences in the half-open window ``(start, end]``."""
        current = _utc(start)
        end = _utc(end)
        while True:
            current = self.next_after(current)
            if current > end:
                return
            yield current

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.raw!r})"


def _parse_field(text: str, low: int, high: int) -> Set[int]:
    values: Set[int] = set()
    for part in text.split(","):
        part = part.strip()
        if not part:
            raise DefinitionError(f"Empty cron field segment in '{text}'")
        step = 1
        if "/" in part:
            part, step_text = part.split("/", 1)
            if not step_text.isdigit() or int(step_text) <= 0:
                raise DefinitionError(f"Invalid cron step '{step_text}'")
            step = int(step_text)
        if part == "*":
            start, stop = low, high
        elif "-" in part:
            first, last = part.split("-", 1)
            if not (first.isdigit() and last.isdigit()):
                raise DefinitionError(f"Invalid cron range '{part}'")
            start, stop = int(first), int(last)
        elif part.isdigit():
            start = int(part)
            stop = high if step > 1 else start
        else:
            raise DefinitionError(f"Invalid cron value '{part}'")
        if start < low or stop > high or start > stop:
            raise DefinitionError(f"Cron value '{part}' outside {low}-{high}")
        values.update(range(start, stop + 1, step))
    return values


class CronExpression(ScheduleExpression):
    """Standard five-field cron evaluated in UTC."""

    def __init__(self, raw: str) -> None:
        super().__init__(raw)
        parts = MACROS.get(raw.strip().lower(), raw).split()
        if len(parts) != 5:
            raise DefinitionError(f"Cron expression '{raw}' must have 5 fields")
        minute, hour, dom, month, dow = parts
        self.minutes = _parse_field(minute, 0, 59)
        self.hours = _parse_field(hour, 0, 23)
        self.days = _parse_field(dom, 1, 31)
        self.months = _parse_field(month, 1, 12)
        self.weekdays = {0 if d == 7 else d for d in _parse_field(dow, 0, 7)}
        self._dom_any = dom.startswith("*")
        self._dow_any = dow.startswith("*")

    def _day_matches(self, moment: datetime) -> bool:
        dom_ok = moment.day in self.days
        dow_ok = (moment.weekday() + 1) % 7 in self.weekdays
        if self._dom_any or self._dow_any:
            return dom_ok and dow_ok
        return dom_ok or dow_ok

    def next_after(self, moment: datetime) -> datetime:
        current = _utc(moment).replace(second=0, microsecond=0) + timedelta(minutes=1)
        limit = current + _SEARCH_HORIZON
        while current <= limit:
            if current.month not in self.months:
                year = current.year + (1 if current.month == 12 else 0)
                month = 1 if current.month == 12 else current.month + 1
                current = current.replace(year=year, month=month, day=1, hour=0, minute=0)
                continue
            if not self._day_matches(current):
                current = (current + timedelta(days=1)).replace(hour=0, minute=0)
                continue
            if current.hour not in self.hours:
                current = (current + timedelta(hours=1)).replace(minute=0)
                continue
            if current.minute not in self.minutes:
                current += timedelta(minutes=1)
                continue
            return current
        raise DefinitionError(f"Cron expression '{self.raw}' never fires")


class IntervalExpression(ScheduleExpression):
    """Fixed interval such as ``every 15m``, aligned to the Unix epoch."""

    def __init__(self, raw: str, seconds: float) -> None:
        super().__init__(raw)
        self.seconds = seconds

    def next_after(self, moment: datetime) -> datetime:
        timestamp = _utc(moment).timestamp()
        slot = int(timestamp // self.seconds) + 1
        return datetime.fromtimestamp(slot * self.seconds, tz=timezone.utc)


def _interval_seconds(text: str) -> float | None:
    raw = text.strip().lower()
    for prefix in ("every ", "interval "):
        if raw.startswith(prefix):
            raw = raw[len(prefix) :].strip()
            break
    else:
        return None
    if not raw or raw[-1] not in _UNITS:
        raise DefinitionError(f"Interval '{text}' needs a unit of s, m, h or d")
    try:
        value = float(raw[:-1])
    except ValueError:
        raise DefinitionError(f"Invalid interval '{text}'") from None
    if value <= 0:
        raise DefinitionError(f"Interval '{text}' must be positive")
    seconds = value * _UNITS[raw[-1]]
    # occurrence ids have one-second resolution
    if seconds < 1 or seconds != int(seconds):
        raise DefinitionError(f"Interval '{text}' must be a whole number of seconds")
    return seconds


def parse_schedule(expression: str) -> ScheduleExpression:
    """Parse a schedule expression, raising :class:`DefinitionError` if invalid."""
    if not expression or not expression.strip():
        raise DefinitionError("Schedule expression is empty")
    seconds = _interval_seconds(expression)
    if seconds is not None:
        return IntervalExpression(expression, seconds)
    if expression.strip().startswith("@") and expression.strip().lower() not in MACROS:
        raise DefinitionError(f"Unknown schedule macro '{expression}'")
    return CronExpression(expression)


def canonical_timestamp(moment: datetime) -> str:
    """ISO-8601 UTC rendering used as a schedule occurrence identifier."""
    return _utc(moment).replace(microsecond=0).isoformat()
