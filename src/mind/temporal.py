"""
Natural-language time references in queries ("yesterday", "last week",
"December 15", ...) turned into half-open ``[start, end)`` ranges.

Days are computed in the timezone of ``now`` (UTC by default) and weeks
start on Monday. References to a month or date later than ``now`` mean
the most recent past occurrence.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from mind.types import MemoryFilters

_MONTHS = {
    "january": 1, "jan": 1, "february": 2, "feb": 2, "march": 3, "mar": 3,
    "april": 4, "apr": 4, "may": 5, "june": 6, "jun": 6, "july": 7, "jul": 7,
    "august": 8, "aug": 8, "september": 9, "sept": 9, "sep": 9,
    "october": 10, "oct": 10, "november": 11, "nov": 11, "december": 12, "dec": 12,
}
_MONTH_ALT = "|".join(sorted(_MONTHS, key=len, reverse=True))

# Full names only: "sat", "sun" and "wed" are ordinary words too
_DAYS = {
    "monday": 0, "tuesday": 1, "wednesday": 2, "thursday": 3,
    "friday": 4, "saturday": 5, "sunday": 6,
}
_DAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]

_TODAY_RE = re.compile(r"\b(today|this morning|this afternoon|this evening)\b")
_DAY_RE = re.compile(r"\b(" + "|".join(sorted(_DAYS, key=len, reverse=True)) + r")\b")
_LAST_N_DAYS_RE = re.compile(r"\b(?:last|past)\s+(\d+)\s+days?\b")
_MONTH_DAY_RE = re.compile(r"\b(" + _MONTH_ALT + r")\.?\s+(\d{1,2})(?:st|nd|rd|th)?\b")
# "may" is also a verb, so on its own it only counts after a preposition
_MONTH_RE = re.compile(r"\b(?:(" + _MONTH_ALT.replace("|may", "") + r")|(?:in|during|of|last) (may))\b")
_ORDINAL_RE = re.compile(r"\b(\d{1,2})(?:st|nd|rd|th)\b")


@dataclass(frozen=True)
class TimeRange:
    start: datetime
    end: datetime
    description: str

    def contains(self, value: datetime) -> bool:
        return self.start <= value < self.end

    def to_filters(self) -> MemoryFilters:
        return MemoryFilters(after=self.start, before=self.end)


def _midnight(value: datetime) -> datetime:
    return value.replace(hour=0, minute=0, second=0, microsecond=0)


def _add_months(value: datetime, months: int) -> datetime:
    index = value.year * 12 + value.month - 1 + months
    return value.replace(year=index // 12, month=index % 12 + 1)


def _day_range(day_start: datetime, description: str) -> TimeRange:
    return TimeRange(day_start, day_start + timedelta(days=1), description)


def _past_date(now: datetime, month: int, day: int) -> Optional[datetime]:
    """Most recent occurrence of month/day at or before today."""
    for year in (now.year, now.year - 1):
        try:
            candidate = _midnight(now).replace(year=year, month=month, day=day)
        except ValueError:
            continue
        if candidate <= now:
            return candidate
    return None


def parse_time_range(text: str, now: Optional[datetime] = None) -> Optional[TimeRange]:
    """Return the time range a query refers to, or None if it names none."""
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    query = text.lower()
    today = _midnight(now)

    if _TODAY_RE.search(query):
        return _day_range(today, "today")
    if "yesterday" in query:
        return _day_range(today - timedelta(days=1), "yesterday")

    this_monday = today - timedelta(days=today.weekday())
    if "last week" in query:
        return TimeRange(this_monday - timedelta(days=7), this_monday, "last week")
    if "this week" in query:
        return TimeRange(this_monday, today + timedelta(days=1), "this week")

    first_of_month = today.replace(day=1)
    if "last month" in query:
        return TimeRange(_add_months(first_of_month, -1), first_of_month, "last month")
    if "this month" in query:
        return TimeRange(first_of_month, today + timedelta(days=1), "this month")

    m = _DAY_RE.search(query)
    if m:
        target = _DAYS[m.group(1)]
        days_back = (today.weekday() - target) % 7 or 7
        return _day_range(today - timedelta(days=days_back), _DAY_NAMES[target])

    m = _LAST_N_DAYS_RE.search(query)
    if m:
        n = int(m.group(1))
        return TimeRange(today - timedelta(days=n), today + timedelta(days=1), f"last {n} days")

    m = _MONTH_DAY_RE.search(query)
    if m:
        start = _past_date(now, _MONTHS[m.group(1)], int(m.group(2)))
        if start is not None:
            return _day_range(start, f"{m.group(1)} {int(m.group(2))}")

    m = _MONTH_RE.search(query)
    if m:
        name = m.group(1) or m.group(2)
        start = first_of_month.replace(month=_MONTHS[name])
        if start > now:
            start = start.replace(year=start.year - 1)
        return TimeRange(start, _add_months(start, 1), name.capitalize())

    m = _ORDINAL_RE.search(query)
    if m:
        day = int(m.group(1))
        start = None
        for back in (0, 1, 2):
            try:
                candidate = _add_months(first_of_month, -back).replace(day=day)
            except ValueError:
                continue
            if candidate <= now:
                start = candidate
                break
        if start is not None:
            return _day_range(start, f"the {m.group(0)}")

    if "morning" in query:
        return TimeRange(today.replace(hour=5), today.replace(hour=12), "this morning")
    if "afternoon" in query:
        return TimeRange(today.replace(hour=12), today.replace(hour=18), "this afternoon")
    if "evening" in query or "tonight" in query:
        return TimeRange(today.replace(hour=18), today + timedelta(days=1), "this evening")
    return None
