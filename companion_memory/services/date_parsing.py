"""
Natural-language date extraction for event follow-ups.
"""

import re
from datetime import datetime, timedelta
from typing import Optional

WEEKDAYS = ('monday', 'tuesday', 'wednesday', 'thursday', 'friday', 'saturday', 'sunday')
MONTHS = ('jan', 'feb', 'mar', 'apr', 'may', 'jun', 'jul', 'aug', 'sep', 'oct', 'nov', 'dec')
SATURDAY = 5

_TOMORROW = re.compile(r'\btomorrow\b')
_TODAY = re.compile(r'\btoday\b')
_THIS_WEEKEND = re.compile(r'\bthis weekend\b')
_WEEKDAY = re.compile(r'\b(' + '|'.join(WEEKDAYS) + r')\b')
_MONTH_DAY = re.compile(r'\b(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\.?\s+(\d{1,2})\b')
_NUMERIC = re.compile(r'\b(\d{1,2})[/-](\d{1,2})\b')


def _at_noon(value: datetime) -> datetime:
    return value.replace(hour=12, minute=0, second=0, microsecond=0)


def _calendar_date(reference: datetime, month: int, day: int) -> Optional[datetime]:
    """Noon on month/day in the reference year, rolled to next year when already past."""
    try:
        candidate = _at_noon(reference.replace(month=month, day=day))
        if candidate < reference:
            candidate = candidate.replace(year=candidate.year + 1)
    except ValueError:
        return None
    return candidate


def parse_relative_date(text: str, reference: datetime) -> Optional[datetime]:
    """
    Find the date an event mentioned in text refers to.

    Patterns are tried in order and the first match wins: "tomorrow",
    "today", "this weekend", a weekday name, "Month Day" and numeric M/D or
    M-D. Relative forms resolve against `reference`, normally the time the
    memory was recorded. Dates land at noon except "today", which means the
    end of that day.

    Args:
        text: Memory content
        reference: Time the relative expressions are relative to

    Returns:
        The resolved datetime, or None when no pattern matches or the date does not exist
    """
    if not text:
        return None
    lower = text.lower()

    if _TOMORROW.search(lower):
        return _at_noon(reference + timedelta(days=1))

    if _TODAY.search(lower):
        return reference.replace(hour=23, minute=59, second=59, microsecond=999999)

    if _THIS_WEEKEND.search(lower):
        days_until_saturday = (SATURDAY - reference.weekday()) % 7 or 7
        return _at_noon(reference + timedelta(days=days_until_saturday))

    weekday = _WEEKDAY.search(lower)
    if weekday:
        target = WEEKDAYS.index(weekday.group(1))
        days_ahead = (target - reference.weekday()) % 7 or 7
        return _at_noon(reference + timedelta(days=days_ahead))

    month_day = _MONTH_DAY.search(lower)
    if month_day:
        month = MONTHS.index(month_day.group(1)) + 1
        day = int(month_day.group(2))
        if 1 <= day <= 31:
            return _calendar_date(reference, month, day)

    numeric = _NUMERIC.search(lower)
    if numeric:
        month = int(numeric.group(1))
        day = int(numeric.group(2))
        if 1 <= month <= 12 and 1 <= day <= 31:
            return _calendar_date(reference, month, day)

    return None
