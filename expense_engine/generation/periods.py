"""
Billing period arithmetic.

A period is a calendar month written "YYYY-MM". Everything here is pure:
no clock, no storage.

QUARTERLY and ANNUAL templates are anchored on the month they were
created in: a quarterly template created in February recurs in February,
May, August and November.
"""

import calendar
import re
from datetime import date, datetime
from typing import Union

from expense_engine.models.bill import (
    MIN_DUE_DAY,
    Frequency,
    PERIOD_PATTERN,
    RecurringBillTemplate,
)


_PERIOD_RE = re.compile(PERIOD_PATTERN)

# Months between two recurrences
FREQUENCY_STEP = {
    Frequency.MONTHLY: 1,
    Frequency.QUARTERLY: 3,
    Frequency.ANNUAL: 12,
}


def period_key(day: Union[date, datetime]) -> str:
    """The period a date falls in: date(2024, 3, 15) -> "2024-03"."""
    return f"{day.year:04d}-{day.month:02d}"


def parse_period(period: str) -> tuple[int, int]:
    """
    Split "YYYY-MM" into (year, month).

    Raises:
        ValueError: If the string is not a valid period
    """
    if not isinstance(period, str) or not _PERIOD_RE.match(period):
        raise ValueError(f"Invalid period '{period}', expected YYYY-MM")
    year, month = period.split("-")
    return int(year), int(month)


def shift_period(period: str, months: int) -> str:
    """Move a period by a number of months (negative goes back)."""
    year, month = parse_period(period)
    index = year * 12 + (month - 1) + months
    return f"{index // 12:04d}-{index % 12 + 1:02d}"


def months_between(start: str, end: str) -> int:
    """Signed number of months from start to end."""
    start_year, start_month = parse_period(start)
    end_year, end_month = parse_period(end)
    return (end_year - start_year) * 12 + (end_month - start_month)


def period_window(today: date, months_back: int, months_forward: int) -> list[str]:
    """Every period from months_back before today to months_forward after, inclusive."""
    if months_back < 0 or months_forward < 0:
        raise ValueError("months_back and months_forward must be non-negative")
    current = period_key(today)
    return [shift_period(current, offset) for offset in range(-months_back, months_forward + 1)]


def days_in_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def due_date_for(period: str, due_day: int) -> date:
    """Due date in a period, with the day clamped into the month."""
    year, month = parse_period(period)
    day = min(max(due_day, MIN_DUE_DAY), days_in_month(year, month))
    return date(year, month, day)


def recurs_in(template: RecurringBillTemplate, period: str) -> bool:
    """Does the template produce an instance in this period?"""
    step = FREQUENCY_STEP[template.frequency]
    if step == 1:
        parse_period(period)
        return True
    anchor = period_key(template.created_at)
    return months_between(anchor, period) % step == 0


def latest_recurrence(template: RecurringBillTemplate, period: str) -> str:
    """
    The most recent period, at or before `period`, the template recurs in.

    A quarterly bill paid in June belongs to the April instance when the
    template recurs in January/April/July/October.
    """
    step = FREQUENCY_STEP[template.frequency]
    anchor = period_key(template.created_at)
    return shift_period(period, -(months_between(anchor, period) % step))
