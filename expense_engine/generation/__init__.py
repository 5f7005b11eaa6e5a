"""Bill instance generation package."""

from expense_engine.generation.generator import InstanceGenerator, build_instance
from expense_engine.generation.periods import (
    days_in_month,
    due_date_for,
    latest_recurrence,
    months_between,
    parse_period,
    period_key,
    period_window,
    recurs_in,
    shift_period,
)

__all__ = [
    "InstanceGenerator",
    "build_instance",
    "days_in_month",
    "due_date_for",
    "latest_recurrence",
    "months_between",
    "parse_period",
    "period_key",
    "period_window",
    "recurs_in",
    "shift_period",
]
