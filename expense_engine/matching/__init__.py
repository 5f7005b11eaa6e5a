"""Transaction matching package."""

from expense_engine.matching.matcher import (
    TransactionMatcher,
    find_orphan,
    find_skip_rule,
    find_template,
    within_tolerance,
)

__all__ = [
    "TransactionMatcher",
    "find_orphan",
    "find_skip_rule",
    "find_template",
    "within_tolerance",
]
