"""Founder split ledger package."""

from expense_engine.ledger.splitter import (
    FounderSplitLedger,
    SplitRoundingViolation,
    compute_split,
    verify_split,
)

__all__ = [
    "FounderSplitLedger",
    "SplitRoundingViolation",
    "compute_split",
    "verify_split",
]
