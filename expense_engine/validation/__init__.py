"""Ledger integrity checking package."""

from expense_engine.validation.integrity import LedgerIntegrityChecker

__all__ = ["LedgerIntegrityChecker"]
