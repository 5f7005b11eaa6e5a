"""Services package."""

from expense_engine.services.clock import Clock, FixedClock, SystemClock
from expense_engine.services.roster import FounderRegistry, RosterError
from expense_engine.services.storage import (
    AuditStorageInterface,
    ConnectionError,
    DuplicateError,
    DuplicateInstanceAttempt,
    ExpenseStorageInterface,
    InMemoryAuditStorage,
    InMemoryExpenseStorage,
    NotFoundError,
    SqlAuditStorage,
    SqlExpenseStorage,
    StorageError,
)

__all__ = [
    # Clock
    "Clock",
    "FixedClock",
    "SystemClock",
    # Founder roster
    "FounderRegistry",
    "RosterError",
    # Storage services
    "AuditStorageInterface",
    "ConnectionError",
    "DuplicateError",
    "DuplicateInstanceAttempt",
    "ExpenseStorageInterface",
    "InMemoryAuditStorage",
    "InMemoryExpenseStorage",
    "NotFoundError",
    "SqlAuditStorage",
    "SqlExpenseStorage",
    "StorageError",
]
