"""
Storage Services Package

Provides abstract interfaces and concrete implementations for data storage.
SQLAlchemy is the production backend; the in-memory backend serves tests
and one-off scripts. Both follow the same interface.
"""

from expense_engine.services.storage.interface import (
    AuditStorageInterface,
    ConnectionError,
    DuplicateError,
    DuplicateInstanceAttempt,
    ExpenseStorageInterface,
    NotFoundError,
    StorageError,
)
from expense_engine.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryExpenseStorage,
)
from expense_engine.services.storage.sql import (
    SqlAuditStorage,
    SqlExpenseStorage,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "ExpenseStorageInterface",
    # Exceptions
    "ConnectionError",
    "DuplicateError",
    "DuplicateInstanceAttempt",
    "NotFoundError",
    "StorageError",
    # In-memory implementation
    "InMemoryAuditStorage",
    "InMemoryExpenseStorage",
    # SQL implementation
    "SqlAuditStorage",
    "SqlExpenseStorage",
]
