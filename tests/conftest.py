"""
Shared fixtures.

Async APIs are driven with asyncio.run through the `run` fixture. The
clock is pinned to 2024-03-15 and the roster holds three founders, so
windows, overdue status and split order are deterministic.
"""

import asyncio
from datetime import date, datetime
from decimal import Decimal

import pytest

from expense_engine.audit import AuditLogger
from expense_engine.config import EngineSettings
from expense_engine.generation import InstanceGenerator
from expense_engine.ledger import FounderSplitLedger
from expense_engine.matching import TransactionMatcher
from expense_engine.models import (
    AmountType,
    Founder,
    Frequency,
    RecurringBillTemplate,
)
from expense_engine.orchestrator import ExpenseEngine
from expense_engine.services import (
    FixedClock,
    FounderRegistry,
    InMemoryAuditStorage,
    InMemoryExpenseStorage,
)


TODAY = date(2024, 3, 15)


def make_template(
    vendor: str = "Netflix",
    amount=Decimal("15.99"),
    due_day: int = 5,
    frequency: Frequency = Frequency.MONTHLY,
    created_at: datetime = datetime(2024, 1, 10),
    **kwargs,
) -> RecurringBillTemplate:
    """A template; VARIABLE when amount is None."""
    return RecurringBillTemplate(
        name=kwargs.pop("name", vendor),
        vendor=vendor,
        amount_type=AmountType.FIXED if amount is not None else AmountType.VARIABLE,
        fixed_amount=amount,
        due_day=due_day,
        frequency=frequency,
        created_at=created_at,
        **kwargs,
    )


@pytest.fixture
def run():
    return asyncio.run


@pytest.fixture
def clock():
    return FixedClock(TODAY)


@pytest.fixture
def roster():
    return FounderRegistry([
        Founder(id="u3", name="Casey"),
        Founder(id="u1", name="Alex"),
        Founder(id="u2", name="Blake"),
    ])


@pytest.fixture
def storage():
    return InMemoryExpenseStorage()


@pytest.fixture
def audit_storage():
    return InMemoryAuditStorage()


@pytest.fixture
def audit_logger(audit_storage):
    return AuditLogger(audit_storage)


@pytest.fixture
def ledger(storage, roster, clock, audit_logger):
    return FounderSplitLedger(storage, roster, clock=clock, audit_logger=audit_logger)


@pytest.fixture
def generator(storage, ledger, clock, audit_logger):
    return InstanceGenerator(storage, ledger, clock=clock, audit_logger=audit_logger)


@pytest.fixture
def matcher(storage, generator, ledger, audit_logger):
    return TransactionMatcher(storage, generator, ledger, audit_logger=audit_logger)


@pytest.fixture
def engine(storage, roster, clock, audit_logger):
    return ExpenseEngine(
        storage=storage,
        roster=roster,
        clock=clock,
        audit_logger=audit_logger,
        engine_settings=EngineSettings(),
    )
