"""
Tests for the two-stage ledger integrity check.

Corruption is written straight into storage; the checker must report
it and leave it in place.
"""

import pytest
from datetime import date
from decimal import Decimal
from uuid import uuid4

from conftest import make_template
from expense_engine.models import BillInstance, BillStatus, FounderPayment, PaymentStatus
from expense_engine.services import FounderRegistry
from expense_engine.validation import LedgerIntegrityChecker


@pytest.fixture
def checker(storage, roster):
    return LedgerIntegrityChecker(storage, roster)


@pytest.fixture
def netflix(run, storage, generator):
    template = make_template(vendor="Netflix", amount=Decimal("15.99"))
    run(storage.save_template(template))
    run(generator.generate(months_back=0, months_forward=0))
    return template


def checks(report):
    return sorted(issue.check for issue in report.issues)


class TestHealthyLedger:
    """A ledger built through the engine passes."""

    def test_generated_ledger_is_healthy(self, run, checker, netflix):
        report = run(checker.check())
        assert report.instances_checked == 1
        assert report.issues == []
        assert report.is_healthy

    def test_variable_bill_without_shares_is_fine(self, run, storage, generator, checker):
        run(storage.save_template(make_template(vendor="City Water", amount=None)))
        run(generator.generate(0, 0))
        assert run(checker.check()).is_healthy


class TestInstanceChecks:
    """Stage 1: one instance at a time."""

    def test_split_sum_mismatch(self, run, storage, checker, netflix):
        instance = run(storage.find_instance(netflix.id, "2024-03"))
        share = run(storage.list_payments(instance_id=instance.id))[0]
        run(storage.upsert_payment(share.model_copy(update={"amount": Decimal("9.99")})))

        report = run(checker.check())

        assert checks(report) == ["split_sum"]
        assert report.errors[0].entity_id == str(instance.id)
        assert not report.is_healthy
        # Reported, not repaired
        stored = run(storage.list_payments(instance_id=instance.id))
        assert Decimal("9.99") in [p.amount for p in stored]

    def test_paid_with_pending_shares(self, run, storage, checker, netflix):
        instance = run(storage.find_instance(netflix.id, "2024-03"))
        instance.status = BillStatus.PAID
        instance.paid_date = date(2024, 3, 5)
        run(storage.update_instance(instance))

        report = run(checker.check())

        assert checks(report) == ["paid_with_pending_shares"]
        assert "u1" in report.issues[0].message

    def test_missing_template(self, run, storage, checker):
        run(storage.insert_instance(BillInstance(
            template_id=uuid4(),
            vendor="Ghost",
            amount=Decimal("0.00"),
            period="2024-03",
            due_date=date(2024, 3, 1),
        )))
        assert checks(run(checker.check())) == ["missing_template"]

    def test_unsplit_amount_is_a_warning(self, run, storage, checker):
        run(storage.insert_instance(BillInstance(
            vendor="Plumber",
            amount=Decimal("200.00"),
            period="2024-03",
            due_date=date(2024, 3, 1),
        )))

        report = run(checker.check())

        assert checks(report) == ["unsplit"]
        assert report.warnings and not report.errors
        assert report.is_healthy

    def test_unsplit_not_reported_without_founders(self, run, storage):
        checker = LedgerIntegrityChecker(storage, FounderRegistry())
        run(storage.insert_instance(BillInstance(
            vendor="Plumber",
            amount=Decimal("200.00"),
            period="2024-03",
            due_date=date(2024, 3, 1),
        )))
        assert run(checker.check()).issues == []


class TestCrossInstanceChecks:
    """Stage 2: the whole table."""

    def test_duplicate_period(self, run, storage, checker, netflix):
        extra = BillInstance(
            template_id=netflix.id,
            vendor="Netflix",
            amount=Decimal("0.00"),
            period="2024-03",
            due_date=date(2024, 3, 5),
        )
        # Storage refuses duplicates, so plant one directly
        storage._instances[extra.id] = extra

        report = run(checker.check())

        duplicates = [i for i in report.issues if i.check == "duplicate_period"]
        assert len(duplicates) == 1
        assert duplicates[0].entity_id == str(netflix.id)
        assert "2024-03" in duplicates[0].message

    def test_pending_share_for_departed_founder(self, run, roster, checker, netflix):
        roster.replace([f for f in roster.founders() if f.id != "u3"])

        report = run(checker.check())

        assert checks(report) == ["unknown_founder"]
        assert report.issues[0].entity_id == "u3"

    def test_paid_share_for_departed_founder_ignored(self, run, storage, roster, checker, netflix):
        instance = run(storage.find_instance(netflix.id, "2024-03"))
        share = [p for p in run(storage.list_payments(instance_id=instance.id)) if p.user_id == "u3"][0]
        run(storage.upsert_payment(share.model_copy(update={
            "status": PaymentStatus.PAID,
            "paid_date": date(2024, 3, 4),
        })))
        roster.replace([f for f in roster.founders() if f.id != "u3"])

        assert run(checker.check()).issues == []

    def test_roster_checks_skipped_without_roster(self, run, storage):
        instance = run(storage.insert_instance(BillInstance(
            vendor="Plumber",
            amount=Decimal("10.00"),
            period="2024-03",
            due_date=date(2024, 3, 1),
        )))
        run(storage.upsert_payment(FounderPayment(
            bill_instance_id=instance.id,
            user_id="stranger",
            amount=Decimal("10.00"),
        )))

        assert run(LedgerIntegrityChecker(storage).check()).issues == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
