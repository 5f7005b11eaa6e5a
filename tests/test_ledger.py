"""
Tests for the founder split ledger.

CRITICAL property: founder shares of an instance always sum to the
instance amount, to the cent.
"""

import pytest
from datetime import date
from decimal import Decimal
from uuid import uuid4

from expense_engine.ledger import (
    FounderSplitLedger,
    SplitRoundingViolation,
    compute_split,
    verify_split,
)
from expense_engine.models import (
    AuditEventType,
    BillInstance,
    BillStatus,
    Founder,
    FounderPayment,
    PaymentStatus,
)
from expense_engine.services import FounderRegistry
from expense_engine.services.storage import NotFoundError


def founders(*ids):
    return [Founder(id=i) for i in ids]


def new_instance(amount="100.00", **kwargs) -> BillInstance:
    return BillInstance(
        template_id=kwargs.pop("template_id", uuid4()),
        vendor=kwargs.pop("vendor", "Netflix"),
        amount=Decimal(amount),
        period=kwargs.pop("period", "2024-03"),
        due_date=kwargs.pop("due_date", date(2024, 3, 5)),
        **kwargs,
    )


class TestComputeSplit:
    """Tests for the pure split arithmetic."""

    def test_scenario_remainder_to_first_founders_by_id(self):
        """100.01 over three founders: 33.34, 33.34, 33.33."""
        shares = compute_split(Decimal("100.01"), founders("u3", "u1", "u2"))
        assert shares == [
            ("u1", Decimal("33.34")),
            ("u2", Decimal("33.34")),
            ("u3", Decimal("33.33")),
        ]
        assert sum(s for _, s in shares) == Decimal("100.01")

    def test_even_split(self):
        shares = compute_split(Decimal("150.00"), founders("a", "b", "c"))
        assert [s for _, s in shares] == [Decimal("50.00")] * 3

    @pytest.mark.parametrize("amount,count", [
        ("100.00", 3),
        ("0.01", 3),
        ("0.02", 7),
        ("999999.99", 6),
        ("15.99", 4),
        ("1.00", 1),
    ])
    def test_sum_is_exact(self, amount, count):
        ids = [f"u{i}" for i in range(count)]
        shares = compute_split(Decimal(amount), founders(*ids))
        assert sum(s for _, s in shares) == Decimal(amount)
        assert max(s for _, s in shares) - min(s for _, s in shares) <= Decimal("0.01")

    def test_zero_amount_produces_nothing(self):
        assert compute_split(Decimal("0.00"), founders("a", "b")) == []

    def test_no_founders_produces_nothing(self):
        assert compute_split(Decimal("10.00"), []) == []

    def test_verify_split_raises_on_mismatch(self):
        instance = new_instance("10.00")
        payments = [
            FounderPayment(bill_instance_id=instance.id, user_id="a", amount=Decimal("5.00")),
            FounderPayment(bill_instance_id=instance.id, user_id="b", amount=Decimal("4.99")),
        ]
        with pytest.raises(SplitRoundingViolation) as exc_info:
            verify_split(instance, payments)
        assert isinstance(exc_info.value, AssertionError)
        assert exc_info.value.actual == Decimal("9.99")


class TestApplySplit:
    """Tests for persisting splits."""

    def test_apply_creates_one_row_per_founder(self, run, storage, ledger):
        instance = run(storage.insert_instance(new_instance("100.01")))
        payments = run(ledger.apply_split(instance))

        assert len(payments) == 3
        stored = run(storage.list_payments(instance_id=instance.id))
        assert sum(p.amount for p in stored) == Decimal("100.01")

    def test_resplit_keeps_paid_status(self, run, storage, ledger):
        """Changing the amount updates shares in place; who paid is untouched."""
        instance = run(storage.insert_instance(new_instance("90.00")))
        run(ledger.apply_split(instance))
        run(ledger.mark_founder_paid(instance.id, "u2", paid_date=date(2024, 3, 2)))

        run(ledger.set_amount(instance.id, Decimal("120.00")))

        stored = {p.user_id: p for p in run(storage.list_payments(instance_id=instance.id))}
        assert stored["u2"].status == PaymentStatus.PAID
        assert stored["u2"].paid_date == date(2024, 3, 2)
        assert stored["u1"].status == PaymentStatus.PENDING
        assert sum(p.amount for p in stored.values()) == Decimal("120.00")

    def test_roster_change_removes_departed_founder(self, run, storage, ledger, roster):
        instance = run(storage.insert_instance(new_instance("90.00")))
        run(ledger.apply_split(instance))

        roster.replace([Founder(id="u1"), Founder(id="u2")])
        run(ledger.apply_split(instance))

        stored = run(storage.list_payments(instance_id=instance.id))
        assert [p.user_id for p in stored] == ["u1", "u2"]
        assert [p.amount for p in stored] == [Decimal("45.00")] * 2

    def test_empty_roster_leaves_bill_unsplit(self, run, storage, clock, audit_logger, audit_storage):
        ledger = FounderSplitLedger(storage, FounderRegistry(), clock=clock, audit_logger=audit_logger)
        instance = run(storage.insert_instance(new_instance("10.00")))

        assert run(ledger.apply_split(instance)) == []
        assert any(e.event_type == AuditEventType.SYSTEM_ERROR for e in audit_storage.events)


class TestMarkPaid:
    """Tests for payment status changes."""

    def _split_instance(self, run, storage, ledger, amount="90.00"):
        instance = run(storage.insert_instance(new_instance(amount)))
        run(ledger.apply_split(instance))
        return instance

    def test_instance_paid_only_when_every_share_paid(self, run, storage, ledger):
        instance = self._split_instance(run, storage, ledger)

        run(ledger.mark_founder_paid(instance.id, "u1", paid_date=date(2024, 3, 1)))
        run(ledger.mark_founder_paid(instance.id, "u2", paid_date=date(2024, 3, 3)))
        assert run(storage.get_instance(instance.id)).status == BillStatus.PENDING

        updated = run(ledger.mark_founder_paid(instance.id, "u3", paid_date=date(2024, 3, 2)))
        assert updated.status == BillStatus.PAID
        assert updated.paid_date == date(2024, 3, 3)

    def test_marking_one_share_leaves_siblings(self, run, storage, ledger):
        instance = self._split_instance(run, storage, ledger)
        run(ledger.mark_founder_paid(instance.id, "u1"))

        stored = {p.user_id: p.status for p in run(storage.list_payments(instance_id=instance.id))}
        assert stored == {
            "u1": PaymentStatus.PAID,
            "u2": PaymentStatus.PENDING,
            "u3": PaymentStatus.PENDING,
        }

    def test_reverting_a_share_reverts_the_instance(self, run, storage, ledger):
        instance = self._split_instance(run, storage, ledger)
        run(ledger.mark_all_paid(instance.id))

        updated = run(ledger.mark_founder_paid(
            instance.id, "u2", status=PaymentStatus.PENDING
        ))

        assert updated.status == BillStatus.PENDING
        assert updated.paid_date is None

    def test_mark_all_paid(self, run, storage, ledger, clock):
        instance = self._split_instance(run, storage, ledger)
        updated = run(ledger.mark_all_paid(instance.id, paid_via="Card 1234"))

        assert updated.status == BillStatus.PAID
        assert updated.paid_date == clock.today()
        assert updated.paid_via == "Card 1234"
        payments = run(storage.list_payments(instance_id=instance.id))
        assert all(p.status == PaymentStatus.PAID for p in payments)

    def test_unknown_founder_share_raises(self, run, storage, ledger):
        instance = self._split_instance(run, storage, ledger)
        with pytest.raises(NotFoundError):
            run(ledger.mark_founder_paid(instance.id, "nobody"))

    def test_resplit_of_paid_bill_adds_paid_rows(self, run, storage, ledger, roster):
        """A founder joining after payment doesn't reopen a settled bill."""
        instance = self._split_instance(run, storage, ledger)
        run(ledger.mark_all_paid(instance.id, paid_date=date(2024, 3, 1)))

        roster.replace(roster.founders() + [Founder(id="u4")])
        paid = run(storage.get_instance(instance.id))
        run(ledger.apply_split(paid))

        new_row = [p for p in run(storage.list_payments(instance_id=instance.id)) if p.user_id == "u4"][0]
        assert new_row.status == PaymentStatus.PAID
        assert new_row.paid_date == date(2024, 3, 1)


class TestSetAmountAndDelete:
    """Tests for administrative corrections."""

    def test_set_amount_rejects_negative(self, run, storage, ledger):
        instance = run(storage.insert_instance(new_instance("10.00")))
        with pytest.raises(ValueError):
            run(ledger.set_amount(instance.id, Decimal("-1")))

    def test_set_amount_rounds_to_cents(self, run, storage, ledger):
        instance = run(storage.insert_instance(new_instance("10.00")))
        updated = run(ledger.set_amount(instance.id, Decimal("12.345")))
        assert updated.amount == Decimal("12.35")

    def test_delete_removes_shares(self, run, storage, ledger, audit_storage):
        instance = run(storage.insert_instance(new_instance("30.00")))
        run(ledger.apply_split(instance))

        assert run(ledger.delete_instance(instance.id)) is True
        assert run(storage.get_instance(instance.id)) is None
        assert run(storage.list_payments(instance_id=instance.id)) == []
        assert audit_storage.events[-1].event_type == AuditEventType.INSTANCE_DELETED

    def test_delete_unknown_instance_raises(self, run, ledger):
        with pytest.raises(NotFoundError):
            run(ledger.delete_instance(uuid4()))


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
