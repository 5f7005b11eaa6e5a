"""
Tests for ExpenseEngine wiring, the template and rule registries, and
the engine factory.
"""

import pytest
from datetime import date
from decimal import Decimal
from uuid import uuid4

from conftest import make_template
from expense_engine.models import (
    AmountType,
    AuditEventType,
    BillInstance,
    BillStatus,
    SkipRuleType,
    Transaction,
    VendorAmountSkipRule,
)
from expense_engine.orchestrator import ExpenseEngine, create_engine_components
from expense_engine.services import InMemoryExpenseStorage
from expense_engine.services.storage import NotFoundError, SqlExpenseStorage


def tx(tx_id, description, amount="20.00", **kwargs) -> Transaction:
    return Transaction(
        id=tx_id,
        description=description,
        amount=Decimal(amount),
        transacted_on=kwargs.pop("transacted_on", date(2024, 3, 10)),
        **kwargs,
    )


class TestTemplateRegistry:
    """create, update and deactivate templates."""

    def test_create_returns_existing_for_same_vendor(self, run, engine):
        first, created = run(engine.create_template(make_template(vendor="Netflix")))
        again, created_again = run(engine.create_template(make_template(vendor="NETFLIX ")))

        assert created is True
        assert created_again is False
        assert again.id == first.id
        assert len(run(engine.storage.list_templates())) == 1

    def test_different_amount_type_is_a_new_template(self, run, engine):
        run(engine.create_template(make_template(vendor="Duke Energy")))
        _, created = run(engine.create_template(make_template(vendor="Duke Energy", amount=None)))
        assert created is True

    def test_update_changes_fields_not_instances(self, run, engine):
        template, _ = run(engine.create_template(make_template()))
        run(engine.generate(months_back=0, months_forward=0))

        updated = run(engine.update_template(template.id, fixed_amount=Decimal("22.99")))

        assert updated.fixed_amount == Decimal("22.99")
        assert run(engine.storage.get_template(template.id)).fixed_amount == Decimal("22.99")
        instance = run(engine.storage.find_instance(template.id, "2024-03"))
        assert instance.amount == Decimal("15.99")

    def test_update_switches_amount_type_atomically(self, run, engine):
        template, _ = run(engine.create_template(make_template()))

        updated = run(engine.update_template(
            template.id, amount_type=AmountType.VARIABLE, fixed_amount=None
        ))

        assert updated.amount_type == AmountType.VARIABLE
        assert updated.fixed_amount is None

    def test_update_rejects_invalid_result(self, run, engine):
        template, _ = run(engine.create_template(make_template()))
        with pytest.raises(ValueError):
            run(engine.update_template(template.id, amount_type=AmountType.VARIABLE))
        assert run(engine.storage.get_template(template.id)).amount_type == AmountType.FIXED

    def test_update_rejects_unknown_field(self, run, engine):
        template, _ = run(engine.create_template(make_template()))
        with pytest.raises(ValueError):
            run(engine.update_template(template.id, id=uuid4()))

    def test_update_unknown_template(self, run, engine):
        with pytest.raises(NotFoundError):
            run(engine.update_template(uuid4(), name="x"))

    def test_update_is_audited(self, run, engine, audit_storage):
        template, _ = run(engine.create_template(make_template()))
        run(engine.update_template(template.id, due_day=12, name="Netflix Premium"))

        event = audit_storage.events[-1]
        assert event.event_type == AuditEventType.TEMPLATE_UPDATED
        assert event.details["changed_fields"] == ["due_day", "name"]

    def test_deactivated_template_stops_generating(self, run, engine):
        template, _ = run(engine.create_template(make_template()))
        run(engine.deactivate_template(template.id, reason="cancelled"))

        result = run(engine.generate(months_back=0, months_forward=0))

        assert result["created"] == 0
        assert run(engine.storage.get_template(template.id)).active is False


class TestRuleRegistry:
    """Creating rules runs them over the triage queue."""

    def test_create_rule_from_dict_clears_triage(self, run, engine):
        run(engine.match(tx("tx-1", "VENMO CASHOUT")))
        run(engine.match(tx("tx-2", "CORNER DELI")))

        rule, report = run(engine.create_rule({"rule_type": "VENDOR", "vendor_pattern": "venmo"}))

        assert rule.rule_type == "VENDOR"
        assert report.skipped == 1
        assert [t.id for t in run(engine.triage_queue())] == ["tx-2"]

    def test_deactivate_rule(self, run, engine):
        rule, _ = run(engine.create_rule({"rule_type": "VENDOR", "vendor_pattern": "venmo"}))
        deactivated = run(engine.deactivate_rule(rule.id))

        assert deactivated.is_active is False
        result = run(engine.match(tx("tx-1", "VENMO CASHOUT")))
        assert result.outcome == "UNMATCHED"

    def test_deactivate_unknown_rule(self, run, engine):
        with pytest.raises(NotFoundError):
            run(engine.deactivate_rule(uuid4()))

    def test_dismiss_uses_merchant_and_amount(self, run, engine):
        first = tx("tx-1", "VENMO *ALEX", merchant_name="Venmo")
        lookalike = tx("tx-2", "VENMO *BLAKE", "20.50", merchant_name="Venmo")
        run(engine.match(first))
        run(engine.match(lookalike))

        rule = run(engine.dismiss_transaction(first))

        assert isinstance(rule, VendorAmountSkipRule)
        assert rule.vendor_pattern == "Venmo"
        assert rule.amount == Decimal("20.00")
        assert rule.amount_variance == Decimal("0.05")
        assert run(engine.triage_queue()) == []

    def test_dismiss_without_merchant_uses_description(self, run, engine):
        rule = run(engine.dismiss_transaction(tx("tx-9", "ATM WITHDRAWAL 0042")))
        assert rule.rule_type == SkipRuleType.DESCRIPTION_PATTERN.value
        assert rule.description_pattern == "ATM WITHDRAWAL 0042"
        assert rule.skip_count == 0

    def test_account_rule_needs_an_account(self, engine):
        with pytest.raises(ValueError):
            engine.rule_from_transaction(tx("tx-1", "TRANSFER"), SkipRuleType.ACCOUNT)


class TestBatchJobs:
    """Batch entry points return plain dicts for job callers."""

    def test_generate_uses_settings_window(self, run, engine):
        run(engine.create_template(make_template()))

        result = run(engine.generate())

        assert result["created"] == 9
        assert result["periods"][0] == "2023-09"
        assert result["periods"][-1] == "2024-05"
        assert result["errors"] == []

    def test_fix_orphans(self, run, engine):
        template, _ = run(engine.create_template(make_template()))
        orphan = run(engine.storage.insert_instance(BillInstance(
            vendor="NETFLIX.COM",
            amount=Decimal("15.99"),
            period="2024-03",
            due_date=date(2024, 3, 5),
        )))

        result = run(engine.fix_orphans())

        assert result == {"linked": 1, "ambiguous": [], "failures": []}
        assert run(engine.storage.get_instance(orphan.id)).template_id == template.id

    def test_consolidate_summary(self, run, engine):
        run(engine.storage.save_template(make_template(vendor="netflix")))
        run(engine.storage.save_template(make_template(vendor="Netflix Inc")))

        preview = run(engine.preview_consolidation("all"))
        result = run(engine.consolidate("all"))

        assert len(preview.template_groups) == 1
        assert result["scope"] == "all"
        assert result["groups_merged"] == 1
        assert result["bills_deactivated"] == 1
        assert result["rules_deleted"] == 0
        assert result["failures"] == []

    def test_consolidate_rejects_unknown_scope(self, run, engine):
        with pytest.raises(ValueError):
            run(engine.consolidate("EVERYTHING"))


class TestLedgerAndReads:
    """Engine pass-throughs to the ledger and read projections."""

    def test_match_then_pay(self, run, engine):
        run(engine.create_template(make_template(vendor="Duke Energy", amount=Decimal("150.00"), due_day=15)))
        result = run(engine.match(tx("tx-1", "DUKE ENERGY PAYMENT", "150.00")))

        instance = run(engine.mark_all_paid(result.instance_id, paid_via="Checking"))

        assert instance.status == BillStatus.PAID
        balances = run(engine.founder_balances())
        assert all(b.paid_amount == Decimal("50.00") for b in balances)

    def test_upcoming_defaults_to_settings_window(self, run, engine):
        run(engine.create_template(make_template(vendor="Rent", amount=Decimal("3000.00"), due_day=20)))
        run(engine.create_template(make_template(vendor="Gym", amount=Decimal("40.00"), due_day=25)))
        run(engine.generate(months_back=0, months_forward=0))

        upcoming = run(engine.upcoming_bills())

        assert [b.instance.vendor for b in upcoming] == ["Rent"]

    def test_check_integrity(self, run, engine):
        run(engine.create_template(make_template()))
        run(engine.generate(months_back=1, months_forward=0))
        report = run(engine.check_integrity())
        assert report.instances_checked == 2
        assert report.is_healthy


class TestFactory:
    """create_engine_components wiring."""

    def test_in_memory(self, roster, clock):
        engine = create_engine_components(roster=roster, clock=clock, use_database=False)

        assert isinstance(engine, ExpenseEngine)
        assert isinstance(engine.storage, InMemoryExpenseStorage)
        assert engine.roster is roster

    def test_sql_from_url(self, run, roster, clock):
        engine = create_engine_components(roster=roster, clock=clock, database_url="sqlite://")

        assert isinstance(engine.storage, SqlExpenseStorage)
        run(engine.create_template(make_template()))
        assert run(engine.generate(months_back=0, months_forward=0))["created"] == 1

    def test_provided_storage_is_used(self, roster):
        storage = InMemoryExpenseStorage()
        engine = create_engine_components(storage=storage, roster=roster)
        assert engine.storage is storage


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
