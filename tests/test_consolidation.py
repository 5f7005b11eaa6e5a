"""
Tests for consolidation: pure planning, then transactional apply.
"""

import pytest
from datetime import date, datetime
from decimal import Decimal

from conftest import make_template
from expense_engine.consolidation import (
    ConsolidationService,
    build_plan,
    plan_orphan_links,
    plan_rule_merges,
    plan_template_merges,
)
from expense_engine.generation.periods import due_date_for, shift_period
from expense_engine.models import (
    AuditEventType,
    BillInstance,
    BillStatus,
    ConsolidationScope,
    DescriptionPatternSkipRule,
    Frequency,
    PaymentStatus,
    Transaction,
    TransactionType,
    VendorSkipRule,
)


@pytest.fixture
def service(storage, matcher, audit_logger):
    return ConsolidationService(storage, matcher=matcher, audit_logger=audit_logger)


def add_instances(run, storage, template, start, count):
    """Insert `count` consecutive monthly instances for a template."""
    instances = []
    for offset in range(count):
        period = shift_period(start, offset)
        instances.append(run(storage.insert_instance(BillInstance(
            template_id=template.id,
            vendor=template.vendor,
            amount=template.fixed_amount or Decimal("0.00"),
            period=period,
            due_date=due_date_for(period, template.due_day),
        ))))
    return instances


def orphan(vendor, period, amount="15.99"):
    return BillInstance(
        vendor=vendor,
        amount=Decimal(amount),
        period=period,
        due_date=due_date_for(period, 5),
    )


class TestRuleMerges:
    """Duplicate skip rules collapse into the busiest one."""

    def _rules(self):
        return [
            VendorSkipRule(vendor_pattern="Venmo", skip_count=3, created_at=datetime(2023, 1, 1)),
            VendorSkipRule(vendor_pattern="venmo ", skip_count=5, created_at=datetime(2023, 6, 1)),
            VendorSkipRule(vendor_pattern="VENMO", skip_count=1, created_at=datetime(2022, 1, 1)),
            VendorSkipRule(vendor_pattern="zelle"),
        ]

    def test_plan_picks_highest_skip_count(self):
        rules = self._rules()
        groups = plan_rule_merges(rules)

        assert len(groups) == 1
        assert groups[0].survivor_id == rules[1].id
        assert set(groups[0].duplicate_ids) == {rules[0].id, rules[2].id}
        assert groups[0].merged_skip_count == 9

    def test_tie_goes_to_oldest(self):
        newer = VendorSkipRule(vendor_pattern="venmo", skip_count=2, created_at=datetime(2024, 1, 1))
        older = VendorSkipRule(vendor_pattern="venmo", skip_count=2, created_at=datetime(2023, 1, 1))
        assert plan_rule_merges([newer, older])[0].survivor_id == older.id

    def test_different_types_never_merge(self):
        rules = [
            VendorSkipRule(vendor_pattern="venmo"),
            DescriptionPatternSkipRule(description_pattern="venmo"),
        ]
        assert plan_rule_merges(rules) == []

    def test_directions_never_merge(self, run, storage, service, matcher):
        income = VendorSkipRule(
            vendor_pattern="Transfer", transaction_type=TransactionType.INCOME, skip_count=5
        )
        expense = VendorSkipRule(vendor_pattern="transfer", transaction_type=TransactionType.EXPENSE)
        run(storage.save_rule(income))
        run(storage.save_rule(expense))

        report = run(service.consolidate(ConsolidationScope.RULES))

        assert report.groups_merged == 0
        assert len(run(storage.list_rules())) == 2
        result = run(matcher.match(Transaction(
            id="tx-1",
            description="TRANSFER TO SAVINGS",
            amount=Decimal("-500.00"),
            transacted_on=date(2024, 3, 1),
        )))
        assert result.outcome == "SKIPPED"

    def test_regex_and_substring_never_merge(self):
        rules = [
            DescriptionPatternSkipRule(description_pattern="atm.*fee"),
            DescriptionPatternSkipRule(description_pattern="atm.*fee", is_regex=True),
        ]
        assert plan_rule_merges(rules) == []

    def test_apply_sums_counts_and_deletes_losers(self, run, storage, service):
        rules = self._rules()
        for rule in rules:
            run(storage.save_rule(rule))

        report = run(service.consolidate(ConsolidationScope.RULES))

        assert report.groups_merged == 1
        assert report.rules_deleted == 2
        remaining = run(storage.list_rules())
        assert len(remaining) == 2
        survivor = run(storage.get_rule(rules[1].id))
        assert survivor.skip_count == 9


class TestTemplateMerges:
    """Duplicate templates collapse into the one with most instances."""

    def test_scenario_survivor_keeps_all_instances(self, run, storage, service):
        """netflix (5 instances) absorbs Netflix Inc (2 instances); 7 stay referenced."""
        keep = make_template(vendor="netflix", email_patterns=["netflix.com"])
        dupe = make_template(vendor="Netflix Inc", created_at=datetime(2023, 1, 1))
        run(storage.save_template(keep))
        run(storage.save_template(dupe))
        add_instances(run, storage, keep, "2023-10", 5)
        add_instances(run, storage, dupe, "2024-03", 2)

        report = run(service.consolidate(ConsolidationScope.BILLS))

        assert report.groups_merged == 1
        assert report.bills_deactivated == 1
        assert report.instances_migrated == 2
        assert len(run(storage.list_instances(template_id=keep.id))) == 7
        assert run(storage.list_instances(template_id=dupe.id)) == []

        loser = run(storage.get_template(dupe.id))
        assert loser.active is False
        assert loser.name == "[MERGED] Netflix Inc"

        survivor = run(storage.get_template(keep.id))
        assert survivor.active is True
        assert "netflix.com" in survivor.email_patterns
        assert "netflix inc" in survivor.email_patterns

    def test_tie_on_instances_goes_to_oldest(self):
        older = make_template(vendor="Netflix", created_at=datetime(2022, 1, 1))
        newer = make_template(vendor="netflix", created_at=datetime(2023, 1, 1))
        mergeable, conflicted = plan_template_merges([newer, older], [])
        assert mergeable[0].survivor_id == older.id
        assert conflicted == []

    def test_different_amounts_never_merge(self):
        a = make_template(vendor="Netflix", amount=Decimal("15.99"))
        b = make_template(vendor="Netflix", amount=Decimal("22.99"))
        assert plan_template_merges([a, b], []) == ([], [])

    def test_paid_on_both_sides_blocks_merge(self, run, storage, service, audit_storage):
        keep = make_template(vendor="netflix")
        dupe = make_template(vendor="Netflix Inc")
        run(storage.save_template(keep))
        run(storage.save_template(dupe))
        kept = add_instances(run, storage, keep, "2024-01", 3)
        copies = add_instances(run, storage, dupe, "2024-03", 1)
        for instance in (kept[-1], copies[0]):
            instance.status = BillStatus.PAID
            run(storage.update_instance(instance))

        report = run(service.consolidate(ConsolidationScope.BILLS))

        assert report.groups_merged == 0
        assert len(report.conflicted_groups) == 1
        assert report.conflicted_groups[0].conflicting_periods == ["2024-03"]
        assert run(storage.get_template(dupe.id)).active is True
        assert any(e.event_type == AuditEventType.MERGE_CONFLICT for e in audit_storage.events)

    def test_generated_duplicates_fold_into_survivor(self, run, storage, service, generator):
        """Both templates generated over the same window still merge."""
        keep = make_template(vendor="netflix")
        dupe = make_template(vendor="Netflix Inc", created_at=datetime(2024, 2, 1))
        run(storage.save_template(keep))
        run(storage.save_template(dupe))
        run(generator.generate(months_back=2, months_forward=1))

        report = run(service.consolidate(ConsolidationScope.BILLS))

        assert report.groups_merged == 1
        assert report.conflicted_groups == []
        assert report.instances_folded == 4
        assert report.instances_migrated == 0
        assert run(storage.get_template(dupe.id)).active is False
        assert len(run(storage.list_instances())) == 4
        assert len(run(storage.list_payments())) == 12

        run(generator.generate(months_back=2, months_forward=2))

        may = [i for i in run(storage.list_instances()) if i.period == "2024-05"]
        assert [i.template_id for i in may] == [keep.id]

    def test_paid_copy_is_kept_over_unpaid_survivor_copy(self, run, storage, service, generator, ledger):
        keep = make_template(vendor="netflix")
        dupe = make_template(vendor="Netflix Inc", created_at=datetime(2024, 2, 1))
        run(storage.save_template(keep))
        run(storage.save_template(dupe))
        run(generator.generate(months_back=0, months_forward=0))
        paid_copy = run(storage.find_instance(dupe.id, "2024-03"))
        run(ledger.mark_founder_paid(paid_copy.id, "u1"))

        report = run(service.consolidate(ConsolidationScope.BILLS))

        assert report.groups_merged == 1
        assert report.instances_folded == 1
        assert report.instances_migrated == 1
        moved = run(storage.find_instance(keep.id, "2024-03"))
        assert moved.id == paid_copy.id
        paid = [p for p in run(storage.list_payments(instance_id=moved.id)) if p.status == PaymentStatus.PAID]
        assert [p.user_id for p in paid] == ["u1"]

    def test_unpaid_copies_with_different_amounts_conflict(self):
        keep = make_template(vendor="netflix")
        dupe = make_template(vendor="Netflix Inc", created_at=datetime(2024, 2, 1))
        instances = [
            BillInstance(
                template_id=template.id,
                vendor=template.vendor,
                amount=Decimal(amount),
                period="2024-03",
                due_date=date(2024, 3, 5),
            )
            for template, amount in ((keep, "15.99"), (dupe, "17.49"))
        ]

        mergeable, conflicted = plan_template_merges([keep, dupe], instances)

        assert mergeable == []
        assert conflicted[0].conflicting_periods == ["2024-03"]
        assert conflicted[0].folded_instance_ids == []

    def test_failing_group_rolls_back(self, run, storage, service, audit_storage):
        keep = make_template(vendor="netflix")
        dupe = make_template(vendor="Netflix Inc")
        run(storage.save_template(keep))
        run(storage.save_template(dupe))
        add_instances(run, storage, keep, "2024-01", 2)
        add_instances(run, storage, dupe, "2024-03", 1)

        async def broken_update(template):
            raise RuntimeError("write failed")

        storage.update_template = broken_update
        report = run(service.consolidate(ConsolidationScope.BILLS))

        assert report.groups_merged == 0
        assert len(report.failures) == 1
        assert "write failed" in report.failures[0].message
        # Instance re-pointing happened before the failure and was undone
        assert len(run(storage.list_instances(template_id=dupe.id))) == 1
        assert run(storage.get_template(dupe.id)).active is True
        assert any(e.event_type == AuditEventType.CONSOLIDATION_FAILED for e in audit_storage.events)

    def test_rerun_is_a_no_op(self, run, storage, service):
        keep = make_template(vendor="netflix")
        dupe = make_template(vendor="Netflix Inc")
        run(storage.save_template(keep))
        run(storage.save_template(dupe))
        add_instances(run, storage, keep, "2024-01", 2)

        run(service.consolidate(ConsolidationScope.ALL))
        second = run(service.consolidate(ConsolidationScope.ALL))

        assert second.groups_merged == 0
        assert second.failures == []


class TestOrphanLinks:
    """Orphans link only to a single, free, matching template."""

    def test_orphan_linked_to_unique_template(self, run, storage, service):
        template = make_template(vendor="Netflix")
        run(storage.save_template(template))
        lone = run(storage.insert_instance(orphan("NETFLIX.COM", "2024-05")))

        report = run(service.consolidate(ConsolidationScope.ORPHANS))

        assert report.orphans_linked == 1
        assert run(storage.get_instance(lone.id)).template_id == template.id

    def test_orphan_not_linked_when_period_taken(self, run, storage, service):
        template = make_template(vendor="Netflix")
        run(storage.save_template(template))
        add_instances(run, storage, template, "2024-05", 1)
        lone = run(storage.insert_instance(orphan("Netflix", "2024-05")))

        report = run(service.consolidate(ConsolidationScope.ORPHANS))

        assert report.orphans_linked == 0
        assert run(storage.get_instance(lone.id)).is_orphan

    def test_ambiguous_orphan_reported_not_guessed(self, run, storage, service):
        fixed = make_template(vendor="Duke Energy", amount=Decimal("150.00"))
        variable = make_template(vendor="Duke Energy", amount=None)
        run(storage.save_template(fixed))
        run(storage.save_template(variable))
        lone = run(storage.insert_instance(orphan("Duke Energy", "2024-05", "150.00")))

        report = run(service.consolidate(ConsolidationScope.ORPHANS))

        assert report.orphans_linked == 0
        assert len(report.ambiguous_orphans) == 1
        assert set(report.ambiguous_orphans[0].candidate_template_ids) == {fixed.id, variable.id}
        assert run(storage.get_instance(lone.id)).is_orphan

    def test_two_orphans_same_period_only_one_links(self):
        template = make_template(vendor="Netflix")
        first = orphan("Netflix", "2024-05")
        second = orphan("Netflix", "2024-05")
        links, ambiguous = plan_orphan_links([first, second], [template])
        assert len(links) == 1
        assert ambiguous == []

    def test_orphan_skips_template_not_recurring_that_month(self):
        template = make_template(
            vendor="Insurance Co",
            frequency=Frequency.ANNUAL,
            created_at=datetime(2024, 1, 1),
        )
        links, _ = plan_orphan_links([orphan("Insurance Co", "2024-05")], [template])
        assert links == []


class TestPreviewAndReapply:
    """Preview has no side effects; APPLY_RULES re-runs skip rules."""

    def test_preview_changes_nothing(self, run, storage, service):
        keep = make_template(vendor="netflix")
        dupe = make_template(vendor="Netflix Inc")
        run(storage.save_template(keep))
        run(storage.save_template(dupe))

        plan = run(service.preview(ConsolidationScope.ALL))

        assert len(plan.template_groups) == 1
        assert not plan.is_empty
        assert run(storage.get_template(dupe.id)).active is True

    def test_build_plan_respects_scope(self):
        rules = [VendorSkipRule(vendor_pattern="venmo"), VendorSkipRule(vendor_pattern="venmo")]
        templates = [make_template(vendor="netflix"), make_template(vendor="Netflix Inc")]

        plan = build_plan(ConsolidationScope.RULES, rules, templates, [])

        assert len(plan.rule_groups) == 1
        assert plan.template_groups == []

    def test_apply_rules_scope_clears_triage(self, run, storage, service):
        run(storage.queue_transaction(Transaction(
            id="tx-1",
            description="VENMO CASHOUT",
            amount=Decimal("20"),
            transacted_on=date(2024, 3, 1),
        )))
        run(storage.save_rule(VendorSkipRule(vendor_pattern="venmo")))

        report = run(service.consolidate(ConsolidationScope.APPLY_RULES))

        assert report.rules_reapplied.skipped == 1
        assert run(storage.list_triage()) == []


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
