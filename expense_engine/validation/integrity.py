"""
Two-Stage Ledger Integrity Check

DESIGN DECISION: Integrity checking happens in two distinct stages:

STAGE 1 - PER-INSTANCE CHECKS:
- Founder rows sum to the instance amount
- A PAID instance has no PENDING founder rows
- The template an instance points at exists

STAGE 2 - CROSS-INSTANCE CHECKS:
- At most one instance per (template, period)
- Founder rows for people no longer on the roster

WHY TWO STAGES:
1. Stage 1 needs one instance at a time, stage 2 needs the whole table
2. Better messages (know exactly which invariant broke)

IMPORTANT: The checker NEVER silently fixes issues.
It reports them for human review.
"""

from collections import defaultdict
from decimal import Decimal
from typing import Optional
from uuid import UUID

from expense_engine.models.bill import (
    BillInstance,
    BillStatus,
    FounderPayment,
    PaymentStatus,
    RecurringBillTemplate,
)
from expense_engine.models.reports import IntegrityIssue, IntegrityReport
from expense_engine.services.roster import FounderRegistry
from expense_engine.services.storage import ExpenseStorageInterface


class LedgerIntegrityChecker:
    """
    Scans stored instances and founder rows for broken invariants.
    """

    def __init__(
        self,
        storage: ExpenseStorageInterface,
        roster: Optional[FounderRegistry] = None,
    ):
        """
        Initialize checker.

        Args:
            storage: Storage to scan
            roster: Current founders. If None, roster checks are skipped.
        """
        self._storage = storage
        self._roster = roster

    def _check_instance(
        self,
        instance: BillInstance,
        payments: list[FounderPayment],
        templates: dict[UUID, RecurringBillTemplate],
    ) -> list[IntegrityIssue]:
        """Stage 1: invariants of a single instance."""
        issues = []
        entity_id = str(instance.id)

        if payments:
            total = sum((p.amount for p in payments), Decimal("0.00"))
            if total != instance.amount:
                issues.append(IntegrityIssue(
                    check="split_sum",
                    entity_type="instance",
                    entity_id=entity_id,
                    message=(
                        f"{instance.vendor} {instance.period}: founder shares sum to "
                        f"{total}, bill amount is {instance.amount}"
                    ),
                    severity="error",
                    suggested_fix="Re-split the bill by setting its amount again",
                ))
        elif instance.amount > 0 and self._roster is not None and len(self._roster):
            issues.append(IntegrityIssue(
                check="unsplit",
                entity_type="instance",
                entity_id=entity_id,
                message=f"{instance.vendor} {instance.period} has an amount but no founder shares",
                severity="warning",
                suggested_fix="Re-split the bill by setting its amount again",
            ))

        if instance.status == BillStatus.PAID:
            pending = [p.user_id for p in payments if p.status == PaymentStatus.PENDING]
            if pending:
                issues.append(IntegrityIssue(
                    check="paid_with_pending_shares",
                    entity_type="instance",
                    entity_id=entity_id,
                    message=(
                        f"{instance.vendor} {instance.period} is PAID but shares are "
                        f"pending for: {', '.join(pending)}"
                    ),
                    severity="error",
                    suggested_fix="Mark the remaining shares paid, or the bill pending",
                ))

        if instance.template_id is not None and instance.template_id not in templates:
            issues.append(IntegrityIssue(
                check="missing_template",
                entity_type="instance",
                entity_id=entity_id,
                message=f"Instance points at template {instance.template_id}, which does not exist",
                severity="error",
                suggested_fix="Unlink the instance so consolidation can re-link it",
            ))

        return issues

    def _check_cross_instance(
        self,
        instances: list[BillInstance],
        payments: list[FounderPayment],
    ) -> list[IntegrityIssue]:
        """Stage 2: invariants spanning many instances."""
        issues = []

        by_key: dict[tuple[UUID, str], list[BillInstance]] = defaultdict(list)
        for instance in instances:
            if instance.template_id is not None:
                by_key[(instance.template_id, instance.period)].append(instance)
        for (template_id, period), members in by_key.items():
            if len(members) > 1:
                issues.append(IntegrityIssue(
                    check="duplicate_period",
                    entity_type="template",
                    entity_id=str(template_id),
                    message=f"{len(members)} instances exist for {period}",
                    severity="error",
                    suggested_fix="Delete the extra instances",
                ))

        if self._roster is not None:
            on_roster = {f.id for f in self._roster.founders()}
            unpaid_off_roster = sorted({
                p.user_id for p in payments
                if p.user_id not in on_roster and p.status == PaymentStatus.PENDING
            })
            for user_id in unpaid_off_roster:
                issues.append(IntegrityIssue(
                    check="unknown_founder",
                    entity_type="founder",
                    entity_id=user_id,
                    message=f"Pending shares belong to {user_id}, who is not on the roster",
                    severity="warning",
                    suggested_fix="Re-split the affected bills",
                ))

        return issues

    async def check(self) -> IntegrityReport:
        """Run both stages over everything in storage."""
        templates = {t.id: t for t in await self._storage.list_templates()}
        instances = await self._storage.list_instances()
        payments = await self._storage.list_payments()

        payments_by_instance: dict[UUID, list[FounderPayment]] = defaultdict(list)
        for payment in payments:
            payments_by_instance[payment.bill_instance_id].append(payment)

        report = IntegrityReport(instances_checked=len(instances))
        for instance in instances:
            report.issues.extend(self._check_instance(
                instance, payments_by_instance.get(instance.id, []), templates
            ))
        report.issues.extend(self._check_cross_instance(instances, payments))
        return report
