"""
Consolidation Service

Out-of-band maintenance that removes drift: duplicate skip rules,
duplicate recurring templates and one-off bills that belong to a template.

DESIGN DECISION: Two phases that never share a codepath.
1. PLAN: planner.build_plan() over a snapshot, no side effects
2. APPLY: each group is applied in its own storage transaction

Each group re-reads its members inside its transaction and skips anything
already merged, so re-running consolidation (or running it twice at once)
is safe. A failing group is rolled back, audited and reported; the other
groups still run.
"""

from typing import Awaitable, Optional
from uuid import UUID

from expense_engine.audit import AuditLogger, create_correlation_id
from expense_engine.consolidation.planner import build_plan
from expense_engine.matching import TransactionMatcher
from expense_engine.models.bill import BillInstance, BillStatus, PaymentStatus
from expense_engine.models.reports import (
    ConsolidationPlan,
    ConsolidationReport,
    ConsolidationScope,
    GroupFailure,
    OrphanLink,
    RuleMergeGroup,
    TemplateMergeGroup,
)
from expense_engine.services.storage import ExpenseStorageInterface


MERGED_PREFIX = "[MERGED] "


class GroupSkipped(Exception):
    """A planned group no longer applies (already merged or changed)."""
    pass


class MergeConflict(Exception):
    """A copy planned for folding has been paid since the plan was made."""
    pass


class ConsolidationService:
    """
    Plans and applies consolidation.

    Usage:
        service = ConsolidationService(storage, matcher)
        plan = await service.preview(ConsolidationScope.ALL)
        report = await service.consolidate(ConsolidationScope.ALL)
    """

    def __init__(
        self,
        storage: ExpenseStorageInterface,
        matcher: Optional[TransactionMatcher] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._storage = storage
        self._matcher = matcher
        self._audit_logger = audit_logger or AuditLogger()

    async def preview(self, scope: ConsolidationScope) -> ConsolidationPlan:
        """What consolidate(scope) would do right now. Read-only."""
        paid_instance_ids = {
            p.bill_instance_id
            for p in await self._storage.list_payments()
            if p.status == PaymentStatus.PAID
        }
        return build_plan(
            scope,
            rules=await self._storage.list_rules(active_only=True),
            templates=await self._storage.list_templates(active_only=True),
            instances=await self._storage.list_instances(),
            paid_instance_ids=paid_instance_ids,
        )

    async def consolidate(
        self,
        scope: ConsolidationScope,
        correlation_id: Optional[UUID] = None,
    ) -> ConsolidationReport:
        """
        Plan, then apply every group of the plan.

        Returns:
            ConsolidationReport with counts, conflicts, ambiguous orphans
            and per-group failures
        """
        correlation_id = correlation_id or create_correlation_id()
        plan = await self.preview(scope)
        report = ConsolidationReport(scope=scope)

        for group in plan.rule_groups:
            await self._run_group(
                group.key, self._merge_rules(group, report, correlation_id),
                report, correlation_id,
            )

        for group in plan.template_groups:
            await self._run_group(
                group.key, self._merge_templates(group, report, correlation_id),
                report, correlation_id,
            )

        for group in plan.conflicted_groups:
            report.conflicted_groups.append(group)
            await self._audit_logger.log_merge_conflict(
                key=group.key,
                survivor_id=group.survivor_id,
                periods=group.conflicting_periods,
                correlation_id=correlation_id,
            )

        for link in plan.orphan_links:
            await self._run_group(
                f"orphan:{link.instance_id}", self._link_orphan(link, report, correlation_id),
                report, correlation_id,
            )

        for ambiguous in plan.ambiguous_orphans:
            report.ambiguous_orphans.append(ambiguous)
            await self._audit_logger.log_orphan_ambiguous(
                instance_id=ambiguous.instance_id,
                vendor=ambiguous.vendor,
                candidate_ids=ambiguous.candidate_template_ids,
                correlation_id=correlation_id,
            )

        if scope.includes_reapply and self._matcher is not None:
            report.rules_reapplied = await self._matcher.reapply_rules(
                correlation_id=correlation_id
            )

        return report

    async def _run_group(
        self,
        key: str,
        step: Awaitable[None],
        report: ConsolidationReport,
        correlation_id: UUID,
    ) -> None:
        """Apply one group; roll back and record it if anything fails."""
        try:
            await step
        except GroupSkipped:
            pass
        except Exception as e:
            report.failures.append(GroupFailure(key=key, message=str(e)))
            await self._audit_logger.log_consolidation_failed(
                key=key,
                error_message=str(e),
                correlation_id=correlation_id,
            )

    # =========================================================================
    # APPLY STEPS - each runs inside one storage transaction
    # =========================================================================

    async def _merge_rules(
        self,
        group: RuleMergeGroup,
        report: ConsolidationReport,
        correlation_id: UUID,
    ) -> None:
        async with self._storage.transaction():
            survivor = await self._storage.get_rule(group.survivor_id)
            if survivor is None or not survivor.is_active:
                raise GroupSkipped()

            duplicates = []
            for rule_id in group.duplicate_ids:
                rule = await self._storage.get_rule(rule_id)
                if rule is not None:
                    duplicates.append(rule)
            if not duplicates:
                raise GroupSkipped()

            survivor.skip_count += sum(r.skip_count for r in duplicates)
            await self._storage.update_rule(survivor)
            for rule in duplicates:
                await self._storage.delete_rule(rule.id)

        report.groups_merged += 1
        report.rules_deleted += len(duplicates)
        await self._audit_logger.log_rules_merged(
            survivor_id=survivor.id,
            duplicate_ids=[r.id for r in duplicates],
            skip_count=survivor.skip_count,
            correlation_id=correlation_id,
        )

    async def _merge_templates(
        self,
        group: TemplateMergeGroup,
        report: ConsolidationReport,
        correlation_id: UUID,
    ) -> None:
        async with self._storage.transaction():
            survivor = await self._storage.get_template(group.survivor_id)
            if survivor is None or not survivor.active:
                raise GroupSkipped()

            duplicates = []
            for template_id in group.duplicate_ids:
                template = await self._storage.get_template(template_id)
                if template is not None and template.active:
                    duplicates.append(template)
            if not duplicates:
                raise GroupSkipped()

            # Unpaid copies go first so the re-pointed instances never collide
            folded = 0
            for instance_id in group.folded_instance_ids:
                instance = await self._storage.get_instance(instance_id)
                if instance is None:
                    continue
                if await self._is_settled(instance):
                    raise MergeConflict(
                        f"Instance {instance_id} for {instance.period} was paid after planning"
                    )
                if await self._storage.delete_instance(instance_id):
                    folded += 1

            patterns = list(survivor.match_patterns)
            migrated = 0
            for duplicate in duplicates:
                migrated += await self._storage.reassign_instances(duplicate.id, survivor.id)
                patterns.extend(duplicate.match_patterns)

                duplicate.active = False
                if not duplicate.name.startswith(MERGED_PREFIX):
                    duplicate.name = (MERGED_PREFIX + duplicate.name)[:200]
                await self._storage.update_template(duplicate)

            survivor.email_patterns = patterns
            await self._storage.update_template(survivor)

        report.groups_merged += 1
        report.bills_deactivated += len(duplicates)
        report.instances_migrated += migrated
        report.instances_folded += folded
        await self._audit_logger.log_templates_merged(
            survivor_id=survivor.id,
            duplicate_ids=[t.id for t in duplicates],
            instances_migrated=migrated,
            instances_folded=folded,
            correlation_id=correlation_id,
        )

    async def _is_settled(self, instance: BillInstance) -> bool:
        if instance.status == BillStatus.PAID:
            return True
        payments = await self._storage.list_payments(instance_id=instance.id)
        return any(p.status == PaymentStatus.PAID for p in payments)

    async def _link_orphan(
        self,
        link: OrphanLink,
        report: ConsolidationReport,
        correlation_id: UUID,
    ) -> None:
        async with self._storage.transaction():
            instance = await self._storage.get_instance(link.instance_id)
            if instance is None or not instance.is_orphan:
                raise GroupSkipped()

            template = await self._storage.get_template(link.template_id)
            if template is None or not template.active:
                raise GroupSkipped()
            if await self._storage.find_instance(template.id, link.period) is not None:
                raise GroupSkipped()

            instance.template_id = template.id
            await self._storage.update_instance(instance)

        report.orphans_linked += 1
        await self._audit_logger.log_orphan_linked(
            instance_id=link.instance_id,
            template_id=link.template_id,
            period=link.period,
            correlation_id=correlation_id,
        )
