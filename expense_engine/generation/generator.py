"""
Instance Generator

Projects every active recurring template into one BillInstance per
recurring period over a window of months around today.

CRITICAL: Generation is idempotent. ensure_instance() is the only way an
instance is created from a template, and it relies on the storage-level
uniqueness of (template_id, period): two overlapping runs (or a run racing
the matcher) can never produce a duplicate, the loser simply gets the
existing row back.

DESIGN DECISION: One bad template never stops the batch. Its error is
recorded in the report and audited, and generation moves on.
"""

from decimal import Decimal
from typing import Optional
from uuid import UUID

from expense_engine.audit import AuditLogger, create_correlation_id
from expense_engine.generation.periods import (
    due_date_for,
    parse_period,
    period_window,
    recurs_in,
)
from expense_engine.ledger import FounderSplitLedger, SplitRoundingViolation
from expense_engine.models.bill import (
    BillInstance,
    BillStatus,
    RecurringBillTemplate,
)
from expense_engine.models.reports import GenerationError, GenerationReport
from expense_engine.services.clock import Clock, SystemClock
from expense_engine.services.storage import (
    DuplicateInstanceAttempt,
    ExpenseStorageInterface,
    NotFoundError,
    StorageError,
)


def build_instance(template: RecurringBillTemplate, period: str) -> BillInstance:
    """The instance a template would produce in a period (not persisted)."""
    return BillInstance(
        template_id=template.id,
        vendor=template.vendor,
        vendor_type=template.vendor_type,
        amount=template.fixed_amount if template.is_fixed else Decimal("0.00"),
        period=period,
        due_date=due_date_for(period, template.due_day),
        status=BillStatus.PENDING,
    )


class InstanceGenerator:
    """
    Creates bill instances from recurring templates.

    Usage:
        generator = InstanceGenerator(storage, ledger, clock)
        report = await generator.generate(months_back=6, months_forward=2)
    """

    def __init__(
        self,
        storage: ExpenseStorageInterface,
        ledger: FounderSplitLedger,
        clock: Optional[Clock] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._storage = storage
        self._ledger = ledger
        self._clock = clock or SystemClock()
        self._audit_logger = audit_logger or AuditLogger()

    async def ensure_instance(
        self,
        template: RecurringBillTemplate,
        period: str,
        correlation_id: Optional[UUID] = None,
    ) -> tuple[BillInstance, bool]:
        """
        Idempotent lookup-or-create of the instance for (template, period).

        Returns:
            (instance, created) - created is False when it already existed
        """
        existing = await self._storage.find_instance(template.id, period)
        if existing is not None:
            return existing, False

        instance = build_instance(template, period)
        saved = None
        try:
            async with self._storage.transaction():
                await self._storage.insert_instance(instance)
                if instance.amount > 0:
                    saved = await self._ledger.save_split(instance)
        except DuplicateInstanceAttempt:
            # Someone else created it between our lookup and insert
            existing = await self._storage.find_instance(template.id, period)
            if existing is None:
                raise StorageError(
                    f"Instance for template {template.id} in {period} vanished after conflict"
                )
            return existing, False

        # Audit only after commit
        if saved is not None:
            await self._ledger.log_split(instance, saved, correlation_id=correlation_id)
        await self._audit_logger.log_instance_created(
            instance_id=instance.id,
            template_id=template.id,
            vendor=instance.vendor,
            period=period,
            amount=str(instance.amount),
            correlation_id=correlation_id,
        )
        return instance, True

    async def _templates_to_process(
        self,
        template_id: Optional[UUID],
    ) -> list[RecurringBillTemplate]:
        if template_id is None:
            return await self._storage.list_templates(active_only=True)

        template = await self._storage.get_template(template_id)
        if template is None:
            raise NotFoundError(f"Template not found: {template_id}")
        return [template] if template.active else []

    async def generate(
        self,
        months_back: int,
        months_forward: int,
        template_id: Optional[UUID] = None,
        periods: Optional[list[str]] = None,
        correlation_id: Optional[UUID] = None,
    ) -> GenerationReport:
        """
        Create missing instances for every active template.

        Args:
            months_back: Months before the current one to cover
            months_forward: Months after the current one to cover
            template_id: Restrict the run to one template
            periods: Explicit YYYY-MM list, overrides the window

        Returns:
            GenerationReport with created instances, existing pairs skipped
            and per-template errors
        """
        correlation_id = correlation_id or create_correlation_id()

        if periods is not None:
            for period in periods:
                parse_period(period)
            window = sorted(set(periods))
        else:
            window = period_window(self._clock.today(), months_back, months_forward)

        report = GenerationReport(periods=window)

        for template in await self._templates_to_process(template_id):
            try:
                for period in window:
                    if not recurs_in(template, period):
                        continue
                    instance, created = await self.ensure_instance(
                        template, period, correlation_id=correlation_id
                    )
                    if created:
                        report.created.append(instance)
                    else:
                        report.skipped_existing += 1
            except SplitRoundingViolation:
                raise
            except Exception as e:
                report.errors.append(GenerationError(
                    template_id=template.id,
                    message=str(e),
                ))
                await self._audit_logger.log_generation_failed(
                    template_id=template.id,
                    error_message=str(e),
                    correlation_id=correlation_id,
                )

        await self._audit_logger.log_generation_completed(
            periods=window,
            created=report.created_count,
            skipped_existing=report.skipped_existing,
            failed_templates=len(report.errors),
            correlation_id=correlation_id,
        )
        return report
