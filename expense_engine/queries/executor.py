"""
Query Execution Engine

DESIGN DECISION: Read projections are DETERMINISTIC and read-only.
Every number the admin surface shows (who owes what, what is overdue,
what a template has cost so far) is computed here from stored instances
and founder rows, never cached or estimated.

OVERDUE is derived at read time from the injected clock.
"""

from collections import defaultdict
from datetime import timedelta
from decimal import Decimal
from typing import Optional
from uuid import UUID

from expense_engine.generation.periods import parse_period
from expense_engine.models.bill import (
    BillInstance,
    BillStatus,
    FounderPayment,
    PaymentStatus,
    to_money,
)
from expense_engine.models.reports import (
    FounderBalance,
    InstanceDetail,
    PeriodSummary,
    TemplateHistory,
    TemplateStats,
)
from expense_engine.services.clock import Clock, SystemClock
from expense_engine.services.roster import FounderRegistry
from expense_engine.services.storage import ExpenseStorageInterface, NotFoundError


ZERO = Decimal("0.00")


class QueryExecutionError(Exception):
    """Error during query execution."""
    pass


class QueryExecutor:
    """
    Executes read projections against expense storage.

    GUARANTEES:
    - Only returns real data from storage
    - Totals always come from founder rows and instance amounts as stored
    - Empty results are empty lists, not errors
    """

    def __init__(
        self,
        storage: ExpenseStorageInterface,
        roster: FounderRegistry,
        clock: Optional[Clock] = None,
    ):
        self._storage = storage
        self._roster = roster
        self._clock = clock or SystemClock()

    async def _detail(
        self,
        instance: BillInstance,
        payments: Optional[list[FounderPayment]] = None,
    ) -> InstanceDetail:
        if payments is None:
            payments = await self._storage.list_payments(instance_id=instance.id)
        return InstanceDetail(
            instance=instance,
            effective_status=instance.effective_status(self._clock.today()).value,
            payments=payments,
            per_person_amount=min((p.amount for p in payments), default=ZERO),
        )

    async def founder_balances(self) -> list[FounderBalance]:
        """What each founder on the roster has pending and has paid."""
        instances = {i.id: i for i in await self._storage.list_instances()}
        payments_by_user: dict[str, list[FounderPayment]] = defaultdict(list)
        for payment in await self._storage.list_payments():
            payments_by_user[payment.user_id].append(payment)

        balances = []
        for founder in self._roster.founders():
            balance = FounderBalance(founder=founder)
            owed: list[tuple] = []
            for payment in payments_by_user.get(founder.id, []):
                if payment.status == PaymentStatus.PAID:
                    balance.paid_amount += payment.amount
                    balance.paid_count += 1
                    continue
                balance.pending_amount += payment.amount
                balance.pending_count += 1
                instance = instances.get(payment.bill_instance_id)
                if instance is not None:
                    owed.append((instance.due_date, instance.vendor))

            for _, vendor in sorted(owed):
                if vendor not in balance.owes_for:
                    balance.owes_for.append(vendor)
            balances.append(balance)

        return balances

    async def list_bills(
        self,
        period: Optional[str] = None,
        status: Optional[BillStatus] = None,
    ) -> list[InstanceDetail]:
        """
        Bills with their founder rows.

        Args:
            period: Restrict to one YYYY-MM period
            status: PENDING, PAID or OVERDUE (derived). PENDING excludes
                bills that are overdue.
        """
        if period is not None:
            try:
                parse_period(period)
            except ValueError as e:
                raise QueryExecutionError(str(e)) from e

        today = self._clock.today()
        details = []
        for instance in await self._storage.list_instances(period=period):
            if status is not None and instance.effective_status(today) != status:
                continue
            details.append(await self._detail(instance))
        return details

    async def period_summary(self, period: str) -> PeriodSummary:
        """Pending, paid and overdue totals for one period."""
        bills = await self.list_bills(period=period)
        summary = PeriodSummary(
            period=period,
            founder_count=len(self._roster),
            bills=bills,
        )
        for detail in bills:
            amount = detail.instance.amount
            if detail.instance.status == BillStatus.PAID:
                summary.paid_total += amount
            else:
                summary.pending_total += amount
                if detail.effective_status == BillStatus.OVERDUE.value:
                    summary.overdue_total += amount
        return summary

    async def template_history(self, template_id: UUID) -> TemplateHistory:
        """
        Every instance a template has produced, newest period first.

        Zero-amount instances (variable bills not yet matched) count
        towards totals of instances but not towards amount stats.
        """
        template = await self._storage.get_template(template_id)
        if template is None:
            raise NotFoundError(f"Template not found: {template_id}")

        instances = await self._storage.list_instances(template_id=template_id)
        instances.sort(key=lambda i: i.period, reverse=True)

        stats = TemplateStats(
            total_instances=len(instances),
            paid_count=sum(1 for i in instances if i.status == BillStatus.PAID),
            pending_count=sum(1 for i in instances if i.status == BillStatus.PENDING),
        )
        amounts = [i.amount for i in instances if i.amount > 0]
        if amounts:
            stats.total = sum(amounts, ZERO)
            stats.average = to_money(stats.total / len(amounts))
            stats.highest = max(amounts)
            stats.lowest = min(amounts)

        return TemplateHistory(template=template, instances=instances, stats=stats)

    async def upcoming_bills(self, days: int = 7) -> list[InstanceDetail]:
        """Unpaid bills due from today through `days` days ahead."""
        if days < 0:
            raise QueryExecutionError("days must be non-negative")
        today = self._clock.today()
        horizon = today + timedelta(days=days)

        details = []
        for instance in await self._storage.list_instances(status=BillStatus.PENDING):
            if today <= instance.due_date <= horizon:
                details.append(await self._detail(instance))
        return details
