"""
Founder Split Ledger

Every bill instance is divided among the founders, one FounderPayment row
per founder.

CRITICAL: The founder rows of an instance always sum to the instance
amount, to the cent. Amounts are split in whole cents; the leftover cents
go one each to the first founders by id. $100.00 over three founders is
33.34 / 33.33 / 33.33, never 33.33 x 3.

DESIGN DECISION: compute_split() is pure and does the arithmetic.
FounderSplitLedger persists it: rows are upserted by (instance, founder),
so re-splitting updates amounts in place and never touches who has
already paid.
"""

from datetime import date
from decimal import Decimal
from typing import Iterable, Optional
from uuid import UUID

from expense_engine.audit import AuditLogger
from expense_engine.models.bill import (
    BillInstance,
    BillStatus,
    Founder,
    FounderPayment,
    PaymentStatus,
    to_money,
)
from expense_engine.services.clock import Clock, SystemClock
from expense_engine.services.roster import FounderRegistry
from expense_engine.services.storage import ExpenseStorageInterface, NotFoundError


class SplitRoundingViolation(AssertionError):
    """Founder shares don't add up to the instance amount. Never expected."""

    def __init__(self, instance_id: UUID, expected: Decimal, actual: Decimal):
        self.instance_id = instance_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Split for instance {instance_id} sums to {actual}, expected {expected}"
        )


# =============================================================================
# PURE ARITHMETIC
# =============================================================================

def compute_split(amount: Decimal, founders: Iterable[Founder]) -> list[tuple[str, Decimal]]:
    """
    Divide an amount among founders.

    Returns:
        (founder id, share) pairs ordered by founder id. Empty when the
        amount is zero or there are no founders.
    """
    ordered = sorted(founders, key=lambda f: f.id)
    amount = to_money(amount)
    if amount <= 0 or not ordered:
        return []

    total_cents = int(amount * 100)
    base, remainder = divmod(total_cents, len(ordered))
    return [
        (founder.id, to_money(Decimal(base + (1 if index < remainder else 0)) / 100))
        for index, founder in enumerate(ordered)
    ]


def verify_split(instance: BillInstance, payments: Iterable[FounderPayment]) -> None:
    """
    Raises:
        SplitRoundingViolation: If the rows don't sum to the instance amount
    """
    payments = list(payments)
    if not payments:
        return
    total = sum((p.amount for p in payments), Decimal("0.00"))
    if total != instance.amount:
        raise SplitRoundingViolation(instance.id, instance.amount, total)


# =============================================================================
# PERSISTENT LEDGER
# =============================================================================

class FounderSplitLedger:
    """
    Keeps founder payment rows in step with bill instances.
    """

    def __init__(
        self,
        storage: ExpenseStorageInterface,
        roster: FounderRegistry,
        clock: Optional[Clock] = None,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._storage = storage
        self._roster = roster
        self._clock = clock or SystemClock()
        self._audit_logger = audit_logger or AuditLogger()

    def split(
        self,
        instance: BillInstance,
        founders: Optional[Iterable[Founder]] = None,
    ) -> list[FounderPayment]:
        """
        Fresh PENDING rows for an instance. No storage access.
        """
        if founders is None:
            founders = self._roster.founders()
        payments = [
            FounderPayment(bill_instance_id=instance.id, user_id=user_id, amount=share)
            for user_id, share in compute_split(instance.amount, founders)
        ]
        verify_split(instance, payments)
        return payments

    async def _require_instance(self, instance_id: UUID) -> BillInstance:
        instance = await self._storage.get_instance(instance_id)
        if instance is None:
            raise NotFoundError(f"Instance not found: {instance_id}")
        return instance

    async def apply_split(
        self,
        instance: BillInstance,
        correlation_id: Optional[UUID] = None,
    ) -> list[FounderPayment]:
        """
        Upsert one row per founder on the roster, then audit it.

        Callers that already hold a storage transaction use save_split()
        and log_split() once their transaction has committed.
        """
        saved = await self.save_split(instance)
        await self.log_split(instance, saved, correlation_id=correlation_id)
        return saved

    async def save_split(self, instance: BillInstance) -> list[FounderPayment]:
        """
        Write the founder rows for an instance. Not audited.

        Existing rows keep their status and paid date; only the amount
        changes. Rows for people no longer on the roster are removed.
        """
        planned = self.split(instance)

        async with self._storage.transaction():
            existing = {
                p.user_id: p
                for p in await self._storage.list_payments(instance_id=instance.id)
            }

            saved: list[FounderPayment] = []
            for payment in planned:
                current = existing.pop(payment.user_id, None)
                if current is not None:
                    payment = current.model_copy(update={"amount": payment.amount})
                elif instance.status == BillStatus.PAID:
                    payment = payment.model_copy(update={
                        "status": PaymentStatus.PAID,
                        "paid_date": instance.paid_date,
                    })
                saved.append(await self._storage.upsert_payment(payment))

            for stale_user_id in existing:
                await self._storage.delete_payment(instance.id, stale_user_id)

        verify_split(instance, saved)
        return saved

    async def log_split(
        self,
        instance: BillInstance,
        saved: list[FounderPayment],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """
        Audit a split written by save_split().

        IMPORTANT: Call outside any storage transaction. A SQL audit store
        writes through its own session and must not wait on an open one.
        """
        if saved:
            await self._audit_logger.log_split_applied(
                instance_id=instance.id,
                amount=str(instance.amount),
                founder_count=len(saved),
                correlation_id=correlation_id,
            )
        elif instance.amount > 0:
            await self._audit_logger.log_error(
                error_type="empty_roster",
                error_message="No founders on the roster; bill left unsplit",
                details={"instance_id": str(instance.id)},
                correlation_id=correlation_id,
            )

    async def mark_founder_paid(
        self,
        instance_id: UUID,
        user_id: str,
        paid_date: Optional[date] = None,
        status: PaymentStatus = PaymentStatus.PAID,
        correlation_id: Optional[UUID] = None,
    ) -> BillInstance:
        """
        Update one founder's share.

        The instance follows its rows: PAID once every row is PAID, back
        to PENDING as soon as one is reverted. Sibling rows are untouched.
        """
        async with self._storage.transaction():
            instance = await self._require_instance(instance_id)
            payments = await self._storage.list_payments(instance_id=instance_id)
            target = next((p for p in payments if p.user_id == user_id), None)
            if target is None:
                raise NotFoundError(
                    f"No share for founder {user_id} on instance {instance_id}"
                )

            if status == PaymentStatus.PAID:
                target.paid_date = paid_date or self._clock.today()
            else:
                target.paid_date = None
            target.status = status
            await self._storage.upsert_payment(target)

            payments = [target if p.user_id == user_id else p for p in payments]
            if all(p.status == PaymentStatus.PAID for p in payments):
                instance.status = BillStatus.PAID
                instance.paid_date = max(
                    (p.paid_date for p in payments if p.paid_date),
                    default=target.paid_date,
                )
            elif instance.status == BillStatus.PAID:
                instance.status = BillStatus.PENDING
                instance.paid_date = None
            await self._storage.update_instance(instance)

        await self._audit_logger.log_founder_payment_updated(
            instance_id=instance_id,
            user_id=user_id,
            status=status.value,
            correlation_id=correlation_id,
        )
        return instance

    async def mark_all_paid(
        self,
        instance_id: UUID,
        paid_date: Optional[date] = None,
        paid_via: Optional[str] = None,
        override: bool = True,
        correlation_id: Optional[UUID] = None,
    ) -> BillInstance:
        """Mark an instance and every founder row PAID."""
        paid_date = paid_date or self._clock.today()

        async with self._storage.transaction():
            instance = await self._require_instance(instance_id)
            instance.status = BillStatus.PAID
            instance.paid_date = paid_date
            if paid_via:
                instance.paid_via = paid_via
            await self._storage.update_instance(instance)

            for payment in await self._storage.list_payments(instance_id=instance_id):
                if payment.status != PaymentStatus.PAID:
                    payment.status = PaymentStatus.PAID
                    payment.paid_date = paid_date
                    await self._storage.upsert_payment(payment)

        await self._audit_logger.log_instance_paid(
            instance_id=instance.id,
            vendor=instance.vendor,
            paid_via=paid_via,
            override=override,
            correlation_id=correlation_id,
        )
        return instance

    async def set_amount(
        self,
        instance_id: UUID,
        amount: Decimal,
        correlation_id: Optional[UUID] = None,
    ) -> BillInstance:
        """Correct an instance's amount and re-split it."""
        new_amount = to_money(amount)
        if new_amount < 0:
            raise ValueError("Bill amount cannot be negative")

        async with self._storage.transaction():
            instance = await self._require_instance(instance_id)
            old_amount = instance.amount
            instance.amount = new_amount
            await self._storage.update_instance(instance)
            saved = await self.save_split(instance)

        await self.log_split(instance, saved, correlation_id=correlation_id)
        if old_amount != new_amount:
            await self._audit_logger.log_instance_amount_changed(
                instance_id=instance.id,
                old_amount=str(old_amount),
                new_amount=str(new_amount),
                correlation_id=correlation_id,
            )
        return instance

    async def delete_instance(
        self,
        instance_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> bool:
        """Explicit admin removal of an instance and its founder rows."""
        instance = await self._require_instance(instance_id)
        deleted = await self._storage.delete_instance(instance_id)
        if deleted:
            await self._audit_logger.log_instance_deleted(
                instance_id=instance.id,
                vendor=instance.vendor,
                period=instance.period,
                correlation_id=correlation_id,
            )
        return deleted

    async def payments_for(self, instance_id: UUID) -> list[FounderPayment]:
        return await self._storage.list_payments(instance_id=instance_id)
