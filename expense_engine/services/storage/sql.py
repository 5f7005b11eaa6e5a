"""
SQL Storage Implementation

DESIGN DECISION: SQLAlchemy 2.0 ORM over SQLite (default) or any database
SQLAlchemy supports, because:
1. Unique constraints enforce both idempotence keys in the database itself
2. Real transactions and savepoints make each consolidation group atomic
3. No server needed for a small team; point EXPENSE_DB_URL elsewhere to scale

TRADEOFFS:
- Calls are synchronous inside async methods (same as every other backend
  call in the engine; batch jobs are short)
- One session per task: the active session travels in a ContextVar so
  nested storage calls inside transaction() share it

The implementation follows the abstract interface, so the engine never
imports SQLAlchemy directly.
"""

import functools
from contextlib import asynccontextmanager, contextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import AsyncIterator, Iterator, Optional
from uuid import UUID

import structlog
from sqlalchemy import delete, func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from expense_engine.db.models import (
    AuditEventRow,
    BillInstanceRow,
    FounderPaymentRow,
    SkipRuleRow,
    TemplateRow,
    TriageTransactionRow,
)
from expense_engine.db.session import create_session_factory
from expense_engine.models.audit import AuditEvent, AuditEventType, AuditSeverity
from expense_engine.models.bill import (
    AmountType,
    BillInstance,
    BillStatus,
    FounderPayment,
    Frequency,
    PaymentStatus,
    RecurringBillTemplate,
)
from expense_engine.models.rules import (
    SkipRule,
    SkipRuleAdapter,
    Transaction,
    TransactionDirection,
    TransactionType,
)
from expense_engine.services.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    DuplicateInstanceAttempt,
    ExpenseStorageInterface,
    NotFoundError,
    StorageError,
)


logger = structlog.get_logger("expense_engine.storage.sql")


# Transient failures (locked database, dropped connection) are retried
_retry_transient = retry(
    retry=retry_if_exception_type(OperationalError),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=2, max=10),
    reraise=True,
)


def _storage_errors(func):
    """Surface driver errors as StorageError once retries are exhausted."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except StorageError:
            raise
        except SQLAlchemyError as e:
            raise StorageError(f"{func.__name__} failed: {e}") from e

    return wrapper


# Type-specific rule columns, by rule_type
RULE_FIELDS: dict[str, tuple[str, ...]] = {
    "ACCOUNT": ("financial_account_id",),
    "VENDOR": ("vendor_pattern",),
    "VENDOR_AMOUNT": ("vendor_pattern", "amount", "amount_variance"),
    "DESCRIPTION_PATTERN": ("description_pattern", "is_regex"),
}


# =============================================================================
# ROW CONVERSION
# =============================================================================

def _template_values(template: RecurringBillTemplate) -> dict:
    return {
        "id": str(template.id),
        "name": template.name,
        "vendor": template.vendor,
        "vendor_type": template.vendor_type,
        "amount_type": template.amount_type.value,
        "fixed_amount": template.fixed_amount,
        "frequency": template.frequency.value,
        "due_day": template.due_day,
        "email_patterns": list(template.email_patterns),
        "payment_method": template.payment_method,
        "active": template.active,
        "auto_approve": template.auto_approve,
        "created_at": template.created_at,
        "updated_at": template.updated_at,
    }


def _row_to_template(row: TemplateRow) -> RecurringBillTemplate:
    return RecurringBillTemplate(
        id=UUID(row.id),
        name=row.name,
        vendor=row.vendor,
        vendor_type=row.vendor_type,
        amount_type=AmountType(row.amount_type),
        fixed_amount=row.fixed_amount,
        frequency=Frequency(row.frequency),
        due_day=row.due_day,
        email_patterns=list(row.email_patterns or []),
        payment_method=row.payment_method,
        active=row.active,
        auto_approve=row.auto_approve,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _rule_values(rule: SkipRule) -> dict:
    values = {
        "id": str(rule.id),
        "rule_type": rule.rule_type,
        "name": rule.name,
        "reason": rule.reason,
        "transaction_type": rule.transaction_type.value,
        "is_active": rule.is_active,
        "skip_count": rule.skip_count,
        "created_at": rule.created_at,
        "updated_at": rule.updated_at,
    }
    for column in ("financial_account_id", "vendor_pattern", "amount",
                   "amount_variance", "description_pattern", "is_regex"):
        values[column] = getattr(rule, column, None)
    return values


def _row_to_rule(row: SkipRuleRow) -> SkipRule:
    data = {
        "id": UUID(row.id),
        "rule_type": row.rule_type,
        "name": row.name,
        "reason": row.reason,
        "transaction_type": TransactionType(row.transaction_type),
        "is_active": row.is_active,
        "skip_count": row.skip_count,
        "created_at": row.created_at,
        "updated_at": row.updated_at,
    }
    for column in RULE_FIELDS[row.rule_type]:
        data[column] = getattr(row, column)
    return SkipRuleAdapter.validate_python(data)


def _instance_values(instance: BillInstance) -> dict:
    return {
        "id": str(instance.id),
        "template_id": str(instance.template_id) if instance.template_id else None,
        "vendor": instance.vendor,
        "vendor_type": instance.vendor_type,
        "amount": instance.amount,
        "period": instance.period,
        "due_date": instance.due_date,
        "status": instance.status.value,
        "paid_date": instance.paid_date,
        "paid_via": instance.paid_via,
        "notes": instance.notes,
        "created_at": instance.created_at,
        "updated_at": instance.updated_at,
    }


def _row_to_instance(row: BillInstanceRow) -> BillInstance:
    return BillInstance(
        id=UUID(row.id),
        template_id=UUID(row.template_id) if row.template_id else None,
        vendor=row.vendor,
        vendor_type=row.vendor_type,
        amount=row.amount,
        period=row.period,
        due_date=row.due_date,
        status=BillStatus(row.status),
        paid_date=row.paid_date,
        paid_via=row.paid_via,
        notes=row.notes,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_payment(row: FounderPaymentRow) -> FounderPayment:
    return FounderPayment(
        id=UUID(row.id),
        bill_instance_id=UUID(row.bill_instance_id),
        user_id=row.user_id,
        amount=row.amount,
        status=PaymentStatus(row.status),
        paid_date=row.paid_date,
    )


def _row_to_transaction(row: TriageTransactionRow) -> Transaction:
    return Transaction(
        id=row.id,
        account_id=row.account_id,
        description=row.description,
        merchant_name=row.merchant_name,
        amount=row.amount,
        transacted_on=row.transacted_on,
        direction=TransactionDirection(row.direction),
    )


def _apply(row, values: dict) -> None:
    for column, value in values.items():
        if column != "id":
            setattr(row, column, value)


# =============================================================================
# EXPENSE STORAGE
# =============================================================================

class SqlExpenseStorage(ExpenseStorageInterface):
    """
    SQLAlchemy implementation of expense storage.

    Each call outside transaction() runs in its own short session and
    commits on return.
    """

    def __init__(
        self,
        engine: Engine,
        session_factory: Optional[sessionmaker] = None,
    ):
        self._engine = engine
        self._session_factory = session_factory or create_session_factory(engine)
        self._active: ContextVar[Optional[Session]] = ContextVar(
            f"sql_storage_session_{id(self)}", default=None
        )

    @contextmanager
    def _session(self) -> Iterator[Session]:
        active = self._active.get()
        if active is not None:
            yield active
            return
        with self._session_factory() as session:
            with session.begin():
                yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        active = self._active.get()
        if active is not None:
            with active.begin_nested():
                yield
            return

        with self._session_factory() as session:
            with session.begin():
                token = self._active.set(session)
                try:
                    yield
                finally:
                    self._active.reset(token)

    # =========================================================================
    # TEMPLATE REGISTRY
    # =========================================================================

    @_storage_errors
    @_retry_transient
    async def save_template(self, template: RecurringBillTemplate) -> RecurringBillTemplate:
        with self._session() as session:
            try:
                with session.begin_nested():
                    session.add(TemplateRow(**_template_values(template)))
                    session.flush()
            except IntegrityError:
                raise DuplicateError(f"Template already exists: {template.id}")
        return template

    @_storage_errors
    @_retry_transient
    async def update_template(self, template: RecurringBillTemplate) -> RecurringBillTemplate:
        with self._session() as session:
            row = session.get(TemplateRow, str(template.id))
            if row is None:
                raise NotFoundError(f"Template not found: {template.id}")
            template.updated_at = datetime.utcnow()
            _apply(row, _template_values(template))
            session.flush()
        return template

    @_storage_errors
    @_retry_transient
    async def get_template(self, template_id: UUID) -> Optional[RecurringBillTemplate]:
        with self._session() as session:
            row = session.get(TemplateRow, str(template_id))
            return _row_to_template(row) if row else None

    @_storage_errors
    @_retry_transient
    async def list_templates(self, active_only: bool = False) -> list[RecurringBillTemplate]:
        stmt = select(TemplateRow).order_by(TemplateRow.created_at, TemplateRow.id)
        if active_only:
            stmt = stmt.where(TemplateRow.active.is_(True))
        with self._session() as session:
            return [_row_to_template(row) for row in session.scalars(stmt)]

    # =========================================================================
    # SKIP-RULE REGISTRY
    # =========================================================================

    @_storage_errors
    @_retry_transient
    async def save_rule(self, rule: SkipRule) -> SkipRule:
        with self._session() as session:
            try:
                with session.begin_nested():
                    session.add(SkipRuleRow(**_rule_values(rule)))
                    session.flush()
            except IntegrityError:
                raise DuplicateError(f"Skip rule already exists: {rule.id}")
        return rule

    @_storage_errors
    @_retry_transient
    async def update_rule(self, rule: SkipRule) -> SkipRule:
        with self._session() as session:
            row = session.get(SkipRuleRow, str(rule.id))
            if row is None:
                raise NotFoundError(f"Skip rule not found: {rule.id}")
            rule.updated_at = datetime.utcnow()
            _apply(row, _rule_values(rule))
            session.flush()
        return rule

    @_storage_errors
    @_retry_transient
    async def get_rule(self, rule_id: UUID) -> Optional[SkipRule]:
        with self._session() as session:
            row = session.get(SkipRuleRow, str(rule_id))
            return _row_to_rule(row) if row else None

    @_storage_errors
    @_retry_transient
    async def list_rules(self, active_only: bool = False) -> list[SkipRule]:
        stmt = select(SkipRuleRow).order_by(SkipRuleRow.created_at, SkipRuleRow.id)
        if active_only:
            stmt = stmt.where(SkipRuleRow.is_active.is_(True))
        with self._session() as session:
            return [_row_to_rule(row) for row in session.scalars(stmt)]

    @_storage_errors
    @_retry_transient
    async def delete_rule(self, rule_id: UUID) -> bool:
        with self._session() as session:
            result = session.execute(
                delete(SkipRuleRow).where(SkipRuleRow.id == str(rule_id))
            )
            return result.rowcount > 0

    @_storage_errors
    @_retry_transient
    async def increment_skip_count(self, rule_id: UUID, by: int = 1) -> int:
        with self._session() as session:
            result = session.execute(
                update(SkipRuleRow)
                .where(SkipRuleRow.id == str(rule_id))
                .values(
                    skip_count=SkipRuleRow.skip_count + by,
                    updated_at=datetime.utcnow(),
                )
            )
            if result.rowcount == 0:
                raise NotFoundError(f"Skip rule not found: {rule_id}")
            return session.scalar(
                select(SkipRuleRow.skip_count).where(SkipRuleRow.id == str(rule_id))
            )

    # =========================================================================
    # BILL INSTANCES
    # =========================================================================

    def _find_row(
        self,
        session: Session,
        template_id: Optional[UUID],
        period: str,
    ) -> Optional[BillInstanceRow]:
        if template_id is None:
            return None
        return session.scalar(
            select(BillInstanceRow).where(
                BillInstanceRow.template_id == str(template_id),
                BillInstanceRow.period == period,
            )
        )

    @_storage_errors
    @_retry_transient
    async def insert_instance(self, instance: BillInstance) -> BillInstance:
        with self._session() as session:
            if self._find_row(session, instance.template_id, instance.period) is not None:
                raise DuplicateInstanceAttempt(instance.template_id, instance.period)
            try:
                with session.begin_nested():
                    session.add(BillInstanceRow(**_instance_values(instance)))
                    session.flush()
            except IntegrityError:
                # Lost a race with a concurrent insert for the same period
                raise DuplicateInstanceAttempt(instance.template_id, instance.period)
        return instance

    @_storage_errors
    @_retry_transient
    async def get_instance(self, instance_id: UUID) -> Optional[BillInstance]:
        with self._session() as session:
            row = session.get(BillInstanceRow, str(instance_id))
            return _row_to_instance(row) if row else None

    @_storage_errors
    @_retry_transient
    async def find_instance(
        self,
        template_id: UUID,
        period: str,
    ) -> Optional[BillInstance]:
        with self._session() as session:
            row = self._find_row(session, template_id, period)
            return _row_to_instance(row) if row else None

    @_storage_errors
    @_retry_transient
    async def update_instance(self, instance: BillInstance) -> BillInstance:
        with self._session() as session:
            row = session.get(BillInstanceRow, str(instance.id))
            if row is None:
                raise NotFoundError(f"Instance not found: {instance.id}")
            instance.updated_at = datetime.utcnow()
            try:
                with session.begin_nested():
                    _apply(row, _instance_values(instance))
                    session.flush()
            except IntegrityError:
                raise DuplicateInstanceAttempt(instance.template_id, instance.period)
        return instance

    @_storage_errors
    @_retry_transient
    async def delete_instance(self, instance_id: UUID) -> bool:
        with self._session() as session:
            session.execute(
                delete(FounderPaymentRow).where(
                    FounderPaymentRow.bill_instance_id == str(instance_id)
                )
            )
            result = session.execute(
                delete(BillInstanceRow).where(BillInstanceRow.id == str(instance_id))
            )
            return result.rowcount > 0

    @_storage_errors
    @_retry_transient
    async def list_instances(
        self,
        template_id: Optional[UUID] = None,
        period: Optional[str] = None,
        status: Optional[BillStatus] = None,
        orphans_only: bool = False,
    ) -> list[BillInstance]:
        stmt = select(BillInstanceRow)
        if template_id is not None:
            stmt = stmt.where(BillInstanceRow.template_id == str(template_id))
        if period is not None:
            stmt = stmt.where(BillInstanceRow.period == period)
        if status is not None:
            stmt = stmt.where(BillInstanceRow.status == status.value)
        if orphans_only:
            stmt = stmt.where(BillInstanceRow.template_id.is_(None))
        stmt = stmt.order_by(BillInstanceRow.due_date, func.lower(BillInstanceRow.vendor))

        with self._session() as session:
            return [_row_to_instance(row) for row in session.scalars(stmt)]

    @_storage_errors
    @_retry_transient
    async def reassign_instances(
        self,
        from_template_id: UUID,
        to_template_id: UUID,
    ) -> int:
        with self._session() as session:
            target_periods = select(BillInstanceRow.period).where(
                BillInstanceRow.template_id == str(to_template_id)
            )
            collision = session.scalar(
                select(BillInstanceRow.period).where(
                    BillInstanceRow.template_id == str(from_template_id),
                    BillInstanceRow.period.in_(target_periods),
                ).limit(1)
            )
            if collision is not None:
                raise DuplicateInstanceAttempt(to_template_id, collision)

            result = session.execute(
                update(BillInstanceRow)
                .where(BillInstanceRow.template_id == str(from_template_id))
                .values(template_id=str(to_template_id), updated_at=datetime.utcnow())
            )
            return result.rowcount

    @_storage_errors
    @_retry_transient
    async def count_instances_by_template(self) -> dict[UUID, int]:
        stmt = (
            select(BillInstanceRow.template_id, func.count(BillInstanceRow.id))
            .where(BillInstanceRow.template_id.is_not(None))
            .group_by(BillInstanceRow.template_id)
        )
        with self._session() as session:
            return {UUID(template_id): count for template_id, count in session.execute(stmt)}

    # =========================================================================
    # FOUNDER PAYMENTS
    # =========================================================================

    @_storage_errors
    @_retry_transient
    async def list_payments(
        self,
        instance_id: Optional[UUID] = None,
        user_id: Optional[str] = None,
    ) -> list[FounderPayment]:
        stmt = select(FounderPaymentRow)
        if instance_id is not None:
            stmt = stmt.where(FounderPaymentRow.bill_instance_id == str(instance_id))
        if user_id is not None:
            stmt = stmt.where(FounderPaymentRow.user_id == user_id)
        stmt = stmt.order_by(FounderPaymentRow.user_id, FounderPaymentRow.bill_instance_id)

        with self._session() as session:
            return [_row_to_payment(row) for row in session.scalars(stmt)]

    def _payment_row(self, session: Session, instance_id: UUID, user_id: str):
        return session.scalar(
            select(FounderPaymentRow).where(
                FounderPaymentRow.bill_instance_id == str(instance_id),
                FounderPaymentRow.user_id == user_id,
            )
        )

    @_storage_errors
    @_retry_transient
    async def upsert_payment(self, payment: FounderPayment) -> FounderPayment:
        values = {
            "amount": payment.amount,
            "status": payment.status.value,
            "paid_date": payment.paid_date,
        }
        with self._session() as session:
            if session.get(BillInstanceRow, str(payment.bill_instance_id)) is None:
                raise NotFoundError(f"Instance not found: {payment.bill_instance_id}")

            row = self._payment_row(session, payment.bill_instance_id, payment.user_id)
            if row is None:
                try:
                    with session.begin_nested():
                        row = FounderPaymentRow(
                            id=str(payment.id),
                            bill_instance_id=str(payment.bill_instance_id),
                            user_id=payment.user_id,
                            **values,
                        )
                        session.add(row)
                        session.flush()
                except IntegrityError:
                    # Inserted concurrently; fall through to the update
                    row = self._payment_row(session, payment.bill_instance_id, payment.user_id)

            _apply(row, values)
            session.flush()
            return _row_to_payment(row)

    @_storage_errors
    @_retry_transient
    async def delete_payment(self, instance_id: UUID, user_id: str) -> bool:
        with self._session() as session:
            result = session.execute(
                delete(FounderPaymentRow).where(
                    FounderPaymentRow.bill_instance_id == str(instance_id),
                    FounderPaymentRow.user_id == user_id,
                )
            )
            return result.rowcount > 0

    # =========================================================================
    # TRIAGE QUEUE
    # =========================================================================

    @_storage_errors
    @_retry_transient
    async def queue_transaction(self, transaction: Transaction) -> bool:
        with self._session() as session:
            if session.get(TriageTransactionRow, transaction.id) is None:
                session.add(TriageTransactionRow(
                    id=transaction.id,
                    account_id=transaction.account_id,
                    description=transaction.description,
                    merchant_name=transaction.merchant_name,
                    amount=transaction.amount,
                    transacted_on=transaction.transacted_on,
                    direction=transaction.direction.value,
                    queued_at=datetime.utcnow(),
                ))
                session.flush()
        return True

    @_storage_errors
    @_retry_transient
    async def list_triage(self) -> list[Transaction]:
        stmt = select(TriageTransactionRow).order_by(
            TriageTransactionRow.queued_at, TriageTransactionRow.id
        )
        with self._session() as session:
            return [_row_to_transaction(row) for row in session.scalars(stmt)]

    @_storage_errors
    @_retry_transient
    async def remove_from_triage(self, transaction_id: str) -> bool:
        with self._session() as session:
            result = session.execute(
                delete(TriageTransactionRow).where(TriageTransactionRow.id == transaction_id)
            )
            return result.rowcount > 0


# =============================================================================
# AUDIT STORAGE
# =============================================================================

def _row_to_event(row: AuditEventRow) -> AuditEvent:
    return AuditEvent(
        event_id=UUID(row.event_id),
        timestamp=row.timestamp,
        event_type=AuditEventType(row.event_type),
        severity=AuditSeverity(row.severity),
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        correlation_id=UUID(row.correlation_id) if row.correlation_id else None,
        description=row.description,
        details=row.details or {},
        error_code=row.error_code,
        error_message=row.error_message,
        is_user_action=row.is_user_action,
    )


class SqlAuditStorage(AuditStorageInterface):
    """
    SQLAlchemy implementation of audit log storage.

    Audit events are append-only.

    IMPORTANT: Each event is written in its own session. Log after a
    SqlExpenseStorage transaction has committed, never inside one: on
    SQLite the second writer would wait on the open transaction.
    """

    def __init__(
        self,
        engine: Engine,
        session_factory: Optional[sessionmaker] = None,
    ):
        self._session_factory = session_factory or create_session_factory(engine)

    @_retry_transient
    async def _insert(self, event: AuditEvent) -> None:
        with self._session_factory() as session:
            with session.begin():
                session.add(AuditEventRow(
                    event_id=str(event.event_id),
                    timestamp=event.timestamp,
                    event_type=event.event_type.value,
                    severity=event.severity.value,
                    entity_type=event.entity_type,
                    entity_id=event.entity_id,
                    correlation_id=str(event.correlation_id) if event.correlation_id else None,
                    description=event.description,
                    details=event.details,
                    error_code=event.error_code,
                    error_message=event.error_message,
                    is_user_action=event.is_user_action,
                ))

    async def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event."""
        try:
            await self._insert(event)
            return True
        except SQLAlchemyError as e:
            # Don't raise - audit logging should not break the main flow
            logger.warning(
                "audit_event_write_failed",
                error=str(e),
                event_id=str(event.event_id),
            )
            return False

    @_storage_errors
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        stmt = (
            select(AuditEventRow)
            .where(AuditEventRow.correlation_id == str(correlation_id))
            .order_by(AuditEventRow.timestamp)
        )
        with self._session_factory() as session:
            return [_row_to_event(row) for row in session.scalars(stmt)]

    @_storage_errors
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        stmt = (
            select(AuditEventRow)
            .where(
                AuditEventRow.entity_type == entity_type,
                AuditEventRow.entity_id == str(entity_id),
            )
            .order_by(AuditEventRow.timestamp)
        )
        with self._session_factory() as session:
            return [_row_to_event(row) for row in session.scalars(stmt)]

    @_storage_errors
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        stmt = select(AuditEventRow).order_by(AuditEventRow.timestamp.desc()).limit(limit)
        with self._session_factory() as session:
            return [_row_to_event(row) for row in session.scalars(stmt)]
