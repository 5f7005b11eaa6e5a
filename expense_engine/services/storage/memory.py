"""
In-Memory Storage Implementation

DESIGN DECISION: The in-memory backend implements the same interface as the
SQL backend so the whole engine can run in tests (and in one-off scripts)
without a database.

TRADEOFFS:
- Single process only; nothing survives a restart
- transaction() is snapshot/rollback, serialised by a lock. Writes made
  outside a transaction while another task holds one can be lost if that
  transaction rolls back.

Stored models are copied on the way in and on the way out, so callers can
never mutate storage state by holding on to a returned object.
"""

import asyncio
import copy
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import AsyncIterator, Optional
from uuid import UUID

from expense_engine.models.audit import AuditEvent
from expense_engine.models.bill import (
    BillInstance,
    BillStatus,
    FounderPayment,
    RecurringBillTemplate,
)
from expense_engine.models.rules import SkipRule, Transaction
from expense_engine.services.storage.interface import (
    AuditStorageInterface,
    DuplicateError,
    DuplicateInstanceAttempt,
    ExpenseStorageInterface,
    NotFoundError,
)


class InMemoryExpenseStorage(ExpenseStorageInterface):
    """
    Dictionary-backed implementation of expense storage.
    """

    def __init__(self):
        self._templates: dict[UUID, RecurringBillTemplate] = {}
        self._rules: dict[UUID, SkipRule] = {}
        self._instances: dict[UUID, BillInstance] = {}
        self._payments: dict[tuple[UUID, str], FounderPayment] = {}
        self._triage: dict[str, Transaction] = {}

        self._tx_lock = asyncio.Lock()
        self._insert_lock = asyncio.Lock()
        self._in_transaction: ContextVar[bool] = ContextVar(
            f"memory_storage_tx_{id(self)}", default=False
        )

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    def _snapshot(self) -> tuple:
        return copy.deepcopy((
            self._templates,
            self._rules,
            self._instances,
            self._payments,
            self._triage,
        ))

    def _restore(self, snapshot: tuple) -> None:
        (
            self._templates,
            self._rules,
            self._instances,
            self._payments,
            self._triage,
        ) = snapshot

    @asynccontextmanager
    async def _savepoint(self) -> AsyncIterator[None]:
        snapshot = self._snapshot()
        try:
            yield
        except BaseException:
            self._restore(snapshot)
            raise

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._in_transaction.get():
            async with self._savepoint():
                yield
            return

        async with self._tx_lock:
            token = self._in_transaction.set(True)
            try:
                async with self._savepoint():
                    yield
            finally:
                self._in_transaction.reset(token)

    # =========================================================================
    # TEMPLATE REGISTRY
    # =========================================================================

    async def save_template(self, template: RecurringBillTemplate) -> RecurringBillTemplate:
        if template.id in self._templates:
            raise DuplicateError(f"Template already exists: {template.id}")
        self._templates[template.id] = template.model_copy(deep=True)
        return template

    async def update_template(self, template: RecurringBillTemplate) -> RecurringBillTemplate:
        if template.id not in self._templates:
            raise NotFoundError(f"Template not found: {template.id}")
        template.updated_at = datetime.utcnow()
        self._templates[template.id] = template.model_copy(deep=True)
        return template

    async def get_template(self, template_id: UUID) -> Optional[RecurringBillTemplate]:
        template = self._templates.get(template_id)
        return template.model_copy(deep=True) if template else None

    async def list_templates(self, active_only: bool = False) -> list[RecurringBillTemplate]:
        templates = [
            t.model_copy(deep=True)
            for t in self._templates.values()
            if t.active or not active_only
        ]
        templates.sort(key=lambda t: t.created_at)
        return templates

    # =========================================================================
    # SKIP-RULE REGISTRY
    # =========================================================================

    async def save_rule(self, rule: SkipRule) -> SkipRule:
        if rule.id in self._rules:
            raise DuplicateError(f"Skip rule already exists: {rule.id}")
        self._rules[rule.id] = rule.model_copy(deep=True)
        return rule

    async def update_rule(self, rule: SkipRule) -> SkipRule:
        if rule.id not in self._rules:
            raise NotFoundError(f"Skip rule not found: {rule.id}")
        rule.updated_at = datetime.utcnow()
        self._rules[rule.id] = rule.model_copy(deep=True)
        return rule

    async def get_rule(self, rule_id: UUID) -> Optional[SkipRule]:
        rule = self._rules.get(rule_id)
        return rule.model_copy(deep=True) if rule else None

    async def list_rules(self, active_only: bool = False) -> list[SkipRule]:
        rules = [
            r.model_copy(deep=True)
            for r in self._rules.values()
            if r.is_active or not active_only
        ]
        rules.sort(key=lambda r: r.created_at)
        return rules

    async def delete_rule(self, rule_id: UUID) -> bool:
        return self._rules.pop(rule_id, None) is not None

    async def increment_skip_count(self, rule_id: UUID, by: int = 1) -> int:
        rule = self._rules.get(rule_id)
        if rule is None:
            raise NotFoundError(f"Skip rule not found: {rule_id}")
        rule.skip_count += by
        rule.updated_at = datetime.utcnow()
        return rule.skip_count

    # =========================================================================
    # BILL INSTANCES
    # =========================================================================

    def _find(self, template_id: Optional[UUID], period: str) -> Optional[BillInstance]:
        if template_id is None:
            return None
        for instance in self._instances.values():
            if instance.template_id == template_id and instance.period == period:
                return instance
        return None

    async def insert_instance(self, instance: BillInstance) -> BillInstance:
        async with self._insert_lock:
            if instance.id in self._instances:
                raise DuplicateError(f"Instance already exists: {instance.id}")
            if self._find(instance.template_id, instance.period) is not None:
                raise DuplicateInstanceAttempt(instance.template_id, instance.period)
            self._instances[instance.id] = instance.model_copy(deep=True)
        return instance

    async def get_instance(self, instance_id: UUID) -> Optional[BillInstance]:
        instance = self._instances.get(instance_id)
        return instance.model_copy(deep=True) if instance else None

    async def find_instance(
        self,
        template_id: UUID,
        period: str,
    ) -> Optional[BillInstance]:
        instance = self._find(template_id, period)
        return instance.model_copy(deep=True) if instance else None

    async def update_instance(self, instance: BillInstance) -> BillInstance:
        if instance.id not in self._instances:
            raise NotFoundError(f"Instance not found: {instance.id}")
        existing = self._find(instance.template_id, instance.period)
        if existing is not None and existing.id != instance.id:
            raise DuplicateInstanceAttempt(instance.template_id, instance.period)
        instance.updated_at = datetime.utcnow()
        self._instances[instance.id] = instance.model_copy(deep=True)
        return instance

    async def delete_instance(self, instance_id: UUID) -> bool:
        if self._instances.pop(instance_id, None) is None:
            return False
        for key in [k for k in self._payments if k[0] == instance_id]:
            del self._payments[key]
        return True

    async def list_instances(
        self,
        template_id: Optional[UUID] = None,
        period: Optional[str] = None,
        status: Optional[BillStatus] = None,
        orphans_only: bool = False,
    ) -> list[BillInstance]:
        instances = []
        for instance in self._instances.values():
            if template_id is not None and instance.template_id != template_id:
                continue
            if period is not None and instance.period != period:
                continue
            if status is not None and instance.status != status:
                continue
            if orphans_only and not instance.is_orphan:
                continue
            instances.append(instance.model_copy(deep=True))

        instances.sort(key=lambda i: (i.due_date, i.vendor.lower()))
        return instances

    async def reassign_instances(
        self,
        from_template_id: UUID,
        to_template_id: UUID,
    ) -> int:
        moving = [
            i for i in self._instances.values() if i.template_id == from_template_id
        ]
        for instance in moving:
            if self._find(to_template_id, instance.period) is not None:
                raise DuplicateInstanceAttempt(to_template_id, instance.period)

        now = datetime.utcnow()
        for instance in moving:
            instance.template_id = to_template_id
            instance.updated_at = now
        return len(moving)

    async def count_instances_by_template(self) -> dict[UUID, int]:
        counts: dict[UUID, int] = {}
        for instance in self._instances.values():
            if instance.template_id is not None:
                counts[instance.template_id] = counts.get(instance.template_id, 0) + 1
        return counts

    # =========================================================================
    # FOUNDER PAYMENTS
    # =========================================================================

    async def list_payments(
        self,
        instance_id: Optional[UUID] = None,
        user_id: Optional[str] = None,
    ) -> list[FounderPayment]:
        payments = [
            p.model_copy(deep=True)
            for (iid, uid), p in self._payments.items()
            if (instance_id is None or iid == instance_id)
            and (user_id is None or uid == user_id)
        ]
        payments.sort(key=lambda p: (p.user_id, str(p.bill_instance_id)))
        return payments

    async def upsert_payment(self, payment: FounderPayment) -> FounderPayment:
        if payment.bill_instance_id not in self._instances:
            raise NotFoundError(f"Instance not found: {payment.bill_instance_id}")
        key = (payment.bill_instance_id, payment.user_id)
        existing = self._payments.get(key)
        if existing is not None:
            payment = payment.model_copy(update={"id": existing.id})
        self._payments[key] = payment.model_copy(deep=True)
        return payment

    async def delete_payment(self, instance_id: UUID, user_id: str) -> bool:
        return self._payments.pop((instance_id, user_id), None) is not None

    # =========================================================================
    # TRIAGE QUEUE
    # =========================================================================

    async def queue_transaction(self, transaction: Transaction) -> bool:
        if transaction.id not in self._triage:
            self._triage[transaction.id] = transaction.model_copy(deep=True)
        return True

    async def list_triage(self) -> list[Transaction]:
        return [t.model_copy(deep=True) for t in self._triage.values()]

    async def remove_from_triage(self, transaction_id: str) -> bool:
        return self._triage.pop(transaction_id, None) is not None


class InMemoryAuditStorage(AuditStorageInterface):
    """
    List-backed audit log. Audit events are append-only.
    """

    def __init__(self):
        self._events: list[AuditEvent] = []

    @property
    def events(self) -> list[AuditEvent]:
        return list(self._events)

    async def append_event(self, event: AuditEvent) -> bool:
        self._events.append(event)
        return True

    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        events = [e for e in self._events if e.correlation_id == correlation_id]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        events = [
            e for e in self._events
            if e.entity_type == entity_type and e.entity_id == str(entity_id)
        ]
        events.sort(key=lambda e: e.timestamp)
        return events

    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        events = sorted(self._events, key=lambda e: e.timestamp, reverse=True)
        return events[:limit]
