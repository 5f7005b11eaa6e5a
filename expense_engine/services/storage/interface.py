"""
Abstract Storage Interface

DESIGN DECISION: We define an abstract interface for storage operations.
This allows us to:
1. Run the engine against SQLite/PostgreSQL in production
2. Use in-memory storage for testing
3. Keep business logic decoupled from storage implementation

The interface is intentionally simple - we're not building a full ORM.
Just the operations the generator, matcher, ledger and consolidation need.

CRITICAL: Two uniqueness keys are enforced by every backend, not by callers:
- (template_id, period) for bill instances
- (bill_instance_id, user_id) for founder payments
"""

from abc import ABC, abstractmethod
from contextlib import AbstractAsyncContextManager
from typing import Optional
from uuid import UUID

from expense_engine.models.audit import AuditEvent
from expense_engine.models.bill import (
    BillInstance,
    BillStatus,
    FounderPayment,
    RecurringBillTemplate,
)
from expense_engine.models.rules import SkipRule, Transaction


class ExpenseStorageInterface(ABC):
    """
    Abstract interface for the engine's persistent state.

    Any storage implementation (in-memory, SQL, etc.)
    must implement these methods.
    """

    # =========================================================================
    # TRANSACTIONS
    # =========================================================================

    @abstractmethod
    def transaction(self) -> AbstractAsyncContextManager[None]:
        """
        Group writes so they commit or roll back together.

        Usage:
            async with storage.transaction():
                await storage.update_template(...)
                await storage.reassign_instances(...)

        Nested calls join the outer transaction (as a savepoint where the
        backend supports one).
        """
        pass

    # =========================================================================
    # TEMPLATE REGISTRY
    # =========================================================================

    @abstractmethod
    async def save_template(self, template: RecurringBillTemplate) -> RecurringBillTemplate:
        """
        Insert a new template.

        Raises:
            DuplicateError: If a template with this id already exists
        """
        pass

    @abstractmethod
    async def update_template(self, template: RecurringBillTemplate) -> RecurringBillTemplate:
        """
        Replace a stored template.

        Raises:
            NotFoundError: If the template doesn't exist
        """
        pass

    @abstractmethod
    async def get_template(self, template_id: UUID) -> Optional[RecurringBillTemplate]:
        pass

    @abstractmethod
    async def list_templates(self, active_only: bool = False) -> list[RecurringBillTemplate]:
        """List templates, oldest first."""
        pass

    # =========================================================================
    # SKIP-RULE REGISTRY
    # =========================================================================

    @abstractmethod
    async def save_rule(self, rule: SkipRule) -> SkipRule:
        """
        Insert a new skip rule.

        Raises:
            DuplicateError: If a rule with this id already exists
        """
        pass

    @abstractmethod
    async def update_rule(self, rule: SkipRule) -> SkipRule:
        """
        Replace a stored rule.

        Raises:
            NotFoundError: If the rule doesn't exist
        """
        pass

    @abstractmethod
    async def get_rule(self, rule_id: UUID) -> Optional[SkipRule]:
        pass

    @abstractmethod
    async def list_rules(self, active_only: bool = False) -> list[SkipRule]:
        """List rules, oldest first."""
        pass

    @abstractmethod
    async def delete_rule(self, rule_id: UUID) -> bool:
        """Delete a rule. Only consolidation deletes rules."""
        pass

    @abstractmethod
    async def increment_skip_count(self, rule_id: UUID, by: int = 1) -> int:
        """
        Atomically add to a rule's skip_count.

        Returns:
            The new skip_count

        Raises:
            NotFoundError: If the rule doesn't exist
        """
        pass

    # =========================================================================
    # BILL INSTANCES
    # =========================================================================

    @abstractmethod
    async def insert_instance(self, instance: BillInstance) -> BillInstance:
        """
        Insert a bill instance.

        Raises:
            DuplicateInstanceAttempt: If an instance already exists for
                (template_id, period)
        """
        pass

    @abstractmethod
    async def get_instance(self, instance_id: UUID) -> Optional[BillInstance]:
        pass

    @abstractmethod
    async def find_instance(
        self,
        template_id: UUID,
        period: str,
    ) -> Optional[BillInstance]:
        """Look up the instance for a (template, period) pair."""
        pass

    @abstractmethod
    async def update_instance(self, instance: BillInstance) -> BillInstance:
        """
        Replace a stored instance.

        Raises:
            NotFoundError: If the instance doesn't exist
            DuplicateInstanceAttempt: If the change collides with another
                instance's (template_id, period)
        """
        pass

    @abstractmethod
    async def delete_instance(self, instance_id: UUID) -> bool:
        """Delete an instance together with its founder payments."""
        pass

    @abstractmethod
    async def list_instances(
        self,
        template_id: Optional[UUID] = None,
        period: Optional[str] = None,
        status: Optional[BillStatus] = None,
        orphans_only: bool = False,
    ) -> list[BillInstance]:
        """
        List instances with optional filters.

        Returns:
            Instances ordered by due date, then vendor
        """
        pass

    @abstractmethod
    async def reassign_instances(
        self,
        from_template_id: UUID,
        to_template_id: UUID,
    ) -> int:
        """
        Re-point every instance of one template to another.

        Returns:
            Number of instances moved

        Raises:
            DuplicateInstanceAttempt: If a moved instance collides with one
                the target template already holds for the same period
        """
        pass

    @abstractmethod
    async def count_instances_by_template(self) -> dict[UUID, int]:
        """Number of linked instances per template id."""
        pass

    # =========================================================================
    # FOUNDER PAYMENTS
    # =========================================================================

    @abstractmethod
    async def list_payments(
        self,
        instance_id: Optional[UUID] = None,
        user_id: Optional[str] = None,
    ) -> list[FounderPayment]:
        """List founder payment rows, ordered by user id."""
        pass

    @abstractmethod
    async def upsert_payment(self, payment: FounderPayment) -> FounderPayment:
        """
        Insert or update the row for (bill_instance_id, user_id).

        An existing row keeps its id; every other field is replaced.
        """
        pass

    @abstractmethod
    async def delete_payment(self, instance_id: UUID, user_id: str) -> bool:
        pass

    # =========================================================================
    # TRIAGE QUEUE (unmatched transactions awaiting review)
    # =========================================================================

    @abstractmethod
    async def queue_transaction(self, transaction: Transaction) -> bool:
        """Add a transaction to the triage queue. Re-queuing is a no-op."""
        pass

    @abstractmethod
    async def list_triage(self) -> list[Transaction]:
        """Queued transactions, oldest first."""
        pass

    @abstractmethod
    async def remove_from_triage(self, transaction_id: str) -> bool:
        pass


class AuditStorageInterface(ABC):
    """
    Abstract interface for audit log storage.

    Audit logs are append-only - we never delete or modify them.
    """

    @abstractmethod
    async def append_event(self, event: AuditEvent) -> bool:
        """
        Append an audit event to the log.

        Args:
            event: The audit event to log

        Returns:
            True if logged successfully
        """
        pass

    @abstractmethod
    async def get_events_by_correlation_id(
        self,
        correlation_id: UUID,
    ) -> list[AuditEvent]:
        """
        Get all events for a correlation ID (e.g., one consolidation run).

        Returns:
            List of related events in chronological order
        """
        pass

    @abstractmethod
    async def get_events_by_entity(
        self,
        entity_type: str,
        entity_id: str,
    ) -> list[AuditEvent]:
        """
        Get all events for a specific entity.

        Args:
            entity_type: Type of entity (e.g., 'template', 'transaction')
            entity_id: The entity's ID

        Returns:
            List of events in chronological order
        """
        pass

    @abstractmethod
    async def get_recent_events(
        self,
        limit: int = 100,
    ) -> list[AuditEvent]:
        """
        Get the most recent audit events.

        Returns:
            List of recent events (newest first)
        """
        pass


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class NotFoundError(StorageError):
    """Entity not found in storage."""
    pass


class DuplicateError(StorageError):
    """Attempted to insert a duplicate entity."""
    pass


class DuplicateInstanceAttempt(DuplicateError):
    """An instance already exists for this (template_id, period)."""

    def __init__(self, template_id: Optional[UUID], period: str):
        self.template_id = template_id
        self.period = period
        super().__init__(
            f"Instance already exists for template {template_id} in {period}"
        )


class ConnectionError(StorageError):
    """Could not connect to storage backend."""
    pass
