"""
Audit Models for the Recurring Expense Engine

Every significant action in the engine is logged for audit purposes.
This provides:
1. Complete traceability of every generated bill, match and merge
2. Debugging information when a batch job misbehaves
3. A record of which rule dismissed which transaction
4. Ability to reconstruct history after consolidation rewrites links

DESIGN DECISION: Audit logs are append-only. We never delete or modify them.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional, Union
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AuditEventType(str, Enum):
    """
    Types of events we audit.

    Every component of the engine has its own event types.
    """
    # Registries
    TEMPLATE_CREATED = "template_created"
    TEMPLATE_UPDATED = "template_updated"
    TEMPLATE_DEACTIVATED = "template_deactivated"
    RULE_CREATED = "rule_created"
    RULE_DEACTIVATED = "rule_deactivated"

    # Generation
    GENERATION_STARTED = "generation_started"
    INSTANCE_CREATED = "instance_created"
    GENERATION_COMPLETED = "generation_completed"
    GENERATION_FAILED = "generation_failed"

    # Ledger
    SPLIT_APPLIED = "split_applied"
    FOUNDER_PAYMENT_UPDATED = "founder_payment_updated"
    INSTANCE_PAID = "instance_paid"
    INSTANCE_AMOUNT_CHANGED = "instance_amount_changed"
    INSTANCE_DELETED = "instance_deleted"

    # Matching
    TRANSACTION_SKIPPED = "transaction_skipped"
    TRANSACTION_MATCHED = "transaction_matched"
    TRANSACTION_UNMATCHED = "transaction_unmatched"
    MATCH_FAILED = "match_failed"

    # Consolidation
    RULES_MERGED = "rules_merged"
    TEMPLATES_MERGED = "templates_merged"
    ORPHAN_LINKED = "orphan_linked"
    ORPHAN_AMBIGUOUS = "orphan_ambiguous"
    MERGE_CONFLICT = "merge_conflict"
    CONSOLIDATION_FAILED = "consolidation_failed"

    # System events
    SYSTEM_ERROR = "system_error"


class AuditSeverity(str, Enum):
    """Severity level for audit events."""
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


EntityId = Union[UUID, str]


class AuditEvent(BaseModel):
    """
    A single audit event.

    This is the core unit of our audit trail.
    Every significant action creates one of these.
    """

    # Identity
    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    timestamp: datetime = Field(
        default_factory=datetime.utcnow,
        description="When the event occurred (UTC)"
    )

    # Event classification
    event_type: AuditEventType = Field(
        ...,
        description="Type of event"
    )
    severity: AuditSeverity = Field(
        default=AuditSeverity.INFO,
        description="Event severity"
    )

    # Context - what entity is this about?
    entity_type: Optional[str] = Field(
        default=None,
        description="Type of entity (e.g., 'template', 'instance', 'transaction')"
    )
    entity_id: Optional[str] = Field(
        default=None,
        description="ID of the entity this event relates to"
    )

    # Correlation - for tracking related events
    correlation_id: Optional[UUID] = Field(
        default=None,
        description="ID to correlate related events (e.g., all events in one batch run)"
    )

    # Event details
    description: str = Field(
        ...,
        max_length=500,
        description="Human-readable description of what happened"
    )

    # Additional data (event-specific)
    details: dict[str, Any] = Field(
        default_factory=dict,
        description="Additional event-specific data"
    )

    # Error information (if applicable)
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    # Operator action tracking
    is_user_action: bool = Field(
        default=False,
        description="Was this triggered by an operator rather than a batch job?"
    )

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type.value,
            "severity": self.severity.value,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "correlation_id": str(self.correlation_id) if self.correlation_id else None,
            "description": self.description,
            "details": self.details,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "is_user_action": self.is_user_action,
        }


def _id(value: Optional[EntityId]) -> Optional[str]:
    return str(value) if value is not None else None


class AuditEventBuilder:
    """
    Helper class to build audit events with common patterns.

    Usage:
        event = AuditEventBuilder.instance_created(instance, correlation_id)
        event = AuditEventBuilder.transaction_skipped(tx_id, rule_id, ...)
    """

    @staticmethod
    def template_created(
        template_id: UUID,
        name: str,
        vendor: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TEMPLATE_CREATED,
            entity_type="template",
            entity_id=_id(template_id),
            correlation_id=correlation_id,
            description=f"Recurring bill created: {name}",
            details={"vendor": vendor},
            is_user_action=True,
        )

    @staticmethod
    def template_updated(
        template_id: UUID,
        name: str,
        changed_fields: list[str],
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TEMPLATE_UPDATED,
            entity_type="template",
            entity_id=_id(template_id),
            correlation_id=correlation_id,
            description=f"Recurring bill updated: {name}",
            details={"changed_fields": changed_fields},
            is_user_action=True,
        )

    @staticmethod
    def template_deactivated(
        template_id: UUID,
        name: str,
        reason: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TEMPLATE_DEACTIVATED,
            entity_type="template",
            entity_id=_id(template_id),
            correlation_id=correlation_id,
            description=f"Recurring bill deactivated: {name}",
            details={"reason": reason},
        )

    @staticmethod
    def rule_created(
        rule_id: UUID,
        rule_type: str,
        name: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RULE_CREATED,
            entity_type="skip_rule",
            entity_id=_id(rule_id),
            correlation_id=correlation_id,
            description=f"Skip rule created: {name or rule_type}",
            details={"rule_type": rule_type},
            is_user_action=True,
        )

    @staticmethod
    def rule_deactivated(
        rule_id: UUID,
        name: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RULE_DEACTIVATED,
            entity_type="skip_rule",
            entity_id=_id(rule_id),
            correlation_id=correlation_id,
            description=f"Skip rule deactivated: {name}",
            is_user_action=True,
        )

    @staticmethod
    def generation_completed(
        periods: list[str],
        created: int,
        skipped_existing: int,
        failed_templates: int,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.GENERATION_COMPLETED,
            severity=AuditSeverity.WARNING if failed_templates else AuditSeverity.INFO,
            correlation_id=correlation_id,
            description=f"Generated {created} bill instance(s)",
            details={
                "periods": periods,
                "created": created,
                "skipped_existing": skipped_existing,
                "failed_templates": failed_templates,
            },
        )

    @staticmethod
    def instance_created(
        instance_id: UUID,
        template_id: Optional[UUID],
        vendor: str,
        period: str,
        amount: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INSTANCE_CREATED,
            entity_type="instance",
            entity_id=_id(instance_id),
            correlation_id=correlation_id,
            description=f"Bill instance created: {vendor} {period}",
            details={
                "template_id": _id(template_id),
                "period": period,
                "amount": amount,
            },
        )

    @staticmethod
    def generation_failed(
        template_id: UUID,
        error_message: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.GENERATION_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="template",
            entity_id=_id(template_id),
            correlation_id=correlation_id,
            description="Bill generation failed for template",
            error_message=error_message,
        )

    @staticmethod
    def split_applied(
        instance_id: UUID,
        amount: str,
        founder_count: int,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SPLIT_APPLIED,
            entity_type="instance",
            entity_id=_id(instance_id),
            correlation_id=correlation_id,
            description=f"Split {amount} across {founder_count} founder(s)",
            details={
                "amount": amount,
                "founder_count": founder_count,
            },
        )

    @staticmethod
    def founder_payment_updated(
        instance_id: UUID,
        user_id: str,
        status: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.FOUNDER_PAYMENT_UPDATED,
            entity_type="instance",
            entity_id=_id(instance_id),
            correlation_id=correlation_id,
            description=f"Founder {user_id} share marked {status}",
            details={
                "user_id": user_id,
                "status": status,
            },
            is_user_action=True,
        )

    @staticmethod
    def instance_paid(
        instance_id: UUID,
        vendor: str,
        paid_via: Optional[str],
        override: bool,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INSTANCE_PAID,
            entity_type="instance",
            entity_id=_id(instance_id),
            correlation_id=correlation_id,
            description=f"Bill marked paid: {vendor}",
            details={
                "paid_via": paid_via,
                "override": override,
            },
            is_user_action=override,
        )

    @staticmethod
    def instance_amount_changed(
        instance_id: UUID,
        old_amount: str,
        new_amount: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INSTANCE_AMOUNT_CHANGED,
            entity_type="instance",
            entity_id=_id(instance_id),
            correlation_id=correlation_id,
            description=f"Bill amount changed from {old_amount} to {new_amount}",
            details={
                "old_amount": old_amount,
                "new_amount": new_amount,
            },
        )

    @staticmethod
    def instance_deleted(
        instance_id: UUID,
        vendor: str,
        period: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.INSTANCE_DELETED,
            severity=AuditSeverity.WARNING,
            entity_type="instance",
            entity_id=_id(instance_id),
            correlation_id=correlation_id,
            description=f"Bill instance deleted: {vendor} {period}",
            is_user_action=True,
        )

    @staticmethod
    def transaction_skipped(
        transaction_id: str,
        rule_id: UUID,
        rule_type: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_SKIPPED,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description=f"Transaction auto-skipped by {rule_type} rule",
            details={
                "rule_id": _id(rule_id),
                "rule_type": rule_type,
            },
        )

    @staticmethod
    def transaction_matched(
        transaction_id: str,
        instance_id: UUID,
        template_id: Optional[UUID],
        period: str,
        auto_approved: bool,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_MATCHED,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description=f"Transaction matched to bill for {period}",
            details={
                "instance_id": _id(instance_id),
                "template_id": _id(template_id),
                "period": period,
                "auto_approved": auto_approved,
            },
        )

    @staticmethod
    def transaction_unmatched(
        transaction_id: str,
        reason: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TRANSACTION_UNMATCHED,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description="Transaction queued for manual review",
            details={"reason": reason},
        )

    @staticmethod
    def match_failed(
        transaction_id: str,
        error_message: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MATCH_FAILED,
            severity=AuditSeverity.ERROR,
            entity_type="transaction",
            entity_id=transaction_id,
            correlation_id=correlation_id,
            description="Matching failed for transaction",
            error_message=error_message,
        )

    @staticmethod
    def rules_merged(
        survivor_id: UUID,
        duplicate_ids: list[UUID],
        skip_count: int,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.RULES_MERGED,
            entity_type="skip_rule",
            entity_id=_id(survivor_id),
            correlation_id=correlation_id,
            description=f"Merged {len(duplicate_ids)} duplicate skip rule(s)",
            details={
                "deleted_rule_ids": [str(i) for i in duplicate_ids],
                "skip_count": skip_count,
            },
        )

    @staticmethod
    def templates_merged(
        survivor_id: UUID,
        duplicate_ids: list[UUID],
        instances_migrated: int,
        instances_folded: int = 0,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.TEMPLATES_MERGED,
            entity_type="template",
            entity_id=_id(survivor_id),
            correlation_id=correlation_id,
            description=f"Merged {len(duplicate_ids)} duplicate recurring bill(s)",
            details={
                "deactivated_template_ids": [str(i) for i in duplicate_ids],
                "instances_migrated": instances_migrated,
                "instances_folded": instances_folded,
            },
        )

    @staticmethod
    def merge_conflict(
        key: str,
        survivor_id: UUID,
        periods: list[str],
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.MERGE_CONFLICT,
            severity=AuditSeverity.WARNING,
            entity_type="template",
            entity_id=_id(survivor_id),
            correlation_id=correlation_id,
            description="Duplicate recurring bills share periods; left unmerged",
            details={
                "key": key,
                "periods": periods,
            },
        )

    @staticmethod
    def orphan_linked(
        instance_id: UUID,
        template_id: UUID,
        period: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ORPHAN_LINKED,
            entity_type="instance",
            entity_id=_id(instance_id),
            correlation_id=correlation_id,
            description=f"Orphan bill for {period} linked to recurring bill",
            details={"template_id": _id(template_id)},
        )

    @staticmethod
    def orphan_ambiguous(
        instance_id: UUID,
        vendor: str,
        candidate_ids: list[UUID],
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.ORPHAN_AMBIGUOUS,
            severity=AuditSeverity.WARNING,
            entity_type="instance",
            entity_id=_id(instance_id),
            correlation_id=correlation_id,
            description=f"Orphan bill '{vendor}' matches {len(candidate_ids)} recurring bills",
            details={"candidate_template_ids": [str(i) for i in candidate_ids]},
        )

    @staticmethod
    def consolidation_failed(
        key: str,
        error_message: str,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.CONSOLIDATION_FAILED,
            severity=AuditSeverity.ERROR,
            correlation_id=correlation_id,
            description="Consolidation group failed and was rolled back",
            error_message=error_message,
            details={"key": key},
        )

    @staticmethod
    def system_error(
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None
    ) -> AuditEvent:
        return AuditEvent(
            event_type=AuditEventType.SYSTEM_ERROR,
            severity=AuditSeverity.ERROR,
            description=f"System error: {error_type}",
            error_message=error_message,
            details=details or {},
            correlation_id=correlation_id,
        )
