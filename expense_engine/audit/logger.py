"""
Audit Logger

DESIGN DECISION: Every significant action in the engine is logged.
This provides:
1. Complete traceability of generation, matching and consolidation runs
2. Debugging capability for batch jobs that run unattended
3. Operators can see why a transaction was skipped or merged

The audit logger:
- Is async to fit the rest of the engine
- Gracefully handles failures (never breaks a batch if logging fails)
- Supports correlation IDs to trace every event of one batch run
"""

from typing import Optional
from uuid import UUID, uuid4

import structlog

from expense_engine.models.audit import AuditEvent, AuditEventBuilder, AuditSeverity
from expense_engine.services.storage.interface import AuditStorageInterface


# Configure structlog for local logging
structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer()
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)


class AuditLogger:
    """
    Central audit logging service.

    Logs events both to:
    1. Structured local log (for debugging)
    2. Audit storage (for persistence), when one is configured
    """

    def __init__(
        self,
        storage: Optional[AuditStorageInterface] = None,
    ):
        """
        Initialize audit logger.

        Args:
            storage: Storage backend for persistence.
                    If None, only logs locally.
        """
        self._storage = storage
        self._logger = structlog.get_logger("expense_engine.audit")

    async def log(self, event: AuditEvent) -> bool:
        """
        Log an audit event.

        Always logs locally. Persists to storage if available.

        Returns True if storage write succeeded (or no storage configured).
        """
        log_dict = event.to_log_dict()

        if event.severity in (AuditSeverity.ERROR, AuditSeverity.CRITICAL):
            self._logger.error("audit_event", **log_dict)
        elif event.severity == AuditSeverity.WARNING:
            self._logger.warning("audit_event", **log_dict)
        else:
            self._logger.info("audit_event", **log_dict)

        if self._storage:
            try:
                return await self._storage.append_event(event)
            except Exception as e:
                # Log failure but don't raise
                self._logger.error(
                    "audit_storage_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                )
                return False

        return True

    # =========================================================================
    # REGISTRIES
    # =========================================================================

    async def log_template_created(
        self,
        template_id: UUID,
        name: str,
        vendor: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log template creation."""
        await self.log(AuditEventBuilder.template_created(
            template_id=template_id,
            name=name,
            vendor=vendor,
            correlation_id=correlation_id,
        ))

    async def log_template_updated(
        self,
        template_id: UUID,
        name: str,
        changed_fields: list[str],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.template_updated(
            template_id=template_id,
            name=name,
            changed_fields=changed_fields,
            correlation_id=correlation_id,
        ))

    async def log_template_deactivated(
        self,
        template_id: UUID,
        name: str,
        reason: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.template_deactivated(
            template_id=template_id,
            name=name,
            reason=reason,
            correlation_id=correlation_id,
        ))

    async def log_rule_created(
        self,
        rule_id: UUID,
        rule_type: str,
        name: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log skip rule creation."""
        await self.log(AuditEventBuilder.rule_created(
            rule_id=rule_id,
            rule_type=rule_type,
            name=name,
            correlation_id=correlation_id,
        ))

    async def log_rule_deactivated(
        self,
        rule_id: UUID,
        name: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.rule_deactivated(
            rule_id=rule_id,
            name=name,
            correlation_id=correlation_id,
        ))

    # =========================================================================
    # GENERATION
    # =========================================================================

    async def log_instance_created(
        self,
        instance_id: UUID,
        template_id: Optional[UUID],
        vendor: str,
        period: str,
        amount: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a newly projected bill instance."""
        await self.log(AuditEventBuilder.instance_created(
            instance_id=instance_id,
            template_id=template_id,
            vendor=vendor,
            period=period,
            amount=amount,
            correlation_id=correlation_id,
        ))

    async def log_generation_completed(
        self,
        periods: list[str],
        created: int,
        skipped_existing: int,
        failed_templates: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log the summary of a generation run."""
        await self.log(AuditEventBuilder.generation_completed(
            periods=periods,
            created=created,
            skipped_existing=skipped_existing,
            failed_templates=failed_templates,
            correlation_id=correlation_id,
        ))

    async def log_generation_failed(
        self,
        template_id: UUID,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.generation_failed(
            template_id=template_id,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    # =========================================================================
    # LEDGER
    # =========================================================================

    async def log_split_applied(
        self,
        instance_id: UUID,
        amount: str,
        founder_count: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.split_applied(
            instance_id=instance_id,
            amount=amount,
            founder_count=founder_count,
            correlation_id=correlation_id,
        ))

    async def log_founder_payment_updated(
        self,
        instance_id: UUID,
        user_id: str,
        status: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.founder_payment_updated(
            instance_id=instance_id,
            user_id=user_id,
            status=status,
            correlation_id=correlation_id,
        ))

    async def log_instance_paid(
        self,
        instance_id: UUID,
        vendor: str,
        paid_via: Optional[str],
        override: bool,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.instance_paid(
            instance_id=instance_id,
            vendor=vendor,
            paid_via=paid_via,
            override=override,
            correlation_id=correlation_id,
        ))

    async def log_instance_amount_changed(
        self,
        instance_id: UUID,
        old_amount: str,
        new_amount: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.instance_amount_changed(
            instance_id=instance_id,
            old_amount=old_amount,
            new_amount=new_amount,
            correlation_id=correlation_id,
        ))

    async def log_instance_deleted(
        self,
        instance_id: UUID,
        vendor: str,
        period: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.instance_deleted(
            instance_id=instance_id,
            vendor=vendor,
            period=period,
            correlation_id=correlation_id,
        ))

    # =========================================================================
    # MATCHING
    # =========================================================================

    async def log_transaction_skipped(
        self,
        transaction_id: str,
        rule_id: UUID,
        rule_type: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a transaction dismissed by a skip rule."""
        await self.log(AuditEventBuilder.transaction_skipped(
            transaction_id=transaction_id,
            rule_id=rule_id,
            rule_type=rule_type,
            correlation_id=correlation_id,
        ))

    async def log_transaction_matched(
        self,
        transaction_id: str,
        instance_id: UUID,
        template_id: Optional[UUID],
        period: str,
        auto_approved: bool,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log a transaction matched to a bill."""
        await self.log(AuditEventBuilder.transaction_matched(
            transaction_id=transaction_id,
            instance_id=instance_id,
            template_id=template_id,
            period=period,
            auto_approved=auto_approved,
            correlation_id=correlation_id,
        ))

    async def log_transaction_unmatched(
        self,
        transaction_id: str,
        reason: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.transaction_unmatched(
            transaction_id=transaction_id,
            reason=reason,
            correlation_id=correlation_id,
        ))

    async def log_match_failed(
        self,
        transaction_id: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.match_failed(
            transaction_id=transaction_id,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    # =========================================================================
    # CONSOLIDATION
    # =========================================================================

    async def log_rules_merged(
        self,
        survivor_id: UUID,
        duplicate_ids: list[UUID],
        skip_count: int,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.rules_merged(
            survivor_id=survivor_id,
            duplicate_ids=duplicate_ids,
            skip_count=skip_count,
            correlation_id=correlation_id,
        ))

    async def log_templates_merged(
        self,
        survivor_id: UUID,
        duplicate_ids: list[UUID],
        instances_migrated: int,
        instances_folded: int = 0,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.templates_merged(
            survivor_id=survivor_id,
            duplicate_ids=duplicate_ids,
            instances_migrated=instances_migrated,
            instances_folded=instances_folded,
            correlation_id=correlation_id,
        ))

    async def log_merge_conflict(
        self,
        key: str,
        survivor_id: UUID,
        periods: list[str],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.merge_conflict(
            key=key,
            survivor_id=survivor_id,
            periods=periods,
            correlation_id=correlation_id,
        ))

    async def log_orphan_linked(
        self,
        instance_id: UUID,
        template_id: UUID,
        period: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.orphan_linked(
            instance_id=instance_id,
            template_id=template_id,
            period=period,
            correlation_id=correlation_id,
        ))

    async def log_orphan_ambiguous(
        self,
        instance_id: UUID,
        vendor: str,
        candidate_ids: list[UUID],
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.orphan_ambiguous(
            instance_id=instance_id,
            vendor=vendor,
            candidate_ids=candidate_ids,
            correlation_id=correlation_id,
        ))

    async def log_consolidation_failed(
        self,
        key: str,
        error_message: str,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        await self.log(AuditEventBuilder.consolidation_failed(
            key=key,
            error_message=error_message,
            correlation_id=correlation_id,
        ))

    # =========================================================================
    # SYSTEM
    # =========================================================================

    async def log_error(
        self,
        error_type: str,
        error_message: str,
        details: Optional[dict] = None,
        correlation_id: Optional[UUID] = None,
    ) -> None:
        """Log an error."""
        await self.log(AuditEventBuilder.system_error(
            error_type=error_type,
            error_message=error_message,
            details=details,
            correlation_id=correlation_id,
        ))


def create_correlation_id() -> UUID:
    """
    Create a new correlation ID for tracking related events.

    Use this at the start of a batch run (generation, consolidation, a
    batch of transactions). Pass it through all subsequent operations.
    """
    return uuid4()
