"""
Main Orchestrator for the Recurring Expense Engine

This module ties together all the components and defines the
entry points used by the admin surface and the scheduled jobs:
1. Generation (templates -> bill instances -> founder shares)
2. Matching (transaction -> skip rule | template period | orphan | triage)
3. Consolidation (duplicate rules, duplicate templates, orphan linking)
4. Read projections and integrity checks

DESIGN DECISION: The orchestrator owns wiring, not logic.
Every decision lives in the component that owns it; ExpenseEngine only
builds the components with a shared storage, roster, clock and audit
logger, and turns batch reports into plain dicts for job callers.

Every batch run gets its own correlation id so its audit trail can be
reconstructed.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Iterable, Optional, Union
from uuid import UUID

import structlog

from expense_engine.audit import AuditLogger, create_correlation_id
from expense_engine.config import get_settings
from expense_engine.config.settings import EngineSettings
from expense_engine.consolidation import ConsolidationService
from expense_engine.db import create_db_engine, create_session_factory, init_db
from expense_engine.generation import InstanceGenerator
from expense_engine.ledger import FounderSplitLedger
from expense_engine.matching import TransactionMatcher
from expense_engine.models.bill import (
    BillInstance,
    BillStatus,
    PaymentStatus,
    RecurringBillTemplate,
    normalize_vendor,
)
from expense_engine.models.reports import (
    ConsolidationPlan,
    ConsolidationReport,
    ConsolidationScope,
    FounderBalance,
    InstanceDetail,
    IntegrityReport,
    PeriodSummary,
    ReapplyReport,
    TemplateHistory,
)
from expense_engine.models.rules import (
    AccountSkipRule,
    DescriptionPatternSkipRule,
    MatchedInstance,
    MatchResult,
    SkipRule,
    SkipRuleAdapter,
    SkipRuleType,
    Transaction,
    VendorAmountSkipRule,
    VendorSkipRule,
)
from expense_engine.queries import QueryExecutor
from expense_engine.services.clock import Clock, SystemClock
from expense_engine.services.roster import FounderRegistry
from expense_engine.services.storage import (
    AuditStorageInterface,
    ExpenseStorageInterface,
    InMemoryAuditStorage,
    InMemoryExpenseStorage,
    NotFoundError,
    SqlAuditStorage,
    SqlExpenseStorage,
)
from expense_engine.validation import LedgerIntegrityChecker


logger = structlog.get_logger("expense_engine.orchestrator")


# Template fields an operator may change after creation
UPDATABLE_TEMPLATE_FIELDS = frozenset({
    "name", "vendor", "vendor_type", "amount_type", "fixed_amount",
    "frequency", "due_day", "email_patterns", "payment_method",
    "auto_approve",
})


def _consolidation_summary(report: ConsolidationReport) -> dict[str, Any]:
    summary: dict[str, Any] = {
        "scope": report.scope.value,
        "groups_merged": report.groups_merged,
        "instances_migrated": report.instances_migrated,
        "orphans_linked": report.orphans_linked,
        "ambiguous": len(report.ambiguous_orphans),
        "conflicts": len(report.conflicted_groups),
        "failures": [f.model_dump() for f in report.failures],
    }
    if report.scope.includes_rules:
        summary["rules_deleted"] = report.rules_deleted
    if report.scope.includes_templates:
        summary["bills_deactivated"] = report.bills_deactivated
        summary["instances_folded"] = report.instances_folded
    if report.rules_reapplied is not None:
        summary["rules_reapplied"] = report.rules_reapplied.model_dump()
    return summary


class ExpenseEngine:
    """
    Facade over the generator, matcher, ledger, consolidation service,
    read projections and integrity checker.

    Usage:
        engine = create_engine_components()
        await engine.generate()
        result = await engine.match(transaction)
    """

    def __init__(
        self,
        storage: ExpenseStorageInterface,
        roster: FounderRegistry,
        clock: Optional[Clock] = None,
        audit_logger: Optional[AuditLogger] = None,
        engine_settings: Optional[EngineSettings] = None,
    ):
        self._settings = engine_settings or get_settings().engine
        self._storage = storage
        self._roster = roster
        self._clock = clock or SystemClock()
        self._audit_logger = audit_logger or AuditLogger()

        self.ledger = FounderSplitLedger(
            storage, roster, clock=self._clock, audit_logger=self._audit_logger
        )
        self.generator = InstanceGenerator(
            storage, self.ledger, clock=self._clock, audit_logger=self._audit_logger
        )
        self.matcher = TransactionMatcher(
            storage,
            self.generator,
            self.ledger,
            template_tolerance=self._settings.template_amount_tolerance,
            manual_tolerance=self._settings.manual_match_tolerance,
            audit_logger=self._audit_logger,
        )
        self.consolidation = ConsolidationService(
            storage, matcher=self.matcher, audit_logger=self._audit_logger
        )
        self.queries = QueryExecutor(storage, roster, clock=self._clock)
        self.integrity = LedgerIntegrityChecker(storage, roster=roster)

    @property
    def storage(self) -> ExpenseStorageInterface:
        return self._storage

    @property
    def roster(self) -> FounderRegistry:
        return self._roster

    # =========================================================================
    # BATCH JOBS
    # =========================================================================

    async def generate(
        self,
        months_back: Optional[int] = None,
        months_forward: Optional[int] = None,
        template_id: Optional[UUID] = None,
    ) -> dict[str, Any]:
        """
        Create missing instances around today.

        Returns:
            {"created", "skipped_existing", "periods", "errors"}
        """
        if months_back is None:
            months_back = self._settings.months_back
        if months_forward is None:
            months_forward = self._settings.months_forward

        report = await self.generator.generate(
            months_back=months_back,
            months_forward=months_forward,
            template_id=template_id,
            correlation_id=create_correlation_id(),
        )
        return {
            "created": report.created_count,
            "skipped_existing": report.skipped_existing,
            "periods": report.periods,
            "errors": [e.model_dump(mode="json") for e in report.errors],
        }

    async def fix_orphans(self) -> dict[str, Any]:
        """
        Link orphan instances to their template where exactly one fits.

        Returns:
            {"linked", "ambiguous", "failures"}
        """
        report = await self.consolidation.consolidate(
            ConsolidationScope.ORPHANS, correlation_id=create_correlation_id()
        )
        return {
            "linked": report.orphans_linked,
            "ambiguous": [a.model_dump(mode="json") for a in report.ambiguous_orphans],
            "failures": [f.model_dump() for f in report.failures],
        }

    async def consolidate(
        self,
        scope: Union[ConsolidationScope, str] = ConsolidationScope.ALL,
    ) -> dict[str, Any]:
        """Run consolidation for a scope and summarize what it did."""
        report = await self.consolidation.consolidate(
            ConsolidationScope(scope), correlation_id=create_correlation_id()
        )
        return _consolidation_summary(report)

    async def preview_consolidation(
        self,
        scope: Union[ConsolidationScope, str] = ConsolidationScope.ALL,
    ) -> ConsolidationPlan:
        """What consolidate(scope) would do. No side effects."""
        return await self.consolidation.preview(ConsolidationScope(scope))

    # =========================================================================
    # MATCHING
    # =========================================================================

    async def match(self, transaction: Transaction) -> MatchResult:
        return await self.matcher.match(transaction, correlation_id=create_correlation_id())

    async def match_batch(self, transactions: Iterable[Transaction]) -> list[MatchResult]:
        return await self.matcher.match_batch(
            transactions, correlation_id=create_correlation_id()
        )

    async def match_to_instance(
        self,
        transaction: Transaction,
        instance_id: UUID,
    ) -> MatchedInstance:
        """Operator picked the bill this transaction pays."""
        return await self.matcher.match_to_instance(transaction, instance_id)

    async def reapply_rules(self) -> ReapplyReport:
        return await self.matcher.reapply_rules(correlation_id=create_correlation_id())

    async def triage_queue(self) -> list[Transaction]:
        """Transactions waiting for a human."""
        return await self._storage.list_triage()

    # =========================================================================
    # LEDGER
    # =========================================================================

    async def mark_founder_paid(
        self,
        instance_id: UUID,
        user_id: str,
        paid_date: Optional[date] = None,
        status: PaymentStatus = PaymentStatus.PAID,
    ) -> BillInstance:
        return await self.ledger.mark_founder_paid(
            instance_id, user_id, paid_date=paid_date, status=status
        )

    async def mark_all_paid(
        self,
        instance_id: UUID,
        paid_date: Optional[date] = None,
        paid_via: Optional[str] = None,
    ) -> BillInstance:
        return await self.ledger.mark_all_paid(
            instance_id, paid_date=paid_date, paid_via=paid_via
        )

    async def set_amount(self, instance_id: UUID, amount: Decimal) -> BillInstance:
        return await self.ledger.set_amount(instance_id, amount)

    async def delete_instance(self, instance_id: UUID) -> bool:
        return await self.ledger.delete_instance(instance_id)

    # =========================================================================
    # READ PROJECTIONS
    # =========================================================================

    async def founder_balances(self) -> list[FounderBalance]:
        return await self.queries.founder_balances()

    async def list_bills(
        self,
        period: Optional[str] = None,
        status: Optional[BillStatus] = None,
    ) -> list[InstanceDetail]:
        return await self.queries.list_bills(period=period, status=status)

    async def period_summary(self, period: str) -> PeriodSummary:
        return await self.queries.period_summary(period)

    async def template_history(self, template_id: UUID) -> TemplateHistory:
        return await self.queries.template_history(template_id)

    async def upcoming_bills(self, days: Optional[int] = None) -> list[InstanceDetail]:
        if days is None:
            days = self._settings.upcoming_window_days
        return await self.queries.upcoming_bills(days=days)

    async def check_integrity(self) -> IntegrityReport:
        return await self.integrity.check()

    # =========================================================================
    # TEMPLATE REGISTRY
    # =========================================================================

    async def create_template(
        self,
        template: RecurringBillTemplate,
    ) -> tuple[RecurringBillTemplate, bool]:
        """
        Register a recurring bill.

        An active template with the same normalized vendor and amount type
        already covers this bill, so it is returned instead of a duplicate.

        Returns:
            (template, created)
        """
        vendor_key = normalize_vendor(template.vendor)
        for existing in await self._storage.list_templates(active_only=True):
            if (
                normalize_vendor(existing.vendor) == vendor_key
                and existing.amount_type == template.amount_type
            ):
                logger.info(
                    "template_duplicate_returned",
                    existing_id=str(existing.id),
                    vendor=template.vendor,
                )
                return existing, False

        saved = await self._storage.save_template(template)
        await self._audit_logger.log_template_created(
            template_id=saved.id,
            name=saved.name,
            vendor=saved.vendor,
        )
        return saved, True

    async def update_template(
        self,
        template_id: UUID,
        **changes: Any,
    ) -> RecurringBillTemplate:
        """
        Change template fields. Existing instances are left as they are.

        Raises:
            NotFoundError: Unknown template
            ValueError: Unknown field, or a change that breaks validation
        """
        unknown = set(changes) - UPDATABLE_TEMPLATE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update template fields: {', '.join(sorted(unknown))}")

        template = await self._storage.get_template(template_id)
        if template is None:
            raise NotFoundError(f"Template not found: {template_id}")

        # Validate the result as a whole so FIXED/VARIABLE switches are atomic
        data = template.model_dump()
        data.update(changes)
        data["updated_at"] = datetime.utcnow()
        updated = RecurringBillTemplate.model_validate(data)

        saved = await self._storage.update_template(updated)
        await self._audit_logger.log_template_updated(
            template_id=saved.id,
            name=saved.name,
            changed_fields=sorted(changes),
        )
        return saved

    async def deactivate_template(
        self,
        template_id: UUID,
        reason: str = "deactivated by operator",
    ) -> RecurringBillTemplate:
        """Stop generating instances for a template. History is kept."""
        template = await self._storage.get_template(template_id)
        if template is None:
            raise NotFoundError(f"Template not found: {template_id}")
        if not template.active:
            return template

        template.active = False
        template.updated_at = datetime.utcnow()
        saved = await self._storage.update_template(template)
        await self._audit_logger.log_template_deactivated(
            template_id=saved.id,
            name=saved.name,
            reason=reason,
        )
        return saved

    # =========================================================================
    # SKIP RULE REGISTRY
    # =========================================================================

    async def create_rule(
        self,
        rule: Union[SkipRule, dict],
    ) -> tuple[SkipRule, ReapplyReport]:
        """
        Register a skip rule and run it over the triage queue.

        Args:
            rule: A rule model, or a plain dict with a rule_type

        Returns:
            (saved rule, result of re-running rules over the triage queue)
        """
        if isinstance(rule, dict):
            rule = SkipRuleAdapter.validate_python(rule)

        saved = await self._storage.save_rule(rule)
        await self._audit_logger.log_rule_created(
            rule_id=saved.id,
            rule_type=saved.rule_type,
            name=saved.name,
        )
        return saved, await self.reapply_rules()

    async def deactivate_rule(self, rule_id: UUID) -> SkipRule:
        rule = await self._storage.get_rule(rule_id)
        if rule is None:
            raise NotFoundError(f"Skip rule not found: {rule_id}")
        if not rule.is_active:
            return rule

        rule.is_active = False
        rule.updated_at = datetime.utcnow()
        saved = await self._storage.update_rule(rule)
        await self._audit_logger.log_rule_deactivated(rule_id=saved.id, name=saved.name)
        return saved

    def rule_from_transaction(
        self,
        tx: Transaction,
        rule_type: Optional[SkipRuleType] = None,
    ) -> SkipRule:
        """
        The skip rule an operator means when dismissing a transaction.

        Without an explicit type: vendor and amount when the merchant is
        known, otherwise the description.
        """
        if rule_type is None:
            rule_type = (
                SkipRuleType.VENDOR_AMOUNT if tx.merchant_name
                else SkipRuleType.DESCRIPTION_PATTERN
            )
        vendor = tx.merchant_name or tx.description
        reason = f"Dismissed transaction {tx.id}"

        if rule_type == SkipRuleType.ACCOUNT:
            if not tx.account_id:
                raise ValueError(f"Transaction {tx.id} has no account to skip")
            return AccountSkipRule(
                name=f"Skip account {tx.account_id}",
                reason=reason,
                financial_account_id=tx.account_id,
            )
        if not vendor:
            raise ValueError(f"Transaction {tx.id} has no merchant or description")
        if rule_type == SkipRuleType.VENDOR_AMOUNT:
            return VendorAmountSkipRule(
                name=f"Skip {vendor} ~{tx.abs_amount}",
                reason=reason,
                vendor_pattern=vendor,
                amount=tx.abs_amount,
                amount_variance=self._settings.default_skip_variance,
            )
        if rule_type == SkipRuleType.VENDOR:
            return VendorSkipRule(
                name=f"Skip {vendor}",
                reason=reason,
                vendor_pattern=vendor,
            )
        return DescriptionPatternSkipRule(
            name=f"Skip '{tx.description[:150]}'",
            reason=reason,
            description_pattern=tx.description or vendor,
        )

    async def dismiss_transaction(
        self,
        tx: Transaction,
        rule_type: Optional[SkipRuleType] = None,
    ) -> SkipRule:
        """
        Create a skip rule from a transaction and dismiss it.

        The new rule is run over the whole triage queue, so look-alike
        transactions waiting for review are dismissed too.
        """
        rule = self.rule_from_transaction(tx, rule_type)
        saved, _ = await self.create_rule(rule)
        if await self._storage.remove_from_triage(tx.id):
            await self._storage.increment_skip_count(saved.id)
        return saved


# =============================================================================
# FACTORY
# =============================================================================

def _load_roster() -> FounderRegistry:
    roster_path = get_settings().engine.roster_path
    if not roster_path:
        logger.warning("roster_not_configured")
        return FounderRegistry()
    return FounderRegistry.from_json_file(roster_path)


def create_engine_components(
    storage: Optional[ExpenseStorageInterface] = None,
    roster: Optional[FounderRegistry] = None,
    clock: Optional[Clock] = None,
    audit_storage: Optional[AuditStorageInterface] = None,
    use_database: bool = True,
    database_url: Optional[str] = None,
) -> ExpenseEngine:
    """
    Factory function to create a fully wired engine.

    Args:
        storage: Expense storage to use. Built from settings if None.
        roster: Founder roster. Loaded from settings.engine.roster_path if None.
        clock: Defaults to the system clock
        audit_storage: Where audit events persist, next to the local log
        use_database: Set to False for in-memory storage (tests, dry runs)
        database_url: Overrides settings.database.url

    Returns:
        ExpenseEngine
    """
    if storage is None:
        if use_database:
            engine = create_db_engine(database_url)
            init_db(engine)
            session_factory = create_session_factory(engine)
            storage = SqlExpenseStorage(engine, session_factory)
            if audit_storage is None:
                audit_storage = SqlAuditStorage(engine, session_factory)
        else:
            storage = InMemoryExpenseStorage()
            if audit_storage is None:
                audit_storage = InMemoryAuditStorage()

    if roster is None:
        roster = _load_roster()

    return ExpenseEngine(
        storage=storage,
        roster=roster,
        clock=clock,
        audit_logger=AuditLogger(audit_storage),
    )
