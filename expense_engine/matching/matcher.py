"""
Transaction Matcher

Decides what an incoming transaction is:
1. Noise, dismissed by a skip rule (transfers, refunds, internal moves)
2. A payment of a recurring bill, resolved to that bill's period instance
3. A payment of an existing one-off (orphan) bill
4. None of the above, queued for a human

DESIGN DECISION: Rule precedence is fixed and first hit wins:
ACCOUNT > VENDOR_AMOUNT > VENDOR > DESCRIPTION_PATTERN. Within one rule
type the oldest rule wins, so adding a rule never changes which rule
fires for transactions an older rule already covers.

"No match" is a normal outcome, never an exception.
"""

from decimal import Decimal
from typing import Iterable, Optional
from uuid import UUID

from expense_engine.audit import AuditLogger, create_correlation_id
from expense_engine.generation import InstanceGenerator, latest_recurrence
from expense_engine.ledger import FounderSplitLedger, SplitRoundingViolation
from expense_engine.models.bill import (
    BillInstance,
    BillStatus,
    RecurringBillTemplate,
)
from expense_engine.models.reports import ReapplyReport
from expense_engine.models.rules import (
    RULE_PRECEDENCE,
    MatchedInstance,
    MatchedTemplate,
    MatchResult,
    Skipped,
    SkipRule,
    SkipRuleType,
    Transaction,
    TransactionDirection,
    Unmatched,
)
from expense_engine.services.storage import ExpenseStorageInterface, NotFoundError


DEFAULT_TEMPLATE_TOLERANCE = Decimal("0.02")
DEFAULT_MANUAL_TOLERANCE = Decimal("0.05")


def within_tolerance(amount: Decimal, expected: Decimal, tolerance: Decimal) -> bool:
    """|amount| within a fraction of expected. Sign is ignored."""
    if expected <= 0:
        return False
    return abs(abs(amount) - expected) / expected <= tolerance


# =============================================================================
# PURE SELECTION
# =============================================================================

def find_skip_rule(tx: Transaction, rules: Iterable[SkipRule]) -> Optional[SkipRule]:
    """The rule that dismisses a transaction, by precedence then age."""
    eligible = [r for r in rules if r.is_active and r.applies_to(tx.direction)]
    for rule_type in RULE_PRECEDENCE:
        candidates = sorted(
            (r for r in eligible if r.rule_type == rule_type.value),
            key=lambda r: r.created_at,
        )
        for rule in candidates:
            if rule.matches(tx):
                return rule
    return None


def matching_pattern(tx: Transaction, template: RecurringBillTemplate) -> Optional[str]:
    """Longest of the template's patterns found in the transaction text."""
    hits = [p for p in template.match_patterns if tx.contains(p)]
    return max(hits, key=len) if hits else None


def find_template(
    tx: Transaction,
    templates: Iterable[RecurringBillTemplate],
    tolerance: Decimal = DEFAULT_TEMPLATE_TOLERANCE,
) -> Optional[RecurringBillTemplate]:
    """
    The template a transaction pays.

    FIXED templates also need the amount within tolerance. The longest
    matching pattern wins ("duke energy progress" beats "duke energy"),
    then the oldest template.
    """
    candidates: list[tuple[int, RecurringBillTemplate]] = []
    for template in templates:
        if not template.active:
            continue
        pattern = matching_pattern(tx, template)
        if pattern is None:
            continue
        if template.is_fixed and not within_tolerance(
            tx.amount, template.fixed_amount, tolerance
        ):
            continue
        candidates.append((len(pattern), template))

    if not candidates:
        return None
    candidates.sort(key=lambda c: (-c[0], c[1].created_at))
    return candidates[0][1]


def find_orphan(
    tx: Transaction,
    orphans: Iterable[BillInstance],
    tolerance: Decimal = DEFAULT_MANUAL_TOLERANCE,
) -> Optional[BillInstance]:
    """The single pending orphan instance a transaction could pay, if unique."""
    candidates = [
        instance for instance in orphans
        if instance.is_orphan
        and instance.status == BillStatus.PENDING
        and instance.period == tx.period
        and tx.contains(instance.vendor)
        and within_tolerance(tx.amount, instance.amount, tolerance)
    ]
    return candidates[0] if len(candidates) == 1 else None


# =============================================================================
# MATCHER
# =============================================================================

class TransactionMatcher:
    """
    Routes transactions to skip rules, templates or the triage queue.

    Usage:
        matcher = TransactionMatcher(storage, generator, ledger)
        result = await matcher.match(transaction)
    """

    def __init__(
        self,
        storage: ExpenseStorageInterface,
        generator: InstanceGenerator,
        ledger: FounderSplitLedger,
        template_tolerance: Decimal = DEFAULT_TEMPLATE_TOLERANCE,
        manual_tolerance: Decimal = DEFAULT_MANUAL_TOLERANCE,
        audit_logger: Optional[AuditLogger] = None,
    ):
        self._storage = storage
        self._generator = generator
        self._ledger = ledger
        self._template_tolerance = template_tolerance
        self._manual_tolerance = manual_tolerance
        self._audit_logger = audit_logger or AuditLogger()

    async def match(
        self,
        tx: Transaction,
        rules: Optional[list[SkipRule]] = None,
        templates: Optional[list[RecurringBillTemplate]] = None,
        correlation_id: Optional[UUID] = None,
    ) -> MatchResult:
        """
        Classify one transaction and apply the side effects.

        Args:
            tx: The transaction
            rules: Skip rules to consider (default: active rules in storage)
            templates: Templates to consider (default: active templates)
        """
        if rules is None:
            rules = await self._storage.list_rules(active_only=True)

        rule = find_skip_rule(tx, rules)
        if rule is not None:
            return await self._skip(tx, rule, correlation_id)

        if tx.direction == TransactionDirection.EXPENSE:
            if templates is None:
                templates = await self._storage.list_templates(active_only=True)
            template = find_template(tx, templates, self._template_tolerance)
            if template is not None:
                return await self._match_template(tx, template, correlation_id)

            orphans = await self._storage.list_instances(
                period=tx.period,
                status=BillStatus.PENDING,
                orphans_only=True,
            )
            orphan = find_orphan(tx, orphans, self._manual_tolerance)
            if orphan is not None:
                await self._storage.remove_from_triage(tx.id)
                await self._audit_logger.log_transaction_matched(
                    transaction_id=tx.id,
                    instance_id=orphan.id,
                    template_id=None,
                    period=orphan.period,
                    auto_approved=False,
                    correlation_id=correlation_id,
                )
                return MatchedInstance(transaction_id=tx.id, instance_id=orphan.id)

        reason = (
            "no rule or template matched"
            if tx.direction == TransactionDirection.EXPENSE
            else "income transaction not covered by a skip rule"
        )
        await self._storage.queue_transaction(tx)
        await self._audit_logger.log_transaction_unmatched(
            transaction_id=tx.id,
            reason=reason,
            correlation_id=correlation_id,
        )
        return Unmatched(transaction_id=tx.id, reason=reason)

    async def _skip(
        self,
        tx: Transaction,
        rule: SkipRule,
        correlation_id: Optional[UUID],
    ) -> Skipped:
        await self._storage.increment_skip_count(rule.id)
        await self._storage.remove_from_triage(tx.id)
        await self._audit_logger.log_transaction_skipped(
            transaction_id=tx.id,
            rule_id=rule.id,
            rule_type=rule.rule_type,
            correlation_id=correlation_id,
        )
        return Skipped(
            transaction_id=tx.id,
            rule_id=rule.id,
            rule_type=SkipRuleType(rule.rule_type),
        )

    async def _match_template(
        self,
        tx: Transaction,
        template: RecurringBillTemplate,
        correlation_id: Optional[UUID],
    ) -> MatchedTemplate:
        period = latest_recurrence(template, tx.period)
        instance, created = await self._generator.ensure_instance(
            template, period, correlation_id=correlation_id
        )

        if (
            not template.is_fixed
            and instance.status == BillStatus.PENDING
            and instance.amount != tx.abs_amount
        ):
            instance = await self._ledger.set_amount(
                instance.id, tx.abs_amount, correlation_id=correlation_id
            )

        auto_approved = False
        if template.auto_approve and instance.status != BillStatus.PAID:
            instance = await self._ledger.mark_all_paid(
                instance.id,
                paid_date=tx.transacted_on,
                paid_via=template.payment_method or "Auto-approved transaction",
                override=False,
                correlation_id=correlation_id,
            )
            auto_approved = True

        await self._storage.remove_from_triage(tx.id)
        await self._audit_logger.log_transaction_matched(
            transaction_id=tx.id,
            instance_id=instance.id,
            template_id=template.id,
            period=period,
            auto_approved=auto_approved,
            correlation_id=correlation_id,
        )
        return MatchedTemplate(
            transaction_id=tx.id,
            template_id=template.id,
            period=period,
            instance_id=instance.id,
            created_instance=created,
            auto_approved=auto_approved,
        )

    async def match_batch(
        self,
        transactions: Iterable[Transaction],
        correlation_id: Optional[UUID] = None,
    ) -> list[MatchResult]:
        """
        Match transactions one at a time.

        A failure on one transaction is audited and reported as Unmatched;
        the rest of the batch still runs.
        """
        correlation_id = correlation_id or create_correlation_id()
        rules = await self._storage.list_rules(active_only=True)
        results: list[MatchResult] = []

        for tx in transactions:
            try:
                results.append(await self.match(tx, rules=rules, correlation_id=correlation_id))
            except SplitRoundingViolation:
                raise
            except Exception as e:
                await self._audit_logger.log_match_failed(
                    transaction_id=tx.id,
                    error_message=str(e),
                    correlation_id=correlation_id,
                )
                results.append(Unmatched(transaction_id=tx.id, reason=f"error: {e}"))

        return results

    async def match_to_instance(
        self,
        tx: Transaction,
        instance_id: UUID,
        correlation_id: Optional[UUID] = None,
    ) -> MatchedInstance:
        """
        Operator links a transaction to a chosen bill instance.

        The bill (and every founder share) is marked PAID only when the
        amounts agree within the manual-match tolerance.
        """
        instance = await self._storage.get_instance(instance_id)
        if instance is None:
            raise NotFoundError(f"Instance not found: {instance_id}")

        marked_paid = False
        if within_tolerance(tx.amount, instance.amount, self._manual_tolerance):
            paid_via = "Bank transaction"
            if tx.account_id:
                paid_via = f"Bank transaction - {tx.account_id}"
            await self._ledger.mark_all_paid(
                instance.id,
                paid_date=tx.transacted_on,
                paid_via=paid_via,
                override=True,
                correlation_id=correlation_id,
            )
            marked_paid = True

        await self._storage.remove_from_triage(tx.id)
        await self._audit_logger.log_transaction_matched(
            transaction_id=tx.id,
            instance_id=instance.id,
            template_id=instance.template_id,
            period=instance.period,
            auto_approved=False,
            correlation_id=correlation_id,
        )
        return MatchedInstance(
            transaction_id=tx.id,
            instance_id=instance.id,
            marked_paid=marked_paid,
        )

    async def reapply_rules(
        self,
        correlation_id: Optional[UUID] = None,
    ) -> ReapplyReport:
        """
        Run the current skip rules over the triage queue.

        Only rules are applied; queued transactions no rule covers stay
        queued for review.
        """
        rules = await self._storage.list_rules(active_only=True)
        report = ReapplyReport()

        for tx in await self._storage.list_triage():
            report.processed += 1
            rule = find_skip_rule(tx, rules)
            if rule is not None:
                await self._skip(tx, rule, correlation_id)
                report.skipped += 1

        return report
