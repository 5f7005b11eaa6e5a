"""
Report Models

Everything a batch job or read projection hands back to the admin
surface. Batch reports always carry per-item failures next to the
successes: one bad template or merge group never hides the rest.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, Field

from expense_engine.models.bill import (
    BillInstance,
    Founder,
    FounderPayment,
    RecurringBillTemplate,
)


# =============================================================================
# GENERATION
# =============================================================================

class GenerationError(BaseModel):
    """A template (or template/period) the generator could not process."""

    template_id: UUID
    period: Optional[str] = None
    message: str


class GenerationReport(BaseModel):
    """Result of one generation run."""

    periods: list[str] = Field(
        default_factory=list,
        description="Calendar months that were considered"
    )
    created: list[BillInstance] = Field(default_factory=list)
    skipped_existing: int = Field(
        default=0,
        ge=0,
        description="Template/period pairs that already had an instance"
    )
    errors: list[GenerationError] = Field(default_factory=list)

    @property
    def created_count(self) -> int:
        return len(self.created)


# =============================================================================
# MATCHING
# =============================================================================

class ReapplyReport(BaseModel):
    """Result of re-running skip rules over the triage queue."""

    processed: int = 0
    skipped: int = 0


# =============================================================================
# CONSOLIDATION
# =============================================================================

class ConsolidationScope(str, Enum):
    """Which maintenance passes to run."""
    RULES = "rules"              # Merge duplicate skip rules
    BILLS = "bills"              # Merge duplicate templates and link orphans
    ORPHANS = "orphans"          # Link orphan instances only
    APPLY_RULES = "apply_rules"  # Re-run skip rules over the triage queue
    ALL = "all"

    @property
    def includes_rules(self) -> bool:
        return self in (ConsolidationScope.RULES, ConsolidationScope.ALL)

    @property
    def includes_templates(self) -> bool:
        return self in (ConsolidationScope.BILLS, ConsolidationScope.ALL)

    @property
    def includes_orphans(self) -> bool:
        return self in (
            ConsolidationScope.BILLS,
            ConsolidationScope.ORPHANS,
            ConsolidationScope.ALL,
        )

    @property
    def includes_reapply(self) -> bool:
        return self in (ConsolidationScope.APPLY_RULES, ConsolidationScope.ALL)


class RuleMergeGroup(BaseModel):
    """Duplicate skip rules that collapse into one survivor."""

    key: str
    survivor_id: UUID
    duplicate_ids: list[UUID]
    merged_skip_count: int = Field(
        ...,
        ge=0,
        description="Survivor's skip_count after the merge"
    )


class TemplateMergeGroup(BaseModel):
    """Duplicate templates that collapse into one survivor."""

    key: str
    survivor_id: UUID
    duplicate_ids: list[UUID]
    instance_ids: list[UUID] = Field(
        default_factory=list,
        description="Instances to re-point from duplicates to the survivor"
    )
    folded_instance_ids: list[UUID] = Field(
        default_factory=list,
        description="Unpaid copies of a period another member already holds; deleted"
    )
    conflicting_periods: list[str] = Field(
        default_factory=list,
        description="Periods paid on several members, or held at different amounts; these block the merge"
    )

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicting_periods)


class OrphanLink(BaseModel):
    """An orphan instance with exactly one candidate template."""

    instance_id: UUID
    template_id: UUID
    period: str


class AmbiguousOrphanMatch(BaseModel):
    """
    An orphan instance with several candidate templates.

    Reported for a human to resolve, never guessed.
    """

    instance_id: UUID
    vendor: str
    period: str
    candidate_template_ids: list[UUID]


class ConsolidationPlan(BaseModel):
    """
    What consolidation WOULD do. Computed without side effects.
    """

    scope: ConsolidationScope
    rule_groups: list[RuleMergeGroup] = Field(default_factory=list)
    template_groups: list[TemplateMergeGroup] = Field(default_factory=list)
    conflicted_groups: list[TemplateMergeGroup] = Field(default_factory=list)
    orphan_links: list[OrphanLink] = Field(default_factory=list)
    ambiguous_orphans: list[AmbiguousOrphanMatch] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.rule_groups or self.template_groups or self.orphan_links)


class GroupFailure(BaseModel):
    """A merge group or link that failed and was rolled back."""

    key: str
    message: str


class ConsolidationReport(BaseModel):
    """What consolidation actually did."""

    scope: ConsolidationScope
    started_at: datetime = Field(default_factory=datetime.utcnow)

    groups_merged: int = 0
    rules_deleted: int = 0
    bills_deactivated: int = 0
    instances_migrated: int = 0
    instances_folded: int = 0
    orphans_linked: int = 0

    ambiguous_orphans: list[AmbiguousOrphanMatch] = Field(default_factory=list)
    conflicted_groups: list[TemplateMergeGroup] = Field(default_factory=list)
    failures: list[GroupFailure] = Field(default_factory=list)
    rules_reapplied: Optional[ReapplyReport] = None


# =============================================================================
# READ PROJECTIONS
# =============================================================================

class FounderBalance(BaseModel):
    """What one founder owes and has paid."""

    founder: Founder
    pending_amount: Decimal = Decimal("0.00")
    pending_count: int = 0
    paid_amount: Decimal = Decimal("0.00")
    paid_count: int = 0
    owes_for: list[str] = Field(
        default_factory=list,
        description="Vendors with an unpaid share (unique, in due-date order)"
    )


class InstanceDetail(BaseModel):
    """A bill instance with its founder rows and derived status."""

    instance: BillInstance
    effective_status: str
    payments: list[FounderPayment] = Field(default_factory=list)
    per_person_amount: Decimal = Field(
        default=Decimal("0.00"),
        description="Smallest stored founder share; leftover cents sit on the first founders"
    )


class PeriodSummary(BaseModel):
    """Dashboard totals for one billing period."""

    period: str
    founder_count: int
    pending_total: Decimal = Decimal("0.00")
    paid_total: Decimal = Decimal("0.00")
    overdue_total: Decimal = Decimal("0.00")
    bills: list[InstanceDetail] = Field(default_factory=list)

    @property
    def period_total(self) -> Decimal:
        return self.pending_total + self.paid_total


class TemplateStats(BaseModel):
    """History stats for a template (zero-amount instances excluded from amounts)."""

    total_instances: int = 0
    paid_count: int = 0
    pending_count: int = 0
    average: Decimal = Decimal("0.00")
    highest: Decimal = Decimal("0.00")
    lowest: Decimal = Decimal("0.00")
    total: Decimal = Decimal("0.00")


class TemplateHistory(BaseModel):
    """A template with every instance it has produced, newest period first."""

    template: RecurringBillTemplate
    instances: list[BillInstance] = Field(default_factory=list)
    stats: TemplateStats = Field(default_factory=TemplateStats)


# =============================================================================
# INTEGRITY
# =============================================================================

class IntegrityIssue(BaseModel):
    """A single problem found in stored ledger data."""

    check: str = Field(
        ...,
        description="Which check found it (e.g. 'split_sum', 'duplicate_period')"
    )
    entity_type: str
    entity_id: str
    message: str
    severity: str = Field(
        ...,
        pattern="^(error|warning|info)$",
    )
    suggested_fix: Optional[str] = None


class IntegrityReport(BaseModel):
    """
    Result of an integrity scan.

    IMPORTANT: Issues are reported, never silently fixed.
    """

    checked_at: datetime = Field(default_factory=datetime.utcnow)
    instances_checked: int = 0
    issues: list[IntegrityIssue] = Field(default_factory=list)

    @property
    def errors(self) -> list[IntegrityIssue]:
        return [i for i in self.issues if i.severity == "error"]

    @property
    def warnings(self) -> list[IntegrityIssue]:
        return [i for i in self.issues if i.severity == "warning"]

    @property
    def is_healthy(self) -> bool:
        return not self.errors
