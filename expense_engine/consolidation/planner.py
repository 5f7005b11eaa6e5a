"""
Consolidation Planner

Pure functions that look at snapshots of rules, templates and instances
and decide what consolidation WOULD do. Nothing here touches storage, so
a preview and a real run always agree on the plan.

Grouping keys:
- Rules: (rule_type, transaction_type, normalized pattern, amount rounded
  to whole units). Regex patterns are kept verbatim.
- Templates: (normalized vendor, amount_type, fixed_amount, due_day)

Survivors:
- Rules: highest skip_count, then oldest
- Templates: most linked instances, then oldest
"""

from collections import defaultdict
from decimal import Decimal
from typing import Iterable, Optional
from uuid import UUID

from expense_engine.generation.periods import recurs_in
from expense_engine.models.bill import (
    BillInstance,
    BillStatus,
    RecurringBillTemplate,
    normalize_vendor,
    to_money,
)
from expense_engine.models.reports import (
    AmbiguousOrphanMatch,
    ConsolidationPlan,
    ConsolidationScope,
    OrphanLink,
    RuleMergeGroup,
    TemplateMergeGroup,
)
from expense_engine.models.rules import SkipRule


# =============================================================================
# KEYS
# =============================================================================

def rule_key(rule: SkipRule) -> str:
    return (
        f"{rule.rule_type}|{rule.transaction_type.value}"
        f"|{rule.pattern_key()}|{rule.amount_key()}"
    )


def template_key(template: RecurringBillTemplate) -> str:
    amount = to_money(template.fixed_amount) if template.fixed_amount is not None else ""
    return (
        f"{normalize_vendor(template.vendor)}|{template.amount_type.value}"
        f"|{amount}|{template.due_day}"
    )


def template_names(template: RecurringBillTemplate) -> set[str]:
    """Normalized vendor and email patterns, used to recognise orphans."""
    names = {normalize_vendor(template.vendor)}
    names.update(normalize_vendor(p) for p in template.email_patterns)
    names.discard("")
    return names


def vendor_matches(vendor: str, template: RecurringBillTemplate) -> bool:
    """Substring match, in either direction, on normalized names."""
    needle = normalize_vendor(vendor)
    if not needle:
        return False
    return any(needle in name or name in needle for name in template_names(template))


# =============================================================================
# RULES
# =============================================================================

def plan_rule_merges(rules: Iterable[SkipRule]) -> list[RuleMergeGroup]:
    """Groups of two or more active rules that do the same thing."""
    groups: dict[str, list[SkipRule]] = defaultdict(list)
    for rule in rules:
        if rule.is_active:
            groups[rule_key(rule)].append(rule)

    plan = []
    for key, members in groups.items():
        if len(members) < 2:
            continue
        members.sort(key=lambda r: (-r.skip_count, r.created_at))
        survivor, duplicates = members[0], members[1:]
        plan.append(RuleMergeGroup(
            key=key,
            survivor_id=survivor.id,
            duplicate_ids=[r.id for r in duplicates],
            merged_skip_count=sum(r.skip_count for r in members),
        ))
    return plan


# =============================================================================
# TEMPLATES
# =============================================================================

def plan_template_merges(
    templates: Iterable[RecurringBillTemplate],
    instances: Iterable[BillInstance],
    paid_instance_ids: Optional[set[UUID]] = None,
) -> tuple[list[TemplateMergeGroup], list[TemplateMergeGroup]]:
    """
    Groups of duplicate active templates.

    Once generation has run, duplicates hold an instance for the same
    periods. In each shared period one instance is kept: the only paid
    one, else the survivor's. The other copies fold into it (they are
    deleted) when they are unpaid projections with the kept amount or no
    amount yet. A period with two paid copies, or an unpaid copy with a
    different amount, is a conflict.

    Args:
        paid_instance_ids: Instances with at least one PAID founder row

    Returns:
        (mergeable groups, conflicted groups). Conflicted groups are not
        merged: that needs a person to decide which bill is real.
    """
    paid_instance_ids = paid_instance_ids or set()
    instances_by_template: dict[UUID, list[BillInstance]] = defaultdict(list)
    for instance in instances:
        if instance.template_id is not None:
            instances_by_template[instance.template_id].append(instance)

    groups: dict[str, list[RecurringBillTemplate]] = defaultdict(list)
    for template in templates:
        if template.active:
            groups[template_key(template)].append(template)

    mergeable, conflicted = [], []
    for key, members in groups.items():
        if len(members) < 2:
            continue
        members.sort(key=lambda t: (-len(instances_by_template[t.id]), t.created_at))
        survivor, duplicates = members[0], members[1:]

        # Survivor first, so it keeps the period when nothing is paid
        by_period: dict[str, list[BillInstance]] = defaultdict(list)
        for member in members:
            for instance in instances_by_template[member.id]:
                by_period[instance.period].append(instance)

        folded: list[UUID] = []
        conflicts: list[str] = []
        for period, holders in by_period.items():
            if len(holders) < 2:
                continue
            paid = [i for i in holders if _is_settled(i, paid_instance_ids)]
            if len(paid) > 1:
                conflicts.append(period)
                continue
            kept = paid[0] if paid else holders[0]
            others = [i for i in holders if i.id != kept.id]
            if any(i.amount not in (kept.amount, Decimal("0.00")) for i in others):
                conflicts.append(period)
                continue
            folded.extend(i.id for i in others)

        folded_ids = set(folded)
        group = TemplateMergeGroup(
            key=key,
            survivor_id=survivor.id,
            duplicate_ids=[t.id for t in duplicates],
            instance_ids=[
                i.id for t in duplicates for i in instances_by_template[t.id]
                if i.id not in folded_ids
            ],
            folded_instance_ids=folded,
            conflicting_periods=sorted(conflicts),
        )
        (conflicted if group.has_conflicts else mergeable).append(group)

    return mergeable, conflicted


def _is_settled(instance: BillInstance, paid_instance_ids: set[UUID]) -> bool:
    return instance.status == BillStatus.PAID or instance.id in paid_instance_ids


# =============================================================================
# ORPHANS
# =============================================================================

def plan_orphan_links(
    instances: Iterable[BillInstance],
    templates: Iterable[RecurringBillTemplate],
    redirects: Optional[dict[UUID, UUID]] = None,
) -> tuple[list[OrphanLink], list[AmbiguousOrphanMatch]]:
    """
    Decide which orphan instances can be linked to a template.

    An orphan links only when exactly one active template matches its
    vendor, recurs in its period and has no instance there yet.

    Args:
        redirects: duplicate template id -> survivor id, for template
            merges planned in the same run
    """
    redirects = redirects or {}
    instances = list(instances)
    candidates_pool = [
        t for t in templates if t.active and t.id not in redirects
    ]

    occupied: set[tuple[UUID, str]] = set()
    for instance in instances:
        if instance.template_id is not None:
            template_id = redirects.get(instance.template_id, instance.template_id)
            occupied.add((template_id, instance.period))

    links, ambiguous = [], []
    orphans = sorted(
        (i for i in instances if i.is_orphan),
        key=lambda i: (i.period, i.created_at),
    )
    for orphan in orphans:
        candidates = [
            t for t in candidates_pool
            if vendor_matches(orphan.vendor, t)
            and recurs_in(t, orphan.period)
            and (t.id, orphan.period) not in occupied
        ]
        if len(candidates) == 1:
            template = candidates[0]
            links.append(OrphanLink(
                instance_id=orphan.id,
                template_id=template.id,
                period=orphan.period,
            ))
            occupied.add((template.id, orphan.period))
        elif len(candidates) > 1:
            ambiguous.append(AmbiguousOrphanMatch(
                instance_id=orphan.id,
                vendor=orphan.vendor,
                period=orphan.period,
                candidate_template_ids=[t.id for t in candidates],
            ))

    return links, ambiguous


# =============================================================================
# FULL PLAN
# =============================================================================

def build_plan(
    scope: ConsolidationScope,
    rules: Iterable[SkipRule],
    templates: Iterable[RecurringBillTemplate],
    instances: Iterable[BillInstance],
    paid_instance_ids: Optional[set[UUID]] = None,
) -> ConsolidationPlan:
    """Everything consolidation would do for a scope."""
    templates = list(templates)
    instances = list(instances)
    plan = ConsolidationPlan(scope=scope)

    if scope.includes_rules:
        plan.rule_groups = plan_rule_merges(rules)

    redirects: dict[UUID, UUID] = {}
    if scope.includes_templates:
        plan.template_groups, plan.conflicted_groups = plan_template_merges(
            templates, instances, paid_instance_ids
        )
        for group in plan.template_groups:
            for duplicate_id in group.duplicate_ids:
                redirects[duplicate_id] = group.survivor_id

    if scope.includes_orphans:
        plan.orphan_links, plan.ambiguous_orphans = plan_orphan_links(
            instances, templates, redirects
        )

    return plan
