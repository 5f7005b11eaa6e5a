"""Consolidation package: pure planning plus transactional apply."""

from expense_engine.consolidation.planner import (
    build_plan,
    plan_orphan_links,
    plan_rule_merges,
    plan_template_merges,
    rule_key,
    template_key,
)
from expense_engine.consolidation.service import ConsolidationService

__all__ = [
    "ConsolidationService",
    "build_plan",
    "plan_orphan_links",
    "plan_rule_merges",
    "plan_template_merges",
    "rule_key",
    "template_key",
]
