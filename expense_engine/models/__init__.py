"""
Data Models Package

This package contains all Pydantic models used in the Recurring Expense Engine.
All data flowing through the engine must conform to these schemas.
"""

from expense_engine.models.bill import (
    AmountRequired,
    AmountType,
    BillInstance,
    BillStatus,
    Founder,
    FounderPayment,
    Frequency,
    InvalidDueDay,
    PaymentStatus,
    RecurringBillTemplate,
    normalize_vendor,
    to_money,
)
from expense_engine.models.rules import (
    AccountSkipRule,
    DescriptionPatternSkipRule,
    MatchedInstance,
    MatchedTemplate,
    MatchOutcome,
    MatchResult,
    Skipped,
    SkipRule,
    SkipRuleAdapter,
    SkipRuleType,
    Transaction,
    TransactionDirection,
    TransactionType,
    Unmatched,
    VendorAmountSkipRule,
    VendorSkipRule,
)
from expense_engine.models.reports import (
    AmbiguousOrphanMatch,
    ConsolidationPlan,
    ConsolidationReport,
    ConsolidationScope,
    FounderBalance,
    GenerationError,
    GenerationReport,
    GroupFailure,
    IntegrityIssue,
    IntegrityReport,
    InstanceDetail,
    OrphanLink,
    PeriodSummary,
    ReapplyReport,
    RuleMergeGroup,
    TemplateHistory,
    TemplateMergeGroup,
    TemplateStats,
)
from expense_engine.models.audit import (
    AuditEvent,
    AuditEventBuilder,
    AuditEventType,
    AuditSeverity,
)

__all__ = [
    # Bill models
    "AmountRequired",
    "AmountType",
    "BillInstance",
    "BillStatus",
    "Founder",
    "FounderPayment",
    "Frequency",
    "InvalidDueDay",
    "PaymentStatus",
    "RecurringBillTemplate",
    "normalize_vendor",
    "to_money",
    # Rules and matching
    "AccountSkipRule",
    "DescriptionPatternSkipRule",
    "MatchedInstance",
    "MatchedTemplate",
    "MatchOutcome",
    "MatchResult",
    "Skipped",
    "SkipRule",
    "SkipRuleAdapter",
    "SkipRuleType",
    "Transaction",
    "TransactionDirection",
    "TransactionType",
    "Unmatched",
    "VendorAmountSkipRule",
    "VendorSkipRule",
    # Reports
    "AmbiguousOrphanMatch",
    "ConsolidationPlan",
    "ConsolidationReport",
    "ConsolidationScope",
    "FounderBalance",
    "GenerationError",
    "GenerationReport",
    "GroupFailure",
    "IntegrityIssue",
    "IntegrityReport",
    "InstanceDetail",
    "OrphanLink",
    "PeriodSummary",
    "ReapplyReport",
    "RuleMergeGroup",
    "TemplateHistory",
    "TemplateMergeGroup",
    "TemplateStats",
    # Audit models
    "AuditEvent",
    "AuditEventBuilder",
    "AuditEventType",
    "AuditSeverity",
]
