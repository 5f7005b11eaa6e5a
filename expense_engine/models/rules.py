"""
Skip Rules, Transactions and Match Results

Skip rules auto-dismiss transactions that are not real bills (transfers,
internal moves, refunds). Each rule type is its own model with its own
required fields; the `SkipRule` union is discriminated on `rule_type`, so a
VENDOR_AMOUNT rule without an amount simply cannot be constructed.

DESIGN DECISION: Matching logic lives on the rule models themselves.
The matcher only decides ORDER (precedence); each rule decides whether
it fires.
"""

import re
from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    model_validator,
)

from expense_engine.models.bill import normalize_vendor


# =============================================================================
# ENUMS
# =============================================================================

class SkipRuleType(str, Enum):
    """Supported skip rule kinds."""
    ACCOUNT = "ACCOUNT"
    VENDOR = "VENDOR"
    VENDOR_AMOUNT = "VENDOR_AMOUNT"
    DESCRIPTION_PATTERN = "DESCRIPTION_PATTERN"


# First hit wins, evaluated in this order
RULE_PRECEDENCE: tuple[SkipRuleType, ...] = (
    SkipRuleType.ACCOUNT,
    SkipRuleType.VENDOR_AMOUNT,
    SkipRuleType.VENDOR,
    SkipRuleType.DESCRIPTION_PATTERN,
)


class TransactionDirection(str, Enum):
    """Money in or money out."""
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"


class TransactionType(str, Enum):
    """Which transaction directions a rule applies to."""
    INCOME = "INCOME"
    EXPENSE = "EXPENSE"
    BOTH = "BOTH"


class MatchOutcome(str, Enum):
    """What the matcher decided for a transaction."""
    SKIPPED = "SKIPPED"
    MATCHED_INSTANCE = "MATCHED_INSTANCE"
    MATCHED_TEMPLATE = "MATCHED_TEMPLATE"
    UNMATCHED = "UNMATCHED"


# =============================================================================
# TRANSACTIONS (supplied by the ingestion pipeline)
# =============================================================================

class Transaction(BaseModel):
    """
    An incoming financial signal: a bank transaction or an amount parsed
    from a bill email.

    Amount sign is ignored for comparisons; banks disagree on it.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str = Field(
        ...,
        min_length=1,
        description="Identifier assigned by the ingestion pipeline"
    )
    account_id: str = Field(
        default="",
        description="Financial account the transaction came from"
    )
    description: str = Field(
        default="",
        max_length=1000,
    )
    merchant_name: Optional[str] = Field(
        default=None,
        max_length=200,
    )
    amount: Decimal
    transacted_on: date = Field(
        ...,
        description="Date the transaction posted"
    )
    direction: TransactionDirection = TransactionDirection.EXPENSE

    @property
    def abs_amount(self) -> Decimal:
        return abs(self.amount)

    @property
    def searchable_texts(self) -> list[str]:
        """Lowercased description and merchant name."""
        texts = [self.description.lower()]
        if self.merchant_name:
            texts.append(self.merchant_name.lower())
        return texts

    def contains(self, pattern: str) -> bool:
        """Case-insensitive substring match on description or merchant."""
        needle = pattern.strip().lower()
        if not needle:
            return False
        return any(needle in text for text in self.searchable_texts)

    @property
    def period(self) -> str:
        return f"{self.transacted_on.year:04d}-{self.transacted_on.month:02d}"


# =============================================================================
# SKIP RULES - one model per rule type
# =============================================================================

class SkipRuleBase(BaseModel, ABC):
    """Fields shared by every skip rule. Only the concrete rule types are built."""
    model_config = ConfigDict(str_strip_whitespace=True)

    id: UUID = Field(
        default_factory=uuid4
    )
    name: str = Field(
        default="",
        max_length=200,
    )
    reason: Optional[str] = Field(
        default=None,
        max_length=500,
    )
    transaction_type: TransactionType = TransactionType.BOTH
    is_active: bool = True
    skip_count: int = Field(
        default=0,
        ge=0,
        description="Times this rule has dismissed a transaction"
    )
    created_at: datetime = Field(
        default_factory=datetime.utcnow
    )
    updated_at: datetime = Field(
        default_factory=datetime.utcnow
    )

    def applies_to(self, direction: TransactionDirection) -> bool:
        if self.transaction_type == TransactionType.BOTH:
            return True
        return self.transaction_type.value == direction.value

    @abstractmethod
    def matches(self, tx: Transaction) -> bool:
        pass

    @abstractmethod
    def pattern_key(self) -> str:
        """Normalized pattern used to group duplicate rules."""
        pass

    def amount_key(self) -> str:
        return ""


class AccountSkipRule(SkipRuleBase):
    """Skip everything from one financial account (e.g. a savings transfer account)."""

    rule_type: Literal["ACCOUNT"] = "ACCOUNT"
    financial_account_id: str = Field(
        ...,
        min_length=1,
    )

    def matches(self, tx: Transaction) -> bool:
        return self.financial_account_id == tx.account_id

    def pattern_key(self) -> str:
        return self.financial_account_id


class VendorSkipRule(SkipRuleBase):
    """Skip any transaction mentioning a vendor."""

    rule_type: Literal["VENDOR"] = "VENDOR"
    vendor_pattern: str = Field(
        ...,
        min_length=1,
        max_length=200,
    )

    def matches(self, tx: Transaction) -> bool:
        return tx.contains(self.vendor_pattern)

    def pattern_key(self) -> str:
        return normalize_vendor(self.vendor_pattern)


class VendorAmountSkipRule(SkipRuleBase):
    """
    Skip a vendor only around a known amount.

    amount_variance is a fraction: 0.05 accepts +/-5% of `amount`.
    """

    rule_type: Literal["VENDOR_AMOUNT"] = "VENDOR_AMOUNT"
    vendor_pattern: str = Field(
        ...,
        min_length=1,
        max_length=200,
    )
    amount: Decimal = Field(
        ...,
        gt=0,
    )
    amount_variance: Decimal = Field(
        default=Decimal("0.05"),
        ge=0,
        le=1,
    )

    def amount_within_variance(self, amount: Decimal) -> bool:
        return abs(abs(amount) - self.amount) / self.amount <= self.amount_variance

    def matches(self, tx: Transaction) -> bool:
        return tx.contains(self.vendor_pattern) and self.amount_within_variance(tx.amount)

    def pattern_key(self) -> str:
        return normalize_vendor(self.vendor_pattern)

    def amount_key(self) -> str:
        # Rounded to whole currency units so 15.99 and 16.00 group together
        return str(self.amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class DescriptionPatternSkipRule(SkipRuleBase):
    """Skip by substring (or regex) on the full description."""

    rule_type: Literal["DESCRIPTION_PATTERN"] = "DESCRIPTION_PATTERN"
    description_pattern: str = Field(
        ...,
        min_length=1,
        max_length=500,
    )
    is_regex: bool = False

    @model_validator(mode='after')
    def validate_regex(self) -> 'DescriptionPatternSkipRule':
        """A regex rule that doesn't compile would never fire."""
        if self.is_regex:
            try:
                re.compile(self.description_pattern)
            except re.error as e:
                raise ValueError(f"Invalid description regex: {e}") from e
        return self

    def matches(self, tx: Transaction) -> bool:
        if self.is_regex:
            return any(
                re.search(self.description_pattern, text, re.IGNORECASE)
                for text in tx.searchable_texts
            )
        return tx.contains(self.description_pattern)

    def pattern_key(self) -> str:
        if self.is_regex:
            # Case and spacing are significant inside a regex
            return f"re:{self.description_pattern}"
        return " ".join(self.description_pattern.lower().split())


SkipRule = Annotated[
    Union[
        AccountSkipRule,
        VendorSkipRule,
        VendorAmountSkipRule,
        DescriptionPatternSkipRule,
    ],
    Field(discriminator="rule_type"),
]

# Parses plain dicts (storage rows, CLI input) into the right rule model
SkipRuleAdapter: TypeAdapter[SkipRule] = TypeAdapter(SkipRule)


# =============================================================================
# MATCH RESULTS
# =============================================================================

class Skipped(BaseModel):
    """A skip rule dismissed the transaction."""

    outcome: Literal["SKIPPED"] = "SKIPPED"
    transaction_id: str
    rule_id: UUID
    rule_type: SkipRuleType


class MatchedInstance(BaseModel):
    """The transaction pays an existing bill instance."""

    outcome: Literal["MATCHED_INSTANCE"] = "MATCHED_INSTANCE"
    transaction_id: str
    instance_id: UUID
    marked_paid: bool = False


class MatchedTemplate(BaseModel):
    """The transaction belongs to a recurring template's period."""

    outcome: Literal["MATCHED_TEMPLATE"] = "MATCHED_TEMPLATE"
    transaction_id: str
    template_id: UUID
    period: str
    instance_id: UUID
    created_instance: bool = False
    auto_approved: bool = False


class Unmatched(BaseModel):
    """Nothing fired; the transaction needs a human."""

    outcome: Literal["UNMATCHED"] = "UNMATCHED"
    transaction_id: str
    reason: str = "no rule or template matched"


MatchResult = Annotated[
    Union[Skipped, MatchedInstance, MatchedTemplate, Unmatched],
    Field(discriminator="outcome"),
]
