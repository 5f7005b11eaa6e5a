"""
Core Data Models for the Recurring Expense Engine

These models define the strict schemas for all data flowing through the engine.
They are designed to:
1. Enforce type-specific invariants at construction time
2. Provide clear validation error messages
3. Be serializable for storage and logging
4. Support the audit trail

DESIGN DECISION: We use Pydantic v2. A FIXED template without an amount,
or a due day outside 1-28, can never exist as an object, so the generator
and matcher never have to re-check them.
"""

import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    field_validator,
    model_validator,
)


CENT = Decimal("0.01")
PERIOD_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"

MIN_DUE_DAY = 1
MAX_DUE_DAY = 28


def to_money(value) -> Decimal:
    """Quantize a number to cents (half-up)."""
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


# =============================================================================
# ERRORS raised by model validation
# =============================================================================

class InvalidDueDay(ValueError):
    """Due day outside 1-28."""

    def __init__(self, due_day: int):
        self.due_day = due_day
        super().__init__(
            f"InvalidDueDay: due_day must be between {MIN_DUE_DAY} and "
            f"{MAX_DUE_DAY} (got {due_day})"
        )


class AmountRequired(ValueError):
    """FIXED template without a fixed amount."""

    def __init__(self, template_name: str):
        self.template_name = template_name
        super().__init__(
            f"AmountRequired: FIXED template '{template_name}' needs a fixed_amount"
        )


# =============================================================================
# ENUMS - Finite set of valid values
# =============================================================================

class AmountType(str, Enum):
    """How a template's amount is determined."""
    FIXED = "FIXED"          # Same amount every period
    VARIABLE = "VARIABLE"    # Amount comes from the matched transaction


class Frequency(str, Enum):
    """How often a template recurs."""
    MONTHLY = "MONTHLY"
    QUARTERLY = "QUARTERLY"
    ANNUAL = "ANNUAL"


class BillStatus(str, Enum):
    """
    Bill instance status.

    CRITICAL: OVERDUE is derived from the due date and is never stored.
    """
    PENDING = "PENDING"
    PAID = "PAID"
    OVERDUE = "OVERDUE"


class PaymentStatus(str, Enum):
    """Status of a single founder's share."""
    PENDING = "PENDING"
    PAID = "PAID"


# =============================================================================
# PEOPLE
# =============================================================================

class Founder(BaseModel):
    """
    A co-owner among whom bill costs are split.

    Supplied by the user directory; the engine never creates founders.
    """
    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    id: str = Field(
        ...,
        min_length=1,
        description="User id from the user directory"
    )
    name: str = Field(
        default="",
        max_length=200,
        description="Display name"
    )


# =============================================================================
# TEMPLATE REGISTRY
# =============================================================================

class RecurringBillTemplate(BaseModel):
    """
    A recurring obligation definition (e.g. "monthly rent").

    Projects into one BillInstance per recurring period.
    """
    model_config = ConfigDict(str_strip_whitespace=True, validate_assignment=True)

    # Identity
    id: UUID = Field(
        default_factory=uuid4,
        description="Unique template ID"
    )
    name: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Template name shown to operators"
    )
    vendor: str = Field(
        ...,
        min_length=1,
        max_length=200,
        description="Vendor name (free text, used for matching)"
    )
    vendor_type: str = Field(
        default="other",
        max_length=50,
        description="Classification tag (utility, rent, subscription, ...)"
    )

    # Amount policy
    amount_type: AmountType
    fixed_amount: Optional[Decimal] = Field(
        default=None,
        gt=0,
        decimal_places=2,
        description="Amount per period (FIXED templates only)"
    )

    # Schedule
    frequency: Frequency = Frequency.MONTHLY
    due_day: int = Field(
        ...,
        description="Day of the month the bill is due (1-28)"
    )

    # Matching
    email_patterns: list[str] = Field(
        default_factory=list,
        description="Lowercase substrings identifying this vendor in transactions"
    )
    payment_method: Optional[str] = Field(
        default=None,
        max_length=100,
    )

    # Lifecycle
    active: bool = True
    auto_approve: bool = Field(
        default=False,
        description="Matched transactions mark the bill PAID without review"
    )
    created_at: datetime = Field(
        default_factory=datetime.utcnow
    )
    updated_at: datetime = Field(
        default_factory=datetime.utcnow
    )

    @field_validator('due_day')
    @classmethod
    def validate_due_day(cls, v: int) -> int:
        """Days 29-31 don't exist in every month."""
        if not MIN_DUE_DAY <= v <= MAX_DUE_DAY:
            raise InvalidDueDay(v)
        return v

    @field_validator('email_patterns')
    @classmethod
    def normalize_patterns(cls, v: list[str]) -> list[str]:
        """Lowercase, strip and de-duplicate while keeping order."""
        seen: list[str] = []
        for pattern in v:
            cleaned = pattern.strip().lower()
            if cleaned and cleaned not in seen:
                seen.append(cleaned)
        return seen

    @model_validator(mode='after')
    def validate_amount_policy(self) -> 'RecurringBillTemplate':
        """FIXED needs an amount; VARIABLE must not carry one."""
        if self.amount_type == AmountType.FIXED and self.fixed_amount is None:
            raise AmountRequired(self.name)
        if self.amount_type == AmountType.VARIABLE and self.fixed_amount is not None:
            raise ValueError(
                f"VARIABLE template '{self.name}' cannot have a fixed_amount"
            )
        return self

    @property
    def match_patterns(self) -> list[str]:
        """Patterns used for matching; falls back to the vendor name."""
        if self.email_patterns:
            return list(self.email_patterns)
        return [self.vendor.strip().lower()]

    @property
    def is_fixed(self) -> bool:
        return self.amount_type == AmountType.FIXED


# =============================================================================
# BILL INSTANCES
# =============================================================================

class BillInstance(BaseModel):
    """
    One concrete, dated occurrence of a template's obligation.

    CRITICAL: At most one instance exists per (template_id, period).
    Orphan instances (template_id=None) are created manually.
    """
    model_config = ConfigDict(str_strip_whitespace=True, validate_assignment=True)

    id: UUID = Field(
        default_factory=uuid4,
        description="Unique instance ID"
    )
    template_id: Optional[UUID] = Field(
        default=None,
        description="Template this instance was projected from (None for orphans)"
    )
    vendor: str = Field(
        ...,
        min_length=1,
        max_length=200,
    )
    vendor_type: str = Field(
        default="other",
        max_length=50,
    )
    amount: Decimal = Field(
        default=Decimal("0.00"),
        ge=0,
        decimal_places=2,
        description="Bill amount (0 until a VARIABLE bill is matched)"
    )
    period: str = Field(
        ...,
        pattern=PERIOD_PATTERN,
        description="Billing period as YYYY-MM"
    )
    due_date: date

    # Payment tracking
    status: BillStatus = BillStatus.PENDING
    paid_date: Optional[date] = None
    paid_via: Optional[str] = Field(
        default=None,
        max_length=200,
    )
    notes: Optional[str] = Field(
        default=None,
        max_length=1000,
    )

    created_at: datetime = Field(
        default_factory=datetime.utcnow
    )
    updated_at: datetime = Field(
        default_factory=datetime.utcnow
    )

    @field_validator('status')
    @classmethod
    def reject_stored_overdue(cls, v: BillStatus) -> BillStatus:
        """OVERDUE is computed, never persisted."""
        if v == BillStatus.OVERDUE:
            raise ValueError("OVERDUE is derived from the due date and cannot be stored")
        return v

    @property
    def is_orphan(self) -> bool:
        return self.template_id is None

    def effective_status(self, today: date) -> BillStatus:
        """Status as shown to users, with OVERDUE derived."""
        if self.status == BillStatus.PENDING and self.due_date < today:
            return BillStatus.OVERDUE
        return self.status


class FounderPayment(BaseModel):
    """
    One founder's share of a bill instance.

    Unique per (bill_instance_id, user_id).
    """

    id: UUID = Field(
        default_factory=uuid4
    )
    bill_instance_id: UUID
    user_id: str = Field(
        ...,
        min_length=1,
    )
    amount: Decimal = Field(
        ...,
        ge=0,
        decimal_places=2,
    )
    status: PaymentStatus = PaymentStatus.PENDING
    paid_date: Optional[date] = None


# =============================================================================
# VENDOR NORMALIZATION
# =============================================================================

# Corporate suffixes that don't distinguish vendors ("Netflix Inc" == "netflix")
VENDOR_SUFFIXES = frozenset({
    "inc", "incorporated", "llc", "ltd", "limited", "co", "corp",
    "corporation", "company", "plc", "gmbh",
})


def normalize_vendor(vendor: str) -> str:
    """
    Reduce a vendor name to a comparison key.

    Lowercases, drops punctuation and corporate suffixes, then removes
    spaces: "Netflix, Inc." -> "netflix", "Duke Energy" -> "dukeenergy".
    """
    tokens = re.split(r"[^a-z0-9]+", vendor.lower())
    kept = [t for t in tokens if t and t not in VENDOR_SUFFIXES]
    if not kept:
        # A name made only of suffixes ("The Company") is still a name
        kept = [t for t in tokens if t]
    return "".join(kept)
