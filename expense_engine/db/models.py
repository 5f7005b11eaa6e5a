"""
SQLAlchemy table definitions for the SQL storage backend.

Rows are plain storage records; the pydantic models in expense_engine.models
stay the engine's working types. Conversion lives in
expense_engine.services.storage.sql.
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class TemplateRow(Base):
    __tablename__ = "recurring_bill_templates"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    vendor: Mapped[str] = mapped_column(String(200), nullable=False)
    vendor_type: Mapped[str] = mapped_column(String(50), nullable=False, default="other")
    amount_type: Mapped[str] = mapped_column(String(10), nullable=False)
    fixed_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    frequency: Mapped[str] = mapped_column(String(10), nullable=False)
    due_day: Mapped[int] = mapped_column(Integer, nullable=False)
    email_patterns: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    payment_method: Mapped[Optional[str]] = mapped_column(String(100))
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    auto_approve: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)


class SkipRuleRow(Base):
    """All rule types share one table; type-specific columns are nullable."""

    __tablename__ = "skip_rules"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    rule_type: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    reason: Mapped[Optional[str]] = mapped_column(String(500))
    transaction_type: Mapped[str] = mapped_column(String(10), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    skip_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    financial_account_id: Mapped[Optional[str]] = mapped_column(String(100))
    vendor_pattern: Mapped[Optional[str]] = mapped_column(String(200))
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    amount_variance: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 4))
    description_pattern: Mapped[Optional[str]] = mapped_column(String(500))
    is_regex: Mapped[Optional[bool]] = mapped_column(Boolean)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)


class BillInstanceRow(Base):
    __tablename__ = "bill_instances"
    __table_args__ = (
        # NULL template ids (orphans) never collide
        UniqueConstraint("template_id", "period", name="uq_bill_instance_template_period"),
        Index("ix_bill_instances_period", "period"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    # No foreign key: dangling references are reported by the integrity checker
    template_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)
    vendor: Mapped[str] = mapped_column(String(200), nullable=False)
    vendor_type: Mapped[str] = mapped_column(String(50), nullable=False, default="other")
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    period: Mapped[str] = mapped_column(String(7), nullable=False)
    due_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(10), nullable=False)
    paid_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    paid_via: Mapped[Optional[str]] = mapped_column(String(200))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)


class FounderPaymentRow(Base):
    __tablename__ = "founder_payments"
    __table_args__ = (
        UniqueConstraint("bill_instance_id", "user_id", name="uq_founder_payment_instance_user"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    bill_instance_id: Mapped[str] = mapped_column(
        ForeignKey("bill_instances.id"), nullable=False, index=True
    )
    user_id: Mapped[str] = mapped_column(String(100), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(10), nullable=False)
    paid_date: Mapped[Optional[dt.date]] = mapped_column(Date)


class TriageTransactionRow(Base):
    """Unmatched transactions waiting for an operator."""

    __tablename__ = "triage_transactions"

    id: Mapped[str] = mapped_column(String(100), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    merchant_name: Mapped[Optional[str]] = mapped_column(String(200))
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    transacted_on: Mapped[dt.date] = mapped_column(Date, nullable=False)
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    queued_at: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False)


class AuditEventRow(Base):
    __tablename__ = "audit_events"

    event_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    timestamp: Mapped[dt.datetime] = mapped_column(DateTime, nullable=False, index=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    severity: Mapped[str] = mapped_column(String(10), nullable=False)
    entity_type: Mapped[Optional[str]] = mapped_column(String(50))
    entity_id: Mapped[Optional[str]] = mapped_column(String(100))
    correlation_id: Mapped[Optional[str]] = mapped_column(String(36), index=True)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    details: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    error_code: Mapped[Optional[str]] = mapped_column(String(100))
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    is_user_action: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
