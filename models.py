from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class PaymentStatus(str, Enum):
    scheduled = "scheduled"
    paid = "paid"
    partial = "partial"
    overdue = "overdue"
    cancelled = "cancelled"


class IncomeStatus(str, Enum):
    scheduled = "scheduled"
    received = "received"
    cancelled = "cancelled"


class Frequency(str, Enum):
    once = "once"
    weekly = "weekly"
    biweekly = "biweekly"
    monthly = "monthly"
    quarterly = "quarterly"
    annual = "annual"


class AttributionType(str, Enum):
    manual = "manual"
    automatic = "automatic"


class AuditAction(str, Enum):
    create = "create"
    update = "update"
    delete = "delete"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class SpendingCategory(Base, TimestampMixin):
    __tablename__ = "spending_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(7))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    payments: Mapped[list["Payment"]] = relationship(
        "Payment", back_populates="spending_category"
    )
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="spending_category"
    )

    __table_args__ = (
        UniqueConstraint("family_id", "name", name="uq_spending_category_family_name"),
        Index("ix_spending_categories_family_active", "family_id", "is_active"),
    )


class BankAccount(Base, TimestampMixin):
    __tablename__ = "bank_accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    institution_name: Mapped[Optional[str]] = mapped_column(String(120))
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="bank_account"
    )


class Payment(Base, TimestampMixin):
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    payee: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    attributed_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    # Day of month recurring copies aim for; short months snap to their last day.
    anchor_day: Mapped[Optional[int]] = mapped_column(Integer)
    status: Mapped[PaymentStatus] = mapped_column(
        SAEnum(PaymentStatus), nullable=False, default=PaymentStatus.scheduled
    )
    frequency: Mapped[Frequency] = mapped_column(
        SAEnum(Frequency), nullable=False, default=Frequency.once
    )
    spending_category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("spending_categories.id")
    )
    paid_date: Mapped[Optional[date]] = mapped_column(Date)
    paid_amount_cents: Mapped[Optional[int]] = mapped_column(Integer)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    spending_category: Mapped[Optional["SpendingCategory"]] = relationship(
        "SpendingCategory", back_populates="payments"
    )
    attributions: Mapped[list["PaymentAttribution"]] = relationship(
        "PaymentAttribution", back_populates="payment"
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_payments_amount_positive"),
        CheckConstraint(
            "attributed_cents >= 0 AND attributed_cents <= amount_cents",
            name="ck_payments_attributed_within_amount",
        ),
        Index("ix_payments_family_due", "family_id", "due_date"),
        Index("ix_payments_family_status_due", "family_id", "status", "due_date"),
    )

    @property
    def remaining_capacity_cents(self) -> int:
        return self.amount_cents - self.attributed_cents


class IncomeEvent(Base, TimestampMixin):
    __tablename__ = "income_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    expected_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    allocated_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    remaining_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False)
    anchor_day: Mapped[Optional[int]] = mapped_column(Integer)
    actual_date: Mapped[Optional[date]] = mapped_column(Date)
    status: Mapped[IncomeStatus] = mapped_column(
        SAEnum(IncomeStatus), nullable=False, default=IncomeStatus.scheduled
    )
    frequency: Mapped[Frequency] = mapped_column(
        SAEnum(Frequency), nullable=False, default=Frequency.once
    )

    attributions: Mapped[list["PaymentAttribution"]] = relationship(
        "PaymentAttribution", back_populates="income_event"
    )

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_income_amount_non_negative"),
        CheckConstraint("allocated_cents >= 0", name="ck_income_allocated_non_negative"),
        CheckConstraint("remaining_cents >= 0", name="ck_income_remaining_non_negative"),
        CheckConstraint(
            "allocated_cents + remaining_cents = amount_cents",
            name="ck_income_aggregates_balance",
        ),
        Index("ix_income_events_family_scheduled", "family_id", "scheduled_date"),
        Index(
            "ix_income_events_family_status_scheduled",
            "family_id",
            "status",
            "scheduled_date",
        ),
    )


class PaymentAttribution(Base, TimestampMixin):
    __tablename__ = "payment_attributions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    payment_id: Mapped[int] = mapped_column(
        ForeignKey("payments.id", ondelete="CASCADE"), nullable=False
    )
    income_event_id: Mapped[int] = mapped_column(
        ForeignKey("income_events.id", ondelete="CASCADE"), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    attribution_type: Mapped[AttributionType] = mapped_column(
        SAEnum(AttributionType), nullable=False, default=AttributionType.manual
    )
    created_by: Mapped[Optional[str]] = mapped_column(String(120))

    payment: Mapped["Payment"] = relationship("Payment", back_populates="attributions")
    income_event: Mapped["IncomeEvent"] = relationship(
        "IncomeEvent", back_populates="attributions"
    )

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_attribution_amount_positive"),
        Index("ix_attributions_family_payment", "family_id", "payment_id"),
        Index("ix_attributions_family_income", "family_id", "income_event_id"),
    )


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    bank_account_id: Mapped[int] = mapped_column(
        ForeignKey("bank_accounts.id"), nullable=False
    )
    external_id: Mapped[Optional[str]] = mapped_column(String(120))
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    description: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    merchant_name: Mapped[Optional[str]] = mapped_column(String(200))
    pending: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    provider_category: Mapped[Optional[str]] = mapped_column(String(200))
    spending_category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("spending_categories.id")
    )
    category_confidence: Mapped[float] = mapped_column(
        Float, default=0.0, nullable=False
    )
    user_categorized: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    payment_id: Mapped[Optional[int]] = mapped_column(ForeignKey("payments.id"))

    bank_account: Mapped["BankAccount"] = relationship(
        "BankAccount", back_populates="transactions"
    )
    spending_category: Mapped[Optional["SpendingCategory"]] = relationship(
        "SpendingCategory", back_populates="transactions"
    )
    payment: Mapped[Optional["Payment"]] = relationship("Payment")

    __table_args__ = (
        UniqueConstraint(
            "bank_account_id", "external_id", name="uq_transactions_account_external"
        ),
        CheckConstraint(
            "category_confidence >= 0 AND category_confidence <= 1",
            name="ck_transactions_confidence_range",
        ),
        Index("ix_transactions_account_date", "bank_account_id", "date"),
        Index("ix_transactions_category", "spending_category_id"),
    )


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    family_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    actor: Mapped[Optional[str]] = mapped_column(String(120))
    action: Mapped[AuditAction] = mapped_column(SAEnum(AuditAction), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(60), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(60), nullable=False)
    old_values_json: Mapped[Optional[str]] = mapped_column(Text)
    new_values_json: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_audit_logs_family_created", "family_id", "created_at"),
    )
