from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Optional, Sequence

from sqlalchemy import exists, func, or_, select, update
from sqlalchemy.orm import Session, aliased, joinedload

from rapidfuzz.distance import Levenshtein

from categorization import (
    DEFAULT_RULE_SET,
    CategorizableTransaction,
    CategoryAssignment,
    CategoryFrequency,
    CategoryRuleSet,
    CategorySnapshot,
    CategorySuggestion,
    categorize_transaction,
    generate_category_suggestions,
    plan_category_updates,
)
from config import get_settings
from database import atomic
from errors import (
    CapacityExceededError,
    ConflictError,
    IncomeCapacityExceededError,
    NotFoundError,
    ValidationError,
)
from matching import (
    MatchProposal,
    PaymentSnapshot,
    TransactionSnapshot,
    match_transactions_to_payments,
)
from models import (
    AttributionType,
    AuditAction,
    AuditLog,
    BankAccount,
    IncomeEvent,
    IncomeStatus,
    Payment,
    PaymentAttribution,
    PaymentStatus,
    SpendingCategory,
    Transaction,
)
from money import (
    MoneyLike,
    cents_to_decimal,
    positive_cents,
    split_proportionally,
    to_cents,
)
from periods import resolve_window
from recurrence import calculate_next_date, local_today
from schemas import (
    BankTransactionIn,
    IncomeEventIn,
    PaymentIn,
    SpendingCategoryIn,
)

logger = logging.getLogger(__name__)

# Below this a stored category still counts as "uncategorized" for the sweep.
CONFIDENT_CATEGORY = 0.8
HIGH_CONFIDENCE_MATCH = 0.8
MAX_BATCH_SIZE = 100
SUGGESTION_LIMIT = 10


def get_current_family_id() -> int:
    return 1


def record_audit(
    session: Session,
    family_id: int,
    entity_type: str,
    entity_id: int,
    action: AuditAction,
    *,
    actor: Optional[str] = None,
    old_values: Optional[dict[str, Any]] = None,
    new_values: Optional[dict[str, Any]] = None,
) -> None:
    session.add(
        AuditLog(
            family_id=family_id,
            actor=actor,
            action=action,
            entity_type=entity_type,
            entity_id=str(entity_id),
            old_values_json=(
                json.dumps(old_values, default=str, sort_keys=True)
                if old_values is not None
                else None
            ),
            new_values_json=(
                json.dumps(new_values, default=str, sort_keys=True)
                if new_values is not None
                else None
            ),
        )
    )


def _attribution_values(attribution: PaymentAttribution) -> dict[str, Any]:
    return {
        "payment_id": attribution.payment_id,
        "income_event_id": attribution.income_event_id,
        "amount_cents": attribution.amount_cents,
        "attribution_type": attribution.attribution_type.value,
    }


def _coerce_attribution_type(value: AttributionType | str) -> AttributionType:
    try:
        return AttributionType(value)
    except ValueError as exc:
        raise ValidationError(f"Unknown attribution type: {value!r}") from exc


@dataclass
class AttributionChange:
    attribution: PaymentAttribution
    previous_amount: Decimal
    new_amount: Decimal
    previous_type: AttributionType
    new_type: AttributionType


@dataclass
class CapacityCheck:
    is_valid: bool
    errors: list[str]
    total_proposed_cents: int
    payment_amount_cents: int


@dataclass
class IncomeSuggestion:
    income_event_id: int
    name: str
    scheduled_date: date
    available_cents: int
    suggested_cents: int
    confidence: str


@dataclass
class AttributionLine:
    attribution_id: int
    counterpart_id: int
    counterpart_name: str
    counterpart_date: date
    amount_cents: int
    attribution_type: AttributionType
    percentage: float


@dataclass
class AttributionSummary:
    total_cents: int
    attributed_cents: int
    remaining_cents: int
    lines: list[AttributionLine] = field(default_factory=list)


@dataclass
class MatchReport:
    proposals: list[MatchProposal]
    total_transactions: int
    total_matches: int
    high_confidence_matches: int


@dataclass
class CategorizationRun:
    categorized_count: int
    assignments: list[CategoryAssignment]


@dataclass
class BatchCategorizeResult:
    updated_ids: list[int]
    errors: list[dict[str, Any]]


@dataclass
class IngestResult:
    created: int
    updated: int
    transactions: list[Transaction]


class SpendingCategoryService:
    def __init__(self, session: Session, family_id: Optional[int] = None) -> None:
        self.session = session
        self.family_id = family_id or get_current_family_id()

    def list_active(self) -> list[SpendingCategory]:
        stmt = (
            select(SpendingCategory)
            .where(
                SpendingCategory.family_id == self.family_id,
                SpendingCategory.is_active.is_(True),
            )
            .order_by(SpendingCategory.name, SpendingCategory.id)
        )
        return list(self.session.scalars(stmt).all())

    def snapshots(self) -> list[CategorySnapshot]:
        return [CategorySnapshot.from_model(c) for c in self.list_active()]

    def get(self, category_id: int, *, active_only: bool = False) -> SpendingCategory:
        category = self.session.get(SpendingCategory, category_id)
        if not category or category.family_id != self.family_id:
            raise NotFoundError("Spending category not found")
        if active_only and not category.is_active:
            raise NotFoundError("Spending category is not active")
        return category

    def create(self, data: SpendingCategoryIn) -> SpendingCategory:
        name = data.name.strip()
        if not name:
            raise ValidationError("Category name is required")
        existing = self.session.scalar(
            select(SpendingCategory).where(
                SpendingCategory.family_id == self.family_id,
                func.lower(SpendingCategory.name) == name.lower(),
            )
        )
        if existing:
            if existing.is_active:
                raise ValidationError("Category already exists")
            existing.is_active = True
            existing.color = data.color or existing.color
            self.session.commit()
            self.session.refresh(existing)
            return existing

        category = SpendingCategory(
            family_id=self.family_id, name=name, color=data.color, is_active=True
        )
        self.session.add(category)
        self.session.commit()
        self.session.refresh(category)
        return category

    def deactivate(self, category_id: int) -> None:
        category = self.get(category_id)
        if not category.is_active:
            return
        category.is_active = False
        self.session.commit()

    def find_by_name(self, name: str) -> Optional[SpendingCategory]:
        """Exact, then case-insensitive, then single-edit fuzzy lookup.

        Raises ``ValidationError`` when the fuzzy step finds several equally
        close categories.
        """
        raw = (name or "").strip()
        if not raw:
            return None
        active = self.list_active()
        for category in active:
            if category.name == raw:
                return category
        lowered = raw.lower()
        for category in active:
            if category.name.lower() == lowered:
                return category

        best_distance: Optional[int] = None
        best: list[SpendingCategory] = []
        for category in active:
            dist = int(Levenshtein.distance(lowered, category.name.strip().lower()))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = [category]
            elif dist == best_distance:
                best.append(category)

        if best_distance is None or best_distance > 1:
            return None
        if len(best) > 1:
            options = ", ".join(sorted({c.name for c in best}))
            raise ValidationError(f"Category '{raw}' is ambiguous; matches: {options}")
        return best[0]


class BankAccountService:
    def __init__(self, session: Session, family_id: Optional[int] = None) -> None:
        self.session = session
        self.family_id = family_id or get_current_family_id()

    def create(self, name: str, institution_name: Optional[str] = None) -> BankAccount:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Account name is required")
        account = BankAccount(
            family_id=self.family_id, name=name, institution_name=institution_name
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def get(self, account_id: int) -> BankAccount:
        account = self.session.get(BankAccount, account_id)
        if not account or account.family_id != self.family_id or account.deleted_at:
            raise NotFoundError("Bank account not found")
        return account

    def list(self) -> list[BankAccount]:
        stmt = (
            select(BankAccount)
            .where(
                BankAccount.family_id == self.family_id,
                BankAccount.deleted_at.is_(None),
            )
            .order_by(BankAccount.name, BankAccount.id)
        )
        return list(self.session.scalars(stmt).all())


class PaymentService:
    def __init__(self, session: Session, family_id: Optional[int] = None) -> None:
        self.session = session
        self.family_id = family_id or get_current_family_id()

    def get(self, payment_id: int) -> Payment:
        payment = self.session.get(Payment, payment_id)
        if not payment or payment.family_id != self.family_id:
            raise NotFoundError("Payment not found")
        return payment

    def list(
        self,
        *,
        status: Optional[PaymentStatus] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> list[Payment]:
        stmt = select(Payment).where(Payment.family_id == self.family_id)
        if status is not None:
            stmt = stmt.where(Payment.status == status)
        if start is not None:
            stmt = stmt.where(Payment.due_date >= start)
        if end is not None:
            stmt = stmt.where(Payment.due_date <= end)
        stmt = stmt.order_by(Payment.due_date, Payment.id)
        return list(self.session.scalars(stmt).all())

    def create(self, data: PaymentIn, *, actor: Optional[str] = None) -> Payment:
        amount_cents = positive_cents(data.amount, "Payment amount")
        if data.spending_category_id is not None:
            SpendingCategoryService(self.session, self.family_id).get(
                data.spending_category_id, active_only=True
            )
        payment = Payment(
            family_id=self.family_id,
            payee=data.payee.strip(),
            amount_cents=amount_cents,
            attributed_cents=0,
            due_date=data.due_date,
            anchor_day=data.due_date.day,
            status=PaymentStatus.scheduled,
            frequency=data.frequency,
            spending_category_id=data.spending_category_id,
            notes=data.notes,
        )
        with atomic(self.session):
            self.session.add(payment)
            self.session.flush()
            record_audit(
                self.session,
                self.family_id,
                "payment",
                payment.id,
                AuditAction.create,
                actor=actor,
                new_values={"payee": payment.payee, "amount_cents": amount_cents},
            )
        self.session.refresh(payment)
        return payment

    def mark_paid(
        self,
        payment_id: int,
        paid_amount: Optional[MoneyLike] = None,
        paid_date: Optional[date] = None,
        *,
        actor: Optional[str] = None,
    ) -> Payment:
        with atomic(self.session):
            payment = self._mark_paid(payment_id, paid_amount, paid_date, actor)
        self.session.refresh(payment)
        return payment

    def _mark_paid(
        self,
        payment_id: int,
        paid_amount: Optional[MoneyLike],
        paid_date: Optional[date],
        actor: Optional[str],
    ) -> Payment:
        payment = self._get_for_update(payment_id)
        if payment.status == PaymentStatus.cancelled:
            raise ValidationError("Cannot mark a cancelled payment as paid")
        if payment.status == PaymentStatus.paid:
            raise ValidationError("Payment is already marked as paid")

        paid_cents = (
            positive_cents(paid_amount, "Paid amount")
            if paid_amount is not None
            else payment.amount_cents
        )
        old_status = payment.status
        payment.status = (
            PaymentStatus.paid
            if paid_cents >= payment.amount_cents
            else PaymentStatus.partial
        )
        payment.paid_amount_cents = paid_cents
        payment.paid_date = paid_date or local_today()

        next_payment = None
        if payment.status == PaymentStatus.paid:
            next_payment = self._create_next_occurrence(payment)
        record_audit(
            self.session,
            self.family_id,
            "payment",
            payment.id,
            AuditAction.update,
            actor=actor,
            old_values={"status": old_status.value},
            new_values={
                "status": payment.status.value,
                "paid_amount_cents": paid_cents,
                "paid_date": payment.paid_date,
            },
        )
        logger.info(
            f"payment_mark_paid: id={payment.id} status={payment.status.value} "
            f"paid_amount_cents={paid_cents} "
            f"next_id={next_payment.id if next_payment else None}"
        )
        return payment

    def revert_paid(self, payment_id: int, *, actor: Optional[str] = None) -> Payment:
        with atomic(self.session):
            payment = self._get_for_update(payment_id)
            if payment.status not in (PaymentStatus.paid, PaymentStatus.partial):
                raise ValidationError("Payment is not marked as paid")
            old_status = payment.status
            payment.status = (
                PaymentStatus.overdue
                if payment.due_date < local_today()
                else PaymentStatus.scheduled
            )
            payment.paid_date = None
            payment.paid_amount_cents = None
            record_audit(
                self.session,
                self.family_id,
                "payment",
                payment.id,
                AuditAction.update,
                actor=actor,
                old_values={"status": old_status.value},
                new_values={"status": payment.status.value},
            )
        self.session.refresh(payment)
        logger.info(f"payment_revert_paid: id={payment.id} status={payment.status.value}")
        return payment

    def _get_for_update(self, payment_id: int) -> Payment:
        payment = self.session.scalar(
            select(Payment)
            .where(Payment.id == payment_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if not payment or payment.family_id != self.family_id:
            raise NotFoundError("Payment not found")
        return payment

    def _create_next_occurrence(self, payment: Payment) -> Optional[Payment]:
        next_due = calculate_next_date(
            payment.frequency, payment.due_date, anchor_day=payment.anchor_day
        )
        if next_due is None:
            return None
        existing = self.session.scalar(
            select(Payment.id).where(
                Payment.family_id == self.family_id,
                Payment.payee == payment.payee,
                Payment.due_date == next_due,
                Payment.frequency == payment.frequency,
            )
        )
        if existing:
            return None
        next_payment = Payment(
            family_id=self.family_id,
            payee=payment.payee,
            amount_cents=payment.amount_cents,
            attributed_cents=0,
            due_date=next_due,
            anchor_day=payment.anchor_day,
            status=PaymentStatus.scheduled,
            frequency=payment.frequency,
            spending_category_id=payment.spending_category_id,
            notes=payment.notes,
        )
        self.session.add(next_payment)
        self.session.flush()
        return next_payment


class IncomeEventService:
    def __init__(self, session: Session, family_id: Optional[int] = None) -> None:
        self.session = session
        self.family_id = family_id or get_current_family_id()

    def get(self, income_event_id: int) -> IncomeEvent:
        income = self.session.get(IncomeEvent, income_event_id)
        if not income or income.family_id != self.family_id:
            raise NotFoundError("Income event not found")
        return income

    def list(
        self,
        *,
        status: Optional[IncomeStatus] = None,
        start: Optional[date] = None,
        end: Optional[date] = None,
    ) -> list[IncomeEvent]:
        stmt = select(IncomeEvent).where(IncomeEvent.family_id == self.family_id)
        if status is not None:
            stmt = stmt.where(IncomeEvent.status == status)
        if start is not None:
            stmt = stmt.where(IncomeEvent.scheduled_date >= start)
        if end is not None:
            stmt = stmt.where(IncomeEvent.scheduled_date <= end)
        stmt = stmt.order_by(IncomeEvent.scheduled_date, IncomeEvent.id)
        return list(self.session.scalars(stmt).all())

    def create(self, data: IncomeEventIn, *, actor: Optional[str] = None) -> IncomeEvent:
        amount_cents = to_cents(data.amount)
        if amount_cents < 0:
            raise ValidationError("Income amount must not be negative")
        income = IncomeEvent(
            family_id=self.family_id,
            name=data.name.strip(),
            amount_cents=amount_cents,
            expected_amount_cents=amount_cents,
            allocated_cents=0,
            remaining_cents=amount_cents,
            scheduled_date=data.scheduled_date,
            anchor_day=data.scheduled_date.day,
            status=IncomeStatus.scheduled,
            frequency=data.frequency,
        )
        with atomic(self.session):
            self.session.add(income)
            self.session.flush()
            record_audit(
                self.session,
                self.family_id,
                "income_event",
                income.id,
                AuditAction.create,
                actor=actor,
                new_values={"name": income.name, "amount_cents": amount_cents},
            )
        self.session.refresh(income)
        return income

    def mark_received(
        self,
        income_event_id: int,
        actual_amount: Optional[MoneyLike] = None,
        actual_date: Optional[date] = None,
        *,
        actor: Optional[str] = None,
    ) -> IncomeEvent:
        with atomic(self.session):
            income = self._get_for_update(income_event_id)
            if income.status == IncomeStatus.received:
                raise ValidationError("Income event is already marked as received")
            if income.status == IncomeStatus.cancelled:
                raise ValidationError("Cannot receive a cancelled income event")

            actual_cents = (
                to_cents(actual_amount) if actual_amount is not None else income.amount_cents
            )
            if actual_cents < 0:
                raise ValidationError("Received amount must not be negative")
            if actual_cents < income.allocated_cents:
                raise ValidationError(
                    f"Received amount {cents_to_decimal(actual_cents)} is below the "
                    f"{cents_to_decimal(income.allocated_cents)} already attributed"
                )

            old_amount = income.amount_cents
            received_on = actual_date or local_today()
            # Remaining is derived in SQL so a concurrent attribution cannot be lost.
            result = self.session.execute(
                update(IncomeEvent)
                .where(
                    IncomeEvent.id == income.id,
                    IncomeEvent.status == IncomeStatus.scheduled,
                    IncomeEvent.allocated_cents <= actual_cents,
                )
                .values(
                    amount_cents=actual_cents,
                    remaining_cents=actual_cents - IncomeEvent.allocated_cents,
                    status=IncomeStatus.received,
                    actual_date=received_on,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError("Income event changed while it was being received")
            self.session.refresh(income)

            next_income = self._create_next_occurrence(income)
            record_audit(
                self.session,
                self.family_id,
                "income_event",
                income.id,
                AuditAction.update,
                actor=actor,
                old_values={"status": IncomeStatus.scheduled.value, "amount_cents": old_amount},
                new_values={
                    "status": IncomeStatus.received.value,
                    "amount_cents": actual_cents,
                    "actual_date": received_on,
                },
            )
        self.session.refresh(income)
        logger.info(
            f"income_mark_received: id={income.id} amount_cents={income.amount_cents} "
            f"remaining_cents={income.remaining_cents} "
            f"next_id={next_income.id if next_income else None}"
        )
        return income

    def cancel(self, income_event_id: int, *, actor: Optional[str] = None) -> IncomeEvent:
        with atomic(self.session):
            income = self._get_for_update(income_event_id)
            if income.status != IncomeStatus.scheduled:
                raise ValidationError("Only scheduled income events can be cancelled")
            result = self.session.execute(
                update(IncomeEvent)
                .where(
                    IncomeEvent.id == income.id,
                    IncomeEvent.status == IncomeStatus.scheduled,
                    IncomeEvent.allocated_cents == 0,
                )
                .values(status=IncomeStatus.cancelled)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError("Income event has attributions and cannot be cancelled")
            record_audit(
                self.session,
                self.family_id,
                "income_event",
                income.id,
                AuditAction.update,
                actor=actor,
                old_values={"status": IncomeStatus.scheduled.value},
                new_values={"status": IncomeStatus.cancelled.value},
            )
        self.session.refresh(income)
        logger.info(f"income_cancel: id={income.id}")
        return income

    def _get_for_update(self, income_event_id: int) -> IncomeEvent:
        income = self.session.scalar(
            select(IncomeEvent)
            .where(IncomeEvent.id == income_event_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if not income or income.family_id != self.family_id:
            raise NotFoundError("Income event not found")
        return income

    def _create_next_occurrence(self, income: IncomeEvent) -> Optional[IncomeEvent]:
        next_date = calculate_next_date(
            income.frequency, income.scheduled_date, anchor_day=income.anchor_day
        )
        if next_date is None:
            return None
        existing = self.session.scalar(
            select(IncomeEvent.id).where(
                IncomeEvent.family_id == self.family_id,
                IncomeEvent.name == income.name,
                IncomeEvent.scheduled_date == next_date,
                IncomeEvent.frequency == income.frequency,
            )
        )
        if existing:
            return None
        # The next occurrence is planned from what was expected, not what arrived.
        planned = income.expected_amount_cents
        next_income = IncomeEvent(
            family_id=self.family_id,
            name=income.name,
            amount_cents=planned,
            expected_amount_cents=planned,
            allocated_cents=0,
            remaining_cents=planned,
            scheduled_date=next_date,
            anchor_day=income.anchor_day,
            status=IncomeStatus.scheduled,
            frequency=income.frequency,
        )
        self.session.add(next_income)
        self.session.flush()
        return next_income


class AttributionService:
    """Links payments to the income events that fund them.

    Every mutation is one ``atomic`` unit: rows are read ``FOR UPDATE`` and
    the payment/income aggregates are moved with conditional UPDATEs, so two
    racing requests can never overcommit either side.
    """

    def __init__(self, session: Session, family_id: Optional[int] = None) -> None:
        self.session = session
        self.family_id = family_id or get_current_family_id()

    def _payment_for_update(self, payment_id: int) -> Payment:
        return PaymentService(self.session, self.family_id)._get_for_update(payment_id)

    def _income_for_update(self, income_event_id: int) -> IncomeEvent:
        return IncomeEventService(self.session, self.family_id)._get_for_update(
            income_event_id
        )

    def _attribution_for_update(self, attribution_id: int) -> PaymentAttribution:
        attribution = self.session.scalar(
            select(PaymentAttribution)
            .where(PaymentAttribution.id == attribution_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if not attribution or attribution.family_id != self.family_id:
            raise NotFoundError("Attribution not found")
        return attribution

    def _check_refs(
        self,
        attribution: PaymentAttribution,
        payment_id: Optional[int],
        income_event_id: Optional[int],
    ) -> None:
        if payment_id is not None and attribution.payment_id != payment_id:
            raise ConflictError("Attribution does not belong to this payment")
        if income_event_id is not None and attribution.income_event_id != income_event_id:
            raise ConflictError("Attribution does not belong to this income event")

    @staticmethod
    def _ensure_attributable(payment: Payment, income: IncomeEvent) -> None:
        if income.status == IncomeStatus.cancelled:
            raise ValidationError("Cannot attribute to a cancelled income event")
        if payment.status == PaymentStatus.cancelled:
            raise ValidationError("Cannot attribute a cancelled payment")

    @staticmethod
    def _check_capacity(
        payment: Payment, income: IncomeEvent, delta_cents: int, requested_cents: int
    ) -> None:
        # What the attribution may grow to: free capacity plus what it already holds.
        held = requested_cents - delta_cents
        payment_available = payment.amount_cents - payment.attributed_cents + held
        if requested_cents > payment_available:
            raise CapacityExceededError(
                available=cents_to_decimal(payment_available),
                requested=cents_to_decimal(requested_cents),
            )
        income_available = income.remaining_cents + held
        if requested_cents > income_available:
            raise IncomeCapacityExceededError(
                available=cents_to_decimal(income_available),
                requested=cents_to_decimal(requested_cents),
            )

    def _shift_capacity(
        self,
        payment: Payment,
        income: IncomeEvent,
        delta_cents: int,
        requested_cents: int,
    ) -> None:
        """Move ``delta_cents`` from free to attributed on both sides.

        A zero rowcount means another transaction consumed the capacity after
        our read; the fresh numbers are reported in the capacity error.
        """
        if delta_cents == 0:
            return
        result = self.session.execute(
            update(Payment)
            .where(
                Payment.id == payment.id,
                Payment.amount_cents - Payment.attributed_cents >= delta_cents,
            )
            .values(attributed_cents=Payment.attributed_cents + delta_cents)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.session.refresh(payment)
            raise CapacityExceededError(
                available=cents_to_decimal(
                    payment.remaining_capacity_cents + requested_cents - delta_cents
                ),
                requested=cents_to_decimal(requested_cents),
            )

        result = self.session.execute(
            update(IncomeEvent)
            .where(
                IncomeEvent.id == income.id,
                IncomeEvent.remaining_cents >= delta_cents,
            )
            .values(
                allocated_cents=IncomeEvent.allocated_cents + delta_cents,
                remaining_cents=IncomeEvent.remaining_cents - delta_cents,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            self.session.refresh(income)
            raise IncomeCapacityExceededError(
                available=cents_to_decimal(
                    income.remaining_cents + requested_cents - delta_cents
                ),
                requested=cents_to_decimal(requested_cents),
            )
        self.session.refresh(payment)
        self.session.refresh(income)

    def _attach(
        self,
        payment: Payment,
        income: IncomeEvent,
        amount_cents: int,
        attribution_type: AttributionType,
        actor: Optional[str],
    ) -> PaymentAttribution:
        self._ensure_attributable(payment, income)
        self._check_capacity(payment, income, amount_cents, amount_cents)
        self._shift_capacity(payment, income, amount_cents, amount_cents)
        attribution = PaymentAttribution(
            family_id=self.family_id,
            payment_id=payment.id,
            income_event_id=income.id,
            amount_cents=amount_cents,
            attribution_type=attribution_type,
            created_by=actor,
        )
        self.session.add(attribution)
        self.session.flush()
        record_audit(
            self.session,
            self.family_id,
            "payment_attribution",
            attribution.id,
            AuditAction.create,
            actor=actor,
            new_values=_attribution_values(attribution),
        )
        return attribution

    def create(
        self,
        payment_id: int,
        income_event_id: int,
        amount: MoneyLike,
        attribution_type: AttributionType | str = AttributionType.manual,
        created_by: Optional[str] = None,
    ) -> PaymentAttribution:
        amount_cents = positive_cents(amount, "Attribution amount")
        attribution_type = _coerce_attribution_type(attribution_type)
        with atomic(self.session):
            payment = self._payment_for_update(payment_id)
            income = self._income_for_update(income_event_id)
            attribution = self._attach(
                payment, income, amount_cents, attribution_type, created_by
            )
        self.session.refresh(attribution)
        logger.info(
            f"attribution_create: id={attribution.id} payment_id={payment_id} "
            f"income_event_id={income_event_id} amount_cents={amount_cents}"
        )
        return attribution

    def update(
        self,
        attribution_id: int,
        amount: Optional[MoneyLike] = None,
        attribution_type: Optional[AttributionType | str] = None,
        *,
        payment_id: Optional[int] = None,
        income_event_id: Optional[int] = None,
        updated_by: Optional[str] = None,
    ) -> AttributionChange:
        if amount is None and attribution_type is None:
            raise ValidationError("Nothing to update")
        new_cents = (
            positive_cents(amount, "Attribution amount") if amount is not None else None
        )
        new_type = (
            _coerce_attribution_type(attribution_type)
            if attribution_type is not None
            else None
        )

        with atomic(self.session):
            attribution = self._attribution_for_update(attribution_id)
            self._check_refs(attribution, payment_id, income_event_id)
            payment = self._payment_for_update(attribution.payment_id)
            income = self._income_for_update(attribution.income_event_id)

            old_values = _attribution_values(attribution)
            old_cents = attribution.amount_cents
            old_type = attribution.attribution_type
            new_cents = old_cents if new_cents is None else new_cents
            new_type = old_type if new_type is None else new_type

            delta = new_cents - old_cents
            if delta > 0:
                self._ensure_attributable(payment, income)
                self._check_capacity(payment, income, delta, new_cents)
            self._shift_capacity(payment, income, delta, new_cents)

            attribution.amount_cents = new_cents
            attribution.attribution_type = new_type
            self.session.flush()
            record_audit(
                self.session,
                self.family_id,
                "payment_attribution",
                attribution.id,
                AuditAction.update,
                actor=updated_by,
                old_values=old_values,
                new_values=_attribution_values(attribution),
            )
        self.session.refresh(attribution)
        logger.info(
            f"attribution_update: id={attribution.id} old_cents={old_cents} "
            f"new_cents={new_cents} type={new_type.value}"
        )
        return AttributionChange(
            attribution=attribution,
            previous_amount=cents_to_decimal(old_cents),
            new_amount=cents_to_decimal(new_cents),
            previous_type=old_type,
            new_type=new_type,
        )

    def delete(
        self,
        attribution_id: int,
        *,
        payment_id: Optional[int] = None,
        income_event_id: Optional[int] = None,
        deleted_by: Optional[str] = None,
    ) -> None:
        with atomic(self.session):
            attribution = self._attribution_for_update(attribution_id)
            self._check_refs(attribution, payment_id, income_event_id)
            payment = self._payment_for_update(attribution.payment_id)
            income = self._income_for_update(attribution.income_event_id)
            amount_cents = attribution.amount_cents
            old_values = _attribution_values(attribution)

            self._shift_capacity(payment, income, -amount_cents, 0)
            self.session.delete(attribution)
            record_audit(
                self.session,
                self.family_id,
                "payment_attribution",
                attribution_id,
                AuditAction.delete,
                actor=deleted_by,
                old_values=old_values,
            )
        logger.info(
            f"attribution_delete: id={attribution_id} amount_cents={amount_cents}"
        )

    def auto_distribute(
        self,
        income_event_id: int,
        payment_ids: Sequence[int],
        created_by: Optional[str] = None,
    ) -> list[PaymentAttribution]:
        """Spread an income event's remaining amount over ``payment_ids``.

        Each payment needs its remaining capacity. When the income cannot
        cover every need, the remaining amount is split in proportion to the
        needs with largest-remainder rounding, so the shares add up exactly.
        """
        ordered_ids = list(dict.fromkeys(payment_ids))
        if not ordered_ids:
            raise ValidationError("At least one payment is required")

        created: list[PaymentAttribution] = []
        with atomic(self.session):
            income = self._income_for_update(income_event_id)
            if income.status == IncomeStatus.cancelled:
                raise ValidationError("Cannot attribute to a cancelled income event")
            payments = [self._payment_for_update(pid) for pid in ordered_ids]
            payments = [p for p in payments if p.status != PaymentStatus.cancelled]

            needs = [max(p.remaining_capacity_cents, 0) for p in payments]
            if sum(needs) <= income.remaining_cents:
                shares = needs
            else:
                shares = split_proportionally(income.remaining_cents, needs)

            for payment, share in zip(payments, shares):
                if share <= 0:
                    continue
                created.append(
                    self._attach(
                        payment, income, share, AttributionType.automatic, created_by
                    )
                )
        for attribution in created:
            self.session.refresh(attribution)
        logger.info(
            f"attribution_auto_distribute: income_event_id={income_event_id} "
            f"payments={len(ordered_ids)} created={len(created)} "
            f"amount_cents={sum(a.amount_cents for a in created)}"
        )
        return created

    def split_payment(
        self,
        payment_id: int,
        splits: Iterable[tuple[int, MoneyLike]],
        attribution_type: AttributionType | str = AttributionType.manual,
        created_by: Optional[str] = None,
    ) -> list[PaymentAttribution]:
        parts = [
            (income_id, positive_cents(amount, "Attribution amount"))
            for income_id, amount in splits
        ]
        if not parts:
            raise ValidationError("At least one split is required")
        attribution_type = _coerce_attribution_type(attribution_type)

        created: list[PaymentAttribution] = []
        with atomic(self.session):
            payment = self._payment_for_update(payment_id)
            if payment.attributed_cents > 0:
                raise ValidationError("Payment already has attributions")
            total = sum(cents for _, cents in parts)
            if total != payment.amount_cents:
                raise ValidationError(
                    f"Split total {cents_to_decimal(total)} must equal the payment "
                    f"amount {cents_to_decimal(payment.amount_cents)}"
                )
            for income_id, cents in parts:
                income = self._income_for_update(income_id)
                created.append(
                    self._attach(payment, income, cents, attribution_type, created_by)
                )
        for attribution in created:
            self.session.refresh(attribution)
        logger.info(
            f"attribution_split: payment_id={payment_id} parts={len(created)}"
        )
        return created

    def auto_attribute_payment(
        self, payment_id: int, created_by: Optional[str] = None
    ) -> Optional[PaymentAttribution]:
        with atomic(self.session):
            payment = self._payment_for_update(payment_id)
            if payment.attributed_cents > 0:
                raise ValidationError("Payment already has attributions")
            income = self.session.scalar(
                select(IncomeEvent)
                .where(
                    IncomeEvent.family_id == self.family_id,
                    IncomeEvent.status == IncomeStatus.scheduled,
                    IncomeEvent.remaining_cents >= payment.amount_cents,
                    IncomeEvent.scheduled_date <= payment.due_date,
                )
                .order_by(IncomeEvent.scheduled_date, IncomeEvent.id)
                .limit(1)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            attribution = None
            if income is not None:
                attribution = self._attach(
                    payment,
                    income,
                    payment.amount_cents,
                    AttributionType.automatic,
                    created_by,
                )
        if attribution is None:
            logger.info(f"attribution_auto_attribute: payment_id={payment_id} funded=false")
            return None
        self.session.refresh(attribution)
        logger.info(
            f"attribution_auto_attribute: payment_id={payment_id} "
            f"income_event_id={attribution.income_event_id} id={attribution.id}"
        )
        return attribution

    def suggest_income_for_payment(self, payment_id: int) -> list[IncomeSuggestion]:
        payment = PaymentService(self.session, self.family_id).get(payment_id)
        incomes = self.session.scalars(
            select(IncomeEvent)
            .where(
                IncomeEvent.family_id == self.family_id,
                IncomeEvent.status == IncomeStatus.scheduled,
                IncomeEvent.remaining_cents > 0,
            )
            .order_by(IncomeEvent.scheduled_date, IncomeEvent.id)
            .limit(SUGGESTION_LIMIT)
        ).all()

        rank = {"high": 0, "medium": 1, "low": 2}
        suggestions: list[IncomeSuggestion] = []
        for income in incomes:
            available = income.remaining_cents
            if (
                income.scheduled_date <= payment.due_date
                and available >= payment.amount_cents
            ):
                confidence = "high"
            elif available * 2 >= payment.amount_cents:
                confidence = "medium"
            else:
                confidence = "low"
            suggestions.append(
                IncomeSuggestion(
                    income_event_id=income.id,
                    name=income.name,
                    scheduled_date=income.scheduled_date,
                    available_cents=available,
                    suggested_cents=min(payment.amount_cents, available),
                    confidence=confidence,
                )
            )
        # Stable sort keeps the date order within a confidence band.
        suggestions.sort(key=lambda s: rank[s.confidence])
        return suggestions

    def validate_capacity(
        self, payment_id: int, proposals: Iterable[tuple[int, MoneyLike]]
    ) -> CapacityCheck:
        """Dry run of a set of attributions against both sides' capacity."""
        payment = PaymentService(self.session, self.family_id).get(payment_id)
        errors: list[str] = []
        total = 0
        # Proposals against the same income draw on one remaining balance.
        per_income: dict[int, int] = {}
        for income_id, amount in proposals:
            try:
                cents = to_cents(amount)
            except ValidationError as exc:
                errors.append(str(exc))
                continue
            if cents <= 0:
                errors.append("Attribution amounts must be positive")
                continue
            total += cents
            per_income[income_id] = per_income.get(income_id, 0) + cents

        if payment.attributed_cents + total > payment.amount_cents:
            errors.append("Total attributions exceed payment amount")

        for income_id, cents in per_income.items():
            income = self.session.get(IncomeEvent, income_id)
            if not income or income.family_id != self.family_id:
                errors.append(f"Income event not found: {income_id}")
                continue
            if income.status == IncomeStatus.cancelled:
                errors.append(f"Income event {income.name} is cancelled")
                continue
            if cents > income.remaining_cents:
                errors.append(
                    f"Amount {cents_to_decimal(cents)} exceeds available income "
                    f"for {income.name}"
                )

        return CapacityCheck(
            is_valid=not errors,
            errors=errors,
            total_proposed_cents=total,
            payment_amount_cents=payment.amount_cents,
        )

    def for_payment(self, payment_id: int) -> list[PaymentAttribution]:
        PaymentService(self.session, self.family_id).get(payment_id)
        stmt = (
            select(PaymentAttribution)
            .options(joinedload(PaymentAttribution.income_event))
            .where(
                PaymentAttribution.family_id == self.family_id,
                PaymentAttribution.payment_id == payment_id,
            )
            .order_by(PaymentAttribution.id)
        )
        return list(self.session.scalars(stmt).all())

    def for_income_event(self, income_event_id: int) -> list[PaymentAttribution]:
        IncomeEventService(self.session, self.family_id).get(income_event_id)
        stmt = (
            select(PaymentAttribution)
            .options(joinedload(PaymentAttribution.payment))
            .where(
                PaymentAttribution.family_id == self.family_id,
                PaymentAttribution.income_event_id == income_event_id,
            )
            .order_by(PaymentAttribution.id)
        )
        return list(self.session.scalars(stmt).all())

    def payment_summary(self, payment_id: int) -> AttributionSummary:
        payment = PaymentService(self.session, self.family_id).get(payment_id)
        attributions = self.for_payment(payment_id)
        attributed = sum(a.amount_cents for a in attributions)
        lines = [
            AttributionLine(
                attribution_id=a.id,
                counterpart_id=a.income_event_id,
                counterpart_name=a.income_event.name,
                counterpart_date=a.income_event.scheduled_date,
                amount_cents=a.amount_cents,
                attribution_type=a.attribution_type,
                percentage=round(a.amount_cents / payment.amount_cents * 100, 2),
            )
            for a in attributions
        ]
        return AttributionSummary(
            total_cents=payment.amount_cents,
            attributed_cents=attributed,
            remaining_cents=payment.amount_cents - attributed,
            lines=lines,
        )

    def income_summary(self, income_event_id: int) -> AttributionSummary:
        income = IncomeEventService(self.session, self.family_id).get(income_event_id)
        attributions = self.for_income_event(income_event_id)
        lines = [
            AttributionLine(
                attribution_id=a.id,
                counterpart_id=a.payment_id,
                counterpart_name=a.payment.payee,
                counterpart_date=a.payment.due_date,
                amount_cents=a.amount_cents,
                attribution_type=a.attribution_type,
                percentage=(
                    round(a.amount_cents / income.amount_cents * 100, 2)
                    if income.amount_cents
                    else 0.0
                ),
            )
            for a in attributions
        ]
        return AttributionSummary(
            total_cents=income.amount_cents,
            attributed_cents=income.allocated_cents,
            remaining_cents=income.remaining_cents,
            lines=lines,
        )

    def history(self, limit: int = 50, offset: int = 0) -> list[dict[str, Any]]:
        if limit <= 0 or offset < 0:
            raise ValidationError("Limit must be positive and offset not negative")
        rows = self.session.execute(
            select(PaymentAttribution, Payment.payee, IncomeEvent.name)
            .join(Payment, PaymentAttribution.payment_id == Payment.id)
            .join(IncomeEvent, PaymentAttribution.income_event_id == IncomeEvent.id)
            .where(PaymentAttribution.family_id == self.family_id)
            .order_by(PaymentAttribution.created_at.desc(), PaymentAttribution.id.desc())
            .limit(limit)
            .offset(offset)
        ).all()
        return [
            {
                "id": attribution.id,
                "payment_id": attribution.payment_id,
                "payee": payee,
                "income_event_id": attribution.income_event_id,
                "income_event_name": income_name,
                "amount": cents_to_decimal(attribution.amount_cents),
                "attribution_type": attribution.attribution_type.value,
                "created_at": attribution.created_at,
                "created_by": attribution.created_by,
            }
            for attribution, payee, income_name in rows
        ]


class TransactionService:
    def __init__(self, session: Session, family_id: Optional[int] = None) -> None:
        self.session = session
        self.family_id = family_id or get_current_family_id()

    def _base_stmt(self):
        return (
            select(Transaction)
            .join(BankAccount, Transaction.bank_account_id == BankAccount.id)
            .where(
                BankAccount.family_id == self.family_id,
                BankAccount.deleted_at.is_(None),
            )
        )

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(self._base_stmt().where(Transaction.id == transaction_id))
        if not txn:
            raise NotFoundError("Transaction not found")
        return txn

    def list(
        self,
        *,
        start: Optional[date] = None,
        end: Optional[date] = None,
        bank_account_ids: Optional[Sequence[int]] = None,
        unmatched_only: bool = False,
        uncategorized_only: bool = False,
        limit: Optional[int] = None,
    ) -> list[Transaction]:
        stmt = self._base_stmt()
        if start is not None:
            stmt = stmt.where(Transaction.date >= start)
        if end is not None:
            stmt = stmt.where(Transaction.date <= end)
        if bank_account_ids:
            stmt = stmt.where(Transaction.bank_account_id.in_(list(bank_account_ids)))
        if unmatched_only:
            stmt = stmt.where(Transaction.payment_id.is_(None))
        if uncategorized_only:
            stmt = stmt.where(
                Transaction.user_categorized.is_(False),
                or_(
                    Transaction.spending_category_id.is_(None),
                    Transaction.category_confidence < CONFIDENT_CATEGORY,
                ),
            )
        stmt = stmt.order_by(Transaction.date.desc(), Transaction.id.desc())
        if limit is not None:
            stmt = stmt.limit(limit)
        return list(self.session.scalars(stmt).all())

    def uncategorized_ids(self, *, after_id: int = 0, limit: int = 500) -> list[int]:
        stmt = (
            select(Transaction.id)
            .join(BankAccount, Transaction.bank_account_id == BankAccount.id)
            .where(
                BankAccount.family_id == self.family_id,
                BankAccount.deleted_at.is_(None),
                Transaction.id > after_id,
                Transaction.user_categorized.is_(False),
                or_(
                    Transaction.spending_category_id.is_(None),
                    Transaction.category_confidence < CONFIDENT_CATEGORY,
                ),
            )
            .order_by(Transaction.id)
            .limit(limit)
        )
        return list(self.session.scalars(stmt).all())

    def by_ids(self, transaction_ids: Sequence[int]) -> dict[int, Transaction]:
        if not transaction_ids:
            return {}
        rows = self.session.scalars(
            self._base_stmt().where(Transaction.id.in_(list(transaction_ids)))
        ).all()
        return {txn.id: txn for txn in rows}

    def categorize_batch(
        self,
        transaction_ids: Sequence[int],
        spending_category_id: int,
        user_categorized: bool = True,
        *,
        actor: Optional[str] = None,
    ) -> BatchCategorizeResult:
        ids = list(dict.fromkeys(transaction_ids))
        if not ids:
            raise ValidationError("At least one transaction id is required")
        if len(ids) > MAX_BATCH_SIZE:
            raise ValidationError(
                f"At most {MAX_BATCH_SIZE} transactions can be categorized at once"
            )
        SpendingCategoryService(self.session, self.family_id).get(
            spending_category_id, active_only=True
        )

        found = self.by_ids(ids)
        updated: list[int] = []
        errors: list[dict[str, Any]] = []
        with atomic(self.session):
            for txn_id in ids:
                if txn_id not in found:
                    errors.append({"transaction_id": txn_id, "error": "Transaction not found"})
                    continue
                stmt = update(Transaction).where(Transaction.id == txn_id)
                values: dict[str, Any] = {"spending_category_id": spending_category_id}
                if user_categorized:
                    values.update(category_confidence=1.0, user_categorized=True)
                else:
                    # Machine assignments never replace a user's choice.
                    stmt = stmt.where(Transaction.user_categorized.is_(False))
                result = self.session.execute(
                    stmt.values(**values).execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    updated.append(txn_id)
                else:
                    errors.append(
                        {
                            "transaction_id": txn_id,
                            "error": "Transaction was categorized by a user",
                        }
                    )
            if updated:
                record_audit(
                    self.session,
                    self.family_id,
                    "transaction_batch",
                    spending_category_id,
                    AuditAction.update,
                    actor=actor,
                    new_values={
                        "transaction_ids": updated,
                        "spending_category_id": spending_category_id,
                        "user_categorized": user_categorized,
                    },
                )
        self.session.expire_all()
        logger.info(
            f"categorize_batch: category_id={spending_category_id} "
            f"updated={len(updated)} errors={len(errors)}"
        )
        return BatchCategorizeResult(updated_ids=updated, errors=errors)

    def ingest(
        self,
        records: Sequence[BankTransactionIn],
        rule_set: CategoryRuleSet = DEFAULT_RULE_SET,
    ) -> IngestResult:
        """Upsert bank-feed records, keyed by account and provider id."""
        accounts = BankAccountService(self.session, self.family_id)
        categories = SpendingCategoryService(self.session, self.family_id)
        snapshots = categories.snapshots()

        created = 0
        updated = 0
        stored: list[Transaction] = []
        with atomic(self.session):
            for record in records:
                account = accounts.get(record.bank_account_id)
                txn = None
                if record.external_id:
                    txn = self.session.scalar(
                        select(Transaction).where(
                            Transaction.bank_account_id == account.id,
                            Transaction.external_id == record.external_id,
                        )
                    )
                if txn is None:
                    txn = Transaction(
                        bank_account_id=account.id,
                        external_id=record.external_id,
                        category_confidence=0.0,
                        user_categorized=False,
                    )
                    self.session.add(txn)
                    created += 1
                else:
                    updated += 1

                txn.amount_cents = to_cents(record.amount)
                txn.date = record.date
                txn.description = record.description or ""
                txn.merchant_name = record.merchant_name
                txn.pending = record.pending
                txn.provider_category = record.provider_category

                if not txn.user_categorized:
                    self._categorize_ingested(txn, record, categories, snapshots, rule_set)
                self.session.flush()
                stored.append(txn)
        for txn in stored:
            self.session.refresh(txn)
        logger.info(
            f"ingest: records={len(records)} created={created} updated={updated}"
        )
        return IngestResult(created=created, updated=updated, transactions=stored)

    def _categorize_ingested(
        self,
        txn: Transaction,
        record: BankTransactionIn,
        categories: SpendingCategoryService,
        snapshots: list[CategorySnapshot],
        rule_set: CategoryRuleSet,
    ) -> None:
        if record.category and record.category.strip():
            explicit = categories.find_by_name(record.category)
            if explicit is not None:
                txn.spending_category_id = explicit.id
                txn.category_confidence = 1.0
                txn.user_categorized = True
                return
            logger.info(
                f"ingest_category_unresolved: external_id={record.external_id} "
                f"category={record.category!r}"
            )

        suggestion = categorize_transaction(
            CategorizableTransaction(
                id=txn.id or 0,
                description=txn.description,
                merchant_name=txn.merchant_name,
                provider_category=txn.provider_category,
            ),
            snapshots,
            rule_set,
        )
        if suggestion is None:
            txn.spending_category_id = None
            txn.category_confidence = 0.0
        else:
            txn.spending_category_id = suggestion.category_id
            txn.category_confidence = suggestion.confidence


class CategorizationService:
    def __init__(
        self,
        session: Session,
        family_id: Optional[int] = None,
        rule_set: CategoryRuleSet = DEFAULT_RULE_SET,
    ) -> None:
        self.session = session
        self.family_id = family_id or get_current_family_id()
        self.rule_set = rule_set

    def _categories(self) -> list[CategorySnapshot]:
        return SpendingCategoryService(self.session, self.family_id).snapshots()

    def categorize(self, transaction_id: int) -> Optional[CategorySuggestion]:
        txn = TransactionService(self.session, self.family_id).get(transaction_id)
        return categorize_transaction(
            CategorizableTransaction.from_model(txn), self._categories(), self.rule_set
        )

    def apply_category_rules(
        self,
        transaction_ids: Optional[Sequence[int]] = None,
        *,
        limit: Optional[int] = None,
    ) -> CategorizationRun:
        transactions = TransactionService(self.session, self.family_id)
        if transaction_ids is not None:
            candidates = list(transactions.by_ids(list(dict.fromkeys(transaction_ids))).values())
        else:
            candidates = transactions.list(
                uncategorized_only=True,
                limit=limit or get_settings().categorize_batch_size,
            )
        plan = plan_category_updates(
            [CategorizableTransaction.from_model(t) for t in candidates],
            self._categories(),
            self.rule_set,
        )

        applied: list[CategoryAssignment] = []
        with atomic(self.session):
            for assignment in plan:
                result = self.session.execute(
                    update(Transaction)
                    .where(
                        Transaction.id == assignment.transaction_id,
                        Transaction.user_categorized.is_(False),
                    )
                    .values(
                        spending_category_id=assignment.suggestion.category_id,
                        category_confidence=assignment.suggestion.confidence,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    applied.append(assignment)
        self.session.expire_all()
        logger.info(
            f"categorize_sweep: family_id={self.family_id} "
            f"candidates={len(candidates)} categorized={len(applied)}"
        )
        return CategorizationRun(categorized_count=len(applied), assignments=applied)

    def suggestions(self, limit: Optional[int] = None) -> list[CategoryFrequency]:
        candidates = TransactionService(self.session, self.family_id).list(
            uncategorized_only=True,
            limit=limit or get_settings().categorize_batch_size,
        )
        return generate_category_suggestions(
            [CategorizableTransaction.from_model(t) for t in candidates],
            self._categories(),
            self.rule_set,
        )


class MatchService:
    def __init__(self, session: Session, family_id: Optional[int] = None) -> None:
        self.session = session
        self.family_id = family_id or get_current_family_id()

    def propose(
        self,
        *,
        start: Optional[date] = None,
        end: Optional[date] = None,
        bank_account_ids: Optional[Sequence[int]] = None,
        amount_tolerance: Optional[MoneyLike] = None,
        date_tolerance: Optional[int] = None,
    ) -> MatchReport:
        settings = get_settings()
        amount_tolerance = (
            settings.match_amount_tolerance
            if amount_tolerance is None
            else amount_tolerance
        )
        date_tolerance = (
            settings.match_date_tolerance_days if date_tolerance is None else date_tolerance
        )
        window = resolve_window(start, end, today=local_today())

        transactions = TransactionService(self.session, self.family_id).list(
            start=window.start,
            end=window.end,
            bank_account_ids=bank_account_ids,
            unmatched_only=True,
        )
        payments = self.session.scalars(
            select(Payment)
            .where(
                Payment.family_id == self.family_id,
                Payment.status != PaymentStatus.cancelled,
                Payment.due_date >= window.start,
                Payment.due_date <= window.end,
                ~exists().where(Transaction.payment_id == Payment.id),
            )
            .order_by(Payment.due_date, Payment.id)
        ).all()

        proposals = match_transactions_to_payments(
            [TransactionSnapshot.from_model(t) for t in transactions],
            [PaymentSnapshot.from_model(p) for p in payments],
            amount_tolerance,
            date_tolerance,
        )
        proposals.sort(key=lambda p: (-p.confidence, p.transaction_id))
        report = MatchReport(
            proposals=proposals,
            total_transactions=len(transactions),
            total_matches=len(proposals),
            high_confidence_matches=sum(
                1 for p in proposals if p.confidence >= HIGH_CONFIDENCE_MATCH
            ),
        )
        logger.info(
            f"match_propose: window={window.start}..{window.end} "
            f"transactions={report.total_transactions} matches={report.total_matches}"
        )
        return report

    def apply_match(
        self, transaction_id: int, payment_id: int, *, actor: Optional[str] = None
    ) -> Transaction:
        txn = TransactionService(self.session, self.family_id).get(transaction_id)
        payments = PaymentService(self.session, self.family_id)
        payment = payments.get(payment_id)
        if txn.payment_id == payment.id:
            return txn
        if txn.payment_id is not None:
            raise ConflictError("Transaction is already linked to another payment")

        linked = aliased(Transaction)
        with atomic(self.session):
            result = self.session.execute(
                update(Transaction)
                .where(
                    Transaction.id == txn.id,
                    Transaction.payment_id.is_(None),
                    # A payment is settled by one transaction at most.
                    ~exists().where(linked.payment_id == payment.id),
                )
                .values(payment_id=payment.id)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConflictError(
                    "Transaction or payment is already linked to another match"
                )
            if payment.status != PaymentStatus.paid:
                payments._mark_paid(
                    payment.id,
                    cents_to_decimal(abs(txn.amount_cents)),
                    txn.date,
                    actor,
                )
        self.session.refresh(txn)
        logger.info(f"match_apply: transaction_id={txn.id} payment_id={payment.id}")
        return txn
