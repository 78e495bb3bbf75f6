"""Transaction-to-payment matching.

Proposes which scheduled payment an observed bank transaction most likely
settles. Everything here is a pure function over frozen snapshots: it never
touches the database and never mutates its inputs, so the same inputs always
produce the same proposals.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Iterable, Optional, Sequence

from errors import ValidationError

AMOUNT_WEIGHT = Decimal("0.4")
DATE_WEIGHT = Decimal("0.3")
NAME_WEIGHT = Decimal("0.3")

DEFAULT_AMOUNT_TOLERANCE = Decimal("0.01")
DEFAULT_DATE_TOLERANCE_DAYS = 3


@dataclass(frozen=True)
class TransactionSnapshot:
    id: int
    amount_cents: int
    date: date
    merchant_name: Optional[str] = None
    user_categorized: bool = False

    @classmethod
    def from_model(cls, txn) -> "TransactionSnapshot":
        return cls(
            id=txn.id,
            amount_cents=txn.amount_cents,
            date=txn.date,
            merchant_name=txn.merchant_name,
            user_categorized=bool(txn.user_categorized),
        )


@dataclass(frozen=True)
class PaymentSnapshot:
    id: int
    amount_cents: int
    due_date: date
    payee: Optional[str] = None

    @classmethod
    def from_model(cls, payment) -> "PaymentSnapshot":
        return cls(
            id=payment.id,
            amount_cents=payment.amount_cents,
            due_date=payment.due_date,
            payee=payment.payee,
        )


@dataclass(frozen=True)
class MatchProposal:
    transaction_id: int
    payment_id: int
    confidence: float
    reason: str


def _names_match(merchant_name: Optional[str], payee: Optional[str]) -> Optional[bool]:
    """None when either side is missing, otherwise a substring check either way."""
    merchant = (merchant_name or "").strip().lower()
    payee_clean = (payee or "").strip().lower()
    if not merchant or not payee_clean:
        return None
    return merchant in payee_clean or payee_clean in merchant


def _amount_diff(txn: TransactionSnapshot, payment: PaymentSnapshot) -> Decimal:
    # Feeds disagree on the sign of outflows; payments are always positive.
    return Decimal(abs(abs(txn.amount_cents) - payment.amount_cents)) / 100


def _days_apart(txn: TransactionSnapshot, payment: PaymentSnapshot) -> int:
    return abs((txn.date - payment.due_date).days)


def _is_candidate(
    txn: TransactionSnapshot,
    payment: PaymentSnapshot,
    amount_tolerance: Decimal,
    date_tolerance: int,
) -> bool:
    if _amount_diff(txn, payment) > amount_tolerance:
        return False
    if _days_apart(txn, payment) > date_tolerance:
        return False
    return _names_match(txn.merchant_name, payment.payee) is not False


def _linear_term(weight: Decimal, diff: Decimal, tolerance: Decimal) -> Decimal:
    if diff == 0:
        return weight
    if tolerance <= 0:
        return Decimal("0")
    return weight * (Decimal("1") - min(diff / tolerance, Decimal("1")))


def score_match(
    txn: TransactionSnapshot,
    payment: PaymentSnapshot,
    amount_tolerance: Decimal = DEFAULT_AMOUNT_TOLERANCE,
    date_tolerance: int = DEFAULT_DATE_TOLERANCE_DAYS,
) -> tuple[float, str]:
    """Confidence in [0, 1] plus a human-readable reason for one pair."""
    amount_tolerance = Decimal(str(amount_tolerance))
    amount_diff = _amount_diff(txn, payment)
    days = _days_apart(txn, payment)
    names = _names_match(txn.merchant_name, payment.payee)

    confidence = _linear_term(AMOUNT_WEIGHT, amount_diff, amount_tolerance)
    confidence += _linear_term(DATE_WEIGHT, Decimal(days), Decimal(date_tolerance))
    if names:
        confidence += NAME_WEIGHT
    confidence = max(Decimal("0"), min(confidence, Decimal("1")))

    reasons: list[str] = []
    if amount_diff == 0:
        reasons.append("exact amount match")
    elif amount_diff <= amount_tolerance:
        reasons.append(f"amount match within {amount_tolerance}")
    if days == 0:
        reasons.append("same date")
    elif days <= date_tolerance:
        reasons.append(f"{days} day(s) apart")
    if names:
        reasons.append("merchant/payee name match")

    rounded = confidence.quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)
    return float(rounded), ", ".join(reasons)


def _validate_tolerances(amount_tolerance: Decimal, date_tolerance: int) -> Decimal:
    try:
        tolerance = Decimal(str(amount_tolerance))
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError("Amount tolerance must be a number") from exc
    if not tolerance.is_finite() or tolerance < 0:
        raise ValidationError("Amount tolerance must be zero or positive")
    if isinstance(date_tolerance, bool) or not isinstance(date_tolerance, int):
        raise ValidationError("Date tolerance must be a whole number of days")
    if date_tolerance < 0:
        raise ValidationError("Date tolerance must be zero or positive")
    return tolerance


def best_payment_for(
    txn: TransactionSnapshot,
    payments: Sequence[PaymentSnapshot],
    amount_tolerance: Decimal = DEFAULT_AMOUNT_TOLERANCE,
    date_tolerance: int = DEFAULT_DATE_TOLERANCE_DAYS,
) -> Optional[PaymentSnapshot]:
    amount_tolerance = Decimal(str(amount_tolerance))
    candidates = [
        p for p in payments if _is_candidate(txn, p, amount_tolerance, date_tolerance)
    ]
    if not candidates:
        return None
    # Smallest amount difference, then nearest date, then lowest id.
    return min(
        candidates,
        key=lambda p: (_amount_diff(txn, p), _days_apart(txn, p), p.id),
    )


def match_transactions_to_payments(
    transactions: Iterable[TransactionSnapshot],
    payments: Sequence[PaymentSnapshot],
    amount_tolerance: Decimal = DEFAULT_AMOUNT_TOLERANCE,
    date_tolerance: int = DEFAULT_DATE_TOLERANCE_DAYS,
) -> list[MatchProposal]:
    tolerance = _validate_tolerances(amount_tolerance, date_tolerance)
    payments = tuple(payments)

    proposals: list[MatchProposal] = []
    for txn in transactions:
        # A manual confirmation always wins over a proposal.
        if txn.user_categorized:
            continue
        best = best_payment_for(txn, payments, tolerance, date_tolerance)
        if best is None:
            continue
        confidence, reason = score_match(txn, best, tolerance, date_tolerance)
        proposals.append(
            MatchProposal(
                transaction_id=txn.id,
                payment_id=best.id,
                confidence=confidence,
                reason=reason,
            )
        )
    return proposals
