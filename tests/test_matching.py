from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import ConflictError, ValidationError
from matching import (
    PaymentSnapshot,
    TransactionSnapshot,
    best_payment_for,
    match_transactions_to_payments,
    score_match,
)
from models import BankAccount, PaymentStatus, Transaction
from schemas import PaymentIn
from services import MatchService, PaymentService


def _txn(id=1, cents=-120_000, day=date(2025, 3, 1), merchant="ACME Property", user=False):
    return TransactionSnapshot(
        id=id, amount_cents=cents, date=day, merchant_name=merchant, user_categorized=user
    )


def _pay(id=10, cents=120_000, due=date(2025, 3, 1), payee="Acme property mgmt"):
    return PaymentSnapshot(id=id, amount_cents=cents, due_date=due, payee=payee)


def test_exact_amount_date_and_name_scores_one() -> None:
    proposals = match_transactions_to_payments([_txn()], [_pay()])
    assert len(proposals) == 1
    assert proposals[0].payment_id == 10
    assert proposals[0].confidence == 1.0
    assert "exact amount match" in proposals[0].reason
    assert "same date" in proposals[0].reason


def test_partial_terms_scale_linearly() -> None:
    confidence, reason = score_match(
        _txn(cents=10_000, day=date(2025, 3, 2)),
        _pay(cents=10_001),
        amount_tolerance=Decimal("0.01"),
        date_tolerance=3,
    )
    assert confidence == 0.5
    assert "1 day(s) apart" in reason


def test_matching_is_pure_and_deterministic() -> None:
    txns = [_txn(id=i, cents=-(100_000 + i), day=date(2025, 3, 1 + i)) for i in range(3)]
    payments = [_pay(id=20 + i, cents=100_000 + i, due=date(2025, 3, 2)) for i in range(3)]
    before = (list(txns), list(payments))

    first = match_transactions_to_payments(txns, payments, Decimal("0.05"), 3)
    second = match_transactions_to_payments(txns, payments, Decimal("0.05"), 3)

    assert first == second
    assert (txns, payments) == before
    assert all(0 <= p.confidence <= 1 for p in first)


def test_names_must_agree_when_both_present() -> None:
    assert match_transactions_to_payments([_txn(merchant="Coffee Shop")], [_pay()]) == []
    # A missing name neither helps nor excludes.
    proposals = match_transactions_to_payments([_txn(merchant=None)], [_pay()])
    assert proposals[0].confidence == 0.7


def test_out_of_tolerance_is_not_a_candidate() -> None:
    assert match_transactions_to_payments([_txn(cents=-120_002)], [_pay()]) == []
    assert match_transactions_to_payments([_txn(day=date(2025, 3, 5))], [_pay()]) == []


def test_user_categorized_transactions_are_skipped() -> None:
    assert match_transactions_to_payments([_txn(user=True)], [_pay()]) == []


def test_tie_break_prefers_nearest_date_then_lowest_id() -> None:
    txn = _txn(merchant=None)
    near = _pay(id=30, due=date(2025, 3, 2))
    far = _pay(id=20, due=date(2025, 3, 3))
    twin = _pay(id=25, due=date(2025, 3, 2))

    assert best_payment_for(txn, [far, near]).id == 30
    assert best_payment_for(txn, [far, near, twin]).id == 25


def test_smaller_amount_difference_wins_over_date() -> None:
    txn = _txn(cents=-10_000, merchant=None)
    exact_late = _pay(id=1, cents=10_000, due=date(2025, 3, 3))
    close_same_day = _pay(id=2, cents=10_001, due=date(2025, 3, 1))
    assert best_payment_for(txn, [close_same_day, exact_late], Decimal("0.05"), 3).id == 1


@pytest.mark.parametrize(
    "amount_tolerance, date_tolerance",
    [(Decimal("-0.01"), 3), (Decimal("0.01"), -1), ("abc", 3), (Decimal("0.01"), 1.5)],
)
def test_invalid_tolerances_raise(amount_tolerance, date_tolerance) -> None:
    with pytest.raises(ValidationError):
        match_transactions_to_payments([_txn()], [_pay()], amount_tolerance, date_tolerance)


def test_zero_tolerance_still_scores_exact_matches() -> None:
    proposals = match_transactions_to_payments([_txn()], [_pay()], Decimal("0"), 0)
    assert proposals[0].confidence == 1.0


def _seed(session):
    account = BankAccount(family_id=1, name="Checking")
    session.add(account)
    session.commit()
    rent = PaymentService(session).create(
        PaymentIn(payee="Acme Property", amount=Decimal("1200.00"), due_date=date(2025, 3, 1))
    )
    txn = Transaction(
        bank_account_id=account.id,
        external_id="tx-1",
        amount_cents=-120_000,
        date=date(2025, 3, 2),
        description="ACME PROPERTY RENT",
        merchant_name="Acme Property",
    )
    session.add(txn)
    session.commit()
    return account, rent, txn


def test_match_service_proposes_and_applies() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        _, rent, txn = _seed(session)
        service = MatchService(session)

        report = service.propose(start=date(2025, 2, 1), end=date(2025, 3, 31))

        assert report.total_transactions == 1
        assert report.total_matches == 1
        assert report.high_confidence_matches == 1
        assert report.proposals[0].payment_id == rent.id
        assert report.proposals[0].confidence == 0.9

        linked = service.apply_match(txn.id, rent.id)
        assert linked.payment_id == rent.id
        session.refresh(rent)
        assert rent.status == PaymentStatus.paid
        assert rent.paid_amount_cents == 120_000
        assert rent.paid_date == date(2025, 3, 2)

        # Idempotent, and a linked transaction is no longer proposed.
        assert service.apply_match(txn.id, rent.id).payment_id == rent.id
        again = service.propose(start=date(2025, 2, 1), end=date(2025, 3, 31))
        assert again.total_transactions == 0


def test_apply_match_refuses_relinking() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        _, rent, txn = _seed(session)
        other = PaymentService(session).create(
            PaymentIn(payee="Other", amount=Decimal("5.00"), due_date=date(2025, 3, 1))
        )
        service = MatchService(session)
        service.apply_match(txn.id, rent.id)

        with pytest.raises(ConflictError):
            service.apply_match(txn.id, other.id)


def test_propose_rejects_inverted_window() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        with pytest.raises(ValidationError):
            MatchService(session).propose(start=date(2025, 3, 1), end=date(2025, 2, 1))


def test_settled_payment_is_not_proposed_or_linked_twice() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    with Session(engine) as session:
        account, rent, posted = _seed(session)
        pending = Transaction(
            bank_account_id=account.id,
            external_id="tx-1-pending",
            amount_cents=-120_000,
            date=date(2025, 3, 1),
            description="ACME PROPERTY RENT",
            merchant_name="Acme Property",
            pending=True,
        )
        session.add(pending)
        session.commit()
        service = MatchService(session)
        window = dict(start=date(2025, 2, 1), end=date(2025, 3, 31))
        assert service.propose(**window).total_matches == 2

        service.apply_match(posted.id, rent.id)

        report = service.propose(**window)
        assert report.total_transactions == 1
        assert report.total_matches == 0
        with pytest.raises(ConflictError):
            service.apply_match(pending.id, rent.id)
        session.refresh(pending)
        assert pending.payment_id is None
