from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from errors import NotFoundError, ValidationError
from models import Transaction
from scheduler import run_categorization_sweep
from schemas import BankTransactionIn, SpendingCategoryIn
from services import BankAccountService, SpendingCategoryService, TransactionService


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _record(account_id, external_id, description="Coffee", **kw) -> BankTransactionIn:
    kw.setdefault("amount", Decimal("-4.50"))
    kw.setdefault("date", date(2025, 1, 2))
    return BankTransactionIn(
        bank_account_id=account_id,
        external_id=external_id,
        description=description,
        **kw,
    )


def test_ingest_is_idempotent_by_external_id() -> None:
    with make_session() as session:
        account = BankAccountService(session).create("Checking", "First Bank")
        service = TransactionService(session)
        records = [_record(account.id, "a-1"), _record(account.id, "a-2")]

        first = service.ingest(records)
        assert (first.created, first.updated) == (2, 0)
        assert first.transactions[0].amount_cents == -450

        records[0] = _record(account.id, "a-1", amount=Decimal("-5.00"))
        second = service.ingest(records)

        assert (second.created, second.updated) == (0, 2)
        assert session.scalar(select(func.count(Transaction.id))) == 2
        assert service.get(first.transactions[0].id).amount_cents == -500


def test_ingest_resolves_explicit_category_case_insensitive_and_fuzzy() -> None:
    with make_session() as session:
        account = BankAccountService(session).create("Checking")
        categories = SpendingCategoryService(session)
        food = categories.create(SpendingCategoryIn(name="Food"))
        subs = categories.create(SpendingCategoryIn(name="Subscriptions"))

        result = TransactionService(session).ingest(
            [
                _record(account.id, "b-1", "Lunch", category="food"),
                _record(account.id, "b-2", "Netflix", category="Subscriptioms"),
            ]
        )

        lunch, netflix = result.transactions
        assert lunch.spending_category_id == food.id
        assert netflix.spending_category_id == subs.id
        assert lunch.user_categorized is True
        assert lunch.category_confidence == 1.0


def test_ingest_raises_on_ambiguous_category_and_stores_nothing() -> None:
    with make_session() as session:
        account = BankAccountService(session).create("Checking")
        categories = SpendingCategoryService(session)
        categories.create(SpendingCategoryIn(name="Food"))
        categories.create(SpendingCategoryIn(name="Fool"))

        with pytest.raises(ValidationError):
            TransactionService(session).ingest(
                [
                    _record(account.id, "c-1"),
                    _record(account.id, "c-2", "Test", category="Foob"),
                ]
            )
        assert session.scalar(select(func.count(Transaction.id))) == 0


def test_ingest_applies_keyword_rules_and_keeps_user_choice() -> None:
    with make_session() as session:
        account = BankAccountService(session).create("Checking")
        categories = SpendingCategoryService(session)
        transport = categories.create(SpendingCategoryIn(name="Transportation"))
        food = categories.create(SpendingCategoryIn(name="Food"))
        service = TransactionService(session)

        result = service.ingest(
            [
                _record(account.id, "d-1", "SHELL FUEL", merchant_name="Gas Station 12"),
                _record(account.id, "d-2", "Gym", category="Health & Fitness"),
                _record(account.id, "d-3", "Diner", category="Food"),
            ]
        )
        fuel, gym, diner = result.transactions
        assert fuel.spending_category_id == transport.id
        assert fuel.category_confidence == 0.72
        assert fuel.user_categorized is False
        # Unknown names fall back to the rules, which find nothing here.
        assert gym.spending_category_id is None
        assert gym.category_confidence == 0.0

        again = service.ingest([_record(account.id, "d-3", "SHELL FUEL STATION")])
        assert again.transactions[0].spending_category_id == food.id
        assert again.transactions[0].description == "SHELL FUEL STATION"


def test_ingest_rejects_unknown_account() -> None:
    with make_session() as session:
        other = BankAccountService(session, family_id=2).create("Theirs")
        with pytest.raises(NotFoundError):
            TransactionService(session).ingest([_record(other.id, "e-1")])


def test_categorize_batch_reports_per_id_errors() -> None:
    with make_session() as session:
        account = BankAccountService(session).create("Checking")
        rent = SpendingCategoryService(session).create(SpendingCategoryIn(name="Housing"))
        service = TransactionService(session)
        (txn,) = service.ingest([_record(account.id, "f-1", "Landlord")]).transactions

        result = service.categorize_batch([txn.id, 999, txn.id], rent.id)

        assert result.updated_ids == [txn.id]
        assert result.errors == [{"transaction_id": 999, "error": "Transaction not found"}]
        stored = service.get(txn.id)
        assert stored.spending_category_id == rent.id
        assert stored.user_categorized is True
        assert stored.category_confidence == 1.0


def test_categorize_batch_machine_assignment_skips_user_choice() -> None:
    with make_session() as session:
        account = BankAccountService(session).create("Checking")
        categories = SpendingCategoryService(session)
        food = categories.create(SpendingCategoryIn(name="Food"))
        misc = categories.create(SpendingCategoryIn(name="Misc"))
        service = TransactionService(session)
        pinned, loose = service.ingest(
            [
                _record(account.id, "g-1", "Diner", category="Food"),
                _record(account.id, "g-2", "Kiosk"),
            ]
        ).transactions

        result = service.categorize_batch([pinned.id, loose.id], misc.id, user_categorized=False)

        assert result.updated_ids == [loose.id]
        assert [e["transaction_id"] for e in result.errors] == [pinned.id]
        assert service.get(pinned.id).spending_category_id == food.id
        assert service.get(loose.id).user_categorized is False


def test_categorize_batch_validates_input() -> None:
    with make_session() as session:
        categories = SpendingCategoryService(session)
        old = categories.create(SpendingCategoryIn(name="Old"))
        categories.deactivate(old.id)
        service = TransactionService(session)

        with pytest.raises(NotFoundError):
            service.categorize_batch([1], old.id)
        with pytest.raises(ValidationError):
            service.categorize_batch(list(range(1, 102)), old.id)
        with pytest.raises(ValidationError):
            service.categorize_batch([], old.id)


def test_categorization_sweep_covers_every_family() -> None:
    with make_session() as session:
        for family_id in (1, 2):
            account = BankAccountService(session, family_id).create("Checking")
            SpendingCategoryService(session, family_id).create(
                SpendingCategoryIn(name="Transportation")
            )
            session.add_all(
                [
                    Transaction(
                        bank_account_id=account.id,
                        amount_cents=-3_000,
                        date=date(2025, 1, 5),
                        description="SHELL FUEL",
                        merchant_name="Gas Station 12",
                    ),
                    Transaction(
                        bank_account_id=account.id,
                        amount_cents=-800,
                        date=date(2025, 1, 6),
                        description="grocery market food",
                    ),
                ]
            )
        session.commit()

        assert run_categorization_sweep(session, batch_size=1) == 2

        categorized = session.scalars(
            select(Transaction).where(Transaction.spending_category_id.is_not(None))
        ).all()
        assert sorted(t.description for t in categorized) == ["SHELL FUEL", "SHELL FUEL"]
