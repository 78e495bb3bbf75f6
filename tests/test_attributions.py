import json
import random
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from errors import (
    CapacityExceededError,
    ConflictError,
    IncomeCapacityExceededError,
    NotFoundError,
    ValidationError,
)
from models import (
    AttributionType,
    AuditAction,
    AuditLog,
    IncomeEvent,
    Payment,
    PaymentAttribution,
)
from schemas import IncomeEventIn, PaymentIn
from services import AttributionService, IncomeEventService, PaymentService


def make_session() -> Session:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    return Session(engine)


def _payment(session, amount="1200.00", due=date(2025, 3, 1), payee="Rent", family_id=None):
    return PaymentService(session, family_id).create(
        PaymentIn(payee=payee, amount=Decimal(amount), due_date=due)
    )


def _income(
    session, amount="4000.00", scheduled=date(2025, 2, 28), name="Salary", family_id=None
):
    return IncomeEventService(session, family_id).create(
        IncomeEventIn(name=name, amount=Decimal(amount), scheduled_date=scheduled)
    )


def _assert_invariants(session) -> None:
    for payment in session.scalars(select(Payment)).all():
        session.refresh(payment)
        total = session.scalar(
            select(func.coalesce(func.sum(PaymentAttribution.amount_cents), 0)).where(
                PaymentAttribution.payment_id == payment.id
            )
        )
        assert total == payment.attributed_cents
        assert 0 <= total <= payment.amount_cents
    for income in session.scalars(select(IncomeEvent)).all():
        session.refresh(income)
        total = session.scalar(
            select(func.coalesce(func.sum(PaymentAttribution.amount_cents), 0)).where(
                PaymentAttribution.income_event_id == income.id
            )
        )
        assert total == income.allocated_cents
        assert income.allocated_cents >= 0 and income.remaining_cents >= 0
        assert income.allocated_cents + income.remaining_cents == income.amount_cents


def test_create_moves_both_aggregates_and_audits() -> None:
    with make_session() as session:
        payment = _payment(session)
        income = _income(session)

        attribution = AttributionService(session).create(
            payment.id, income.id, Decimal("800.00"), created_by="alex"
        )

        assert attribution.amount_cents == 80_000
        assert attribution.attribution_type == AttributionType.manual
        session.refresh(income)
        session.refresh(payment)
        assert income.allocated_cents == 80_000
        assert income.remaining_cents == 320_000
        assert payment.attributed_cents == 80_000
        assert payment.remaining_capacity_cents == 40_000

        audit = session.scalar(
            select(AuditLog).where(AuditLog.entity_type == "payment_attribution")
        )
        assert audit.action == AuditAction.create
        assert audit.actor == "alex"
        assert json.loads(audit.new_values_json)["amount_cents"] == 80_000


def test_update_end_to_end_increase() -> None:
    with make_session() as session:
        payment = _payment(session, "1200.00")
        income = _income(session, "4000.00")
        service = AttributionService(session)
        attribution = service.create(payment.id, income.id, "800.00")

        change = service.update(attribution.id, amount=Decimal("1000.00"))

        assert change.previous_amount == Decimal("800.00")
        assert change.new_amount == Decimal("1000.00")
        assert change.attribution.amount_cents == 100_000
        session.refresh(income)
        session.refresh(payment)
        assert income.allocated_cents == 100_000
        assert income.remaining_cents == 300_000
        assert payment.remaining_capacity_cents == 20_000


def test_create_over_payment_capacity_fails_and_leaves_aggregates() -> None:
    with make_session() as session:
        payment = _payment(session, "1200.00")
        salary = _income(session, "4000.00")
        bonus = _income(session, "4000.00", name="Bonus")
        service = AttributionService(session)
        service.create(payment.id, salary.id, "800.00")

        with pytest.raises(CapacityExceededError) as excinfo:
            service.create(payment.id, bonus.id, "500.00")

        assert excinfo.value.available == Decimal("400.00")
        assert excinfo.value.requested == Decimal("500.00")
        session.refresh(bonus)
        session.refresh(payment)
        assert bonus.allocated_cents == 0
        assert bonus.remaining_cents == 400_000
        assert payment.attributed_cents == 80_000
        _assert_invariants(session)


def test_create_over_income_capacity_fails() -> None:
    with make_session() as session:
        payment = _payment(session, "1200.00")
        income = _income(session, "300.00")

        with pytest.raises(IncomeCapacityExceededError) as excinfo:
            AttributionService(session).create(payment.id, income.id, "500.00")

        assert excinfo.value.available == Decimal("300.00")
        assert excinfo.value.requested == Decimal("500.00")
        session.refresh(payment)
        assert payment.attributed_cents == 0
        assert session.scalar(select(func.count(PaymentAttribution.id))) == 0


def test_payment_side_is_checked_first() -> None:
    with make_session() as session:
        payment = _payment(session, "100.00")
        income = _income(session, "50.00")
        with pytest.raises(CapacityExceededError):
            AttributionService(session).create(payment.id, income.id, "150.00")


def test_amount_is_rounded_before_capacity_check() -> None:
    with make_session() as session:
        payment = _payment(session, "10.00")
        income = _income(session, "100.00")
        service = AttributionService(session)

        with pytest.raises(CapacityExceededError):
            service.create(payment.id, income.id, "10.005")
        with pytest.raises(ValidationError):
            service.create(payment.id, income.id, "0.004")

        attribution = service.create(payment.id, income.id, "10.004")
        assert attribution.amount_cents == 1000


def test_decrease_succeeds_when_both_sides_are_full() -> None:
    with make_session() as session:
        payment = _payment(session, "1000.00")
        income = _income(session, "1000.00")
        service = AttributionService(session)
        attribution = service.create(payment.id, income.id, "1000.00")

        change = service.update(attribution.id, amount="400.00")

        assert change.new_amount == Decimal("400.00")
        session.refresh(income)
        session.refresh(payment)
        assert income.remaining_cents == 60_000
        assert payment.remaining_capacity_cents == 60_000


def test_update_increase_reports_capacity_including_current_amount() -> None:
    with make_session() as session:
        payment = _payment(session, "1200.00")
        income = _income(session, "4000.00")
        service = AttributionService(session)
        attribution = service.create(payment.id, income.id, "800.00")

        with pytest.raises(CapacityExceededError) as excinfo:
            service.update(attribution.id, amount="1300.00")

        assert excinfo.value.available == Decimal("1200.00")
        session.refresh(attribution)
        assert attribution.amount_cents == 80_000


def test_update_type_only_keeps_amount() -> None:
    with make_session() as session:
        payment = _payment(session)
        income = _income(session)
        service = AttributionService(session)
        attribution = service.create(payment.id, income.id, "800.00")

        change = service.update(attribution.id, attribution_type="automatic")

        assert change.previous_type == AttributionType.manual
        assert change.new_type == AttributionType.automatic
        assert change.new_amount == Decimal("800.00")
        with pytest.raises(ValidationError):
            service.update(attribution.id)
        with pytest.raises(ValidationError):
            service.update(attribution.id, attribution_type="sometimes")


def test_update_and_delete_check_the_payment_reference() -> None:
    with make_session() as session:
        rent = _payment(session)
        power = _payment(session, "90.00", payee="Power")
        income = _income(session)
        service = AttributionService(session)
        attribution = service.create(rent.id, income.id, "800.00")

        with pytest.raises(ConflictError):
            service.update(attribution.id, amount="700.00", payment_id=power.id)
        with pytest.raises(ConflictError):
            service.delete(attribution.id, payment_id=power.id)

        session.refresh(attribution)
        assert attribution.amount_cents == 80_000


def test_delete_then_create_is_a_noop_on_aggregates() -> None:
    with make_session() as session:
        payment = _payment(session)
        income = _income(session)
        service = AttributionService(session)
        attribution = service.create(payment.id, income.id, "800.00")
        session.refresh(income)
        session.refresh(payment)
        before = (
            income.allocated_cents,
            income.remaining_cents,
            payment.attributed_cents,
        )

        service.delete(attribution.id)
        session.refresh(income)
        assert income.allocated_cents == 0
        service.create(payment.id, income.id, "800.00")

        session.refresh(income)
        session.refresh(payment)
        after = (
            income.allocated_cents,
            income.remaining_cents,
            payment.attributed_cents,
        )
        assert after == before
        with pytest.raises(NotFoundError):
            service.delete(attribution.id)


def test_cancelled_income_cannot_be_attributed() -> None:
    with make_session() as session:
        payment = _payment(session)
        income = _income(session)
        IncomeEventService(session).cancel(income.id)

        with pytest.raises(ValidationError):
            AttributionService(session).create(payment.id, income.id, "10.00")


def test_other_family_rows_are_not_found() -> None:
    with make_session() as session:
        payment = _payment(session, family_id=2)
        income = _income(session)

        with pytest.raises(NotFoundError):
            AttributionService(session).create(payment.id, income.id, "10.00")
        with pytest.raises(NotFoundError):
            AttributionService(session, family_id=2).create(payment.id, income.id, "10.00")


def test_conditional_update_guards_against_stale_validation(monkeypatch) -> None:
    with make_session() as session:
        payment = _payment(session, "100.00")
        first = _income(session, "1000.00")
        second = _income(session, "1000.00", name="Second")
        service = AttributionService(session)
        service.create(payment.id, first.id, "100.00")

        # Simulates a validation that read the rows before a racing writer.
        monkeypatch.setattr(
            AttributionService, "_check_capacity", staticmethod(lambda *a, **k: None)
        )
        with pytest.raises(CapacityExceededError) as excinfo:
            service.create(payment.id, second.id, "50.00")
        assert excinfo.value.available == Decimal("0.00")

        big = _payment(session, "1000.00", payee="Car")
        small = _income(session, "100.00", name="Small")
        with pytest.raises(IncomeCapacityExceededError):
            service.create(big.id, small.id, "150.00")

        session.refresh(big)
        session.refresh(second)
        assert big.attributed_cents == 0
        assert second.allocated_cents == 0
        _assert_invariants(session)


def test_auto_distribute_funds_every_need_when_income_suffices() -> None:
    with make_session() as session:
        income = _income(session, "1000.00")
        rent = _payment(session, "300.00")
        power = _payment(session, "200.00", payee="Power")

        created = AttributionService(session).auto_distribute(income.id, [rent.id, power.id])

        assert [a.amount_cents for a in created] == [30_000, 20_000]
        assert all(a.attribution_type == AttributionType.automatic for a in created)
        session.refresh(income)
        assert income.remaining_cents == 50_000


def test_auto_distribute_splits_remaining_exactly_when_short() -> None:
    with make_session() as session:
        income = _income(session, "100.00")
        payments = [_payment(session, "100.00", payee=f"Bill {i}") for i in range(3)]

        created = AttributionService(session).auto_distribute(
            income.id, [p.id for p in payments]
        )

        assert [a.amount_cents for a in created] == [3334, 3333, 3333]
        session.refresh(income)
        assert income.remaining_cents == 0
        assert income.allocated_cents == 10_000
        _assert_invariants(session)


def test_auto_distribute_skips_payments_without_capacity() -> None:
    with make_session() as session:
        income = _income(session, "500.00")
        full = _payment(session, "100.00", payee="Full")
        open_bill = _payment(session, "50.00", payee="Open")
        service = AttributionService(session)
        service.create(full.id, income.id, "100.00")

        created = service.auto_distribute(income.id, [full.id, open_bill.id, open_bill.id])

        assert [(a.payment_id, a.amount_cents) for a in created] == [(open_bill.id, 5000)]
        with pytest.raises(ValidationError):
            service.auto_distribute(income.id, [])


def test_auto_distribute_is_all_or_nothing() -> None:
    with make_session() as session:
        income = _income(session, "500.00")
        rent = _payment(session, "100.00")

        with pytest.raises(NotFoundError):
            AttributionService(session).auto_distribute(income.id, [rent.id, 9999])

        session.refresh(income)
        assert income.allocated_cents == 0
        assert session.scalar(select(func.count(PaymentAttribution.id))) == 0


def test_split_payment_requires_exact_total() -> None:
    with make_session() as session:
        payment = _payment(session, "1200.00")
        salary = _income(session, "1000.00")
        bonus = _income(session, "1000.00", name="Bonus")
        service = AttributionService(session)

        with pytest.raises(ValidationError):
            service.split_payment(payment.id, [(salary.id, "700.00"), (bonus.id, "400.00")])

        created = service.split_payment(
            payment.id, [(salary.id, "700.00"), (bonus.id, "500.00")]
        )
        assert sorted(a.amount_cents for a in created) == [50_000, 70_000]
        session.refresh(payment)
        assert payment.remaining_capacity_cents == 0

        with pytest.raises(ValidationError):
            service.split_payment(payment.id, [(salary.id, "1200.00")])


def test_split_payment_rolls_back_on_income_shortfall() -> None:
    with make_session() as session:
        payment = _payment(session, "1200.00")
        salary = _income(session, "1000.00")
        small = _income(session, "100.00", name="Small")

        with pytest.raises(IncomeCapacityExceededError):
            AttributionService(session).split_payment(
                payment.id, [(salary.id, "700.00"), (small.id, "500.00")]
            )

        session.refresh(salary)
        session.refresh(payment)
        assert salary.allocated_cents == 0
        assert payment.attributed_cents == 0


def test_auto_attribute_uses_earliest_income_that_covers_payment() -> None:
    with make_session() as session:
        payment = _payment(session, "500.00", due=date(2025, 3, 10))
        _income(session, "100.00", scheduled=date(2025, 3, 1), name="Too small")
        late = _income(session, "5000.00", scheduled=date(2025, 3, 20), name="Too late")
        good = _income(session, "600.00", scheduled=date(2025, 3, 5), name="Good")
        service = AttributionService(session)

        attribution = service.auto_attribute_payment(payment.id)

        assert attribution.income_event_id == good.id
        assert attribution.attribution_type == AttributionType.automatic
        with pytest.raises(ValidationError):
            service.auto_attribute_payment(payment.id)

        lonely = _payment(session, "900.00", due=date(2025, 3, 10), payee="Car")
        assert service.auto_attribute_payment(lonely.id) is None
        session.refresh(late)
        assert late.allocated_cents == 0


def test_income_suggestions_rank_by_confidence() -> None:
    with make_session() as session:
        payment = _payment(session, "1000.00", due=date(2025, 3, 10))
        low = _income(session, "100.00", scheduled=date(2025, 3, 1), name="Low")
        medium = _income(session, "600.00", scheduled=date(2025, 3, 2), name="Medium")
        high = _income(session, "2000.00", scheduled=date(2025, 3, 3), name="High")

        suggestions = AttributionService(session).suggest_income_for_payment(payment.id)

        assert [(s.income_event_id, s.confidence) for s in suggestions] == [
            (high.id, "high"),
            (medium.id, "medium"),
            (low.id, "low"),
        ]
        assert suggestions[1].suggested_cents == 60_000


def test_validate_capacity_collects_errors_without_writing() -> None:
    with make_session() as session:
        payment = _payment(session, "1000.00")
        salary = _income(session, "500.00")
        service = AttributionService(session)

        ok = service.validate_capacity(payment.id, [(salary.id, "400.00")])
        assert ok.is_valid
        assert ok.total_proposed_cents == 40_000

        bad = service.validate_capacity(
            payment.id, [(salary.id, "600.00"), (999, "500.00"), (salary.id, "-1")]
        )
        assert not bad.is_valid
        assert "Total attributions exceed payment amount" in bad.errors
        assert "Income event not found: 999" in bad.errors
        assert "Attribution amounts must be positive" in bad.errors
        assert any("exceeds available income for Salary" in e for e in bad.errors)
        assert session.scalar(select(func.count(PaymentAttribution.id))) == 0


def test_summaries_and_history() -> None:
    with make_session() as session:
        payment = _payment(session, "1200.00")
        salary = _income(session, "4000.00")
        bonus = _income(session, "1000.00", name="Bonus")
        service = AttributionService(session)
        service.create(payment.id, salary.id, "900.00", created_by="sam")
        service.create(payment.id, bonus.id, "300.00")

        summary = service.payment_summary(payment.id)
        assert summary.attributed_cents == 120_000
        assert summary.remaining_cents == 0
        assert [line.percentage for line in summary.lines] == [75.0, 25.0]
        assert [line.counterpart_name for line in summary.lines] == ["Salary", "Bonus"]

        income_summary = service.income_summary(salary.id)
        assert income_summary.remaining_cents == 310_000
        assert income_summary.lines[0].counterpart_name == "Rent"
        assert income_summary.lines[0].percentage == 22.5

        history = service.history(limit=10)
        assert len(history) == 2
        assert {row["income_event_name"] for row in history} == {"Salary", "Bonus"}
        assert service.history(limit=1, offset=1)[0]["id"] in {r["id"] for r in history}


def test_random_operation_sequence_keeps_invariants() -> None:
    rng = random.Random(20250301)
    with make_session() as session:
        payments = [_payment(session, f"{rng.randint(50, 900)}.00", payee=f"P{i}") for i in range(4)]
        incomes = [_income(session, f"{rng.randint(100, 1500)}.00", name=f"I{i}") for i in range(3)]
        service = AttributionService(session)
        live: list[int] = []

        for _ in range(60):
            op = rng.choice(["create", "update", "delete"])
            try:
                if op == "create" or not live:
                    attribution = service.create(
                        rng.choice(payments).id,
                        rng.choice(incomes).id,
                        f"{rng.randint(1, 400)}.{rng.randint(0, 99):02d}",
                    )
                    live.append(attribution.id)
                elif op == "update":
                    service.update(rng.choice(live), amount=f"{rng.randint(1, 400)}.00")
                else:
                    victim = rng.choice(live)
                    service.delete(victim)
                    live.remove(victim)
            except (CapacityExceededError, IncomeCapacityExceededError):
                pass
            _assert_invariants(session)


def test_validate_capacity_sums_proposals_per_income() -> None:
    with make_session() as session:
        payment = _payment(session, "120.00")
        salary = _income(session, "100.00")
        service = AttributionService(session)
        proposals = [(salary.id, "60.00"), (salary.id, "60.00")]

        check = service.validate_capacity(payment.id, proposals)

        assert not check.is_valid
        assert check.errors == ["Amount 120.00 exceeds available income for Salary"]
        with pytest.raises(IncomeCapacityExceededError):
            service.split_payment(payment.id, proposals)
        assert service.validate_capacity(payment.id, [(salary.id, "50.00")] * 2).is_valid
