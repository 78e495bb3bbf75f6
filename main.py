import logging
from dataclasses import dataclass
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from auth import read_family_token
from database import SessionLocal
from errors import (
    CapacityExceededError,
    ConflictError,
    IncomeCapacityExceededError,
    LedgerError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from models import (
    BankAccount,
    IncomeEvent,
    IncomeStatus,
    Payment,
    PaymentAttribution,
    PaymentStatus,
    SpendingCategory,
    Transaction,
)
from money import cents_to_decimal
from scheduler import SchedulerManager
from schemas import (
    ApplyMatchIn,
    ApplyRulesIn,
    AttributionIn,
    AttributionUpdateIn,
    AutoDistributeIn,
    BankAccountIn,
    BankTransactionIn,
    CapacityProposalIn,
    CategorizeBatchIn,
    IncomeEventIn,
    MarkPaidIn,
    MarkReceivedIn,
    MatchPaymentsIn,
    PaymentIn,
    SpendingCategoryIn,
    SplitPaymentIn,
)
from services import (
    AttributionService,
    AttributionSummary,
    BankAccountService,
    CategorizationService,
    IncomeEventService,
    MatchService,
    PaymentService,
    SpendingCategoryService,
    TransactionService,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Household Budget")


def _load_app_version() -> str:
    try:
        import tomllib
    except ImportError:
        return "unknown"
    try:
        with open("pyproject.toml", "rb") as f:
            data = tomllib.load(f)
        return str(data.get("project", {}).get("version", "unknown"))
    except (OSError, tomllib.TOMLDecodeError):
        return "unknown"


APP_VERSION = _load_app_version()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


_ERROR_STATUS = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (CapacityExceededError, 409),
    (IncomeCapacityExceededError, 409),
    (ConflictError, 409),
    (StoreError, 503),
)


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError) -> JSONResponse:
    status = next((code for kind, code in _ERROR_STATUS if isinstance(exc, kind)), 500)
    body: dict = {"detail": str(exc), "error": type(exc).__name__}
    if isinstance(exc, (CapacityExceededError, IncomeCapacityExceededError)):
        body["available"] = str(exc.available)
        body["requested"] = str(exc.requested)
    if status >= 500:
        logger.error(f"request_failed: path={request.url.path} error={exc}")
    return JSONResponse(status_code=status, content=body)


@dataclass(frozen=True)
class Caller:
    family_id: int
    member: Optional[str] = None


def current_caller(authorization: Optional[str] = Header(default=None)) -> Caller:
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(
            status_code=401,
            detail="Missing or invalid Authorization header. Expected: Bearer <token>",
        )
    data = read_family_token(token.strip())
    if data is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return Caller(family_id=data["f"], member=data.get("m"))


def _money(cents: Optional[int]) -> Optional[str]:
    return None if cents is None else str(cents_to_decimal(cents))


def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def category_out(category: SpendingCategory) -> dict:
    return {
        "id": category.id,
        "name": category.name,
        "color": category.color,
        "is_active": category.is_active,
    }


def account_out(account: BankAccount) -> dict:
    return {
        "id": account.id,
        "name": account.name,
        "institution_name": account.institution_name,
    }


def payment_out(payment: Payment) -> dict:
    return {
        "id": payment.id,
        "payee": payment.payee,
        "amount": _money(payment.amount_cents),
        "attributed_amount": _money(payment.attributed_cents),
        "remaining_capacity": _money(payment.remaining_capacity_cents),
        "due_date": _iso(payment.due_date),
        "anchor_day": payment.anchor_day,
        "status": payment.status.value,
        "frequency": payment.frequency.value,
        "spending_category_id": payment.spending_category_id,
        "paid_date": _iso(payment.paid_date),
        "paid_amount": _money(payment.paid_amount_cents),
        "notes": payment.notes,
    }


def income_out(income: IncomeEvent) -> dict:
    return {
        "id": income.id,
        "name": income.name,
        "amount": _money(income.amount_cents),
        "expected_amount": _money(income.expected_amount_cents),
        "allocated_amount": _money(income.allocated_cents),
        "remaining_amount": _money(income.remaining_cents),
        "scheduled_date": _iso(income.scheduled_date),
        "anchor_day": income.anchor_day,
        "actual_date": _iso(income.actual_date),
        "status": income.status.value,
        "frequency": income.frequency.value,
    }


def attribution_out(attribution: PaymentAttribution) -> dict:
    return {
        "id": attribution.id,
        "payment_id": attribution.payment_id,
        "income_event_id": attribution.income_event_id,
        "amount": _money(attribution.amount_cents),
        "attribution_type": attribution.attribution_type.value,
        "created_by": attribution.created_by,
    }


def transaction_out(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "bank_account_id": txn.bank_account_id,
        "external_id": txn.external_id,
        "amount": _money(txn.amount_cents),
        "date": _iso(txn.date),
        "description": txn.description,
        "merchant_name": txn.merchant_name,
        "pending": txn.pending,
        "provider_category": txn.provider_category,
        "spending_category_id": txn.spending_category_id,
        "category_confidence": txn.category_confidence,
        "user_categorized": txn.user_categorized,
        "payment_id": txn.payment_id,
    }


def summary_out(summary: AttributionSummary) -> dict:
    return {
        "total_amount": _money(summary.total_cents),
        "total_attributed": _money(summary.attributed_cents),
        "remaining_amount": _money(summary.remaining_cents),
        "attributions": [
            {
                "id": line.attribution_id,
                "counterpart_id": line.counterpart_id,
                "counterpart_name": line.counterpart_name,
                "counterpart_date": _iso(line.counterpart_date),
                "amount": _money(line.amount_cents),
                "attribution_type": line.attribution_type.value,
                "percentage": line.percentage,
            }
            for line in summary.lines
        ],
    }


@app.get("/api/health")
def api_health():
    return {"status": "ok", "version": APP_VERSION}


@app.get("/api/bank-accounts")
def api_bank_accounts(
    caller: Caller = Depends(current_caller), db: Session = Depends(get_db)
):
    accounts = BankAccountService(db, caller.family_id).list()
    return {"items": [account_out(a) for a in accounts]}


@app.post("/api/bank-accounts", status_code=201)
def api_create_bank_account(
    payload: BankAccountIn,
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    account = BankAccountService(db, caller.family_id).create(
        payload.name, payload.institution_name
    )
    return account_out(account)


@app.get("/api/spending-categories")
def api_spending_categories(
    caller: Caller = Depends(current_caller), db: Session = Depends(get_db)
):
    categories = SpendingCategoryService(db, caller.family_id).list_active()
    return {"items": [category_out(c) for c in categories]}


@app.post("/api/spending-categories", status_code=201)
def api_create_spending_category(
    payload: SpendingCategoryIn,
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    category = SpendingCategoryService(db, caller.family_id).create(payload)
    return category_out(category)


@app.delete("/api/spending-categories/{category_id}", status_code=204)
def api_deactivate_spending_category(
    category_id: int,
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    SpendingCategoryService(db, caller.family_id).deactivate(category_id)


@app.get("/api/payments")
def api_payments(
    status: Optional[PaymentStatus] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    payments = PaymentService(db, caller.family_id).list(status=status, start=start, end=end)
    return {"items": [payment_out(p) for p in payments]}


@app.post("/api/payments", status_code=201)
def api_create_payment(
    payload: PaymentIn,
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    payment = PaymentService(db, caller.family_id).create(payload, actor=caller.member)
    return payment_out(payment)


@app.get("/api/payments/{payment_id}")
def api_payment(
    payment_id: int,
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    return payment_out(PaymentService(db, caller.family_id).get(payment_id))


@app.post("/api/payments/{payment_id}/mark-paid")
def api_mark_paid(
    payment_id: int,
    payload: MarkPaidIn,
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    payment = PaymentService(db, caller.family_id).mark_paid(
        payment_id, payload.paid_amount, payload.paid_date, actor=caller.member
    )
    return payment_out(payment)


@app.post("/api/payments/{payment_id}/revert-paid")
def api_revert_paid(
    payment_id: int,
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    payment = PaymentService(db, caller.family_id).revert_paid(
        payment_id, actor=caller.member
    )
    return payment_out(payment)


@app.get("/api/payments/{payment_id}/attributions")
def api_payment_attributions(
    payment_id: int,
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    summary = AttributionService(db, caller.family_id).payment_summary(payment_id)
    return summary_out(summary)


@app.post("/api/payments/{payment_id}/attributions", status_code=201)
def api_create_attribution(
    payment_id: int,
    payload: AttributionIn,
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    attribution = AttributionService(db, caller.family_id).create(
        payment_id,
        payload.income_event_id,
        payload.amount,
        payload.attribution_type,
        created_by=caller.member,
    )
    return attribution_out(attribution)


@app.patch("/api/payments/{payment_id}/attributions/{attribution_id}")
def api_update_attribution(
    payment_id: int,
    attribution_id: int,
    payload: AttributionUpdateIn,
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    change = AttributionService(db, caller.family_id).update(
        attribution_id,
        payload.amount,
        payload.attribution_type,
        payment_id=payment_id,
        updated_by=caller.member,
    )
    return {
        "attribution": attribution_out(change.attribution),
        "previous_amount": str(change.previous_amount),
        "new_amount": str(change.new_amount),
        "previous_type": change.previous_type.value,
        "new_type": change.new_type.value,
    }


@app.delete("/api/payments/{payment_id}/attributions/{attribution_id}", status_code=204)
def api_delete_attribution(
    payment_id: int,
    attribution_id: int,
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    AttributionService(db, caller.family_id).delete(
        attribution_id, payment_id=payment_id, deleted_by=caller.member
    )


@app.post("/api/payments/{payment_id}/split", status_code=201)
def api_split_payment(
    payment_id: int,
    payload: SplitPaymentIn,
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    created = AttributionService(db, caller.family_id).split_payment(
        payment_id,
        [(part.income_event_id, part.amount) for part in payload.attributions],
        payload.attribution_type,
        created_by=caller.member,
    )
    return {"items": [attribution_out(a) for a in created]}


@app.post("/api/payments/{payment_id}/auto-attribute")
def api_auto_attribute(
    payment_id: int,
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    attribution = AttributionService(db, caller.family_id).auto_attribute_payment(
        payment_id, created_by=caller.member
    )
    return {"attribution": attribution_out(attribution) if attribution else None}


@app.get("/api/payments/{payment_id}/income-suggestions")
def api_income_suggestions(
    payment_id: int,
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    suggestions = AttributionService(db, caller.family_id).suggest_income_for_payment(
        payment_id
    )
    return {
        "items": [
            {
                "income_event_id": s.income_event_id,
                "name": s.name,
                "scheduled_date": _iso(s.scheduled_date),
                "available_amount": _money(s.available_cents),
                "suggested_amount": _money(s.suggested_cents),
                "confidence": s.confidence,
            }
            for s in suggestions
        ]
    }


@app.post("/api/payments/{payment_id}/validate-capacity")
def api_validate_capacity(
    payment_id: int,
    payload: list[CapacityProposalIn],
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    check = AttributionService(db, caller.family_id).validate_capacity(
        payment_id, [(p.income_event_id, p.amount) for p in payload]
    )
    return {
        "is_valid": check.is_valid,
        "errors": check.errors,
        "total_proposed": _money(check.total_proposed_cents),
        "payment_amount": _money(check.payment_amount_cents),
    }


@app.get("/api/income-events")
def api_income_events(
    status: Optional[IncomeStatus] = None,
    start: Optional[date] = None,
    end: Optional[date] = None,
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    events = IncomeEventService(db, caller.family_id).list(
        status=status, start=start, end=end
    )
    return {"items": [income_out(i) for i in events]}


@app.post("/api/income-events", status_code=201)
def api_create_income_event(
    payload: IncomeEventIn,
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    income = IncomeEventService(db, caller.family_id).create(payload, actor=caller.member)
    return income_out(income)


@app.get("/api/income-events/{income_event_id}")
def api_income_event(
    income_event_id: int,
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    return income_out(IncomeEventService(db, caller.family_id).get(income_event_id))


@app.post("/api/income-events/{income_event_id}/mark-received")
def api_mark_received(
    income_event_id: int,
    payload: MarkReceivedIn,
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    income = IncomeEventService(db, caller.family_id).mark_received(
        income_event_id,
        payload.actual_amount,
        payload.actual_date,
        actor=caller.member,
    )
    return income_out(income)


@app.post("/api/income-events/{income_event_id}/cancel")
def api_cancel_income_event(
    income_event_id: int,
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    income = IncomeEventService(db, caller.family_id).cancel(
        income_event_id, actor=caller.member
    )
    return income_out(income)


@app.get("/api/income-events/{income_event_id}/attributions")
def api_income_attributions(
    income_event_id: int,
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    summary = AttributionService(db, caller.family_id).income_summary(income_event_id)
    return summary_out(summary)


@app.post("/api/income-events/{income_event_id}/distribute", status_code=201)
def api_auto_distribute(
    income_event_id: int,
    payload: AutoDistributeIn,
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    created = AttributionService(db, caller.family_id).auto_distribute(
        income_event_id, payload.payment_ids, created_by=caller.member
    )
    return {"items": [attribution_out(a) for a in created]}


@app.get("/api/attributions/history")
def api_attribution_history(
    limit: int = 50,
    offset: int = 0,
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    limit = min(max(limit, 1), 200)
    rows = AttributionService(db, caller.family_id).history(limit=limit, offset=max(offset, 0))
    return {
        "items": [
            {
                **row,
                "amount": str(row["amount"]),
                "created_at": row["created_at"].isoformat(),
            }
            for row in rows
        ]
    }


@app.get("/api/transactions")
def api_transactions(
    start: Optional[date] = None,
    end: Optional[date] = None,
    uncategorized: bool = False,
    unmatched: bool = False,
    limit: int = 100,
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    limit = min(max(limit, 1), 500)
    items = TransactionService(db, caller.family_id).list(
        start=start,
        end=end,
        unmatched_only=unmatched,
        uncategorized_only=uncategorized,
        limit=limit,
    )
    return {"items": [transaction_out(t) for t in items]}


@app.post("/api/transactions/ingest")
def api_ingest_transactions(
    payload: list[BankTransactionIn],
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    result = TransactionService(db, caller.family_id).ingest(payload)
    return {
        "created": result.created,
        "updated": result.updated,
        "items": [transaction_out(t) for t in result.transactions],
    }


@app.post("/api/transactions/match-payments")
def api_match_payments(
    payload: MatchPaymentsIn,
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    report = MatchService(db, caller.family_id).propose(
        start=payload.from_date,
        end=payload.to_date,
        bank_account_ids=payload.account_ids,
        amount_tolerance=payload.amount_tolerance,
        date_tolerance=payload.date_tolerance,
    )
    return {
        "matches": [
            {
                "transaction_id": p.transaction_id,
                "payment_id": p.payment_id,
                "confidence": p.confidence,
                "reason": p.reason,
            }
            for p in report.proposals
        ],
        "summary": {
            "total_transactions": report.total_transactions,
            "total_matches": report.total_matches,
            "high_confidence_matches": report.high_confidence_matches,
        },
    }


@app.post("/api/transactions/apply-match")
def api_apply_match(
    payload: ApplyMatchIn,
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    txn = MatchService(db, caller.family_id).apply_match(
        payload.transaction_id, payload.payment_id, actor=caller.member
    )
    return transaction_out(txn)


@app.post("/api/transactions/apply-rules")
def api_apply_rules(
    payload: ApplyRulesIn,
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    run = CategorizationService(db, caller.family_id).apply_category_rules(
        payload.transaction_ids
    )
    return {
        "categorized_count": run.categorized_count,
        "results": [
            {
                "transaction_id": a.transaction_id,
                "category_id": a.suggestion.category_id,
                "category_name": a.suggestion.category_name,
                "confidence": a.suggestion.confidence,
                "reason": a.suggestion.reason,
            }
            for a in run.assignments
        ],
    }


@app.post("/api/transactions/categorize-batch")
def api_categorize_batch(
    payload: CategorizeBatchIn,
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    result = TransactionService(db, caller.family_id).categorize_batch(
        payload.transaction_ids,
        payload.spending_category_id,
        payload.user_categorized,
        actor=caller.member,
    )
    return {
        "updated_count": len(result.updated_ids),
        "updated_ids": result.updated_ids,
        "errors": result.errors,
    }


@app.get("/api/transactions/suggestions")
def api_category_suggestions(
    caller: Caller = Depends(current_caller), db: Session = Depends(get_db)
):
    suggestions = CategorizationService(db, caller.family_id).suggestions()
    return {
        "items": [
            {
                "category_id": s.category_id,
                "category_name": s.category_name,
                "hits": s.hits,
                "confidence": s.confidence,
                "reason": s.reason,
            }
            for s in suggestions
        ]
    }


@app.get("/api/transactions/{transaction_id}/category-suggestion")
def api_transaction_category_suggestion(
    transaction_id: int,
    caller: Caller = Depends(current_caller),
    db: Session = Depends(get_db),
):
    suggestion = CategorizationService(db, caller.family_id).categorize(transaction_id)
    if suggestion is None:
        return {"suggestion": None}
    return {
        "suggestion": {
            "category_id": suggestion.category_id,
            "category_name": suggestion.category_name,
            "confidence": suggestion.confidence,
            "reason": suggestion.reason,
        }
    }
