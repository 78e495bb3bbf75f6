import datetime as dt
from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import AttributionType, Frequency


class SpendingCategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    color: Optional[str] = Field(default=None, max_length=7)


class PaymentIn(BaseModel):
    payee: str = Field(..., min_length=1, max_length=200)
    amount: Decimal = Field(..., gt=0)
    due_date: date
    frequency: Frequency = Frequency.once
    spending_category_id: Optional[int] = None
    notes: Optional[str] = Field(default=None, max_length=500)


class IncomeEventIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    amount: Decimal = Field(..., ge=0)
    scheduled_date: date
    frequency: Frequency = Frequency.once


class MarkReceivedIn(BaseModel):
    actual_amount: Optional[Decimal] = Field(default=None, ge=0)
    actual_date: Optional[dt.date] = None


class MarkPaidIn(BaseModel):
    paid_amount: Optional[Decimal] = Field(default=None, gt=0)
    paid_date: Optional[dt.date] = None


class AttributionIn(BaseModel):
    income_event_id: int
    amount: Decimal
    attribution_type: AttributionType = AttributionType.manual


class AttributionUpdateIn(BaseModel):
    amount: Optional[Decimal] = None
    attribution_type: Optional[AttributionType] = None


class SplitPartIn(BaseModel):
    income_event_id: int
    amount: Decimal


class SplitPaymentIn(BaseModel):
    attributions: list[SplitPartIn] = Field(..., min_length=1)
    attribution_type: AttributionType = AttributionType.manual


class AutoDistributeIn(BaseModel):
    payment_ids: list[int] = Field(..., min_length=1)


class CapacityProposalIn(BaseModel):
    income_event_id: int
    amount: Decimal


class MatchPaymentsIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    from_date: Optional[date] = None
    to_date: Optional[date] = None
    account_ids: Optional[list[int]] = None
    amount_tolerance: Optional[Decimal] = None
    date_tolerance: Optional[int] = None


class ApplyMatchIn(BaseModel):
    transaction_id: int
    payment_id: int


class CategorizeBatchIn(BaseModel):
    transaction_ids: list[int] = Field(..., min_length=1, max_length=100)
    spending_category_id: int
    user_categorized: bool = True


class ApplyRulesIn(BaseModel):
    transaction_ids: Optional[list[int]] = None


class BankTransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    bank_account_id: int
    external_id: Optional[str] = Field(default=None, max_length=120)
    amount: Decimal
    date: dt.date
    description: str = Field(default="", max_length=500)
    merchant_name: Optional[str] = Field(default=None, max_length=200)
    pending: bool = False
    provider_category: Optional[str] = Field(default=None, max_length=200)
    category: Optional[str] = Field(default=None, max_length=100)


class BankAccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    institution_name: Optional[str] = Field(default=None, max_length=120)
