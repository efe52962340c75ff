"""
Pydantic schemas for API requests and responses
"""

import dataclasses
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator

from ..currency import Currency, Money, decimal_from_string


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (NGN, USD, etc.)")

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


def _decimal_string(value: Any) -> str:
    """Accept "1,250,000.50" style strings and ints; never floats"""
    if isinstance(value, float):
        raise ValueError("Monetary values must be sent as strings, not floats")
    return str(decimal_from_string(str(value)))


class AmountRequest(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")

    @field_validator("amount", mode="before")
    @classmethod
    def _check_amount(cls, value):
        return _decimal_string(value)


# Calculator schemas
class LoanParametersRequest(BaseModel):
    principal: str = Field(..., description="Principal as decimal string")
    annual_rate: str = Field(..., description="Annual nominal rate in percent, e.g. \"12\"")
    term_months: int
    start_date: Optional[date] = None

    @field_validator("principal", "annual_rate", mode="before")
    @classmethod
    def _check_decimal(cls, value):
        return _decimal_string(value)


class PenaltyRequest(BaseModel):
    overdue_amount: str
    days_overdue: int = Field(..., ge=0)

    @field_validator("overdue_amount", mode="before")
    @classmethod
    def _check_decimal(cls, value):
        return _decimal_string(value)


# Application and loan schemas
class CreateApplicationRequest(LoanParametersRequest):
    member_id: str


class ApproveApplicationRequest(BaseModel):
    approved_amount: Optional[str] = None
    approved_by: Optional[str] = None
    allocate_threshold: bool = True

    @field_validator("approved_amount", mode="before")
    @classmethod
    def _check_decimal(cls, value):
        return None if value is None else _decimal_string(value)


class RejectApplicationRequest(BaseModel):
    reason: str
    rejected_by: Optional[str] = None


class CreateLoanRequest(LoanParametersRequest):
    member_id: str
    application_id: Optional[str] = None
    created_by: Optional[str] = None


class DisburseLoanRequest(BaseModel):
    disbursement_date: Optional[date] = None
    disbursed_by: Optional[str] = None


class WriteOffRequest(BaseModel):
    reason: str
    written_off_by: Optional[str] = None


class RepaymentRequest(AmountRequest):
    payment_method: str = "cash"
    reference: Optional[str] = None
    processed_by: Optional[str] = None
    payment_date: Optional[date] = None


# Member and guarantor schemas
class CreateMemberRequest(BaseModel):
    name: str
    initial_equity: str = "0"
    member_id: Optional[str] = None

    @field_validator("initial_equity", mode="before")
    @classmethod
    def _check_decimal(cls, value):
        return _decimal_string(value)


class AddGuarantorRequest(BaseModel):
    member_id: str
    guarantee_amount: str
    added_by: Optional[str] = None

    @field_validator("guarantee_amount", mode="before")
    @classmethod
    def _check_decimal(cls, value):
        return _decimal_string(value)


class ConsentRequest(BaseModel):
    approved: bool
    notes: Optional[str] = None


class LockEquityRequest(BaseModel):
    amount: Optional[str] = None

    @field_validator("amount", mode="before")
    @classmethod
    def _check_decimal(cls, value):
        return None if value is None else _decimal_string(value)


# Threshold schemas
class SetThresholdRequest(BaseModel):
    month: int
    year: int
    max_loan_amount: str
    set_by: Optional[str] = None

    @field_validator("max_loan_amount", mode="before")
    @classmethod
    def _check_decimal(cls, value):
        return _decimal_string(value)


class ReleaseThresholdRequest(AmountRequest):
    month: int
    year: int


class RolloverRequest(BaseModel):
    as_of: Optional[date] = None


# Delinquency schemas
class DelinquencyRunRequest(BaseModel):
    check_date: Optional[date] = None


class RegisterLoanRequest(BaseModel):
    loan_id: str
    registered_by: Optional[str] = None


def serialize(value: Any) -> Any:
    """Turn engine records and results into JSON-ready structures"""
    if isinstance(value, Money):
        return MoneyModel.from_money(value).model_dump()
    if isinstance(value, Currency):
        return value.code
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: serialize(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, dict):
        return {str(k): serialize(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize(v) for v in value]
    return value


def serialize_many(values: List[Any]) -> List[Any]:
    return [serialize(v) for v in values]
