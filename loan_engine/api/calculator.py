"""
Loan calculator endpoints
"""

from fastapi import APIRouter, Depends

from ..engine import LendingSystem
from .dependencies import get_system
from .schemas import LoanParametersRequest, PenaltyRequest, serialize, serialize_many


router = APIRouter()


@router.post("/validate")
async def validate_parameters(
    request: LoanParametersRequest,
    system: LendingSystem = Depends(get_system)
):
    """Check principal, rate and term without raising"""
    result = system.calculator.validate_loan_parameters(
        request.principal, request.annual_rate, request.term_months
    )
    return {"is_valid": result.is_valid, "errors": result.errors}


@router.post("/emi")
async def calculate_emi(
    request: LoanParametersRequest,
    system: LendingSystem = Depends(get_system)
):
    """Monthly installment plus contract totals"""
    calculator = system.calculator
    emi = system.calculate_emi(request.principal, request.annual_rate, request.term_months)
    total_interest = calculator.calculate_total_interest(
        request.principal, request.annual_rate, request.term_months
    )
    total_repayable = calculator.calculate_total_repayable(
        request.principal, request.annual_rate, request.term_months
    )
    return {
        "emi": serialize(emi),
        "total_interest": serialize(total_interest),
        "total_repayable": serialize(total_repayable),
    }


@router.post("/schedule")
async def amortization_schedule(
    request: LoanParametersRequest,
    system: LendingSystem = Depends(get_system)
):
    """Full reducing-balance schedule"""
    schedule = system.generate_amortization_schedule(
        request.principal, request.annual_rate, request.term_months, request.start_date
    )
    return {
        "emi": serialize(schedule.emi),
        "total_interest": serialize(schedule.total_interest),
        "total_payment": serialize(schedule.total_payment),
        "installments": serialize_many(schedule.entries),
    }


@router.post("/penalty")
async def calculate_penalty(
    request: PenaltyRequest,
    system: LendingSystem = Depends(get_system)
):
    """Late-payment penalty at the configured daily rate"""
    penalty = system.calculator.calculate_penalty(request.overdue_amount, request.days_overdue)
    return {"penalty": serialize(penalty)}
