"""
Application, loan and repayment endpoints
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, status

from ..applications import ApplicationStatus
from ..engine import LendingSystem
from ..loans import LoanStatus
from .dependencies import get_system
from .schemas import (
    ApproveApplicationRequest, CreateApplicationRequest, CreateLoanRequest, DisburseLoanRequest,
    RejectApplicationRequest, RepaymentRequest, WriteOffRequest, serialize, serialize_many,
)


applications_router = APIRouter()
router = APIRouter()


@applications_router.post("", status_code=status.HTTP_201_CREATED)
async def create_application(
    request: CreateApplicationRequest,
    system: LendingSystem = Depends(get_system)
):
    """Record a loan application"""
    application = system.applications.create_application(
        request.member_id, request.principal, request.term_months, request.annual_rate
    )
    return serialize(application)


@applications_router.get("")
async def list_applications(
    status: Optional[ApplicationStatus] = None,
    system: LendingSystem = Depends(get_system)
):
    return {"applications": serialize_many(system.applications.list_applications(status))}


@applications_router.get("/{application_id}")
async def get_application(
    application_id: str,
    system: LendingSystem = Depends(get_system)
):
    return serialize(system.applications.require_application(application_id))


@applications_router.post("/{application_id}/approve")
async def approve_application(
    application_id: str,
    request: ApproveApplicationRequest,
    system: LendingSystem = Depends(get_system)
):
    """Approve and, by default, reserve monthly threshold capacity"""
    application = system.applications.approve_application(
        application_id, request.approved_amount, approved_by=request.approved_by
    )
    allocation = None
    if request.allocate_threshold:
        allocation = system.allocate_threshold(application_id)
        application = system.applications.require_application(application_id)
    return {"application": serialize(application), "allocation": serialize(allocation)}


@applications_router.post("/{application_id}/reject")
async def reject_application(
    application_id: str,
    request: RejectApplicationRequest,
    system: LendingSystem = Depends(get_system)
):
    application = system.reject_application(application_id, request.reason, request.rejected_by)
    return serialize(application)


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    system: LendingSystem = Depends(get_system)
):
    """Create a loan in PENDING status"""
    loan = system.loan_manager.create_loan(
        request.member_id, request.principal, request.annual_rate, request.term_months,
        application_id=request.application_id, created_by=request.created_by,
    )
    return serialize(loan)


@router.get("")
async def list_loans(
    status: Optional[LoanStatus] = None,
    member_id: Optional[str] = None,
    system: LendingSystem = Depends(get_system)
):
    return {"loans": serialize_many(system.loan_manager.list_loans(status, member_id))}


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    system: LendingSystem = Depends(get_system)
):
    return serialize(system.loan_manager.require_loan(loan_id))


@router.post("/{loan_id}/disburse")
async def disburse_loan(
    loan_id: str,
    request: DisburseLoanRequest,
    system: LendingSystem = Depends(get_system)
):
    """Disburse, persist the schedule and assign the register serial"""
    loan = system.loan_manager.disburse_loan(
        loan_id, request.disbursement_date, disbursed_by=request.disbursed_by
    )
    return serialize(loan)


@router.post("/{loan_id}/write-off")
async def write_off_loan(
    loan_id: str,
    request: WriteOffRequest,
    system: LendingSystem = Depends(get_system)
):
    loan = system.loan_manager.write_off_loan(loan_id, request.reason, request.written_off_by)
    return serialize(loan)


@router.get("/{loan_id}/schedule")
async def get_schedule(
    loan_id: str,
    system: LendingSystem = Depends(get_system)
):
    return {"schedule": serialize_many(system.repayments.get_repayment_schedule(loan_id))}


@router.post("/{loan_id}/payments")
async def make_payment(
    loan_id: str,
    request: RepaymentRequest,
    system: LendingSystem = Depends(get_system)
):
    """Apply a payment: penalty, then interest, then principal"""
    receipt = system.process_repayment(
        loan_id, request.amount,
        payment_method=request.payment_method,
        reference=request.reference,
        processed_by=request.processed_by,
        payment_date=request.payment_date,
    )
    return serialize(receipt)


@router.get("/{loan_id}/payments")
async def get_payments(
    loan_id: str,
    system: LendingSystem = Depends(get_system)
):
    return {"payments": serialize_many(system.repayments.get_repayment_history(loan_id))}


@router.get("/{loan_id}/payoff")
async def get_payoff_quote(
    loan_id: str,
    as_of: Optional[date] = None,
    system: LendingSystem = Depends(get_system)
):
    dues = system.repayments.get_payoff_quote(loan_id, as_of)
    result = serialize(dues)
    result["total_due"] = serialize(dues.total_due)
    result["payoff_amount"] = serialize(dues.payoff_amount)
    return result


@router.get("/{loan_id}/delinquency")
async def get_delinquency_history(
    loan_id: str,
    system: LendingSystem = Depends(get_system)
):
    system.loan_manager.require_loan(loan_id)
    return {"history": serialize_many(system.delinquency.get_delinquency_history(loan_id))}
