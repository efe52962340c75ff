"""
Member equity and guarantor endpoints
"""

from fastapi import APIRouter, Depends, status

from ..engine import LendingSystem
from .dependencies import get_system
from .schemas import (
    AddGuarantorRequest, AmountRequest, ConsentRequest, CreateMemberRequest, LockEquityRequest,
    serialize, serialize_many,
)


router = APIRouter()
guarantors_router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_member(
    request: CreateMemberRequest,
    system: LendingSystem = Depends(get_system)
):
    member = system.guarantors.create_member(request.name, request.initial_equity, request.member_id)
    return serialize(member)


@router.get("/{member_id}")
async def get_member_dashboard(
    member_id: str,
    system: LendingSystem = Depends(get_system)
):
    """Equity split and guarantee counts"""
    return serialize(system.guarantors.get_member_dashboard(member_id))


@router.post("/{member_id}/equity")
async def deposit_equity(
    member_id: str,
    request: AmountRequest,
    system: LendingSystem = Depends(get_system)
):
    return serialize(system.guarantors.deposit_equity(member_id, request.amount))


@router.get("/{member_id}/eligibility")
async def check_eligibility(
    member_id: str,
    amount: str,
    system: LendingSystem = Depends(get_system)
):
    """Can this member guarantee amount from free equity"""
    request = AmountRequest(amount=amount)
    return serialize(system.check_guarantor_eligibility(member_id, request.amount))


@router.get("/{member_id}/guarantees")
async def get_member_guarantees(
    member_id: str,
    system: LendingSystem = Depends(get_system)
):
    system.guarantors.require_member(member_id)
    return {"guarantees": serialize_many(system.guarantors.get_member_guarantees(member_id))}


@guarantors_router.post("/applications/{application_id}", status_code=status.HTTP_201_CREATED)
async def add_guarantor(
    application_id: str,
    request: AddGuarantorRequest,
    system: LendingSystem = Depends(get_system)
):
    guarantor = system.guarantors.add_guarantor(
        application_id, request.member_id, request.guarantee_amount, added_by=request.added_by
    )
    return serialize(guarantor)


@guarantors_router.get("/applications/{application_id}")
async def get_application_guarantors(
    application_id: str,
    system: LendingSystem = Depends(get_system)
):
    system.applications.require_application(application_id)
    return {"guarantors": serialize_many(system.guarantors.get_application_guarantors(application_id))}


@guarantors_router.post("/{guarantor_id}/consent")
async def process_consent(
    guarantor_id: str,
    request: ConsentRequest,
    system: LendingSystem = Depends(get_system)
):
    """Approval locks the guarantee amount"""
    guarantor = system.guarantors.process_consent(guarantor_id, request.approved, request.notes)
    return serialize(guarantor)


@guarantors_router.post("/{guarantor_id}/lock")
async def lock_equity(
    guarantor_id: str,
    request: LockEquityRequest,
    system: LendingSystem = Depends(get_system)
):
    return serialize(system.lock_equity(guarantor_id, request.amount))


@guarantors_router.post("/{guarantor_id}/unlock")
async def unlock_equity(
    guarantor_id: str,
    system: LendingSystem = Depends(get_system)
):
    released = system.unlock_equity(guarantor_id)
    return {"guarantor_id": guarantor_id, "released": serialize(released)}


@guarantors_router.delete("/{guarantor_id}", status_code=status.HTTP_204_NO_CONTENT)
async def remove_guarantor(
    guarantor_id: str,
    system: LendingSystem = Depends(get_system)
):
    system.guarantors.remove_guarantor(guarantor_id)
