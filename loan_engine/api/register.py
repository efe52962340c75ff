"""
Loan register endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import PlainTextResponse

from ..engine import LendingSystem
from ..loans import LoanStatus
from .dependencies import get_system
from .schemas import RegisterLoanRequest, serialize, serialize_many


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def register_loan(
    request: RegisterLoanRequest,
    system: LendingSystem = Depends(get_system)
):
    """Assign the next serial number to a disbursed loan"""
    return serialize(system.register_loan(request.loan_id, request.registered_by))


@router.get("")
async def get_entries(
    year: Optional[int] = None,
    status: Optional[LoanStatus] = None,
    system: LendingSystem = Depends(get_system)
):
    return {"entries": serialize_many(system.get_register_entries(year, status=status))}


@router.get("/statistics")
async def get_statistics(year: Optional[int] = None, system: LendingSystem = Depends(get_system)):
    return serialize(system.register.get_register_statistics(year))


@router.get("/export", response_class=PlainTextResponse)
async def export_csv(
    year: Optional[int] = None,
    status: Optional[LoanStatus] = None,
    system: LendingSystem = Depends(get_system)
):
    return PlainTextResponse(system.register.export_register_csv(year, status), media_type="text/csv")


@router.get("/serials/{serial_number:path}")
async def get_by_serial(serial_number: str, system: LendingSystem = Depends(get_system)):
    entry = system.register.get_by_serial_number(serial_number)
    if entry is None:
        raise HTTPException(status_code=404, detail="Register entry not found")
    return serialize(entry)
