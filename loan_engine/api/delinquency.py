"""
Delinquency endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends

from ..engine import LendingSystem
from ..loans import LoanClassification
from .dependencies import get_system
from .schemas import DelinquencyRunRequest, serialize, serialize_many


router = APIRouter()


@router.post("/run")
async def run_daily_check(
    request: DelinquencyRunRequest,
    system: LendingSystem = Depends(get_system)
):
    """Run the daily delinquency batch"""
    result = system.run_daily_delinquency_check(request.check_date)
    return {
        "check_date": result.check_date.isoformat(),
        "processed": result.processed,
        "skipped": result.skipped,
        "failed": result.failed,
        "total_penalty": serialize(result.total_penalty),
        "records": serialize_many(result.records),
        "errors": result.errors,
    }


@router.get("/loans")
async def get_delinquent_loans(
    classification: Optional[LoanClassification] = None,
    min_days: Optional[int] = None,
    system: LendingSystem = Depends(get_system)
):
    loans = system.delinquency.get_delinquent_loans(classification, min_days)
    return {"loans": serialize_many(loans)}


@router.get("/summary")
async def get_summary(system: LendingSystem = Depends(get_system)):
    """Portfolio at risk by classification"""
    return serialize(system.delinquency.get_delinquency_summary())
