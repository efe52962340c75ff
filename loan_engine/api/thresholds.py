"""
Monthly threshold endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends

from ..engine import LendingSystem
from .dependencies import get_system
from .schemas import (
    AmountRequest, ReleaseThresholdRequest, RolloverRequest, SetThresholdRequest,
    serialize, serialize_many,
)


router = APIRouter()


@router.get("/current")
async def get_current_threshold(system: LendingSystem = Depends(get_system)):
    """Current month's cap, usage and alert level"""
    return serialize(system.thresholds.get_threshold_info())


@router.get("/check")
async def check_threshold(
    amount: str,
    month: Optional[int] = None,
    year: Optional[int] = None,
    system: LendingSystem = Depends(get_system)
):
    request = AmountRequest(amount=amount)
    check = system.check_threshold(request.amount, month, year)
    result = serialize(check)
    result["queued"] = check.queued
    return result


@router.put("")
async def set_threshold(
    request: SetThresholdRequest,
    system: LendingSystem = Depends(get_system)
):
    threshold = system.thresholds.set_monthly_threshold(
        request.month, request.year, request.max_loan_amount, set_by=request.set_by
    )
    return serialize(system.thresholds.get_threshold_info(threshold.month, threshold.year))


@router.post("/allocations/{application_id}")
async def allocate_threshold(
    application_id: str,
    system: LendingSystem = Depends(get_system)
):
    return serialize(system.allocate_threshold(application_id))


@router.post("/release")
async def release_threshold(
    request: ReleaseThresholdRequest,
    system: LendingSystem = Depends(get_system)
):
    threshold = system.thresholds.release_threshold(request.amount, request.month, request.year)
    return serialize(system.thresholds.get_threshold_info(threshold.month, threshold.year))


@router.post("/rollover")
async def monthly_rollover(
    request: RolloverRequest,
    system: LendingSystem = Depends(get_system)
):
    """Promote queued applications into the current month"""
    return serialize(system.monthly_rollover(request.as_of))


@router.get("/queue")
async def get_queue(system: LendingSystem = Depends(get_system)):
    return {"applications": serialize_many(system.thresholds.get_queued_applications())}


@router.get("/history")
async def get_history(limit: int = 12, system: LendingSystem = Depends(get_system)):
    return {"thresholds": serialize_many(system.thresholds.get_threshold_history(limit))}


@router.get("/report/{year}")
async def get_utilization_report(year: int, system: LendingSystem = Depends(get_system)):
    return {"year": year, "months": serialize(system.thresholds.get_utilization_report(year))}
