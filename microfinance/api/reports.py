"""
Collection reporting endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, Query

from .auth import BackOffice, Caller, get_back_office, get_current_caller, require_admin


router = APIRouter()


@router.get("/daily-collections")
async def daily_collections(
    number_of_days: int = Query(30, description="Days to cover, ending today"),
    reference_date: Optional[date] = Query(None, description="Last day of the window"),
    caller: Caller = Depends(require_admin),
    system: BackOffice = Depends(get_back_office)
):
    """Collected vs expected per day, most recent day first"""
    rows = system.reporting_engine.daily_collection_report(number_of_days, reference_date)
    return {
        "number_of_days": number_of_days,
        "rows": [row.to_dict() for row in rows]
    }


@router.get("/branch-collections")
async def branch_collections(
    branch_code: str = Query(..., description="Branch or sub-branch code, or 'all'"),
    target_date: Optional[date] = Query(None, alias="date"),
    caller: Caller = Depends(get_current_caller),
    system: BackOffice = Depends(get_back_office)
):
    """Paid and pending customers of a branch on one day"""
    report = system.reporting_engine.branch_collection_report(branch_code, target_date)
    return report.to_dict()
