"""
Dashboard endpoints
"""

from datetime import date
from typing import Optional
from fastapi import APIRouter, Depends, Query

from .dependencies import LoanSystem, get_loan_system


router = APIRouter()


@router.get("/summary")
def get_loan_dashboard(
    date_from: Optional[date] = Query(None, alias="dateFrom"),
    date_to: Optional[date] = Query(None, alias="dateTo"),
    branch_id: Optional[str] = Query(None, alias="branchId"),
    direction: Optional[str] = None,
    system: LoanSystem = Depends(get_loan_system)
):
    """Loan totals, financials and transaction flow for the filters"""
    dashboard = system.reporting_engine.get_dashboard(
        date_from=date_from,
        date_to=date_to,
        branch_id=branch_id,
        direction=direction
    )
    return {"success": True, **dashboard.to_dict(system.precision)}
