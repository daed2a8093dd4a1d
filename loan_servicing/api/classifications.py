"""
Classification, provisioning and delayed-days endpoints
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from .dependencies import get_service
from .schemas import DailyUpdateRequest
from ..servicing import LoanServicingService


router = APIRouter()


@router.get("/classifications")
def list_classifications(
    organization_id: str,
    service: LoanServicingService = Depends(get_service)
):
    """Current classification of every loan"""
    return {"classifications": service.list_classifications(organization_id)}


@router.get("/provisioning-report")
def provisioning_report(
    organization_id: str,
    service: LoanServicingService = Depends(get_service)
):
    """Aggregate provisioning per status with PAR30 and NPL ratios"""
    reports = service.provisioning_report(organization_id)
    return {"reports": [report.to_wire() for report in reports]}


@router.post("/delayed-days/daily-update")
def run_daily_update(
    organization_id: str,
    request: Optional[DailyUpdateRequest] = None,
    service: LoanServicingService = Depends(get_service)
):
    """Refresh delayed days and reclassify every active loan"""
    as_of = request.as_of if request else None
    return service.run_daily_update(organization_id, as_of=as_of).to_wire()


@router.get("/delayed-days/report")
def delayed_days_report(
    organization_id: str,
    days_threshold: int = Query(0, alias="daysThreshold", ge=0),
    service: LoanServicingService = Depends(get_service)
):
    """Installments delayed beyond a threshold"""
    return service.delayed_days_report(organization_id, days_threshold=days_threshold)


@router.get("/{loan_id}/classification/history")
def classification_history(
    organization_id: str,
    loan_id: str,
    service: LoanServicingService = Depends(get_service)
):
    """Every classification record of a loan, oldest first"""
    records = service.classification_history(organization_id, loan_id)
    return {"loanId": loan_id, "history": [record.to_wire() for record in records]}
