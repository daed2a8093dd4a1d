"""
Schedule endpoints
"""

from fastapi import APIRouter, Depends

from .dependencies import get_service
from .schemas import RecalculateScheduleRequest
from ..servicing import LoanServicingService


router = APIRouter()


@router.get("/{loan_id}/schedule")
def get_schedule(
    organization_id: str,
    loan_id: str,
    service: LoanServicingService = Depends(get_service)
):
    """Active installments with remaining amounts, delays and a summary"""
    return service.get_schedule(organization_id, loan_id).to_wire()


@router.post("/{loan_id}/schedule/recalculate")
def recalculate_schedule(
    organization_id: str,
    loan_id: str,
    request: RecalculateScheduleRequest,
    service: LoanServicingService = Depends(get_service)
):
    """Re-amortize the unpaid tail of the schedule"""
    result = service.recalculate_schedule(
        organization_id, loan_id, request.to_options(), requested_by=request.requested_by
    )
    return result.to_wire()
