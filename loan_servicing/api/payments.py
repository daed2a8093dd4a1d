"""
Payment endpoints
"""

from fastapi import APIRouter, Depends, status

from .dependencies import get_service
from .schemas import MakePaymentRequest
from ..servicing import LoanServicingService


router = APIRouter()


@router.post("/{loan_id}/payments", status_code=status.HTTP_201_CREATED)
def make_payment(
    organization_id: str,
    loan_id: str,
    request: MakePaymentRequest,
    service: LoanServicingService = Depends(get_service)
):
    """Record a repayment and return the updated loan state"""
    result = service.process_payment(organization_id, loan_id, request.to_payment_request())
    return result.to_wire()


@router.get("/{loan_id}/transactions")
def list_transactions(
    organization_id: str,
    loan_id: str,
    service: LoanServicingService = Depends(get_service)
):
    """Ledger entries for a loan in commit order"""
    transactions = service.list_transactions(organization_id, loan_id)
    return {"transactions": [t.to_wire() for t in transactions]}
