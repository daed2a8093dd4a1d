"""
Transaction endpoints
"""

from fastapi import APIRouter, Depends

from .dependencies import get_service
from .schemas import ReverseTransactionRequest
from ..servicing import LoanServicingService


router = APIRouter()


@router.get("/{transaction_id}")
def get_transaction(
    organization_id: str,
    transaction_id: str,
    service: LoanServicingService = Depends(get_service)
):
    """Get a ledger entry"""
    return {"transaction": service.get_transaction(organization_id, transaction_id).to_wire()}


@router.post("/{transaction_id}/reverse")
def reverse_transaction(
    organization_id: str,
    transaction_id: str,
    request: ReverseTransactionRequest,
    service: LoanServicingService = Depends(get_service)
):
    """Reverse a payment with a compensating entry"""
    result = service.reverse_transaction(
        organization_id, transaction_id, request.reason, reversed_by=request.reversed_by
    )
    return result.to_wire()
