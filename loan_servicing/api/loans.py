"""
Loan endpoints
"""

from fastapi import APIRouter, Depends, status

from .dependencies import get_service
from .schemas import DisburseLoanRequest
from ..servicing import LoanServicingService


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
def disburse_loan(
    organization_id: str,
    request: DisburseLoanRequest,
    service: LoanServicingService = Depends(get_service)
):
    """Disburse a loan and generate its schedule"""
    loan = service.disburse_loan(
        organization_id=organization_id,
        borrower_id=request.borrower_id,
        principal_amount=request.principal_amount,
        annual_interest_rate=request.annual_interest_rate,
        term_periods=request.term_periods,
        disbursement_date=request.disbursement_date,
        first_payment_date=request.first_payment_date,
        repayment_frequency=request.repayment_frequency,
        amortization_method=request.amortization_method,
        currency=request.to_currency(),
        collateral_value=request.collateral_value,
        disbursed_by=request.disbursed_by,
    )
    return {"loan": loan.to_wire()}


@router.get("/{loan_id}")
def get_loan(
    organization_id: str,
    loan_id: str,
    service: LoanServicingService = Depends(get_service)
):
    """Get loan balances and status"""
    return {"loan": service.get_loan(organization_id, loan_id).to_wire()}


@router.get("/{loan_id}/payment-summary")
def get_payment_summary(
    organization_id: str,
    loan_id: str,
    service: LoanServicingService = Depends(get_service)
):
    """Totals paid by component and delay statistics"""
    return service.payment_summary(organization_id, loan_id)
