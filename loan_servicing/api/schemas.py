"""
Pydantic schemas for API requests

Money always travels as a decimal string; floats are rejected.
"""

from datetime import date
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field

from ..currency import Currency
from ..dates import RepaymentFrequency
from ..errors import InvalidTerms
from ..ledger import PaymentMethod
from ..recalculation import RecalculationOptions, RecalculationType
from ..schedule import AmortizationMethod
from ..servicing import PaymentRequest


class ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class DisburseLoanRequest(ApiModel):
    borrower_id: str = Field(..., alias="borrowerId")
    principal_amount: str = Field(..., alias="principalAmount", description="Decimal amount as string")
    annual_interest_rate: str = Field(..., alias="annualInterestRate", description="e.g. \"0.24\" for 24%")
    term_periods: int = Field(..., alias="termPeriods", gt=0)
    repayment_frequency: RepaymentFrequency = Field(RepaymentFrequency.MONTHLY, alias="repaymentFrequency")
    amortization_method: AmortizationMethod = Field(AmortizationMethod.EQUAL_INSTALLMENT,
                                                    alias="amortizationMethod")
    disbursement_date: date = Field(..., alias="disbursementDate")
    first_payment_date: date = Field(..., alias="firstPaymentDate")
    currency: Optional[str] = Field(None, description="Currency code, defaults to the configured currency")
    collateral_value: Optional[str] = Field(None, alias="collateralValue")
    disbursed_by: Optional[str] = Field(None, alias="disbursedBy")

    def to_currency(self) -> Optional[Currency]:
        if self.currency is None:
            return None
        try:
            return Currency[self.currency.upper()]
        except KeyError:
            raise InvalidTerms(f"Unsupported currency: {self.currency}", currency=self.currency)


class MakePaymentRequest(ApiModel):
    amount: str = Field(..., description="Decimal amount as string")
    payment_date: date = Field(..., alias="paymentDate")
    method: PaymentMethod = PaymentMethod.CASH
    received_by: str = Field(..., alias="receivedBy", min_length=1)
    approved_by: Optional[str] = Field(None, alias="approvedBy")
    target_installment_id: Optional[str] = Field(None, alias="targetInstallmentId")
    notes: Optional[str] = None

    def to_payment_request(self) -> PaymentRequest:
        return PaymentRequest(
            amount=self.amount,
            payment_date=self.payment_date,
            method=self.method,
            received_by=self.received_by,
            approved_by=self.approved_by,
            target_installment_id=self.target_installment_id,
            notes=self.notes,
        )


class RecalculateScheduleRequest(ApiModel):
    type: RecalculationType
    effective_date: date = Field(..., alias="effectiveDate")
    requested_by: Optional[str] = Field(None, alias="requestedBy")

    def to_options(self) -> RecalculationOptions:
        return RecalculationOptions(recalculation_type=self.type, effective_date=self.effective_date)


class ReverseTransactionRequest(ApiModel):
    reason: str = Field(..., min_length=1)
    reversed_by: Optional[str] = Field(None, alias="reversedBy")


class DailyUpdateRequest(ApiModel):
    as_of: Optional[date] = Field(None, alias="asOf")
