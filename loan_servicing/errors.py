"""
Servicing Error Taxonomy

Typed errors returned to callers with a stable code and enough context
(loan id, installment id, computed values) for the UI to explain them.
Validation errors are raised before any mutation is attempted.
"""

from typing import Any, Dict, Optional


class LoanServicingError(ValueError):
    """Base class for all engine errors"""

    code = "LOAN_SERVICING_ERROR"
    http_status = 422

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "context": {k: str(v) if not isinstance(v, (int, bool)) else v
                        for k, v in self.context.items()},
        }


class InvalidAmount(LoanServicingError):
    code = "INVALID_AMOUNT"


class InvalidDate(LoanServicingError):
    """Future-dated or pre-disbursement payment date"""
    code = "INVALID_DATE"


class AlreadySettled(LoanServicingError):
    code = "ALREADY_SETTLED"
    http_status = 409


class DuplicateAttempt(LoanServicingError):
    code = "DUPLICATE_ATTEMPT"
    http_status = 409


class NotReversible(LoanServicingError):
    code = "NOT_REVERSIBLE"
    http_status = 409


class InvalidEffectiveDate(LoanServicingError):
    code = "INVALID_EFFECTIVE_DATE"


class InvalidRecalculation(LoanServicingError):
    code = "INVALID_RECALCULATION"


class LoanNotFound(LoanServicingError):
    code = "LOAN_NOT_FOUND"
    http_status = 404

    def __init__(self, loan_id: str, organization_id: Optional[str] = None):
        super().__init__(f"Loan {loan_id} not found", loan_id=loan_id,
                         organization_id=organization_id)


class ScheduleNotFound(LoanServicingError):
    code = "SCHEDULE_NOT_FOUND"
    http_status = 404


class TransactionNotFound(LoanServicingError):
    code = "TRANSACTION_NOT_FOUND"
    http_status = 404

    def __init__(self, transaction_id: str):
        super().__init__(f"Transaction {transaction_id} not found",
                         transaction_id=transaction_id)


class InvalidTerms(LoanServicingError):
    """Loan terms that cannot produce a schedule"""
    code = "INVALID_TERMS"
