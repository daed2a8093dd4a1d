"""
Loan Servicing Engine

Repayment allocation, delayed-days tracking, risk classification and
schedule recalculation for a microfinance loan book. All money is Decimal.
"""

__version__ = "1.0.0"
