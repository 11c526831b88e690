"""
Pydantic schemas for API requests
"""

from datetime import datetime
from typing import Optional, Union
from pydantic import BaseModel, Field


# Money travels as a decimal string; plain JSON numbers are accepted too
DecimalInput = Union[str, int, float]


# Loan schemas
class SubmitLoanRequest(BaseModel):
    customer_name: str
    mobile_number: str
    loan_scheme: str
    amount_requested: DecimalInput = Field(..., description="Decimal amount as string")
    repayment_type: str = Field(..., description="Daily, Weekly or Monthly")
    tenure: int = Field(..., description="Number of installments")
    interest_rate: Optional[DecimalInput] = Field(None, description="Flat interest rate in percent")
    branch_code: Optional[str] = None
    sub_branch_code: Optional[str] = None


class ApproveLoanRequest(BaseModel):
    amount_approved: Optional[DecimalInput] = None
    interest_rate: Optional[DecimalInput] = None
    approval_date: Optional[datetime] = None
    remarks: Optional[str] = None


class LoanRemarksRequest(BaseModel):
    remarks: Optional[str] = None


# Ledger schemas
class PaymentRequest(BaseModel):
    amount: DecimalInput = Field(..., description="Installment amount collected")
    fine: Optional[DecimalInput] = Field(None, description="Late fine, defaults to 0")
    payment_mode: str = Field(..., description="Cash, Online or Cheque")
    collection_date: str = Field(..., description="ISO date the money was collected")
    remarks: Optional[str] = None
