"""
Loan, schedule and payment endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query, status

from .auth import BackOffice, Caller, get_back_office, get_current_caller, require_admin
from .schemas import ApproveLoanRequest, LoanRemarksRequest, PaymentRequest, SubmitLoanRequest
from ..errors import InvalidArgumentError, NotFoundError
from ..loans import Loan, LoanStatus, loan_summary


router = APIRouter()


def _existing_loan(system: BackOffice, loan_id: str) -> Loan:
    loan = system.loan_manager.get_loan(loan_id)
    if not loan:
        raise NotFoundError(f"Loan application {loan_id} not found.")
    return loan


@router.post("", status_code=status.HTTP_201_CREATED)
async def submit_loan(
    request: SubmitLoanRequest,
    caller: Caller = Depends(get_current_caller),
    system: BackOffice = Depends(get_back_office)
):
    """Submit a new loan application"""
    loan = system.loan_manager.submit_application(
        customer_name=request.customer_name,
        mobile_number=request.mobile_number,
        loan_scheme=request.loan_scheme,
        amount_requested=request.amount_requested,
        repayment_type=request.repayment_type,
        tenure=request.tenure,
        interest_rate=request.interest_rate,
        branch_code=request.branch_code,
        sub_branch_code=request.sub_branch_code,
        submitted_by=caller.user_id
    )
    return {
        "loan": loan.to_dict(),
        "message": "Loan application submitted successfully"
    }


@router.get("")
async def list_loans(
    status_filter: Optional[str] = Query(None, alias="status"),
    branch_code: Optional[str] = None,
    caller: Caller = Depends(get_current_caller),
    system: BackOffice = Depends(get_back_office)
):
    """List loans, optionally by status and branch"""
    loan_status = None
    if status_filter:
        try:
            loan_status = LoanStatus(status_filter)
        except ValueError:
            raise InvalidArgumentError(f"Unknown loan status: {status_filter}")

    loans = system.loan_manager.list_loans(status=loan_status, branch_code=branch_code)
    return {"loans": [loan.to_dict() for loan in loans]}


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    caller: Caller = Depends(get_current_caller),
    system: BackOffice = Depends(get_back_office)
):
    """Get loan details with its repayment summary"""
    loan = _existing_loan(system, loan_id)
    return {
        "loan": loan.to_dict(),
        "summary": loan_summary(loan).to_dict()
    }


@router.post("/{loan_id}/approve")
async def approve_loan(
    loan_id: str,
    request: Optional[ApproveLoanRequest] = None,
    caller: Caller = Depends(require_admin),
    system: BackOffice = Depends(get_back_office)
):
    """Approve a loan and generate its EMI schedule"""
    request = request or ApproveLoanRequest()
    system.loan_manager.approve_loan(
        loan_id,
        approved_by=caller.user_id,
        amount_approved=request.amount_approved,
        interest_rate=request.interest_rate,
        approval_date=request.approval_date,
        remarks=request.remarks
    )
    schedule = system.scheduler.schedule_installments(loan_id, user_id=caller.user_id)
    return {
        "loan": _existing_loan(system, loan_id).to_dict(),
        "schedule": schedule
    }


@router.post("/{loan_id}/reject")
async def reject_loan(
    loan_id: str,
    request: Optional[LoanRemarksRequest] = None,
    caller: Caller = Depends(require_admin),
    system: BackOffice = Depends(get_back_office)
):
    """Reject a loan application"""
    remarks = request.remarks if request else None
    loan = system.loan_manager.reject_loan(loan_id, rejected_by=caller.user_id, remarks=remarks)
    return {"loan": loan.to_dict()}


@router.post("/{loan_id}/verification-required")
async def require_verification(
    loan_id: str,
    request: Optional[LoanRemarksRequest] = None,
    caller: Caller = Depends(require_admin),
    system: BackOffice = Depends(get_back_office)
):
    """Send a loan application back for verification"""
    remarks = request.remarks if request else None
    loan = system.loan_manager.mark_verification_required(
        loan_id, user_id=caller.user_id, remarks=remarks
    )
    return {"loan": loan.to_dict()}


@router.post("/{loan_id}/paid-in-full")
async def mark_paid_in_full(
    loan_id: str,
    request: Optional[LoanRemarksRequest] = None,
    caller: Caller = Depends(require_admin),
    system: BackOffice = Depends(get_back_office)
):
    """Close a fully repaid loan"""
    remarks = request.remarks if request else None
    loan = system.loan_manager.mark_paid_in_full(loan_id, user_id=caller.user_id, remarks=remarks)
    return {"loan": loan.to_dict()}


@router.post("/{loan_id}/schedule")
async def schedule_installments(
    loan_id: str,
    caller: Caller = Depends(require_admin),
    system: BackOffice = Depends(get_back_office)
):
    """Generate the EMI schedule for an approved loan"""
    return system.scheduler.schedule_installments(loan_id, user_id=caller.user_id)


@router.get("/{loan_id}/schedule")
async def get_schedule(
    loan_id: str,
    caller: Caller = Depends(get_current_caller),
    system: BackOffice = Depends(get_back_office)
):
    """Get the loan's installment plan ordered by due date"""
    _existing_loan(system, loan_id)
    schedule = system.scheduler.get_schedule(loan_id)
    return {
        "loan_id": loan_id,
        "schedule": [installment.to_dict() for installment in schedule]
    }


@router.post("/{loan_id}/payments", status_code=status.HTTP_201_CREATED)
async def record_payment(
    loan_id: str,
    request: PaymentRequest,
    caller: Caller = Depends(get_current_caller),
    system: BackOffice = Depends(get_back_office)
):
    """Record an EMI collection"""
    result = system.ledger.record_payment(
        loan_id,
        amount=request.amount,
        fine=request.fine,
        payment_mode=request.payment_mode,
        collection_date=request.collection_date,
        remarks=request.remarks,
        collected_by=caller.user_id
    )
    return {
        "payment_id": result.payment.id,
        "payment": result.payment.to_dict(),
        "loan": result.loan.to_dict(),
        "message": "Payment recorded successfully"
    }


@router.get("/{loan_id}/payments")
async def list_payments(
    loan_id: str,
    caller: Caller = Depends(get_current_caller),
    system: BackOffice = Depends(get_back_office)
):
    """Payment history, most recent collection first"""
    _existing_loan(system, loan_id)
    return {"payments": [p.to_dict() for p in system.ledger.list_payments(loan_id)]}


@router.put("/{loan_id}/payments/{payment_id}")
async def edit_payment(
    loan_id: str,
    payment_id: str,
    request: PaymentRequest,
    caller: Caller = Depends(require_admin),
    system: BackOffice = Depends(get_back_office)
):
    """Replace a payment entry's amounts and details"""
    result = system.ledger.edit_payment(
        loan_id,
        payment_id,
        amount=request.amount,
        fine=request.fine,
        payment_mode=request.payment_mode,
        collection_date=request.collection_date,
        remarks=request.remarks,
        edited_by=caller.user_id
    )
    return {
        "payment": result.payment.to_dict(),
        "loan": result.loan.to_dict(),
        "message": "Payment updated successfully"
    }


@router.delete("/{loan_id}/payments/{payment_id}")
async def delete_payment(
    loan_id: str,
    payment_id: str,
    caller: Caller = Depends(require_admin),
    system: BackOffice = Depends(get_back_office)
):
    """Delete a payment entry"""
    loan = system.ledger.delete_payment(loan_id, payment_id, deleted_by=caller.user_id)
    return {
        "loan": loan.to_dict(),
        "message": "Payment deleted successfully"
    }
