"""
Loan Module

Handles loan applications, the approval state machine, EMI derivation and
the loan summary shown to collection agents. The running total_amount_paid
is owned by the payment ledger; nothing in this module writes it after the
loan is created.
"""

from decimal import Decimal
from datetime import datetime, timezone, tzinfo
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import logging
import re
import uuid

from .audit import AuditTrail, AuditEventType
from .currency import ZERO, add, is_invalid, round_money, subtract, to_decimal
from .errors import FailedPreconditionError, InvalidArgumentError, NotFoundError
from .storage import StorageInterface, StorageRecord, parse_datetime


logger = logging.getLogger(__name__)


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "Pending"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    VERIFICATION_REQUIRED = "VerificationRequired"
    PAID_IN_FULL = "PaidInFull"


class RepaymentType(Enum):
    """Repayment cadence"""
    DAILY = "Daily"
    WEEKLY = "Weekly"
    MONTHLY = "Monthly"


ALLOWED_TRANSITIONS = {
    LoanStatus.PENDING: {LoanStatus.APPROVED, LoanStatus.REJECTED, LoanStatus.VERIFICATION_REQUIRED},
    LoanStatus.VERIFICATION_REQUIRED: {LoanStatus.APPROVED, LoanStatus.REJECTED},
    LoanStatus.APPROVED: {LoanStatus.PAID_IN_FULL},
    LoanStatus.REJECTED: set(),
    LoanStatus.PAID_IN_FULL: set(),
}

EMI_FIELDS = {
    RepaymentType.DAILY: "daily_emi",
    RepaymentType.WEEKLY: "weekly_emi",
    RepaymentType.MONTHLY: "monthly_emi",
}


def calculate_emi(principal: Any, interest_rate: Any, tenure: int) -> Decimal:
    """
    Flat-interest EMI: (principal + principal * rate / 100) / tenure,
    rounded half-up to 2 decimal places.
    """
    principal = to_decimal(principal)
    rate = to_decimal(interest_rate)
    if is_invalid(principal) or is_invalid(rate) or tenure <= 0:
        raise InvalidArgumentError("EMI needs a numeric principal, rate and a positive tenure")
    total = add(principal, principal * rate / Decimal('100'))
    return round_money(total / Decimal(tenure))


@dataclass
class Loan(StorageRecord):
    """Loan application and, once approved, the ledger's aggregate root"""
    customer_name: str
    mobile_number: str
    loan_scheme: str
    amount_requested: Decimal
    repayment_type: RepaymentType
    tenure: int
    interest_rate: Decimal = ZERO
    amount_approved: Optional[Decimal] = None
    branch_code: Optional[str] = None
    sub_branch_code: Optional[str] = None
    status: LoanStatus = LoanStatus.PENDING

    # Stored as submitted so unreadable legacy values survive a round trip
    daily_emi: Optional[str] = None
    weekly_emi: Optional[str] = None
    monthly_emi: Optional[str] = None

    total_amount_paid: Decimal = ZERO
    schedule_generated: bool = False

    submitted_by: Optional[str] = None
    approved_by: Optional[str] = None
    approval_date: Optional[datetime] = None
    rejected_by: Optional[str] = None
    rejection_date: Optional[datetime] = None
    admin_remarks: Optional[str] = None

    @property
    def principal(self) -> Decimal:
        """Approved amount, falling back to the requested amount"""
        if self.amount_approved is not None:
            return self.amount_approved
        return self.amount_requested

    def emi_for_cadence(self) -> Decimal:
        """Cadence-matched EMI; NaN when missing or unreadable"""
        raw = getattr(self, EMI_FIELDS[self.repayment_type])
        if raw is None or raw == "":
            return Decimal('NaN')
        return to_decimal(raw)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        amount_approved = data.get('amount_approved')
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            customer_name=data.get('customer_name', ''),
            mobile_number=data.get('mobile_number', ''),
            loan_scheme=data.get('loan_scheme', ''),
            amount_requested=to_decimal(data.get('amount_requested')),
            repayment_type=RepaymentType(data['repayment_type']),
            tenure=_parse_tenure(data.get('tenure')),
            interest_rate=to_decimal(data.get('interest_rate')),
            amount_approved=None if amount_approved is None else to_decimal(amount_approved),
            branch_code=data.get('branch_code'),
            sub_branch_code=data.get('sub_branch_code'),
            status=LoanStatus(data['status']),
            daily_emi=data.get('daily_emi'),
            weekly_emi=data.get('weekly_emi'),
            monthly_emi=data.get('monthly_emi'),
            total_amount_paid=to_decimal(data.get('total_amount_paid')),
            schedule_generated=bool(data.get('schedule_generated', False)),
            submitted_by=data.get('submitted_by'),
            approved_by=data.get('approved_by'),
            approval_date=parse_datetime(data.get('approval_date')),
            rejected_by=data.get('rejected_by'),
            rejection_date=parse_datetime(data.get('rejection_date')),
            admin_remarks=data.get('admin_remarks'),
        )


def _parse_tenure(value: Any) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return 0


@dataclass
class LoanSummary:
    """Derived repayment figures for display; never stored"""
    principal: Decimal
    total_interest: Decimal
    total_repayable: Decimal
    emi_amount: Decimal
    number_of_installments: int
    total_paid: Decimal
    amount_pending: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "principal": str(self.principal),
            "total_interest": str(self.total_interest),
            "total_repayable": str(self.total_repayable),
            "emi_amount": str(self.emi_amount),
            "number_of_installments": self.number_of_installments,
            "total_paid": str(self.total_paid),
            "amount_pending": str(self.amount_pending),
        }


def loan_summary(loan: Loan) -> LoanSummary:
    """Principal, interest, total repayable and what is still pending"""
    principal = loan.principal
    total_interest = round_money(principal * loan.interest_rate / Decimal('100'))
    total_repayable = add(principal, total_interest)
    emi = loan.emi_for_cadence()
    if is_invalid(emi):
        emi = round_money(total_repayable / loan.tenure) if loan.tenure > 0 else ZERO
    return LoanSummary(
        principal=principal,
        total_interest=total_interest,
        total_repayable=total_repayable,
        emi_amount=emi,
        number_of_installments=loan.tenure,
        total_paid=loan.total_amount_paid,
        amount_pending=subtract(total_repayable, loan.total_amount_paid),
    )


class LoanManager:
    """
    Manages the loan application lifecycle up to and including approval
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 tz: Optional[tzinfo] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.tz = tz
        self.loans_table = "loans"

    def submit_application(
        self,
        customer_name: str,
        mobile_number: str,
        loan_scheme: str,
        amount_requested: Any,
        repayment_type: Any,
        tenure: Any,
        interest_rate: Any = None,
        branch_code: Optional[str] = None,
        sub_branch_code: Optional[str] = None,
        submitted_by: Optional[str] = None
    ) -> Loan:
        """
        Create a new loan application in Pending status

        Raises:
            InvalidArgumentError: listing every missing or malformed field
        """
        errors = []
        if not customer_name:
            errors.append("Missing required field: customer_name")
        if not loan_scheme:
            errors.append("Missing required field: loan_scheme")
        if not mobile_number:
            errors.append("Missing required field: mobile_number")
        elif not re.fullmatch(r"\d{10,}", mobile_number):
            errors.append("Invalid mobile number format.")

        amount = to_decimal(amount_requested)
        if amount_requested in (None, ""):
            errors.append("Missing required field: amount_requested")
        elif is_invalid(amount) or amount <= ZERO:
            errors.append("Loan amount required must be a positive number.")

        cadence = None
        try:
            cadence = RepaymentType(repayment_type.value if isinstance(repayment_type, RepaymentType) else repayment_type)
        except ValueError:
            errors.append(f"Invalid repayment_type: {repayment_type}")

        tenure_value = _parse_tenure(tenure)
        if tenure_value <= 0:
            errors.append(f"Invalid tenure: {tenure}")

        rate = to_decimal(interest_rate)
        if is_invalid(rate) or rate < ZERO:
            errors.append(f"Invalid interest_rate: {interest_rate}")

        if errors:
            raise InvalidArgumentError("Invalid application data: " + "; ".join(errors))

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            customer_name=customer_name,
            mobile_number=mobile_number,
            loan_scheme=loan_scheme,
            amount_requested=amount,
            amount_approved=amount,
            repayment_type=cadence,
            tenure=tenure_value,
            interest_rate=rate,
            branch_code=branch_code,
            sub_branch_code=sub_branch_code,
            submitted_by=submitted_by,
        )

        with self.storage.atomic():
            self.storage.save(self.loans_table, loan.id, loan.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_SUBMITTED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=submitted_by,
                metadata={
                    "amount_requested": amount,
                    "repayment_type": cadence,
                    "tenure": tenure_value,
                }
            )

        logger.info("Loan application %s submitted", loan.id)
        return loan

    def approve_loan(
        self,
        loan_id: str,
        approved_by: Optional[str] = None,
        amount_approved: Any = None,
        interest_rate: Any = None,
        approval_date: Optional[datetime] = None,
        remarks: Optional[str] = None
    ) -> Loan:
        """
        Approve a Pending or VerificationRequired loan and derive its EMI

        Scheduling is a separate step (see ScheduleGenerator); the caller
        invokes it once, right after this returns. An approval_date in the
        future could never be scheduled, so it is refused before any write.
        """
        if approval_date is not None:
            approval_date = self._check_approval_date(approval_date)

        with self.storage.atomic():
            loan = self._load_for_update(loan_id)
            self._check_transition(loan, LoanStatus.APPROVED)

            if amount_approved is not None:
                loan.amount_approved = to_decimal(amount_approved)
            if interest_rate is not None:
                loan.interest_rate = to_decimal(interest_rate)
            if is_invalid(loan.principal) or loan.principal <= ZERO:
                raise InvalidArgumentError(f"Invalid approved amount: {amount_approved}")
            if is_invalid(loan.interest_rate) or loan.interest_rate < ZERO:
                raise InvalidArgumentError(f"Invalid interest rate: {interest_rate}")

            emi = calculate_emi(loan.principal, loan.interest_rate, loan.tenure)
            for cadence, field_name in EMI_FIELDS.items():
                setattr(loan, field_name, str(emi) if cadence == loan.repayment_type else "0")

            now = datetime.now(timezone.utc)
            loan.status = LoanStatus.APPROVED
            loan.approved_by = approved_by
            loan.approval_date = approval_date or now
            if remarks is not None:
                loan.admin_remarks = remarks
            loan.updated_at = now
            self._save(loan)

            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_APPROVED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=approved_by,
                metadata={
                    "amount_approved": loan.principal,
                    "interest_rate": loan.interest_rate,
                    "emi": emi,
                    "approval_date": loan.approval_date,
                }
            )

        logger.info("Loan %s approved with %s EMI %s", loan.id, loan.repayment_type.value, emi)
        return loan

    def reject_loan(self, loan_id: str, rejected_by: Optional[str] = None,
                    remarks: Optional[str] = None) -> Loan:
        """Reject a loan; terminal, no ledger activity afterwards"""
        with self.storage.atomic():
            loan = self._load_for_update(loan_id)
            self._check_transition(loan, LoanStatus.REJECTED)
            now = datetime.now(timezone.utc)
            loan.status = LoanStatus.REJECTED
            loan.rejected_by = rejected_by
            loan.rejection_date = now
            if remarks is not None:
                loan.admin_remarks = remarks
            loan.updated_at = now
            self._save(loan)
            self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_REJECTED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=rejected_by,
                metadata={"remarks": remarks or ""}
            )
        return loan

    def mark_verification_required(self, loan_id: str, user_id: Optional[str] = None,
                                   remarks: Optional[str] = None) -> Loan:
        """Send a Pending application back for document verification"""
        return self._simple_transition(
            loan_id, LoanStatus.VERIFICATION_REQUIRED,
            AuditEventType.LOAN_VERIFICATION_REQUIRED, user_id, remarks
        )

    def mark_paid_in_full(self, loan_id: str, user_id: Optional[str] = None,
                          remarks: Optional[str] = None) -> Loan:
        """Close an Approved loan; the ledger refuses payments afterwards"""
        return self._simple_transition(
            loan_id, LoanStatus.PAID_IN_FULL,
            AuditEventType.LOAN_PAID_IN_FULL, user_id, remarks
        )

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        data = self.storage.load(self.loans_table, loan_id)
        if data:
            return Loan.from_dict(data)
        return None

    def list_loans(
        self,
        status: Optional[LoanStatus] = None,
        branch_code: Optional[str] = None
    ) -> List[Loan]:
        """Loans filtered by status and by branch or sub-branch code"""
        filters = {"status": status.value} if status else {}
        loans = []
        for data in self.storage.find(self.loans_table, filters):
            try:
                loans.append(Loan.from_dict(data))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping unreadable loan record %s: %s", data.get('id'), e)
        if branch_code:
            loans = [
                loan for loan in loans
                if branch_code in (loan.branch_code, loan.sub_branch_code)
            ]
        return loans

    def _simple_transition(self, loan_id: str, target: LoanStatus,
                           event_type: AuditEventType, user_id: Optional[str],
                           remarks: Optional[str]) -> Loan:
        with self.storage.atomic():
            loan = self._load_for_update(loan_id)
            self._check_transition(loan, target)
            loan.status = target
            if remarks is not None:
                loan.admin_remarks = remarks
            loan.updated_at = datetime.now(timezone.utc)
            self._save(loan)
            self.audit_trail.log_event(
                event_type=event_type,
                entity_type="loan",
                entity_id=loan.id,
                user_id=user_id,
                metadata={"remarks": remarks or ""}
            )
        return loan

    def _load_for_update(self, loan_id: str) -> Loan:
        if not loan_id:
            raise InvalidArgumentError("loan_id is required.")
        loan = self.get_loan(loan_id)
        if not loan:
            raise NotFoundError(f"Loan application {loan_id} not found.")
        return loan

    def _check_approval_date(self, approval_date: Any) -> datetime:
        if not isinstance(approval_date, datetime):
            raise InvalidArgumentError(f"approval_date must be a datetime, got '{approval_date}'.")
        # Naive instants are read in the business calendar, as the scheduler reads them
        aware = approval_date
        if aware.tzinfo is None:
            aware = aware.replace(tzinfo=self.tz or timezone.utc)
        if aware > datetime.now(timezone.utc):
            raise InvalidArgumentError(
                f"approval_date {approval_date.isoformat()} lies in the future."
            )
        return approval_date

    def _check_transition(self, loan: Loan, target: LoanStatus) -> None:
        if target not in ALLOWED_TRANSITIONS[loan.status]:
            raise FailedPreconditionError(
                f"Cannot move loan {loan.id} from {loan.status.value} to {target.value}"
            )

    def _save(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, loan.to_dict())
