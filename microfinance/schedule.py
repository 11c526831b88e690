"""
EMI Schedule Module

Materializes a loan's repayment plan: one Pending installment per cadence
period, due on anchor + (i+1) periods, where the anchor is the calendar day
of the approval instant.

Monthly due dates follow end-of-month clamping: Jan 31 + 1 month is Feb 29
in a leap year and Feb 28 otherwise; later months step from the anchor, not
from the clamped date, so Jan 31 + 2 months is Mar 31.
"""

from decimal import Decimal
from datetime import date, datetime, timedelta, timezone, tzinfo
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import calendar
import logging

from .audit import AuditTrail, AuditEventType
from .currency import ZERO, is_invalid, to_decimal
from .errors import (
    FailedPreconditionError, InternalError, InvalidArgumentError, MicrofinanceError, NotFoundError
)
from .loans import Loan, LoanStatus, RepaymentType
from .storage import StorageInterface, StorageRecord, parse_date, parse_datetime


logger = logging.getLogger(__name__)

INSTALLMENTS_TABLE = "scheduled_installments"


class InstallmentStatus(Enum):
    """Scheduled installment states"""
    PENDING = "Pending"
    PAID = "Paid"


def add_months(start_date: date, months: int) -> date:
    """Add calendar months, clamping the day to the target month's length"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def add_cadence(anchor: date, repayment_type: RepaymentType, periods: int) -> date:
    """anchor advanced by `periods` days, weeks or calendar months"""
    if repayment_type == RepaymentType.DAILY:
        return anchor + timedelta(days=periods)
    if repayment_type == RepaymentType.WEEKLY:
        return anchor + timedelta(weeks=periods)
    return add_months(anchor, periods)


def anchor_date(approval_date: Optional[datetime], tz: Optional[tzinfo] = None) -> Optional[date]:
    """
    Calendar day of an approval instant in the business timezone

    Naive datetimes are taken to already be business-local.
    """
    if not isinstance(approval_date, datetime):
        return None
    if tz is not None and approval_date.tzinfo is not None:
        approval_date = approval_date.astimezone(tz)
    return approval_date.date()


@dataclass
class ScheduledInstallment(StorageRecord):
    """One expected due-date/amount entry in a loan's repayment plan"""
    loan_id: str
    installment_number: int
    due_date: date
    expected_amount: Decimal
    status: InstallmentStatus = InstallmentStatus.PENDING
    payment_id: Optional[str] = None
    amount_paid: Optional[Decimal] = None
    paid_on: Optional[date] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScheduledInstallment':
        amount_paid = data.get('amount_paid')
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            loan_id=data['loan_id'],
            installment_number=int(data['installment_number']),
            due_date=parse_date(data['due_date']),
            expected_amount=to_decimal(data.get('expected_amount')),
            status=InstallmentStatus(data['status']),
            payment_id=data.get('payment_id'),
            amount_paid=None if amount_paid is None else to_decimal(amount_paid),
            paid_on=parse_date(data.get('paid_on')),
        )


def generate_schedule(loan: Loan, tz: Optional[tzinfo] = None,
                      now: Optional[datetime] = None) -> List[ScheduledInstallment]:
    """
    Build (without saving) the ordered installment plan for an Approved loan

    Raises:
        FailedPreconditionError: naming the missing or invalid loan field
    """
    if loan.status != LoanStatus.APPROVED:
        raise FailedPreconditionError(
            f"Loan {loan.id} is {loan.status.value}; only Approved loans can be scheduled."
        )
    if loan.approval_date is None:
        raise FailedPreconditionError(f"Loan {loan.id} has no valid approval_date.")

    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    approval = loan.approval_date
    if approval.tzinfo is None:
        approval = approval.replace(tzinfo=tz or timezone.utc)
    if approval > now:
        raise FailedPreconditionError(f"Loan {loan.id} approval_date lies in the future.")

    if loan.tenure <= 0:
        raise FailedPreconditionError(f"Loan {loan.id} has invalid tenure '{loan.tenure}'.")

    emi = loan.emi_for_cadence()
    if is_invalid(emi) or emi <= ZERO:
        raise FailedPreconditionError(
            f"Loan {loan.id} has invalid {loan.repayment_type.value} EMI amount for scheduling."
        )

    anchor = anchor_date(loan.approval_date, tz)
    created = datetime.now(timezone.utc)
    return [
        ScheduledInstallment(
            id=f"{loan.id}_{number}",
            created_at=created,
            updated_at=created,
            loan_id=loan.id,
            installment_number=number,
            due_date=add_cadence(anchor, loan.repayment_type, number),
            expected_amount=emi,
        )
        for number in range(1, loan.tenure + 1)
    ]


class ScheduleGenerator:
    """
    Writes a loan's installment plan exactly once, on approval
    """

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 tz: Optional[tzinfo] = None):
        self.storage = storage
        self.audit_trail = audit_trail
        self.tz = tz
        self.loans_table = "loans"
        self.installments_table = INSTALLMENTS_TABLE

    def schedule_installments(self, loan_id: str, user_id: Optional[str] = None) -> Dict[str, Any]:
        """
        Generate and persist the EMI schedule for an Approved loan

        The loan's schedule_generated flag is checked and set in the same
        transaction as the installment writes, so a second call fails
        instead of duplicating the plan.

        Returns:
            {"success": True, "message": ..., "installments": count}
        """
        if not loan_id:
            raise InvalidArgumentError("loan_id is required.")

        try:
            with self.storage.atomic():
                data = self.storage.load(self.loans_table, loan_id)
                if not data:
                    raise NotFoundError(f"Loan application {loan_id} not found.")
                loan = Loan.from_dict(data)
                if loan.schedule_generated:
                    raise FailedPreconditionError(f"EMI schedule already exists for loan {loan_id}.")

                schedule = generate_schedule(loan, self.tz)
                for installment in schedule:
                    self.storage.save(self.installments_table, installment.id, installment.to_dict())

                loan.schedule_generated = True
                loan.updated_at = datetime.now(timezone.utc)
                self.storage.save(self.loans_table, loan.id, loan.to_dict())

                self.audit_trail.log_event(
                    event_type=AuditEventType.SCHEDULE_GENERATED,
                    entity_type="loan",
                    entity_id=loan.id,
                    user_id=user_id,
                    metadata={
                        "installments": len(schedule),
                        "first_due_date": schedule[0].due_date,
                        "last_due_date": schedule[-1].due_date,
                        "expected_amount": schedule[0].expected_amount,
                    }
                )
        except MicrofinanceError:
            raise
        except Exception as e:
            logger.error("Error scheduling payments for loan %s", loan_id, exc_info=True)
            raise InternalError(f"Failed to write EMI schedule for loan {loan_id}: {e}") from e

        logger.info("Created %d scheduled payments for loan %s", len(schedule), loan_id)
        return {
            "success": True,
            "message": "EMI schedule created successfully.",
            "installments": len(schedule),
        }

    def get_schedule(self, loan_id: str) -> List[ScheduledInstallment]:
        """Installments for a loan ordered by due date"""
        data = self.storage.find(self.installments_table, {"loan_id": loan_id})
        schedule = [ScheduledInstallment.from_dict(d) for d in data]
        schedule.sort(key=lambda s: (s.due_date, s.installment_number))
        return schedule
