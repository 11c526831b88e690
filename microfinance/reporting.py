"""
Collection Reporting Module

Daily expected-vs-collected figures across the approved portfolio and the
per-branch collection sheet used by branch managers. Everything here is
read-only: the builders are pure functions over loans and payment entries,
and ReportingEngine only adds the fetch step in front of them.
"""

from decimal import Decimal
from datetime import date, datetime, timedelta, tzinfo
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional
import logging

from .currency import ZERO, add, is_invalid, round_money, subtract
from .errors import InvalidArgumentError
from .ledger import PaymentEntry, PaymentLedger
from .loans import Loan, LoanManager, LoanStatus, RepaymentType
from .schedule import add_cadence, anchor_date
from .storage import StorageInterface


logger = logging.getLogger(__name__)

DEFAULT_MAX_DAYS = 90


@dataclass
class DailyCollectionRow:
    """One calendar day of the collection report"""
    date: date
    collected_today: Decimal
    expected_today: Decimal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "collected_today": str(self.collected_today),
            "expected_today": str(self.expected_today),
        }


@dataclass
class BranchCollectionReport:
    """Who paid and who is still pending in a branch on one day"""
    branch_code: str
    date: date
    paid_customers: List[Dict[str, Any]] = field(default_factory=list)
    pending_customers: List[Dict[str, Any]] = field(default_factory=list)
    collected: Decimal = ZERO
    expected: Decimal = ZERO

    @property
    def outstanding(self) -> Decimal:
        return subtract(self.expected, self.collected)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "branch_code": self.branch_code,
            "date": self.date.isoformat(),
            "paid_customers": self.paid_customers,
            "pending_customers": self.pending_customers,
            "collected": str(self.collected),
            "expected": str(self.expected),
            "outstanding": str(self.outstanding),
        }


def loan_end_date(loan: Loan, tz: Optional[tzinfo] = None) -> Optional[date]:
    """
    approval anchor + tenure cadence units

    None without a valid approval date, or when the term runs past the
    last representable calendar day.
    """
    anchor = anchor_date(loan.approval_date, tz)
    if anchor is None:
        return None
    try:
        return add_cadence(anchor, loan.repayment_type, loan.tenure)
    except (OverflowError, ValueError):
        return None


def is_due_on(loan: Loan, day: date, tz: Optional[tzinfo] = None) -> bool:
    """
    Whether `day` is a collection day for the loan

    The day must lie in [approval day, end date) and align with the cadence:
    every day for Daily, whole weeks from the approval day for Weekly, the
    approval's day-of-month for Monthly.
    """
    anchor = anchor_date(loan.approval_date, tz)
    if anchor is None or loan.tenure <= 0:
        return False
    end = loan_end_date(loan, tz)
    if end is None or day < anchor or day >= end:
        return False

    if loan.repayment_type == RepaymentType.DAILY:
        return True
    if loan.repayment_type == RepaymentType.WEEKLY:
        return (day - anchor).days % 7 == 0
    return day.day == anchor.day


def expected_on(loan: Loan, day: date, tz: Optional[tzinfo] = None) -> Decimal:
    """Cadence EMI if the loan is due on `day`, else zero. Bad EMIs count as zero."""
    emi = loan.emi_for_cadence()
    if is_invalid(emi) or emi <= ZERO:
        return ZERO
    return emi if is_due_on(loan, day, tz) else ZERO


def _reportable(loans: Iterable[Loan], tz: Optional[tzinfo] = None) -> List[Loan]:
    """Loans whose collection window can be computed; the rest are logged and skipped"""
    usable = []
    for loan in loans:
        if loan.approval_date is not None and loan.tenure > 0 and loan_end_date(loan, tz) is None:
            logger.warning("Skipping loan %s in collection report: term out of range", loan.id)
            continue
        usable.append(loan)
    return usable


def validate_number_of_days(number_of_days: Any, max_days: int = DEFAULT_MAX_DAYS) -> int:
    if isinstance(number_of_days, bool) or not isinstance(number_of_days, int):
        raise InvalidArgumentError(f"number_of_days must be an integer, got '{number_of_days}'.")
    if not 1 <= number_of_days <= max_days:
        raise InvalidArgumentError(f"number_of_days must be between 1 and {max_days}.")
    return number_of_days


def _collected_by_day(payments: Iterable[PaymentEntry]) -> Dict[date, Decimal]:
    totals: Dict[date, Decimal] = {}
    for payment in payments:
        contribution = payment.total
        if payment.collection_date is None or is_invalid(contribution):
            logger.warning("Skipping unreadable payment %s in collection report", payment.id)
            continue
        totals[payment.collection_date] = add(
            totals.get(payment.collection_date, ZERO), contribution
        )
    return totals


def build_daily_report(
    loans: List[Loan],
    payments: List[PaymentEntry],
    number_of_days: int,
    reference_date: date,
    tz: Optional[tzinfo] = None,
    max_days: int = DEFAULT_MAX_DAYS
) -> List[DailyCollectionRow]:
    """
    Collected and expected amounts for each of `number_of_days` days ending
    at `reference_date` (inclusive), most recent day first.

    Sums are kept exact and rounded half-up to cents only once per row.
    An empty loan list still yields one zero row per day.
    """
    validate_number_of_days(number_of_days, max_days)
    collected = _collected_by_day(payments)
    loans = _reportable(loans, tz)

    rows = []
    for offset in range(number_of_days):
        day = reference_date - timedelta(days=offset)
        expected = ZERO
        for loan in loans:
            expected = add(expected, expected_on(loan, day, tz))
        rows.append(DailyCollectionRow(
            date=day,
            collected_today=round_money(collected.get(day, ZERO)),
            expected_today=round_money(expected),
        ))
    return rows


def build_branch_collection_report(
    loans: List[Loan],
    payments: List[PaymentEntry],
    branch_code: str,
    target_date: date,
    tz: Optional[tzinfo] = None
) -> BranchCollectionReport:
    """
    Paid and pending customers of a branch (or sub-branch) on `target_date`

    branch_code "all" covers every branch. Only Approved loans appear.
    """
    in_branch = [
        loan for loan in _reportable(loans, tz)
        if loan.status == LoanStatus.APPROVED
        and (branch_code == "all" or branch_code in (loan.branch_code, loan.sub_branch_code))
    ]
    report = BranchCollectionReport(branch_code=branch_code, date=target_date)

    todays: Dict[str, List[PaymentEntry]] = {}
    for payment in payments:
        if payment.collection_date == target_date and not is_invalid(payment.total):
            todays.setdefault(payment.loan_id, []).append(payment)

    collected = ZERO
    expected = ZERO
    for loan in in_branch:
        expected = add(expected, expected_on(loan, target_date, tz))
        loan_payments = todays.get(loan.id)
        if loan_payments:
            amount = ZERO
            for payment in loan_payments:
                amount = add(amount, payment.total)
            collected = add(collected, amount)
            report.paid_customers.append({
                "loan_id": loan.id,
                "customer_name": loan.customer_name,
                "mobile_number": loan.mobile_number,
                "collected_amount": str(round_money(amount)),
                "collected_by": loan_payments[0].collected_by,
            })
        else:
            emi = loan.emi_for_cadence()
            report.pending_customers.append({
                "loan_id": loan.id,
                "customer_name": loan.customer_name,
                "mobile_number": loan.mobile_number,
                "repayment_type": loan.repayment_type.value,
                "emi_amount": str(ZERO if is_invalid(emi) else emi),
                "due_today": is_due_on(loan, target_date, tz),
            })

    report.collected = round_money(collected)
    report.expected = round_money(expected)
    return report


class ReportingEngine:
    """
    Collection reports over the store's approved portfolio
    """

    def __init__(
        self,
        storage: StorageInterface,
        loan_manager: LoanManager,
        ledger: PaymentLedger,
        tz: Optional[tzinfo] = None,
        max_days: int = DEFAULT_MAX_DAYS
    ):
        self.storage = storage
        self.loan_manager = loan_manager
        self.ledger = ledger
        self.tz = tz
        self.max_days = max_days

    def today(self) -> date:
        """Current calendar day in the business timezone"""
        return datetime.now(self.tz).date()

    def daily_collection_report(self, number_of_days: int,
                                reference_date: Optional[date] = None) -> List[DailyCollectionRow]:
        """Daily rows for the last `number_of_days` days, most recent first"""
        validate_number_of_days(number_of_days, self.max_days)
        loans, payments = self._approved_portfolio()
        rows = build_daily_report(
            loans, payments, number_of_days, reference_date or self.today(),
            tz=self.tz, max_days=self.max_days
        )
        logger.info(
            "Built %d-day collection report over %d approved loans", number_of_days, len(loans)
        )
        return rows

    def branch_collection_report(self, branch_code: str,
                                 target_date: Optional[date] = None) -> BranchCollectionReport:
        if not branch_code:
            raise InvalidArgumentError("branch_code is required.")
        loans, payments = self._approved_portfolio()
        return build_branch_collection_report(
            loans, payments, branch_code, target_date or self.today(), tz=self.tz
        )

    def _approved_portfolio(self):
        loans = self.loan_manager.list_loans(status=LoanStatus.APPROVED)
        payments = self.ledger.list_payments_for_loans(loan.id for loan in loans)
        return loans, payments
