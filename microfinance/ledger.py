"""
Payment Ledger Module

System of record for EMI collections. Recording, editing and deleting a
payment entry each run as one serializable storage transaction that also
re-derives the loan's total_amount_paid, so at every commit

    loan.total_amount_paid == sum(entry.amount_paid + entry.fine)

over the entries that exist for the loan. All arithmetic is Decimal.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional
from enum import Enum
from contextlib import contextmanager
import logging
import re
import uuid

from .audit import AuditTrail, AuditEventType
from .currency import ZERO, add, is_invalid, subtract, to_decimal
from .errors import (
    FailedPreconditionError, InternalError, InvalidArgumentError, MicrofinanceError, NotFoundError
)
from .loans import Loan, LoanStatus
from .logging_config import log_action
from .schedule import INSTALLMENTS_TABLE, InstallmentStatus, ScheduledInstallment
from .storage import StorageInterface, StorageRecord, parse_date, parse_datetime


logger = logging.getLogger(__name__)

PAYMENTS_TABLE = "loan_payments"

_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}")


class PaymentMode(Enum):
    """How the installment was collected"""
    CASH = "Cash"
    ONLINE = "Online"
    CHEQUE = "Cheque"


@dataclass
class PaymentEntry(StorageRecord):
    """A single collection recorded against a loan"""
    loan_id: str
    amount_paid: Decimal
    fine: Decimal
    payment_mode: PaymentMode
    collection_date: date
    remarks: str = ""
    collected_by: Optional[str] = None
    installment_id: Optional[str] = None  # installment settled at creation, if any
    edited_by: Optional[str] = None
    edited_at: Optional[datetime] = None

    @property
    def total(self) -> Decimal:
        """amount_paid + fine"""
        return add(self.amount_paid, self.fine)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PaymentEntry':
        return cls(
            id=data['id'],
            created_at=parse_datetime(data['created_at']),
            updated_at=parse_datetime(data['updated_at']),
            loan_id=data['loan_id'],
            # Corrupt stored amounts come back as NaN and abort the transaction
            amount_paid=to_decimal(data.get('amount_paid')),
            fine=to_decimal(data.get('fine')),
            payment_mode=PaymentMode(data['payment_mode']),
            collection_date=parse_date(data.get('collection_date')),
            remarks=data.get('remarks') or "",
            collected_by=data.get('collected_by'),
            installment_id=data.get('installment_id'),
            edited_by=data.get('edited_by'),
            edited_at=parse_datetime(data.get('edited_at')),
        )


@dataclass
class PaymentResult:
    """Outcome of a ledger mutation: the entry and the loan after commit"""
    payment: Optional[PaymentEntry]
    loan: Loan
    installment: Optional[ScheduledInstallment] = None


def parse_amount(value: Any, field_name: str, allow_zero: bool = False) -> Decimal:
    """Finite positive (or non-negative) Decimal, else InvalidArgumentError"""
    if value is None or value == "" or isinstance(value, bool):
        if allow_zero and value in (None, ""):
            return ZERO
        raise InvalidArgumentError(f"{field_name} is required and must be numeric.")
    amount = to_decimal(value)
    if is_invalid(amount):
        raise InvalidArgumentError(f"{field_name} must be a finite number, got '{value}'.")
    if amount < ZERO or (amount == ZERO and not allow_zero):
        qualifier = "non-negative" if allow_zero else "positive"
        raise InvalidArgumentError(f"{field_name} must be {qualifier}, got '{value}'.")
    return amount


def parse_collection_date(value: Any) -> date:
    """Calendar date from a date, datetime or ISO string"""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and _ISO_DATE.match(value):
        try:
            return date.fromisoformat(value[:10])
        except ValueError:
            pass
    raise InvalidArgumentError(f"collection_date must be an ISO date, got '{value}'.")


def parse_payment_mode(value: Any) -> PaymentMode:
    if isinstance(value, PaymentMode):
        return value
    try:
        return PaymentMode(value)
    except ValueError:
        raise InvalidArgumentError(f"payment_mode must be Cash, Online or Cheque, got '{value}'.")


class PaymentLedger:
    """
    Records, edits and deletes payment entries against Approved loans
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        reopen_installments_on_reversal: bool = False
    ):
        self.storage = storage
        self.audit_trail = audit_trail
        self.reopen_installments_on_reversal = reopen_installments_on_reversal

        self.loans_table = "loans"
        self.payments_table = PAYMENTS_TABLE
        self.installments_table = INSTALLMENTS_TABLE

    def record_payment(
        self,
        loan_id: str,
        amount: Any,
        payment_mode: Any,
        collection_date: Any,
        fine: Any = None,
        remarks: Optional[str] = None,
        collected_by: Optional[str] = None
    ) -> PaymentResult:
        """
        Record a collection and settle the oldest pending installment

        If no installment is pending the payment is still recorded
        (overpayment) and a warning is logged.

        Raises:
            InvalidArgumentError: bad amount, fine, mode or date
            NotFoundError: loan does not exist
            FailedPreconditionError: loan is not Approved
            InternalError: arithmetic corruption or store failure
        """
        self._require_id(loan_id, "loan_id")
        amount = parse_amount(amount, "amount")
        fine = parse_amount(fine, "fine", allow_zero=True)
        mode = parse_payment_mode(payment_mode)
        collected_on = parse_collection_date(collection_date)

        with self._transaction("record payment", loan_id):
            loan = self._load_loan(loan_id)
            if loan.status != LoanStatus.APPROVED:
                raise FailedPreconditionError(
                    f"Cannot record payment for a loan with status: {loan.status.value}"
                )

            installment = self._oldest_pending_installment(loan_id)

            now = datetime.now(timezone.utc)
            payment = PaymentEntry(
                id=str(uuid.uuid4()),
                created_at=now,
                updated_at=now,
                loan_id=loan_id,
                amount_paid=amount,
                fine=fine,
                payment_mode=mode,
                collection_date=collected_on,
                remarks=remarks or "",
                collected_by=collected_by,
                installment_id=installment.id if installment else None,
            )

            if installment:
                installment.status = InstallmentStatus.PAID
                installment.payment_id = payment.id
                installment.amount_paid = amount
                installment.paid_on = collected_on
                installment.updated_at = now
                self.storage.save(self.installments_table, installment.id, installment.to_dict())
            else:
                logger.warning(
                    "No pending scheduled payment found for loan %s. Recording as overpayment.",
                    loan_id
                )

            previous_total = loan.total_amount_paid
            loan.total_amount_paid = self._checked_total(add(add(previous_total, amount), fine))
            loan.updated_at = now

            self.storage.save(self.payments_table, payment.id, payment.to_dict())
            self.storage.save(self.loans_table, loan.id, loan.to_dict())

            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_RECORDED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=collected_by,
                metadata={
                    "payment_id": payment.id,
                    "amount_paid": amount,
                    "fine": fine,
                    "payment_mode": mode,
                    "collection_date": collected_on,
                    "installment_id": payment.installment_id,
                    "previous_total": previous_total,
                    "total_amount_paid": loan.total_amount_paid,
                }
            )

        log_action(
            logger, "info", f"Payment recorded for loan {loan_id}",
            user_id=collected_by, action="record_payment", resource=f"loan:{loan_id}",
            extra={"payment_id": payment.id, "total_amount_paid": str(loan.total_amount_paid)}
        )
        return PaymentResult(payment=payment, loan=loan, installment=installment)

    def edit_payment(
        self,
        loan_id: str,
        payment_id: str,
        amount: Any,
        payment_mode: Any,
        collection_date: Any,
        fine: Any = None,
        remarks: Optional[str] = None,
        edited_by: Optional[str] = None
    ) -> PaymentResult:
        """
        Replace a payment entry's monetary and descriptive fields wholesale

        total_amount_paid becomes total - (old amount + old fine) + (new amount + new fine).
        The installment the payment settled keeps its status.
        """
        self._require_id(loan_id, "loan_id")
        self._require_id(payment_id, "payment_id")
        amount = parse_amount(amount, "amount")
        fine = parse_amount(fine, "fine", allow_zero=True)
        mode = parse_payment_mode(payment_mode)
        collected_on = parse_collection_date(collection_date)

        with self._transaction("edit payment", loan_id):
            loan = self._load_loan(loan_id)
            payment = self._load_payment(loan_id, payment_id)
            if payment is None:
                raise NotFoundError(f"Payment record {payment_id} not found.")

            old_total = payment.total
            new_contribution = add(amount, fine)
            previous_total = loan.total_amount_paid
            loan.total_amount_paid = self._checked_total(
                add(subtract(previous_total, old_total), new_contribution)
            )

            now = datetime.now(timezone.utc)
            payment.amount_paid = amount
            payment.fine = fine
            payment.payment_mode = mode
            payment.collection_date = collected_on
            payment.remarks = remarks or ""
            payment.edited_by = edited_by
            payment.edited_at = now
            payment.updated_at = now
            loan.updated_at = now

            self.storage.save(self.payments_table, payment.id, payment.to_dict())
            self.storage.save(self.loans_table, loan.id, loan.to_dict())

            if self.reopen_installments_on_reversal:
                self._refresh_installment_snapshot(payment, now)

            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_EDITED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=edited_by,
                metadata={
                    "payment_id": payment.id,
                    "old_total": old_total,
                    "new_total": new_contribution,
                    "previous_total": previous_total,
                    "total_amount_paid": loan.total_amount_paid,
                }
            )

        log_action(
            logger, "info", f"Payment {payment_id} edited for loan {loan_id}",
            user_id=edited_by, action="edit_payment", resource=f"loan:{loan_id}",
            extra={"payment_id": payment_id, "total_amount_paid": str(loan.total_amount_paid)}
        )
        return PaymentResult(payment=payment, loan=loan)

    def delete_payment(self, loan_id: str, payment_id: str,
                       deleted_by: Optional[str] = None) -> Loan:
        """
        Delete a payment entry and subtract its amount + fine from the loan total

        Deleting an entry that no longer exists is a no-op returning the
        current loan.
        """
        self._require_id(loan_id, "loan_id")
        self._require_id(payment_id, "payment_id")

        with self._transaction("delete payment", loan_id):
            loan = self._load_loan(loan_id)
            payment = self._load_payment(loan_id, payment_id)
            if payment is None:
                logger.info("Payment %s already absent from loan %s", payment_id, loan_id)
                return loan

            reversed_total = payment.total
            previous_total = loan.total_amount_paid
            loan.total_amount_paid = self._checked_total(subtract(previous_total, reversed_total))

            now = datetime.now(timezone.utc)
            loan.updated_at = now
            self.storage.delete(self.payments_table, payment.id)
            self.storage.save(self.loans_table, loan.id, loan.to_dict())

            if self.reopen_installments_on_reversal:
                self._reopen_installment(payment, now)

            self.audit_trail.log_event(
                event_type=AuditEventType.PAYMENT_DELETED,
                entity_type="loan",
                entity_id=loan.id,
                user_id=deleted_by,
                metadata={
                    "payment_id": payment.id,
                    "reversed_total": reversed_total,
                    "previous_total": previous_total,
                    "total_amount_paid": loan.total_amount_paid,
                }
            )

        log_action(
            logger, "info", f"Payment {payment_id} deleted for loan {loan_id}",
            user_id=deleted_by, action="delete_payment", resource=f"loan:{loan_id}",
            extra={"total_amount_paid": str(loan.total_amount_paid)}
        )
        return loan

    def get_payment(self, loan_id: str, payment_id: str) -> Optional[PaymentEntry]:
        """Payment entry if it exists under this loan"""
        return self._load_payment(loan_id, payment_id)

    def list_payments(self, loan_id: str) -> List[PaymentEntry]:
        """Payment history, most recent collection first"""
        data = self.storage.find(self.payments_table, {"loan_id": loan_id})
        payments = [PaymentEntry.from_dict(d) for d in data]
        payments.sort(key=lambda p: (p.collection_date or date.min, p.created_at), reverse=True)
        return payments

    def list_payments_for_loans(self, loan_ids: Iterable[str]) -> List[PaymentEntry]:
        """Every payment entry attached to any of the given loans"""
        wanted = set(loan_ids)
        return [
            PaymentEntry.from_dict(d)
            for d in self.storage.load_all(self.payments_table)
            if d.get('loan_id') in wanted
        ]

    @contextmanager
    def _transaction(self, action: str, loan_id: str):
        """One atomic store transaction; unexpected failures surface as InternalError"""
        try:
            with self.storage.atomic():
                yield
        except MicrofinanceError as e:
            logger.info("Failed to %s for loan %s: %s", action, loan_id, e)
            raise
        except Exception as e:
            logger.error("Error during %s for loan %s", action, loan_id, exc_info=True)
            raise InternalError(f"An error occurred during {action}: {e}") from e

    def _load_loan(self, loan_id: str) -> Loan:
        data = self.storage.load(self.loans_table, loan_id)
        if not data:
            raise NotFoundError(f"Loan application {loan_id} not found.")
        return Loan.from_dict(data)

    def _load_payment(self, loan_id: str, payment_id: str) -> Optional[PaymentEntry]:
        data = self.storage.load(self.payments_table, payment_id)
        if not data or data.get('loan_id') != loan_id:
            return None
        return PaymentEntry.from_dict(data)

    def _oldest_pending_installment(self, loan_id: str) -> Optional[ScheduledInstallment]:
        pending = [
            ScheduledInstallment.from_dict(d)
            for d in self.storage.find(
                self.installments_table,
                {"loan_id": loan_id, "status": InstallmentStatus.PENDING.value}
            )
        ]
        if not pending:
            return None
        return min(pending, key=lambda s: (s.due_date, s.installment_number))

    def _checked_total(self, total: Decimal) -> Decimal:
        if is_invalid(total):
            raise InternalError("Calculation resulted in NaN.")
        if total < ZERO:
            raise InternalError(f"Total amount paid would become negative ({total}).")
        return total

    def _reopen_installment(self, payment: PaymentEntry, now: datetime) -> None:
        installment = self._linked_installment(payment)
        if installment is None:
            return
        installment.status = InstallmentStatus.PENDING
        installment.payment_id = None
        installment.amount_paid = None
        installment.paid_on = None
        installment.updated_at = now
        self.storage.save(self.installments_table, installment.id, installment.to_dict())

    def _refresh_installment_snapshot(self, payment: PaymentEntry, now: datetime) -> None:
        installment = self._linked_installment(payment)
        if installment is None:
            return
        installment.amount_paid = payment.amount_paid
        installment.paid_on = payment.collection_date
        installment.updated_at = now
        self.storage.save(self.installments_table, installment.id, installment.to_dict())

    def _linked_installment(self, payment: PaymentEntry) -> Optional[ScheduledInstallment]:
        if not payment.installment_id:
            return None
        data = self.storage.load(self.installments_table, payment.installment_id)
        if not data or data.get('payment_id') != payment.id:
            return None
        return ScheduledInstallment.from_dict(data)

    @staticmethod
    def _require_id(value: Any, name: str) -> None:
        if not value or not isinstance(value, str):
            raise InvalidArgumentError(f"{name} is required.")
