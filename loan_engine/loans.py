"""
Loans Module

The Loan aggregate, its repayment schedule and its immutable payment
transactions, plus the LoanManager that creates, disburses and writes off
loans. Balances are mutated only by disbursement, the repayment processor and
the delinquency engine.
"""

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Union
import uuid

from .audit import AuditTrail, AuditEventType
from .calculator import AmortizationCalculator, AmortizationSchedule
from .clock import Clock, SystemClock
from .config import LoanEngineConfig, get_config
from .currency import Currency, Money, sum_money, to_decimal
from .exceptions import InvalidLoanStateError, NotFoundError
from .locking import EngineLocks
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


logger = get_logger("loan_engine.loans")


class LoanStatus(Enum):
    """Loan lifecycle states"""
    PENDING = "pending"
    DISBURSED = "disbursed"
    ACTIVE = "active"
    CLOSED = "closed"
    WRITTEN_OFF = "written_off"


REPAYABLE_STATUSES = (LoanStatus.DISBURSED, LoanStatus.ACTIVE)


class LoanClassification(Enum):
    """Regulatory delinquency buckets, in increasing severity"""
    PERFORMING = "performing"
    SPECIAL_MENTION = "special_mention"
    SUBSTANDARD = "substandard"
    DOUBTFUL = "doubtful"
    LOSS = "loss"
    CLOSED = "closed"

    @property
    def severity(self) -> int:
        return _SEVERITY[self]

    @classmethod
    def for_days_overdue(cls, days_overdue: int) -> 'LoanClassification':
        """
        PERFORMING 0-30, SPECIAL_MENTION 31-90, SUBSTANDARD 91-180,
        DOUBTFUL 181-360, LOSS 361+
        """
        if days_overdue >= 361:
            return cls.LOSS
        if days_overdue >= 181:
            return cls.DOUBTFUL
        if days_overdue >= 91:
            return cls.SUBSTANDARD
        if days_overdue >= 31:
            return cls.SPECIAL_MENTION
        return cls.PERFORMING


_SEVERITY = {
    LoanClassification.CLOSED: -1,
    LoanClassification.PERFORMING: 0,
    LoanClassification.SPECIAL_MENTION: 1,
    LoanClassification.SUBSTANDARD: 2,
    LoanClassification.DOUBTFUL: 3,
    LoanClassification.LOSS: 4,
}


class ScheduleItemStatus(Enum):
    """Installment states"""
    PENDING = "pending"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    WRITTEN_OFF = "written_off"


UNPAID_ITEM_STATUSES = (ScheduleItemStatus.PENDING, ScheduleItemStatus.PARTIALLY_PAID)


@dataclass
class Loan(StorageRecord):
    """
    Loan aggregate.

    outstanding_balance = max(0, total_repayable - principal_paid
    - interest_paid - interest_rebate) + unpaid penalty
    """
    member_id: str
    currency: Currency
    principal: Money
    annual_rate: Decimal
    term_months: int
    status: LoanStatus
    classification: LoanClassification
    emi: Money
    total_interest: Money
    total_repayable: Money
    principal_paid: Money
    interest_paid: Money
    interest_rebate: Money
    penalty_amount: Money
    penalty_paid: Money
    credit_balance: Money
    outstanding_balance: Money
    arrears_amount: Money
    days_in_arrears: int = 0
    application_id: Optional[str] = None
    loan_number: Optional[str] = None
    disbursement_date: Optional[date] = None
    next_payment_date: Optional[date] = None
    last_payment_date: Optional[date] = None
    penalty_accrued_through: Optional[date] = None
    closed_at: Optional[datetime] = None
    write_off_reason: Optional[str] = None

    @property
    def principal_outstanding(self) -> Money:
        return self.principal - self.principal_paid

    @property
    def interest_outstanding(self) -> Money:
        remaining = self.total_interest - self.interest_paid - self.interest_rebate
        return remaining if remaining.is_positive() else Money.zero(self.currency)

    @property
    def penalty_outstanding(self) -> Money:
        return self.penalty_amount - self.penalty_paid

    @property
    def is_repayable(self) -> bool:
        return self.status in REPAYABLE_STATUSES

    def recompute_outstanding(self) -> Money:
        contractual = self.total_repayable - self.principal_paid - self.interest_paid - self.interest_rebate
        if contractual.is_negative():
            contractual = Money.zero(self.currency)
        self.outstanding_balance = contractual + self.penalty_outstanding
        return self.outstanding_balance


@dataclass
class ScheduleItem(StorageRecord):
    """One installment of a disbursed loan"""
    loan_id: str
    currency: Currency
    installment_number: int
    due_date: date
    principal_amount: Money
    interest_amount: Money
    total_amount: Money
    paid_amount: Money
    status: ScheduleItemStatus
    paid_date: Optional[date] = None

    @property
    def remaining(self) -> Money:
        return self.total_amount - self.paid_amount

    @property
    def unpaid_interest(self) -> Money:
        """Interest portion not yet covered; payments cover interest first"""
        unpaid = self.interest_amount - self.paid_amount
        return unpaid if unpaid.is_positive() else Money.zero(self.currency)

    @property
    def is_unpaid(self) -> bool:
        return self.status in UNPAID_ITEM_STATUSES


@dataclass
class LoanTransaction(StorageRecord):
    """Immutable record of one repayment"""
    loan_id: str
    currency: Currency
    amount: Money
    credit_applied: Money
    penalty_paid: Money
    interest_paid: Money
    principal_paid: Money
    refund_amount: Money
    credited_amount: Money
    accrued_interest: Money
    balance_after: Money
    transaction_date: date
    receipt_number: str
    payment_method: str
    reference: Optional[str] = None
    processed_by: Optional[str] = None


class LoanManager:
    """
    Creates, disburses and writes off loans.

    Disbursement turns the calculator's schedule into persisted schedule
    items and registers the loan in the loan register.
    """

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        calculator: Optional[AmortizationCalculator] = None,
        clock: Optional[Clock] = None,
        locks: Optional[EngineLocks] = None,
        config: Optional[LoanEngineConfig] = None,
        applications=None,
    ):
        self.storage = storage
        self.audit = audit_trail
        self.config = config or get_config()
        self.calculator = calculator or AmortizationCalculator(self.config)
        self.clock = clock or SystemClock()
        self.locks = locks or EngineLocks()
        self.applications = applications
        # Set by the LoanRegister when it is wired up
        self.register = None
        self.currency = Currency.from_code(self.config.currency)

        self.loans_table = "loans"
        self.schedule_table = "loan_schedule_items"
        self.transactions_table = "loan_transactions"

    def create_loan(
        self,
        member_id: str,
        principal: Union[Money, Decimal, int, str],
        annual_rate: Union[Decimal, int, str],
        term_months: int,
        application_id: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Loan:
        """Create a loan in PENDING status after validating its parameters"""
        if isinstance(principal, Money):
            amount = principal
        else:
            amount = Money(to_decimal(principal), self.currency)
        rate = to_decimal(annual_rate)
        # Raises InvalidParametersError
        emi = self.calculator.calculate_emi(amount, rate, term_months)

        if application_id is not None and self.applications is not None:
            self.applications.require_application(application_id)

        now = self.clock.now()
        zero = Money.zero(amount.currency)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            member_id=member_id,
            currency=amount.currency,
            principal=amount,
            annual_rate=rate,
            term_months=term_months,
            status=LoanStatus.PENDING,
            classification=LoanClassification.PERFORMING,
            emi=emi,
            total_interest=zero,
            total_repayable=zero,
            principal_paid=zero,
            interest_paid=zero,
            interest_rebate=zero,
            penalty_amount=zero,
            penalty_paid=zero,
            credit_balance=zero,
            outstanding_balance=zero,
            arrears_amount=zero,
            application_id=application_id,
        )
        self.save_loan(loan)

        self.audit.log_event(
            AuditEventType.LOAN_CREATED,
            entity_type="loan",
            entity_id=loan.id,
            metadata={
                "member_id": member_id,
                "principal": amount,
                "annual_rate": rate,
                "term_months": term_months,
                "application_id": application_id,
            },
            user_id=created_by,
        )
        log_action(logger, "info", f"Loan {loan.id} created for member {member_id}",
                   user_id=created_by, action="create_loan", resource=loan.id,
                   extra={"principal": str(amount.amount), "term_months": term_months})
        return loan

    def disburse_loan(self, loan_id: str, disbursement_date: Optional[date] = None,
                      disbursed_by: Optional[str] = None) -> Loan:
        """
        Disburse a PENDING loan.

        Persists one schedule item per installment, sets the balances from the
        schedule totals and registers the loan. Everything happens in one
        storage transaction.
        """
        with self.locks.loans.hold(loan_id):
            with self.storage.atomic():
                loan = self.require_loan(loan_id)
                if loan.status != LoanStatus.PENDING:
                    raise InvalidLoanStateError(
                        f"Loan {loan_id} cannot be disbursed from status {loan.status.value}"
                    )
                application = self._check_application_disbursable(loan)

                disbursement_date = disbursement_date or self.clock.today()
                schedule = self.calculator.generate_amortization_schedule(
                    loan.principal, loan.annual_rate, loan.term_months, disbursement_date
                )
                items = self._create_schedule_items(loan, schedule)

                now = self.clock.now()
                loan.status = LoanStatus.DISBURSED
                loan.classification = LoanClassification.PERFORMING
                loan.emi = schedule.emi
                loan.total_interest = schedule.total_interest
                loan.total_repayable = schedule.total_payment
                loan.disbursement_date = disbursement_date
                loan.next_payment_date = items[0].due_date
                loan.recompute_outstanding()
                loan.updated_at = now
                self.save_loan(loan)

                if self.register is not None:
                    entry = self.register.register_loan(loan.id, registered_by=disbursed_by)
                    loan.loan_number = entry.serial_number
                    self.save_loan(loan)

                if application is not None:
                    self.applications.mark_disbursed(application.id, loan.id)

                self.audit.log_event(
                    AuditEventType.LOAN_DISBURSED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={
                        "principal": loan.principal,
                        "emi": loan.emi,
                        "total_repayable": loan.total_repayable,
                        "disbursement_date": disbursement_date,
                        "loan_number": loan.loan_number,
                    },
                    user_id=disbursed_by,
                )

        log_action(logger, "info", f"Loan {loan.id} disbursed",
                   user_id=disbursed_by, action="disburse_loan", resource=loan.id,
                   extra={"loan_number": loan.loan_number, "emi": str(loan.emi.amount)})
        return loan

    def _check_application_disbursable(self, loan: Loan):
        if loan.application_id is None or self.applications is None:
            return None
        application = self.applications.require_application(loan.application_id)
        if not application.is_disbursable:
            raise InvalidLoanStateError(
                f"Application {application.id} is {application.status.value} and cannot be disbursed"
            )
        return application

    def _create_schedule_items(self, loan: Loan, schedule: AmortizationSchedule) -> List[ScheduleItem]:
        now = self.clock.now()
        zero = Money.zero(loan.currency)
        items = []
        for entry in schedule.entries:
            item = ScheduleItem(
                id=f"{loan.id}:{entry.installment_number:03d}",
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                currency=loan.currency,
                installment_number=entry.installment_number,
                due_date=entry.due_date,
                principal_amount=entry.principal,
                interest_amount=entry.interest,
                total_amount=entry.installment,
                paid_amount=zero,
                status=ScheduleItemStatus.PENDING,
            )
            self.save_schedule_item(item)
            items.append(item)
        return items

    def write_off_loan(self, loan_id: str, reason: str,
                       written_off_by: Optional[str] = None) -> Loan:
        """Write off a DISBURSED or ACTIVE loan and its unpaid installments"""
        with self.locks.loans.hold(loan_id):
            with self.storage.atomic():
                loan = self.require_loan(loan_id)
                if not loan.is_repayable:
                    raise InvalidLoanStateError(
                        f"Loan {loan_id} cannot be written off from status {loan.status.value}"
                    )
                now = self.clock.now()
                written_off = Money.zero(loan.currency)
                for item in self.get_schedule(loan_id):
                    if item.is_unpaid:
                        written_off = written_off + item.remaining
                        item.status = ScheduleItemStatus.WRITTEN_OFF
                        item.updated_at = now
                        self.save_schedule_item(item)

                loan.status = LoanStatus.WRITTEN_OFF
                loan.write_off_reason = reason
                loan.next_payment_date = None
                loan.closed_at = now
                loan.updated_at = now
                self.save_loan(loan)

                self.audit.log_event(
                    AuditEventType.LOAN_WRITTEN_OFF,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={
                        "reason": reason,
                        "outstanding_balance": loan.outstanding_balance,
                        "installments_written_off": written_off,
                    },
                    user_id=written_off_by,
                )

        log_action(logger, "warning", f"Loan {loan_id} written off: {reason}",
                   user_id=written_off_by, action="write_off_loan", resource=loan_id)
        return loan

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        """Get loan by ID"""
        data = self.storage.load(self.loans_table, loan_id)
        if data is None:
            return None
        return Loan.from_dict(data)

    def require_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if loan is None:
            raise NotFoundError("loan", loan_id)
        return loan

    def list_loans(self, status: Optional[Union[LoanStatus, Iterable[LoanStatus]]] = None,
                   member_id: Optional[str] = None) -> List[Loan]:
        filters: Dict[str, Any] = {}
        if isinstance(status, LoanStatus):
            filters['status'] = status.value
        elif status is not None:
            filters['status'] = [s.value for s in status]
        if member_id is not None:
            filters['member_id'] = member_id
        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, filters)]
        loans.sort(key=lambda loan: loan.created_at)
        return loans

    def get_schedule(self, loan_id: str) -> List[ScheduleItem]:
        """Schedule items in due-date order"""
        items = [ScheduleItem.from_dict(data)
                 for data in self.storage.find(self.schedule_table, {'loan_id': loan_id})]
        items.sort(key=lambda item: item.installment_number)
        return items

    def get_transactions(self, loan_id: str) -> List[LoanTransaction]:
        transactions = [LoanTransaction.from_dict(data)
                        for data in self.storage.find(self.transactions_table, {'loan_id': loan_id})]
        transactions.sort(key=lambda t: t.created_at)
        return transactions

    def get_transaction(self, transaction_id: str) -> Optional[LoanTransaction]:
        data = self.storage.load(self.transactions_table, transaction_id)
        return LoanTransaction.from_dict(data) if data else None

    def overdue_amount(self, loan_id: str, as_of: date) -> Money:
        """Unpaid amount of installments that fell due before as_of"""
        loan = self.require_loan(loan_id)
        items = [item for item in self.get_schedule(loan_id)
                 if item.is_unpaid and item.due_date < as_of]
        return sum_money((item.remaining for item in items), loan.currency)

    def save_loan(self, loan: Loan) -> None:
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def save_schedule_item(self, item: ScheduleItem) -> None:
        self.storage.save(self.schedule_table, item.id, item.to_dict())

    def save_transaction(self, transaction: LoanTransaction) -> bool:
        """Transactions are write-once"""
        return self.storage.save_if_absent(self.transactions_table, transaction.id,
                                           transaction.to_dict())
