"""
Repayment Processor Module

Orchestrates one payment event against a loan:

1. reject unless the loan is DISBURSED or ACTIVE
2. accrue daily interest since the last payment (or disbursement)
3. split the payment penalty -> interest -> principal
4. record an immutable transaction
5. update balances and walk unpaid installments oldest-first
6. close the loan when nothing is left, otherwise refresh arrears
7. return a receipt
"""

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import List, Optional, Union
import uuid

from .allocation import PaymentAllocation, PaymentAllocator
from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .config import LoanEngineConfig, OverpaymentPolicy, get_config
from .currency import Money, sum_money, to_decimal
from .exceptions import InvalidAmountError, InvalidLoanStateError, OverpaymentError
from .loans import (
    Loan, LoanClassification, LoanManager, LoanStatus, LoanTransaction,
    ScheduleItem, ScheduleItemStatus,
)
from .logging_config import get_logger, log_action
from .notifications import NotificationDispatcher, NotificationType


logger = get_logger("loan_engine.repayments")

DAYS_PER_YEAR = Decimal("365")


@dataclass(frozen=True)
class PaymentDues:
    """What a loan owes on a given date"""
    as_of: date
    principal_due: Money
    interest_due: Money
    penalty_due: Money
    accrued_interest: Money
    scheduled_interest_due: Money
    credit_balance: Money

    @property
    def total_due(self) -> Money:
        return self.principal_due + self.interest_due + self.penalty_due

    @property
    def payoff_amount(self) -> Money:
        """Cash needed today to close the loan, after any credit on file"""
        payoff = self.total_due - self.credit_balance
        return payoff if payoff.is_positive() else Money.zero(payoff.currency)


@dataclass(frozen=True)
class RepaymentReceipt:
    receipt_number: str
    transaction_id: str
    loan_id: str
    payment_date: date
    amount: Money
    credit_applied: Money
    penalty_paid: Money
    interest_paid: Money
    principal_paid: Money
    refund_amount: Money
    credited_amount: Money
    remaining_balance: Money
    loan_status: LoanStatus
    next_payment_date: Optional[date]
    next_payment_amount: Optional[Money]

    @property
    def loan_closed(self) -> bool:
        return self.loan_status == LoanStatus.CLOSED


class RepaymentProcessor:
    """Applies payments to loans under a per-loan lock and one storage transaction"""

    def __init__(
        self,
        loan_manager: LoanManager,
        audit_trail: AuditTrail,
        allocator: Optional[PaymentAllocator] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        guarantor_ledger=None,
        clock: Optional[Clock] = None,
        config: Optional[LoanEngineConfig] = None,
    ):
        self.loans = loan_manager
        self.storage = loan_manager.storage
        self.locks = loan_manager.locks
        self.audit = audit_trail
        self.allocator = allocator or PaymentAllocator()
        self.dispatcher = dispatcher
        self.guarantors = guarantor_ledger
        self.clock = clock or loan_manager.clock or SystemClock()
        self.config = config or loan_manager.config or get_config()

    def _accrued_interest(self, loan: Loan, as_of: date) -> Money:
        """outstanding principal * annualRate/100/365 * days since last payment"""
        start = loan.last_payment_date or loan.disbursement_date or as_of
        days = max(0, (as_of - start).days)
        daily_rate = loan.annual_rate / Decimal("100") / DAYS_PER_YEAR
        return loan.principal_outstanding * (daily_rate * Decimal(days))

    def compute_dues(self, loan: Loan, items: List[ScheduleItem], as_of: date) -> PaymentDues:
        """
        Interest due is the larger of the daily accrual and the unpaid interest
        of installments already due, capped at the contractual interest left.
        """
        accrued = self._accrued_interest(loan, as_of)
        scheduled = sum_money(
            (item.unpaid_interest for item in items if item.is_unpaid and item.due_date <= as_of),
            loan.currency,
        )
        interest_due = min(max(accrued, scheduled), loan.interest_outstanding)
        return PaymentDues(
            as_of=as_of,
            principal_due=loan.principal_outstanding,
            interest_due=interest_due,
            penalty_due=loan.penalty_outstanding,
            accrued_interest=accrued,
            scheduled_interest_due=scheduled,
            credit_balance=loan.credit_balance,
        )

    def process_repayment(
        self,
        loan_id: str,
        amount: Union[Money, Decimal, int, str],
        payment_method: str = "cash",
        reference: Optional[str] = None,
        processed_by: Optional[str] = None,
        payment_date: Optional[date] = None,
    ) -> RepaymentReceipt:
        """
        Apply one payment.

        Raises:
            InvalidAmountError: amount is zero or negative
            NotFoundError: the loan does not exist
            InvalidLoanStateError: the loan is not DISBURSED or ACTIVE
            OverpaymentError: excess funds under the reject policy
        """
        if not isinstance(amount, Money):
            amount = Money(to_decimal(amount), self.loans.currency)
        if not amount.is_positive():
            raise InvalidAmountError("Payment amount must be greater than zero")

        with self.locks.loans.hold(loan_id):
            with self.storage.atomic():
                loan = self.loans.require_loan(loan_id)
                if not loan.is_repayable:
                    raise InvalidLoanStateError(
                        f"Cannot process payment for loan in status {loan.status.value}"
                    )
                if amount.currency != loan.currency:
                    raise InvalidAmountError(
                        f"Payment currency {amount.currency.code} does not match loan currency "
                        f"{loan.currency.code}"
                    )

                today = payment_date or self.clock.today()
                items = self.loans.get_schedule(loan_id)
                dues = self.compute_dues(loan, items, today)

                credit_applied = loan.credit_balance
                allocation = self.allocator.allocate(
                    amount + credit_applied, dues.principal_due, dues.interest_due, dues.penalty_due
                )
                refund_amount, credited_amount = self._settle_excess(loan, allocation)

                self._apply_allocation(loan, allocation, credited_amount, today)
                self._apply_to_schedule(items, allocation.interest_paid + allocation.principal_paid, today)
                closed = self._update_status(loan, items, today)
                if closed and credited_amount.is_positive():
                    # A closed loan takes no further payments, so its credit goes back as a refund
                    refund_amount = refund_amount + credited_amount
                    credited_amount = Money.zero(loan.currency)
                    loan.credit_balance = credited_amount

                transaction = LoanTransaction(
                    id=str(uuid.uuid4()),
                    created_at=self.clock.now(),
                    updated_at=self.clock.now(),
                    loan_id=loan.id,
                    currency=loan.currency,
                    amount=amount,
                    credit_applied=credit_applied,
                    penalty_paid=allocation.penalty_paid,
                    interest_paid=allocation.interest_paid,
                    principal_paid=allocation.principal_paid,
                    refund_amount=refund_amount,
                    credited_amount=credited_amount,
                    accrued_interest=dues.accrued_interest,
                    balance_after=loan.outstanding_balance,
                    transaction_date=today,
                    receipt_number=self._receipt_number(),
                    payment_method=payment_method,
                    reference=reference,
                    processed_by=processed_by,
                )
                self.loans.save_transaction(transaction)
                for item in items:
                    self.loans.save_schedule_item(item)
                self.loans.save_loan(loan)

                self.audit.log_event(
                    AuditEventType.REPAYMENT_PROCESSED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={
                        "transaction_id": transaction.id,
                        "amount": amount,
                        "penalty_paid": allocation.penalty_paid,
                        "interest_paid": allocation.interest_paid,
                        "principal_paid": allocation.principal_paid,
                        "refund_amount": refund_amount,
                        "credited_amount": credited_amount,
                        "outstanding_balance": loan.outstanding_balance,
                    },
                    user_id=processed_by,
                )
                if closed:
                    self.audit.log_event(
                        AuditEventType.LOAN_CLOSED,
                        entity_type="loan",
                        entity_id=loan.id,
                        metadata={"interest_rebate": loan.interest_rebate,
                                  "closed_at": loan.closed_at},
                        user_id=processed_by,
                    )

            if closed:
                self._after_close(loan)

        log_action(logger, "info", f"Repayment of {amount.to_string()} applied to loan {loan_id}",
                   user_id=processed_by, action="process_repayment", resource=loan_id,
                   extra={"transaction_id": transaction.id,
                          "outstanding_balance": str(loan.outstanding_balance.amount),
                          "closed": closed})

        next_item = next((item for item in items if item.is_unpaid), None)
        return RepaymentReceipt(
            receipt_number=transaction.receipt_number,
            transaction_id=transaction.id,
            loan_id=loan.id,
            payment_date=today,
            amount=amount,
            credit_applied=credit_applied,
            penalty_paid=allocation.penalty_paid,
            interest_paid=allocation.interest_paid,
            principal_paid=allocation.principal_paid,
            refund_amount=refund_amount,
            credited_amount=credited_amount,
            remaining_balance=loan.outstanding_balance,
            loan_status=loan.status,
            next_payment_date=loan.next_payment_date,
            next_payment_amount=next_item.remaining if next_item else None,
        )

    # Partial payments follow exactly the same path
    process_partial_payment = process_repayment

    def _settle_excess(self, loan: Loan, allocation: PaymentAllocation):
        zero = Money.zero(loan.currency)
        if not allocation.has_excess:
            return zero, zero
        policy = self.config.overpayment_policy
        if policy == OverpaymentPolicy.REJECT:
            raise OverpaymentError(
                f"Payment exceeds the amount owed on loan {loan.id} by "
                f"{allocation.unallocated.to_string()}",
                {"excess": str(allocation.unallocated.amount)},
            )
        if policy == OverpaymentPolicy.REFUND:
            return allocation.unallocated, zero
        return zero, allocation.unallocated

    def _apply_allocation(self, loan: Loan, allocation: PaymentAllocation,
                          credited_amount: Money, today: date) -> None:
        loan.penalty_paid = loan.penalty_paid + allocation.penalty_paid
        loan.interest_paid = loan.interest_paid + allocation.interest_paid
        loan.principal_paid = loan.principal_paid + allocation.principal_paid
        loan.credit_balance = credited_amount
        loan.last_payment_date = today
        loan.updated_at = self.clock.now()

    def _apply_to_schedule(self, items: List[ScheduleItem], funds: Money, today: date) -> None:
        """Spread funds over unpaid installments, oldest first"""
        for item in items:
            if not funds.is_positive():
                break
            if not item.is_unpaid:
                continue
            applied = min(funds, item.remaining)
            item.paid_amount = item.paid_amount + applied
            funds = funds - applied
            if item.remaining.is_zero():
                item.status = ScheduleItemStatus.PAID
                item.paid_date = today
            else:
                item.status = ScheduleItemStatus.PARTIALLY_PAID
            item.updated_at = self.clock.now()

    def _update_status(self, loan: Loan, items: List[ScheduleItem], today: date) -> bool:
        """Close the loan or refresh its next due date and arrears; True if closed"""
        tolerance = self.config.rounding_tolerance

        if loan.principal_outstanding.amount <= 0:
            # Principal retired early: unearned scheduled interest is rebated
            loan.interest_rebate = loan.interest_outstanding

        loan.recompute_outstanding()
        if loan.outstanding_balance.amount <= tolerance:
            for item in items:
                if item.is_unpaid:
                    item.status = ScheduleItemStatus.PAID
                    item.paid_date = today
            zero = Money.zero(loan.currency)
            loan.status = LoanStatus.CLOSED
            loan.classification = LoanClassification.CLOSED
            loan.outstanding_balance = zero
            loan.arrears_amount = zero
            loan.days_in_arrears = 0
            loan.next_payment_date = None
            loan.closed_at = self.clock.now()
            return True

        loan.status = LoanStatus.ACTIVE
        unpaid = [item for item in items if item.is_unpaid]
        loan.next_payment_date = unpaid[0].due_date if unpaid else None
        overdue = [item for item in unpaid if item.due_date < today]
        loan.arrears_amount = sum_money((item.remaining for item in overdue), loan.currency)
        loan.days_in_arrears = (today - overdue[0].due_date).days if overdue else 0
        loan.classification = LoanClassification.for_days_overdue(loan.days_in_arrears)
        return False

    def _after_close(self, loan: Loan) -> None:
        """Side effects that follow a committed closure"""
        if self.guarantors is not None and loan.application_id:
            try:
                self.guarantors.release_loan_guarantees(loan.application_id)
            except Exception:
                log_action(logger, "error",
                           f"Failed to release guarantees for closed loan {loan.id}",
                           action="release_guarantees", resource=loan.id, exc_info=True)
        if self.dispatcher is not None:
            self.dispatcher.send(NotificationType.LOAN_CLOSED, loan.member_id,
                                 {"loan_id": loan.id, "loan_number": loan.loan_number})

    def _receipt_number(self) -> str:
        return f"RCP{self.clock.now():%Y%m%d%H%M%S}-{uuid.uuid4().hex[:6].upper()}"

    def get_payoff_quote(self, loan_id: str, as_of: Optional[date] = None) -> PaymentDues:
        loan = self.loans.require_loan(loan_id)
        if not loan.is_repayable:
            raise InvalidLoanStateError(f"Loan {loan_id} is {loan.status.value}")
        return self.compute_dues(loan, self.loans.get_schedule(loan_id), as_of or self.clock.today())

    def get_repayment_history(self, loan_id: str) -> List[LoanTransaction]:
        self.loans.require_loan(loan_id)
        return self.loans.get_transactions(loan_id)

    def get_repayment_schedule(self, loan_id: str) -> List[ScheduleItem]:
        self.loans.require_loan(loan_id)
        return self.loans.get_schedule(loan_id)

    def get_transaction(self, transaction_id: str) -> Optional[LoanTransaction]:
        return self.loans.get_transaction(transaction_id)

