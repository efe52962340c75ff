"""
Delinquency Engine Module

Daily batch that classifies overdue loans by days past due, charges the
late-payment penalty and decides which reminder tier applies:

    PERFORMING       0-30 days
    SPECIAL_MENTION  31-90 days
    SUBSTANDARD      91-180 days
    DOUBTFUL         181-360 days
    LOSS             361+ days

Classification is recomputed from scratch on every run. Each check writes a
DelinquencyRecord keyed by (loan id, check date); a second run on the same
day finds the key taken and leaves the loan alone.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .audit import AuditTrail, AuditEventType
from .calculator import AmortizationCalculator
from .clock import Clock, SystemClock
from .config import LoanEngineConfig, get_config
from .currency import Currency, Money, sum_money
from .loans import Loan, LoanClassification, LoanManager, REPAYABLE_STATUSES
from .logging_config import get_logger, log_action
from .notifications import NotificationDispatcher, NotificationType
from .storage import StorageRecord


logger = get_logger("loan_engine.delinquency")


class NotificationTier(Enum):
    NONE = "none"
    REMINDER_3_DAYS = "reminder_3_days"
    REMINDER_7_DAYS = "reminder_7_days"
    FINAL_NOTICE = "final_notice"

    @property
    def rank(self) -> int:
        return list(NotificationTier).index(self)

    @property
    def notification_type(self) -> Optional[NotificationType]:
        if self is NotificationTier.NONE:
            return None
        return NotificationType(self.value)


def classify(days_overdue: int) -> LoanClassification:
    """Classification for a day count"""
    return LoanClassification.for_days_overdue(days_overdue)


def notification_tier(days_overdue: int) -> NotificationTier:
    """>=30 final notice, >=7 seven-day reminder, >=3 three-day reminder"""
    if days_overdue >= 30:
        return NotificationTier.FINAL_NOTICE
    if days_overdue >= 7:
        return NotificationTier.REMINDER_7_DAYS
    if days_overdue >= 3:
        return NotificationTier.REMINDER_3_DAYS
    return NotificationTier.NONE


@dataclass
class DelinquencyRecord(StorageRecord):
    """Point-in-time snapshot of one loan on one check date"""
    loan_id: str
    member_id: str
    currency: Currency
    check_date: date
    days_overdue: int
    overdue_amount: Money
    penalty_applied: Money
    classification: LoanClassification
    previous_classification: LoanClassification
    classification_changed: bool
    notification_type: NotificationTier
    notification_sent: bool = False


@dataclass
class DelinquencyRunResult:
    check_date: date
    processed: int = 0
    skipped: int = 0
    failed: int = 0
    records: List[DelinquencyRecord] = field(default_factory=list)
    errors: List[Dict[str, str]] = field(default_factory=list)

    @property
    def total_penalty(self) -> Optional[Money]:
        if not self.records:
            return None
        return sum_money((r.penalty_applied for r in self.records), self.records[0].currency)


class DelinquencyEngine:
    """Per-loan delinquency checks and the daily batch over all open loans"""

    def __init__(
        self,
        loan_manager: LoanManager,
        audit_trail: AuditTrail,
        calculator: Optional[AmortizationCalculator] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Optional[Clock] = None,
        config: Optional[LoanEngineConfig] = None,
    ):
        self.loans = loan_manager
        self.storage = loan_manager.storage
        self.locks = loan_manager.locks
        self.audit = audit_trail
        self.config = config or loan_manager.config or get_config()
        self.calculator = calculator or loan_manager.calculator
        self.dispatcher = dispatcher
        self.clock = clock or loan_manager.clock or SystemClock()
        self.table_name = "delinquency_records"

    @staticmethod
    def record_id(loan_id: str, check_date: date) -> str:
        return f"{loan_id}:{check_date.isoformat()}"

    def check_loan_delinquency(self, loan_id: str,
                               check_date: Optional[date] = None) -> Optional[DelinquencyRecord]:
        """
        Check one loan as of check_date.

        Returns the new record, or None when the loan is not overdue, not open,
        or was already checked that day.
        """
        check_date = check_date or self.clock.today()

        with self.locks.loans.hold(loan_id):
            with self.storage.atomic():
                loan = self.loans.require_loan(loan_id)
                if loan.status not in REPAYABLE_STATUSES:
                    return None
                if loan.next_payment_date is None or loan.next_payment_date >= check_date:
                    return None

                record = self._build_record(loan, check_date)
                if not self.storage.save_if_absent(self.table_name, record.id, record.to_dict()):
                    return None
                self._apply_to_loan(loan, record)

        if record.penalty_applied.is_positive() or record.classification_changed:
            log_action(logger, "info",
                       f"Loan {loan_id} is {record.days_overdue} days overdue "
                       f"({record.classification.value})",
                       action="delinquency_check", resource=loan_id,
                       extra={"penalty_applied": str(record.penalty_applied.amount),
                              "previous_classification": record.previous_classification.value})

        self._notify(loan, record)
        return record

    def _build_record(self, loan: Loan, check_date: date) -> DelinquencyRecord:
        days_overdue = (check_date - loan.next_payment_date).days
        overdue_amount = self.loans.overdue_amount(loan.id, check_date)

        # Penalty only for days not already charged
        accrued_from = loan.next_payment_date
        if loan.penalty_accrued_through and loan.penalty_accrued_through > accrued_from:
            accrued_from = loan.penalty_accrued_through
        new_days = (check_date - accrued_from).days
        penalty = self.calculator.calculate_penalty(
            overdue_amount, new_days, self.config.penalty_daily_rate_pct
        )

        classification = classify(days_overdue)
        now = self.clock.now()
        return DelinquencyRecord(
            id=self.record_id(loan.id, check_date),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            member_id=loan.member_id,
            currency=loan.currency,
            check_date=check_date,
            days_overdue=days_overdue,
            overdue_amount=overdue_amount,
            penalty_applied=penalty,
            classification=classification,
            previous_classification=loan.classification,
            classification_changed=classification != loan.classification,
            notification_type=notification_tier(days_overdue),
        )

    def _apply_to_loan(self, loan: Loan, record: DelinquencyRecord) -> None:
        loan.penalty_amount = loan.penalty_amount + record.penalty_applied
        loan.penalty_accrued_through = record.check_date
        loan.days_in_arrears = record.days_overdue
        loan.arrears_amount = record.overdue_amount
        loan.classification = record.classification
        loan.recompute_outstanding()
        loan.updated_at = self.clock.now()
        self.loans.save_loan(loan)

        if record.penalty_applied.is_positive():
            self.audit.log_event(
                AuditEventType.PENALTY_APPLIED, "loan", loan.id,
                {"penalty": record.penalty_applied, "days_overdue": record.days_overdue,
                 "overdue_amount": record.overdue_amount, "check_date": record.check_date},
            )
        if record.classification_changed:
            self.audit.log_event(
                AuditEventType.CLASSIFICATION_CHANGED, "loan", loan.id,
                {"from": record.previous_classification, "to": record.classification,
                 "days_overdue": record.days_overdue},
            )

    def _notify(self, loan: Loan, record: DelinquencyRecord) -> None:
        """Send a reminder the first time a loan reaches each tier"""
        tier = record.notification_type
        if tier is NotificationTier.NONE or self.dispatcher is None:
            return
        if self._highest_tier_sent(loan.id).rank >= tier.rank:
            return

        sent = self.dispatcher.send(tier.notification_type, loan.member_id, {
            "loan_id": loan.id,
            "loan_number": loan.loan_number,
            "days_overdue": record.days_overdue,
            "overdue_amount": str(record.overdue_amount.amount),
            "penalty_amount": str(loan.penalty_outstanding.amount),
            "outstanding_balance": str(loan.outstanding_balance.amount),
        })
        if sent:
            record.notification_sent = True
            record.updated_at = self.clock.now()
            self.storage.save(self.table_name, record.id, record.to_dict())

    def _highest_tier_sent(self, loan_id: str) -> NotificationTier:
        sent = self.storage.find(self.table_name, {'loan_id': loan_id, 'notification_sent': True})
        tiers = [NotificationTier(r['notification_type']) for r in sent]
        return max(tiers, key=lambda t: t.rank, default=NotificationTier.NONE)

    def run_daily_delinquency_check(self, check_date: Optional[date] = None) -> DelinquencyRunResult:
        """
        Check every DISBURSED or ACTIVE loan whose next payment date has passed.

        One loan's failure is logged, audited and counted; the batch continues.
        """
        check_date = check_date or self.clock.today()
        result = DelinquencyRunResult(check_date=check_date)

        for loan in self.identify_overdue_loans(check_date):
            try:
                record = self.check_loan_delinquency(loan.id, check_date)
            except Exception as e:
                result.failed += 1
                result.errors.append({'loan_id': loan.id, 'error': str(e)})
                log_action(logger, "error", f"Delinquency check failed for loan {loan.id}",
                           action="delinquency_check", resource=loan.id, exc_info=True)
                self.audit.log_event(
                    AuditEventType.BATCH_ITEM_FAILED, "loan", loan.id,
                    {"batch": "daily_delinquency_check", "check_date": check_date,
                     "error": str(e)},
                )
                continue
            if record is None:
                result.skipped += 1
            else:
                result.processed += 1
                result.records.append(record)

        log_action(logger, "info", f"Daily delinquency check for {check_date.isoformat()} complete",
                   action="daily_delinquency_check", resource="loans",
                   extra={"processed": result.processed, "skipped": result.skipped,
                          "failed": result.failed})
        return result

    def identify_overdue_loans(self, as_of: Optional[date] = None) -> List[Loan]:
        """Open loans whose next payment date is before as_of"""
        as_of = as_of or self.clock.today()
        return [
            loan for loan in self.loans.list_loans(status=REPAYABLE_STATUSES)
            if loan.next_payment_date is not None and loan.next_payment_date < as_of
        ]

    def get_delinquency_history(self, loan_id: str) -> List[DelinquencyRecord]:
        records = [DelinquencyRecord.from_dict(d)
                   for d in self.storage.find(self.table_name, {'loan_id': loan_id})]
        records.sort(key=lambda r: r.check_date)
        return records

    def get_delinquent_loans(self, classification: Optional[LoanClassification] = None,
                             min_days: Optional[int] = None) -> List[Loan]:
        loans = [loan for loan in self.loans.list_loans(status=REPAYABLE_STATUSES)
                 if loan.days_in_arrears > 0]
        if classification is not None:
            loans = [loan for loan in loans if loan.classification == classification]
        if min_days is not None:
            loans = [loan for loan in loans if loan.days_in_arrears >= min_days]
        loans.sort(key=lambda loan: loan.days_in_arrears, reverse=True)
        return loans

    def get_delinquency_summary(self) -> Dict[str, Any]:
        """Loan counts and outstanding balances per classification across open loans"""
        currency = Currency.from_code(self.config.currency)
        loans = self.loans.list_loans(status=REPAYABLE_STATUSES)
        buckets = [c for c in LoanClassification if c is not LoanClassification.CLOSED]

        by_classification = {}
        for bucket in buckets:
            members = [loan for loan in loans if loan.classification == bucket]
            by_classification[bucket.value] = {
                'count': len(members),
                'outstanding': sum_money((loan.outstanding_balance for loan in members), currency),
            }

        delinquent = [loan for loan in loans if loan.classification != LoanClassification.PERFORMING]
        rate = Decimal("0")
        if loans:
            rate = (Decimal(len(delinquent)) / Decimal(len(loans)) * 100).quantize(Decimal("0.01"))

        return {
            'total_loans': len(loans),
            'delinquent_loans': len(delinquent),
            'delinquency_rate': rate,
            'total_outstanding': sum_money((loan.outstanding_balance for loan in loans), currency),
            'total_arrears': sum_money((loan.arrears_amount for loan in loans), currency),
            'total_penalties': sum_money((loan.penalty_outstanding for loan in loans), currency),
            'by_classification': by_classification,
        }
