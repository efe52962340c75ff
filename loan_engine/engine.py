"""
Lending System

Wires every engine component to one storage backend, one clock, one lock
registry and one notification dispatcher, and exposes the operations the
application layer calls.
"""

from datetime import date
from decimal import Decimal
from typing import List, Optional, Union

from .allocation import PaymentAllocator
from .applications import ApplicationManager, LoanApplication
from .audit import AuditTrail
from .calculator import AmortizationCalculator, AmortizationSchedule
from .clock import Clock, SystemClock
from .config import LoanEngineConfig, get_config
from .currency import Money
from .delinquency import DelinquencyEngine, DelinquencyRunResult
from .guarantors import EligibilityResult, Guarantor, GuarantorLedger
from .locking import EngineLocks
from .loans import LoanManager
from .logging_config import get_logger, log_action, setup_logging
from .notifications import (
    CompositeNotificationDispatcher, LogNotificationDispatcher, NotificationDispatcher,
    StorageNotificationDispatcher, WebhookNotificationDispatcher,
)
from .register import LoanRegister, LoanRegisterEntry
from .repayments import RepaymentProcessor, RepaymentReceipt
from .storage import InMemoryStorage, SQLiteStorage, StorageInterface
from .thresholds import (
    RolloverResult, ThresholdAllocation, ThresholdCheck, ThresholdManager, month_key,
)


logger = get_logger("loan_engine.engine")

AmountLike = Union[Money, Decimal, int, str]


class LendingSystem:
    """Loan lifecycle engine with all components initialized"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        config: Optional[LoanEngineConfig] = None,
        clock: Optional[Clock] = None,
        dispatcher: Optional[NotificationDispatcher] = None,
    ):
        self.config = config or get_config()
        self.storage = storage or InMemoryStorage()
        self.clock = clock or SystemClock()
        self.locks = EngineLocks()
        self.dispatcher = dispatcher or StorageNotificationDispatcher(self.storage, self.clock)

        self.audit_trail = AuditTrail(self.storage, self.clock)
        self.calculator = AmortizationCalculator(self.config)
        self.allocator = PaymentAllocator()
        self.applications = ApplicationManager(self.storage, self.audit_trail, self.clock, self.config)
        self.loan_manager = LoanManager(
            self.storage, self.audit_trail, self.calculator, self.clock, self.locks,
            self.config, self.applications,
        )
        self.register = LoanRegister(self.storage, self.audit_trail, self.loan_manager,
                                     self.clock, self.config)
        self.guarantors = GuarantorLedger(self.storage, self.audit_trail, self.applications,
                                          self.clock, self.locks, self.config)
        self.thresholds = ThresholdManager(
            self.storage, self.audit_trail, self.applications, self.dispatcher,
            self.clock, self.locks, self.config,
        )
        self.repayments = RepaymentProcessor(
            self.loan_manager, self.audit_trail, self.allocator, self.dispatcher,
            self.guarantors, self.clock, self.config,
        )
        self.delinquency = DelinquencyEngine(
            self.loan_manager, self.audit_trail, self.calculator, self.dispatcher,
            self.clock, self.config,
        )

    @classmethod
    def from_config(cls, config: Optional[LoanEngineConfig] = None) -> 'LendingSystem':
        """SQLite-backed system with log, storage and (optionally) webhook delivery"""
        config = config or get_config()
        setup_logging(config.log_level, log_format=config.log_format)
        storage = SQLiteStorage(config.sqlite_path)
        clock = SystemClock()

        dispatchers: List[NotificationDispatcher] = [
            LogNotificationDispatcher(clock),
            StorageNotificationDispatcher(storage, clock),
        ]
        if config.webhook_url:
            dispatchers.append(WebhookNotificationDispatcher(
                config.webhook_url, config.webhook_timeout, config.webhook_secret, clock,
            ))
        system = cls(storage, config, clock, CompositeNotificationDispatcher(dispatchers, clock))
        log_action(logger, "info", "Lending system initialized", action="startup",
                   resource="engine", extra={"database": config.sqlite_path,
                                             "webhook": bool(config.webhook_url)})
        return system

    def close(self) -> None:
        self.storage.close()

    # Calculator

    def calculate_emi(self, principal: AmountLike, annual_rate, term_months: int) -> Money:
        return self.calculator.calculate_emi(principal, annual_rate, term_months)

    def generate_amortization_schedule(self, principal: AmountLike, annual_rate, term_months: int,
                                       start_date: Optional[date] = None) -> AmortizationSchedule:
        return self.calculator.generate_amortization_schedule(
            principal, annual_rate, term_months, start_date or self.clock.today()
        )

    # Repayments and delinquency

    def process_repayment(self, loan_id: str, amount: AmountLike, **kwargs) -> RepaymentReceipt:
        return self.repayments.process_repayment(loan_id, amount, **kwargs)

    def run_daily_delinquency_check(self, check_date: Optional[date] = None) -> DelinquencyRunResult:
        return self.delinquency.run_daily_delinquency_check(check_date)

    # Guarantors

    def check_guarantor_eligibility(self, member_id: str, amount: AmountLike) -> EligibilityResult:
        return self.guarantors.check_eligibility(member_id, amount)

    def lock_equity(self, guarantor_id: str, amount: Optional[AmountLike] = None) -> Guarantor:
        return self.guarantors.lock_equity(guarantor_id, amount)

    def unlock_equity(self, guarantor_id: str) -> Money:
        return self.guarantors.unlock_equity(guarantor_id)

    # Monthly thresholds

    def check_threshold(self, amount: AmountLike, month: Optional[int] = None,
                        year: Optional[int] = None) -> ThresholdCheck:
        return self.thresholds.check_threshold(amount, month, year)

    def allocate_threshold(self, application_id: str,
                           amount: Optional[AmountLike] = None) -> ThresholdAllocation:
        return self.thresholds.allocate_threshold(application_id, amount)

    def monthly_rollover(self, as_of: Optional[date] = None) -> RolloverResult:
        return self.thresholds.monthly_rollover(as_of)

    def reject_application(self, application_id: str, reason: str,
                           rejected_by: Optional[str] = None) -> LoanApplication:
        """
        Reject and hand back the month capacity and guarantor equity it held.

        The status is checked before anything is released, and the release and
        rejection commit together.
        """
        application = self.applications.require_application(application_id)
        self.applications.check_rejectable(application)
        months = [month_key(application.allocated_month, application.allocated_year)] \
            if application.is_allocated else []
        members = [g.member_id for g in self.guarantors.get_application_guarantors(application_id)]

        with self.locks.months.hold_many(months):
            with self.locks.members.hold_many(members):
                with self.storage.atomic():
                    application = self.applications.require_application(application_id)
                    self.applications.check_rejectable(application)
                    self.thresholds.release_application(application_id, released_by=rejected_by)
                    self.guarantors.release_loan_guarantees(application_id)
                    return self.applications.reject_application(application_id, reason, rejected_by)

    # Register

    def register_loan(self, loan_id: str, registered_by: Optional[str] = None) -> LoanRegisterEntry:
        return self.register.register_loan(loan_id, registered_by)

    def get_register_entries(self, year: Optional[int] = None, **filters) -> List[LoanRegisterEntry]:
        return self.register.get_register_entries(year=year, **filters)
