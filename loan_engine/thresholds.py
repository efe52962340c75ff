"""
Monthly Threshold Allocator

Capacity reservation against an institution-wide cap on loan disbursement
per calendar month. An allocation lands in the current month if it fits,
otherwise in the first later month (within the search horizon) that has
room, and the application is queued for that month. Monthly rollover
promotes queued applications first-come-first-served by approval time.

Every read-modify-write of a month runs under that month's lock inside a
storage transaction; remaining = max - disbursed and never goes negative.
"""

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from .applications import ApplicationManager, ApplicationStatus, LoanApplication
from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .config import LoanEngineConfig, get_config
from .currency import Currency, Money, to_decimal
from .exceptions import (
    InvalidAmountError, InvalidParametersError, InvalidStateError, ThresholdExceededError,
)
from .locking import EngineLocks
from .logging_config import get_logger, log_action
from .notifications import NotificationDispatcher, NotificationType
from .storage import StorageInterface, StorageRecord


logger = get_logger("loan_engine.thresholds")

MIN_YEAR = 2020
MAX_YEAR = 2100
ALERT_RECIPIENT = "loan-committee"


class ThresholdStatus(Enum):
    OPEN = "open"
    EXHAUSTED = "exhausted"
    CLOSED = "closed"


class AlertLevel(Enum):
    NONE = "none"
    WARNING = "warning"
    CRITICAL = "critical"


def month_key(month: int, year: int) -> str:
    return f"{year:04d}-{month:02d}"


def next_month(month: int, year: int) -> Tuple[int, int]:
    return (1, year + 1) if month == 12 else (month + 1, year)


@dataclass
class MonthlyThreshold(StorageRecord):
    """Cap and usage for one calendar month; id is YYYY-MM"""
    month: int
    year: int
    currency: Currency
    max_loan_amount: Money
    total_disbursed: Money
    remaining_amount: Money
    status: ThresholdStatus
    applications_registered: int = 0
    applications_queued: int = 0

    @property
    def key(self) -> str:
        return month_key(self.month, self.year)

    @property
    def utilization_pct(self) -> Decimal:
        if not self.max_loan_amount.is_positive():
            return Decimal("0.00")
        pct = self.total_disbursed.amount / self.max_loan_amount.amount * 100
        return pct.quantize(Decimal("0.01"))

    def apply(self, delta: Money) -> None:
        """Charge (positive) or release (negative) capacity"""
        disbursed = self.total_disbursed + delta
        if disbursed.is_negative():
            raise InvalidAmountError(
                f"Cannot release more than {self.total_disbursed.to_string()} from {self.key}"
            )
        remaining = self.max_loan_amount - disbursed
        if remaining.is_negative():
            raise ThresholdExceededError(f"Allocation would exceed the cap for {self.key}")
        self.total_disbursed = disbursed
        self.remaining_amount = remaining
        if self.status != ThresholdStatus.CLOSED:
            self.status = ThresholdStatus.EXHAUSTED if remaining.is_zero() else ThresholdStatus.OPEN


@dataclass(frozen=True)
class ThresholdCheck:
    requested_month: int
    requested_year: int
    amount: Money
    has_capacity: bool
    month: Optional[int]
    year: Optional[int]
    remaining: Optional[Money]

    @property
    def found(self) -> bool:
        return self.month is not None

    @property
    def queued(self) -> bool:
        return self.found and (self.month, self.year) != (self.requested_month, self.requested_year)


@dataclass(frozen=True)
class ThresholdAllocation:
    application_id: str
    month: int
    year: int
    amount: Money
    queued: bool
    remaining: Money


@dataclass(frozen=True)
class ThresholdAlert:
    month: int
    year: int
    level: AlertLevel
    utilization_pct: Decimal
    remaining: Money


@dataclass
class RolloverResult:
    month: int
    year: int
    promoted: List[str] = field(default_factory=list)
    still_queued: List[str] = field(default_factory=list)
    failed: List[Dict[str, str]] = field(default_factory=list)


class ThresholdManager:
    """Per-month liquidity cap with forward queuing"""

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        applications: ApplicationManager,
        dispatcher: Optional[NotificationDispatcher] = None,
        clock: Optional[Clock] = None,
        locks: Optional[EngineLocks] = None,
        config: Optional[LoanEngineConfig] = None,
    ):
        self.storage = storage
        self.audit = audit_trail
        self.applications = applications
        self.dispatcher = dispatcher
        self.clock = clock or SystemClock()
        self.locks = locks or EngineLocks()
        self.config = config or get_config()
        self.currency = Currency.from_code(self.config.currency)
        self.table_name = "monthly_thresholds"

    @staticmethod
    def validate_period(month: int, year: int) -> None:
        errors = []
        if not 1 <= month <= 12:
            errors.append("Month must be between 1 and 12")
        if not MIN_YEAR <= year <= MAX_YEAR:
            errors.append(f"Year must be between {MIN_YEAR} and {MAX_YEAR}")
        if errors:
            raise InvalidParametersError(errors)

    def _current_period(self, as_of: Optional[date] = None) -> Tuple[int, int]:
        today = as_of or self.clock.today()
        return today.month, today.year

    def _horizon(self, month: int, year: int) -> List[Tuple[int, int]]:
        """The requested month followed by threshold_search_months later months"""
        periods = []
        for _ in range(self.config.threshold_search_months + 1):
            periods.append((month, year))
            month, year = next_month(month, year)
        return periods

    def _money(self, amount: Union[Money, Decimal, int, str]) -> Money:
        return amount if isinstance(amount, Money) else Money(to_decimal(amount), self.currency)

    def get_threshold(self, month: int, year: int) -> Optional[MonthlyThreshold]:
        data = self.storage.load(self.table_name, month_key(month, year))
        return MonthlyThreshold.from_dict(data) if data else None

    def get_or_create_threshold(self, month: int, year: int) -> MonthlyThreshold:
        """Months without an explicit cap get the configured default"""
        self.validate_period(month, year)
        threshold = self.get_threshold(month, year)
        if threshold is not None:
            return threshold
        threshold = self._default_threshold(month, year)
        self.storage.save_if_absent(self.table_name, threshold.id, threshold.to_dict())
        return MonthlyThreshold.from_dict(self.storage.load(self.table_name, threshold.id))

    def _threshold_or_default(self, month: int, year: int) -> MonthlyThreshold:
        """Stored threshold, or an unsaved default for read-only queries"""
        self.validate_period(month, year)
        threshold = self.get_threshold(month, year)
        return threshold if threshold is not None else self._default_threshold(month, year)

    def _default_threshold(self, month: int, year: int) -> MonthlyThreshold:
        now = self.clock.now()
        cap = Money(self.config.default_monthly_threshold, self.currency)
        return MonthlyThreshold(
            id=month_key(month, year),
            created_at=now,
            updated_at=now,
            month=month,
            year=year,
            currency=self.currency,
            max_loan_amount=cap,
            total_disbursed=Money.zero(self.currency),
            remaining_amount=cap,
            status=ThresholdStatus.OPEN,
        )

    def _save(self, threshold: MonthlyThreshold) -> None:
        threshold.updated_at = self.clock.now()
        self.storage.save(self.table_name, threshold.id, threshold.to_dict())

    def set_monthly_threshold(self, month: int, year: int,
                              max_amount: Union[Money, Decimal, int, str],
                              set_by: Optional[str] = None) -> MonthlyThreshold:
        """Change a month's cap; it may not drop below what is already allocated"""
        self.validate_period(month, year)
        cap = self._money(max_amount)
        ceiling = Money(self.config.default_monthly_threshold, cap.currency)
        if not cap.is_positive():
            raise InvalidAmountError("Monthly threshold must be greater than zero")
        if cap > ceiling:
            raise InvalidAmountError(f"Monthly threshold cannot exceed {ceiling.to_string()}")

        with self.locks.months.hold(month_key(month, year)):
            with self.storage.atomic():
                threshold = self.get_or_create_threshold(month, year)
                if cap < threshold.total_disbursed:
                    raise InvalidAmountError(
                        f"Threshold {cap.to_string()} is below the amount already allocated "
                        f"({threshold.total_disbursed.to_string()})"
                    )
                previous = threshold.max_loan_amount
                threshold.max_loan_amount = cap
                threshold.apply(Money.zero(cap.currency))
                self._save(threshold)
                self.audit.log_event(AuditEventType.THRESHOLD_SET, "threshold", threshold.id,
                                     {"previous": previous, "max_loan_amount": cap}, user_id=set_by)
        return threshold

    def check_threshold(self, amount: Union[Money, Decimal, int, str],
                        month: Optional[int] = None, year: Optional[int] = None) -> ThresholdCheck:
        """
        Capacity for amount in (month, year); when short, the first later
        month within the search horizon that can take it.
        """
        amount = self._money(amount)
        if not amount.is_positive():
            raise InvalidAmountError("Amount must be greater than zero")
        current_month, current_year = self._current_period()
        month = month or current_month
        year = year or current_year
        self.validate_period(month, year)

        for candidate_month, candidate_year in self._horizon(month, year):
            threshold = self._threshold_or_default(candidate_month, candidate_year)
            if threshold.status != ThresholdStatus.CLOSED and threshold.remaining_amount >= amount:
                return ThresholdCheck(
                    requested_month=month, requested_year=year, amount=amount,
                    has_capacity=(candidate_month, candidate_year) == (month, year),
                    month=candidate_month, year=candidate_year,
                    remaining=threshold.remaining_amount,
                )
        return ThresholdCheck(requested_month=month, requested_year=year, amount=amount,
                              has_capacity=False, month=None, year=None, remaining=None)

    def allocate_threshold(self, application_id: str,
                           amount: Optional[Union[Money, Decimal, int, str]] = None,
                           allocated_by: Optional[str] = None) -> ThresholdAllocation:
        """
        Reserve capacity for an approved application.

        Current month if it fits (application becomes READY_FOR_DISBURSEMENT),
        otherwise the first later month with room (application becomes QUEUED).

        Raises:
            ThresholdExceededError: no month in the horizon has capacity
        """
        application = self.applications.require_application(application_id)
        amount = self._money(amount) if amount is not None else application.amount
        if not amount.is_positive():
            raise InvalidAmountError("Amount must be greater than zero")
        current = self._current_period()
        horizon = self._horizon(*current)

        with self.locks.months.hold_many(month_key(m, y) for m, y in horizon):
            with self.storage.atomic():
                application = self.applications.require_application(application_id)
                if application.status != ApplicationStatus.APPROVED or application.is_allocated:
                    raise InvalidStateError(
                        f"Application {application_id} is {application.status.value}; "
                        f"only unallocated approved applications can be allocated"
                    )
                check = self.check_threshold(amount, *current)
                if not check.found:
                    raise ThresholdExceededError(
                        f"No month in the next {self.config.threshold_search_months} has capacity "
                        f"for {amount.to_string()}",
                        {"amount": str(amount.amount)},
                    )

                threshold = self.get_or_create_threshold(check.month, check.year)
                threshold.apply(amount)
                threshold.applications_registered += 1
                if check.queued:
                    threshold.applications_queued += 1
                self._save(threshold)

                application.allocated_month = check.month
                application.allocated_year = check.year
                application.status = ApplicationStatus.QUEUED if check.queued \
                    else ApplicationStatus.READY_FOR_DISBURSEMENT
                application.updated_at = self.clock.now()
                self.applications.save_application(application)

                self.audit.log_event(
                    AuditEventType.THRESHOLD_ALLOCATED, "threshold", threshold.id,
                    {"application_id": application_id, "amount": amount,
                     "queued": check.queued, "remaining": threshold.remaining_amount},
                    user_id=allocated_by,
                )

        log_action(logger, "info",
                   f"Allocated {amount.to_string()} for application {application_id} to {threshold.key}",
                   user_id=allocated_by, action="allocate_threshold", resource=application_id,
                   extra={"queued": check.queued, "remaining": str(threshold.remaining_amount.amount)})

        if check.queued and self.dispatcher is not None:
            self.dispatcher.send(NotificationType.APPLICATION_QUEUED, application.member_id, {
                "application_id": application_id, "month": check.month, "year": check.year,
            })
        self._raise_alert(threshold)

        return ThresholdAllocation(
            application_id=application_id,
            month=check.month,
            year=check.year,
            amount=amount,
            queued=check.queued,
            remaining=threshold.remaining_amount,
        )

    def release_threshold(self, amount: Union[Money, Decimal, int, str], month: int, year: int,
                          released_by: Optional[str] = None) -> MonthlyThreshold:
        """Give capacity back to a month, e.g. after a rejection"""
        amount = self._money(amount)
        if not amount.is_positive():
            raise InvalidAmountError("Amount must be greater than zero")
        self.validate_period(month, year)
        with self.locks.months.hold(month_key(month, year)):
            with self.storage.atomic():
                threshold = self.get_or_create_threshold(month, year)
                threshold.apply(-amount)
                self._save(threshold)
                self.audit.log_event(AuditEventType.THRESHOLD_RELEASED, "threshold", threshold.id,
                                     {"amount": amount, "remaining": threshold.remaining_amount},
                                     user_id=released_by)
        return threshold

    def release_application(self, application_id: str,
                            released_by: Optional[str] = None) -> Optional[MonthlyThreshold]:
        """Release whatever an application holds and clear its allocation"""
        application = self.applications.require_application(application_id)
        if application.status == ApplicationStatus.DISBURSED:
            raise InvalidStateError(
                f"Application {application_id} is disbursed; its allocation is spent"
            )
        if not application.is_allocated:
            return None
        key = month_key(application.allocated_month, application.allocated_year)
        with self.locks.months.hold(key):
            with self.storage.atomic():
                threshold = self.release_threshold(application.amount, application.allocated_month,
                                                   application.allocated_year, released_by)
                if application.status == ApplicationStatus.QUEUED:
                    threshold.applications_queued = max(0, threshold.applications_queued - 1)
                    self._save(threshold)
                application.allocated_month = None
                application.allocated_year = None
                application.updated_at = self.clock.now()
                self.applications.save_application(application)
        return threshold

    def monthly_rollover(self, as_of: Optional[date] = None) -> RolloverResult:
        """
        Promote queued applications to READY_FOR_DISBURSEMENT, oldest approval first.

        An application already allocated to the current month is promoted as is.
        One allocated to another month moves into the current month only if it
        fits the remaining capacity; otherwise it stays queued and later, smaller
        applications still get their turn. Earlier months are closed.
        """
        month, year = self._current_period(as_of)
        result = RolloverResult(month=month, year=year)
        self._close_past_months(month, year)

        queued = self.applications.list_applications(ApplicationStatus.QUEUED)
        queued.sort(key=lambda a: (a.approved_at or a.created_at, a.created_at))
        for application in queued:
            try:
                if self._promote(application, month, year):
                    result.promoted.append(application.id)
                else:
                    result.still_queued.append(application.id)
            except Exception as e:
                result.failed.append({'application_id': application.id, 'error': str(e)})
                log_action(logger, "error", f"Rollover failed for application {application.id}",
                           action="monthly_rollover", resource=application.id, exc_info=True)
                self.audit.log_event(AuditEventType.BATCH_ITEM_FAILED, "application", application.id,
                                     {"batch": "monthly_rollover", "error": str(e)})

        log_action(logger, "info", f"Monthly rollover for {month_key(month, year)} complete",
                   action="monthly_rollover", resource=month_key(month, year),
                   extra={"promoted": len(result.promoted), "still_queued": len(result.still_queued),
                          "failed": len(result.failed)})
        if result.promoted:
            self._raise_alert(self.get_or_create_threshold(month, year))
        return result

    def _promote(self, application: LoanApplication, month: int, year: int) -> bool:
        current_key = month_key(month, year)
        keys = {current_key}
        if application.is_allocated:
            keys.add(month_key(application.allocated_month, application.allocated_year))

        with self.locks.months.hold_many(keys):
            with self.storage.atomic():
                application = self.applications.require_application(application.id)
                if application.status != ApplicationStatus.QUEUED:
                    return False
                current = self.get_or_create_threshold(month, year)
                amount = application.amount
                in_current = (application.allocated_month, application.allocated_year) == (month, year)

                if not in_current:
                    if current.remaining_amount < amount:
                        return False
                    if application.is_allocated:
                        old = self.get_or_create_threshold(application.allocated_month,
                                                           application.allocated_year)
                        old.apply(-amount)
                        old.applications_queued = max(0, old.applications_queued - 1)
                        old.applications_registered = max(0, old.applications_registered - 1)
                        self._save(old)
                    current.apply(amount)
                    current.applications_registered += 1
                else:
                    current.applications_queued = max(0, current.applications_queued - 1)
                self._save(current)

                application.allocated_month = month
                application.allocated_year = year
                application.status = ApplicationStatus.READY_FOR_DISBURSEMENT
                application.updated_at = self.clock.now()
                self.applications.save_application(application)
                self.audit.log_event(AuditEventType.APPLICATION_PROMOTED, "application", application.id,
                                     {"month": month, "year": year, "amount": amount})

        if self.dispatcher is not None:
            self.dispatcher.send(NotificationType.APPLICATION_READY, application.member_id, {
                "application_id": application.id, "month": month, "year": year,
            })
        return True

    def _close_past_months(self, month: int, year: int) -> None:
        current_key = month_key(month, year)
        for data in self.storage.load_all(self.table_name):
            if data['id'] < current_key and data['status'] != ThresholdStatus.CLOSED.value:
                with self.locks.months.hold(data['id']):
                    with self.storage.atomic():
                        threshold = MonthlyThreshold.from_dict(self.storage.load(self.table_name, data['id']))
                        threshold.status = ThresholdStatus.CLOSED
                        self._save(threshold)

    def get_threshold_alert(self, month: Optional[int] = None,
                            year: Optional[int] = None) -> ThresholdAlert:
        current_month, current_year = self._current_period()
        threshold = self._threshold_or_default(month or current_month, year or current_year)
        pct = threshold.utilization_pct
        if pct >= self.config.threshold_critical_pct:
            level = AlertLevel.CRITICAL
        elif pct >= self.config.threshold_warning_pct:
            level = AlertLevel.WARNING
        else:
            level = AlertLevel.NONE
        return ThresholdAlert(month=threshold.month, year=threshold.year, level=level,
                              utilization_pct=pct, remaining=threshold.remaining_amount)

    def _raise_alert(self, threshold: MonthlyThreshold) -> None:
        """Alert on the current month's utilization"""
        current = self._current_period()
        if (threshold.month, threshold.year) != current:
            return
        alert = self.get_threshold_alert(*current)
        if alert.level is AlertLevel.NONE:
            return
        log_action(logger, "warning",
                   f"Threshold {threshold.key} at {alert.utilization_pct}% utilization",
                   action="threshold_alert", resource=threshold.key,
                   extra={"level": alert.level.value})
        if self.dispatcher is not None:
            notification_type = NotificationType.THRESHOLD_CRITICAL \
                if alert.level is AlertLevel.CRITICAL else NotificationType.THRESHOLD_WARNING
            self.dispatcher.send(notification_type, ALERT_RECIPIENT, {
                "month": alert.month, "year": alert.year,
                "utilization_pct": str(alert.utilization_pct),
                "remaining": str(alert.remaining.amount),
            })

    def get_threshold_info(self, month: Optional[int] = None,
                           year: Optional[int] = None) -> Dict[str, Any]:
        current_month, current_year = self._current_period()
        threshold = self._threshold_or_default(month or current_month, year or current_year)
        alert = self.get_threshold_alert(threshold.month, threshold.year)
        return {
            'month': threshold.month,
            'year': threshold.year,
            'max_loan_amount': threshold.max_loan_amount,
            'total_disbursed': threshold.total_disbursed,
            'remaining_amount': threshold.remaining_amount,
            'utilization_pct': threshold.utilization_pct,
            'status': threshold.status.value,
            'alert_level': alert.level.value,
            'applications_registered': threshold.applications_registered,
            'applications_queued': threshold.applications_queued,
        }

    def get_utilization_report(self, year: int) -> List[Dict[str, Any]]:
        return [self.get_threshold_info(month, year) for month in range(1, 13)]

    def get_threshold_history(self, limit: int = 12) -> List[MonthlyThreshold]:
        thresholds = [MonthlyThreshold.from_dict(d) for d in self.storage.load_all(self.table_name)]
        thresholds.sort(key=lambda t: (t.year, t.month), reverse=True)
        return thresholds[:limit]

    def get_queued_applications(self) -> List[LoanApplication]:
        queued = self.applications.list_applications(ApplicationStatus.QUEUED)
        queued.sort(key=lambda a: (a.approved_at or a.created_at, a.created_at))
        return queued
