"""
Loan applications as seen by the engine.

Intake and committee workflow live elsewhere; the engine only needs the
approved amount, the approval timestamp (rollover order), the monthly
threshold allocation and the status gate for disbursement.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Union
import uuid

from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .config import LoanEngineConfig, get_config
from .currency import Currency, Money, to_decimal
from .exceptions import InvalidAmountError, InvalidStateError, NotFoundError
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


logger = get_logger("loan_engine.applications")


class ApplicationStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    QUEUED = "queued"
    READY_FOR_DISBURSEMENT = "ready_for_disbursement"
    REJECTED = "rejected"
    DISBURSED = "disbursed"


@dataclass
class LoanApplication(StorageRecord):
    member_id: str
    currency: Currency
    requested_amount: Money
    term_months: int
    annual_rate: Decimal
    status: ApplicationStatus
    approved_amount: Optional[Money] = None
    approved_at: Optional[datetime] = None
    allocated_month: Optional[int] = None
    allocated_year: Optional[int] = None
    loan_id: Optional[str] = None
    rejection_reason: Optional[str] = None

    @property
    def amount(self) -> Money:
        """Approved amount once approved, requested amount before that"""
        return self.approved_amount if self.approved_amount is not None else self.requested_amount

    @property
    def is_allocated(self) -> bool:
        return self.allocated_month is not None and self.allocated_year is not None

    @property
    def is_disbursable(self) -> bool:
        """Only applications holding current-month threshold capacity"""
        return self.status == ApplicationStatus.READY_FOR_DISBURSEMENT


class ApplicationManager:
    """Minimal application store used by thresholds, guarantors and disbursement"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 clock: Optional[Clock] = None, config: Optional[LoanEngineConfig] = None):
        self.storage = storage
        self.audit = audit_trail
        self.clock = clock or SystemClock()
        self.config = config or get_config()
        self.currency = Currency.from_code(self.config.currency)
        self.table_name = "loan_applications"

    def create_application(self, member_id: str, amount: Union[Money, Decimal, int, str],
                           term_months: int, annual_rate: Union[Decimal, int, str]) -> LoanApplication:
        requested = amount if isinstance(amount, Money) else Money(to_decimal(amount), self.currency)
        if not requested.is_positive():
            raise InvalidAmountError("Requested amount must be greater than zero")

        now = self.clock.now()
        application = LoanApplication(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            member_id=member_id,
            currency=requested.currency,
            requested_amount=requested,
            term_months=term_months,
            annual_rate=to_decimal(annual_rate),
            status=ApplicationStatus.PENDING,
        )
        self.save_application(application)
        self.audit.log_event(
            AuditEventType.APPLICATION_CREATED, "application", application.id,
            {"member_id": member_id, "requested_amount": requested},
        )
        return application

    def approve_application(self, application_id: str,
                            approved_amount: Optional[Union[Money, Decimal, int, str]] = None,
                            approved_by: Optional[str] = None,
                            approved_at: Optional[datetime] = None) -> LoanApplication:
        application = self.require_application(application_id)
        if application.status != ApplicationStatus.PENDING:
            raise InvalidStateError(
                f"Application {application_id} is {application.status.value}, expected pending"
            )
        if approved_amount is None:
            amount = application.requested_amount
        elif isinstance(approved_amount, Money):
            amount = approved_amount
        else:
            amount = Money(to_decimal(approved_amount), application.currency)
        if not amount.is_positive():
            raise InvalidAmountError("Approved amount must be greater than zero")

        application.status = ApplicationStatus.APPROVED
        application.approved_amount = amount
        application.approved_at = approved_at or self.clock.now()
        application.updated_at = self.clock.now()
        self.save_application(application)

        self.audit.log_event(
            AuditEventType.APPLICATION_APPROVED, "application", application.id,
            {"approved_amount": amount, "approved_at": application.approved_at},
            user_id=approved_by,
        )
        log_action(logger, "info", f"Application {application_id} approved",
                   user_id=approved_by, action="approve_application", resource=application_id)
        return application

    @staticmethod
    def check_rejectable(application: LoanApplication) -> None:
        if application.status in (ApplicationStatus.DISBURSED, ApplicationStatus.REJECTED):
            raise InvalidStateError(
                f"Application {application.id} is already {application.status.value}"
            )

    def reject_application(self, application_id: str, reason: str,
                           rejected_by: Optional[str] = None) -> LoanApplication:
        application = self.require_application(application_id)
        self.check_rejectable(application)
        application.status = ApplicationStatus.REJECTED
        application.rejection_reason = reason
        application.updated_at = self.clock.now()
        self.save_application(application)

        self.audit.log_event(
            AuditEventType.APPLICATION_REJECTED, "application", application.id,
            {"reason": reason}, user_id=rejected_by,
        )
        return application

    def mark_disbursed(self, application_id: str, loan_id: str) -> LoanApplication:
        application = self.require_application(application_id)
        application.status = ApplicationStatus.DISBURSED
        application.loan_id = loan_id
        application.updated_at = self.clock.now()
        self.save_application(application)
        return application

    def get_application(self, application_id: str) -> Optional[LoanApplication]:
        data = self.storage.load(self.table_name, application_id)
        return LoanApplication.from_dict(data) if data else None

    def require_application(self, application_id: str) -> LoanApplication:
        application = self.get_application(application_id)
        if application is None:
            raise NotFoundError("application", application_id)
        return application

    def list_applications(self, status: Optional[ApplicationStatus] = None) -> List[LoanApplication]:
        filters = {'status': status.value} if status else {}
        applications = [LoanApplication.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        applications.sort(key=lambda a: (a.approved_at or a.created_at, a.created_at))
        return applications

    def save_application(self, application: LoanApplication) -> None:
        self.storage.save(self.table_name, application.id, application.to_dict())
