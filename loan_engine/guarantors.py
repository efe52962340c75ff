"""
Guarantor Equity Ledger

Each member's savings are split into free equity (available to back new
guarantees) and locked equity (already committed). A guarantee needs 100%
coverage from free equity. Lock and unlock always move the same amount
between the two buckets, so free + locked is conserved, and every mutation
of a member runs under that member's lock inside one storage transaction.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Union
import uuid

from .applications import ApplicationManager
from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .config import LoanEngineConfig, get_config
from .currency import Currency, Money, sum_money, to_decimal
from .exceptions import (
    DuplicateGuarantorError, InsufficientEquityError, InvalidAmountError,
    InvalidParametersError, InvalidStateError, NotFoundError, NothingLockedError,
)
from .locking import EngineLocks
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


logger = get_logger("loan_engine.guarantors")

AmountLike = Union[Money, Decimal, int, str]


class ConsentStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


@dataclass
class Member(StorageRecord):
    name: str
    currency: Currency
    free_equity: Money
    locked_equity: Money

    @property
    def total_equity(self) -> Money:
        return self.free_equity + self.locked_equity


@dataclass
class Guarantor(StorageRecord):
    application_id: str
    member_id: str
    currency: Currency
    guarantee_amount: Money
    consent_status: ConsentStatus
    locked_equity: Money
    consent_date: Optional[datetime] = None
    notes: Optional[str] = None
    released_at: Optional[datetime] = None


@dataclass(frozen=True)
class EligibilityResult:
    member_id: str
    eligible: bool
    free_equity: Money
    required: Money
    shortfall: Money


class GuarantorLedger:
    """Member equity and guarantor lifecycle"""

    def __init__(
        self,
        storage: StorageInterface,
        audit_trail: AuditTrail,
        applications: Optional[ApplicationManager] = None,
        clock: Optional[Clock] = None,
        locks: Optional[EngineLocks] = None,
        config: Optional[LoanEngineConfig] = None,
    ):
        self.storage = storage
        self.audit = audit_trail
        self.applications = applications
        self.clock = clock or SystemClock()
        self.locks = locks or EngineLocks()
        self.config = config or get_config()
        self.currency = Currency.from_code(self.config.currency)
        self.members_table = "members"
        self.guarantors_table = "guarantors"

    def _money(self, amount: AmountLike) -> Money:
        return amount if isinstance(amount, Money) else Money(to_decimal(amount), self.currency)

    def _positive(self, amount: AmountLike, label: str) -> Money:
        money = self._money(amount)
        if not money.is_positive():
            raise InvalidAmountError(f"{label} must be greater than zero")
        return money

    # Members

    def create_member(self, name: str, initial_equity: AmountLike = 0,
                      member_id: Optional[str] = None) -> Member:
        equity = self._money(initial_equity)
        if equity.is_negative():
            raise InvalidAmountError("Initial equity cannot be negative")
        now = self.clock.now()
        member = Member(
            id=member_id or str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            name=name,
            currency=equity.currency,
            free_equity=equity,
            locked_equity=Money.zero(equity.currency),
        )
        if not self.storage.save_if_absent(self.members_table, member.id, member.to_dict()):
            raise InvalidParametersError([f"Member {member.id} already exists"])
        self.audit.log_event(AuditEventType.MEMBER_CREATED, "member", member.id,
                             {"name": name, "free_equity": equity})
        return member

    def get_member(self, member_id: str) -> Optional[Member]:
        data = self.storage.load(self.members_table, member_id)
        return Member.from_dict(data) if data else None

    def require_member(self, member_id: str) -> Member:
        member = self.get_member(member_id)
        if member is None:
            raise NotFoundError("member", member_id)
        return member

    def deposit_equity(self, member_id: str, amount: AmountLike) -> Member:
        """Add savings to a member's free equity"""
        amount = self._positive(amount, "Deposit amount")
        with self.locks.members.hold(member_id):
            with self.storage.atomic():
                member = self.require_member(member_id)
                member.free_equity = member.free_equity + amount
                member.updated_at = self.clock.now()
                self._save_member(member)
                self.audit.log_event(AuditEventType.EQUITY_DEPOSITED, "member", member_id,
                                     {"amount": amount, "free_equity": member.free_equity})
        return member

    def check_eligibility(self, member_id: str, guarantee_amount: AmountLike) -> EligibilityResult:
        """Eligible iff free equity covers the full guarantee amount"""
        required = self._positive(guarantee_amount, "Guarantee amount")
        member = self.require_member(member_id)
        shortfall = required - member.free_equity
        return EligibilityResult(
            member_id=member_id,
            eligible=member.free_equity >= required,
            free_equity=member.free_equity,
            required=required,
            shortfall=shortfall if shortfall.is_positive() else Money.zero(required.currency),
        )

    # Guarantors

    def add_guarantor(self, application_id: str, member_id: str,
                      guarantee_amount: AmountLike, added_by: Optional[str] = None) -> Guarantor:
        amount = self._positive(guarantee_amount, "Guarantee amount")
        if self.applications is not None:
            application = self.applications.require_application(application_id)
            if application.member_id == member_id:
                raise InvalidParametersError(["A member cannot guarantee their own application"])

        with self.locks.members.hold(member_id):
            with self.storage.atomic():
                self.require_member(member_id)
                existing = self.storage.find(self.guarantors_table, {
                    'application_id': application_id, 'member_id': member_id,
                })
                if existing:
                    raise DuplicateGuarantorError(
                        f"Member {member_id} is already a guarantor on application {application_id}"
                    )
                eligibility = self.check_eligibility(member_id, amount)
                if not eligibility.eligible:
                    raise InsufficientEquityError(
                        f"Member {member_id} has free equity {eligibility.free_equity.to_string()}, "
                        f"needs {amount.to_string()}",
                        {"shortfall": str(eligibility.shortfall.amount)},
                    )

                now = self.clock.now()
                guarantor = Guarantor(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    application_id=application_id,
                    member_id=member_id,
                    currency=amount.currency,
                    guarantee_amount=amount,
                    consent_status=ConsentStatus.PENDING,
                    locked_equity=Money.zero(amount.currency),
                )
                self._save_guarantor(guarantor)
                self.audit.log_event(AuditEventType.GUARANTOR_ADDED, "guarantor", guarantor.id,
                                     {"application_id": application_id, "member_id": member_id,
                                      "guarantee_amount": amount}, user_id=added_by)
        return guarantor

    def get_guarantor(self, guarantor_id: str) -> Optional[Guarantor]:
        data = self.storage.load(self.guarantors_table, guarantor_id)
        return Guarantor.from_dict(data) if data else None

    def require_guarantor(self, guarantor_id: str) -> Guarantor:
        guarantor = self.get_guarantor(guarantor_id)
        if guarantor is None:
            raise NotFoundError("guarantor", guarantor_id)
        return guarantor

    def process_consent(self, guarantor_id: str, approved: bool,
                        notes: Optional[str] = None) -> Guarantor:
        """
        Record the guarantor's answer. Approval locks the guarantee amount;
        if the lock fails the consent stays PENDING.
        """
        guarantor = self.require_guarantor(guarantor_id)
        with self.locks.members.hold(guarantor.member_id):
            with self.storage.atomic():
                guarantor = self.require_guarantor(guarantor_id)
                if guarantor.consent_status != ConsentStatus.PENDING:
                    raise InvalidStateError(
                        f"Consent for guarantor {guarantor_id} is already {guarantor.consent_status.value}"
                    )
                guarantor.consent_status = ConsentStatus.APPROVED if approved else ConsentStatus.REJECTED
                guarantor.consent_date = self.clock.now()
                guarantor.notes = notes
                guarantor.updated_at = self.clock.now()
                self._save_guarantor(guarantor)
                self.audit.log_event(AuditEventType.GUARANTOR_CONSENT, "guarantor", guarantor_id,
                                     {"approved": approved, "notes": notes})
                if approved:
                    guarantor = self.lock_equity(guarantor_id)
        return guarantor

    def lock_equity(self, guarantor_id: str, amount: Optional[AmountLike] = None) -> Guarantor:
        """
        Move amount (default: the guarantee amount) from free to locked equity.

        Raises:
            InsufficientEquityError: free equity is below amount
            InvalidStateError: the guarantor already holds a lock
        """
        guarantor = self.require_guarantor(guarantor_id)
        amount = self._positive(amount if amount is not None else guarantor.guarantee_amount,
                                "Lock amount")
        with self.locks.members.hold(guarantor.member_id):
            with self.storage.atomic():
                guarantor = self.require_guarantor(guarantor_id)
                if guarantor.locked_equity.is_positive():
                    raise InvalidStateError(f"Guarantor {guarantor_id} already has locked equity")
                member = self.require_member(guarantor.member_id)
                if member.free_equity < amount:
                    raise InsufficientEquityError(
                        f"Insufficient free equity: {member.free_equity.to_string()} available, "
                        f"{amount.to_string()} required",
                        {"member_id": member.id, "free_equity": str(member.free_equity.amount)},
                    )

                now = self.clock.now()
                member.free_equity = member.free_equity - amount
                member.locked_equity = member.locked_equity + amount
                member.updated_at = now
                guarantor.locked_equity = amount
                guarantor.released_at = None
                guarantor.updated_at = now
                self._save_member(member)
                self._save_guarantor(guarantor)
                self.audit.log_event(AuditEventType.EQUITY_LOCKED, "member", member.id,
                                     {"guarantor_id": guarantor_id, "amount": amount,
                                      "application_id": guarantor.application_id})

        log_action(logger, "info", f"Locked {amount.to_string()} for guarantor {guarantor_id}",
                   action="lock_equity", resource=guarantor.member_id)
        return guarantor

    def unlock_equity(self, guarantor_id: str) -> Money:
        """
        Return exactly the amount this guarantor locked to free equity.

        Raises:
            NothingLockedError: the guarantor holds no lock
        """
        guarantor = self.require_guarantor(guarantor_id)
        with self.locks.members.hold(guarantor.member_id):
            with self.storage.atomic():
                guarantor = self.require_guarantor(guarantor_id)
                amount = guarantor.locked_equity
                if not amount.is_positive():
                    raise NothingLockedError(f"Guarantor {guarantor_id} has no locked equity")
                member = self.require_member(guarantor.member_id)

                now = self.clock.now()
                member.locked_equity = member.locked_equity - amount
                member.free_equity = member.free_equity + amount
                member.updated_at = now
                guarantor.locked_equity = Money.zero(amount.currency)
                guarantor.released_at = now
                guarantor.updated_at = now
                self._save_member(member)
                self._save_guarantor(guarantor)
                self.audit.log_event(AuditEventType.EQUITY_UNLOCKED, "member", member.id,
                                     {"guarantor_id": guarantor_id, "amount": amount,
                                      "application_id": guarantor.application_id})

        log_action(logger, "info", f"Unlocked {amount.to_string()} for guarantor {guarantor_id}",
                   action="unlock_equity", resource=guarantor.member_id)
        return amount

    def release_loan_guarantees(self, application_id: str) -> List[str]:
        """Unlock every guarantor on an application that still holds a lock"""
        released = []
        for guarantor in self.get_application_guarantors(application_id):
            if guarantor.locked_equity.is_positive():
                self.unlock_equity(guarantor.id)
                released.append(guarantor.id)
        return released

    def remove_guarantor(self, guarantor_id: str, removed_by: Optional[str] = None) -> None:
        """Only guarantors that never approved and hold no lock may be removed"""
        guarantor = self.require_guarantor(guarantor_id)
        with self.locks.members.hold(guarantor.member_id):
            with self.storage.atomic():
                guarantor = self.require_guarantor(guarantor_id)
                if guarantor.consent_status == ConsentStatus.APPROVED:
                    raise InvalidStateError("Cannot remove a guarantor who has approved")
                if guarantor.locked_equity.is_positive():
                    raise InvalidStateError("Cannot remove a guarantor with locked equity")
                self.storage.delete(self.guarantors_table, guarantor_id)
                self.audit.log_event(AuditEventType.GUARANTOR_REMOVED, "guarantor", guarantor_id,
                                     {"application_id": guarantor.application_id,
                                      "member_id": guarantor.member_id}, user_id=removed_by)

    def get_application_guarantors(self, application_id: str) -> List[Guarantor]:
        guarantors = [Guarantor.from_dict(d) for d in
                      self.storage.find(self.guarantors_table, {'application_id': application_id})]
        guarantors.sort(key=lambda g: g.created_at)
        return guarantors

    def get_member_guarantees(self, member_id: str) -> List[Guarantor]:
        guarantors = [Guarantor.from_dict(d) for d in
                      self.storage.find(self.guarantors_table, {'member_id': member_id})]
        guarantors.sort(key=lambda g: g.created_at)
        return guarantors

    def get_member_dashboard(self, member_id: str) -> Dict[str, Any]:
        member = self.require_member(member_id)
        guarantees = self.get_member_guarantees(member_id)
        active = [g for g in guarantees if g.locked_equity.is_positive()]
        return {
            'member_id': member.id,
            'name': member.name,
            'total_equity': member.total_equity,
            'free_equity': member.free_equity,
            'locked_equity': member.locked_equity,
            'active_guarantees': len(active),
            'pending_requests': sum(1 for g in guarantees if g.consent_status == ConsentStatus.PENDING),
            'total_guaranteed': sum_money((g.locked_equity for g in active), member.currency),
        }

    def _save_member(self, member: Member) -> None:
        self.storage.save(self.members_table, member.id, member.to_dict())

    def _save_guarantor(self, guarantor: Guarantor) -> None:
        self.storage.save(self.guarantors_table, guarantor.id, guarantor.to_dict())
