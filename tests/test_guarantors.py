"""
Test suite for the guarantor equity ledger

Free plus locked equity is conserved by every lock and unlock, a guarantee
needs full coverage from free equity, and parallel locks never overdraw.
"""

import threading
import pytest
from datetime import datetime, timezone
from decimal import Decimal

from loan_engine.audit import AuditEventType
from loan_engine.clock import FixedClock
from loan_engine.config import LoanEngineConfig
from loan_engine.currency import Money, Currency
from loan_engine.engine import LendingSystem
from loan_engine.exceptions import (
    DuplicateGuarantorError, InsufficientEquityError, InvalidAmountError,
    InvalidParametersError, InvalidStateError, NotFoundError, NothingLockedError,
)
from loan_engine.guarantors import ConsentStatus
from loan_engine.storage import InMemoryStorage


def ngn(value) -> Money:
    return Money(Decimal(str(value)), Currency.NGN)


@pytest.fixture
def system():
    clock = FixedClock(datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc))
    return LendingSystem(storage=InMemoryStorage(), config=LoanEngineConfig(), clock=clock)


@pytest.fixture
def ledger(system):
    return system.guarantors


@pytest.fixture
def guarantor_member(ledger):
    return ledger.create_member("Ada Obi", "50000", member_id="MEM100")


def application_for(system, borrower="MEM001", amount="100000"):
    return system.applications.create_application(borrower, amount, 12, "12")


class TestMembers:
    """Test member equity"""

    def test_create_and_deposit(self, ledger, guarantor_member):
        """Deposits add to free equity"""
        assert guarantor_member.free_equity == ngn("50000")
        assert guarantor_member.locked_equity.is_zero()

        member = ledger.deposit_equity("MEM100", "2500.50")
        assert member.free_equity == ngn("52500.50")
        assert member.total_equity == ngn("52500.50")

    def test_invalid_amounts(self, ledger, guarantor_member):
        """Negative opening equity and non-positive deposits are refused"""
        with pytest.raises(InvalidAmountError):
            ledger.create_member("Bad", "-1")
        with pytest.raises(InvalidAmountError):
            ledger.deposit_equity("MEM100", "0")

    def test_duplicate_member_id(self, ledger, guarantor_member):
        """Member ids are unique"""
        with pytest.raises(InvalidParametersError, match="already exists"):
            ledger.create_member("Again", "10", member_id="MEM100")

    def test_unknown_member(self, ledger):
        """Operations on a missing member raise NotFoundError"""
        with pytest.raises(NotFoundError, match="Member nobody not found"):
            ledger.check_eligibility("nobody", "10")


class TestEligibility:
    """Test 100% coverage from free equity"""

    def test_eligible_when_equity_covers(self, system, guarantor_member):
        """Exactly enough free equity is enough"""
        result = system.check_guarantor_eligibility("MEM100", "50000")
        assert result.eligible
        assert result.shortfall.is_zero()

    def test_shortfall_reported(self, system, guarantor_member):
        """The gap is reported when equity falls short"""
        result = system.check_guarantor_eligibility("MEM100", "60000")
        assert not result.eligible
        assert result.shortfall == ngn("10000")
        assert result.free_equity == ngn("50000")


class TestGuarantorLifecycle:
    """Test add, consent, lock, unlock and remove"""

    def test_consent_locks_equity(self, system, ledger, guarantor_member):
        """Approving consent moves the guarantee into locked equity"""
        application = application_for(system)
        guarantor = ledger.add_guarantor(application.id, "MEM100", "50000")
        assert guarantor.consent_status == ConsentStatus.PENDING

        guarantor = ledger.process_consent(guarantor.id, approved=True, notes="happy to help")
        assert guarantor.consent_status == ConsentStatus.APPROVED
        assert guarantor.locked_equity == ngn("50000")

        member = ledger.require_member("MEM100")
        assert member.free_equity.is_zero()
        assert member.locked_equity == ngn("50000")

    def test_locked_equity_blocks_new_guarantees(self, system, ledger, guarantor_member):
        """Once equity is locked it cannot back another application"""
        first = ledger.add_guarantor(application_for(system).id, "MEM100", "50000")
        ledger.process_consent(first.id, approved=True)

        with pytest.raises(InsufficientEquityError) as exc_info:
            ledger.add_guarantor(application_for(system).id, "MEM100", "10000")
        assert exc_info.value.details["shortfall"] == "10000.00"

    def test_failed_lock_keeps_consent_pending(self, system, ledger, guarantor_member):
        """If equity has gone elsewhere, the consent is not recorded"""
        first = ledger.add_guarantor(application_for(system).id, "MEM100", "50000")
        second = ledger.add_guarantor(application_for(system).id, "MEM100", "10000")
        ledger.process_consent(first.id, approved=True)

        with pytest.raises(InsufficientEquityError):
            ledger.process_consent(second.id, approved=True)
        assert ledger.require_guarantor(second.id).consent_status == ConsentStatus.PENDING

    def test_rejected_consent(self, system, ledger, guarantor_member):
        """A refusal locks nothing and cannot be answered twice"""
        guarantor = ledger.add_guarantor(application_for(system).id, "MEM100", "20000")
        guarantor = ledger.process_consent(guarantor.id, approved=False)

        assert guarantor.consent_status == ConsentStatus.REJECTED
        assert ledger.require_member("MEM100").free_equity == ngn("50000")
        with pytest.raises(InvalidStateError):
            ledger.process_consent(guarantor.id, approved=True)

    def test_unlock_returns_exact_amount(self, system, ledger, guarantor_member):
        """Unlock moves back exactly what was locked"""
        guarantor = ledger.add_guarantor(application_for(system).id, "MEM100", "30000")
        system.lock_equity(guarantor.id)

        released = system.unlock_equity(guarantor.id)
        assert released == ngn("30000")
        member = ledger.require_member("MEM100")
        assert member.free_equity == ngn("50000")
        assert member.locked_equity.is_zero()
        assert ledger.require_guarantor(guarantor.id).released_at is not None

        with pytest.raises(NothingLockedError):
            system.unlock_equity(guarantor.id)

    def test_double_lock(self, system, ledger, guarantor_member):
        """A guarantor holds at most one lock"""
        guarantor = ledger.add_guarantor(application_for(system).id, "MEM100", "10000")
        system.lock_equity(guarantor.id)
        with pytest.raises(InvalidStateError, match="already has locked equity"):
            system.lock_equity(guarantor.id)

    def test_self_guarantee_and_duplicates(self, system, ledger, guarantor_member):
        """Borrowers cannot guarantee themselves and nobody is added twice"""
        own = application_for(system, borrower="MEM100")
        with pytest.raises(InvalidParametersError):
            ledger.add_guarantor(own.id, "MEM100", "1000")

        application = application_for(system)
        ledger.add_guarantor(application.id, "MEM100", "1000")
        with pytest.raises(DuplicateGuarantorError):
            ledger.add_guarantor(application.id, "MEM100", "1000")

    def test_remove_guarantor(self, system, ledger, guarantor_member):
        """Pending guarantors can be removed; approved ones cannot"""
        application = application_for(system)
        pending = ledger.add_guarantor(application.id, "MEM100", "1000")
        ledger.remove_guarantor(pending.id)
        assert ledger.get_guarantor(pending.id) is None

        approved = ledger.add_guarantor(application.id, "MEM100", "1000")
        ledger.process_consent(approved.id, approved=True)
        with pytest.raises(InvalidStateError):
            ledger.remove_guarantor(approved.id)

    def test_equity_changes_are_audited(self, system, ledger, guarantor_member):
        """Locks and unlocks are recorded against the member"""
        guarantor = ledger.add_guarantor(application_for(system).id, "MEM100", "5000")
        system.lock_equity(guarantor.id)
        system.unlock_equity(guarantor.id)

        events = [e.event_type for e in system.audit_trail.get_events_for_entity("member", "MEM100")]
        assert events == [AuditEventType.MEMBER_CREATED, AuditEventType.EQUITY_LOCKED,
                          AuditEventType.EQUITY_UNLOCKED]


class TestRelease:
    """Test releasing guarantees when a loan ends"""

    def test_closing_the_loan_releases_guarantees(self, system, ledger, guarantor_member):
        """Paying a guaranteed loan off returns the guarantor's equity"""
        application = application_for(system)
        system.applications.approve_application(application.id)
        system.allocate_threshold(application.id)
        guarantor = ledger.add_guarantor(application.id, "MEM100", "50000")
        ledger.process_consent(guarantor.id, approved=True)

        loan = system.loan_manager.create_loan("MEM001", "100000", "12", 12,
                                               application_id=application.id)
        system.loan_manager.disburse_loan(loan.id)
        system.process_repayment(loan.id, "100000")

        assert ledger.require_member("MEM100").free_equity == ngn("50000")
        assert ledger.require_guarantor(guarantor.id).locked_equity.is_zero()

    def test_rejecting_the_application_releases_guarantees(self, system, ledger, guarantor_member):
        """Rejection hands the equity back"""
        application = application_for(system)
        guarantor = ledger.add_guarantor(application.id, "MEM100", "20000")
        ledger.process_consent(guarantor.id, approved=True)

        system.reject_application(application.id, "Insufficient income")
        assert ledger.require_member("MEM100").free_equity == ngn("50000")

    def test_disbursed_application_cannot_be_rejected(self, system, ledger, guarantor_member):
        """Rejecting a live loan's application releases nothing"""
        application = application_for(system)
        system.applications.approve_application(application.id)
        system.allocate_threshold(application.id)
        guarantor = ledger.add_guarantor(application.id, "MEM100", "50000")
        ledger.process_consent(guarantor.id, approved=True)
        loan = system.loan_manager.create_loan("MEM001", "100000", "12", 12,
                                               application_id=application.id)
        system.loan_manager.disburse_loan(loan.id)

        with pytest.raises(InvalidStateError):
            system.reject_application(application.id, "Changed our mind")
        with pytest.raises(InvalidStateError):
            system.thresholds.release_application(application.id)

        assert system.thresholds.get_threshold(1, 2026).total_disbursed == ngn("100000")
        assert ledger.require_guarantor(guarantor.id).locked_equity == ngn("50000")
        assert ledger.require_member("MEM100").free_equity.is_zero()

    def test_failed_rejection_rolls_back_release(self, system, ledger, guarantor_member, monkeypatch):
        """Capacity, equity and status change together or not at all"""
        application = application_for(system)
        system.applications.approve_application(application.id)
        system.allocate_threshold(application.id)
        guarantor = ledger.add_guarantor(application.id, "MEM100", "20000")
        ledger.process_consent(guarantor.id, approved=True)

        def broken(*args, **kwargs):
            raise RuntimeError("audit store offline")

        monkeypatch.setattr(system.applications, "reject_application", broken)
        with pytest.raises(RuntimeError):
            system.reject_application(application.id, "Withdrawn")

        assert system.thresholds.get_threshold(1, 2026).total_disbursed == ngn("100000")
        assert ledger.require_guarantor(guarantor.id).locked_equity == ngn("20000")
        assert system.applications.require_application(application.id).is_allocated

    def test_dashboard(self, system, ledger, guarantor_member):
        """Dashboard totals follow the ledger"""
        first = ledger.add_guarantor(application_for(system).id, "MEM100", "20000")
        ledger.add_guarantor(application_for(system).id, "MEM100", "5000")
        ledger.process_consent(first.id, approved=True)

        dashboard = ledger.get_member_dashboard("MEM100")
        assert dashboard['free_equity'] == ngn("30000")
        assert dashboard['locked_equity'] == ngn("20000")
        assert dashboard['total_equity'] == ngn("50000")
        assert dashboard['active_guarantees'] == 1
        assert dashboard['pending_requests'] == 1


class TestConcurrency:
    """Test parallel locks on one member"""

    def test_parallel_locks_never_overdraw(self, system, ledger):
        """With 100,000 free, exactly five 20,000 locks succeed"""
        ledger.create_member("Rich", "100000", member_id="MEM200")
        guarantors = [
            ledger.add_guarantor(application_for(system).id, "MEM200", "20000")
            for _ in range(10)
        ]
        successes, failures = [], []

        def lock(guarantor_id):
            try:
                system.lock_equity(guarantor_id)
                successes.append(guarantor_id)
            except InsufficientEquityError:
                failures.append(guarantor_id)

        threads = [threading.Thread(target=lock, args=(g.id,)) for g in guarantors]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(successes) == 5
        assert len(failures) == 5
        member = ledger.require_member("MEM200")
        assert member.free_equity.is_zero()
        assert member.locked_equity == ngn("100000")
        assert member.total_equity == ngn("100000")
