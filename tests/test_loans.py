"""
Test suite for loans module

Loan creation, disbursement into a persisted schedule, write-off and the
application gate on disbursement.
"""

import pytest
from datetime import date, datetime, timezone
from decimal import Decimal

from loan_engine.applications import ApplicationStatus
from loan_engine.audit import AuditEventType
from loan_engine.clock import FixedClock
from loan_engine.config import LoanEngineConfig
from loan_engine.currency import Money, Currency, sum_money
from loan_engine.engine import LendingSystem
from loan_engine.exceptions import InvalidLoanStateError, InvalidParametersError, NotFoundError
from loan_engine.loans import LoanClassification, LoanStatus, ScheduleItemStatus
from loan_engine.storage import InMemoryStorage


def ngn(value) -> Money:
    return Money(Decimal(str(value)), Currency.NGN)


@pytest.fixture
def clock():
    return FixedClock(datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def system(clock):
    return LendingSystem(storage=InMemoryStorage(), config=LoanEngineConfig(), clock=clock)


@pytest.fixture
def pending_loan(system):
    return system.loan_manager.create_loan("MEM001", "100000", "12", 12)


class TestLoanCreation:
    """Test creating loans"""

    def test_create_loan(self, pending_loan):
        """New loans start PENDING and PERFORMING with the EMI computed"""
        assert pending_loan.status == LoanStatus.PENDING
        assert pending_loan.classification == LoanClassification.PERFORMING
        assert pending_loan.emi == ngn("8884.88")
        assert pending_loan.principal == ngn("100000")
        assert pending_loan.outstanding_balance.is_zero()
        assert pending_loan.loan_number is None

    def test_create_loan_validates_parameters(self, system):
        """Bad numbers never produce a loan"""
        with pytest.raises(InvalidParametersError):
            system.loan_manager.create_loan("MEM001", "0", "12", 12)
        assert system.loan_manager.list_loans() == []

    def test_create_loan_is_audited(self, system, pending_loan):
        """LOAN_CREATED lands in the audit trail"""
        events = system.audit_trail.get_events_for_entity("loan", pending_loan.id)
        assert [e.event_type for e in events] == [AuditEventType.LOAN_CREATED]

    def test_missing_loan(self, system):
        """require_loan raises NotFoundError"""
        with pytest.raises(NotFoundError, match="Loan nope not found"):
            system.loan_manager.require_loan("nope")
        assert system.loan_manager.get_loan("nope") is None


class TestDisbursement:
    """Test disbursement"""

    def test_disburse_builds_schedule(self, system, pending_loan):
        """Disbursement persists one item per month and sets the balances"""
        loan = system.loan_manager.disburse_loan(pending_loan.id)
        items = system.loan_manager.get_schedule(loan.id)

        assert loan.status == LoanStatus.DISBURSED
        assert loan.disbursement_date == date(2026, 1, 15)
        assert loan.next_payment_date == date(2026, 2, 15)
        assert len(items) == 12
        assert all(item.status == ScheduleItemStatus.PENDING for item in items)
        assert sum_money((i.principal_amount for i in items), Currency.NGN) == ngn("100000")
        assert loan.total_repayable == sum_money((i.total_amount for i in items), Currency.NGN)
        assert loan.outstanding_balance == loan.total_repayable

    def test_disburse_registers_loan(self, system, pending_loan):
        """The loan receives a register serial number"""
        loan = system.loan_manager.disburse_loan(pending_loan.id)

        assert loan.loan_number == "LH/2026/001"
        entry = system.register.get_by_loan_id(loan.id)
        assert entry.serial_number == loan.loan_number
        assert system.loan_manager.get_loan(loan.id).loan_number == "LH/2026/001"

    def test_disburse_twice(self, system, pending_loan):
        """Only PENDING loans can be disbursed"""
        system.loan_manager.disburse_loan(pending_loan.id)
        with pytest.raises(InvalidLoanStateError, match="cannot be disbursed"):
            system.loan_manager.disburse_loan(pending_loan.id)

    def test_explicit_disbursement_date(self, system, pending_loan):
        """Due dates follow the given disbursement date"""
        loan = system.loan_manager.disburse_loan(pending_loan.id, date(2026, 1, 31))
        items = system.loan_manager.get_schedule(loan.id)
        assert items[0].due_date == date(2026, 2, 28)
        assert items[-1].due_date == date(2027, 1, 31)


class TestApplicationGate:
    """Disbursement respects the linked application's status"""

    def _approved_application(self, system, amount="100000"):
        application = system.applications.create_application("MEM001", amount, 12, "12")
        return system.applications.approve_application(application.id)

    def test_ready_application_is_marked_disbursed(self, system):
        """A READY application flips to DISBURSED and records the loan"""
        application = self._approved_application(system)
        system.allocate_threshold(application.id)
        loan = system.loan_manager.create_loan("MEM001", "100000", "12", 12, application_id=application.id)
        system.loan_manager.disburse_loan(loan.id)

        application = system.applications.require_application(application.id)
        assert application.status == ApplicationStatus.DISBURSED
        assert application.loan_id == loan.id

    def test_queued_application_blocks_disbursement(self, system):
        """A loan whose application waits for a later month cannot be paid out"""
        first = self._approved_application(system, "3000000")
        system.allocate_threshold(first.id)
        queued = self._approved_application(system, "100000")
        allocation = system.allocate_threshold(queued.id)
        assert allocation.queued

        loan = system.loan_manager.create_loan("MEM001", "100000", "12", 12, application_id=queued.id)
        with pytest.raises(InvalidLoanStateError, match="queued"):
            system.loan_manager.disburse_loan(loan.id)
        assert system.loan_manager.get_loan(loan.id).status == LoanStatus.PENDING
        assert system.register.get_by_loan_id(loan.id) is None

    def test_unallocated_application_blocks_disbursement(self, system):
        """Approval alone does not reserve monthly capacity, so it cannot pay out"""
        application = self._approved_application(system)
        loan = system.loan_manager.create_loan("MEM001", "100000", "12", 12,
                                               application_id=application.id)

        with pytest.raises(InvalidLoanStateError, match="approved"):
            system.loan_manager.disburse_loan(loan.id)
        assert system.loan_manager.get_loan(loan.id).status == LoanStatus.PENDING
        assert system.thresholds.get_threshold(1, 2026) is None

    def test_unknown_application(self, system):
        """Linking a loan to a missing application fails"""
        with pytest.raises(NotFoundError):
            system.loan_manager.create_loan("MEM001", "100000", "12", 12, application_id="missing")


class TestWriteOff:
    """Test write-off"""

    def test_write_off(self, system, pending_loan):
        """Unpaid installments are written off with the loan"""
        system.loan_manager.disburse_loan(pending_loan.id)
        loan = system.loan_manager.write_off_loan(pending_loan.id, "Borrower deceased")

        assert loan.status == LoanStatus.WRITTEN_OFF
        assert loan.write_off_reason == "Borrower deceased"
        assert loan.next_payment_date is None
        items = system.loan_manager.get_schedule(loan.id)
        assert all(item.status == ScheduleItemStatus.WRITTEN_OFF for item in items)

    def test_write_off_pending_loan(self, system, pending_loan):
        """Undisbursed loans cannot be written off"""
        with pytest.raises(InvalidLoanStateError):
            system.loan_manager.write_off_loan(pending_loan.id, "n/a")


class TestQueries:
    """Test loan listing"""

    def test_list_by_status_and_member(self, system, pending_loan):
        """Filters combine"""
        other = system.loan_manager.create_loan("MEM002", "50000", "10", 6)
        system.loan_manager.disburse_loan(other.id)

        assert [l.id for l in system.loan_manager.list_loans(LoanStatus.PENDING)] == [pending_loan.id]
        assert [l.id for l in system.loan_manager.list_loans(member_id="MEM002")] == [other.id]
        open_loans = system.loan_manager.list_loans(status=[LoanStatus.DISBURSED, LoanStatus.ACTIVE])
        assert [l.id for l in open_loans] == [other.id]
