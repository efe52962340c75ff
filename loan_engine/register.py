"""
Loan Register Module

Append-only register of disbursed loans. Each loan gets one serial number of
the form LH/{year}/{seq:03d}; sequences are strictly increasing and gapless
per year. The sequence comes from a storage-level counter that is advanced
inside the same transaction that writes the entry, so a failed registration
rolls the counter back and concurrent registrations (threads or processes)
never share a number.
"""

import csv
import io
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .config import LoanEngineConfig, get_config
from .currency import Currency, Money, sum_money
from .exceptions import AlreadyRegisteredError, InvalidLoanStateError, LoanEngineError
from .loans import LoanManager, LoanStatus, REPAYABLE_STATUSES
from .logging_config import get_logger, log_action
from .storage import StorageInterface, StorageRecord


logger = get_logger("loan_engine.register")

SERIAL_COUNTER = "loan_serial"


@dataclass
class LoanRegisterEntry(StorageRecord):
    """Immutable register row; id is the loan id"""
    serial_number: str
    loan_id: str
    member_id: str
    currency: Currency
    principal: Money
    annual_rate: Decimal
    term_months: int
    year: int
    sequence: int
    registered_at: datetime
    disbursement_date: Optional[date] = None
    registered_by: Optional[str] = None


class LoanRegister:
    """Serial number assignment and register queries"""

    CSV_HEADER = [
        "Serial Number", "Loan ID", "Member ID", "Principal", "Annual Rate",
        "Term (Months)", "Disbursement Date", "Registered At", "Status", "Outstanding Balance",
    ]

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail,
                 loan_manager: LoanManager, clock: Optional[Clock] = None,
                 config: Optional[LoanEngineConfig] = None):
        self.storage = storage
        self.audit = audit_trail
        self.loan_manager = loan_manager
        self.clock = clock or SystemClock()
        self.config = config or get_config()
        self.locks = loan_manager.locks
        self.table_name = "loan_register"
        self.serial_table = "loan_register_serials"
        loan_manager.register = self

    def format_serial(self, year: int, sequence: int) -> str:
        return f"{self.config.serial_prefix}/{year}/{sequence:03d}"

    def _highest_sequence(self, year: int) -> int:
        entries = self.storage.find(self.table_name, {'year': year})
        return max((entry['sequence'] for entry in entries), default=0)

    def register_loan(self, loan_id: str, registered_by: Optional[str] = None) -> LoanRegisterEntry:
        """
        Assign the next serial number for the current year.

        Raises:
            NotFoundError: the loan does not exist
            InvalidLoanStateError: the loan has not been disbursed
            AlreadyRegisteredError: the loan already has an entry
        """
        with self.locks.loans.hold(loan_id):
            with self.storage.atomic():
                loan = self.loan_manager.require_loan(loan_id)
                if self.storage.exists(self.table_name, loan_id):
                    raise AlreadyRegisteredError(f"Loan {loan_id} is already registered")
                if loan.status == LoanStatus.PENDING:
                    raise InvalidLoanStateError(f"Loan {loan_id} has not been disbursed")

                now = self.clock.now()
                year = now.year
                sequence = self.storage.increment_counter(
                    SERIAL_COUNTER, str(year), floor=self._highest_sequence(year)
                )
                serial = self.format_serial(year, sequence)

                entry = LoanRegisterEntry(
                    id=loan.id,
                    created_at=now,
                    updated_at=now,
                    serial_number=serial,
                    loan_id=loan.id,
                    member_id=loan.member_id,
                    currency=loan.currency,
                    principal=loan.principal,
                    annual_rate=loan.annual_rate,
                    term_months=loan.term_months,
                    year=year,
                    sequence=sequence,
                    registered_at=now,
                    disbursement_date=loan.disbursement_date,
                    registered_by=registered_by,
                )
                if not self.storage.save_if_absent(self.table_name, entry.id, entry.to_dict()):
                    raise AlreadyRegisteredError(f"Loan {loan_id} is already registered")
                if not self.storage.save_if_absent(self.serial_table, serial, {'loan_id': loan.id}):
                    raise LoanEngineError(f"Serial number {serial} is already assigned")

                self.audit.log_event(
                    AuditEventType.LOAN_REGISTERED,
                    entity_type="loan",
                    entity_id=loan.id,
                    metadata={"serial_number": serial, "principal": loan.principal},
                    user_id=registered_by,
                )

        log_action(logger, "info", f"Loan {loan_id} registered as {serial}",
                   user_id=registered_by, action="register_loan", resource=loan_id,
                   extra={"serial_number": serial})
        return entry

    def get_by_serial_number(self, serial_number: str) -> Optional[LoanRegisterEntry]:
        index = self.storage.load(self.serial_table, serial_number)
        if index is None:
            return None
        return self.get_by_loan_id(index['loan_id'])

    def get_by_loan_id(self, loan_id: str) -> Optional[LoanRegisterEntry]:
        data = self.storage.load(self.table_name, loan_id)
        return LoanRegisterEntry.from_dict(data) if data else None

    def get_register_entries(self, year: Optional[int] = None,
                             status: Optional[LoanStatus] = None,
                             start_date: Optional[date] = None,
                             end_date: Optional[date] = None) -> List[LoanRegisterEntry]:
        """Entries in serial order, optionally filtered by year, live loan status and registration date"""
        filters = {'year': year} if year is not None else {}
        entries = [LoanRegisterEntry.from_dict(d) for d in self.storage.find(self.table_name, filters)]
        if start_date is not None:
            entries = [e for e in entries if e.registered_at.date() >= start_date]
        if end_date is not None:
            entries = [e for e in entries if e.registered_at.date() <= end_date]
        if status is not None:
            entries = [e for e in entries if self._loan_status(e) == status]
        entries.sort(key=lambda e: (e.year, e.sequence))
        return entries

    def _loan_status(self, entry: LoanRegisterEntry) -> Optional[LoanStatus]:
        loan = self.loan_manager.get_loan(entry.loan_id)
        return loan.status if loan else None

    def get_register_statistics(self, year: Optional[int] = None) -> Dict[str, Any]:
        entries = self.get_register_entries(year=year)
        loans = [self.loan_manager.get_loan(e.loan_id) for e in entries]
        loans = [loan for loan in loans if loan is not None]
        currency = Currency.from_code(self.config.currency)

        return {
            'year': year,
            'total_loans': len(entries),
            'total_principal': sum_money((e.principal for e in entries), currency),
            'total_outstanding': sum_money((loan.outstanding_balance for loan in loans
                                            if loan.is_repayable), currency),
            'active_loans': sum(1 for loan in loans if loan.status in REPAYABLE_STATUSES),
            'closed_loans': sum(1 for loan in loans if loan.status == LoanStatus.CLOSED),
            'written_off_loans': sum(1 for loan in loans if loan.status == LoanStatus.WRITTEN_OFF),
        }

    def export_register_csv(self, year: Optional[int] = None,
                            status: Optional[LoanStatus] = None) -> str:
        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow(self.CSV_HEADER)
        for entry in self.get_register_entries(year=year, status=status):
            loan = self.loan_manager.get_loan(entry.loan_id)
            writer.writerow([
                entry.serial_number,
                entry.loan_id,
                entry.member_id,
                str(entry.principal.amount),
                str(entry.annual_rate),
                entry.term_months,
                entry.disbursement_date.isoformat() if entry.disbursement_date else "",
                entry.registered_at.isoformat(),
                loan.status.value if loan else "",
                str(loan.outstanding_balance.amount) if loan else "",
            ])
        return output.getvalue()
