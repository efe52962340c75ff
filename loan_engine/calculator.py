"""
Amortization Calculator Module

Pure reducing-balance loan math: EMI, full amortization schedule, total
interest, late-payment penalty and early-repayment economics. Nothing here
touches storage or the clock; every function is deterministic.

All money is Decimal-backed Money rounded to the currency's minor unit with
ROUND_HALF_UP. Rates are annual nominal percentages (12 means 12%).
"""

import calendar
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import List, Optional, Union

from .config import LoanEngineConfig, get_config
from .currency import Currency, Money, to_decimal
from .exceptions import InvalidParametersError


MONTHS_PER_YEAR = Decimal("12")
HUNDRED = Decimal("100")

Amount = Union[Money, Decimal, int, str]
Rate = Union[Decimal, int, str]


def add_months(start: date, months: int) -> date:
    """Add calendar months, clamping to the last day of shorter months"""
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def monthly_rate(annual_rate_pct: Decimal) -> Decimal:
    """annualRatePct / 12 / 100"""
    return annual_rate_pct / MONTHS_PER_YEAR / HUNDRED


@dataclass
class ValidationResult:
    """Outcome of validate_loan_parameters"""
    is_valid: bool
    errors: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class AmortizationEntry:
    """One row of an amortization schedule"""
    installment_number: int
    due_date: date
    opening_balance: Money
    installment: Money
    interest: Money
    principal: Money
    closing_balance: Money
    cumulative_interest: Money
    cumulative_principal: Money

    def __post_init__(self):
        if self.principal + self.interest != self.installment:
            raise ValueError(
                f"Installment {self.installment_number}: {self.installment.amount} does not equal "
                f"principal {self.principal.amount} + interest {self.interest.amount}"
            )


@dataclass
class AmortizationSchedule:
    """A full schedule plus its totals"""
    principal: Money
    annual_rate: Decimal
    term_months: int
    emi: Money
    entries: List[AmortizationEntry]

    @property
    def total_interest(self) -> Money:
        return self.entries[-1].cumulative_interest

    @property
    def total_principal(self) -> Money:
        return self.entries[-1].cumulative_principal

    @property
    def total_payment(self) -> Money:
        return self.total_principal + self.total_interest

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)


@dataclass(frozen=True)
class EarlyRepaymentResult:
    """Economics of paying part (or all) of the principal ahead of schedule"""
    repay_amount: Money
    original_interest: Money
    new_interest: Money
    interest_saved: Money
    new_outstanding: Money
    new_emi: Money
    fully_paid: bool


class AmortizationCalculator:
    """
    Reducing-balance amortization math.

    Limits (principal ceiling, maximum rate and term) come from configuration.
    """

    def __init__(self, config: Optional[LoanEngineConfig] = None):
        self.config = config or get_config()
        self.currency = Currency.from_code(self.config.currency)

    def _money(self, value: Amount) -> Money:
        if isinstance(value, Money):
            return value
        return Money(to_decimal(value), self.currency)

    def validate_loan_parameters(self, principal: Amount, annual_rate: Rate,
                                 term_months: int) -> ValidationResult:
        """Collect every violated limit without raising"""
        errors = []
        amount = self._money(principal).amount
        rate = to_decimal(annual_rate)

        if amount <= 0:
            errors.append("Principal must be greater than zero")
        elif amount > self.config.max_principal:
            errors.append(f"Principal cannot exceed {self.config.max_principal}")

        if rate < 0:
            errors.append("Interest rate cannot be negative")
        elif rate > self.config.max_annual_rate:
            errors.append(f"Interest rate cannot exceed {self.config.max_annual_rate}%")

        if not isinstance(term_months, int) or isinstance(term_months, bool):
            errors.append("Tenure must be a whole number of months")
        elif term_months <= 0:
            errors.append("Tenure must be greater than zero")
        elif term_months > self.config.max_term_months:
            errors.append(f"Tenure cannot exceed {self.config.max_term_months} months")

        return ValidationResult(is_valid=not errors, errors=errors)

    def _validated(self, principal: Amount, annual_rate: Rate, term_months: int):
        result = self.validate_loan_parameters(principal, annual_rate, term_months)
        if not result.is_valid:
            raise InvalidParametersError(result.errors)
        return self._money(principal), to_decimal(annual_rate)

    def calculate_emi(self, principal: Amount, annual_rate: Rate, term_months: int) -> Money:
        """
        Equal monthly installment: P * r * (1+r)^n / ((1+r)^n - 1).

        A zero rate gives P / n. Raises InvalidParametersError on bad input.
        """
        principal, rate = self._validated(principal, annual_rate, term_months)
        return self._emi(principal, rate, term_months)

    @staticmethod
    def _emi(principal: Money, rate: Decimal, term_months: int) -> Money:
        r = monthly_rate(rate)
        if r == 0:
            return principal / Decimal(term_months)
        growth = (1 + r) ** term_months
        return Money(principal.amount * r * growth / (growth - 1), principal.currency)

    def generate_amortization_schedule(self, principal: Amount, annual_rate: Rate,
                                       term_months: int,
                                       start_date: Optional[date] = None) -> AmortizationSchedule:
        """
        Build the month-by-month schedule.

        Installment k falls due k calendar months after start_date. Interest on
        each row is opening balance times the monthly rate; the final row takes
        the whole remaining balance as principal so the principal column sums
        exactly to the loan amount.
        """
        principal, rate = self._validated(principal, annual_rate, term_months)
        start_date = start_date or date.today()
        emi = self._emi(principal, rate, term_months)
        r = monthly_rate(rate)
        zero = Money.zero(principal.currency)

        entries = []
        balance = principal
        cumulative_interest = zero
        cumulative_principal = zero

        for number in range(1, term_months + 1):
            interest = balance * r
            if number == term_months:
                principal_part = balance
                installment = principal_part + interest
            else:
                principal_part = emi - interest
                if principal_part > balance:
                    principal_part = balance
                installment = principal_part + interest

            closing = balance - principal_part
            if closing.is_negative():
                closing = zero
            cumulative_interest = cumulative_interest + interest
            cumulative_principal = cumulative_principal + principal_part

            entries.append(AmortizationEntry(
                installment_number=number,
                due_date=add_months(start_date, number),
                opening_balance=balance,
                installment=installment,
                interest=interest,
                principal=principal_part,
                closing_balance=closing,
                cumulative_interest=cumulative_interest,
                cumulative_principal=cumulative_principal,
            ))
            balance = closing

        return AmortizationSchedule(
            principal=principal,
            annual_rate=rate,
            term_months=term_months,
            emi=emi,
            entries=entries,
        )

    def calculate_total_interest(self, principal: Amount, annual_rate: Rate,
                                 term_months: int) -> Money:
        """EMI * n - P"""
        principal, rate = self._validated(principal, annual_rate, term_months)
        return self._emi(principal, rate, term_months) * term_months - principal

    def calculate_total_repayable(self, principal: Amount, annual_rate: Rate,
                                  term_months: int) -> Money:
        """EMI * n"""
        principal, rate = self._validated(principal, annual_rate, term_months)
        return self._emi(principal, rate, term_months) * term_months

    def calculate_penalty(self, overdue_amount: Amount, days_overdue: int,
                          daily_rate_pct: Optional[Rate] = None) -> Money:
        """
        overdue * (dailyRatePct / 100) * days, rounded.

        Returns zero when any input is not positive.
        """
        overdue = self._money(overdue_amount)
        rate = to_decimal(daily_rate_pct) if daily_rate_pct is not None \
            else self.config.penalty_daily_rate_pct
        if not overdue.is_positive() or days_overdue <= 0 or rate <= 0:
            return Money.zero(overdue.currency)
        return overdue * (rate / HUNDRED * Decimal(days_overdue))

    def calculate_early_repayment(self, outstanding: Amount, annual_rate: Rate,
                                  remaining_term: int, repay_amount: Amount) -> EarlyRepaymentResult:
        """
        Compare total interest over the remaining term before and after
        applying repay_amount against principal.
        """
        outstanding, rate = self._validated(outstanding, annual_rate, remaining_term)
        repay = self._money(repay_amount)
        if not repay.is_positive():
            raise InvalidParametersError(["Repayment amount must be greater than zero"])

        zero = Money.zero(outstanding.currency)
        original_interest = self._emi(outstanding, rate, remaining_term) * remaining_term - outstanding

        if repay >= outstanding:
            return EarlyRepaymentResult(
                repay_amount=repay,
                original_interest=original_interest,
                new_interest=zero,
                interest_saved=original_interest,
                new_outstanding=zero,
                new_emi=zero,
                fully_paid=True,
            )

        new_outstanding = outstanding - repay
        new_emi = self._emi(new_outstanding, rate, remaining_term)
        new_interest = new_emi * remaining_term - new_outstanding
        return EarlyRepaymentResult(
            repay_amount=repay,
            original_interest=original_interest,
            new_interest=new_interest,
            interest_saved=original_interest - new_interest,
            new_outstanding=new_outstanding,
            new_emi=new_emi,
            fully_paid=False,
        )

    def calculate_outstanding_balance(self, principal: Amount, annual_rate: Rate,
                                      term_months: int, payments_made: int,
                                      start_date: Optional[date] = None) -> Money:
        """Scheduled principal balance after payments_made installments"""
        schedule = self.generate_amortization_schedule(principal, annual_rate, term_months, start_date)
        if payments_made <= 0:
            return schedule.principal
        if payments_made >= term_months:
            return Money.zero(schedule.principal.currency)
        return schedule.entries[payments_made - 1].closing_balance

    def calculate_installment_breakdown(self, principal: Amount, annual_rate: Rate,
                                        term_months: int, installment_number: int,
                                        start_date: Optional[date] = None) -> AmortizationEntry:
        """A single schedule row, 1-based"""
        if not 1 <= installment_number <= term_months:
            raise InvalidParametersError(
                [f"Installment number must be between 1 and {term_months}"]
            )
        schedule = self.generate_amortization_schedule(principal, annual_rate, term_months, start_date)
        return schedule.entries[installment_number - 1]
