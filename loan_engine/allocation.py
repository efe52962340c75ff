"""
Payment Allocator Module

Splits a payment under the fixed waterfall penalty -> interest -> principal.
The order is not configurable per call. Whatever is left after principal is
reported as ``unallocated``; deciding what happens to it (reject, refund or
credit) belongs to the repayment processor.
"""

from dataclasses import dataclass

from .currency import Money
from .exceptions import InvalidAmountError


@dataclass(frozen=True)
class PaymentAllocation:
    """Result of one waterfall pass"""
    payment_amount: Money
    penalty_paid: Money
    interest_paid: Money
    principal_paid: Money
    unallocated: Money

    def __post_init__(self):
        if self.total_allocated + self.unallocated != self.payment_amount:
            raise ValueError("Allocation does not sum to the payment amount")

    @property
    def total_allocated(self) -> Money:
        return self.penalty_paid + self.interest_paid + self.principal_paid

    @property
    def has_excess(self) -> bool:
        return self.unallocated.is_positive()


class PaymentAllocator:
    """Fixed-order payment waterfall"""

    WATERFALL = ("penalty", "interest", "principal")

    def allocate(self, payment_amount: Money, principal_due: Money,
                 interest_due: Money, penalty_due: Money) -> PaymentAllocation:
        """
        Apply payment_amount to penalty, then interest, then principal.

        Each component is capped at its due; the sum of the three never
        exceeds the payment.
        """
        if not payment_amount.is_positive():
            raise InvalidAmountError("Payment amount must be greater than zero")
        for label, due in (("principal", principal_due), ("interest", interest_due),
                           ("penalty", penalty_due)):
            if due.is_negative():
                raise InvalidAmountError(f"{label.capitalize()} due cannot be negative")

        remainder = payment_amount

        penalty_paid = min(remainder, penalty_due)
        remainder = remainder - penalty_paid

        interest_paid = min(remainder, interest_due)
        remainder = remainder - interest_paid

        principal_paid = min(remainder, principal_due)
        remainder = remainder - principal_paid

        return PaymentAllocation(
            payment_amount=payment_amount,
            penalty_paid=penalty_paid,
            interest_paid=interest_paid,
            principal_paid=principal_paid,
            unallocated=remainder,
        )
