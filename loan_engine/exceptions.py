"""
Exception hierarchy for the loan engine.

Every business-rule failure is raised synchronously as a subclass of
LoanEngineError; the engine never retries internally. Validation failures
also subclass ValueError so callers that only know about ValueError keep
working.
"""

from typing import Any, Dict, List, Optional


class LoanEngineError(Exception):
    """Base exception for all loan engine errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class InvalidParametersError(LoanEngineError, ValueError):
    """Raised when numeric input to the calculator is out of range."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors), {"errors": self.errors})


class InvalidStateError(LoanEngineError):
    """Raised when an entity is in an invalid state for the operation."""


class InvalidLoanStateError(InvalidStateError):
    """Raised when an operation is attempted on a loan in the wrong status."""


class InvalidAmountError(LoanEngineError, ValueError):
    """Raised when a monetary amount is zero, negative or otherwise unusable."""


class OverpaymentError(InvalidAmountError):
    """Raised when a payment exceeds everything owed and overpayments are rejected."""


class InsufficientEquityError(LoanEngineError):
    """Raised when a member's free equity cannot cover a guarantee."""


class DuplicateGuarantorError(LoanEngineError):
    """Raised when a member is added twice as guarantor on one application."""


class NothingLockedError(LoanEngineError):
    """Raised when unlocking a guarantor that has no locked equity."""


class AlreadyRegisteredError(LoanEngineError):
    """Raised when a loan already has a register entry."""


class ThresholdExceededError(LoanEngineError):
    """Raised when no month within the search horizon has capacity."""


class NotFoundError(LoanEngineError):
    """Raised when a referenced loan, member, guarantor or application does not exist."""

    def __init__(self, entity_type: str, entity_id: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        super().__init__(
            f"{entity_type.capitalize()} {entity_id} not found",
            {"entity_type": entity_type, "entity_id": entity_id},
        )
