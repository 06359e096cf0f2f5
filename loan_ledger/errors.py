"""Exception hierarchy for ledger operations."""


class LedgerError(Exception):
    """Base exception for all ledger errors."""


class InvalidInputError(LedgerError):
    """Raised when a required field is missing or malformed."""


class InvalidAmountError(LedgerError):
    """Raised when a payment amount exceeds the loan's remaining balance."""


class NotFoundError(LedgerError):
    """Raised when a referenced loan, payment or customer does not exist."""


class ConflictError(LedgerError):
    """Raised when an operation conflicts with the entity's current state."""


class PermissionDeniedError(LedgerError):
    """Raised when the caller's role does not allow the operation."""
