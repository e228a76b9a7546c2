class CommissionError(ValueError):
    """base class for business-rule failures. never leaves the API as a 500."""


class ValidationError(CommissionError):
    """malformed input: bad amount, bad payment details, percentage out of range."""


class MissingTransactionId(ValidationError):
    pass


class InvalidState(CommissionError):
    """transition attempted from a state that does not allow it (already processed)."""


class InsufficientBalance(CommissionError):
    pass


class NotFound(CommissionError):
    pass


class UnverifiedEvent(CommissionError):
    """gateway signature check failed."""
