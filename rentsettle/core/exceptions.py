"""
rentsettle Exception Hierarchy

All exceptions inherit from RentSettleError for easy catching.

Transition errors carry a stable ``kind`` string. The booking layer
reports a failed settlement as "settlement attempt failed: <kind>".
"""


class RentSettleError(Exception):
    """Base exception for all rentsettle errors"""

    kind = "RentSettleError"

    def __init__(self, message: str, details: dict = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class ValidationError(RentSettleError):
    """Raised when constructor input or an amount is malformed"""
    kind = "Validation"


class ConfigError(RentSettleError):
    """Raised when configuration cannot be loaded"""
    kind = "Config"


class LedgerError(RentSettleError):
    """Raised when the off-chain ledger cannot be read, written or trusted"""
    kind = "Ledger"


class TransitionError(RentSettleError):
    """Base for every rejected state transition"""
    kind = "Transition"


class InvalidStateError(TransitionError):
    """Raised when a transition is attempted from a state that forbids it"""
    kind = "InvalidState"


class BadSignatureError(TransitionError):
    """Raised when a required signature does not verify"""
    kind = "BadSignature"


class OutputMismatchError(TransitionError):
    """Raised when the proposed outputs do not match the computed commitment"""
    kind = "OutputMismatch"


class SequenceViolationError(TransitionError):
    """Raised when a channel update does not advance the sequence or break capacity"""
    kind = "SequenceViolation"


class InsufficientChannelBalanceError(TransitionError):
    """Raised when a streamed payment would drive a balance negative"""
    kind = "InsufficientChannelBalance"


class TimeoutNotReachedError(TransitionError):
    """Raised when a clock-gated transition is attempted too early"""
    kind = "TimeoutNotReached"
