"""Exceptions raised by the mission services."""
from app.models.enums import RefusalReason


class RefusalError(Exception):
    """
    Raised when a command is refused by the system.
    This is NOT an error - it's the system working correctly.

    Always raised before any mutation, so a refusal has no side effects.
    """
    def __init__(self, reason: RefusalReason, message: str = ""):
        self.reason = reason
        self.message = message or reason.value
        super().__init__(self.message)


class LedgerError(Exception):
    """Base class for ledger invariant violations."""


class BolAlreadyFinalizedError(LedgerError):
    """The BOL already carries a terminal status."""


class DepositAlreadyResolvedError(LedgerError):
    """The deposit has already been returned or forfeited."""


class UnknownEventTypeError(LedgerError):
    """The event type is not part of the BOL event vocabulary."""
