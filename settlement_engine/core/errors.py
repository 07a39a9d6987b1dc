from __future__ import annotations


class SettlementError(Exception):
    """Base class for failures the scheduler handles per account or window."""


class TransientFetchError(SettlementError):
    """Network failure, timeout or retryable HTTP status from a pool API."""


class PoolApiError(SettlementError):
    """Non-retryable HTTP status returned by a pool API."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ParseError(SettlementError):
    """Pool response does not have a shape the parsers understand."""


class ValuationUnavailable(SettlementError):
    """A rate required for the settlement run is missing or stale."""


class InvalidAllocationInput(SettlementError):
    """Allocation was requested with inputs that can never settle."""


class ConservationViolation(SettlementError):
    """Allocated shares do not add up to the batch totals."""


class AlertNotFound(SettlementError):
    """No alert exists with the requested id."""


class WithdrawalBlocked(SettlementError):
    """The user is under an open risk alert."""


class InsufficientBalance(SettlementError):
    """The withdrawal exceeds the user's available balance."""
