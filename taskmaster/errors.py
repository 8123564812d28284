from __future__ import annotations


class TaskmasterError(Exception):
    """Base class for engine errors."""


class OracleError(TaskmasterError):
    """The reasoning oracle failed, timed out, or returned something that does not decode."""


class ContentResolutionError(TaskmasterError):
    """A proof reference could not be resolved to fetchable images."""


class LedgerTransactionError(TaskmasterError):
    """A ledger-mutating call reverted or could not be submitted."""

    def __init__(self, call: str, reason: str) -> None:
        super().__init__(f"{call} failed: {reason}")
        self.call = call
        self.reason = reason


class LedgerReadError(TaskmasterError):
    """A ledger read failed or returned data that does not match the expected record schema."""


class ConfigurationError(TaskmasterError):
    """Startup precondition failure; not recoverable at runtime."""


class InvalidTransitionError(TaskmasterError):
    """A lifecycle transition outside the permitted edges was attempted."""
