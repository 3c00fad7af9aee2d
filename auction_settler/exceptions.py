"""Exception hierarchy for the settlement scheduler.

Everything raised on purpose by this package derives from SettlerError.
"""

from typing import Any, Dict, Optional


class SettlerError(Exception):
    """Base exception for all settlement scheduler errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self):
        if self.details:
            details_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"{self.message} ({details_str})"
        return self.message


class ConfigurationError(SettlerError):
    """Raised when required settings are missing or malformed."""
    pass


class StoreError(SettlerError):
    """Raised when a persisted collection cannot be read or written."""
    pass


class LedgerError(SettlerError):
    """Raised when a ledger read or RPC call fails."""
    pass


class TransactionFailedError(LedgerError):
    """Raised when a submitted transaction is rejected or reverts."""
    pass
