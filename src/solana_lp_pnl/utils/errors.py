"""Exception hierarchy for the P&L engine."""

from __future__ import annotations


class PnLEngineError(Exception):
    """Base class for errors raised by this package."""


class LedgerValidationError(PnLEngineError, ValueError):
    """A record could not be written because it embeds malformed data."""


class StoreError(PnLEngineError):
    """The durable key-value store failed to read or write."""


class HistorySourceError(PnLEngineError):
    """Transaction history could not be fetched or parsed."""


class PositionSourceError(PnLEngineError):
    """Live positions could not be loaded."""


__all__ = [
    "HistorySourceError",
    "LedgerValidationError",
    "PnLEngineError",
    "PositionSourceError",
    "StoreError",
]
