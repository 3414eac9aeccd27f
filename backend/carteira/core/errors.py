"""Domain exceptions raised by the ledger, dividend and backtest services."""

from __future__ import annotations

from typing import Any


class LedgerError(ValueError):
    """Base class for ledger failures that abort the current operation."""


class NotFoundError(LedgerError):
    """Raised when a portfolio, transaction or backtest config does not exist."""


class TransactionValidationError(LedgerError):
    """Raised when a transaction draft is malformed; it never enters the ledger."""

    def __init__(self, message: str, *, errors: list[dict[str, Any]] | None = None):
        super().__init__(message)
        self.errors = errors or []


class InvalidTransactionState(LedgerError):
    """Raised when a lifecycle transition is not allowed (e.g. confirming a rejected row)."""


class BacktestConfigError(ValueError):
    """Raised when a backtest configuration is inconsistent."""


class BacktestDataError(RuntimeError):
    """Raised when a backtest cannot run because an asset has no history at all."""

    def __init__(self, message: str, *, tickers: list[str] | None = None):
        super().__init__(message)
        self.tickers = tickers or []


class BacktestTimeoutError(RuntimeError):
    """Raised when a simulation exceeds its time budget."""


class MarketDataError(RuntimeError):
    """Raised when the market data provider returns an error payload."""


__all__ = [
    "LedgerError",
    "NotFoundError",
    "TransactionValidationError",
    "InvalidTransactionState",
    "BacktestConfigError",
    "BacktestDataError",
    "BacktestTimeoutError",
    "MarketDataError",
]
