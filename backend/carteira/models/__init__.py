"""SQLAlchemy models for the Carteira ledger service."""

from .backtest import BacktestConfig, BacktestConfigAsset, BacktestResult
from .enums import RebalanceFrequency, TransactionSource, TransactionStatus, TransactionType
from .ledger import LedgerSnapshot, LedgerTransaction, Portfolio, PortfolioMetricsCache
from .outbox import PortfolioOutbox

__all__ = [
    "BacktestConfig",
    "BacktestConfigAsset",
    "BacktestResult",
    "LedgerSnapshot",
    "LedgerTransaction",
    "Portfolio",
    "PortfolioMetricsCache",
    "PortfolioOutbox",
    "RebalanceFrequency",
    "TransactionSource",
    "TransactionStatus",
    "TransactionType",
]
