"""Pydantic schemas for the Carteira API."""

from .backtest import (
    AssetAllocationSchema,
    BacktestConfigCreate,
    BacktestConfigSchema,
    BacktestResultSchema,
)
from .metrics import PortfolioMetricsSchema
from .transactions import (
    BalancesSchema,
    BatchConfirmResponse,
    BuyWithCashCreditRequest,
    ConfirmBatchRequest,
    DividendConfirmRequest,
    DividendSuggestionSchema,
    FundedPurchaseResponse,
    GenerateSuggestionsResponse,
    PortfolioCreateRequest,
    PortfolioSchema,
    PositionSchema,
    RejectRequest,
    ReplaySummarySchema,
    TransactionConfirmResponse,
    TransactionDraft,
    TransactionSchema,
    parse_transaction_draft,
)

__all__ = [
    "AssetAllocationSchema",
    "BacktestConfigCreate",
    "BacktestConfigSchema",
    "BacktestResultSchema",
    "BalancesSchema",
    "BatchConfirmResponse",
    "BuyWithCashCreditRequest",
    "ConfirmBatchRequest",
    "DividendConfirmRequest",
    "DividendSuggestionSchema",
    "FundedPurchaseResponse",
    "GenerateSuggestionsResponse",
    "PortfolioCreateRequest",
    "PortfolioMetricsSchema",
    "PortfolioSchema",
    "PositionSchema",
    "RejectRequest",
    "ReplaySummarySchema",
    "TransactionConfirmResponse",
    "TransactionDraft",
    "TransactionSchema",
    "parse_transaction_draft",
]
