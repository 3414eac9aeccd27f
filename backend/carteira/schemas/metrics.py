"""Portfolio metrics response schema."""

from __future__ import annotations

import datetime as dt
from typing import Any

from pydantic import BaseModel, Field


class MetricAvailabilitySchema(BaseModel):
    available: bool
    required_months: int
    available_from: dt.date | None = None


class MonthlyReturnSchema(BaseModel):
    date: dt.date
    value: float


class EquityPointSchema(BaseModel):
    date: dt.date
    cash_balance: float
    positions_value: float
    total_value: float


class DrawdownPointSchema(BaseModel):
    date: dt.date
    drawdown: float
    in_drawdown: bool


class DrawdownPeriodSchema(BaseModel):
    start_date: dt.date
    end_date: dt.date | None = None
    duration_months: int
    depth: float
    recovered: bool


class HoldingValuationSchema(BaseModel):
    ticker: str
    quantity: float
    average_cost: float
    cost_basis: float
    price: float | None = None
    price_date: dt.date | None = None
    market_value: float
    unrealized_gain: float
    unrealized_return: float | None = None
    weight: float | None = None


class PortfolioMetricsSchema(BaseModel):
    portfolio_id: int
    ledger_version: int
    as_of: dt.date
    cached: bool = False
    total_invested: float
    final_value: float
    total_return: float | None = None
    annualized_return: float | None = None
    volatility: float | None = None
    sharpe_ratio: float | None = None
    max_drawdown: float | None = None
    positive_months: int
    negative_months: int
    months_elapsed: int
    monthly_returns: list[MonthlyReturnSchema] = Field(default_factory=list)
    best_month: MonthlyReturnSchema | None = None
    worst_month: MonthlyReturnSchema | None = None
    average_monthly_return: float | None = None
    current_drawdown: float | None = None
    drawdown_count: int = 0
    average_recovery_months: float | None = None
    drawdown_history: list[DrawdownPointSchema] = Field(default_factory=list)
    drawdown_periods: list[DrawdownPeriodSchema] = Field(default_factory=list)
    holdings: list[HoldingValuationSchema] = Field(default_factory=list)
    equity_curve: list[EquityPointSchema] = Field(default_factory=list)
    availability: dict[str, MetricAvailabilitySchema] = Field(default_factory=dict)
    data_quality: list[dict[str, Any]] = Field(default_factory=list)


__all__ = [
    "DrawdownPeriodSchema",
    "DrawdownPointSchema",
    "EquityPointSchema",
    "HoldingValuationSchema",
    "MetricAvailabilitySchema",
    "MonthlyReturnSchema",
    "PortfolioMetricsSchema",
]
