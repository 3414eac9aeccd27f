"""Backtest configuration and result schemas."""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from carteira.config import get_settings
from carteira.models.enums import RebalanceFrequency


class AssetAllocationSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    ticker: str = Field(..., min_length=1, max_length=20, examples=["ITSA4"])
    target_allocation: float = Field(..., gt=0.0, le=1.0)

    @field_validator("ticker")
    @classmethod
    def _normalize_ticker(cls, value: str) -> str:
        return value.strip().upper()


class BacktestConfigCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=128)
    assets: list[AssetAllocationSchema] = Field(..., min_length=1)
    start_date: dt.date
    end_date: dt.date
    initial_capital: Decimal = Field(..., ge=0)
    monthly_contribution: Decimal = Field(default=Decimal("0"), ge=0)
    rebalance_frequency: RebalanceFrequency = RebalanceFrequency.NONE

    @model_validator(mode="after")
    def _check_consistency(self) -> "BacktestConfigCreate":
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        tickers = [asset.ticker for asset in self.assets]
        if len(set(tickers)) != len(tickers):
            raise ValueError("each ticker may appear only once")
        total = sum(asset.target_allocation for asset in self.assets)
        tolerance = get_settings().allocation_tolerance
        if abs(total - 1.0) > tolerance:
            raise ValueError(f"target allocations must sum to 1.0 (got {total:.4f})")
        if self.initial_capital == 0 and self.monthly_contribution == 0:
            raise ValueError("initial_capital or monthly_contribution must be positive")
        return self


class BacktestConfigSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: str
    name: str
    assets: list[AssetAllocationSchema]
    start_date: dt.date
    end_date: dt.date
    initial_capital: float
    monthly_contribution: float
    rebalance_frequency: RebalanceFrequency
    created_at: dt.datetime
    updated_at: dt.datetime


class BacktestResultSchema(BaseModel):
    id: int
    config_id: int
    calculated_at: dt.datetime
    total_return: float | None = None
    annualized_return: float | None = None
    volatility: float | None = None
    sharpe_ratio: float | None = None
    max_drawdown: float | None = None
    positive_months: int = 0
    negative_months: int = 0
    total_invested: float
    final_value: float
    final_cash_reserve: float = 0.0
    total_dividends_received: float = 0.0
    best_month: dict[str, Any] | None = None
    worst_month: dict[str, Any] | None = None
    average_monthly_return: float | None = None
    current_drawdown: float | None = None
    drawdown_count: int = 0
    drawdown_periods: list[dict[str, Any]] = Field(default_factory=list)
    monthly_returns: list[dict[str, Any]] = Field(default_factory=list)
    asset_performance: list[dict[str, Any]] = Field(default_factory=list)
    portfolio_evolution: list[dict[str, Any]] = Field(default_factory=list)
    data_quality: list[dict[str, Any]] = Field(default_factory=list)


__all__ = [
    "AssetAllocationSchema",
    "BacktestConfigCreate",
    "BacktestConfigSchema",
    "BacktestResultSchema",
]
