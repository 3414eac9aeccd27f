"""Backtest configuration and result history models."""

from __future__ import annotations

import datetime as dt
from decimal import Decimal

from sqlalchemy import JSON, Date, DateTime, Enum, Float, ForeignKey, Index, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from carteira.db.base import Base
from carteira.models.enums import RebalanceFrequency


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class BacktestConfig(Base):
    __tablename__ = "backtest_config"
    __table_args__ = (Index("ix_backtest_config_owner", "owner_id"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64))
    name: Mapped[str] = mapped_column(String(128))
    start_date: Mapped[dt.date] = mapped_column(Date)
    end_date: Mapped[dt.date] = mapped_column(Date)
    initial_capital: Mapped[Decimal] = mapped_column(Numeric(24, 8))
    monthly_contribution: Mapped[Decimal] = mapped_column(Numeric(24, 8), default=Decimal("0"))
    rebalance_frequency: Mapped[RebalanceFrequency] = mapped_column(
        Enum(RebalanceFrequency, name="rebalance_frequency"), default=RebalanceFrequency.NONE
    )
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    assets: Mapped[list["BacktestConfigAsset"]] = relationship(
        back_populates="config",
        cascade="all, delete-orphan",
        order_by="BacktestConfigAsset.position",
        lazy="selectin",
    )
    results: Mapped[list["BacktestResult"]] = relationship(
        back_populates="config", cascade="all, delete-orphan"
    )


class BacktestConfigAsset(Base):
    __tablename__ = "backtest_config_asset"

    id: Mapped[int] = mapped_column(primary_key=True)
    config_id: Mapped[int] = mapped_column(ForeignKey("backtest_config.id", ondelete="CASCADE"))
    position: Mapped[int] = mapped_column(Integer, default=0)
    ticker: Mapped[str] = mapped_column(String(20))
    target_allocation: Mapped[float] = mapped_column(Float)

    config: Mapped[BacktestConfig] = relationship(back_populates="assets")


class BacktestResult(Base):
    __tablename__ = "backtest_result"
    __table_args__ = (Index("ix_backtest_result_config", "config_id", "calculated_at"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    config_id: Mapped[int] = mapped_column(ForeignKey("backtest_config.id", ondelete="CASCADE"))
    total_return: Mapped[float | None] = mapped_column(Float, nullable=True)
    annualized_return: Mapped[float | None] = mapped_column(Float, nullable=True)
    volatility: Mapped[float | None] = mapped_column(Float, nullable=True)
    sharpe_ratio: Mapped[float | None] = mapped_column(Float, nullable=True)
    max_drawdown: Mapped[float | None] = mapped_column(Float, nullable=True)
    final_value: Mapped[float] = mapped_column(Float)
    total_invested: Mapped[float] = mapped_column(Float)
    # Full serialized outcome: series, per-asset breakdown, data-quality flags.
    payload: Mapped[dict] = mapped_column(JSON)
    calculated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    config: Mapped[BacktestConfig] = relationship(back_populates="results")


__all__ = ["BacktestConfig", "BacktestConfigAsset", "BacktestResult"]
