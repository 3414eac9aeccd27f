"""Portfolio, ledger transaction and derived-state models."""

from __future__ import annotations

import datetime as dt
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from carteira.db.base import Base
from carteira.models.enums import TransactionSource, TransactionStatus, TransactionType


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class Portfolio(Base):
    __tablename__ = "portfolio"
    __table_args__ = (Index("ix_portfolio_owner", "owner_id"),)

    id: Mapped[int] = mapped_column(primary_key=True)
    owner_id: Mapped[str] = mapped_column(String(64))
    name: Mapped[str] = mapped_column(String(128))
    base_currency: Mapped[str] = mapped_column(String(3), default="BRL")
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    # Insertion-order counter for same-day tie-breaks.
    next_sequence: Mapped[int] = mapped_column(Integer, default=1)
    # Bumped by every replay; derived caches are valid only for a matching version.
    ledger_version: Mapped[int] = mapped_column(Integer, default=0)

    transactions: Mapped[list["LedgerTransaction"]] = relationship(
        back_populates="portfolio", cascade="all, delete-orphan"
    )


class LedgerTransaction(Base):
    __tablename__ = "ledger_transaction"
    __table_args__ = (
        UniqueConstraint("portfolio_id", "sequence", name="uq_ledger_portfolio_sequence"),
        UniqueConstraint("portfolio_id", "dividend_key", name="uq_ledger_dividend_key"),
        Index("ix_ledger_portfolio_date", "portfolio_id", "date", "sequence"),
        Index("ix_ledger_portfolio_status", "portfolio_id", "status"),
    )

    id: Mapped[int] = mapped_column(primary_key=True)
    portfolio_id: Mapped[int] = mapped_column(ForeignKey("portfolio.id", ondelete="CASCADE"))
    sequence: Mapped[int] = mapped_column(Integer)
    date: Mapped[dt.date] = mapped_column(Date)
    type: Mapped[TransactionType] = mapped_column(Enum(TransactionType, name="transaction_type"))
    ticker: Mapped[str | None] = mapped_column(String(20), nullable=True)
    quantity: Mapped[Decimal | None] = mapped_column(Numeric(24, 8), nullable=True)
    price: Mapped[Decimal | None] = mapped_column(Numeric(24, 8), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(24, 8))
    status: Mapped[TransactionStatus] = mapped_column(
        Enum(TransactionStatus, name="transaction_status"), default=TransactionStatus.PENDING
    )
    source: Mapped[TransactionSource] = mapped_column(
        Enum(TransactionSource, name="transaction_source"), default=TransactionSource.MANUAL
    )
    cash_balance_before: Mapped[Decimal | None] = mapped_column(Numeric(24, 8), nullable=True)
    cash_balance_after: Mapped[Decimal | None] = mapped_column(Numeric(24, 8), nullable=True)
    # "<TICKER>:<ISO date>" for PENDING/CONFIRMED dividends, NULL otherwise.
    dividend_key: Mapped[str | None] = mapped_column(String(40), nullable=True)
    notes: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    confirmed_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)

    portfolio: Mapped[Portfolio] = relationship(back_populates="transactions")


class LedgerSnapshot(Base):
    """Materialized result of the last full replay of a portfolio ledger."""

    __tablename__ = "ledger_snapshot"

    portfolio_id: Mapped[int] = mapped_column(
        ForeignKey("portfolio.id", ondelete="CASCADE"), primary_key=True
    )
    ledger_version: Mapped[int] = mapped_column(Integer)
    cash_balance: Mapped[Decimal] = mapped_column(Numeric(24, 8))
    positions: Mapped[dict] = mapped_column(JSON, default=dict)
    issues: Mapped[list] = mapped_column(JSON, default=list)
    final_balance_alert: Mapped[bool] = mapped_column(Boolean, default=False)
    transaction_count: Mapped[int] = mapped_column(Integer, default=0)
    computed_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class PortfolioMetricsCache(Base):
    __tablename__ = "portfolio_metrics_cache"

    portfolio_id: Mapped[int] = mapped_column(
        ForeignKey("portfolio.id", ondelete="CASCADE"), primary_key=True
    )
    ledger_version: Mapped[int] = mapped_column(Integer)
    as_of: Mapped[dt.date] = mapped_column(Date)
    payload: Mapped[dict] = mapped_column(JSON)
    calculated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


__all__ = [
    "Portfolio",
    "LedgerTransaction",
    "LedgerSnapshot",
    "PortfolioMetricsCache",
]
