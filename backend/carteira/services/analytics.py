"""Live portfolio metrics backed by a ledger-version keyed cache."""

from __future__ import annotations

import asyncio
import logging
from datetime import date, timedelta
from typing import Any, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from carteira.config import AppSettings, get_settings
from carteira.models import PortfolioMetricsCache
from carteira.providers.base import MarketDataProvider
from carteira.services.ledger import get_portfolio, load_confirmed_entries, utcnow
from carteira.services.locks import locked_portfolio
from carteira.services.metrics import (
    EquityPoint,
    build_equity_curve,
    compute_metrics,
    external_cash_flows,
    month_end_dates,
    value_holdings,
)
from carteira.services.pricing import PriceBook
from carteira.services.reconstructor import LedgerEntry, replay

logger = logging.getLogger(__name__)


async def load_price_book(
    provider: MarketDataProvider,
    tickers: Sequence[str],
    start: date,
    end: date,
    *,
    max_staleness_days: int,
) -> PriceBook:
    """Fetch every ticker concurrently, reaching back far enough for a prior close."""

    lookback = start - timedelta(days=max_staleness_days)
    series = await asyncio.gather(
        *(provider.get_historical_prices(ticker, lookback, end) for ticker in tickers)
    )
    return PriceBook(dict(zip(tickers, series)), max_staleness_days=max_staleness_days)


def serialize_curve(curve: Sequence[EquityPoint]) -> list[dict[str, Any]]:
    return [
        {
            "date": point.date.isoformat(),
            "cash_balance": float(point.cash_balance),
            "positions_value": float(point.positions_value),
            "total_value": float(point.total_value),
        }
        for point in curve
    ]


def curve_data_quality(curve: Sequence[EquityPoint]) -> list[dict[str, Any]]:
    return [gap for point in curve for gap in point.price_gaps]


async def compute_portfolio_metrics(
    entries: Sequence[LedgerEntry],
    provider: MarketDataProvider,
    as_of: date,
    settings: AppSettings,
) -> dict[str, Any]:
    dated = [entry for entry in entries if entry.date <= as_of]
    result = replay(dated, tolerance=settings.negative_balance_tolerance)
    curve: list[EquityPoint] = []
    holdings: list[dict[str, Any]] = []
    if result.steps:
        start = result.steps[0].entry.date
        tickers = sorted({entry.ticker for entry in dated if entry.ticker})
        book = await load_price_book(
            provider, tickers, start, as_of, max_staleness_days=settings.max_price_staleness_days
        )
        curve = build_equity_curve(result, book, month_end_dates(start, as_of))
        holdings = [holding.to_dict() for holding in value_holdings(result, book, as_of)]
    metrics = compute_metrics(curve, external_cash_flows(dated), risk_free_rate=settings.risk_free_rate)
    payload = metrics.to_dict()
    payload["equity_curve"] = serialize_curve(curve)
    payload["holdings"] = holdings
    payload["data_quality"] = curve_data_quality(curve)
    return payload


async def get_portfolio_metrics(
    session: AsyncSession,
    portfolio_id: int,
    provider: MarketDataProvider,
    as_of: date | None = None,
    *,
    owner_id: str | None = None,
    settings: AppSettings | None = None,
) -> dict[str, Any]:
    """Return cached metrics when the ledger version and as-of date match, else recompute."""

    settings = settings or get_settings()
    as_of = as_of or date.today()
    portfolio = await get_portfolio(session, portfolio_id, owner_id)
    version = portfolio.ledger_version
    cache = await session.get(PortfolioMetricsCache, portfolio_id, populate_existing=True)
    if cache is not None and cache.ledger_version == version and cache.as_of == as_of:
        return {**cache.payload, "cached": True}

    entries = await load_confirmed_entries(session, portfolio_id)
    payload = await compute_portfolio_metrics(entries, provider, as_of, settings)
    payload.update({"portfolio_id": portfolio_id, "ledger_version": version, "as_of": as_of.isoformat()})

    async with locked_portfolio(session, portfolio_id, owner_id=owner_id) as locked:
        # A mutation that landed while computing makes this result stale.
        if locked.ledger_version == version:
            cache = await session.get(PortfolioMetricsCache, portfolio_id)
            if cache is None:
                cache = PortfolioMetricsCache(portfolio_id=portfolio_id)
                session.add(cache)
            cache.ledger_version = version
            cache.as_of = as_of
            cache.payload = payload
            cache.calculated_at = utcnow()
            await session.commit()
        else:
            logger.info(
                "Skipping metrics cache for portfolio %s: version moved from %s to %s",
                portfolio_id,
                version,
                locked.ledger_version,
            )
            await session.rollback()
    return {**payload, "cached": False}


__all__ = [
    "compute_portfolio_metrics",
    "curve_data_quality",
    "get_portfolio_metrics",
    "load_price_book",
    "serialize_curve",
]
