"""Backtest simulator.

A backtest never computes returns on its own. It synthesizes the ledger a
disciplined investor would have produced (initial deposit, monthly
contributions, rebalances, dividends) and pushes those entries through the
same replay, equity curve and metrics functions used for live portfolios.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import date, timedelta
from decimal import Decimal, localcontext
from typing import Any, Iterable, Mapping, Sequence

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from carteira.config import AppSettings, get_settings
from carteira.core import telemetry
from carteira.core.errors import (
    BacktestConfigError,
    BacktestDataError,
    BacktestTimeoutError,
    NotFoundError,
)
from carteira.models import (
    BacktestConfig,
    BacktestConfigAsset,
    BacktestResult,
    RebalanceFrequency,
    TransactionType,
)
from carteira.providers.base import DividendEvent, MarketDataProvider
from carteira.schemas.backtest import BacktestConfigCreate
from carteira.services.analytics import curve_data_quality, load_price_book
from carteira.services.metrics import (
    EquityPoint,
    PerformanceMetrics,
    add_months,
    build_equity_curve,
    compute_metrics,
    external_cash_flows,
    month_end_dates,
)
from carteira.services.outbox import enqueue_portfolio_event
from carteira.services.pricing import PriceBook
from carteira.services.reconstructor import LEDGER_CONTEXT, LedgerEntry, ReplayResult, replay

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

ZERO = Decimal("0")

# Months between rebalances; None means never.
REBALANCE_INTERVAL: dict[RebalanceFrequency, int | None] = {
    RebalanceFrequency.NONE: None,
    RebalanceFrequency.MONTHLY: 1,
    RebalanceFrequency.QUARTERLY: 3,
    RebalanceFrequency.ANNUAL: 12,
}


@dataclass(frozen=True)
class AssetAllocation:
    ticker: str
    target_allocation: Decimal


@dataclass(frozen=True)
class BacktestParameters:
    assets: tuple[AssetAllocation, ...]
    start_date: date
    end_date: date
    initial_capital: Decimal
    monthly_contribution: Decimal = ZERO
    rebalance_frequency: RebalanceFrequency = RebalanceFrequency.NONE

    @classmethod
    def from_config(cls, config: BacktestConfig | BacktestConfigCreate) -> "BacktestParameters":
        return cls(
            assets=tuple(
                AssetAllocation(ticker=asset.ticker, target_allocation=Decimal(str(asset.target_allocation)))
                for asset in config.assets
            ),
            start_date=config.start_date,
            end_date=config.end_date,
            initial_capital=Decimal(config.initial_capital),
            monthly_contribution=Decimal(config.monthly_contribution or 0),
            rebalance_frequency=RebalanceFrequency(config.rebalance_frequency),
        )

    @property
    def tickers(self) -> list[str]:
        return [asset.ticker for asset in self.assets]

    def validate(self, allocation_tolerance: float = 0.01) -> None:
        if not self.assets:
            raise BacktestConfigError("A backtest needs at least one asset")
        if self.end_date <= self.start_date:
            raise BacktestConfigError("end_date must be after start_date")
        total = sum((asset.target_allocation for asset in self.assets), ZERO)
        if abs(total - 1) > Decimal(str(allocation_tolerance)):
            raise BacktestConfigError(f"Target allocations sum to {total}, expected 1.0")
        if self.initial_capital < 0 or self.monthly_contribution < 0:
            raise BacktestConfigError("Capital and contributions must not be negative")

    def rebalance_due(self, month_index: int) -> bool:
        interval = REBALANCE_INTERVAL[self.rebalance_frequency]
        return interval is not None and month_index % interval == 0


@dataclass
class MarketHistory:
    prices: PriceBook
    dividends: dict[str, list[DividendEvent]] = field(default_factory=dict)


@dataclass
class BacktestOutcome:
    metrics: PerformanceMetrics
    entries: list[LedgerEntry]
    replay: ReplayResult
    curve: list[EquityPoint]
    asset_performance: list[dict[str, Any]]
    portfolio_evolution: list[dict[str, Any]]
    final_cash_reserve: Decimal
    total_dividends_received: Decimal
    data_quality: list[dict[str, Any]]

    def to_dict(self) -> dict[str, Any]:
        payload = self.metrics.to_dict()
        payload.update(
            {
                "final_cash_reserve": float(self.final_cash_reserve),
                "total_dividends_received": float(self.total_dividends_received),
                "asset_performance": self.asset_performance,
                "portfolio_evolution": self.portfolio_evolution,
                "data_quality": self.data_quality,
            }
        )
        return payload


class _LedgerBuilder:
    """Accumulates synthetic entries while tracking holdings and trade flags."""

    def __init__(self, params: BacktestParameters, history: MarketHistory, deadline: float | None):
        self.params = params
        self.history = history
        self.deadline = deadline
        self.entries: list[LedgerEntry] = []
        self.cash = ZERO
        self.reserve = ZERO
        self.holdings: dict[str, Decimal] = {ticker: ZERO for ticker in params.tickers}
        self.bought: dict[str, Decimal] = {ticker: ZERO for ticker in params.tickers}
        self.sold: dict[str, Decimal] = {ticker: ZERO for ticker in params.tickers}
        self.dividends: dict[str, Decimal] = {ticker: ZERO for ticker in params.tickers}
        self.flags: list[dict[str, Any]] = []

    def check_deadline(self) -> None:
        if self.deadline is not None and time.monotonic() > self.deadline:
            raise BacktestTimeoutError("Backtest exceeded its time budget")

    def _add(self, day: date, kind: TransactionType, amount: Decimal, **fields: Any) -> None:
        self.entries.append(
            LedgerEntry(
                id=f"bt-{len(self.entries) + 1}",
                sequence=len(self.entries) + 1,
                date=day,
                type=kind,
                amount=amount,
                **fields,
            )
        )
        self.cash += amount

    def price(self, ticker: str, day: date) -> Decimal:
        quote = self.history.prices.quote(ticker, day, allow_later=False)
        if quote is None:
            raise BacktestDataError(f"No price for {ticker} on or before {day}", tickers=[ticker])
        if quote.stale:
            self.flags.append(quote.to_flag())
        return quote.price

    def credit(self, day: date, amount: Decimal) -> None:
        if amount > 0:
            self._add(day, TransactionType.CASH_CREDIT, amount)

    def buy(self, day: date, ticker: str, value: Decimal, price: Decimal) -> None:
        if value <= 0:
            return
        quantity = value / price
        cost = quantity * price
        self._add(day, TransactionType.BUY, -cost, ticker=ticker, quantity=quantity, price=price)
        self.holdings[ticker] += quantity
        self.bought[ticker] += cost

    def sell(self, day: date, ticker: str, value: Decimal, price: Decimal) -> None:
        quantity = min(value / price, self.holdings[ticker])
        if quantity <= 0:
            return
        proceeds = quantity * price
        self._add(
            day, TransactionType.SELL_WITHDRAWAL, proceeds, ticker=ticker, quantity=quantity, price=price
        )
        self.holdings[ticker] -= quantity
        self.sold[ticker] += proceeds

    def deploy(self, day: date, amount: Decimal) -> None:
        """Buy ``amount`` worth of assets split by target allocation."""

        for asset in self.params.assets:
            price = self.price(asset.ticker, day)
            self.buy(day, asset.ticker, amount * asset.target_allocation, price)

    def rebalance(self, day: date) -> None:
        """Bring holdings plus uninvested cash back to target weights; dividends stay aside."""

        prices = {asset.ticker: self.price(asset.ticker, day) for asset in self.params.assets}
        values = {ticker: self.holdings[ticker] * prices[ticker] for ticker in prices}
        tradable = self.cash - self.reserve + sum(values.values(), ZERO)
        targets = {asset.ticker: tradable * asset.target_allocation for asset in self.params.assets}
        for ticker in prices:
            if values[ticker] > targets[ticker]:
                self.sell(day, ticker, values[ticker] - targets[ticker], prices[ticker])
        for ticker in prices:
            if values[ticker] < targets[ticker]:
                self.buy(day, ticker, targets[ticker] - values[ticker], prices[ticker])

    def pay_dividends(self, window_start: date, window_end: date) -> None:
        """Credit events with ``window_start <= ex_date < window_end``."""

        for ticker in self.params.tickers:
            for event in self.history.dividends.get(ticker, []):
                if not (window_start <= event.ex_date < window_end):
                    continue
                quantity = self.holdings[ticker]
                if quantity <= 0:
                    continue
                amount = quantity * event.amount_per_share
                self._add(
                    event.ex_date,
                    TransactionType.DIVIDEND,
                    amount,
                    ticker=ticker,
                    quantity=quantity,
                    price=event.amount_per_share,
                )
                self.reserve += amount
                self.dividends[ticker] += amount


def _month_starts(start: date, end: date) -> list[date]:
    """First day of every month after ``start``'s month, up to ``end``."""

    starts: list[date] = []
    cursor = add_months(start.replace(day=1), 1)
    while cursor <= end:
        starts.append(cursor)
        cursor = add_months(cursor, 1)
    return starts


def _check_coverage(params: BacktestParameters, history: MarketHistory) -> list[dict[str, Any]]:
    missing: list[str] = []
    report: list[dict[str, Any]] = []
    for ticker in params.tickers:
        if not history.prices.has_data_between(ticker, params.start_date, params.end_date):
            missing.append(ticker)
        coverage = history.prices.coverage(ticker)
        report.append({"code": "DATA_AVAILABILITY", **coverage})
    if missing:
        raise BacktestDataError(
            f"No price data between {params.start_date} and {params.end_date} for: {', '.join(missing)}",
            tickers=missing,
        )
    return report


def _common_start(
    params: BacktestParameters, history: MarketHistory
) -> tuple[BacktestParameters, list[dict[str, Any]]]:
    """Move the start to the first day every asset has a price.

    Buying an asset before its first observation would use a price from the
    future, so the run is shortened to the period all assets share.
    """

    late: dict[str, date] = {}
    for ticker in params.tickers:
        first = history.prices.first_date(ticker)
        if first is not None and first > params.start_date:
            late[ticker] = first
    if not late:
        return params, []
    effective = max(late.values())
    logger.info(
        "Backtest start moved from %s to %s; no earlier prices for %s",
        params.start_date,
        effective,
        ", ".join(sorted(late)),
    )
    flag = {
        "code": "ADJUSTED_START",
        "requested_start": params.start_date.isoformat(),
        "effective_start": effective.isoformat(),
        "tickers": sorted(late),
    }
    return replace(params, start_date=effective), [flag]


def _asset_performance(
    params: BacktestParameters,
    builder: _LedgerBuilder,
    final_point: EquityPoint | None,
    total_invested: Decimal,
) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    for asset in params.assets:
        ticker = asset.ticker
        final_value = final_point.holdings.get(ticker, ZERO) if final_point else ZERO
        net_invested = builder.bought[ticker] - builder.sold[ticker]
        gain = final_value + builder.dividends[ticker] - net_invested
        rows.append(
            {
                "ticker": ticker,
                "target_allocation": float(asset.target_allocation),
                "final_quantity": float(builder.holdings[ticker]),
                "final_value": float(final_value),
                "net_invested": float(net_invested),
                "dividends": float(builder.dividends[ticker]),
                "total_return": float(gain / net_invested) if net_invested > 0 else None,
                "contribution": float(gain / total_invested) if total_invested > 0 else None,
            }
        )
    return rows


def _portfolio_evolution(curve: Sequence[EquityPoint], metrics: PerformanceMetrics) -> list[dict[str, Any]]:
    returns = {item.date: item.value for item in metrics.monthly_returns}
    return [
        {
            "date": point.date.isoformat(),
            "value": float(point.total_value),
            "cash": float(point.cash_balance),
            "holdings": {ticker: float(value) for ticker, value in point.holdings.items()},
            "monthly_return": returns.get(point.date),
        }
        for point in curve
    ]


def _unique_flags(flags: Iterable[dict[str, Any]]) -> list[dict[str, Any]]:
    seen: set[tuple] = set()
    unique: list[dict[str, Any]] = []
    for flag in flags:
        key = tuple(sorted((k, str(v)) for k, v in flag.items()))
        if key in seen:
            continue
        seen.add(key)
        unique.append(flag)
    return unique


def simulate(
    params: BacktestParameters,
    history: MarketHistory,
    *,
    risk_free_rate: float,
    tolerance: Decimal = Decimal("0.10"),
    deadline: float | None = None,
) -> BacktestOutcome:
    """Run a backtest synchronously; ``deadline`` is a ``time.monotonic()`` value."""

    with tracer.start_as_current_span("backtest.simulate") as span, localcontext(LEDGER_CONTEXT):
        span.set_attribute("carteira.backtest.assets", len(params.assets))
        availability_report = _check_coverage(params, history)
        params, start_flags = _common_start(params, history)
        builder = _LedgerBuilder(params, history, deadline)

        first_window_end = add_months(params.start_date.replace(day=1), 1)
        builder.credit(params.start_date, params.initial_capital)
        builder.deploy(params.start_date, params.initial_capital)
        builder.pay_dividends(params.start_date, min(first_window_end, params.end_date + timedelta(days=1)))

        for month_index, month_start in enumerate(_month_starts(params.start_date, params.end_date), start=1):
            builder.check_deadline()
            builder.credit(month_start, params.monthly_contribution)
            if params.rebalance_due(month_index):
                builder.rebalance(month_start)
            elif params.monthly_contribution > 0:
                builder.deploy(month_start, params.monthly_contribution)
            window_end = min(add_months(month_start, 1), params.end_date + timedelta(days=1))
            builder.pay_dividends(month_start, window_end)

        result = replay(builder.entries, tolerance=tolerance)
        curve = build_equity_curve(result, history.prices, month_end_dates(params.start_date, params.end_date))
        metrics = compute_metrics(
            curve, external_cash_flows(builder.entries), risk_free_rate=risk_free_rate
        )
        span.set_attribute("carteira.backtest.entries", len(builder.entries))

    total_invested = Decimal(str(metrics.total_invested))
    return BacktestOutcome(
        metrics=metrics,
        entries=builder.entries,
        replay=result,
        curve=curve,
        asset_performance=_asset_performance(params, builder, curve[-1] if curve else None, total_invested),
        portfolio_evolution=_portfolio_evolution(curve, metrics),
        final_cash_reserve=result.cash_balance,
        total_dividends_received=sum(builder.dividends.values(), ZERO),
        data_quality=start_flags
        + _unique_flags([*builder.flags, *curve_data_quality(curve)])
        + availability_report,
    )


async def load_market_history(
    provider: MarketDataProvider,
    params: BacktestParameters,
    *,
    max_staleness_days: int,
) -> MarketHistory:
    prices = await load_price_book(
        provider,
        params.tickers,
        params.start_date,
        params.end_date,
        max_staleness_days=max_staleness_days,
    )
    dividends = await asyncio.gather(
        *(
            provider.get_dividend_history(ticker, params.start_date, params.end_date)
            for ticker in params.tickers
        )
    )
    return MarketHistory(prices=prices, dividends=dict(zip(params.tickers, dividends)))


async def run_simulation(
    params: BacktestParameters,
    provider: MarketDataProvider,
    settings: AppSettings | None = None,
) -> BacktestOutcome:
    """Fetch history and run :func:`simulate` in a worker thread under the time budget."""

    settings = settings or get_settings()
    params.validate(settings.allocation_tolerance)
    history = await load_market_history(
        provider, params, max_staleness_days=settings.max_price_staleness_days
    )
    budget = settings.backtest_timeout_seconds
    started = time.monotonic()
    try:
        outcome = await asyncio.wait_for(
            asyncio.to_thread(
                simulate,
                params,
                history,
                risk_free_rate=settings.risk_free_rate,
                tolerance=settings.negative_balance_tolerance,
                deadline=time.monotonic() + budget,
            ),
            timeout=budget,
        )
    except BacktestTimeoutError:
        telemetry.domain_metrics.record_backtest(time.monotonic() - started, "timeout")
        raise
    except asyncio.TimeoutError as exc:
        telemetry.domain_metrics.record_backtest(time.monotonic() - started, "timeout")
        raise BacktestTimeoutError(f"Backtest exceeded {budget} seconds") from exc
    telemetry.domain_metrics.record_backtest(time.monotonic() - started, "completed")
    return outcome


def _apply_config(config: BacktestConfig, payload: BacktestConfigCreate) -> None:
    config.name = payload.name.strip()
    config.start_date = payload.start_date
    config.end_date = payload.end_date
    config.initial_capital = payload.initial_capital
    config.monthly_contribution = payload.monthly_contribution
    config.rebalance_frequency = payload.rebalance_frequency
    config.assets = [
        BacktestConfigAsset(position=index, ticker=asset.ticker, target_allocation=asset.target_allocation)
        for index, asset in enumerate(payload.assets)
    ]


async def create_backtest_config(
    session: AsyncSession, owner_id: str, payload: BacktestConfigCreate
) -> BacktestConfig:
    config = BacktestConfig(owner_id=owner_id)
    _apply_config(config, payload)
    session.add(config)
    await session.commit()
    return await get_backtest_config(session, config.id, owner_id)


async def get_backtest_config(
    session: AsyncSession, config_id: int, owner_id: str | None = None
) -> BacktestConfig:
    result = await session.execute(
        select(BacktestConfig)
        .where(BacktestConfig.id == config_id)
        .execution_options(populate_existing=True)
    )
    config = result.scalars().first()
    if config is None or (owner_id is not None and config.owner_id != owner_id):
        raise NotFoundError(f"Backtest config {config_id} not found")
    return config


async def list_backtest_configs(session: AsyncSession, owner_id: str) -> list[BacktestConfig]:
    result = await session.execute(
        select(BacktestConfig)
        .where(BacktestConfig.owner_id == owner_id)
        .order_by(BacktestConfig.created_at.desc(), BacktestConfig.id.desc())
    )
    return list(result.scalars().all())


async def update_backtest_config(
    session: AsyncSession, config_id: int, owner_id: str, payload: BacktestConfigCreate
) -> BacktestConfig:
    config = await get_backtest_config(session, config_id, owner_id)
    _apply_config(config, payload)
    await session.commit()
    return await get_backtest_config(session, config_id, owner_id)


async def run_backtest(
    session: AsyncSession,
    config_id: int,
    provider: MarketDataProvider,
    *,
    owner_id: str | None = None,
    settings: AppSettings | None = None,
) -> BacktestResult:
    """Simulate a stored config and append the outcome to its result history."""

    settings = settings or get_settings()
    config = await get_backtest_config(session, config_id, owner_id)
    params = BacktestParameters.from_config(config)
    started = time.monotonic()
    outcome = await run_simulation(params, provider, settings)
    metrics = outcome.metrics
    record = BacktestResult(
        config_id=config.id,
        total_return=metrics.total_return,
        annualized_return=metrics.annualized_return,
        volatility=metrics.volatility,
        sharpe_ratio=metrics.sharpe_ratio,
        max_drawdown=metrics.max_drawdown,
        final_value=metrics.final_value,
        total_invested=metrics.total_invested,
        payload=outcome.to_dict(),
    )
    session.add(record)
    await session.flush()
    await enqueue_portfolio_event(
        session,
        "backtest.completed",
        {"config_id": config.id, "result_id": record.id, "total_return": metrics.total_return},
    )
    await session.commit()
    await session.refresh(record)
    logger.info(
        "Backtest %s finished in %.2fs with %s entries",
        config.id,
        time.monotonic() - started,
        len(outcome.entries),
    )
    return record


async def list_backtest_results(
    session: AsyncSession, config_id: int, owner_id: str | None = None
) -> list[BacktestResult]:
    await get_backtest_config(session, config_id, owner_id)
    result = await session.execute(
        select(BacktestResult)
        .where(BacktestResult.config_id == config_id)
        .order_by(BacktestResult.calculated_at.desc(), BacktestResult.id.desc())
    )
    return list(result.scalars().all())


def result_to_dict(record: BacktestResult) -> dict[str, Any]:
    payload: Mapping[str, Any] = record.payload or {}
    return {
        **payload,
        "id": record.id,
        "config_id": record.config_id,
        "calculated_at": record.calculated_at,
        "total_invested": record.total_invested,
        "final_value": record.final_value,
    }


__all__ = [
    "AssetAllocation",
    "BacktestOutcome",
    "BacktestParameters",
    "MarketHistory",
    "create_backtest_config",
    "get_backtest_config",
    "list_backtest_configs",
    "list_backtest_results",
    "load_market_history",
    "result_to_dict",
    "run_backtest",
    "run_simulation",
    "simulate",
    "update_backtest_config",
]
