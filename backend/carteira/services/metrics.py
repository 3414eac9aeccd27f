"""Equity curve construction and return/risk statistics.

Conventions:

* The equity curve has one point per calendar month end plus the final
  as-of date; ``months_elapsed`` is the number of points.
* Monthly returns use the Modified Dietz approximation with flows at
  mid-period: ``(end - start - net) / (start + net / 2)``.
* Volatility is the population standard deviation of monthly returns
  annualized by ``sqrt(12)``.
* Max drawdown is measured from the running peak of the curve. A drawdown
  period opens when the curve falls more than 0.01% below its peak and
  recovers once the peak is reached again; durations count curve points.
"""

from __future__ import annotations

import calendar
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Sequence

import numpy as np

from carteira.models.enums import TransactionType
from carteira.services.pricing import PriceBook
from carteira.services.reconstructor import LedgerEntry, ReplayResult, cash_as_of, positions_as_of

ZERO = Decimal("0")
VOLATILITY_EPSILON = 1e-12
DRAWDOWN_THRESHOLD = 0.0001

# Curve points needed before each metric can be reported.
REQUIRED_POINTS = {
    "total_return": 1,
    "max_drawdown": 2,
    "monthly_returns": 2,
    "volatility": 3,
    "annualized_return": 12,
    "sharpe_ratio": 12,
}


@dataclass(frozen=True)
class EquityPoint:
    date: date
    cash_balance: Decimal
    positions_value: Decimal
    holdings: dict[str, Decimal] = field(default_factory=dict)
    price_gaps: tuple[dict[str, Any], ...] = ()

    @property
    def total_value(self) -> Decimal:
        return self.cash_balance + self.positions_value


@dataclass(frozen=True)
class CashFlow:
    date: date
    amount: Decimal


@dataclass(frozen=True)
class MonthlyReturn:
    date: date
    value: float


@dataclass(frozen=True)
class MetricAvailability:
    available: bool
    required_months: int
    available_from: date | None


@dataclass(frozen=True)
class DrawdownPoint:
    date: date
    drawdown: float
    in_drawdown: bool


@dataclass
class DrawdownPeriod:
    start_date: date
    depth: float
    end_date: date | None = None
    duration_months: int = 0
    recovered: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_date": self.start_date.isoformat(),
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "duration_months": self.duration_months,
            "depth": self.depth,
            "recovered": self.recovered,
        }


@dataclass(frozen=True)
class HoldingValuation:
    """Mark-to-market view of one open position."""

    ticker: str
    quantity: Decimal
    average_cost: Decimal
    price: Decimal | None
    price_date: date | None
    market_value: Decimal
    weight: float | None

    @property
    def cost_basis(self) -> Decimal:
        return self.quantity * self.average_cost

    @property
    def unrealized_gain(self) -> Decimal:
        return self.market_value - self.cost_basis

    @property
    def unrealized_return(self) -> float | None:
        if self.cost_basis <= 0:
            return None
        return float(self.unrealized_gain / self.cost_basis)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticker": self.ticker,
            "quantity": float(self.quantity),
            "average_cost": float(self.average_cost),
            "cost_basis": float(self.cost_basis),
            "price": float(self.price) if self.price is not None else None,
            "price_date": self.price_date.isoformat() if self.price_date else None,
            "market_value": float(self.market_value),
            "unrealized_gain": float(self.unrealized_gain),
            "unrealized_return": self.unrealized_return,
            "weight": self.weight,
        }


@dataclass
class PerformanceMetrics:
    total_invested: float
    final_value: float
    total_return: float | None
    annualized_return: float | None
    volatility: float | None
    sharpe_ratio: float | None
    max_drawdown: float | None
    monthly_returns: list[MonthlyReturn]
    positive_months: int
    negative_months: int
    months_elapsed: int
    availability: dict[str, MetricAvailability]
    best_month: MonthlyReturn | None = None
    worst_month: MonthlyReturn | None = None
    average_monthly_return: float | None = None
    drawdown_history: list[DrawdownPoint] = field(default_factory=list)
    drawdown_periods: list[DrawdownPeriod] = field(default_factory=list)
    current_drawdown: float | None = None
    average_recovery_months: float | None = None

    @property
    def drawdown_count(self) -> int:
        return len(self.drawdown_periods)

    def to_dict(self) -> dict[str, Any]:
        def month(item: MonthlyReturn | None) -> dict[str, Any] | None:
            return {"date": item.date.isoformat(), "value": item.value} if item else None

        return {
            "total_invested": self.total_invested,
            "final_value": self.final_value,
            "total_return": self.total_return,
            "annualized_return": self.annualized_return,
            "volatility": self.volatility,
            "sharpe_ratio": self.sharpe_ratio,
            "max_drawdown": self.max_drawdown,
            "monthly_returns": [
                {"date": item.date.isoformat(), "value": item.value} for item in self.monthly_returns
            ],
            "positive_months": self.positive_months,
            "negative_months": self.negative_months,
            "months_elapsed": self.months_elapsed,
            "best_month": month(self.best_month),
            "worst_month": month(self.worst_month),
            "average_monthly_return": self.average_monthly_return,
            "current_drawdown": self.current_drawdown,
            "drawdown_count": self.drawdown_count,
            "average_recovery_months": self.average_recovery_months,
            "drawdown_history": [
                {"date": point.date.isoformat(), "drawdown": point.drawdown, "in_drawdown": point.in_drawdown}
                for point in self.drawdown_history
            ],
            "drawdown_periods": [period.to_dict() for period in self.drawdown_periods],
            "availability": {
                name: {
                    "available": item.available,
                    "required_months": item.required_months,
                    "available_from": item.available_from.isoformat() if item.available_from else None,
                }
                for name, item in self.availability.items()
            },
        }


def month_end(day: date) -> date:
    return date(day.year, day.month, calendar.monthrange(day.year, day.month)[1])


def add_months(day: date, months: int) -> date:
    """Shift ``day`` by whole months, clamping to the target month's length."""

    index = day.month - 1 + months
    year, month = day.year + index // 12, index % 12 + 1
    return date(year, month, min(day.day, calendar.monthrange(year, month)[1]))


def month_end_dates(start: date, end: date) -> list[date]:
    """Month ends strictly before ``end`` from ``start``'s month on, then ``end`` itself."""

    if end < start:
        return []
    dates: list[date] = []
    cursor = month_end(start)
    while cursor < end:
        dates.append(cursor)
        cursor = month_end(add_months(cursor.replace(day=1), 1))
    dates.append(end)
    return dates


def external_cash_flows(entries: Iterable[LedgerEntry]) -> list[CashFlow]:
    """Money put in or taken out by the investor; dividends and trades are internal."""

    return [
        CashFlow(date=entry.date, amount=entry.amount)
        for entry in entries
        if entry.type in (TransactionType.CASH_CREDIT, TransactionType.CASH_DEBIT)
    ]


def build_equity_curve(
    replay: ReplayResult,
    price_book: PriceBook,
    dates: Sequence[date],
) -> list[EquityPoint]:
    curve: list[EquityPoint] = []
    for day in dates:
        holdings: dict[str, Decimal] = {}
        gaps: list[dict[str, Any]] = []
        for ticker, quantity in sorted(positions_as_of(replay, day).items()):
            quote = price_book.quote(ticker, day)
            if quote is None:
                gaps.append({"code": "MISSING_PRICE", "ticker": ticker, "requested_date": day.isoformat()})
                holdings[ticker] = ZERO
                continue
            if quote.stale:
                gaps.append(quote.to_flag())
            holdings[ticker] = quantity * quote.price
        curve.append(
            EquityPoint(
                date=day,
                cash_balance=cash_as_of(replay, day),
                positions_value=sum(holdings.values(), ZERO),
                holdings=holdings,
                price_gaps=tuple(gaps),
            )
        )
    return curve


def _net_flows(flows: Sequence[CashFlow], after: date, through: date) -> Decimal:
    return sum((flow.amount for flow in flows if after < flow.date <= through), ZERO)


def monthly_returns(curve: Sequence[EquityPoint], flows: Sequence[CashFlow]) -> list[MonthlyReturn]:
    returns: list[MonthlyReturn] = []
    for previous, current in zip(curve, curve[1:]):
        start = previous.total_value
        if start == 0:
            continue
        net = _net_flows(flows, previous.date, current.date)
        denominator = start + net / 2
        if denominator <= 0:
            continue
        value = (current.total_value - start - net) / denominator
        returns.append(MonthlyReturn(date=current.date, value=float(value)))
    return returns


def _drawdowns(values: Sequence[float]) -> np.ndarray:
    series = np.asarray(values, dtype=float)
    peaks = np.maximum.accumulate(series)
    with np.errstate(divide="ignore", invalid="ignore"):
        return np.where(peaks > 0, (peaks - series) / peaks, 0.0)


def max_drawdown(values: Sequence[float]) -> float | None:
    if len(values) < 2:
        return None
    return float(np.max(_drawdowns(values)))


def drawdown_analysis(
    dates: Sequence[date], values: Sequence[float]
) -> tuple[list[DrawdownPoint], list[DrawdownPeriod]]:
    """Per-point drawdown from the running peak and the periods spent under it."""

    history: list[DrawdownPoint] = []
    periods: list[DrawdownPeriod] = []
    if not values:
        return history, periods

    current: DrawdownPeriod | None = None
    opened_at = 0
    for index, (day, depth) in enumerate(zip(dates, _drawdowns(values))):
        depth = float(depth)
        in_drawdown = depth > DRAWDOWN_THRESHOLD
        if current is not None and not in_drawdown:
            current.end_date = day
            current.duration_months = index - opened_at
            current.recovered = True
            current = None
        if in_drawdown:
            if current is None:
                current = DrawdownPeriod(start_date=day, depth=depth)
                opened_at = index
                periods.append(current)
            current.depth = max(current.depth, depth)
        history.append(DrawdownPoint(date=day, drawdown=depth, in_drawdown=in_drawdown))

    if current is not None:
        current.duration_months = len(history) - opened_at
    return history, periods


def value_holdings(replay: ReplayResult, price_book: PriceBook, day: date) -> list[HoldingValuation]:
    """Value the replay's open positions at the last price on or before ``day``."""

    priced: list[tuple[str, Any, Any]] = []
    for ticker, position in sorted(replay.open_positions().items()):
        quote = price_book.quote(ticker, day, allow_later=False)
        priced.append((ticker, position, quote))
    total = sum(
        (position.quantity * quote.price for _, position, quote in priced if quote is not None), ZERO
    )

    holdings: list[HoldingValuation] = []
    for ticker, position, quote in priced:
        market_value = position.quantity * quote.price if quote is not None else ZERO
        holdings.append(
            HoldingValuation(
                ticker=ticker,
                quantity=position.quantity,
                average_cost=position.average_cost,
                price=quote.price if quote is not None else None,
                price_date=quote.observed if quote is not None else None,
                market_value=market_value,
                weight=float(market_value / total) if total > 0 else None,
            )
        )
    return holdings


def annualized_volatility(returns: Sequence[float]) -> float | None:
    if len(returns) < 2:
        return None
    deviation = float(np.std(np.asarray(returns, dtype=float)))
    # Identical returns leave float noise instead of an exact zero.
    if np.isclose(deviation, 0.0, rtol=0.0, atol=VOLATILITY_EPSILON):
        return 0.0
    return deviation * float(np.sqrt(12.0))


def availability(start: date | None, values: dict[str, Any]) -> dict[str, MetricAvailability]:
    result: dict[str, MetricAvailability] = {}
    for name, required in REQUIRED_POINTS.items():
        available_from = month_end(add_months(start.replace(day=1), required - 1)) if start else None
        value = values.get(name)
        result[name] = MetricAvailability(
            available=value is not None and value != [],
            required_months=required,
            available_from=available_from,
        )
    return result


def compute_metrics(
    curve: Sequence[EquityPoint],
    flows: Sequence[CashFlow],
    *,
    risk_free_rate: float,
) -> PerformanceMetrics:
    months = len(curve)
    final_value = curve[-1].total_value if curve else ZERO
    last_date = curve[-1].date if curve else None
    invested = sum(
        (flow.amount for flow in flows if last_date is None or flow.date <= last_date), ZERO
    )

    total_return: float | None = None
    if invested > 0 and months >= REQUIRED_POINTS["total_return"]:
        total_return = float((final_value - invested) / invested)

    annualized: float | None = None
    if total_return is not None and months >= REQUIRED_POINTS["annualized_return"]:
        growth = 1.0 + total_return
        annualized = growth ** (12.0 / months) - 1.0 if growth > 0 else -1.0

    series = monthly_returns(curve, flows)
    values = [item.value for item in series]
    volatility = annualized_volatility(values)

    sharpe: float | None = None
    if annualized is not None and volatility is not None and volatility != 0:
        sharpe = (annualized - risk_free_rate) / volatility

    curve_values = [float(point.total_value) for point in curve]
    drawdown = max_drawdown(curve_values)
    history, periods = drawdown_analysis([point.date for point in curve], curve_values)
    recovered = [period.duration_months for period in periods if period.recovered]

    computed = {
        "total_return": total_return,
        "annualized_return": annualized,
        "volatility": volatility,
        "sharpe_ratio": sharpe,
        "max_drawdown": drawdown,
        "monthly_returns": values,
    }
    return PerformanceMetrics(
        total_invested=float(invested),
        final_value=float(final_value),
        total_return=total_return,
        annualized_return=annualized,
        volatility=volatility,
        sharpe_ratio=sharpe,
        max_drawdown=drawdown,
        monthly_returns=series,
        positive_months=sum(1 for value in values if value > 0),
        negative_months=sum(1 for value in values if value < 0),
        months_elapsed=months,
        availability=availability(curve[0].date if curve else None, computed),
        best_month=max(series, key=lambda item: item.value) if series else None,
        # A single month is only ever reported as the best one.
        worst_month=min(series, key=lambda item: item.value) if len(series) > 1 else None,
        average_monthly_return=float(np.mean(values)) if values else None,
        drawdown_history=history,
        drawdown_periods=periods,
        current_drawdown=history[-1].drawdown if history else None,
        average_recovery_months=float(np.mean(recovered)) if recovered else None,
    )


__all__ = [
    "CashFlow",
    "DrawdownPeriod",
    "DrawdownPoint",
    "EquityPoint",
    "HoldingValuation",
    "MetricAvailability",
    "MonthlyReturn",
    "PerformanceMetrics",
    "REQUIRED_POINTS",
    "add_months",
    "annualized_volatility",
    "build_equity_curve",
    "compute_metrics",
    "drawdown_analysis",
    "external_cash_flows",
    "max_drawdown",
    "month_end",
    "month_end_dates",
    "monthly_returns",
    "value_holdings",
]
