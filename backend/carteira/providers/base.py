"""Market data provider contract and an in-memory implementation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Mapping, Protocol


@dataclass(frozen=True)
class PricePoint:
    date: date
    close: Decimal


@dataclass(frozen=True)
class DividendEvent:
    ticker: str
    ex_date: date
    amount_per_share: Decimal
    payment_date: date | None = None

    @property
    def settlement_date(self) -> date:
        return self.payment_date or self.ex_date


class MarketDataProvider(Protocol):
    """Read-only source of historical closes and dividend events.

    Gaps are returned as they are; implementations never interpolate.
    """

    async def get_historical_prices(self, ticker: str, start: date, end: date) -> list[PricePoint]:
        ...

    async def get_dividend_history(self, ticker: str, start: date, end: date) -> list[DividendEvent]:
        ...


class InMemoryMarketDataProvider:
    """Provider backed by dictionaries; used by tests and offline backtests."""

    def __init__(
        self,
        prices: Mapping[str, Mapping[date, Decimal | str | float]] | None = None,
        dividends: Mapping[str, Iterable[DividendEvent]] | None = None,
    ):
        self._prices: dict[str, dict[date, Decimal]] = {}
        for ticker, series in (prices or {}).items():
            self._prices[ticker.upper()] = {d: Decimal(str(v)) for d, v in series.items()}
        self._dividends: dict[str, list[DividendEvent]] = {
            ticker.upper(): sorted(events, key=lambda e: e.ex_date)
            for ticker, events in (dividends or {}).items()
        }
        self.price_requests: list[tuple[str, date, date]] = []

    async def get_historical_prices(self, ticker: str, start: date, end: date) -> list[PricePoint]:
        self.price_requests.append((ticker, start, end))
        series = self._prices.get(ticker.upper(), {})
        return [
            PricePoint(date=d, close=series[d]) for d in sorted(series) if start <= d <= end
        ]

    async def get_dividend_history(self, ticker: str, start: date, end: date) -> list[DividendEvent]:
        return [e for e in self._dividends.get(ticker.upper(), []) if start <= e.ex_date <= end]


__all__ = ["DividendEvent", "InMemoryMarketDataProvider", "MarketDataProvider", "PricePoint"]
