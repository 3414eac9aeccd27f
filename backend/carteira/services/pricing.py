"""Point-in-time price lookups over sparse close series."""

from __future__ import annotations

from bisect import bisect_left, bisect_right
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterable, Mapping

from carteira.providers.base import PricePoint


@dataclass(frozen=True)
class PriceQuote:
    ticker: str
    requested: date
    observed: date
    price: Decimal
    stale: bool

    @property
    def days_off(self) -> int:
        return abs((self.requested - self.observed).days)

    def to_flag(self) -> dict[str, object]:
        return {
            "code": "PRICE_GAP",
            "ticker": self.ticker,
            "requested_date": self.requested.isoformat(),
            "observed_date": self.observed.isoformat(),
            "days_off": self.days_off,
        }


class PriceBook:
    """Holds one sorted close series per ticker.

    ``quote`` returns the last observation on or before the requested day.
    When none exists it falls back to the first later observation, unless
    ``allow_later`` is off; trades never use a later price. Either way the
    quote is marked stale once it is more than ``max_staleness_days`` away
    from the requested day.
    """

    def __init__(
        self,
        series: Mapping[str, Iterable[PricePoint]] | None = None,
        *,
        max_staleness_days: int = 7,
    ):
        self.max_staleness_days = max_staleness_days
        self._dates: dict[str, list[date]] = {}
        self._closes: dict[str, list[Decimal]] = {}
        for ticker, points in (series or {}).items():
            self.add(ticker, points)

    @classmethod
    def from_mapping(
        cls,
        prices: Mapping[str, Mapping[date, Decimal | str | float]],
        *,
        max_staleness_days: int = 7,
    ) -> "PriceBook":
        return cls(
            {
                ticker: [PricePoint(date=d, close=Decimal(str(v))) for d, v in series.items()]
                for ticker, series in prices.items()
            },
            max_staleness_days=max_staleness_days,
        )

    def add(self, ticker: str, points: Iterable[PricePoint]) -> None:
        ordered = sorted(points, key=lambda point: point.date)
        self._dates[ticker.upper()] = [point.date for point in ordered]
        self._closes[ticker.upper()] = [point.close for point in ordered]

    @property
    def tickers(self) -> list[str]:
        return sorted(self._dates)

    def has_data(self, ticker: str) -> bool:
        return bool(self._dates.get(ticker.upper()))

    def has_data_between(self, ticker: str, start: date, end: date) -> bool:
        dates = self._dates.get(ticker.upper(), [])
        index = bisect_left(dates, start)
        return index < len(dates) and dates[index] <= end

    def first_date(self, ticker: str) -> date | None:
        dates = self._dates.get(ticker.upper())
        return dates[0] if dates else None

    def quote(self, ticker: str, day: date, *, allow_later: bool = True) -> PriceQuote | None:
        key = ticker.upper()
        dates = self._dates.get(key)
        if not dates:
            return None
        index = bisect_right(dates, day) - 1
        if index < 0:
            if not allow_later:
                return None
            index = 0
        observed = dates[index]
        return PriceQuote(
            ticker=key,
            requested=day,
            observed=observed,
            price=self._closes[key][index],
            stale=abs((day - observed).days) > self.max_staleness_days,
        )

    def price(self, ticker: str, day: date) -> Decimal | None:
        quote = self.quote(ticker, day)
        return quote.price if quote else None

    def coverage(self, ticker: str) -> dict[str, object]:
        dates = self._dates.get(ticker.upper(), [])
        return {
            "ticker": ticker.upper(),
            "first_date": dates[0].isoformat() if dates else None,
            "last_date": dates[-1].isoformat() if dates else None,
            "observations": len(dates),
        }


__all__ = ["PriceBook", "PriceQuote"]
