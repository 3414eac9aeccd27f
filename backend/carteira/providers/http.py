"""HTTP client for the market data service."""

from __future__ import annotations

import logging
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any

import httpx
from opentelemetry.propagate import inject

from carteira.config import AppSettings, get_settings
from carteira.core.errors import MarketDataError
from carteira.providers.base import DividendEvent, PricePoint

logger = logging.getLogger(__name__)


class MarketDataClient:
    """Fetch closes and dividends as JSON over HTTP.

    Expected payloads::

        GET /prices/{ticker}?start=..&end=..     -> [{"date": "2024-01-02", "close": 10.5}, ...]
        GET /dividends/{ticker}?start=..&end=..  -> [{"ex_date": ..., "payment_date": ..., "amount": ...}]
    """

    def __init__(
        self,
        settings: AppSettings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._settings = settings or get_settings()
        self._transport = transport

    async def _get(self, path: str, params: dict[str, str]) -> Any:
        base_url = self._settings.market_data_url.rstrip("/")
        url = f"{base_url}{path}"
        headers: dict[str, str] = {}
        # Downstream spans join the caller's trace.
        inject(headers)
        async with httpx.AsyncClient(
            timeout=self._settings.market_data_timeout_seconds, transport=self._transport
        ) as client:
            response = await client.get(url, params=params, headers=headers)
        if response.status_code == 404:
            return []
        if response.status_code >= 400:
            logger.warning("Market data error %s for %s", response.status_code, url)
            raise MarketDataError(f"Market data service error {response.status_code}: {response.text}")
        return response.json()

    async def get_historical_prices(self, ticker: str, start: date, end: date) -> list[PricePoint]:
        rows = await self._get(
            f"/prices/{ticker.upper()}", {"start": start.isoformat(), "end": end.isoformat()}
        )
        points: list[PricePoint] = []
        for row in rows:
            close = _decimal(row.get("close"))
            if close is None or close <= 0:
                continue
            points.append(PricePoint(date=date.fromisoformat(row["date"]), close=close))
        points.sort(key=lambda point: point.date)
        return points

    async def get_dividend_history(self, ticker: str, start: date, end: date) -> list[DividendEvent]:
        rows = await self._get(
            f"/dividends/{ticker.upper()}", {"start": start.isoformat(), "end": end.isoformat()}
        )
        events: list[DividendEvent] = []
        for row in rows:
            amount = _decimal(row.get("amount"))
            if amount is None or amount <= 0:
                continue
            payment = row.get("payment_date")
            events.append(
                DividendEvent(
                    ticker=ticker.upper(),
                    ex_date=date.fromisoformat(row["ex_date"]),
                    payment_date=date.fromisoformat(payment) if payment else None,
                    amount_per_share=amount,
                )
            )
        events.sort(key=lambda event: event.ex_date)
        return events


def _decimal(value: Any) -> Decimal | None:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


__all__ = ["MarketDataClient"]
