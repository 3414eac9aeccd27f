"""Market data HTTP client tests."""

from __future__ import annotations

from datetime import date
from decimal import Decimal

import httpx
import pytest

from carteira.config import AppSettings
from carteira.core.errors import MarketDataError
from carteira.providers import MarketDataClient


def _client(handler) -> MarketDataClient:
    settings = AppSettings(market_data_url="http://market.test/")
    return MarketDataClient(settings, transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_prices_are_parsed_sorted_and_cleaned():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json=[
                {"date": "2024-01-03", "close": 10.2},
                {"date": "2024-01-02", "close": "10.1"},
                {"date": "2024-01-04", "close": None},
            ],
        )

    points = await _client(handler).get_historical_prices("itsa4", date(2024, 1, 1), date(2024, 1, 31))

    assert [point.date for point in points] == [date(2024, 1, 2), date(2024, 1, 3)]
    assert points[0].close == Decimal("10.1")
    assert seen[0].url.path == "/prices/ITSA4"
    assert seen[0].url.params["start"] == "2024-01-01"


@pytest.mark.asyncio
async def test_dividends_default_to_ex_date_settlement():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=[{"ex_date": "2024-02-20", "amount": "0.35"}])

    [event] = await _client(handler).get_dividend_history("TAEE11", date(2024, 1, 1), date(2024, 12, 31))

    assert event.ticker == "TAEE11"
    assert event.amount_per_share == Decimal("0.35")
    assert event.settlement_date == date(2024, 2, 20)


@pytest.mark.asyncio
async def test_unknown_ticker_is_empty_and_server_errors_raise():
    def not_found(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"detail": "unknown"})

    def broken(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="maintenance")

    assert await _client(not_found).get_historical_prices("XXXX3", date(2024, 1, 1), date(2024, 1, 31)) == []
    with pytest.raises(MarketDataError):
        await _client(broken).get_historical_prices("ITSA4", date(2024, 1, 1), date(2024, 1, 31))
