"""Market data providers."""

from .base import DividendEvent, InMemoryMarketDataProvider, MarketDataProvider, PricePoint
from .http import MarketDataClient

__all__ = [
    "DividendEvent",
    "InMemoryMarketDataProvider",
    "MarketDataClient",
    "MarketDataProvider",
    "PricePoint",
]
