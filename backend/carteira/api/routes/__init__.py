"""Router factories, one per resource."""

from .backtest import get_backtest_router
from .portfolios import get_portfolio_router

__all__ = ["get_backtest_router", "get_portfolio_router"]
