"""FastAPI application entrypoint."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI

from carteira import __version__
from carteira.api.routes import get_backtest_router, get_portfolio_router
from carteira.config import AppSettings, get_settings
from carteira.core.logging import setup_logging
from carteira.core.telemetry import setup_telemetry
from carteira.db.session import Database
from carteira.providers import MarketDataClient, MarketDataProvider

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI, db: Database, settings: AppSettings):
    setup_logging()
    logger.info("Carteira configuration", extra=settings.dict_for_logging())
    await db.create_all()
    setup_telemetry(app, settings, engine=db.engine)
    yield
    await db.dispose()


def create_app(
    database: Database | None = None,
    provider: MarketDataProvider | None = None,
    settings: AppSettings | None = None,
) -> FastAPI:
    settings = settings or get_settings()
    database_instance = database or Database(settings.database_url)
    market_data = provider or MarketDataClient(settings)

    app = FastAPI(
        title=settings.app_name,
        version=__version__,
        lifespan=lambda app: _lifespan(app, database_instance, settings),
    )
    app.include_router(get_portfolio_router(database_instance, market_data))
    app.include_router(get_backtest_router(database_instance, market_data))

    @app.get("/health", tags=["health"])
    async def health() -> dict[str, str]:
        return {
            "status": "ok",
            "timestamp": datetime.now().isoformat(),
            "timezone": settings.timezone,
        }

    return app


app = create_app()

__all__ = ["app", "create_app"]
