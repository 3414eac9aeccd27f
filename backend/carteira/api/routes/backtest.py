"""Backtest configuration, execution and result history endpoints."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from carteira.api.dependencies import (
    DOMAIN_ERRORS,
    InternalAuth,
    RequestContext,
    get_request_context,
    to_http_exception,
)
from carteira.db.session import Database
from carteira.providers.base import MarketDataProvider
from carteira.schemas import BacktestConfigCreate, BacktestConfigSchema, BacktestResultSchema
from carteira.services import backtest as backtest_service


def get_backtest_router(database: Database, provider: MarketDataProvider) -> APIRouter:
    router = APIRouter(prefix="/backtest", tags=["backtest"], dependencies=[InternalAuth])

    @router.post("/configs", response_model=BacktestConfigSchema, status_code=status.HTTP_201_CREATED)
    async def create_config(
        payload: BacktestConfigCreate,
        session: AsyncSession = Depends(database.get_session),
        context: RequestContext = Depends(get_request_context),
    ) -> BacktestConfigSchema:
        config = await backtest_service.create_backtest_config(session, context.user_id, payload)
        return BacktestConfigSchema.model_validate(config)

    @router.get("/configs", response_model=list[BacktestConfigSchema])
    async def list_configs(
        session: AsyncSession = Depends(database.get_session),
        context: RequestContext = Depends(get_request_context),
    ) -> list[BacktestConfigSchema]:
        configs = await backtest_service.list_backtest_configs(session, context.user_id)
        return [BacktestConfigSchema.model_validate(config) for config in configs]

    @router.get("/configs/{config_id}", response_model=BacktestConfigSchema)
    async def get_config(
        config_id: int,
        session: AsyncSession = Depends(database.get_session),
        context: RequestContext = Depends(get_request_context),
    ) -> BacktestConfigSchema:
        try:
            config = await backtest_service.get_backtest_config(session, config_id, context.user_id)
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc
        return BacktestConfigSchema.model_validate(config)

    @router.put("/configs/{config_id}", response_model=BacktestConfigSchema)
    async def update_config(
        config_id: int,
        payload: BacktestConfigCreate,
        session: AsyncSession = Depends(database.get_session),
        context: RequestContext = Depends(get_request_context),
    ) -> BacktestConfigSchema:
        try:
            config = await backtest_service.update_backtest_config(session, config_id, context.user_id, payload)
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc
        return BacktestConfigSchema.model_validate(config)

    @router.post("/configs/{config_id}/run", response_model=BacktestResultSchema, status_code=status.HTTP_201_CREATED)
    async def run_config(
        config_id: int,
        session: AsyncSession = Depends(database.get_session),
        context: RequestContext = Depends(get_request_context),
    ) -> BacktestResultSchema:
        try:
            record = await backtest_service.run_backtest(session, config_id, provider, owner_id=context.user_id)
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc
        return BacktestResultSchema(**backtest_service.result_to_dict(record))

    @router.get("/configs/{config_id}/results", response_model=list[BacktestResultSchema])
    async def list_results(
        config_id: int,
        session: AsyncSession = Depends(database.get_session),
        context: RequestContext = Depends(get_request_context),
    ) -> list[BacktestResultSchema]:
        try:
            records = await backtest_service.list_backtest_results(session, config_id, context.user_id)
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc
        return [BacktestResultSchema(**backtest_service.result_to_dict(record)) for record in records]

    @router.post("/run")
    async def run_preview(
        payload: BacktestConfigCreate,
        context: RequestContext = Depends(get_request_context),
    ) -> dict[str, Any]:
        """Simulate an unsaved configuration without touching the result history."""

        params = backtest_service.BacktestParameters.from_config(payload)
        try:
            outcome = await backtest_service.run_simulation(params, provider)
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc
        return outcome.to_dict()

    return router


__all__ = ["get_backtest_router"]
