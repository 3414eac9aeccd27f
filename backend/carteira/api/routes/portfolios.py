"""Portfolio ledger, balances, dividend suggestions and metrics endpoints."""

from __future__ import annotations

from datetime import date
from typing import Any, Literal

from fastapi import APIRouter, Body, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from carteira.api.dependencies import (
    DOMAIN_ERRORS,
    InternalAuth,
    RequestContext,
    get_request_context,
    to_http_exception,
)
from carteira.db.session import Database
from carteira.models import LedgerSnapshot, Portfolio, TransactionSource, TransactionStatus, TransactionType
from carteira.providers.base import MarketDataProvider
from carteira.schemas import (
    BalancesSchema,
    BatchConfirmResponse,
    BuyWithCashCreditRequest,
    ConfirmBatchRequest,
    DividendConfirmRequest,
    DividendSuggestionSchema,
    FundedPurchaseResponse,
    GenerateSuggestionsResponse,
    PortfolioCreateRequest,
    PortfolioMetricsSchema,
    PortfolioSchema,
    PositionSchema,
    RejectRequest,
    ReplaySummarySchema,
    TransactionConfirmResponse,
    TransactionSchema,
)
from carteira.services import analytics, dividends, ledger

# SUGGESTION and SYSTEM rows are only written by the service itself.
ClientSource = Literal["MANUAL", "AI"]


def _balances(portfolio: Portfolio, snapshot: LedgerSnapshot | None) -> BalancesSchema:
    if snapshot is None:
        return BalancesSchema(
            portfolio_id=portfolio.id,
            ledger_version=portfolio.ledger_version,
            cash_balance=0.0,
            positions=[],
            final_balance_alert=False,
        )
    return BalancesSchema(
        portfolio_id=portfolio.id,
        ledger_version=snapshot.ledger_version,
        cash_balance=float(snapshot.cash_balance),
        positions=[PositionSchema(ticker=ticker, **values) for ticker, values in snapshot.positions.items()],
        issues=snapshot.issues,
        final_balance_alert=snapshot.final_balance_alert,
        computed_at=snapshot.computed_at,
    )


def get_portfolio_router(database: Database, provider: MarketDataProvider) -> APIRouter:
    router = APIRouter(prefix="/portfolios", tags=["portfolios"], dependencies=[InternalAuth])

    @router.post("", response_model=PortfolioSchema, status_code=status.HTTP_201_CREATED)
    async def create_portfolio(
        payload: PortfolioCreateRequest,
        session: AsyncSession = Depends(database.get_session),
        context: RequestContext = Depends(get_request_context),
    ) -> PortfolioSchema:
        try:
            portfolio = await ledger.create_portfolio(
                session,
                context.user_id,
                payload.name,
                initial_cash=payload.initial_cash,
                initial_cash_date=payload.initial_cash_date,
            )
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc
        return PortfolioSchema.model_validate(portfolio)

    @router.get("", response_model=list[PortfolioSchema])
    async def list_portfolios(
        session: AsyncSession = Depends(database.get_session),
        context: RequestContext = Depends(get_request_context),
    ) -> list[PortfolioSchema]:
        portfolios = await ledger.list_portfolios(session, context.user_id)
        return [PortfolioSchema.model_validate(item) for item in portfolios]

    @router.get("/{portfolio_id}", response_model=PortfolioSchema)
    async def get_portfolio(
        portfolio_id: int,
        session: AsyncSession = Depends(database.get_session),
        context: RequestContext = Depends(get_request_context),
    ) -> PortfolioSchema:
        try:
            portfolio = await ledger.get_portfolio(session, portfolio_id, context.user_id)
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc
        return PortfolioSchema.model_validate(portfolio)

    @router.get("/{portfolio_id}/transactions", response_model=list[TransactionSchema])
    async def list_transactions(
        portfolio_id: int,
        status_filter: list[TransactionStatus] | None = Query(default=None, alias="status"),
        type_filter: list[TransactionType] | None = Query(default=None, alias="type"),
        ticker: str | None = None,
        start_date: date | None = None,
        end_date: date | None = None,
        limit: int | None = Query(default=None, ge=1, le=1000),
        session: AsyncSession = Depends(database.get_session),
        context: RequestContext = Depends(get_request_context),
    ) -> list[TransactionSchema]:
        filters = ledger.TransactionFilters(
            statuses=status_filter,
            types=type_filter,
            ticker=ticker,
            start_date=start_date,
            end_date=end_date,
            limit=limit,
        )
        try:
            rows = await ledger.list_transactions(session, portfolio_id, filters, owner_id=context.user_id)
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc
        return [TransactionSchema.model_validate(row) for row in rows]

    @router.post(
        "/{portfolio_id}/transactions",
        response_model=TransactionSchema,
        status_code=status.HTTP_201_CREATED,
    )
    async def create_transaction(
        portfolio_id: int,
        payload: dict[str, Any] = Body(...),
        confirm: bool = False,
        source: ClientSource = "MANUAL",
        session: AsyncSession = Depends(database.get_session),
        context: RequestContext = Depends(get_request_context),
    ) -> TransactionSchema:
        try:
            row = await ledger.append_transaction(
                session,
                portfolio_id,
                payload,
                confirm=confirm,
                source=TransactionSource(source),
                owner_id=context.user_id,
            )
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc
        return TransactionSchema.model_validate(row)

    @router.post(
        "/{portfolio_id}/transactions/funded",
        response_model=FundedPurchaseResponse,
        status_code=status.HTTP_201_CREATED,
    )
    async def create_funded_purchase(
        portfolio_id: int,
        payload: BuyWithCashCreditRequest,
        session: AsyncSession = Depends(database.get_session),
        context: RequestContext = Depends(get_request_context),
    ) -> FundedPurchaseResponse:
        try:
            credit, purchase, summary = await ledger.create_with_cash_credit(
                session,
                portfolio_id,
                {**payload.model_dump(), "type": TransactionType.BUY.value},
                owner_id=context.user_id,
            )
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc
        return FundedPurchaseResponse(
            cash_credit=TransactionSchema.model_validate(credit),
            purchase=TransactionSchema.model_validate(purchase),
            summary=ReplaySummarySchema(**summary.to_dict()),
        )

    @router.post("/{portfolio_id}/transactions/confirm-batch", response_model=BatchConfirmResponse)
    async def confirm_batch(
        portfolio_id: int,
        payload: ConfirmBatchRequest,
        session: AsyncSession = Depends(database.get_session),
        context: RequestContext = Depends(get_request_context),
    ) -> BatchConfirmResponse:
        try:
            rows, summary = await ledger.confirm_batch(
                session, portfolio_id, payload.transaction_ids, owner_id=context.user_id
            )
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc
        return BatchConfirmResponse(
            transactions=[TransactionSchema.model_validate(row) for row in rows],
            summary=ReplaySummarySchema(**summary.to_dict()),
        )

    @router.put("/{portfolio_id}/transactions/{transaction_id}", response_model=TransactionSchema)
    async def update_transaction(
        portfolio_id: int,
        transaction_id: int,
        payload: dict[str, Any] = Body(...),
        session: AsyncSession = Depends(database.get_session),
        context: RequestContext = Depends(get_request_context),
    ) -> TransactionSchema:
        try:
            row = await ledger.update_transaction(
                session, portfolio_id, transaction_id, payload, owner_id=context.user_id
            )
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc
        return TransactionSchema.model_validate(row)

    @router.delete("/{portfolio_id}/transactions/{transaction_id}", status_code=status.HTTP_204_NO_CONTENT)
    async def delete_transaction(
        portfolio_id: int,
        transaction_id: int,
        session: AsyncSession = Depends(database.get_session),
        context: RequestContext = Depends(get_request_context),
    ) -> Response:
        try:
            await ledger.delete_transaction(session, portfolio_id, transaction_id, owner_id=context.user_id)
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @router.post(
        "/{portfolio_id}/transactions/{transaction_id}/confirm",
        response_model=TransactionConfirmResponse,
    )
    async def confirm_transaction(
        portfolio_id: int,
        transaction_id: int,
        session: AsyncSession = Depends(database.get_session),
        context: RequestContext = Depends(get_request_context),
    ) -> TransactionConfirmResponse:
        try:
            row, summary = await ledger.confirm_transaction(
                session, portfolio_id, transaction_id, owner_id=context.user_id
            )
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc
        return TransactionConfirmResponse(
            transaction=TransactionSchema.model_validate(row),
            summary=ReplaySummarySchema(**summary.to_dict()),
        )

    @router.post("/{portfolio_id}/transactions/{transaction_id}/reject", response_model=TransactionSchema)
    async def reject_transaction(
        portfolio_id: int,
        transaction_id: int,
        payload: RejectRequest | None = None,
        session: AsyncSession = Depends(database.get_session),
        context: RequestContext = Depends(get_request_context),
    ) -> TransactionSchema:
        reason = payload.reason if payload else None
        try:
            row = await ledger.reject_transaction(
                session, portfolio_id, transaction_id, reason, owner_id=context.user_id
            )
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc
        return TransactionSchema.model_validate(row)

    @router.get("/{portfolio_id}/balances", response_model=BalancesSchema)
    async def get_balances(
        portfolio_id: int,
        session: AsyncSession = Depends(database.get_session),
        context: RequestContext = Depends(get_request_context),
    ) -> BalancesSchema:
        try:
            portfolio, snapshot = await ledger.get_balances(session, portfolio_id, owner_id=context.user_id)
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc
        return _balances(portfolio, snapshot)

    @router.post("/{portfolio_id}/balances/recalculate", response_model=ReplaySummarySchema)
    async def recalculate_balances(
        portfolio_id: int,
        session: AsyncSession = Depends(database.get_session),
        context: RequestContext = Depends(get_request_context),
    ) -> ReplaySummarySchema:
        try:
            summary = await ledger.recalculate_balances(session, portfolio_id, owner_id=context.user_id)
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc
        return ReplaySummarySchema(**summary.to_dict())

    @router.get("/{portfolio_id}/dividend-suggestions", response_model=list[DividendSuggestionSchema])
    async def preview_dividend_suggestions(
        portfolio_id: int,
        as_of: date | None = None,
        session: AsyncSession = Depends(database.get_session),
        context: RequestContext = Depends(get_request_context),
    ) -> list[DividendSuggestionSchema]:
        try:
            suggestions = await dividends.preview_dividend_suggestions(
                session, portfolio_id, provider, as_of, owner_id=context.user_id
            )
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc
        return [DividendSuggestionSchema(**item.to_dict()) for item in suggestions]

    @router.post(
        "/{portfolio_id}/dividend-suggestions",
        response_model=GenerateSuggestionsResponse,
        status_code=status.HTTP_201_CREATED,
    )
    async def generate_dividend_suggestions(
        portfolio_id: int,
        as_of: date | None = None,
        session: AsyncSession = Depends(database.get_session),
        context: RequestContext = Depends(get_request_context),
    ) -> GenerateSuggestionsResponse:
        try:
            created, skipped = await dividends.generate_dividend_suggestions(
                session, portfolio_id, provider, as_of, owner_id=context.user_id
            )
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc
        return GenerateSuggestionsResponse(
            created=[TransactionSchema.model_validate(row) for row in created],
            skipped=skipped,
        )

    @router.post("/{portfolio_id}/dividend-suggestions/confirm", response_model=TransactionConfirmResponse)
    async def confirm_dividend_suggestion(
        portfolio_id: int,
        payload: DividendConfirmRequest,
        session: AsyncSession = Depends(database.get_session),
        context: RequestContext = Depends(get_request_context),
    ) -> TransactionConfirmResponse:
        try:
            row, summary = await dividends.confirm_dividend_suggestion(
                session, portfolio_id, payload.model_dump(), owner_id=context.user_id
            )
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc
        return TransactionConfirmResponse(
            transaction=TransactionSchema.model_validate(row),
            summary=ReplaySummarySchema(**summary.to_dict()),
        )

    @router.get("/{portfolio_id}/metrics", response_model=PortfolioMetricsSchema)
    async def get_metrics(
        portfolio_id: int,
        as_of: date | None = None,
        session: AsyncSession = Depends(database.get_session),
        context: RequestContext = Depends(get_request_context),
    ) -> PortfolioMetricsSchema:
        try:
            payload = await analytics.get_portfolio_metrics(
                session, portfolio_id, provider, as_of, owner_id=context.user_id
            )
        except DOMAIN_ERRORS as exc:
            raise to_http_exception(exc) from exc
        return PortfolioMetricsSchema(**payload)

    return router


__all__ = ["get_portfolio_router"]
