"""Dividend suggestions from historical holdings and the dividend feed."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Mapping, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from carteira.config import AppSettings, get_settings
from carteira.core.errors import InvalidTransactionState
from carteira.models import LedgerTransaction, TransactionSource, TransactionStatus, TransactionType
from carteira.providers.base import DividendEvent, MarketDataProvider
from carteira.schemas.transactions import DividendDraft
from carteira.services.ledger import (
    ReplaySummary,
    dividend_key,
    get_portfolio,
    load_confirmed_entries,
    new_row,
    replay_portfolio,
    try_insert_row,
    utcnow,
)
from carteira.services.locks import locked_portfolio
from carteira.services.outbox import enqueue_portfolio_event
from carteira.services.reconstructor import ReplayResult, positions_as_of, replay

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DividendSuggestion:
    ticker: str
    date: date
    ex_date: date
    quantity: Decimal
    price: Decimal

    @property
    def amount(self) -> Decimal:
        return self.quantity * self.price

    @property
    def key(self) -> str:
        return dividend_key(self.ticker, self.date)

    def to_draft(self) -> DividendDraft:
        return DividendDraft(
            date=self.date,
            ticker=self.ticker,
            quantity=self.quantity,
            price=self.price,
            notes=f"Dividend with ex-date {self.ex_date.isoformat()}",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "ticker": self.ticker,
            "date": self.date,
            "ex_date": self.ex_date,
            "quantity": float(self.quantity),
            "price": float(self.price),
            "amount": float(self.amount),
        }


def suggest_dividends(
    replay_result: ReplayResult,
    dividend_history: Mapping[str, Sequence[DividendEvent]],
    existing_keys: Iterable[str],
    as_of: date,
) -> list[DividendSuggestion]:
    """Match each past dividend event against the quantity held at its ex-date.

    Holdings come from the historical replay, not from today's position, so
    a ticker sold before the ex-date earns nothing and one bought after it
    earns nothing either.
    """

    taken = set(existing_keys)
    suggestions: list[DividendSuggestion] = []
    for ticker in sorted(dividend_history):
        for event in sorted(dividend_history[ticker], key=lambda e: e.ex_date):
            if event.ex_date > as_of:
                continue
            quantity = positions_as_of(replay_result, event.ex_date).get(ticker, Decimal("0"))
            if quantity <= 0:
                continue
            suggestion = DividendSuggestion(
                ticker=ticker,
                date=event.settlement_date,
                ex_date=event.ex_date,
                quantity=quantity,
                price=event.amount_per_share,
            )
            if suggestion.key in taken:
                continue
            taken.add(suggestion.key)
            suggestions.append(suggestion)
    return suggestions


async def _existing_keys(session: AsyncSession, portfolio_id: int) -> set[str]:
    result = await session.execute(
        select(LedgerTransaction.dividend_key).where(
            LedgerTransaction.portfolio_id == portfolio_id,
            LedgerTransaction.dividend_key.is_not(None),
            LedgerTransaction.status.in_([TransactionStatus.PENDING, TransactionStatus.CONFIRMED]),
        )
    )
    return {key for key in result.scalars().all() if key}


async def _fetch_history(
    provider: MarketDataProvider,
    replay_result: ReplayResult,
    as_of: date,
) -> dict[str, list[DividendEvent]]:
    first_held: dict[str, date] = {}
    for entry in replay_result.entries:
        if entry.type == TransactionType.BUY and entry.ticker and entry.date <= as_of:
            first_held.setdefault(entry.ticker, entry.date)
    tickers = sorted(first_held)
    histories = await asyncio.gather(
        *(provider.get_dividend_history(ticker, first_held[ticker], as_of) for ticker in tickers)
    )
    return dict(zip(tickers, histories))


async def _compute_suggestions(
    session: AsyncSession,
    portfolio_id: int,
    provider: MarketDataProvider,
    as_of: date,
    settings: AppSettings,
) -> list[DividendSuggestion]:
    entries = await load_confirmed_entries(session, portfolio_id)
    replay_result = replay(entries, tolerance=settings.negative_balance_tolerance)
    history = await _fetch_history(provider, replay_result, as_of)
    existing = await _existing_keys(session, portfolio_id)
    return suggest_dividends(replay_result, history, existing, as_of)


async def preview_dividend_suggestions(
    session: AsyncSession,
    portfolio_id: int,
    provider: MarketDataProvider,
    as_of: date | None = None,
    *,
    owner_id: str | None = None,
    settings: AppSettings | None = None,
) -> list[DividendSuggestion]:
    await get_portfolio(session, portfolio_id, owner_id)
    return await _compute_suggestions(
        session, portfolio_id, provider, as_of or date.today(), settings or get_settings()
    )


async def generate_dividend_suggestions(
    session: AsyncSession,
    portfolio_id: int,
    provider: MarketDataProvider,
    as_of: date | None = None,
    *,
    owner_id: str | None = None,
    settings: AppSettings | None = None,
) -> tuple[list[LedgerTransaction], int]:
    """Persist new suggestions as PENDING rows; returns (created, skipped)."""

    settings = settings or get_settings()
    as_of = as_of or date.today()
    created: list[LedgerTransaction] = []
    skipped = 0
    async with locked_portfolio(session, portfolio_id, owner_id=owner_id) as portfolio:
        suggestions = await _compute_suggestions(session, portfolio.id, provider, as_of, settings)
        for suggestion in suggestions:
            row = new_row(
                portfolio, suggestion.to_draft(), source=TransactionSource.SUGGESTION, confirm=False
            )
            if await try_insert_row(session, row):
                created.append(row)
            else:
                skipped += 1
        if created:
            await enqueue_portfolio_event(
                session,
                "ledger.dividends.suggested",
                {
                    "portfolio_id": portfolio.id,
                    "transaction_ids": [row.id for row in created],
                    "as_of": as_of.isoformat(),
                },
            )
        await session.commit()
    for row in created:
        await session.refresh(row)
    logger.info(
        "Generated %s dividend suggestions for portfolio %s (%s skipped)",
        len(created),
        portfolio_id,
        skipped,
    )
    return created, skipped


async def confirm_dividend_suggestion(
    session: AsyncSession,
    portfolio_id: int,
    suggestion: DividendSuggestion | DividendDraft | Mapping[str, Any],
    *,
    owner_id: str | None = None,
    settings: AppSettings | None = None,
) -> tuple[LedgerTransaction, ReplaySummary]:
    """Confirm the matching PENDING row, or record the dividend directly as CONFIRMED."""

    if isinstance(suggestion, DividendSuggestion):
        draft = suggestion.to_draft()
    elif isinstance(suggestion, DividendDraft):
        draft = suggestion
    else:
        draft = DividendDraft.model_validate({**suggestion, "type": "DIVIDEND"})
    key = dividend_key(draft.ticker, draft.date)

    async with locked_portfolio(session, portfolio_id, owner_id=owner_id) as portfolio:
        result = await session.execute(
            select(LedgerTransaction)
            .where(
                LedgerTransaction.portfolio_id == portfolio.id,
                LedgerTransaction.dividend_key == key,
            )
            .execution_options(populate_existing=True)
        )
        row = result.scalars().first()
        if row is not None and row.status != TransactionStatus.PENDING:
            raise InvalidTransactionState(f"Dividend {key} is already confirmed")
        if row is None:
            row = new_row(portfolio, draft, source=TransactionSource.SUGGESTION, confirm=True)
            if not await try_insert_row(session, row):
                raise InvalidTransactionState(f"Dividend {key} is already recorded")
        else:
            for field_name, value in draft.ledger_fields().items():
                if field_name != "notes" or value:
                    setattr(row, field_name, value)
            row.status = TransactionStatus.CONFIRMED
            row.confirmed_at = utcnow()
            await session.flush()
        summary = await replay_portfolio(session, portfolio, settings=settings)
        await enqueue_portfolio_event(
            session,
            "ledger.dividend.confirmed",
            {"portfolio_id": portfolio.id, "transaction_id": row.id, "dividend_key": key},
        )
        await session.commit()
    await session.refresh(row)
    return row, summary


__all__ = [
    "DividendSuggestion",
    "confirm_dividend_suggestion",
    "generate_dividend_suggestions",
    "preview_dividend_suggestions",
    "suggest_dividends",
]
