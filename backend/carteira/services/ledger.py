"""Ledger store: append, confirm, reject and replay portfolio transactions.

Every mutation runs inside :func:`locked_portfolio` and ends with a single
commit. Mutations that change the confirmed set replay the whole ledger
before committing, so stored balances, the ledger snapshot and the
portfolio's ``ledger_version`` always move together.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Sequence

from opentelemetry import trace
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from carteira.config import AppSettings, get_settings
from carteira.core.errors import InvalidTransactionState, NotFoundError
from carteira.core import telemetry
from carteira.models import (
    LedgerSnapshot,
    LedgerTransaction,
    Portfolio,
    TransactionSource,
    TransactionStatus,
    TransactionType,
)
from carteira.schemas.transactions import (
    BuyDraft,
    CashCreditDraft,
    TransactionDraft,
    parse_transaction_draft,
)
from carteira.services.locks import locked_portfolio
from carteira.services.outbox import enqueue_portfolio_event
from carteira.services.reconstructor import LedgerEntry, LedgerIssue, ReplayResult, replay

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass
class ReplaySummary:
    portfolio_id: int
    ledger_version: int
    transactions_replayed: int
    cash_balance: Decimal
    final_balance_alert: bool
    issues: list[LedgerIssue] = field(default_factory=list)
    remediation: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "portfolio_id": self.portfolio_id,
            "ledger_version": self.ledger_version,
            "transactions_replayed": self.transactions_replayed,
            "cash_balance": float(self.cash_balance),
            "final_balance_alert": self.final_balance_alert,
            "issues": [issue.to_dict() for issue in self.issues],
            "remediation": self.remediation,
        }


@dataclass
class TransactionFilters:
    statuses: Sequence[TransactionStatus] | None = None
    types: Sequence[TransactionType] | None = None
    ticker: str | None = None
    start_date: date | None = None
    end_date: date | None = None
    limit: int | None = None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def dividend_key(ticker: str, day: date) -> str:
    return f"{ticker.upper()}:{day.isoformat()}"


def to_entry(row: LedgerTransaction) -> LedgerEntry:
    return LedgerEntry(
        id=row.id,
        sequence=row.sequence,
        date=row.date,
        type=TransactionType(row.type),
        amount=Decimal(row.amount),
        ticker=row.ticker,
        quantity=Decimal(row.quantity) if row.quantity is not None else None,
        price=Decimal(row.price) if row.price is not None else None,
    )


async def create_portfolio(
    session: AsyncSession,
    owner_id: str,
    name: str,
    *,
    initial_cash: Decimal | None = None,
    initial_cash_date: date | None = None,
    settings: AppSettings | None = None,
) -> Portfolio:
    settings = settings or get_settings()
    normalized = name.strip()
    if not normalized:
        raise ValueError("Portfolio name must not be empty")
    portfolio = Portfolio(
        owner_id=owner_id,
        name=normalized,
        base_currency=settings.base_currency,
        next_sequence=1,
        ledger_version=0,
    )
    session.add(portfolio)
    await session.flush()
    await enqueue_portfolio_event(
        session, "portfolio.created", {"portfolio_id": portfolio.id, "owner_id": owner_id}
    )
    await session.commit()
    await session.refresh(portfolio)
    if initial_cash is not None:
        await append_transaction(
            session,
            portfolio.id,
            CashCreditDraft(date=initial_cash_date or date.today(), amount=initial_cash, notes="Initial cash"),
            confirm=True,
            source=TransactionSource.SYSTEM,
            settings=settings,
        )
        await session.refresh(portfolio)
    return portfolio


async def get_portfolio(session: AsyncSession, portfolio_id: int, owner_id: str | None = None) -> Portfolio:
    portfolio = await session.get(Portfolio, portfolio_id, populate_existing=True)
    if portfolio is None or (owner_id is not None and portfolio.owner_id != owner_id):
        raise NotFoundError(f"Portfolio {portfolio_id} not found")
    return portfolio


async def list_portfolios(session: AsyncSession, owner_id: str) -> list[Portfolio]:
    result = await session.execute(
        select(Portfolio).where(Portfolio.owner_id == owner_id).order_by(Portfolio.id)
    )
    return list(result.scalars().all())


async def load_confirmed_rows(session: AsyncSession, portfolio_id: int) -> list[LedgerTransaction]:
    result = await session.execute(
        select(LedgerTransaction)
        .where(
            LedgerTransaction.portfolio_id == portfolio_id,
            LedgerTransaction.status == TransactionStatus.CONFIRMED,
        )
        .order_by(LedgerTransaction.date, LedgerTransaction.sequence)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def load_confirmed_entries(session: AsyncSession, portfolio_id: int) -> list[LedgerEntry]:
    return [to_entry(row) for row in await load_confirmed_rows(session, portfolio_id)]


async def replay_portfolio(
    session: AsyncSession,
    portfolio: Portfolio,
    *,
    settings: AppSettings | None = None,
) -> ReplaySummary:
    """Rebuild every derived value of ``portfolio`` from its confirmed rows.

    Must run while the caller holds the portfolio lock. Nothing is
    committed here; the caller commits once the mutation is complete.
    """

    settings = settings or get_settings()
    with tracer.start_as_current_span("ledger.replay") as span:
        span.set_attribute("carteira.portfolio_id", portfolio.id)
        rows = await load_confirmed_rows(session, portfolio.id)
        result: ReplayResult = replay(
            [to_entry(row) for row in rows], tolerance=settings.negative_balance_tolerance
        )
        by_id = {row.id: row for row in rows}
        for step in result.steps:
            row = by_id[step.entry.id]
            row.cash_balance_before = step.cash_before
            row.cash_balance_after = step.cash_after
        await session.execute(
            update(LedgerTransaction)
            .where(
                LedgerTransaction.portfolio_id == portfolio.id,
                LedgerTransaction.status != TransactionStatus.CONFIRMED,
            )
            .values(cash_balance_before=None, cash_balance_after=None)
        )

        portfolio.ledger_version = (portfolio.ledger_version or 0) + 1
        snapshot = await session.get(LedgerSnapshot, portfolio.id)
        if snapshot is None:
            snapshot = LedgerSnapshot(portfolio_id=portfolio.id)
            session.add(snapshot)
        snapshot.ledger_version = portfolio.ledger_version
        snapshot.cash_balance = result.cash_balance
        snapshot.positions = {
            ticker: position.to_dict() for ticker, position in sorted(result.open_positions().items())
        }
        snapshot.issues = [issue.to_dict() for issue in result.issues]
        snapshot.final_balance_alert = result.final_balance_alert
        snapshot.transaction_count = len(result.steps)
        snapshot.computed_at = utcnow()
        span.set_attribute("carteira.ledger_version", portfolio.ledger_version)
        span.set_attribute("carteira.transactions", len(result.steps))
        telemetry.domain_metrics.record_replay(len(result.steps), result.final_balance_alert)

    summary = ReplaySummary(
        portfolio_id=portfolio.id,
        ledger_version=portfolio.ledger_version,
        transactions_replayed=len(result.steps),
        cash_balance=result.cash_balance,
        final_balance_alert=result.final_balance_alert,
        issues=list(result.issues),
        remediation=result.remediation(),
    )
    await enqueue_portfolio_event(
        session,
        "ledger.replayed",
        {
            "portfolio_id": portfolio.id,
            "ledger_version": portfolio.ledger_version,
            "cash_balance": str(result.cash_balance),
            "issues": len(result.issues),
        },
    )
    if result.final_balance_alert:
        logger.warning(
            "Portfolio %s final cash balance is negative: %s", portfolio.id, result.cash_balance
        )
        await enqueue_portfolio_event(
            session,
            "ledger.balance.negative",
            {
                "portfolio_id": portfolio.id,
                "ledger_version": portfolio.ledger_version,
                "cash_balance": str(result.cash_balance),
                "remediation": summary.remediation,
            },
        )
    return summary


def _apply_draft(row: LedgerTransaction, draft: TransactionDraft) -> None:
    for key, value in draft.ledger_fields().items():
        setattr(row, key, value)
    row.dividend_key = (
        dividend_key(row.ticker, row.date)
        if row.type == TransactionType.DIVIDEND and row.ticker
        else None
    )


async def try_insert_row(session: AsyncSession, row: LedgerTransaction) -> bool:
    """Insert ``row`` inside a savepoint; False when its dividend key is already taken."""

    # Pending portfolio changes stay outside the savepoint.
    await session.flush()
    try:
        async with session.begin_nested():
            session.add(row)
            await session.flush()
    except IntegrityError:
        return False
    return True


async def _insert_row(session: AsyncSession, row: LedgerTransaction) -> None:
    key = row.dividend_key
    if not await try_insert_row(session, row):
        raise InvalidTransactionState(f"A dividend for {key} is already recorded")


async def _get_row(session: AsyncSession, portfolio_id: int, transaction_id: int) -> LedgerTransaction:
    row = await session.get(LedgerTransaction, transaction_id, populate_existing=True)
    if row is None or row.portfolio_id != portfolio_id:
        raise NotFoundError(f"Transaction {transaction_id} not found in portfolio {portfolio_id}")
    return row


def _require_pending(row: LedgerTransaction, action: str) -> None:
    if row.status != TransactionStatus.PENDING:
        raise InvalidTransactionState(
            f"Cannot {action} transaction {row.id}: status is {TransactionStatus(row.status).value}"
        )


def new_row(
    portfolio: Portfolio,
    draft: TransactionDraft,
    *,
    source: TransactionSource,
    confirm: bool,
) -> LedgerTransaction:
    """Build a row for ``draft`` and reserve the next insertion sequence."""

    row = LedgerTransaction(
        portfolio_id=portfolio.id,
        sequence=portfolio.next_sequence,
        source=source,
        status=TransactionStatus.CONFIRMED if confirm else TransactionStatus.PENDING,
        confirmed_at=utcnow() if confirm else None,
    )
    portfolio.next_sequence += 1
    _apply_draft(row, draft)
    return row


async def append_transaction(
    session: AsyncSession,
    portfolio_id: int,
    draft: TransactionDraft | dict[str, Any],
    *,
    confirm: bool = False,
    source: TransactionSource = TransactionSource.MANUAL,
    owner_id: str | None = None,
    settings: AppSettings | None = None,
) -> LedgerTransaction:
    draft = parse_transaction_draft(draft)
    async with locked_portfolio(session, portfolio_id, owner_id=owner_id) as portfolio:
        row = new_row(portfolio, draft, source=source, confirm=confirm)
        await _insert_row(session, row)
        await enqueue_portfolio_event(
            session,
            "ledger.transaction.created",
            {
                "portfolio_id": portfolio.id,
                "transaction_id": row.id,
                "type": row.type.value,
                "status": row.status.value,
                "source": row.source.value,
            },
        )
        if confirm:
            await replay_portfolio(session, portfolio, settings=settings)
        await session.commit()
    await session.refresh(row)
    logger.info("Appended %s transaction %s to portfolio %s", row.type.value, row.id, portfolio_id)
    return row


async def create_with_cash_credit(
    session: AsyncSession,
    portfolio_id: int,
    draft: BuyDraft | dict[str, Any],
    *,
    owner_id: str | None = None,
    settings: AppSettings | None = None,
) -> tuple[LedgerTransaction, LedgerTransaction, ReplaySummary]:
    """Record a BUY together with the same-day cash credit that funds it."""

    buy = parse_transaction_draft(draft)
    if not isinstance(buy, BuyDraft):
        raise InvalidTransactionState("Only BUY transactions can be funded by a cash credit")
    credit_draft = CashCreditDraft(
        date=buy.date,
        amount=-buy.signed_amount(),
        notes=f"Cash credit funding {buy.ticker} purchase",
    )
    async with locked_portfolio(session, portfolio_id, owner_id=owner_id) as portfolio:
        credit = new_row(portfolio, credit_draft, source=TransactionSource.MANUAL, confirm=True)
        await _insert_row(session, credit)
        purchase = new_row(portfolio, buy, source=TransactionSource.MANUAL, confirm=True)
        await _insert_row(session, purchase)
        summary = await replay_portfolio(session, portfolio, settings=settings)
        await enqueue_portfolio_event(
            session,
            "ledger.transaction.created",
            {
                "portfolio_id": portfolio.id,
                "transaction_id": purchase.id,
                "funding_transaction_id": credit.id,
                "type": TransactionType.BUY.value,
                "status": TransactionStatus.CONFIRMED.value,
            },
        )
        await session.commit()
    await session.refresh(credit)
    await session.refresh(purchase)
    return credit, purchase, summary


async def update_transaction(
    session: AsyncSession,
    portfolio_id: int,
    transaction_id: int,
    draft: TransactionDraft | dict[str, Any],
    *,
    owner_id: str | None = None,
) -> LedgerTransaction:
    draft = parse_transaction_draft(draft)
    async with locked_portfolio(session, portfolio_id, owner_id=owner_id) as portfolio:
        row = await _get_row(session, portfolio.id, transaction_id)
        _require_pending(row, "edit")
        _apply_draft(row, draft)
        key = row.dividend_key
        try:
            await session.flush()
        except IntegrityError as exc:
            raise InvalidTransactionState(f"A dividend for {key} is already recorded") from exc
        await enqueue_portfolio_event(
            session,
            "ledger.transaction.updated",
            {"portfolio_id": portfolio.id, "transaction_id": row.id, "type": row.type.value},
        )
        await session.commit()
    await session.refresh(row)
    return row


async def delete_transaction(
    session: AsyncSession,
    portfolio_id: int,
    transaction_id: int,
    *,
    owner_id: str | None = None,
) -> None:
    async with locked_portfolio(session, portfolio_id, owner_id=owner_id) as portfolio:
        row = await _get_row(session, portfolio.id, transaction_id)
        _require_pending(row, "delete")
        await session.delete(row)
        await enqueue_portfolio_event(
            session,
            "ledger.transaction.deleted",
            {"portfolio_id": portfolio.id, "transaction_id": transaction_id},
        )
        await session.commit()


async def confirm_transaction(
    session: AsyncSession,
    portfolio_id: int,
    transaction_id: int,
    *,
    owner_id: str | None = None,
    settings: AppSettings | None = None,
) -> tuple[LedgerTransaction, ReplaySummary]:
    async with locked_portfolio(session, portfolio_id, owner_id=owner_id) as portfolio:
        row = await _get_row(session, portfolio.id, transaction_id)
        _require_pending(row, "confirm")
        row.status = TransactionStatus.CONFIRMED
        row.confirmed_at = utcnow()
        await session.flush()
        summary = await replay_portfolio(session, portfolio, settings=settings)
        await enqueue_portfolio_event(
            session,
            "ledger.transaction.confirmed",
            {"portfolio_id": portfolio.id, "transaction_id": row.id, "ledger_version": summary.ledger_version},
        )
        await session.commit()
    await session.refresh(row)
    return row, summary


async def reject_transaction(
    session: AsyncSession,
    portfolio_id: int,
    transaction_id: int,
    reason: str | None = None,
    *,
    owner_id: str | None = None,
) -> LedgerTransaction:
    async with locked_portfolio(session, portfolio_id, owner_id=owner_id) as portfolio:
        row = await _get_row(session, portfolio.id, transaction_id)
        _require_pending(row, "reject")
        row.status = TransactionStatus.REJECTED
        row.rejected_at = utcnow()
        row.rejection_reason = reason
        # Releases the dividend slot so the event can be suggested again.
        row.dividend_key = None
        await enqueue_portfolio_event(
            session,
            "ledger.transaction.rejected",
            {"portfolio_id": portfolio.id, "transaction_id": row.id, "reason": reason},
        )
        await session.commit()
    await session.refresh(row)
    return row


async def confirm_batch(
    session: AsyncSession,
    portfolio_id: int,
    transaction_ids: Sequence[int],
    *,
    owner_id: str | None = None,
    settings: AppSettings | None = None,
) -> tuple[list[LedgerTransaction], ReplaySummary]:
    """Confirm every id or none of them."""

    wanted = list(dict.fromkeys(transaction_ids))
    if not wanted:
        raise InvalidTransactionState("No transactions to confirm")
    async with locked_portfolio(session, portfolio_id, owner_id=owner_id) as portfolio:
        result = await session.execute(
            select(LedgerTransaction)
            .where(
                LedgerTransaction.portfolio_id == portfolio.id,
                LedgerTransaction.id.in_(wanted),
            )
            .execution_options(populate_existing=True)
        )
        rows = {row.id: row for row in result.scalars().all()}
        missing = [tx_id for tx_id in wanted if tx_id not in rows]
        if missing:
            raise NotFoundError(f"Transactions not found in portfolio {portfolio_id}: {missing}")
        for tx_id in wanted:
            _require_pending(rows[tx_id], "confirm")
        confirmed_at = utcnow()
        for tx_id in wanted:
            rows[tx_id].status = TransactionStatus.CONFIRMED
            rows[tx_id].confirmed_at = confirmed_at
        await session.flush()
        summary = await replay_portfolio(session, portfolio, settings=settings)
        await enqueue_portfolio_event(
            session,
            "ledger.transaction.batch_confirmed",
            {"portfolio_id": portfolio.id, "transaction_ids": wanted, "ledger_version": summary.ledger_version},
        )
        await session.commit()
    ordered = [rows[tx_id] for tx_id in wanted]
    for row in ordered:
        await session.refresh(row)
    return ordered, summary


async def recalculate_balances(
    session: AsyncSession,
    portfolio_id: int,
    *,
    owner_id: str | None = None,
    settings: AppSettings | None = None,
) -> ReplaySummary:
    async with locked_portfolio(session, portfolio_id, owner_id=owner_id) as portfolio:
        summary = await replay_portfolio(session, portfolio, settings=settings)
        await session.commit()
    logger.info(
        "Recalculated portfolio %s: %s transactions, cash %s",
        portfolio_id,
        summary.transactions_replayed,
        summary.cash_balance,
    )
    return summary


async def list_transactions(
    session: AsyncSession,
    portfolio_id: int,
    filters: TransactionFilters | None = None,
    *,
    owner_id: str | None = None,
) -> list[LedgerTransaction]:
    await get_portfolio(session, portfolio_id, owner_id)
    filters = filters or TransactionFilters()
    stmt = select(LedgerTransaction).where(LedgerTransaction.portfolio_id == portfolio_id)
    if filters.statuses:
        stmt = stmt.where(LedgerTransaction.status.in_(list(filters.statuses)))
    if filters.types:
        stmt = stmt.where(LedgerTransaction.type.in_(list(filters.types)))
    if filters.ticker:
        stmt = stmt.where(LedgerTransaction.ticker == filters.ticker.strip().upper())
    if filters.start_date:
        stmt = stmt.where(LedgerTransaction.date >= filters.start_date)
    if filters.end_date:
        stmt = stmt.where(LedgerTransaction.date <= filters.end_date)
    stmt = stmt.order_by(LedgerTransaction.date.desc(), LedgerTransaction.sequence.desc())
    if filters.limit:
        stmt = stmt.limit(filters.limit)
    result = await session.execute(stmt.execution_options(populate_existing=True))
    return list(result.scalars().all())


async def get_balances(
    session: AsyncSession,
    portfolio_id: int,
    *,
    owner_id: str | None = None,
) -> tuple[Portfolio, LedgerSnapshot | None]:
    portfolio = await get_portfolio(session, portfolio_id, owner_id)
    snapshot = await session.get(LedgerSnapshot, portfolio_id, populate_existing=True)
    return portfolio, snapshot


__all__ = [
    "ReplaySummary",
    "TransactionFilters",
    "append_transaction",
    "confirm_batch",
    "confirm_transaction",
    "create_portfolio",
    "create_with_cash_credit",
    "delete_transaction",
    "dividend_key",
    "get_balances",
    "get_portfolio",
    "list_portfolios",
    "list_transactions",
    "load_confirmed_entries",
    "load_confirmed_rows",
    "new_row",
    "recalculate_balances",
    "reject_transaction",
    "replay_portfolio",
    "to_entry",
    "try_insert_row",
    "update_transaction",
    "utcnow",
]
