"""Ledger store tests against a throwaway SQLite database."""

from __future__ import annotations

import asyncio
from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import select

from carteira.core.errors import InvalidTransactionState, NotFoundError, TransactionValidationError
from carteira.models import LedgerTransaction, PortfolioOutbox, TransactionSource, TransactionStatus
from carteira.providers import InMemoryMarketDataProvider
from carteira.services import analytics, ledger

BUY_ITSA4 = {"type": "BUY", "date": "2024-01-10", "ticker": "ITSA4", "quantity": "100", "price": "9.75"}


async def _portfolio(session, cash: str = "1000", day: date = date(2024, 1, 2)):
    return await ledger.create_portfolio(
        session, "user-1", "Principal", initial_cash=Decimal(cash), initial_cash_date=day
    )


@pytest.mark.asyncio
async def test_initial_cash_is_a_confirmed_system_credit(database):
    async with database.session() as session:
        portfolio = await _portfolio(session)
        rows = await ledger.list_transactions(session, portfolio.id)
        _, snapshot = await ledger.get_balances(session, portfolio.id)

    assert len(rows) == 1
    assert rows[0].status == TransactionStatus.CONFIRMED
    assert rows[0].source == TransactionSource.SYSTEM
    assert rows[0].cash_balance_after == Decimal("1000")
    assert snapshot.cash_balance == Decimal("1000")
    assert portfolio.ledger_version == 1


@pytest.mark.asyncio
async def test_pending_rows_stay_out_of_balances_until_confirmed(database):
    async with database.session() as session:
        portfolio = await _portfolio(session)
        pending = await ledger.append_transaction(session, portfolio.id, BUY_ITSA4, owner_id="user-1")

        assert pending.status == TransactionStatus.PENDING
        assert pending.cash_balance_after is None
        _, snapshot = await ledger.get_balances(session, portfolio.id)
        assert snapshot.cash_balance == Decimal("1000")

        row, summary = await ledger.confirm_transaction(session, portfolio.id, pending.id, owner_id="user-1")

    assert row.status == TransactionStatus.CONFIRMED
    assert row.cash_balance_before == Decimal("1000")
    assert row.cash_balance_after == Decimal("25")
    assert summary.cash_balance == Decimal("25")
    assert summary.ledger_version == 2
    assert not summary.final_balance_alert


@pytest.mark.asyncio
async def test_confirmed_rows_are_immutable(database):
    async with database.session() as session:
        portfolio = await _portfolio(session)
        row = await ledger.append_transaction(session, portfolio.id, BUY_ITSA4, confirm=True)

        with pytest.raises(InvalidTransactionState):
            await ledger.update_transaction(session, portfolio.id, row.id, {**BUY_ITSA4, "quantity": "1"})
        with pytest.raises(InvalidTransactionState):
            await ledger.delete_transaction(session, portfolio.id, row.id)
        with pytest.raises(InvalidTransactionState):
            await ledger.reject_transaction(session, portfolio.id, row.id, "typo")
        with pytest.raises(InvalidTransactionState):
            await ledger.confirm_transaction(session, portfolio.id, row.id)


@pytest.mark.asyncio
async def test_pending_rows_can_be_edited_and_deleted(database):
    async with database.session() as session:
        portfolio = await _portfolio(session)
        row = await ledger.append_transaction(session, portfolio.id, BUY_ITSA4)

        updated = await ledger.update_transaction(
            session, portfolio.id, row.id, {**BUY_ITSA4, "quantity": "50"}
        )
        assert updated.quantity == Decimal("50")
        assert updated.amount == Decimal("-487.5")

        await ledger.delete_transaction(session, portfolio.id, row.id)
        remaining = await ledger.list_transactions(session, portfolio.id)

    assert all(item.id != row.id for item in remaining)


@pytest.mark.asyncio
async def test_rejected_rows_record_reason(database):
    async with database.session() as session:
        portfolio = await _portfolio(session)
        row = await ledger.append_transaction(session, portfolio.id, BUY_ITSA4, source=TransactionSource.AI)
        rejected = await ledger.reject_transaction(session, portfolio.id, row.id, "wrong ticker")

        with pytest.raises(InvalidTransactionState):
            await ledger.confirm_transaction(session, portfolio.id, row.id)

    assert rejected.status == TransactionStatus.REJECTED
    assert rejected.rejection_reason == "wrong ticker"
    assert rejected.rejected_at is not None


@pytest.mark.asyncio
async def test_invalid_draft_never_reaches_the_ledger(database):
    async with database.session() as session:
        portfolio = await _portfolio(session)
        with pytest.raises(TransactionValidationError):
            await ledger.append_transaction(
                session, portfolio.id, {"type": "BUY", "date": "2024-01-10", "ticker": "ITSA4", "quantity": "-1"}
            )
        rows = await ledger.list_transactions(session, portfolio.id)

    assert len(rows) == 1


@pytest.mark.asyncio
async def test_batch_confirm_is_all_or_nothing(database):
    async with database.session() as session:
        portfolio = await _portfolio(session)
        first = await ledger.append_transaction(session, portfolio.id, BUY_ITSA4)
        second = await ledger.append_transaction(
            session, portfolio.id, {"type": "CASH_CREDIT", "date": "2024-01-11", "amount": "200"}
        )
        rejected = await ledger.append_transaction(
            session, portfolio.id, {"type": "CASH_DEBIT", "date": "2024-01-12", "amount": "50"}
        )
        await ledger.reject_transaction(session, portfolio.id, rejected.id)

        with pytest.raises(InvalidTransactionState):
            await ledger.confirm_batch(session, portfolio.id, [first.id, second.id, rejected.id])
        with pytest.raises(NotFoundError):
            await ledger.confirm_batch(session, portfolio.id, [first.id, 9999])

        statuses = {
            row.id: row.status
            for row in await ledger.list_transactions(
                session, portfolio.id, ledger.TransactionFilters(statuses=[TransactionStatus.PENDING])
            )
        }
        assert statuses == {first.id: TransactionStatus.PENDING, second.id: TransactionStatus.PENDING}

        rows, summary = await ledger.confirm_batch(session, portfolio.id, [second.id, first.id])

    assert [row.id for row in rows] == [second.id, first.id]
    assert summary.cash_balance == Decimal("225")
    assert summary.transactions_replayed == 3


@pytest.mark.asyncio
async def test_negative_final_balance_raises_alert_with_remediation(database):
    async with database.session() as session:
        portfolio = await _portfolio(session, cash="500")
        await ledger.append_transaction(session, portfolio.id, BUY_ITSA4, confirm=True)
        summary = await ledger.recalculate_balances(session, portfolio.id)
        _, snapshot = await ledger.get_balances(session, portfolio.id)
        events = (
            await session.execute(
                select(PortfolioOutbox.event_type).where(PortfolioOutbox.event_type == "ledger.balance.negative")
            )
        ).scalars().all()

    assert summary.final_balance_alert
    assert summary.cash_balance == Decimal("-475")
    assert summary.remediation[0]["action"] == "ADD_CASH_CREDIT"
    assert Decimal(summary.remediation[0]["amount"]) == Decimal("475")
    assert snapshot.final_balance_alert
    assert events


@pytest.mark.asyncio
async def test_funded_purchase_records_credit_then_buy(database):
    async with database.session() as session:
        portfolio = await _portfolio(session, cash="0.01")
        credit, purchase, summary = await ledger.create_with_cash_credit(session, portfolio.id, BUY_ITSA4)

    assert credit.amount == Decimal("975")
    assert credit.sequence < purchase.sequence
    assert purchase.cash_balance_before == Decimal("975.01")
    assert summary.cash_balance == Decimal("0.01")


@pytest.mark.asyncio
async def test_replay_is_stable_across_recalculations(database):
    async with database.session() as session:
        portfolio = await _portfolio(session)
        await ledger.append_transaction(session, portfolio.id, BUY_ITSA4, confirm=True)
        await ledger.append_transaction(
            session,
            portfolio.id,
            {"type": "SELL_WITHDRAWAL", "date": "2024-02-01", "ticker": "ITSA4", "quantity": "40", "price": "10.2"},
            confirm=True,
        )
        first = await ledger.recalculate_balances(session, portfolio.id)
        before = [(row.id, row.cash_balance_after) for row in await ledger.load_confirmed_rows(session, portfolio.id)]
        second = await ledger.recalculate_balances(session, portfolio.id)
        after = [(row.id, row.cash_balance_after) for row in await ledger.load_confirmed_rows(session, portfolio.id)]

    assert first.cash_balance == second.cash_balance == Decimal("433")
    assert before == after
    assert second.ledger_version == first.ledger_version + 1


@pytest.mark.asyncio
async def test_concurrent_confirmations_serialize(database):
    async with database.session() as session:
        portfolio = await _portfolio(session, cash="10000")
        drafts = [
            {"type": "BUY", "date": f"2024-02-{day:02d}", "ticker": "BBAS3", "quantity": "10", "price": "25"}
            for day in range(1, 9)
        ]
        pending = [await ledger.append_transaction(session, portfolio.id, draft) for draft in drafts]
        portfolio_id = portfolio.id

    async def _confirm(transaction_id: int) -> None:
        async with database.session() as task_session:
            await ledger.confirm_transaction(task_session, portfolio_id, transaction_id)

    await asyncio.gather(*(_confirm(row.id) for row in pending))

    async with database.session() as session:
        portfolio = await ledger.get_portfolio(session, portfolio_id)
        rows = await ledger.load_confirmed_rows(session, portfolio_id)
        _, snapshot = await ledger.get_balances(session, portfolio_id)

    assert portfolio.ledger_version == 1 + len(pending)
    assert snapshot.cash_balance == Decimal("8000")
    assert snapshot.positions["BBAS3"]["quantity"] in {"80", "80.00000000"}
    running = Decimal("0")
    for row in rows:
        assert row.cash_balance_before == running
        running = row.cash_balance_after


@pytest.mark.asyncio
async def test_unknown_owner_cannot_touch_portfolio(database):
    async with database.session() as session:
        portfolio = await _portfolio(session)
        with pytest.raises(NotFoundError):
            await ledger.append_transaction(session, portfolio.id, BUY_ITSA4, owner_id="someone-else")
        with pytest.raises(NotFoundError):
            await ledger.get_portfolio(session, portfolio.id, "someone-else")


@pytest.mark.asyncio
async def test_metrics_are_cached_per_ledger_version(database):
    provider = InMemoryMarketDataProvider(
        prices={"ITSA4": {date(2024, 1, 10): "9.75", date(2024, 1, 31): "10.00", date(2024, 2, 29): "10.50"}}
    )
    async with database.session() as session:
        portfolio = await _portfolio(session)
        await ledger.append_transaction(session, portfolio.id, BUY_ITSA4, confirm=True)

        first = await analytics.get_portfolio_metrics(session, portfolio.id, provider, date(2024, 2, 29))
        requests = len(provider.price_requests)
        second = await analytics.get_portfolio_metrics(session, portfolio.id, provider, date(2024, 2, 29))
        assert len(provider.price_requests) == requests

        await ledger.append_transaction(
            session, portfolio.id, {"type": "CASH_CREDIT", "date": "2024-02-15", "amount": "100"}, confirm=True
        )
        third = await analytics.get_portfolio_metrics(session, portfolio.id, provider, date(2024, 2, 29))

    assert not first["cached"]
    assert second["cached"]
    assert second["ledger_version"] == first["ledger_version"]
    assert not third["cached"]
    assert third["ledger_version"] == first["ledger_version"] + 1
    assert first["final_value"] == pytest.approx(25 + 100 * 10.5)
    assert first["months_elapsed"] == 2
    assert first["annualized_return"] is None
    assert [point["date"] for point in first["equity_curve"]] == ["2024-01-31", "2024-02-29"]


@pytest.mark.asyncio
async def test_transactions_listed_newest_first(database):
    async with database.session() as session:
        portfolio = await _portfolio(session)
        await ledger.append_transaction(session, portfolio.id, BUY_ITSA4)
        await ledger.append_transaction(
            session, portfolio.id, {"type": "CASH_DEBIT", "date": "2024-01-10", "amount": "5"}
        )
        rows = await ledger.list_transactions(session, portfolio.id)
        rows_for_ticker = await ledger.list_transactions(
            session, portfolio.id, ledger.TransactionFilters(ticker="itsa4")
        )

    assert [row.sequence for row in rows] == [3, 2, 1]
    assert [row.ticker for row in rows_for_ticker] == ["ITSA4"]
    assert all(isinstance(row, LedgerTransaction) for row in rows)
