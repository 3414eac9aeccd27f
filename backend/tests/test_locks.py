"""Portfolio lock registry tests."""

from __future__ import annotations

import gc
from decimal import Decimal

import pytest

from carteira.services import ledger
from carteira.services.locks import PortfolioLocks, portfolio_locks


def test_lock_is_shared_while_referenced_and_dropped_after():
    locks = PortfolioLocks()

    first = locks.get(1)
    assert locks.get(1) is first
    assert locks.get(2) is not first
    gc.collect()
    assert len(locks) == 1

    del first
    gc.collect()
    assert len(locks) == 0


@pytest.mark.asyncio
async def test_mutations_do_not_leave_locks_behind(database):
    async with database.session() as session:
        portfolios = [
            await ledger.create_portfolio(session, "user-1", f"Carteira {index}", initial_cash=Decimal("100"))
            for index in range(5)
        ]
        for portfolio in portfolios:
            await ledger.recalculate_balances(session, portfolio.id, owner_id="user-1")

    gc.collect()
    assert len(portfolio_locks) == 0
