"""Per-portfolio serialization of ledger mutations."""

from __future__ import annotations

import asyncio
import weakref
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from carteira.core.errors import NotFoundError
from carteira.models import Portfolio


class PortfolioLocks:
    """One ``asyncio.Lock`` per portfolio id.

    Locks are process-local. Across processes the ``SELECT ... FOR UPDATE``
    taken by :func:`locked_portfolio` serializes writers on PostgreSQL.
    Entries are weak: a lock disappears once no task holds or awaits it.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[int, asyncio.Lock] = weakref.WeakValueDictionary()

    def __len__(self) -> int:
        return len(self._locks)

    def get(self, portfolio_id: int) -> asyncio.Lock:
        lock = self._locks.get(portfolio_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[portfolio_id] = lock
        return lock

    def clear(self) -> None:
        self._locks.clear()


portfolio_locks = PortfolioLocks()


@asynccontextmanager
async def locked_portfolio(
    session: AsyncSession,
    portfolio_id: int,
    *,
    owner_id: str | None = None,
) -> AsyncIterator[Portfolio]:
    """Hold the portfolio's lock and row lock for the duration of a mutation."""

    lock = portfolio_locks.get(portfolio_id)
    async with lock:
        stmt = (
            select(Portfolio)
            .where(Portfolio.id == portfolio_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        portfolio = (await session.execute(stmt)).scalars().first()
        if portfolio is None or (owner_id is not None and portfolio.owner_id != owner_id):
            raise NotFoundError(f"Portfolio {portfolio_id} not found")
        try:
            yield portfolio
        except BaseException:
            await session.rollback()
            raise


__all__ = ["PortfolioLocks", "locked_portfolio", "portfolio_locks"]
