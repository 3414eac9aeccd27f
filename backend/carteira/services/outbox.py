"""Domain event helper writing to the portfolio outbox."""

from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from carteira.models import PortfolioOutbox


async def enqueue_portfolio_event(session: AsyncSession, event_type: str, payload: dict[str, Any]) -> None:
    """Stage an event in the caller's transaction; it commits or rolls back with the change."""

    event = PortfolioOutbox(event_type=event_type, payload=payload, status="pending")
    session.add(event)
    await session.flush()


__all__ = ["enqueue_portfolio_event"]
