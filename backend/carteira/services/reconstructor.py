"""Chronological replay of confirmed ledger entries.

The replay is a pure function of the entries it receives: the same entries
always yield bit-identical balances because every value is a ``Decimal``
computed under a fixed 28-digit context. Nothing here touches the database;
the ledger service persists the results.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Context, Decimal, localcontext
from typing import Any, Iterable, Sequence

from carteira.models.enums import TransactionType

LEDGER_CONTEXT = Context(prec=28)

ZERO = Decimal("0")
DEFAULT_TOLERANCE = Decimal("0.10")

NEGATIVE_CASH = "NEGATIVE_CASH"
OVERSOLD_POSITION = "OVERSOLD_POSITION"

ADD_CASH_CREDIT = "ADD_CASH_CREDIT"
RECALCULATE = "RECALCULATE"


@dataclass(frozen=True)
class LedgerEntry:
    """A confirmed transaction reduced to the fields the replay needs."""

    id: int | str | None
    sequence: int
    date: date
    type: TransactionType
    amount: Decimal
    ticker: str | None = None
    quantity: Decimal | None = None
    price: Decimal | None = None

    @property
    def sort_key(self) -> tuple[date, int]:
        return (self.date, self.sequence)


@dataclass
class Position:
    ticker: str
    quantity: Decimal = ZERO
    average_cost: Decimal = ZERO

    @property
    def cost_basis(self) -> Decimal:
        return self.quantity * self.average_cost

    def to_dict(self) -> dict[str, str]:
        return {"quantity": str(self.quantity), "average_cost": str(self.average_cost)}


@dataclass(frozen=True)
class LedgerIssue:
    code: str
    date: date
    entry_id: int | str | None
    message: str
    amount: Decimal = ZERO
    ticker: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "date": self.date.isoformat(),
            "entry_id": self.entry_id,
            "message": self.message,
            "amount": str(self.amount),
            "ticker": self.ticker,
        }


@dataclass(frozen=True)
class ReplayStep:
    entry: LedgerEntry
    cash_before: Decimal
    cash_after: Decimal
    # Quantity held in ``entry.ticker`` after the step; None for cash-only entries.
    position_after: Decimal | None = None


@dataclass
class LedgerState:
    """Running cash and positions while entries are applied in order."""

    tolerance: Decimal = DEFAULT_TOLERANCE
    cash: Decimal = ZERO
    positions: dict[str, Position] = field(default_factory=dict)
    issues: list[LedgerIssue] = field(default_factory=list)

    def position(self, ticker: str) -> Position:
        existing = self.positions.get(ticker)
        if existing is None:
            existing = Position(ticker=ticker)
            self.positions[ticker] = existing
        return existing

    def apply(self, entry: LedgerEntry) -> ReplayStep:
        cash_before = self.cash
        self.cash = cash_before + entry.amount
        position_after: Decimal | None = None

        if entry.type == TransactionType.BUY:
            position = self.position(_require_ticker(entry))
            quantity = entry.quantity or ZERO
            total_cost = position.cost_basis + abs(entry.amount)
            position.quantity += quantity
            position.average_cost = total_cost / position.quantity if position.quantity > 0 else ZERO
            position_after = position.quantity
        elif entry.type == TransactionType.SELL_WITHDRAWAL:
            position = self.position(_require_ticker(entry))
            quantity = entry.quantity or ZERO
            if quantity > position.quantity:
                self.issues.append(
                    LedgerIssue(
                        code=OVERSOLD_POSITION,
                        date=entry.date,
                        entry_id=entry.id,
                        ticker=position.ticker,
                        amount=quantity - position.quantity,
                        message=(
                            f"Sale of {quantity} {position.ticker} exceeds the "
                            f"{position.quantity} units held"
                        ),
                    )
                )
                quantity = position.quantity
            position.quantity -= quantity
            if position.quantity == 0:
                position.average_cost = ZERO
            position_after = position.quantity
        elif entry.type in (
            TransactionType.CASH_CREDIT,
            TransactionType.CASH_DEBIT,
            TransactionType.DIVIDEND,
        ):
            pass
        else:  # pragma: no cover - enum is exhaustive
            raise ValueError(f"Unsupported transaction type {entry.type!r}")

        if self.cash < -self.tolerance:
            self.issues.append(
                LedgerIssue(
                    code=NEGATIVE_CASH,
                    date=entry.date,
                    entry_id=entry.id,
                    amount=self.cash,
                    message=f"Cash balance fell to {self.cash} on {entry.date.isoformat()}",
                )
            )
        return ReplayStep(
            entry=entry,
            cash_before=cash_before,
            cash_after=self.cash,
            position_after=position_after,
        )


@dataclass
class ReplayResult:
    steps: list[ReplayStep]
    cash_balance: Decimal
    positions: dict[str, Position]
    issues: list[LedgerIssue]
    final_balance_alert: bool
    tolerance: Decimal = DEFAULT_TOLERANCE

    @property
    def entries(self) -> list[LedgerEntry]:
        return [step.entry for step in self.steps]

    def open_positions(self) -> dict[str, Position]:
        return {ticker: pos for ticker, pos in self.positions.items() if pos.quantity != 0}

    def remediation(self) -> list[dict[str, Any]]:
        """Suggested corrective actions; nothing is ever applied automatically."""

        hints: list[dict[str, Any]] = []
        if self.final_balance_alert:
            lowest = min(self.steps, key=lambda step: step.cash_after)
            first_negative = next(
                step for step in self.steps if step.cash_after < -self.tolerance
            )
            hints.append(
                {
                    "action": ADD_CASH_CREDIT,
                    "amount": str(-lowest.cash_after),
                    "date": first_negative.entry.date.isoformat(),
                }
            )
        oversold = [issue for issue in self.issues if issue.code == OVERSOLD_POSITION]
        if oversold:
            hints.append(
                {
                    "action": RECALCULATE,
                    "entry_ids": [issue.entry_id for issue in oversold],
                }
            )
        return hints


def _require_ticker(entry: LedgerEntry) -> str:
    if not entry.ticker:
        raise ValueError(f"{entry.type.value} entry {entry.id!r} has no ticker")
    return entry.ticker


def order_entries(entries: Iterable[LedgerEntry]) -> list[LedgerEntry]:
    """Replay order: calendar day first, insertion sequence as the tie-break."""

    return sorted(entries, key=lambda entry: entry.sort_key)


def replay(entries: Iterable[LedgerEntry], *, tolerance: Decimal = DEFAULT_TOLERANCE) -> ReplayResult:
    state = LedgerState(tolerance=tolerance)
    # Decimal contexts are per thread; replays may run in worker threads.
    with localcontext(LEDGER_CONTEXT):
        steps = [state.apply(entry) for entry in order_entries(entries)]
    return ReplayResult(
        steps=steps,
        cash_balance=state.cash,
        positions=state.positions,
        issues=state.issues,
        final_balance_alert=state.cash < -tolerance,
        tolerance=tolerance,
    )


def _steps_through(steps: Sequence[ReplayStep], day: date) -> Iterable[ReplayStep]:
    for step in steps:
        if step.entry.date > day:
            break
        yield step


def positions_as_of(result: ReplayResult, day: date) -> dict[str, Decimal]:
    """Quantities held after every entry dated on or before ``day``."""

    held: dict[str, Decimal] = {}
    for step in _steps_through(result.steps, day):
        if step.position_after is not None and step.entry.ticker:
            held[step.entry.ticker] = step.position_after
    return {ticker: qty for ticker, qty in held.items() if qty != 0}


def cash_as_of(result: ReplayResult, day: date) -> Decimal:
    cash = ZERO
    for step in _steps_through(result.steps, day):
        cash = step.cash_after
    return cash


__all__ = [
    "ADD_CASH_CREDIT",
    "DEFAULT_TOLERANCE",
    "LEDGER_CONTEXT",
    "LedgerEntry",
    "LedgerIssue",
    "LedgerState",
    "NEGATIVE_CASH",
    "OVERSOLD_POSITION",
    "Position",
    "RECALCULATE",
    "ReplayResult",
    "ReplayStep",
    "cash_as_of",
    "order_entries",
    "positions_as_of",
    "replay",
]
