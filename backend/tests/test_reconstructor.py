"""Balance reconstruction tests."""

from __future__ import annotations

from datetime import date
from decimal import Decimal, localcontext

from carteira.models.enums import TransactionType
from carteira.services.reconstructor import (
    ADD_CASH_CREDIT,
    NEGATIVE_CASH,
    OVERSOLD_POSITION,
    RECALCULATE,
    LedgerEntry,
    cash_as_of,
    positions_as_of,
    replay,
)


def _credit(seq: int, day: date, amount: str) -> LedgerEntry:
    return LedgerEntry(id=seq, sequence=seq, date=day, type=TransactionType.CASH_CREDIT, amount=Decimal(amount))


def _debit(seq: int, day: date, amount: str) -> LedgerEntry:
    return LedgerEntry(id=seq, sequence=seq, date=day, type=TransactionType.CASH_DEBIT, amount=-Decimal(amount))


def _buy(seq: int, day: date, ticker: str, qty: str, price: str) -> LedgerEntry:
    q, p = Decimal(qty), Decimal(price)
    return LedgerEntry(
        id=seq, sequence=seq, date=day, type=TransactionType.BUY, amount=-(q * p), ticker=ticker, quantity=q, price=p
    )


def _sell(seq: int, day: date, ticker: str, qty: str, price: str) -> LedgerEntry:
    q, p = Decimal(qty), Decimal(price)
    return LedgerEntry(
        id=seq,
        sequence=seq,
        date=day,
        type=TransactionType.SELL_WITHDRAWAL,
        amount=q * p,
        ticker=ticker,
        quantity=q,
        price=p,
    )


def test_replay_is_idempotent():
    entries = [
        _credit(1, date(2024, 1, 2), "1000.00"),
        _buy(2, date(2024, 1, 3), "ITSA4", "33", "9.87"),
        _sell(3, date(2024, 2, 10), "ITSA4", "10", "10.12"),
        _debit(4, date(2024, 3, 1), "0.01"),
    ]

    first = replay(entries)
    second = replay(list(reversed(entries)))

    assert first.cash_balance == second.cash_balance
    assert [step.cash_after for step in first.steps] == [step.cash_after for step in second.steps]
    assert first.positions["ITSA4"].quantity == second.positions["ITSA4"].quantity == Decimal("23")
    assert first.cash_balance == Decimal("1000.00") - Decimal("325.71") + Decimal("101.20") - Decimal("0.01")


def test_same_day_entries_follow_insertion_order():
    day = date(2024, 5, 6)
    buy_first = replay([_buy(1, day, "BBAS3", "50", "10"), _credit(2, day, "500")])
    credit_first = replay([_credit(1, day, "500"), _buy(2, day, "BBAS3", "50", "10")])

    assert buy_first.cash_balance == credit_first.cash_balance == Decimal("0")
    assert buy_first.steps[0].cash_after == Decimal("-500")
    assert [issue.code for issue in buy_first.issues] == [NEGATIVE_CASH]
    assert not buy_first.final_balance_alert
    assert credit_first.issues == []


def test_average_cost_is_weighted_and_sales_keep_it():
    result = replay(
        [
            _credit(1, date(2024, 1, 1), "5000"),
            _buy(2, date(2024, 1, 2), "TAEE11", "100", "10"),
            _buy(3, date(2024, 2, 1), "TAEE11", "100", "20"),
            _sell(4, date(2024, 3, 1), "TAEE11", "50", "30"),
        ]
    )

    position = result.positions["TAEE11"]
    assert position.quantity == Decimal("150")
    assert position.average_cost == Decimal("15")


def test_tolerance_boundary_on_final_balance():
    within = replay([_credit(1, date(2024, 1, 1), "100"), _debit(2, date(2024, 1, 2), "100.10")])
    beyond = replay([_credit(1, date(2024, 1, 1), "100"), _debit(2, date(2024, 1, 2), "100.11")])

    assert within.cash_balance == Decimal("-0.10")
    assert not within.final_balance_alert
    assert within.issues == []

    assert beyond.cash_balance == Decimal("-0.11")
    assert beyond.final_balance_alert
    assert beyond.issues[0].code == NEGATIVE_CASH
    hint = beyond.remediation()[0]
    assert hint == {"action": ADD_CASH_CREDIT, "amount": "0.11", "date": "2024-01-02"}


def test_oversold_position_is_clamped_and_reported():
    result = replay(
        [
            _credit(1, date(2024, 1, 1), "1000"),
            _buy(2, date(2024, 1, 2), "PETR4", "10", "30"),
            _sell(3, date(2024, 1, 3), "PETR4", "15", "32"),
        ]
    )

    assert result.positions["PETR4"].quantity == Decimal("0")
    issue = result.issues[0]
    assert issue.code == OVERSOLD_POSITION
    assert issue.amount == Decimal("5")
    assert {"action": RECALCULATE, "entry_ids": [3]} in result.remediation()
    assert result.open_positions() == {}


def test_point_in_time_queries():
    result = replay(
        [
            _credit(1, date(2024, 1, 1), "1000"),
            _buy(2, date(2024, 1, 10), "ITSA4", "10", "10"),
            _sell(3, date(2024, 2, 10), "ITSA4", "10", "11"),
        ]
    )

    assert positions_as_of(result, date(2024, 1, 9)) == {}
    assert positions_as_of(result, date(2024, 1, 31)) == {"ITSA4": Decimal("10")}
    assert positions_as_of(result, date(2024, 2, 10)) == {}
    assert cash_as_of(result, date(2024, 1, 31)) == Decimal("900")
    assert cash_as_of(result, date(2023, 12, 31)) == Decimal("0")


def test_replay_ignores_the_callers_decimal_precision():
    entries = [
        _credit(1, date(2024, 1, 2), "1000.123456789"),
        _buy(2, date(2024, 1, 3), "ITSA4", "3", "333.3333333333"),
    ]
    expected = replay(entries)

    with localcontext() as ctx:
        ctx.prec = 6
        narrow = replay(entries)

    assert narrow.cash_balance == expected.cash_balance == Decimal("0.1234567891")
    assert narrow.open_positions()["ITSA4"].average_cost == expected.open_positions()["ITSA4"].average_cost
    assert narrow.open_positions()["ITSA4"].average_cost == Decimal("333.3333333333")
