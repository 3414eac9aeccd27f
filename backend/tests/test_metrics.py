"""Return and risk statistics tests."""

from __future__ import annotations

import math
from datetime import date
from decimal import Decimal

import pytest

from carteira.models.enums import TransactionType
from carteira.services.metrics import (
    CashFlow,
    EquityPoint,
    annualized_volatility,
    compute_metrics,
    drawdown_analysis,
    max_drawdown,
    month_end_dates,
    monthly_returns,
    value_holdings,
)
from carteira.services.pricing import PriceBook
from carteira.services.reconstructor import LedgerEntry, replay


def _curve(dates: list[date], values: list[float]) -> list[EquityPoint]:
    return [
        EquityPoint(date=day, cash_balance=Decimal(str(value)), positions_value=Decimal("0"))
        for day, value in zip(dates, values)
    ]


def _growing_values(count: int) -> list[float]:
    values = [1000.0]
    for index in range(1, count):
        factor = 1.02 if index % 2 else 0.995
        values.append(round(values[-1] * factor, 2))
    return values


def test_month_end_dates_stop_at_as_of():
    assert month_end_dates(date(2024, 1, 15), date(2024, 3, 10)) == [
        date(2024, 1, 31),
        date(2024, 2, 29),
        date(2024, 3, 10),
    ]
    assert month_end_dates(date(2024, 1, 15), date(2024, 3, 31)) == [
        date(2024, 1, 31),
        date(2024, 2, 29),
        date(2024, 3, 31),
    ]
    assert month_end_dates(date(2024, 3, 1), date(2024, 2, 1)) == []


def test_max_drawdown_tracks_running_peak():
    assert max_drawdown([100, 120, 90, 150, 80]) == pytest.approx((150 - 80) / 150)
    assert max_drawdown([100, 120, 80, 110]) == pytest.approx(40 / 120)
    assert max_drawdown([100, 110, 120]) == 0.0
    assert max_drawdown([100]) is None


def test_modified_dietz_removes_contributions():
    curve = _curve([date(2024, 1, 31), date(2024, 2, 29)], [1000, 1600])
    flows = [CashFlow(date=date(2024, 2, 15), amount=Decimal("500"))]

    [result] = monthly_returns(curve, flows)

    assert result.date == date(2024, 2, 29)
    assert result.value == pytest.approx(100 / 1250)


def test_monthly_returns_skip_empty_starting_value():
    curve = _curve([date(2024, 1, 31), date(2024, 2, 29), date(2024, 3, 31)], [0, 1000, 1100])
    flows = [CashFlow(date=date(2024, 2, 1), amount=Decimal("1000"))]

    returns = monthly_returns(curve, flows)

    assert [item.date for item in returns] == [date(2024, 3, 31)]
    assert returns[0].value == pytest.approx(0.1)


def test_volatility_is_population_std_annualized():
    assert annualized_volatility([0.01, 0.03]) == pytest.approx(0.01 * math.sqrt(12))
    assert annualized_volatility([0.05]) is None


def test_annualized_metrics_are_null_below_twelve_months():
    dates = month_end_dates(date(2024, 1, 1), date(2024, 11, 30))
    assert len(dates) == 11
    curve = _curve(dates, _growing_values(11))
    flows = [CashFlow(date=dates[0], amount=Decimal("1000"))]

    metrics = compute_metrics(curve, flows, risk_free_rate=0.10)

    assert metrics.months_elapsed == 11
    assert metrics.total_return is not None
    assert metrics.annualized_return is None
    assert metrics.sharpe_ratio is None
    assert metrics.volatility is not None
    assert not metrics.availability["annualized_return"].available
    assert metrics.availability["annualized_return"].available_from == date(2024, 12, 31)
    assert metrics.availability["max_drawdown"].available_from == date(2024, 2, 29)


def test_annualized_metrics_appear_at_twelve_months():
    dates = month_end_dates(date(2024, 1, 1), date(2024, 12, 31))
    assert len(dates) == 12
    values = _growing_values(12)
    curve = _curve(dates, values)
    flows = [CashFlow(date=dates[0], amount=Decimal("1000"))]

    metrics = compute_metrics(curve, flows, risk_free_rate=0.10)

    total = values[-1] / 1000 - 1
    expected_cagr = (1 + total) ** (12 / 12) - 1
    assert metrics.total_return == pytest.approx(total, abs=1e-9)
    assert abs(metrics.annualized_return - expected_cagr) < 1e-9
    assert metrics.sharpe_ratio == pytest.approx((expected_cagr - 0.10) / metrics.volatility)
    assert metrics.availability["sharpe_ratio"].available


def test_cagr_compounds_over_months_elapsed():
    dates = month_end_dates(date(2023, 1, 1), date(2024, 6, 30))
    values = _growing_values(len(dates))
    curve = _curve(dates, values)
    flows = [CashFlow(date=dates[0], amount=Decimal("1000"))]

    metrics = compute_metrics(curve, flows, risk_free_rate=0.0)

    total = values[-1] / 1000 - 1
    assert metrics.months_elapsed == 18
    assert abs(metrics.annualized_return - ((1 + total) ** (12 / 18) - 1)) < 1e-9
    assert metrics.positive_months + metrics.negative_months == 17


def test_empty_curve_has_no_metrics():
    metrics = compute_metrics([], [], risk_free_rate=0.10)

    assert metrics.months_elapsed == 0
    assert metrics.total_return is None
    assert metrics.max_drawdown is None
    assert metrics.monthly_returns == []


def test_constant_returns_have_zero_volatility_and_no_sharpe():
    dates = month_end_dates(date(2024, 1, 1), date(2025, 1, 31))
    assert len(dates) == 13
    curve = _curve(dates, [1000 * 1.01**index for index in range(13)])
    flows = [CashFlow(date=dates[0], amount=Decimal("1000"))]

    metrics = compute_metrics(curve, flows, risk_free_rate=0.10)

    assert metrics.annualized_return is not None
    assert metrics.volatility == 0.0
    assert metrics.sharpe_ratio is None
    assert annualized_volatility([0.01] * 6) == 0.0


def test_drawdown_periods_open_and_recover():
    dates = month_end_dates(date(2024, 1, 1), date(2024, 5, 31))

    history, periods = drawdown_analysis(dates, [100, 120, 90, 150, 80])

    assert [point.in_drawdown for point in history] == [False, False, True, False, True]
    assert history[2].drawdown == pytest.approx(0.25)
    recovered, open_period = periods
    assert recovered.start_date == date(2024, 3, 31)
    assert recovered.end_date == date(2024, 4, 30)
    assert recovered.recovered
    assert recovered.duration_months == 1
    assert recovered.depth == pytest.approx(0.25)
    assert open_period.start_date == date(2024, 5, 31)
    assert open_period.end_date is None
    assert not open_period.recovered
    assert open_period.duration_months == 1
    assert open_period.depth == pytest.approx(70 / 150)
    assert drawdown_analysis([], []) == ([], [])


def test_summary_reports_best_worst_month_and_drawdowns():
    dates = month_end_dates(date(2024, 1, 1), date(2024, 5, 31))
    curve = _curve(dates, [100, 120, 90, 150, 80])
    flows = [CashFlow(date=dates[0], amount=Decimal("100"))]

    metrics = compute_metrics(curve, flows, risk_free_rate=0.10)

    assert metrics.best_month.date == date(2024, 4, 30)
    assert metrics.best_month.value == pytest.approx(60 / 90)
    assert metrics.worst_month.date == date(2024, 5, 31)
    assert metrics.worst_month.value == pytest.approx(-70 / 150)
    assert metrics.average_monthly_return == pytest.approx((0.2 - 0.25 + 60 / 90 - 70 / 150) / 4)
    assert metrics.current_drawdown == pytest.approx(70 / 150)
    assert metrics.drawdown_count == 2
    assert metrics.average_recovery_months == pytest.approx(1.0)
    payload = metrics.to_dict()
    assert payload["drawdown_count"] == 2
    assert payload["drawdown_periods"][0]["end_date"] == "2024-04-30"
    assert payload["best_month"] == {"date": "2024-04-30", "value": pytest.approx(60 / 90)}


def test_single_month_has_no_worst_month():
    dates = month_end_dates(date(2024, 1, 1), date(2024, 2, 29))
    metrics = compute_metrics(
        _curve(dates, [1000, 1050]), [CashFlow(date=dates[0], amount=Decimal("1000"))], risk_free_rate=0.10
    )

    assert metrics.best_month.value == pytest.approx(0.05)
    assert metrics.worst_month is None
    assert metrics.average_recovery_months is None


def test_holdings_are_marked_at_prior_prices_only():
    entries = [
        LedgerEntry(id=1, sequence=1, date=date(2024, 1, 2), type=TransactionType.CASH_CREDIT, amount=Decimal("2000")),
        LedgerEntry(
            id=2,
            sequence=2,
            date=date(2024, 1, 3),
            type=TransactionType.BUY,
            amount=Decimal("-1000"),
            ticker="ITSA4",
            quantity=Decimal("100"),
            price=Decimal("10"),
        ),
        LedgerEntry(
            id=3,
            sequence=3,
            date=date(2024, 1, 3),
            type=TransactionType.BUY,
            amount=Decimal("-1000"),
            ticker="BBAS3",
            quantity=Decimal("50"),
            price=Decimal("20"),
        ),
    ]
    book = PriceBook.from_mapping(
        {"ITSA4": {date(2024, 2, 1): "12"}, "BBAS3": {date(2024, 3, 1): "25"}}, max_staleness_days=30
    )

    bbas3, itsa4 = value_holdings(replay(entries), book, date(2024, 2, 15))

    assert itsa4.ticker == "ITSA4"
    assert itsa4.market_value == Decimal("1200")
    assert itsa4.unrealized_gain == Decimal("200")
    assert itsa4.unrealized_return == pytest.approx(0.2)
    assert itsa4.weight == pytest.approx(1.0)
    assert itsa4.price_date == date(2024, 2, 1)
    assert bbas3.price is None
    assert bbas3.market_value == Decimal("0")
    assert bbas3.unrealized_return == pytest.approx(-1.0)
    assert bbas3.to_dict()["weight"] == pytest.approx(0.0)
