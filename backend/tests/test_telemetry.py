"""Domain instrument tests against an in-memory metric reader."""

from __future__ import annotations

from decimal import Decimal

import pytest
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import InMemoryMetricReader

from carteira.core import telemetry
from carteira.core.telemetry import DomainMetrics
from carteira.services import ledger


def _instruments() -> tuple[DomainMetrics, InMemoryMetricReader]:
    reader = InMemoryMetricReader()
    provider = MeterProvider(metric_readers=[reader])
    return DomainMetrics(provider.get_meter("carteira.tests")), reader


def _points(reader: InMemoryMetricReader, name: str) -> list:
    data = reader.get_metrics_data()
    if data is None:
        return []
    for resource_metrics in data.resource_metrics:
        for scope_metrics in resource_metrics.scope_metrics:
            for metric in scope_metrics.metrics:
                if metric.name == name:
                    return list(metric.data.data_points)
    return []


def test_replays_count_transactions_and_alerts():
    instruments, reader = _instruments()

    instruments.record_replay(3, False)
    instruments.record_replay(5, True)

    replays = {point.attributes["alert"]: point.value for point in _points(reader, "carteira.ledger.replays")}
    assert replays == {False: 1, True: 1}
    [histogram] = _points(reader, "carteira.ledger.replay.transactions")
    assert histogram.count == 2
    assert histogram.sum == 8
    [alerts] = _points(reader, "carteira.ledger.negative_balance_alerts")
    assert alerts.value == 1


def test_backtest_durations_are_split_by_outcome():
    instruments, reader = _instruments()

    instruments.record_backtest(0.25, "completed")
    instruments.record_backtest(30.0, "timeout")

    durations = {point.attributes["outcome"]: point.sum for point in _points(reader, "carteira.backtest.duration")}
    assert durations == {"completed": pytest.approx(0.25), "timeout": pytest.approx(30.0)}


@pytest.mark.asyncio
async def test_ledger_replays_report_to_the_domain_meter(database, monkeypatch):
    instruments, reader = _instruments()
    monkeypatch.setattr(telemetry, "domain_metrics", instruments)

    async with database.session() as session:
        portfolio = await ledger.create_portfolio(session, "user-1", "Principal", initial_cash=Decimal("1000"))
        await ledger.recalculate_balances(session, portfolio.id, owner_id="user-1")

    [replays] = _points(reader, "carteira.ledger.replays")
    assert replays.value == 2
    assert replays.attributes == {"alert": False}
    assert _points(reader, "carteira.ledger.negative_balance_alerts") == []
