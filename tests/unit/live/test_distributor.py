from __future__ import annotations

import logging
from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
import requests

from portfolio_stream.live.distributor import PortfolioDistributor, PriceStream
from portfolio_stream.runtime.errors import StreamTransportError
from portfolio_stream.runtime.state import ChangeKind, ConnectionState

SNAPSHOT = {
    "timestamp": "2024-03-01T00:00:00.000Z",
    "totalValue": 20000.0,
    "cashBalance": 2500.0,
    "positions": [
        {
            "id": "1", "symbol": "AAPL", "quantity": 100, "averagePrice": 150.0, "currentPrice": 175.0,
            "marketValue": 17500.0, "pnl": 2500.0, "pnlPercent": 16.67, "assetClass": "Equity",
        }
    ],
    "dailyChange": {"amount": 100.0, "percent": 0.5},
    "riskMetrics": {"beta": 1.05},
    "performanceMetrics": {"totalReturn": 2500.0, "totalReturnPercent": 14.3},
}


@pytest.fixture
def portfolio(stream_config, fake_connection, fake_scheduler):
    errors = []
    dist = PortfolioDistributor(
        config=stream_config,
        connection=fake_connection,
        scheduler=fake_scheduler,
        on_error=errors.append,
    )
    dist.errors = errors
    return dist


def test_mount_opens_configured_url_and_unmount_closes(portfolio, fake_connection):
    assert not portfolio.mounted
    with portfolio:
        assert portfolio.mounted
        assert fake_connection.latest.url == "http://dashboard.test/api/stream"
        portfolio.mount()
        assert len(fake_connection.handles) == 1
    assert not portfolio.mounted
    assert fake_connection.open_handles == []
    assert portfolio.status.state is ConnectionState.IDLE
    portfolio.unmount()


def test_is_loading_and_read_side(portfolio, fake_connection):
    portfolio.mount()
    assert portfolio.is_loading
    assert portfolio.snapshot is None
    assert portfolio.positions == ()
    assert portfolio.summary() is None

    fake_connection.latest.emit_open()
    fake_connection.latest.emit_message(SNAPSHOT)

    assert not portfolio.is_loading
    assert portfolio.is_connected
    assert portfolio.positions[0].symbol == "AAPL"
    assert portfolio.risk_metrics.beta == 1.05
    assert portfolio.performance_metrics.total_return_percent == 14.3
    assert portfolio.summary().total_pnl == pytest.approx(2500.0)
    portfolio.unmount()


def test_connection_error_reaches_callback_and_keeps_snapshot(portfolio, fake_connection, fake_scheduler):
    portfolio.mount()
    fake_connection.latest.emit_open()
    fake_connection.latest.emit_message(SNAPSHOT)
    snap = portfolio.snapshot

    fake_connection.latest.emit_error()

    assert len(portfolio.errors) == 1
    assert isinstance(portfolio.errors[0], StreamTransportError)
    assert portfolio.error is portfolio.errors[0]
    assert not portfolio.is_loading
    assert portfolio.snapshot is snap
    assert portfolio.reconnect_attempts == 1
    assert fake_scheduler.pending[0].delay_s == 1.0

    portfolio.refresh()
    assert portfolio.error is None
    assert portfolio.reconnect_attempts == 0
    assert fake_scheduler.pending == []
    portfolio.unmount()


def test_duplicate_snapshot_does_not_notify_subscribers(portfolio, fake_connection):
    portfolio.mount()
    fake_connection.latest.emit_open()
    seen = []
    portfolio.subscribe(lambda cell, changes: seen.append(changes))

    fake_connection.latest.emit_message(SNAPSHOT)
    fake_connection.latest.emit_message(dict(SNAPSHOT))

    assert seen == [frozenset({ChangeKind.VALUE})]
    portfolio.unmount()


def test_injected_clock_stamps_legacy_snapshots(stream_config, fake_connection, fake_scheduler):
    portfolio = PortfolioDistributor(
        config=stream_config,
        connection=fake_connection,
        scheduler=fake_scheduler,
        now=lambda: datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc),
    )
    with portfolio:
        fake_connection.latest.emit_open()
        fake_connection.latest.emit_message({"portfolio_value": 10.0, "positions": []})
        assert portfolio.snapshot.timestamp == "2024-03-01T09:30:00.000Z"

        fake_connection.latest.emit_message({"totalValue": 10.0, "positions": []})
        assert portfolio.snapshot.timestamp is None


def test_inconsistent_position_is_logged_as_data_integrity(portfolio, fake_connection, caplog):
    caplog.set_level(logging.WARNING)
    portfolio.mount()
    fake_connection.latest.emit_open()
    broken = {**SNAPSHOT, "positions": [{**SNAPSHOT["positions"][0], "marketValue": 1.0}]}

    fake_connection.latest.emit_message(broken)

    records = [r for r in caplog.records if r.getMessage() == "feed.position_inconsistent"]
    assert records
    assert records[0].context["category"] == "data_integrity"
    assert records[0].context["symbol"] == "AAPL"
    portfolio.unmount()


@pytest.mark.asyncio
async def test_bootstrap_seeds_snapshot(portfolio, monkeypatch):
    calls = []

    def fake_get(url, timeout=None):
        calls.append((url, timeout))
        return SimpleNamespace(raise_for_status=lambda: None, json=lambda: SNAPSHOT)

    monkeypatch.setattr(requests, "get", fake_get)

    snap = await portfolio.bootstrap()

    assert calls == [("http://dashboard.test/api/portfolio", (10.0, 10.0))]
    assert snap.total_value == 20000.0
    assert portfolio.snapshot is snap


@pytest.mark.asyncio
async def test_bootstrap_does_not_override_streamed_snapshot(portfolio, fake_connection, monkeypatch):
    monkeypatch.setattr(
        requests,
        "get",
        lambda url, timeout=None: SimpleNamespace(raise_for_status=lambda: None, json=lambda: {**SNAPSHOT, "totalValue": 1.0}),
    )
    portfolio.mount()
    fake_connection.latest.emit_open()
    fake_connection.latest.emit_message(SNAPSHOT)
    streamed = portfolio.snapshot

    await portfolio.bootstrap()

    assert portfolio.snapshot is streamed
    portfolio.unmount()


@pytest.mark.asyncio
async def test_bootstrap_failure_is_logged_and_returns_none(portfolio, monkeypatch):
    def fail(url, timeout=None):
        raise requests.ConnectionError("refused")

    monkeypatch.setattr(requests, "get", fail)

    assert await portfolio.bootstrap() is None
    assert portfolio.snapshot is None
    assert portfolio.error is None


def test_price_stream_applies_symbols_only_while_mounted(stream_config, fake_connection, fake_scheduler):
    prices = PriceStream(
        config=stream_config,
        connection=fake_connection,
        scheduler=fake_scheduler,
        symbols=["MSFT", "AAPL"],
    )
    assert prices.set_symbols(["AAPL", "MSFT"]) is False
    assert fake_connection.handles == []
    assert prices.prices == {}

    with prices:
        assert fake_connection.latest.url == "http://dashboard.test/api/price-stream?symbols=AAPL,MSFT"
        fake_connection.latest.emit_open()
        fake_connection.latest.emit_message({"symbol": "AAPL", "price": 150.25})
        assert prices.prices["AAPL"].price == 150.25

        assert prices.set_symbols(["AAPL"])
        assert fake_connection.latest.url == "http://dashboard.test/api/price-stream?symbols=AAPL"
        assert len(fake_connection.open_handles) == 1

    assert fake_connection.open_handles == []
    assert prices.symbols == ()
    assert prices.prices["AAPL"].price == 150.25
