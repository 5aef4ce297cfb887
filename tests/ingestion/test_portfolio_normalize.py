from __future__ import annotations

from datetime import datetime, timezone

import pytest

from ingestion.contracts.snapshot import Position
from ingestion.portfolio.normalize import PortfolioSnapshotNormalizer, is_canonical, normalize_portfolio


def _clock() -> datetime:
    return datetime(2024, 3, 1, 12, 30, 0, 123000, tzinfo=timezone.utc)


CANONICAL = {
    "id": "pf-1",
    "timestamp": "2024-03-01T12:00:00.000Z",
    "totalValue": 125000.5,
    "cashBalance": 5000.0,
    "positions": [
        {
            "id": "pos-aapl",
            "symbol": "AAPL",
            "quantity": 100.0,
            "averagePrice": 150.0,
            "currentPrice": 175.0,
            "marketValue": 17500.0,
            "pnl": 2500.0,
            "pnlPercent": 16.666,
            "sector": "Technology",
            "assetClass": "Equity",
            "currency": "USD",
        }
    ],
    "dailyChange": {"amount": 1200.0, "percent": 0.97},
    "riskMetrics": {"var1d95": 2100.0, "beta": 1.1, "sharpeRatio": 1.4},
    "performanceMetrics": {"totalReturn": 25000.0, "totalReturnPercent": 25.0, "ytdReturn": 8.5},
    "lastUpdated": "2024-03-01T12:00:00.000Z",
}


def test_canonical_payload_round_trips():
    snap = normalize_portfolio(CANONICAL, now=_clock)
    assert snap.to_dict() == CANONICAL
    assert snap.risk_metrics.beta == 1.1
    assert snap.risk_metrics.max_drawdown is None
    assert snap.performance_metrics.ytd_return == 8.5


def test_canonical_payload_is_not_derived():
    raw = {
        "timestamp": "t",
        "totalValue": 10.0,
        "positions": [{"symbol": "X", "quantity": 2, "currentPrice": 5.0}],
    }
    snap = normalize_portfolio(raw, now=_clock)
    pos = snap.positions[0]
    # canonical keys are taken as-is; missing ones are zero, not recomputed
    assert pos.market_value == 0.0
    assert pos.average_price == 0.0
    assert snap.last_updated is None


@pytest.mark.parametrize(
    "raw",
    [
        {"totalValue": 100.0, "positions": []},
        {"totalValue": 100.0, "positions": [{"symbol": "X", "quantity": 2.0}], "riskMetrics": {"beta": 0.9}},
        {"id": None, "totalValue": 1.0, "positions": [], "dailyChange": {"amount": 3.0}},
    ],
)
def test_canonical_payload_renders_only_carried_keys(raw):
    assert normalize_portfolio(raw, now=_clock).to_dict() == raw


def test_canonical_payload_without_timestamp_is_not_stamped():
    ticks = iter([_clock(), datetime(2024, 3, 1, 12, 31, tzinfo=timezone.utc)])
    raw = {"totalValue": 100.0, "positions": []}

    first = normalize_portfolio(raw, now=lambda: next(ticks))
    second = normalize_portfolio(dict(raw), now=lambda: next(ticks))

    assert first.timestamp is None
    assert first == second


def test_legacy_payload_derives_missing_fields():
    raw = {
        "portfolio_value": 17583.75,
        "positions": [{"symbol": "AAPL", "quantity": 100, "price": 175.5, "value": 17550}],
    }
    snap = normalize_portfolio(raw, now=_clock)

    assert not is_canonical(raw)
    assert snap.total_value == 17583.75
    assert snap.cash_balance == 0.0
    assert snap.timestamp == "2024-03-01T12:30:00.123Z"
    assert snap.last_updated == snap.timestamp
    assert snap.positions == (
        Position(
            id="AAPL",
            symbol="AAPL",
            quantity=100.0,
            average_price=175.5,
            current_price=175.5,
            market_value=17550.0,
            pnl=0.0,
            pnl_percent=0.0,
        ),
    )
    assert snap.risk_metrics is None
    assert snap.performance_metrics is None


def test_legacy_position_fallback_chains():
    raw = {
        "total_value": 1000,
        "cash_balance": "250.5",
        "daily_change": {"amount": -5, "percent": -0.5},
        "lastUpdated": "2024-03-01T00:00:00Z",
        "positions": [
            {"id": "p-1", "symbol": "MSFT", "qty": 10, "currentPrice": 400, "averageCost": 380, "asset_class": "Equity"},
            {"quantity": 4, "current_price": 50, "marketValue": 210, "pnl": 15, "pnlPercent": 7.5},
            {"symbol": "TSLA", "quantity": 0, "price": 200},
        ],
    }
    snap = normalize_portfolio(raw, now=_clock)

    assert snap.total_value == 1000.0
    assert snap.cash_balance == 250.5
    assert snap.daily_change.amount == -5.0
    assert snap.last_updated == "2024-03-01T00:00:00Z"

    msft, unnamed, tsla = snap.positions
    assert msft.id == "p-1"
    assert msft.quantity == 10.0
    assert msft.current_price == 400.0
    assert msft.market_value == 4000.0
    assert msft.average_price == 380.0
    assert msft.pnl == pytest.approx(200.0)
    assert msft.pnl_percent == pytest.approx(200.0 / 3800.0 * 100.0)
    assert msft.asset_class == "Equity"

    assert unnamed.symbol == "POS_1"
    assert unnamed.id == "POS_1"
    assert unnamed.market_value == 210.0
    assert unnamed.pnl == 15.0
    assert unnamed.pnl_percent == 7.5

    # zero cost basis never divides
    assert tsla.pnl_percent == 0.0


@pytest.mark.parametrize("raw", [None, [], "nonsense", 42, {"positions": "oops"}])
def test_malformed_payloads_resolve_to_defaults(raw):
    snap = normalize_portfolio(raw, now=_clock)
    assert snap.total_value == 0.0
    assert snap.cash_balance == 0.0
    assert snap.positions == ()
    assert snap.timestamp == "2024-03-01T12:30:00.123Z"


def test_garbage_numbers_become_zero():
    raw = {
        "portfolio_value": "abc",
        "positions": [None, {"symbol": "X", "quantity": float("nan"), "price": "inf"}],
    }
    snap = normalize_portfolio(raw, now=_clock)
    assert snap.total_value == 0.0
    assert snap.positions[0].symbol == "POS_0"
    assert snap.positions[1].quantity == 0.0
    assert snap.positions[1].current_price == 0.0


def test_same_payload_normalizes_to_equal_snapshots():
    raw = {"timestamp": "t1", "portfolio_value": 5, "positions": [{"symbol": "A", "quantity": 1, "price": 5}]}
    assert normalize_portfolio(raw) == normalize_portfolio(dict(raw))


def test_normalizer_object_uses_injected_clock():
    snap = PortfolioSnapshotNormalizer(now=_clock).normalize(raw={"positions": []})
    assert snap.timestamp == "2024-03-01T12:30:00.123Z"
