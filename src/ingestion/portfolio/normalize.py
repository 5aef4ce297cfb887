from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from ingestion.contracts.normalize import Normalizer
from ingestion.contracts.snapshot import (
    PERFORMANCE_METRIC_KEYS,
    RISK_METRIC_KEYS,
    DailyChange,
    PerformanceMetrics,
    PortfolioSnapshot,
    Position,
    RiskMetrics,
)
from ingestion.utils import (
    as_float,
    as_mapping,
    as_optional_float,
    as_optional_str,
    first_present,
)

Clock = Callable[[], datetime]

# Presence of both keys marks a payload that is already canonical.
_CANONICAL_KEYS = ("totalValue", "positions")


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _iso(ts: datetime) -> str:
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def is_canonical(raw: Any) -> bool:
    return isinstance(raw, Mapping) and all(k in raw for k in _CANONICAL_KEYS)


def normalize_portfolio(raw: Any, *, now: Clock | None = None) -> PortfolioSnapshot:
    """
    Normalize an arbitrary portfolio payload into a PortfolioSnapshot.

    Payload shapes:
        - canonical : {"totalValue": ..., "positions": [...], ...}
                      read verbatim from canonical keys, nothing derived;
                      timestamp stays None when absent and to_dict()
                      renders exactly the keys the payload carried
        - legacy    : {"portfolio_value": ..., "positions": [{symbol, quantity, price, value}]}
                      every field resolved through a fallback chain

    Never raises for missing or mistyped fields; those resolve to defaults.
    """
    clock = now or _utc_now
    if is_canonical(raw):
        return _from_canonical(raw)
    return _from_legacy(as_mapping(raw), clock)


class PortfolioSnapshotNormalizer(Normalizer[PortfolioSnapshot]):
    """Normalizer object for callers that want an injectable clock."""

    def __init__(self, *, now: Clock | None = None):
        self._now = now

    def normalize(self, *, raw: Any) -> PortfolioSnapshot:
        return normalize_portfolio(raw, now=self._now)


# ---------------------------------------------------------------------
# Canonical fast path
# ---------------------------------------------------------------------

def _from_canonical(raw: Mapping[str, Any]) -> PortfolioSnapshot:
    # nothing is derived or stamped here; wire_keys lets to_dict() give back the same keys
    timestamp = raw.get("timestamp")
    positions = raw.get("positions")
    rows = positions if isinstance(positions, list) else []

    return PortfolioSnapshot(
        id=as_optional_str(raw.get("id")),
        timestamp=str(timestamp) if timestamp is not None else None,
        total_value=as_float(raw.get("totalValue")),
        cash_balance=as_float(raw.get("cashBalance")),
        positions=tuple(_canonical_position(as_mapping(p), idx) for idx, p in enumerate(rows)),
        daily_change=_daily_change(raw.get("dailyChange"), canonical=True),
        risk_metrics=_risk_metrics(raw.get("riskMetrics"), canonical=True),
        performance_metrics=_performance_metrics(raw.get("performanceMetrics"), canonical=True),
        last_updated=as_optional_str(raw.get("lastUpdated")),
        wire_keys=frozenset(raw),
    )


def _canonical_position(p: Mapping[str, Any], idx: int) -> Position:
    symbol = str(p["symbol"]) if p.get("symbol") is not None else f"POS_{idx}"
    return Position(
        id=str(p["id"]) if p.get("id") is not None else symbol,
        symbol=symbol,
        quantity=as_float(p.get("quantity")),
        average_price=as_float(p.get("averagePrice")),
        current_price=as_float(p.get("currentPrice")),
        market_value=as_float(p.get("marketValue")),
        pnl=as_float(p.get("pnl")),
        pnl_percent=as_float(p.get("pnlPercent")),
        sector=as_optional_str(p.get("sector")),
        asset_class=as_optional_str(p.get("assetClass")),
        currency=as_optional_str(p.get("currency")),
        wire_keys=frozenset(p),
    )


# ---------------------------------------------------------------------
# Legacy / loosely-typed payloads
# ---------------------------------------------------------------------

def _from_legacy(raw: Mapping[str, Any], clock: Clock) -> PortfolioSnapshot:
    ts = raw.get("timestamp")
    timestamp = str(ts) if ts is not None else _iso(clock())
    positions = raw.get("positions")
    rows = positions if isinstance(positions, list) else []
    last_updated = raw.get("lastUpdated")

    return PortfolioSnapshot(
        id=as_optional_str(raw.get("id")),
        timestamp=timestamp,
        total_value=as_float(first_present(raw, "portfolio_value", "totalValue", "total_value")),
        cash_balance=as_float(first_present(raw, "cashBalance", "cash_balance")),
        positions=tuple(_legacy_position(as_mapping(p), idx) for idx, p in enumerate(rows)),
        daily_change=_daily_change(first_present(raw, "dailyChange", "daily_change")),
        risk_metrics=_risk_metrics(first_present(raw, "riskMetrics", "risk_metrics")),
        performance_metrics=_performance_metrics(
            first_present(raw, "performanceMetrics", "performance_metrics")
        ),
        last_updated=str(last_updated) if last_updated is not None else timestamp,
    )


def _legacy_position(p: Mapping[str, Any], idx: int) -> Position:
    sym = p.get("symbol")
    symbol = str(sym) if sym is not None else f"POS_{idx}"

    quantity = as_float(first_present(p, "quantity", "qty"))
    price = as_float(first_present(p, "price", "currentPrice", "current_price"))

    explicit_value = first_present(p, "value", "marketValue", "market_value")
    market_value = as_float(explicit_value, default=quantity * price)

    average_price = as_float(
        first_present(p, "average_cost", "averageCost", "averagePrice", "average_price"),
        default=price,
    )
    cost_basis = quantity * average_price
    pnl = as_float(p.get("pnl"), default=market_value - cost_basis)
    derived_pct = (pnl / cost_basis * 100.0) if cost_basis else 0.0
    pnl_percent = as_float(first_present(p, "pnl_percent", "pnlPercent"), default=derived_pct)

    pid = p.get("id")
    return Position(
        id=str(pid) if pid is not None else symbol,
        symbol=symbol,
        quantity=quantity,
        average_price=average_price,
        current_price=price,
        market_value=market_value,
        pnl=pnl,
        pnl_percent=pnl_percent,
        sector=as_optional_str(p.get("sector")),
        asset_class=as_optional_str(first_present(p, "assetClass", "asset_class")),
        currency=as_optional_str(p.get("currency")),
    )


# ---------------------------------------------------------------------
# Shared sub-records
# ---------------------------------------------------------------------

def _wire_keys(d: Mapping[str, Any], canonical: bool) -> frozenset[str] | None:
    return frozenset(d) if canonical else None


def _daily_change(raw: Any, *, canonical: bool = False) -> DailyChange:
    d = as_mapping(raw)
    return DailyChange(
        amount=as_float(d.get("amount")),
        percent=as_float(d.get("percent")),
        wire_keys=_wire_keys(d, canonical),
    )


def _risk_metrics(raw: Any, *, canonical: bool = False) -> RiskMetrics | None:
    if not isinstance(raw, Mapping):
        return None
    return RiskMetrics(
        **{attr: as_optional_float(raw.get(wire)) for wire, attr in RISK_METRIC_KEYS.items()},
        wire_keys=_wire_keys(raw, canonical),
    )


def _performance_metrics(raw: Any, *, canonical: bool = False) -> PerformanceMetrics | None:
    if not isinstance(raw, Mapping):
        return None
    values: dict[str, Any] = {}
    for wire, attr in PERFORMANCE_METRIC_KEYS.items():
        if attr in ("total_return", "total_return_percent"):
            values[attr] = as_float(raw.get(wire))
        else:
            values[attr] = as_optional_float(raw.get(wire))
    return PerformanceMetrics(**values, wire_keys=_wire_keys(raw, canonical))
