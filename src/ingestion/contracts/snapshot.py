from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Collection


def _render(out: dict[str, Any], wire_keys: Collection[str] | None) -> dict[str, Any]:
    # records read from a canonical payload render exactly the keys they were read from
    if wire_keys is None:
        return {k: v for k, v in out.items() if v is not None}
    return {k: v for k, v in out.items() if k in wire_keys}


@dataclass(frozen=True)
class Position:
    """
    One holding inside a PortfolioSnapshot.

    Invariants (within floating-point tolerance):
        market_value ~= quantity * current_price
        pnl          ~= market_value - quantity * average_price

    Numeric fields default to zero, never None.
    """

    id: str
    symbol: str
    quantity: float = 0.0
    average_price: float = 0.0
    current_price: float = 0.0
    market_value: float = 0.0
    pnl: float = 0.0
    pnl_percent: float = 0.0
    sector: str | None = None
    asset_class: str | None = None
    currency: str | None = None
    wire_keys: frozenset[str] | None = field(default=None, compare=False, repr=False)

    def to_dict(self) -> dict[str, Any]:
        return _render(
            {
                "id": self.id,
                "symbol": self.symbol,
                "quantity": self.quantity,
                "averagePrice": self.average_price,
                "currentPrice": self.current_price,
                "marketValue": self.market_value,
                "pnl": self.pnl,
                "pnlPercent": self.pnl_percent,
                "sector": self.sector,
                "assetClass": self.asset_class,
                "currency": self.currency,
            },
            self.wire_keys,
        )


@dataclass(frozen=True)
class DailyChange:
    amount: float = 0.0
    percent: float = 0.0
    wire_keys: frozenset[str] | None = field(default=None, compare=False, repr=False)

    def to_dict(self) -> dict[str, float]:
        return _render({"amount": self.amount, "percent": self.percent}, self.wire_keys)


# wire key -> attribute
RISK_METRIC_KEYS: dict[str, str] = {
    "var1d95": "var_1d_95",
    "var10d95": "var_10d_95",
    "expectedShortfall95": "expected_shortfall_95",
    "volatility1y": "volatility_1y",
    "beta": "beta",
    "sharpeRatio": "sharpe_ratio",
    "sortinoRatio": "sortino_ratio",
    "maxDrawdown": "max_drawdown",
    "trackingError": "tracking_error",
    "informationRatio": "information_ratio",
}

PERFORMANCE_METRIC_KEYS: dict[str, str] = {
    "totalReturn": "total_return",
    "totalReturnPercent": "total_return_percent",
    "annualizedReturn": "annualized_return",
    "ytdReturn": "ytd_return",
    "monthlyReturn": "monthly_return",
    "quarterlyReturn": "quarterly_return",
    "annualReturn": "annual_return",
}


@dataclass(frozen=True)
class RiskMetrics:
    var_1d_95: float | None = None
    var_10d_95: float | None = None
    expected_shortfall_95: float | None = None
    volatility_1y: float | None = None
    beta: float | None = None
    sharpe_ratio: float | None = None
    sortino_ratio: float | None = None
    max_drawdown: float | None = None
    tracking_error: float | None = None
    information_ratio: float | None = None
    wire_keys: frozenset[str] | None = field(default=None, compare=False, repr=False)

    def to_dict(self) -> dict[str, float | None]:
        return _render({wire: getattr(self, attr) for wire, attr in RISK_METRIC_KEYS.items()}, self.wire_keys)


@dataclass(frozen=True)
class PerformanceMetrics:
    total_return: float = 0.0
    total_return_percent: float = 0.0
    annualized_return: float | None = None
    ytd_return: float | None = None
    monthly_return: float | None = None
    quarterly_return: float | None = None
    annual_return: float | None = None
    wire_keys: frozenset[str] | None = field(default=None, compare=False, repr=False)

    def to_dict(self) -> dict[str, float | None]:
        return _render(
            {wire: getattr(self, attr) for wire, attr in PERFORMANCE_METRIC_KEYS.items()},
            self.wire_keys,
        )


@dataclass(frozen=True)
class PortfolioSnapshot:
    """
    Point-in-time view of the book.

    Semantics:
        - immutable once constructed
        - a new snapshot replaces the previous one wholesale (no patching)
        - equality is structural, which is what update suppression relies on
        - `timestamp` is None only for a canonical payload that carried none
        - `wire_keys` records which canonical keys the payload carried; it
          shapes to_dict() and takes no part in equality
    """

    timestamp: str | None
    total_value: float = 0.0
    cash_balance: float = 0.0
    positions: tuple[Position, ...] = ()
    daily_change: DailyChange = field(default_factory=DailyChange)
    id: str | None = None
    risk_metrics: RiskMetrics | None = None
    performance_metrics: PerformanceMetrics | None = None
    last_updated: str | None = None
    wire_keys: frozenset[str] | None = field(default=None, compare=False, repr=False)

    def to_dict(self) -> dict[str, Any]:
        """Render the canonical camelCase wire shape; unset optionals are omitted."""
        return _render(
            {
                "id": self.id,
                "timestamp": self.timestamp,
                "totalValue": self.total_value,
                "cashBalance": self.cash_balance,
                "positions": [p.to_dict() for p in self.positions],
                "dailyChange": self.daily_change.to_dict(),
                "riskMetrics": self.risk_metrics.to_dict() if self.risk_metrics is not None else None,
                "performanceMetrics": (
                    self.performance_metrics.to_dict() if self.performance_metrics is not None else None
                ),
                "lastUpdated": self.last_updated,
            },
            self.wire_keys,
        )
