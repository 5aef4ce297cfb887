from __future__ import annotations

from dataclasses import asdict, dataclass

import numpy as np
import pandas as pd

from ingestion.contracts.snapshot import DailyChange, PortfolioSnapshot

POSITION_COLUMNS = [
    "id",
    "symbol",
    "quantity",
    "average_price",
    "current_price",
    "market_value",
    "pnl",
    "pnl_percent",
    "sector",
    "asset_class",
    "currency",
]
_NUMERIC_COLUMNS = ["quantity", "average_price", "current_price", "market_value", "pnl", "pnl_percent"]

UNCLASSIFIED = "Unclassified"


@dataclass(frozen=True)
class AllocationSlice:
    key: str
    value: float
    percentage: float


@dataclass(frozen=True)
class PortfolioSummary:
    total_value: float
    cash_balance: float
    invested_value: float
    total_pnl: float
    total_pnl_percent: float
    daily_change: DailyChange
    asset_allocation: tuple[AllocationSlice, ...]
    sector_allocation: tuple[AllocationSlice, ...]


@dataclass(frozen=True)
class PositionInconsistency:
    symbol: str
    field: str
    expected: float
    actual: float


def positions_frame(snapshot: PortfolioSnapshot) -> pd.DataFrame:
    """One row per position, in snapshot order."""
    df = pd.DataFrame([asdict(p) for p in snapshot.positions], columns=POSITION_COLUMNS)
    return df.astype({c: "float64" for c in _NUMERIC_COLUMNS})


def _allocation(df: pd.DataFrame, column: str) -> tuple[AllocationSlice, ...]:
    if df.empty:
        return ()
    keys = df[column].fillna(UNCLASSIFIED).astype(str)
    grouped = df["market_value"].groupby(keys, sort=True).sum()
    total = float(grouped.sum())
    return tuple(
        AllocationSlice(
            key=str(key),
            value=float(value),
            percentage=float(value) / total * 100.0 if total else 0.0,
        )
        for key, value in grouped.items()
    )


def summarize(snapshot: PortfolioSnapshot) -> PortfolioSummary:
    """Derive invested value, total pnl and allocations from a snapshot."""
    df = positions_frame(snapshot)
    invested = float((df["quantity"] * df["average_price"]).sum())
    total_pnl = float(df["pnl"].sum())
    return PortfolioSummary(
        total_value=snapshot.total_value,
        cash_balance=snapshot.cash_balance,
        invested_value=invested,
        total_pnl=total_pnl,
        total_pnl_percent=total_pnl / invested * 100.0 if invested else 0.0,
        daily_change=snapshot.daily_change,
        asset_allocation=_allocation(df, "asset_class"),
        sector_allocation=_allocation(df, "sector"),
    )


def check_position_consistency(
    snapshot: PortfolioSnapshot,
    *,
    rel_tol: float = 1e-6,
    abs_tol: float = 1e-6,
) -> list[PositionInconsistency]:
    """
    Report positions breaking the valuation invariants:
        market_value ~= quantity * current_price
        pnl          ~= market_value - quantity * average_price
    """
    df = positions_frame(snapshot)
    if df.empty:
        return []

    qty = df["quantity"].to_numpy()
    market_value = df["market_value"].to_numpy()
    pnl = df["pnl"].to_numpy()
    expected_mv = qty * df["current_price"].to_numpy()
    expected_pnl = market_value - qty * df["average_price"].to_numpy()

    out: list[PositionInconsistency] = []
    checks = (
        ("market_value", market_value, expected_mv),
        ("pnl", pnl, expected_pnl),
    )
    for field, actual, expected in checks:
        bad = ~np.isclose(actual, expected, rtol=rel_tol, atol=abs_tol)
        for i in np.flatnonzero(bad):
            out.append(
                PositionInconsistency(
                    symbol=str(df["symbol"].iat[i]),
                    field=field,
                    expected=float(expected[i]),
                    actual=float(actual[i]),
                )
            )
    return out
