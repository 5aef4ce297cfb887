from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class PriceTick:
    """
    Canonical price tick.

    Semantics:
        - `symbol`    : instrument symbol exactly as sent by the server
        - `price`     : last traded / quoted price
        - `timestamp` : server-supplied event time (ISO string), if any

    Consumers keep at most one tick per symbol (last-write-wins) and only
    accept a tick whose price differs from the stored one.
    """

    symbol: str
    price: float
    timestamp: str | None = None
