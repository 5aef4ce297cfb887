from __future__ import annotations

from typing import Any, Mapping

from ingestion.contracts.tick import PriceTick

PriceBook = Mapping[str, PriceTick]


def normalize_price_tick(raw: Any) -> PriceTick | None:
    """
    Normalize one price-stream message.

    Returns None for anything that is not a tick: subscription acks,
    heartbeats, messages without a symbol or without a numeric price.
    """
    if not isinstance(raw, Mapping):
        return None
    symbol = raw.get("symbol")
    price = raw.get("price")
    if not symbol:
        return None
    # bool is an int subclass but never a price
    if isinstance(price, bool) or not isinstance(price, (int, float)):
        return None
    ts = raw.get("timestamp")
    if ts is None:
        ts = raw.get("ts")
    return PriceTick(
        symbol=str(symbol),
        price=float(price),
        timestamp=str(ts) if ts is not None else None,
    )


def apply_tick(book: PriceBook | None, raw: Any) -> PriceBook | None:
    """
    Fold one raw message into a symbol -> tick book.

    Returns `book` itself (same object) when the message is not a tick or
    does not change the stored price for its symbol; otherwise a new book.
    """
    tick = normalize_price_tick(raw)
    if tick is None:
        return book
    current = book or {}
    existing = current.get(tick.symbol)
    if existing is not None and existing.price == tick.price:
        return book
    updated = dict(current)
    updated[tick.symbol] = tick
    return updated
