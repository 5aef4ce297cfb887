from __future__ import annotations

import logging
from typing import Iterable
from urllib.parse import urlencode

from ingestion.contracts.stream import StreamConnection
from ingestion.prices.normalize import PriceBook, apply_tick
from portfolio_stream.runtime.backoff import BackoffPolicy
from portfolio_stream.runtime.client import ReconnectingStreamClient
from portfolio_stream.runtime.scheduler import Scheduler
from portfolio_stream.runtime.state import StateCell
from portfolio_stream.utils.logger import get_logger, log_info


def normalize_symbols(symbols: Iterable[str]) -> frozenset[str]:
    """Order-independent subscription set; blank entries are dropped."""
    out: set[str] = set()
    for sym in symbols:
        if sym is None:
            continue
        s = str(sym).strip()
        if s:
            out.add(s)
    return frozenset(out)


def price_stream_url(endpoint: str, symbols: Iterable[str]) -> str:
    query = urlencode({"symbols": ",".join(sorted(normalize_symbols(symbols)))}, safe=",")
    sep = "&" if "?" in endpoint else "?"
    return f"{endpoint}{sep}{query}"


class PriceStreamClient:
    """
    Symbol-keyed price feed over a single connection.

    The subscription set is part of the feed identity:
        - empty set       -> disposed, stays IDLE
        - changed set     -> old connection disposed, new one started
                             against ?symbols=<sorted,comma,joined>
        - same set        -> nothing happens (order is irrelevant)

    There is no incremental re-subscription. Published value is a
    symbol -> PriceTick mapping; stored prices survive a re-subscription.
    """

    def __init__(
        self,
        *,
        endpoint: str,
        connection: StreamConnection,
        cell: StateCell[PriceBook] | None = None,
        backoff: BackoffPolicy | None = None,
        scheduler: Scheduler | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._symbols: frozenset[str] = frozenset()
        self._logger = logger or get_logger("portfolio_stream.runtime.price_stream")
        self._client: ReconnectingStreamClient[PriceBook] = ReconnectingStreamClient(
            url=endpoint,
            connection=connection,
            reducer=apply_tick,
            cell=cell,
            backoff=backoff,
            scheduler=scheduler,
            name="prices",
        )

    @property
    def client(self) -> ReconnectingStreamClient[PriceBook]:
        return self._client

    @property
    def symbols(self) -> tuple[str, ...]:
        return tuple(sorted(self._symbols))

    def set_symbols(self, symbols: Iterable[str]) -> bool:
        """Apply a new subscription set. Returns True if the connection was rebuilt or torn down."""
        wanted = normalize_symbols(symbols)
        if wanted == self._symbols:
            return False

        previous = self._symbols
        self._symbols = wanted
        self._client.dispose()
        if not wanted:
            log_info(self._logger, "prices.unsubscribed", previous=sorted(previous))
            return True

        self._client.url = price_stream_url(self._endpoint, wanted)
        log_info(
            self._logger,
            "prices.resubscribe",
            previous=sorted(previous),
            symbols=sorted(wanted),
            url=self._client.url,
        )
        self._client.start()
        return True

    def refresh(self) -> None:
        if not self._symbols:
            return
        self._client.refresh()

    def dispose(self) -> None:
        self._symbols = frozenset()
        self._client.dispose()
