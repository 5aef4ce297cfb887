from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Generic, Iterable, Mapping, TypeVar

import requests

from ingestion.contracts.snapshot import PerformanceMetrics, PortfolioSnapshot, Position, RiskMetrics
from ingestion.contracts.stream import StreamConnection
from ingestion.contracts.tick import PriceTick
from ingestion.portfolio.normalize import Clock, PortfolioSnapshotNormalizer
from ingestion.prices.normalize import PriceBook
from ingestion.sse.source import SSEStreamConnection
from portfolio_stream.analytics.summary import PortfolioSummary, check_position_consistency, summarize
from portfolio_stream.config import StreamConfig, load_stream_config
from portfolio_stream.runtime.client import ReconnectingStreamClient
from portfolio_stream.runtime.errors import StreamError
from portfolio_stream.runtime.price_stream import PriceStreamClient
from portfolio_stream.runtime.scheduler import Scheduler
from portfolio_stream.runtime.state import ChangeKind, ConnectionStatus, Listener, StateCell
from portfolio_stream.utils.logger import get_logger, log_data_integrity, log_info, log_warn

T = TypeVar("T")

ErrorCallback = Callable[[StreamError], None]


def _default_connection(config: StreamConfig) -> SSEStreamConnection:
    return SSEStreamConnection(
        connect_timeout_s=config.connect_timeout_s,
        read_timeout_s=config.read_timeout_s,
    )


class UpdateDistributor(Generic[T]):
    """
    Owner of one feed's state for the lifetime of a consumer scope.

    Lifecycle:
        mount()   -> client started
        unmount() -> client disposed (exactly once; repeated calls are no-ops)
        `with distributor:` wraps both.

    Consumers read `cell` (or the convenience properties) and subscribe() to
    change notifications. Republication happens only when the client changes
    its published value; no deduplication is added here.
    """

    def __init__(
        self,
        client: ReconnectingStreamClient[T],
        *,
        on_error: ErrorCallback | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._on_error = on_error
        self._mounted = False
        self._logger = logger or get_logger(f"portfolio_stream.live.{client.name}")
        # the cell belongs to this distributor's client, so the subscription lives as long as it does
        client.cell.subscribe(self._on_change)

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def cell(self) -> StateCell[T]:
        return self._client.cell

    @property
    def value(self) -> T | None:
        return self._client.cell.value

    @property
    def error(self) -> StreamError | None:
        return self._client.cell.error

    @property
    def status(self) -> ConnectionStatus:
        return self._client.cell.status

    @property
    def is_connected(self) -> bool:
        return self.status.is_connected

    @property
    def reconnect_attempts(self) -> int:
        return self.status.attempts

    @property
    def mounted(self) -> bool:
        return self._mounted

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        return self._client.cell.subscribe(listener)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def mount(self) -> None:
        if self._mounted:
            return
        self._mounted = True
        self._start()

    def unmount(self) -> None:
        if not self._mounted:
            return
        self._mounted = False
        self._stop()

    def refresh(self) -> None:
        self._client.refresh()

    def __enter__(self) -> UpdateDistributor[T]:
        self.mount()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.unmount()

    def _start(self) -> None:
        self._client.start()

    def _stop(self) -> None:
        self._client.dispose()

    # ------------------------------------------------------------------
    # Change reporting
    # ------------------------------------------------------------------

    def _on_change(self, cell: StateCell[Any], changes: frozenset[ChangeKind]) -> None:
        if ChangeKind.ERROR in changes and cell.error is not None:
            log_warn(
                self._logger,
                "feed.connection_error",
                feed=cell.name,
                err_type=type(cell.error).__name__,
                err=str(cell.error),
                attempts=cell.status.attempts,
            )
            if self._on_error is not None:
                self._on_error(cell.error)
        if ChangeKind.STATUS in changes and cell.status.is_connected:
            log_info(self._logger, "feed.connected", feed=cell.name)


class PortfolioDistributor(UpdateDistributor[PortfolioSnapshot]):
    """Portfolio snapshot feed for one consumer scope."""

    def __init__(
        self,
        *,
        config: StreamConfig | None = None,
        connection: StreamConnection | None = None,
        scheduler: Scheduler | None = None,
        session: requests.Session | None = None,
        on_error: ErrorCallback | None = None,
        now: Clock | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config or load_stream_config()
        self._session = session
        self._normalizer = PortfolioSnapshotNormalizer(now=now)
        client: ReconnectingStreamClient[PortfolioSnapshot] = ReconnectingStreamClient(
            url=self._config.portfolio_url,
            connection=connection or _default_connection(self._config),
            reducer=self._normalize,
            backoff=self._config.backoff,
            scheduler=scheduler,
            name="portfolio",
        )
        super().__init__(client, on_error=on_error, logger=logger)

    def _normalize(self, _previous: PortfolioSnapshot | None, raw: Any) -> PortfolioSnapshot:
        return self._normalizer.normalize(raw=raw)

    @property
    def snapshot(self) -> PortfolioSnapshot | None:
        return self.value

    @property
    def positions(self) -> tuple[Position, ...]:
        snap = self.value
        return snap.positions if snap is not None else ()

    @property
    def risk_metrics(self) -> RiskMetrics | None:
        snap = self.value
        return snap.risk_metrics if snap is not None else None

    @property
    def performance_metrics(self) -> PerformanceMetrics | None:
        snap = self.value
        return snap.performance_metrics if snap is not None else None

    @property
    def is_loading(self) -> bool:
        return not self.is_connected and self.error is None

    def summary(self) -> PortfolioSummary | None:
        snap = self.value
        return summarize(snap) if snap is not None else None

    async def bootstrap(self) -> PortfolioSnapshot | None:
        """
        Fetch the current snapshot over REST and seed the cell with it.

        The stream wins: nothing is seeded once a streamed snapshot exists.
        Failures are logged and leave the cell untouched.
        """
        url = self._config.snapshot_url
        try:
            raw = await asyncio.to_thread(self._fetch_snapshot, url)
        except (requests.RequestException, ValueError) as exc:
            log_warn(
                self._logger,
                "feed.bootstrap_failed",
                url=url,
                err_type=type(exc).__name__,
                err=str(exc),
            )
            return None
        snapshot = self._normalizer.normalize(raw=raw)
        seeded = self._client.seed(snapshot)
        log_info(self._logger, "feed.bootstrapped", url=url, seeded=seeded, n_positions=len(snapshot.positions))
        return snapshot

    def _fetch_snapshot(self, url: str) -> Any:
        timeout = (self._config.connect_timeout_s, self._config.read_timeout_s or self._config.connect_timeout_s)
        if self._session is not None:
            resp = self._session.get(url, timeout=timeout)
        else:
            resp = requests.get(url, timeout=timeout)
        resp.raise_for_status()
        return resp.json()

    def _on_change(self, cell: StateCell[Any], changes: frozenset[ChangeKind]) -> None:
        super()._on_change(cell, changes)
        if ChangeKind.VALUE in changes and cell.value is not None:
            for issue in check_position_consistency(cell.value):
                log_data_integrity(
                    self._logger,
                    "feed.position_inconsistent",
                    feed=cell.name,
                    symbol=issue.symbol,
                    field=issue.field,
                    expected=issue.expected,
                    actual=issue.actual,
                )


class PriceStream(UpdateDistributor[PriceBook]):
    """
    Price tick feed for one consumer scope.

    set_symbols() may be called before or after mount(); while mounted every
    real change of the set rebuilds the connection.
    """

    def __init__(
        self,
        *,
        config: StreamConfig | None = None,
        connection: StreamConnection | None = None,
        scheduler: Scheduler | None = None,
        symbols: Iterable[str] = (),
        on_error: ErrorCallback | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config or load_stream_config()
        self._wanted: tuple[str, ...] = tuple(symbols)
        self._prices = PriceStreamClient(
            endpoint=self._config.price_url,
            connection=connection or _default_connection(self._config),
            backoff=self._config.backoff,
            scheduler=scheduler,
        )
        super().__init__(self._prices.client, on_error=on_error, logger=logger)

    @property
    def prices(self) -> Mapping[str, PriceTick]:
        return self.value or {}

    @property
    def symbols(self) -> tuple[str, ...]:
        return self._prices.symbols

    def set_symbols(self, symbols: Iterable[str]) -> bool:
        self._wanted = tuple(symbols)
        if not self._mounted:
            return False
        return self._prices.set_symbols(self._wanted)

    def refresh(self) -> None:
        self._prices.refresh()

    def _start(self) -> None:
        self._prices.set_symbols(self._wanted)

    def _stop(self) -> None:
        self._prices.dispose()
