from __future__ import annotations

import json
import logging
from typing import Any, Callable, Generic, TypeVar

from ingestion.contracts.stream import StreamConnection, StreamHandle
from portfolio_stream.runtime.backoff import BackoffPolicy
from portfolio_stream.runtime.errors import StreamPayloadError, StreamTransportError
from portfolio_stream.runtime.scheduler import LoopScheduler, Scheduler, TimerHandle
from portfolio_stream.runtime.state import ConnectionState, ConnectionStatus, StateCell
from portfolio_stream.utils.logger import get_logger, log_debug, log_info, log_warn

T = TypeVar("T")

# (last published value, parsed JSON) -> next value; returning the previous
# value (or None) means "nothing new".
Reducer = Callable[[Any, Any], Any]

_LOG_SAMPLE_EVERY = 100


class ReconnectingStreamClient(Generic[T]):
    """
    Reconnecting client for one logical server-push feed.

    State machine:
        IDLE -> CONNECTING -> OPEN
        CONNECTING | OPEN --errored--> CLOSED_WITH_ERROR --timer--> CONNECTING
        any --dispose()--> IDLE

    Guarantees:
        - at most one open connection and at most one pending reconnect timer
        - callbacks from a replaced or closed connection are ignored
        - published data survives errors (stale-while-error)
        - a message is published only if it differs structurally from the
          last published value

    Parameters
    ----------
    url:
        Feed URL. May be changed between connections via the `url` property.
    connection:
        StreamConnection used to open the transport.
    reducer:
        Folds one parsed message into the published value.
    cell:
        StateCell this client writes into (one is created when omitted).
    backoff / scheduler:
        Reconnect delay policy and timer source (defaults: 1s..30s, running loop).
    """

    def __init__(
        self,
        *,
        url: str,
        connection: StreamConnection,
        reducer: Reducer,
        cell: StateCell[T] | None = None,
        backoff: BackoffPolicy | None = None,
        scheduler: Scheduler | None = None,
        name: str = "feed",
        logger: logging.Logger | None = None,
    ) -> None:
        self.name = name
        self._url = url
        self._connection = connection
        self._reducer = reducer
        self._backoff = backoff or BackoffPolicy()
        self._scheduler = scheduler or LoopScheduler()
        self._cell: StateCell[T] = cell if cell is not None else StateCell(name=name)
        self._writer = self._cell.claim_writer()
        self._logger = logger or get_logger(f"portfolio_stream.runtime.client.{name}")

        self._state = ConnectionState.IDLE
        self._attempts = 0
        self._handle: StreamHandle | None = None
        self._timer: TimerHandle | None = None
        self._generation = 0
        self._n_messages = 0

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def url(self) -> str:
        return self._url

    @url.setter
    def url(self, value: str) -> None:
        """Takes effect at the next start()."""
        self._url = value

    @property
    def cell(self) -> StateCell[T]:
        return self._cell

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def attempts(self) -> int:
        return self._attempts

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.OPEN

    @property
    def has_pending_reconnect(self) -> bool:
        return self._timer is not None

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Open a fresh connection, replacing any existing one."""
        self._connect(clear_error=False)

    def refresh(self) -> None:
        """Manual retry: reset backoff and reconnect immediately."""
        log_info(self._logger, "stream.refresh", feed=self.name, url=self._url, attempts=self._attempts)
        self._attempts = 0
        self._connect(clear_error=True)

    def dispose(self) -> None:
        """Cancel the pending timer, close the connection, return to IDLE. Idempotent."""
        active = (
            self._handle is not None
            or self._timer is not None
            or self._state is not ConnectionState.IDLE
        )
        self._generation += 1
        self._cancel_timer()
        self._close_handle()
        if not active:
            return
        self._state = ConnectionState.IDLE
        self._attempts = 0
        log_info(self._logger, "stream.disposed", feed=self.name, url=self._url, n_messages=self._n_messages)
        self._writer.publish(status=self._status())

    def seed(self, value: T) -> bool:
        """Publish `value` only if nothing has been published yet."""
        if value is None or self._cell.value is not None:
            return False
        self._writer.publish(value=value)
        return True

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _connect(self, *, clear_error: bool) -> None:
        self._cancel_timer()
        self._close_handle()
        self._generation += 1
        gen = self._generation
        self._state = ConnectionState.CONNECTING

        log_info(self._logger, "stream.connecting", feed=self.name, url=self._url, attempt=self._attempts)
        try:
            if clear_error:
                self._writer.publish(error=None, status=self._status())
            else:
                self._writer.publish(status=self._status())
        finally:
            # a raising listener must not strand the client in CONNECTING without a connection
            if gen == self._generation:
                self._open(gen)

    def _open(self, gen: int) -> None:
        try:
            handle = self._connection.open(
                self._url,
                on_open=lambda: self._on_open(gen),
                on_message=lambda raw_text: self._on_message(gen, raw_text),
                on_error=lambda exc=None: self._on_error(gen, exc),
            )
        except Exception as exc:
            # a connection that cannot be created is a transport failure
            self._on_error(gen, exc)
            return

        if gen != self._generation or self._state is ConnectionState.CLOSED_WITH_ERROR:
            handle.close()
            return
        self._handle = handle

    def _on_open(self, gen: int) -> None:
        if gen != self._generation or self._state is ConnectionState.CLOSED_WITH_ERROR:
            return
        self._state = ConnectionState.OPEN
        self._attempts = 0
        log_info(self._logger, "stream.opened", feed=self.name, url=self._url)
        self._writer.publish(error=None, status=self._status())

    def _on_message(self, gen: int, raw_text: str) -> None:
        if gen != self._generation or self._state is ConnectionState.CLOSED_WITH_ERROR:
            return
        self._n_messages += 1
        try:
            payload = json.loads(raw_text)
        except ValueError as exc:
            log_warn(
                self._logger,
                "stream.payload_error",
                feed=self.name,
                url=self._url,
                n_messages=self._n_messages,
                err_type=type(exc).__name__,
                err=str(exc),
            )
            error = StreamPayloadError(
                f"failed to parse {self.name} update",
                raw_text=raw_text,
                cause=exc,
            )
            self._writer.publish(error=error)
            return

        value = self._reduce(payload)
        if value is None or value == self._cell.value:
            if self._n_messages % _LOG_SAMPLE_EVERY == 0:
                log_debug(self._logger, "stream.unchanged", feed=self.name, n_messages=self._n_messages)
            return
        self._writer.publish(value=value)

    def _reduce(self, payload: Any) -> Any:
        try:
            return self._reducer(self._cell.value, payload)
        except Exception as exc:
            log_warn(
                self._logger,
                "stream.normalize_drop",
                feed=self.name,
                url=self._url,
                n_messages=self._n_messages,
                raw_type=type(payload).__name__,
                err_type=type(exc).__name__,
                err=str(exc),
            )
            raise

    def _on_error(self, gen: int, exc: BaseException | None) -> None:
        if gen != self._generation or self._state is ConnectionState.CLOSED_WITH_ERROR:
            return
        self._close_handle()
        self._cancel_timer()
        self._state = ConnectionState.CLOSED_WITH_ERROR

        attempt = self._attempts
        delay_ms = self._backoff.delay_ms(attempt)
        self._timer = self._scheduler.call_later(delay_ms / 1000.0, lambda: self._on_timer(gen))
        self._attempts += 1

        log_warn(
            self._logger,
            "stream.reconnect_scheduled",
            feed=self.name,
            url=self._url,
            attempt=attempt,
            backoff_ms=delay_ms,
            err_type=type(exc).__name__ if exc is not None else None,
            err=str(exc) if exc is not None else None,
        )
        error = StreamTransportError(
            f"connection to {self.name} updates failed",
            url=self._url,
            attempt=attempt,
            cause=exc,
        )
        self._writer.publish(error=error, status=self._status())

    def _on_timer(self, gen: int) -> None:
        if gen != self._generation:
            return
        self._timer = None
        self.start()

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    def _status(self) -> ConnectionStatus:
        return ConnectionStatus(state=self._state, attempts=self._attempts)

    def _cancel_timer(self) -> None:
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()

    def _close_handle(self) -> None:
        handle, self._handle = self._handle, None
        if handle is not None:
            handle.close()
