from __future__ import annotations

import asyncio
import logging
import threading
from typing import Any, Callable, Mapping

import requests

from ingestion.contracts.stream import OnError, OnMessage, OnOpen
from ingestion.sse.decoder import SSEDecoder
from portfolio_stream.utils.logger import get_logger, log_debug, log_info, log_warn

_LOG_SAMPLE_EVERY = 100
_EVENT_STREAM = "text/event-stream"
_DEFAULT_HEADERS = {"Accept": _EVENT_STREAM, "Cache-Control": "no-cache"}


class StreamClosedByServer(ConnectionError):
    """The server ended the event stream."""


class SSEStreamHandle:
    """One text/event-stream connection read on a daemon thread.

    Threading:
        - the reader thread does blocking IO only
        - every callback is marshalled onto `loop` with call_soon_threadsafe,
          so callers observe events on the loop thread, in arrival order
        - once close() has been called no callback is delivered
    """

    def __init__(
        self,
        *,
        url: str,
        session: requests.Session,
        timeout: tuple[float, float | None],
        headers: Mapping[str, str],
        loop: asyncio.AbstractEventLoop,
        on_open: OnOpen,
        on_message: OnMessage,
        on_error: OnError,
        logger: logging.Logger,
    ) -> None:
        self.url = url
        self._session = session
        self._timeout = timeout
        self._headers = dict(headers)
        self._loop = loop
        self._on_open = on_open
        self._on_message = on_message
        self._on_error = on_error
        self._logger = logger

        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._response: requests.Response | None = None
        self._n_events = 0
        self._thread = threading.Thread(target=self._run, name=f"sse-reader[{url}]", daemon=True)

    @property
    def closed(self) -> bool:
        return self._stop_event.is_set()

    def start(self) -> None:
        self._thread.start()

    def close(self) -> None:
        if self._stop_event.is_set():
            return
        self._stop_event.set()
        with self._lock:
            response, self._response = self._response, None
        if response is not None:
            # unblocks the reader thread
            response.close()
        log_debug(self._logger, "sse.closed", url=self.url, n_events=self._n_events)

    # ------------------------------------------------------------------
    # Loop-side delivery
    # ------------------------------------------------------------------

    def _post(self, fn: Callable[..., None], *args: Any) -> None:
        if self._stop_event.is_set():
            return
        try:
            self._loop.call_soon_threadsafe(self._deliver, fn, args)
        except RuntimeError:
            # loop is closed; nobody is left to notify
            self._stop_event.set()

    def _deliver(self, fn: Callable[..., None], args: tuple[Any, ...]) -> None:
        if self._stop_event.is_set():
            return
        fn(*args)

    # ------------------------------------------------------------------
    # Reader thread
    # ------------------------------------------------------------------

    def _run(self) -> None:
        try:
            response = self._session.get(
                self.url,
                stream=True,
                headers=self._headers,
                timeout=self._timeout,
            )
            with self._lock:
                if self._stop_event.is_set():
                    response.close()
                    return
                self._response = response

            response.raise_for_status()
            content_type = response.headers.get("Content-Type", "")
            if not content_type.lower().startswith(_EVENT_STREAM):
                raise ValueError(f"unexpected content type {content_type!r} for event stream")
            response.encoding = "utf-8"

            self._post(self._on_open)
            self._read(response)
            raise StreamClosedByServer(f"event stream ended by server: {self.url}")
        except Exception as exc:
            if self._stop_event.is_set():
                # close() aborted the read
                return
            log_warn(
                self._logger,
                "sse.read_error",
                url=self.url,
                n_events=self._n_events,
                err_type=type(exc).__name__,
                err=str(exc),
            )
            self._post(self._on_error, exc)
        finally:
            with self._lock:
                response, self._response = self._response, None
            if response is not None:
                response.close()

    def _read(self, response: requests.Response) -> None:
        decoder = SSEDecoder()
        first = True
        # chunk_size=None yields data as it arrives instead of waiting for a full block
        for line in response.iter_lines(chunk_size=None, decode_unicode=True):
            if self._stop_event.is_set():
                return
            if first:
                line = line.lstrip("\ufeff")
                first = False
            event = decoder.feed(line)
            if event is None or event.event != "message":
                continue
            self._n_events += 1
            if self._n_events % _LOG_SAMPLE_EVERY == 0:
                log_debug(
                    self._logger,
                    "sse.events_received",
                    url=self.url,
                    n_events=self._n_events,
                    last_event_id=decoder.last_event_id,
                )
            self._post(self._on_message, event.data)


class SSEStreamConnection:
    """StreamConnection over HTTP text/event-stream, backed by `requests`.

    Parameters
    ----------
    session:
        Optional shared requests.Session (a private one is created otherwise).
    connect_timeout_s / read_timeout_s:
        Passed to requests as (connect, read). The read timeout is None by
        default: an idle stream stays open.
    loop:
        Loop receiving callbacks. Defaults to the loop running at open().
    """

    def __init__(
        self,
        *,
        session: requests.Session | None = None,
        connect_timeout_s: float = 10.0,
        read_timeout_s: float | None = None,
        headers: Mapping[str, str] | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if connect_timeout_s <= 0:
            raise ValueError("connect_timeout_s must be > 0")
        self._session = session or requests.Session()
        self._timeout = (float(connect_timeout_s), read_timeout_s)
        self._headers = {**_DEFAULT_HEADERS, **(headers or {})}
        self._loop = loop
        self._logger = logger or get_logger(f"ingestion.sse.{self.__class__.__name__}")

    def open(
        self,
        url: str,
        *,
        on_open: OnOpen,
        on_message: OnMessage,
        on_error: OnError,
    ) -> SSEStreamHandle:
        loop = self._loop or asyncio.get_running_loop()
        handle = SSEStreamHandle(
            url=url,
            session=self._session,
            timeout=self._timeout,
            headers=self._headers,
            loop=loop,
            on_open=on_open,
            on_message=on_message,
            on_error=on_error,
            logger=self._logger,
        )
        log_info(self._logger, "sse.connect", url=url)
        handle.start()
        return handle
