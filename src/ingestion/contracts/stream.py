from __future__ import annotations

from typing import Callable, Protocol

OnOpen = Callable[[], None]
OnMessage = Callable[[str], None]
OnError = Callable[[BaseException | None], None]


class StreamHandle(Protocol):
    """Handle to one open (or opening) long-lived connection."""

    def close(self) -> None:
        """
        Close the connection.

        Must be idempotent and safe on an already-closed handle. Once close()
        returns, none of the handle's callbacks may be invoked again.
        """
        ...


class StreamConnection(Protocol):
    """
    Stream transport contract.

    A StreamConnection is responsible ONLY for:
        - opening one long-lived connection to one URL
        - reporting `opened`, `message(raw_text)` and `errored` events

    It MUST NOT:
        - reconnect
        - parse message payloads
        - keep state across handles

    Callbacks are invoked on the event loop thread that called open().
    """

    def open(
        self,
        url: str,
        *,
        on_open: OnOpen,
        on_message: OnMessage,
        on_error: OnError,
    ) -> StreamHandle:
        ...
