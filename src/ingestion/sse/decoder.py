from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class SSEEvent:
    event: str = "message"
    data: str = ""
    id: str | None = None
    retry_ms: int | None = None


class SSEDecoder:
    """
    Incremental text/event-stream decoder.

    Feed it one line at a time (line terminator already stripped); it returns
    an SSEEvent whenever a blank line completes an event with data.

    Rules:
        - `data:` lines accumulate, joined by "\\n"
        - a line starting with ":" is a comment
        - a single space after the colon is not part of the value
        - `event:` sets the type of the pending event (default "message")
        - `id:` sets the last event id (ignored when it contains NUL)
        - `retry:` with an all-digit value is recorded
        - blocks without any `data:` line are dropped
    """

    def __init__(self) -> None:
        self._data: list[str] = []
        self._event = ""
        self._last_id: str | None = None
        self._retry_ms: int | None = None

    @property
    def last_event_id(self) -> str | None:
        return self._last_id

    def feed(self, line: str) -> SSEEvent | None:
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None

        field, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if field == "data":
            self._data.append(value)
        elif field == "event":
            self._event = value
        elif field == "id":
            if "\x00" not in value:
                self._last_id = value
        elif field == "retry":
            if value.isdigit():
                self._retry_ms = int(value)
        return None

    def _dispatch(self) -> SSEEvent | None:
        if not self._data:
            self._event = ""
            return None
        event = SSEEvent(
            event=self._event or "message",
            data="\n".join(self._data),
            id=self._last_id,
            retry_ms=self._retry_ms,
        )
        self._data = []
        self._event = ""
        return event
