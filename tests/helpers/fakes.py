from __future__ import annotations

import json
from typing import Any, Callable


class FakeHandle:
    def __init__(
        self,
        url: str,
        on_open: Callable[[], None],
        on_message: Callable[[str], None],
        on_error: Callable[[BaseException | None], None],
    ) -> None:
        self.url = url
        self.on_open = on_open
        self.on_message = on_message
        self.on_error = on_error
        self.closed = False
        self.close_calls = 0

    def close(self) -> None:
        self.close_calls += 1
        self.closed = True

    # A real handle delivers nothing after close(); emit_* mirrors that.
    def emit_open(self) -> None:
        if not self.closed:
            self.on_open()

    def emit_message(self, payload: Any) -> None:
        if not self.closed:
            self.on_message(payload if isinstance(payload, str) else json.dumps(payload))

    def emit_error(self, exc: BaseException | None = None) -> None:
        if not self.closed:
            self.on_error(exc if exc is not None else ConnectionError("stream dropped"))


class FakeStreamConnection:
    def __init__(self, *, fail_with: BaseException | None = None) -> None:
        self.handles: list[FakeHandle] = []
        self.fail_with = fail_with

    def open(self, url: str, *, on_open, on_message, on_error) -> FakeHandle:
        if self.fail_with is not None:
            raise self.fail_with
        handle = FakeHandle(url, on_open, on_message, on_error)
        self.handles.append(handle)
        return handle

    @property
    def latest(self) -> FakeHandle:
        return self.handles[-1]

    @property
    def open_handles(self) -> list[FakeHandle]:
        return [h for h in self.handles if not h.closed]


class FakeTimer:
    def __init__(self, delay_s: float, callback: Callable[[], None]) -> None:
        self.delay_s = delay_s
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self) -> None:
        self.cancelled = True


class FakeScheduler:
    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []

    def call_later(self, delay_s: float, callback: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(delay_s, callback)
        self.timers.append(timer)
        return timer

    @property
    def pending(self) -> list[FakeTimer]:
        return [t for t in self.timers if not t.cancelled and not t.fired]

    def fire_next(self) -> None:
        timer = self.pending[0]
        timer.fired = True
        timer.callback()
