from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generic, TypeVar

from portfolio_stream.runtime.errors import StreamError
from portfolio_stream.utils.logger import get_logger, log_warn

T = TypeVar("T")


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED_WITH_ERROR = "closed_with_error"


@dataclass(frozen=True)
class ConnectionStatus:
    state: ConnectionState = ConnectionState.IDLE
    attempts: int = 0

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.OPEN


class ChangeKind(str, Enum):
    VALUE = "value"
    ERROR = "error"
    STATUS = "status"


Listener = Callable[["StateCell[Any]", frozenset[ChangeKind]], None]

_UNSET: Any = object()


class StateCell(Generic[T]):
    """
    Single-writer, many-reader holder of the latest feed state.

    Semantics:
        - readers get the cell by reference and subscribe() to change sets
        - exactly one CellWriter exists per cell (claim_writer() once)
        - a value change is detected by identity: the writer decides what is
          a real change, the cell never deduplicates on its own
        - listeners are called once per publish with every kind that changed
        - a raising listener does not stop the others; the first error is
          re-raised once all have run
    """

    def __init__(self, *, name: str = "feed", logger: logging.Logger | None = None) -> None:
        self.name = name
        self._value: T | None = None
        self._error: StreamError | None = None
        self._status = ConnectionStatus()
        self._version = 0
        self._listeners: list[Listener] = []
        self._writer: CellWriter[T] | None = None
        self._logger = logger or get_logger(f"portfolio_stream.runtime.state.{name}")

    @property
    def value(self) -> T | None:
        return self._value

    @property
    def error(self) -> StreamError | None:
        return self._error

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def version(self) -> int:
        """Incremented on every value change."""
        return self._version

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def claim_writer(self) -> CellWriter[T]:
        if self._writer is not None:
            raise RuntimeError(f"state cell {self.name!r} already has a writer")
        self._writer = CellWriter(self)
        return self._writer

    def _apply(self, value: Any, error: Any, status: Any) -> frozenset[ChangeKind]:
        changed: set[ChangeKind] = set()
        if value is not _UNSET and value is not self._value:
            self._value = value
            self._version += 1
            changed.add(ChangeKind.VALUE)
        if error is not _UNSET and error is not self._error:
            self._error = error
            changed.add(ChangeKind.ERROR)
        if status is not _UNSET and status != self._status:
            self._status = status
            changed.add(ChangeKind.STATUS)
        return frozenset(changed)

    def _notify(self, changes: frozenset[ChangeKind]) -> None:
        # every listener sees the change; the first failure is re-raised afterwards
        first_exc: Exception | None = None
        for listener in list(self._listeners):
            try:
                listener(self, changes)
            except Exception as exc:
                log_warn(
                    self._logger,
                    "state.listener_error",
                    cell=self.name,
                    listener=getattr(listener, "__qualname__", type(listener).__name__),
                    changes=sorted(c.value for c in changes),
                    err_type=type(exc).__name__,
                    err=str(exc),
                )
                if first_exc is None:
                    first_exc = exc
        if first_exc is not None:
            raise first_exc


class CellWriter(Generic[T]):
    """The only handle allowed to mutate a StateCell."""

    def __init__(self, cell: StateCell[T]) -> None:
        self._cell = cell

    @property
    def cell(self) -> StateCell[T]:
        return self._cell

    def publish(
        self,
        *,
        value: T | None = _UNSET,
        error: StreamError | None = _UNSET,
        status: ConnectionStatus = _UNSET,
    ) -> frozenset[ChangeKind]:
        changes = self._cell._apply(value, error, status)
        if changes:
            self._cell._notify(changes)
        return changes
