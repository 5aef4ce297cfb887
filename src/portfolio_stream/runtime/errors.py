from __future__ import annotations


class StreamError(Exception):
    """Base class for errors published next to the last-known-good value.

    These are values, not control flow: the client stores them in its state
    cell instead of raising them.
    """


class StreamTransportError(StreamError):
    """Connection dropped or never opened. Recovered by a scheduled reconnect."""

    def __init__(self, message: str, *, url: str, attempt: int, cause: BaseException | None = None):
        super().__init__(message)
        self.url = url
        self.attempt = attempt
        self.cause = cause


class StreamPayloadError(StreamError):
    """A message could not be parsed. The connection stays open."""

    _EXCERPT = 200

    def __init__(self, message: str, *, raw_text: str, cause: BaseException | None = None):
        super().__init__(message)
        self.raw_excerpt = raw_text[: self._EXCERPT]
        self.cause = cause
