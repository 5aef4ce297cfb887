from __future__ import annotations

from typing import Any, Protocol, TypeVar

T_co = TypeVar("T_co", covariant=True)


class Normalizer(Protocol[T_co]):
    """
    Payload normalizer contract.

    The normalizer is the only place allowed to interpret the server schema.
    It must be pure: no IO, no logging, no state carried between calls.
    """

    def normalize(self, *, raw: Any) -> T_co:
        ...
