from __future__ import annotations

from dataclasses import dataclass

BASE_DELAY_MS = 1_000
CAP_DELAY_MS = 30_000


def backoff_delay_ms(attempt: int, *, base_ms: int = BASE_DELAY_MS, cap_ms: int = CAP_DELAY_MS) -> int:
    """delay = min(base_ms * 2**attempt, cap_ms). Pure; attempt counts from 0."""
    if attempt < 0:
        raise ValueError("attempt must be >= 0")
    if base_ms <= 0:
        return 0
    # past this point the product always exceeds the cap; skip the big int
    if attempt >= cap_ms.bit_length():
        return int(cap_ms)
    return int(min(base_ms * (1 << attempt), cap_ms))


@dataclass(frozen=True)
class BackoffPolicy:
    base_ms: int = BASE_DELAY_MS
    cap_ms: int = CAP_DELAY_MS

    def __post_init__(self) -> None:
        if self.base_ms < 0:
            raise ValueError("base_ms must be >= 0")
        if self.cap_ms < self.base_ms:
            raise ValueError("cap_ms must be >= base_ms")

    def delay_ms(self, attempt: int) -> int:
        return backoff_delay_ms(attempt, base_ms=self.base_ms, cap_ms=self.cap_ms)
