from __future__ import annotations

import math
from typing import Any, Mapping

_EMPTY: Mapping[str, Any] = {}


def as_mapping(raw: Any) -> Mapping[str, Any]:
    """Read anything that is not a mapping as an empty one."""
    return raw if isinstance(raw, Mapping) else _EMPTY


def first_present(raw: Mapping[str, Any], *keys: str) -> Any:
    """Value of the first key present with a non-None value, else None."""
    for key in keys:
        value = raw.get(key)
        if value is not None:
            return value
    return None


def as_float(value: Any, default: float = 0.0) -> float:
    # unparseable and non-finite values fall back to the default
    if value is None:
        return default
    try:
        out = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(out):
        return default
    return out


def as_optional_float(value: Any) -> float | None:
    if value is None:
        return None
    out = as_float(value, default=math.nan)
    return None if math.isnan(out) else out


def as_optional_str(value: Any) -> str | None:
    return None if value is None else str(value)
