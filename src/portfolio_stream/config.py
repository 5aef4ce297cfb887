from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Mapping
from urllib.parse import urlsplit

from portfolio_stream.runtime.backoff import BackoffPolicy

ENV_BASE_URL = "PORTFOLIO_API_BASE_URL"
ENV_SSE_URL = "PORTFOLIO_SSE_URL"

_DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[2] / "configs" / "stream.json"


def join_url(base_url: str, path: str) -> str:
    """Append `path` to `base_url`; absolute URLs pass through unchanged."""
    if urlsplit(path).scheme:
        return path
    if not base_url:
        return path
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


@dataclass(frozen=True)
class StreamConfig:
    """
    Endpoints and reconnect tuning for the live feeds.

    Notes:
      - `portfolio_url_override` wins over base_url + portfolio_path; it may be
        absolute or a path relative to base_url.
      - read_timeout_s=None keeps an idle stream open indefinitely.
    """

    base_url: str = "http://localhost:8080"
    portfolio_path: str = "/api/stream"
    price_path: str = "/api/price-stream"
    snapshot_path: str = "/api/portfolio"
    portfolio_url_override: str | None = None
    backoff_base_ms: int = 1_000
    backoff_cap_ms: int = 30_000
    connect_timeout_s: float = 10.0
    read_timeout_s: float | None = None

    def __post_init__(self) -> None:
        if self.connect_timeout_s <= 0:
            raise ValueError("connect_timeout_s must be > 0")
        if self.read_timeout_s is not None and self.read_timeout_s <= 0:
            raise ValueError("read_timeout_s must be > 0 or None")
        # validates base/cap
        BackoffPolicy(base_ms=int(self.backoff_base_ms), cap_ms=int(self.backoff_cap_ms))

    @property
    def backoff(self) -> BackoffPolicy:
        return BackoffPolicy(base_ms=int(self.backoff_base_ms), cap_ms=int(self.backoff_cap_ms))

    @property
    def portfolio_url(self) -> str:
        return join_url(self.base_url, self.portfolio_url_override or self.portfolio_path)

    @property
    def price_url(self) -> str:
        return join_url(self.base_url, self.price_path)

    @property
    def snapshot_url(self) -> str:
        return join_url(self.base_url, self.snapshot_path)


_FIELDS = {f.name for f in fields(StreamConfig)}


def load_stream_config(
    path: str | Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> StreamConfig:
    """
    Resolve StreamConfig: dataclass defaults <- JSON file <- environment.

    An explicit `path` must exist; the repo default (configs/stream.json) is
    optional.
    """
    values: dict[str, Any] = {}

    config_path = Path(path) if path is not None else _DEFAULT_CONFIG_PATH
    if path is not None or config_path.exists():
        with config_path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise TypeError("stream config must be a JSON object")
        unknown = set(data) - _FIELDS
        if unknown:
            raise ValueError(f"unknown stream config keys: {sorted(unknown)}")
        values.update(data)

    env = os.environ if environ is None else environ
    if env.get(ENV_BASE_URL):
        values["base_url"] = env[ENV_BASE_URL]
    if env.get(ENV_SSE_URL):
        values["portfolio_url_override"] = env[ENV_SSE_URL]

    return StreamConfig(**values)
