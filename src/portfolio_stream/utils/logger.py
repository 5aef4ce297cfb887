from __future__ import annotations

import json
import logging
import logging.config
from dataclasses import asdict, is_dataclass
from datetime import date, datetime, timezone
from enum import Enum
from functools import lru_cache
from logging import Logger
from pathlib import Path
from typing import Any, Mapping

_DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[3] / "configs" / "logging.json"

_DEFAULT_PROFILE: dict[str, Any] = {
    "level": "INFO",
    "debug": {"enabled": False, "modules": []},
    "handlers": {"console": {"enabled": True}, "file": {"enabled": False}},
    "format": {"json": True, "timestamp_utc": True},
}

# Module state, written only by init_logging().
_CONFIGURED = False
_RUN_ID: str | None = None
_MODE: str | None = None
_DEBUG_ENABLED = False
_DEBUG_MODULES: set[str] = set()
_TIMESTAMP_UTC = True


# ---------------------------------------------------------------------
# Config loading
# ---------------------------------------------------------------------

def _load_logging_config(config_path: str | None = None) -> dict[str, Any]:
    path = Path(config_path) if config_path else _DEFAULT_CONFIG_PATH
    if path.exists():
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)
    return {"active_profile": "default", "profiles": {"default": dict(_DEFAULT_PROFILE)}}


def _select_profile(cfg: Mapping[str, Any], mode: str | None) -> dict[str, Any]:
    profiles = cfg.get("profiles")
    if not isinstance(profiles, Mapping):
        # flat layout: the whole file is one profile
        return dict(cfg)
    name = mode or cfg.get("active_profile") or "default"
    profile = profiles.get(name)
    if profile is None:
        profile = profiles.get("default")
    if profile is None:
        raise KeyError(f"logging profile not found: {name}")
    if not isinstance(profile, Mapping):
        raise TypeError(f"logging profile {name!r} must be a dict")
    return dict(profile)


def _resolve_log_path(template: str, *, run_id: str | None, mode: str | None) -> Path:
    return Path(template.format(run_id=run_id or "adhoc", mode=mode or "default"))


# ---------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------

def safe_jsonable(obj: Any) -> Any:
    """Best-effort conversion of log context into JSON-serializable values."""
    if obj is None or isinstance(obj, (str, int, float, bool)):
        return obj
    if isinstance(obj, Enum):
        return safe_jsonable(obj.value)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Path):
        return obj.as_posix()
    if isinstance(obj, BaseException):
        return f"{type(obj).__name__}: {obj}"
    if is_dataclass(obj) and not isinstance(obj, type):
        return safe_jsonable(asdict(obj))
    if isinstance(obj, Mapping):
        return {str(k): safe_jsonable(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        return [safe_jsonable(v) for v in obj]
    try:
        return str(obj)
    except Exception:
        return "<unrepr>"


def _debug_module_matches(logger_name: str, module: str) -> bool:
    """True when `module` names the logger or a dotted run of its components."""
    if not module:
        return False
    parts = logger_name.split(".")
    wanted = module.split(".")
    n = len(wanted)
    return any(parts[i:i + n] == wanted for i in range(len(parts) - n + 1))


# ---------------------------------------------------------------------
# Filters / formatters
# ---------------------------------------------------------------------

class ContextFilter(logging.Filter):
    """Guarantees record.context and record.category always exist."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "context"):
            record.context = None
        if not hasattr(record, "category"):
            record.category = None
        return True


def _split_context(record: logging.LogRecord) -> tuple[dict[str, Any], str | None]:
    raw = getattr(record, "context", None)
    context = dict(raw) if isinstance(raw, Mapping) else {}
    category = context.pop("category", None) or getattr(record, "category", None)
    if _RUN_ID is not None:
        context.setdefault("run_id", _RUN_ID)
    if _MODE is not None:
        context.setdefault("mode", _MODE)
    return context, category


class JsonFormatter(logging.Formatter):
    """Structured JSON formatter for deterministic, parseable logs."""

    def format(self, record: logging.LogRecord) -> str:
        context, category = _split_context(record)
        if _TIMESTAMP_UTC:
            ts = datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat()
        else:
            ts = datetime.fromtimestamp(record.created).isoformat()
        message = record.getMessage()
        payload: dict[str, Any] = {
            "ts": ts,
            "ts_ms": int(record.created * 1000),
            "level": record.levelname,
            "logger": record.name,
            "module": record.module,
            "event": message,
            "msg": message,
        }
        if category:
            payload["category"] = category
        if context:
            payload["context"] = safe_jsonable(context)
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class TextFormatter(logging.Formatter):
    """Human-readable single-line formatter; context rendered as key=value."""

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-7s %(name)s %(message)s")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context, category = _split_context(record)
        if category:
            context["category"] = category
        if context:
            rendered = " ".join(f"{k}={safe_jsonable(v)}" for k, v in context.items())
            line = f"{line} {rendered}"
        return line


# ---------------------------------------------------------------------
# Bootstrap
# ---------------------------------------------------------------------

def init_logging(
    config_path: str | None = None,
    *,
    run_id: str | None = None,
    mode: str | None = None,
) -> None:
    """
    Configure the root logger from a profile-based logging.json.

    Profile layout:
        {
          "active_profile": "default",
          "profiles": {
            "<name>": {
              "level": "INFO",
              "debug": {"enabled": false, "modules": []},
              "handlers": {"console": {...}, "file": {"enabled": true, "path": "..."}},
              "format": {"json": true, "timestamp_utc": true}
            }
          }
        }

    `mode` selects the profile (falls back to active_profile). The file handler
    path may contain `{run_id}` and `{mode}` placeholders.
    """
    global _CONFIGURED, _RUN_ID, _MODE, _DEBUG_ENABLED, _DEBUG_MODULES, _TIMESTAMP_UTC

    cfg = _load_logging_config(config_path)
    profile = _select_profile(cfg, mode)

    level = str(profile.get("level", "INFO")).upper()
    debug_cfg = profile.get("debug") or {}
    fmt_cfg = profile.get("format") or {}
    handlers_cfg = profile.get("handlers") or {}
    formatter = "json" if fmt_cfg.get("json", True) else "text"

    handlers: dict[str, dict[str, Any]] = {}
    console_cfg = handlers_cfg.get("console") or {}
    if console_cfg.get("enabled", True):
        handlers["console"] = {
            "class": "logging.StreamHandler",
            "level": str(console_cfg.get("level", level)).upper(),
            "formatter": formatter,
            "filters": ["context"],
        }

    file_cfg = handlers_cfg.get("file") or {}
    if file_cfg.get("enabled", False):
        path = _resolve_log_path(
            str(file_cfg.get("path") or "artifacts/logs/{run_id}/{mode}.jsonl"),
            run_id=run_id,
            mode=mode,
        )
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.FileHandler",
            "filename": str(path),
            "encoding": "utf-8",
            "level": str(file_cfg.get("level", level)).upper(),
            "formatter": formatter,
            "filters": ["context"],
        }

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {"context": {"()": ContextFilter}},
            "formatters": {
                "json": {"()": JsonFormatter},
                "text": {"()": TextFormatter},
            },
            "handlers": handlers,
            "root": {"level": level, "handlers": list(handlers)},
        }
    )

    _RUN_ID = run_id
    _MODE = mode
    _DEBUG_ENABLED = bool(debug_cfg.get("enabled", False))
    _DEBUG_MODULES = {str(m) for m in debug_cfg.get("modules", []) or []}
    _TIMESTAMP_UTC = bool(fmt_cfg.get("timestamp_utc", True))
    _CONFIGURED = True


@lru_cache(None)
def get_logger(name: str = "portfolio_stream") -> Logger:
    if not _CONFIGURED:
        init_logging()
    return logging.getLogger(name)


# ---------------------------------------------------------------------
# Structured helpers
# ---------------------------------------------------------------------

def log_debug(logger: Logger, msg: str, **context: Any) -> None:
    if not _DEBUG_ENABLED:
        return
    if _DEBUG_MODULES and not any(_debug_module_matches(logger.name, m) for m in _DEBUG_MODULES):
        return
    logger.debug(msg, extra={"context": context})


def log_info(logger: Logger, msg: str, **context: Any) -> None:
    logger.info(msg, extra={"context": context})


def log_warn(logger: Logger, msg: str, **context: Any) -> None:
    logger.warning(msg, extra={"context": context})


def log_error(logger: Logger, msg: str, **context: Any) -> None:
    logger.error(msg, extra={"context": context})


def log_exception(logger: Logger, msg: str, **context: Any) -> None:
    """Log at ERROR with the active exception attached. Call from an except block."""
    logger.exception(msg, extra={"context": context})


def log_data_integrity(logger: Logger, msg: str, **context: Any) -> None:
    logger.warning(msg, extra={"context": {**context, "category": "data_integrity"}})
