import json
import logging
import logging.config
import time
from collections.abc import Mapping
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from enum import Enum
from logging import Logger
from pathlib import Path
from typing import Any, Iterator

import numpy as np

_PACKAGE = "manifold_index"

_RUN_ID: str | None = None
_MODE: str | None = None

# Cycle currently being computed on this thread: anything with `timestamp` and `state`.
_CYCLE: ContextVar[Any] = ContextVar("manifold_index_cycle", default=None)

# ---------------------------------------------------------------------
# Log categories
# ---------------------------------------------------------------------

CATEGORY_DATA_INTEGRITY = "data_integrity"
CATEGORY_CYCLE = "cycle_trace"
CATEGORY_SELECTION = "selection_trace"
CATEGORY_WEIGHTING = "weighting_trace"
CATEGORY_CHAIN = "chain_accounting"


# ---------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------

def _overlay(base: dict[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    out = dict(base)
    for k, v in override.items():
        out[k] = _overlay(out[k], v) if isinstance(v, Mapping) and isinstance(out.get(k), dict) else v
    return out


def load_profile(config_path: str | Path, name: str | None = None) -> tuple[str, dict[str, Any]]:
    """
    Read `config_path` and return (profile name, profile laid over "default").

    `name` falls back to the file's `active_profile`, then "default".
    """
    with Path(config_path).open("r", encoding="utf-8") as f:
        cfg = json.load(f)
    profiles = cfg.get("profiles")
    if not isinstance(profiles, dict):
        raise TypeError(f"{config_path}: 'profiles' must be an object")
    chosen = str(name or cfg.get("active_profile") or "default")
    if chosen not in profiles:
        raise KeyError(f"logging profile not found: {chosen}")
    return chosen, _overlay(dict(profiles.get("default") or {}), profiles[chosen])


def _handler(kind: str, spec: Mapping[str, Any], formatter: str) -> dict[str, Any]:
    handler: dict[str, Any] = {"formatter": formatter, "filters": ["cycle"]}
    if "level" in spec:
        handler["level"] = str(spec["level"]).upper()
    if kind == "console":
        handler.update({"class": "logging.StreamHandler", "stream": "ext://sys.stdout"})
    else:
        path = Path(str(spec.get("path", "artifacts/logs/{mode}-{run_id}.jsonl")).format(
            run_id=_RUN_ID or "run", mode=_MODE or "default"
        ))
        path.parent.mkdir(parents=True, exist_ok=True)
        handler.update({"class": "logging.FileHandler", "filename": str(path), "encoding": "utf-8"})
    return handler


def _dict_config(profile: Mapping[str, Any]) -> dict[str, Any]:
    level = str(profile.get("level", "INFO")).upper()
    formatter = "json" if (profile.get("format") or {}).get("json", True) else "text"

    handlers = {
        kind: _handler(kind, spec, formatter)
        for kind, spec in (profile.get("handlers") or {}).items()
        if isinstance(spec, Mapping) and spec.get("enabled", kind == "console")
    }

    # debug.modules lowers single subpackages (e.g. "selection") to DEBUG
    debug = profile.get("debug") or {}
    loggers = {
        f"{_PACKAGE}.{module}": {"level": "DEBUG"}
        for module in (debug.get("modules") or [])
        if debug.get("enabled", False)
    }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "filters": {"cycle": {"()": f"{__name__}.ContextFilter"}},
        "formatters": {
            "json": {"()": f"{__name__}.JsonFormatter"},
            "text": {"()": f"{__name__}.TextFormatter"},
        },
        "handlers": handlers,
        "loggers": loggers,
        "root": {"level": level, "handlers": list(handlers)},
    }


def init_logging(
    config_path: str = "configs/logging.json",
    *,
    run_id: str | None = None,
    mode: str | None = None,
) -> None:
    """Configure the root logger from one profile of a JSON profile file."""
    global _RUN_ID, _MODE

    name, profile = load_profile(config_path, mode)
    _RUN_ID = run_id
    _MODE = mode or name

    # levels left by an earlier profile would otherwise survive dictConfig
    for logger_name, logger in list(logging.root.manager.loggerDict.items()):
        if logger_name.startswith(_PACKAGE) and isinstance(logger, logging.Logger):
            logger.setLevel(logging.NOTSET)

    logging.config.dictConfig(_dict_config(profile))


# ---------------------------------------------------------------------
# Cycle context
# ---------------------------------------------------------------------

@contextmanager
def cycle_context(trace: Any) -> Iterator[Any]:
    """
    Tag every record emitted inside the block with the cycle's timestamp and
    its state at emission time. Scoped to the current thread.
    """
    token = _CYCLE.set(trace)
    try:
        yield trace
    finally:
        _CYCLE.reset(token)


def current_cycle() -> Any:
    return _CYCLE.get()


class ContextFilter(logging.Filter):
    """Ensures `record.context` is a dict and adds run and cycle fields to it."""

    def filter(self, record: logging.LogRecord) -> bool:
        ctx = getattr(record, "context", None)
        ctx = dict(ctx) if isinstance(ctx, Mapping) else ({} if ctx is None else {"value": safe_jsonable(ctx)})

        trace = _CYCLE.get()
        if trace is not None:
            ctx.setdefault("cycle_ts", int(trace.timestamp))
            ctx.setdefault("cycle_state", safe_jsonable(trace.state))
        if _RUN_ID is not None:
            ctx.setdefault("run_id", _RUN_ID)
        if _MODE is not None:
            ctx.setdefault("mode", _MODE)

        record.context = ctx
        return True


# ---------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------

_LIFTED = ("category", "cycle_ts", "cycle_state")


class JsonFormatter(logging.Formatter):
    """
    One JSON line per record:

        {"ts", "level", "logger", "event", "category"?, "cycle_ts"?, "cycle_state"?, "context"?}
    """

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "event": record.getMessage(),
        }
        ctx = dict(getattr(record, "context", None) or {})
        for key in _LIFTED:
            if key in ctx:
                payload[key] = ctx.pop(key)
        if ctx:
            payload["context"] = ctx
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(safe_jsonable(payload), ensure_ascii=False)


class TextFormatter(logging.Formatter):
    """Human-readable line with the context as trailing key=value pairs."""

    converter = time.gmtime

    def __init__(self) -> None:
        super().__init__("%(asctime)s %(levelname)-7s %(name)s %(message)s", "%Y-%m-%dT%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        ctx = getattr(record, "context", None) or {}
        if ctx:
            line += " " + " ".join(f"{k}={json.dumps(safe_jsonable(v))}" for k, v in ctx.items())
        return line


# ---------------------------------------------------------------------
# Emitters
# ---------------------------------------------------------------------

def get_logger(name: str = _PACKAGE) -> Logger:
    return logging.getLogger(name)


def safe_jsonable(x: Any) -> Any:
    """Reduce snapshots, enums, numpy values and containers to JSON types."""
    if isinstance(x, np.generic):
        x = x.item()
    if x is None or isinstance(x, (str, bool, int)):
        return x
    if isinstance(x, float):
        return x if np.isfinite(x) else str(x)
    if isinstance(x, Enum):
        return safe_jsonable(x.value)
    if isinstance(x, np.ndarray):
        return safe_jsonable(x.tolist())
    if isinstance(x, Mapping):
        return {k if isinstance(k, str) else str(safe_jsonable(k)): safe_jsonable(v) for k, v in x.items()}
    if isinstance(x, (list, tuple, set, frozenset)):
        return [safe_jsonable(v) for v in x]
    to_dict = getattr(x, "to_dict", None)
    if callable(to_dict) and not isinstance(x, type):
        return safe_jsonable(to_dict())
    return str(x)


def _emit(logger: Logger, level: int, msg: str, context: dict[str, Any]) -> None:
    if logger.isEnabledFor(level):
        logger.log(level, msg, extra={"context": safe_jsonable(context)}, stacklevel=3)


def log_debug(logger: Logger, msg: str, **context):
    _emit(logger, logging.DEBUG, msg, context)


def log_info(logger: Logger, msg: str, **context):
    _emit(logger, logging.INFO, msg, context)


def log_warn(logger: Logger, msg: str, **context):
    _emit(logger, logging.WARNING, msg, context)


def log_error(logger: Logger, msg: str, **context):
    _emit(logger, logging.ERROR, msg, context)


# ---------------------------------------------------------------------
# Index events
# ---------------------------------------------------------------------

def log_data_integrity(logger: Logger, msg: str, **context):
    """
    Dropped observations, short histories, missing prices.
    Expected context: symbol, timestamp, reason, count, required
    """
    _emit(logger, logging.WARNING, msg, {**context, "category": CATEGORY_DATA_INTEGRITY})


def log_cycle(logger: Logger, msg: str, **context):
    """Cycle outcome. Expected context: timestamp, value, constituents, degraded, elapsed_ms"""
    _emit(logger, logging.INFO, msg, {**context, "category": CATEGORY_CYCLE})


def log_selection(logger: Logger, msg: str, **context):
    _emit(logger, logging.INFO, msg, {**context, "category": CATEGORY_SELECTION})


def log_weighting(logger: Logger, msg: str, **context):
    _emit(logger, logging.INFO, msg, {**context, "category": CATEGORY_WEIGHTING})


def log_chain(logger: Logger, msg: str, **context):
    """
    Every committed link of the index chain; the audit trail for continuity.
    Expected context: timestamp, value, previous_timestamp, previous_value, weighted_return
    """
    _emit(logger, logging.INFO, msg, {**context, "category": CATEGORY_CHAIN})
