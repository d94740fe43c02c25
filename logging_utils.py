"""Console logging helper shared by the capture, classification and practice modules.

Every message carries a level and a component tag, with optional key=value fields.
Per-frame paths (stream status, overruns, frame faults) go through log_throttled()
so a misbehaving device cannot flood the console.
"""
from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Any

_FORMAT = "[%(levelname)s][%(tag)s] %(message)s"

_logger = logging.getLogger("drumcoach")
if not _logger.handlers:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter(_FORMAT))
    _logger.addHandler(handler)
    _logger.setLevel(logging.INFO)


class _TagAdapter(logging.LoggerAdapter):
    def process(self, msg: Any, kwargs: dict[str, Any]):
        tag = kwargs.pop("tag", "App")
        kwargs.setdefault("extra", {})["tag"] = tag
        return msg, kwargs


_logger_adapter = _TagAdapter(_logger, {})

# Accept the short spelling used throughout the code base
_LEVEL_ALIASES = {"WARN": "WARNING"}

# key -> [last emitted (monotonic s), suppressed since then]
_throttle_state: dict[str, list] = {}
_throttle_lock = threading.Lock()


def _resolve_level(level: str | None) -> int:
    level_name = (level or "INFO").upper()
    level_name = _LEVEL_ALIASES.get(level_name, level_name)
    level_val = getattr(logging, level_name, logging.INFO)
    return level_val if isinstance(level_val, int) else logging.INFO


def log_event(level: str, tag: str, message: str, **fields: Any) -> None:
    """Log a message with level+tag, appending key=value fields when provided."""
    if fields:
        extras = " ".join(f"{k}={v}" for k, v in fields.items())
        message = f"{message} | {extras}"
    _logger_adapter.log(_resolve_level(level), message, tag=tag)


def log_throttled(key: str, interval_s: float, level: str, tag: str, message: str, **fields: Any) -> bool:
    """log_event() at most once per `interval_s` for `key`.

    The next emitted message reports how many were suppressed in between.
    Returns True when the message was emitted.
    """
    now = time.monotonic()
    with _throttle_lock:
        state = _throttle_state.get(key)
        if state is not None and now - state[0] < interval_s:
            state[1] += 1
            return False
        suppressed = state[1] if state is not None else 0
        _throttle_state[key] = [now, 0]
    if suppressed:
        fields["suppressed"] = suppressed
    log_event(level, tag, message, **fields)
    return True


def reset_throttle() -> None:
    with _throttle_lock:
        _throttle_state.clear()


def add_file_handler(path: str | Path) -> logging.Handler:
    """Mirror log output into `path` (appending). Returns the handler."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(path, encoding="utf-8")
    file_handler.setFormatter(logging.Formatter("%(asctime)s " + _FORMAT))
    _logger.addHandler(file_handler)
    return file_handler


def set_log_level(level: str) -> None:
    """Set global log level (DEBUG/INFO/WARNING/ERROR)."""
    _logger.setLevel(_resolve_level(level))


def get_log_level() -> str:
    """Return current global log level name."""
    return logging.getLevelName(_logger.level)
