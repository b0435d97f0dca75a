"""Structured key=value logging for scan, lifecycle and job events.

A thin wrapper around print(): each record is one line carrying ``level``,
``ts``, ``logger`` and whatever fields the caller passes, so operators can
grep a correlation id across the upload, advancement and worker output
without a log shipper. ``PBM_LOG_JSON=1`` switches to one JSON object per
line.

Usage:
    from pbm.logging_utils import get_logger
    log = get_logger("pbm.upload")
    ulog = log.bind(correlation_id=ctx.correlation_id, game_instance_id=instance.id)
    ulog.info(event="upload_scanned", turn_sheet_id=sheet.id, quality=0.93)

Fields whose value is None are dropped. Reserved keys: level, ts.
"""

from __future__ import annotations

import json
import os
import sys
import time
from typing import Any, Dict, Optional

LEVELS = {"debug": 10, "info": 20, "warn": 30, "error": 40}
CURRENT_LEVEL = LEVELS.get(os.getenv("PBM_LOG_LEVEL", "info").lower(), 20)
JSON_MODE = os.getenv("PBM_LOG_JSON", "0") in ("1", "true", "TRUE", "yes", "on")


def set_level(name: str):
    """Change the threshold at runtime (``debug``/``info``/``warn``/``error``)."""
    global CURRENT_LEVEL
    if name.lower() not in LEVELS:
        raise ValueError(f"unknown log level {name!r}; expected one of {sorted(LEVELS)}")
    CURRENT_LEVEL = LEVELS[name.lower()]


def _render_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    # Spaces would split the pair when grepping
    return str(value).replace(" ", "_")


def format_record(level: str, fields: Dict[str, Any]) -> str:
    fields = {k: v for k, v in fields.items() if v is not None}
    if JSON_MODE:
        rec = dict(fields, level=level, ts=int(time.time()))
        return json.dumps(rec, separators=(",", ":"), default=str)
    parts = [f"level={level}", f"ts={int(time.time())}"]
    parts.extend(f"{k}={_render_value(v)}" for k, v in fields.items())
    return " ".join(parts)


class _Logger:
    def __init__(self, name: str, bound: Optional[Dict[str, Any]] = None):
        self.name = name
        self.bound = dict(bound or {})

    def bind(self, **fields) -> "_Logger":
        """Child logger that adds ``fields`` to every record it emits."""
        return _Logger(self.name, {**self.bound, **fields})

    def _log(self, lvl: str, **fields):
        if LEVELS[lvl] < CURRENT_LEVEL:
            return
        record = {**self.bound, **fields}
        record.setdefault("logger", self.name)
        stream = sys.stderr if lvl == "error" else sys.stdout
        print(format_record(lvl, record), file=stream)

    def debug(self, **fields):
        self._log("debug", **fields)

    def info(self, **fields):
        self._log("info", **fields)

    def warn(self, **fields):
        self._log("warn", **fields)

    def error(self, **fields):
        self._log("error", **fields)


_LOGGER_CACHE: Dict[str, _Logger] = {}


def get_logger(name: str = "pbm") -> _Logger:
    if name not in _LOGGER_CACHE:
        _LOGGER_CACHE[name] = _Logger(name)
    return _LOGGER_CACHE[name]
