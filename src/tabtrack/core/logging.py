from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from typing import Any

# structured fields copied from `extra=` into the JSON payload
_EXTRA_KEYS = (
    "run_id",
    "feature",
    "event",
    "reason",
    "skip",
    "session_id",
    "item_id",
    "search_id",
    "operation",
    "num_records",
    "duration_s",
    "duration_ms",
    "query",
    "search_type",
    "error",
)


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts_utc": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        # attach extra fields if present
        for key in _EXTRA_KEYS:
            if hasattr(record, key):
                payload[key] = getattr(record, key)
        return json.dumps(payload, separators=(",", ":"), ensure_ascii=True, default=str)


def get_logger(name: str, level: str = "INFO") -> logging.Logger:
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger  # avoid double handlers in tests

    logger.setLevel(level.upper())
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JsonFormatter())
    logger.addHandler(handler)
    logger.propagate = False
    return logger


class DebugHook:
    """
    Tracker debug logging. Inert unless enabled; production builds leave it off.
    """

    def __init__(self, logger: logging.Logger, *, enabled: bool, feature: str) -> None:
        self._logger = logger
        self.enabled = bool(enabled)
        self.feature = feature

    def __call__(self, msg: str, **fields: Any) -> None:
        if not self.enabled:
            return
        fields.setdefault("feature", self.feature)
        self._logger.info(msg, extra=fields)
