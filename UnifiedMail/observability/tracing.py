"""
Simple event tracing to a file (JSON lines).
"""
from __future__ import annotations
import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, Optional


_LOGGER_NAME = "unifiedmail.tracer"
_SINGLETON: Optional["EventTracer"] = None

# Never written to the trace, whatever the caller passes in.
_REDACTED_FIELDS = frozenset({"access_token", "refresh_token", "client_secret", "token"})


@dataclass
class EventTracer:
    logfile: Optional[str] = None
    level: int = logging.INFO

    def __post_init__(self):
        self._logger = logging.getLogger(_LOGGER_NAME)
        # Ensure idempotent handler setup
        if self.logfile and not self._logger.handlers:
            self._logger.setLevel(self.level)
            fh = logging.FileHandler(self.logfile, mode="a", encoding="utf-8")
            fmt = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
            fh.setFormatter(fmt)
            self._logger.addHandler(fh)
            self._logger.propagate = False

    def log(self, event: str, **fields: Any) -> None:
        try:
            payload: Dict[str, Any] = {"event": event}
            payload.update({k: v for k, v in fields.items() if k not in _REDACTED_FIELDS})
            self._logger.info(json.dumps(payload, ensure_ascii=False, default=str))
        except Exception:
            # Never fail the app due to tracing
            self._logger.info(json.dumps({"event": event, "trace_error": True}))


def get_tracer(logfile: Optional[str] = None) -> EventTracer:
    global _SINGLETON
    if _SINGLETON is not None:
        return _SINGLETON
    # Read env directly so importing the tracer never drags in the config module
    path = logfile or os.getenv("TRACE_LOG_FILE")
    _SINGLETON = EventTracer(path)
    return _SINGLETON
