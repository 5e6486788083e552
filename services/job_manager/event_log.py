from __future__ import annotations

import csv
import json
import os
import threading
import time
from dataclasses import asdict, is_dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .config import Settings, get_settings


class EventLogger:
    """
    Writes job lifecycle events to an append-only file.

    Supported formats:
    - event_log_format=csv  -> CSV with header
    - event_log_format=json -> JSON Lines (one JSON object per line)
    """

    # Keep a stable, simple schema for CSV
    CSV_FIELDS = [
        "ts",
        "event",
        "job_id",
        "worker_id",
        "handler",
        "status",
        "runtime_s",
        "attempts",
        "retry_in_s",
        "error",
    ]

    def __init__(self, enabled: bool = True, fmt: str = "json", path: str = "logs/job_events.jsonl") -> None:
        self.enabled = enabled
        self.format = fmt.lower()  # json | csv
        self.path = path
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "EventLogger":
        return cls(
            enabled=settings.event_log_enabled,
            fmt=settings.event_log_format,
            path=settings.event_log_path,
        )

    def emit(self, event: str, payload: Dict[str, Any]) -> None:
        if not self.enabled:
            return
        rec: Dict[str, Any] = {"ts": time.time(), "event": event, **payload}

        for k, v in list(rec.items()):
            if is_dataclass(v):
                rec[k] = asdict(v)
            elif isinstance(v, Enum):
                rec[k] = v.value

        try:
            os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
            with self._lock:
                if self.format == "csv":
                    self._emit_csv(rec)
                else:
                    self._emit_jsonl(rec)
        except OSError:
            # Never crash the queue because of the event log
            return

    def _emit_jsonl(self, rec: Dict[str, Any]) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(rec, ensure_ascii=False, default=str) + "\n")

    def _emit_csv(self, rec: Dict[str, Any]) -> None:
        row = {k: rec.get(k, "") for k in self.CSV_FIELDS}
        write_header = not os.path.exists(self.path) or os.path.getsize(self.path) == 0
        with open(self.path, "a", encoding="utf-8", newline="") as f:
            w = csv.DictWriter(f, fieldnames=self.CSV_FIELDS)
            if write_header:
                w.writeheader()
            w.writerow(row)


_EVENT_LOGGER: Optional[EventLogger] = None


def get_event_logger() -> EventLogger:
    global _EVENT_LOGGER
    if _EVENT_LOGGER is None:
        _EVENT_LOGGER = EventLogger.from_settings(get_settings())
    return _EVENT_LOGGER
