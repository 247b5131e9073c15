from __future__ import annotations

import json
import os
import threading
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict

if TYPE_CHECKING:
    from idleguard.core.events.models import BaseEvent


REDACT_KEYS = {
    "password",
    "secret",
    "token",
    "id_token",
    "refresh_token",
    "access_token",
    "api_key",
    "authorization",
    "email",
    "uid",
}


def _redact(obj: Any) -> Any:
    if isinstance(obj, dict):
        out: Dict[str, Any] = {}
        for k, v in obj.items():
            if str(k).lower() in REDACT_KEYS:
                out[k] = "***REDACTED***"
            else:
                out[k] = _redact(v)
        return out
    if isinstance(obj, (list, tuple)):
        return [_redact(x) for x in obj]
    return obj


def redact(obj: Any) -> Any:
    return _redact(obj)


@dataclass(frozen=True)
class EventLogger:
    """
    Append-only JSONL journal of session clock events.
    """

    path: str = os.path.join("logs", "events.jsonl")
    _lock: threading.Lock = threading.Lock()

    def log_event(self, ev: "BaseEvent") -> None:
        payload = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime(ev.timestamp)),
            "trace_id": ev.trace_id,
            "event": ev.event_type,
            "severity": ev.severity.value,
            "source": ev.source_subsystem.value,
            "details": ev.payload,
        }
        self._append(payload)

    def _append(self, payload: Dict[str, Any]) -> None:
        parent = os.path.dirname(self.path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        line = json.dumps(payload, ensure_ascii=False)
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
