from __future__ import annotations

import json
import os
import threading
import time
import traceback
from dataclasses import dataclass
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from idleguard.core.events import redact
from idleguard.core.errors import (
    AuthorityError,
    CallbackError,
    ConfigurationError,
    IdleGuardError,
    StateTransitionError,
)


@dataclass
class ErrorReporterConfig:
    include_tracebacks: bool = False


class ErrorReporter:
    """
    Logging collaborator for failures the expiry manager recovers from locally.

    Every report is normalized into the idleguard error taxonomy and appended
    to a JSONL file; reporting itself never raises into the caller.
    """

    def __init__(self, *, path: str = os.path.join("logs", "errors.jsonl"), cfg: Optional[ErrorReporterConfig] = None, logger=None):
        self.path = path
        self.cfg = cfg or ErrorReporterConfig()
        self.logger = logger
        self._lock = threading.Lock()
        parent = os.path.dirname(self.path)
        if parent:
            os.makedirs(parent, exist_ok=True)

    def report_exception(self, exc: BaseException, *, trace_id: str, subsystem: str, context: Optional[Dict[str, Any]] = None) -> IdleGuardError:
        err = normalize_exception(exc, subsystem=subsystem, context=context or {})
        try:
            self.write_error(err, trace_id=trace_id, subsystem=subsystem, internal_exc=exc)
        except OSError as e:
            if self.logger is not None:
                self.logger.error(f"Could not write error record ({err.code}): {e}")
        return err

    def write_error(self, err: IdleGuardError, *, trace_id: str, subsystem: str, internal_exc: Optional[BaseException] = None) -> None:
        entry: Dict[str, Any] = {
            "ts": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
            "trace_id": trace_id,
            "subsystem": subsystem,
            "error_code": err.code,
            "severity": err.severity.value,
            "recoverable": bool(err.recoverable),
            "user_message": err.user_message,
            "safe_context": redact(err.context or {}),
        }
        if self.cfg.include_tracebacks and internal_exc is not None:
            entry["internal_context"] = {
                "traceback": "".join(traceback.format_exception(type(internal_exc), internal_exc, internal_exc.__traceback__, limit=30))
            }
        line = json.dumps(entry, ensure_ascii=False, default=str)
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
        if self.logger is not None:
            self.logger.warning(f"[{subsystem}] {err.code}: {err.user_message}")

    def tail(self, n: int = 20) -> list[Dict[str, Any]]:
        if not os.path.exists(self.path):
            return []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                lines = f.readlines()
            return [json.loads(x) for x in lines[-max(1, int(n)) :]]
        except (OSError, ValueError):
            return []

    def by_trace_id(self, trace_id: str) -> list[Dict[str, Any]]:
        if not os.path.exists(self.path):
            return []
        out = []
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                for line in f:
                    try:
                        obj = json.loads(line)
                    except ValueError:
                        continue
                    if obj.get("trace_id") == trace_id:
                        out.append(obj)
        except OSError:
            return []
        return out


def normalize_exception(exc: BaseException, *, subsystem: str, context: Dict[str, Any]) -> IdleGuardError:
    # Passthrough
    if isinstance(exc, IdleGuardError):
        return exc

    msg = str(exc)
    ctx = dict(context or {})

    if subsystem == "config" or isinstance(exc, PydanticValidationError):
        return ConfigurationError("Invalid session expiry configuration.", error=msg, **ctx)
    if subsystem == "authority":
        return AuthorityError("Session authority call failed.", error=msg, error_type=type(exc).__name__, **ctx)
    if subsystem == "callback":
        return CallbackError("A session callback failed.", error=msg, error_type=type(exc).__name__, **ctx)
    if subsystem in {"expiry", "scheduler"}:
        return StateTransitionError("Internal state error.", error=msg, error_type=type(exc).__name__, **ctx)

    # Generic safe error
    return IdleGuardError(code="unknown_error", user_message="Something went wrong.", context=ctx)
