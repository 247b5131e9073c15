from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from idleguard.core.expiry.states import LifecyclePhase


def parse_phase(value: Union[str, LifecyclePhase]) -> LifecyclePhase:
    return LifecyclePhase.parse(value)


class LifecycleTransition(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    phase: LifecyclePhase
    timestamp: float = Field(default_factory=lambda: time.time())

    @field_validator("phase", mode="before")
    @classmethod
    def _parse_phase(cls, v: Any) -> LifecyclePhase:
        return parse_phase(v)


LifecycleHandler = Callable[[LifecycleTransition], None]


class Subscription:
    def __init__(self, source: "LifecycleSource", handler: LifecycleHandler):
        self._source = source
        self.handler = handler
        self.active = True

    def remove(self) -> None:
        if self.active:
            self.active = False
            self._source.unsubscribe(self.handler)


class LifecycleSource:
    """
    In-process Activity Source: the host forwards its app-state changes here.

    Delivery is synchronous and in subscription order; a failing handler is
    logged and does not stop delivery to the others.
    """

    def __init__(self, *, logger: Optional[logging.Logger] = None, now: Any = None):
        self.logger = logger or logging.getLogger("idleguard.lifecycle")
        self._now = now or time.time
        self._lock = threading.Lock()
        self._handlers: List[LifecycleHandler] = []
        self._last: Optional[LifecycleTransition] = None

    def subscribe(self, handler: LifecycleHandler) -> Subscription:
        if not callable(handler):
            raise ValueError("handler must be callable")
        with self._lock:
            self._handlers.append(handler)
        return Subscription(self, handler)

    def unsubscribe(self, handler: LifecycleHandler) -> int:
        with self._lock:
            before = len(self._handlers)
            self._handlers = [h for h in self._handlers if h is not handler]
            return before - len(self._handlers)

    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._handlers)

    def last_transition(self) -> Optional[LifecycleTransition]:
        return self._last

    def emit(self, phase: Union[str, LifecyclePhase], timestamp: Optional[float] = None) -> LifecycleTransition:
        ev = LifecycleTransition(phase=phase, timestamp=float(self._now() if timestamp is None else timestamp))
        with self._lock:
            self._last = ev
            handlers = list(self._handlers)
        for h in handlers:
            try:
                h(ev)
            except Exception as e:  # noqa: BLE001
                self.logger.error(f"Lifecycle handler {getattr(h, '__name__', 'handler')} failed: {e}")
        return ev
