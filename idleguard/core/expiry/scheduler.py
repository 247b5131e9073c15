from __future__ import annotations

import asyncio
import threading
from typing import Any, Callable, Dict, Optional, Protocol


class Scheduler(Protocol):
    """
    Minimal timer surface used by the expiry manager.

    Timers are advisory: a host that suspends the process may deliver them
    late or in a burst on resume.
    """

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> Any: ...

    def cancel(self, handle: Any) -> None: ...


class ThreadTimerScheduler:
    """
    One daemon `threading.Timer` per scheduled callback.
    """

    def __init__(self, *, name_prefix: str = "idleguard-timer"):
        self.name_prefix = name_prefix
        self._lock = threading.Lock()
        self._live: Dict[int, threading.Timer] = {}
        self._seq = 0

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> int:
        with self._lock:
            self._seq += 1
            seq = self._seq

        def _run() -> None:
            with self._lock:
                self._live.pop(seq, None)
            callback()

        t = threading.Timer(max(0.0, float(delay_seconds)), _run)
        t.daemon = True
        t.name = f"{self.name_prefix}-{seq}"
        with self._lock:
            self._live[seq] = t
        t.start()
        return seq

    def cancel(self, handle: Any) -> None:
        with self._lock:
            t = self._live.pop(int(handle), None)
        if t is not None:
            t.cancel()

    def pending(self) -> int:
        with self._lock:
            return len(self._live)

    def shutdown(self) -> None:
        with self._lock:
            timers = list(self._live.values())
            self._live.clear()
        for t in timers:
            t.cancel()


class AsyncioScheduler:
    """
    Timers on a single asyncio event loop via `loop.call_later`.

    Must be used from the loop's thread; callbacks run on the loop and never
    overlap with other loop callbacks.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        return self._loop

    def schedule(self, delay_seconds: float, callback: Callable[[], None]) -> asyncio.TimerHandle:
        return self.loop.call_later(max(0.0, float(delay_seconds)), callback)

    def cancel(self, handle: Any) -> None:
        if handle is not None:
            handle.cancel()
