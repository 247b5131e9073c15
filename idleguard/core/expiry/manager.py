from __future__ import annotations

import functools
import threading
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, Iterable, Optional, Union

from idleguard.core.authority import SessionAuthority, TerminationResult, coerce_termination_result
from idleguard.core.config.models import load_expiry_config
from idleguard.core.errors import AuthorityError
from idleguard.core.events import BaseEvent, EventSeverity, SourceSubsystem
from idleguard.core.expiry.scheduler import Scheduler, ThreadTimerScheduler
from idleguard.core.expiry.states import (
    CallbackKind,
    CancelTimer,
    ClockEvent,
    Effect,
    EventKind,
    ExpiryState,
    InvokeCallback,
    LifecyclePhase,
    RequestTermination,
    ScheduleTimer,
    SessionClock,
    Subscribe,
    TimerKind,
    Unsubscribe,
)
from idleguard.core.expiry.transitions import Transition, transition
from idleguard.core.logger import get_logger
from idleguard.core.trace import resolve_trace_id, trace_context

_SEVERITY = {
    "expired": EventSeverity.WARN,
    "expired_on_resume": EventSeverity.WARN,
    "warning": EventSeverity.WARN,
}


def _fmt_duration(seconds: float) -> str:
    if seconds >= 60 and seconds % 60 == 0:
        minutes = int(seconds // 60)
        return f"{minutes} min"
    return f"{seconds:g} seconds"


class ExpiryManager:
    """
    Signs the user out after a fixed idle period, warning them shortly before.

    The manager is an imperative shell around `transition()`: every input
    (start, activity, lifecycle change, timer, stop) is turned into a
    `ClockEvent`, the pure transition computes the next `SessionClock` and the
    effects, and the manager executes those effects against the scheduler,
    the registered callbacks, the activity source and the session authority.

    Scheduled timers are advisory. On a return to the foreground the idle
    time is recomputed from wall-clock timestamps, so a host that suspended
    its timers still expires the session on resume.
    """

    def __init__(
        self,
        *,
        authority: SessionAuthority,
        cfg: Any = None,
        activity_source: Any = None,
        scheduler: Optional[Scheduler] = None,
        on_warning: Optional[Callable[[], None]] = None,
        on_timeout: Optional[Callable[[], None]] = None,
        now: Optional[Callable[[], float]] = None,
        executor: Optional[Executor] = None,
        logger=None,
        event_logger: Any = None,
        error_reporter: Any = None,
        initial_phase: Union[str, LifecyclePhase, None] = None,
    ):
        # ConfigurationError surfaces here, before anything can be armed.
        self.cfg = load_expiry_config(cfg)
        self.authority = authority
        self.activity_source = activity_source
        self.scheduler: Scheduler = scheduler or ThreadTimerScheduler()
        self.logger = get_logger("expiry", logger)
        self.event_logger = event_logger
        self.error_reporter = error_reporter
        self._now = now or time.time
        self._executor = executor
        self._owns_executor = executor is None
        self.initial_phase = LifecyclePhase.FOREGROUND if initial_phase is None else LifecyclePhase.parse(initial_phase)

        self._lock = threading.RLock()
        self._clock = SessionClock()
        self._handles: Dict[int, Any] = {}
        self._subscription: Any = None
        self._callbacks: Dict[CallbackKind, Optional[Callable[[], None]]] = {
            CallbackKind.WARNING: on_warning,
            CallbackKind.TIMEOUT: on_timeout,
        }
        # Joins the caller's trace when constructed inside trace_context().
        self._trace_id = resolve_trace_id()
        self._termination: Optional[str] = None
        self._termination_error: Optional[str] = None

    # ---- owner API ----
    def on_warning(self, callback: Optional[Callable[[], None]]) -> None:
        with self._lock:
            self._callbacks[CallbackKind.WARNING] = callback

    def on_timeout(self, callback: Optional[Callable[[], None]]) -> None:
        with self._lock:
            self._callbacks[CallbackKind.TIMEOUT] = callback

    def start(self) -> bool:
        """
        Arm the session clock if the authority reports a live session.

        Returns True when the manager is armed after the call.
        """
        with self._lock:
            if self._clock.state != ExpiryState.UNARMED:
                return self._clock.armed
            try:
                live = bool(self.authority.has_live_session())
            except Exception as e:  # noqa: BLE001
                self._report(e, subsystem="authority", context={"operation": "has_live_session"})
                live = False
            self._dispatch(ClockEvent.start(has_live_session=live, phase=self._starting_phase()))
            return self._clock.armed

    def _starting_phase(self) -> LifecyclePhase:
        # The source remembers the host phase reported before we subscribed.
        last = None
        if self.activity_source is not None and hasattr(self.activity_source, "last_transition"):
            last = self.activity_source.last_transition()
        if last is not None:
            return LifecyclePhase.parse(last.phase)
        return self.initial_phase

    def reset_activity(self) -> None:
        self._dispatch(ClockEvent.activity())

    # Screens call it by this name.
    reset_timer = reset_activity

    def on_lifecycle_transition(self, phase: Union[str, LifecyclePhase], now: Optional[float] = None) -> None:
        self._dispatch(ClockEvent.lifecycle(LifecyclePhase.parse(phase)), now=now)

    def stop(self) -> None:
        self._dispatch(ClockEvent.stop())
        if self._owns_executor and self._executor is not None:
            # Queued termination requests still run.
            self._executor.shutdown(wait=False)

    # ---- introspection ----
    def state(self) -> ExpiryState:
        with self._lock:
            return self._clock.state

    def is_armed(self) -> bool:
        with self._lock:
            return self._clock.armed

    def clock(self) -> SessionClock:
        with self._lock:
            return self._clock

    @property
    def trace_id(self) -> str:
        return self._trace_id

    def seconds_until_expiry(self) -> Optional[float]:
        with self._lock:
            c = self._clock
            if not c.armed or c.last_activity_at is None:
                return None
            return max(0.0, c.last_activity_at + self.cfg.timeout_seconds - float(self._now()))

    def status(self) -> Dict[str, Any]:
        with self._lock:
            c = self._clock
            now = float(self._now())
            idle = (now - c.last_activity_at) if c.last_activity_at is not None else None
            until_warning = None
            until_expiry = None
            if c.armed and idle is not None:
                until_expiry = max(0.0, self.cfg.timeout_seconds - idle)
                if c.warning_timer is not None:
                    until_warning = max(0.0, self.cfg.warning_after_seconds - idle)
            return {
                "state": c.state.value,
                "armed": c.armed,
                "phase": c.phase.value,
                "cycle": c.cycle,
                "warned": c.warned,
                "last_activity_at": c.last_activity_at,
                "idle_seconds": idle,
                "seconds_until_warning": until_warning,
                "seconds_until_expiry": until_expiry,
                "timeout_ms": self.cfg.timeout_ms,
                "warning_lead_ms": self.cfg.warning_lead_ms,
                "termination": self._termination,
                "termination_error": self._termination_error,
                "trace_id": self._trace_id,
            }

    # ---- event loop ----
    def _on_timer(self, kind: TimerKind, timer_id: int) -> None:
        with self._lock:
            # The timer has fired; nothing left to cancel for this id.
            if timer_id in (self._clock.warning_timer, self._clock.expiry_timer):
                self._handles.pop(timer_id, None)
            self._dispatch(ClockEvent.timer_due(kind, timer_id))

    def _on_lifecycle_event(self, ev: Any) -> None:
        self.on_lifecycle_transition(ev.phase, getattr(ev, "timestamp", None))

    def _dispatch(self, event: ClockEvent, *, now: Optional[float] = None) -> Transition:
        # Callbacks run inside the manager trace, so host code can read current_trace_id().
        with self._lock, trace_context(self._trace_id):
            ts = float(self._now() if now is None else now)
            tr = transition(self._clock, event, ts, self.cfg)
            self._clock = tr.clock
            self._log_transition(event, tr)
            self._record(event, tr)
            failed = self._apply(tr.effects)
            if failed and self._clock.armed and self._clock.expiry_timer is not None:
                # Never stay armed without a working expiry timer.
                self.logger.error("Session timer could not be scheduled; expiring session.")
                self._dispatch(ClockEvent.timer_due(TimerKind.EXPIRY, self._clock.expiry_timer))
            return tr

    def _apply(self, effects: Iterable[Effect]) -> bool:
        schedule_failed = False
        for eff in effects:
            if isinstance(eff, CancelTimer):
                handle = self._handles.pop(eff.timer_id, None)
                if handle is not None:
                    try:
                        self.scheduler.cancel(handle)
                    except Exception as e:  # noqa: BLE001
                        self._report(e, subsystem="scheduler", context={"operation": "cancel", "kind": eff.kind.value})
            elif isinstance(eff, ScheduleTimer):
                try:
                    cb = functools.partial(self._on_timer, eff.kind, eff.timer_id)
                    self._handles[eff.timer_id] = self.scheduler.schedule(eff.delay_seconds, cb)
                except Exception as e:  # noqa: BLE001
                    schedule_failed = True
                    self._report(e, subsystem="scheduler", context={"operation": "schedule", "kind": eff.kind.value})
            elif isinstance(eff, InvokeCallback):
                self._invoke(eff.callback)
            elif isinstance(eff, RequestTermination):
                self._request_termination()
            elif isinstance(eff, Subscribe):
                self._subscribe()
            elif isinstance(eff, Unsubscribe):
                self._unsubscribe()
        return schedule_failed

    # ---- effects ----
    def _invoke(self, kind: CallbackKind) -> None:
        cb = self._callbacks.get(kind)
        if cb is None:
            return
        try:
            cb()
        except Exception as e:  # noqa: BLE001
            self._report(e, subsystem="callback", context={"callback": kind.value})

    def _subscribe(self) -> None:
        if self.activity_source is None or self._subscription is not None:
            return
        self._subscription = self.activity_source.subscribe(self._on_lifecycle_event)

    def _unsubscribe(self) -> None:
        sub, self._subscription = self._subscription, None
        if sub is None:
            return
        try:
            sub.remove()
        except Exception as e:  # noqa: BLE001
            self.logger.warning(f"Lifecycle unsubscribe failed: {e}")

    def _request_termination(self) -> None:
        self._termination = "pending"
        self.logger.info("Requesting session termination.")
        executor = self._get_executor()
        try:
            fut = executor.submit(self._terminate)
        except RuntimeError as e:
            self._termination_finished(None, e)
            return
        if self._owns_executor:
            # Expiry is terminal, so this is the only submission; the worker exits once it is done.
            executor.shutdown(wait=False)
        fut.add_done_callback(self._on_termination_done)

    def _get_executor(self) -> Executor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="idleguard-authority")
        return self._executor

    def _terminate(self) -> TerminationResult:
        return coerce_termination_result(self.authority.terminate_session())

    def _on_termination_done(self, fut: Future) -> None:
        try:
            result = fut.result()
        except Exception as e:  # noqa: BLE001
            self._termination_finished(None, e)
            return
        self._termination_finished(result, None)

    def _termination_finished(self, result: Optional[TerminationResult], exc: Optional[BaseException]) -> None:
        if exc is None and result is not None and result.ok:
            with self._lock:
                self._termination = "ok"
            self.logger.info("Session terminated.")
            self._emit("expiry.terminated", SourceSubsystem.authority, EventSeverity.INFO, {"ok": True})
            return
        error = str(exc) if exc is not None else (result.error if result is not None else "unknown error")
        with self._lock:
            self._termination = "failed"
            self._termination_error = error
        # Local state stays EXPIRED; remote revocation is not retried here.
        self._report(exc or AuthorityError("Session termination failed.", reason=error), subsystem="authority", context={"operation": "terminate_session"})
        self._emit("expiry.termination_failed", SourceSubsystem.authority, EventSeverity.ERROR, {"ok": False, "reason": error})

    # ---- reporting ----
    def _report(self, exc: BaseException, *, subsystem: str, context: Optional[Dict[str, Any]] = None) -> None:
        if self.error_reporter is None:
            self.logger.error(f"[{subsystem}] {type(exc).__name__}: {exc}")
            return
        # The reporter logs the normalized error itself.
        try:
            self.error_reporter.report_exception(exc, trace_id=self._trace_id, subsystem=subsystem, context=context or {})
        except Exception as e:  # noqa: BLE001
            self.logger.error(f"Error reporter failed: {e}")

    def _log_transition(self, event: ClockEvent, tr: Transition) -> None:
        outcome = tr.outcome
        if outcome == "armed":
            self.logger.info(f"Session timeout initialized ({_fmt_duration(self.cfg.timeout_seconds)})")
        elif outcome == "no_live_session":
            self.logger.info("No live session; session timeout not armed.")
        elif outcome == "warning":
            self.logger.warning(f"Session expiring in {_fmt_duration(self.cfg.warning_lead_seconds)} - user will be signed out")
        elif outcome == "expired":
            self.logger.warning("Session timeout - signing out")
        elif outcome == "expired_on_resume":
            self.logger.warning("Session expired while app was in background - signing out")
        elif outcome == "resumed":
            self.logger.info("App resumed - session still valid")
        elif outcome == "background":
            self.logger.info("App went to background - session timer continues")
        elif outcome == "stopped":
            self.logger.info("Session timeout stopped")
        elif outcome == "reset":
            self.logger.debug("Activity detected - session timer reset")
        elif outcome == "stale_timer":
            self.logger.debug(f"Ignoring stale {tr.details.get('kind')} timer {tr.details.get('timer_id')}")

    def _record(self, event: ClockEvent, tr: Transition) -> None:
        if tr.ignored and tr.outcome != "no_live_session":
            return
        source = SourceSubsystem.lifecycle if event.kind == EventKind.LIFECYCLE else SourceSubsystem.expiry
        payload = {"state": tr.clock.state.value, "phase": tr.clock.phase.value, **tr.details}
        self._emit(f"expiry.{tr.outcome}", source, _SEVERITY.get(tr.outcome, EventSeverity.INFO), payload)

    def _emit(self, event_type: str, source: SourceSubsystem, severity: EventSeverity, payload: Dict[str, Any]) -> None:
        if self.event_logger is None:
            return
        try:
            ev = BaseEvent(
                event_type=event_type,
                trace_id=self._trace_id,
                source_subsystem=source,
                severity=severity,
                payload=payload,
            )
            self.event_logger.log_event(ev)
        except Exception as e:  # noqa: BLE001
            self.logger.error(f"Event journal write failed ({event_type}): {e}")
