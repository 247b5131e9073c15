"""
Pure transition function for the session clock.

`transition(clock, event, now, cfg)` never touches timers, callbacks or the
session authority; it returns the next clock together with the ordered list
of effects the manager has to execute. Timer ids are allocated here so a
callback from a cancelled timer can be recognized as stale.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from idleguard.core.config.models import ExpiryConfig
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


@dataclass(frozen=True)
class Transition:
    clock: SessionClock
    effects: Tuple[Effect, ...] = ()
    outcome: str = "noop"
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def ignored(self) -> bool:
        return self.outcome.startswith("ignored") or self.outcome in {"stale_timer", "foreground_noop", "no_live_session"}


def transition(clock: SessionClock, event: ClockEvent, now: float, cfg: ExpiryConfig) -> Transition:
    handler = _HANDLERS.get(event.kind)
    if handler is None:
        raise ValueError(f"unknown clock event: {event.kind!r}")
    return handler(clock, event, float(now), cfg)


# ---- handlers ----
def _on_start(clock: SessionClock, event: ClockEvent, now: float, cfg: ExpiryConfig) -> Transition:
    if clock.state != ExpiryState.UNARMED:
        return Transition(clock, outcome=f"ignored_{clock.state.value.lower()}")
    if not event.has_live_session:
        return Transition(clock, outcome="no_live_session")
    # A host that is already backgrounded at start reports its phase here.
    phase = LifecyclePhase(event.phase) if event.phase is not None else clock.phase
    armed = clock.evolve(state=ExpiryState.ARMED, cycle=clock.cycle + 1, phase=phase)
    armed, effects = _schedule_cycle(armed, now, cfg)
    effects.append(Subscribe())
    return Transition(armed, tuple(effects), outcome="armed", details={"cycle": armed.cycle, "phase": phase.value})


def _on_activity(clock: SessionClock, event: ClockEvent, now: float, cfg: ExpiryConfig) -> Transition:
    if not clock.armed:
        return Transition(clock, outcome="ignored_not_armed")
    nxt, effects = _restart_cycle(clock, now, cfg)
    return Transition(nxt, tuple(effects), outcome="reset", details={"cycle": nxt.cycle})


def _on_lifecycle(clock: SessionClock, event: ClockEvent, now: float, cfg: ExpiryConfig) -> Transition:
    if event.phase is None:
        raise ValueError("lifecycle event requires a phase")
    if not clock.armed:
        return Transition(clock, outcome="ignored_not_armed")

    previous = clock.phase
    phase = LifecyclePhase(event.phase)
    if phase.is_background:
        return Transition(clock.evolve(phase=phase), outcome="background", details={"from": previous.value, "to": phase.value})

    recorded = clock.evolve(phase=phase)
    elapsed = now - float(clock.last_activity_at if clock.last_activity_at is not None else now)
    details = {"from": previous.value, "elapsed_seconds": round(elapsed, 3)}
    # Timers may have been frozen even without a background signal; wall clock decides.
    if elapsed >= cfg.timeout_seconds:
        expired, effects = _expire(recorded)
        return Transition(expired, tuple(effects), outcome="expired_on_resume", details=details)

    if not previous.is_background:
        # Repeated "active" signal: not a resume, the window is not refreshed.
        return Transition(recorded, outcome="foreground_noop")

    nxt, effects = _restart_cycle(recorded, now, cfg)
    details["cycle"] = nxt.cycle
    return Transition(nxt, tuple(effects), outcome="resumed", details=details)


def _on_warning_due(clock: SessionClock, event: ClockEvent, now: float, cfg: ExpiryConfig) -> Transition:
    if not clock.armed:
        return Transition(clock, outcome="ignored_not_armed")
    if event.timer_id is None or event.timer_id != clock.warning_timer:
        return Transition(clock, outcome="stale_timer", details={"timer_id": event.timer_id, "kind": TimerKind.WARNING.value})
    nxt = clock.evolve(warning_timer=None, warned=True)
    return Transition(nxt, (InvokeCallback(CallbackKind.WARNING),), outcome="warning", details={"cycle": nxt.cycle})


def _on_expiry_due(clock: SessionClock, event: ClockEvent, now: float, cfg: ExpiryConfig) -> Transition:
    if not clock.armed:
        return Transition(clock, outcome="ignored_not_armed")
    if event.timer_id is None or event.timer_id != clock.expiry_timer:
        return Transition(clock, outcome="stale_timer", details={"timer_id": event.timer_id, "kind": TimerKind.EXPIRY.value})
    expired, effects = _expire(clock)
    idle = now - float(clock.last_activity_at if clock.last_activity_at is not None else now)
    return Transition(expired, tuple(effects), outcome="expired", details={"idle_seconds": round(idle, 3)})


def _on_stop(clock: SessionClock, event: ClockEvent, now: float, cfg: ExpiryConfig) -> Transition:
    if clock.terminal:
        return Transition(clock, outcome=f"ignored_{clock.state.value.lower()}")
    was_armed = clock.armed
    nxt, effects = _cancel_timers(clock)
    if was_armed:
        effects.append(Unsubscribe())
    return Transition(nxt.evolve(state=ExpiryState.STOPPED), tuple(effects), outcome="stopped")


_HANDLERS = {
    EventKind.START: _on_start,
    EventKind.ACTIVITY: _on_activity,
    EventKind.LIFECYCLE: _on_lifecycle,
    EventKind.WARNING_DUE: _on_warning_due,
    EventKind.EXPIRY_DUE: _on_expiry_due,
    EventKind.STOP: _on_stop,
}


# ---- helpers ----
def _cancel_timers(clock: SessionClock) -> Tuple[SessionClock, List[Effect]]:
    effects: List[Effect] = []
    if clock.warning_timer is not None:
        effects.append(CancelTimer(clock.warning_timer, TimerKind.WARNING))
    if clock.expiry_timer is not None:
        effects.append(CancelTimer(clock.expiry_timer, TimerKind.EXPIRY))
    return clock.evolve(warning_timer=None, expiry_timer=None), effects


def _schedule_cycle(clock: SessionClock, now: float, cfg: ExpiryConfig) -> Tuple[SessionClock, List[Effect]]:
    warning_id = clock.next_timer_id
    expiry_id = warning_id + 1
    last = now if clock.last_activity_at is None else max(float(clock.last_activity_at), now)
    nxt = clock.evolve(
        last_activity_at=last,
        warning_timer=warning_id,
        expiry_timer=expiry_id,
        next_timer_id=expiry_id + 1,
        warned=False,
    )
    effects: List[Effect] = [
        ScheduleTimer(warning_id, TimerKind.WARNING, cfg.warning_after_seconds),
        ScheduleTimer(expiry_id, TimerKind.EXPIRY, cfg.timeout_seconds),
    ]
    return nxt, effects


def _restart_cycle(clock: SessionClock, now: float, cfg: ExpiryConfig) -> Tuple[SessionClock, List[Effect]]:
    cleared, effects = _cancel_timers(clock)
    nxt, scheduled = _schedule_cycle(cleared.evolve(cycle=clock.cycle + 1), now, cfg)
    return nxt, effects + scheduled


def _expire(clock: SessionClock) -> Tuple[SessionClock, List[Effect]]:
    cleared, effects = _cancel_timers(clock)
    effects.extend([Unsubscribe(), InvokeCallback(CallbackKind.TIMEOUT), RequestTermination()])
    return cleared.evolve(state=ExpiryState.EXPIRED), effects
