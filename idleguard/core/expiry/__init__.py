from idleguard.core.expiry.manager import ExpiryManager
from idleguard.core.expiry.scheduler import AsyncioScheduler, Scheduler, ThreadTimerScheduler
from idleguard.core.expiry.states import ClockEvent, EventKind, ExpiryState, LifecyclePhase, SessionClock, TimerKind
from idleguard.core.expiry.transitions import Transition, transition

__all__ = [
    "AsyncioScheduler",
    "ClockEvent",
    "EventKind",
    "ExpiryManager",
    "ExpiryState",
    "LifecyclePhase",
    "Scheduler",
    "SessionClock",
    "ThreadTimerScheduler",
    "TimerKind",
    "Transition",
    "transition",
]
