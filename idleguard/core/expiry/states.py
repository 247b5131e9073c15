from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Union


class ExpiryState(str, Enum):
    UNARMED = "UNARMED"
    ARMED = "ARMED"
    EXPIRED = "EXPIRED"
    STOPPED = "STOPPED"


TERMINAL_STATES = frozenset({ExpiryState.EXPIRED, ExpiryState.STOPPED})


class LifecyclePhase(str, Enum):
    FOREGROUND = "FOREGROUND"
    BACKGROUND = "BACKGROUND"
    # iOS transitional state (app switcher, incoming call); treated like BACKGROUND
    INACTIVE = "INACTIVE"

    @property
    def is_background(self) -> bool:
        return self in {LifecyclePhase.BACKGROUND, LifecyclePhase.INACTIVE}

    @classmethod
    def parse(cls, value: Union[str, "LifecyclePhase"]) -> "LifecyclePhase":
        if isinstance(value, LifecyclePhase):
            return value
        key = str(value or "").strip().lower()
        if key in _PHASE_ALIASES:
            return cls(_PHASE_ALIASES[key])
        raise ValueError(f"unknown lifecycle phase: {value!r}")


# Host state names (React Native AppState, Android/iOS lifecycle) -> phase.
_PHASE_ALIASES = {
    "active": "FOREGROUND",
    "foreground": "FOREGROUND",
    "resumed": "FOREGROUND",
    "inactive": "INACTIVE",
    "background": "BACKGROUND",
    "paused": "BACKGROUND",
    "suspended": "BACKGROUND",
}


class TimerKind(str, Enum):
    WARNING = "WARNING"
    EXPIRY = "EXPIRY"


class CallbackKind(str, Enum):
    WARNING = "on_warning"
    TIMEOUT = "on_timeout"


@dataclass(frozen=True)
class SessionClock:
    state: ExpiryState = ExpiryState.UNARMED
    last_activity_at: Optional[float] = None
    phase: LifecyclePhase = LifecyclePhase.FOREGROUND
    warning_timer: Optional[int] = None
    expiry_timer: Optional[int] = None
    next_timer_id: int = 1
    cycle: int = 0
    warned: bool = False

    @property
    def armed(self) -> bool:
        return self.state == ExpiryState.ARMED

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def evolve(self, **changes) -> "SessionClock":
        return replace(self, **changes)


# ---- events ----
class EventKind(str, Enum):
    START = "START"
    ACTIVITY = "ACTIVITY"
    LIFECYCLE = "LIFECYCLE"
    WARNING_DUE = "WARNING_DUE"
    EXPIRY_DUE = "EXPIRY_DUE"
    STOP = "STOP"


@dataclass(frozen=True)
class ClockEvent:
    kind: EventKind
    phase: Optional[LifecyclePhase] = None
    timer_id: Optional[int] = None
    has_live_session: bool = False

    @classmethod
    def start(cls, *, has_live_session: bool, phase: Optional[LifecyclePhase] = None) -> "ClockEvent":
        return cls(EventKind.START, phase=phase, has_live_session=bool(has_live_session))

    @classmethod
    def activity(cls) -> "ClockEvent":
        return cls(EventKind.ACTIVITY)

    @classmethod
    def lifecycle(cls, phase: LifecyclePhase) -> "ClockEvent":
        return cls(EventKind.LIFECYCLE, phase=phase)

    @classmethod
    def timer_due(cls, kind: TimerKind, timer_id: int) -> "ClockEvent":
        ev_kind = EventKind.WARNING_DUE if kind == TimerKind.WARNING else EventKind.EXPIRY_DUE
        return cls(ev_kind, timer_id=timer_id)

    @classmethod
    def stop(cls) -> "ClockEvent":
        return cls(EventKind.STOP)


# ---- effects ----
@dataclass(frozen=True)
class ScheduleTimer:
    timer_id: int
    kind: TimerKind
    delay_seconds: float


@dataclass(frozen=True)
class CancelTimer:
    timer_id: int
    kind: TimerKind


@dataclass(frozen=True)
class InvokeCallback:
    callback: CallbackKind


@dataclass(frozen=True)
class RequestTermination:
    pass


@dataclass(frozen=True)
class Subscribe:
    pass


@dataclass(frozen=True)
class Unsubscribe:
    pass


Effect = Union[ScheduleTimer, CancelTimer, InvokeCallback, RequestTermination, Subscribe, Unsubscribe]
