from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict

from idleguard.core.events import redact


class Severity(str, Enum):
    INFO = "INFO"
    WARN = "WARN"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


@dataclass
class IdleGuardError(Exception):
    code: str
    user_message: str
    severity: Severity = Severity.ERROR
    recoverable: bool = True
    context: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.code)

    def __str__(self) -> str:
        return f"{self.code}: {self.user_message}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "user_message": self.user_message,
            "severity": self.severity.value,
            "recoverable": bool(self.recoverable),
            "context": redact(self.context or {}),
        }


# ---- Core types ----
class ConfigurationError(IdleGuardError):
    def __init__(self, user_message: str = "Invalid session expiry configuration.", **ctx: Any):
        super().__init__("configuration_error", user_message, severity=Severity.CRITICAL, recoverable=False, context=ctx)


class AuthorityError(IdleGuardError):
    def __init__(self, user_message: str = "Could not reach the session authority.", **ctx: Any):
        super().__init__("authority_error", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class CallbackError(IdleGuardError):
    def __init__(self, user_message: str = "A session callback failed.", **ctx: Any):
        super().__init__("callback_error", user_message, severity=Severity.WARN, recoverable=True, context=ctx)


class StateTransitionError(IdleGuardError):
    def __init__(self, user_message: str = "Internal state error.", **ctx: Any):
        super().__init__("state_transition_error", user_message, severity=Severity.ERROR, recoverable=True, context=ctx)
