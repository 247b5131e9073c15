"""
Session clock event journal.

- `EventLogger`, `redact`: JSONL journal with secret redaction
- `BaseEvent`: typed event record written by the expiry manager
"""

from idleguard.core.events.journal import EventLogger, redact
from idleguard.core.events.models import BaseEvent, EventSeverity, SourceSubsystem

__all__ = [
    "EventLogger",
    "redact",
    "BaseEvent",
    "EventSeverity",
    "SourceSubsystem",
]
