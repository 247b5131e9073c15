from __future__ import annotations

from typing import Any, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from idleguard.core.errors import ConfigurationError

SESSION_TIMEOUT_MS = 15 * 60 * 1000  # 15 minutes
WARNING_LEAD_MS = 60 * 1000  # warning 1 minute before expiry


class ExpiryConfig(BaseModel):
    """
    Idle window and warning lead, in milliseconds.

    The warning fires `timeout_ms - warning_lead_ms` after the last activity,
    expiry fires `timeout_ms` after it.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    timeout_ms: int = Field(default=SESSION_TIMEOUT_MS, gt=0)
    warning_lead_ms: int = Field(default=WARNING_LEAD_MS, ge=0)

    @model_validator(mode="after")
    def _lead_before_timeout(self) -> "ExpiryConfig":
        if self.warning_lead_ms >= self.timeout_ms:
            raise ValueError("warning_lead_ms must be smaller than timeout_ms")
        return self

    @property
    def timeout_seconds(self) -> float:
        return self.timeout_ms / 1000.0

    @property
    def warning_lead_seconds(self) -> float:
        return self.warning_lead_ms / 1000.0

    @property
    def warning_after_seconds(self) -> float:
        return (self.timeout_ms - self.warning_lead_ms) / 1000.0


class LoggingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    log_dir: str = "logs"
    level: str = "INFO"
    max_bytes: int = Field(default=1_000_000, ge=1024)
    backup_count: int = Field(default=5, ge=0, le=50)
    events_file: str = "events.jsonl"
    errors_file: str = "errors.jsonl"
    include_tracebacks: bool = False


class IdleGuardConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    expiry: ExpiryConfig = Field(default_factory=ExpiryConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_expiry_config(data: Any = None) -> ExpiryConfig:
    if data is None:
        return ExpiryConfig()
    if isinstance(data, ExpiryConfig):
        # model_construct() skips validation; re-check the ordering.
        return _validate(data.model_dump())
    if not isinstance(data, Mapping):
        raise ConfigurationError("Expiry configuration must be an object.", got=type(data).__name__)
    return _validate(dict(data))


def _validate(raw: dict) -> ExpiryConfig:
    try:
        return ExpiryConfig.model_validate(raw)
    except ValidationError as e:
        errors = [f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in e.errors()]
        raise ConfigurationError(
            "Invalid session expiry configuration.",
            timeout_ms=raw.get("timeout_ms"),
            warning_lead_ms=raw.get("warning_lead_ms"),
            errors=errors,
        ) from e
