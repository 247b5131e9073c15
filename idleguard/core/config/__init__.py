from idleguard.core.config.manager import ConfigManager, get_config
from idleguard.core.config.models import (
    SESSION_TIMEOUT_MS,
    WARNING_LEAD_MS,
    ExpiryConfig,
    IdleGuardConfig,
    LoggingConfig,
    load_expiry_config,
)
from idleguard.core.config.paths import ConfigFsPaths

__all__ = [
    "ConfigFsPaths",
    "ConfigManager",
    "ExpiryConfig",
    "IdleGuardConfig",
    "LoggingConfig",
    "SESSION_TIMEOUT_MS",
    "WARNING_LEAD_MS",
    "get_config",
    "load_expiry_config",
]
