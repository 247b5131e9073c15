from __future__ import annotations

import os
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError

from idleguard.core.config.io import ReadResult, atomic_write_json, ensure_dirs, quarantine_corrupt, read_json_file
from idleguard.core.config.models import ExpiryConfig, IdleGuardConfig, LoggingConfig
from idleguard.core.config.paths import ConfigFsPaths
from idleguard.core.errors import ConfigurationError

ENV_OVERRIDES: Dict[str, tuple[str, str]] = {
    "IDLEGUARD_TIMEOUT_MS": ("expiry.json", "timeout_ms"),
    "IDLEGUARD_WARNING_LEAD_MS": ("expiry.json", "warning_lead_ms"),
}


class ConfigManager:
    FILES = ("expiry.json", "logging.json")

    def __init__(
        self,
        *,
        fs: Optional[ConfigFsPaths] = None,
        logger=None,
        read_only: bool = False,
        environ: Optional[Mapping[str, str]] = None,
        max_backups: int = 10,
    ):
        self.fs = fs or ConfigFsPaths(".")
        self.logger = logger
        self.read_only = read_only
        self.environ = os.environ if environ is None else environ
        self.max_backups = int(max_backups)
        self._cfg: Optional[IdleGuardConfig] = None

    # ---------- public API ----------
    def load_all(self) -> IdleGuardConfig:
        ensure_dirs(self.fs.config_dir)
        files = self._load_raw_files()
        files = self._ensure_defaults(files)
        files = self._apply_env_overrides(files)
        self._cfg = self._validate_all(files)
        return self._cfg

    def get(self) -> IdleGuardConfig:
        if self._cfg is None:
            return self.load_all()
        return self._cfg

    def expiry(self) -> ExpiryConfig:
        return self.get().expiry

    def open_paths(self) -> Dict[str, str]:
        return {"config_dir": self.fs.config_dir, "expiry": self.fs.expiry, "logging": self.fs.logging}

    # ---------- internals ----------
    def _load_raw_files(self) -> Dict[str, Dict[str, Any]]:
        out: Dict[str, Dict[str, Any]] = {}
        for name in self.FILES:
            path = os.path.join(self.fs.config_dir, name)
            rr: ReadResult = read_json_file(path)
            if rr.ok:
                out[name] = rr.data
                continue
            if rr.error and (rr.error.startswith("corrupt_json") or rr.error == "not_object"):
                moved = None if self.read_only else quarantine_corrupt(path, self.fs.backups_dir)
                if self.logger:
                    self.logger.warning(f"Corrupt config {name} -> defaults (moved to {moved})")
            # missing or unreadable: defaults later
            out[name] = {}
        return out

    def _ensure_defaults(self, files: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        defaults: Dict[str, Dict[str, Any]] = {
            "expiry.json": ExpiryConfig().model_dump(),
            "logging.json": LoggingConfig().model_dump(),
        }
        out = dict(files)
        for name, dflt in defaults.items():
            if not out.get(name):
                out[name] = dflt
                if self.logger:
                    self.logger.warning(f"Missing config {name}; creating defaults.")
                if not self.read_only:
                    atomic_write_json(os.path.join(self.fs.config_dir, name), dflt, self.fs.backups_dir, max_backups=self.max_backups)
        return out

    def _apply_env_overrides(self, files: Dict[str, Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
        out = {k: dict(v) for k, v in files.items()}
        for env_name, (file_name, key) in ENV_OVERRIDES.items():
            raw = self.environ.get(env_name)
            if raw is None or str(raw).strip() == "":
                continue
            try:
                value = int(str(raw).strip())
            except ValueError as e:
                raise ConfigurationError("Invalid environment override.", variable=env_name, value=str(raw)) from e
            out.setdefault(file_name, {})[key] = value
            if self.logger:
                self.logger.info(f"Config override from {env_name}: {key}={value}")
        return out

    def _validate_all(self, files: Dict[str, Dict[str, Any]]) -> IdleGuardConfig:
        try:
            return IdleGuardConfig.model_validate({"expiry": files.get("expiry.json") or {}, "logging": files.get("logging.json") or {}})
        except ValidationError as e:
            errors = [f"{'.'.join(str(p) for p in err.get('loc', ()))}: {err.get('msg')}" for err in e.errors()]
            raise ConfigurationError("Invalid configuration files.", config_dir=self.fs.config_dir, errors=errors) from e


def get_config(*, root: str = ".", logger=None, read_only: bool = False) -> ConfigManager:
    cm = ConfigManager(fs=ConfigFsPaths(root), logger=logger, read_only=read_only)
    cm.load_all()
    return cm
