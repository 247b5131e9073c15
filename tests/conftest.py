from __future__ import annotations

import os

import pytest

from idleguard.core.config.paths import ConfigFsPaths
from idleguard.core.error_reporter import ErrorReporter
from idleguard.core.events import EventLogger
from idleguard.core.expiry import ExpiryManager

from .helpers.fakes import DummyLogger, FakeAuthority, FakeClock, FakeScheduler, InlineExecutor, RecordingCallbacks


@pytest.fixture
def tmp_config_root(tmp_path):
    """
    Provides an isolated root with config/ under tmp_path.
    """
    fs = ConfigFsPaths(root=str(tmp_path))
    os.makedirs(fs.config_dir, exist_ok=True)
    return fs


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(clock):
    return FakeScheduler(clock)


@pytest.fixture
def authority():
    return FakeAuthority()


@pytest.fixture
def callbacks(clock):
    return RecordingCallbacks(clock)


@pytest.fixture
def events_path(tmp_path):
    return str(tmp_path / "logs" / "events.jsonl")


@pytest.fixture
def errors_path(tmp_path):
    return str(tmp_path / "logs" / "errors.jsonl")


@pytest.fixture
def make_manager(clock, scheduler, authority, callbacks, events_path, errors_path):
    """
    Factory for an ExpiryManager wired to fakes; keyword arguments override the defaults.
    """

    def _make(**overrides):
        kwargs = {
            "authority": authority,
            "scheduler": scheduler,
            "now": clock.time,
            "executor": InlineExecutor(),
            "on_warning": callbacks.warning,
            "on_timeout": callbacks.timeout,
            "logger": DummyLogger(),
            "event_logger": EventLogger(events_path),
            "error_reporter": ErrorReporter(path=errors_path),
        }
        kwargs.update(overrides)
        return ExpiryManager(**kwargs)

    return _make
