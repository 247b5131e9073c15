from __future__ import annotations

import threading
import time

import pytest

from idleguard.core.activity import LifecycleSource
from idleguard.core.error_reporter import ErrorReporter
from idleguard.core.errors import ConfigurationError
from idleguard.core.expiry import ExpiryState, LifecyclePhase
from idleguard.core.trace import current_trace_id, trace_context

from .helpers.fakes import MIN, DummyLogger, FakeAuthority, InlineExecutor
from .helpers.log_assertions import event_types, read_jsonl


def test_idle_session_warns_then_expires(make_manager, scheduler, authority, callbacks):
    m = make_manager()
    assert m.start() is True
    assert m.state() == ExpiryState.ARMED
    assert scheduler.pending() == 2

    scheduler.advance(20 * MIN)

    assert callbacks.events == [("warning", 14.0), ("timeout", 15.0)]
    assert authority.terminations == 1
    assert m.state() == ExpiryState.EXPIRED
    assert scheduler.pending() == 0
    assert m.status()["termination"] == "ok"


def test_activity_pushes_deadline_back(make_manager, scheduler, callbacks):
    m = make_manager()
    m.start()
    scheduler.advance(10 * MIN)
    m.reset_activity()
    scheduler.advance(30 * MIN)

    assert callbacks.times("warning") == [24.0]
    assert callbacks.times("timeout") == [25.0]


def test_reset_timer_is_an_alias(make_manager, scheduler, callbacks):
    m = make_manager()
    m.start()
    scheduler.advance(10 * MIN)
    m.reset_timer()
    scheduler.advance(30 * MIN)
    assert callbacks.times("timeout") == [25.0]


def test_many_resets_yield_one_expiry_from_last_activity(make_manager, scheduler, callbacks, authority):
    m = make_manager()
    m.start()
    for t in (1, 2, 3, 4.5):
        scheduler.advance_to(scheduler.clock.at(t))
        m.reset_activity()

    scheduler.advance(60 * MIN)

    assert callbacks.times("warning") == [18.5]
    assert callbacks.times("timeout") == [19.5]
    assert authority.terminations == 1


def test_background_beyond_timeout_expires_on_resume(make_manager, scheduler, callbacks, authority):
    m = make_manager()
    m.start()
    scheduler.advance(5 * MIN)
    m.on_lifecycle_transition("background")
    scheduler.suspend()
    scheduler.advance(16 * MIN)  # t=21, timers frozen

    m.on_lifecycle_transition(LifecyclePhase.FOREGROUND)

    assert callbacks.events == [("timeout", 21.0)]
    assert m.state() == ExpiryState.EXPIRED
    assert authority.terminations == 1

    # The thawed host delivers nothing: both timers were cancelled on expiry.
    scheduler.resume()
    scheduler.advance(30 * MIN)
    assert callbacks.count("timeout") == 1
    assert authority.terminations == 1


def test_late_timer_burst_before_resume_expires_once(make_manager, scheduler, callbacks, authority):
    m = make_manager()
    m.start()
    scheduler.advance(5 * MIN)
    m.on_lifecycle_transition("background")
    scheduler.suspend()
    scheduler.advance(16 * MIN)

    # Overdue timers arrive first, then the foreground signal.
    scheduler.resume()
    m.on_lifecycle_transition("active")

    assert callbacks.events == [("warning", 21.0), ("timeout", 21.0)]
    assert authority.terminations == 1
    assert m.state() == ExpiryState.EXPIRED


def test_short_background_resumes_with_fresh_window(make_manager, scheduler, callbacks):
    m = make_manager()
    m.start()
    scheduler.advance(5 * MIN)
    m.on_lifecycle_transition("background")
    scheduler.suspend()
    scheduler.advance(7 * MIN)  # t=12

    m.on_lifecycle_transition("active")
    assert m.state() == ExpiryState.ARMED
    assert callbacks.events == []

    scheduler.resume()
    scheduler.advance(30 * MIN)
    assert callbacks.times("warning") == [26.0]
    assert callbacks.times("timeout") == [27.0]


def test_explicit_resume_timestamp_is_used(make_manager, scheduler, clock, callbacks):
    m = make_manager()
    m.start()
    m.on_lifecycle_transition("background", now=clock.at(2))
    m.on_lifecycle_transition("active", now=clock.at(15))

    assert m.state() == ExpiryState.EXPIRED
    assert callbacks.count("timeout") == 1


def test_elapsed_equal_to_timeout_expires(make_manager, scheduler, callbacks):
    m = make_manager()
    m.start()
    m.on_lifecycle_transition("background")
    scheduler.suspend()
    scheduler.advance(15 * MIN)
    m.on_lifecycle_transition("active")
    assert m.state() == ExpiryState.EXPIRED


def test_inactive_is_treated_as_background(make_manager, scheduler, callbacks):
    m = make_manager()
    m.start()
    scheduler.advance(2 * MIN)
    m.on_lifecycle_transition("inactive")
    scheduler.advance(1 * MIN)
    m.on_lifecycle_transition("active")

    scheduler.advance(30 * MIN)
    assert callbacks.times("warning") == [17.0]
    assert callbacks.times("timeout") == [18.0]


def test_repeated_foreground_does_not_refresh_window(make_manager, scheduler, callbacks):
    m = make_manager()
    m.start()
    scheduler.advance(5 * MIN)
    m.on_lifecycle_transition("active")
    scheduler.advance(30 * MIN)
    assert callbacks.times("timeout") == [15.0]


def test_warning_fires_once_per_cycle(make_manager, scheduler, callbacks):
    m = make_manager()
    m.start()
    scheduler.advance(14.5 * MIN)
    assert callbacks.times("warning") == [14.0]
    assert m.status()["warned"] is True

    m.reset_activity()
    assert m.status()["warned"] is False
    scheduler.advance(14 * MIN)

    assert callbacks.times("warning") == [14.0, 28.5]
    assert callbacks.count("timeout") == 0
    assert m.is_armed() is True


def test_stale_timer_callback_is_ignored(make_manager, scheduler, callbacks):
    m = make_manager()
    m.start()
    scheduler.advance(5 * MIN)
    m.reset_activity()
    assert scheduler.cancelled_handles() == [1, 2]

    # The original expiry timer fires anyway, late.
    scheduler.fire_cancelled(2)

    assert callbacks.events == []
    assert m.state() == ExpiryState.ARMED
    scheduler.advance(30 * MIN)
    assert callbacks.times("timeout") == [20.0]


def test_custom_window(make_manager, scheduler, clock, callbacks):
    m = make_manager(cfg={"timeout_ms": 10_000, "warning_lead_ms": 3_000})
    m.start()
    scheduler.advance(60)

    warn_at = callbacks.times("warning")[0] * MIN
    timeout_at = callbacks.times("timeout")[0] * MIN
    assert warn_at == pytest.approx(7.0)
    assert timeout_at == pytest.approx(10.0)


def test_zero_warning_lead_fires_warning_at_expiry(make_manager, scheduler, callbacks):
    m = make_manager(cfg={"timeout_ms": 60_000, "warning_lead_ms": 0})
    m.start()
    scheduler.advance(5 * MIN)
    assert callbacks.events == [("warning", 1.0), ("timeout", 1.0)]


def test_invalid_window_rejected_before_anything_runs(make_manager, scheduler, authority):
    with pytest.raises(ConfigurationError) as ei:
        make_manager(cfg={"timeout_ms": 15 * 60_000, "warning_lead_ms": 20 * 60_000})
    assert ei.value.code == "configuration_error"
    assert authority.queries == 0
    assert scheduler.pending() == 0


def test_no_live_session_stays_unarmed(make_manager, scheduler, events_path):
    source = LifecycleSource()
    m = make_manager(authority=FakeAuthority(live=False), activity_source=source)

    assert m.start() is False
    assert m.state() == ExpiryState.UNARMED
    assert scheduler.pending() == 0
    assert source.subscriber_count() == 0
    assert "expiry.no_live_session" in event_types(events_path)


def test_authority_query_failure_leaves_manager_unarmed(make_manager, scheduler, errors_path):
    m = make_manager(authority=FakeAuthority(raise_on_query=True))

    assert m.start() is False
    assert m.state() == ExpiryState.UNARMED
    assert scheduler.pending() == 0
    rows = read_jsonl(errors_path)
    assert rows[-1]["error_code"] == "authority_error"
    assert rows[-1]["safe_context"]["operation"] == "has_live_session"


def test_start_twice_keeps_single_cycle(make_manager, scheduler, authority):
    m = make_manager()
    assert m.start() is True
    assert m.start() is True
    assert scheduler.pending() == 2
    assert authority.queries == 1
    assert m.status()["cycle"] == 1


def test_expired_is_absorbing(make_manager, scheduler, callbacks, authority):
    source = LifecycleSource()
    m = make_manager(activity_source=source)
    m.start()
    scheduler.advance(15 * MIN)
    assert m.state() == ExpiryState.EXPIRED

    m.reset_activity()
    m.on_lifecycle_transition("background")
    m.on_lifecycle_transition("active")
    assert m.start() is False
    m.stop()
    scheduler.advance(60 * MIN)

    assert m.state() == ExpiryState.EXPIRED
    assert scheduler.pending() == 0
    assert callbacks.count("timeout") == 1
    assert authority.terminations == 1
    assert source.subscriber_count() == 0


def test_stop_disarms_and_unsubscribes(make_manager, scheduler, callbacks, authority):
    source = LifecycleSource()
    m = make_manager(activity_source=source)
    m.start()
    assert source.subscriber_count() == 1

    scheduler.advance(5 * MIN)
    m.stop()

    assert m.state() == ExpiryState.STOPPED
    assert scheduler.pending() == 0
    assert source.subscriber_count() == 0

    m.reset_activity()
    assert m.start() is False
    scheduler.advance(60 * MIN)
    assert callbacks.events == []
    assert authority.terminations == 0


def test_stop_before_start(make_manager, scheduler):
    m = make_manager()
    m.stop()
    assert m.state() == ExpiryState.STOPPED
    assert m.start() is False
    assert scheduler.pending() == 0


def test_lifecycle_source_drives_the_clock(make_manager, clock, scheduler, callbacks):
    source = LifecycleSource(now=clock.time)
    m = make_manager(activity_source=source)
    m.start()

    scheduler.advance(5 * MIN)
    source.emit("background")
    scheduler.suspend()
    scheduler.advance(20 * MIN)
    source.emit("active")

    assert callbacks.events == [("timeout", 25.0)]
    assert m.state() == ExpiryState.EXPIRED
    assert source.subscriber_count() == 0


def test_failing_warning_callback_is_contained(make_manager, scheduler, callbacks, errors_path):
    callbacks.raise_on_warning = True
    m = make_manager()
    m.start()
    scheduler.advance(20 * MIN)

    assert callbacks.count("warning") == 1
    assert callbacks.count("timeout") == 1
    assert m.state() == ExpiryState.EXPIRED
    codes = [r["error_code"] for r in read_jsonl(errors_path)]
    assert codes == ["callback_error"]


def test_failing_timeout_callback_still_terminates(make_manager, scheduler, callbacks, authority, errors_path):
    callbacks.raise_on_timeout = True
    m = make_manager()
    m.start()
    scheduler.advance(20 * MIN)

    assert authority.terminations == 1
    assert m.state() == ExpiryState.EXPIRED
    assert m.status()["termination"] == "ok"
    row = read_jsonl(errors_path)[0]
    assert row["error_code"] == "callback_error"
    assert row["safe_context"]["callback"] == "on_timeout"


def test_rejected_termination_keeps_local_expiry(make_manager, scheduler, errors_path, events_path):
    m = make_manager(authority=FakeAuthority(fail=True))
    m.start()
    scheduler.advance(20 * MIN)

    assert m.state() == ExpiryState.EXPIRED
    assert m.status()["termination"] == "failed"
    assert read_jsonl(errors_path)[-1]["error_code"] == "authority_error"
    assert "expiry.termination_failed" in event_types(events_path)


def test_raising_termination_is_reported(make_manager, scheduler, errors_path):
    m = make_manager(authority=FakeAuthority(raise_on_terminate=True))
    m.start()
    scheduler.advance(20 * MIN)

    assert m.state() == ExpiryState.EXPIRED
    assert m.status()["termination"] == "failed"
    row = read_jsonl(errors_path)[-1]
    assert row["error_code"] == "authority_error"
    assert row["safe_context"]["error_type"] == "ConnectionError"


def test_closed_executor_counts_as_failed_termination(make_manager, scheduler):
    ex = InlineExecutor()
    ex.shutdown()
    m = make_manager(executor=ex)
    m.start()
    scheduler.advance(20 * MIN)

    assert m.state() == ExpiryState.EXPIRED
    assert m.status()["termination"] == "failed"


def test_schedule_failure_expires_instead_of_staying_armed(make_manager, scheduler, callbacks, authority):
    scheduler.fail_next_schedule = True
    m = make_manager()
    m.start()

    assert m.state() == ExpiryState.EXPIRED
    assert scheduler.pending() == 0
    assert callbacks.count("timeout") == 1
    assert authority.terminations == 1


def test_callbacks_can_be_registered_after_construction(make_manager, scheduler, callbacks):
    m = make_manager(on_warning=None, on_timeout=None)
    m.on_warning(callbacks.warning)
    m.on_timeout(callbacks.timeout)
    m.start()
    scheduler.advance(20 * MIN)
    assert [n for n, _ in callbacks.events] == ["warning", "timeout"]


def test_status_reports_remaining_time(make_manager, scheduler):
    m = make_manager()
    assert m.seconds_until_expiry() is None
    m.start()
    scheduler.advance(4 * MIN)

    st = m.status()
    assert st["state"] == "ARMED"
    assert st["phase"] == "FOREGROUND"
    assert st["idle_seconds"] == pytest.approx(240.0)
    assert st["seconds_until_warning"] == pytest.approx(600.0)
    assert st["seconds_until_expiry"] == pytest.approx(660.0)
    assert st["timeout_ms"] == 900_000
    assert st["warning_lead_ms"] == 60_000
    assert m.seconds_until_expiry() == pytest.approx(660.0)


def test_journal_records_the_session_story(make_manager, scheduler, events_path):
    m = make_manager()
    m.start()
    scheduler.advance(3 * MIN)
    m.reset_activity()
    m.on_lifecycle_transition("background")
    m.on_lifecycle_transition("active")
    m.reset_activity()
    scheduler.advance(20 * MIN)

    types = event_types(events_path)
    assert types == [
        "expiry.armed",
        "expiry.reset",
        "expiry.background",
        "expiry.resumed",
        "expiry.reset",
        "expiry.warning",
        "expiry.expired",
        "expiry.terminated",
    ]
    rows = read_jsonl(events_path)
    assert {r["trace_id"] for r in rows} == {m.trace_id}
    assert rows[2]["source"] == "lifecycle"
    assert rows[6]["severity"] == "WARN"


def test_unknown_phase_is_rejected(make_manager):
    m = make_manager()
    m.start()
    with pytest.raises(ValueError):
        m.on_lifecycle_transition("hibernating")
    assert m.is_armed() is True


def test_background_reported_before_start_is_reconciled(make_manager, clock, scheduler, callbacks, authority):
    source = LifecycleSource(now=clock.time)
    source.emit("background")
    m = make_manager(activity_source=source)
    m.start()
    assert m.status()["phase"] == "BACKGROUND"

    scheduler.suspend()
    scheduler.advance(20 * MIN)
    source.emit("active")

    assert m.state() == ExpiryState.EXPIRED
    assert callbacks.events == [("timeout", 20.0)]
    assert authority.terminations == 1


def test_missed_background_signal_still_expires_on_foreground(make_manager, scheduler, callbacks, authority):
    m = make_manager()
    m.start()
    scheduler.suspend()
    scheduler.advance(20 * MIN)

    m.on_lifecycle_transition("active")

    assert m.state() == ExpiryState.EXPIRED
    assert callbacks.events == [("timeout", 20.0)]
    assert authority.terminations == 1


def test_initial_phase_argument_seeds_the_clock(make_manager, scheduler, callbacks):
    m = make_manager(initial_phase="background")
    m.start()
    scheduler.advance(3 * MIN)
    m.on_lifecycle_transition("active")

    scheduler.advance(30 * MIN)
    assert callbacks.times("warning") == [17.0]
    assert callbacks.times("timeout") == [18.0]


def _authority_workers():
    return [t.name for t in threading.enumerate() if t.name.startswith("idleguard-authority")]


def test_owned_authority_worker_exits_after_expiry(make_manager, scheduler, authority):
    holder = {}
    # Unmount-on-sign-out: the timeout callback stops the manager itself.
    m = make_manager(executor=None, on_timeout=lambda: holder["m"].stop())
    holder["m"] = m
    m.start()
    scheduler.advance(20 * MIN)

    deadline = time.monotonic() + 2.0
    while time.monotonic() < deadline:
        if not _authority_workers() and m.status()["termination"] != "pending":
            break
        time.sleep(0.01)

    assert _authority_workers() == []
    assert authority.terminations == 1
    assert m.status()["termination"] == "ok"


def test_callbacks_run_inside_manager_trace(make_manager, scheduler):
    seen = []
    m = make_manager(on_warning=lambda: seen.append(current_trace_id()))
    m.start()
    scheduler.advance(14 * MIN)

    assert seen == [m.trace_id]
    assert current_trace_id() is None


def test_manager_joins_host_trace(make_manager):
    with trace_context("host-trace"):
        m = make_manager()
    assert m.trace_id == "host-trace"


def test_reported_failure_is_logged_once(make_manager, scheduler, callbacks, errors_path):
    logger = DummyLogger()
    callbacks.raise_on_warning = True
    m = make_manager(logger=logger, error_reporter=ErrorReporter(path=errors_path, logger=logger))
    m.start()
    scheduler.advance(14 * MIN)

    assert [line for line in logger.messages() if "[callback]" in line] == [
        "[callback] callback_error: A session callback failed."
    ]


def test_failure_without_reporter_goes_to_logger(make_manager, scheduler, callbacks):
    logger = DummyLogger()
    callbacks.raise_on_warning = True
    m = make_manager(logger=logger, error_reporter=None)
    m.start()
    scheduler.advance(14 * MIN)

    assert logger.messages("error") == ["[callback] RuntimeError: toast failed"]
