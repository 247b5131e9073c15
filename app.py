from __future__ import annotations

import argparse
import os
import sys
from typing import Any, Dict, Optional

from idleguard.core.activity import LifecycleSource
from idleguard.core.authority import CallableAuthority, TerminationResult
from idleguard.core.config import ConfigFsPaths, ConfigManager, IdleGuardConfig
from idleguard.core.error_reporter import ErrorReporter, ErrorReporterConfig
from idleguard.core.errors import ConfigurationError
from idleguard.core.events import EventLogger
from idleguard.core.expiry import ExpiryManager
from idleguard.core.logger import setup_logging


class ConsoleSession:
    """
    Stand-in auth provider for the console host: one signed-in user until sign-out.
    """

    def __init__(self, user: Optional[str] = "demo-user", *, fail_sign_out: bool = False):
        self.user = user
        self.fail_sign_out = fail_sign_out

    def current_user(self) -> Optional[str]:
        return self.user

    def sign_out(self) -> TerminationResult:
        if self.fail_sign_out:
            return TerminationResult.failure("sign-out rejected by provider")
        self.user = None
        return TerminationResult.success()


def build_expiry_manager(
    cfg: IdleGuardConfig,
    *,
    session: ConsoleSession,
    source: LifecycleSource,
    logger=None,
    root: str = ".",
    **overrides: Any,
) -> ExpiryManager:
    log_dir = os.path.join(root, cfg.logging.log_dir)
    kwargs: Dict[str, Any] = {
        "authority": CallableAuthority(current_user=session.current_user, sign_out=session.sign_out),
        "cfg": cfg.expiry,
        "activity_source": source,
        "logger": logger,
        "event_logger": EventLogger(os.path.join(log_dir, cfg.logging.events_file)),
        "error_reporter": ErrorReporter(
            path=os.path.join(log_dir, cfg.logging.errors_file),
            cfg=ErrorReporterConfig(include_tracebacks=cfg.logging.include_tracebacks),
            logger=logger,
        ),
        "on_warning": lambda: print("Your session will expire soon. Tap anywhere to stay signed in."),
        "on_timeout": lambda: print("You have been signed out due to inactivity."),
    }
    kwargs.update(overrides)
    return ExpiryManager(**kwargs)


def handle_cli_command(text: str, *, manager: ExpiryManager, source: LifecycleSource) -> Optional[str]:
    """
    Returns the text to print, or None for /exit.
    """
    text = (text or "").strip()
    if text == "/exit":
        return None
    if text == "/status":
        st = manager.status()
        return " ".join(f"{k}={v}" for k, v in st.items())
    if text.startswith("/app"):
        parts = text.split()
        if len(parts) != 2:
            return "Usage: /app active|inactive|background"
        try:
            ev = source.emit(parts[1])
        except ValueError as e:
            return str(e)
        return f"Lifecycle -> {ev.phase.value} (state={manager.state().value})"
    if text == "/stop":
        manager.stop()
        return f"Stopped (state={manager.state().value})"
    # Anything else counts as user interaction.
    manager.reset_activity()
    remaining = manager.seconds_until_expiry()
    if remaining is None:
        return f"Session is {manager.state().value.lower()}."
    return f"Activity recorded. Session expires in {remaining:.0f}s."


def main() -> None:
    ap = argparse.ArgumentParser(description="idleguard console host (session inactivity expiry)")
    ap.add_argument("--root", default=".", help="Directory holding config/ and logs/.")
    ap.add_argument("--timeout-ms", type=int, default=None, help="Override the idle window.")
    ap.add_argument("--warning-lead-ms", type=int, default=None, help="Override the warning lead.")
    ap.add_argument("--signed-out", action="store_true", help="Start without a live session.")
    ap.add_argument("--fail-sign-out", action="store_true", help="Make the provider reject sign-out.")
    args = ap.parse_args()

    environ = dict(os.environ)
    if args.timeout_ms is not None:
        environ["IDLEGUARD_TIMEOUT_MS"] = str(args.timeout_ms)
    if args.warning_lead_ms is not None:
        environ["IDLEGUARD_WARNING_LEAD_MS"] = str(args.warning_lead_ms)

    try:
        cfg = ConfigManager(fs=ConfigFsPaths(args.root), environ=environ).load_all()
    except ConfigurationError as e:
        print(f"{e.user_message} {e.context.get('errors') or ''}", file=sys.stderr)
        sys.exit(2)

    lc = cfg.logging
    logger = setup_logging(os.path.join(args.root, lc.log_dir), level=lc.level, max_bytes=lc.max_bytes, backup_count=lc.backup_count)
    session = ConsoleSession(None if args.signed_out else "demo-user", fail_sign_out=args.fail_sign_out)
    source = LifecycleSource(logger=logger)
    manager = build_expiry_manager(cfg, session=session, source=source, logger=logger, root=args.root)

    if not manager.start():
        logger.info("Not signed in; nothing to expire.")
        return

    logger.info("idleguard console ready. Type anything to count as activity. (/status, /app <phase>, /stop, /exit)")
    try:
        while True:
            try:
                text = input("> ")
            except EOFError:
                print()
                break
            out = handle_cli_command(text, manager=manager, source=source)
            if out is None:
                break
            print(out)
    except KeyboardInterrupt:
        print()
    finally:
        manager.stop()


if __name__ == "__main__":
    main()
