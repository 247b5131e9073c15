from __future__ import annotations

import asyncio
import inspect
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol


@dataclass(frozen=True)
class TerminationResult:
    ok: bool
    error: Optional[str] = None

    @classmethod
    def success(cls) -> "TerminationResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, error: str) -> "TerminationResult":
        return cls(ok=False, error=str(error or "unknown error"))


class SessionAuthority(Protocol):
    """
    The authentication provider as seen by the expiry manager.

    `terminate_session` may block, raise, or return a coroutine; the manager
    always calls it off its own critical path.
    """

    def has_live_session(self) -> bool: ...

    def terminate_session(self) -> Any: ...


def coerce_termination_result(value: Any) -> TerminationResult:
    if inspect.isawaitable(value):
        value = _await_blocking(value)
    if isinstance(value, TerminationResult):
        return value
    if value is False:
        return TerminationResult.failure("sign-out was rejected")
    return TerminationResult.success()


def _await_blocking(awaitable: Any) -> Any:
    async def _wait() -> Any:
        return await awaitable

    return asyncio.run(_wait())


class CallableAuthority:
    """
    Adapts an auth provider exposing `current_user()` / `sign_out()`.

    A truthy `current_user()` means a live session.
    """

    def __init__(self, *, current_user: Callable[[], Any], sign_out: Callable[[], Any]):
        self._current_user = current_user
        self._sign_out = sign_out

    def has_live_session(self) -> bool:
        return bool(self._current_user())

    def terminate_session(self) -> TerminationResult:
        return coerce_termination_result(self._sign_out())
