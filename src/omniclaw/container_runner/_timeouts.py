"""Startup and idle timers for one agent run.

Two independent ``loop.call_later`` timers:

  startup: armed at spawn, disarmed for good by the first stderr bytes
            (stderr activity means the process came up)
  idle   : armed at spawn, restarted whenever a structured output arrives

Whichever fires first ends the run: ``on_timeout`` is called exactly once
and both timers are considered expired afterwards.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from typing import Literal

TimeoutReason = Literal["startup", "idle"]


class TimeoutArbiter:
    """Owns the startup and idle timers of one run.

    Durations are seconds; ``None`` or a value ``<= 0`` disables that timer.
    Must be started from inside a running event loop.
    """

    def __init__(
        self,
        *,
        startup_timeout: float | None,
        idle_timeout: float | None,
        on_timeout: Callable[[TimeoutReason], None],
    ) -> None:
        self._startup_timeout = startup_timeout
        self._idle_timeout = idle_timeout
        self._on_timeout = on_timeout
        self._startup_handle: asyncio.TimerHandle | None = None
        self._idle_handle: asyncio.TimerHandle | None = None
        self._startup_cleared = False
        self._reason: TimeoutReason | None = None
        self._cancelled = False

    def start(self) -> None:
        if self.expired:
            return
        loop = asyncio.get_running_loop()
        if self._startup_timeout and self._startup_timeout > 0 and not self._startup_cleared:
            self._startup_handle = loop.call_later(self._startup_timeout, self._fire, "startup")
        self._arm_idle(loop)

    def _arm_idle(self, loop: asyncio.AbstractEventLoop) -> None:
        if self._idle_handle is not None:
            self._idle_handle.cancel()
            self._idle_handle = None
        if self._idle_timeout and self._idle_timeout > 0:
            self._idle_handle = loop.call_later(self._idle_timeout, self._fire, "idle")

    def note_stderr(self) -> None:
        """Stderr seen: the startup timer is cleared permanently."""
        if self._startup_cleared:
            return
        self._startup_cleared = True
        if self._startup_handle is not None:
            self._startup_handle.cancel()
            self._startup_handle = None

    def note_output(self) -> None:
        """Structured output seen: restart the idle timer from zero."""
        if self.expired:
            return
        self._arm_idle(asyncio.get_running_loop())

    def cancel(self) -> None:
        """Cancel both timers. Safe to call any number of times."""
        self._cancelled = True
        for handle in (self._startup_handle, self._idle_handle):
            if handle is not None:
                handle.cancel()
        self._startup_handle = None
        self._idle_handle = None

    def _fire(self, reason: TimeoutReason) -> None:
        if self.expired:
            return
        self._reason = reason
        self.cancel()
        self._on_timeout(reason)

    @property
    def fired(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> TimeoutReason | None:
        return self._reason

    @property
    def expired(self) -> bool:
        """True once a timer fired or the arbiter was cancelled."""
        return self._reason is not None or self._cancelled
