"""Lifecycle controller for one agent run.

Composes the output parser, the timeout arbiter and the delivery chain, and
turns the eventual exit of the underlying process into a single
OutputRecord. Backends feed it raw stdout/stderr (or structured records)
and never raise past it: every run resolves to success or error.

States::

    starting ─attach()─▶ running ─▶ completed | timed-out | killed | crashed

Terminal states are final; feeds and timer firings after that are no-ops.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

from omniclaw.container_runner._delivery import DeliveryChain, OnOutput
from omniclaw.container_runner._serialization import OutputProtocolError
from omniclaw.container_runner._stream_parser import OutputStreamParser
from omniclaw.container_runner._timeouts import TimeoutArbiter, TimeoutReason
from omniclaw.logger import logger
from omniclaw.types import OutputRecord, ProcessHandle

RunState = Literal["starting", "running", "completed", "timed-out", "killed", "crashed"]
TERMINAL_STATES: frozenset[str] = frozenset({"completed", "timed-out", "killed", "crashed"})

OnTimeout = Callable[[TimeoutReason], None]


@dataclass(frozen=True)
class StreamState:
    """Point-in-time snapshot of a run, for introspection and tests."""

    state: RunState
    stdout: str
    stderr: str
    stdout_truncated: bool
    stderr_truncated: bool
    had_output: bool
    records_parsed: int
    new_session_id: str | None
    timed_out: bool
    timeout_reason: TimeoutReason | None
    output_chain: asyncio.Future[None]


class LifecycleController:
    """Drives one agent run from spawn to resolved result.

    Must be constructed inside a running event loop: both timers are armed
    immediately. When ``on_output`` is None the run is in no-callback mode
    and the result comes from :meth:`parse_final_output` at exit.
    """

    def __init__(
        self,
        group_name: str,
        *,
        startup_timeout: float | None,
        idle_timeout: float | None,
        max_output_size: int,
        on_output: OnOutput | None = None,
        on_timeout: OnTimeout | None = None,
        timeout_after_output: Literal["success", "error"] = "success",
    ) -> None:
        self.group_name = group_name
        self._startup_timeout = startup_timeout
        self._idle_timeout = idle_timeout
        self._on_timeout = on_timeout
        self._timeout_after_output = timeout_after_output

        self._parser = OutputStreamParser(
            max_output_size, streaming=on_output is not None, label=group_name
        )
        self._chain = DeliveryChain(on_output, label=group_name) if on_output else None
        self._arbiter = TimeoutArbiter(
            startup_timeout=startup_timeout,
            idle_timeout=idle_timeout,
            on_timeout=self._handle_timeout,
        )
        self._state: RunState = "starting"
        self._handle: ProcessHandle | None = None
        self._expired = asyncio.Event()
        self._started_at = time.monotonic()
        self._arbiter.start()

    # -- Wiring --------------------------------------------------------------

    def attach(self, handle: ProcessHandle) -> None:
        """Take ownership of the process handle; ``starting`` → ``running``."""
        self._handle = handle
        if self._state == "starting":
            self._state = "running"
        elif self._state == "timed-out":
            handle.kill()

    def feed_stdout(self, chunk: bytes | str) -> list[OutputRecord]:
        if self.is_terminal:
            return []
        records = self._parser.feed_stdout(chunk)
        for record in records:
            self._deliver(record)
        return records

    def feed_stderr(self, chunk: bytes | str) -> None:
        if self.is_terminal:
            return
        text = self._parser.feed_stderr(chunk)
        if chunk:
            self._arbiter.note_stderr()
        if not text:
            return
        for line in text.strip().splitlines():
            if line:
                logger.debug(line, container=self.group_name)

    def mark_started(self) -> None:
        """Liveness seen through something other than stderr (health check)."""
        self._arbiter.note_stderr()

    def accept_output(self, record: OutputRecord) -> None:
        """Record a structured output that did not come through stdout."""
        if self.is_terminal:
            return
        self._parser.note_record(record)
        self._deliver(record)

    def _deliver(self, record: OutputRecord) -> None:
        self._arbiter.note_output()
        if self._chain is not None:
            self._chain.enqueue(record)

    # -- Timeouts and teardown -------------------------------------------------

    def _handle_timeout(self, reason: TimeoutReason) -> None:
        if self.is_terminal:
            return
        self._state = "timed-out"
        logger.error(
            "Agent timeout, stopping",
            group=self.group_name,
            reason=reason,
            had_output=self._parser.had_output,
        )
        if self._handle is not None:
            self._handle.kill()
        self._expired.set()
        if self._on_timeout is not None:
            try:
                self._on_timeout(reason)
            except Exception:
                logger.exception("on_timeout callback failed", group=self.group_name)

    def kill(self) -> None:
        """Explicit stop request. Idempotent."""
        self._arbiter.cancel()
        if self._handle is not None:
            self._handle.kill()
        if not self.is_terminal:
            self._state = "killed"
            self._expired.set()

    def cleanup(self) -> None:
        """Cancel both timers. Safe to call any number of times."""
        self._arbiter.cancel()

    async def wait_expired(self) -> None:
        """Block until the run times out or is killed."""
        await self._expired.wait()

    # -- Introspection ---------------------------------------------------------

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def is_terminal(self) -> bool:
        return self._state in TERMINAL_STATES

    @property
    def timed_out(self) -> bool:
        return self._arbiter.fired

    @property
    def duration_ms(self) -> float:
        return (time.monotonic() - self._started_at) * 1000

    def get_state(self) -> StreamState:
        p = self._parser
        return StreamState(
            state=self._state,
            stdout=p.stdout,
            stderr=p.stderr,
            stdout_truncated=p.stdout_truncated,
            stderr_truncated=p.stderr_truncated,
            had_output=p.had_output,
            records_parsed=p.records_parsed,
            new_session_id=p.new_session_id,
            timed_out=self._arbiter.fired,
            timeout_reason=self._arbiter.reason,
            output_chain=self._chain.tail if self._chain else _done_future(),
        )

    def parse_final_output(self) -> OutputRecord:
        """No-callback fallback; raises OutputProtocolError when nothing parses."""
        return self._parser.parse_final_output()

    # -- Resolution ------------------------------------------------------------

    def fail(self, message: str) -> OutputRecord:
        """Resolve a run whose process never started."""
        self._arbiter.cancel()
        if not self.is_terminal:
            self._state = "crashed"
        logger.error("Agent run failed", group=self.group_name, err=message)
        return OutputRecord(status="error", error=message)

    async def finish(self, exit_code: int | None, *, error: str | None = None) -> OutputRecord:
        """Interpret the process exit and resolve the run.

        Any parsed output makes the run a success carrying the last record's
        result, whatever the exit code or that record's own status. A timeout
        only turns that into an error when ``timeout_after_output`` is
        ``"error"``.
        """
        self._arbiter.cancel()
        if self._chain is not None:
            await self._chain.flush()

        p = self._parser
        timed_out = self._arbiter.fired
        killed = self._state == "killed" or (self._handle is not None and self._handle.killed)
        if not self.is_terminal:
            if killed:
                self._state = "killed"
            elif exit_code == 0:
                self._state = "completed"
            else:
                self._state = "crashed"
        self._expired.set()

        log = logger.bind(group=self.group_name, exit_code=exit_code, duration_ms=round(self.duration_ms))

        if p.had_output and p.last_record is not None:
            if timed_out and self._timeout_after_output == "error":
                log.warning("Agent timed out after output, reporting error")
                return OutputRecord(
                    status="error",
                    error=f"Agent timed out ({self._arbiter.reason}) after producing output",
                    new_session_id=p.new_session_id,
                )
            if timed_out:
                log.info("Agent timed out after output (idle cleanup)")
            else:
                log.info("Agent completed", new_session_id=p.new_session_id)
            last = p.last_record
            return OutputRecord(
                status="success",
                result=last.result,
                new_session_id=p.new_session_id,
                chat_jid=last.chat_jid,
                resume_at=last.resume_at,
                extra=last.extra,
            )

        if timed_out:
            log.error("Agent timed out with no output", reason=self._arbiter.reason)
            return OutputRecord(status="error", error=self._timeout_message())

        if error is not None:
            log.error("Agent run failed", err=error)
            return OutputRecord(status="error", error=error)

        if exit_code != 0:
            log.error("Agent exited with error", stderr_tail=p.stderr[-200:])
            return OutputRecord(status="error", error=self._exit_message(exit_code, killed))

        if self._chain is None:
            try:
                record = p.parse_final_output()
            except OutputProtocolError as exc:
                log.error("Failed to parse agent output", err=str(exc))
                return OutputRecord(status="error", error=f"Failed to parse agent output: {exc}")
            log.info("Agent completed", status=record.status, has_result=bool(record.result))
            return record

        log.error("Agent exited without producing output")
        return OutputRecord(status="error", error="Agent exited without producing output")

    def _timeout_message(self) -> str:
        if self._arbiter.reason == "startup":
            return f"Agent timed out during startup (no activity within {self._startup_timeout}s)"
        return f"Agent timed out after {self._idle_timeout}s without output"

    def _exit_message(self, exit_code: int | None, killed: bool) -> str:
        tail = self._parser.stderr[-200:]
        if killed:
            return f"Agent was stopped before producing output (exit code {exit_code})"
        if exit_code is not None and exit_code < 0:
            return f"Agent killed by signal {-exit_code}: {tail}"
        return f"Agent exited with code {exit_code}: {tail}"


def _done_future() -> asyncio.Future[None]:
    fut = asyncio.get_running_loop().create_future()
    fut.set_result(None)
    return fut
