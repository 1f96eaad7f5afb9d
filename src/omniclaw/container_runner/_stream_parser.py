"""Incremental parser for the agent output marker protocol.

The agent prints structured results to stdout as::

    ---OMNICLAW_OUTPUT_START---
    {"status": "success", "result": "...", "newSessionId": "..."}
    ---OMNICLAW_OUTPUT_END---

mixed with arbitrary log noise. Chunks arrive at any granularity, so the
parser keeps a scan buffer separate from the size-capped diagnostic buffers:
truncating what we keep for run logs never affects marker detection.
"""

from __future__ import annotations

import codecs

from omniclaw.config import Settings
from omniclaw.container_runner._serialization import OutputProtocolError, parse_output_record
from omniclaw.logger import logger
from omniclaw.types import OutputRecord

OUTPUT_START_MARKER = Settings.OUTPUT_START_MARKER
OUTPUT_END_MARKER = Settings.OUTPUT_END_MARKER

_START_TAIL = len(OUTPUT_START_MARKER) - 1
_END_TAIL = len(OUTPUT_END_MARKER) - 1

# Lower bound on the open-unit limit, independent of the diagnostic cap.
MIN_OPEN_UNIT_SIZE = 1024 * 1024


def _new_decoder() -> codecs.IncrementalDecoder:
    return codecs.getincrementaldecoder("utf-8")(errors="replace")


class _MarkerScanner:
    """Finds marker-delimited payloads across chunk boundaries.

    Between units only a short tail is kept (enough to complete a split
    START). While a unit is open the buffer starts at its START, and each
    feed resumes the END search where the previous one stopped. An open unit
    longer than ``max_unit_size`` characters is discarded.

    An END with no preceding START is noise. When two STARTs precede an END,
    the earlier unit never terminated and only the later one counts.
    """

    def __init__(self, max_unit_size: int | None = None, label: str = "agent") -> None:
        self._max_unit_size = max_unit_size
        self._label = label
        self._buf = ""
        self._open = False
        self._searched = 0

    def feed(self, text: str) -> list[str]:
        buf = self._buf + text
        units: list[str] = []
        if self._open:
            start, resume = 0, self._searched
        else:
            start, resume = buf.find(OUTPUT_START_MARKER), 0
        pos = 0

        while start != -1:
            end = buf.find(OUTPUT_END_MARKER, max(start + len(OUTPUT_START_MARKER), resume))
            if end == -1:
                if self._max_unit_size is not None and len(buf) - start > self._max_unit_size:
                    logger.warning(
                        "Discarding oversized output unit",
                        group=self._label,
                        limit=self._max_unit_size,
                    )
                    self._reset(buf[max(0, len(buf) - _START_TAIL) :])
                    return units
                self._buf = buf[start:]
                self._open = True
                self._searched = max(0, len(self._buf) - _END_TAIL)
                return units
            inner = buf.rfind(OUTPUT_START_MARKER, start, end)
            if inner != start:
                logger.warning("Discarding unterminated output unit", group=self._label, chars=inner - start)
            units.append(buf[inner + len(OUTPUT_START_MARKER) : end].strip())
            pos = end + len(OUTPUT_END_MARKER)
            start, resume = buf.find(OUTPUT_START_MARKER, pos), 0

        self._reset(buf[max(pos, len(buf) - _START_TAIL) :])
        return units

    def _reset(self, tail: str) -> None:
        self._buf = tail
        self._open = False
        self._searched = 0


class OutputStreamParser:
    """Stateful parser for one agent run's stdout and stderr.

    With ``streaming=True`` every complete unit is returned from
    :meth:`feed_stdout` as soon as its END marker arrives. With
    ``streaming=False`` nothing is emitted incrementally and the caller asks
    for :meth:`parse_final_output` once the process has exited.

    Caps are measured in bytes: a chunk that crosses the cap is appended up
    to the boundary, after which the stream is marked truncated and never
    grows again. ``str`` chunks are UTF-8 encoded before they are counted.
    """

    def __init__(self, max_output_size: int, *, streaming: bool = True, label: str = "agent") -> None:
        self._max_output_size = max_output_size
        self._streaming = streaming
        self._label = label

        self._stdout_decoder = _new_decoder()
        self._stderr_decoder = _new_decoder()
        self._stdout = bytearray()
        self._stderr = bytearray()
        self._stdout_truncated = False
        self._stderr_truncated = False
        self._scanner = _MarkerScanner(max(max_output_size, MIN_OPEN_UNIT_SIZE), label)

        self._records_parsed = 0
        self._last_record: OutputRecord | None = None
        self._new_session_id: str | None = None

    # -- Feeding -----------------------------------------------------------

    def feed_stdout(self, chunk: bytes | str) -> list[OutputRecord]:
        if isinstance(chunk, str):
            raw, text = chunk.encode(), chunk
        else:
            raw, text = chunk, self._stdout_decoder.decode(chunk)
        self._stdout_truncated = self._append(self._stdout, self._stdout_truncated, raw, "stdout")
        if not self._streaming or not text:
            return []

        records = []
        for payload in self._scanner.feed(text):
            record = self._try_parse(payload)
            if record is not None:
                records.append(record)
        return records

    def feed_stderr(self, chunk: bytes | str) -> str:
        if isinstance(chunk, str):
            raw, text = chunk.encode(), chunk
        else:
            raw, text = chunk, self._stderr_decoder.decode(chunk)
        self._stderr_truncated = self._append(self._stderr, self._stderr_truncated, raw, "stderr")
        return text

    def _append(self, buf: bytearray, truncated: bool, raw: bytes, stream: str) -> bool:
        if truncated or not raw:
            return truncated
        remaining = self._max_output_size - len(buf)
        if len(raw) > remaining:
            buf += raw[:remaining]
            logger.warning(
                f"Agent {stream} truncated",
                group=self._label,
                size=self._max_output_size,
            )
            return True
        buf += raw
        return False

    def _try_parse(self, payload: str) -> OutputRecord | None:
        try:
            record = parse_output_record(payload)
        except OutputProtocolError as exc:
            logger.warning(
                "Failed to parse streamed output chunk",
                group=self._label,
                err=str(exc),
                payload=payload[:200],
            )
            return None
        self.note_record(record)
        return record

    # -- Final output --------------------------------------------------------

    def parse_final_output(self) -> OutputRecord:
        """Resolve the run's result from the accumulated stdout.

        The last valid marker unit wins. Without any marker units, the last
        non-empty line of stdout must itself be an output record.

        Raises OutputProtocolError if neither yields a usable record.
        """
        stdout = self.stdout
        units = _MarkerScanner(label=self._label).feed(stdout)
        for payload in reversed(units):
            try:
                return parse_output_record(payload)
            except OutputProtocolError as exc:
                logger.debug("Skipping invalid final output unit", group=self._label, err=str(exc))
        if units:
            raise OutputProtocolError(f"None of {len(units)} output units contained a valid record")

        lines = [line for line in stdout.strip().splitlines() if line.strip()]
        if not lines:
            raise OutputProtocolError("Agent produced no output")
        return parse_output_record(lines[-1].strip())

    # -- Introspection -------------------------------------------------------

    @property
    def stdout(self) -> str:
        return self._stdout.decode(errors="replace")

    @property
    def stderr(self) -> str:
        return self._stderr.decode(errors="replace")

    @property
    def stdout_truncated(self) -> bool:
        return self._stdout_truncated

    @property
    def stderr_truncated(self) -> bool:
        return self._stderr_truncated

    @property
    def had_output(self) -> bool:
        return self._records_parsed > 0

    @property
    def records_parsed(self) -> int:
        return self._records_parsed

    @property
    def last_record(self) -> OutputRecord | None:
        return self._last_record

    @property
    def new_session_id(self) -> str | None:
        return self._new_session_id

    def note_record(self, record: OutputRecord) -> None:
        """Track a record that arrived out of band (structured backends)."""
        self._records_parsed += 1
        self._last_record = record
        if record.new_session_id:
            self._new_session_id = record.new_session_id
