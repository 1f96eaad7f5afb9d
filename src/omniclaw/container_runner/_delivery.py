"""Ordered delivery of parsed outputs to an async callback.

Each delivery waits for the previous one to settle before the callback is
invoked, so a slow first output can never be overtaken by a fast second
one. A failing callback is logged and the chain moves on.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable

from omniclaw.logger import logger
from omniclaw.types import OutputRecord

OnOutput = Callable[[OutputRecord], Awaitable[None]]


class DeliveryChain:
    def __init__(self, callback: OnOutput, *, label: str = "agent") -> None:
        self._callback = callback
        self._label = label
        self._tail: asyncio.Future[None] | None = None
        self.delivered = 0
        self.failed = 0

    def enqueue(self, record: OutputRecord) -> asyncio.Future[None]:
        """Schedule delivery of *record* after everything already enqueued."""
        task = asyncio.ensure_future(self._deliver(self._tail, record))
        self._tail = task
        return task

    async def _deliver(self, prev: asyncio.Future[None] | None, record: OutputRecord) -> None:
        if prev is not None:
            await asyncio.wait([prev])
        try:
            await self._callback(record)
            self.delivered += 1
        except Exception:
            self.failed += 1
            logger.exception("Output delivery failed", group=self._label, status=record.status)

    @property
    def tail(self) -> asyncio.Future[None]:
        """Resolves once every delivery enqueued so far has settled."""
        if self._tail is None:
            done = asyncio.get_running_loop().create_future()
            done.set_result(None)
            return done
        return self._tail

    async def flush(self) -> None:
        """Wait for the tail, including deliveries enqueued while waiting."""
        while self._tail is not None:
            tail = self._tail
            await asyncio.wait([tail])
            if tail is self._tail:
                return
