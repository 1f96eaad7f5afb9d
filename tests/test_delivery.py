"""Tests for ordered output delivery."""

from __future__ import annotations

import asyncio

import pytest

from omniclaw.container_runner import DeliveryChain
from omniclaw.types import OutputRecord


def _rec(result: str) -> OutputRecord:
    return OutputRecord(status="success", result=result)


class TestDeliveryChain:
    @pytest.mark.asyncio
    async def test_slow_first_output_still_delivered_first(self):
        delivered: list[str] = []

        async def callback(record: OutputRecord) -> None:
            if record.result == "first":
                await asyncio.sleep(0.05)
            delivered.append(record.result)

        chain = DeliveryChain(callback)
        chain.enqueue(_rec("first"))
        chain.enqueue(_rec("second"))
        chain.enqueue(_rec("third"))
        await chain.flush()

        assert delivered == ["first", "second", "third"]
        assert chain.delivered == 3

    @pytest.mark.asyncio
    async def test_failed_delivery_does_not_break_chain(self):
        delivered: list[str] = []

        async def callback(record: OutputRecord) -> None:
            if record.result == "boom":
                raise RuntimeError("delivery failed")
            delivered.append(record.result)

        chain = DeliveryChain(callback)
        chain.enqueue(_rec("a"))
        chain.enqueue(_rec("boom"))
        chain.enqueue(_rec("b"))
        await chain.flush()

        assert delivered == ["a", "b"]
        assert chain.failed == 1

    @pytest.mark.asyncio
    async def test_tail_resolved_when_empty(self):
        async def callback(record: OutputRecord) -> None:
            pass

        chain = DeliveryChain(callback)
        assert chain.tail.done()
        await chain.flush()

    @pytest.mark.asyncio
    async def test_flush_waits_for_late_enqueues(self):
        delivered: list[str] = []
        chain: DeliveryChain

        async def callback(record: OutputRecord) -> None:
            delivered.append(record.result)
            if record.result == "a":
                chain.enqueue(_rec("b"))

        chain = DeliveryChain(callback)
        chain.enqueue(_rec("a"))
        await chain.flush()
        assert delivered == ["a", "b"]
