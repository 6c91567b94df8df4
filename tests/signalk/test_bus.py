"""Tests for StreamBundle fan-out and PathSubscription."""

from __future__ import annotations

import asyncio

import pytest

from haspbridge.signalk.bus import PathValue, StreamBundle

VOLTAGE = "electrical.batteries.1.voltage"


class TestStreamBundle:
    @pytest.mark.asyncio
    async def test_push_reaches_subscriber(self) -> None:
        bundle = StreamBundle()
        sub = bundle.subscribe(VOLTAGE)
        bundle.push(VOLTAGE, 12.6, source="n2k.115")

        item = await asyncio.wait_for(sub.__anext__(), timeout=1)
        assert isinstance(item, PathValue)
        assert item.value == 12.6
        assert item.source == "n2k.115"
        sub.close()

    @pytest.mark.asyncio
    async def test_fan_out_to_every_subscriber(self) -> None:
        bundle = StreamBundle()
        a = bundle.subscribe(VOLTAGE)
        b = bundle.subscribe(VOLTAGE)
        bundle.push(VOLTAGE, 1)

        assert (await a.__anext__()).value == 1
        assert (await b.__anext__()).value == 1
        assert bundle.subscriber_count(VOLTAGE) == 2

    def test_push_without_subscribers(self) -> None:
        bundle = StreamBundle()
        item = bundle.push(VOLTAGE, 12.6)
        assert bundle.latest(VOLTAGE) is item
        assert bundle.push_count == 1

    def test_latest_unknown_path(self) -> None:
        assert StreamBundle().latest("nope") is None

    def test_subscriber_count_across_paths(self) -> None:
        bundle = StreamBundle()
        bundle.subscribe("a")
        bundle.subscribe("b")
        assert bundle.subscriber_count() == 2
        assert bundle.subscriber_count("c") == 0


class TestPathSubscription:
    @pytest.mark.asyncio
    async def test_close_ends_iteration(self) -> None:
        bundle = StreamBundle()
        sub = bundle.subscribe(VOLTAGE)
        bundle.push(VOLTAGE, 1)
        sub.close()

        seen = [item async for item in sub]
        assert seen == []
        assert sub.closed is True
        assert bundle.subscriber_count(VOLTAGE) == 0

    @pytest.mark.asyncio
    async def test_close_wakes_blocked_consumer(self) -> None:
        bundle = StreamBundle()
        sub = bundle.subscribe(VOLTAGE)

        async def consume() -> list[object]:
            return [item.value async for item in sub]

        task = asyncio.create_task(consume())
        await asyncio.sleep(0)
        sub.close()
        assert await asyncio.wait_for(task, timeout=1) == []

    @pytest.mark.asyncio
    async def test_no_values_after_close(self) -> None:
        bundle = StreamBundle()
        sub = bundle.subscribe(VOLTAGE)
        sub.close()
        bundle.push(VOLTAGE, 1)
        sub.close()
        assert bundle.subscriber_count() == 0

    @pytest.mark.asyncio
    async def test_overflow_drops_oldest(self) -> None:
        bundle = StreamBundle(queue_size=2)
        sub = bundle.subscribe(VOLTAGE)
        for value in (1, 2, 3):
            bundle.push(VOLTAGE, value)

        assert sub.overflow_count == 1
        assert (await sub.__anext__()).value == 2
        assert (await sub.__anext__()).value == 3

    @pytest.mark.asyncio
    async def test_clock_stamps_arrival(self) -> None:
        readings = iter([1.5, 7.0])
        bundle = StreamBundle()
        stamped = bundle.subscribe(VOLTAGE, clock=lambda: next(readings))
        plain = bundle.subscribe(VOLTAGE)
        bundle.push(VOLTAGE, 1)
        bundle.push(VOLTAGE, 2)

        assert (await stamped.__anext__()).received_at == 1.5
        assert (await stamped.__anext__()).received_at == 7.0
        assert (await plain.__anext__()).received_at is None
        # The shared cached value is left unstamped.
        latest = bundle.latest(VOLTAGE)
        assert latest is not None
        assert latest.received_at is None
