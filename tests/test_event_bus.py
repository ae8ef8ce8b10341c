"""Tests for the completion EventBus."""

import asyncio

import pytest

from docpilot.events.bus import EventBus
from docpilot.types import CompletionEvent, EventType


def _event(event_type: EventType, call_id: str = "call_1", **data) -> CompletionEvent:
    return CompletionEvent(type=event_type, data=data, call_id=call_id)


@pytest.fixture
def bus():
    return EventBus()


class TestSubscribe:
    @pytest.mark.asyncio
    async def test_async_handler(self, bus: EventBus):
        received = []

        async def handler(event: CompletionEvent):
            received.append(event)

        bus.subscribe(handler, EventType.COMPLETION_REQUEST)
        ev = _event(EventType.COMPLETION_REQUEST, model="gpt-4")
        await bus.emit(ev)

        assert received == [ev]

    @pytest.mark.asyncio
    async def test_filtered_and_catch_all(self, bus: EventBus):
        failures, everything = [], []
        bus.subscribe(failures.append, EventType.COMPLETION_ERROR, EventType.COMPLETION_RETRY)
        bus.subscribe(everything.append)

        await bus.emit(_event(EventType.COMPLETION_REQUEST))
        await bus.emit(_event(EventType.COMPLETION_RETRY))
        await bus.emit(_event(EventType.COMPLETION_ERROR))

        assert [e.type for e in failures] == [EventType.COMPLETION_RETRY, EventType.COMPLETION_ERROR]
        assert len(everything) == 3

    @pytest.mark.asyncio
    async def test_unsubscribe(self, bus: EventBus):
        received = []
        unsubscribe = bus.subscribe(received.append, EventType.COMPLETION_RESPONSE)
        unsubscribe()
        unsubscribe()
        await bus.emit(_event(EventType.COMPLETION_RESPONSE))
        assert received == []


class TestDelivery:
    @pytest.mark.asyncio
    async def test_slow_handler_does_not_reorder_events(self, bus: EventBus):
        seen = []

        async def slow(event):
            if event.type is EventType.COMPLETION_REQUEST:
                await asyncio.sleep(0.01)
            seen.append(("slow", event.type))

        bus.subscribe(slow)
        bus.subscribe(lambda event: seen.append(("fast", event.type)))

        await bus.emit(_event(EventType.COMPLETION_REQUEST))
        await bus.emit(_event(EventType.COMPLETION_RETRY))

        assert seen == [
            ("slow", EventType.COMPLETION_REQUEST),
            ("fast", EventType.COMPLETION_REQUEST),
            ("slow", EventType.COMPLETION_RETRY),
            ("fast", EventType.COMPLETION_RETRY),
        ]

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_block_others(self, bus: EventBus):
        received = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(broken, EventType.COMPLETION_ERROR)
        bus.subscribe(received.append, EventType.COMPLETION_ERROR)
        await bus.emit(_event(EventType.COMPLETION_ERROR))

        assert len(received) == 1


class TestTrails:
    @pytest.mark.asyncio
    async def test_events_grouped_by_call(self, bus: EventBus):
        await bus.emit(_event(EventType.COMPLETION_REQUEST, "call_a"))
        await bus.emit(_event(EventType.COMPLETION_REQUEST, "call_b"))
        await bus.emit(_event(EventType.COMPLETION_RESPONSE, "call_a"))

        assert bus.calls == ["call_a", "call_b"]
        assert [e.type for e in bus.trail("call_a")] == [
            EventType.COMPLETION_REQUEST, EventType.COMPLETION_RESPONSE,
        ]
        assert [e.call_id for e in bus.trail()] == ["call_b"]
        assert bus.trail("call_missing") == []

    @pytest.mark.asyncio
    async def test_oldest_calls_dropped(self):
        bus = EventBus(max_calls=2)
        for call_id in ("c1", "c2", "c3"):
            await bus.emit(_event(EventType.COMPLETION_REQUEST, call_id))
        assert bus.calls == ["c2", "c3"]

    @pytest.mark.asyncio
    async def test_clear(self, bus: EventBus):
        await bus.emit(_event(EventType.COMPLETION_REQUEST))
        bus.clear()
        assert bus.calls == []
        assert bus.trail() == []
