"""Tests for the event bus."""

import pytest

from emd.core.events import Channel, EventBus


@pytest.mark.asyncio()
async def test_handlers_run_in_registration_order() -> None:
    bus = EventBus()
    calls = []

    async def second(payload):
        calls.append(("second", payload))

    bus.on_new_alerts(lambda payload: calls.append(("first", payload)))
    bus.on_new_alerts(second)

    await bus.publish(Channel.NEW_ALERTS, 7)

    assert calls == [("first", 7), ("second", 7)]


@pytest.mark.asyncio()
async def test_unsubscribe_stops_delivery() -> None:
    bus = EventBus()
    calls = []
    token = bus.on_cycle(calls.append)

    assert bus.unsubscribe(token) is True
    assert bus.unsubscribe(token) is False
    await bus.publish("cycle", "report")

    assert calls == []
    assert bus.handler_count(Channel.CYCLE) == 0
