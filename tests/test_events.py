"""Lifecycle event bus."""

from services.orchestration import EventBus


async def test_named_and_wildcard_handlers():
    bus = EventBus()
    named, everything = [], []
    bus.subscribe("operation:completed", lambda event, payload: named.append(payload))
    bus.subscribe("*", lambda event, payload: everything.append(event))

    assert bus.emit("operation:completed", {"id": "ai_1"}) == 2
    assert bus.emit("operation:started", {"id": "ai_2"}) == 1

    assert named == [{"id": "ai_1"}]
    assert everything == ["operation:completed", "operation:started"]


async def test_async_handler_is_scheduled():
    bus = EventBus()
    seen = []

    async def handler(event, payload):
        seen.append(payload["id"])

    bus.subscribe("cache:hit", handler)
    bus.emit("cache:hit", {"id": "k"})
    assert seen == []

    await bus.drain()
    assert seen == ["k"]


async def test_failing_handler_does_not_stop_others():
    bus = EventBus()
    seen = []

    def broken(event, payload):
        raise RuntimeError("boom")

    async def broken_async(event, payload):
        raise RuntimeError("async boom")

    bus.subscribe("x", broken)
    bus.subscribe("x", broken_async)
    bus.subscribe("x", lambda event, payload: seen.append(event))

    assert bus.emit("x", {}) == 3
    await bus.drain()
    assert seen == ["x"]


def test_unsubscribe():
    bus = EventBus()
    seen = []
    unsubscribe = bus.subscribe("x", lambda event, payload: seen.append(event))
    assert bus.listener_count("x") == 1

    unsubscribe()
    unsubscribe()

    assert bus.emit("x", {}) == 0
    assert seen == []
