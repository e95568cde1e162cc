"""Tests for the engine event bus."""

import pytest

from scrapecascade.core import events
from scrapecascade.core.events import EventBus


class TestEventBus:
    def test_subscribe_and_emit(self):
        bus = EventBus()
        received = []
        bus.subscribe(events.CACHE_HIT, received.append)

        bus.emit(events.CACHE_HIT, key="abc")
        assert len(received) == 1
        assert received[0].name == events.CACHE_HIT
        assert received[0].payload == {"key": "abc"}

    def test_invalid_event_name(self):
        bus = EventBus()
        with pytest.raises(ValueError, match="Invalid event"):
            bus.subscribe("nonexistent", lambda e: None)
        with pytest.raises(ValueError, match="Unknown event"):
            bus.emit("nonexistent")

    def test_non_callable_rejected(self):
        bus = EventBus()
        with pytest.raises(TypeError):
            bus.subscribe(events.CACHE_HIT, "not a function")

    def test_listener_error_isolation(self):
        bus = EventBus()
        good = []

        def bad_listener(event):
            raise ValueError("listener error")

        bus.subscribe(events.CACHE_MISS, bad_listener)
        bus.subscribe(events.CACHE_MISS, good.append)
        bus.emit(events.CACHE_MISS, key="k")

        assert len(good) == 1
        assert len(bus.errors.get(events.CACHE_MISS, [])) == 1

    def test_wildcard_receives_every_event(self):
        bus = EventBus()
        received = []
        bus.subscribe("*", received.append)
        bus.emit(events.CACHE_HIT)
        bus.emit(events.RATE_LIMITED, retry_after=1.0)
        assert [e.name for e in received] == [events.CACHE_HIT, events.RATE_LIMITED]

    def test_registration_order(self):
        bus = EventBus()
        order = []
        bus.subscribe(events.CACHE_HIT, lambda e: order.append(1))
        bus.subscribe(events.CACHE_HIT, lambda e: order.append(2))
        bus.emit(events.CACHE_HIT)
        assert order == [1, 2]

    def test_unsubscribe(self):
        bus = EventBus()
        received = []
        listener = received.append
        bus.subscribe(events.CACHE_HIT, listener)
        bus.unsubscribe(events.CACHE_HIT, listener)
        bus.emit(events.CACHE_HIT)
        assert received == []
        assert not bus.has_listeners(events.CACHE_HIT)

    def test_clear(self):
        bus = EventBus()
        bus.subscribe(events.CACHE_HIT, lambda e: None)
        bus.subscribe("*", lambda e: None)
        bus.clear()
        assert not bus.has_listeners(events.CACHE_HIT)
