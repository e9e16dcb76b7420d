"""Tests for the event bus."""

from rcclient.events import EventBus


class TestSubscribe:
    """Tests for subscribe/unsubscribe."""

    def test_delivers_to_topic(self):
        """Handlers receive events for their topic only."""
        bus = EventBus()
        received = []
        bus.subscribe("online", received.append)

        bus.publish("online", {"online": True})
        bus.publish("offline", {"online": False})

        assert received == [{"online": True, "topic": "online"}]

    def test_wildcard(self):
        """The wildcard topic receives every event."""
        bus = EventBus()
        received = []
        bus.subscribe("*", received.append)

        bus.publish("syncStarted")
        bus.publish("syncCompleted", {"pushed": 1})

        assert [e["topic"] for e in received] == ["syncStarted", "syncCompleted"]

    def test_unsubscribe_callable(self):
        """The returned callable removes the subscription."""
        bus = EventBus()
        received = []
        unsubscribe = bus.subscribe("conflict", received.append)

        unsubscribe()
        bus.publish("conflict", {"id": 1})

        assert received == []

    def test_unsubscribe_unknown_is_ignored(self):
        """Removing a handler that was never subscribed is harmless."""
        EventBus().unsubscribe("conflict", print)

    def test_payload_copied(self):
        """Publishers' payload dicts are not mutated."""
        bus = EventBus()
        payload = {"id": 1}
        bus.subscribe("conflict", lambda e: e.update(changed=True))

        bus.publish("conflict", payload)

        assert payload == {"id": 1}


class TestDelivery:
    """Tests for ordering and error isolation."""

    def test_nested_publish_keeps_order(self):
        """Events published by a handler are delivered after the current one."""
        bus = EventBus()
        seen = []

        def first(event):
            seen.append(("first", event["topic"]))
            if event["topic"] == "a":
                bus.publish("b")

        bus.subscribe("*", first)
        bus.subscribe("*", lambda e: seen.append(("second", e["topic"])))

        bus.publish("a")

        assert seen == [("first", "a"), ("second", "a"), ("first", "b"), ("second", "b")]

    def test_failing_handler_does_not_stop_delivery(self):
        """A handler exception is logged and the next handler still runs."""
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe("online", broken)
        bus.subscribe("online", received.append)

        bus.publish("online")

        assert len(received) == 1

    def test_publish_after_handler_error(self):
        """The bus keeps working after a handler failed."""
        bus = EventBus()
        received = []
        bus.subscribe("x", lambda e: 1 / 0)
        bus.subscribe("y", received.append)

        bus.publish("x")
        bus.publish("y")

        assert [e["topic"] for e in received] == ["y"]
