"""Tests for the narrative event system."""
from galvn.engine.events import (
    EventSystem, Priority, SceneShowEvent, ChoiceSelectEvent, SaveEvent, LoadEvent,
    PreloadProgressEvent, HistoryJumpEvent, GameStartEvent,
)
from galvn.story.model import SceneData


class TestEventSystem:
    """Test the typed event system."""

    def test_basic_subscribe_emit(self):
        """Test basic subscribe and emit."""
        events = EventSystem()
        received = []

        def handler(event: SceneShowEvent):
            received.append(event)

        events.subscribe(SceneShowEvent, handler)
        events.emit(SceneShowEvent(scene=SceneData(speaker="雯曦", dialogue="早"), mode="script"))

        assert len(received) == 1
        assert received[0].scene.speaker == "雯曦"
        assert received[0].mode == "script"

    def test_unsubscribe_via_returned_function(self):
        """Test the returned unsubscribe function works."""
        events = EventSystem()
        received = []

        unsub = events.subscribe(ChoiceSelectEvent, lambda e: received.append(e.index))
        events.emit(ChoiceSelectEvent(index=0))
        unsub()
        events.emit(ChoiceSelectEvent(index=1))

        assert received == [0]

    def test_priority_ordering(self):
        """Test that higher priority listeners are called first."""
        events = EventSystem()
        order = []

        events.subscribe(SaveEvent, lambda e: order.append("low"), priority=Priority.LOW)
        events.subscribe(SaveEvent, lambda e: order.append("normal"))
        events.subscribe(SaveEvent, lambda e: order.append("high"), priority=Priority.HIGH)
        events.emit(SaveEvent(script_id="s", slot=0))

        assert order == ["high", "normal", "low"]

    def test_cancellation_stops_propagation(self):
        """Test that cancelling skips lower priorities but not monitors."""
        events = EventSystem()
        order = []

        def canceller(event: LoadEvent):
            order.append("canceller")
            event.cancel()

        events.subscribe(LoadEvent, canceller, priority=Priority.HIGH)
        events.subscribe(LoadEvent, lambda e: order.append("low"), priority=Priority.LOW)
        events.subscribe(LoadEvent, lambda e: order.append("monitor"), priority=Priority.MONITOR)

        event = events.emit(LoadEvent(script_id="s", slot=1))

        assert event.cancelled
        assert order == ["monitor", "canceller"]

    def test_once_subscription(self):
        """Test that once subscriptions auto-unsubscribe."""
        events = EventSystem()
        received = []

        events.once(PreloadProgressEvent, lambda e: received.append(e.percent))
        for p in (10, 40, 100):
            events.emit(PreloadProgressEvent(script_id="s", percent=p))

        assert received == [10]

    def test_decorator_syntax(self):
        """Test the @events.on decorator."""
        events = EventSystem()
        received = []

        @events.on(GameStartEvent, priority=Priority.HIGH)
        def handler(event: GameStartEvent):
            received.append(event.script_id)

        events.emit(GameStartEvent(script_id="demo", mode="script"))
        assert received == ["demo"]

    def test_exception_in_listener_is_contained(self):
        """Test that exceptions in handlers don't crash the system."""
        events = EventSystem()
        received = []

        def bad_handler(event):
            raise ValueError("oops")

        events.subscribe(HistoryJumpEvent, bad_handler, priority=Priority.HIGH)
        events.subscribe(HistoryJumpEvent, lambda e: received.append(e.index), priority=Priority.LOW)
        events.emit(HistoryJumpEvent(index=2))

        assert received == [2]

    def test_once_survives_cancelled_emit(self):
        """Test a once listener skipped by cancellation still fires next time."""
        events = EventSystem()
        received = []

        events.subscribe(SaveEvent, lambda e: e.cancel(), priority=Priority.HIGH, once=True)
        events.once(SaveEvent, lambda e: received.append(e.slot), priority=Priority.LOW)

        events.emit(SaveEvent(slot=0))
        events.emit(SaveEvent(slot=1))
        events.emit(SaveEvent(slot=2))

        assert received == [1]

    def test_emit_count(self):
        """Test per-type emit counting."""
        events = EventSystem()
        events.emit(SaveEvent(slot=0))
        events.emit(SaveEvent(slot=1))
        events.emit(LoadEvent(slot=0))

        assert events.emit_count(SaveEvent) == 2
        assert events.emit_count(LoadEvent) == 1
        assert events.emit_count(GameStartEvent) == 0
