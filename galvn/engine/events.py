"""
Narrative Event System

Typed events with priority-ordered listeners and cancellation. The
presentation layer observes a session exclusively through these
events and answers with player intents on ``NarrativeSession``.
"""
from __future__ import annotations

import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable, Dict, Generic, List, Optional, Type, TypeVar

from ..story.model import GameChoice, SceneData

logger = logging.getLogger(__name__)


# ============================================================================
# Event Priority
# ============================================================================

class Priority(IntEnum):
    """Listener priority - higher values execute first."""
    LOWEST = 0
    LOW = 25
    NORMAL = 50
    HIGH = 75
    HIGHEST = 100
    MONITOR = 200  # Read-only, cannot cancel events


# ============================================================================
# Base Event Classes
# ============================================================================

@dataclass
class Event:
    """Base class for all events."""
    _cancelled: bool = field(default=False, init=False, repr=False)
    _timestamp: float = field(default_factory=time.time, init=False, repr=False)

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """Cancel the event, preventing further propagation to lower-priority listeners."""
        self._cancelled = True

    @property
    def timestamp(self) -> float:
        return self._timestamp


@dataclass
class CancellableEvent(Event):
    """Event that can be cancelled to prevent default behavior."""
    pass


# ============================================================================
# Scene Events
# ============================================================================

@dataclass
class SceneShowEvent(Event):
    """Fired whenever a new current scene is displayed."""
    scene: Optional[SceneData] = None
    mode: str = ""
    turn: int = 0


@dataclass
class ChoicesShowEvent(Event):
    """Fired when the choice menu must be presented."""
    choices: List[GameChoice] = field(default_factory=list)


@dataclass
class ChoiceSelectEvent(Event):
    """Fired when the player picks a choice."""
    index: int = 0
    text: str = ""
    affection_change: int = 0


@dataclass
class AffectionChangeEvent(Event):
    """Fired after a delta has been applied (value already clamped)."""
    delta: int = 0
    value: int = 0


# ============================================================================
# Game State Events
# ============================================================================

@dataclass
class GameStateEvent(Event):
    """Base class for game state events."""
    pass


@dataclass
class GameStartEvent(GameStateEvent):
    """Fired when a session starts (new game or load)."""
    script_id: str = ""
    mode: str = ""
    from_load: bool = False


@dataclass
class GamePauseEvent(GameStateEvent):
    """Fired when game is paused."""
    reason: str = "manual"


@dataclass
class GameResumeEvent(GameStateEvent):
    """Fired when game is resumed from pause."""
    pass


@dataclass
class ChapterStartEvent(GameStateEvent):
    """Fired when a new chapter begins."""
    chapter_index: int = 0
    chapter_id: str = ""
    chapter_name: str = ""


@dataclass
class EndingReachEvent(GameStateEvent):
    """Fired when an ending chapter is reached."""
    ending_id: str = ""
    ending_name: str = ""
    ending_type: str = ""
    description: str = ""


@dataclass
class StoryCompleteEvent(GameStateEvent):
    """Fired when the story has no further content (closing scene shown)."""
    script_id: str = ""
    affection: int = 0
    turns: int = 0


@dataclass
class ReturnToTitleEvent(GameStateEvent):
    pass


@dataclass
class AutoPlayToggleEvent(GameStateEvent):
    enabled: bool = False


@dataclass
class HistoryJumpEvent(CancellableEvent):
    """Fired before a rollback to an earlier history entry."""
    index: int = 0
    chapter_index: int = 0
    dialogue_index: int = 0


# ============================================================================
# Generation Events
# ============================================================================

@dataclass
class GenerationStartEvent(Event):
    kind: str = ""  # "initial" | "branch"
    script_id: str = ""
    choice_text: str = ""


@dataclass
class GenerationErrorEvent(Event):
    """Generation failed; the presentation layer shows a retry affordance."""
    kind: str = ""
    message: str = ""


@dataclass
class StaleResponseEvent(Event):
    """A generation result arrived after the context moved on and was dropped."""
    kind: str = ""
    token: int = 0
    current_token: int = 0


@dataclass
class PreloadProgressEvent(Event):
    script_id: str = ""
    status: str = ""
    percent: float = 0.0


@dataclass
class PreloadCompleteEvent(Event):
    script_id: str = ""
    status: str = ""
    cached_branches: int = 0
    failed_branches: int = 0


@dataclass
class CacheClearEvent(Event):
    pass


# ============================================================================
# Save/Load Events
# ============================================================================

@dataclass
class SaveEvent(CancellableEvent):
    """Fired before saving."""
    script_id: str = ""
    slot: int = 0
    is_quicksave: bool = False


@dataclass
class SaveCompleteEvent(Event):
    """Fired after a save attempt."""
    script_id: str = ""
    slot: int = 0
    success: bool = True


@dataclass
class LoadEvent(CancellableEvent):
    """Fired before loading."""
    script_id: str = ""
    slot: int = 0


@dataclass
class LoadCompleteEvent(Event):
    """Fired after a load attempt."""
    script_id: str = ""
    slot: int = 0
    success: bool = True


@dataclass
class SlotDeleteEvent(CancellableEvent):
    """Fired before a slot is deleted."""
    script_id: str = ""
    slot: int = 0


@dataclass
class SlotDeleteCompleteEvent(Event):
    """Fired after a slot deletion attempt."""
    script_id: str = ""
    slot: int = 0
    success: bool = False


@dataclass
class GameRecordEvent(Event):
    """Fired when a completed playthrough is recorded."""
    record_id: str = ""
    ending_type: str = ""


# ============================================================================
# Listener Registration
# ============================================================================

T = TypeVar('T', bound=Event)


@dataclass
class Listener(Generic[T]):
    """Wrapper for event listener with metadata."""
    callback: Callable[[T], None]
    priority: Priority = Priority.NORMAL
    once: bool = False


# ============================================================================
# Event Bus
# ============================================================================

class EventSystem:
    """
    Typed event bus.

    Usage:
        events = EventSystem()

        @events.on(SceneShowEvent)
        def on_scene(event: SceneShowEvent):
            print(f"{event.scene.speaker}: {event.scene.dialogue}")

        events.once(LoadCompleteEvent, on_load_done)

        event = events.emit(SaveEvent(script_id="demo", slot=0))
        if not event.cancelled:
            ...
    """

    def __init__(self, debug: bool = False):
        self._listeners: Dict[Type[Event], List[Listener]] = defaultdict(list)
        self._debug = debug
        self._emit_count: Dict[Type[Event], int] = defaultdict(int)

    def subscribe(
        self,
        event_type: Type[T],
        callback: Callable[[T], None],
        priority: Priority = Priority.NORMAL,
        once: bool = False,
    ) -> Callable[[], None]:
        """
        Subscribe to an event type.

        Returns:
            Unsubscribe function
        """
        listeners = self._listeners[event_type]
        listeners.append(Listener(callback=callback, priority=priority, once=once))
        listeners.sort(key=lambda l: l.priority, reverse=True)

        if self._debug:
            logger.debug(f"Subscribed to {event_type.__name__} with priority {priority.name}")

        def unsubscribe():
            self.unsubscribe(event_type, callback)
        return unsubscribe

    def unsubscribe(self, event_type: Type[T], callback: Callable[[T], None]) -> bool:
        """Remove a listener. Returns True if found and removed."""
        listeners = self._listeners.get(event_type, [])
        for i, listener in enumerate(listeners):
            if listener.callback == callback:
                listeners.pop(i)
                return True
        return False

    def on(
        self,
        event_type: Type[T],
        priority: Priority = Priority.NORMAL
    ) -> Callable[[Callable[[T], None]], Callable[[T], None]]:
        """Decorator for subscribing to events."""
        def decorator(fn: Callable[[T], None]) -> Callable[[T], None]:
            self.subscribe(event_type, fn, priority=priority)
            return fn
        return decorator

    def once(
        self,
        event_type: Type[T],
        callback: Callable[[T], None],
        priority: Priority = Priority.NORMAL
    ) -> Callable[[], None]:
        """Subscribe to an event for a single invocation only."""
        return self.subscribe(event_type, callback, priority=priority, once=True)

    def emit(self, event: T) -> T:
        """
        Emit an event to all listeners.

        Returns the event (useful for checking if cancelled).
        """
        event_type = type(event)
        self._emit_count[event_type] += 1

        if self._debug:
            logger.debug(f"Emitting {event_type.__name__}: {event}")

        for listener in list(self._listeners.get(event_type, [])):
            if event.cancelled and listener.priority != Priority.MONITOR:
                continue
            if listener.once:
                self.unsubscribe(event_type, listener.callback)
            try:
                listener.callback(event)
            except Exception as e:
                logger.error(f"Error in listener for {event_type.__name__}: {e}", exc_info=True)
                if self._debug:
                    raise

        return event

    def emit_count(self, event_type: Type[Event]) -> int:
        """How many times ``event_type`` has been emitted."""
        return self._emit_count.get(event_type, 0)
