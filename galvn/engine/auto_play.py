"""
Auto Play - 自动播放

Two states: Idle and Armed. While enabled, ``sync`` arms one timer whose
deadline is derived from the current text; any suspension condition cancels
it, and clearing the condition computes a fresh deadline on the next sync.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .config_io import DEFAULTS
from .events import AutoPlayToggleEvent, EventSystem

logger = logging.getLogger(__name__)

_AUTOPLAY = DEFAULTS["autoplay"]


@dataclass(frozen=True)
class AutoPlayConditions:
    """Snapshot of the session flags that suspend auto-advance."""
    typing: bool = False
    loading: bool = False
    choices_visible: bool = False
    paused: bool = False
    game_over: bool = False

    @property
    def suspended(self) -> bool:
        return self.typing or self.loading or self.choices_visible or self.paused or self.game_over


def compute_delay(
    text_length: int,
    voice_enabled: bool = False,
    *,
    min_delay_ms: int = _AUTOPLAY["min_delay_ms"],
    char_ms: int = _AUTOPLAY["char_ms"],
    base_ms: int = _AUTOPLAY["base_ms"],
    voice_char_ms: int = _AUTOPLAY["voice_char_ms"],
    voice_base_ms: int = _AUTOPLAY["voice_base_ms"],
) -> int:
    """Auto-advance deadline in milliseconds."""
    per_char = voice_char_ms if voice_enabled else char_ms
    base = voice_base_ms if voice_enabled else base_ms
    return max(min_delay_ms, max(0, text_length) * per_char + base)


class AutoPlayScheduler:
    """自动播放调度器"""

    def __init__(
        self,
        on_advance: Callable[[], Any],
        conditions: Callable[[], AutoPlayConditions],
        *,
        events: Optional[EventSystem] = None,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        settings: Optional[dict] = None,
    ):
        self._on_advance = on_advance
        self._conditions = conditions
        self._events = events
        self._loop = loop
        self._settings = dict(_AUTOPLAY)
        self._settings.update(settings or {})
        self._enabled = False
        self._handle: Optional[asyncio.TimerHandle] = None
        self._last_delay_ms: Optional[int] = None

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def armed(self) -> bool:
        return self._handle is not None

    @property
    def last_delay_ms(self) -> Optional[int]:
        return self._last_delay_ms

    def compute_delay(self, text_length: int, voice_enabled: bool = False) -> int:
        return compute_delay(text_length, voice_enabled, **self._settings)

    def toggle(self) -> bool:
        self.set_enabled(not self._enabled)
        return self._enabled

    def set_enabled(self, enabled: bool) -> None:
        if enabled == self._enabled:
            return
        self._enabled = enabled
        if not enabled:
            self.cancel()
        logger.debug(f"Auto play {'on' if enabled else 'off'}")
        if self._events is not None:
            self._events.emit(AutoPlayToggleEvent(enabled=enabled))

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None

    def sync(self, text: str, voice_enabled: bool = False) -> bool:
        """
        Re-evaluate after any state change. Always cancels the pending timer
        first; arms a new one only when enabled and not suspended.

        Returns True if a timer is armed afterwards.
        """
        self.cancel()
        if not self._enabled:
            return False
        cond = self._conditions()
        if cond.suspended:
            logger.debug(f"Auto play waiting: {cond}")
            return False
        loop = self._loop
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.warning("Auto play needs a running event loop; timer not armed")
                return False
        delay = self.compute_delay(len(text or ""), voice_enabled)
        self._last_delay_ms = delay
        self._handle = loop.call_later(delay / 1000.0, self._fire)
        logger.debug(f"Auto play timer armed: {delay}ms")
        return True

    def _fire(self) -> None:
        self._handle = None
        # state may have changed during the wait
        if not self._enabled or self._conditions().suspended:
            logger.debug("Auto play timer fired while suspended; ignored")
            return
        self._on_advance()
