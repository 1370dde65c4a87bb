from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional
import io
import logging

logger = logging.getLogger(__name__)


class IAudio(ABC):
    @abstractmethod
    def play_voice(self, clip: bytes) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    @abstractmethod
    def stop_voice(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    def is_voice_playing(self) -> bool:  # pragma: no cover - interface
        return False


class NullAudio(IAudio):
    """Headless audio sink; remembers the last clip for inspection."""

    def __init__(self) -> None:
        self.last_clip: Optional[bytes] = None
        self.played = 0

    def play_voice(self, clip: bytes) -> bool:
        self.last_clip = clip
        self.played += 1
        return True

    def stop_voice(self) -> None:
        self.last_clip = None


class PygameAudio(IAudio):
    """Plays synthesized voice clips through a dedicated pygame mixer channel."""

    def __init__(self, volume: float = 1.0, channel_id: int = 1) -> None:
        self._volume = max(0.0, min(1.0, float(volume)))
        self._channel_id = channel_id
        self._channel = None
        self._sound = None

    def _ensure_mixer(self) -> bool:
        try:
            import pygame
            if not pygame.mixer.get_init():
                pygame.mixer.init()
            if self._channel is None:
                self._channel = pygame.mixer.Channel(self._channel_id)
            return True
        except Exception as e:
            logger.warning(f"Audio mixer unavailable: {e}")
            return False

    def play_voice(self, clip: bytes) -> bool:
        if not clip or not self._ensure_mixer():
            return False
        try:
            import pygame
            self.stop_voice()
            snd = pygame.mixer.Sound(file=io.BytesIO(clip))
            snd.set_volume(self._volume)
            self._channel.play(snd)
            self._sound = snd
            return True
        except Exception as e:
            logger.warning(f"Voice playback failed: {e}")
            return False

    def stop_voice(self) -> None:
        try:
            if self._channel is not None:
                self._channel.stop()
        except Exception:
            pass
        self._sound = None

    def is_voice_playing(self) -> bool:
        try:
            return bool(self._channel is not None and self._channel.get_busy())
        except Exception:
            return False
