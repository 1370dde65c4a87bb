from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Tuple

from ..story.model import GameChoice, PlaybackMode, SceneData


@dataclass(frozen=True)
class AdvanceResult:
    """Outcome of one ``advance()`` call.

    Exactly one of ``scene`` / ``exhausted`` is meaningful: either a new scene
    to display, or the end of the current act/chapter.
    """
    scene: Optional[SceneData] = None
    exhausted: bool = False
    show_choices: bool = False
    choices: Tuple[GameChoice, ...] = ()


class IPlayback(ABC):
    """Common contract of the two playback modes.

    A session selects one implementation per start and never mixes them.
    """

    mode: PlaybackMode

    @abstractmethod
    def advance(self) -> AdvanceResult:  # pragma: no cover - interface
        raise NotImplementedError

    @abstractmethod
    def current_scene(self) -> Optional[SceneData]:  # pragma: no cover - interface
        raise NotImplementedError

    @abstractmethod
    def reset(self) -> None:  # pragma: no cover - interface
        raise NotImplementedError

    @property
    @abstractmethod
    def position(self) -> Tuple[int, int]:  # pragma: no cover - interface
        """(chapter_index, dialogue_index); batch mode reports chapter 0."""
        raise NotImplementedError
