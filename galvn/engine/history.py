"""
History Log - 历史记录与回溯

Append-only record of displayed scenes. Rollback resumes script playback at
an earlier entry's chapter/dialogue coordinates. Generated acts cannot be
rolled back since regenerating a past branch is not deterministic.
"""
from __future__ import annotations

import logging
from typing import Iterator, List, Optional, Tuple

from ..story.errors import NarrativeError, RollbackError
from ..story.model import PlaybackMode, SceneData
from .events import EventSystem, HistoryJumpEvent
from .playback import IPlayback
from .script_player import ScriptPlaybackController

logger = logging.getLogger(__name__)


class HistoryLog:
    """历史记录"""

    def __init__(self, events: Optional[EventSystem] = None):
        self._entries: List[SceneData] = []
        self._events = events

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[SceneData]:
        return iter(self._entries)

    def __getitem__(self, index: int) -> SceneData:
        return self._entries[index]

    @property
    def entries(self) -> Tuple[SceneData, ...]:
        return tuple(self._entries)

    @property
    def last(self) -> Optional[SceneData]:
        return self._entries[-1] if self._entries else None

    def append(self, scene: SceneData) -> None:
        self._entries.append(scene)

    def clear(self) -> None:
        self._entries.clear()

    def reset(self, scene: Optional[SceneData] = None) -> None:
        """Start a fresh history, optionally seeded with ``scene``."""
        self._entries = [scene] if scene is not None else []

    def can_jump(self, index: int, playback: Optional[IPlayback]) -> bool:
        try:
            self._check_jump(index, playback)
        except RollbackError:
            return False
        return True

    def _check_jump(self, index: int, playback: Optional[IPlayback]) -> SceneData:
        if playback is None or playback.mode is not PlaybackMode.SCRIPT:
            raise RollbackError("生成模式不支持回溯", index=index)
        if not isinstance(playback, ScriptPlaybackController) or playback.script is None:
            raise RollbackError("没有正在播放的剧本", index=index)
        if index < 0 or index >= len(self._entries):
            raise RollbackError("历史索引越界", index=index)
        if index == len(self._entries) - 1:
            raise RollbackError("已经是当前位置", index=index)
        target = self._entries[index]
        if not target.has_history_coords:
            raise RollbackError("该记录没有章节坐标", index=index)
        return target

    def jump_to(self, index: int, playback: Optional[IPlayback]) -> Optional[SceneData]:
        """
        Resume script playback at history entry ``index``.

        Raises ``RollbackError`` without touching any state when the jump is
        not allowed. Returns None if a listener cancelled the jump, otherwise
        the resumed scene, which becomes the new last entry (the log ends up
        with ``index + 1`` entries).
        """
        target = self._check_jump(index, playback)
        chapter_index = target.history_chapter_index
        dialogue_index = target.history_dialogue_index
        if self._events is not None:
            event = self._events.emit(HistoryJumpEvent(
                index=index, chapter_index=chapter_index, dialogue_index=dialogue_index,
            ))
            if event.cancelled:
                logger.debug(f"History jump to {index} cancelled by event handler")
                return None

        assert isinstance(playback, ScriptPlaybackController) and playback.script is not None
        try:
            scene = playback.start(playback.script, chapter_index, dialogue_index)
        except (ValueError, NarrativeError) as e:
            raise RollbackError(f"无法回溯到该位置: {e}", index=index) from e

        del self._entries[index:]
        self._entries.append(scene)
        logger.info(f"Jumped back to history {index} (chapter {chapter_index}, line {dialogue_index})")
        return scene
