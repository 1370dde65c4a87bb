"""
Dialogue Queue - 生成模式对话队列

Linear playback of one generated act. Exhaustion is the designed terminal
state of an act: the caller presents the act's choices.
"""
from __future__ import annotations

import logging
from typing import Optional, Tuple

from ..story.model import (
    Background, BatchSceneData, BgmMood, DialogueNode, GameChoice, PlaybackMode, SceneData,
)
from .playback import AdvanceResult, IPlayback

logger = logging.getLogger(__name__)


def node_to_scene(
    node: DialogueNode,
    choices: Tuple[GameChoice, ...],
    default_narrative: str,
    default_background: Background,
    default_bgm: BgmMood,
    dialogue_index: Optional[int] = None,
) -> SceneData:
    """Render a node against the active act context."""
    return SceneData(
        narrative=node.narrative if node.narrative is not None else default_narrative,
        speaker=node.speaker,
        dialogue=node.dialogue,
        expression=node.expression,
        background=node.background or default_background,
        bgm=node.bgm or default_bgm,
        choices=choices,
        affection_change=0,
        is_game_over=False,
        history_chapter_index=None,
        history_dialogue_index=dialogue_index,
    )


class DialogueQueueController(IPlayback):
    """对话队列控制器"""

    mode = PlaybackMode.GENERATED

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self._batch: Optional[BatchSceneData] = None
        self._queue: Tuple[DialogueNode, ...] = ()
        self._index = 0
        self._choices: Tuple[GameChoice, ...] = ()
        self._narrative = ""
        self._background = Background.SCHOOL_ROOFTOP
        self._bgm = BgmMood.DAILY

    # =========================================
    # State
    # =========================================

    @property
    def batch(self) -> Optional[BatchSceneData]:
        return self._batch

    @property
    def index(self) -> int:
        return self._index

    @property
    def length(self) -> int:
        return len(self._queue)

    @property
    def choices(self) -> Tuple[GameChoice, ...]:
        return self._choices

    @property
    def background(self) -> Background:
        return self._background

    @property
    def bgm(self) -> BgmMood:
        return self._bgm

    @property
    def position(self) -> Tuple[int, int]:
        return (0, self._index)

    def is_exhausted(self) -> bool:
        """True when the current scene is the act's last line (or the act is empty)."""
        if not self._queue:
            return True
        return self._index == len(self._queue) - 1

    # =========================================
    # Playback
    # =========================================

    def load(self, batch: BatchSceneData) -> Optional[SceneData]:
        """初始化对话队列; returns the first scene, or None for an empty act."""
        self._batch = batch
        self._queue = tuple(batch.dialogue_sequence)
        self._index = 0
        self._choices = tuple(batch.choices)
        self._narrative = batch.narrative
        self._background = batch.background
        self._bgm = batch.bgm
        logger.debug(f"Queue initialized with {len(self._queue)} dialogues")
        return self.current_scene()

    def seek(self, index: int) -> Optional[SceneData]:
        """Jump to ``index`` inside the loaded act (used when resuming a save)."""
        if not self._queue:
            return None
        if index < 0 or index >= len(self._queue):
            raise ValueError(f"queue index out of range: {index}")
        self._index = index
        return self.current_scene()

    def current_scene(self) -> Optional[SceneData]:
        if self._index >= len(self._queue):
            return None
        return self._render(self._index)

    def advance(self) -> AdvanceResult:
        next_index = self._index + 1
        if next_index < len(self._queue):
            self._index = next_index
            logger.debug(f"Advanced to {next_index + 1}/{len(self._queue)}")
            return AdvanceResult(scene=self._render(next_index))
        logger.debug("Queue ended")
        return AdvanceResult(exhausted=True, show_choices=bool(self._choices), choices=self._choices)

    def _render(self, index: int) -> SceneData:
        return node_to_scene(
            self._queue[index],
            self._choices,
            self._narrative,
            self._background,
            self._bgm,
            dialogue_index=index,
        )
