"""
Script Player - 预定义剧本播放

Traverses a pre-authored chapter list. Each chapter is expanded into a flat
list of ``SceneData`` when it is entered; the last line carries the chapter's
choices. Chapter progression is linear: any choice leads to ``current + 1``,
only the affection delta differs per choice.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Tuple

from ..story.errors import ScriptLoadError
from ..story.model import (
    NARRATOR, PLAYER, Background, ChapterEnding, FullScript, GameChoice, PlaybackMode, SceneData,
    ScriptChapter, ScriptDialogue, parse_background, parse_bgm, parse_expression,
)
from .playback import AdvanceResult, IPlayback

logger = logging.getLogger(__name__)

# 剧本未指定背景时使用
DEFAULT_SCRIPT_BACKGROUND = Background.PALACE_GARDEN


@dataclass(frozen=True)
class ChoiceOutcome:
    """Result of ``select_choice``.

    ``completed`` means the script has no further chapter; the caller is
    expected to synthesize a closing scene.
    """
    scene: Optional[SceneData]
    affection_change: int
    is_ending: bool
    completed: bool = False


def dialogue_to_scene(
    line: ScriptDialogue,
    chapter: ScriptChapter,
    chapter_index: int,
    dialogue_index: int,
    choices: Tuple[GameChoice, ...] = (),
) -> SceneData:
    """将剧本对话转换为场景数据"""
    is_cg = line.type == "cg"
    narrated = is_cg or line.speaker == NARRATOR
    if narrated or line.speaker == PLAYER:
        speaker = line.speaker or NARRATOR
    else:
        speaker = line.speaker or ""
    return SceneData(
        narrative=line.text if narrated else "",
        speaker=speaker,
        dialogue="" if narrated else line.text,
        expression=parse_expression(line.expression),
        background=parse_background(chapter.background, DEFAULT_SCRIPT_BACKGROUND),
        bgm=parse_bgm(chapter.bgm),
        choices=choices,
        history_chapter_index=chapter_index,
        history_dialogue_index=dialogue_index,
        cg=line.cg if is_cg and line.cg else None,
    )


def chapter_scenes(script: FullScript, chapter_index: int) -> List[SceneData]:
    """获取章节的所有对话转换为场景数据"""
    chapter = script.chapters[chapter_index]
    last = len(chapter.dialogues) - 1
    choices = tuple(c.as_game_choice() for c in chapter.choices)
    return [
        dialogue_to_scene(line, chapter, chapter_index, i, choices if i == last else ())
        for i, line in enumerate(chapter.dialogues)
    ]


class ScriptPlaybackController(IPlayback):
    """剧本播放控制器"""

    mode = PlaybackMode.SCRIPT

    def __init__(self) -> None:
        self.reset()

    def reset(self) -> None:
        self._script: Optional[FullScript] = None
        self._chapter_index = 0
        self._dialogue_index = 0
        self._scenes: List[SceneData] = []

    # =========================================
    # State
    # =========================================

    @property
    def script(self) -> Optional[FullScript]:
        return self._script

    @property
    def chapter_index(self) -> int:
        return self._chapter_index

    @property
    def dialogue_index(self) -> int:
        return self._dialogue_index

    @property
    def chapter(self) -> Optional[ScriptChapter]:
        if self._script is None:
            return None
        return self._script.chapters[self._chapter_index]

    @property
    def scenes(self) -> Tuple[SceneData, ...]:
        return tuple(self._scenes)

    @property
    def position(self) -> Tuple[int, int]:
        return (self._chapter_index, self._dialogue_index)

    @property
    def current_cg(self) -> Optional[str]:
        scene = self.current_scene()
        return scene.cg if scene else None

    def is_ending_chapter(self) -> bool:
        chapter = self.chapter
        return chapter is not None and chapter.is_ending

    @property
    def ending(self) -> Optional[ChapterEnding]:
        chapter = self.chapter
        return chapter.ending if chapter else None

    def is_last_chapter(self) -> bool:
        return self._script is not None and self._chapter_index + 1 >= len(self._script.chapters)

    # =========================================
    # Playback
    # =========================================

    def start(self, script: FullScript, chapter_index: int = 0, dialogue_index: int = 0) -> SceneData:
        """Enter ``chapter_index`` at ``dialogue_index`` and return that scene."""
        if chapter_index < 0 or chapter_index >= len(script.chapters):
            raise ValueError(f"chapter index out of range: {chapter_index}")
        scenes = chapter_scenes(script, chapter_index)
        if not scenes:
            raise ScriptLoadError(
                "剧本章节没有对话", script_id=script.id, context=script.chapters[chapter_index].id
            )
        if dialogue_index < 0 or dialogue_index >= len(scenes):
            raise ValueError(f"dialogue index out of range: {dialogue_index}")
        self._script = script
        self._chapter_index = chapter_index
        self._dialogue_index = dialogue_index
        self._scenes = scenes
        logger.debug(f"Script {script.id}: chapter {chapter_index} ({len(scenes)} lines) at {dialogue_index}")
        return scenes[dialogue_index]

    def current_scene(self) -> Optional[SceneData]:
        if self._dialogue_index >= len(self._scenes):
            return None
        return self._scenes[self._dialogue_index]

    def advance(self) -> AdvanceResult:
        next_index = self._dialogue_index + 1
        if next_index < len(self._scenes):
            self._dialogue_index = next_index
            scene = self._scenes[next_index]
            is_last = next_index == len(self._scenes) - 1
            return AdvanceResult(
                scene=scene,
                show_choices=is_last and bool(scene.choices),
                choices=scene.choices if is_last else (),
            )
        return AdvanceResult(exhausted=True)

    def choice_affection(self, choice_index: int) -> int:
        chapter = self.chapter
        if chapter is None or not 0 <= choice_index < len(chapter.choices):
            return 0
        return chapter.choices[choice_index].affection_change

    def select_choice(self, choice_index: int) -> ChoiceOutcome:
        """处理选择并进入下一章"""
        if self._script is None:
            return ChoiceOutcome(scene=None, affection_change=0, is_ending=False)
        delta = self.choice_affection(choice_index)
        next_chapter = self._chapter_index + 1
        if next_chapter < len(self._script.chapters):
            scene = self.start(self._script, next_chapter)
            is_ending = self.is_ending_chapter()
            if is_ending and self.ending:
                logger.info(f"Reached ending: {self.ending.title}")
            return ChoiceOutcome(scene=scene, affection_change=delta, is_ending=is_ending)
        logger.info(f"Script {self._script.id} completed")
        return ChoiceOutcome(scene=None, affection_change=delta, is_ending=True, completed=True)
