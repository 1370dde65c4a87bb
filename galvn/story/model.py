"""
Story Data Model - 叙事数据模型

Shared entities passed between the playback controllers, the branch cache,
the save system and the session:

- SceneData / DialogueNode / BatchSceneData (generated acts)
- ScriptDialogue / ScriptChapter / FullScript (pre-authored scripts)
- CachedBatchData / CachedBranchData (cache records)
- SaveData / SaveSlot / ScriptSaveInfo (save slots)
- GameRecord (completed playthroughs)

All persisted entities round-trip through ``to_dict`` / ``from_dict`` using the
camelCase keys of the on-disk JSON format.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


AFFECTION_MIN = 0
AFFECTION_MAX = 100
AFFECTION_INITIAL = 50

NARRATOR = "旁白"
PLAYER = "我"


# ============================================================================
# Display Tags
# ============================================================================

class Expression(str, Enum):
    """角色表情"""
    NEUTRAL = "neutral"
    HAPPY = "happy"
    SAD = "sad"
    ANGRY = "angry"
    BLUSH = "blush"
    SURPRISED = "surprised"
    SHY = "shy"
    FEAR = "fear"


class Background(str, Enum):
    """背景"""
    # 现代校园
    SCHOOL_ROOFTOP = "school_rooftop"
    CLASSROOM = "classroom"
    SCHOOL_GATE = "school_gate"
    SCHOOL_CORRIDOR = "school_corridor"
    LIBRARY = "library"
    STREET_SUNSET = "street_sunset"
    RIVERSIDE = "riverside"
    CONVENIENCE_STORE = "convenience_store"
    CAFE = "cafe"
    PARK_NIGHT = "park_night"
    TRAIN_STATION = "train_station"
    BEDROOM = "bedroom"
    # 奇幻王国
    PALACE_HALL = "palace_hall"
    PALACE_GARDEN = "palace_garden"
    PALACE_BALCONY = "palace_balcony"
    CASTLE_CORRIDOR = "castle_corridor"
    ROYAL_BEDROOM = "royal_bedroom"
    TRAINING_GROUND = "training_ground"
    ABANDONED_GARDEN = "abandoned_garden"


class BgmMood(str, Enum):
    """BGM 氛围"""
    DAILY = "daily"
    HAPPY = "happy"
    SAD = "sad"
    TENSE = "tense"
    ROMANTIC = "romantic"
    MYSTERIOUS = "mysterious"


class Sentiment(str, Enum):
    POSITIVE = "positive"
    NEUTRAL = "neutral"
    NEGATIVE = "negative"


class PlaybackMode(str, Enum):
    """Which data source drives the session."""
    GENERATED = "generated"
    SCRIPT = "script"


# Script assets use uppercase expression names and their own bgm vocabulary.
_BGM_ALIASES: Dict[str, BgmMood] = {
    "peaceful": BgmMood.DAILY,
    "melancholy": BgmMood.SAD,
    "dramatic": BgmMood.TENSE,
    "intense": BgmMood.TENSE,
}


def parse_expression(value: Optional[str], default: Expression = Expression.NEUTRAL) -> Expression:
    if not value:
        return default
    try:
        return Expression(str(value).strip().lower())
    except ValueError:
        return default


def parse_background(value: Optional[str], default: Background = Background.SCHOOL_ROOFTOP) -> Background:
    if not value:
        return default
    try:
        return Background(str(value).strip().lower())
    except ValueError:
        return default


def parse_bgm(value: Optional[str], default: BgmMood = BgmMood.DAILY) -> BgmMood:
    if not value:
        return default
    key = str(value).strip().lower()
    if key in _BGM_ALIASES:
        return _BGM_ALIASES[key]
    try:
        return BgmMood(key)
    except ValueError:
        return default


def parse_sentiment(value: Optional[str]) -> Sentiment:
    try:
        return Sentiment(str(value or "neutral").strip().lower())
    except ValueError:
        return Sentiment.NEUTRAL


def clamp_affection(value: int, lo: int = AFFECTION_MIN, hi: int = AFFECTION_MAX) -> int:
    """Clamp an affection value into ``[lo, hi]``."""
    return max(lo, min(hi, int(value)))


# ============================================================================
# Scenes & Generated Batches
# ============================================================================

@dataclass(frozen=True)
class GameChoice:
    text: str
    sentiment: Sentiment = Sentiment.NEUTRAL

    def to_dict(self) -> dict:
        return {"text": self.text, "sentiment": self.sentiment.value}

    @classmethod
    def from_dict(cls, data: dict) -> "GameChoice":
        return cls(text=str(data.get("text") or ""), sentiment=parse_sentiment(data.get("sentiment")))


@dataclass(frozen=True)
class SceneData:
    """单个显示单位。Immutable once produced."""
    narrative: str = ""
    speaker: str = ""
    dialogue: str = ""
    expression: Expression = Expression.NEUTRAL
    background: Background = Background.SCHOOL_ROOFTOP
    bgm: BgmMood = BgmMood.DAILY
    choices: Tuple[GameChoice, ...] = ()
    affection_change: int = 0
    is_game_over: bool = False
    history_chapter_index: Optional[int] = None
    history_dialogue_index: Optional[int] = None
    cg: Optional[str] = None

    @property
    def is_cg(self) -> bool:
        """Full-screen CG insert: sprite and dialogue box are hidden."""
        return bool(self.cg)

    @property
    def has_history_coords(self) -> bool:
        return self.history_chapter_index is not None and self.history_dialogue_index is not None

    @property
    def display_text(self) -> str:
        return self.dialogue or self.narrative

    def with_changes(self, **changes: Any) -> "SceneData":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        out = {
            "narrative": self.narrative,
            "speaker": self.speaker,
            "dialogue": self.dialogue,
            "expression": self.expression.value,
            "background": self.background.value,
            "bgm": self.bgm.value,
            "choices": [c.to_dict() for c in self.choices],
            "affectionChange": self.affection_change,
            "isGameOver": self.is_game_over,
        }
        if self.history_chapter_index is not None:
            out["historyChapterIndex"] = self.history_chapter_index
        if self.history_dialogue_index is not None:
            out["historyDialogueIndex"] = self.history_dialogue_index
        if self.cg:
            out["cg"] = self.cg
        return out

    @classmethod
    def from_dict(cls, data: dict) -> "SceneData":
        return cls(
            narrative=str(data.get("narrative") or ""),
            speaker=str(data.get("speaker") or ""),
            dialogue=str(data.get("dialogue") or ""),
            expression=parse_expression(data.get("expression")),
            background=parse_background(data.get("background")),
            bgm=parse_bgm(data.get("bgm")),
            choices=tuple(GameChoice.from_dict(c) for c in data.get("choices") or []),
            affection_change=int(data.get("affectionChange") or 0),
            is_game_over=bool(data.get("isGameOver", False)),
            history_chapter_index=data.get("historyChapterIndex"),
            history_dialogue_index=data.get("historyDialogueIndex"),
            cg=data.get("cg"),
        )


@dataclass(frozen=True)
class DialogueNode:
    """批量剧情中的一轮对话"""
    speaker: str
    dialogue: str
    expression: Expression = Expression.NEUTRAL
    background: Optional[Background] = None
    bgm: Optional[BgmMood] = None
    narrative: Optional[str] = None

    def to_dict(self) -> dict:
        out: Dict[str, Any] = {
            "speaker": self.speaker,
            "dialogue": self.dialogue,
            "expression": self.expression.value,
        }
        if self.background is not None:
            out["background"] = self.background.value
        if self.bgm is not None:
            out["bgm"] = self.bgm.value
        if self.narrative is not None:
            out["narrative"] = self.narrative
        return out

    @classmethod
    def from_dict(cls, data: dict) -> "DialogueNode":
        bg = data.get("background")
        bgm = data.get("bgm")
        return cls(
            speaker=str(data.get("speaker") or ""),
            dialogue=str(data.get("dialogue") or ""),
            expression=parse_expression(data.get("expression")),
            background=parse_background(bg) if bg else None,
            bgm=parse_bgm(bgm) if bgm else None,
            narrative=data.get("narrative"),
        )


@dataclass(frozen=True)
class BatchSceneData:
    """AI 生成的一幕剧情"""
    narrative: str = ""
    background: Background = Background.SCHOOL_ROOFTOP
    bgm: BgmMood = BgmMood.DAILY
    dialogue_sequence: Tuple[DialogueNode, ...] = ()
    affection_change: int = 0
    is_game_over: bool = False
    choices: Tuple[GameChoice, ...] = ()

    def to_dict(self) -> dict:
        return {
            "narrative": self.narrative,
            "background": self.background.value,
            "bgm": self.bgm.value,
            "dialogueSequence": [n.to_dict() for n in self.dialogue_sequence],
            "affectionChange": self.affection_change,
            "isGameOver": self.is_game_over,
            "choices": [c.to_dict() for c in self.choices],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "BatchSceneData":
        return cls(
            narrative=str(data.get("narrative") or ""),
            background=parse_background(data.get("background")),
            bgm=parse_bgm(data.get("bgm")),
            dialogue_sequence=tuple(DialogueNode.from_dict(n) for n in data.get("dialogueSequence") or []),
            affection_change=int(data.get("affectionChange") or 0),
            is_game_over=bool(data.get("isGameOver", False)),
            choices=tuple(GameChoice.from_dict(c) for c in data.get("choices") or []),
        )


# ============================================================================
# Pre-authored Scripts
# ============================================================================

@dataclass(frozen=True)
class ScriptDialogue:
    text: str
    speaker: Optional[str] = None
    expression: Optional[str] = None
    type: Optional[str] = None  # "cg" | "narrative"
    cg: Optional[str] = None

    @property
    def is_cg(self) -> bool:
        return self.type == "cg" and bool(self.cg)

    @classmethod
    def from_dict(cls, data: dict) -> "ScriptDialogue":
        return cls(
            text=str(data.get("text") or ""),
            speaker=data.get("speaker"),
            expression=data.get("expression"),
            type=data.get("type"),
            cg=data.get("cg"),
        )


@dataclass(frozen=True)
class ChapterChoice:
    text: str
    sentiment: Sentiment = Sentiment.NEUTRAL
    affection_change: int = 0

    def as_game_choice(self) -> GameChoice:
        return GameChoice(text=self.text, sentiment=self.sentiment)

    @classmethod
    def from_dict(cls, data: dict) -> "ChapterChoice":
        return cls(
            text=str(data.get("text") or ""),
            sentiment=parse_sentiment(data.get("sentiment")),
            affection_change=int(data.get("affectionChange") or 0),
        )


@dataclass(frozen=True)
class ChapterEnding:
    type: str
    title: str = ""
    description: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "ChapterEnding":
        return cls(
            type=str(data.get("type") or ""),
            title=str(data.get("title") or ""),
            description=str(data.get("description") or ""),
        )


@dataclass(frozen=True)
class ScriptChapter:
    id: str
    title: str
    background: str = ""
    bgm: str = ""
    dialogues: Tuple[ScriptDialogue, ...] = ()
    choices: Tuple[ChapterChoice, ...] = ()
    ending: Optional[ChapterEnding] = None

    @property
    def is_ending(self) -> bool:
        return self.ending is not None

    @classmethod
    def from_dict(cls, data: dict) -> "ScriptChapter":
        ending = data.get("ending")
        return cls(
            id=str(data.get("id") or ""),
            title=str(data.get("title") or ""),
            background=str(data.get("background") or ""),
            bgm=str(data.get("bgm") or ""),
            dialogues=tuple(ScriptDialogue.from_dict(d) for d in data.get("dialogues") or []),
            choices=tuple(ChapterChoice.from_dict(c) for c in data.get("choices") or []),
            ending=ChapterEnding.from_dict(ending) if isinstance(ending, dict) else None,
        )


@dataclass(frozen=True)
class FullScript:
    id: str
    title: str
    chapters: Tuple[ScriptChapter, ...] = ()

    def __len__(self) -> int:
        return len(self.chapters)

    @classmethod
    def from_dict(cls, data: dict) -> "FullScript":
        return cls(
            id=str(data.get("id") or ""),
            title=str(data.get("title") or ""),
            chapters=tuple(ScriptChapter.from_dict(c) for c in data.get("chapters") or []),
        )


@dataclass(frozen=True)
class CharacterConfig:
    name: str
    personality: str = ""
    appearance: str = ""
    relationship: str = ""


@dataclass(frozen=True)
class ScriptTemplate:
    """剧本模板 - generation context for generated-batch mode."""
    id: str
    name: str
    character: CharacterConfig
    description: str = ""
    plot_framework: str = ""
    setting: str = ""

    def generation_context(self) -> Dict[str, str]:
        return {
            "scriptId": self.id,
            "characterName": self.character.name,
            "personality": self.character.personality,
            "appearance": self.character.appearance,
            "relationship": self.character.relationship,
            "setting": self.setting,
            "plotFramework": self.plot_framework,
        }


# ============================================================================
# Cache Records
# ============================================================================

@dataclass(frozen=True)
class CachedBatchData:
    script_id: str
    batch: BatchSceneData
    generated_at: int  # epoch ms
    version: str

    def is_valid(self, now_ms: int, version: str, ttl_ms: int) -> bool:
        return self.version == version and now_ms - self.generated_at < ttl_ms

    def to_dict(self) -> dict:
        return {
            "scriptId": self.script_id,
            "batchData": self.batch.to_dict(),
            "generatedAt": self.generated_at,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CachedBatchData":
        return cls(
            script_id=str(data["scriptId"]),
            batch=BatchSceneData.from_dict(data["batchData"]),
            generated_at=int(data["generatedAt"]),
            version=str(data["version"]),
        )


@dataclass(frozen=True)
class CachedBranchData:
    script_id: str
    choice_text: str
    batch: BatchSceneData
    generated_at: int
    version: str

    @property
    def key(self) -> str:
        return branch_key(self.script_id, self.choice_text)

    def is_valid(self, now_ms: int, version: str, ttl_ms: int) -> bool:
        return self.version == version and now_ms - self.generated_at < ttl_ms

    def to_dict(self) -> dict:
        return {
            "scriptId": self.script_id,
            "choiceText": self.choice_text,
            "branchData": self.batch.to_dict(),
            "generatedAt": self.generated_at,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CachedBranchData":
        return cls(
            script_id=str(data["scriptId"]),
            choice_text=str(data["choiceText"]),
            batch=BatchSceneData.from_dict(data["branchData"]),
            generated_at=int(data["generatedAt"]),
            version=str(data["version"]),
        )


def branch_key(script_id: str, choice_text: str) -> str:
    return f"{script_id}_{choice_text}"


# ============================================================================
# Saves & Records
# ============================================================================

@dataclass(frozen=True)
class SaveData:
    """存档快照。Read-only once written; a new save to the slot supersedes it."""
    script_id: str
    script_title: str
    chapter_index: int
    dialogue_index: int
    affection: int
    turns_played: int
    character_name: str
    current_expression: Expression = Expression.NEUTRAL
    current_background: Background = Background.SCHOOL_ROOFTOP
    current_bgm: BgmMood = BgmMood.DAILY
    preview_text: str = ""
    timestamp: int = 0
    slot_index: int = 0
    mode: PlaybackMode = PlaybackMode.SCRIPT
    batch: Optional[BatchSceneData] = None

    @property
    def id(self) -> str:
        return f"{self.script_id}_{self.slot_index}"

    def to_dict(self) -> dict:
        out = {
            "id": self.id,
            "scriptId": self.script_id,
            "scriptTitle": self.script_title,
            "chapterIndex": self.chapter_index,
            "dialogueIndex": self.dialogue_index,
            "affection": self.affection,
            "turnsPlayed": self.turns_played,
            "characterName": self.character_name,
            "currentExpression": self.current_expression.value,
            "currentBackground": self.current_background.value,
            "currentBgm": self.current_bgm.value,
            "previewText": self.preview_text,
            "timestamp": self.timestamp,
            "slotIndex": self.slot_index,
            "mode": self.mode.value,
        }
        if self.batch is not None:
            out["batchData"] = self.batch.to_dict()
        return out

    @classmethod
    def from_dict(cls, data: dict) -> "SaveData":
        batch = data.get("batchData")
        return cls(
            script_id=str(data["scriptId"]),
            script_title=str(data.get("scriptTitle") or ""),
            chapter_index=int(data.get("chapterIndex") or 0),
            dialogue_index=int(data.get("dialogueIndex") or 0),
            affection=int(data.get("affection", AFFECTION_INITIAL)),
            turns_played=int(data.get("turnsPlayed") or 0),
            character_name=str(data.get("characterName") or ""),
            current_expression=parse_expression(data.get("currentExpression")),
            current_background=parse_background(data.get("currentBackground")),
            current_bgm=parse_bgm(data.get("currentBgm")),
            preview_text=str(data.get("previewText") or ""),
            timestamp=int(data.get("timestamp") or 0),
            slot_index=int(data.get("slotIndex") or 0),
            mode=PlaybackMode(data.get("mode") or PlaybackMode.SCRIPT.value),
            batch=BatchSceneData.from_dict(batch) if isinstance(batch, dict) else None,
        )


@dataclass(frozen=True)
class SaveSlot:
    slot_index: int
    save_data: Optional[SaveData] = None

    @property
    def is_empty(self) -> bool:
        return self.save_data is None


@dataclass
class ScriptSaveInfo:
    """每个剧本的存档摘要"""
    script_id: str
    slots: List[SaveSlot] = field(default_factory=list)
    last_played_slot: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "scriptId": self.script_id,
            "slots": [
                {"slotIndex": s.slot_index, "saveData": s.save_data.to_dict() if s.save_data else None}
                for s in self.slots
            ],
            "lastPlayedSlot": self.last_played_slot,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ScriptSaveInfo":
        slots: List[SaveSlot] = []
        for raw in data.get("slots") or []:
            sd = raw.get("saveData")
            slots.append(SaveSlot(
                slot_index=int(raw.get("slotIndex") or 0),
                save_data=SaveData.from_dict(sd) if isinstance(sd, dict) else None,
            ))
        return cls(
            script_id=str(data.get("scriptId") or ""),
            slots=slots,
            last_played_slot=data.get("lastPlayedSlot"),
        )


@dataclass(frozen=True)
class GameRecord:
    """通关记录 - append-only."""
    id: str
    script_id: str
    script_name: str
    character_name: str
    ending_type: str  # "good" | "normal" | "bad"
    final_affection: int
    turns_played: int
    completed_at: int

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "scriptId": self.script_id,
            "scriptName": self.script_name,
            "characterName": self.character_name,
            "endingType": self.ending_type,
            "finalAffection": self.final_affection,
            "turnsPlayed": self.turns_played,
            "completedAt": self.completed_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "GameRecord":
        return cls(
            id=str(data["id"]),
            script_id=str(data.get("scriptId") or ""),
            script_name=str(data.get("scriptName") or ""),
            character_name=str(data.get("characterName") or ""),
            ending_type=str(data.get("endingType") or "bad"),
            final_affection=int(data.get("finalAffection") or 0),
            turns_played=int(data.get("turnsPlayed") or 0),
            completed_at=int(data.get("completedAt") or 0),
        )
