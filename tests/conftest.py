"""Shared fixtures and builders for the galvn test suite."""
import asyncio
import json

import pytest

from galvn.engine.adapters.generation import GenerationBackend, StaticGenerationBackend
from galvn.engine.adapters.storage import MemoryStore
from galvn.engine.events import EventSystem
from galvn.story.loader import ScriptLibrary
from galvn.story.model import (
    BatchSceneData, CharacterConfig, DialogueNode, FullScript, GameChoice, ScriptTemplate, Sentiment,
)


DAY_MS = 24 * 60 * 60 * 1000


class FakeClock:
    """Millisecond clock that only moves when told to."""

    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class RecordingSleep:
    """Drop-in for asyncio.sleep that records delays and only yields once."""

    def __init__(self):
        self.delays = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)


class GatedBackend(GenerationBackend):
    """Backend whose calls block until ``release()``; failures by choice text."""

    def __init__(self, initial: BatchSceneData, branches=None, fail=()):
        self.initial = initial
        self.branches = dict(branches or {})
        self.fail = set(fail)
        self.calls = []
        self.gate = asyncio.Event()

    def release(self) -> None:
        self.gate.set()

    async def generate_initial_batch(self, context):
        self.calls.append(("initial", context.get("scriptId")))
        await self.gate.wait()
        return self.initial

    async def generate_branch(self, choice_text, sentiment):
        self.calls.append(("branch", choice_text))
        await self.gate.wait()
        if choice_text in self.fail:
            raise RuntimeError(f"backend refused {choice_text}")
        return self.branches.get(choice_text) or make_batch(3, prefix=choice_text)

    async def generate_plot_outline(self, prompt):
        return f"outline: {prompt}"


def make_batch(lines: int = 3, choices=("x", "y"), prefix: str = "line", **kw) -> BatchSceneData:
    return BatchSceneData(
        narrative=kw.pop("narrative", "夕阳洒在天台上"),
        dialogue_sequence=tuple(
            DialogueNode(speaker="雯曦", dialogue=f"{prefix} {i}") for i in range(lines)
        ),
        choices=tuple(GameChoice(text=c, sentiment=Sentiment.POSITIVE) for c in choices),
        **kw,
    )


def make_template(script_id: str = "preset_tsundere", name: str = "雯曦") -> ScriptTemplate:
    return ScriptTemplate(
        id=script_id,
        name="测试剧本",
        character=CharacterConfig(name=name, personality="傲娇"),
        setting="学校",
    )


def script_dict(script_id: str = "demo") -> dict:
    return {
        "id": script_id,
        "title": "演示剧本",
        "chapters": [
            {
                "id": "ch1",
                "title": "序章",
                "background": "CLASSROOM",
                "bgm": "peaceful",
                "dialogues": [
                    {"speaker": "旁白", "text": "放学后的教室。"},
                    {"speaker": "艾琳娜", "text": "你来了。", "expression": "HAPPY"},
                    {"speaker": "我", "text": "嗯。"},
                ],
                "choices": [
                    {"text": "x", "sentiment": "positive", "affectionChange": 10},
                    {"text": "y", "sentiment": "negative", "affectionChange": -5},
                ],
            },
            {
                "id": "ch2",
                "title": "第二章",
                "background": "PALACE_HALL",
                "bgm": "romantic",
                "dialogues": [
                    {"type": "cg", "cg": "cg_01.png", "text": "月光下的舞会。"},
                    {"speaker": "艾琳娜", "text": "和我跳支舞吧。", "expression": "BLUSH"},
                ],
                "choices": [
                    {"text": "答应", "sentiment": "positive", "affectionChange": 15},
                ],
            },
            {
                "id": "ending_good",
                "title": "终章",
                "background": "PALACE_BALCONY",
                "bgm": "romantic",
                "dialogues": [
                    {"speaker": "艾琳娜", "text": "谢谢你。"},
                ],
                "ending": {"type": "good", "title": "誓约", "description": "骑士与公主"},
            },
        ],
    }


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def events():
    return EventSystem()


@pytest.fixture
def demo_script() -> FullScript:
    return FullScript.from_dict(script_dict())


@pytest.fixture
def library(tmp_path):
    folder = tmp_path / "stories" / "99_demo" / "script"
    folder.mkdir(parents=True)
    (folder / "chapters.json").write_text(json.dumps(script_dict("demo"), ensure_ascii=False), encoding="utf-8")
    return ScriptLibrary(tmp_path / "stories", folders={"demo": "99_demo"})


@pytest.fixture
def static_backend():
    return StaticGenerationBackend(
        initial=make_batch(3),
        branches={"x": make_batch(2, choices=("z",), prefix="x"), "y": make_batch(2, choices=(), prefix="y")},
        outline="大纲",
    )
