"""End-to-end tests for NarrativeSession."""
import asyncio

import pytest

from conftest import GatedBackend, make_batch, make_template
from galvn.engine.adapters.audio import NullAudio
from galvn.engine.adapters.generation import StaticGenerationBackend, VoiceBackend
from galvn.engine.events import (
    ChoicesShowEvent, EndingReachEvent, GenerationErrorEvent, SceneShowEvent, StaleResponseEvent,
    StoryCompleteEvent,
)
from galvn.engine.session import CLOSING_NARRATIVE, NarrativeSession
from galvn.story.errors import GenerationError, RollbackError, ScriptLoadError
from galvn.story.loader import ScriptLibrary
from galvn.story.model import BgmMood, PlaybackMode, SaveData


def make_session(backend, store, clock, library=None, **kw):
    return NarrativeSession(backend=backend, store=store, library=library, clock=clock, **kw)


class TestGeneratedStory:

    def test_full_playthrough(self, static_backend, store, clock):
        session = make_session(static_backend, store, clock)
        shown = []
        session.events.subscribe(SceneShowEvent, lambda e: shown.append(e.scene))

        async def scenario():
            first = await session.start_generated(make_template())
            assert first.dialogue == "line 0"
            assert session.mode is PlaybackMode.GENERATED
            assert session.advance().dialogue == "line 1"
            assert session.advance().dialogue == "line 2"
            assert session.advance() is None
            assert session.show_choices
            assert [c.text for c in session.choices] == ["x", "y"]
            # choices block advancing
            assert session.advance() is None

            branch = await session.select_choice(1)
            assert branch.dialogue == "y 0"
            assert session.turn == 2
            session.advance()
            closing = session.advance()
            return closing

        closing = asyncio.run(scenario())
        assert closing.narrative == CLOSING_NARRATIVE
        assert closing.bgm == BgmMood.ROMANTIC
        assert session.is_game_over
        assert session.completed
        assert session.cache.has_branch("preset_tsundere", "y")
        assert [s.dialogue for s in shown][:3] == ["line 0", "line 1", "line 2"]

    def test_second_start_uses_cache(self, static_backend, store, clock):
        async def scenario():
            await make_session(static_backend, store, clock).start_generated(make_template())
            second = make_session(static_backend, store, clock)
            return await second.start_generated(make_template())

        scene = asyncio.run(scenario())
        assert scene.dialogue == "line 0"
        assert static_backend.calls.count(("initial", "preset_tsundere")) == 1

    def test_cached_branch_skips_generation(self, static_backend, store, clock):
        session = make_session(static_backend, store, clock)
        session.cache.put_branch("preset_tsundere", "x", make_batch(1, prefix="cached"))

        async def scenario():
            await session.start_generated(make_template())
            for _ in range(3):
                session.advance()
            return await session.select_choice(0)

        assert asyncio.run(scenario()).dialogue == "cached 0"
        assert ("branch", "x") not in static_backend.calls

    def test_initial_failure_is_retryable(self, store, clock):
        session = make_session(StaticGenerationBackend(initial=None), store, clock)
        errors = []
        session.events.subscribe(GenerationErrorEvent, errors.append)

        assert asyncio.run(session.start_generated(make_template())) is None
        assert session.error == "游戏启动失败，请重试。"
        assert isinstance(session.last_error, GenerationError)
        assert session.can_retry
        assert not session.loading
        assert [e.kind for e in errors] == ["initial"]

    def test_branch_failure_then_retry(self, store, clock):
        async def scenario():
            backend = GatedBackend(make_batch(1, choices=("x", "w")), fail={"w"})
            backend.release()
            session = make_session(backend, store, clock)
            await session.start_generated(make_template())
            session.advance()
            assert await session.select_choice(1) is None
            failed_state = (session.error, session.show_choices, session.can_retry)
            backend.fail.clear()
            scene = await session.retry()
            return failed_state, scene, session

        (error, visible, can_retry), scene, session = asyncio.run(scenario())
        assert error == "加载下一幕失败。"
        assert visible
        assert can_retry
        assert scene.dialogue == "w 0"
        assert session.error is None
        assert not session.can_retry

    def test_stale_response_dropped(self, store, clock):
        stale = []

        async def scenario():
            backend = GatedBackend(make_batch(2))
            session = make_session(backend, store, clock)
            session.events.subscribe(StaleResponseEvent, stale.append)
            pending = asyncio.ensure_future(session.start_generated(make_template()))
            await asyncio.sleep(0)
            session.return_to_title()
            backend.release()
            return await pending, session

        result, session = asyncio.run(scenario())
        assert result is None
        assert not session.started
        assert session.current_scene is None
        assert len(stale) == 1
        assert session.cache.get("preset_tsundere") is None

    def test_game_over_branch(self, store, clock):
        backend = StaticGenerationBackend(
            initial=make_batch(1, choices=("x",)),
            branches={"x": make_batch(0, choices=(), is_game_over=True, affection_change=-10)},
        )
        session = make_session(backend, store, clock)

        async def scenario():
            await session.start_generated(make_template())
            session.advance()
            return await session.select_choice(0)

        scene = asyncio.run(scenario())
        assert scene.is_game_over
        assert scene.bgm == BgmMood.SAD
        assert session.affection == 40

    def test_voice_for_character_lines(self, static_backend, store, clock):
        class Voice(VoiceBackend):
            async def synthesize_speech(self, text):
                return text.encode("utf-8")

        audio = NullAudio()
        session = make_session(static_backend, store, clock, voice=Voice(), audio=audio)
        session.toggle_voice()

        async def scenario():
            await session.start_generated(make_template())
            await session.wait_voice()

        asyncio.run(scenario())
        assert audio.played == 1
        assert audio.last_clip == "line 0".encode("utf-8")

    def test_generate_plot(self, static_backend, store, clock):
        session = make_session(static_backend, store, clock)
        assert asyncio.run(session.generate_plot("樱花")) == "大纲"

    def test_generate_plot_failure(self, store, clock):
        class Broken(StaticGenerationBackend):
            async def generate_plot_outline(self, prompt):
                raise RuntimeError("offline")

        session = make_session(Broken(), store, clock)
        with pytest.raises(GenerationError):
            asyncio.run(session.generate_plot("樱花"))


class TestScriptStory:

    def test_full_playthrough(self, store, clock, library):
        session = make_session(StaticGenerationBackend(), store, clock, library)
        endings = []
        completed = []
        session.events.subscribe(EndingReachEvent, endings.append)
        session.events.subscribe(StoryCompleteEvent, completed.append)

        first = session.start_script("demo")
        assert first.speaker == "旁白"
        assert session.mode is PlaybackMode.SCRIPT
        session.advance()
        session.advance()
        assert session.show_choices

        cg = asyncio.run(session.select_choice(1))
        assert cg.is_cg
        assert session.current_cg == "cg_01.png"
        assert session.affection == 45
        session.advance()
        asyncio.run(session.select_choice(0))
        assert session.affection == 60
        assert session.ending.title == "誓约"
        assert [e.ending_type for e in endings] == ["good"]

        closing = session.advance()
        assert closing.is_game_over
        assert session.turn == 6
        assert len(completed) == 1

        record = session.finish()
        assert record.ending_type == "normal"
        assert record.final_affection == 60
        assert record.turns_played == 6
        assert session.finish() is record
        assert len(session.records.all_records()) == 1

    def test_choice_index_out_of_range(self, store, clock, library):
        session = make_session(StaticGenerationBackend(), store, clock, library)
        session.start_script("demo")
        assert asyncio.run(session.select_choice(0)) is None
        session.advance()
        session.advance()
        with pytest.raises(ValueError):
            asyncio.run(session.select_choice(2))
        assert session.show_choices

    def test_missing_script_leaves_session(self, store, clock, library):
        session = make_session(StaticGenerationBackend(), store, clock, library)
        scene = session.start_script("demo")
        with pytest.raises(ScriptLoadError):
            session.start_script("nope")
        assert session.error.startswith("剧本加载失败")
        assert session.current_scene == scene
        assert session.script_id == "demo"

    def test_pause_blocks_advance(self, store, clock, library):
        session = make_session(StaticGenerationBackend(), store, clock, library)
        session.start_script("demo")
        session.pause()
        assert session.advance() is None
        assert not session.toggle_pause()
        assert session.advance().dialogue == "你来了。"

    def test_history_jump(self, store, clock, library):
        session = make_session(StaticGenerationBackend(), store, clock, library)
        session.start_script("demo")
        session.advance()
        session.advance()
        assert len(session.history) == 3

        scene = session.jump_to_history(0)
        assert scene.speaker == "旁白"
        assert len(session.history) == 1
        assert not session.show_choices
        assert session.current_scene == scene

    def test_history_jump_refused_in_generated_mode(self, static_backend, store, clock):
        session = make_session(static_backend, store, clock)

        async def scenario():
            await session.start_generated(make_template())
            session.advance()

        asyncio.run(scenario())
        with pytest.raises(RollbackError):
            session.jump_to_history(0)
        assert len(session.history) == 2


class TestSaveResume:

    def test_script_resume(self, store, clock, library):
        session = make_session(StaticGenerationBackend(), store, clock, library)
        session.start_script("demo")
        session.advance()
        saved = session.save(0)
        assert saved.chapter_index == 0
        assert saved.dialogue_index == 1
        assert saved.preview_text == "你来了。"

        fresh = make_session(StaticGenerationBackend(), store, clock, library)
        scene = fresh.load("demo", 0)
        assert scene.dialogue == "你来了。"
        assert fresh.turn == 2
        assert fresh.mode is PlaybackMode.SCRIPT
        assert fresh.advance().dialogue == "嗯。"
        assert fresh.show_choices

    def test_generated_resume(self, static_backend, store, clock):
        session = make_session(static_backend, store, clock)

        async def scenario():
            await session.start_generated(make_template())
            session.advance()

        asyncio.run(scenario())
        session.save(1)

        fresh = make_session(static_backend, store, clock)
        scene = fresh.continue_latest()
        assert scene.dialogue == "line 1"
        assert fresh.mode is PlaybackMode.GENERATED
        assert fresh.character_name == "雯曦"
        assert fresh.advance().dialogue == "line 2"

    def test_save_pointing_outside_script(self, store, clock, library):
        session = make_session(StaticGenerationBackend(), store, clock, library)
        session.saves.save("demo", 2, SaveData(
            script_id="demo", script_title="演示剧本", chapter_index=9, dialogue_index=0,
            affection=50, turns_played=1, character_name="",
        ))
        assert session.load("demo", 2) is None
        assert session.error == "存档已损坏"
        assert not session.started

    def test_nothing_to_save(self, static_backend, store, clock):
        session = make_session(static_backend, store, clock)
        assert session.save(0) is None
        assert not session.saves.has_any()


def test_choices_event_and_auto_play_suspension(static_backend, store, clock):
    session = make_session(static_backend, store, clock)
    shown = []
    session.events.subscribe(ChoicesShowEvent, shown.append)

    async def scenario():
        await session.start_generated(make_template())
        session.toggle_auto_play()
        armed_while_reading = session.auto_play.armed
        session.advance()
        session.advance()
        session.advance()
        return armed_while_reading, session.auto_play.armed

    armed_before, armed_at_choices = asyncio.run(scenario())
    assert armed_before
    assert not armed_at_choices
    assert len(shown) == 1


class TestRetryLifetime:

    def test_failed_branch_retry_dropped_by_new_start(self, store, clock, library):
        async def scenario():
            backend = GatedBackend(make_batch(1, choices=("x", "w")), fail={"w"})
            backend.release()
            session = make_session(backend, store, clock, library)
            await session.start_generated(make_template())
            session.advance()
            await session.select_choice(1)
            assert session.can_retry
            session.start_script("demo")
            backend.fail.clear()
            return session, await session.retry()

        session, result = asyncio.run(scenario())
        assert result is None
        assert not session.can_retry
        assert session.mode is PlaybackMode.SCRIPT
        assert session.player.position == (0, 0)
        assert session.affection == 50
        assert not session.show_choices

    def test_restore_clears_pending_retry(self, store, clock, library):
        session = make_session(StaticGenerationBackend(initial=None), store, clock, library)
        asyncio.run(session.start_generated(make_template()))
        assert session.can_retry
        other = make_session(StaticGenerationBackend(), store, clock, library)
        other.start_script("demo")
        other.save(0)
        assert session.load("demo", 0) is not None
        assert not session.can_retry


def test_restore_with_missing_script(store, clock, library):
    session = make_session(StaticGenerationBackend(), store, clock, library)
    session.start_script("demo")
    session.save(0)

    stranger = make_session(StaticGenerationBackend(), store, clock, ScriptLibrary(folders={}))
    assert stranger.load("demo", 0) is None
    assert stranger.error.startswith("剧本加载失败")
    assert not stranger.started
