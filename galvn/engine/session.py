"""
Narrative Session - 游戏会话

Composes the playback controllers, the generation cache, the preloader,
saves, history and auto play into one game state, and exposes the player
intents (advance, choose, pause, save, load, rollback, auto play).

Exactly one playback mode is active per start: ``DialogueQueueController``
for generated acts or ``ScriptPlaybackController`` for pre-authored scripts.
Every async generation request captures a token; a completion whose token is
no longer current is discarded.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from ..story.errors import GenerationError, ScriptLoadError
from ..story.loader import PRESET_TEMPLATES, ScriptLibrary, get_preset
from ..story.model import (
    NARRATOR, BatchSceneData, BgmMood, ChapterEnding, Expression, FullScript, GameChoice, GameRecord,
    PlaybackMode, SaveData, SceneData, ScriptTemplate, clamp_affection,
)
from ..story.text_cleaner import clean_batch
from .adapters.audio import IAudio
from .adapters.generation import GenerationBackend, NullVoiceBackend, VoiceBackend, as_batch
from .adapters.storage import KeyValueStore
from .auto_play import AutoPlayConditions, AutoPlayScheduler
from .branch_cache import BranchCacheStore, now_ms
from .config_io import default_config
from .dialogue_queue import DialogueQueueController
from .events import (
    AffectionChangeEvent, ChapterStartEvent, ChoicesShowEvent, ChoiceSelectEvent, EndingReachEvent,
    EventSystem, GamePauseEvent, GameResumeEvent, GameStartEvent, GenerationErrorEvent,
    GenerationStartEvent, ReturnToTitleEvent, SceneShowEvent, StaleResponseEvent, StoryCompleteEvent,
)
from .game_records import GameRecordStore, determine_ending_type
from .history import HistoryLog
from .playback import IPlayback
from .preloader import PreloadOrchestrator, PreloadResult, ProgressCallback, Sleep
from .save_manager import SaveManager
from .script_player import ScriptPlaybackController

logger = logging.getLogger(__name__)

CLOSING_NARRATIVE = "故事在此画上了句点..."
GAME_OVER_NARRATIVE = "故事结束了..."
THANKS_LINE = "感谢您的游玩。"
PREVIEW_LENGTH = 50


class NarrativeSession:
    """
    游戏会话

    Usage:
        session = NarrativeSession(backend=backend, store=FileKeyValueStore(get_save_dir))

        @session.events.on(SceneShowEvent)
        def show(event):
            ...

        await session.start_generated(get_preset("preset_tsundere"))
        session.advance()
        await session.select_choice(0)
        session.save(0)
    """

    def __init__(
        self,
        *,
        backend: GenerationBackend,
        store: KeyValueStore,
        library: Optional[ScriptLibrary] = None,
        events: Optional[EventSystem] = None,
        voice: Optional[VoiceBackend] = None,
        audio: Optional[IAudio] = None,
        config: Optional[Dict[str, dict]] = None,
        clock: Callable[[], int] = now_ms,
        sleep: Sleep = asyncio.sleep,
        loop: Optional[asyncio.AbstractEventLoop] = None,
    ):
        cfg = default_config()
        for section, values in (config or {}).items():
            cfg.setdefault(section, {}).update(values or {})
        self.config = cfg

        self.events = events if events is not None else EventSystem()
        self.backend = backend
        self.library = library if library is not None else ScriptLibrary()
        self.voice = voice if voice is not None else NullVoiceBackend()
        self.audio = audio

        self.cache = BranchCacheStore(
            store,
            version=cfg["cache"]["version"],
            ttl_ms=int(cfg["cache"]["ttl_days"] * 24 * 60 * 60 * 1000),
            clock=clock,
            events=self.events,
        )
        self.preloader = PreloadOrchestrator(
            backend,
            self.cache,
            self.events,
            branch_delay=cfg["preload"]["branch_delay_s"],
            first_script_branch_delay=cfg["preload"]["first_script_branch_delay_s"],
            first_script_delay=cfg["preload"]["first_script_delay_s"],
            first_preset_id=cfg["preload"]["first_preset_id"],
            sleep=sleep,
        )
        self.saves = SaveManager(store, self.events, max_slots=cfg["saves"]["max_slots"], clock=clock)
        self.records = GameRecordStore(store, self.events, clock=clock)
        self.history = HistoryLog(self.events)
        self.queue = DialogueQueueController()
        self.player = ScriptPlaybackController()
        self.auto_play = AutoPlayScheduler(
            self._auto_advance,
            self._auto_conditions,
            events=self.events,
            loop=loop,
            settings=cfg["autoplay"],
        )

        self._token = 0
        self._voice_task: Optional[asyncio.Task] = None
        self.voice_enabled = False
        self.typing = False
        self._reset_state()

    def _reset_state(self) -> None:
        self.playback: Optional[IPlayback] = None
        self.template: Optional[ScriptTemplate] = None
        self.script: Optional[FullScript] = None
        self.script_id: str = ""
        self.current_scene: Optional[SceneData] = None
        self.affection = self.config["affection"]["initial"]
        self.turn = 0
        self.started = False
        self.loading = False
        self.paused = False
        self.show_choices = False
        self.choices: Tuple[GameChoice, ...] = ()
        self.error: Optional[str] = None
        self.last_error: Optional[GenerationError] = None
        self.completed = False
        self._recorded: Optional[GameRecord] = None
        self._retry: Optional[Callable[[], Awaitable[Any]]] = None

    # =========================================
    # State
    # =========================================

    @property
    def mode(self) -> Optional[PlaybackMode]:
        return self.playback.mode if self.playback is not None else None

    @property
    def is_game_over(self) -> bool:
        return self.current_scene is not None and self.current_scene.is_game_over

    @property
    def current_cg(self) -> Optional[str]:
        return self.current_scene.cg if self.current_scene else None

    @property
    def ending(self) -> Optional[ChapterEnding]:
        if self.mode is PlaybackMode.SCRIPT and self.player.is_ending_chapter():
            return self.player.ending
        return None

    @property
    def character_name(self) -> str:
        return self.template.character.name if self.template else ""

    @property
    def token(self) -> int:
        return self._token

    @property
    def can_retry(self) -> bool:
        return self._retry is not None

    def _next_token(self) -> int:
        self._token += 1
        return self._token

    def _is_stale(self, token: int, kind: str) -> bool:
        if token == self._token:
            return False
        logger.warning(f"Discarding stale {kind} response (token {token}, current {self._token})")
        self.events.emit(StaleResponseEvent(kind=kind, token=token, current_token=self._token))
        return True

    # =========================================
    # Display
    # =========================================

    def _show(self, scene: SceneData, *, record: bool = True) -> SceneData:
        self.current_scene = scene
        if record:
            self.history.append(scene)
        self.events.emit(SceneShowEvent(scene=scene, mode=self.mode.value if self.mode else "", turn=self.turn))
        self._narrate(scene)
        self._sync_auto_play()
        return scene

    def _present_choices(self, choices: Tuple[GameChoice, ...]) -> None:
        self.choices = tuple(choices)
        self.show_choices = bool(self.choices)
        if self.show_choices:
            self.events.emit(ChoicesShowEvent(choices=list(self.choices)))
        self._sync_auto_play()

    def _apply_affection(self, delta: int) -> None:
        if not delta:
            return
        cfg = self.config["affection"]
        self.affection = clamp_affection(self.affection + delta, cfg["min"], cfg["max"])
        self.events.emit(AffectionChangeEvent(delta=delta, value=self.affection))

    def _begin(self, playback: IPlayback, scene: SceneData, *, from_load: bool = False) -> SceneData:
        self.playback = playback
        self.started = True
        self.loading = False
        self.history.reset(scene)
        self.events.emit(GameStartEvent(script_id=self.script_id, mode=playback.mode.value, from_load=from_load))
        return self._show(scene, record=False)

    def _fail(self, kind: str, message: str, exc: BaseException, retry: Callable[[], Awaitable[Any]]) -> None:
        logger.error(f"{kind} generation failed: {exc}", exc_info=exc)
        self.loading = False
        self.error = message
        self.last_error = GenerationError(message, context=str(exc))
        self._retry = retry
        self.events.emit(GenerationErrorEvent(kind=kind, message=message))
        self._sync_auto_play()

    def clear_error(self) -> None:
        self.error = None

    async def retry(self) -> Any:
        """Re-run the request that last failed."""
        fn, self._retry = self._retry, None
        if fn is None:
            return None
        self.error = None
        return await fn()

    # =========================================
    # Starting
    # =========================================

    async def start_generated(self, template: ScriptTemplate) -> Optional[SceneData]:
        """Start a generated story: cached act one if valid, otherwise live generation."""
        token = self._next_token()
        self.auto_play.cancel()
        self._reset_state()
        self.template = template
        self.script_id = template.id
        self.loading = True

        batch = self.cache.get(template.id)
        if batch is not None:
            logger.info(f"Using cached act one for {template.id}")
        else:
            self.events.emit(GenerationStartEvent(kind="initial", script_id=template.id))
            try:
                batch = as_batch(await self.backend.generate_initial_batch(template.generation_context()))
            except Exception as e:
                if self._is_stale(token, "initial"):
                    return None
                self._fail("initial", "游戏启动失败，请重试。", e, lambda: self.start_generated(template))
                return None
            if self._is_stale(token, "initial"):
                return None
            batch = clean_batch(batch)
            self.cache.put(template.id, batch, only_if_absent=True)

        if not batch.dialogue_sequence:
            self._fail(
                "initial", "游戏启动失败，请重试。",
                GenerationError("生成的对话序列为空"), lambda: self.start_generated(template),
            )
            return None

        logger.info(f"Act one for {template.id}: {len(batch.dialogue_sequence)} lines")
        scene = self.queue.load(batch)
        assert scene is not None
        self.player.reset()
        self.turn = 1
        return self._begin(self.queue, scene)

    def start_script(self, script_id: str) -> SceneData:
        """
        Start a pre-authored script from chapter one.

        Raises ``ScriptLoadError`` (and sets ``error``) when the script cannot
        be loaded; the running session is left untouched in that case.
        """
        try:
            script = self.library.require_script(script_id)
            preview = ScriptPlaybackController()
            preview.start(script, 0)
        except ScriptLoadError as e:
            logger.error(f"Script start failed: {e}")
            self.error = f"剧本加载失败: {e.message}"
            raise

        self._next_token()
        self.auto_play.cancel()
        self._reset_state()
        self.script = script
        self.script_id = script_id
        self.template = get_preset(script_id)
        self.queue.reset()
        scene = self.player.start(script, 0)
        self.turn = 1
        logger.info(f"Script {script.title}: {len(script.chapters)} chapters")
        self._begin(self.player, scene)
        self._enter_chapter()
        return scene

    def _enter_chapter(self) -> None:
        chapter = self.player.chapter
        if chapter is None:
            return
        self.events.emit(ChapterStartEvent(
            chapter_index=self.player.chapter_index, chapter_id=chapter.id, chapter_name=chapter.title,
        ))
        self._check_last_line()
        ending = self.ending
        if ending is not None:
            logger.info(f"Reached ending: {ending.title}")
            self.events.emit(EndingReachEvent(
                ending_id=chapter.id, ending_name=ending.title, ending_type=ending.type,
                description=ending.description,
            ))

    def _check_last_line(self) -> None:
        # a one-line chapter shows its choices right away
        if self.mode is PlaybackMode.SCRIPT:
            scenes = self.player.scenes
            if self.player.dialogue_index == len(scenes) - 1 and scenes[-1].choices:
                self._present_choices(scenes[-1].choices)

    # =========================================
    # Player Intents
    # =========================================

    def advance(self) -> Optional[SceneData]:
        """处理下一句对话"""
        if not self.started or self.playback is None:
            return None
        if self.loading or self.show_choices or self.paused or self.is_game_over:
            return None

        result = self.playback.advance()
        if result.scene is not None:
            if self.mode is PlaybackMode.SCRIPT:
                self.turn += 1
            self._show(result.scene)
            if result.show_choices:
                self._present_choices(result.choices)
            return result.scene

        # act / chapter exhausted
        if self.mode is PlaybackMode.GENERATED:
            if result.choices:
                logger.debug("Dialogue sequence ended, showing choices")
                self._present_choices(result.choices)
                return None
            return self._complete_story()

        if self.player.is_ending_chapter() or self.player.is_last_chapter():
            return self._complete_story()
        # chapter without choices flows into the next one
        return self._chapter_transition(-1)

    async def select_choice(self, index: int) -> Optional[SceneData]:
        """处理玩家选择"""
        if not self.show_choices:
            logger.debug("No choices visible; ignoring selection")
            return None
        if index < 0 or index >= len(self.choices):
            raise ValueError(f"choice index out of range: {index}")
        choice = self.choices[index]
        self.show_choices = False
        self.choices = ()

        if self.mode is PlaybackMode.SCRIPT:
            delta = self.player.choice_affection(index)
            self.events.emit(ChoiceSelectEvent(index=index, text=choice.text, affection_change=delta))
            return self._chapter_transition(index)
        return await self._select_branch(index, choice)

    def _chapter_transition(self, index: int) -> Optional[SceneData]:
        outcome = self.player.select_choice(index)
        self._apply_affection(outcome.affection_change)
        if outcome.completed or outcome.scene is None:
            return self._complete_story()
        self.turn += 1
        self._show(outcome.scene)
        self._enter_chapter()
        return outcome.scene

    async def _select_branch(self, index: int, choice: GameChoice) -> Optional[SceneData]:
        self.events.emit(ChoiceSelectEvent(index=index, text=choice.text))
        token = self._next_token()
        self.loading = True
        self._sync_auto_play()
        previous_choices = self.queue.choices

        batch = self.cache.get_branch(self.script_id, choice.text)
        if batch is not None:
            logger.info(f"Using cached branch {choice.text[:15]!r}")
        else:
            logger.info(f"Generating branch for {choice.text[:15]!r} ({choice.sentiment.value})")
            self.events.emit(GenerationStartEvent(kind="branch", script_id=self.script_id, choice_text=choice.text))
            try:
                batch = as_batch(await self.backend.generate_branch(choice.text, choice.sentiment))
            except Exception as e:
                if self._is_stale(token, "branch"):
                    return None
                self._present_choices(previous_choices)
                self._fail(
                    "branch", "加载下一幕失败。", e,
                    lambda: self._retry_branch(index, previous_choices),
                )
                return None
            if self._is_stale(token, "branch"):
                return None
            batch = clean_batch(batch)
            self.cache.put_branch(self.script_id, choice.text, batch)

        return self._play_branch(batch)

    async def _retry_branch(self, index: int, choices: Tuple[GameChoice, ...]) -> Optional[SceneData]:
        if not self.show_choices:
            self._present_choices(choices)
        return await self.select_choice(index)

    def _play_branch(self, batch: BatchSceneData) -> Optional[SceneData]:
        self.loading = False
        self._apply_affection(batch.affection_change)
        scene = self.queue.load(batch)
        if scene is not None:
            logger.info(f"Branch loaded: {len(batch.dialogue_sequence)} lines")
            self.turn += 1
            return self._show(scene)
        if batch.is_game_over:
            game_over = SceneData(
                narrative=batch.narrative or GAME_OVER_NARRATIVE,
                speaker=NARRATOR,
                dialogue=THANKS_LINE,
                expression=Expression.NEUTRAL,
                background=self.queue.background,
                bgm=BgmMood.SAD,
                affection_change=batch.affection_change,
                is_game_over=True,
            )
            return self._finish_with(game_over)
        self._present_choices(batch.choices)
        if not self.show_choices:
            return self._complete_story()
        return None

    def _complete_story(self) -> SceneData:
        """所有章节完成: synthesize the closing scene."""
        background = self.current_scene.background if self.current_scene else SceneData().background
        closing = SceneData(
            narrative=CLOSING_NARRATIVE,
            speaker=NARRATOR,
            dialogue=THANKS_LINE,
            expression=Expression.NEUTRAL,
            background=background,
            bgm=BgmMood.ROMANTIC,
            is_game_over=True,
        )
        return self._finish_with(closing)

    def _finish_with(self, scene: SceneData) -> SceneData:
        self.completed = True
        self.show_choices = False
        self.choices = ()
        logger.info(f"Story {self.script_id} complete (affection {self.affection}, turns {self.turn})")
        self._show(scene)
        self.events.emit(StoryCompleteEvent(script_id=self.script_id, affection=self.affection, turns=self.turn))
        return scene

    # --- pause / typing / voice / auto play ---

    def pause(self, reason: str = "manual") -> None:
        if self.paused:
            return
        self.paused = True
        self.events.emit(GamePauseEvent(reason=reason))
        self._sync_auto_play()

    def resume(self) -> None:
        if not self.paused:
            return
        self.paused = False
        self.events.emit(GameResumeEvent())
        self._sync_auto_play()

    def toggle_pause(self) -> bool:
        if self.paused:
            self.resume()
        else:
            self.pause()
        return self.paused

    def set_typing(self, typing: bool) -> None:
        self.typing = bool(typing)
        self._sync_auto_play()

    def toggle_voice(self) -> bool:
        self.voice_enabled = not self.voice_enabled
        self._sync_auto_play()
        return self.voice_enabled

    def toggle_auto_play(self) -> bool:
        enabled = self.auto_play.toggle()
        self._sync_auto_play()
        return enabled

    def _auto_conditions(self) -> AutoPlayConditions:
        return AutoPlayConditions(
            typing=self.typing,
            loading=self.loading,
            choices_visible=self.show_choices,
            paused=self.paused,
            game_over=self.is_game_over or not self.started,
        )

    def _sync_auto_play(self) -> None:
        if not self.auto_play.enabled:
            return
        text = self.current_scene.display_text if self.current_scene else ""
        self.auto_play.sync(text, self.voice_enabled)

    def _auto_advance(self) -> None:
        self.advance()

    # --- voice ---

    def _narrate(self, scene: SceneData) -> None:
        if not self.voice_enabled or not scene.dialogue:
            return
        if not self.character_name or scene.speaker != self.character_name:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running loop; voice skipped")
            return
        self._voice_task = loop.create_task(self._speak(scene.dialogue))

    async def _speak(self, text: str) -> None:
        try:
            clip = await self.voice.synthesize_speech(text)
            if clip and self.audio is not None:
                self.audio.play_voice(clip)
        except Exception as e:
            logger.error(f"Voice playback error: {e}")

    async def wait_voice(self) -> None:
        """Wait for the pending voice line, if any."""
        task = self._voice_task
        if task is not None and not task.done():
            await task

    # =========================================
    # Save / Load
    # =========================================

    def snapshot(self) -> Optional[SaveData]:
        """Capture the current position as an (unsaved) ``SaveData``."""
        if not self.started or self.current_scene is None or self.playback is None:
            return None
        chapter_index, dialogue_index = self.playback.position
        scene = self.current_scene
        if self.script is not None:
            title = self.script.title
        elif self.template is not None:
            title = self.template.name
        else:
            title = self.script_id
        return SaveData(
            script_id=self.script_id,
            script_title=title,
            chapter_index=chapter_index,
            dialogue_index=dialogue_index,
            affection=self.affection,
            turns_played=self.turn,
            character_name=self.character_name,
            current_expression=scene.expression,
            current_background=scene.background,
            current_bgm=scene.bgm,
            preview_text=scene.display_text[:PREVIEW_LENGTH],
            mode=self.playback.mode,
            batch=self.queue.batch if self.playback.mode is PlaybackMode.GENERATED else None,
        )

    def save(self, slot: int, *, is_quicksave: bool = False) -> Optional[SaveData]:
        data = self.snapshot()
        if data is None:
            logger.warning("Nothing to save")
            return None
        return self.saves.save(self.script_id, slot, data, is_quicksave=is_quicksave)

    def load(self, script_id: str, slot: int) -> Optional[SceneData]:
        """Restore a saved position; None when the slot is empty or unusable."""
        data = self.saves.load(script_id, slot)
        if data is None:
            return None
        return self.restore(data)

    def continue_latest(self) -> Optional[SceneData]:
        data = self.saves.latest()
        if data is None:
            return None
        return self.load(data.script_id, data.slot_index)

    def restore(self, data: SaveData) -> Optional[SceneData]:
        if data.mode is PlaybackMode.SCRIPT:
            try:
                script = self.library.require_script(data.script_id)
            except ScriptLoadError as e:
                logger.error(f"Cannot restore save {data.id}: {e}")
                self.error = f"剧本加载失败: {e.message}"
                return None
            player = ScriptPlaybackController()
            try:
                player.start(script, data.chapter_index, data.dialogue_index)
            except ValueError as e:
                logger.warning(f"Save {data.id} points outside the script: {e}")
                self.error = "存档已损坏"
                return None
            playback: IPlayback = player
        else:
            if data.batch is None or not data.batch.dialogue_sequence:
                logger.warning(f"Save {data.id} has no act data")
                self.error = "存档已损坏"
                return None
            queue = DialogueQueueController()
            queue.load(data.batch)
            if 0 <= data.dialogue_index < queue.length:
                queue.seek(data.dialogue_index)
            playback = queue

        self._next_token()
        self.auto_play.cancel()
        self._reset_state()
        self.script_id = data.script_id
        self.template = get_preset(data.script_id)
        self.affection = clamp_affection(data.affection)
        self.turn = data.turns_played
        if isinstance(playback, ScriptPlaybackController):
            self.script = playback.script
            self.player = playback
            self.queue.reset()
        else:
            assert isinstance(playback, DialogueQueueController)
            self.queue = playback
            self.player.reset()
        scene = playback.current_scene()
        assert scene is not None
        logger.info(f"Loaded save {data.id}")
        self._begin(playback, scene, from_load=True)
        self._check_last_line()
        return scene

    # =========================================
    # History
    # =========================================

    def jump_to_history(self, index: int) -> Optional[SceneData]:
        """Resume script playback at history entry ``index`` (raises ``RollbackError``)."""
        scene = self.history.jump_to(index, self.playback)
        if scene is None:
            return None
        self.show_choices = False
        self.choices = ()
        self._show(scene, record=False)
        self._check_last_line()
        return scene

    # =========================================
    # Misc
    # =========================================

    def return_to_title(self) -> None:
        self._next_token()
        self.auto_play.cancel()
        self.queue.reset()
        self.player.reset()
        self.history.clear()
        self.backend.reset()
        self._reset_state()
        self.events.emit(ReturnToTitleEvent())

    async def generate_plot(self, prompt: str) -> str:
        """生成剧情框架"""
        try:
            return await self.backend.generate_plot_outline(prompt)
        except Exception as e:
            logger.error(f"Plot outline generation failed: {e}", exc_info=True)
            raise GenerationError("剧情框架生成失败", context=str(e)) from e

    def finish(self) -> Optional[GameRecord]:
        """保存通关记录 (once per playthrough)."""
        if not self.started or not self.script_id:
            return None
        if self._recorded is not None:
            return self._recorded
        cfg = self.config["affection"]
        ending_type = determine_ending_type(self.affection, cfg["good_threshold"], cfg["normal_threshold"])
        if self.template is not None:
            name = self.template.name
        elif self.script is not None:
            name = self.script.title
        else:
            name = self.script_id
        self._recorded = self.records.save_record(
            script_id=self.script_id,
            script_name=name,
            character_name=self.character_name,
            ending_type=ending_type,
            final_affection=self.affection,
            turns_played=self.turn,
        )
        return self._recorded

    # --- preloading ---

    async def preload(self, template: ScriptTemplate, on_progress: Optional[ProgressCallback] = None) -> PreloadResult:
        return await self.preloader.preload(template, on_progress)

    def schedule_preload(self) -> asyncio.Task:
        """Pre-warm the first preset a fixed delay after session start."""
        return self.preloader.schedule_first_script(PRESET_TEMPLATES)

    def shutdown(self) -> None:
        self.auto_play.cancel()
        self.preloader.shutdown()
        if self._voice_task is not None and not self._voice_task.done():
            self._voice_task.cancel()
