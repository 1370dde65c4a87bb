"""
Preload Orchestrator - 剧情预加载

Features:
- 两幕预加载 (initial act + a branch for every choice)
- 单任务保护 (at most one job at a time)
- 加载进度追踪 (monotonic percentages)
- 首个预设剧本延时预热

Branches are generated strictly one after another with a fixed delay in
between, so a job never bursts the generation backend. A failed branch is
logged and skipped; the job keeps going.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from ..story.model import BatchSceneData, ScriptTemplate
from .adapters.generation import GenerationBackend, as_batch
from .branch_cache import BranchCacheStore
from .config_io import DEFAULTS
from .events import EventSystem, PreloadCompleteEvent, PreloadProgressEvent

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str, float], None]
Sleep = Callable[[float], Awaitable[Any]]

STATUS_ALREADY_RUNNING = "already_running"
STATUS_COMPLETED = "completed"
STATUS_PARTIAL = "partial"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"


@dataclass
class PreloadResult:
    """Outcome of one preload job."""
    status: str
    script_id: str = ""
    cached_branches: List[str] = field(default_factory=list)
    skipped_branches: List[str] = field(default_factory=list)
    failed_branches: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ran(self) -> bool:
        return self.status in (STATUS_COMPLETED, STATUS_PARTIAL, STATUS_FAILED)


class PreloadOrchestrator:
    """
    剧情预加载器。

    Usage:
        preloader = PreloadOrchestrator(backend, cache, events)

        result = await preloader.preload(template, on_progress=print)
        if result.status == "already_running":
            ...

        # 后台预热第一个预设剧本
        preloader.schedule_first_script(PRESET_TEMPLATES)
        ...
        preloader.shutdown()
    """

    def __init__(
        self,
        backend: GenerationBackend,
        cache: BranchCacheStore,
        events: Optional[EventSystem] = None,
        *,
        branch_delay: float = DEFAULTS["preload"]["branch_delay_s"],
        first_script_branch_delay: float = DEFAULTS["preload"]["first_script_branch_delay_s"],
        first_script_delay: float = DEFAULTS["preload"]["first_script_delay_s"],
        first_preset_id: str = DEFAULTS["preload"]["first_preset_id"],
        sleep: Sleep = asyncio.sleep,
    ):
        self._backend = backend
        self._cache = cache
        self._events = events
        self._branch_delay = branch_delay
        self._first_script_branch_delay = first_script_branch_delay
        self._first_script_delay = first_script_delay
        self._first_preset_id = first_preset_id
        self._sleep = sleep

        self._running = False
        self._progress = 0.0
        self._scheduled: Optional[asyncio.Task] = None

        # 统计
        self._runs = 0
        self._rejected = 0
        self._branches_generated = 0
        self._branches_failed = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def progress(self) -> float:
        return self._progress

    # =========================================
    # Jobs
    # =========================================

    async def preload(self, script: ScriptTemplate, on_progress: Optional[ProgressCallback] = None) -> PreloadResult:
        """预加载指定剧本的前两幕"""
        return await self._run(script, on_progress, self._branch_delay)

    async def preload_first_script(self, scripts: Iterable[ScriptTemplate]) -> PreloadResult:
        """预加载第一个预设剧本的前两幕; no-op when it is already fully cached."""
        first = next((s for s in scripts if s.id == self._first_preset_id), None)
        if first is None:
            logger.info(f"First preset {self._first_preset_id} not found; nothing to pre-warm")
            return PreloadResult(status=STATUS_SKIPPED, script_id=self._first_preset_id)
        if self._cache.is_fully_cached(first.id):
            logger.info(f"First preset {first.id} already fully cached")
            return PreloadResult(status=STATUS_SKIPPED, script_id=first.id)
        return await self._run(first, None, self._first_script_branch_delay)

    def schedule_first_script(self, scripts: Iterable[ScriptTemplate], delay: Optional[float] = None) -> asyncio.Task:
        """Start ``preload_first_script`` after a delay, as a background task.

        Must be called from inside a running event loop.
        """
        wait = self._first_script_delay if delay is None else delay
        templates = list(scripts)

        async def delayed() -> PreloadResult:
            await self._sleep(wait)
            try:
                return await self.preload_first_script(templates)
            except Exception as e:
                logger.error(f"Background preload failed: {e}", exc_info=True)
                return PreloadResult(status=STATUS_FAILED, error=str(e))

        logger.info(f"Background preload starts in {wait:g}s")
        self._scheduled = asyncio.get_running_loop().create_task(delayed())
        return self._scheduled

    def shutdown(self) -> None:
        """Cancel a scheduled (not yet finished) background preload."""
        if self._scheduled is not None and not self._scheduled.done():
            self._scheduled.cancel()
        self._scheduled = None

    # =========================================
    # Internals
    # =========================================

    async def _run(self, script: ScriptTemplate, on_progress: Optional[ProgressCallback], delay: float) -> PreloadResult:
        if self._running:
            self._rejected += 1
            logger.info(f"Preload already in progress; skipping {script.id}")
            return PreloadResult(status=STATUS_ALREADY_RUNNING, script_id=script.id)

        # guard is set before the first await and released in finally
        self._running = True
        self._progress = 0.0
        self._runs += 1
        result = PreloadResult(status=STATUS_COMPLETED, script_id=script.id)
        try:
            self._report(script.id, on_progress, "正在生成第一幕对话...", 10)
            try:
                act = await self._first_act(script)
            except Exception as e:
                logger.error(f"Preload of {script.id} failed on act one: {e}", exc_info=True)
                result.status = STATUS_FAILED
                result.error = str(e)
                self._report(script.id, on_progress, "预加载失败", self._progress)
                return result
            self._report(script.id, on_progress, "第一幕完成", 40)

            if not act.choices:
                logger.warning(f"Act one of {script.id} has no choices; nothing to branch")
                self._report(script.id, on_progress, "预加载完成（无分支）", 100)
                return result

            total = len(act.choices)
            for i, choice in enumerate(act.choices):
                self._report(script.id, on_progress, f"正在预加载分支 {i + 1}/{total}...", 40 + (i / total) * 55)
                if self._cache.has_branch(script.id, choice.text):
                    result.skipped_branches.append(choice.text)
                    continue
                try:
                    logger.debug(f"Preloading branch {i + 1}/{total}: {choice.text[:15]!r}")
                    branch = as_batch(await self._backend.generate_branch(choice.text, choice.sentiment))
                    self._cache.put_branch(script.id, choice.text, branch)
                    result.cached_branches.append(choice.text)
                    self._branches_generated += 1
                    if i < total - 1:
                        await self._sleep(delay)
                except Exception as e:
                    logger.warning(f"Branch {i + 1}/{total} of {script.id} failed, skipped: {e}")
                    result.failed_branches.append(choice.text)
                    self._branches_failed += 1

            if result.failed_branches:
                result.status = STATUS_PARTIAL
            self._report(script.id, on_progress, "预加载完成！", 100)
            logger.info(
                f"Preload of {script.id} {result.status}: "
                f"{len(result.cached_branches)} generated, {len(result.skipped_branches)} cached, "
                f"{len(result.failed_branches)} failed"
            )
            return result
        finally:
            self._running = False
            if self._events is not None:
                self._events.emit(PreloadCompleteEvent(
                    script_id=script.id,
                    status=result.status,
                    cached_branches=len(result.cached_branches),
                    failed_branches=len(result.failed_branches),
                ))

    async def _first_act(self, script: ScriptTemplate) -> BatchSceneData:
        cached = self._cache.get(script.id)
        if cached is not None:
            return cached
        batch = as_batch(await self._backend.generate_initial_batch(script.generation_context()))
        self._cache.put(script.id, batch)
        # read back so branch keys use the cleaned choice text
        return self._cache.get(script.id) or batch

    def _report(self, script_id: str, on_progress: Optional[ProgressCallback], status: str, percent: float) -> None:
        # reported percentages never decrease within one job
        self._progress = max(self._progress, float(percent))
        if on_progress is not None:
            try:
                on_progress(status, self._progress)
            except Exception as e:
                logger.warning(f"Preload progress callback error: {e}")
        if self._events is not None:
            self._events.emit(PreloadProgressEvent(script_id=script_id, status=status, percent=self._progress))

    def get_stats(self) -> Dict[str, Any]:
        """获取统计信息"""
        return {
            "runs": self._runs,
            "rejected": self._rejected,
            "running": self._running,
            "branches_generated": self._branches_generated,
            "branches_failed": self._branches_failed,
        }
