"""Tests for the two-act preload orchestrator."""
import asyncio

import pytest

from conftest import GatedBackend, RecordingSleep, make_batch, make_template
from galvn.engine.adapters.generation import StaticGenerationBackend
from galvn.engine.branch_cache import BranchCacheStore
from galvn.engine.events import PreloadCompleteEvent, PreloadProgressEvent
from galvn.engine.preloader import PreloadOrchestrator


def make_preloader(backend, store, clock, events=None, sleep=None):
    cache = BranchCacheStore(store, clock=clock)
    sleep = sleep or RecordingSleep()
    return PreloadOrchestrator(backend, cache, events, sleep=sleep), cache, sleep


class TestPreload:

    def test_caches_act_and_every_branch(self, store, clock):
        async def scenario():
            backend = GatedBackend(make_batch(3, choices=("x", "y", "z")))
            backend.release()
            preloader, cache, sleep = make_preloader(backend, store, clock)
            result = await preloader.preload(make_template())
            return backend, cache, sleep, result

        backend, cache, sleep, result = asyncio.run(scenario())
        assert result.status == "completed"
        assert result.cached_branches == ["x", "y", "z"]
        assert cache.is_fully_cached("preset_tsundere")
        assert backend.calls == [
            ("initial", "preset_tsundere"), ("branch", "x"), ("branch", "y"), ("branch", "z"),
        ]
        # one pause between consecutive branches, none after the last
        assert sleep.delays == [0.8, 0.8]

    def test_second_job_rejected_while_running(self, store, clock):
        async def scenario():
            backend = GatedBackend(make_batch(2))
            preloader, cache, _ = make_preloader(backend, store, clock)
            first = asyncio.ensure_future(preloader.preload(make_template()))
            await asyncio.sleep(0)
            assert preloader.is_running
            second = await preloader.preload(make_template())
            calls_while_running = list(backend.calls)
            backend.release()
            done = await first
            third = await preloader.preload(make_template())
            return second, calls_while_running, done, third, preloader

        second, calls, done, third, preloader = asyncio.run(scenario())
        assert second.status == "already_running"
        assert not second.ran
        assert calls == [("initial", "preset_tsundere")]
        assert done.status == "completed"
        assert third.status == "completed"
        assert third.skipped_branches == ["x", "y"]
        assert not preloader.is_running
        assert preloader.get_stats()["rejected"] == 1

    def test_failed_branch_is_skipped(self, store, clock):
        async def scenario():
            backend = GatedBackend(make_batch(2, choices=("x", "y")), fail={"x"})
            backend.release()
            preloader, cache, _ = make_preloader(backend, store, clock)
            return await preloader.preload(make_template()), cache

        result, cache = asyncio.run(scenario())
        assert result.status == "partial"
        assert result.failed_branches == ["x"]
        assert result.cached_branches == ["y"]
        assert not cache.has_branch("preset_tsundere", "x")
        assert cache.has_branch("preset_tsundere", "y")

    def test_act_one_failure(self, store, clock, events):
        completed = []
        events.subscribe(PreloadCompleteEvent, completed.append)
        backend = StaticGenerationBackend(initial=None)
        preloader, cache, _ = make_preloader(backend, store, clock, events)

        result = asyncio.run(preloader.preload(make_template()))
        assert result.status == "failed"
        assert result.error
        assert not preloader.is_running
        assert cache.get("preset_tsundere") is None
        assert [e.status for e in completed] == ["failed"]

    def test_progress_is_monotonic(self, store, clock, events):
        reported = []
        emitted = []
        events.subscribe(PreloadProgressEvent, lambda e: emitted.append(e.percent))
        backend = StaticGenerationBackend(
            initial=make_batch(2, choices=("x", "y")),
            branches={"x": make_batch(1), "y": make_batch(1)},
        )
        preloader, _, _ = make_preloader(backend, store, clock, events)

        asyncio.run(preloader.preload(make_template(), on_progress=lambda s, p: reported.append(p)))
        assert reported[0] == 10
        assert reported[-1] == 100
        assert reported == sorted(reported)
        assert 67.5 in reported
        assert emitted == reported

    def test_act_without_choices(self, store, clock):
        backend = StaticGenerationBackend(initial=make_batch(2, choices=()))
        preloader, _, _ = make_preloader(backend, store, clock)
        progress = []
        result = asyncio.run(preloader.preload(make_template(), on_progress=lambda s, p: progress.append(p)))
        assert result.status == "completed"
        assert progress[-1] == 100
        assert backend.calls == [("initial", "preset_tsundere")]

    def test_uses_cached_act(self, store, clock):
        backend = StaticGenerationBackend(initial=make_batch(), branches={"x": make_batch(), "y": make_batch()})
        preloader, cache, _ = make_preloader(backend, store, clock)
        cache.put("preset_tsundere", make_batch())
        asyncio.run(preloader.preload(make_template()))
        assert ("initial", "preset_tsundere") not in backend.calls


class TestFirstScript:

    def test_skipped_when_fully_cached(self, store, clock):
        backend = StaticGenerationBackend(initial=make_batch())
        preloader, cache, _ = make_preloader(backend, store, clock)
        cache.put("preset_tsundere", make_batch(choices=("x",)))
        cache.put_branch("preset_tsundere", "x", make_batch())
        result = asyncio.run(preloader.preload_first_script([make_template()]))
        assert result.status == "skipped"
        assert backend.calls == []

    def test_skipped_when_preset_missing(self, store, clock):
        preloader, _, _ = make_preloader(StaticGenerationBackend(), store, clock)
        result = asyncio.run(preloader.preload_first_script([make_template("other")]))
        assert result.status == "skipped"

    def test_uses_longer_branch_delay(self, store, clock):
        backend = StaticGenerationBackend(
            initial=make_batch(choices=("x", "y")), branches={"x": make_batch(), "y": make_batch()},
        )
        preloader, _, sleep = make_preloader(backend, store, clock)
        result = asyncio.run(preloader.preload_first_script([make_template("other"), make_template()]))
        assert result.status == "completed"
        assert sleep.delays == [1.0]

    def test_scheduled_after_delay(self, store, clock):
        async def scenario():
            backend = StaticGenerationBackend(
                initial=make_batch(choices=("x",)), branches={"x": make_batch()},
            )
            preloader, cache, sleep = make_preloader(backend, store, clock)
            task = preloader.schedule_first_script([make_template()])
            result = await task
            return result, sleep, cache

        result, sleep, cache = asyncio.run(scenario())
        assert sleep.delays[0] == 10.0
        assert result.status == "completed"
        assert cache.is_fully_cached("preset_tsundere")

    def test_shutdown_cancels_scheduled_job(self, store, clock):
        async def scenario():
            backend = StaticGenerationBackend(initial=make_batch())
            preloader, _, _ = make_preloader(backend, store, clock, sleep=asyncio.sleep)
            task = preloader.schedule_first_script([make_template()], delay=60)
            await asyncio.sleep(0)
            preloader.shutdown()
            with pytest.raises(asyncio.CancelledError):
                await task
            return backend

        backend = asyncio.run(scenario())
        assert backend.calls == []
