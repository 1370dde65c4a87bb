"""
Branch Cache - 生成剧情缓存

Durable memoization of generated acts, keyed by script id, and of branches,
keyed by ``(script id, choice text)``. Two storage keys hold JSON lists of
cache records. An entry counts only while its version matches and it is
younger than the TTL; this is re-checked on every read, so an entry that
expires mid-session disappears without a reload. Every read passes through
``clean_batch``.
"""
from __future__ import annotations

import logging
import time
from typing import Callable, Dict, Iterable, List, Optional

from ..story.model import BatchSceneData, CachedBatchData, CachedBranchData, branch_key
from ..story.text_cleaner import clean_batch
from .adapters.storage import KeyValueStore
from .config_io import DEFAULTS
from .events import CacheClearEvent, EventSystem

logger = logging.getLogger(__name__)

DIALOGUE_CACHE_KEY = "ai_novel_batch_cache"
BRANCH_CACHE_KEY = "ai_novel_branch_cache"
CACHE_VERSION: str = DEFAULTS["cache"]["version"]
CACHE_TTL_MS: int = DEFAULTS["cache"]["ttl_days"] * 24 * 60 * 60 * 1000

PRESET_SCRIPT_IDS = ("preset_tsundere", "preset_princess", "preset_courtesan")


def now_ms() -> int:
    return int(time.time() * 1000)


class BranchCacheStore:
    """
    生成内容缓存

    Usage:
        cache = BranchCacheStore(store)
        batch = cache.get("preset_tsundere")
        if batch is None:
            batch = await backend.generate_initial_batch(ctx)
            cache.put("preset_tsundere", batch)
    """

    def __init__(
        self,
        store: KeyValueStore,
        *,
        version: str = CACHE_VERSION,
        ttl_ms: int = CACHE_TTL_MS,
        clock: Callable[[], int] = now_ms,
        events: Optional[EventSystem] = None,
    ):
        self._store = store
        self._version = version
        self._ttl_ms = ttl_ms
        self._clock = clock
        self._events = events
        self._acts: Dict[str, CachedBatchData] = {}
        self._branches: Dict[str, CachedBranchData] = {}
        self._load()

    @property
    def version(self) -> str:
        return self._version

    # =========================================
    # Persistence
    # =========================================

    def _load(self) -> None:
        self._acts.clear()
        self._branches.clear()
        for raw in self._read_list(DIALOGUE_CACHE_KEY):
            try:
                item = CachedBatchData.from_dict(raw)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Dropping corrupt act cache entry: {e}")
                continue
            if self._valid(item):
                self._acts[item.script_id] = item
        for raw in self._read_list(BRANCH_CACHE_KEY):
            try:
                branch = CachedBranchData.from_dict(raw)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Dropping corrupt branch cache entry: {e}")
                continue
            if self._valid(branch):
                self._branches[branch.key] = branch
        logger.debug(f"Cache loaded: {len(self._acts)} acts, {len(self._branches)} branches")

    def _read_list(self, key: str) -> List[dict]:
        data = self._store.get_json(key, [])
        if not isinstance(data, list):
            logger.warning(f"Cache key {key} is not a list; treating as empty")
            return []
        return [d for d in data if isinstance(d, dict)]

    def _flush(self) -> None:
        ok = self._store.set_json(DIALOGUE_CACHE_KEY, [c.to_dict() for c in self._acts.values()])
        ok = self._store.set_json(BRANCH_CACHE_KEY, [c.to_dict() for c in self._branches.values()]) and ok
        if not ok:
            logger.warning("Failed to persist generation cache")

    def reload(self) -> None:
        """Re-read durable storage, discarding in-memory state."""
        self._load()

    def _valid(self, entry) -> bool:
        return entry.is_valid(self._clock(), self._version, self._ttl_ms)

    # =========================================
    # Acts
    # =========================================

    def _live_act(self, script_id: str) -> Optional[CachedBatchData]:
        entry = self._acts.get(script_id)
        if entry is None:
            return None
        if not self._valid(entry):
            logger.debug(f"Act cache for {script_id} expired")
            return None
        return entry

    def get(self, script_id: str) -> Optional[BatchSceneData]:
        entry = self._live_act(script_id)
        return clean_batch(entry.batch) if entry else None

    def has(self, script_id: str) -> bool:
        return self._live_act(script_id) is not None

    def put(self, script_id: str, batch: BatchSceneData, *, only_if_absent: bool = False) -> bool:
        """Cache an act; the most recent write wins unless ``only_if_absent``.

        Returns False when nothing was written.
        """
        if only_if_absent and self.has(script_id):
            return False
        self._acts[script_id] = CachedBatchData(
            script_id=script_id,
            batch=clean_batch(batch),
            generated_at=self._clock(),
            version=self._version,
        )
        self._flush()
        logger.info(f"Cached act for {script_id} ({len(batch.dialogue_sequence)} lines)")
        return True

    # =========================================
    # Branches
    # =========================================

    def _live_branch(self, script_id: str, choice_text: str) -> Optional[CachedBranchData]:
        entry = self._branches.get(branch_key(script_id, choice_text))
        if entry is None or not self._valid(entry):
            return None
        return entry

    def get_branch(self, script_id: str, choice_text: str) -> Optional[BatchSceneData]:
        entry = self._live_branch(script_id, choice_text)
        return clean_batch(entry.batch) if entry else None

    def has_branch(self, script_id: str, choice_text: str) -> bool:
        return self._live_branch(script_id, choice_text) is not None

    def put_branch(self, script_id: str, choice_text: str, batch: BatchSceneData) -> None:
        entry = CachedBranchData(
            script_id=script_id,
            choice_text=choice_text,
            batch=clean_batch(batch),
            generated_at=self._clock(),
            version=self._version,
        )
        self._branches[entry.key] = entry
        self._flush()
        logger.info(f"Cached branch {entry.key!r} ({len(batch.dialogue_sequence)} lines)")

    # =========================================
    # Queries
    # =========================================

    def is_fully_cached(self, script_id: str) -> bool:
        """True iff the act and a branch for every one of its choices are cached."""
        act = self.get(script_id)
        if act is None:
            return False
        return all(self.has_branch(script_id, c.text) for c in act.choices)

    def missing_branches(self, script_id: str) -> List[str]:
        act = self.get(script_id)
        if act is None:
            return []
        return [c.text for c in act.choices if not self.has_branch(script_id, c.text)]

    def invalidate_all(self) -> None:
        """清空所有缓存"""
        self._acts.clear()
        self._branches.clear()
        self._store.remove(DIALOGUE_CACHE_KEY)
        self._store.remove(BRANCH_CACHE_KEY)
        logger.info("All generation caches cleared")
        if self._events is not None:
            self._events.emit(CacheClearEvent())

    def stats(self, preset_ids: Iterable[str] = PRESET_SCRIPT_IDS) -> Dict[str, int]:
        presets = list(preset_ids)
        acts = [sid for sid in self._acts if self.has(sid)]
        branches = [k for k, b in self._branches.items() if self._valid(b)]
        return {
            "total": len(presets),
            "cached": len(acts),
            "preset_cached": sum(1 for sid in presets if sid in acts),
            "branches": len(branches),
            "fully_cached": sum(1 for sid in acts if self.is_fully_cached(sid)),
        }
