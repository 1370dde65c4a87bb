"""
Save/Load Manager - 存档管理

Slots are per script (``0..max_slots-1``). Storage layout:

- ``ai_novel_save_<scriptId>_<slot>``: the full ``SaveData``
- ``ai_novel_save_index``: per-script slot summary + last played slot
- ``ai_novel_last_played``: global most-recently-played pointer

Event chain for every slot operation: cancellable request event, the write,
then a completion event.
"""
from __future__ import annotations

import logging
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, List, Optional

from ..story.model import SaveData, SaveSlot, ScriptSaveInfo
from .adapters.storage import KeyValueStore
from .branch_cache import now_ms
from .config_io import DEFAULTS
from .events import (
    EventSystem, LoadCompleteEvent, LoadEvent, SaveCompleteEvent, SaveEvent,
    SlotDeleteCompleteEvent, SlotDeleteEvent,
)

logger = logging.getLogger(__name__)

SAVE_KEY_PREFIX = "ai_novel_save_"
SAVE_INDEX_KEY = "ai_novel_save_index"
LAST_PLAYED_KEY = "ai_novel_last_played"
MAX_SLOTS: int = DEFAULTS["saves"]["max_slots"]


def save_key(script_id: str, slot: int) -> str:
    return f"{SAVE_KEY_PREFIX}{script_id}_{slot}"


def format_save_time(timestamp_ms: int) -> str:
    """格式化存档时间 (local time, ``YYYY/MM/DD HH:MM``)"""
    return datetime.fromtimestamp(timestamp_ms / 1000).strftime("%Y/%m/%d %H:%M")


class SaveManager:
    """
    存档管理器

    负责:
    - 槽位读写和索引维护
    - 事件触发 (SaveEvent / LoadEvent / SlotDeleteEvent)
    - "继续游戏" 所需的最近存档查询
    """

    def __init__(
        self,
        store: KeyValueStore,
        events: Optional[EventSystem] = None,
        *,
        max_slots: int = MAX_SLOTS,
        clock: Callable[[], int] = now_ms,
    ):
        self._store = store
        self._events = events if events is not None else EventSystem()
        self._max_slots = max_slots
        self._clock = clock

    @property
    def max_slots(self) -> int:
        return self._max_slots

    def _check_slot(self, slot: int) -> None:
        if not isinstance(slot, int) or slot < 0 or slot >= self._max_slots:
            raise ValueError(f"Invalid slot index: {slot}")

    # =========================================
    # Index
    # =========================================

    def _read_index(self) -> Dict[str, ScriptSaveInfo]:
        raw = self._store.get_json(SAVE_INDEX_KEY, {})
        if not isinstance(raw, dict):
            logger.warning("Save index is malformed; treating as empty")
            return {}
        index: Dict[str, ScriptSaveInfo] = {}
        for script_id, info in raw.items():
            try:
                index[script_id] = ScriptSaveInfo.from_dict(info)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Dropping corrupt save index entry {script_id!r}: {e}")
        return index

    def _write_index(self, index: Dict[str, ScriptSaveInfo]) -> bool:
        return self._store.set_json(SAVE_INDEX_KEY, {k: v.to_dict() for k, v in index.items()})

    def _empty_info(self, script_id: str) -> ScriptSaveInfo:
        return ScriptSaveInfo(
            script_id=script_id,
            slots=[SaveSlot(slot_index=i) for i in range(self._max_slots)],
        )

    def _normalized(self, info: ScriptSaveInfo) -> ScriptSaveInfo:
        by_index = {s.slot_index: s for s in info.slots}
        info.slots = [by_index.get(i) or SaveSlot(slot_index=i) for i in range(self._max_slots)]
        return info

    def script_saves(self, script_id: str) -> ScriptSaveInfo:
        """获取指定剧本的存档信息 (always ``max_slots`` slots)"""
        info = self._read_index().get(script_id)
        if info is None:
            return self._empty_info(script_id)
        return self._normalized(info)

    def saved_scripts(self) -> List[str]:
        """获取所有有存档的剧本列表"""
        return [
            sid for sid, info in self._read_index().items()
            if any(not s.is_empty for s in info.slots)
        ]

    # =========================================
    # Slot Operations
    # =========================================

    def save(self, script_id: str, slot: int, snapshot: SaveData, *, is_quicksave: bool = False) -> Optional[SaveData]:
        """
        保存到指定槽位

        Returns the stored ``SaveData`` (with ``timestamp`` stamped), or None
        when a listener cancelled the save or the write failed.
        """
        self._check_slot(slot)
        event = self._events.emit(SaveEvent(script_id=script_id, slot=slot, is_quicksave=is_quicksave))
        if event.cancelled:
            logger.debug(f"Save to {script_id}/{slot} cancelled by event handler")
            return None

        data = replace(snapshot, script_id=script_id, slot_index=slot, timestamp=self._clock())
        success = self._store.set_json(save_key(script_id, slot), data.to_dict())
        if success:
            index = self._read_index()
            info = self._normalized(index.get(script_id) or self._empty_info(script_id))
            # the index holds a summary; the act itself lives only under the slot key
            info.slots[slot] = SaveSlot(slot_index=slot, save_data=replace(data, batch=None))
            info.last_played_slot = slot
            index[script_id] = info
            success = self._write_index(index)
            self._store.set_json(LAST_PLAYED_KEY, {"scriptId": script_id, "slotIndex": slot})

        self._events.emit(SaveCompleteEvent(script_id=script_id, slot=slot, success=success))
        if not success:
            logger.warning(f"Failed to write save {data.id}")
            return None
        logger.info(f"Saved {data.id} (chapter {data.chapter_index}, line {data.dialogue_index})")
        return data

    def load(self, script_id: str, slot: int) -> Optional[SaveData]:
        """从指定槽位读取; absent or corrupt slots yield None."""
        self._check_slot(slot)
        event = self._events.emit(LoadEvent(script_id=script_id, slot=slot))
        if event.cancelled:
            logger.debug(f"Load from {script_id}/{slot} cancelled by event handler")
            return None

        data: Optional[SaveData] = None
        raw = self._store.get_json(save_key(script_id, slot))
        if isinstance(raw, dict):
            try:
                data = SaveData.from_dict(raw)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Corrupt save {script_id}/{slot} treated as empty: {e}")
        elif raw is not None:
            logger.warning(f"Corrupt save {script_id}/{slot} treated as empty")

        self._events.emit(LoadCompleteEvent(script_id=script_id, slot=slot, success=data is not None))
        return data

    def delete(self, script_id: str, slot: int) -> bool:
        """删除指定槽位 (idempotent)"""
        self._check_slot(slot)
        event = self._events.emit(SlotDeleteEvent(script_id=script_id, slot=slot))
        if event.cancelled:
            logger.debug(f"Delete {script_id}/{slot} cancelled by event handler")
            return False

        success = self._store.remove(save_key(script_id, slot))
        index = self._read_index()
        info = index.get(script_id)
        if info is not None:
            info = self._normalized(info)
            info.slots[slot] = SaveSlot(slot_index=slot)
            if info.last_played_slot == slot:
                info.last_played_slot = None
            index[script_id] = info
            success = self._write_index(index) and success
        pointer = self._store.get_json(LAST_PLAYED_KEY)
        if isinstance(pointer, dict) and pointer.get("scriptId") == script_id and pointer.get("slotIndex") == slot:
            self._store.remove(LAST_PLAYED_KEY)

        self._events.emit(SlotDeleteCompleteEvent(script_id=script_id, slot=slot, success=success))
        return success

    # =========================================
    # Queries
    # =========================================

    def latest(self) -> Optional[SaveData]:
        """获取最近的存档（用于"继续游戏"）"""
        best: Optional[SaveData] = None
        for info in self._read_index().values():
            for s in info.slots:
                if s.save_data is not None and (best is None or s.save_data.timestamp > best.timestamp):
                    best = s.save_data
        return best

    def last_played(self) -> Optional[SaveData]:
        """The slot written most recently, via the global pointer."""
        pointer = self._store.get_json(LAST_PLAYED_KEY)
        if not isinstance(pointer, dict):
            return None
        try:
            return self.load(str(pointer["scriptId"]), int(pointer["slotIndex"]))
        except (KeyError, TypeError, ValueError):
            logger.warning("Last played pointer is malformed")
            return None

    def has_any(self) -> bool:
        """检查是否有任何存档"""
        return any(
            not s.is_empty
            for info in self._read_index().values()
            for s in info.slots
        )
