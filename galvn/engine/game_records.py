"""
Game Records - 通关记录

Append-only list of completed playthroughs under one storage key.
"""
from __future__ import annotations

import logging
import secrets
import string
from typing import Callable, Dict, List, Optional

from ..story.model import GameRecord
from .adapters.storage import KeyValueStore
from .branch_cache import now_ms
from .config_io import DEFAULTS
from .events import EventSystem, GameRecordEvent

logger = logging.getLogger(__name__)

STORAGE_KEY = "gala_game_records"

ENDING_ORDER = {"good": 3, "normal": 2, "bad": 1}

ENDING_DESCRIPTIONS = {
    "good": "🌸 完美结局",
    "normal": "🌙 普通结局",
    "bad": "💔 遗憾结局",
}

_ID_ALPHABET = string.ascii_lowercase + string.digits


def determine_ending_type(
    affection: int,
    good: int = DEFAULTS["affection"]["good_threshold"],
    normal: int = DEFAULTS["affection"]["normal_threshold"],
) -> str:
    """根据好感度判断结局类型"""
    if affection >= good:
        return "good"
    if affection >= normal:
        return "normal"
    return "bad"


def ending_description(ending_type: str) -> str:
    return ENDING_DESCRIPTIONS.get(ending_type, "")


class GameRecordStore:
    """通关记录存储"""

    def __init__(
        self,
        store: KeyValueStore,
        events: Optional[EventSystem] = None,
        *,
        clock: Callable[[], int] = now_ms,
    ):
        self._store = store
        self._events = events
        self._clock = clock

    def all_records(self) -> List[GameRecord]:
        raw = self._store.get_json(STORAGE_KEY, [])
        if not isinstance(raw, list):
            logger.warning("Game records are malformed; treating as empty")
            return []
        records: List[GameRecord] = []
        for item in raw:
            try:
                records.append(GameRecord.from_dict(item))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning(f"Dropping corrupt game record: {e}")
        return records

    def records_for(self, script_id: str) -> List[GameRecord]:
        return [r for r in self.all_records() if r.script_id == script_id]

    def has_completed(self, script_id: str) -> bool:
        return bool(self.records_for(script_id))

    def best_ending(self, script_id: str) -> Optional[GameRecord]:
        """Best ending type first, then the highest final affection."""
        records = self.records_for(script_id)
        if not records:
            return None
        return max(records, key=lambda r: (ENDING_ORDER.get(r.ending_type, 0), r.final_affection))

    def save_record(
        self,
        script_id: str,
        script_name: str,
        character_name: str,
        ending_type: str,
        final_affection: int,
        turns_played: int,
    ) -> GameRecord:
        """保存通关记录; id and completion time are stamped here."""
        now = self._clock()
        suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
        record = GameRecord(
            id=f"record_{now}_{suffix}",
            script_id=script_id,
            script_name=script_name,
            character_name=character_name,
            ending_type=ending_type,
            final_affection=final_affection,
            turns_played=turns_played,
            completed_at=now,
        )
        records = self.all_records()
        records.append(record)
        if not self._store.set_json(STORAGE_KEY, [r.to_dict() for r in records]):
            logger.warning(f"Failed to persist game record {record.id}")
        logger.info(f"Recorded {ending_type} ending for {script_id} (affection {final_affection})")
        if self._events is not None:
            self._events.emit(GameRecordEvent(record_id=record.id, ending_type=ending_type))
        return record

    def delete_record(self, record_id: str) -> bool:
        records = self.all_records()
        kept = [r for r in records if r.id != record_id]
        if len(kept) == len(records):
            return False
        return self._store.set_json(STORAGE_KEY, [r.to_dict() for r in kept])

    def clear(self) -> None:
        self._store.remove(STORAGE_KEY)

    def stats(self) -> Dict[str, int]:
        records = self.all_records()
        return {
            "total_completions": len(records),
            "good_endings": sum(1 for r in records if r.ending_type == "good"),
            "normal_endings": sum(1 for r in records if r.ending_type == "normal"),
            "bad_endings": sum(1 for r in records if r.ending_type == "bad"),
            "unique_scripts": len({r.script_id for r in records}),
        }
