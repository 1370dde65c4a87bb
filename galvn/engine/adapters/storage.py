from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional
import json
import logging
import re

logger = logging.getLogger(__name__)


class KeyValueStore(ABC):
    """Abstract durable key -> JSON string store.

    Used by the branch cache, the save manager and game records. Callers must
    treat a missing or corrupt value as absent; implementations never raise on
    ordinary I/O failures.
    """

    @abstractmethod
    def get(self, key: str) -> Optional[str]:  # pragma: no cover - interface
        raise NotImplementedError

    @abstractmethod
    def set(self, key: str, value: str) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    @abstractmethod
    def remove(self, key: str) -> bool:  # pragma: no cover - interface
        raise NotImplementedError

    # Optional extended APIs for maintenance
    def keys(self) -> Iterator[str]:  # pragma: no cover - interface
        return iter(())

    # --- JSON helpers ---
    def get_json(self, key: str, default: Any = None) -> Any:
        raw = self.get(key)
        if raw is None:
            return default
        try:
            return json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"Corrupt value under {key!r} treated as absent: {e}")
            return default

    def set_json(self, key: str, value: Any) -> bool:
        return self.set(key, json.dumps(value, ensure_ascii=False))


class MemoryStore(KeyValueStore):
    """In-process store; handy for tests and throwaway sessions."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> bool:
        self._data[key] = str(value)
        return True

    def remove(self, key: str) -> bool:
        self._data.pop(key, None)
        return True

    def keys(self) -> Iterator[str]:
        return iter(list(self._data.keys()))


_SAFE_KEY_RE = re.compile(r"[^A-Za-z0-9_.\-]")


class FileKeyValueStore(KeyValueStore):
    """Filesystem-based store: one ``<key>.json`` file per key.

    Every ``set`` writes through to disk immediately (temp file + replace), so a
    crash mid-session cannot lose an acknowledged write.
    """

    def __init__(self, get_base_dir: Callable[[], Path]) -> None:
        self._get_base = get_base_dir

    def _ensure_dir(self) -> Path:
        base = self._get_base()
        try:
            base.mkdir(parents=True, exist_ok=True)
        except OSError:
            pass
        return base

    def _path(self, key: str) -> Path:
        name = _SAFE_KEY_RE.sub("_", key)
        return self._ensure_dir() / f"{name}.json"

    def get(self, key: str) -> Optional[str]:
        try:
            p = self._path(key)
            if not p.exists():
                return None
            return p.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning(f"Failed to read {key!r}: {e}")
            return None

    def set(self, key: str, value: str) -> bool:
        try:
            p = self._path(key)
            tmp = p.with_suffix(".json.tmp")
            tmp.write_text(value, encoding="utf-8")
            tmp.replace(p)
            return True
        except OSError as e:
            logger.error(f"Failed to write {key!r}: {e}")
            return False

    def remove(self, key: str) -> bool:
        try:
            p = self._path(key)
            if p.exists():
                p.unlink()
            return True
        except OSError as e:
            logger.warning(f"Failed to remove {key!r}: {e}")
            return False

    def keys(self) -> Iterator[str]:
        base = self._ensure_dir()
        try:
            names = sorted(p.stem for p in base.glob("*.json"))
        except OSError:
            return iter(())
        return iter(names)
