from __future__ import annotations

from pathlib import Path
from typing import Callable, Optional
import json
import logging
import re

logger = logging.getLogger(__name__)


DEFAULTS = {
    "affection": {
        "min": 0,
        "max": 100,
        "initial": 50,
        "good_threshold": 70,
        "normal_threshold": 40,
    },
    "autoplay": {
        "min_delay_ms": 2000,
        "char_ms": 150,
        "base_ms": 1500,
        "voice_char_ms": 250,
        "voice_base_ms": 2000,
    },
    "cache": {
        "version": "1.0.1",
        "ttl_days": 7,
    },
    "preload": {
        "branch_delay_s": 0.8,
        "first_script_branch_delay_s": 1.0,
        "first_script_delay_s": 10.0,
        "first_preset_id": "preset_tsundere",
    },
    "saves": {
        "max_slots": 3,
    },
}

SECTIONS = tuple(DEFAULTS.keys())


def _sanitize_name(name: str) -> str:
    cleaned = re.sub(r'[<>:"/\\|?*\s]+', "_", name).strip("._")
    return cleaned or "Game"


def resolve_save_dir(game_id: Optional[str] = None) -> Path:
    # Prefer Documents/galvn/<game-id>
    home = Path.home()
    docs = home / "Documents"
    base = docs if docs.exists() else home
    return base / "galvn" / _sanitize_name(str(game_id or "Game"))


def get_save_dir(game_id: Optional[str] = None) -> Path:
    p = resolve_save_dir(game_id)
    try:
        p.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.warning(f"Cannot create save dir {p}: {e}")
    return p


def _config_path(get_save_dir: Optional[Callable[[], Path]] = None) -> Path:
    base: Path
    if callable(get_save_dir):
        base_obj = get_save_dir()
        base = base_obj if isinstance(base_obj, Path) else Path(str(base_obj))
    else:
        base = Path("save")
    return base / "config.json"


def _merge(data: dict) -> dict:
    # merge defaults (shallow, per section); unknown sections are dropped
    out = {}
    for section in SECTIONS:
        merged = dict(DEFAULTS[section])
        merged.update(dict(data.get(section) or {}))
        out[section] = merged
    return out


def default_config() -> dict:
    return _merge({})


def load_config(get_save_dir: Optional[Callable[[], Path]] = None) -> dict:
    p = _config_path(get_save_dir)
    try:
        if p.exists():
            data = json.loads(p.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                return _merge(data)
            logger.warning(f"Ignoring malformed config {p}")
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to read config {p}: {e}")
    return default_config()


def save_config(cfg: dict, get_save_dir: Optional[Callable[[], Path]] = None) -> bool:
    p = _config_path(get_save_dir)
    try:
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_text(json.dumps(_merge(cfg), ensure_ascii=False, indent=2), encoding="utf-8")
        return True
    except OSError as e:
        logger.warning(f"Failed to write config {p}: {e}")
        return False
