"""Script asset source and preset script templates.

Pre-authored scripts live under ``<root>/<folder>/script/chapters.json``.
Loaded scripts are kept in memory for the lifetime of the library object,
so a session only reads each document once.
"""
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional

from .errors import ScriptLoadError
from .model import CharacterConfig, FullScript, ScriptTemplate

logger = logging.getLogger(__name__)


# 预设剧本 -> 资源目录
SCRIPT_FOLDERS: Dict[str, str] = {
    "preset_tsundere": "01_tsundere_wenxi",
    "preset_princess": "02_princess_elena",
    "preset_courtesan": "03_courtesan_liuruyan",
}

FIRST_PRESET_ID = "preset_tsundere"


PRESET_TEMPLATES: List[ScriptTemplate] = [
    ScriptTemplate(
        id="preset_tsundere",
        name="傲娇青梅竹马",
        description="经典校园恋爱，从小一起长大的她对你有着说不出口的心意",
        character=CharacterConfig(
            name="雯曦",
            personality="傲娇、害羞、嘴硬心软、暗恋主角多年却不敢表白",
            appearance="长直黑发及腰、紫罗兰色眼眸、深蓝色水手服配红色领巾",
            relationship="从小一起长大的邻居青梅竹马，每天一起上下学",
        ),
        setting="现代日本高中，樱花盛开的春天",
    ),
    ScriptTemplate(
        id="preset_princess",
        name="白金蔷薇：温柔公主的骑士誓约",
        description="温柔治愈的公主与忠诚骑士的爱情誓约",
        character=CharacterConfig(
            name="艾琳娜",
            personality="温柔治愈、善良体贴、脆弱敏感、在逆境中觉醒成长",
            appearance="金色长卷发、宝石蓝眼眸、白色镶金礼服",
            relationship="艾尔兰王国长公主，你是她的专属皇家骑士护卫",
        ),
        setting="中世纪欧洲风格奇幻王国，魔法与剑的时代",
    ),
    ScriptTemplate(
        id="preset_courtesan",
        name="古风绝世花魁",
        description="落魄书生与京城第一花魁的倾城之恋",
        character=CharacterConfig(
            name="柳如烟",
            personality="才情绝艳、看透世情却仍怀希望、外柔内刚",
            appearance="乌发云鬓斜插玉簪、绛红罗裙曳地、手执绣花团扇",
            relationship="京城醉月楼第一花魁，你是赴京赶考的落魄书生",
        ),
        setting="中国古代繁华京城",
    ),
]


def get_preset(script_id: str) -> Optional[ScriptTemplate]:
    for tpl in PRESET_TEMPLATES:
        if tpl.id == script_id:
            return tpl
    return None


def parse_full_script(data: object, script_id: str | None = None) -> FullScript:
    """Validate a chapters document and build a ``FullScript``."""
    if not isinstance(data, dict):
        raise ScriptLoadError("剧本格式错误: root must be an object", script_id=script_id)
    chapters = data.get("chapters")
    if not isinstance(chapters, list) or not chapters:
        raise ScriptLoadError("剧本没有章节", script_id=script_id)
    for i, ch in enumerate(chapters):
        if not isinstance(ch, dict):
            raise ScriptLoadError(f"章节 {i} 格式错误", script_id=script_id)
        if not isinstance(ch.get("dialogues"), list):
            raise ScriptLoadError(f"章节 {i} 缺少 dialogues", script_id=script_id, context=str(ch.get("id")))
    try:
        script = FullScript.from_dict(data)
    except (AttributeError, TypeError, ValueError, KeyError) as e:
        raise ScriptLoadError(f"剧本解析失败: {e}", script_id=script_id) from e
    if not script.id and script_id:
        script = FullScript(id=script_id, title=script.title, chapters=script.chapters)
    return script


class ScriptLibrary:
    """Resolves script ids to chapter documents and memoises them."""

    def __init__(self, root: Path | str = "stories", folders: Optional[Dict[str, str]] = None) -> None:
        self._root = Path(root)
        self._folders = dict(SCRIPT_FOLDERS if folders is None else folders)
        self._cache: Dict[str, FullScript] = {}

    @property
    def root(self) -> Path:
        return self._root

    def register(self, script_id: str, folder: str) -> None:
        self._folders[script_id] = folder
        self._cache.pop(script_id, None)

    def add(self, script: FullScript) -> None:
        """Put an already-parsed script into the session cache."""
        self._cache[script.id] = script

    def has_script(self, script_id: str) -> bool:
        return script_id in self._cache or script_id in self._folders

    def script_path(self, script_id: str) -> Optional[Path]:
        folder = self._folders.get(script_id)
        if not folder:
            return None
        return self._root / folder / "script" / "chapters.json"

    def require_script(self, script_id: str) -> FullScript:
        """Load a script or raise ``ScriptLoadError``."""
        if script_id in self._cache:
            return self._cache[script_id]
        path = self.script_path(script_id)
        if path is None:
            raise ScriptLoadError("未找到剧本", script_id=script_id)
        if not path.exists():
            raise ScriptLoadError("剧本文件不存在", script_id=script_id, context=str(path))
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ScriptLoadError(f"加载剧本失败: {e}", script_id=script_id, context=str(path)) from e
        script = parse_full_script(data, script_id)
        self._cache[script_id] = script
        logger.info(f"Loaded script {script_id}: {script.title}, {len(script.chapters)} chapters")
        return script

    def load_script(self, script_id: str) -> Optional[FullScript]:
        """Load a script, returning None when it is missing or malformed."""
        try:
            return self.require_script(script_id)
        except ScriptLoadError as e:
            logger.warning(f"Script {script_id} unavailable: {e}")
            return None

    def clear(self) -> None:
        self._cache.clear()
