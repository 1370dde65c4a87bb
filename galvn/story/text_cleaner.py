"""
Text Cleaner - 生成文本清理

Repairs the common defects of model-generated Chinese text (dropped or
doubled characters, unmatched brackets). ``clean_text`` is pure and
idempotent, so it is safe to run on every cache read as well as on write.
"""
from __future__ import annotations

import re
from dataclasses import replace
from typing import List, Tuple

from .model import BatchSceneData, DialogueNode, GameChoice


# 允许重复的字符
VALID_REDUPLICATED_CHARS = frozenset(
    # 标点
    "。！？…!?.～~"
    # 语气词
    "哈呵嘿嗯啊呀哦噢呜咦"
    # 叠词
    "静慢悄偷轻默渐好刚仅常往"
    # 时间单位
    "天年月日时分秒"
    # 数字
    "一二三四五六七八九十百千万"
)

MAX_REDUPLICATION = 3

# 在重复字修复之前应用
PRE_FIX_PATTERNS: List[Tuple[re.Pattern[str], str]] = [
    (re.compile(r"樱飞飞"), "樱花飞"),
    (re.compile(r"樱飞散"), "樱花飞散"),
    (re.compile(r"放后"), "放学后"),
    (re.compile(r"回到到校"), "回到学校"),
    (re.compile(r"到到校"), "到学校"),
    (re.compile(r"谁你担心"), "谁要你担心"),
]

# 在重复字修复之后应用
POST_FIX_PATTERNS: List[Tuple[re.Pattern[str], str]] = [
    (re.compile(r"樱飞散的"), "樱花飞散的"),
    (re.compile(r"樱花散的"), "樱花飞散的"),
    (re.compile(r"樱花飞的"), "樱花飞舞的"),
    (re.compile(r"樱飞散"), "樱花飞散"),
    (re.compile(r"樱飞的"), "樱花飞舞的"),
    (re.compile(r"樱飞舞"), "樱花飞舞"),
    (re.compile(r"樱飞飞"), "樱花飞"),
    (re.compile(r"天台风(?!景)"), "天台吹风"),
    (re.compile(r"天台台风"), "天台吹风"),
    (re.compile(r"在台吹风"), "在天台吹风"),
    (re.compile(r"在台乘凉"), "在天台乘凉"),
    (re.compile(r"只好回学校"), "只好回到学校"),
    (re.compile(r"只好到学校"), "只好回到学校"),
    (re.compile(r"好到学校"), "好回到学校"),
    (re.compile(r"回学校"), "回到学校"),
    (re.compile(r"回到校"), "回到学校"),
    (re.compile(r"回到学取"), "回到学校取"),
    (re.compile(r"到校取"), "到学校取"),
]

_REPEAT_RE = re.compile(r"(.)\1+")
_CJK_RE = re.compile(r"[一-鿿]")


def _collapse(match: re.Match[str]) -> str:
    run = match.group(0)
    ch = match.group(1)
    if ch in VALID_REDUPLICATED_CHARS:
        return ch * MAX_REDUPLICATION if len(run) > MAX_REDUPLICATION else run
    # only ideographs are collapsed; latin text ("good", "all") is left alone
    if _CJK_RE.match(ch):
        return ch
    return run


def clean_text(text: str | None) -> str:
    """清理生成文本，修复常见错误"""
    if not text:
        return ""
    cleaned = text
    for pattern, replacement in PRE_FIX_PATTERNS:
        cleaned = pattern.sub(replacement, cleaned)
    cleaned = _REPEAT_RE.sub(_collapse, cleaned)
    for pattern, replacement in POST_FIX_PATTERNS:
        cleaned = pattern.sub(replacement, cleaned)
    # 括号不匹配
    if "）" in cleaned and "（" not in cleaned:
        cleaned = "（" + cleaned
    return cleaned.strip()


def clean_node(node: DialogueNode) -> DialogueNode:
    return replace(
        node,
        dialogue=clean_text(node.dialogue),
        narrative=clean_text(node.narrative) if node.narrative is not None else None,
    )


def clean_batch(batch: BatchSceneData) -> BatchSceneData:
    """Apply ``clean_text`` to every player-visible string of a batch."""
    return replace(
        batch,
        narrative=clean_text(batch.narrative),
        dialogue_sequence=tuple(clean_node(n) for n in batch.dialogue_sequence),
        choices=tuple(GameChoice(text=clean_text(c.text), sentiment=c.sentiment) for c in batch.choices),
    )
