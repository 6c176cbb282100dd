"""Deterministic canonicalization rules used when merging extracted facts."""

from __future__ import annotations

import re
from typing import Literal

QUEST_ID_PREFIX = "Q-"
DEFAULT_RELATION_STRENGTH = 0.5

ProgressKind = Literal["resolved", "stalled", "advancing"]

_QUEST_PREFIX = re.compile(r"^q[-_]", re.IGNORECASE)
_LEADING_SEPARATORS = re.compile(r"^[\s\-_]+")
_SEPARATOR_RUNS = re.compile(r"[\s\-_]+")

# Checked in order; the first matching class wins.
_RELATION_STRENGTHS: tuple[tuple[tuple[str, ...], float], ...] = (
    (("敌对", "仇恨", "敌人", "仇敌", "宿敌", "hostile", "enemy", "enemies", "hatred", "nemesis", "foe"), 0.9),
    (("盟友", "互援", "合作", "同盟", "ally", "allies", "allied", "alliance", "cooperat"), 0.8),
    (("亲密", "恋人", "挚友", "道侣", "intimate", "lover", "beloved", "sweetheart", "best friend", "soulmate"), 0.95),
    (("朋友", "友好", "好友", "friend", "friendly"), 0.6),
    (("竞争", "对立", "rival", "competitor", "opposed"), 0.7),
    (("陌生", "路人", "stranger", "passerby"), 0.2),
    (("认识", "熟人", "acquaint", "know"), 0.4),
)

_RESOLVED_KEYWORDS = ("完成", "解决", "达成", "了结", "complete", "resolved", "solved", "finished", "accomplished", "done")
_NEGATED_RESOLUTION = (
    "未完成",
    "没完成",
    "未能完成",
    "尚未",
    "未解决",
    "没解决",
    "not complete",
    "not yet complete",
    "incomplete",
    "unresolved",
    "not resolved",
    "unfinished",
    "not done",
)
_STALLED_KEYWORDS = ("受阻", "停滞", "搁置", "阻碍", "卡住", "blocked", "stalled", "stuck", "on hold", "delayed")


def _contains_keyword(text: str, keyword: str) -> bool:
    if keyword.isascii():
        return re.search(rf"(?<![A-Za-z]){re.escape(keyword)}", text) is not None
    return keyword in text


def normalize_quest_name(name: str) -> str:
    """Strip ``Q-``/``Q_`` prefixes and fold separators to single underscores."""

    text = name.strip()
    while True:
        text = _LEADING_SEPARATORS.sub("", text)
        stripped = _QUEST_PREFIX.sub("", text, count=1)
        if stripped == text:
            break
        text = stripped
    return _SEPARATOR_RUNS.sub("_", text).strip("_")


def derive_quest_id(name: str) -> str | None:
    """Stable quest id for a free-text quest name, or None when nothing is left."""

    normalized = normalize_quest_name(name)
    if not normalized:
        return None
    return QUEST_ID_PREFIX + normalized.casefold()


def quest_display_name(name: str) -> str:
    normalized = normalize_quest_name(name)
    return normalized.replace("_", " ")


def relationship_strength(relation: str) -> float:
    text = relation.strip().lower()
    if not text:
        return DEFAULT_RELATION_STRENGTH
    for keywords, strength in _RELATION_STRENGTHS:
        if any(_contains_keyword(text, keyword) for keyword in keywords):
            return strength
    return DEFAULT_RELATION_STRENGTH


def classify_progress(phrase: str) -> ProgressKind:
    text = phrase.strip().lower()
    negated = any(_contains_keyword(text, marker) for marker in _NEGATED_RESOLUTION)
    if not negated and any(_contains_keyword(text, keyword) for keyword in _RESOLVED_KEYWORDS):
        return "resolved"
    if any(_contains_keyword(text, keyword) for keyword in _STALLED_KEYWORDS):
        return "stalled"
    return "advancing"


def due_chapter(chapter_number: int, kind: ProgressKind, *, advance_window: int, stalled_window: int) -> int:
    return chapter_number + (stalled_window if kind == "stalled" else advance_window)
