"""Importance scoring and text budgeting helpers for context assembly."""

from __future__ import annotations

import math
import re
from typing import Any, Mapping

from novel_continuity.storage.types import GraphEntity

DEFAULT_IMPORTANCE = 0.4
UNKNOWN_LABEL_IMPORTANCE = 0.45
NON_POSITIVE_RELEVANCE_IMPORTANCE = 0.3

IMPORTANCE_VOCABULARY: dict[str, float] = {
    "high": 0.9,
    "critical": 0.9,
    "核心": 0.9,
    "medium": 0.6,
    "mid": 0.6,
    "中": 0.6,
    "low": 0.3,
    "次要": 0.3,
}

_CJK_CHAR = re.compile(r"[㐀-䶿一-鿿豈-﫿]")
_LATIN_WORD = re.compile(r"[A-Za-z0-9]+(?:['\-][A-Za-z0-9]+)*")


def _number(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if math.isnan(value):
        return None
    return float(value)


def _first_present(props: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in props and props[key] is not None:
            return props[key]
    return None


def map_importance_label(label: str) -> float:
    return IMPORTANCE_VOCABULARY.get(label.strip().lower(), UNKNOWN_LABEL_IMPORTANCE)


def resolve_importance(entity: GraphEntity) -> float:
    """Normalized [0, 1] importance from whichever signal the entity carries.

    Checked in order: ``importanceScore``, ``importance`` (numeric or a label),
    ``priority``, ``urgency`` in (0, 1], then the relevance score scaled by 10.
    Entities with no signal at all get ``DEFAULT_IMPORTANCE``.
    """

    props = entity.properties or {}

    explicit = _number(_first_present(props, "importanceScore", "importance_score"))
    if explicit is not None:
        return _clamp(explicit)

    importance = props.get("importance")
    numeric = _number(importance)
    if numeric is not None:
        return _clamp(numeric)
    if isinstance(importance, str):
        return map_importance_label(importance)

    priority = _number(props.get("priority"))
    if priority is not None:
        return _clamp(priority)

    urgency = _number(props.get("urgency"))
    if urgency is not None and 0 < urgency <= 1:
        return urgency

    relevance = entity.relevance_score
    if relevance is None:
        relevance = _number(_first_present(props, "relevanceScore", "relevance_score"))
    if relevance is not None:
        return min(1.0, relevance / 10.0) if relevance > 0 else NON_POSITIVE_RELEVANCE_IMPORTANCE

    return DEFAULT_IMPORTANCE


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def truncate_text(text: str, max_chars: int, marker: str = "…") -> str:
    """Cut ``text`` so the result, marker included, is at most ``max_chars`` long."""

    if max_chars <= 0:
        return ""
    if len(text) <= max_chars:
        return text
    if len(marker) >= max_chars:
        return text[:max_chars]
    return text[: max_chars - len(marker)] + marker


def estimate_tokens(text: str) -> int:
    if not text:
        return 0
    cjk = len(_CJK_CHAR.findall(text))
    words = len(_LATIN_WORD.findall(text))
    return int(math.ceil(cjk * 1.5 + words * 1.3))
