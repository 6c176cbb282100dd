from __future__ import annotations

from typing import NotRequired, TypedDict

from novel_continuity.continuity.payload import ExtractionPayload


class ExtractionState(TypedDict):
    # Inputs
    novel_id: int
    chapter_number: int
    chapter_title: str
    chapter_text: str

    # Canonicalization roster
    roster_names: NotRequired[list[str]]
    quest_names: NotRequired[list[str]]
    known_states: NotRequired[list[dict]]

    # Node outputs
    payload: NotRequired[ExtractionPayload | None]
    skip_reason: NotRequired[str]
    llm_cache_hit: NotRequired[bool]
    llm_attempts: NotRequired[int]
    conflict_warnings: NotRequired[list[str]]
    mutations: NotRequired[dict]
