from __future__ import annotations

from typing import Any

from loguru import logger

from novel_continuity.config.schema import ContinuityConfig
from novel_continuity.continuity.state import ExtractionState


async def run(state: ExtractionState, *, config: ContinuityConfig, store: Any) -> dict:
    """Load existing character and quest names so the model can reuse them."""

    novel_id = state["novel_id"]
    node_log = logger.bind(node="roster_lookup", novel_id=novel_id, chapter=state.get("chapter_number"))
    limits = config.extraction

    try:
        characters = await store.get_character_states(novel_id=novel_id, limit=limits.roster_limit)
        quests = []
        if limits.quest_roster_limit > 0:
            quests = await store.get_open_quests(novel_id=novel_id, chapter=None, limit=limits.quest_roster_limit)
    except Exception as exc:  # noqa: BLE001
        node_log.warning("Roster lookup failed, extracting without canonical names: {}", exc)
        return {"roster_names": [], "quest_names": [], "known_states": []}

    known_states = [
        {
            "name": character.name,
            "location": character.location,
            "realm": character.realm,
            "alive": character.alive,
            "last_chapter": character.last_chapter,
        }
        for character in characters
    ]
    quest_names = [quest.description or quest.quest_id for quest in quests]
    node_log.debug("Roster loaded characters={} quests={}", len(known_states), len(quest_names))
    return {
        "roster_names": [character.name for character in characters],
        "quest_names": quest_names,
        "known_states": known_states,
    }
