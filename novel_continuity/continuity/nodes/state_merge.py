from __future__ import annotations

from typing import Any, Awaitable, Callable

from loguru import logger

from novel_continuity.config.schema import ContinuityConfig
from novel_continuity.continuity.canonical import (
    classify_progress,
    derive_quest_id,
    due_chapter,
    quest_display_name,
    relationship_strength,
)
from novel_continuity.continuity.payload import CharacterRecord
from novel_continuity.continuity.state import ExtractionState
from novel_continuity.storage.types import QUEST_OPEN


def _empty_mutations() -> dict[str, int]:
    return {
        "characters_upserted": 0,
        "inventories_updated": 0,
        "relationships_upserted": 0,
        "quests_upserted": 0,
        "quests_resolved": 0,
        "stale_writes": 0,
        "write_failures": 0,
    }


class _MergeWriter:
    """Runs each store write on its own so one failure never blocks the rest."""

    def __init__(self, store: Any, novel_id: int, chapter_number: int):
        self.store = store
        self.novel_id = novel_id
        self.chapter_number = chapter_number
        self.mutations = _empty_mutations()
        self.log = logger.bind(node="state_merge", novel_id=novel_id, chapter=chapter_number)

    async def attempt(self, label: str, key: str, write: Callable[[], Awaitable[Any]]) -> Any | None:
        try:
            return await write()
        except Exception as exc:  # noqa: BLE001
            self.mutations["write_failures"] += 1
            self.log.warning("Store write failed kind={} key={} error={}", label, key, exc)
            return None

    def count(self, result: Any, counter: str) -> None:
        if result is None:
            return
        if getattr(result, "applied", True):
            self.mutations[counter] += 1
        else:
            self.mutations["stale_writes"] += 1

    async def write_character(self, record: CharacterRecord) -> None:
        result = await self.attempt(
            "character",
            record.name,
            lambda: self.store.upsert_character_state(
                novel_id=self.novel_id,
                name=record.name,
                chapter=self.chapter_number,
                location=record.location,
                realm=record.realm,
                alive=record.alive,
                status=record.status,
            ),
        )
        self.count(result, "characters_upserted")

        if record.inventory is None:
            return
        inventory = list(record.inventory)
        result = await self.attempt(
            "inventory",
            record.name,
            lambda: self.store.update_character_inventory(
                novel_id=self.novel_id,
                name=record.name,
                items=inventory,
                chapter=self.chapter_number,
            ),
        )
        self.count(result, "inventories_updated")

    async def write_relationship(self, protagonist: str, other: str, relation: str) -> None:
        strength = relationship_strength(relation)
        result = await self.attempt(
            "relationship",
            f"{protagonist}|{other}",
            lambda: self.store.upsert_relationship(
                novel_id=self.novel_id,
                character_a=protagonist,
                character_b=other,
                relation_type=relation,
                strength=strength,
                chapter=self.chapter_number,
            ),
        )
        self.count(result, "relationships_upserted")

    async def write_quest(self, raw_name: str, phrase: str, config: ContinuityConfig) -> None:
        quest_id = derive_quest_id(raw_name)
        if quest_id is None:
            self.log.debug("Skipping quest with empty normalized name raw={}", raw_name)
            return

        kind = classify_progress(phrase)
        if kind == "resolved":
            changed = await self.attempt(
                "quest_resolve",
                quest_id,
                lambda: self.store.resolve_open_quest(
                    novel_id=self.novel_id,
                    quest_id=quest_id,
                    chapter=self.chapter_number,
                ),
            )
            if changed:
                self.mutations["quests_resolved"] += 1
            return

        due = due_chapter(
            self.chapter_number,
            kind,
            advance_window=config.extraction.advance_due_window,
            stalled_window=config.extraction.stalled_due_window,
        )
        result = await self.attempt(
            "quest",
            quest_id,
            lambda: self.store.upsert_open_quest(
                novel_id=self.novel_id,
                quest_id=quest_id,
                description=quest_display_name(raw_name),
                status=QUEST_OPEN,
                introduced_chapter=self.chapter_number,
                due_chapter=due,
                updated_chapter=self.chapter_number,
                progress=phrase,
            ),
        )
        self.count(result, "quests_upserted")


async def run(state: ExtractionState, *, config: ContinuityConfig, store: Any) -> dict:
    payload = state.get("payload")
    if payload is None:
        return {"mutations": _empty_mutations()}

    writer = _MergeWriter(store, state["novel_id"], state["chapter_number"])

    protagonist_name = ""
    if payload.protagonist is not None and payload.protagonist.name:
        protagonist_name = payload.protagonist.name
        await writer.write_character(payload.protagonist)

    for record in payload.capped_key_characters(config.extraction.max_key_characters):
        await writer.write_character(record)
        if record.relation and protagonist_name:
            await writer.write_relationship(protagonist_name, record.name, record.relation)

    for raw_name, phrase in payload.quest_progress.items():
        if not raw_name or not phrase:
            continue
        await writer.write_quest(raw_name, phrase, config)

    writer.log.info(
        "Merged chapter state characters={} relationships={} quests={} resolved={} failures={}",
        writer.mutations["characters_upserted"],
        writer.mutations["relationships_upserted"],
        writer.mutations["quests_upserted"],
        writer.mutations["quests_resolved"],
        writer.mutations["write_failures"],
    )
    return {"mutations": writer.mutations}
