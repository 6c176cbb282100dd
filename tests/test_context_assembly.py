from __future__ import annotations

import asyncio
from pathlib import Path

from loguru import logger
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from novel_continuity.config.schema import ContextBudgetConfig
from novel_continuity.continuity.context import assemble_context
from novel_continuity.storage.base import Base, import_all_models
from novel_continuity.storage.store import EntityStore
from novel_continuity.storage.types import CONFLICT_ARC, EVENT, FORESHADOW


class _RecordingStore:
    def __init__(self, *, fail_relationships: bool = False) -> None:
        self.graph_calls: list[tuple[str, int, int]] = []
        self.other_calls: list[str] = []
        self.fail_relationships = fail_relationships

    async def list_graph_nodes(self, *, novel_id, node_type, chapter_number, limit):
        _ = novel_id
        self.graph_calls.append((node_type, chapter_number, limit))
        return []

    async def get_character_states(self, *, novel_id, limit=None):
        _ = novel_id
        self.other_calls.append(f"character_states:{limit}")
        return [{"name": "韩立"}]

    async def get_top_relationships(self, *, novel_id, limit):
        _ = novel_id
        self.other_calls.append(f"relationships:{limit}")
        if self.fail_relationships:
            raise RuntimeError("database is locked")
        return []

    async def get_open_quests(self, *, novel_id, chapter, limit=10):
        _ = novel_id
        self.other_calls.append(f"open_quests:{chapter}:{limit}")
        return []


def test_assembly_reads_only_missing_categories() -> None:
    store = _RecordingStore()
    budget = ContextBudgetConfig(candidate_fetch_limit=25, character_state_limit=4)
    raw = {"events": [], "foreshadowing": [{"id": "f-1", "description": "伏笔"}], "relationships": []}

    context = asyncio.run(assemble_context(store, 1, 12, raw, budget))

    fetched_types = [call[0] for call in store.graph_calls]
    assert EVENT not in fetched_types
    assert FORESHADOW not in fetched_types
    assert CONFLICT_ARC in fetched_types
    assert all(call[1:] == (12, 25) for call in store.graph_calls)
    assert store.other_calls == ["character_states:4", "open_quests:12:10"]
    assert context.character_states == [{"name": "韩立"}]
    assert [entity.node_key for entity in context.foreshadows] == ["f-1"]


def test_failed_store_read_degrades_to_empty_category() -> None:
    records = []
    sink_id = logger.add(lambda message: records.append(message.record), level="WARNING")
    try:
        context = asyncio.run(
            assemble_context(_RecordingStore(fail_relationships=True), 1, 12, None, ContextBudgetConfig())
        )
    finally:
        logger.remove(sink_id)

    assert context.relationships == []
    assert any(
        record["message"].startswith("Context store read failed kind=relationships") for record in records
    )


def test_assembly_from_sqlite_store(tmp_path: Path) -> None:
    async def _run() -> None:
        db_path = tmp_path / "context_assembly_test.db"
        engine = create_async_engine(f"sqlite+aiosqlite:///{db_path.as_posix()}", future=True)
        import_all_models()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        store = EntityStore(async_sessionmaker(engine, expire_on_commit=False))
        try:
            novel = await store.create_novel(title="测试书")
            for chapter in range(6, 13):
                await store.upsert_graph_node(
                    novel_id=novel.id,
                    node_type=EVENT,
                    node_key=f"e-{chapter}",
                    chapter_number=chapter,
                    properties={"description": f"第{chapter}章大事", "importanceScore": chapter / 12},
                )
            await store.upsert_graph_node(
                novel_id=novel.id,
                node_type=CONFLICT_ARC,
                node_key="c-1",
                chapter_number=12,
                properties={"name": "血色试炼", "importance": "high"},
            )
            await store.upsert_character_state(novel_id=novel.id, name="韩立", chapter=11, location="太南谷")
            await store.upsert_open_quest(
                novel_id=novel.id, quest_id="Q-escape", description="escape", status="OPEN",
                introduced_chapter=10, due_chapter=15, updated_chapter=10,
            )

            context = await assemble_context(store, novel.id, 12, None, ContextBudgetConfig(max_events=3))

            assert context.bypassed is False
            assert [event.node_key for event in context.events] == ["e-11", "e-10", "e-9"]
            assert context.digest.active_conflict_name == "血色试炼"
            assert [state.name for state in context.character_states] == ["韩立"]
            assert [quest.quest_id for quest in context.open_quests] == ["Q-escape"]
            assert context.to_dict()["character_states"][0]["location"] == "太南谷"
        finally:
            await engine.dispose()

    asyncio.run(_run())
