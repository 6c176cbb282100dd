from __future__ import annotations

import asyncio
from pathlib import Path

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from novel_continuity.storage.base import Base, import_all_models
from novel_continuity.storage.repo import SQLAlchemyRepo
from novel_continuity.storage.store import EntityStore
from novel_continuity.storage.types import EVENT, FORESHADOW, PLOTLINE


async def _build_test_db(tmp_path: Path):
    db_path = tmp_path / "world_state_store_test.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path.as_posix()}", future=True)
    import_all_models()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine


def test_relationship_is_one_row_per_unordered_pair(tmp_path: Path) -> None:
    async def _run() -> None:
        engine = await _build_test_db(tmp_path)
        session_maker = async_sessionmaker(engine, expire_on_commit=False)
        try:
            async with session_maker() as session:
                repo = SQLAlchemyRepo(session)
                novel = await repo.create_novel(title="测试书")

                first = await repo.upsert_relationship(
                    novel_id=novel.id, character_a="韩立", character_b="南宫婉",
                    relation_type="朋友", strength=0.6, chapter=3,
                )
                second = await repo.upsert_relationship(
                    novel_id=novel.id, character_a="南宫婉", character_b="韩立",
                    relation_type="道侣", strength=0.95, chapter=4,
                )

                rows = await repo.get_top_relationships(novel_id=novel.id, limit=10)
                assert first.inserted is True
                assert second.inserted is False
                assert len(rows) == 1
                assert rows[0].relation_type == "道侣"
                assert rows[0].strength == 0.95
                assert rows[0].last_chapter == 4

                with pytest.raises(ValueError):
                    await repo.upsert_relationship(
                        novel_id=novel.id, character_a="韩立", character_b="韩立",
                        relation_type="自己", strength=0.5, chapter=4,
                    )
        finally:
            await engine.dispose()

    asyncio.run(_run())


def test_resolving_quest_is_idempotent_and_terminal(tmp_path: Path) -> None:
    async def _run() -> None:
        engine = await _build_test_db(tmp_path)
        store = EntityStore(async_sessionmaker(engine, expire_on_commit=False))
        try:
            novel = await store.create_novel(title="测试书")
            await store.upsert_open_quest(
                novel_id=novel.id, quest_id="Q-find_the_sword", description="find the sword", status="OPEN",
                introduced_chapter=2, due_chapter=7, updated_chapter=2, progress="heard a rumour",
            )

            assert await store.resolve_open_quest(novel_id=novel.id, quest_id="Q-find_the_sword", chapter=5) is True
            assert await store.resolve_open_quest(novel_id=novel.id, quest_id="Q-find_the_sword", chapter=6) is False
            assert await store.resolve_open_quest(novel_id=novel.id, quest_id="Q-unknown", chapter=6) is False

            reopened = await store.upsert_open_quest(
                novel_id=novel.id, quest_id="Q-find_the_sword", description="find the sword", status="OPEN",
                introduced_chapter=8, due_chapter=13, updated_chapter=8, progress="searching again",
            )
            quest = await store.get_quest(novel_id=novel.id, quest_id="Q-find_the_sword")

            assert reopened.applied is False
            assert quest is not None
            assert quest.status == "RESOLVED"
            assert quest.resolved_chapter == 5
            assert quest.introduced_chapter == 2
            assert await store.get_quest(novel_id=novel.id, quest_id="Q-unknown") is None
        finally:
            await engine.dispose()

    asyncio.run(_run())


def test_open_quests_skip_overdue_and_order_by_due(tmp_path: Path) -> None:
    async def _run() -> None:
        engine = await _build_test_db(tmp_path)
        store = EntityStore(async_sessionmaker(engine, expire_on_commit=False))
        try:
            novel = await store.create_novel(title="测试书")
            for quest_id, due in (("Q-late", 20), ("Q-soon", 12), ("Q-overdue", 8), ("Q-open_ended", None)):
                await store.upsert_open_quest(
                    novel_id=novel.id, quest_id=quest_id, description=quest_id, status="OPEN",
                    introduced_chapter=5, due_chapter=due, updated_chapter=5,
                )

            quests = await store.get_open_quests(novel_id=novel.id, chapter=10)

            assert [quest.quest_id for quest in quests] == ["Q-soon", "Q-late", "Q-open_ended"]
        finally:
            await engine.dispose()

    asyncio.run(_run())


def test_character_writes_coalesce_and_ignore_stale_chapters(tmp_path: Path) -> None:
    async def _run() -> None:
        engine = await _build_test_db(tmp_path)
        store = EntityStore(async_sessionmaker(engine, expire_on_commit=False))
        try:
            novel = await store.create_novel(title="测试书")
            await store.upsert_character_state(
                novel_id=novel.id, name="韩立", chapter=5, location="天南", realm="筑基期"
            )
            await store.update_character_inventory(novel_id=novel.id, name="韩立", items=["掌天瓶"], chapter=5)
            await store.upsert_character_state(novel_id=novel.id, name="韩立", chapter=6, location="乱星海")
            stale = await store.upsert_character_state(novel_id=novel.id, name="韩立", chapter=4, location="七玄门")

            states = await store.get_character_states(novel_id=novel.id)

            assert stale.applied is False
            assert len(states) == 1
            assert states[0].location == "乱星海"
            assert states[0].realm == "筑基期"
            assert states[0].alive is True
            assert states[0].inventory == ["掌天瓶"]
            assert states[0].first_chapter == 5
            assert states[0].last_chapter == 6
        finally:
            await engine.dispose()

    asyncio.run(_run())


def test_failed_write_rolls_back_only_its_own_transaction(tmp_path: Path) -> None:
    async def _run() -> None:
        engine = await _build_test_db(tmp_path)
        store = EntityStore(async_sessionmaker(engine, expire_on_commit=False))
        try:
            novel = await store.create_novel(title="测试书")
            await store.upsert_character_state(novel_id=novel.id, name="韩立", chapter=5)
            with pytest.raises(ValueError):
                await store.upsert_relationship(
                    novel_id=novel.id, character_a="韩立", character_b="南宫婉",
                    relation_type="道侣", strength=1.5, chapter=5,
                )
            await store.upsert_character_state(novel_id=novel.id, name="南宫婉", chapter=5)

            names = sorted(row.name for row in await store.get_character_states(novel_id=novel.id))
            assert names == ["南宫婉", "韩立"]
            assert await store.get_top_relationships(novel_id=novel.id, limit=5) == []
        finally:
            await engine.dispose()

    asyncio.run(_run())


def test_graph_nodes_visible_per_chapter(tmp_path: Path) -> None:
    async def _run() -> None:
        engine = await _build_test_db(tmp_path)
        store = EntityStore(async_sessionmaker(engine, expire_on_commit=False))
        try:
            novel = await store.create_novel(title="测试书")
            await store.upsert_graph_node(
                novel_id=novel.id, node_type=EVENT, node_key="e-9", chapter_number=9,
                properties={"description": "筑基成功"}, relevance_score=7.0,
            )
            await store.upsert_graph_node(
                novel_id=novel.id, node_type=EVENT, node_key="e-10", chapter_number=10,
                properties={"description": "当前章"},
            )
            await store.upsert_graph_node(
                novel_id=novel.id, node_type=FORESHADOW, node_key="f-open", chapter_number=3,
                properties={"description": "神秘小瓶", "status": "planted"},
            )
            await store.upsert_graph_node(
                novel_id=novel.id, node_type=FORESHADOW, node_key="f-closed", chapter_number=4,
                properties={"description": "已回收的伏笔", "status": "Resolved"},
            )
            await store.upsert_graph_node(
                novel_id=novel.id, node_type=PLOTLINE, node_key="p-main", chapter_number=10,
                properties={"name": "主线"},
            )

            events = await store.list_graph_nodes(novel_id=novel.id, node_type=EVENT, chapter_number=10, limit=10)
            foreshadows = await store.list_graph_nodes(
                novel_id=novel.id, node_type=FORESHADOW, chapter_number=10, limit=10
            )
            plotlines = await store.list_graph_nodes(novel_id=novel.id, node_type=PLOTLINE, chapter_number=10, limit=10)

            assert [node.node_key for node in events] == ["e-9"]
            assert events[0].relevance_score == 7.0
            assert events[0].get("description") == "筑基成功"
            assert [node.node_key for node in foreshadows] == ["f-open"]
            assert [node.node_key for node in plotlines] == ["p-main"]

            with pytest.raises(ValueError):
                await store.upsert_graph_node(
                    novel_id=novel.id, node_type="Weather", node_key="w", chapter_number=1, properties={}
                )
        finally:
            await engine.dispose()

    asyncio.run(_run())


def test_rollback_restores_previous_chapter_state(tmp_path: Path) -> None:
    async def _run() -> None:
        engine = await _build_test_db(tmp_path)
        store = EntityStore(async_sessionmaker(engine, expire_on_commit=False))
        try:
            novel = await store.create_novel(title="测试书")
            await store.upsert_character_state(novel_id=novel.id, name="韩立", chapter=4, location="天南")
            await store.upsert_relationship(
                novel_id=novel.id, character_a="韩立", character_b="厉飞雨",
                relation_type="朋友", strength=0.6, chapter=4,
            )
            await store.upsert_open_quest(
                novel_id=novel.id, quest_id="Q-old", description="old", status="OPEN",
                introduced_chapter=4, due_chapter=9, updated_chapter=4,
            )

            await store.upsert_character_state(novel_id=novel.id, name="韩立", chapter=5, location="乱星海")
            await store.upsert_character_state(novel_id=novel.id, name="南宫婉", chapter=5, location="掩月宗")
            await store.upsert_relationship(
                novel_id=novel.id, character_a="厉飞雨", character_b="韩立",
                relation_type="敌对", strength=0.9, chapter=5,
            )
            await store.resolve_open_quest(novel_id=novel.id, quest_id="Q-old", chapter=5)
            await store.upsert_open_quest(
                novel_id=novel.id, quest_id="Q-new", description="new", status="OPEN",
                introduced_chapter=5, due_chapter=10, updated_chapter=5,
            )
            await store.upsert_graph_node(
                novel_id=novel.id, node_type=EVENT, node_key="e-5", chapter_number=5, properties={}
            )

            skipped = await store.delete_chapter_entities(novel_id=novel.id, chapter=4)
            report = await store.delete_chapter_entities(novel_id=novel.id, chapter=5)

            assert skipped.skipped is True
            assert report.skipped is False
            assert report.characters_restored == 1
            assert report.characters_deleted == 1
            assert report.relationships_restored == 1
            assert report.quests_restored == 1
            assert report.quests_deleted == 1
            assert report.graph_nodes_deleted == 1

            states = await store.get_character_states(novel_id=novel.id)
            assert [(row.name, row.location, row.last_chapter) for row in states] == [("韩立", "天南", 4)]
            relationship = (await store.get_top_relationships(novel_id=novel.id, limit=5))[0]
            assert (relationship.relation_type, relationship.last_chapter) == ("朋友", 4)
            old = await store.get_quest(novel_id=novel.id, quest_id="Q-old")
            assert old is not None and old.status == "OPEN"
            assert await store.get_quest(novel_id=novel.id, quest_id="Q-new") is None
        finally:
            await engine.dispose()

    asyncio.run(_run())


def test_volume_range_must_not_be_inverted(tmp_path: Path) -> None:
    async def _run() -> None:
        engine = await _build_test_db(tmp_path)
        store = EntityStore(async_sessionmaker(engine, expire_on_commit=False))
        try:
            novel = await store.create_novel(title="测试书", planned_volume_count=3)
            await store.upsert_volume(novel_id=novel.id, volume_number=2, chapter_start=101, chapter_end=200)
            await store.upsert_volume(novel_id=novel.id, volume_number=1, chapter_start=1, chapter_end=100)
            with pytest.raises(ValueError):
                await store.upsert_volume(novel_id=novel.id, volume_number=3, chapter_start=300, chapter_end=250)

            volumes = await store.list_volumes(novel.id)
            assert [volume.volume_number for volume in volumes] == [1, 2]
            assert volumes[1].has_range
        finally:
            await engine.dispose()

    asyncio.run(_run())
