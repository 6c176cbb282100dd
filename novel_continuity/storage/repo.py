from __future__ import annotations

from typing import Any

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from novel_continuity.storage.novels import crud as novels_crud
from novel_continuity.storage.types import (
    CharacterStateRow,
    GraphEntity,
    InsertResult,
    NovelRow,
    OpenQuestRow,
    RelationshipRow,
    RollbackReport,
    VolumeRow,
)
from novel_continuity.storage.volumes import crud as volumes_crud
from novel_continuity.storage.world_state import characters as characters_crud
from novel_continuity.storage.world_state import graph_nodes as graph_nodes_crud
from novel_continuity.storage.world_state import history as history_crud
from novel_continuity.storage.world_state import quests as quests_crud
from novel_continuity.storage.world_state import relationships as relationships_crud

from novel_continuity.storage.world_state.characters import CharacterState
from novel_continuity.storage.world_state.quests import OpenQuest
from novel_continuity.storage.world_state.relationships import RelationshipState


class SQLAlchemyRepo:
    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_novel(
        self,
        *,
        title: str | None,
        planned_volume_count: int | None = None,
        target_total_chapters: int | None = None,
    ) -> InsertResult:
        return await novels_crud.create_novel(self.session, title, planned_volume_count, target_total_chapters)

    async def get_novel(self, novel_id: int) -> NovelRow | None:
        return await novels_crud.get_novel(self.session, novel_id)

    async def update_planning_settings(
        self,
        *,
        novel_id: int,
        planned_volume_count: int | None = None,
        target_total_chapters: int | None = None,
    ) -> None:
        await novels_crud.update_planning_settings(
            self.session, novel_id, planned_volume_count, target_total_chapters
        )

    async def list_volumes(self, novel_id: int) -> list[VolumeRow]:
        return await volumes_crud.list_volumes(self.session, novel_id)

    async def upsert_volume(
        self,
        *,
        novel_id: int,
        volume_number: int,
        title: str | None = None,
        chapter_start: int | None = None,
        chapter_end: int | None = None,
        outline: str | None = None,
    ) -> InsertResult:
        return await volumes_crud.upsert_volume(
            self.session,
            novel_id=novel_id,
            volume_number=volume_number,
            title=title,
            chapter_start=chapter_start,
            chapter_end=chapter_end,
            outline=outline,
        )

    async def get_character_state(self, *, novel_id: int, name: str) -> CharacterStateRow | None:
        return await characters_crud.get_character_state(self.session, novel_id, name)

    async def get_character_states(
        self,
        *,
        novel_id: int,
        limit: int | None = None,
        names: list[str] | None = None,
    ) -> list[CharacterStateRow]:
        return await characters_crud.list_character_states(self.session, novel_id, limit=limit, names=names)

    async def upsert_character_state(
        self,
        *,
        novel_id: int,
        name: str,
        chapter: int,
        location: str | None = None,
        realm: str | None = None,
        alive: bool | None = None,
        status: str | None = None,
    ) -> InsertResult:
        return await characters_crud.upsert_character_state(
            self.session,
            novel_id=novel_id,
            name=name,
            chapter=chapter,
            location=location,
            realm=realm,
            alive=alive,
            status=status,
        )

    async def update_character_inventory(
        self,
        *,
        novel_id: int,
        name: str,
        items: list[str],
        chapter: int,
    ) -> InsertResult:
        return await characters_crud.update_character_inventory(self.session, novel_id, name, items, chapter)

    async def upsert_relationship(
        self,
        *,
        novel_id: int,
        character_a: str,
        character_b: str,
        relation_type: str,
        strength: float,
        chapter: int,
    ) -> InsertResult:
        return await relationships_crud.upsert_relationship(
            self.session,
            novel_id,
            character_a,
            character_b,
            relation_type,
            strength,
            chapter,
        )

    async def get_top_relationships(self, *, novel_id: int, limit: int) -> list[RelationshipRow]:
        return await relationships_crud.list_relationships(self.session, novel_id, limit=limit)

    async def upsert_open_quest(
        self,
        *,
        novel_id: int,
        quest_id: str,
        description: str | None,
        status: str,
        introduced_chapter: int | None,
        due_chapter: int | None,
        updated_chapter: int,
        progress: str | None = None,
    ) -> InsertResult:
        return await quests_crud.upsert_open_quest(
            self.session,
            novel_id=novel_id,
            quest_id=quest_id,
            description=description,
            status=status,
            introduced_chapter=introduced_chapter,
            due_chapter=due_chapter,
            updated_chapter=updated_chapter,
            progress=progress,
        )

    async def resolve_open_quest(self, *, novel_id: int, quest_id: str, chapter: int) -> bool:
        return await quests_crud.resolve_open_quest(self.session, novel_id, quest_id, chapter)

    async def get_quest(self, *, novel_id: int, quest_id: str) -> OpenQuestRow | None:
        return await quests_crud.get_quest(self.session, novel_id, quest_id)

    async def get_open_quests(
        self,
        *,
        novel_id: int,
        chapter: int | None,
        limit: int | None = 10,
    ) -> list[OpenQuestRow]:
        return await quests_crud.list_open_quests(self.session, novel_id, chapter=chapter, limit=limit)

    async def upsert_graph_node(
        self,
        *,
        novel_id: int,
        node_type: str,
        node_key: str,
        chapter_number: int,
        properties: dict[str, Any],
        relevance_score: float | None = None,
    ) -> InsertResult:
        return await graph_nodes_crud.upsert_graph_node(
            self.session,
            novel_id=novel_id,
            node_type=node_type,
            node_key=node_key,
            chapter_number=chapter_number,
            properties=properties,
            relevance_score=relevance_score,
        )

    async def list_graph_nodes(
        self,
        *,
        novel_id: int,
        node_type: str,
        chapter_number: int,
        limit: int,
    ) -> list[GraphEntity]:
        return await graph_nodes_crud.list_graph_nodes(self.session, novel_id, node_type, chapter_number, limit)

    async def max_state_chapter(self, *, novel_id: int) -> int | None:
        latest: int | None = None
        for column, owner in (
            (CharacterState.last_chapter, CharacterState.novel_id),
            (RelationshipState.last_chapter, RelationshipState.novel_id),
            (OpenQuest.last_chapter, OpenQuest.novel_id),
        ):
            result = await self.session.execute(select(func.max(column)).where(owner == novel_id))
            value = result.scalar_one_or_none()
            if value is not None and (latest is None or value > latest):
                latest = int(value)
        return latest

    async def delete_chapter_entities(self, *, novel_id: int, chapter: int) -> RollbackReport:
        """Undo what ``chapter`` contributed so it can be regenerated.

        States last written at ``chapter`` fall back to their newest snapshot
        from an earlier chapter, or are deleted when none exists. Quests first
        introduced at ``chapter`` and graph nodes of ``chapter`` are deleted.
        Rewrites of a chapter older than the newest written state are skipped.
        """

        report = RollbackReport(novel_id=novel_id, chapter_number=chapter)
        latest = await self.max_state_chapter(novel_id=novel_id)
        if latest is not None and chapter < latest:
            logger.bind(novel_id=novel_id, chapter=chapter).warning(
                "Skipping chapter rollback: newer state exists latest_chapter={}", latest
            )
            report.skipped = True
            return report

        for character in await characters_crud.list_character_states(self.session, novel_id):
            if character.last_chapter != chapter:
                continue
            snapshot = await history_crud.latest_snapshot_before(
                self.session,
                novel_id=novel_id,
                entity_kind=history_crud.KIND_CHARACTER,
                entity_key=character.name,
                chapter_number=chapter,
            )
            if snapshot is None:
                await characters_crud.delete_character_state(self.session, character.id)
                report.characters_deleted += 1
            else:
                await characters_crud.restore_character_state(self.session, character.id, snapshot.payload)
                report.characters_restored += 1

        for relationship in await relationships_crud.list_relationships(self.session, novel_id, last_chapter=chapter):
            snapshot = await history_crud.latest_snapshot_before(
                self.session,
                novel_id=novel_id,
                entity_kind=history_crud.KIND_RELATIONSHIP,
                entity_key=relationships_crud.pair_key(relationship.character_a, relationship.character_b),
                chapter_number=chapter,
            )
            if snapshot is None:
                await relationships_crud.delete_relationship(self.session, relationship.id)
                report.relationships_deleted += 1
            else:
                await relationships_crud.restore_relationship(self.session, relationship.id, snapshot.payload)
                report.relationships_restored += 1

        for quest in await quests_crud.list_quests(self.session, novel_id, last_chapter=chapter):
            if quest.introduced_chapter == chapter:
                continue
            snapshot = await history_crud.latest_snapshot_before(
                self.session,
                novel_id=novel_id,
                entity_kind=history_crud.KIND_QUEST,
                entity_key=quest.quest_id,
                chapter_number=chapter,
            )
            if snapshot is None:
                await quests_crud.delete_quest(self.session, quest.id)
                report.quests_deleted += 1
            else:
                await quests_crud.restore_quest(self.session, quest.id, snapshot.payload)
                report.quests_restored += 1

        for quest in await quests_crud.list_quests(self.session, novel_id, introduced_chapter=chapter):
            await quests_crud.delete_quest(self.session, quest.id)
            report.quests_deleted += 1

        report.graph_nodes_deleted = await graph_nodes_crud.delete_graph_nodes_for_chapter(
            self.session, novel_id, chapter
        )
        await history_crud.delete_snapshots_from(self.session, novel_id=novel_id, chapter_number=chapter)
        return report
