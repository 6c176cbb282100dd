from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncContextManager, AsyncGenerator, Callable

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from novel_continuity.storage.db import DatabaseService
from novel_continuity.storage.repo import SQLAlchemyRepo
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

SessionFactory = Callable[[], AsyncContextManager[AsyncSession]]


class EntityStore:
    """Entity store facade where every call runs in its own transaction.

    A failing upsert rolls back alone, so independent writes of one
    extraction pass are isolated from each other.
    """

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    @classmethod
    def from_db_service(cls, db_service: DatabaseService) -> "EntityStore":
        return cls(db_service.with_session)

    @asynccontextmanager
    async def _repo(self, *, write: bool) -> AsyncGenerator[SQLAlchemyRepo, None]:
        async with self._session_factory() as session:
            try:
                yield SQLAlchemyRepo(session)
                if write:
                    await session.commit()
            except Exception:
                logger.debug("Rolling back entity store transaction")
                await session.rollback()
                raise

    async def create_novel(self, **kwargs: Any) -> InsertResult:
        async with self._repo(write=True) as repo:
            return await repo.create_novel(**kwargs)

    async def get_novel(self, novel_id: int) -> NovelRow | None:
        async with self._repo(write=False) as repo:
            return await repo.get_novel(novel_id)

    async def update_planning_settings(self, **kwargs: Any) -> None:
        async with self._repo(write=True) as repo:
            await repo.update_planning_settings(**kwargs)

    async def list_volumes(self, novel_id: int) -> list[VolumeRow]:
        async with self._repo(write=False) as repo:
            return await repo.list_volumes(novel_id)

    async def upsert_volume(self, **kwargs: Any) -> InsertResult:
        async with self._repo(write=True) as repo:
            return await repo.upsert_volume(**kwargs)

    async def upsert_character_state(self, **kwargs: Any) -> InsertResult:
        async with self._repo(write=True) as repo:
            return await repo.upsert_character_state(**kwargs)

    async def update_character_inventory(self, **kwargs: Any) -> InsertResult:
        async with self._repo(write=True) as repo:
            return await repo.update_character_inventory(**kwargs)

    async def upsert_relationship(self, **kwargs: Any) -> InsertResult:
        async with self._repo(write=True) as repo:
            return await repo.upsert_relationship(**kwargs)

    async def upsert_open_quest(self, **kwargs: Any) -> InsertResult:
        async with self._repo(write=True) as repo:
            return await repo.upsert_open_quest(**kwargs)

    async def resolve_open_quest(self, *, novel_id: int, quest_id: str, chapter: int) -> bool:
        async with self._repo(write=True) as repo:
            return await repo.resolve_open_quest(novel_id=novel_id, quest_id=quest_id, chapter=chapter)

    async def upsert_graph_node(self, **kwargs: Any) -> InsertResult:
        async with self._repo(write=True) as repo:
            return await repo.upsert_graph_node(**kwargs)

    async def get_character_states(
        self,
        *,
        novel_id: int,
        limit: int | None = None,
        names: list[str] | None = None,
    ) -> list[CharacterStateRow]:
        async with self._repo(write=False) as repo:
            return await repo.get_character_states(novel_id=novel_id, limit=limit, names=names)

    async def get_top_relationships(self, *, novel_id: int, limit: int) -> list[RelationshipRow]:
        async with self._repo(write=False) as repo:
            return await repo.get_top_relationships(novel_id=novel_id, limit=limit)

    async def get_open_quests(
        self,
        *,
        novel_id: int,
        chapter: int | None,
        limit: int | None = 10,
    ) -> list[OpenQuestRow]:
        async with self._repo(write=False) as repo:
            return await repo.get_open_quests(novel_id=novel_id, chapter=chapter, limit=limit)

    async def get_quest(self, *, novel_id: int, quest_id: str) -> OpenQuestRow | None:
        async with self._repo(write=False) as repo:
            return await repo.get_quest(novel_id=novel_id, quest_id=quest_id)

    async def list_graph_nodes(
        self,
        *,
        novel_id: int,
        node_type: str,
        chapter_number: int,
        limit: int,
    ) -> list[GraphEntity]:
        async with self._repo(write=False) as repo:
            return await repo.list_graph_nodes(
                novel_id=novel_id,
                node_type=node_type,
                chapter_number=chapter_number,
                limit=limit,
            )

    async def delete_chapter_entities(self, *, novel_id: int, chapter: int) -> RollbackReport:
        async with self._repo(write=True) as repo:
            return await repo.delete_chapter_entities(novel_id=novel_id, chapter=chapter)
