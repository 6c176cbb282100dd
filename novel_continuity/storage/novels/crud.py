from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from novel_continuity.storage.novels.base import Novel
from novel_continuity.storage.types import InsertResult, NovelRow


async def create_novel(
    session: AsyncSession,
    title: str | None,
    planned_volume_count: int | None = None,
    target_total_chapters: int | None = None,
) -> InsertResult:
    result = await session.execute(
        Novel.__table__.insert().values(
            title=title,
            planned_volume_count=planned_volume_count,
            target_total_chapters=target_total_chapters,
        )
    )
    if result.lastrowid is None:
        lookup = await session.execute(select(Novel.id).order_by(Novel.id.desc()).limit(1))
        novel_id = int(lookup.scalar_one())
    else:
        novel_id = int(result.lastrowid)
    return InsertResult(id=novel_id, inserted=True)


async def get_novel(session: AsyncSession, novel_id: int) -> NovelRow | None:
    result = await session.execute(select(Novel).where(Novel.id == novel_id))
    novel = result.scalar_one_or_none()
    if novel is None:
        return None
    return NovelRow(
        id=int(novel.id),
        title=novel.title,
        planned_volume_count=novel.planned_volume_count,
        target_total_chapters=novel.target_total_chapters,
    )


async def update_planning_settings(
    session: AsyncSession,
    novel_id: int,
    planned_volume_count: int | None,
    target_total_chapters: int | None,
) -> None:
    values: dict[str, int | None] = {}
    if planned_volume_count is not None:
        values["planned_volume_count"] = planned_volume_count
    if target_total_chapters is not None:
        values["target_total_chapters"] = target_total_chapters
    if not values:
        return
    await session.execute(update(Novel).where(Novel.id == novel_id).values(**values))
