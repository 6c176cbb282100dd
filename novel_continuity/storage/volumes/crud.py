from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from novel_continuity.storage.types import InsertResult, VolumeRow
from novel_continuity.storage.volumes.base import Volume


def _to_row(row: tuple) -> VolumeRow:
    return VolumeRow(
        id=int(row[0]),
        novel_id=int(row[1]),
        volume_number=int(row[2]),
        title=row[3],
        chapter_start=row[4],
        chapter_end=row[5],
        outline=row[6],
    )


async def list_volumes(session: AsyncSession, novel_id: int) -> list[VolumeRow]:
    result = await session.execute(
        select(
            Volume.id,
            Volume.novel_id,
            Volume.volume_number,
            Volume.title,
            Volume.chapter_start,
            Volume.chapter_end,
            Volume.outline,
        )
        .where(Volume.novel_id == novel_id)
        .order_by(Volume.volume_number)
    )
    return [_to_row(row) for row in result.all()]


async def upsert_volume(
    session: AsyncSession,
    novel_id: int,
    volume_number: int,
    title: str | None = None,
    chapter_start: int | None = None,
    chapter_end: int | None = None,
    outline: str | None = None,
) -> InsertResult:
    if chapter_start is not None and chapter_end is not None and chapter_end < chapter_start:
        raise ValueError("chapter_end must not precede chapter_start")

    existing = await session.execute(
        select(Volume.id).where(Volume.novel_id == novel_id, Volume.volume_number == volume_number)
    )
    existing_id = existing.scalar_one_or_none()

    if existing_id is None:
        result = await session.execute(
            Volume.__table__.insert().values(
                novel_id=novel_id,
                volume_number=volume_number,
                title=title,
                chapter_start=chapter_start,
                chapter_end=chapter_end,
                outline=outline,
            )
        )
        if result.lastrowid is None:
            lookup = await session.execute(
                select(Volume.id).where(Volume.novel_id == novel_id, Volume.volume_number == volume_number)
            )
            volume_id = int(lookup.scalar_one())
        else:
            volume_id = int(result.lastrowid)
        return InsertResult(id=volume_id, inserted=True)

    values: dict[str, object] = {"chapter_start": chapter_start, "chapter_end": chapter_end}
    if title is not None:
        values["title"] = title
    if outline is not None:
        values["outline"] = outline
    await session.execute(update(Volume).where(Volume.id == existing_id).values(**values))
    return InsertResult(id=int(existing_id), inserted=False)
