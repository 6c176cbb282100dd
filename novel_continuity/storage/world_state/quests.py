from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    delete,
    or_,
    select,
    update,
    text as sa_text,
)
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from novel_continuity.storage.base import Base
from novel_continuity.storage.types import QUEST_OPEN, QUEST_RESOLVED, InsertResult, OpenQuestRow
from novel_continuity.storage.world_state.history import KIND_QUEST, record_snapshot


class OpenQuest(Base):
    __tablename__ = "open_quests"
    __table_args__ = (
        UniqueConstraint("novel_id", "quest_id", name="uq_open_quests_novel_quest"),
        Index("idx_open_quests_status_due", "novel_id", "status", "due_chapter"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    novel_id: Mapped[int] = mapped_column(ForeignKey("novels.id", ondelete="CASCADE"), nullable=False)
    quest_id: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=QUEST_OPEN, server_default=QUEST_OPEN)
    introduced_chapter: Mapped[int | None] = mapped_column(Integer, nullable=True)
    due_chapter: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_chapter: Mapped[int | None] = mapped_column(Integer, nullable=True)
    resolved_chapter: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_progress: Mapped[str | None] = mapped_column(Text, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=sa_text("CURRENT_TIMESTAMP"),
        onupdate=sa_text("CURRENT_TIMESTAMP"),
        nullable=False,
    )


_COLUMNS = (
    OpenQuest.id,
    OpenQuest.novel_id,
    OpenQuest.quest_id,
    OpenQuest.description,
    OpenQuest.status,
    OpenQuest.introduced_chapter,
    OpenQuest.due_chapter,
    OpenQuest.last_chapter,
    OpenQuest.resolved_chapter,
    OpenQuest.last_progress,
)


def _to_row(row: tuple) -> OpenQuestRow:
    return OpenQuestRow(
        id=int(row[0]),
        novel_id=int(row[1]),
        quest_id=str(row[2]),
        description=row[3],
        status=str(row[4]),
        introduced_chapter=row[5],
        due_chapter=row[6],
        last_chapter=row[7],
        resolved_chapter=row[8],
        last_progress=row[9],
    )


def snapshot_payload(row: OpenQuestRow) -> dict[str, Any]:
    return {
        "description": row.description,
        "status": row.status,
        "introduced_chapter": row.introduced_chapter,
        "due_chapter": row.due_chapter,
        "last_chapter": row.last_chapter,
        "resolved_chapter": row.resolved_chapter,
        "last_progress": row.last_progress,
    }


async def _snapshot_if_superseded(session: AsyncSession, existing: OpenQuestRow, chapter: int) -> None:
    if existing.last_chapter is not None and existing.last_chapter < chapter:
        await record_snapshot(
            session,
            novel_id=existing.novel_id,
            entity_kind=KIND_QUEST,
            entity_key=existing.quest_id,
            chapter_number=existing.last_chapter,
            payload=snapshot_payload(existing),
        )


async def get_quest(session: AsyncSession, novel_id: int, quest_id: str) -> OpenQuestRow | None:
    result = await session.execute(
        select(*_COLUMNS).where(OpenQuest.novel_id == novel_id, OpenQuest.quest_id == quest_id)
    )
    row = result.first()
    return _to_row(row) if row is not None else None


async def list_quests(
    session: AsyncSession,
    novel_id: int,
    *,
    last_chapter: int | None = None,
    introduced_chapter: int | None = None,
) -> list[OpenQuestRow]:
    stmt = select(*_COLUMNS).where(OpenQuest.novel_id == novel_id)
    if last_chapter is not None:
        stmt = stmt.where(OpenQuest.last_chapter == last_chapter)
    if introduced_chapter is not None:
        stmt = stmt.where(OpenQuest.introduced_chapter == introduced_chapter)
    result = await session.execute(stmt.order_by(OpenQuest.id))
    return [_to_row(row) for row in result.all()]


async def list_open_quests(
    session: AsyncSession,
    novel_id: int,
    chapter: int | None = None,
    limit: int | None = 10,
) -> list[OpenQuestRow]:
    """OPEN quests not yet past due at ``chapter``, soonest due first."""

    stmt = select(*_COLUMNS).where(OpenQuest.novel_id == novel_id, OpenQuest.status == QUEST_OPEN)
    if chapter is not None:
        stmt = stmt.where(or_(OpenQuest.due_chapter.is_(None), OpenQuest.due_chapter >= chapter))
    stmt = stmt.order_by(
        OpenQuest.due_chapter.is_(None),
        OpenQuest.due_chapter.asc(),
        OpenQuest.last_chapter.desc(),
        OpenQuest.id,
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return [_to_row(row) for row in result.all()]


async def upsert_open_quest(
    session: AsyncSession,
    novel_id: int,
    quest_id: str,
    description: str | None,
    status: str,
    introduced_chapter: int | None,
    due_chapter: int | None,
    updated_chapter: int,
    progress: str | None = None,
) -> InsertResult:
    """Create or advance a quest. A RESOLVED quest is never reopened."""

    if status not in {QUEST_OPEN, QUEST_RESOLVED}:
        raise ValueError(f"Unsupported quest status: {status}")

    existing = await get_quest(session, novel_id, quest_id)
    if existing is None:
        result = await session.execute(
            OpenQuest.__table__.insert().values(
                novel_id=novel_id,
                quest_id=quest_id,
                description=description,
                status=status,
                introduced_chapter=introduced_chapter if introduced_chapter is not None else updated_chapter,
                due_chapter=due_chapter,
                last_chapter=updated_chapter,
                resolved_chapter=updated_chapter if status == QUEST_RESOLVED else None,
                last_progress=progress,
            )
        )
        if result.lastrowid is None:
            created = await get_quest(session, novel_id, quest_id)
            if created is None:
                raise RuntimeError("quest insert did not persist")
            return InsertResult(id=created.id, inserted=True)
        return InsertResult(id=int(result.lastrowid), inserted=True)

    if existing.status == QUEST_RESOLVED:
        return InsertResult(id=existing.id, inserted=False, applied=False)
    if existing.last_chapter is not None and updated_chapter < existing.last_chapter:
        return InsertResult(id=existing.id, inserted=False, applied=False)

    await _snapshot_if_superseded(session, existing, updated_chapter)

    values: dict[str, Any] = {
        "status": status,
        "due_chapter": due_chapter,
        "last_chapter": updated_chapter,
    }
    if description:
        values["description"] = description
    if progress:
        values["last_progress"] = progress
    if existing.introduced_chapter is None:
        values["introduced_chapter"] = introduced_chapter if introduced_chapter is not None else updated_chapter
    if status == QUEST_RESOLVED:
        values["resolved_chapter"] = updated_chapter

    await session.execute(update(OpenQuest).where(OpenQuest.id == existing.id).values(**values))
    return InsertResult(id=existing.id, inserted=False)


async def resolve_open_quest(session: AsyncSession, novel_id: int, quest_id: str, chapter: int) -> bool:
    """Mark a known quest RESOLVED. Returns False when nothing changed."""

    existing = await get_quest(session, novel_id, quest_id)
    if existing is None or existing.status == QUEST_RESOLVED:
        return False

    await _snapshot_if_superseded(session, existing, chapter)
    last_chapter = chapter if existing.last_chapter is None else max(existing.last_chapter, chapter)
    await session.execute(
        update(OpenQuest)
        .where(OpenQuest.id == existing.id)
        .values(status=QUEST_RESOLVED, resolved_chapter=chapter, last_chapter=last_chapter)
    )
    return True


async def restore_quest(session: AsyncSession, quest_row_id: int, payload: dict[str, Any]) -> None:
    await session.execute(
        update(OpenQuest)
        .where(OpenQuest.id == quest_row_id)
        .values(
            description=payload.get("description"),
            status=str(payload.get("status") or QUEST_OPEN),
            introduced_chapter=payload.get("introduced_chapter"),
            due_chapter=payload.get("due_chapter"),
            last_chapter=payload.get("last_chapter"),
            resolved_chapter=payload.get("resolved_chapter"),
            last_progress=payload.get("last_progress"),
        )
    )


async def delete_quest(session: AsyncSession, quest_row_id: int) -> None:
    await session.execute(delete(OpenQuest).where(OpenQuest.id == quest_row_id))
