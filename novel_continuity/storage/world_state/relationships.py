from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    delete,
    select,
    update,
    text as sa_text,
)
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from novel_continuity.storage.base import Base
from novel_continuity.storage.types import InsertResult, RelationshipRow
from novel_continuity.storage.world_state.history import KIND_RELATIONSHIP, record_snapshot


class RelationshipState(Base):
    __tablename__ = "relationship_states"
    __table_args__ = (
        UniqueConstraint("novel_id", "character_a", "character_b", name="uq_relationship_states_pair"),
        Index("idx_relationship_states_strength", "novel_id", "strength"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    novel_id: Mapped[int] = mapped_column(ForeignKey("novels.id", ondelete="CASCADE"), nullable=False)
    # character_a <= character_b so each unordered pair maps to one row.
    character_a: Mapped[str] = mapped_column(String(255), nullable=False)
    character_b: Mapped[str] = mapped_column(String(255), nullable=False)
    relation_type: Mapped[str] = mapped_column(Text, nullable=False)
    strength: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    first_chapter: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_chapter: Mapped[int | None] = mapped_column(Integer, nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=sa_text("CURRENT_TIMESTAMP"),
        onupdate=sa_text("CURRENT_TIMESTAMP"),
        nullable=False,
    )


_COLUMNS = (
    RelationshipState.id,
    RelationshipState.novel_id,
    RelationshipState.character_a,
    RelationshipState.character_b,
    RelationshipState.relation_type,
    RelationshipState.strength,
    RelationshipState.first_chapter,
    RelationshipState.last_chapter,
)


def ordered_pair(first: str, second: str) -> tuple[str, str]:
    return (first, second) if first <= second else (second, first)


def pair_key(first: str, second: str) -> str:
    a, b = ordered_pair(first, second)
    return f"{a}|{b}"


def _to_row(row: tuple) -> RelationshipRow:
    return RelationshipRow(
        id=int(row[0]),
        novel_id=int(row[1]),
        character_a=str(row[2]),
        character_b=str(row[3]),
        relation_type=str(row[4]),
        strength=float(row[5]),
        first_chapter=row[6],
        last_chapter=row[7],
    )


def snapshot_payload(row: RelationshipRow) -> dict[str, Any]:
    return {
        "relation_type": row.relation_type,
        "strength": row.strength,
        "first_chapter": row.first_chapter,
        "last_chapter": row.last_chapter,
    }


async def get_relationship(
    session: AsyncSession,
    novel_id: int,
    first: str,
    second: str,
) -> RelationshipRow | None:
    a, b = ordered_pair(first, second)
    result = await session.execute(
        select(*_COLUMNS).where(
            RelationshipState.novel_id == novel_id,
            RelationshipState.character_a == a,
            RelationshipState.character_b == b,
        )
    )
    row = result.first()
    return _to_row(row) if row is not None else None


async def list_relationships(
    session: AsyncSession,
    novel_id: int,
    limit: int | None = None,
    last_chapter: int | None = None,
) -> list[RelationshipRow]:
    """Strongest relationships first, most recently touched breaking ties."""

    stmt = select(*_COLUMNS).where(RelationshipState.novel_id == novel_id)
    if last_chapter is not None:
        stmt = stmt.where(RelationshipState.last_chapter == last_chapter)
    stmt = stmt.order_by(
        RelationshipState.strength.desc(),
        RelationshipState.last_chapter.desc(),
        RelationshipState.id,
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    result = await session.execute(stmt)
    return [_to_row(row) for row in result.all()]


async def upsert_relationship(
    session: AsyncSession,
    novel_id: int,
    first: str,
    second: str,
    relation_type: str,
    strength: float,
    chapter: int,
) -> InsertResult:
    if first == second:
        raise ValueError("relationship requires two distinct characters")
    if not 0 <= strength <= 1:
        raise ValueError("relationship strength must be within [0, 1]")

    a, b = ordered_pair(first, second)
    existing = await get_relationship(session, novel_id, a, b)
    if existing is None:
        result = await session.execute(
            RelationshipState.__table__.insert().values(
                novel_id=novel_id,
                character_a=a,
                character_b=b,
                relation_type=relation_type,
                strength=strength,
                first_chapter=chapter,
                last_chapter=chapter,
            )
        )
        if result.lastrowid is None:
            relationship = await get_relationship(session, novel_id, a, b)
            if relationship is None:
                raise RuntimeError("relationship insert did not persist")
            return InsertResult(id=relationship.id, inserted=True)
        return InsertResult(id=int(result.lastrowid), inserted=True)

    if existing.last_chapter is not None and chapter < existing.last_chapter:
        return InsertResult(id=existing.id, inserted=False, applied=False)

    if existing.last_chapter is not None and existing.last_chapter < chapter:
        await record_snapshot(
            session,
            novel_id=novel_id,
            entity_kind=KIND_RELATIONSHIP,
            entity_key=pair_key(a, b),
            chapter_number=existing.last_chapter,
            payload=snapshot_payload(existing),
        )

    await session.execute(
        update(RelationshipState)
        .where(RelationshipState.id == existing.id)
        .values(relation_type=relation_type, strength=strength, last_chapter=chapter)
    )
    return InsertResult(id=existing.id, inserted=False)


async def restore_relationship(session: AsyncSession, relationship_id: int, payload: dict[str, Any]) -> None:
    await session.execute(
        update(RelationshipState)
        .where(RelationshipState.id == relationship_id)
        .values(
            relation_type=str(payload.get("relation_type") or ""),
            strength=float(payload.get("strength", 0.5)),
            first_chapter=payload.get("first_chapter"),
            last_chapter=payload.get("last_chapter"),
        )
    )


async def delete_relationship(session: AsyncSession, relationship_id: int) -> None:
    await session.execute(delete(RelationshipState).where(RelationshipState.id == relationship_id))
