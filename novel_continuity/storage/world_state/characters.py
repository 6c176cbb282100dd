from __future__ import annotations

from datetime import datetime
from typing import Any

import orjson
from sqlalchemy import (
    Boolean,
    DateTime,
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
from novel_continuity.storage.types import CharacterStateRow, InsertResult
from novel_continuity.storage.world_state.history import KIND_CHARACTER, record_snapshot


class CharacterState(Base):
    __tablename__ = "character_states"
    __table_args__ = (
        UniqueConstraint("novel_id", "name", name="uq_character_states_novel_name"),
        Index("idx_character_states_recency", "novel_id", "last_chapter"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    novel_id: Mapped[int] = mapped_column(ForeignKey("novels.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    location: Mapped[str | None] = mapped_column(Text, nullable=True)
    realm: Mapped[str | None] = mapped_column(Text, nullable=True)
    alive: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default=sa_text("1"))
    status: Mapped[str | None] = mapped_column(Text, nullable=True)
    inventory_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]", server_default="[]")
    first_chapter: Mapped[int | None] = mapped_column(Integer, nullable=True)
    last_chapter: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=sa_text("CURRENT_TIMESTAMP"), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=sa_text("CURRENT_TIMESTAMP"),
        onupdate=sa_text("CURRENT_TIMESTAMP"),
        nullable=False,
    )


_COLUMNS = (
    CharacterState.id,
    CharacterState.novel_id,
    CharacterState.name,
    CharacterState.location,
    CharacterState.realm,
    CharacterState.alive,
    CharacterState.status,
    CharacterState.inventory_json,
    CharacterState.first_chapter,
    CharacterState.last_chapter,
)


def _decode_inventory(raw: str | None) -> list[str]:
    if not raw:
        return []
    payload = orjson.loads(raw)
    if not isinstance(payload, list):
        return []
    return [str(item) for item in payload]


def _to_row(row: tuple) -> CharacterStateRow:
    return CharacterStateRow(
        id=int(row[0]),
        novel_id=int(row[1]),
        name=str(row[2]),
        location=row[3],
        realm=row[4],
        alive=bool(row[5]),
        status=row[6],
        inventory=_decode_inventory(row[7]),
        first_chapter=row[8],
        last_chapter=row[9],
    )


def snapshot_payload(row: CharacterStateRow) -> dict[str, Any]:
    return {
        "location": row.location,
        "realm": row.realm,
        "alive": row.alive,
        "status": row.status,
        "inventory": list(row.inventory),
        "first_chapter": row.first_chapter,
        "last_chapter": row.last_chapter,
    }


async def get_character_state(session: AsyncSession, novel_id: int, name: str) -> CharacterStateRow | None:
    result = await session.execute(
        select(*_COLUMNS).where(CharacterState.novel_id == novel_id, CharacterState.name == name)
    )
    row = result.first()
    return _to_row(row) if row is not None else None


async def list_character_states(
    session: AsyncSession,
    novel_id: int,
    limit: int | None = None,
    names: list[str] | None = None,
) -> list[CharacterStateRow]:
    """Most recently updated characters first."""

    stmt = select(*_COLUMNS).where(CharacterState.novel_id == novel_id)
    if names:
        stmt = stmt.where(CharacterState.name.in_(names))
    stmt = stmt.order_by(
        CharacterState.last_chapter.is_(None),
        CharacterState.last_chapter.desc(),
        CharacterState.name,
    )
    if limit is not None:
        stmt = stmt.limit(limit)

    result = await session.execute(stmt)
    return [_to_row(row) for row in result.all()]


async def _snapshot_if_superseded(
    session: AsyncSession,
    existing: CharacterStateRow,
    chapter: int,
) -> None:
    if existing.last_chapter is not None and existing.last_chapter < chapter:
        await record_snapshot(
            session,
            novel_id=existing.novel_id,
            entity_kind=KIND_CHARACTER,
            entity_key=existing.name,
            chapter_number=existing.last_chapter,
            payload=snapshot_payload(existing),
        )


async def _insert(session: AsyncSession, **values: Any) -> int:
    result = await session.execute(CharacterState.__table__.insert().values(**values))
    if result.lastrowid is not None:
        return int(result.lastrowid)
    lookup = await session.execute(
        select(CharacterState.id).where(
            CharacterState.novel_id == values["novel_id"],
            CharacterState.name == values["name"],
        )
    )
    return int(lookup.scalar_one())


async def upsert_character_state(
    session: AsyncSession,
    novel_id: int,
    name: str,
    chapter: int,
    location: str | None = None,
    realm: str | None = None,
    alive: bool | None = None,
    status: str | None = None,
) -> InsertResult:
    """Insert or coalesce a character's latest state.

    ``None`` fields keep the stored value. Writes for a chapter older than the
    stored ``last_chapter`` are ignored.
    """

    existing = await get_character_state(session, novel_id, name)
    if existing is None:
        character_id = await _insert(
            session,
            novel_id=novel_id,
            name=name,
            location=location,
            realm=realm,
            alive=True if alive is None else alive,
            status=status,
            inventory_json="[]",
            first_chapter=chapter,
            last_chapter=chapter,
        )
        return InsertResult(id=character_id, inserted=True)

    if existing.last_chapter is not None and chapter < existing.last_chapter:
        return InsertResult(id=existing.id, inserted=False, applied=False)

    await _snapshot_if_superseded(session, existing, chapter)

    values: dict[str, Any] = {"last_chapter": chapter}
    if location is not None:
        values["location"] = location
    if realm is not None:
        values["realm"] = realm
    if alive is not None:
        values["alive"] = alive
    if status is not None:
        values["status"] = status
    if existing.first_chapter is None:
        values["first_chapter"] = chapter

    await session.execute(update(CharacterState).where(CharacterState.id == existing.id).values(**values))
    return InsertResult(id=existing.id, inserted=False)


async def update_character_inventory(
    session: AsyncSession,
    novel_id: int,
    name: str,
    items: list[str],
    chapter: int,
) -> InsertResult:
    """Replace the inventory list, creating the character if it is unknown."""

    inventory_json = orjson.dumps(list(items)).decode("utf-8")
    existing = await get_character_state(session, novel_id, name)
    if existing is None:
        character_id = await _insert(
            session,
            novel_id=novel_id,
            name=name,
            alive=True,
            inventory_json=inventory_json,
            first_chapter=chapter,
            last_chapter=chapter,
        )
        return InsertResult(id=character_id, inserted=True)

    if existing.last_chapter is not None and chapter < existing.last_chapter:
        return InsertResult(id=existing.id, inserted=False, applied=False)

    await _snapshot_if_superseded(session, existing, chapter)
    await session.execute(
        update(CharacterState)
        .where(CharacterState.id == existing.id)
        .values(inventory_json=inventory_json, last_chapter=chapter)
    )
    return InsertResult(id=existing.id, inserted=False)


async def restore_character_state(session: AsyncSession, character_id: int, payload: dict[str, Any]) -> None:
    inventory = payload.get("inventory") or []
    await session.execute(
        update(CharacterState)
        .where(CharacterState.id == character_id)
        .values(
            location=payload.get("location"),
            realm=payload.get("realm"),
            alive=bool(payload.get("alive", True)),
            status=payload.get("status"),
            inventory_json=orjson.dumps([str(item) for item in inventory]).decode("utf-8"),
            first_chapter=payload.get("first_chapter"),
            last_chapter=payload.get("last_chapter"),
        )
    )


async def delete_character_state(session: AsyncSession, character_id: int) -> None:
    await session.execute(delete(CharacterState).where(CharacterState.id == character_id))
