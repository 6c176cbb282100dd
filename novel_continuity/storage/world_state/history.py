from __future__ import annotations

from datetime import datetime
from typing import Any

import orjson
from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, Text, delete, select, text as sa_text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from novel_continuity.storage.base import Base
from novel_continuity.storage.types import StateSnapshotRow

KIND_CHARACTER = "character"
KIND_RELATIONSHIP = "relationship"
KIND_QUEST = "quest"


class StateSnapshot(Base):
    """Previous version of a state row, captured before a later chapter overwrites it."""

    __tablename__ = "state_history"
    __table_args__ = (
        Index("idx_state_history_lookup", "novel_id", "entity_kind", "entity_key", "chapter_number"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    novel_id: Mapped[int] = mapped_column(ForeignKey("novels.id", ondelete="CASCADE"), nullable=False)
    entity_kind: Mapped[str] = mapped_column(String(32), nullable=False)
    entity_key: Mapped[str] = mapped_column(String(512), nullable=False)
    chapter_number: Mapped[int] = mapped_column(Integer, nullable=False)
    snapshot_json: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=sa_text("CURRENT_TIMESTAMP"), nullable=False
    )


async def record_snapshot(
    session: AsyncSession,
    *,
    novel_id: int,
    entity_kind: str,
    entity_key: str,
    chapter_number: int,
    payload: dict[str, Any],
) -> None:
    await session.execute(
        StateSnapshot.__table__.insert().values(
            novel_id=novel_id,
            entity_kind=entity_kind,
            entity_key=entity_key,
            chapter_number=chapter_number,
            snapshot_json=orjson.dumps(payload).decode("utf-8"),
        )
    )


async def latest_snapshot_before(
    session: AsyncSession,
    *,
    novel_id: int,
    entity_kind: str,
    entity_key: str,
    chapter_number: int,
) -> StateSnapshotRow | None:
    result = await session.execute(
        select(
            StateSnapshot.id,
            StateSnapshot.chapter_number,
            StateSnapshot.snapshot_json,
        )
        .where(
            StateSnapshot.novel_id == novel_id,
            StateSnapshot.entity_kind == entity_kind,
            StateSnapshot.entity_key == entity_key,
            StateSnapshot.chapter_number < chapter_number,
        )
        .order_by(StateSnapshot.chapter_number.desc(), StateSnapshot.id.desc())
        .limit(1)
    )
    row = result.first()
    if row is None:
        return None

    payload = orjson.loads(row[2])
    if not isinstance(payload, dict):
        raise ValueError("state snapshot must decode to a JSON object")
    return StateSnapshotRow(
        id=int(row[0]),
        novel_id=novel_id,
        entity_kind=entity_kind,
        entity_key=entity_key,
        chapter_number=int(row[1]),
        payload=payload,
    )


async def delete_snapshots_from(session: AsyncSession, *, novel_id: int, chapter_number: int) -> int:
    result = await session.execute(
        delete(StateSnapshot).where(
            StateSnapshot.novel_id == novel_id,
            StateSnapshot.chapter_number >= chapter_number,
        )
    )
    return int(result.rowcount or 0)
