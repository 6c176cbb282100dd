from __future__ import annotations

from datetime import datetime
from typing import Any

import orjson
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
    func,
    or_,
    select,
    update,
    text as sa_text,
)
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Mapped, mapped_column

from novel_continuity.storage.base import Base
from novel_continuity.storage.types import EVENT, FORESHADOW, GRAPH_NODE_TYPES, GraphEntity, InsertResult

# Events and foreshadows are history: only chapters before the current one count.
# Arcs, plotlines and profiles may be planned at the current chapter.
_STRICTLY_PRIOR_TYPES = frozenset({EVENT, FORESHADOW})
_CLOSED_STATUSES = ("resolved", "closed", "已回收", "已解决")


class GraphNode(Base):
    __tablename__ = "graph_nodes"
    __table_args__ = (
        UniqueConstraint("novel_id", "node_type", "node_key", name="uq_graph_nodes_key"),
        Index("idx_graph_nodes_type_chapter", "novel_id", "node_type", "chapter_number"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    novel_id: Mapped[int] = mapped_column(ForeignKey("novels.id", ondelete="CASCADE"), nullable=False)
    node_type: Mapped[str] = mapped_column(String(32), nullable=False)
    node_key: Mapped[str] = mapped_column(String(255), nullable=False)
    chapter_number: Mapped[int] = mapped_column(Integer, nullable=False)
    relevance_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    status: Mapped[str | None] = mapped_column(String(64), nullable=True)
    properties_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}", server_default="{}")
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=sa_text("CURRENT_TIMESTAMP"),
        onupdate=sa_text("CURRENT_TIMESTAMP"),
        nullable=False,
    )


def _to_entity(row: tuple) -> GraphEntity:
    properties = orjson.loads(row[5]) if row[5] else {}
    return GraphEntity(
        node_type=str(row[0]),
        node_key=str(row[1]),
        chapter_number=int(row[2]),
        relevance_score=None if row[3] is None else float(row[3]),
        status=row[4],
        properties=properties if isinstance(properties, dict) else {},
    )


async def upsert_graph_node(
    session: AsyncSession,
    novel_id: int,
    node_type: str,
    node_key: str,
    chapter_number: int,
    properties: dict[str, Any],
    relevance_score: float | None = None,
) -> InsertResult:
    if node_type not in GRAPH_NODE_TYPES:
        raise ValueError(f"Unsupported graph node type: {node_type}")

    status_value = properties.get("status")
    values: dict[str, Any] = {
        "chapter_number": chapter_number,
        "relevance_score": relevance_score,
        "status": str(status_value) if status_value is not None else None,
        "properties_json": orjson.dumps(properties).decode("utf-8"),
    }

    existing = await session.execute(
        select(GraphNode.id).where(
            GraphNode.novel_id == novel_id,
            GraphNode.node_type == node_type,
            GraphNode.node_key == node_key,
        )
    )
    existing_id = existing.scalar_one_or_none()
    if existing_id is not None:
        await session.execute(update(GraphNode).where(GraphNode.id == existing_id).values(**values))
        return InsertResult(id=int(existing_id), inserted=False)

    result = await session.execute(
        GraphNode.__table__.insert().values(novel_id=novel_id, node_type=node_type, node_key=node_key, **values)
    )
    if result.lastrowid is None:
        lookup = await session.execute(
            select(GraphNode.id).where(
                GraphNode.novel_id == novel_id,
                GraphNode.node_type == node_type,
                GraphNode.node_key == node_key,
            )
        )
        return InsertResult(id=int(lookup.scalar_one()), inserted=True)
    return InsertResult(id=int(result.lastrowid), inserted=True)


async def list_graph_nodes(
    session: AsyncSession,
    novel_id: int,
    node_type: str,
    chapter_number: int,
    limit: int,
) -> list[GraphEntity]:
    """Candidates of one type visible when writing ``chapter_number``.

    Newest first, then by relevance. Closed foreshadows are excluded.
    """

    stmt = select(
        GraphNode.node_type,
        GraphNode.node_key,
        GraphNode.chapter_number,
        GraphNode.relevance_score,
        GraphNode.status,
        GraphNode.properties_json,
    ).where(GraphNode.novel_id == novel_id, GraphNode.node_type == node_type)

    if node_type in _STRICTLY_PRIOR_TYPES:
        stmt = stmt.where(GraphNode.chapter_number < chapter_number)
    else:
        stmt = stmt.where(GraphNode.chapter_number <= chapter_number)

    if node_type == FORESHADOW:
        stmt = stmt.where(or_(GraphNode.status.is_(None), func.lower(GraphNode.status).not_in(_CLOSED_STATUSES)))

    stmt = stmt.order_by(
        GraphNode.chapter_number.desc(),
        GraphNode.relevance_score.is_(None),
        GraphNode.relevance_score.desc(),
        GraphNode.id.desc(),
    ).limit(limit)

    result = await session.execute(stmt)
    return [_to_entity(row) for row in result.all()]


async def delete_graph_nodes_for_chapter(session: AsyncSession, novel_id: int, chapter_number: int) -> int:
    result = await session.execute(
        delete(GraphNode).where(GraphNode.novel_id == novel_id, GraphNode.chapter_number == chapter_number)
    )
    return int(result.rowcount or 0)
