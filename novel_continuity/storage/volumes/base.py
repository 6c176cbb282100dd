from __future__ import annotations

from sqlalchemy import ForeignKey, Index, Integer, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from novel_continuity.storage.base import Base


class Volume(Base):
    __tablename__ = "volumes"
    __table_args__ = (
        UniqueConstraint("novel_id", "volume_number", name="uq_volumes_novel_number"),
        Index("idx_volumes_novel_id", "novel_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    novel_id: Mapped[int] = mapped_column(ForeignKey("novels.id", ondelete="CASCADE"), nullable=False)
    volume_number: Mapped[int] = mapped_column(Integer, nullable=False)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    chapter_start: Mapped[int | None] = mapped_column(Integer, nullable=True)
    chapter_end: Mapped[int | None] = mapped_column(Integer, nullable=True)
    outline: Mapped[str | None] = mapped_column(Text, nullable=True)
