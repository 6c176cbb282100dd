from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime, Integer, Text, text as sa_text
from sqlalchemy.orm import Mapped, mapped_column

from novel_continuity.storage.base import Base


class Novel(Base):
    __tablename__ = "novels"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    title: Mapped[str | None] = mapped_column(Text, nullable=True)
    planned_volume_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    target_total_chapters: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=sa_text("CURRENT_TIMESTAMP"), nullable=False
    )
