from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator

from loguru import logger
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from novel_continuity.storage.base import Base, import_all_models

_db_service: "DatabaseService | None" = None


def _build_sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path.resolve().as_posix()}"


class DatabaseService:
    """Async engine and session factory for the entity store.

    Background extraction writes while context assembly reads, so every
    connection runs in WAL mode and waits on a busy database instead of
    failing straight away.
    """

    def __init__(self, db_url: str, *, busy_timeout_ms: int = 5000):
        self.db_url = db_url
        self.engine: AsyncEngine = create_async_engine(db_url, future=True)
        self._sessionmaker = async_sessionmaker(self.engine, expire_on_commit=False)

        @event.listens_for(self.engine.sync_engine, "connect")
        def _configure_connection(dbapi_connection, _connection_record) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON;")
            cursor.execute("PRAGMA journal_mode=WAL;")
            cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)};")
            cursor.close()

    async def init_models(self) -> None:
        import_all_models()
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def with_session(self) -> AsyncGenerator[AsyncSession, None]:
        async with self._sessionmaker() as session:
            yield session

    async def dispose(self) -> None:
        await self.engine.dispose()


async def init_db_service(db_path: Path, *, busy_timeout_ms: int = 5000) -> DatabaseService:
    global _db_service
    if _db_service is None:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        service = DatabaseService(_build_sqlite_url(db_path), busy_timeout_ms=busy_timeout_ms)
        await service.init_models()
        logger.debug("Entity store ready at {}", db_path)
        _db_service = service
    return _db_service


async def shutdown_db_service() -> None:
    global _db_service
    if _db_service is None:
        return
    await _db_service.dispose()
    _db_service = None
