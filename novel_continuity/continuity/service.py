from __future__ import annotations

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal, Mapping

from loguru import logger

from novel_continuity.config.schema import AppConfigRoot, ContinuityConfig
from novel_continuity.continuity.context import ContextCandidates, OptimizedContext, assemble_context
from novel_continuity.continuity.graph import build_extraction_graph
from novel_continuity.continuity.planner import VolumeSelection, plan_volume
from novel_continuity.continuity.state import ExtractionState
from novel_continuity.llm.cache import SimpleCache
from novel_continuity.llm.factory import OpenAIChatClient
from novel_continuity.storage.db import init_db_service
from novel_continuity.storage.store import EntityStore
from novel_continuity.storage.types import RollbackReport

OutcomeStatus = Literal["merged", "skipped", "failed"]


@dataclass
class ExtractionOutcome:
    novel_id: int
    chapter_number: int
    status: OutcomeStatus
    reason: str | None = None
    counts: dict[str, int] = field(default_factory=dict)
    write_failures: int = 0
    warnings: list[str] = field(default_factory=list)
    llm_cache_hit: bool = False
    llm_attempts: int = 0
    runtime_seconds: float = 0.0


@dataclass
class _WriterSlot:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # Holders plus waiters; the slot is dropped when this reaches zero.
    users: int = 0


class ContinuityEngine:
    """Caller-facing entry point for extraction, context assembly and planning.

    Extraction writes for one novel are serialized with a per-novel lock.
    Context assembly and planning only read and never take the lock.
    """

    def __init__(self, config: ContinuityConfig, store: EntityStore, llm_client: Any | None = None):
        self.config = config
        self.store = store
        self.llm_client = llm_client
        self._graph = build_extraction_graph(config=config, store=store, llm_client=llm_client)
        self._locks: dict[int, _WriterSlot] = {}
        self._tasks: set[asyncio.Task] = set()

    @asynccontextmanager
    async def _novel_writer(self, novel_id: int) -> AsyncIterator[None]:
        slot = self._locks.get(novel_id)
        if slot is None:
            slot = self._locks[novel_id] = _WriterSlot()
        slot.users += 1
        try:
            async with slot.lock:
                yield
        finally:
            slot.users -= 1
            if slot.users == 0:
                del self._locks[novel_id]

    async def extract_and_merge(
        self,
        novel_id: int,
        chapter_number: int,
        chapter_title: str,
        chapter_text: str,
    ) -> ExtractionOutcome:
        """Extract state from a finished chapter and merge it into the store.

        Never raises: every failure is logged and reported on the outcome.
        """

        started_at = time.perf_counter()
        run_log = logger.bind(node="continuity_service", novel_id=novel_id, chapter=chapter_number)

        if not self.config.extraction.enabled:
            return ExtractionOutcome(novel_id, chapter_number, "skipped", reason="disabled")
        if not chapter_text or not chapter_text.strip():
            run_log.info("Empty chapter text; nothing to extract")
            return ExtractionOutcome(novel_id, chapter_number, "skipped", reason="empty_text")

        state: ExtractionState = {
            "novel_id": novel_id,
            "chapter_number": chapter_number,
            "chapter_title": chapter_title or "",
            "chapter_text": chapter_text,
        }

        try:
            async with self._novel_writer(novel_id):
                final_state = await self._graph.ainvoke(state)
        except Exception as exc:  # noqa: BLE001
            run_log.exception("Extraction pipeline failed")
            return ExtractionOutcome(
                novel_id,
                chapter_number,
                "failed",
                reason=f"{type(exc).__name__}: {exc}",
                runtime_seconds=time.perf_counter() - started_at,
            )

        runtime_seconds = time.perf_counter() - started_at
        warnings = list(final_state.get("conflict_warnings") or [])
        cache_hit = bool(final_state.get("llm_cache_hit"))
        attempts = int(final_state.get("llm_attempts") or 0)
        if final_state.get("payload") is None:
            return ExtractionOutcome(
                novel_id,
                chapter_number,
                "skipped",
                reason=final_state.get("skip_reason") or "no_payload",
                llm_cache_hit=cache_hit,
                llm_attempts=attempts,
                runtime_seconds=runtime_seconds,
            )

        mutations = dict(final_state.get("mutations") or {})
        write_failures = int(mutations.pop("write_failures", 0))
        return ExtractionOutcome(
            novel_id,
            chapter_number,
            "merged",
            counts=mutations,
            write_failures=write_failures,
            warnings=warnings,
            llm_cache_hit=cache_hit,
            llm_attempts=attempts,
            runtime_seconds=runtime_seconds,
        )

    def schedule_extraction(
        self,
        novel_id: int,
        chapter_number: int,
        chapter_title: str,
        chapter_text: str,
    ) -> asyncio.Task:
        """Run :meth:`extract_and_merge` in the background and return its task.

        The caller can acknowledge the chapter right away. Must be called from
        inside a running event loop.
        """

        task = asyncio.create_task(
            self.extract_and_merge(novel_id, chapter_number, chapter_title, chapter_text),
            name=f"extract-{novel_id}-{chapter_number}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.bind(node="continuity_service").warning("Background extraction cancelled task={}", task.get_name())
            return
        outcome = task.result()
        logger.bind(
            node="continuity_service", novel_id=outcome.novel_id, chapter=outcome.chapter_number
        ).debug("Background extraction finished status={} reason={}", outcome.status, outcome.reason)

    async def drain(self) -> list[ExtractionOutcome]:
        """Wait for every scheduled extraction still running."""

        pending = list(self._tasks)
        if not pending:
            return []
        results = await asyncio.gather(*pending, return_exceptions=True)
        return [result for result in results if isinstance(result, ExtractionOutcome)]

    async def assemble_context(
        self,
        novel_id: int,
        chapter_number: int,
        raw: ContextCandidates | Mapping[str, Any] | None = None,
    ) -> OptimizedContext:
        return await assemble_context(self.store, novel_id, chapter_number, raw, self.config.budget)

    async def select_volume(self, novel_id: int, chapter_number: int) -> VolumeSelection | None:
        return await plan_volume(self.store, novel_id, chapter_number, self.config.planner)

    async def rollback_chapter(self, novel_id: int, chapter_number: int) -> RollbackReport:
        """Remove what ``chapter_number`` contributed before it is regenerated."""

        async with self._novel_writer(novel_id):
            report = await self.store.delete_chapter_entities(novel_id=novel_id, chapter=chapter_number)
        logger.bind(node="continuity_service", novel_id=novel_id, chapter=chapter_number).info(
            "Chapter rollback skipped={} characters_restored={} characters_deleted={} quests_deleted={} nodes_deleted={}",
            report.skipped,
            report.characters_restored,
            report.characters_deleted,
            report.quests_deleted,
            report.graph_nodes_deleted,
        )
        return report


async def build_engine(config: AppConfigRoot) -> tuple[ContinuityEngine, SimpleCache]:
    """Wire the database, response cache and extraction model from config.

    The caller owns the returned cache and must close it. A missing model
    credential leaves extraction disabled instead of failing.
    """

    db_service = await init_db_service(config.storage.sqlite_path, busy_timeout_ms=config.storage.busy_timeout_ms)
    store = EntityStore.from_db_service(db_service)
    cache = SimpleCache(
        config.cache.enabled,
        config.cache.backend,
        config.app.data_dir,
        config.cache.ttl_seconds,
        namespace="continuity",
    )
    purged = cache.purge_expired()
    if purged:
        logger.bind(node="continuity_service").debug("Purged {} expired cached responses", purged)

    llm_client: OpenAIChatClient | None = None
    try:
        llm_client = OpenAIChatClient(
            config=config,
            cache=cache,
            route="extraction",
            temperature=config.continuity.extraction.temperature,
        )
    except Exception as exc:  # noqa: BLE001
        logger.bind(node="continuity_service").warning("Extraction LLM disabled; chapters will be skipped: {}", exc)

    return ContinuityEngine(config.continuity, store, llm_client), cache
