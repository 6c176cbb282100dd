"""Map a chapter number onto a volume with elastic end boundaries."""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Sequence

from loguru import logger

from novel_continuity.config.schema import PlannerConfig
from novel_continuity.storage.types import NovelRow, VolumeRow


@dataclass(frozen=True)
class PlanningSettings:
    planned_volume_count: int | None = None
    target_total_chapters: int | None = None

    @classmethod
    def from_novel(cls, novel: NovelRow | None) -> "PlanningSettings":
        if novel is None:
            return cls()
        return cls(novel.planned_volume_count, novel.target_total_chapters)


@dataclass
class VolumeSelection:
    volume_number: int
    planned_volume_count: int
    target_total_chapters: int
    start_chapter: int
    end_chapter: int
    soft_end_chapter: int
    chapter_index: int
    volume_span: int
    progress: float
    progress_description: str
    overrun: bool
    overrun_chapters: int
    buffer_allowance: int
    buffer_remaining: int
    remaining_chapters: int
    fallback: bool
    extended: bool = False
    volume_id: int | None = None
    title: str | None = None
    outline: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def buffer_for_span(span: int, config: PlannerConfig) -> int:
    return max(config.buffer_min, math.ceil(max(1, span) * config.buffer_ratio))


def resolve_planned_volume_count(volumes: Sequence[VolumeRow], settings: PlanningSettings) -> int:
    if settings.planned_volume_count and settings.planned_volume_count > 0:
        return settings.planned_volume_count
    return len({volume.volume_number for volume in volumes if volume.volume_number > 0})


def resolve_target_total_chapters(
    volumes: Sequence[VolumeRow],
    settings: PlanningSettings,
    planned_volume_count: int,
    config: PlannerConfig,
) -> int:
    """Explicit setting, else the persisted end when every volume is ranged, else a default."""

    if settings.target_total_chapters and settings.target_total_chapters > 0:
        return settings.target_total_chapters
    ranged = [volume for volume in volumes if volume.has_range]
    if volumes and len(ranged) == len(volumes) == planned_volume_count:
        max_end = max(volume.chapter_end or 0 for volume in ranged)
        if max_end > 0:
            return max_end
    elif ranged:
        logger.debug("Only {} of {} volumes carry a range; using default total", len(ranged), len(volumes))
    return planned_volume_count * config.default_volume_size


def _progress_percent(index: int, span: int) -> float:
    ratio = (Decimal(index) / Decimal(span)).quantize(Decimal("0.0001"), rounding=ROUND_HALF_UP)
    return float(ratio * 100)


def _describe(progress: float, overrun_chapters: int, buffer_remaining: int, remaining: int, language: str) -> str:
    percent = Decimal(str(progress)).quantize(Decimal("0.1"), rounding=ROUND_HALF_UP)
    if language == "en":
        text = f"Progress: {percent}%"
        if overrun_chapters:
            text += f", {overrun_chapters} chapters past the planned end"
            text += f", {buffer_remaining} buffer chapters left" if buffer_remaining else ", buffer exhausted"
        elif remaining:
            text += f", about {remaining} chapters left in this volume"
        return text

    text = f"目标进度：{percent}%"
    if overrun_chapters:
        text += f"，已超过原定终点 {overrun_chapters} 章"
        text += f"，可延后余量 {buffer_remaining} 章" if buffer_remaining else "，已用尽预留缓冲"
    elif remaining:
        text += f"，预计本卷剩余 {remaining} 章"
    return text


def _build_selection(
    *,
    chapter_number: int,
    volume_number: int,
    start: int,
    end: int,
    soft_end: int,
    buffer: int,
    planned: int,
    total: int,
    fallback: bool,
    extended: bool,
    volume: VolumeRow | None,
    config: PlannerConfig,
) -> VolumeSelection:
    span = max(1, end - start + 1)
    index = max(1, chapter_number - start + 1)
    progress = _progress_percent(index, span)
    overrun_chapters = max(0, chapter_number - end)
    buffer_remaining = max(0, soft_end - chapter_number)
    remaining = max(0, end - chapter_number + 1)
    return VolumeSelection(
        volume_number=volume_number,
        planned_volume_count=planned,
        target_total_chapters=total,
        start_chapter=start,
        end_chapter=end,
        soft_end_chapter=soft_end,
        chapter_index=index,
        volume_span=span,
        progress=progress,
        progress_description=_describe(progress, overrun_chapters, buffer_remaining, remaining, config.language),
        overrun=overrun_chapters > 0,
        overrun_chapters=overrun_chapters,
        buffer_allowance=buffer,
        buffer_remaining=buffer_remaining,
        remaining_chapters=remaining,
        fallback=fallback,
        extended=extended,
        volume_id=volume.id if volume is not None else None,
        title=volume.title if volume is not None else None,
        outline=volume.outline if volume is not None else None,
    )


def select_volume(
    volumes: Sequence[VolumeRow],
    settings: PlanningSettings,
    chapter_number: int,
    config: PlannerConfig,
) -> VolumeSelection | None:
    """Pick the volume that owns ``chapter_number``.

    Persisted ranges win when they contain the chapter and are not
    implausibly short. A chapter just past the last persisted range extends
    that volume within its buffer. Otherwise ranges are computed from the
    planning parameters and the result is flagged ``fallback``. Returns None
    only when no range can be derived at all.
    """

    if chapter_number < 1:
        return None

    ordered = sorted(volumes, key=lambda volume: volume.volume_number)
    planned = resolve_planned_volume_count(ordered, settings) or config.default_volume_count
    total = resolve_target_total_chapters(ordered, settings, planned, config) or planned * config.default_volume_size
    expected_span = max(1, math.ceil(total / planned))
    log = logger.bind(node="volume_planner", chapter=chapter_number)

    direct = next(
        (
            volume
            for volume in ordered
            if volume.has_range and volume.chapter_start <= chapter_number <= volume.chapter_end
        ),
        None,
    )
    if direct is not None:
        start, end = int(direct.chapter_start), int(direct.chapter_end)
        minimum_span = max(config.buffer_min, math.ceil(expected_span * config.min_span_ratio))
        if end - start + 1 < minimum_span:
            log.warning(
                "Ignoring implausibly short volume volume={} span={} expected={}",
                direct.volume_number,
                end - start + 1,
                expected_span,
            )
        else:
            buffer = buffer_for_span(end - start + 1, config)
            return _build_selection(
                chapter_number=chapter_number,
                volume_number=direct.volume_number,
                start=start,
                end=end,
                soft_end=end + buffer,
                buffer=buffer,
                planned=planned,
                total=total,
                fallback=False,
                extended=False,
                volume=direct,
                config=config,
            )

    preceding = [volume for volume in ordered if volume.has_range and volume.chapter_end < chapter_number]
    if preceding:
        last = max(preceding, key=lambda volume: volume.chapter_end)
        start, end = int(last.chapter_start), int(last.chapter_end)
        buffer = buffer_for_span(end - start + 1, config)
        if chapter_number <= end + buffer:
            return _build_selection(
                chapter_number=chapter_number,
                volume_number=last.volume_number,
                start=start,
                end=end,
                soft_end=end + buffer,
                buffer=buffer,
                planned=planned,
                total=total,
                fallback=True,
                extended=True,
                volume=last,
                config=config,
            )

    by_number = {volume.volume_number: volume for volume in ordered}
    base_start = 1
    for number in range(1, planned + 1):
        is_last = number == planned
        base_end = total if is_last else min(total, base_start + expected_span - 1)
        buffer = buffer_for_span(base_end - base_start + 1, config)
        soft_start = 1 if number == 1 else max(1, base_start - buffer)
        soft_end = base_end + buffer
        if chapter_number >= soft_start and (chapter_number <= soft_end or is_last):
            if is_last and chapter_number > soft_end:
                soft_end = chapter_number
            persisted = by_number.get(number)
            return _build_selection(
                chapter_number=chapter_number,
                volume_number=number,
                start=base_start,
                end=base_end,
                soft_end=soft_end,
                buffer=buffer,
                planned=planned,
                total=total,
                fallback=persisted is None or not persisted.has_range,
                extended=False,
                volume=persisted,
                config=config,
            )
        base_start = base_end + 1

    return None


async def plan_volume(
    store: Any,
    novel_id: int,
    chapter_number: int,
    config: PlannerConfig,
) -> VolumeSelection | None:
    """Load volumes and planning settings, then run :func:`select_volume`."""

    log = logger.bind(node="volume_planner", novel_id=novel_id, chapter=chapter_number)
    novel = await store.get_novel(novel_id)
    volumes = await store.list_volumes(novel_id)
    if novel is None and not volumes:
        log.warning("No novel or volumes found; cannot plan")
        return None

    selection = select_volume(volumes, PlanningSettings.from_novel(novel), chapter_number, config)
    if selection is None:
        log.warning("No volume range could be derived")
    else:
        log.info(
            "Selected volume={} range={}-{} soft_end={} fallback={}",
            selection.volume_number,
            selection.start_chapter,
            selection.end_chapter,
            selection.soft_end_chapter,
            selection.fallback,
        )
    return selection
