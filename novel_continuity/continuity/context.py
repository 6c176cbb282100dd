"""Context assembly: score, filter and digest stored state for the next chapter."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, is_dataclass, replace
from typing import Any, Mapping, Sequence

import orjson
from loguru import logger

from novel_continuity.config.schema import ContextBudgetConfig
from novel_continuity.continuity.scoring import estimate_tokens, resolve_importance, truncate_text
from novel_continuity.storage.types import (
    CHARACTER_ARC,
    CHARACTER_PROFILE,
    CONFLICT_ARC,
    EVENT,
    FORESHADOW,
    PLOTLINE,
    GraphEntity,
)

# Candidate field -> (graph node type, accepted mapping keys)
GRAPH_CATEGORIES: dict[str, tuple[str, tuple[str, ...]]] = {
    "events": (EVENT, ("events",)),
    "foreshadows": (FORESHADOW, ("foreshadows", "foreshadowing")),
    "conflict_arcs": (CONFLICT_ARC, ("conflict_arcs", "conflictArcs", "conflicts")),
    "character_arcs": (CHARACTER_ARC, ("character_arcs", "characterArcs")),
    "plotlines": (PLOTLINE, ("plotlines",)),
    "character_profiles": (CHARACTER_PROFILE, ("character_profiles", "characterProfiles")),
}

_PLAIN_CATEGORIES: dict[str, tuple[str, ...]] = {
    "recent_chapters": ("recent_chapters", "recentChapters", "recentFullChapters"),
    "recent_summaries": ("recent_summaries", "recentSummaries", "recentSummary"),
    "character_states": ("character_states", "characterStates"),
    "relationships": ("relationships", "relationshipStates", "relationship_states"),
    "open_quests": ("open_quests", "openQuests"),
}

_SIGNAL_CATEGORIES = ("events", "foreshadows", "conflict_arcs", "character_arcs")


def _pick(data: Mapping[str, Any], keys: Sequence[str]) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return None


def _prop(entity: GraphEntity, *keys: str) -> Any:
    for key in keys:
        value = entity.properties.get(key)
        if value is not None:
            return value
    return None


def _as_entities(node_type: str, items: Any) -> list[GraphEntity] | None:
    if items is None:
        return None
    entities = []
    for item in items:
        if isinstance(item, GraphEntity):
            entities.append(item)
        elif isinstance(item, Mapping):
            entities.append(GraphEntity.from_mapping(node_type, item))
    return entities


@dataclass
class ContextCandidates:
    """Raw candidate lists for one chapter.

    ``None`` means the caller did not supply the category, so
    :func:`assemble_context` reads it from the store. An empty list is kept
    as an explicit "nothing".
    """

    events: list[GraphEntity] | None = None
    foreshadows: list[GraphEntity] | None = None
    conflict_arcs: list[GraphEntity] | None = None
    character_arcs: list[GraphEntity] | None = None
    plotlines: list[GraphEntity] | None = None
    character_profiles: list[GraphEntity] | None = None
    recent_chapters: list[dict[str, Any]] | None = None
    recent_summaries: list[Any] | None = None
    character_states: list[Any] | None = None
    relationships: list[Any] | None = None
    open_quests: list[Any] | None = None
    chapter_plan: dict[str, Any] | None = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any] | None) -> "ContextCandidates":
        data = data or {}
        values: dict[str, Any] = {}
        for name, (node_type, keys) in GRAPH_CATEGORIES.items():
            values[name] = _as_entities(node_type, _pick(data, keys))
        for name, keys in _PLAIN_CATEGORIES.items():
            raw = _pick(data, keys)
            values[name] = list(raw) if raw is not None else None
        plan = _pick(data, ("chapter_plan", "chapterPlan"))
        values["chapter_plan"] = dict(plan) if isinstance(plan, Mapping) else None
        return cls(**values)

    def signal_count(self) -> int:
        return sum(len(getattr(self, name) or []) for name in _SIGNAL_CATEGORIES)


@dataclass
class ContextDigest:
    active_conflict_id: str | None = None
    active_conflict_name: str | None = None
    active_plotline_id: str | None = None
    active_plotline_name: str | None = None
    active_character_arc_id: str | None = None
    active_character_name: str | None = None
    highlights: list[str] = field(default_factory=list)
    primary_conflict: str | None = None
    urgent_foreshadow: str | None = None
    character_progress: str | None = None
    plotline_alerts: list[str] = field(default_factory=list)
    chapter_goal: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value not in (None, [])}


@dataclass
class OptimizedContext:
    chapter_number: int
    events: list[GraphEntity]
    foreshadows: list[GraphEntity]
    conflict_arcs: list[GraphEntity]
    character_arcs: list[GraphEntity]
    plotlines: list[GraphEntity]
    character_profiles: list[GraphEntity]
    recent_chapters: list[dict[str, Any]]
    recent_summaries: list[Any]
    character_states: list[Any]
    relationships: list[Any]
    open_quests: list[Any]
    chapter_plan: dict[str, Any] | None
    digest: ContextDigest
    bypassed: bool
    estimated_tokens: int = 0

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "chapter_number": self.chapter_number,
            "bypassed": self.bypassed,
            "estimated_tokens": self.estimated_tokens,
            "digest": self.digest.to_dict(),
        }
        for name in GRAPH_CATEGORIES:
            payload[name] = [_entity_dict(entity) for entity in getattr(self, name)]
        for name in _PLAIN_CATEGORIES:
            payload[name] = [_plain(item) for item in getattr(self, name)]
        if self.chapter_plan is not None:
            payload["chapter_plan"] = self.chapter_plan
        return payload


def _entity_dict(entity: GraphEntity) -> dict[str, Any]:
    return {
        "type": entity.node_type,
        "id": entity.node_key,
        "chapter_number": entity.chapter_number,
        "relevance_score": entity.relevance_score,
        "properties": entity.properties,
    }


def _plain(item: Any) -> Any:
    if is_dataclass(item) and not isinstance(item, type):
        return asdict(item)
    return item


def filter_entities(
    entities: Sequence[GraphEntity],
    *,
    limit: int,
    min_score: float,
    description_chars: int | None = None,
    marker: str = "…",
) -> list[GraphEntity]:
    """Rank by resolved importance, drop weak entries and cap the list.

    Returns copies; when ``description_chars`` is set the ``description``
    property of each copy is truncated.
    """

    ranked = sorted(
        (entity for entity in entities if entity is not None),
        key=resolve_importance,
        reverse=True,
    )
    kept: list[GraphEntity] = []
    for entity in ranked:
        if len(kept) >= max(0, limit):
            break
        if resolve_importance(entity) < min_score:
            # Sorted descending, nothing after this can pass.
            break
        kept.append(_copy_entity(entity, description_chars, marker))
    return kept


def _copy_entity(entity: GraphEntity, description_chars: int | None, marker: str) -> GraphEntity:
    properties = dict(entity.properties or {})
    description = properties.get("description")
    if description_chars is not None and isinstance(description, str):
        properties["description"] = truncate_text(description, description_chars, marker)
    return replace(entity, properties=properties)


def _chapter_of(item: Any) -> int | None:
    if isinstance(item, Mapping):
        value = item.get("chapter_number", item.get("chapterNumber", item.get("chapter")))
    else:
        value = getattr(item, "chapter_number", None)
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value


def _most_recent(items: Sequence[Any], limit: int, *, keep_tail: bool) -> list[Any]:
    """Keep ``limit`` items, newest chapters first when every item is numbered.

    Unnumbered lists keep the head or the tail depending on how the caller
    orders them. The original order is preserved in the result.
    """

    if limit <= 0:
        return []
    if len(items) <= limit:
        return list(items)
    chapters = [_chapter_of(item) for item in items]
    if all(chapter is not None for chapter in chapters):
        newest = sorted(range(len(items)), key=lambda idx: chapters[idx], reverse=True)[:limit]
        return [items[idx] for idx in sorted(newest)]
    return list(items[-limit:]) if keep_tail else list(items[:limit])


def _trim_chapters(chapters: Sequence[dict[str, Any]], budget: ContextBudgetConfig) -> list[dict[str, Any]]:
    trimmed = []
    for chapter in _most_recent(chapters, budget.max_full_chapters, keep_tail=False):
        if not isinstance(chapter, Mapping):
            continue
        copy = dict(chapter)
        content = copy.get("content")
        if isinstance(content, str):
            copy["content"] = truncate_text(content, budget.max_chapter_content_chars, budget.truncation_marker)
        trimmed.append(copy)
    return trimmed


_TEMPLATES: dict[str, dict[str, str]] = {
    "zh": {
        "highlight": "第{chapter}章：{description}",
        "conflict": "冲突线{name}进入{stage}阶段，下一步：{next_action}",
        "foreshadow": "伏笔：{description}（埋于{planted_at}）",
        "character": "{character}当前待完成：{pending} → 下一目标：{goal}",
        "plotline": "情节线{name} 状态：{status}（闲置{idle}章）",
        "planted_chapter": "第{chapter}章",
        "unknown_chapter": "未知章节",
        "stage": "推进",
        "next_action": "待定",
        "character_name": "角色",
        "pending": "关键节点",
        "goal": "推进主线",
        "status": "待推进",
    },
    "en": {
        "highlight": "Chapter {chapter}: {description}",
        "conflict": "Conflict {name} is in the {stage} stage; next: {next_action}",
        "foreshadow": "Foreshadow: {description} (planted at {planted_at})",
        "character": "{character} pending: {pending} -> next goal: {goal}",
        "plotline": "Plotline {name} status: {status} (idle {idle} chapters)",
        "planted_chapter": "chapter {chapter}",
        "unknown_chapter": "an unknown chapter",
        "stage": "rising",
        "next_action": "undecided",
        "character_name": "Character",
        "pending": "key beat",
        "goal": "advance the main plot",
        "status": "pending",
    },
}


class _DigestFormatter:
    def __init__(self, language: str):
        self.text = _TEMPLATES.get(language, _TEMPLATES["zh"])

    def highlight(self, entity: GraphEntity) -> str | None:
        description = _prop(entity, "description")
        if description is None:
            return None
        chapter = entity.chapter_number if entity.chapter_number else "?"
        return self.text["highlight"].format(chapter=chapter, description=description)

    def conflict(self, entity: GraphEntity) -> str:
        return self.text["conflict"].format(
            name=_prop(entity, "name") or "?",
            stage=_prop(entity, "stage") or self.text["stage"],
            next_action=_prop(entity, "nextAction", "next_action") or self.text["next_action"],
        )

    def foreshadow(self, entity: GraphEntity) -> str | None:
        description = _prop(entity, "description")
        if description is None:
            return None
        planted_at = _prop(entity, "plantedAt", "planted_at")
        if planted_at is None:
            planted_at = (
                self.text["planted_chapter"].format(chapter=entity.chapter_number)
                if entity.chapter_number
                else self.text["unknown_chapter"]
            )
        elif isinstance(planted_at, int) and not isinstance(planted_at, bool):
            planted_at = self.text["planted_chapter"].format(chapter=planted_at)
        return self.text["foreshadow"].format(description=description, planted_at=planted_at)

    def character(self, entity: GraphEntity) -> str:
        return self.text["character"].format(
            character=_prop(entity, "characterName", "character_name") or self.text["character_name"],
            pending=_prop(entity, "pendingBeat", "pending_beat") or self.text["pending"],
            goal=_prop(entity, "nextGoal", "next_goal") or self.text["goal"],
        )

    def plotline(self, entity: GraphEntity) -> str:
        idle = _prop(entity, "idleDuration", "idle_duration")
        return self.text["plotline"].format(
            name=_prop(entity, "name") or "?",
            status=_prop(entity, "status") or entity.status or self.text["status"],
            idle=idle if idle is not None else 0,
        )


def _str_or_none(value: Any) -> str | None:
    return None if value is None else str(value)


def build_digest(
    *,
    events: Sequence[GraphEntity],
    conflict_arcs: Sequence[GraphEntity],
    foreshadows: Sequence[GraphEntity],
    character_arcs: Sequence[GraphEntity],
    plotlines: Sequence[GraphEntity],
    chapter_plan: Mapping[str, Any] | None,
    budget: ContextBudgetConfig,
) -> ContextDigest:
    """Compact summary of the highest-ranked entities.

    Every list is expected to be ranked already, best first.
    """

    fmt = _DigestFormatter(budget.language)
    digest = ContextDigest()

    if conflict_arcs:
        top = conflict_arcs[0]
        digest.active_conflict_id = top.node_key
        digest.active_conflict_name = _str_or_none(_prop(top, "name"))
        digest.primary_conflict = fmt.conflict(top)
    if plotlines:
        top = plotlines[0]
        digest.active_plotline_id = top.node_key
        digest.active_plotline_name = _str_or_none(_prop(top, "name"))
    if character_arcs:
        top = character_arcs[0]
        digest.active_character_arc_id = top.node_key
        digest.active_character_name = _str_or_none(_prop(top, "characterName", "character_name"))
        digest.character_progress = fmt.character(top)

    for entity in events[: budget.max_highlights]:
        line = fmt.highlight(entity)
        if line is not None:
            digest.highlights.append(line)

    for entity in foreshadows[:2]:
        line = fmt.foreshadow(entity)
        if line is not None:
            digest.urgent_foreshadow = line
            break

    digest.plotline_alerts = [fmt.plotline(entity) for entity in plotlines[: budget.max_plotline_alerts]]

    if chapter_plan:
        goal = chapter_plan.get("coreEvent", chapter_plan.get("core_event"))
        digest.chapter_goal = _str_or_none(goal)
    return digest


def _ranked(entities: Sequence[GraphEntity]) -> list[GraphEntity]:
    return sorted(entities, key=resolve_importance, reverse=True)


def _estimate(context: OptimizedContext) -> int:
    payload = context.to_dict()
    payload.pop("estimated_tokens", None)
    return estimate_tokens(orjson.dumps(payload, default=str).decode("utf-8"))


def optimize_context(
    candidates: ContextCandidates,
    chapter_number: int,
    budget: ContextBudgetConfig,
) -> OptimizedContext:
    """Fit candidates into the configured budget. Pure function, no I/O.

    Early chapters, or chapters with too few narrative signals, bypass
    filtering and keep every raw list untouched.
    """

    def graph(name: str) -> list[GraphEntity]:
        return list(getattr(candidates, name) or [])

    def plain(name: str) -> list[Any]:
        return list(getattr(candidates, name) or [])

    signals = candidates.signal_count()
    bypass = chapter_number <= budget.early_chapter_threshold or signals < budget.min_signal_count
    log = logger.bind(node="context_assembly", chapter=chapter_number)

    if bypass:
        lists = {name: graph(name) for name in GRAPH_CATEGORIES}
        lists.update({name: plain(name) for name in _PLAIN_CATEGORIES})
        digest = build_digest(
            events=_ranked(lists["events"]),
            conflict_arcs=_ranked(lists["conflict_arcs"]),
            foreshadows=_ranked(lists["foreshadows"]),
            character_arcs=_ranked(lists["character_arcs"]),
            plotlines=_ranked(lists["plotlines"]),
            chapter_plan=candidates.chapter_plan,
            budget=budget,
        )
    else:
        floor = budget.min_importance
        marker = budget.truncation_marker
        lists = {
            "events": filter_entities(
                graph("events"),
                limit=budget.max_events,
                min_score=floor,
                description_chars=budget.max_event_description_chars,
                marker=marker,
            ),
            "foreshadows": filter_entities(graph("foreshadows"), limit=budget.max_foreshadows, min_score=floor),
            "conflict_arcs": filter_entities(graph("conflict_arcs"), limit=budget.max_conflict_arcs, min_score=floor),
            "character_arcs": filter_entities(
                graph("character_arcs"), limit=budget.max_character_arcs, min_score=floor
            ),
            "plotlines": filter_entities(graph("plotlines"), limit=budget.max_plotlines, min_score=floor),
            "character_profiles": graph("character_profiles")[: budget.max_character_profiles],
            "recent_chapters": _trim_chapters(plain("recent_chapters"), budget),
            "recent_summaries": _most_recent(plain("recent_summaries"), budget.max_recent_summaries, keep_tail=True),
            "character_states": plain("character_states"),
            "relationships": plain("relationships"),
            "open_quests": plain("open_quests"),
        }
        digest = build_digest(
            events=lists["events"],
            conflict_arcs=lists["conflict_arcs"],
            foreshadows=lists["foreshadows"],
            character_arcs=lists["character_arcs"],
            plotlines=lists["plotlines"],
            chapter_plan=candidates.chapter_plan,
            budget=budget,
        )

    context = OptimizedContext(
        chapter_number=chapter_number,
        chapter_plan=candidates.chapter_plan,
        digest=digest,
        bypassed=bypass,
        **lists,
    )
    context.estimated_tokens = _estimate(context)
    log.info(
        "Context assembled bypassed={} signals={} events={} foreshadows={} tokens~{}",
        bypass,
        signals,
        len(context.events),
        len(context.foreshadows),
        context.estimated_tokens,
    )
    return context


async def _read_or_empty(label: str, read, log) -> list[Any]:
    try:
        return list(await read())
    except Exception as exc:  # noqa: BLE001
        log.warning("Context store read failed kind={} error={}", label, exc)
        return []


async def assemble_context(
    store: Any,
    novel_id: int,
    chapter_number: int,
    raw: ContextCandidates | Mapping[str, Any] | None,
    budget: ContextBudgetConfig,
) -> OptimizedContext:
    """Fill categories the caller left out from the store, then optimize.

    Only reads from the store. A failing read degrades to an empty category.
    """

    candidates = raw if isinstance(raw, ContextCandidates) else ContextCandidates.from_mapping(raw)
    candidates = replace(candidates)
    log = logger.bind(node="context_assembly", novel_id=novel_id, chapter=chapter_number)

    for name, (node_type, _keys) in GRAPH_CATEGORIES.items():
        if getattr(candidates, name) is not None:
            continue
        fetched = await _read_or_empty(
            node_type,
            lambda node_type=node_type: store.list_graph_nodes(
                novel_id=novel_id,
                node_type=node_type,
                chapter_number=chapter_number,
                limit=budget.candidate_fetch_limit,
            ),
            log,
        )
        setattr(candidates, name, fetched)

    if candidates.character_states is None:
        candidates.character_states = await _read_or_empty(
            "character_states",
            lambda: store.get_character_states(novel_id=novel_id, limit=budget.character_state_limit),
            log,
        )
    if candidates.relationships is None:
        candidates.relationships = await _read_or_empty(
            "relationships",
            lambda: store.get_top_relationships(novel_id=novel_id, limit=budget.relationship_limit),
            log,
        )
    if candidates.open_quests is None:
        candidates.open_quests = await _read_or_empty(
            "open_quests",
            lambda: store.get_open_quests(novel_id=novel_id, chapter=chapter_number, limit=budget.open_quest_limit),
            log,
        )

    return optimize_context(candidates, chapter_number, budget)
