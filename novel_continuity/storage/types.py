from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping

QUEST_OPEN = "OPEN"
QUEST_RESOLVED = "RESOLVED"

EVENT = "Event"
FORESHADOW = "Foreshadow"
PLOTLINE = "Plotline"
CONFLICT_ARC = "ConflictArc"
CHARACTER_ARC = "CharacterArc"
CHARACTER_PROFILE = "CharacterProfile"

GRAPH_NODE_TYPES = (EVENT, FORESHADOW, PLOTLINE, CONFLICT_ARC, CHARACTER_ARC, CHARACTER_PROFILE)


@dataclass
class InsertResult:
    id: int
    inserted: bool
    # False when the write was ignored (stale chapter or terminal quest).
    applied: bool = True


@dataclass
class NovelRow:
    id: int
    title: str | None
    planned_volume_count: int | None
    target_total_chapters: int | None


@dataclass
class VolumeRow:
    id: int
    novel_id: int
    volume_number: int
    title: str | None
    chapter_start: int | None
    chapter_end: int | None
    outline: str | None = None

    @property
    def has_range(self) -> bool:
        return self.chapter_start is not None and self.chapter_end is not None


@dataclass
class CharacterStateRow:
    id: int
    novel_id: int
    name: str
    location: str | None
    realm: str | None
    alive: bool
    status: str | None
    inventory: list[str]
    first_chapter: int | None
    last_chapter: int | None


@dataclass
class RelationshipRow:
    id: int
    novel_id: int
    character_a: str
    character_b: str
    relation_type: str
    strength: float
    first_chapter: int | None
    last_chapter: int | None


@dataclass
class OpenQuestRow:
    id: int
    novel_id: int
    quest_id: str
    description: str | None
    status: str
    introduced_chapter: int | None
    due_chapter: int | None
    last_chapter: int | None
    resolved_chapter: int | None
    last_progress: str | None


@dataclass
class StateSnapshotRow:
    id: int
    novel_id: int
    entity_kind: str
    entity_key: str
    chapter_number: int
    payload: dict[str, Any]


def _optional_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


@dataclass
class GraphEntity:
    """A narrative graph node with its free-form property bag."""

    node_type: str
    node_key: str
    chapter_number: int
    properties: dict[str, Any] = field(default_factory=dict)
    relevance_score: float | None = None
    status: str | None = None

    @classmethod
    def from_mapping(cls, node_type: str, data: Mapping[str, Any]) -> "GraphEntity":
        properties = dict(data.get("properties") or {})
        for key, value in data.items():
            if key not in {"properties", "node_type", "node_key", "id", "chapter_number", "chapterNumber"}:
                properties.setdefault(key, value)

        chapter = data.get("chapter_number", data.get("chapterNumber", 0))
        relevance = data.get("relevance_score", data.get("relevanceScore"))
        status = data.get("status")
        return cls(
            node_type=str(data.get("node_type") or node_type),
            node_key=str(data.get("node_key") or data.get("id") or ""),
            chapter_number=int(chapter or 0),
            properties=properties,
            relevance_score=_optional_float(relevance),
            status=status if isinstance(status, str) else None,
        )

    def get(self, key: str, default: Any = None) -> Any:
        return self.properties.get(key, default)


@dataclass
class RollbackReport:
    novel_id: int
    chapter_number: int
    skipped: bool = False
    characters_restored: int = 0
    characters_deleted: int = 0
    relationships_restored: int = 0
    relationships_deleted: int = 0
    quests_restored: int = 0
    quests_deleted: int = 0
    graph_nodes_deleted: int = 0
