from __future__ import annotations

from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


def import_all_models() -> None:
    from novel_continuity.storage.novels.base import Novel
    from novel_continuity.storage.volumes.base import Volume
    from novel_continuity.storage.world_state.characters import CharacterState
    from novel_continuity.storage.world_state.graph_nodes import GraphNode
    from novel_continuity.storage.world_state.history import StateSnapshot
    from novel_continuity.storage.world_state.quests import OpenQuest
    from novel_continuity.storage.world_state.relationships import RelationshipState

    _ = (
        Novel,
        Volume,
        CharacterState,
        RelationshipState,
        OpenQuest,
        StateSnapshot,
        GraphNode,
    )
