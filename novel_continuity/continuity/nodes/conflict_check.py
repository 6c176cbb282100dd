from __future__ import annotations

from typing import Any

from loguru import logger

from novel_continuity.config.schema import ContinuityConfig
from novel_continuity.continuity.payload import CharacterRecord, ExtractionPayload
from novel_continuity.continuity.state import ExtractionState


def _reported_characters(payload: ExtractionPayload, max_key_characters: int) -> list[CharacterRecord]:
    records: list[CharacterRecord] = []
    if payload.protagonist is not None and payload.protagonist.name:
        records.append(payload.protagonist)
    records.extend(payload.capped_key_characters(max_key_characters))
    return records


def detect_conflicts(
    payload: ExtractionPayload,
    known_states: list[dict[str, Any]],
    chapter_number: int,
    *,
    max_key_characters: int = 3,
) -> list[str]:
    """Compare reported characters with their stored state and describe suspicious jumps.

    Realm and location changes are flagged when the stored state comes from the
    previous chapter. A location that differs from one already stored for the
    same chapter is flagged as a rewrite of that chapter. Signals only: nothing
    here blocks or rewrites a merge.
    """

    if chapter_number <= 1:
        return []

    known_by_name = {str(item.get("name")): item for item in known_states if item.get("name")}
    warnings: list[str] = []
    for record in _reported_characters(payload, max_key_characters):
        known = known_by_name.get(record.name)
        if known is None:
            continue

        last_chapter = known.get("last_chapter")
        if isinstance(last_chapter, int) and last_chapter > chapter_number:
            warnings.append(
                f"{record.name}: state already recorded at chapter {last_chapter}, "
                f"chapter {chapter_number} update will be ignored"
            )
            continue

        if known.get("alive") is False and record.alive is True:
            warnings.append(f"{record.name}: recorded dead at chapter {last_chapter} but alive in chapter {chapter_number}")

        previous_realm = known.get("realm")
        if (
            last_chapter == chapter_number - 1
            and record.realm
            and previous_realm
            and record.realm != previous_realm
        ):
            warnings.append(
                f"{record.name}: realm changed from {previous_realm} to {record.realm} "
                f"between chapters {last_chapter} and {chapter_number}"
            )

        previous_location = known.get("location")
        if not (record.location and previous_location and record.location != previous_location):
            continue
        if last_chapter == chapter_number - 1:
            warnings.append(
                f"{record.name}: location jumped from {previous_location} to {record.location} "
                f"between chapters {last_chapter} and {chapter_number}"
            )
        elif last_chapter == chapter_number:
            warnings.append(
                f"{record.name}: location rewritten from {previous_location} to {record.location} "
                f"within chapter {chapter_number}"
            )
    return warnings


async def run(state: ExtractionState, *, config: ContinuityConfig) -> dict:
    payload = state.get("payload")
    if payload is None or not config.extraction.conflict_check:
        return {"conflict_warnings": []}

    chapter_number = state["chapter_number"]
    node_log = logger.bind(node="conflict_check", novel_id=state.get("novel_id"), chapter=chapter_number)
    warnings = detect_conflicts(
        payload,
        state.get("known_states", []),
        chapter_number,
        max_key_characters=config.extraction.max_key_characters,
    )
    for warning in warnings:
        node_log.warning("Continuity conflict: {}", warning)
    return {"conflict_warnings": warnings}
