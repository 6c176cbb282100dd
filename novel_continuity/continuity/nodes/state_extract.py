from __future__ import annotations

from typing import Any

from loguru import logger

from novel_continuity.config.schema import ContinuityConfig
from novel_continuity.continuity.payload import parse_extraction_payload
from novel_continuity.continuity.prompts.extraction import EXTRACTION_PROMPT_VERSION, extraction_prompt
from novel_continuity.continuity.state import ExtractionState
from novel_continuity.domain.hashing import chapter_input_hash, roster_hash
from novel_continuity.llm.factory import make_cache_key


def _failure_reason(exc: Exception) -> str:
    cause = exc.__cause__ if exc.__cause__ is not None else exc
    if isinstance(cause, ValueError):
        return "malformed_output"
    return "generation_failed"


async def run(state: ExtractionState, *, config: ContinuityConfig, llm_client: Any | None = None) -> dict:
    novel_id = state["novel_id"]
    chapter_number = state["chapter_number"]
    node_log = logger.bind(node="state_extract", novel_id=novel_id, chapter=chapter_number)

    if llm_client is None:
        node_log.warning("No extraction model configured; skipping chapter")
        return {"payload": None, "skip_reason": "llm_unavailable"}

    text = state.get("chapter_text", "")
    if config.extraction.max_chapter_chars and len(text) > config.extraction.max_chapter_chars:
        text = text[: config.extraction.max_chapter_chars]

    roster_names = state.get("roster_names", [])
    quest_names = state.get("quest_names", [])
    title = state.get("chapter_title", "")

    system, user_template = extraction_prompt(config.extraction.language, roster_names, quest_names)
    user = user_template.format(chapter_number=chapter_number, chapter_title=title, chapter_text=text)
    input_hash = chapter_input_hash(novel_id, chapter_number, title, text)
    cache_key = make_cache_key(
        "continuity_extraction",
        llm_client.model_identifier,
        EXTRACTION_PROMPT_VERSION,
        input_hash,
        roster_hash(roster_names, quest_names),
        str(config.extraction.temperature),
    )

    try:
        response, payload = await llm_client.complete_json_async(
            system,
            user,
            cache_key,
            parse_extraction_payload,
            context={
                "node": "state_extract",
                "novel_id": novel_id,
                "chapter": chapter_number,
                "input_hash": input_hash,
            },
        )
    except Exception as exc:  # noqa: BLE001
        reason = _failure_reason(exc)
        node_log.warning("State extraction skipped reason={} error={}", reason, exc)
        return {"payload": None, "skip_reason": reason}

    usage = {"llm_cache_hit": bool(response.cached), "llm_attempts": response.attempts}
    if payload.is_empty():
        node_log.info("Extraction returned no usable state")
        return {"payload": None, "skip_reason": "empty_payload", **usage}

    return {"payload": payload, **usage}
