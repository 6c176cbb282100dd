from __future__ import annotations

from typing import Any

from langgraph.graph import END, START, StateGraph

from novel_continuity.config.schema import ContinuityConfig
from novel_continuity.continuity.nodes import conflict_check, roster_lookup, state_extract, state_merge
from novel_continuity.continuity.state import ExtractionState


def _after_extract(state: ExtractionState) -> str:
    if state.get("payload") is None:
        return END
    return "conflict_check"


def build_extraction_graph(
    *,
    config: ContinuityConfig,
    store: Any,
    llm_client: Any | None = None,
):
    """roster_lookup -> state_extract -> conflict_check -> state_merge.

    A chapter whose extraction yields no payload ends after state_extract,
    so the store is never touched.
    """

    workflow = StateGraph(ExtractionState)

    async def _roster_lookup(state: ExtractionState) -> dict:
        return await roster_lookup.run(state, config=config, store=store)

    async def _state_extract(state: ExtractionState) -> dict:
        return await state_extract.run(state, config=config, llm_client=llm_client)

    async def _conflict_check(state: ExtractionState) -> dict:
        return await conflict_check.run(state, config=config)

    async def _state_merge(state: ExtractionState) -> dict:
        return await state_merge.run(state, config=config, store=store)

    workflow.add_node("roster_lookup", _roster_lookup)
    workflow.add_node("state_extract", _state_extract)
    workflow.add_node("conflict_check", _conflict_check)
    workflow.add_node("state_merge", _state_merge)

    workflow.add_edge(START, "roster_lookup")
    workflow.add_edge("roster_lookup", "state_extract")
    workflow.add_conditional_edges("state_extract", _after_extract, ["conflict_check", END])
    workflow.add_edge("conflict_check", "state_merge")
    workflow.add_edge("state_merge", END)

    return workflow.compile()
