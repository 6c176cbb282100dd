from __future__ import annotations

from loguru import logger

from novel_continuity.config.schema import ContextBudgetConfig
from novel_continuity.continuity.context import ContextCandidates, build_digest, optimize_context
from novel_continuity.continuity.scoring import resolve_importance
from novel_continuity.storage.types import (
    CHARACTER_ARC,
    CHARACTER_PROFILE,
    CONFLICT_ARC,
    EVENT,
    FORESHADOW,
    PLOTLINE,
    GraphEntity,
)


def _node(node_type: str, key: str, chapter: int = 1, relevance: float | None = None, **props) -> GraphEntity:
    return GraphEntity(
        node_type=node_type, node_key=key, chapter_number=chapter, properties=props, relevance_score=relevance
    )


def _spread_events(count: int) -> list[GraphEntity]:
    return [
        _node(EVENT, f"e-{idx}", chapter=idx + 1, importanceScore=idx / (count - 1), description=f"事件{idx}")
        for idx in range(count)
    ]


def test_filtering_caps_sorts_and_drops_weak_events() -> None:
    budget = ContextBudgetConfig(max_events=10)
    candidates = ContextCandidates(events=_spread_events(20))

    context = optimize_context(candidates, 20, budget)
    scores = [resolve_importance(event) for event in context.events]

    assert context.bypassed is False
    assert len(context.events) == 10
    assert scores == sorted(scores, reverse=True)
    assert min(scores) >= budget.min_importance
    assert context.events[0].node_key == "e-19"


def test_importance_floor_applies_below_the_cap() -> None:
    context = optimize_context(ContextCandidates(events=_spread_events(20)), 20, ContextBudgetConfig())

    # 7/19 is the first score at or above 0.35.
    assert len(context.events) == 13
    assert context.events[-1].node_key == "e-7"


def test_early_chapter_bypasses_filtering() -> None:
    events = [_node(EVENT, f"e-{idx}", chapter=1, importanceScore=0.05) for idx in range(50)]
    candidates = ContextCandidates(events=events)

    context = optimize_context(candidates, 3, ContextBudgetConfig())

    assert context.bypassed is True
    assert context.events == events


def test_few_signals_bypass_filtering_late_in_the_book() -> None:
    events = [_node(EVENT, "e-1", chapter=29, importanceScore=0.01), _node(EVENT, "e-2", chapter=28)]
    recent = [{"chapter_number": n, "content": "x"} for n in range(1, 8)]

    context = optimize_context(ContextCandidates(events=events, recent_chapters=recent), 30, ContextBudgetConfig())

    assert context.bypassed is True
    assert [event.node_key for event in context.events] == ["e-1", "e-2"]
    assert len(context.recent_chapters) == 7


def test_event_descriptions_are_truncated_on_copies_only() -> None:
    long_text = "剑" * 1000
    events = _spread_events(5)
    events[-1].properties["description"] = long_text
    budget = ContextBudgetConfig(max_event_description_chars=400)

    context = optimize_context(ContextCandidates(events=events), 20, budget)
    top = context.events[0]

    assert len(top.get("description")) == 400
    assert top.get("description").endswith("…")
    assert events[-1].get("description") == long_text


def test_recent_chapters_keep_newest_and_truncate_content() -> None:
    chapters = [{"chapter_number": number, "content": "字" * 9000} for number in (3, 1, 5, 2, 4)]
    summaries = [f"summary {idx}" for idx in range(15)]
    candidates = ContextCandidates(events=_spread_events(5), recent_chapters=chapters, recent_summaries=summaries)

    context = optimize_context(candidates, 6, ContextBudgetConfig(early_chapter_threshold=2))

    assert [chapter["chapter_number"] for chapter in context.recent_chapters] == [3, 5, 4]
    assert all(len(chapter["content"]) == 8000 for chapter in context.recent_chapters)
    assert len(chapters[0]["content"]) == 9000
    assert context.recent_summaries == summaries[-10:]


def test_profiles_are_capped_and_states_pass_through() -> None:
    profiles = [_node(CHARACTER_PROFILE, f"p-{idx}", importanceScore=0.0) for idx in range(8)]
    states = [{"name": f"角色{idx}"} for idx in range(12)]
    candidates = ContextCandidates(events=_spread_events(5), character_profiles=profiles, character_states=states)

    context = optimize_context(candidates, 20, ContextBudgetConfig())

    assert [profile.node_key for profile in context.character_profiles] == [f"p-{idx}" for idx in range(5)]
    assert context.character_states == states


def test_digest_lines_in_chinese() -> None:
    candidates = ContextCandidates.from_mapping(
        {
            "events": [
                {"id": "e-1", "chapterNumber": 18, "description": "韩立筑基成功", "importance": "high"},
                {"id": "e-2", "chapterNumber": 19, "description": "血色试炼开启", "importance": "medium"},
            ],
            "conflictArcs": [
                {"id": "c-1", "name": "血色试炼", "stage": "高潮", "nextAction": "夺取筑基丹", "importanceScore": 0.9}
            ],
            "foreshadowing": [
                {"id": "f-1", "chapterNumber": 12, "importance": "high"},
                {"id": "f-2", "description": "神秘小瓶", "plantedAt": 12, "importance": "medium"},
            ],
            "characterArcs": [
                {"id": "a-1", "characterName": "韩立", "pendingBeat": "突破筑基", "nextGoal": "离开七玄门"}
            ],
            "plotlines": [{"id": "p-1", "name": "主线", "status": "停滞", "idleDuration": 4, "importance": "high"}],
            "chapterPlan": {"coreEvent": "进入禁地"},
        }
    )

    digest = optimize_context(candidates, 20, ContextBudgetConfig()).digest

    assert digest.highlights == ["第18章：韩立筑基成功", "第19章：血色试炼开启"]
    assert digest.primary_conflict == "冲突线血色试炼进入高潮阶段，下一步：夺取筑基丹"
    assert digest.active_conflict_id == "c-1"
    assert digest.urgent_foreshadow == "伏笔：神秘小瓶（埋于第12章）"
    assert digest.character_progress == "韩立当前待完成：突破筑基 → 下一目标：离开七玄门"
    assert digest.active_character_name == "韩立"
    assert digest.plotline_alerts == ["情节线主线 状态：停滞（闲置4章）"]
    assert digest.active_plotline_name == "主线"
    assert digest.chapter_goal == "进入禁地"


def test_digest_lines_in_english_with_defaults() -> None:
    budget = ContextBudgetConfig(language="en")
    digest = build_digest(
        events=[],
        conflict_arcs=[_node(CONFLICT_ARC, "c-1", name="The Trial")],
        foreshadows=[_node(FORESHADOW, "f-1", chapter=7, description="a sealed bottle")],
        character_arcs=[_node(CHARACTER_ARC, "a-1")],
        plotlines=[_node(PLOTLINE, "p-1", name="Main")],
        chapter_plan=None,
        budget=budget,
    )

    assert digest.primary_conflict == "Conflict The Trial is in the rising stage; next: undecided"
    assert digest.urgent_foreshadow == "Foreshadow: a sealed bottle (planted at chapter 7)"
    assert digest.character_progress == "Character pending: key beat -> next goal: advance the main plot"
    assert digest.plotline_alerts == ["Plotline Main status: pending (idle 0 chapters)"]
    assert "chapter_goal" not in digest.to_dict()
    assert "highlights" not in digest.to_dict()


def test_urgent_foreshadow_only_looks_at_the_top_two() -> None:
    foreshadows = [
        _node(FORESHADOW, "f-1"),
        _node(FORESHADOW, "f-2"),
        _node(FORESHADOW, "f-3", description="too far down"),
    ]
    digest = build_digest(
        events=[],
        conflict_arcs=[],
        foreshadows=foreshadows,
        character_arcs=[],
        plotlines=[],
        chapter_plan={"core_event": "escape"},
        budget=ContextBudgetConfig(),
    )

    assert digest.urgent_foreshadow is None
    assert digest.chapter_goal == "escape"


def test_optimize_context_logs_summary_and_estimates_tokens() -> None:
    records = []
    sink_id = logger.add(lambda message: records.append(message.record), level="INFO")
    try:
        context = optimize_context(ContextCandidates(events=_spread_events(6)), 12, ContextBudgetConfig())
    finally:
        logger.remove(sink_id)

    assert context.estimated_tokens > 0
    assert context.to_dict()["chapter_number"] == 12
    assert any(
        record["message"].startswith("Context assembled bypassed=False")
        and record["extra"].get("node") == "context_assembly"
        for record in records
    )
