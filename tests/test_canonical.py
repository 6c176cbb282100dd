from __future__ import annotations

import pytest

from novel_continuity.continuity.canonical import (
    DEFAULT_RELATION_STRENGTH,
    classify_progress,
    derive_quest_id,
    due_chapter,
    normalize_quest_name,
    quest_display_name,
    relationship_strength,
)


def test_quest_name_variants_share_one_id() -> None:
    ids = {
        derive_quest_id("Q-Find The Sword"),
        derive_quest_id("q_ find the sword"),
        derive_quest_id("Find The Sword"),
    }

    assert ids == {"Q-find_the_sword"}


def test_normalize_strips_repeated_prefixes_and_folds_separators() -> None:
    assert normalize_quest_name("Q-Q_  Find--the   Sword") == "Find_the_Sword"
    assert normalize_quest_name("--寻找 掌天瓶") == "寻找_掌天瓶"


def test_blank_quest_name_has_no_id() -> None:
    assert derive_quest_id("  Q-  ") is None
    assert derive_quest_id("") is None


def test_quest_display_name_uses_spaces() -> None:
    assert quest_display_name("Q-Find_The-Sword") == "Find The Sword"


@pytest.mark.parametrize(
    ("relation", "expected"),
    [
        ("敌对", 0.9),
        ("sworn enemy", 0.9),
        ("是enemy", 0.9),
        ("结为ally", 0.8),
        ("盟友", 0.8),
        ("allied against the sect", 0.8),
        ("恋人", 0.95),
        ("朋友", 0.6),
        ("rival", 0.7),
        ("陌生人", 0.2),
        ("acquaintance", 0.4),
        ("师徒", DEFAULT_RELATION_STRENGTH),
        ("", DEFAULT_RELATION_STRENGTH),
    ],
)
def test_relationship_strength_table(relation: str, expected: float) -> None:
    assert relationship_strength(relation) == expected


def test_unfriendly_is_not_matched_as_friendly() -> None:
    assert relationship_strength("unfriendly") == DEFAULT_RELATION_STRENGTH
    assert relationship_strength("unknown") == DEFAULT_RELATION_STRENGTH


@pytest.mark.parametrize(
    ("phrase", "expected"),
    [
        ("任务已完成", "resolved"),
        ("quest resolved at last", "resolved"),
        ("尚未完成", "advancing"),
        ("not resolved yet", "advancing"),
        ("调查受阻", "stalled"),
        ("blocked by the guards", "stalled"),
        ("找到了新线索", "advancing"),
        ("任务done", "resolved"),
        ("任务not done", "advancing"),
        ("被blocked住了", "stalled"),
    ],
)
def test_classify_progress(phrase: str, expected: str) -> None:
    assert classify_progress(phrase) == expected


def test_due_chapter_windows() -> None:
    assert due_chapter(12, "advancing", advance_window=5, stalled_window=10) == 17
    assert due_chapter(12, "stalled", advance_window=5, stalled_window=10) == 22
