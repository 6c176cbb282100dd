from __future__ import annotations

from loguru import logger
import pytest

from novel_continuity.continuity.json_utils import safe_load_json_dict
from novel_continuity.continuity.payload import ExtractionPayload, parse_extraction_payload


def test_safe_load_json_dict_parses_code_fence() -> None:
    payload = """```json
    {"protagonist": {"name": "韩立"}}
    ```"""

    assert safe_load_json_dict(payload) == {"protagonist": {"name": "韩立"}}


def test_safe_load_json_dict_finds_outer_object_in_prose() -> None:
    text = 'Here is the state:\n{"questProgress": {"寻找掌天瓶": "有了线索"},}\nHope it helps.'

    assert safe_load_json_dict(text) == {"questProgress": {"寻找掌天瓶": "有了线索"}}


def test_safe_load_json_dict_rejects_arrays_and_noise() -> None:
    with pytest.raises(ValueError):
        safe_load_json_dict("[1, 2, 3]")
    with pytest.raises(ValueError):
        safe_load_json_dict("no structure here")
    with pytest.raises(ValueError):
        safe_load_json_dict("   ")


def test_parse_payload_reads_aliases_and_coerces_fields() -> None:
    payload = parse_extraction_payload(
        """
        {
          "protagonist": {"name": " 韩立 ", "location": "乱星海", "realm": "结丹期", "alive": "是",
                          "inventory": ["掌天瓶", "", null]},
          "keyCharacters": [
            {"name": "南宫婉", "relation": "道侣", "alive": "true"},
            "厉飞雨"
          ],
          "questProgress": {"Q-寻找掌天瓶": "有了线索", "broken": null}
        }
        """
    )

    assert payload.protagonist is not None
    assert payload.protagonist.name == "韩立"
    assert payload.protagonist.alive is True
    assert payload.protagonist.inventory == ["掌天瓶"]
    assert [record.name for record in payload.key_characters] == ["南宫婉", "厉飞雨"]
    assert payload.key_characters[0].relation == "道侣"
    assert payload.quest_progress == {"Q-寻找掌天瓶": "有了线索"}


def test_missing_fields_mean_not_reported() -> None:
    payload = parse_extraction_payload('{"protagonist": {"name": "韩立"}}')

    assert payload.protagonist is not None
    assert payload.protagonist.alive is None
    assert payload.protagonist.inventory is None
    assert payload.protagonist.location is None


def test_dead_markers_map_to_false() -> None:
    payload = parse_extraction_payload('{"keyCharacters": [{"name": "墨大夫", "alive": "已死"}]}')

    assert payload.key_characters[0].alive is False


def test_only_non_object_replies_are_rejected() -> None:
    with pytest.raises(ValueError):
        parse_extraction_payload('["韩立", "南宫婉"]')

    payload = parse_extraction_payload('{"keyCharacters": "nobody", "questProgress": "all quests done"}')

    assert payload.key_characters == []
    assert payload.quest_progress == {}
    assert payload.is_empty()


def test_damaged_fields_leave_the_rest_of_the_reply_intact() -> None:
    records: list[dict] = []
    sink_id = logger.add(lambda message: records.append(message.record), level="WARNING")
    try:
        payload = parse_extraction_payload(
            """
            {
              "protagonist": {"name": "韩立", "location": "乱星海", "realm": ["结丹期"],
                              "inventory": {"掌天瓶": 1}},
              "keyCharacters": [
                {"name": "南宫婉", "location": {"region": "落云宗"}, "relation": "道侣"},
                42,
                {"name": "厉飞雨", "inventory": 5}
              ],
              "questProgress": {"寻找掌天瓶": "推进", "broken": {"state": "?"}}
            }
            """
        )
    finally:
        logger.remove(sink_id)

    assert payload.protagonist is not None
    assert payload.protagonist.location == "乱星海"
    assert payload.protagonist.realm is None
    assert payload.protagonist.inventory is None
    assert [record.name for record in payload.key_characters] == ["南宫婉", "厉飞雨"]
    assert payload.key_characters[0].location is None
    assert payload.key_characters[0].relation == "道侣"
    assert payload.key_characters[1].inventory is None
    assert payload.quest_progress == {"寻找掌天瓶": "推进"}
    assert records == []


def test_unusable_sections_are_logged() -> None:
    records: list[dict] = []
    sink_id = logger.add(lambda message: records.append(message.record), level="WARNING")
    try:
        payload = parse_extraction_payload('{"protagonist": 7, "keyCharacters": "nobody", "questProgress": {"x": "y"}}')
    finally:
        logger.remove(sink_id)

    assert payload.protagonist is None
    assert payload.quest_progress == {"x": "y"}
    messages = [record["message"] for record in records]
    assert "Dropping protagonist of type int" in messages
    assert "Ignoring keyCharacters of type str" in messages
    assert all(record["extra"]["node"] == "state_extract" for record in records)


def test_capped_key_characters_skips_protagonist_and_blanks() -> None:
    payload = ExtractionPayload.model_validate(
        {
            "protagonist": {"name": "韩立"},
            "keyCharacters": [
                {"name": "韩立"},
                {"name": ""},
                {"name": "A"},
                {"name": "B"},
                {"name": "C"},
                {"name": "D"},
            ],
        }
    )

    assert [record.name for record in payload.capped_key_characters(3)] == ["A", "B", "C"]


def test_is_empty() -> None:
    assert ExtractionPayload().is_empty()
    assert not ExtractionPayload.model_validate({"questProgress": {"x": "y"}}).is_empty()
