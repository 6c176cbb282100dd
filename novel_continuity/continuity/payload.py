from __future__ import annotations

from typing import Any

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from novel_continuity.continuity.json_utils import safe_load_json_dict

_DEAD_MARKERS = {"false", "no", "0", "dead", "deceased", "否", "死亡", "已死", "阵亡", "身亡"}
_ALIVE_MARKERS = {"true", "yes", "1", "alive", "是", "存活", "活着", "在世"}

_log = logger.bind(node="state_extract")


def _optional_text(value: Any) -> str | None:
    # Nested structures where text is expected count as "not reported".
    if value is None or isinstance(value, (list, dict)):
        return None
    text = str(value).strip()
    return text or None


class CharacterRecord(BaseModel):
    """One character as reported by the extraction model.

    ``None`` means "not reported": the stored value is kept. ``alive`` defaults
    to True only when the character is first created.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    name: str = ""
    location: str | None = None
    realm: str | None = None
    alive: bool | None = None
    status: str | None = None
    inventory: list[str] | None = None

    @field_validator("name", mode="before")
    @classmethod
    def _coerce_name(cls, value: Any) -> str:
        return _optional_text(value) or ""

    @field_validator("location", "realm", "status", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str | None:
        return _optional_text(value)

    @field_validator("alive", mode="before")
    @classmethod
    def _coerce_alive(cls, value: Any) -> bool | None:
        if value is None or isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return bool(value)
        marker = str(value).strip().lower()
        if marker in _DEAD_MARKERS:
            return False
        if marker in _ALIVE_MARKERS:
            return True
        return None

    @field_validator("inventory", mode="before")
    @classmethod
    def _coerce_inventory(cls, value: Any) -> list[str] | None:
        if value is None:
            return None
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list):
            return None
        items = [
            str(item).strip()
            for item in value
            if item is not None and not isinstance(item, (list, dict)) and str(item).strip()
        ]
        return items or None


class KeyCharacterRecord(CharacterRecord):
    relation: str | None = None

    @field_validator("relation", mode="before")
    @classmethod
    def _coerce_relation(cls, value: Any) -> str | None:
        return _optional_text(value)


class ExtractionPayload(BaseModel):
    """Fixed-shape record returned by the state extraction prompt."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    protagonist: CharacterRecord | None = None
    key_characters: list[KeyCharacterRecord] = Field(default_factory=list, alias="keyCharacters")
    quest_progress: dict[str, str] = Field(default_factory=dict, alias="questProgress")

    @field_validator("protagonist", mode="before")
    @classmethod
    def _coerce_protagonist(cls, value: Any) -> CharacterRecord | None:
        if value is None or value == "":
            return None
        if isinstance(value, str):
            value = {"name": value}
        if not isinstance(value, dict):
            _log.warning("Dropping protagonist of type {}", type(value).__name__)
            return None
        try:
            return CharacterRecord.model_validate(value)
        except ValidationError as exc:
            _log.warning("Dropping unusable protagonist record: {}", exc)
            return None

    @field_validator("key_characters", mode="before")
    @classmethod
    def _coerce_key_characters(cls, value: Any) -> list[KeyCharacterRecord]:
        if value is None:
            return []
        if isinstance(value, dict):
            value = [value]
        if not isinstance(value, list):
            _log.warning("Ignoring keyCharacters of type {}", type(value).__name__)
            return []
        records: list[KeyCharacterRecord] = []
        for index, item in enumerate(value):
            if isinstance(item, str):
                item = {"name": item}
            if not isinstance(item, dict):
                continue
            try:
                records.append(KeyCharacterRecord.model_validate(item))
            except ValidationError as exc:
                _log.warning("Dropping keyCharacters[{}]: {}", index, exc)
        return records

    @field_validator("quest_progress", mode="before")
    @classmethod
    def _coerce_quest_progress(cls, value: Any) -> dict[str, str]:
        if value is None:
            return {}
        if isinstance(value, list):
            value = {
                item["name"]: item.get("progress") or ""
                for item in value
                if isinstance(item, dict) and item.get("name") is not None
            }
        if not isinstance(value, dict):
            _log.warning("Ignoring questProgress of type {}", type(value).__name__)
            return {}
        progress: dict[str, str] = {}
        for name, phrase in value.items():
            if phrase is None or isinstance(phrase, (list, dict)):
                continue
            key = str(name).strip()
            if key:
                progress[key] = str(phrase).strip()
        return progress

    def capped_key_characters(self, limit: int) -> list[KeyCharacterRecord]:
        """Named key characters other than the protagonist, first `limit` only."""

        protagonist_name = self.protagonist.name if self.protagonist is not None else ""
        named = [record for record in self.key_characters if record.name and record.name != protagonist_name]
        return named[:limit]

    def is_empty(self) -> bool:
        return self.protagonist is None and not self.key_characters and not self.quest_progress


def parse_extraction_payload(text: str) -> ExtractionPayload:
    """Raises ``ValueError`` only when the reply holds no JSON object.

    Damaged fields and records inside the object are dropped one by one.
    """

    return ExtractionPayload.model_validate(safe_load_json_dict(text))
