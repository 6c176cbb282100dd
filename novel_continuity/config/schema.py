from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    data_dir: Path = Field(default=Path("./data"))
    log_level: str = Field(default="INFO")


class LLMProviderConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["openai_compatible", "ollama"] = "openai_compatible"
    base_url: str | None = None
    api_key_env: str | None = None


class ChatEndpointConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    provider: str
    model: str
    temperature: float = 0.1
    timeout_s: int = 60
    max_concurrency: int = 4
    retries: int = 0
    max_tokens: int | None = None

    @field_validator("temperature")
    @classmethod
    def _temperature_range(cls, value: float) -> float:
        if not 0 <= value <= 2:
            raise ValueError("temperature must be between 0 and 2")
        return value

    @field_validator("timeout_s", "max_concurrency", "retries")
    @classmethod
    def _non_negative_int(cls, value: int) -> int:
        if value < 0:
            raise ValueError("endpoint integer settings must be non-negative")
        return value

    @field_validator("max_tokens")
    @classmethod
    def _positive_optional_max_tokens(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            raise ValueError("max_tokens must be positive when provided")
        return value


class LLMRoutesConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    continuity_chat: str = "continuity_default"
    extraction_chat: str | None = None


class LLMConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    providers: dict[str, LLMProviderConfig]
    chat_endpoints: dict[str, ChatEndpointConfig]
    routes: LLMRoutesConfig = LLMRoutesConfig()

    @model_validator(mode="after")
    def _validate_references(self) -> "LLMConfig":
        if not self.providers:
            raise ValueError("llm.providers cannot be empty")
        if not self.chat_endpoints:
            raise ValueError("llm.chat_endpoints cannot be empty")

        for endpoint_name, endpoint in self.chat_endpoints.items():
            if endpoint.provider not in self.providers:
                raise ValueError(
                    f"chat endpoint '{endpoint_name}' references unknown provider '{endpoint.provider}'"
                )

        if self.routes.continuity_chat not in self.chat_endpoints:
            raise ValueError(f"llm.routes.continuity_chat not found: {self.routes.continuity_chat}")
        if self.routes.extraction_chat and self.routes.extraction_chat not in self.chat_endpoints:
            raise ValueError(f"llm.routes.extraction_chat not found: {self.routes.extraction_chat}")

        return self

    def resolve_chat_route(
        self,
        route: Literal["continuity", "extraction"],
    ) -> tuple[str, ChatEndpointConfig, LLMProviderConfig]:
        if route == "extraction":
            endpoint_name = self.routes.extraction_chat or self.routes.continuity_chat
        else:
            endpoint_name = self.routes.continuity_chat

        endpoint = self.chat_endpoints[endpoint_name]
        provider = self.providers[endpoint.provider]
        return endpoint_name, endpoint, provider


class ExtractionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    language: Literal["zh", "en"] = "zh"
    temperature: float = 0.1
    max_key_characters: int = 3
    advance_due_window: int = 5
    stalled_due_window: int = 10
    roster_limit: int = 50
    quest_roster_limit: int = 30
    # 0 keeps the full chapter text in the prompt.
    max_chapter_chars: int = 0
    conflict_check: bool = True

    @field_validator("temperature")
    @classmethod
    def _temperature_range(cls, value: float) -> float:
        if not 0 <= value <= 2:
            raise ValueError("temperature must be between 0 and 2")
        return value

    @field_validator("max_key_characters", "advance_due_window", "stalled_due_window", "roster_limit")
    @classmethod
    def _positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("extraction integer config values must be positive")
        return value

    @field_validator("quest_roster_limit", "max_chapter_chars")
    @classmethod
    def _non_negative_int(cls, value: int) -> int:
        if value < 0:
            raise ValueError("extraction limits must be non-negative")
        return value


class ContextBudgetConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    language: Literal["zh", "en"] = "zh"
    early_chapter_threshold: int = 5
    min_signal_count: int = 3
    min_importance: float = 0.35

    max_events: int = 20
    max_foreshadows: int = 12
    max_conflict_arcs: int = 3
    max_character_arcs: int = 3
    max_plotlines: int = 4
    max_character_profiles: int = 5

    max_event_description_chars: int = 400
    max_full_chapters: int = 3
    max_chapter_content_chars: int = 8000
    max_recent_summaries: int = 10

    max_highlights: int = 3
    max_plotline_alerts: int = 2

    # Store read limits used when the caller does not supply a category.
    candidate_fetch_limit: int = 60
    character_state_limit: int = 10
    relationship_limit: int = 10
    open_quest_limit: int = 10

    truncation_marker: str = "…"

    @field_validator("min_importance")
    @classmethod
    def _importance_range(cls, value: float) -> float:
        if not 0 <= value <= 1:
            raise ValueError("min_importance must be between 0 and 1")
        return value

    @field_validator(
        "early_chapter_threshold",
        "min_signal_count",
        "max_events",
        "max_foreshadows",
        "max_conflict_arcs",
        "max_character_arcs",
        "max_plotlines",
        "max_character_profiles",
        "max_full_chapters",
        "max_recent_summaries",
        "max_highlights",
        "max_plotline_alerts",
        "candidate_fetch_limit",
        "character_state_limit",
        "relationship_limit",
        "open_quest_limit",
    )
    @classmethod
    def _non_negative_int(cls, value: int) -> int:
        if value < 0:
            raise ValueError("budget integer config values must be non-negative")
        return value

    @field_validator("max_event_description_chars", "max_chapter_content_chars")
    @classmethod
    def _positive_chars(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("character limits must be positive")
        return value


class PlannerConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    default_volume_count: int = 5
    default_volume_size: int = 100
    buffer_ratio: float = 0.1
    buffer_min: int = 5
    min_span_ratio: float = 0.6
    language: Literal["zh", "en"] = "zh"

    @field_validator("default_volume_count", "default_volume_size")
    @classmethod
    def _positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("planner defaults must be positive")
        return value

    @field_validator("buffer_min")
    @classmethod
    def _non_negative_buffer(cls, value: int) -> int:
        if value < 0:
            raise ValueError("buffer_min must be non-negative")
        return value

    @field_validator("buffer_ratio", "min_span_ratio")
    @classmethod
    def _ratio_range(cls, value: float) -> float:
        if not 0 <= value <= 1:
            raise ValueError("planner ratios must be between 0 and 1")
        return value


class ContinuityConfig(BaseModel):
    """Knobs shared by the extraction, context and planner engines."""

    model_config = ConfigDict(extra="forbid")

    extraction: ExtractionConfig = ExtractionConfig()
    budget: ContextBudgetConfig = ContextBudgetConfig()
    planner: PlannerConfig = PlannerConfig()


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    sqlite_path: Path = Field(default=Path("./data/continuity.db"))
    busy_timeout_ms: int = 5000

    @field_validator("busy_timeout_ms")
    @classmethod
    def _non_negative_timeout(cls, value: int) -> int:
        if value < 0:
            raise ValueError("busy_timeout_ms must be non-negative")
        return value


class CacheConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    backend: str = "sqlite"
    ttl_seconds: int = 2_592_000


class ObservabilityConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    log_json_error_payload: bool = True
    json_error_payload_max_chars: int = 2000
    log_retry_attempts: bool = True

    @field_validator("json_error_payload_max_chars")
    @classmethod
    def _non_negative_chars(cls, value: int) -> int:
        if value < 0:
            raise ValueError("json_error_payload_max_chars must be non-negative")
        return value


def default_llm_config() -> LLMConfig:
    return LLMConfig.model_validate(
        {
            "providers": {
                "default": {
                    "kind": "openai_compatible",
                    "base_url": None,
                    "api_key_env": "OPENAI_API_KEY",
                }
            },
            "chat_endpoints": {
                "continuity_default": {
                    "provider": "default",
                    "model": "gpt-4.1-mini",
                    "temperature": 0.1,
                    "timeout_s": 60,
                    "max_concurrency": 4,
                    "retries": 0,
                },
            },
            "routes": {
                "continuity_chat": "continuity_default",
            },
        }
    )


class AppConfigRoot(BaseModel):
    model_config = ConfigDict(extra="forbid")

    app: AppConfig = AppConfig()
    llm: LLMConfig = Field(default_factory=default_llm_config)
    continuity: ContinuityConfig = ContinuityConfig()
    storage: StorageConfig = StorageConfig()
    cache: CacheConfig = CacheConfig()
    observability: ObservabilityConfig = ObservabilityConfig()


def resolve_paths(config: AppConfigRoot, base_dir: Path) -> AppConfigRoot:
    def _resolve(path_value: Path) -> Path:
        return path_value if path_value.is_absolute() else (base_dir / path_value).resolve()

    config.app.data_dir = _resolve(config.app.data_dir)
    config.storage.sqlite_path = _resolve(config.storage.sqlite_path)
    return config
