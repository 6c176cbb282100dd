from __future__ import annotations

import os
from pathlib import Path
import textwrap

import pytest
from pydantic import ValidationError

from novel_continuity.config.loader import load_config, masked_env_snapshot
from novel_continuity.config.schema import (
    AppConfigRoot,
    ChatEndpointConfig,
    ContextBudgetConfig,
    ExtractionConfig,
    LLMConfig,
    PlannerConfig,
    resolve_paths,
)


def test_resolve_paths_makes_absolute(tmp_path: Path) -> None:
    config = AppConfigRoot()
    config.app.data_dir = Path("data")
    config.storage.sqlite_path = Path("data/continuity.db")

    resolved = resolve_paths(config, tmp_path)

    assert resolved.app.data_dir == (tmp_path / "data").resolve()
    assert resolved.storage.sqlite_path == (tmp_path / "data/continuity.db").resolve()


def test_chat_endpoint_validates_temperature() -> None:
    with pytest.raises(ValidationError):
        ChatEndpointConfig(provider="p", model="m", temperature=2.5)


def test_llm_config_validates_endpoint_provider_reference() -> None:
    with pytest.raises(ValidationError):
        LLMConfig.model_validate(
            {
                "providers": {
                    "p1": {"kind": "openai_compatible", "base_url": "https://x", "api_key_env": "KEY"},
                },
                "chat_endpoints": {
                    "continuity_default": {"provider": "missing_provider", "model": "m"},
                },
                "routes": {"continuity_chat": "continuity_default"},
            }
        )


def test_llm_config_rejects_unknown_extraction_route() -> None:
    with pytest.raises(ValidationError):
        LLMConfig.model_validate(
            {
                "providers": {"p": {"api_key_env": None}},
                "chat_endpoints": {"continuity_default": {"provider": "p", "model": "m"}},
                "routes": {"continuity_chat": "continuity_default", "extraction_chat": "missing"},
            }
        )


def test_extraction_route_falls_back_to_continuity_chat() -> None:
    config = AppConfigRoot()

    endpoint_name, endpoint, provider = config.llm.resolve_chat_route("extraction")

    assert endpoint_name == config.llm.routes.continuity_chat
    assert endpoint.model == config.llm.chat_endpoints[endpoint_name].model
    assert provider.api_key_env == "OPENAI_API_KEY"


def test_extraction_route_override() -> None:
    custom = AppConfigRoot.model_validate(
        {
            "llm": {
                "providers": {"p": {"kind": "openai_compatible", "api_key_env": None}},
                "chat_endpoints": {
                    "continuity_default": {"provider": "p", "model": "general"},
                    "extraction_fast": {"provider": "p", "model": "fast"},
                },
                "routes": {"continuity_chat": "continuity_default", "extraction_chat": "extraction_fast"},
            }
        }
    )

    endpoint_name, endpoint, _ = custom.llm.resolve_chat_route("extraction")

    assert endpoint_name == "extraction_fast"
    assert endpoint.model == "fast"


def test_continuity_defaults() -> None:
    config = AppConfigRoot()

    assert config.continuity.extraction.max_key_characters == 3
    assert config.continuity.extraction.advance_due_window == 5
    assert config.continuity.extraction.stalled_due_window == 10
    assert config.continuity.budget.early_chapter_threshold == 5
    assert config.continuity.budget.min_importance == 0.35
    assert config.continuity.budget.max_chapter_content_chars == 8000
    assert config.continuity.planner.default_volume_size == 100


def test_continuity_validators() -> None:
    with pytest.raises(ValidationError):
        ContextBudgetConfig(min_importance=1.5)
    with pytest.raises(ValidationError):
        ContextBudgetConfig(max_events=-1)
    with pytest.raises(ValidationError):
        ContextBudgetConfig(max_chapter_content_chars=0)
    with pytest.raises(ValidationError):
        ExtractionConfig(max_key_characters=0)
    with pytest.raises(ValidationError):
        PlannerConfig(buffer_ratio=1.5)
    with pytest.raises(ValidationError):
        PlannerConfig(default_volume_size=0)
    with pytest.raises(ValidationError):
        AppConfigRoot.model_validate({"continuity": {"budget": {"unknown_knob": 1}}})


def test_observability_config_defaults_and_validation() -> None:
    config = AppConfigRoot()
    assert config.observability.log_json_error_payload is True
    assert config.observability.log_retry_attempts is True

    with pytest.raises(ValidationError):
        AppConfigRoot.model_validate({"observability": {"json_error_payload_max_chars": -1}})


def test_load_config_merge_order(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    configs_dir = tmp_path / "configs"
    profiles_dir = configs_dir / "profiles"
    profiles_dir.mkdir(parents=True)

    (configs_dir / "default.yaml").write_text(
        textwrap.dedent(
            """
            app:
              data_dir: "./data-default"
              log_level: "INFO"
            llm:
              providers:
                openai:
                  kind: "openai_compatible"
                  base_url: "https://default-llm.example/v1"
                  api_key_env: "OPENAI_API_KEY"
              chat_endpoints:
                continuity_default:
                  provider: "openai"
                  model: "gpt-default"
              routes:
                continuity_chat: "continuity_default"
            continuity:
              budget:
                max_events: 20
            """
        ).strip(),
        encoding="utf-8",
    )

    (profiles_dir / "english.yaml").write_text(
        textwrap.dedent(
            """
            llm:
              chat_endpoints:
                continuity_default:
                  model: "gpt-profile"
            continuity:
              budget:
                language: "en"
                max_events: 15
            """
        ).strip(),
        encoding="utf-8",
    )

    (configs_dir / "custom.yaml").write_text(
        textwrap.dedent(
            """
            app:
              log_level: "DEBUG"
            continuity:
              budget:
                max_events: 12
            """
        ).strip(),
        encoding="utf-8",
    )

    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("NOVEL_CONTINUITY_DATA_DIR", str(tmp_path / "env-data"))
    monkeypatch.setenv("NOVEL_CONTINUITY_LLM_PROVIDER_OPENAI_BASE_URL", "https://env-llm.example/v1")

    config = load_config(
        config_path=configs_dir / "custom.yaml",
        profile="english",
        overrides={"continuity": {"budget": {"max_events": 8}}},
    )

    assert config.app.data_dir == (tmp_path / "env-data").resolve()
    assert config.app.log_level == "DEBUG"
    assert config.llm.chat_endpoints["continuity_default"].model == "gpt-profile"
    assert config.llm.providers["openai"].base_url == "https://env-llm.example/v1"
    assert config.continuity.budget.language == "en"
    assert config.continuity.budget.max_events == 8


def test_masked_env_snapshot_hides_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-secret")

    snapshot = masked_env_snapshot(AppConfigRoot())

    assert snapshot["OPENAI_API_KEY"] == "***"
    assert "sk-secret" not in snapshot.values()


def test_env_language_and_dotenv(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    (tmp_path / ".env").write_text(
        textwrap.dedent(
            """
            # local overrides
            export NOVEL_CONTINUITY_LANGUAGE="en"
            NOVEL_CONTINUITY_SQLITE_PATH=./state/novel.db
            NOVEL_CONTINUITY_LOG_LEVEL=WARNING
            """
        ).strip(),
        encoding="utf-8",
    )
    monkeypatch.chdir(tmp_path)
    for name in ("NOVEL_CONTINUITY_LANGUAGE", "NOVEL_CONTINUITY_SQLITE_PATH", "NOVEL_CONTINUITY_DATA_DIR"):
        monkeypatch.delenv(name, raising=False)
    # Already-set variables win over .env.
    monkeypatch.setenv("NOVEL_CONTINUITY_LOG_LEVEL", "ERROR")

    try:
        config = load_config(overrides={"continuity": {"budget": {"language": "zh"}}})
        snapshot = masked_env_snapshot(config)
    finally:
        os.environ.pop("NOVEL_CONTINUITY_LANGUAGE", None)
        os.environ.pop("NOVEL_CONTINUITY_SQLITE_PATH", None)

    assert config.continuity.extraction.language == "en"
    assert config.continuity.budget.language == "en"
    assert config.continuity.planner.language == "en"
    assert config.storage.sqlite_path == (tmp_path / "state" / "novel.db").resolve()
    assert config.app.log_level == "ERROR"

    assert snapshot["NOVEL_CONTINUITY_LANGUAGE"] == "en"


def test_non_mapping_config_file_is_rejected(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    custom = tmp_path / "custom.yaml"
    custom.write_text("- just\n- a list\n", encoding="utf-8")
    monkeypatch.chdir(tmp_path)

    with pytest.raises(ValueError, match="mapping"):
        load_config(config_path=custom)
