from __future__ import annotations

from pathlib import Path
from typing import Any
import os
import re

import yaml
from loguru import logger

from novel_continuity.config.schema import AppConfigRoot, resolve_paths

ENV_PREFIX = "NOVEL_CONTINUITY"
DATA_DIR_ENV = f"{ENV_PREFIX}_DATA_DIR"
LOG_LEVEL_ENV = f"{ENV_PREFIX}_LOG_LEVEL"
LANGUAGE_ENV = f"{ENV_PREFIX}_LANGUAGE"
SQLITE_PATH_ENV = f"{ENV_PREFIX}_SQLITE_PATH"

# Scalar env overrides; one variable may feed several config keys.
_ENV_TARGETS: dict[str, tuple[tuple[str, ...], ...]] = {
    DATA_DIR_ENV: (("app", "data_dir"),),
    LOG_LEVEL_ENV: (("app", "log_level"),),
    SQLITE_PATH_ENV: (("storage", "sqlite_path"),),
    LANGUAGE_ENV: (
        ("continuity", "extraction", "language"),
        ("continuity", "budget", "language"),
        ("continuity", "planner", "language"),
    ),
}


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if data is not None and not isinstance(data, dict):
        raise ValueError(f"Config file must contain a mapping: {path}")
    return data or {}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _load_dotenv(dotenv_path: Path) -> list[str]:
    """Export ``KEY=value`` lines without replacing variables already set."""

    loaded: list[str] = []
    if not dotenv_path.exists():
        return loaded
    for raw_line in dotenv_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if line.startswith("export "):
            line = line[len("export ") :].lstrip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = (part.strip() for part in line.split("=", 1))
        if key and key not in os.environ:
            os.environ[key] = value.strip("\"'")
            loaded.append(key)
    return loaded


def provider_base_url_env(provider_name: str) -> str:
    normalized = re.sub(r"[^A-Za-z0-9]", "_", provider_name).upper()
    return f"{ENV_PREFIX}_LLM_PROVIDER_{normalized}_BASE_URL"


def _set_path(config_data: dict[str, Any], path: tuple[str, ...], value: str) -> None:
    node = config_data
    for key in path[:-1]:
        child = node.get(key)
        if not isinstance(child, dict):
            child = {}
            node[key] = child
        node = child
    node[path[-1]] = value


def _apply_env(config_data: dict[str, Any]) -> list[str]:
    applied: list[str] = []
    for env_name, targets in _ENV_TARGETS.items():
        value = os.getenv(env_name)
        if not value:
            continue
        for path in targets:
            _set_path(config_data, path, value)
        applied.append(env_name)

    providers = (config_data.get("llm") or {}).get("providers") or {}
    for provider_name, provider_cfg in providers.items():
        env_name = provider_base_url_env(provider_name)
        value = os.getenv(env_name)
        if value and isinstance(provider_cfg, dict):
            provider_cfg["base_url"] = value
            applied.append(env_name)
    return applied


def load_config(
    config_path: Path | None = None,
    profile: str | None = None,
    overrides: dict[str, Any] | None = None,
) -> AppConfigRoot:
    """Build the effective config.

    Layers, lowest first: ``configs/default.yaml``, the named profile, the
    custom file, ``overrides``, then environment variables. A ``.env`` file in
    the working directory is read before anything else.
    """

    base_dir = Path.cwd()
    dotenv_keys = _load_dotenv(base_dir / ".env")

    layers: list[dict[str, Any]] = [_read_yaml(base_dir / "configs" / "default.yaml")]
    if profile:
        profile_path = base_dir / "configs" / "profiles" / f"{profile}.yaml"
        if not profile_path.exists():
            logger.warning("Config profile not found: {}", profile_path)
        layers.append(_read_yaml(profile_path))
    if config_path:
        layers.append(_read_yaml(config_path))
    if overrides:
        layers.append(overrides)

    config_data: dict[str, Any] = {}
    for layer in layers:
        config_data = _deep_merge(config_data, layer)
    env_applied = _apply_env(config_data)

    config = resolve_paths(AppConfigRoot.model_validate(config_data), base_dir)
    logger.debug(
        "Loaded config base_dir={} profile={} dotenv_keys={} env_overrides={}",
        base_dir,
        profile or "-",
        len(dotenv_keys),
        ",".join(env_applied) or "-",
    )
    return config


def masked_env_snapshot(config: AppConfigRoot | None = None) -> dict[str, str | None]:
    """Report the environment that shaped ``config``, with API keys masked."""

    snapshot: dict[str, str | None] = {name: os.getenv(name) for name in _ENV_TARGETS}
    if config is None:
        return snapshot

    for provider_name, provider in config.llm.providers.items():
        env_name = provider_base_url_env(provider_name)
        snapshot[env_name] = os.getenv(env_name)
        snapshot[f"llm.providers.{provider_name}.base_url"] = provider.base_url
        if provider.api_key_env:
            snapshot[provider.api_key_env] = "***" if os.getenv(provider.api_key_env) else None
    return snapshot
