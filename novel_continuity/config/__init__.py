"""Configuration loading and schema."""

from novel_continuity.config.loader import load_config
from novel_continuity.config.schema import AppConfig, AppConfigRoot, ContinuityConfig

__all__ = ["AppConfig", "AppConfigRoot", "ContinuityConfig", "load_config"]
