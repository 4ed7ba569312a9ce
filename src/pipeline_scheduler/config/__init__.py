"""config/ — pydantic-settings runtime configuration."""

from pipeline_scheduler.config.settings import ConfigError, Settings, get_settings, load_settings

__all__ = ["ConfigError", "Settings", "get_settings", "load_settings"]
