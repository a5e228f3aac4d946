"""Runtime configuration."""

from mapflow.config.settings import MapflowSettings, clear_settings_cache, get_settings

__all__ = ["MapflowSettings", "get_settings", "clear_settings_cache"]
