"""Configuration loading for switchyard."""

from switchyard.config.loader import get_config_value, load_core_config, reload_config

__all__ = ["get_config_value", "load_core_config", "reload_config"]
