"""
Core Configuration Loader

Loads configuration from core_defaults.yaml with support for:
- Environment variable overrides
- Custom config file paths
- Section-specific access
"""

import copy
import os
from pathlib import Path
from typing import Any

import yaml

ENV_PREFIX = "SWITCHYARD"

# Cache for loaded config
_CONFIG_CACHE: dict[str, Any] | None = None


def _find_config_file() -> Path:
    """Find the core_defaults.yaml file."""
    env_path = os.environ.get(f"{ENV_PREFIX}_CORE_CONFIG")
    if env_path:
        path = Path(env_path).expanduser()
        if path.exists():
            return path

    config_path = Path(__file__).resolve().parent / "core_defaults.yaml"
    if not config_path.exists():
        msg = (
            f"Core config file not found at {config_path}. "
            f"Set {ENV_PREFIX}_CORE_CONFIG environment variable to specify a custom location."
        )
        raise FileNotFoundError(msg)

    return config_path


def _match_key(mapping: dict[str, Any], parts: list[str]) -> tuple[str, list[str]] | None:
    """Find the longest existing key in ``mapping`` spelled by a prefix of ``parts``.

    Keys may contain underscores, so ``["max", "iterations"]`` resolves to
    ``max_iterations`` when that key exists.
    """
    for size in range(len(parts), 0, -1):
        candidate = "_".join(parts[:size])
        if candidate in mapping:
            return candidate, parts[size:]
    return None


def _apply_env_overrides(config: dict[str, Any], prefix: str = ENV_PREFIX) -> dict[str, Any]:
    """
    Apply environment variable overrides to config.

    Environment variables should follow the pattern:
    SWITCHYARD_<SECTION>_<KEY>=value

    Example:
    SWITCHYARD_DISPATCH_MAX_RETRIES=5
    SWITCHYARD_RATE_LIMITER_WINDOW_SECONDS=30
    """
    result = copy.deepcopy(config)

    for env_key, env_value in os.environ.items():
        if not env_key.startswith(f"{prefix}_") or env_key == f"{prefix}_CORE_CONFIG":
            continue

        parts = env_key[len(prefix) + 1 :].lower().split("_")
        current: Any = result
        while parts and isinstance(current, dict):
            match = _match_key(current, parts)
            if match is None:
                break
            key, parts = match
            if not parts:
                if not isinstance(current[key], dict):
                    current[key] = _parse_env_value(env_value)
                break
            current = current[key]

    return result


def _parse_env_value(value: str) -> Any:
    """Parse environment variable value to appropriate type."""
    if value.lower() in ("true", "yes"):
        return True
    if value.lower() in ("false", "no"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    return value


def load_core_config(section: str | None = None, reload: bool = False) -> dict[str, Any]:
    """
    Load core configuration from core_defaults.yaml.

    Args:
        section: Optional section name to return (e.g., 'dispatch', 'search').
                If None, returns the entire config.
        reload: If True, force reload from disk (ignores cache)

    Returns:
        Configuration dictionary or section dictionary

    Raises:
        FileNotFoundError: If config file cannot be found
        KeyError: If specified section does not exist

    Examples:
        >>> config = load_core_config()
        >>> max_retries = load_core_config('dispatch').get('max_retries', 3)
    """
    global _CONFIG_CACHE

    if _CONFIG_CACHE is not None and not reload:
        config = _CONFIG_CACHE
    else:
        config_path = _find_config_file()
        with open(config_path) as f:
            config = yaml.safe_load(f) or {}

        config = _apply_env_overrides(config)
        _CONFIG_CACHE = config

    if section is None:
        return config

    if section not in config:
        msg = (
            f"Configuration section '{section}' not found. "
            f"Available sections: {', '.join(config.keys())}"
        )
        raise KeyError(msg)

    return config[section]


def get_config_value(section: str, *keys: str, default: Any = None) -> Any:
    """
    Get a specific config value with fallback.

    Args:
        section: Config section (e.g., 'dispatch', 'search')
        *keys: Nested keys to traverse (e.g., 'providers', 'gemini')
        default: Default value if key not found

    Returns:
        Config value or default

    Examples:
        >>> max_retries = get_config_value('dispatch', 'max_retries', default=3)
    """
    try:
        value: Any = load_core_config(section)
        for key in keys:
            value = value[key]
        return value
    except (KeyError, TypeError):
        return default


def reload_config() -> None:
    """Force reload of configuration from disk."""
    global _CONFIG_CACHE
    _CONFIG_CACHE = None
    load_core_config(reload=True)
