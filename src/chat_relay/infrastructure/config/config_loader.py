"""
Configuration Loader - Bridge Between JSON Config and AppSettings
================================================================
Loads an optional JSON configuration file, expands environment variable
placeholders inside it, and overlays it on the environment-driven defaults.
"""

import copy
import json
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from .settings import AppSettings

load_dotenv()

# ${VAR} or ${VAR:-default}, anywhere inside a string
ENV_VAR_PARTIAL_PATTERN = re.compile(r"\$\{(\w+)(?::-([^}]*))?\}")

CONFIG_SEARCH_PATHS = (
    "config/config.json",
    "../config/config.json",
)

_cached_settings: Optional[AppSettings] = None


def _resolve_env_vars(data: Any) -> Any:
    """Recursively resolves environment variable placeholders with default values support."""
    if isinstance(data, dict):
        return {k: _resolve_env_vars(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_resolve_env_vars(i) for i in data]
    elif isinstance(data, str):
        def replace_env_var(match):
            var_name = match.group(1)
            default_value = match.group(2) or ""
            return os.getenv(var_name, default_value)

        return ENV_VAR_PARTIAL_PATTERN.sub(replace_env_var, data)
    return data


def _deep_merge_dicts(base: Dict, override: Dict) -> Dict:
    """
    Recursively merges the override dict into the base dict.
    Returns a new dictionary.
    """
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and key in result and isinstance(result[key], dict):
            result[key] = _deep_merge_dicts(result[key], value)
        else:
            result[key] = value
    return result


def load_app_settings_from_json(config_path: str = "config/config.json") -> AppSettings:
    """
    Load AppSettings from a JSON configuration file.

    Sections in the file ("logging", "relay", "heartbeat", "storage", "api")
    override the environment defaults key by key; unknown keys are ignored.

    Args:
        config_path: Path to config.json file

    Returns:
        Configured AppSettings instance

    Raises:
        FileNotFoundError, json.JSONDecodeError, pydantic.ValidationError
    """
    with open(config_path, 'r', encoding='utf-8') as f:
        config_data = json.load(f)

    if not isinstance(config_data, dict):
        raise ValueError(f"Configuration root must be an object: {config_path}")

    resolved_data = _resolve_env_vars(config_data)
    defaults = AppSettings().model_dump()
    known_sections = {key: value for key, value in resolved_data.items() if key in defaults}

    return AppSettings(**_deep_merge_dicts(defaults, known_sections))


def get_settings_from_working_directory(refresh: bool = False) -> AppSettings:
    """
    Load settings from config.json in the current working directory.

    The result is cached for the process; pass refresh=True to reload.
    A broken config file is reported on stderr and defaults are used.

    Returns:
        Configured AppSettings instance
    """
    global _cached_settings
    if _cached_settings is not None and not refresh:
        return _cached_settings

    settings = None
    for config_path in CONFIG_SEARCH_PATHS:
        if Path(config_path).exists():
            try:
                settings = load_app_settings_from_json(config_path)
            except Exception as e:
                print(f"[WARNING] Failed to load JSON config from {config_path}: {e}")
                print("[INFO] Using default AppSettings configuration")
            break

    _cached_settings = settings or AppSettings()
    return _cached_settings
