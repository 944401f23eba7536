"""
Configuration loading with multi-layer merging.

Implements the configuration precedence chain:
    defaults < user config < project config < .env files < env vars

Only CAIRN_* variables are read from .env files, and they never touch the
process environment: they form one more layer below the real environment.
"""

import json
import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from dotenv import dotenv_values

from .models import CairnConfig

logger = logging.getLogger(__name__)

ENV_PREFIX = "CAIRN_"

# Global cache to avoid reloading config multiple times per process
_config_cache: dict[Path, CairnConfig] = {}


def get_xdg_config_home() -> Path:
    """
    Get XDG config home directory.

    Returns:
        Path to config directory (defaults to ~/.config)
    """
    if xdg_home := os.environ.get("XDG_CONFIG_HOME"):
        return Path(xdg_home)
    return Path.home() / ".config"


def get_user_config_path() -> Path:
    """Path to ~/.config/cairn/config.json (or XDG equivalent)."""
    return get_xdg_config_home() / "cairn" / "config.json"


def get_user_env_path() -> Path:
    """Path to ~/.config/cairn/.env (or XDG equivalent)."""
    return get_xdg_config_home() / "cairn" / ".env"


def get_project_env_paths(project_dir: Path) -> list[Path]:
    """Project .env files, lowest precedence first."""
    return [project_dir / ".env", project_dir / ".env.local"]


def read_env_file(path: Path) -> dict[str, str]:
    """CAIRN_* assignments from one .env file; other keys are ignored."""
    if not path.exists():
        return {}
    return {
        key: value
        for key, value in dotenv_values(path).items()
        if key.startswith(ENV_PREFIX) and value is not None
    }


def load_env_files(project_dir: Path | None = None) -> dict[str, str]:
    """
    Collect CAIRN_* values from the user and project .env files.

    Project files override the user file; `.env.local` overrides `.env`.
    """
    if project_dir is None:
        project_dir = Path.cwd()
    values: dict[str, str] = {}
    for path in [get_user_env_path(), *get_project_env_paths(project_dir)]:
        found = read_env_file(path)
        if found:
            logger.debug("Loaded %d setting(s) from %s", len(found), path)
        values.update(found)
    return values


def get_project_config_path(cwd: Path | None = None) -> Path:
    """Path to .cairn.json in the project root."""
    if cwd is None:
        cwd = Path.cwd()
    return cwd / ".cairn.json"


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Values in `override` take precedence over values in `base`.
    Nested dicts are merged, not replaced.

    Example:
        >>> deep_merge({"a": 1, "b": {"x": 10}}, {"b": {"y": 30}})
        {'a': 1, 'b': {'x': 10, 'y': 30}}
    """
    result = base.copy()

    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = value

    return result


def load_json_file(path: Path) -> dict[str, Any] | None:
    """
    Load a JSON file, returning None if it doesn't exist or is invalid.

    A broken config file is logged and skipped so the remaining layers still apply.
    """
    if not path.exists():
        return None

    try:
        with path.open(encoding="utf-8") as f:
            data = json.load(f)
            if isinstance(data, dict):
                return data
            return None
    except (json.JSONDecodeError, OSError) as e:
        logger.warning("Failed to parse config at %s: %s", path, e)
        return None


def _set_nested(config_dict: dict[str, Any], section: str, key: str, value: Any) -> None:
    config_dict.setdefault(section, {})[key] = value


def apply_env_overrides(
    config_dict: dict[str, Any], env: Mapping[str, str] | None = None
) -> dict[str, Any]:
    """
    Apply environment variable overrides to configuration.

    Supported env vars:
        CAIRN_NODE_ID - overrides node_id
        CAIRN_SYNC_BRANCH - overrides sync.branch
        CAIRN_SYNC_REMOTE - overrides sync.remote
        CAIRN_SYNC_MAX_ATTEMPTS - overrides sync.max_attempts
        CAIRN_THREE_WAY_UNION - overrides merge.three_way_union

    Args:
        config_dict: Configuration dictionary to override
        env: Variables to read (defaults to the process environment)

    Returns:
        Configuration dictionary with env var overrides applied
    """
    if env is None:
        env = os.environ
    result = config_dict.copy()

    if node_id := env.get("CAIRN_NODE_ID"):
        result["node_id"] = node_id

    if branch := env.get("CAIRN_SYNC_BRANCH"):
        _set_nested(result, "sync", "branch", branch)

    if remote := env.get("CAIRN_SYNC_REMOTE"):
        _set_nested(result, "sync", "remote", remote)

    if attempts_str := env.get("CAIRN_SYNC_MAX_ATTEMPTS"):
        try:
            _set_nested(result, "sync", "max_attempts", int(attempts_str))
        except ValueError:
            logger.warning("Invalid CAIRN_SYNC_MAX_ATTEMPTS value '%s', ignoring", attempts_str)

    if three_way_str := env.get("CAIRN_THREE_WAY_UNION"):
        enabled = three_way_str.lower() not in ("false", "0", "")
        _set_nested(result, "merge", "three_way_union", enabled)

    return result


def load_config(project_dir: Path | None = None, use_cache: bool = True) -> CairnConfig:
    """
    Load configuration with multi-layer merging.

    Configuration precedence (highest to lowest):
        1. Environment variables (CAIRN_*)
        2. CAIRN_* lines in .env files (project, then user)
        3. Project config (.cairn.json)
        4. User config (~/.config/cairn/config.json)
        5. Model defaults

    Args:
        project_dir: Project root holding .cairn.json and .env files (defaults to cwd)
        use_cache: If True, return cached config from a previous load

    Returns:
        Validated CairnConfig instance

    Raises:
        ValidationError: If the merged config fails Pydantic validation
    """
    cache_key = (project_dir or Path.cwd()).resolve()
    if use_cache and cache_key in _config_cache:
        return _config_cache[cache_key]

    merged: dict[str, Any] = {}

    if user_config := load_json_file(get_user_config_path()):
        merged = deep_merge(merged, user_config)

    if project_config := load_json_file(get_project_config_path(project_dir)):
        merged = deep_merge(merged, project_config)

    # Real environment wins over .env files
    env = {**load_env_files(project_dir), **os.environ}
    merged = apply_env_overrides(merged, env)

    config = CairnConfig(**merged)
    _config_cache[cache_key] = config
    return config


def clear_cache() -> None:
    """
    Clear the cached configuration.

    Useful for testing or when config files change during execution.
    """
    _config_cache.clear()
