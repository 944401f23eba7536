"""
Configuration models and loading.

This module provides Pydantic models for cairn configuration
with multi-layer merging: defaults < user < project < .env files < env vars.
"""

from .loader import (
    clear_cache,
    get_project_config_path,
    get_user_config_path,
    get_user_env_path,
    get_xdg_config_home,
    load_config,
    load_env_files,
)
from .models import (
    AtticConfig,
    CairnConfig,
    IdsConfig,
    MergeConfig,
    StoreConfig,
    SweepConfig,
    SyncConfig,
)

__all__ = [
    # Models
    "AtticConfig",
    "CairnConfig",
    "IdsConfig",
    "MergeConfig",
    "StoreConfig",
    "SweepConfig",
    "SyncConfig",
    # Loader functions
    "clear_cache",
    "get_project_config_path",
    "get_user_config_path",
    "get_user_env_path",
    "get_xdg_config_home",
    "load_config",
    "load_env_files",
]
