from __future__ import annotations

import os
import sys
from pathlib import Path


def _is_frozen() -> bool:
    """Check if running as a frozen executable (PyInstaller)."""
    return getattr(sys, "frozen", False) and hasattr(sys, "_MEIPASS")


def _get_data_dir() -> Path:
    """Get data directory.

    When running frozen: ~/.config/boxforge
    When running from source: ./data
    Environment variable BOXFORGE_CONFIG_DIR takes priority.
    """
    env_dir = os.environ.get("BOXFORGE_CONFIG_DIR")
    if env_dir:
        return Path(env_dir)

    if _is_frozen():
        xdg_config = os.environ.get("XDG_CONFIG_HOME", os.path.expanduser("~/.config"))
        return Path(xdg_config) / "boxforge"

    # Development: use ./data
    return Path(__file__).resolve().parent.parent.parent / "data"


CORE_DIR: Path = _get_data_dir()

LOG_DIR: Path = CORE_DIR / "logs"
CLI_LOG_FILE: Path = LOG_DIR / "boxforge_cli.log"

# File names inside a config directory
SETTINGS_FILE_NAME: str = "settings.json"
PROFILES_FILE_NAME: str = "profiles.yaml"
SUBSCRIPTIONS_FILE_NAME: str = "subscribes.yaml"
PLUGINS_FILE_NAME: str = "plugins.yaml"
SUBSCRIPTIONS_DIR_NAME: str = "subscribes"
PLUGINS_DIR_NAME: str = "plugins"
CORE_WORKING_DIR_NAME: str = "sing-box"
CORE_CONFIG_FILE_NAME: str = "config.json"
CORE_CACHE_FILE_NAME: str = "cache.db"

SETTINGS_FILE: Path = CORE_DIR / SETTINGS_FILE_NAME

# sing-box runs with CORE_WORKING_DIR as its cwd, so paths inside the
# generated document are relative to it.
CORE_WORKING_DIR: Path = CORE_DIR / CORE_WORKING_DIR_NAME
CORE_CONFIG_FILE: Path = CORE_WORKING_DIR / CORE_CONFIG_FILE_NAME

LOG_DIR.mkdir(parents=True, exist_ok=True)
CORE_DIR.mkdir(parents=True, exist_ok=True)

# Plugin handlers
DEFAULT_PLUGIN_TIMEOUT: float = 30.0
DEFAULT_SUB_TIMEOUT: int = 30
