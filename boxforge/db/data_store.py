from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from boxforge.core.config import DEFAULT_PLUGIN_TIMEOUT, DEFAULT_SUB_TIMEOUT, SETTINGS_FILE
from boxforge.db.config import ConfigBase, LogLevel


@dataclass
class DataStore(ConfigBase):
    """Main application settings storage."""
    # Logging
    log_level: str = LogLevel.INFO
    # Subscriptions
    user_agent: str = ""
    sub_insecure: bool = False
    sub_timeout: int = DEFAULT_SUB_TIMEOUT
    # Generation
    current_profile: str = ""
    strict_references: bool = False
    # seconds, 0 disables the deadline
    plugin_timeout: float = DEFAULT_PLUGIN_TIMEOUT
    # Per-plugin configuration overrides, keyed by plugin id
    plugin_settings: dict[str, dict[str, Any]] = field(default_factory=dict)

    def get_user_agent(self, use_default: bool = False) -> str:
        """Get User-Agent."""
        if use_default or not self.user_agent:
            return "boxforge/1.0 (sing-box)"
        return self.user_agent

    def get_plugin_timeout(self) -> float | None:
        """Deadline for one plugin handler call, None when disabled."""
        if not self.plugin_timeout or self.plugin_timeout <= 0:
            return None
        return float(self.plugin_timeout)


DEFAULT_CONFIG_FILE = SETTINGS_FILE


def get_default_config_path() -> Path:
    """Get default configuration path."""
    return DEFAULT_CONFIG_FILE


def load_data_store(config_path: Path | None = None) -> DataStore:
    """Load DataStore from file."""
    path = config_path or DEFAULT_CONFIG_FILE
    return DataStore.load(path)


def save_data_store(store: DataStore, config_path: Path | None = None) -> bool:
    """Save DataStore to file."""
    path = config_path or DEFAULT_CONFIG_FILE
    return store.save(path)
