from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from boxforge.core.config import (
    CORE_CONFIG_FILE_NAME,
    CORE_DIR,
    CORE_WORKING_DIR_NAME,
    PLUGINS_FILE_NAME,
    PROFILES_FILE_NAME,
    SETTINGS_FILE_NAME,
    SUBSCRIPTIONS_FILE_NAME,
)

if TYPE_CHECKING:
    from boxforge.db.data_store import DataStore
    from boxforge.db.profiles import Profile, ProfileManager
    from boxforge.db.subscriptions import SubscriptionManager
    from boxforge.plugins.manager import PluginManager
    from boxforge.sub.updater import SubscriptionUpdater

logger = logging.getLogger("boxforge.context")


class AppContext:
    """
    Central application context.
    Wires settings and stores together for the compiler.
    """

    def __init__(
        self,
        config_dir: Path | None = None,
        config: DataStore | None = None,
    ):
        self._config_dir = config_dir or self._get_default_config_dir()
        self._config: DataStore | None = config
        self._profiles: ProfileManager | None = None
        self._subscriptions: SubscriptionManager | None = None
        self._plugins: PluginManager | None = None

        # Ensure config dir exists
        self._config_dir.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _get_default_config_dir() -> Path:
        """Get default configuration directory."""
        return CORE_DIR

    @property
    def config_dir(self) -> Path:
        """Configuration directory."""
        return self._config_dir

    @property
    def core_config_file(self) -> Path:
        """Config file the kernel is started with."""
        return self._config_dir / CORE_WORKING_DIR_NAME / CORE_CONFIG_FILE_NAME

    @property
    def config(self) -> DataStore:
        """Application settings (lazy loading)."""
        if self._config is None:
            from boxforge.db.data_store import DataStore
            config_file = self._config_dir / SETTINGS_FILE_NAME
            self._config = DataStore.load(config_file)
        return self._config

    @property
    def profiles(self) -> ProfileManager:
        """Profile manager (lazy loading)."""
        if self._profiles is None:
            from boxforge.db.profiles import ProfileManager
            self._profiles = ProfileManager(self._config_dir / PROFILES_FILE_NAME)
            self._profiles.load()
        return self._profiles

    @property
    def subscriptions(self) -> SubscriptionManager:
        """Subscription manager (lazy loading)."""
        if self._subscriptions is None:
            from boxforge.db.subscriptions import SubscriptionManager
            self._subscriptions = SubscriptionManager(self._config_dir / SUBSCRIPTIONS_FILE_NAME)
            self._subscriptions.load()
        return self._subscriptions

    @property
    def plugins(self) -> PluginManager:
        """Plugin manager (lazy loading)."""
        if self._plugins is None:
            from boxforge.plugins.manager import PluginManager
            self._plugins = PluginManager(self._config_dir / PLUGINS_FILE_NAME, config=self.config)
            self._plugins.load()
        return self._plugins

    def subscription_updater(self) -> SubscriptionUpdater:
        from boxforge.sub.updater import SubscriptionUpdater
        return SubscriptionUpdater(self.subscriptions, config=self.config, plugins=self.plugins)

    def get_profile(self, profile_id: str | None = None) -> Profile | None:
        """Profile by id, or the current profile."""
        return self.profiles.get_profile(profile_id or self.config.current_profile)

    async def generate_config_file(self, profile_id: str | None = None, output: Path | None = None) -> Path:
        """
        Compile a stored profile and write the kernel config.

        on::before::core::start plugins get the last word before writing.

        Raises:
            KeyError: Unknown profile
            CompileError: Any stage failed; nothing is written
        """
        from boxforge.gen.generator import generate_config_file

        profile = self.get_profile(profile_id)
        if profile is None:
            raise KeyError(f"{profile_id or self.config.current_profile} Not Found")
        logger.info("Generating config for profile %s", profile.name or profile.id)

        async def before_write(config: dict) -> dict:
            return await self.plugins.on_before_core_start(config, profile)

        return await generate_config_file(
            profile,
            plugins=self.plugins,
            proxy_source=self.subscriptions,
            strict=self.config.strict_references,
            script_timeout=self.config.get_plugin_timeout(),
            before_write=before_write,
            output=output or self.core_config_file,
        )

    def save_config(self) -> bool:
        """Save configuration."""
        if self._config is None:
            return False
        config_file = self._config_dir / SETTINGS_FILE_NAME
        return self._config.save(config_file)

    def save_profiles(self) -> bool:
        """Save profiles."""
        if self._profiles is None:
            return False
        return self._profiles.save()


_context: AppContext | None = None


def get_context() -> AppContext:
    """
    Get global application context.
    Creates context with default settings if not initialized.
    """
    global _context
    if _context is None:
        _context = AppContext()
    return _context


def init_context(
    config_dir: Path | None = None,
    config: DataStore | None = None,
) -> AppContext:
    """
    Initialize global context.
    Should be called once at application startup.
    """
    global _context
    _context = AppContext(config_dir=config_dir, config=config)
    return _context


def reset_context() -> None:
    """Reset context (for tests)."""
    global _context
    _context = None
