from __future__ import annotations

import copy
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

import requests
import yaml

from boxforge.core.config import PLUGINS_DIR_NAME
from boxforge.core.errors import PluginError
from boxforge.db.plugins import (
    TRIGGER_EVENTS,
    Plugin,
    PluginSource,
    PluginTrigger,
)
from boxforge.plugins.runner import compile_handler, describe_error, invoke

if TYPE_CHECKING:
    from boxforge.db.data_store import DataStore
    from boxforge.db.profiles import Profile
    from boxforge.db.subscriptions import Subscription

logger = logging.getLogger("boxforge.plugins")


@dataclass
class PluginCacheEntry:
    plugin: Plugin
    code: str


class PluginManager:
    """
    Plugin registry and trigger dispatcher.

    Observer lists are derived from the declaration order of the plugin list
    on every dispatch, so execution order always matches that order.
    """

    def __init__(
        self,
        plugins_file: Path,
        base_dir: Path | None = None,
        config: DataStore | None = None,
    ):
        self._plugins_file = plugins_file
        self._base_dir = base_dir or plugins_file.parent
        self._config = config
        self._plugins: list[Plugin] = []
        self._cache: dict[str, PluginCacheEntry] = {}

    @property
    def plugins(self) -> list[Plugin]:
        return self._plugins

    @property
    def timeout(self) -> float | None:
        return self._config.get_plugin_timeout() if self._config else None

    def get_plugin(self, plugin_id: str) -> Plugin | None:
        return next((p for p in self._plugins if p.id == plugin_id), None)

    def get_code(self, plugin_id: str) -> str | None:
        entry = self._cache.get(plugin_id)
        return entry.code if entry else None

    def _code_path(self, plugin: Plugin) -> Path:
        path = Path(plugin.path)
        return path if path.is_absolute() else self._base_dir / path

    # Storage

    def load(self) -> bool:
        """Load the plugin list and cache the code of every plugin that has it."""
        self._plugins = []
        self._cache = {}
        if self._plugins_file.exists():
            try:
                data = yaml.safe_load(self._plugins_file.read_text(encoding="utf-8")) or []
            except (OSError, yaml.YAMLError) as e:
                logger.error("Error loading plugins from %s: %s", self._plugins_file, e)
                return False
            self._plugins = [Plugin.from_dict(p) for p in data if isinstance(p, dict)]

        for plugin in self._plugins:
            path = self._code_path(plugin)
            try:
                code = path.read_text(encoding="utf-8")
            except OSError:
                logger.debug("No code for plugin %s at %s", plugin.display_name, path)
                continue
            self._cache[plugin.id] = PluginCacheEntry(plugin=plugin, code=code)
        return True

    def save(self) -> bool:
        try:
            self._plugins_file.parent.mkdir(parents=True, exist_ok=True)
            data = [p.to_dict() for p in self._plugins]
            self._plugins_file.write_text(
                yaml.safe_dump(data, allow_unicode=True, sort_keys=False),
                encoding="utf-8",
            )
            return True
        except OSError as e:
            logger.error("Error saving plugins to %s: %s", self._plugins_file, e)
            return False

    def fetch_code(self, plugin: Plugin) -> str:
        """Obtain plugin source: read File plugins, download Http plugins."""
        if plugin.type == PluginSource.HTTP:
            response = requests.get(plugin.url, timeout=30)
            response.raise_for_status()
            code = response.text
            path = self._code_path(plugin)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(code, encoding="utf-8")
            return code
        return self._code_path(plugin).read_text(encoding="utf-8")

    def reload_plugin(self, plugin: Plugin, code: str = "") -> None:
        """Refresh the cached code of a plugin."""
        if not code:
            code = self.fetch_code(plugin)
        self._cache[plugin.id] = PluginCacheEntry(plugin=plugin, code=code)

    def add_plugin(self, plugin: Plugin, code: str = "") -> Plugin:
        if self.get_plugin(plugin.id) is not None:
            raise ValueError(f"Plugin already exists: {plugin.id}")
        if not plugin.path:
            plugin.path = f"{PLUGINS_DIR_NAME}/{plugin.id}.py"
        self.reload_plugin(plugin, code)
        self._plugins.append(plugin)
        return plugin

    def edit_plugin(self, plugin_id: str, plugin: Plugin) -> bool:
        for idx, existing in enumerate(self._plugins):
            if existing.id == plugin_id:
                self._plugins[idx] = plugin
                entry = self._cache.pop(plugin_id, None)
                if entry is not None:
                    self._cache[plugin.id] = PluginCacheEntry(plugin=plugin, code=entry.code)
                return True
        return False

    def delete_plugin(self, plugin_id: str) -> bool:
        plugin = self.get_plugin(plugin_id)
        if plugin is None:
            return False
        self._plugins.remove(plugin)
        self._cache.pop(plugin_id, None)
        return True

    def update_plugin(self, plugin_id: str) -> str:
        """Re-fetch plugin code."""
        plugin = self.get_plugin(plugin_id)
        if plugin is None:
            raise KeyError(f"{plugin_id} Not Found")
        if plugin.disabled:
            raise PluginError(plugin.display_name, "is Disabled")
        self.reload_plugin(plugin)
        return f"Plugin [{plugin.display_name}] updated successfully."

    # Dispatch

    def observers(self, trigger: str) -> list[str]:
        """Ids of plugins subscribed to trigger, in declaration order."""
        return [p.id for p in self._plugins if trigger in p.triggers]

    def is_available(self, plugin_id: str) -> bool:
        """Enabled, code cached, and installed if it needs installing."""
        entry = self._cache.get(plugin_id)
        if entry is None:
            return False
        plugin = entry.plugin
        if plugin.disabled:
            return False
        return not (plugin.install and not plugin.installed)

    def get_metadata(self, plugin: Plugin) -> dict[str, Any]:
        """Plugin description plus its effective configuration values."""
        metadata = plugin.to_dict()
        for option in plugin.configuration:
            metadata[option.key] = option.value
        if self._config:
            metadata.update(self._config.plugin_settings.get(plugin.id, {}))
        return copy.deepcopy(metadata)

    async def _call(self, entry: PluginCacheEntry, fn_name: str, *args: Any) -> Any:
        plugin = entry.plugin
        try:
            handler = compile_handler(
                entry.code,
                fn_name,
                filename=f"<plugin:{plugin.id}>",
                namespace={"Plugin": self.get_metadata(plugin)},
            )
            return await invoke(handler, *args, timeout=self.timeout)
        except Exception as e:
            logger.error("Plugin %s failed in %s: %s", plugin.display_name, fn_name, e)
            raise PluginError(plugin.display_name, describe_error(e)) from e

    def _eligible(self, trigger: str) -> list[PluginCacheEntry]:
        entries = []
        for plugin_id in self.observers(trigger):
            if not self.is_available(plugin_id):
                logger.debug("Skipping unavailable plugin %s for %s", plugin_id, trigger)
                continue
            entries.append(self._cache[plugin_id])
        return entries

    async def _transform_chain(
        self,
        trigger: str,
        config: dict[str, Any],
        profile: Profile,
    ) -> dict[str, Any]:
        fn_name = TRIGGER_EVENTS[trigger]
        entries = self._eligible(trigger)
        if not entries:
            return config

        profile_snapshot = profile.to_dict()
        for entry in entries:
            logger.debug("Running %s of plugin %s", fn_name, entry.plugin.display_name)
            config = await self._call(entry, fn_name, config, copy.deepcopy(profile_snapshot))
            if not isinstance(config, dict):
                raise PluginError(entry.plugin.display_name, "Wrong result")
        return config

    async def on_generate(self, config: dict[str, Any], profile: Profile) -> dict[str, Any]:
        """Pass the generated config through every on::generate plugin."""
        return await self._transform_chain(PluginTrigger.ON_GENERATE, config, profile)

    async def on_before_core_start(self, config: dict[str, Any], profile: Profile) -> dict[str, Any]:
        """Last rewrite of the config before it is written for the kernel."""
        return await self._transform_chain(PluginTrigger.ON_BEFORE_CORE_START, config, profile)

    async def on_subscribe(
        self,
        proxies: list[dict[str, Any]] | str,
        subscription: Subscription,
    ) -> list[dict[str, Any]]:
        """Pass a freshly fetched proxy list through every on::subscribe plugin."""
        fn_name = TRIGGER_EVENTS[PluginTrigger.ON_SUBSCRIBE]
        entries = self._eligible(PluginTrigger.ON_SUBSCRIBE)
        if not entries:
            return _coerce_proxies(proxies)

        sub_snapshot = subscription.to_dict()
        for entry in entries:
            name = entry.plugin.display_name
            try:
                payload = _coerce_proxies(proxies)
            except ValueError as e:
                raise PluginError(name, str(e)) from e
            result = await self._call(entry, fn_name, payload, copy.deepcopy(sub_snapshot))
            try:
                proxies = _coerce_proxies(result)
            except ValueError as e:
                raise PluginError(name, "Wrong result") from e
        return proxies

    async def _notify(self, trigger: str, interrupt_on_error: bool = False) -> None:
        fn_name = TRIGGER_EVENTS[trigger]
        for entry in self._eligible(trigger):
            try:
                exit_code = await self._call(entry, fn_name)
            except PluginError:
                if interrupt_on_error:
                    raise
                continue
            if isinstance(exit_code, int) and not isinstance(exit_code, bool):
                entry.plugin.status = exit_code

    async def on_startup(self) -> None:
        await self._notify(PluginTrigger.ON_STARTUP)

    async def on_ready(self) -> None:
        await self._notify(PluginTrigger.ON_READY)

    async def on_core_started(self) -> None:
        await self._notify(PluginTrigger.ON_CORE_STARTED)

    async def on_core_stopped(self) -> None:
        await self._notify(PluginTrigger.ON_CORE_STOPPED)

    async def on_shutdown(self) -> None:
        await self._notify(PluginTrigger.ON_SHUTDOWN, interrupt_on_error=True)

    async def on_before_core_stop(self) -> None:
        await self._notify(PluginTrigger.ON_BEFORE_CORE_STOP, interrupt_on_error=True)

    async def manual_trigger(self, plugin_id: str, event: str, *args: Any) -> Any:
        """Run one handler of one plugin on demand."""
        plugin = self.get_plugin(plugin_id)
        if plugin is None:
            raise KeyError(f"{plugin_id} Not Found")
        entry = self._cache.get(plugin_id)
        if entry is None:
            raise PluginError(plugin.display_name, "is Missing source code")
        if plugin.disabled:
            raise PluginError(plugin.display_name, "is Disabled")

        exit_code = await self._call(entry, event, *copy.deepcopy(args))
        if isinstance(exit_code, int) and not isinstance(exit_code, bool):
            plugin.status = exit_code
        return exit_code


def _coerce_proxies(value: Any) -> list[dict[str, Any]]:
    """Accept a proxy list or its JSON/YAML text."""
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            try:
                value = yaml.safe_load(value)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid proxy list text: {e}") from e
        if isinstance(value, dict) and "proxies" in value:
            value = value["proxies"]
    if not isinstance(value, list):
        raise ValueError("Proxy list must be an array")
    if not all(isinstance(proxy, dict) for proxy in value):
        raise ValueError("Proxy list entries must be objects")
    return value
