from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from boxforge.db.config import ConfigBase, sample_id


class PluginTrigger:
    """Extension points plugins can subscribe to."""

    ON_MANUAL = "on::manual"
    ON_SUBSCRIBE = "on::subscribe"
    ON_GENERATE = "on::generate"
    ON_STARTUP = "on::startup"
    ON_SHUTDOWN = "on::shutdown"
    ON_READY = "on::ready"
    ON_CORE_STARTED = "on::core::started"
    ON_CORE_STOPPED = "on::core::stopped"
    ON_BEFORE_CORE_START = "on::before::core::start"
    ON_BEFORE_CORE_STOP = "on::before::core::stop"

    ALL = [
        ON_MANUAL,
        ON_SUBSCRIBE,
        ON_GENERATE,
        ON_STARTUP,
        ON_SHUTDOWN,
        ON_READY,
        ON_CORE_STARTED,
        ON_CORE_STOPPED,
        ON_BEFORE_CORE_START,
        ON_BEFORE_CORE_STOP,
    ]


class PluginEvent:
    """Handler function names looked up in plugin code."""

    ON_MANUAL = "on_run"
    ON_SUBSCRIBE = "on_subscribe"
    ON_GENERATE = "on_generate"
    ON_STARTUP = "on_startup"
    ON_SHUTDOWN = "on_shutdown"
    ON_READY = "on_ready"
    ON_CORE_STARTED = "on_core_started"
    ON_CORE_STOPPED = "on_core_stopped"
    ON_BEFORE_CORE_START = "on_before_core_start"
    ON_BEFORE_CORE_STOP = "on_before_core_stop"


TRIGGER_EVENTS: dict[str, str] = {
    PluginTrigger.ON_MANUAL: PluginEvent.ON_MANUAL,
    PluginTrigger.ON_SUBSCRIBE: PluginEvent.ON_SUBSCRIBE,
    PluginTrigger.ON_GENERATE: PluginEvent.ON_GENERATE,
    PluginTrigger.ON_STARTUP: PluginEvent.ON_STARTUP,
    PluginTrigger.ON_SHUTDOWN: PluginEvent.ON_SHUTDOWN,
    PluginTrigger.ON_READY: PluginEvent.ON_READY,
    PluginTrigger.ON_CORE_STARTED: PluginEvent.ON_CORE_STARTED,
    PluginTrigger.ON_CORE_STOPPED: PluginEvent.ON_CORE_STOPPED,
    PluginTrigger.ON_BEFORE_CORE_START: PluginEvent.ON_BEFORE_CORE_START,
    PluginTrigger.ON_BEFORE_CORE_STOP: PluginEvent.ON_BEFORE_CORE_STOP,
}


class PluginSource:
    HTTP = "Http"
    FILE = "File"


class PluginStatus:
    NORMAL = 0


@dataclass
class PluginOption(ConfigBase):
    """One configurable value exposed by a plugin."""

    key: str = ""
    value: Any = None
    title: str = ""


@dataclass
class Plugin(ConfigBase):
    id: str = field(default_factory=sample_id)
    name: str = ""
    version: str = ""
    description: str = ""
    type: str = PluginSource.FILE
    url: str = ""
    path: str = ""
    triggers: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    configuration: list[PluginOption] = field(default_factory=list)
    disabled: bool = False
    install: bool = False
    installed: bool = False
    status: int = PluginStatus.NORMAL

    @property
    def display_name(self) -> str:
        return self.name or self.id
