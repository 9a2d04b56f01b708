from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from boxforge.db.config import (
    ConfigBase,
    DnsRuleAction,
    DnsServerType,
    InboundType,
    LogLevel,
    MemberKind,
    MixinPriority,
    OutboundType,
    RuleAction,
    RulesetFormat,
    RulesetType,
    RuleType,
    Strategy,
    sample_id,
)

logger = logging.getLogger("boxforge.profiles")

DEFAULT_SCRIPT = "def on_generate(config):\n    return config\n"


@dataclass
class LogSettings(ConfigBase):
    disabled: bool = False
    level: str = LogLevel.INFO
    output: str = ""
    timestamp: bool = False


@dataclass
class ClashApi(ConfigBase):
    external_controller: str = "127.0.0.1:20123"
    external_ui: str = ""
    external_ui_download_url: str = ""
    # outbound id
    external_ui_download_detour: str = ""
    secret: str = ""
    default_mode: str = "rule"
    access_control_allow_origin: list[str] = field(default_factory=lambda: ["*"])
    access_control_allow_private_network: bool = False


@dataclass
class CacheFile(ConfigBase):
    enabled: bool = True
    path: str = "cache.db"
    cache_id: str = ""
    store_fakeip: bool = True
    store_rdrc: bool = True
    rdrc_timeout: str = "7d"


@dataclass
class Experimental(ConfigBase):
    clash_api: ClashApi = field(default_factory=ClashApi)
    cache_file: CacheFile = field(default_factory=CacheFile)


@dataclass
class InboundListen(ConfigBase):
    listen: str = "127.0.0.1"
    listen_port: int = 20122
    tcp_fast_open: bool = False
    tcp_multi_path: bool = False
    udp_fragment: bool = False


@dataclass
class ListenerSettings(ConfigBase):
    """Settings shared by mixed/socks/http inbounds."""

    listen: InboundListen = field(default_factory=InboundListen)
    # "user:password"
    users: list[str] = field(default_factory=list)


@dataclass
class TunSettings(ConfigBase):
    interface_name: str = ""
    address: list[str] = field(default_factory=lambda: ["172.18.0.1/30", "fdfe:dcba:9876::1/126"])
    mtu: int = 9000
    auto_route: bool = True
    strict_route: bool = True
    route_address: list[str] = field(default_factory=list)
    endpoint_independent_nat: bool = False
    stack: str = "mixed"


@dataclass
class Inbound(ConfigBase):
    id: str = field(default_factory=sample_id)
    type: str = InboundType.MIXED
    tag: str = ""
    enable: bool = True
    mixed: ListenerSettings | None = None
    socks: ListenerSettings | None = None
    http: ListenerSettings | None = None
    tun: TunSettings | None = None

    def listener(self) -> ListenerSettings:
        """Listen settings of a mixed/socks/http inbound."""
        settings = getattr(self, self.type, None)
        return settings if isinstance(settings, ListenerSettings) else ListenerSettings()


@dataclass
class OutboundMember(ConfigBase):
    """Member of a selector/urltest group."""

    id: str = ""
    type: str = MemberKind.BUILTIN
    tag: str = ""
    # owning subscription id, Proxy members only
    subscription: str = ""


@dataclass
class Outbound(ConfigBase):
    id: str = field(default_factory=sample_id)
    tag: str = ""
    type: str = OutboundType.SELECTOR
    outbounds: list[OutboundMember] = field(default_factory=list)
    url: str = "https://www.gstatic.com/generate_204"
    interval: str = "3m"
    tolerance: int = 150
    interrupt_exist_connections: bool = True
    # regex filters applied to subscription proxy tags
    include: str = ""
    exclude: str = ""


@dataclass
class Rule(ConfigBase):
    """Routing rule."""

    id: str = field(default_factory=sample_id)
    type: str = RuleType.RULE_SET
    payload: str = ""
    invert: bool = False
    action: str = RuleAction.ROUTE
    # action = route: outbound id
    outbound: str = ""
    # action = route-options: JSON object
    options: str = ""
    # action = reject
    method: str = ""
    # action = sniff
    sniffer: list[str] = field(default_factory=list)
    # action = resolve
    strategy: str = Strategy.DEFAULT
    server: str = ""


@dataclass
class DnsRule(ConfigBase):
    id: str = field(default_factory=sample_id)
    type: str = RuleType.RULE_SET
    payload: str = ""
    invert: bool = False
    action: str = DnsRuleAction.ROUTE
    # action = route: dns server id
    server: str = ""
    # action = route-options / predefined: JSON object
    options: str = ""
    # action = reject
    method: str = ""


@dataclass
class RuleSet(ConfigBase):
    id: str = field(default_factory=sample_id)
    type: str = RulesetType.LOCAL
    tag: str = ""
    format: str = RulesetFormat.BINARY
    # inline: JSON array of headless rules
    rules: str = ""
    # local
    path: str = ""
    # remote
    url: str = ""
    download_detour: str = ""
    update_interval: str = ""


@dataclass
class Route(ConfigBase):
    rules: list[Rule] = field(default_factory=list)
    rule_set: list[RuleSet] = field(default_factory=list)
    # outbound id
    final: str = ""
    auto_detect_interface: bool = True
    default_interface: str = ""


@dataclass
class DnsServer(ConfigBase):
    id: str = field(default_factory=sample_id)
    tag: str = ""
    type: str = DnsServerType.LOCAL
    server: str = ""
    server_port: int = 0
    path: str = ""
    # dhcp
    interface: str = ""
    # hosts
    hosts_path: list[str] = field(default_factory=list)
    predefined: dict[str, Any] = field(default_factory=dict)
    # fakeip
    inet4_range: str = ""
    inet6_range: str = ""
    # outbound id
    detour: str = ""
    # dns server id
    domain_resolver: str = ""


@dataclass
class Dns(ConfigBase):
    servers: list[DnsServer] = field(default_factory=list)
    rules: list[DnsRule] = field(default_factory=list)
    # dns server id
    final: str = ""
    strategy: str = Strategy.DEFAULT
    client_subnet: str = ""
    disable_cache: bool = False
    disable_expire: bool = False
    independent_cache: bool = False


@dataclass
class Mixin(ConfigBase):
    priority: str = MixinPriority.MIXIN
    # YAML or JSON document
    config: str = "{}"


@dataclass
class Script(ConfigBase):
    code: str = DEFAULT_SCRIPT


@dataclass
class Profile(ConfigBase):
    """User profile compiled into a sing-box config."""

    id: str = field(default_factory=sample_id)
    name: str = ""
    log: LogSettings = field(default_factory=LogSettings)
    experimental: Experimental = field(default_factory=Experimental)
    inbounds: list[Inbound] = field(default_factory=list)
    outbounds: list[Outbound] = field(default_factory=list)
    route: Route = field(default_factory=Route)
    dns: Dns = field(default_factory=Dns)
    mixin: Mixin = field(default_factory=Mixin)
    script: Script = field(default_factory=Script)


def load_profile_file(filepath: Path | str) -> Profile:
    """Load a single profile from a YAML or JSON file."""
    content = Path(filepath).read_text(encoding="utf-8")
    data = yaml.safe_load(content)
    if not isinstance(data, dict):
        raise ValueError(f"{filepath}: profile must be a mapping")
    return Profile.from_dict(data)


class ProfileManager:
    """Profile storage backed by one YAML file."""

    def __init__(self, profiles_file: Path | None = None):
        self._profiles_file = profiles_file or Path.home() / ".config" / "boxforge" / "profiles.yaml"
        self._profiles: list[Profile] = []

    @property
    def profiles(self) -> list[Profile]:
        """All profiles, in stored order."""
        return self._profiles

    def get_profile(self, profile_id: str) -> Profile | None:
        """Get profile by ID."""
        return next((p for p in self._profiles if p.id == profile_id), None)

    def add_profile(self, profile: Profile) -> Profile:
        """Add profile."""
        if self.get_profile(profile.id) is not None:
            raise ValueError(f"Profile already exists: {profile.id}")
        self._profiles.append(profile)
        return profile

    def edit_profile(self, profile_id: str, profile: Profile) -> bool:
        """Replace profile in place."""
        for idx, existing in enumerate(self._profiles):
            if existing.id == profile_id:
                self._profiles[idx] = profile
                return True
        return False

    def remove_profile(self, profile_id: str) -> bool:
        """Remove profile."""
        profile = self.get_profile(profile_id)
        if profile is None:
            return False
        self._profiles.remove(profile)
        return True

    def load(self) -> bool:
        """Load profiles."""
        self._profiles = []
        if not self._profiles_file.exists():
            return True
        try:
            data = yaml.safe_load(self._profiles_file.read_text(encoding="utf-8")) or []
        except (OSError, yaml.YAMLError) as e:
            logger.error("Error loading profiles from %s: %s", self._profiles_file, e)
            return False

        for pdata in data:
            if isinstance(pdata, dict):
                self._profiles.append(Profile.from_dict(pdata))
        return True

    def save(self) -> bool:
        """Save profiles."""
        try:
            self._profiles_file.parent.mkdir(parents=True, exist_ok=True)
            data = [p.to_dict() for p in self._profiles]
            self._profiles_file.write_text(
                yaml.safe_dump(data, allow_unicode=True, sort_keys=False),
                encoding="utf-8",
            )
            return True
        except OSError as e:
            logger.error("Error saving profiles to %s: %s", self._profiles_file, e)
            return False
