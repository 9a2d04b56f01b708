from __future__ import annotations

import json
import logging
import types
import uuid
from abc import ABC
from dataclasses import MISSING, dataclass, fields
from pathlib import Path
from typing import (
    Any,
    TypeVar,
    Union,
    get_args,
    get_origin,
    get_type_hints,
)

T = TypeVar("T", bound="ConfigBase")

logger = logging.getLogger("boxforge.db")

_UNION_TYPES = (Union, types.UnionType)


def sample_id() -> str:
    """Random short identifier for profile entities."""
    return "ID_" + uuid.uuid4().hex[:8]


def _is_optional(field_type: Any) -> bool:
    """Check if type is Optional[X]"""
    origin = get_origin(field_type)
    if origin is type(None):
        return True
    if origin in _UNION_TYPES:
        return type(None) in get_args(field_type)
    return False


def _get_inner_type(field_type: Any) -> Any:
    """Get inner type from Optional[X] or List[X]"""
    origin = get_origin(field_type)
    if origin is list:
        args = get_args(field_type)
        return args[0] if args else Any
    if origin in _UNION_TYPES:
        for arg in get_args(field_type):
            if arg is not type(None):
                return arg
    return field_type


@dataclass
class ConfigBase(ABC):
    """
    Base class for all stored entities.
    Automatic serialization/deserialization to JSON.
    """

    def to_dict(self, exclude_defaults: bool = False, exclude_none: bool = True) -> dict[str, Any]:
        """
        Convert to dictionary.

        Args:
            exclude_defaults: Exclude fields with default values
            exclude_none: Exclude fields with None value
        """
        result = {}

        for f in fields(self):
            value = getattr(self, f.name)

            if exclude_none and value is None:
                continue

            if exclude_defaults:
                if f.default is not MISSING and value == f.default:
                    continue
                if f.default_factory is not MISSING and value == f.default_factory():
                    continue

            if isinstance(value, ConfigBase):
                result[f.name] = value.to_dict(exclude_defaults, exclude_none)
            elif isinstance(value, list):
                result[f.name] = [
                    item.to_dict(exclude_defaults, exclude_none)
                    if isinstance(item, ConfigBase)
                    else item
                    for item in value
                ]
            elif isinstance(value, dict):
                result[f.name] = dict(value)
            else:
                result[f.name] = value

        return result

    def to_json(self, indent: int | None = 2, ensure_ascii: bool = False) -> str:
        """Convert to JSON string."""
        return json.dumps(self.to_dict(), indent=indent, ensure_ascii=ensure_ascii)

    @classmethod
    def from_dict(cls: type[T], data: dict[str, Any] | None) -> T:
        """
        Create instance from dictionary.

        Unknown keys are ignored, missing keys take the field default.
        """
        if not data:
            return cls()

        field_types = get_type_hints(cls)

        kwargs = {}
        for f in fields(cls):
            if f.name not in data:
                continue

            value = data[f.name]
            field_type = field_types.get(f.name, f.type)

            if _is_optional(field_type):
                if value is None:
                    kwargs[f.name] = None
                    continue
                field_type = _get_inner_type(field_type)

            origin = get_origin(field_type)

            if origin is list:
                inner_type = _get_inner_type(field_type)
                if isinstance(inner_type, type) and issubclass(inner_type, ConfigBase):
                    kwargs[f.name] = [inner_type.from_dict(item) for item in value or []]
                else:
                    kwargs[f.name] = list(value or [])
            elif isinstance(field_type, type) and issubclass(field_type, ConfigBase):
                kwargs[f.name] = field_type.from_dict(value) if isinstance(value, dict) else field_type()
            else:
                kwargs[f.name] = value

        return cls(**kwargs)

    @classmethod
    def from_json(cls: type[T], json_str: str) -> T:
        """Create instance from JSON string."""
        try:
            data = json.loads(json_str)
            return cls.from_dict(data)
        except json.JSONDecodeError:
            return cls()

    @classmethod
    def load(cls: type[T], filepath: Path | str) -> T:
        """Load from JSON file."""
        path = Path(filepath)
        if not path.exists():
            return cls()

        try:
            content = path.read_text(encoding="utf-8")
            return cls.from_json(content)
        except OSError as e:
            logger.error("Error loading config from %s: %s", filepath, e)
            return cls()

    def save(self, filepath: Path | str, indent: int = 2) -> bool:
        """Save to JSON file."""
        path = Path(filepath)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(self.to_json(indent=indent), encoding="utf-8")
            return True
        except OSError as e:
            logger.error("Error saving config to %s: %s", filepath, e)
            return False

    def update(self, **kwargs) -> None:
        """Update fields from kwargs."""
        for key, value in kwargs.items():
            if hasattr(self, key):
                setattr(self, key, value)

    def copy(self: T) -> T:
        """Create a deep copy."""
        return self.__class__.from_dict(json.loads(json.dumps(self.to_dict(exclude_none=False))))


class LogLevel:
    """sing-box log levels."""

    TRACE = "trace"
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    FATAL = "fatal"
    PANIC = "panic"

    ALL = [TRACE, DEBUG, INFO, WARN, ERROR, FATAL, PANIC]
    # Levels a generated document may carry
    ALLOWED = [TRACE, DEBUG, INFO, WARN, ERROR]


class InboundType:
    MIXED = "mixed"
    SOCKS = "socks"
    HTTP = "http"
    TUN = "tun"

    ALL = [MIXED, SOCKS, HTTP, TUN]
    LISTENERS = [MIXED, SOCKS, HTTP]


class OutboundType:
    DIRECT = "direct"
    SELECTOR = "selector"
    URLTEST = "urltest"

    ALL = [DIRECT, SELECTOR, URLTEST]
    GROUPS = [SELECTOR, URLTEST]


class MemberKind:
    """Kinds of outbound group members."""

    BUILTIN = "Built-in"
    SUBSCRIPTION = "Subscription"
    PROXY = "Proxy"

    ALL = [BUILTIN, SUBSCRIPTION, PROXY]


class BuiltinOutbound:
    """Kernel outbounds usable by id without being declared."""

    DIRECT = "direct"
    BLOCK = "block"

    ALL = [DIRECT, BLOCK]


class RulesetType:
    INLINE = "inline"
    LOCAL = "local"
    REMOTE = "remote"

    ALL = [INLINE, LOCAL, REMOTE]


class RulesetFormat:
    SOURCE = "source"
    BINARY = "binary"


class RuleType:
    INBOUND = "inbound"
    NETWORK = "network"
    PROTOCOL = "protocol"
    DOMAIN = "domain"
    DOMAIN_SUFFIX = "domain_suffix"
    DOMAIN_KEYWORD = "domain_keyword"
    DOMAIN_REGEX = "domain_regex"
    SOURCE_IP_CIDR = "source_ip_cidr"
    IP_CIDR = "ip_cidr"
    IP_IS_PRIVATE = "ip_is_private"
    SOURCE_IP_IS_PRIVATE = "source_ip_is_private"
    IP_ACCEPT_ANY = "ip_accept_any"
    SOURCE_PORT = "source_port"
    SOURCE_PORT_RANGE = "source_port_range"
    PORT = "port"
    PORT_RANGE = "port_range"
    PROCESS_NAME = "process_name"
    PROCESS_PATH = "process_path"
    PROCESS_PATH_REGEX = "process_path_regex"
    CLASH_MODE = "clash_mode"
    RULE_SET = "rule_set"
    # dns rule type
    OUTBOUND = "outbound"
    # raw JSON merged into the rule
    INLINE = "inline"

    BOOLEAN = [IP_IS_PRIVATE, SOURCE_IP_IS_PRIVATE, IP_ACCEPT_ANY]
    ENUM = [CLASH_MODE]
    NUMERIC = [PORT, SOURCE_PORT]


class RuleAction:
    ROUTE = "route"
    ROUTE_OPTIONS = "route-options"
    REJECT = "reject"
    HIJACK_DNS = "hijack-dns"
    SNIFF = "sniff"
    RESOLVE = "resolve"

    ALL = [ROUTE, ROUTE_OPTIONS, REJECT, HIJACK_DNS, SNIFF, RESOLVE]


class DnsRuleAction:
    ROUTE = "route"
    ROUTE_OPTIONS = "route-options"
    REJECT = "reject"
    PREDEFINED = "predefined"

    ALL = [ROUTE, ROUTE_OPTIONS, REJECT, PREDEFINED]


class Strategy:
    DEFAULT = "default"
    PREFER_IPV4 = "prefer_ipv4"
    PREFER_IPV6 = "prefer_ipv6"
    IPV4_ONLY = "ipv4_only"
    IPV6_ONLY = "ipv6_only"

    ALL = [DEFAULT, PREFER_IPV4, PREFER_IPV6, IPV4_ONLY, IPV6_ONLY]


class DnsServerType:
    LOCAL = "local"
    HOSTS = "hosts"
    TCP = "tcp"
    UDP = "udp"
    TLS = "tls"
    QUIC = "quic"
    HTTPS = "https"
    H3 = "h3"
    DHCP = "dhcp"
    FAKEIP = "fakeip"

    REMOTE = [TCP, UDP, TLS, QUIC, HTTPS, H3]
    WITH_PATH = [HTTPS, H3]
    # Types that dial out and therefore accept detour / domain_resolver
    DIALING = [TCP, UDP, TLS, QUIC, HTTPS, H3, DHCP]


class MixinPriority:
    MIXIN = "mixin"
    GUI = "gui"

    ALL = [MIXIN, GUI]
