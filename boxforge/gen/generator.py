"""
Profile -> sing-box config compiler.

Stages run strictly in sequence:
1. generate log/experimental/inbounds/outbounds/route/dns from the profile
2. on::generate plugin chain
3. mixin overlay
4. profile script (on_generate)
followed by the output invariants.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import TYPE_CHECKING, Any

from boxforge.core.config import CORE_CACHE_FILE_NAME, CORE_CONFIG_FILE
from boxforge.core.errors import ProfileParseError, ScriptError, WrongResultError
from boxforge.db.config import DnsServerType, InboundType, LogLevel, RulesetType, Strategy
from boxforge.db.plugins import PluginEvent
from boxforge.gen.mixin import apply_mixin
from boxforge.gen.outbounds import OutboundSetCompiler
from boxforge.gen.resolver import InboundResolver, OutboundResolver, TagResolver
from boxforge.gen.rules import encode_dns_rule, encode_route_rule
from boxforge.plugins.runner import compile_handler, describe_error, invoke

if TYPE_CHECKING:
    from boxforge.db.profiles import Dns, Experimental, Inbound, Profile, Route, RuleSet, Script
    from boxforge.gen.outbounds import ProxySource
    from boxforge.plugins.manager import PluginManager

logger = logging.getLogger("boxforge.gen")

ConfigTransform = Callable[[dict[str, Any]], Awaitable[dict[str, Any]]]


class Resolvers:
    """All id -> tag lookups for one profile."""

    def __init__(self, profile: Profile, strict: bool = False):
        self.outbounds = OutboundResolver(profile.outbounds, strict)
        self.inbounds = InboundResolver(profile.inbounds, strict)
        self.rule_sets = TagResolver("rule_set", profile.route.rule_set, strict)
        self.dns_servers = TagResolver("dns_server", profile.dns.servers, strict)


def generate_experimental(experimental: Experimental, resolvers: Resolvers) -> dict[str, Any]:
    clash_api = experimental.clash_api.to_dict()
    detour = resolvers.outbounds.resolve(experimental.clash_api.external_ui_download_detour)
    if detour is None:
        clash_api.pop("external_ui_download_detour", None)
    else:
        clash_api["external_ui_download_detour"] = detour
    return {
        "clash_api": clash_api,
        "cache_file": experimental.cache_file.to_dict(),
    }


def _split_user(user: str) -> dict[str, str]:
    username, _, password = user.partition(":")
    return {"username": username, "password": password}


def generate_inbounds(inbounds: list[Inbound]) -> list[dict[str, Any]]:
    result = []
    for inbound in inbounds:
        if not inbound.enable:
            continue
        item: dict[str, Any] = {"type": inbound.type, "tag": inbound.tag}
        if inbound.type == InboundType.TUN:
            if inbound.tun is not None:
                item.update(inbound.tun.to_dict())
        else:
            listener = inbound.listener()
            item.update(listener.listen.to_dict())
            item["users"] = [_split_user(user) for user in listener.users]
        result.append(item)
    return result


def _generate_rule_set(rule_set: RuleSet, resolvers: Resolvers) -> dict[str, Any]:
    item: dict[str, Any] = {"tag": rule_set.tag, "type": rule_set.type}
    if rule_set.type == RulesetType.INLINE:
        try:
            item["rules"] = json.loads(rule_set.rules) if rule_set.rules.strip() else []
        except json.JSONDecodeError as e:
            raise ProfileParseError(f"Invalid inline rule-set {rule_set.tag!r}: {e}") from e
    elif rule_set.type == RulesetType.LOCAL:
        item["format"] = rule_set.format
        path = rule_set.path
        # local rule-sets live under data/, the kernel runs in data/sing-box
        if path.startswith("data/"):
            path = "../" + path[len("data/"):]
        item["path"] = path
    elif rule_set.type == RulesetType.REMOTE:
        item["format"] = rule_set.format
        item["url"] = rule_set.url
        detour = resolvers.outbounds.resolve(rule_set.download_detour)
        if detour is not None:
            item["download_detour"] = detour
        if rule_set.update_interval:
            item["update_interval"] = rule_set.update_interval
    return item


def generate_route(route: Route, resolvers: Resolvers) -> dict[str, Any]:
    rules = []
    for rule in route.rules:
        encoded = encode_route_rule(
            rule,
            resolvers.rule_sets,
            resolvers.inbounds,
            resolvers.outbounds,
            resolvers.dns_servers,
        )
        if encoded is not None:
            rules.append(encoded)

    result: dict[str, Any] = {
        "rules": rules,
        "rule_set": [_generate_rule_set(rs, resolvers) for rs in route.rule_set],
        "auto_detect_interface": route.auto_detect_interface,
    }
    final = resolvers.outbounds.resolve(route.final)
    if final is not None:
        result["final"] = final
    if not route.auto_detect_interface:
        result["default_interface"] = route.default_interface
    return result


def generate_dns(dns: Dns, resolvers: Resolvers) -> dict[str, Any]:
    servers = []
    for server in dns.servers:
        item: dict[str, Any] = {"tag": server.tag, "type": server.type}
        if server.type in DnsServerType.REMOTE:
            item["server"] = server.server
            if server.server_port:
                item["server_port"] = server.server_port
            if server.type in DnsServerType.WITH_PATH and server.path:
                item["path"] = server.path
        elif server.type == DnsServerType.DHCP:
            if server.interface:
                item["interface"] = server.interface
        elif server.type == DnsServerType.HOSTS:
            if server.hosts_path:
                item["path"] = list(server.hosts_path)
            if server.predefined:
                item["predefined"] = dict(server.predefined)
        elif server.type == DnsServerType.FAKEIP:
            if server.inet4_range:
                item["inet4_range"] = server.inet4_range
            if server.inet6_range:
                item["inet6_range"] = server.inet6_range

        if server.type in DnsServerType.DIALING:
            detour = resolvers.outbounds.resolve(server.detour)
            if detour is not None:
                item["detour"] = detour
            domain_resolver = resolvers.dns_servers.resolve(server.domain_resolver)
            if domain_resolver is not None:
                item["domain_resolver"] = domain_resolver
        servers.append(item)

    rules = []
    for rule in dns.rules:
        encoded = encode_dns_rule(rule, resolvers.rule_sets, resolvers.inbounds, resolvers.dns_servers)
        if encoded is not None:
            rules.append(encoded)

    result: dict[str, Any] = {
        "servers": servers,
        "rules": rules,
        "disable_cache": dns.disable_cache,
        "disable_expire": dns.disable_expire,
        "independent_cache": dns.independent_cache,
    }
    final = resolvers.dns_servers.resolve(dns.final)
    if final is not None:
        result["final"] = final
    if dns.strategy and dns.strategy != Strategy.DEFAULT:
        result["strategy"] = dns.strategy
    if dns.client_subnet:
        result["client_subnet"] = dns.client_subnet
    return result


async def build_base_config(
    profile: Profile,
    proxy_source: ProxySource | None = None,
    strict: bool = False,
) -> dict[str, Any]:
    """Stage 1: translate the profile model into the sing-box schema."""
    resolvers = Resolvers(profile, strict)
    outbound_set = OutboundSetCompiler(profile.outbounds, resolvers.outbounds, proxy_source)

    config: dict[str, Any] = {
        "log": profile.log.to_dict(),
        "experimental": generate_experimental(profile.experimental, resolvers),
        "inbounds": generate_inbounds(profile.inbounds),
        "outbounds": await outbound_set.compile(),
        "route": generate_route(profile.route, resolvers),
        "dns": generate_dns(profile.dns, resolvers),
    }
    # built-ins referenced from route/dns count as well
    outbound_set.append_builtins(config["outbounds"])
    return config


async def run_script(
    script: Script,
    config: dict[str, Any],
    timeout: float | None = None,
) -> dict[str, Any]:
    """Stage 4: hand the config to the profile's on_generate(config)."""
    if not script.code or not script.code.strip():
        return config

    try:
        handler = compile_handler(script.code, PluginEvent.ON_GENERATE, filename="<profile-script>")
        result = await invoke(handler, config, timeout=timeout)
    except Exception as e:
        raise ScriptError(describe_error(e)) from e

    if not isinstance(result, dict):
        raise WrongResultError()
    return result


def enforce_output_invariants(config: dict[str, Any]) -> dict[str, Any]:
    """Post-conditions every written config satisfies."""
    log = config.get("log")
    if not isinstance(log, dict):
        log = config["log"] = {}
    log["disabled"] = False
    log.pop("output", None)
    if log.get("level") not in LogLevel.ALLOWED:
        log["level"] = LogLevel.INFO

    experimental = config.get("experimental")
    if not isinstance(experimental, dict):
        experimental = config["experimental"] = {}
    cache_file = experimental.get("cache_file")
    if not isinstance(cache_file, dict):
        cache_file = experimental["cache_file"] = {}
    cache_file["path"] = CORE_CACHE_FILE_NAME
    return config


async def generate_config(
    profile: Profile,
    plugins: PluginManager | None = None,
    proxy_source: ProxySource | None = None,
    strict: bool = False,
    script_timeout: float | None = None,
) -> dict[str, Any]:
    """
    Compile a profile into a sing-box config.

    Any failing stage raises and no document is returned.
    """
    snapshot = profile.copy()

    logger.debug("Generating config for profile %s", snapshot.name or snapshot.id)
    config = await build_base_config(snapshot, proxy_source, strict)

    if plugins is not None:
        logger.debug("Running on::generate plugins")
        config = await plugins.on_generate(config, snapshot)

    logger.debug("Applying mixin (priority %s)", snapshot.mixin.priority)
    config = apply_mixin(config, snapshot.mixin)

    logger.debug("Running profile script")
    config = await run_script(snapshot.script, config, timeout=script_timeout)

    return enforce_output_invariants(config)


async def generate_config_file(
    profile: Profile,
    plugins: PluginManager | None = None,
    proxy_source: ProxySource | None = None,
    strict: bool = False,
    script_timeout: float | None = None,
    before_write: ConfigTransform | None = None,
    output: Path | None = None,
) -> Path:
    """Compile a profile and write the config the kernel will be started with."""
    config = await generate_config(profile, plugins, proxy_source, strict, script_timeout)

    if before_write is not None:
        config = enforce_output_invariants(await before_write(config))

    path = output or CORE_CONFIG_FILE
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config, indent=2, ensure_ascii=False), encoding="utf-8")
    logger.info("Config written to %s", path)
    return path
