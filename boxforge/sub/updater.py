from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Any

import requests
import yaml
from requests.structures import CaseInsensitiveDict

from boxforge.db.config import sample_id
from boxforge.db.subscriptions import ProxyRef, SubscriptionType

if TYPE_CHECKING:
    from boxforge.db.data_store import DataStore
    from boxforge.db.subscriptions import Subscription, SubscriptionManager
    from boxforge.plugins.manager import PluginManager

logger = logging.getLogger("boxforge.sub")

USERINFO_HEADER = "Subscription-Userinfo"


class SubscriptionError(Exception):
    """Subscription could not be updated."""


def parse_userinfo(header: str) -> dict[str, int]:
    """Parse 'upload=1; download=2; total=3; expire=4'."""
    info: dict[str, int] = {}
    for part in re.split(r"\s*;\s*", header.strip()):
        key, _, value = part.partition("=")
        if not key:
            continue
        try:
            info[key.strip()] = int(value.strip())
        except ValueError:
            info[key.strip()] = 0
    return info


def parse_content(body: str, sub_type: str = SubscriptionType.HTTP) -> list[dict[str, Any]]:
    """
    Extract proxies from subscription content.

    Accepts a sing-box document (outbounds), a Clash document (proxies)
    or, for Manual subscriptions, a bare JSON array.
    """
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        data = None

    proxies = None
    if isinstance(data, dict) and isinstance(data.get("outbounds"), list):
        proxies = data["outbounds"]
    elif isinstance(data, list) and sub_type == SubscriptionType.MANUAL:
        proxies = data
    elif data is None:
        try:
            doc = yaml.safe_load(body)
        except yaml.YAMLError:
            doc = None
        if isinstance(doc, dict) and isinstance(doc.get("proxies"), list):
            proxies = doc["proxies"]

    if proxies is not None and all(isinstance(p, dict) for p in proxies):
        return proxies
    raise SubscriptionError("Not a valid subscription data")


def _compile(pattern: str) -> re.Pattern[str] | None:
    if not pattern:
        return None
    try:
        return re.compile(pattern)
    except re.error as e:
        raise SubscriptionError(f"Invalid filter {pattern!r}: {e}") from e


def filter_proxies(sub: Subscription, proxies: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Apply include/exclude filters (tag and protocol) and the tag prefix."""
    include = _compile(sub.include)
    exclude = _compile(sub.exclude)
    include_protocol = _compile(sub.include_protocol)
    exclude_protocol = _compile(sub.exclude_protocol)

    result = []
    for proxy in proxies:
        tag = str(proxy.get("tag", ""))
        protocol = str(proxy.get("type", ""))
        if include and not include.search(tag):
            continue
        if exclude and exclude.search(tag):
            continue
        if include_protocol and not include_protocol.search(protocol):
            continue
        if exclude_protocol and exclude_protocol.search(protocol):
            continue
        if sub.proxy_prefix and not tag.startswith(sub.proxy_prefix):
            proxy["tag"] = sub.proxy_prefix + tag
        result.append(proxy)
    return result


def index_proxies(sub: Subscription, proxies: list[dict[str, Any]]) -> list[ProxyRef]:
    """Proxy index with ids kept stable across updates (matched by tag)."""
    refs = []
    for proxy in proxies:
        tag = proxy.get("tag", "")
        existing = next((p for p in sub.proxies if p.tag == tag), None)
        refs.append(
            ProxyRef(
                id=existing.id if existing else sample_id(),
                tag=tag,
                type=proxy.get("type", ""),
            )
        )
    return refs


class SubscriptionUpdater:
    """Subscription update manager."""

    def __init__(
        self,
        subscriptions: SubscriptionManager,
        config: DataStore | None = None,
        plugins: PluginManager | None = None,
    ):
        self._subscriptions = subscriptions
        self._config = config
        self._plugins = plugins

    def fetch(self, sub: Subscription) -> tuple[str, Mapping[str, str]]:
        """Fetch subscription content and response headers."""
        headers = dict(sub.headers)

        if self._config:
            user_agent = self._config.get_user_agent()
            if user_agent:
                headers.setdefault("User-Agent", user_agent)

        verify = True
        if sub.insecure or (self._config and self._config.sub_insecure):
            verify = False

        timeout = sub.request_timeout or (self._config.sub_timeout if self._config else 30)

        response = requests.get(sub.url, headers=headers, timeout=timeout, verify=verify)
        response.raise_for_status()

        return response.text, CaseInsensitiveDict(response.headers)

    def read_body(self, sub: Subscription) -> tuple[str, Mapping[str, str]]:
        if sub.type == SubscriptionType.HTTP:
            return self.fetch(sub)
        if sub.type == SubscriptionType.FILE:
            return Path(sub.url).read_text(encoding="utf-8"), {}
        return self._subscriptions.cache_path(sub).read_text(encoding="utf-8"), {}

    async def update(self, sub_id: str) -> list[dict[str, Any]]:
        """
        Update subscription.

        Returns:
            The proxies written to the cache file

        Raises:
            KeyError: Unknown subscription
            SubscriptionError: Disabled subscription or invalid content
        """
        sub = self._subscriptions.get_subscription(sub_id)
        if sub is None:
            raise KeyError(f"{sub_id} Not Found")
        if sub.disabled:
            raise SubscriptionError(f"{sub.name or sub.id} Disabled")

        logger.info("Updating subscription %s", sub.name or sub.id)
        try:
            body, headers = await asyncio.to_thread(self.read_body, sub)
        except (OSError, requests.RequestException) as e:
            raise SubscriptionError(f"Failed to update subscription [{sub.name}]. Reason: {e}") from e

        proxies = parse_content(body, sub.type)

        if self._plugins is not None:
            proxies = await self._plugins.on_subscribe(proxies, sub)

        if any(p.get("name") and not p.get("tag") for p in proxies):
            raise SubscriptionError("Proxies are not in sing-box format, install a converter plugin")

        if sub.type != SubscriptionType.MANUAL:
            proxies = filter_proxies(sub, proxies)

        userinfo = parse_userinfo(headers.get(USERINFO_HEADER, ""))
        sub.upload = userinfo.get("upload", 0)
        sub.download = userinfo.get("download", 0)
        sub.total = userinfo.get("total", 0)
        sub.expire = userinfo.get("expire", 0) * 1000
        sub.update_time = int(time.time() * 1000)
        sub.proxies = index_proxies(sub, proxies)

        self._subscriptions.write_proxies(sub, proxies)
        self._subscriptions.save()
        logger.info("Subscription %s updated: %d proxies", sub.name or sub.id, len(proxies))
        return proxies


async def update_subscription(
    sub_id: str,
    subscriptions: SubscriptionManager,
    config: DataStore | None = None,
    plugins: PluginManager | None = None,
) -> list[dict[str, Any]]:
    """Update subscription (helper function)."""
    updater = SubscriptionUpdater(subscriptions, config=config, plugins=plugins)
    return await updater.update(sub_id)
