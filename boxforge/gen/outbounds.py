from __future__ import annotations

import asyncio
import inspect
import logging
import re
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any, Protocol

from boxforge.core.errors import ProfileParseError, UnresolvedReferenceError
from boxforge.db.config import MemberKind, OutboundType

if TYPE_CHECKING:
    from boxforge.db.profiles import Outbound, OutboundMember
    from boxforge.gen.resolver import OutboundResolver

logger = logging.getLogger("boxforge.gen.outbounds")

Proxies = list[dict[str, Any]]


class ProxySource(Protocol):
    """Where subscription proxy lists come from. Methods may be sync or async."""

    def read_proxies(self, sub_id: str) -> Proxies | None | Awaitable[Proxies | None]: ...

    def proxy_tag(self, sub_id: str, proxy_id: str) -> str | None | Awaitable[str | None]: ...


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def create_tag_matcher(include: str, exclude: str) -> Callable[[str], bool]:
    """Keep a tag iff it matches include (if set) and not exclude (if set)."""
    try:
        include_re = re.compile(include) if include else None
        exclude_re = re.compile(exclude) if exclude else None
    except re.error as e:
        raise ProfileParseError(f"Invalid outbound filter: {e}") from e

    def is_matching(tag: str) -> bool:
        if include_re is not None and not include_re.search(tag):
            return False
        return not (exclude_re is not None and exclude_re.search(tag))

    return is_matching


class OutboundSetCompiler:
    """
    Builds the outbounds array.

    Proxy lists are loaded at most once per subscription id per instance.
    Use a new instance for every compilation run.
    """

    def __init__(
        self,
        outbounds: list[Outbound],
        resolver: OutboundResolver,
        proxy_source: ProxySource | None = None,
    ):
        self._outbounds = outbounds
        self._resolver = resolver
        self._proxy_source = proxy_source
        self._subscriptions: dict[str, Proxies] = {}
        # keyed by id() so the same proxy object is emitted once
        self._proxies: dict[int, dict[str, Any]] = {}

    @property
    def strict(self) -> bool:
        return self._resolver.strict

    def _subscription_id(self, member: OutboundMember) -> str:
        if member.type == MemberKind.SUBSCRIPTION:
            return member.id
        return member.subscription

    async def _load(self, sub_id: str) -> None:
        if sub_id in self._subscriptions:
            return
        proxies = None
        if self._proxy_source is not None:
            proxies = await _maybe_await(self._proxy_source.read_proxies(sub_id))
        if proxies is None:
            if self.strict:
                raise UnresolvedReferenceError("subscription", sub_id)
            logger.warning("Unresolved subscription reference: %s", sub_id)
            proxies = []
        self._subscriptions[sub_id] = proxies

    async def prefetch(self) -> None:
        """Load every referenced subscription concurrently."""
        sub_ids: list[str] = []
        for outbound in self._outbounds:
            if outbound.type not in OutboundType.GROUPS:
                continue
            for member in outbound.outbounds:
                if member.type == MemberKind.BUILTIN:
                    continue
                sub_id = self._subscription_id(member)
                if sub_id and sub_id not in sub_ids:
                    sub_ids.append(sub_id)
        await asyncio.gather(*(self._load(sub_id) for sub_id in sub_ids))

    async def _proxy_tag(self, member: OutboundMember) -> str:
        tag = None
        if self._proxy_source is not None:
            tag = await _maybe_await(self._proxy_source.proxy_tag(member.subscription, member.id))
        return tag or member.tag

    def _add_proxy(self, proxy: dict[str, Any]) -> None:
        self._proxies.setdefault(id(proxy), proxy)

    async def _expand_members(self, outbound: Outbound) -> list[str | None]:
        is_matching = create_tag_matcher(outbound.include, outbound.exclude)
        members: list[str | None] = []

        for member in outbound.outbounds:
            if member.type == MemberKind.BUILTIN:
                members.append(self._resolver.resolve(member.id))
                continue

            sub_id = self._subscription_id(member)
            await self._load(sub_id)
            proxies = self._subscriptions[sub_id]

            if member.type == MemberKind.SUBSCRIPTION:
                for proxy in proxies:
                    tag = proxy.get("tag", "")
                    if is_matching(tag):
                        members.append(tag)
                        self._add_proxy(proxy)
            else:
                wanted = await self._proxy_tag(member)
                proxy = next((p for p in proxies if p.get("tag") == wanted), None)
                if proxy is None:
                    if self.strict:
                        raise UnresolvedReferenceError("proxy", member.id)
                    logger.warning("Proxy %s not found in subscription %s", member.id, sub_id)
                    continue
                if is_matching(wanted):
                    members.append(wanted)
                    self._add_proxy(proxy)

        return members

    async def compile(self) -> list[dict[str, Any]]:
        """Declared outbounds followed by every referenced proxy."""
        await self.prefetch()

        result: list[dict[str, Any]] = []
        for outbound in self._outbounds:
            item: dict[str, Any] = {"type": outbound.type, "tag": outbound.tag}
            if outbound.type == OutboundType.URLTEST:
                item["url"] = outbound.url
                item["interval"] = outbound.interval
                item["tolerance"] = outbound.tolerance
            if outbound.type in OutboundType.GROUPS:
                item["interrupt_exist_connections"] = outbound.interrupt_exist_connections
                item["outbounds"] = await self._expand_members(outbound)
            result.append(item)

        result.extend(self._proxies.values())
        return result

    def append_builtins(self, result: list[dict[str, Any]]) -> list[dict[str, Any]]:
        """Append the built-in outbounds referenced anywhere in the run."""
        result.extend(self._resolver.referenced_builtins())
        return result
