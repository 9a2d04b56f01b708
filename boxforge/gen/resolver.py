from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any, Protocol

from boxforge.core.errors import UnresolvedReferenceError
from boxforge.db.config import BuiltinOutbound, OutboundType

logger = logging.getLogger("boxforge.gen.resolver")


class Tagged(Protocol):
    id: str
    tag: str


def find_tag(collection: Iterable[Tagged], ref_id: str) -> str | None:
    """Tag of the first entity whose id is ref_id."""
    for item in collection:
        if item.id == ref_id:
            return item.tag
    return None


class TagResolver:
    """
    Id -> tag lookup for one namespace.

    An empty id means "not set" and resolves to None silently. Any other miss
    is logged and resolves to None, or raises in strict mode.
    """

    def __init__(self, kind: str, collection: Iterable[Tagged], strict: bool = False):
        self.kind = kind
        self.strict = strict
        self._items: dict[str, Tagged] = {}
        for item in collection:
            self._items.setdefault(item.id, item)

    def get(self, ref_id: str) -> Tagged | None:
        return self._items.get(ref_id)

    def _miss(self, ref_id: str) -> None:
        if self.strict:
            raise UnresolvedReferenceError(self.kind, ref_id)
        logger.warning("Unresolved %s reference: %s", self.kind, ref_id)

    def resolve(self, ref_id: str) -> str | None:
        if not ref_id:
            return None
        item = self._items.get(ref_id)
        if item is None:
            self._miss(ref_id)
            return None
        return item.tag

    def resolve_many(self, ref_ids: Iterable[str]) -> list[str | None]:
        return [self.resolve(ref_id) for ref_id in ref_ids]


class InboundResolver(TagResolver):
    """Resolves inbound ids; disabled inbounds are known but not resolvable."""

    def __init__(self, collection: Iterable[Any], strict: bool = False):
        super().__init__("inbound", collection, strict)

    def is_disabled(self, ref_id: str) -> bool:
        item = self._items.get(ref_id)
        return item is not None and not getattr(item, "enable", True)


class OutboundResolver(TagResolver):
    """
    Resolves outbound ids, including the kernel built-ins direct/block.

    Declared outbounds win over built-ins with the same id. Every built-in
    that gets resolved is remembered so it can be emitted once.
    """

    def __init__(self, collection: Iterable[Tagged], strict: bool = False):
        super().__init__("outbound", collection, strict)
        self._builtins: dict[str, dict[str, Any]] = {}

    def resolve(self, ref_id: str) -> str | None:
        if ref_id and ref_id not in self._items and ref_id in BuiltinOutbound.ALL:
            self._builtins.setdefault(ref_id, {"type": _builtin_type(ref_id), "tag": ref_id})
            return ref_id
        return super().resolve(ref_id)

    def referenced_builtins(self) -> list[dict[str, Any]]:
        """Synthetic outbounds referenced so far, in first-reference order."""
        return [dict(outbound) for outbound in self._builtins.values()]


def _builtin_type(ref_id: str) -> str:
    if ref_id == BuiltinOutbound.DIRECT:
        return OutboundType.DIRECT
    return BuiltinOutbound.BLOCK
