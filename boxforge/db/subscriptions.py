from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from boxforge.core.config import SUBSCRIPTIONS_DIR_NAME
from boxforge.core.errors import ProfileParseError
from boxforge.db.config import ConfigBase, sample_id

logger = logging.getLogger("boxforge.subscriptions")


class SubscriptionType:
    HTTP = "Http"
    FILE = "File"
    MANUAL = "Manual"

    ALL = [HTTP, FILE, MANUAL]


@dataclass
class ProxyRef(ConfigBase):
    """Index entry for one proxy of a subscription."""

    id: str = ""
    tag: str = ""
    type: str = ""


@dataclass
class Subscription(ConfigBase):
    id: str = field(default_factory=sample_id)
    name: str = ""
    type: str = SubscriptionType.HTTP
    url: str = ""
    # cached proxy list (JSON array)
    path: str = ""
    include: str = ""
    exclude: str = ""
    include_protocol: str = ""
    exclude_protocol: str = ""
    proxy_prefix: str = ""
    disabled: bool = False
    insecure: bool = False
    request_timeout: int = 0
    headers: dict[str, str] = field(default_factory=dict)
    proxies: list[ProxyRef] = field(default_factory=list)
    # Subscription-Userinfo
    upload: int = 0
    download: int = 0
    total: int = 0
    expire: int = 0
    update_time: int = 0

    def find_proxy(self, proxy_id: str) -> ProxyRef | None:
        """Find proxy index entry by id."""
        return next((p for p in self.proxies if p.id == proxy_id), None)


class SubscriptionManager:
    """
    Subscription storage.

    Also serves cached proxy lists to the config generator.
    Relative cache paths are resolved against base_dir.
    """

    def __init__(self, subscriptions_file: Path, base_dir: Path | None = None):
        self._subscriptions_file = subscriptions_file
        self._base_dir = base_dir or subscriptions_file.parent
        self._subscriptions: list[Subscription] = []

    @property
    def subscriptions(self) -> list[Subscription]:
        return self._subscriptions

    def get_subscription(self, sub_id: str) -> Subscription | None:
        return next((s for s in self._subscriptions if s.id == sub_id), None)

    def add_subscription(self, sub: Subscription) -> Subscription:
        if not sub.path:
            sub.path = f"{SUBSCRIPTIONS_DIR_NAME}/{sub.id}.json"
        self._subscriptions.append(sub)
        return sub

    def remove_subscription(self, sub_id: str) -> bool:
        sub = self.get_subscription(sub_id)
        if sub is None:
            return False
        self._subscriptions.remove(sub)
        return True

    def cache_path(self, sub: Subscription) -> Path:
        """Absolute path of the cached proxy list."""
        path = Path(sub.path)
        return path if path.is_absolute() else self._base_dir / path

    def read_proxies(self, sub_id: str) -> list[dict[str, Any]] | None:
        """Read cached proxies of a subscription, None if it does not exist."""
        sub = self.get_subscription(sub_id)
        if sub is None:
            return None
        path = self.cache_path(sub)
        if not path.exists():
            logger.warning("Proxy cache missing for subscription %s: %s", sub.name or sub.id, path)
            return []
        try:
            proxies = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ProfileParseError(f"Corrupt proxy cache of subscription {sub.name or sub.id}: {e}") from e
        if not isinstance(proxies, list):
            raise ProfileParseError(f"Corrupt proxy cache of subscription {sub.name or sub.id}: not an array")
        return proxies

    def write_proxies(self, sub: Subscription, proxies: list[dict[str, Any]]) -> None:
        path = self.cache_path(sub)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(proxies, indent=2, ensure_ascii=False), encoding="utf-8")

    def proxy_tag(self, sub_id: str, proxy_id: str) -> str | None:
        """Tag of one indexed proxy."""
        sub = self.get_subscription(sub_id)
        if sub is None:
            return None
        ref = sub.find_proxy(proxy_id)
        return ref.tag if ref else None

    def load(self) -> bool:
        self._subscriptions = []
        if not self._subscriptions_file.exists():
            return True
        try:
            data = yaml.safe_load(self._subscriptions_file.read_text(encoding="utf-8")) or []
        except (OSError, yaml.YAMLError) as e:
            logger.error("Error loading subscriptions from %s: %s", self._subscriptions_file, e)
            return False
        self._subscriptions = [Subscription.from_dict(s) for s in data if isinstance(s, dict)]
        return True

    def save(self) -> bool:
        try:
            self._subscriptions_file.parent.mkdir(parents=True, exist_ok=True)
            data = [s.to_dict() for s in self._subscriptions]
            self._subscriptions_file.write_text(
                yaml.safe_dump(data, allow_unicode=True, sort_keys=False),
                encoding="utf-8",
            )
            return True
        except OSError as e:
            logger.error("Error saving subscriptions to %s: %s", self._subscriptions_file, e)
            return False
