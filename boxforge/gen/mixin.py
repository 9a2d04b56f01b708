from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import yaml

from boxforge.core.errors import ProfileParseError
from boxforge.db.config import MixinPriority

if TYPE_CHECKING:
    from boxforge.db.profiles import Mixin

logger = logging.getLogger("boxforge.gen.mixin")


def deep_assign(target: Any, *sources: Any) -> dict[str, Any]:
    """
    Recursively merge sources into target and return target.

    Dicts merge key by key; lists and scalars replace the target value.
    A non-dict target is replaced by a new dict.
    """
    if not isinstance(target, dict):
        target = {}
    for source in sources:
        if not isinstance(source, dict):
            continue
        for key, value in source.items():
            if key == "__proto__" or target is value:
                continue
            if isinstance(value, dict):
                target[key] = deep_assign(target.get(key), value)
            else:
                target[key] = value
    return target


def parse_mixin(text: str) -> dict[str, Any]:
    """Parse override text (YAML, which covers JSON)."""
    if not text or not text.strip():
        return {}
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ProfileParseError(f"Invalid mixin config: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ProfileParseError("Mixin config must be a mapping")
    return data


def apply_mixin(config: dict[str, Any], mixin: Mixin) -> dict[str, Any]:
    """
    Overlay the mixin document on the generated config.

    priority "mixin": mixin values win.
    priority "gui": generated values win, mixin only fills in missing keys.
    """
    override = parse_mixin(mixin.config)
    if not override:
        return config

    if mixin.priority == MixinPriority.MIXIN:
        return deep_assign(config, override)
    if mixin.priority == MixinPriority.GUI:
        return deep_assign(override, config)

    logger.warning("Unknown mixin priority %r, mixin ignored", mixin.priority)
    return config
