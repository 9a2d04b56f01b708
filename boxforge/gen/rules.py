from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from boxforge.core.errors import ProfileParseError
from boxforge.db.config import DnsRuleAction, RuleAction, RuleType, Strategy
from boxforge.gen.mixin import deep_assign

if TYPE_CHECKING:
    from boxforge.db.profiles import DnsRule, Rule
    from boxforge.gen.resolver import InboundResolver, OutboundResolver, TagResolver


def parse_json_object(text: str, what: str) -> dict[str, Any]:
    """Parse a raw JSON object embedded in a rule."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ProfileParseError(f"Invalid {what} JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProfileParseError(f"{what} must be a JSON object")
    return data


def _split(payload: str) -> list[str]:
    return str(payload).split(",")


def _to_number(value: str, rule_type: str) -> int:
    try:
        return int(value.strip())
    except ValueError as e:
        raise ProfileParseError(f"Invalid {rule_type} value: {value!r}") from e


def encode_match(
    rule: Rule | DnsRule,
    rule_sets: TagResolver,
    inbounds: InboundResolver,
) -> dict[str, Any] | None:
    """
    Encode the match part of a rule into sing-box fields.

    Returns None when the rule must be dropped (it references a disabled
    inbound).
    """
    fields: dict[str, Any] = {}
    rule_type = rule.type

    if rule_type == RuleType.INLINE:
        deep_assign(fields, parse_json_object(rule.payload, "inline rule"))
    elif rule_type == RuleType.RULE_SET:
        tags = rule_sets.resolve_many(_split(rule.payload))
        if len(tags) == 1:
            if tags[0] is not None:
                fields[rule_type] = tags[0]
        else:
            fields[rule_type] = tags
    elif rule_type == RuleType.INBOUND:
        if inbounds.is_disabled(rule.payload):
            return None
        tag = inbounds.resolve(rule.payload)
        if tag is not None:
            fields[rule_type] = tag
    elif rule_type in RuleType.BOOLEAN:
        fields[rule_type] = rule.payload == "true"
    elif rule_type in RuleType.ENUM:
        fields[rule_type] = rule.payload
    else:
        values: list[Any] = _split(rule.payload)
        if rule_type in RuleType.NUMERIC:
            values = [_to_number(v, rule_type) for v in values]
        fields[rule_type] = values[0] if len(values) == 1 else values

    return fields


def encode_route_rule(
    rule: Rule,
    rule_sets: TagResolver,
    inbounds: InboundResolver,
    outbounds: OutboundResolver,
    dns_servers: TagResolver,
) -> dict[str, Any] | None:
    """Encode one routing rule, None if it is dropped."""
    match = encode_match(rule, rule_sets, inbounds)
    if match is None:
        return None

    result: dict[str, Any] = {"action": rule.action}
    result.update(match)

    if rule.action == RuleAction.ROUTE:
        tag = outbounds.resolve(rule.outbound)
        if tag is not None:
            result["outbound"] = tag
    elif rule.action == RuleAction.ROUTE_OPTIONS:
        deep_assign(result, parse_json_object(rule.options, "route-options"))
    elif rule.action == RuleAction.REJECT:
        if rule.method:
            result["method"] = rule.method
    elif rule.action == RuleAction.SNIFF:
        if rule.sniffer:
            result["sniffer"] = list(rule.sniffer)
    elif rule.action == RuleAction.RESOLVE:
        if rule.strategy and rule.strategy != Strategy.DEFAULT:
            result["strategy"] = rule.strategy
        server = dns_servers.resolve(rule.server)
        if server is not None:
            result["server"] = server

    if rule.invert:
        result["invert"] = True
    return result


def encode_dns_rule(
    rule: DnsRule,
    rule_sets: TagResolver,
    inbounds: InboundResolver,
    dns_servers: TagResolver,
) -> dict[str, Any] | None:
    """Encode one DNS rule, None if it is dropped."""
    match = encode_match(rule, rule_sets, inbounds)
    if match is None:
        return None

    result: dict[str, Any] = {"action": rule.action}
    result.update(match)

    if rule.action == DnsRuleAction.ROUTE:
        server = dns_servers.resolve(rule.server)
        if server is not None:
            result["server"] = server
    elif rule.action == DnsRuleAction.ROUTE_OPTIONS:
        deep_assign(result, parse_json_object(rule.options, "route-options"))
    elif rule.action == DnsRuleAction.PREDEFINED:
        deep_assign(result, parse_json_object(rule.options, "predefined"))
    elif rule.action == DnsRuleAction.REJECT:
        if rule.method:
            result["method"] = rule.method

    if rule.invert:
        result["invert"] = True
    return result
