import pytest

from boxforge.core.errors import ProfileParseError, UnresolvedReferenceError
from boxforge.db.profiles import DnsRule, DnsServer, Inbound, Outbound, Rule, RuleSet
from boxforge.gen.resolver import InboundResolver, OutboundResolver, TagResolver
from boxforge.gen.rules import encode_dns_rule, encode_match, encode_route_rule


def _resolvers(strict=False):
    rule_sets = TagResolver(
        "rule_set",
        [RuleSet(id="ID_a", tag="geosite-cn"), RuleSet(id="ID_b", tag="geoip-cn")],
        strict,
    )
    inbounds = InboundResolver(
        [Inbound(id="ID_in", tag="mixed-in"), Inbound(id="ID_off", tag="off", enable=False)],
        strict,
    )
    outbounds = OutboundResolver([Outbound(id="ID_sel", tag="select")], strict)
    dns_servers = TagResolver("dns_server", [DnsServer(id="ID_dns", tag="remote-dns")], strict)
    return rule_sets, inbounds, outbounds, dns_servers


def _route(rule, strict=False):
    return encode_route_rule(rule, *_resolvers(strict))


def _dns(rule):
    rule_sets, inbounds, _, dns_servers = _resolvers()
    return encode_dns_rule(rule, rule_sets, inbounds, dns_servers)


def test_rule_set_tags_in_order_with_misses():
    rule = Rule(type="rule_set", payload="ID_a,ID_missing,ID_b", outbound="ID_sel")

    assert _route(rule) == {
        "action": "route",
        "rule_set": ["geosite-cn", None, "geoip-cn"],
        "outbound": "select",
    }


def test_single_rule_set_is_scalar():
    rule = Rule(type="rule_set", payload="ID_b", outbound="ID_sel")

    assert _route(rule)["rule_set"] == "geoip-cn"


def test_single_missing_rule_set_is_omitted():
    rule = Rule(type="rule_set", payload="ID_missing", outbound="ID_sel")

    assert "rule_set" not in _route(rule)


def test_strict_rule_set_miss_raises():
    rule = Rule(type="rule_set", payload="ID_a,ID_missing")

    with pytest.raises(UnresolvedReferenceError):
        _route(rule, strict=True)


def test_list_payloads_split_and_collapse():
    assert _route(Rule(type="domain_suffix", payload="example.com,example.org", action="reject"))[
        "domain_suffix"
    ] == ["example.com", "example.org"]
    assert _route(Rule(type="domain", payload="example.com", action="reject"))["domain"] == "example.com"


def test_numeric_and_boolean_payloads():
    assert _route(Rule(type="port", payload="80,443", action="reject"))["port"] == [80, 443]
    assert _route(Rule(type="source_port", payload="53", action="reject"))["source_port"] == 53
    assert _route(Rule(type="ip_is_private", payload="true", action="reject"))["ip_is_private"] is True
    assert _route(Rule(type="ip_is_private", payload="false", action="reject"))["ip_is_private"] is False
    assert _route(Rule(type="clash_mode", payload="Direct", action="reject"))["clash_mode"] == "Direct"


def test_invalid_port_raises():
    with pytest.raises(ProfileParseError):
        _route(Rule(type="port", payload="http", action="reject"))


def test_port_range_stays_string():
    assert _route(Rule(type="port_range", payload="1000:2000", action="reject"))["port_range"] == "1000:2000"


def test_inline_rule_merges_json():
    rule = Rule(type="inline", payload='{"domain": ["a.com"], "network": "tcp"}', outbound="ID_sel")

    assert _route(rule) == {
        "action": "route",
        "domain": ["a.com"],
        "network": "tcp",
        "outbound": "select",
    }


def test_inline_rule_invalid_json():
    with pytest.raises(ProfileParseError):
        _route(Rule(type="inline", payload="{broken"))
    with pytest.raises(ProfileParseError):
        _route(Rule(type="inline", payload="[1, 2]"))


def test_inbound_rule_and_disabled_inbound_drop():
    assert _route(Rule(type="inbound", payload="ID_in", outbound="ID_sel"))["inbound"] == "mixed-in"
    assert _route(Rule(type="inbound", payload="ID_off", outbound="ID_sel")) is None


def test_route_options_override_match_fields():
    rule = Rule(
        type="domain",
        payload="a.com",
        action="route-options",
        options='{"domain": "override.com", "udp_timeout": "5m"}',
    )

    assert _route(rule) == {"action": "route-options", "domain": "override.com", "udp_timeout": "5m"}


def test_route_builtin_outbound():
    rule_sets, inbounds, outbounds, dns_servers = _resolvers()
    rule = Rule(type="domain", payload="ads.com", outbound="block")

    result = encode_route_rule(rule, rule_sets, inbounds, outbounds, dns_servers)

    assert result["outbound"] == "block"
    assert outbounds.referenced_builtins() == [{"type": "block", "tag": "block"}]


def test_unresolved_outbound_is_omitted():
    assert "outbound" not in _route(Rule(type="domain", payload="a.com", outbound="ID_missing"))


def test_action_specific_fields():
    assert _route(Rule(type="domain", payload="a.com", action="reject", method="drop"))["method"] == "drop"
    assert _route(Rule(type="inbound", payload="ID_in", action="sniff", sniffer=["http", "tls"]))[
        "sniffer"
    ] == ["http", "tls"]

    resolved = _route(
        Rule(type="domain", payload="a.com", action="resolve", strategy="ipv4_only", server="ID_dns")
    )
    assert resolved["strategy"] == "ipv4_only"
    assert resolved["server"] == "remote-dns"

    default_strategy = _route(Rule(type="domain", payload="a.com", action="resolve"))
    assert "strategy" not in default_strategy
    assert "server" not in default_strategy

    hijack = _route(Rule(type="protocol", payload="dns", action="hijack-dns"))
    assert hijack == {"action": "hijack-dns", "protocol": "dns"}


def test_invert_flag():
    assert _route(Rule(type="domain", payload="a.com", action="reject", invert=True))["invert"] is True
    assert "invert" not in _route(Rule(type="domain", payload="a.com", action="reject"))


def test_dns_rule_route_and_options():
    assert _dns(DnsRule(type="rule_set", payload="ID_a", server="ID_dns")) == {
        "action": "route",
        "rule_set": "geosite-cn",
        "server": "remote-dns",
    }
    assert _dns(
        DnsRule(type="domain", payload="a.com", action="route-options", options='{"disable_cache": true}')
    ) == {"action": "route-options", "domain": "a.com", "disable_cache": True}
    assert _dns(
        DnsRule(type="domain", payload="a.com", action="predefined", options='{"rcode": "NXDOMAIN"}')
    ) == {"action": "predefined", "domain": "a.com", "rcode": "NXDOMAIN"}
    assert _dns(DnsRule(type="domain", payload="a.com", action="reject", method="default"))["method"] == "default"


def test_dns_rule_outbound_match_and_disabled_inbound():
    assert _dns(DnsRule(type="outbound", payload="any", server="ID_dns"))["outbound"] == "any"
    assert _dns(DnsRule(type="inbound", payload="ID_off", server="ID_dns")) is None


def test_encode_match_only_returns_match_fields():
    rule_sets, inbounds, _, _ = _resolvers()

    assert encode_match(Rule(type="network", payload="tcp,udp"), rule_sets, inbounds) == {"network": ["tcp", "udp"]}
