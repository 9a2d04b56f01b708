import asyncio

import pytest

from boxforge.core.errors import ProfileParseError, UnresolvedReferenceError
from boxforge.db.profiles import Outbound, OutboundMember
from boxforge.gen.outbounds import OutboundSetCompiler, create_tag_matcher
from boxforge.gen.resolver import OutboundResolver

HK = {"tag": "hk-01", "type": "vless", "server": "hk.example.com"}
JP = {"tag": "jp-01", "type": "trojan", "server": "jp.example.com"}
US = {"tag": "us-01", "type": "vless", "server": "us.example.com"}


class FakeSource:
    def __init__(self, subscriptions, tags=None):
        self.subscriptions = subscriptions
        self.tags = tags or {}
        self.reads = []

    def read_proxies(self, sub_id):
        self.reads.append(sub_id)
        return self.subscriptions.get(sub_id)

    def proxy_tag(self, sub_id, proxy_id):
        return self.tags.get((sub_id, proxy_id))


class AsyncSource(FakeSource):
    async def read_proxies(self, sub_id):
        await asyncio.sleep(0)
        return FakeSource.read_proxies(self, sub_id)

    async def proxy_tag(self, sub_id, proxy_id):
        return FakeSource.proxy_tag(self, sub_id, proxy_id)


def _compile(outbounds, source=None, strict=False):
    resolver = OutboundResolver(outbounds, strict)
    compiler = OutboundSetCompiler(outbounds, resolver, source)
    return compiler, asyncio.run(compiler.compile())


def _sub_member(sub_id="ID_sub"):
    return OutboundMember(id=sub_id, type="Subscription", tag="Sub")


def test_tag_matcher():
    is_matching = create_tag_matcher("hk|jp", "jp")

    assert is_matching("hk-01") is True
    assert is_matching("jp-01") is False
    assert is_matching("us-01") is False
    assert create_tag_matcher("", "")("anything") is True


def test_tag_matcher_invalid_regex():
    with pytest.raises(ProfileParseError):
        create_tag_matcher("(", "")


def test_selector_expands_subscription_and_dedups_proxies():
    source = FakeSource({"ID_sub": [HK, JP]})
    outbounds = [
        Outbound(id="ID_a", tag="select", outbounds=[_sub_member()]),
        Outbound(id="ID_b", tag="auto", type="urltest", outbounds=[_sub_member()]),
    ]

    _, result = _compile(outbounds, source)

    assert result[0] == {
        "type": "selector",
        "tag": "select",
        "interrupt_exist_connections": True,
        "outbounds": ["hk-01", "jp-01"],
    }
    assert result[1]["type"] == "urltest"
    assert result[1]["url"] == "https://www.gstatic.com/generate_204"
    assert result[1]["interval"] == "3m"
    assert result[1]["tolerance"] == 150
    assert result[1]["outbounds"] == ["hk-01", "jp-01"]
    assert result[2:] == [HK, JP]
    assert source.reads == ["ID_sub"]


def test_include_exclude_filters_members_and_proxies():
    source = FakeSource({"ID_sub": [HK, JP, US]})
    outbounds = [Outbound(id="ID_a", tag="select", outbounds=[_sub_member()], include="-01", exclude="^us")]

    _, result = _compile(outbounds, source)

    assert result[0]["outbounds"] == ["hk-01", "jp-01"]
    assert result[1:] == [HK, JP]


def test_builtin_members_and_group_references():
    outbounds = [
        Outbound(
            id="ID_a",
            tag="select",
            outbounds=[
                OutboundMember(id="ID_b", type="Built-in", tag="auto"),
                OutboundMember(id="direct", type="Built-in", tag="direct"),
            ],
        ),
        Outbound(id="ID_b", tag="auto", type="urltest"),
    ]

    compiler, result = _compile(outbounds)
    compiler.append_builtins(result)

    assert result[0]["outbounds"] == ["auto", "direct"]
    assert result[-1] == {"type": "direct", "tag": "direct"}
    assert len(result) == 3


def test_missing_builtin_member_is_null():
    outbounds = [
        Outbound(id="ID_a", tag="select", outbounds=[OutboundMember(id="ID_gone", type="Built-in")]),
    ]

    _, result = _compile(outbounds)

    assert result[0]["outbounds"] == [None]


def test_proxy_member_by_index_tag():
    source = FakeSource({"ID_sub": [HK, JP]}, tags={("ID_sub", "ID_jp"): "jp-01"})
    member = OutboundMember(id="ID_jp", type="Proxy", tag="stale", subscription="ID_sub")
    outbounds = [Outbound(id="ID_a", tag="select", outbounds=[member])]

    _, result = _compile(outbounds, source)

    assert result[0]["outbounds"] == ["jp-01"]
    assert result[1:] == [JP]


def test_proxy_member_falls_back_to_member_tag():
    source = FakeSource({"ID_sub": [HK]})
    member = OutboundMember(id="ID_x", type="Proxy", tag="hk-01", subscription="ID_sub")

    _, result = _compile([Outbound(id="ID_a", tag="select", outbounds=[member])], source)

    assert result[0]["outbounds"] == ["hk-01"]


def test_missing_proxy_is_skipped_or_raises():
    source = FakeSource({"ID_sub": [HK]})
    member = OutboundMember(id="ID_x", type="Proxy", tag="gone", subscription="ID_sub")
    outbounds = [Outbound(id="ID_a", tag="select", outbounds=[member])]

    _, result = _compile(outbounds, source)
    assert result[0]["outbounds"] == []

    with pytest.raises(UnresolvedReferenceError):
        _compile(outbounds, source, strict=True)


def test_unknown_subscription_warns_or_raises():
    source = FakeSource({})
    outbounds = [Outbound(id="ID_a", tag="select", outbounds=[_sub_member("ID_nope")])]

    _, result = _compile(outbounds, source)
    assert result == [
        {"type": "selector", "tag": "select", "interrupt_exist_connections": True, "outbounds": []}
    ]

    with pytest.raises(UnresolvedReferenceError):
        _compile(outbounds, source, strict=True)


def test_async_source_loads_each_subscription_once():
    source = AsyncSource({"ID_s1": [HK], "ID_s2": [JP]})
    outbounds = [
        Outbound(id="ID_a", tag="a", outbounds=[_sub_member("ID_s1"), _sub_member("ID_s2")]),
        Outbound(id="ID_b", tag="b", outbounds=[_sub_member("ID_s2")]),
    ]

    _, result = _compile(outbounds, source)

    assert sorted(source.reads) == ["ID_s1", "ID_s2"]
    assert result[0]["outbounds"] == ["hk-01", "jp-01"]
    assert result[1]["outbounds"] == ["jp-01"]
    assert result[2:] == [HK, JP]


def test_direct_outbound_has_no_members():
    _, result = _compile([Outbound(id="ID_d", tag="direct-out", type="direct")])

    assert result == [{"type": "direct", "tag": "direct-out"}]
