import asyncio
import json
import time

import pytest

from boxforge.core.errors import PluginError, ScriptError, UnresolvedReferenceError, WrongResultError
from boxforge.db.plugins import Plugin, PluginTrigger
from boxforge.db.profiles import (
    ClashApi,
    Dns,
    DnsRule,
    DnsServer,
    Experimental,
    Inbound,
    InboundListen,
    ListenerSettings,
    LogSettings,
    Mixin,
    Outbound,
    OutboundMember,
    Profile,
    Route,
    Rule,
    RuleSet,
    Script,
    TunSettings,
)
from boxforge.gen.generator import (
    enforce_output_invariants,
    generate_config,
    generate_config_file,
    run_script,
)
from boxforge.plugins.manager import PluginManager


class FakeSource:
    def __init__(self, subscriptions):
        self.subscriptions = subscriptions

    def read_proxies(self, sub_id):
        return self.subscriptions.get(sub_id)

    def proxy_tag(self, sub_id, proxy_id):
        return None


def _profile(**kwargs) -> Profile:
    defaults = {
        "id": "ID_profile",
        "name": "Default",
        "inbounds": [
            Inbound(
                id="ID_in",
                tag="mixed-in",
                mixed=ListenerSettings(listen=InboundListen(listen_port=7890), users=["alice:pa:ss"]),
            )
        ],
        "outbounds": [
            Outbound(
                id="ID_sel",
                tag="select",
                outbounds=[OutboundMember(id="direct", type="Built-in", tag="direct")],
            )
        ],
        "route": Route(
            rule_set=[RuleSet(id="ID_rs", tag="geosite-ads", path="data/rulesets/ads.srs")],
            rules=[Rule(type="rule_set", payload="ID_rs", outbound="block")],
            final="ID_sel",
        ),
    }
    defaults.update(kwargs)
    return Profile(**defaults)


def _generate(profile, **kwargs):
    return asyncio.run(generate_config(profile, **kwargs))


def _plugins(tmp_path, *codes):
    manager = PluginManager(tmp_path / "plugins.yaml")
    for i, code in enumerate(codes):
        manager.add_plugin(Plugin(id=f"ID_{i}", name=f"p{i}", triggers=[PluginTrigger.ON_GENERATE]), code)
    return manager


def test_minimal_profile_end_to_end():
    config = _generate(_profile())

    assert config["log"] == {"disabled": False, "level": "info", "timestamp": False}
    assert config["inbounds"] == [
        {
            "type": "mixed",
            "tag": "mixed-in",
            "listen": "127.0.0.1",
            "listen_port": 7890,
            "tcp_fast_open": False,
            "tcp_multi_path": False,
            "udp_fragment": False,
            "users": [{"username": "alice", "password": "pa:ss"}],
        }
    ]
    assert config["outbounds"] == [
        {"type": "selector", "tag": "select", "interrupt_exist_connections": True, "outbounds": ["direct"]},
        {"type": "direct", "tag": "direct"},
        {"type": "block", "tag": "block"},
    ]
    assert config["route"] == {
        "rules": [{"action": "route", "rule_set": "geosite-ads", "outbound": "block"}],
        "rule_set": [
            {"tag": "geosite-ads", "type": "local", "format": "binary", "path": "../rulesets/ads.srs"}
        ],
        "auto_detect_interface": True,
        "final": "select",
    }
    assert config["experimental"]["cache_file"]["path"] == "cache.db"
    assert config["experimental"]["clash_api"]["external_controller"] == "127.0.0.1:20123"
    assert "external_ui_download_detour" not in config["experimental"]["clash_api"]
    assert config["dns"]["servers"] == []
    json.dumps(config)


def test_generation_does_not_mutate_profile():
    profile = _profile()
    before = profile.to_dict()

    _generate(profile, plugins=None)

    assert profile.to_dict() == before


def test_disabled_inbounds_and_rules_are_dropped():
    profile = _profile(
        inbounds=[
            Inbound(id="ID_in", tag="mixed-in"),
            Inbound(id="ID_off", tag="off", enable=False),
        ],
        route=Route(rules=[Rule(type="inbound", payload="ID_off", outbound="ID_sel")]),
    )

    config = _generate(profile)

    assert [i["tag"] for i in config["inbounds"]] == ["mixed-in"]
    assert config["route"]["rules"] == []


def test_tun_inbound_spreads_settings():
    profile = _profile(inbounds=[Inbound(id="ID_tun", type="tun", tag="tun-in", tun=TunSettings(mtu=1500))])

    inbound = _generate(profile)["inbounds"][0]

    assert inbound["type"] == "tun"
    assert inbound["tag"] == "tun-in"
    assert inbound["mtu"] == 1500
    assert "users" not in inbound


def test_remote_and_inline_rule_sets():
    profile = _profile(
        route=Route(
            rule_set=[
                RuleSet(
                    id="ID_r",
                    type="remote",
                    tag="remote-rs",
                    url="https://example.com/rs.srs",
                    download_detour="ID_sel",
                    update_interval="1d",
                ),
                RuleSet(id="ID_i", type="inline", tag="inline-rs", rules='[{"domain": "a.com"}]'),
            ],
            auto_detect_interface=False,
            default_interface="eth0",
        )
    )

    route = _generate(profile)["route"]

    assert route["rule_set"][0] == {
        "tag": "remote-rs",
        "type": "remote",
        "format": "binary",
        "url": "https://example.com/rs.srs",
        "download_detour": "select",
        "update_interval": "1d",
    }
    assert route["rule_set"][1] == {"tag": "inline-rs", "type": "inline", "rules": [{"domain": "a.com"}]}
    assert route["auto_detect_interface"] is False
    assert route["default_interface"] == "eth0"


def test_dns_generation():
    profile = _profile(
        dns=Dns(
            servers=[
                DnsServer(id="ID_local", tag="local-dns", type="local"),
                DnsServer(
                    id="ID_doh",
                    tag="doh",
                    type="https",
                    server="1.1.1.1",
                    path="/dns-query",
                    detour="ID_sel",
                    domain_resolver="ID_local",
                ),
                DnsServer(id="ID_fake", tag="fakeip", type="fakeip", inet4_range="198.18.0.0/15"),
            ],
            rules=[DnsRule(type="domain_suffix", payload="cn", server="ID_local")],
            final="ID_doh",
            strategy="prefer_ipv4",
        )
    )

    dns = _generate(profile)["dns"]

    assert dns["servers"] == [
        {"tag": "local-dns", "type": "local"},
        {
            "tag": "doh",
            "type": "https",
            "server": "1.1.1.1",
            "path": "/dns-query",
            "detour": "select",
            "domain_resolver": "local-dns",
        },
        {"tag": "fakeip", "type": "fakeip", "inet4_range": "198.18.0.0/15"},
    ]
    assert dns["rules"] == [{"action": "route", "domain_suffix": "cn", "server": "local-dns"}]
    assert dns["final"] == "doh"
    assert dns["strategy"] == "prefer_ipv4"
    assert dns["disable_cache"] is False


def test_clash_api_detour_resolved():
    profile = _profile(experimental=Experimental(clash_api=ClashApi(external_ui_download_detour="ID_sel")))

    assert _generate(profile)["experimental"]["clash_api"]["external_ui_download_detour"] == "select"


def test_subscription_proxies_are_appended_before_builtins():
    proxy = {"tag": "hk-01", "type": "vless"}
    profile = _profile(
        outbounds=[
            Outbound(
                id="ID_sel",
                tag="select",
                outbounds=[
                    OutboundMember(id="ID_sub", type="Subscription"),
                    OutboundMember(id="direct", type="Built-in"),
                ],
            )
        ]
    )

    config = _generate(profile, proxy_source=FakeSource({"ID_sub": [proxy]}))

    assert config["outbounds"][0]["outbounds"] == ["hk-01", "direct"]
    assert [o["tag"] for o in config["outbounds"]] == ["select", "hk-01", "direct", "block"]


def test_strict_mode_fails_on_unresolved_reference():
    profile = _profile(route=Route(final="ID_missing"))

    assert "final" not in _generate(profile)["route"]
    with pytest.raises(UnresolvedReferenceError):
        _generate(profile, strict=True)


@pytest.mark.parametrize("level", ["fatal", "panic", "verbose", ""])
def test_log_level_coerced(level):
    profile = _profile(log=LogSettings(disabled=True, level=level, output="box.log"))

    log = _generate(profile)["log"]

    assert log["level"] == "info"
    assert log["disabled"] is False
    assert "output" not in log


@pytest.mark.parametrize("level", ["trace", "debug", "info", "warn", "error"])
def test_allowed_log_levels_kept(level):
    assert _generate(_profile(log=LogSettings(level=level)))["log"]["level"] == level


def test_invariants_win_over_mixin_and_script():
    profile = _profile(
        mixin=Mixin(config='{"log": {"level": "panic", "output": "x.log"}, "experimental": {"cache_file": {"path": "/tmp/other.db"}}}'),
        script=Script(
            code=(
                "def on_generate(config):\n"
                "    config['log']['disabled'] = True\n"
                "    config['experimental']['cache_file']['path'] = 'elsewhere.db'\n"
                "    return config\n"
            )
        ),
    )

    config = _generate(profile)

    assert config["log"]["level"] == "info"
    assert config["log"]["disabled"] is False
    assert "output" not in config["log"]
    assert config["experimental"]["cache_file"]["path"] == "cache.db"


def test_stage_order_plugins_mixin_script(tmp_path):
    plugins = _plugins(
        tmp_path,
        "def on_generate(config, profile):\n    config['order'] = ['plugin']\n    config['who'] = 'plugin'\n    return config\n",
    )
    profile = _profile(
        mixin=Mixin(config="who: mixin\n"),
        script=Script(
            code=(
                "def on_generate(config):\n"
                "    config['order'].append('script:' + config['who'])\n"
                "    return config\n"
            )
        ),
    )

    config = _generate(profile, plugins=plugins)

    assert config["who"] == "mixin"
    assert config["order"] == ["plugin", "script:mixin"]


def test_plugins_chain_failure_aborts(tmp_path):
    plugins = _plugins(
        tmp_path,
        "def on_generate(config, profile):\n    config['first'] = True\n    return config\n",
        "def on_generate(config, profile):\n    raise RuntimeError('nope')\n",
    )

    with pytest.raises(PluginError) as exc_info:
        _generate(_profile(), plugins=plugins)

    assert exc_info.value.plugin_name == "p1"


def test_gui_priority_mixin_only_fills_missing():
    profile = _profile(mixin=Mixin(priority="gui", config="route:\n  final: other\n  find_process: true\n"))

    route = _generate(profile)["route"]

    assert route["final"] == "select"
    assert route["find_process"] is True


def test_empty_mixin_is_idempotent():
    base = _generate(_profile())

    assert _generate(_profile(mixin=Mixin(config="{}"))) == base
    assert _generate(_profile(mixin=Mixin(config=""))) == base


def test_script_errors():
    with pytest.raises(ScriptError, match="boom"):
        asyncio.run(run_script(Script(code="def on_generate(config):\n    raise ValueError('boom')\n"), {}))
    with pytest.raises(ScriptError, match="on_generate"):
        asyncio.run(run_script(Script(code="x = 1\n"), {}))
    with pytest.raises(ScriptError, match="line 1"):
        asyncio.run(run_script(Script(code="def on_generate(:\n"), {}))
    with pytest.raises(WrongResultError):
        asyncio.run(run_script(Script(code="def on_generate(config):\n    return [config]\n"), {}))


def test_script_timeout():
    code = "import asyncio\nasync def on_generate(config):\n    await asyncio.sleep(5)\n"

    with pytest.raises(ScriptError, match="timed out"):
        asyncio.run(run_script(Script(code=code), {}, timeout=0.05))


def test_sync_script_timeout_leaves_config_untouched():
    code = "import time\ndef on_generate(config):\n    time.sleep(0.6)\n    config['late'] = True\n    return config\n"
    config = {"log": {}}

    with pytest.raises(ScriptError, match="timed out"):
        asyncio.run(run_script(Script(code=code), config, timeout=0.1))

    time.sleep(0.8)
    assert config == {"log": {}}


def test_empty_script_is_skipped():
    config = {"a": 1}

    assert asyncio.run(run_script(Script(code=""), config)) is config


def test_enforce_output_invariants_on_bare_document():
    assert enforce_output_invariants({}) == {
        "log": {"disabled": False, "level": "info"},
        "experimental": {"cache_file": {"path": "cache.db"}},
    }


def test_generate_config_file_writes_json(tmp_path):
    output = tmp_path / "sing-box" / "config.json"

    async def before_write(config):
        config["log"]["level"] = "fatal"
        config["extra"] = True
        return config

    path = asyncio.run(generate_config_file(_profile(), before_write=before_write, output=output))

    assert path == output
    written = json.loads(output.read_text(encoding="utf-8"))
    assert written["extra"] is True
    assert written["log"]["level"] == "info"
    assert written["route"]["final"] == "select"


def test_failed_generation_writes_nothing(tmp_path):
    output = tmp_path / "config.json"
    profile = _profile(script=Script(code="def on_generate(config):\n    return None\n"))

    with pytest.raises(WrongResultError):
        asyncio.run(generate_config_file(profile, output=output))

    assert not output.exists()
