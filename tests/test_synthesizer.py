"""Tests for xray config synthesis."""

import asyncio
import copy
import json

import pytest

from xping.derivation import derive, parse_vless_url
from xping.synthesizer import (
    build_config,
    find_free_port,
    local_inbounds,
    probe_proxy_url,
    rebind_config,
)

FRAGMENT = {"packets": "tlshello", "length": "5-9", "interval": "1-2"}


def _outbound(document, tag):
    return next(o for o in document["outbounds"] if o["tag"] == tag)


class TestBuildConfig:
    """Tests for building a config from a vless URL."""

    def test_structure(self):
        """Test inbound, outbounds and routing of a generated config."""
        d = parse_vless_url("vless://u1@host1:443?security=tls&type=ws&path=/p&sni=host1&host=cdn#label1")
        config = build_config(d, 20001)

        inbound = config["inbounds"][0]
        assert inbound["port"] == 20001
        assert inbound["listen"] == "127.0.0.1"
        assert inbound["protocol"] == "http"

        assert [o["tag"] for o in config["outbounds"]] == ["proxy", "direct", "fragment"]
        proxy = _outbound(config, "proxy")
        server = proxy["settings"]["vnext"][0]
        assert server["address"] == "host1"
        assert server["port"] == 443
        assert server["users"][0]["id"] == "u1"

        stream = proxy["streamSettings"]
        assert stream["tlsSettings"]["serverName"] == "host1"
        assert stream["wsSettings"] == {"path": "/p", "headers": {"Host": "cdn"}}
        assert "sockopt" not in stream

        assert config["routing"]["rules"][0]["outboundTag"] == "proxy"
        assert config["log"]["loglevel"] == "error"
        assert config["dns"]["servers"] == ["8.8.8.8", "1.1.1.1"]

    def test_serializable(self):
        """Test that the config serializes to JSON."""
        d = parse_vless_url("vless://u1@host1:443")
        json.dumps(build_config(d, 20001, fragment_enabled=True, fragment=FRAGMENT))

    def test_fragment_disabled(self):
        """Test that the fragment outbound is inert without --fragment."""
        d = parse_vless_url("vless://u1@host1:443")
        config = build_config(d, 20001, fragment_enabled=False, fragment=FRAGMENT)
        fragment = _outbound(config, "fragment")
        assert fragment["settings"] == {}
        assert "sockopt" not in _outbound(config, "proxy")["streamSettings"]

    def test_fragment_enabled(self):
        """Test that the proxy outbound dials through the fragment outbound."""
        d = parse_vless_url("vless://u1@host1:443")
        config = build_config(d, 20001, fragment_enabled=True, fragment=FRAGMENT)
        settings = _outbound(config, "fragment")["settings"]["fragment"]
        assert settings == FRAGMENT
        assert _outbound(config, "proxy")["streamSettings"]["sockopt"] == {"dialerProxy": "fragment"}

    def test_tcp_without_tls(self):
        """Test that transport settings are omitted when unused."""
        d = parse_vless_url("vless://u1@host1:80?security=none&type=tcp")
        stream = _outbound(build_config(d, 20001), "proxy")["streamSettings"]
        assert stream == {"network": "tcp", "security": "none"}

    def test_grpc_service_name(self):
        """Test gRPC service name, falling back to the path."""
        d = parse_vless_url("vless://u1@host1:443?type=grpc&serviceName=svc")
        stream = _outbound(build_config(d, 20001), "proxy")["streamSettings"]
        assert stream["grpcSettings"] == {"serviceName": "svc"}

        d = parse_vless_url("vless://u1@host1:443?type=grpc&path=/tunnel")
        stream = _outbound(build_config(d, 20001), "proxy")["streamSettings"]
        assert stream["grpcSettings"] == {"serviceName": "tunnel"}

    def test_reality(self):
        """Test REALITY settings and flow."""
        d = parse_vless_url(
            "vless://u1@host1:443?security=reality&type=tcp&sni=www.example.com&pbk=KEY&sid=01&flow=xtls-rprx-vision"
        )
        proxy = _outbound(build_config(d, 20001), "proxy")
        reality = proxy["streamSettings"]["realitySettings"]
        assert reality["publicKey"] == "KEY"
        assert reality["shortId"] == "01"
        assert reality["serverName"] == "www.example.com"
        assert "tlsSettings" not in proxy["streamSettings"]
        assert proxy["settings"]["vnext"][0]["users"][0]["flow"] == "xtls-rprx-vision"


class TestRebindConfig:
    """Tests for rebinding a loaded config file."""

    def test_only_local_inbounds_change(self, config_file):
        """Test that port and listen of http/mixed/socks inbounds are the only changes."""
        original = derive(str(config_file)).document
        snapshot = copy.deepcopy(original)

        rebound = rebind_config(original, [30001, 30002])

        assert original == snapshot
        socks_in, http_in, api = rebound["inbounds"]
        assert (socks_in["port"], socks_in["listen"]) == (30001, "127.0.0.1")
        assert (http_in["port"], http_in["listen"]) == (30002, "127.0.0.1")
        assert api == snapshot["inbounds"][2]

        for inbound in (socks_in, http_in):
            inbound["port"] = None
            inbound["listen"] = None
        for inbound in snapshot["inbounds"][:2]:
            inbound["port"] = None
            inbound["listen"] = None
        assert rebound == snapshot

    def test_local_inbounds(self, config_file):
        """Test which inbounds count as local proxy inbounds."""
        document = derive(str(config_file)).document
        assert [i["tag"] for i in local_inbounds(document)] == ["socks-in", "http-in"]

    def test_probe_proxy_url(self, config_file):
        """Test the probe uses SOCKS5 for a socks inbound and HTTP otherwise."""
        document = rebind_config(derive(str(config_file)).document, [30001, 30002])
        assert probe_proxy_url(document) == "socks5://127.0.0.1:30001"

        document = {"inbounds": [{"protocol": "mixed", "port": 30003}]}
        assert probe_proxy_url(document) == "http://127.0.0.1:30003"

        assert probe_proxy_url({"inbounds": []}) is None


class TestFindFreePort:
    """Tests for free port discovery."""

    @pytest.mark.asyncio
    async def test_port_not_in_use(self):
        """Test that the port differs from one already bound."""
        server = await asyncio.start_server(lambda r, w: None, host="127.0.0.1", port=0)
        try:
            busy = server.sockets[0].getsockname()[1]
            port = await find_free_port()
            assert port != busy
            assert 1 <= port <= 65535
        finally:
            server.close()
            await server.wait_closed()

    @pytest.mark.asyncio
    async def test_port_is_bindable(self):
        """Test that the returned port can be bound again."""
        port = await find_free_port()
        server = await asyncio.start_server(lambda r, w: None, host="127.0.0.1", port=port)
        server.close()
        await server.wait_closed()
