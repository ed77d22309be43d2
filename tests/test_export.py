"""Tests for client configuration exports."""
from __future__ import annotations

import base64
import json
import subprocess
from pathlib import Path

import pytest
import yaml

from conftest import REALITY_PRIVATE, REALITY_PUBLIC, TEST_UUID
from sbxctl import export
from sbxctl.client_info import ClientInfo
from sbxctl.export import (
    ExportError,
    all_uris,
    clash_config,
    clash_yaml,
    hysteria2_uri,
    reality_uri,
    render_qr,
    subscription,
    v2rayn_config,
    v2rayn_json,
    ws_uri,
)
from sbxctl.inputs import Protocol


def _info(**overrides: object) -> ClientInfo:
    values: dict[str, object] = {
        "domain": "proxy.example.com",
        "uuid": TEST_UUID,
        "public_key": REALITY_PUBLIC,
        "short_id": "a1b2c3d4",
        "sni": "www.microsoft.com",
        "reality_port": 443,
        "ws_port": 8444,
        "hy2_port": 8443,
        "hy2_pass": "0123456789abcdef",
    }
    values.update(overrides)
    return ClientInfo(**values)  # type: ignore[arg-type]


def test_reality_uri() -> None:
    """The Reality link carries the public key, short ID and vision flow."""
    assert reality_uri(_info()) == (
        f"vless://{TEST_UUID}@proxy.example.com:443?encryption=none&security=reality"
        f"&flow=xtls-rprx-vision&sni=www.microsoft.com&pbk={REALITY_PUBLIC}&sid=a1b2c3d4"
        "&type=tcp&fp=chrome#Reality-proxy.example.com"
    )


def test_ws_uri() -> None:
    """The WS-TLS link keeps the path unescaped."""
    assert ws_uri(_info()) == (
        f"vless://{TEST_UUID}@proxy.example.com:8444?encryption=none&security=tls&type=ws"
        "&host=proxy.example.com&path=/ws&sni=proxy.example.com&fp=chrome"
        "#WS-TLS-proxy.example.com"
    )


def test_hysteria2_uri() -> None:
    """The Hysteria2 link uses h3 and strict certificate checking."""
    assert hysteria2_uri(_info()) == (
        "hysteria2://0123456789abcdef@proxy.example.com:8443/"
        "?sni=proxy.example.com&alpn=h3&insecure=0#Hysteria2-proxy.example.com"
    )


def test_ip_address_reality_only() -> None:
    """Reality-only records export exactly one link."""
    info = _info(domain="1.2.3.4", ws_port=None, hy2_port=None, hy2_pass=None, short_id="")
    uris = all_uris(info)
    assert len(uris) == 1
    assert uris[0].startswith(f"vless://{TEST_UUID}@1.2.3.4:443?")
    assert "&sid=&" in uris[0]
    with pytest.raises(ExportError):
        ws_uri(info)


def test_ipv6_hosts_are_bracketed() -> None:
    """IPv6 literals need brackets inside URIs."""
    assert "@[2001:db8::1]:443?" in reality_uri(_info(domain="2001:db8::1"))


def test_exports_never_contain_private_key() -> None:
    """No export path can leak the Reality private key."""
    info = _info()
    outputs = [
        *all_uris(info),
        subscription(info),
        v2rayn_json(info),
        v2rayn_json(info, Protocol.WS_TLS),
        clash_yaml(info),
    ]
    for output in outputs:
        assert REALITY_PRIVATE not in output


def test_subscription_is_base64_of_all_uris() -> None:
    """Subscriptions decode to one URI per line."""
    decoded = base64.b64decode(subscription(_info())).decode("utf-8")
    assert decoded.splitlines() == all_uris(_info())


def test_v2rayn_reality() -> None:
    """The v2rayN config points a local SOCKS inbound at the Reality server."""
    config = v2rayn_config(_info())
    outbound = config["outbounds"][0]
    assert config["inbounds"][0]["port"] == 10808
    assert outbound["settings"]["vnext"][0]["port"] == 443
    assert outbound["streamSettings"]["realitySettings"]["publicKey"] == REALITY_PUBLIC
    assert json.loads(v2rayn_json(_info())) == config


def test_v2rayn_rejects_hysteria2() -> None:
    """v2rayN has no Hysteria2 outbound."""
    with pytest.raises(ExportError):
        v2rayn_config(_info(), Protocol.HYSTERIA2)


def test_clash_config_lists_every_protocol() -> None:
    """One proxy per protocol, all in the selector group."""
    config = clash_config(_info())
    names = [proxy["name"] for proxy in config["proxies"]]
    assert names == [
        "sbx-reality-proxy.example.com",
        "sbx-ws-proxy.example.com",
        "sbx-hysteria2-proxy.example.com",
    ]
    assert config["proxy-groups"][0]["proxies"] == names
    assert yaml.safe_load(clash_yaml(_info())) == config


def test_render_qr_runs_qrencode(monkeypatch: pytest.MonkeyPatch) -> None:
    """QR codes are rendered by the qrencode binary."""
    calls: list[list[str]] = []

    def fake_run(args: list[str], **_: object) -> subprocess.CompletedProcess[str]:
        calls.append(args)
        return subprocess.CompletedProcess(args, 0, stdout="█▀█\n", stderr="")

    monkeypatch.setattr(export.subprocess, "run", fake_run)
    assert render_qr("vless://x", qrencode_bin="qrencode") == "█▀█\n"
    assert calls == [["qrencode", "-t", "UTF8", "-o", "-", "vless://x"]]


def test_missing_qrencode_is_reported(tmp_path: Path) -> None:
    """A missing binary becomes an ExportError with install advice."""
    with pytest.raises(ExportError) as excinfo:
        render_qr("vless://x", qrencode_bin=str(tmp_path / "no-qrencode"))
    assert "apt install qrencode" in str(excinfo.value)
