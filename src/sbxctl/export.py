"""Client configuration exports derived from the Client-Info Record.

Exports only ever see :class:`~sbxctl.client_info.ClientInfo`, which carries
the Reality public key and never the private key.
"""
from __future__ import annotations

import base64
import json
import subprocess
from pathlib import Path
from typing import Any
from urllib.parse import quote, urlencode

import yaml

from .client_info import ClientInfo
from .inputs import Protocol
from .protocols import REALITY_FLOW, WS_PATH

FINGERPRINT = "chrome"
SOCKS_PORT = 10808
GROUP_NAME = "sbx-lite"


class ExportError(RuntimeError):
    """Raised when an export cannot be produced."""


def _require(info: ClientInfo, protocol: Protocol) -> int:
    port = info.port_for(protocol)
    if not port:
        raise ExportError(f"{protocol.value} is not configured on this server.")
    if protocol is Protocol.HYSTERIA2 and not info.hy2_pass:
        raise ExportError("The Hysteria2 password is missing from the client info record.")
    return port


def _host(info: ClientInfo) -> str:
    return f"[{info.domain}]" if ":" in info.domain else info.domain


def reality_uri(info: ClientInfo) -> str:
    """Return the VLESS-Reality share link."""
    port = _require(info, Protocol.REALITY)
    query = urlencode(
        {
            "encryption": "none",
            "security": "reality",
            "flow": REALITY_FLOW,
            "sni": info.sni,
            "pbk": info.public_key,
            "sid": info.short_id,
            "type": "tcp",
            "fp": FINGERPRINT,
        }
    )
    return f"vless://{info.uuid}@{_host(info)}:{port}?{query}#{quote(f'Reality-{info.domain}')}"


def ws_uri(info: ClientInfo) -> str:
    """Return the VLESS-WS-TLS share link."""
    port = _require(info, Protocol.WS_TLS)
    query = urlencode(
        {
            "encryption": "none",
            "security": "tls",
            "type": "ws",
            "host": info.domain,
            "path": WS_PATH,
            "sni": info.domain,
            "fp": FINGERPRINT,
        },
        safe="/",
    )
    return f"vless://{info.uuid}@{_host(info)}:{port}?{query}#{quote(f'WS-TLS-{info.domain}')}"


def hysteria2_uri(info: ClientInfo) -> str:
    """Return the Hysteria2 share link."""
    port = _require(info, Protocol.HYSTERIA2)
    password = quote(info.hy2_pass or "", safe="")
    query = urlencode({"sni": info.domain, "alpn": "h3", "insecure": "0"})
    fragment = quote(f"Hysteria2-{info.domain}")
    return f"hysteria2://{password}@{_host(info)}:{port}/?{query}#{fragment}"


_URI_BUILDERS = {
    Protocol.REALITY: reality_uri,
    Protocol.WS_TLS: ws_uri,
    Protocol.HYSTERIA2: hysteria2_uri,
}


def uri_for(info: ClientInfo, protocol: Protocol) -> str:
    """Return the share link for *protocol*."""
    return _URI_BUILDERS[protocol](info)


def all_uris(info: ClientInfo) -> list[str]:
    """Return share links for every configured protocol."""
    return [uri_for(info, protocol) for protocol in info.protocols]


def subscription(info: ClientInfo) -> str:
    """Return a base64 subscription body with one URI per line."""
    return base64.b64encode("\n".join(all_uris(info)).encode("utf-8")).decode("ascii")


def v2rayn_config(info: ClientInfo, protocol: Protocol = Protocol.REALITY) -> dict[str, Any]:
    """Return a v2rayN/v2rayNG client configuration."""
    if protocol is Protocol.HYSTERIA2:
        raise ExportError("v2rayN export supports reality and ws only.")
    port = _require(info, protocol)
    user: dict[str, Any] = {"id": info.uuid, "encryption": "none"}
    if protocol is Protocol.REALITY:
        user["flow"] = REALITY_FLOW
        stream: dict[str, Any] = {
            "network": "tcp",
            "security": "reality",
            "realitySettings": {
                "serverName": info.sni,
                "publicKey": info.public_key,
                "shortId": info.short_id,
                "fingerprint": FINGERPRINT,
            },
        }
    else:
        stream = {
            "network": "ws",
            "security": "tls",
            "wsSettings": {"path": WS_PATH, "headers": {"Host": info.domain}},
            "tlsSettings": {"serverName": info.domain, "fingerprint": FINGERPRINT},
        }
    return {
        "log": {"loglevel": "warning"},
        "inbounds": [{"port": SOCKS_PORT, "protocol": "socks", "settings": {"udp": True}}],
        "outbounds": [
            {
                "protocol": "vless",
                "settings": {
                    "vnext": [{"address": info.domain, "port": port, "users": [user]}]
                },
                "streamSettings": stream,
            }
        ],
    }


def v2rayn_json(info: ClientInfo, protocol: Protocol = Protocol.REALITY) -> str:
    """Return :func:`v2rayn_config` as indented JSON."""
    return json.dumps(v2rayn_config(info, protocol), indent=2) + "\n"


def clash_config(info: ClientInfo) -> dict[str, Any]:
    """Return a Clash Meta configuration with one proxy per protocol."""
    proxies: list[dict[str, Any]] = []
    for protocol in info.protocols:
        port = _require(info, protocol)
        if protocol is Protocol.REALITY:
            proxies.append(
                {
                    "name": f"sbx-reality-{info.domain}",
                    "type": "vless",
                    "server": info.domain,
                    "port": port,
                    "uuid": info.uuid,
                    "flow": REALITY_FLOW,
                    "network": "tcp",
                    "tls": True,
                    "reality-opts": {"public-key": info.public_key, "short-id": info.short_id},
                    "client-fingerprint": FINGERPRINT,
                    "servername": info.sni,
                }
            )
        elif protocol is Protocol.WS_TLS:
            proxies.append(
                {
                    "name": f"sbx-ws-{info.domain}",
                    "type": "vless",
                    "server": info.domain,
                    "port": port,
                    "uuid": info.uuid,
                    "tls": True,
                    "network": "ws",
                    "ws-opts": {"path": WS_PATH, "headers": {"Host": info.domain}},
                    "servername": info.domain,
                    "client-fingerprint": FINGERPRINT,
                }
            )
        else:
            proxies.append(
                {
                    "name": f"sbx-hysteria2-{info.domain}",
                    "type": "hysteria2",
                    "server": info.domain,
                    "port": port,
                    "password": info.hy2_pass,
                    "sni": info.domain,
                    "skip-cert-verify": False,
                }
            )
    return {
        "proxies": proxies,
        "proxy-groups": [
            {"name": GROUP_NAME, "type": "select", "proxies": [p["name"] for p in proxies]}
        ],
    }


def clash_yaml(info: ClientInfo) -> str:
    """Return :func:`clash_config` as YAML."""
    return yaml.safe_dump(clash_config(info), sort_keys=False, allow_unicode=True)


def render_qr(text: str, *, qrencode_bin: str = "qrencode", ansi: bool = False) -> str:
    """Return *text* as a terminal QR code rendered by ``qrencode``."""
    kind = "ANSIUTF8" if ansi else "UTF8"
    return _qrencode(qrencode_bin, ["-t", kind, "-o", "-", text]).stdout


def write_qr_png(text: str, destination: Path, *, qrencode_bin: str = "qrencode") -> Path:
    """Write *text* as a PNG QR code to *destination*."""
    destination.parent.mkdir(parents=True, exist_ok=True)
    _qrencode(qrencode_bin, ["-t", "PNG", "-o", str(destination), text])
    return destination


def _qrencode(binary: str, args: list[str]) -> subprocess.CompletedProcess[str]:
    try:
        result = subprocess.run(  # noqa: S603
            [binary, *args],
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError as exc:
        raise ExportError(
            f"{binary} not found. Install it with: apt install qrencode"
        ) from exc
    if result.returncode != 0:
        message = (result.stderr or "no output").strip()
        raise ExportError(f"{binary} failed (exit {result.returncode}): {message}")
    return result


__all__ = [
    "ExportError",
    "all_uris",
    "clash_config",
    "clash_yaml",
    "hysteria2_uri",
    "reality_uri",
    "render_qr",
    "subscription",
    "uri_for",
    "v2rayn_config",
    "v2rayn_json",
    "write_qr_png",
    "ws_uri",
]
