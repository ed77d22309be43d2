"""Typed sing-box inbound descriptors and their builders.

Builders are pure functions returning frozen dataclasses. Nothing here produces
JSON; :mod:`sbxctl.assembler` serialises the descriptors. The structure keeps
the engine's placement rules in the types: Reality lives inside ``tls``,
``short_id`` is always a list and ``flow`` belongs to a user entry.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .certificates import CertificateArtifact
from .errors import MissingCertificate, ValidationError
from .inputs import Protocol
from .materials import CredentialSet

DEFAULT_LISTEN = "::"
REALITY_FLOW = "xtls-rprx-vision"
REALITY_HANDSHAKE_PORT = 443
REALITY_MAX_TIME_DIFFERENCE = "1m"
WS_PATH = "/ws"
TCP_ALPN = ("h2", "http/1.1")
QUIC_ALPN = ("h3",)
HY2_BANDWIDTH_MBPS = 100


@dataclass(frozen=True)
class VlessUser:
    uuid: str
    flow: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"uuid": self.uuid}
        if self.flow is not None:
            data["flow"] = self.flow
        return data


@dataclass(frozen=True)
class Hysteria2User:
    password: str = field(repr=False)

    def to_dict(self) -> dict[str, Any]:
        return {"password": self.password}


@dataclass(frozen=True)
class RealityHandshake:
    server: str
    server_port: int = REALITY_HANDSHAKE_PORT

    def to_dict(self) -> dict[str, Any]:
        return {"server": self.server, "server_port": self.server_port}


@dataclass(frozen=True)
class RealityBlock:
    """The ``tls.reality`` object."""

    private_key: str = field(repr=False)
    short_ids: tuple[str, ...]
    handshake: RealityHandshake
    max_time_difference: str = REALITY_MAX_TIME_DIFFERENCE

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": True,
            "private_key": self.private_key,
            "short_id": list(self.short_ids),
            "handshake": self.handshake.to_dict(),
            "max_time_difference": self.max_time_difference,
        }


@dataclass(frozen=True)
class TLSBlock:
    """The inbound ``tls`` object; either Reality or certificate backed."""

    server_name: str | None = None
    reality: RealityBlock | None = None
    certificate_path: str | None = None
    key_path: str | None = None
    alpn: tuple[str, ...] = TCP_ALPN

    def __post_init__(self) -> None:
        """Reject blocks mixing Reality with certificate files."""
        has_files = self.certificate_path is not None or self.key_path is not None
        if self.reality is not None and has_files:
            raise ValidationError("tls", "a Reality block cannot carry certificate paths")
        if self.reality is None and (self.certificate_path is None or self.key_path is None):
            raise ValidationError("tls", "certificate_path and key_path are required")

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"enabled": True}
        if self.server_name is not None:
            data["server_name"] = self.server_name
        if self.reality is not None:
            data["reality"] = self.reality.to_dict()
        else:
            data["certificate_path"] = self.certificate_path
            data["key_path"] = self.key_path
        data["alpn"] = list(self.alpn)
        return data


@dataclass(frozen=True)
class Multiplex:
    enabled: bool = False
    padding: bool = False
    brutal_up_mbps: int = 1000
    brutal_down_mbps: int = 1000

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "padding": self.padding,
            "brutal": {
                "enabled": False,
                "up_mbps": self.brutal_up_mbps,
                "down_mbps": self.brutal_down_mbps,
            },
        }


@dataclass(frozen=True)
class WebSocketTransport:
    path: str = WS_PATH

    def to_dict(self) -> dict[str, Any]:
        return {"type": "ws", "path": self.path}


@dataclass(frozen=True)
class InboundDescriptor:
    """One protocol instance: a sing-box inbound bound to a port."""

    protocol: Protocol
    port: int
    tls: TLSBlock
    users: tuple[VlessUser | Hysteria2User, ...]
    listen: str = DEFAULT_LISTEN
    multiplex: Multiplex | None = None
    transport: WebSocketTransport | None = None
    artifact: CertificateArtifact | None = None
    up_mbps: int | None = None
    down_mbps: int | None = None

    @property
    def tag(self) -> str:
        """Return the inbound tag."""
        return self.protocol.tag

    @property
    def type(self) -> str:
        """Return the sing-box inbound type."""
        return "hysteria2" if self.protocol is Protocol.HYSTERIA2 else "vless"

    def to_dict(self) -> dict[str, Any]:
        """Serialise in the key order sing-box documents."""
        data: dict[str, Any] = {
            "type": self.type,
            "tag": self.tag,
            "listen": self.listen,
            "listen_port": self.port,
        }
        if self.up_mbps is not None:
            data["up_mbps"] = self.up_mbps
        if self.down_mbps is not None:
            data["down_mbps"] = self.down_mbps
        data["users"] = [user.to_dict() for user in self.users]
        if self.multiplex is not None:
            data["multiplex"] = self.multiplex.to_dict()
        data["tls"] = self.tls.to_dict()
        if self.transport is not None:
            data["transport"] = self.transport.to_dict()
        return data


def build_reality_inbound(
    credentials: CredentialSet,
    port: int,
    *,
    listen: str = DEFAULT_LISTEN,
) -> InboundDescriptor:
    """Return the VLESS-Reality inbound."""
    handshake = RealityHandshake(server=credentials.sni)
    tls = TLSBlock(
        server_name=credentials.sni,
        reality=RealityBlock(
            private_key=credentials.reality.private_key,
            short_ids=tuple(credentials.short_ids),
            handshake=handshake,
        ),
    )
    # A handshake target differing from server_name fails silently at runtime.
    if tls.reality is None or tls.reality.handshake.server != tls.server_name:
        raise ValidationError("sni", "Reality handshake server must equal tls.server_name")
    return InboundDescriptor(
        protocol=Protocol.REALITY,
        port=port,
        listen=listen,
        users=(VlessUser(uuid=credentials.uuid, flow=REALITY_FLOW),),
        multiplex=Multiplex(),
        tls=tls,
    )


def build_ws_tls_inbound(
    credentials: CredentialSet,
    artifact: CertificateArtifact | None,
    port: int,
    *,
    domain: str | None,
    listen: str = DEFAULT_LISTEN,
) -> InboundDescriptor:
    """Return the VLESS over WebSocket + TLS inbound."""
    if artifact is None:
        raise MissingCertificate(Protocol.WS_TLS.value)
    return InboundDescriptor(
        protocol=Protocol.WS_TLS,
        port=port,
        listen=listen,
        users=(VlessUser(uuid=credentials.uuid),),
        multiplex=Multiplex(),
        tls=TLSBlock(
            server_name=domain,
            certificate_path=str(artifact.fullchain),
            key_path=str(artifact.key),
        ),
        transport=WebSocketTransport(),
        artifact=artifact,
    )


def build_hysteria2_inbound(
    credentials: CredentialSet,
    artifact: CertificateArtifact | None,
    port: int,
    *,
    listen: str = DEFAULT_LISTEN,
) -> InboundDescriptor:
    """Return the Hysteria2 inbound."""
    if artifact is None:
        raise MissingCertificate(Protocol.HYSTERIA2.value)
    if not credentials.hysteria2_password:
        raise ValidationError("hysteria2_password", "a password is required for Hysteria2")
    return InboundDescriptor(
        protocol=Protocol.HYSTERIA2,
        port=port,
        listen=listen,
        up_mbps=HY2_BANDWIDTH_MBPS,
        down_mbps=HY2_BANDWIDTH_MBPS,
        users=(Hysteria2User(password=credentials.hysteria2_password),),
        tls=TLSBlock(
            certificate_path=str(artifact.fullchain),
            key_path=str(artifact.key),
            alpn=QUIC_ALPN,
        ),
        artifact=artifact,
    )


__all__ = [
    "DEFAULT_LISTEN",
    "REALITY_FLOW",
    "Hysteria2User",
    "InboundDescriptor",
    "Multiplex",
    "RealityBlock",
    "RealityHandshake",
    "TLSBlock",
    "VlessUser",
    "WebSocketTransport",
    "build_hysteria2_inbound",
    "build_reality_inbound",
    "build_ws_tls_inbound",
]
