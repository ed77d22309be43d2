"""Immutable inputs for a single provisioning run.

:func:`load_inputs` reads the installer environment variables once, applies
CLI overrides and validates the result. The frozen :class:`InstallInputs` is
then passed explicitly to every pipeline stage, so nothing downstream consults
``os.environ``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .errors import ValidationError
from .validation import (
    is_ip_address,
    require_valid,
    validate_domain,
    validate_ip_address,
    validate_port,
)


class Protocol(Enum):
    """Protocols sbxctl can configure."""

    REALITY = "reality"
    WS_TLS = "ws"
    HYSTERIA2 = "hy2"

    @property
    def requires_tls(self) -> bool:
        """Return True when the protocol needs a certificate artifact."""
        return self is not Protocol.REALITY

    @property
    def tag(self) -> str:
        """Return the sing-box inbound tag for the protocol."""
        return f"in-{self.value}"


ALL_PROTOCOLS = (Protocol.REALITY, Protocol.WS_TLS, Protocol.HYSTERIA2)

# Environment variable -> InstallInputs field.
ENV_FIELDS: dict[str, str] = {
    "DOMAIN": "domain",
    "CERT_MODE": "cert_mode",
    "CERT_FULLCHAIN": "cert_fullchain",
    "CERT_KEY": "cert_key",
    "CF_API_TOKEN": "api_token",
    "CF_Token": "api_token",
    "REALITY_ONLY": "reality_only",
    "PROTOCOLS": "protocols",
    "REALITY_PORT": "reality_port",
    "WS_PORT": "ws_port",
    "HY2_PORT": "hy2_port",
    "SNI": "sni",
    "UUID": "uuid",
    "PRIVATE_KEY": "private_key",
    "PUBLIC_KEY": "public_key",
    "SHORT_ID": "short_id",
    "HY2_PASS": "hysteria2_password",
}
_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off", ""}
PROTOCOL_ALIASES = {
    "reality": Protocol.REALITY,
    "ws": Protocol.WS_TLS,
    "ws-tls": Protocol.WS_TLS,
    "hy2": Protocol.HYSTERIA2,
    "hysteria2": Protocol.HYSTERIA2,
}


@dataclass(frozen=True)
class InstallInputs:
    """Operator supplied values for one run; absent values are ``None``."""

    domain: str | None = None
    cert_mode: str | None = None
    cert_fullchain: Path | None = None
    cert_key: Path | None = None
    api_token: str | None = field(default=None, repr=False)
    reality_only: bool = False
    protocols: tuple[Protocol, ...] | None = None
    reality_port: int | None = None
    ws_port: int | None = None
    hy2_port: int | None = None
    sni: str | None = None
    uuid: str | None = None
    private_key: str | None = field(default=None, repr=False)
    public_key: str | None = None
    short_id: str | None = None
    hysteria2_password: str | None = field(default=None, repr=False)
    ipv6: bool | None = None

    @property
    def domain_is_ip(self) -> bool:
        """Return True when the server address is a bare IP literal."""
        return self.domain is not None and is_ip_address(self.domain)

    def requested_port(self, protocol: Protocol) -> int | None:
        """Return the explicitly requested port for *protocol*."""
        return {
            Protocol.REALITY: self.reality_port,
            Protocol.WS_TLS: self.ws_port,
            Protocol.HYSTERIA2: self.hy2_port,
        }[protocol]

    def selected_protocols(self, *, certificates_available: bool) -> tuple[Protocol, ...]:
        """Return the protocols to configure.

        An explicit ``PROTOCOLS`` list wins. Otherwise Reality-only mode, a bare
        IP address or the lack of any certificate strategy yields Reality alone,
        and everything else enables all three protocols.
        """
        if self.protocols is not None:
            return self.protocols
        if self.reality_only or self.domain_is_ip or not certificates_available:
            return (Protocol.REALITY,)
        return ALL_PROTOCOLS

    def to_dict(self) -> dict[str, object]:
        """Return a representation safe for logs (secrets redacted)."""
        return {
            "domain": self.domain,
            "cert_mode": self.cert_mode,
            "cert_fullchain": str(self.cert_fullchain) if self.cert_fullchain else None,
            "cert_key": str(self.cert_key) if self.cert_key else None,
            "api_token": "***" if self.api_token else None,
            "reality_only": self.reality_only,
            "protocols": [p.value for p in self.protocols] if self.protocols else None,
            "reality_port": self.reality_port,
            "ws_port": self.ws_port,
            "hy2_port": self.hy2_port,
            "sni": self.sni,
            "uuid": self.uuid,
            "private_key": "***" if self.private_key else None,
            "public_key": self.public_key,
            "short_id": self.short_id,
            "hysteria2_password": "***" if self.hysteria2_password else None,
            "ipv6": self.ipv6,
        }


def load_inputs(
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object | None] | None = None,
) -> InstallInputs:
    """Build :class:`InstallInputs` from *env* and CLI *overrides*.

    Empty environment values count as absent. ``None`` overrides are ignored so
    unset CLI flags never mask the environment.
    """
    resolved_env = os.environ if env is None else env
    raw: dict[str, object] = {}
    for name, attribute in ENV_FIELDS.items():
        value = resolved_env.get(name)
        if value is not None and value.strip() != "":
            raw.setdefault(attribute, value.strip())
    for key, value in (overrides or {}).items():
        if value is not None:
            raw[key] = value

    unknown = set(raw) - {f.name for f in InstallInputs.__dataclass_fields__.values()}
    if unknown:
        raise ValidationError("inputs", f"unknown input(s): {', '.join(sorted(unknown))}")

    domain = _optional_str(raw.get("domain"))
    if domain is not None:
        domain = domain.rstrip(".")
        if is_ip_address(domain):
            require_valid(validate_ip_address(domain), "domain")
        else:
            require_valid(validate_domain(domain), "domain")

    cert_mode = _optional_str(raw.get("cert_mode"))
    return InstallInputs(
        domain=domain,
        cert_mode=cert_mode.lower() if cert_mode else None,
        cert_fullchain=_optional_path(raw.get("cert_fullchain")),
        cert_key=_optional_path(raw.get("cert_key")),
        api_token=_optional_str(raw.get("api_token")),
        reality_only=_parse_bool(raw.get("reality_only", False), "reality_only"),
        protocols=_parse_protocols(raw.get("protocols")),
        reality_port=_parse_port(raw.get("reality_port"), "reality_port"),
        ws_port=_parse_port(raw.get("ws_port"), "ws_port"),
        hy2_port=_parse_port(raw.get("hy2_port"), "hy2_port"),
        sni=_optional_str(raw.get("sni")),
        uuid=_optional_str(raw.get("uuid")),
        private_key=_optional_str(raw.get("private_key")),
        public_key=_optional_str(raw.get("public_key")),
        # An explicit empty short ID is meaningful, so it is not stripped away.
        short_id=None if raw.get("short_id") is None else str(raw["short_id"]).strip(),
        hysteria2_password=_optional_str(raw.get("hysteria2_password")),
        ipv6=None if raw.get("ipv6") is None else _parse_bool(raw["ipv6"], "ipv6"),
    )


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _optional_path(value: object) -> Path | None:
    text = _optional_str(value)
    return Path(text).expanduser() if text else None


def _parse_bool(value: object, field_name: str) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUTHY:
        return True
    if text in _FALSY:
        return False
    raise ValidationError(field_name, f"expected a boolean, got {value!r}")


def _parse_port(value: object, field_name: str) -> int | None:
    if value is None:
        return None
    require_valid(validate_port(value), field_name)
    return int(str(value).strip()) if not isinstance(value, int) else value


def _parse_protocols(value: object) -> tuple[Protocol, ...] | None:
    if value is None:
        return None
    if isinstance(value, str):
        items = [item.strip().lower() for item in value.split(",") if item.strip()]
    elif isinstance(value, (list, tuple)):
        items = [str(item).strip().lower() for item in value if str(item).strip()]
    else:
        raise ValidationError("protocols", f"expected a comma separated list, got {value!r}")
    if not items:
        return None
    selected: list[Protocol] = []
    for item in items:
        protocol = PROTOCOL_ALIASES.get(item)
        if protocol is None:
            raise ValidationError(
                "protocols", f"unknown protocol {item!r} (use reality, ws, hy2)"
            )
        if protocol not in selected:
            selected.append(protocol)
    # Keep a stable order so reconfigure runs produce identical documents.
    return tuple(p for p in ALL_PROTOCOLS if p in selected)


__all__ = ["ALL_PROTOCOLS", "ENV_FIELDS", "InstallInputs", "Protocol", "load_inputs"]
