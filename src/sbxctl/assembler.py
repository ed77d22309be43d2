"""Assemble inbound descriptors into the sing-box configuration document."""
from __future__ import annotations

import json
import os
import tempfile
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .errors import SchemaCheckFailure, ValidationError
from .protocols import InboundDescriptor

DNS_SERVER_TAG = "dns-local"
DIRECT_OUTBOUND = {
    "type": "direct",
    "tag": "direct",
    "connect_timeout": "5s",
    "tcp_fast_open": True,
    "udp_fragment": True,
}
# Inbound fields removed from current sing-box releases.
DEPRECATED_INBOUND_FIELDS = ("sniff", "sniff_override_destination", "domain_strategy")


@dataclass(frozen=True)
class ConfigDocument:
    """The assembled document; serialisation is deterministic."""

    log_level: str
    inbounds: tuple[InboundDescriptor, ...]
    ipv6: bool

    @property
    def ports(self) -> dict[str, int]:
        """Return ``{tag: port}`` for every inbound."""
        return {inbound.tag: inbound.port for inbound in self.inbounds}

    def to_dict(self) -> dict[str, Any]:
        """Return the document as plain JSON-compatible data."""
        dns: dict[str, Any] = {"servers": [{"type": "local", "tag": DNS_SERVER_TAG}]}
        if not self.ipv6:
            dns["strategy"] = "ipv4_only"
        return {
            "log": {"level": self.log_level, "timestamp": True},
            "dns": dns,
            "inbounds": [inbound.to_dict() for inbound in self.inbounds],
            "outbounds": [dict(DIRECT_OUTBOUND)],
            "route": {
                "rules": [
                    {"inbound": [inbound.tag for inbound in self.inbounds], "action": "sniff"},
                    {"protocol": "dns", "action": "hijack-dns"},
                ],
                "auto_detect_interface": True,
                "default_domain_resolver": {"server": DNS_SERVER_TAG},
            },
        }

    def to_json(self) -> str:
        """Return the JSON text written to disk."""
        return json.dumps(self.to_dict(), indent=2) + "\n"


class ConfigAssembler:
    """Merge inbound descriptors and enforce document-level rules."""

    def __init__(self, log_level: str = "warn") -> None:
        """Use *log_level* for the engine's ``log`` section."""
        self._log_level = log_level

    def assemble(self, inbounds: Sequence[InboundDescriptor], *, ipv6: bool) -> ConfigDocument:
        """Return the document for *inbounds*; raise on structural violations."""
        if not inbounds:
            raise ValidationError("inbounds", "at least one inbound is required")
        seen: dict[int, str] = {}
        tags: set[str] = set()
        for inbound in inbounds:
            if inbound.port in seen:
                raise ValidationError(
                    "ports",
                    f"port {inbound.port} is used by both {seen[inbound.port]} and {inbound.tag}",
                )
            if inbound.tag in tags:
                raise ValidationError("inbounds", f"duplicate inbound {inbound.tag}")
            seen[inbound.port] = inbound.tag
            tags.add(inbound.tag)
        document = ConfigDocument(log_level=self._log_level, inbounds=tuple(inbounds), ipv6=ipv6)
        problems = self_check(document.to_dict())
        if problems:
            raise ValidationError("config", "; ".join(problems))
        return document


def self_check(document: Mapping[str, Any]) -> list[str]:
    """Return structural problems found in a plain configuration *document*.

    Works on parsed JSON so it can audit files written by other tools too.
    """
    problems: list[str] = []
    inbounds = document.get("inbounds") or []
    if not inbounds:
        problems.append("no inbounds configured")
    for inbound in inbounds:
        tag = inbound.get("tag", "?")
        if "reality" in inbound:
            problems.append(f"{tag}: reality must be nested under tls")
        if "flow" in inbound:
            problems.append(f"{tag}: flow belongs to users, not the inbound")
        for name in DEPRECATED_INBOUND_FIELDS:
            if name in inbound:
                problems.append(f"{tag}: deprecated field {name}")
        tls = inbound.get("tls") or {}
        reality = tls.get("reality")
        if reality:
            if not isinstance(reality.get("short_id"), list):
                problems.append(f"{tag}: reality.short_id must be a list")
            handshake = reality.get("handshake") or {}
            if handshake.get("server") != tls.get("server_name"):
                problems.append(f"{tag}: reality handshake server differs from server_name")
            if "certificate_path" in tls:
                problems.append(f"{tag}: Reality inbounds cannot use certificate files")
    outbounds = document.get("outbounds") or []
    if any(outbound.get("type") == "block" for outbound in outbounds):
        problems.append("block outbounds are deprecated")
    if [outbound.get("type") for outbound in outbounds] != ["direct"]:
        problems.append("outbounds must contain exactly one direct entry")
    for outbound in outbounds:
        if "domain_strategy" in outbound:
            problems.append(f"{outbound.get('tag', '?')}: domain_strategy belongs to dns")
    return problems


def write_config(
    document: ConfigDocument,
    destination: Path,
    checker: Callable[[Path], None] | None = None,
) -> bool:
    """Write *document* to *destination* after *checker* accepted it.

    The check runs against a temporary file in the destination directory, so a
    rejected document never replaces the current one. Returns False when the
    file already holds the same content; the checker still runs on it, since
    the installed engine may have changed since it was written.
    """
    rendered = document.to_json()
    if destination.exists() and destination.read_text(encoding="utf-8") == rendered:
        if checker is not None:
            checker(destination)
        if (destination.stat().st_mode & 0o777) != 0o600:
            os.chmod(destination, 0o600)
        return False

    destination.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(
        dir=str(destination.parent),
        prefix=f".{destination.name}.",
        suffix=".json",
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(rendered)
        os.chmod(tmp_path, 0o600)
        if checker is not None:
            checker(tmp_path)
        os.replace(tmp_path, destination)
    finally:
        tmp_path.unlink(missing_ok=True)
    return True


def load_config_document(path: Path) -> dict[str, Any]:
    """Read a written configuration file."""
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise SchemaCheckFailure(f"{path}: {exc}") from exc
    if not isinstance(data, dict):
        raise SchemaCheckFailure(f"{path}: top level must be an object")
    return data


__all__ = [
    "ConfigAssembler",
    "ConfigDocument",
    "load_config_document",
    "self_check",
    "write_config",
]
