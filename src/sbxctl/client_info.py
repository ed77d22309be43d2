"""Client-Info Record persisted next to the sing-box configuration.

The record is a ``KEY="value"`` text file readable only by root. It holds
everything the export commands need and never the Reality private key.
"""
from __future__ import annotations

import os
import re
import stat
import tempfile
from dataclasses import dataclass, fields
from pathlib import Path

from .errors import ExitCode, PipelineError
from .inputs import Protocol

_LINE_PATTERN = re.compile(r"^([A-Z][A-Z0-9_]*)=(.*)$")
_UNSAFE_FRAGMENTS = ("$(", "`")


class ClientInfoError(PipelineError):
    """Raised when the record is unsafe or malformed."""

    exit_code = ExitCode.ENVIRONMENT


@dataclass(frozen=True)
class ClientInfo:
    """Values required to regenerate client configuration."""

    domain: str
    uuid: str
    public_key: str
    short_id: str
    sni: str
    reality_port: int | None = None
    ws_port: int | None = None
    hy2_port: int | None = None
    hy2_pass: str | None = None
    cert_fullchain: str | None = None
    cert_key: str | None = None
    cert_mode: str | None = None

    @property
    def protocols(self) -> tuple[Protocol, ...]:
        """Return the protocols the record describes."""
        ports = (
            (Protocol.REALITY, self.reality_port),
            (Protocol.WS_TLS, self.ws_port),
            (Protocol.HYSTERIA2, self.hy2_port),
        )
        return tuple(protocol for protocol, port in ports if port)

    def port_for(self, protocol: Protocol) -> int | None:
        """Return the stored port for *protocol*."""
        return {
            Protocol.REALITY: self.reality_port,
            Protocol.WS_TLS: self.ws_port,
            Protocol.HYSTERIA2: self.hy2_port,
        }[protocol]

    def to_text(self) -> str:
        """Render the record in its on-disk format."""
        lines = []
        for item in fields(self):
            value = getattr(self, item.name)
            text = "" if value is None else str(value)
            lines.append(f'{item.name.upper()}="{text}"')
        return "\n".join(lines) + "\n"

    def to_dict(self, *, redact: bool = True) -> dict[str, object]:
        """Return a mapping; the Hysteria2 password is masked unless *redact* is False."""
        data: dict[str, object] = {item.name: getattr(self, item.name) for item in fields(self)}
        if redact and data.get("hy2_pass"):
            data["hy2_pass"] = "***"
        return data

    @classmethod
    def from_text(cls, text: str) -> ClientInfo:
        """Parse the on-disk format."""
        values: dict[str, str] = {}
        for number, raw in enumerate(text.splitlines(), start=1):
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            match = _LINE_PATTERN.match(line)
            if match is None:
                raise ClientInfoError(f"Malformed line {number}: {raw!r}")
            key, value = match.groups()
            if any(fragment in value for fragment in _UNSAFE_FRAGMENTS):
                raise ClientInfoError(f"Refusing command substitution in {key}")
            if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
                value = value[1:-1]
            values[key.lower()] = value

        known = {item.name for item in fields(cls)}
        unexpected = sorted(set(values) - known)
        if unexpected:
            names = ", ".join(key.upper() for key in unexpected)
            raise ClientInfoError(f"Unexpected key(s): {names}")
        required = ("domain", "uuid", "public_key", "sni")
        missing = [name for name in required if not values.get(name)]
        if missing:
            raise ClientInfoError(f"Missing field(s): {', '.join(n.upper() for n in missing)}")
        kwargs: dict[str, object] = {}
        for name in known:
            value = values.get(name)
            if name.endswith("_port"):
                kwargs[name] = _as_port(name, value)
            elif name == "short_id":
                kwargs[name] = value or ""
            else:
                kwargs[name] = value or None
        return cls(**kwargs)  # type: ignore[arg-type]


def read_client_info(path: Path) -> ClientInfo | None:
    """Return the record at *path*, or None when it does not exist."""
    try:
        info = path.lstat()
    except FileNotFoundError:
        return None
    if stat.S_ISLNK(info.st_mode):
        raise ClientInfoError(f"{path} is a symlink; refusing to read it.")
    if not stat.S_ISREG(info.st_mode):
        raise ClientInfoError(f"{path} is not a regular file.")
    if info.st_mode & 0o077:
        raise ClientInfoError(
            f"{path} has mode {stat.S_IMODE(info.st_mode):o}; expected 600."
        )
    return ClientInfo.from_text(path.read_text(encoding="utf-8"))


def write_client_info(path: Path, info: ClientInfo) -> bool:
    """Atomically write *info* with mode 0600; return True when content changed."""
    rendered = info.to_text()
    if path.exists() and not path.is_symlink() and path.read_text(encoding="utf-8") == rendered:
        os.chmod(path, 0o600)
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            handle.write(rendered)
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, path)
    finally:
        tmp_path.unlink(missing_ok=True)
    return True


def _as_port(name: str, value: str | None) -> int | None:
    if not value:
        return None
    try:
        return int(value)
    except ValueError as exc:
        raise ClientInfoError(f"{name.upper()} must be an integer, got {value!r}") from exc


__all__ = ["ClientInfo", "ClientInfoError", "read_client_info", "write_client_info"]
