"""Configuration loader for sbxctl.

Values are merged from four sources, later sources winning:

1. Built-in defaults.
2. ``/etc/sbxctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``SBXCTL_``.
4. Explicit overrides supplied programmatically (CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export SBXCTL_PORTS__REALITY=8443
    export SBXCTL_CADDY__CERT_TIMEOUT=120

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resolved configuration is exposed as immutable
``dataclasses``.

These are operator settings (paths, ports, timeouts). Per-deployment inputs
such as ``DOMAIN`` or ``CERT_MODE`` live in :mod:`sbxctl.inputs`.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path
from typing import cast

import yaml

ENV_PREFIX = "SBXCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class SingBoxConfig:
    """Location and version policy for the sing-box engine."""

    bin: Path = Path("/usr/local/bin/sing-box")
    service: str = "sing-box.service"
    log_level: str = "warn"
    min_version: str = "1.8.0"
    recommended_version: str = "1.12.0"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "bin": str(self.bin),
            "service": self.service,
            "log_level": self.log_level,
            "min_version": self.min_version,
            "recommended_version": self.recommended_version,
        }


@dataclass(frozen=True)
class CaddyConfig:
    """Caddy companion settings used for ACME issuance."""

    bin: Path = Path("/usr/local/bin/caddy")
    config_dir: Path = Path("/usr/local/etc/caddy")
    data_dir: Path = Path("/root/.local/share/caddy")
    http_port: int = 80
    https_port: int = 8445
    fallback_port: int = 8080
    cert_timeout: float = 60.0
    poll_interval: float = 2.0
    email: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "bin": str(self.bin),
            "config_dir": str(self.config_dir),
            "data_dir": str(self.data_dir),
            "http_port": self.http_port,
            "https_port": self.https_port,
            "fallback_port": self.fallback_port,
            "cert_timeout": self.cert_timeout,
            "poll_interval": self.poll_interval,
            "email": self.email,
        }


@dataclass(frozen=True)
class PortsConfig:
    """Default and fallback listen ports per protocol."""

    reality: int = 443
    ws: int = 8444
    hy2: int = 8443
    reality_fallback: int = 24443
    ws_fallback: int = 24444
    hy2_fallback: int = 24445
    retries: int = 3
    retry_delay: float = 2.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "reality": self.reality,
            "ws": self.ws,
            "hy2": self.hy2,
            "reality_fallback": self.reality_fallback,
            "ws_fallback": self.ws_fallback,
            "hy2_fallback": self.hy2_fallback,
            "retries": self.retries,
            "retry_delay": self.retry_delay,
        }


@dataclass(frozen=True)
class TLSConfig:
    """Certificate maintenance thresholds."""

    warn_expiry_days: int = 30

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"warn_expiry_days": self.warn_expiry_days}


@dataclass(frozen=True)
class NetworkConfig:
    """Public address detection used when no DOMAIN is given."""

    public_ip_services: tuple[str, ...] = ()
    timeout: float = 5.0

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"public_ip_services": list(self.public_ip_services), "timeout": self.timeout}


@dataclass(frozen=True)
class BackupConfig:
    """Backup storage and compression defaults."""

    root: Path
    index: Path
    compression: str = "gzip"
    compression_level: int | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "root": str(self.root),
            "index": str(self.index),
            "compression": {
                "algorithm": self.compression,
                "level": self.compression_level,
            },
        }


@dataclass(frozen=True)
class SystemdConfig:
    """Systemd integration configuration values."""

    unit_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "unit_dir": str(self.unit_dir),
            "systemctl_bin": self.systemctl_bin,
            "journalctl_bin": self.journalctl_bin,
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for sbxctl."""

    config_file: Path
    conf_dir: Path
    cert_dir: Path
    state_dir: Path
    logs_dir: Path
    runtime_dir: Path
    templates_dir: Path
    lock_timeout: float
    sbxctl_bin: str
    qrencode_bin: str
    singbox: SingBoxConfig
    caddy: CaddyConfig
    ports: PortsConfig
    tls: TLSConfig
    network: NetworkConfig
    backups: BackupConfig
    systemd: SystemdConfig

    @property
    def singbox_config(self) -> Path:
        """Return the path of the generated sing-box configuration."""
        return self.conf_dir / "config.json"

    @property
    def client_info_file(self) -> Path:
        """Return the path of the Client-Info Record."""
        return self.conf_dir / "client-info.txt"

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "conf_dir": str(self.conf_dir),
            "cert_dir": str(self.cert_dir),
            "state_dir": str(self.state_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "templates_dir": str(self.templates_dir),
            "lock_timeout": self.lock_timeout,
            "sbxctl_bin": self.sbxctl_bin,
            "qrencode_bin": self.qrencode_bin,
            "singbox": self.singbox.to_dict(),
            "caddy": self.caddy.to_dict(),
            "ports": self.ports.to_dict(),
            "tls": self.tls.to_dict(),
            "network": self.network.to_dict(),
            "backups": self.backups.to_dict(),
            "systemd": self.systemd.to_dict(),
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/sbxctl/config.yml",
    "conf_dir": "/etc/sing-box",
    "cert_dir": "/etc/ssl/sbx",
    "state_dir": "/var/lib/sbxctl",
    "logs_dir": "/var/log/sbxctl",
    "runtime_dir": "/run/sbxctl",
    "templates_dir": "/etc/sbxctl/templates",
    "lock_timeout": 30.0,
    "sbxctl_bin": "/usr/local/bin/sbxctl",
    "qrencode_bin": "qrencode",
    "singbox": {
        "bin": "/usr/local/bin/sing-box",
        "service": "sing-box.service",
        "log_level": "warn",
        "min_version": "1.8.0",
        "recommended_version": "1.12.0",
    },
    "caddy": {
        "bin": "/usr/local/bin/caddy",
        "config_dir": "/usr/local/etc/caddy",
        "data_dir": "/root/.local/share/caddy",
        "http_port": 80,
        "https_port": 8445,
        "fallback_port": 8080,
        "cert_timeout": 60.0,
        "poll_interval": 2.0,
        "email": None,
    },
    "ports": {
        "reality": 443,
        "ws": 8444,
        "hy2": 8443,
        "reality_fallback": 24443,
        "ws_fallback": 24444,
        "hy2_fallback": 24445,
        "retries": 3,
        "retry_delay": 2.0,
    },
    "tls": {"warn_expiry_days": 30},
    "network": {
        "public_ip_services": [
            "https://ipv4.icanhazip.com",
            "https://api.ipify.org",
            "https://ifconfig.me/ip",
            "https://ipinfo.io/ip",
        ],
        "timeout": 5.0,
    },
    "backups": {
        "root": "/var/backups/sbx",
        "index": None,
        "compression": {"algorithm": "gzip", "level": None},
    },
    "systemd": {
        "unit_dir": "/etc/systemd/system",
        "systemctl_bin": "systemctl",
        "journalctl_bin": "journalctl",
    },
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SECTION_KEYS: dict[str, set[str]] = {
    "singbox": set(cast(Mapping[str, object], DEFAULTS["singbox"]).keys()),
    "caddy": set(cast(Mapping[str, object], DEFAULTS["caddy"]).keys()),
    "ports": set(cast(Mapping[str, object], DEFAULTS["ports"]).keys()),
    "tls": {"warn_expiry_days"},
    "network": {"public_ip_services", "timeout"},
    "backups": {"root", "index", "compression"},
    "systemd": {"unit_dir", "systemctl_bin", "journalctl_bin"},
}
ALLOWED_LOG_LEVELS = {"trace", "debug", "info", "warn", "error", "fatal", "panic"}
ALLOWED_BACKUP_COMPRESSION = {"gzip", "zstd", "none"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_path = _determine_config_path(str(merged["config_file"]), config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)
    config = _build_app_config(merged)
    _validate_ports(config)
    return config


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for section, allowed in ALLOWED_SECTION_KEYS.items():
        mapping = _as_dict(raw.get(section), section)
        unknown = set(mapping.keys()) - allowed
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown {section} configuration keys: {joined}.")

    compression_map = _as_dict(
        _as_dict(raw.get("backups"), "backups").get("compression"),
        "backups.compression",
    )
    unknown_comp = set(compression_map.keys()) - {"algorithm", "level"}
    if unknown_comp:
        joined = ", ".join(sorted(unknown_comp))
        raise ConfigError(f"Unknown backups compression keys: {joined}.")
    algorithm = str(compression_map.get("algorithm", "gzip"))
    if algorithm not in ALLOWED_BACKUP_COMPRESSION:
        allowed = ", ".join(sorted(ALLOWED_BACKUP_COMPRESSION))
        raise ConfigError(f"Unsupported backup compression '{algorithm}'. Allowed: {allowed}.")

    log_level = str(_as_dict(raw.get("singbox"), "singbox").get("log_level", "warn"))
    if log_level not in ALLOWED_LOG_LEVELS:
        allowed = ", ".join(sorted(ALLOWED_LOG_LEVELS))
        raise ConfigError(f"Unsupported singbox.log_level '{log_level}'. Allowed: {allowed}.")


def _validate_ports(config: AppConfig) -> None:
    ports = config.ports
    caddy = config.caddy
    named = {
        "ports.reality": ports.reality,
        "ports.ws": ports.ws,
        "ports.hy2": ports.hy2,
        "ports.reality_fallback": ports.reality_fallback,
        "ports.ws_fallback": ports.ws_fallback,
        "ports.hy2_fallback": ports.hy2_fallback,
        "caddy.http_port": caddy.http_port,
        "caddy.https_port": caddy.https_port,
        "caddy.fallback_port": caddy.fallback_port,
    }
    for label, value in named.items():
        if not 1 <= value <= 65535:
            raise ConfigError(f"{label} must be between 1 and 65535. Got {value}.")

    singbox_ports = {ports.reality, ports.ws, ports.hy2}
    if caddy.https_port in singbox_ports:
        raise ConfigError(
            f"caddy.https_port ({caddy.https_port}) conflicts with a sing-box listen port; "
            "choose a dedicated port (default: 8445)."
        )
    if ports.retries < 1:
        raise ConfigError("ports.retries must be at least 1.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    singbox_map = _as_dict(raw.get("singbox"), "singbox")
    singbox = SingBoxConfig(
        bin=_to_path(singbox_map.get("bin")),
        service=str(singbox_map.get("service", "sing-box.service")),
        log_level=str(singbox_map.get("log_level", "warn")),
        min_version=str(singbox_map.get("min_version", "1.8.0")),
        recommended_version=str(singbox_map.get("recommended_version", "1.12.0")),
    )

    caddy_map = _as_dict(raw.get("caddy"), "caddy")
    email_value = caddy_map.get("email")
    caddy = CaddyConfig(
        bin=_to_path(caddy_map.get("bin")),
        config_dir=_to_path(caddy_map.get("config_dir")),
        data_dir=_to_path(caddy_map.get("data_dir")),
        http_port=_expect_int(caddy_map.get("http_port"), "caddy.http_port", default=80),
        https_port=_expect_int(caddy_map.get("https_port"), "caddy.https_port", default=8445),
        fallback_port=_expect_int(
            caddy_map.get("fallback_port"), "caddy.fallback_port", default=8080
        ),
        cert_timeout=_expect_positive_float(
            caddy_map.get("cert_timeout"), "caddy.cert_timeout", default=60.0
        ),
        poll_interval=_expect_positive_float(
            caddy_map.get("poll_interval"), "caddy.poll_interval", default=2.0
        ),
        email=str(email_value) if email_value else None,
    )

    ports_map = _as_dict(raw.get("ports"), "ports")
    defaults = PortsConfig()
    ports = PortsConfig(
        reality=_expect_int(ports_map.get("reality"), "ports.reality", default=defaults.reality),
        ws=_expect_int(ports_map.get("ws"), "ports.ws", default=defaults.ws),
        hy2=_expect_int(ports_map.get("hy2"), "ports.hy2", default=defaults.hy2),
        reality_fallback=_expect_int(
            ports_map.get("reality_fallback"),
            "ports.reality_fallback",
            default=defaults.reality_fallback,
        ),
        ws_fallback=_expect_int(
            ports_map.get("ws_fallback"), "ports.ws_fallback", default=defaults.ws_fallback
        ),
        hy2_fallback=_expect_int(
            ports_map.get("hy2_fallback"), "ports.hy2_fallback", default=defaults.hy2_fallback
        ),
        retries=_expect_int(ports_map.get("retries"), "ports.retries", default=defaults.retries),
        retry_delay=_expect_non_negative_float(
            ports_map.get("retry_delay"), "ports.retry_delay", default=defaults.retry_delay
        ),
    )

    tls_map = _as_dict(raw.get("tls"), "tls")
    warn_days = _expect_int(tls_map.get("warn_expiry_days"), "tls.warn_expiry_days", default=30)
    if warn_days < 0:
        raise ConfigError("tls.warn_expiry_days must be non-negative.")
    tls = TLSConfig(warn_expiry_days=warn_days)

    network_map = _as_dict(raw.get("network"), "network")
    services = network_map.get("public_ip_services") or []
    if not isinstance(services, list) or not all(isinstance(s, str) for s in services):
        raise ConfigError("network.public_ip_services must be a list of URLs.")
    network = NetworkConfig(
        public_ip_services=tuple(services),
        timeout=_expect_positive_float(
            network_map.get("timeout"), "network.timeout", default=5.0
        ),
    )

    backups_map = _as_dict(raw.get("backups"), "backups")
    backups_root = _to_path(backups_map.get("root", "/var/backups/sbx"))
    index_value = backups_map.get("index")
    backups_index = _to_path(index_value) if index_value else backups_root / "backups.json"
    compression_map = _as_dict(backups_map.get("compression"), "backups.compression")
    level_raw = compression_map.get("level")
    compression_level: int | None = None
    if level_raw is not None:
        compression_level = _expect_int(level_raw, "backups.compression.level", default=6)
        if compression_level <= 0:
            raise ConfigError("backups.compression.level must be greater than zero.")
    backups = BackupConfig(
        root=backups_root,
        index=backups_index,
        compression=str(compression_map.get("algorithm", "gzip")),
        compression_level=compression_level,
    )

    systemd_map = _as_dict(raw.get("systemd"), "systemd")
    systemd = SystemdConfig(
        unit_dir=_to_path(systemd_map.get("unit_dir", "/etc/systemd/system")),
        systemctl_bin=str(systemd_map.get("systemctl_bin", "systemctl")),
        journalctl_bin=str(systemd_map.get("journalctl_bin", "journalctl")),
    )

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        conf_dir=_to_path(raw.get("conf_dir")),
        cert_dir=_to_path(raw.get("cert_dir")),
        state_dir=_to_path(raw.get("state_dir")),
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        templates_dir=_to_path(raw.get("templates_dir")),
        lock_timeout=_expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0),
        sbxctl_bin=str(raw.get("sbxctl_bin", "/usr/local/bin/sbxctl")),
        qrencode_bin=str(raw.get("qrencode_bin", "qrencode")),
        singbox=singbox,
        caddy=caddy,
        ports=ports,
        tls=tls,
        network=network,
        backups=backups,
        systemd=systemd,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS or not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            child: MutableMapping[str, object] = {}
            current[segment] = child
            current = child
        elif isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
        else:
            raise ConfigError(
                "Environment overrides conflict with existing scalar value at "
                f"{'.'.join(path)}"
            )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        else:
            result[key] = value
    return result


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        return yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw


def _to_path(value: object) -> Path:
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str) and value:
        return Path(value).expanduser()
    raise ConfigError(f"Expected a filesystem path, received {value!r}.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_number(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_positive_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _expect_non_negative_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    numeric = _expect_number(value, label)
    if numeric < 0:
        raise ConfigError(f"{label} must not be negative. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "BackupConfig",
    "CaddyConfig",
    "ConfigError",
    "NetworkConfig",
    "PortsConfig",
    "SingBoxConfig",
    "SystemdConfig",
    "TLSConfig",
    "load_config",
]
