"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from sbxctl.config import AppConfig, ConfigError, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(tmp_path / "absent.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.conf_dir == Path("/etc/sing-box")
    assert config.singbox_config == Path("/etc/sing-box/config.json")
    assert config.client_info_file == Path("/etc/sing-box/client-info.txt")
    assert config.cert_dir == Path("/etc/ssl/sbx")
    assert config.caddy.https_port == 8445
    assert config.ports.reality == 443
    assert config.ports.reality_fallback == 24443
    assert config.backups.index == Path("/var/backups/sbx/backups.json")
    assert config.tls.warn_expiry_days == 30
    assert "https://api.ipify.org" in config.network.public_ip_services
    assert config.network.timeout == 5.0


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "config.yml"
    cfg.write_text(
        f"conf_dir: {tmp_path / 'sing-box'}\n"
        "singbox:\n"
        "  log_level: info\n"
        "caddy:\n"
        "  cert_timeout: 120\n"
        "  email: ops@example.com\n"
        "ports:\n"
        "  ws: 9444\n"
        "backups:\n"
        "  compression:\n"
        "    algorithm: none\n",
        encoding="utf-8",
    )

    config = load_config(cfg, env={})

    assert config.config_file == cfg
    assert config.singbox_config == tmp_path / "sing-box" / "config.json"
    assert config.singbox.log_level == "info"
    assert config.caddy.cert_timeout == 120.0
    assert config.caddy.email == "ops@example.com"
    assert config.ports.ws == 9444
    assert config.backups.compression == "none"


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Prefixed environment variables override defaults and file settings."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("ports:\n  reality: 8443\n", encoding="utf-8")
    env = {
        "SBXCTL_PORTS__REALITY": "9443",
        "SBXCTL_CADDY__POLL_INTERVAL": "0.5",
        "SBXCTL_STATE_DIR": str(tmp_path / "state"),
        "SBXCTL_LOCK_TIMEOUT": "45",
        "DOMAIN": "ignored.example.com",
    }

    config = load_config(cfg, env=env)

    assert config.ports.reality == 9443
    assert config.caddy.poll_interval == 0.5
    assert config.state_dir == tmp_path / "state"
    assert config.lock_timeout == 45.0


def test_env_can_select_config_file(tmp_path: Path) -> None:
    """SBXCTL_CONFIG_FILE selects an alternate config file."""
    cfg = tmp_path / "override.yml"
    cfg.write_text("qrencode_bin: /opt/bin/qrencode\n", encoding="utf-8")

    config = load_config(env={"SBXCTL_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.qrencode_bin == "/opt/bin/qrencode"


def test_overrides_win_over_everything(tmp_path: Path) -> None:
    """Programmatic overrides are applied last."""
    config = load_config(
        tmp_path / "absent.yml",
        env={"SBXCTL_LOCK_TIMEOUT": "45"},
        overrides={"lock_timeout": 5},
    )
    assert config.lock_timeout == 5.0


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("- not-a-mapping\n", "mapping at the top level"),
        ("unknown: value\n", "Unknown configuration keys"),
        ("caddy:\n  colour: blue\n", "Unknown caddy configuration keys"),
        ("singbox:\n  log_level: verbose\n", "Unsupported singbox.log_level"),
        ("backups:\n  compression:\n    algorithm: xz\n", "Unsupported backup compression"),
        ("ports:\n  reality: 70000\n", "ports.reality must be between 1 and 65535"),
        ("caddy:\n  https_port: 443\n", "conflicts with a sing-box listen port"),
        ("caddy:\n  cert_timeout: 0\n", "caddy.cert_timeout must be greater than zero"),
        ("ports:\n  retries: 0\n", "ports.retries must be at least 1"),
        ("network:\n  public_ip_services: https://api.ipify.org\n", "must be a list of URLs"),
        ("network:\n  timeout: -1\n", "network.timeout must be greater than zero"),
    ],
)
def test_invalid_config_raises(tmp_path: Path, content: str, message: str) -> None:
    """Structural and value errors surface as ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text(content, encoding="utf-8")

    with pytest.raises(ConfigError, match=message):
        load_config(cfg, env={})


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    """The resolved config renders as plain data."""
    data = load_config(tmp_path / "absent.yml", env={}).to_dict()
    assert data["singbox"]["service"] == "sing-box.service"
    assert data["backups"]["compression"] == {"algorithm": "gzip", "level": None}
