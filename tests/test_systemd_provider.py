"""Tests for the systemd provider."""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from pathlib import Path

import pytest

from sbxctl.providers.systemd import SystemdError, SystemdProvider
from sbxctl.templates import TemplateEngine

UNIT = "sing-box.service"
CONTEXT = {"singbox_bin": "/usr/local/bin/sing-box", "config_path": "/etc/sing-box/config.json"}


class DummyResult:
    """Simple stand-in for ``subprocess.CompletedProcess``."""

    def __init__(self, returncode: int = 0, stdout: str = "", stderr: str = "") -> None:
        """Initialise the dummy result."""
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


Call = tuple[str, str | None, bool]


@pytest.fixture
def provider(tmp_path: Path) -> SystemdProvider:
    """Return a provider writing units below the temporary path."""
    return SystemdProvider(
        templates=TemplateEngine.with_overrides(None),
        systemd_dir=tmp_path / "systemd",
        systemctl_bin="systemctl",  # Not invoked; monkeypatched in tests.
    )


def _capture(
    monkeypatch: pytest.MonkeyPatch, result: DummyResult | None = None
) -> list[Call]:
    calls: list[Call] = []

    def fake_systemctl(
        self: SystemdProvider,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
    ) -> DummyResult:
        calls.append((command, unit, check))
        return result or DummyResult()

    monkeypatch.setattr(SystemdProvider, "_systemctl", fake_systemctl)
    return calls


def test_render_unit_writes_file_and_reloads(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
) -> None:
    """Rendering writes the unit file and triggers a daemon reload once."""
    calls = _capture(monkeypatch)

    assert provider.render_unit(UNIT, "systemd/sing-box.service.j2", CONTEXT) is True
    contents = provider.unit_path(UNIT).read_text(encoding="utf-8")
    assert "ExecStart=/usr/local/bin/sing-box run -c /etc/sing-box/config.json" in contents
    assert calls == [("daemon-reload", None, True)]

    calls.clear()
    assert provider.render_unit(UNIT, "systemd/sing-box.service.j2", CONTEXT) is False
    assert calls == []


@pytest.mark.parametrize("command", ["enable", "disable", "start", "stop", "restart"])
def test_unit_management_calls_systemctl(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
    command: str,
) -> None:
    """Unit verbs delegate to systemctl with the unit name."""
    calls = _capture(monkeypatch)
    getattr(provider, command)(UNIT)
    assert calls == [(command, UNIT, True)]


@pytest.mark.parametrize(
    ("result", "expected"),
    [
        (DummyResult(0, "active\n"), True),
        (DummyResult(3, "inactive\n"), False),
        (DummyResult(0, "activating\n"), False),
    ],
)
def test_is_active(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
    result: DummyResult,
    expected: bool,
) -> None:
    """Only an exact ``active`` answer counts."""
    calls = _capture(monkeypatch, result)
    assert provider.is_active(UNIT) is expected
    assert calls == [("is-active", UNIT, False)]


def test_remove_deletes_unit_and_reloads(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
) -> None:
    """Removing a unit reloads systemd; a missing unit is a no-op."""
    calls = _capture(monkeypatch)
    provider.render_unit(UNIT, "systemd/sing-box.service.j2", CONTEXT)
    calls.clear()

    assert provider.remove(UNIT) is True
    assert not provider.unit_path(UNIT).exists()
    assert calls == [("daemon-reload", None, True)]
    assert provider.remove(UNIT) is False


def test_logs_invokes_journalctl(
    monkeypatch: pytest.MonkeyPatch,
    provider: SystemdProvider,
) -> None:
    """Logs shell out to journalctl with the expected arguments."""
    captured: list[list[str]] = []

    def fake_run_command(
        self: SystemdProvider,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> DummyResult:
        captured.append(list(args))
        return DummyResult(stdout="line\n")

    monkeypatch.setattr(SystemdProvider, "_run_command", fake_run_command)
    provider.logs(UNIT, lines=50)
    assert captured == [["journalctl", "--unit", UNIT, "--no-pager", "--lines", "50"]]


def test_failed_command_raises(monkeypatch: pytest.MonkeyPatch, provider: SystemdProvider) -> None:
    """Non-zero exits surface the stderr text."""

    def fake_run(args: list[str], **_: object) -> subprocess.CompletedProcess[str]:
        return subprocess.CompletedProcess(args, 1, stdout="", stderr="Unit not loaded.")

    monkeypatch.setattr("sbxctl.providers.systemd.subprocess.run", fake_run)
    with pytest.raises(SystemdError, match="Unit not loaded"):
        provider.restart(UNIT)


def test_missing_systemctl_is_tolerated_on_reload(tmp_path: Path) -> None:
    """Hosts without systemctl can still render units."""
    provider = SystemdProvider(
        templates=TemplateEngine.with_overrides(None),
        systemd_dir=tmp_path / "systemd",
        systemctl_bin=str(tmp_path / "no-systemctl"),
    )
    assert provider.render_unit(UNIT, "systemd/sing-box.service.j2", CONTEXT) is True
    assert provider.is_active(UNIT) is False
    with pytest.raises(SystemdError, match="not found"):
        provider.enable(UNIT)
