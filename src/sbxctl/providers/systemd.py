"""Systemd provider for the sing-box, Caddy and certificate sync units."""
from __future__ import annotations

import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..templates import TemplateEngine


class SystemdError(RuntimeError):
    """Raised when systemd operations fail."""


@dataclass(slots=True)
class SystemdProvider:
    """Render unit files from templates and drive them through ``systemctl``."""

    templates: TemplateEngine
    systemd_dir: Path = Path("/etc/systemd/system")
    systemctl_bin: str = "systemctl"
    journalctl_bin: str = "journalctl"

    def unit_path(self, unit: str) -> Path:
        """Return the full path for *unit*."""
        return self.systemd_dir / unit

    def render_unit(self, unit: str, template: str, context: Mapping[str, object]) -> bool:
        """Render *template* into the unit file; reload systemd on change."""
        changed = self.templates.render_to_path(
            template, self.unit_path(unit), context, mode=0o644
        )
        if changed:
            self.reload_daemon()
        return changed

    def enable(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Enable *unit*."""
        return self._systemctl("enable", unit)

    def disable(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Disable *unit*."""
        return self._systemctl("disable", unit)

    def start(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Start *unit*."""
        return self._systemctl("start", unit)

    def stop(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Stop *unit*."""
        return self._systemctl("stop", unit)

    def restart(self, unit: str) -> subprocess.CompletedProcess[str]:
        """Restart *unit*."""
        return self._systemctl("restart", unit)

    def is_active(self, unit: str) -> bool:
        """Return True when ``systemctl is-active`` reports the unit active."""
        try:
            result = self._systemctl("is-active", unit, check=False)
        except SystemdError:
            return False
        return result.returncode == 0 and (result.stdout or "").strip() == "active"

    def logs(
        self,
        unit: str,
        *,
        lines: int | None = None,
        since: str | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Return journalctl output for *unit*."""
        args: list[str] = ["--unit", unit, "--no-pager"]
        if lines is not None:
            args.extend(["--lines", str(lines)])
        if since is not None:
            args.extend(["--since", since])
        command = [self.journalctl_bin, *args]
        return self._run_command(
            command,
            check=True,
            error_prefix=" ".join(command),
        )

    def remove(self, unit: str) -> bool:
        """Remove the unit file for *unit*; return True when a file was deleted."""
        try:
            self.unit_path(unit).unlink()
        except FileNotFoundError:
            return False
        self.reload_daemon()
        return True

    def reload_daemon(self) -> None:
        """Run ``systemctl daemon-reload``, tolerating hosts without systemd."""
        try:
            self._systemctl("daemon-reload")
        except SystemdError as exc:
            if "not found" in str(exc).lower():
                return
            raise

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        unit: str | None = None,
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        args: list[str] = [self.systemctl_bin, command]
        if unit is not None:
            args.append(unit)
        return self._run_command(
            args,
            check=check,
            error_prefix=f"{self.systemctl_bin} {command}",
        )

    def _run_command(
        self,
        args: Sequence[str],
        *,
        check: bool,
        error_prefix: str,
    ) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(  # noqa: S603, S607
                list(args),
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SystemdError(f"{args[0]} not found: {exc}") from exc
        if check and result.returncode != 0:
            message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            raise SystemdError(f"{error_prefix} failed (exit {result.returncode}): {message}")
        return result


__all__ = ["SystemdError", "SystemdProvider"]
