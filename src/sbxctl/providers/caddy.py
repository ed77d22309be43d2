"""Caddy provider used purely as an ACME certificate manager.

Caddy never carries proxy traffic. It listens on its own HTTP/HTTPS ports,
obtains a certificate for the deployment domain and keeps it renewed inside
its data directory, from where sbxctl copies it for sing-box.
"""
from __future__ import annotations

import os
import subprocess
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

from ..templates import TemplateEngine
from .systemd import SystemdError, SystemdProvider

CADDY_UNIT = "caddy.service"
CERT_SYNC_SERVICE = "sbx-cert-sync.service"
CERT_SYNC_TIMER = "sbx-cert-sync.timer"

ACME_DIRECTORIES = (
    "acme-v02.api.letsencrypt.org-directory",
    "acme-staging-v02.api.letsencrypt.org-directory",
)


class CaddyError(RuntimeError):
    """Raised when Caddy operations fail."""


@dataclass(frozen=True)
class CaddyCertificate:
    """Certificate and key files Caddy stored for a domain."""

    certificate: Path
    key: Path


@dataclass(slots=True)
class CaddyRenderResult:
    """Outcome of rendering the Caddyfile."""

    changed: bool
    validation_error: str | None = None


@dataclass(slots=True)
class CaddyProvider:
    """Render the Caddyfile and drive the Caddy service."""

    templates: TemplateEngine
    systemd: SystemdProvider
    config_dir: Path = Path("/usr/local/etc/caddy")
    data_dir: Path = Path("/root/.local/share/caddy")
    caddy_bin: str = "caddy"
    http_port: int = 80
    https_port: int = 8445
    fallback_port: int = 8080
    email: str | None = None
    sbxctl_bin: str = "/usr/local/bin/sbxctl"

    @property
    def caddyfile(self) -> Path:
        """Return the path of the managed Caddyfile."""
        return self.config_dir / "Caddyfile"

    @property
    def environment_file(self) -> Path:
        """Return the path of the environment file holding the DNS API token."""
        return self.config_dir / "caddy.env"

    def render_caddyfile(
        self,
        domain: str,
        *,
        challenge: str = "http",
        api_token: str | None = None,
    ) -> CaddyRenderResult:
        """Render the Caddyfile for *domain* and validate it.

        A configuration Caddy refuses is rolled back to the previous file (or
        removed when there was none) and reported through ``validation_error``.
        """
        if challenge not in {"http", "dns"}:
            raise CaddyError(f"Unsupported ACME challenge: {challenge}")
        if challenge == "dns" and not api_token:
            raise CaddyError("The DNS challenge requires an API token.")
        self._write_environment(api_token if challenge == "dns" else None)

        destination = self.caddyfile
        previous: tuple[str, int] | None = None
        if destination.exists():
            previous = (destination.read_text(encoding="utf-8"), destination.stat().st_mode)

        changed = self.templates.render_to_path(
            "caddy/Caddyfile.j2",
            destination,
            {
                "domain": domain,
                "challenge": challenge,
                "email": self.email or f"admin@{domain}",
                "http_port": self.http_port,
                "https_port": self.https_port,
                "fallback_port": self.fallback_port,
            },
            mode=0o644,
        )
        if not changed:
            return CaddyRenderResult(changed=False)

        try:
            self.validate()
        except CaddyError as exc:
            if previous is None:
                destination.unlink(missing_ok=True)
            else:
                content, mode = previous
                destination.write_text(content, encoding="utf-8")
                destination.chmod(mode)
            return CaddyRenderResult(changed=False, validation_error=str(exc))
        return CaddyRenderResult(changed=True)

    def validate(self) -> subprocess.CompletedProcess[str]:
        """Run ``caddy validate`` against the managed Caddyfile."""
        args = ["validate", "--config", str(self.caddyfile), "--adapter", "caddyfile"]
        try:
            return self._run_caddy(args)
        except FileNotFoundError:
            return subprocess.CompletedProcess([self.caddy_bin, *args], returncode=0)

    def install_service(self) -> bool:
        """Render the Caddy unit; return True when it changed."""
        env_file = self.environment_file if self.environment_file.exists() else None
        return self.systemd.render_unit(
            CADDY_UNIT,
            "systemd/caddy.service.j2",
            {
                "caddy_bin": self.caddy_bin,
                "caddyfile": str(self.caddyfile),
                "environment_file": str(env_file) if env_file else None,
            },
        )

    def start(self) -> None:
        """Enable Caddy and restart it so it picks up the current Caddyfile."""
        try:
            self.systemd.enable(CADDY_UNIT)
            self.systemd.restart(CADDY_UNIT)
        except SystemdError as exc:
            raise CaddyError(f"Unable to start Caddy: {exc}") from exc

    def is_active(self) -> bool:
        """Return True when the Caddy unit is running."""
        return self.systemd.is_active(CADDY_UNIT)

    def certificate_dirs(self, domain: str) -> list[Path]:
        """Return the directories Caddy uses for *domain*, production first."""
        root = self.data_dir / "certificates"
        return [root / directory / domain for directory in ACME_DIRECTORIES]

    def locate_certificate(self, domain: str) -> CaddyCertificate | None:
        """Return the stored certificate for *domain* if Caddy has one."""
        for directory in self.certificate_dirs(domain):
            found = _pair_in(directory, domain)
            if found is not None:
                return found
        # Other ACME issuers use their own directory names.
        for certificate in _search(self.data_dir / "certificates", f"{domain}.crt", depth=3):
            found = _pair_in(certificate.parent, domain)
            if found is not None:
                return found
        return None

    def install_cert_sync(self, domain: str) -> bool:
        """Install and enable the daily certificate sync timer for *domain*."""
        context = {"domain": domain, "sbxctl_bin": self.sbxctl_bin}
        changed = self.systemd.render_unit(
            CERT_SYNC_SERVICE, "systemd/cert-sync.service.j2", context
        )
        changed = (
            self.systemd.render_unit(CERT_SYNC_TIMER, "systemd/cert-sync.timer.j2", context)
            or changed
        )
        self.systemd.enable(CERT_SYNC_TIMER)
        self.systemd.start(CERT_SYNC_TIMER)
        return changed

    def remove(self) -> list[str]:
        """Stop Caddy and delete managed files; the data directory is kept."""
        removed: list[str] = []
        for unit in (CERT_SYNC_TIMER, CERT_SYNC_SERVICE, CADDY_UNIT):
            if not self.systemd.unit_path(unit).exists():
                continue
            self.systemd.stop(unit)
            self.systemd.disable(unit)
            self.systemd.remove(unit)
            removed.append(str(self.systemd.unit_path(unit)))
        for path in (self.caddyfile, self.environment_file):
            if path.exists():
                path.unlink()
                removed.append(str(path))
        return removed

    # ------------------------------------------------------------------
    def _write_environment(self, api_token: str | None) -> None:
        path = self.environment_file
        if api_token is None:
            path.unlink(missing_ok=True)
            return
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(f"CF_API_TOKEN={api_token}\n")
        os.chmod(path, 0o600)

    def _run_caddy(self, args: list[str]) -> subprocess.CompletedProcess[str]:
        result = subprocess.run(  # noqa: S603, S607
            [self.caddy_bin, *args],
            capture_output=True,
            text=True,
            check=False,
        )
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise CaddyError(
                f"{self.caddy_bin} {args[0]} failed (exit {result.returncode}): {message}"
            )
        return result


def _pair_in(directory: Path, domain: str) -> CaddyCertificate | None:
    certificate = directory / f"{domain}.crt"
    key = directory / f"{domain}.key"
    if certificate.is_file() and key.is_file():
        return CaddyCertificate(certificate=certificate, key=key)
    return None


def _search(root: Path, name: str, *, depth: int) -> Iterator[Path]:
    if depth < 0 or not root.is_dir():
        return
    for entry in sorted(root.iterdir()):
        if entry.is_file() and entry.name == name:
            yield entry
        elif entry.is_dir() and not entry.is_symlink():
            yield from _search(entry, name, depth=depth - 1)


__all__ = [
    "ACME_DIRECTORIES",
    "CADDY_UNIT",
    "CERT_SYNC_SERVICE",
    "CERT_SYNC_TIMER",
    "CaddyCertificate",
    "CaddyError",
    "CaddyProvider",
    "CaddyRenderResult",
]
