"""Certificate lifecycle management.

:class:`CertificateManager` turns a :class:`~sbxctl.strategy.StrategyDecision`
into a :class:`CertificateArtifact`. Pre-supplied files are used as they are;
ACME strategies delegate issuance to Caddy, wait (bounded) for the certificate
to appear and copy it into sbxctl's certificate directory. Nothing is copied
when issuance fails.
"""
from __future__ import annotations

import os
import shutil
import tempfile
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path

from .errors import IssuanceFailure
from .providers.caddy import CaddyCertificate, CaddyError, CaddyProvider
from .providers.systemd import SystemdError
from .strategy import CertificateStrategy, StrategyDecision
from .validation import certificate_not_after, load_certificate

FULLCHAIN_NAME = "fullchain.pem"
PRIVKEY_NAME = "privkey.pem"


@dataclass(frozen=True)
class CertificateArtifact:
    """Certificate pair consumed by the TLS-bearing inbounds."""

    fullchain: Path
    key: Path
    strategy: CertificateStrategy
    not_valid_after: datetime | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "fullchain": str(self.fullchain),
            "key": str(self.key),
            "strategy": self.strategy.value,
            "not_valid_after": self.not_valid_after.isoformat() if self.not_valid_after else None,
        }


class CertificateStatus(Enum):
    """Expiry classification reported by ``cert check``."""

    OK = "ok"
    EXPIRING = "expiring"
    EXPIRED = "expired"
    MISSING = "missing"


@dataclass(frozen=True)
class ExpiryReport:
    """Result of an expiry check."""

    status: CertificateStatus
    path: Path
    not_valid_after: datetime | None = None
    days_remaining: int | None = None
    message: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "status": self.status.value,
            "path": str(self.path),
            "not_valid_after": self.not_valid_after.isoformat() if self.not_valid_after else None,
            "days_remaining": self.days_remaining,
            "message": self.message,
        }


def read_expiry(path: Path) -> datetime | None:
    """Return the expiry of the certificate at *path*, or None if unreadable."""
    try:
        return certificate_not_after(load_certificate(path))
    except (OSError, ValueError):
        return None


def check_expiry(
    fullchain: Path,
    *,
    warn_days: int = 30,
    now: datetime | None = None,
) -> ExpiryReport:
    """Classify the certificate at *fullchain* against the warning threshold."""
    now = now or datetime.now(UTC)
    if not fullchain.exists():
        return ExpiryReport(
            CertificateStatus.MISSING, fullchain, message=f"{fullchain} does not exist."
        )
    not_after = read_expiry(fullchain)
    if not_after is None:
        return ExpiryReport(
            CertificateStatus.MISSING, fullchain, message=f"{fullchain} is not a certificate."
        )
    if not_after <= now:
        return ExpiryReport(
            CertificateStatus.EXPIRED,
            fullchain,
            not_valid_after=not_after,
            days_remaining=0,
            message=f"Certificate expired on {not_after.isoformat()}",
        )
    days = (not_after - now).days
    if days <= warn_days:
        return ExpiryReport(
            CertificateStatus.EXPIRING,
            fullchain,
            not_valid_after=not_after,
            days_remaining=days,
            message=f"Certificate expires soon ({not_after.isoformat()}, {days} day(s) remaining)",
        )
    return ExpiryReport(
        CertificateStatus.OK,
        fullchain,
        not_valid_after=not_after,
        days_remaining=days,
        message=f"Certificate valid until {not_after.isoformat()}",
    )


class CertificateManager:
    """Obtain certificate artifacts for a resolved strategy."""

    def __init__(
        self,
        caddy: CaddyProvider,
        cert_dir: Path,
        *,
        timeout: float = 60.0,
        poll_interval: float = 2.0,
        port_probe: Callable[[int], bool] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        on_warning: Callable[[str], None] | None = None,
    ) -> None:
        """Configure the manager; *port_probe* returns True when a port is busy."""
        self._caddy = caddy
        self._cert_dir = cert_dir
        self._timeout = timeout
        self._poll_interval = poll_interval
        self._port_probe = port_probe
        self._sleep = sleep
        self._clock = clock
        self._on_warning = on_warning

    def destination(self, domain: str) -> tuple[Path, Path]:
        """Return the (fullchain, key) paths sing-box reads for *domain*."""
        directory = self._cert_dir / domain
        return directory / FULLCHAIN_NAME, directory / PRIVKEY_NAME

    def planned_artifact(self, decision: StrategyDecision) -> CertificateArtifact | None:
        """Return the artifact *decision* would produce, without side effects."""
        if decision.strategy is CertificateStrategy.NONE:
            return None
        if decision.strategy is CertificateStrategy.PRE_SUPPLIED_FILES:
            return self._supplied(decision)
        fullchain, key = self.destination(_require_domain(decision))
        return CertificateArtifact(fullchain=fullchain, key=key, strategy=decision.strategy)

    def obtain(self, decision: StrategyDecision) -> CertificateArtifact | None:
        """Return the artifact for *decision*, issuing through Caddy when needed."""
        if decision.strategy is CertificateStrategy.NONE:
            return None
        if decision.strategy is CertificateStrategy.PRE_SUPPLIED_FILES:
            return self._supplied(decision)

        domain = _require_domain(decision)
        if decision.strategy is CertificateStrategy.HTTP_CHALLENGE:
            self._check_http_port()

        try:
            rendered = self._caddy.render_caddyfile(
                domain,
                challenge=decision.strategy.challenge or "http",
                api_token=decision.api_token,
            )
            if rendered.validation_error:
                raise IssuanceFailure(
                    f"Caddy rejected the configuration: {rendered.validation_error}"
                )
            self._caddy.install_service()
            self._caddy.start()
        except (CaddyError, SystemdError) as exc:
            raise IssuanceFailure(
                f"Unable to start certificate issuance for {domain}: {exc}"
            ) from exc

        issued = self.wait_for_certificate(domain)
        artifact = self._install(domain, issued, decision.strategy)
        try:
            self._caddy.install_cert_sync(domain)
        except SystemdError as exc:
            self._warn(f"Certificate renewal sync was not registered: {exc}")
        return artifact

    def wait_for_certificate(self, domain: str) -> CaddyCertificate:
        """Poll Caddy's storage until a certificate appears or the timeout elapses."""
        deadline = self._clock() + self._timeout
        while True:
            found = self._caddy.locate_certificate(domain)
            if found is not None:
                return found
            if self._clock() >= deadline:
                raise IssuanceFailure(
                    f"No certificate for {domain} appeared within {self._timeout:g}s. "
                    "Check that the domain resolves to this server and review "
                    "'journalctl -u caddy'."
                )
            self._sleep(self._poll_interval)

    def sync(self, domain: str, strategy: CertificateStrategy) -> tuple[CertificateArtifact, bool]:
        """Copy Caddy's current certificate for *domain*; report whether it changed."""
        found = self._caddy.locate_certificate(domain)
        if found is None:
            raise IssuanceFailure(f"Caddy holds no certificate for {domain}.")
        fullchain, _ = self.destination(domain)
        before = fullchain.read_bytes() if fullchain.exists() else None
        artifact = self._install(domain, found, strategy)
        return artifact, before != fullchain.read_bytes()

    # ------------------------------------------------------------------
    def _supplied(self, decision: StrategyDecision) -> CertificateArtifact:
        if decision.fullchain is None or decision.key is None:
            raise IssuanceFailure("Pre-supplied strategy without certificate paths.")
        return CertificateArtifact(
            fullchain=decision.fullchain,
            key=decision.key,
            strategy=decision.strategy,
            not_valid_after=read_expiry(decision.fullchain),
        )

    def _check_http_port(self) -> None:
        port = self._caddy.http_port
        if self._port_probe is not None and self._port_probe(port):
            self._warn(
                f"Port {port} is in use; HTTP-01 validation needs it. Stop the service "
                "holding it or use CERT_MODE=dns with a Cloudflare API token. "
                "Attempting issuance anyway."
            )

    def _install(
        self,
        domain: str,
        issued: CaddyCertificate,
        strategy: CertificateStrategy,
    ) -> CertificateArtifact:
        fullchain, key = self.destination(domain)
        fullchain.parent.mkdir(parents=True, exist_ok=True)
        os.chmod(fullchain.parent, 0o700)
        _copy_private(issued.certificate, fullchain)
        _copy_private(issued.key, key)
        return CertificateArtifact(
            fullchain=fullchain,
            key=key,
            strategy=strategy,
            not_valid_after=read_expiry(fullchain),
        )

    def _warn(self, message: str) -> None:
        if self._on_warning is not None:
            self._on_warning(message)


def _require_domain(decision: StrategyDecision) -> str:
    if not decision.domain:
        raise IssuanceFailure("ACME issuance requires a domain.")
    return decision.domain


def _copy_private(source: Path, destination: Path) -> None:
    tmp_fd, tmp_name = tempfile.mkstemp(
        dir=str(destination.parent), prefix=f".{destination.name}."
    )
    tmp_path = Path(tmp_name)
    try:
        os.close(tmp_fd)
        shutil.copyfile(source, tmp_path)
        os.chmod(tmp_path, 0o600)
        os.replace(tmp_path, destination)
    finally:
        tmp_path.unlink(missing_ok=True)


__all__ = [
    "CertificateArtifact",
    "CertificateManager",
    "CertificateStatus",
    "ExpiryReport",
    "check_expiry",
    "read_expiry",
]
