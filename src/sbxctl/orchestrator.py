"""Install orchestration: from inputs to a running sing-box.

:class:`InstallOrchestrator` runs the pipeline in a fixed order. It resolves
the certificate strategy, selects protocols, prepares credentials and ports,
obtains certificates, builds and assembles the inbounds, then writes the
configuration and Client-Info Record and (re)starts the service.

Everything up to the configuration write happens in memory or in scratch
files. A failure before that point leaves the deployed configuration as it
was; the run is recorded as ``failed`` in the deployment registry.
"""
from __future__ import annotations

import json
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import partial
from pathlib import Path

from packaging.version import Version

from .assembler import ConfigAssembler, ConfigDocument, write_config
from .certificates import CertificateArtifact, CertificateManager
from .client_info import ClientInfo, read_client_info, write_client_info
from .config import AppConfig
from .errors import MissingCertificate, PipelineError, ValidationError
from .inputs import InstallInputs, Protocol
from .materials import CredentialSet, MaterialGenerator
from .network import detect_public_ip, has_ipv6
from .ports import PortAllocation, PortAllocator
from .protocols import (
    InboundDescriptor,
    build_hysteria2_inbound,
    build_reality_inbound,
    build_ws_tls_inbound,
)
from .providers.caddy import CaddyProvider
from .providers.singbox import SingBoxError, SingBoxProvider
from .providers.systemd import SystemdError, SystemdProvider
from .state import StateRegistry
from .strategy import CertificateStrategy, StrategyDecision, resolve_strategy

StepCallback = Callable[[str, str, "str | None"], None]

SINGBOX_UNIT_TEMPLATE = "systemd/sing-box.service.j2"


class InstallState(Enum):
    """Lifecycle state of an install run."""

    FRESH = "fresh"
    RECONFIGURE = "reconfigure"
    UPGRADE = "upgrade"
    FAILED = "failed"


@dataclass(frozen=True)
class PriorDeployment:
    """What an earlier run left on disk."""

    client_info: ClientInfo | None = None
    private_key: str | None = field(default=None, repr=False)
    ports: dict[str, int] = field(default_factory=dict)
    service_active: bool = False

    @property
    def exists(self) -> bool:
        """Return True when there is anything to reconfigure."""
        return self.client_info is not None or bool(self.ports)

    def port(self, protocol: Protocol) -> int | None:
        """Return the port *protocol* listened on before."""
        return self.ports.get(protocol.tag)


def read_prior_deployment(config_path: Path, client_info_path: Path) -> PriorDeployment:
    """Collect the reusable parts of an existing deployment."""
    info = read_client_info(client_info_path)
    private_key: str | None = None
    ports: dict[str, int] = {}
    if config_path.exists():
        try:
            document = json.loads(config_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            document = {}
        inbounds = document.get("inbounds") if isinstance(document, dict) else None
        for inbound in inbounds if isinstance(inbounds, list) else []:
            if not isinstance(inbound, dict):
                continue
            tag = inbound.get("tag")
            port = inbound.get("listen_port")
            if isinstance(tag, str) and isinstance(port, int):
                ports[tag] = port
            tls = inbound.get("tls")
            reality = tls.get("reality") if isinstance(tls, dict) else None
            if isinstance(reality, dict) and reality.get("private_key"):
                private_key = str(reality["private_key"])
    return PriorDeployment(client_info=info, private_key=private_key, ports=ports)


@dataclass(frozen=True)
class InstallResult:
    """Outcome of a successful (or planned) install run."""

    state: InstallState
    decision: StrategyDecision
    protocols: tuple[Protocol, ...]
    allocations: tuple[PortAllocation, ...]
    document: ConfigDocument
    client_info: ClientInfo
    artifact: CertificateArtifact | None = None
    config_changed: bool = False
    client_info_changed: bool = False
    service_started: bool = False
    dry_run: bool = False
    warnings: tuple[str, ...] = ()

    @property
    def changed(self) -> bool:
        """Return True when any managed file changed."""
        return self.config_changed or self.client_info_changed

    def to_dict(self) -> dict[str, object]:
        """Return a log-safe representation; no private key or password."""
        return {
            "state": self.state.value,
            "strategy": self.decision.to_dict(),
            "protocols": [protocol.value for protocol in self.protocols],
            "ports": [allocation.to_dict() for allocation in self.allocations],
            "certificate": self.artifact.to_dict() if self.artifact else None,
            "client_info": self.client_info.to_dict(),
            "config_changed": self.config_changed,
            "client_info_changed": self.client_info_changed,
            "service_started": self.service_started,
            "dry_run": self.dry_run,
            "warnings": list(self.warnings),
        }


class InstallOrchestrator:
    """Drive one install, reconfigure or upgrade run."""

    def __init__(
        self,
        config: AppConfig,
        *,
        singbox: SingBoxProvider,
        systemd: SystemdProvider,
        caddy: CaddyProvider,
        certificates: CertificateManager,
        ports: PortAllocator,
        registry: StateRegistry,
        materials: MaterialGenerator | None = None,
        assembler: ConfigAssembler | None = None,
        ipv6_probe: Callable[[], bool] = has_ipv6,
        public_ip_probe: Callable[[], str | None] | None = None,
    ) -> None:
        """Wire the collaborators used by the pipeline."""
        self._config = config
        self._singbox = singbox
        self._systemd = systemd
        self._caddy = caddy
        self._certificates = certificates
        self._ports = ports
        self._registry = registry
        self._materials = materials or MaterialGenerator(singbox)
        self._assembler = assembler or ConfigAssembler(config.singbox.log_level)
        self._ipv6_probe = ipv6_probe
        self._public_ip_probe = public_ip_probe or partial(
            detect_public_ip,
            config.network.public_ip_services,
            timeout=config.network.timeout,
        )

    # ------------------------------------------------------------------
    def detect(self, *, upgrade: bool = False) -> tuple[InstallState, PriorDeployment]:
        """Return the run state implied by what is on disk."""
        prior = read_prior_deployment(self._config.singbox_config, self._config.client_info_file)
        if prior.exists:
            prior = PriorDeployment(
                client_info=prior.client_info,
                private_key=prior.private_key,
                ports=prior.ports,
                service_active=self._systemd.is_active(self._config.singbox.service),
            )
        if upgrade:
            if not prior.exists:
                raise ValidationError("upgrade", "there is no existing deployment to upgrade")
            return InstallState.UPGRADE, prior
        return (InstallState.RECONFIGURE if prior.exists else InstallState.FRESH), prior

    def run(
        self,
        inputs: InstallInputs,
        *,
        upgrade: bool = False,
        start: bool = True,
        dry_run: bool = False,
        on_step: StepCallback | None = None,
    ) -> InstallResult:
        """Execute the pipeline for *inputs*."""
        step = on_step or (lambda name, status, detail: None)
        warnings: list[str] = []
        state = InstallState.FRESH
        try:
            domain = inputs.domain
            if domain is None:
                domain = self._public_ip_probe()
                if domain is None:
                    raise ValidationError(
                        "domain", "DOMAIN is not set and the public IP could not be detected"
                    )
                inputs = replace(inputs, domain=domain)
                warnings.append(
                    f"DOMAIN not set; using detected public IP {domain} (Reality only)"
                )
                step("domain.detect", "success", domain)
            decision = resolve_strategy(inputs)
            step("strategy.resolve", "success", decision.strategy.value)
            warnings.extend(decision.notes)

            state, prior = self.detect(upgrade=upgrade)
            step("state.detect", "success", state.value)

            if state is InstallState.UPGRADE:
                engine, notes = self._check_engine_version()
                warnings.extend(notes)
            else:
                engine = self._singbox.version()
            step("engine.version", "success", str(engine) if engine else "unknown")

            certificates_available = decision.strategy is not CertificateStrategy.NONE
            protocols = inputs.selected_protocols(certificates_available=certificates_available)
            if not certificates_available:
                for protocol in protocols:
                    if protocol.requires_tls:
                        raise MissingCertificate(protocol.value)
            step("protocols.select", "success", ",".join(p.value for p in protocols))

            credentials = self._credentials(inputs, prior, protocols)
            step("materials.prepare", "success", None)

            allocations = self._allocate_ports(inputs, prior, protocols)
            for allocation in allocations:
                if allocation.fallback:
                    warnings.append(
                        f"{allocation.protocol.value}: {allocation.reason}; "
                        f"using fallback port {allocation.port}"
                    )
            self._guard_caddy_ports(decision, allocations)
            step("ports.allocate", "success", _describe_ports(allocations))

            if dry_run:
                artifact = self._certificates.planned_artifact(decision)
                step("certificates.obtain", "skipped", "dry-run")
            else:
                artifact = self._certificates.obtain(decision)
                step("certificates.obtain", "success", decision.strategy.value)

            inbounds = self._build_inbounds(protocols, credentials, artifact, allocations, domain)
            ipv6 = inputs.ipv6 if inputs.ipv6 is not None else self._ipv6_probe()
            document = self._assembler.assemble(inbounds, ipv6=ipv6)
            step("config.assemble", "success", f"{len(inbounds)} inbound(s)")

            info = _client_info(domain, credentials, allocations, artifact, decision)
            if dry_run:
                return InstallResult(
                    state=state,
                    decision=decision,
                    protocols=protocols,
                    allocations=allocations,
                    document=document,
                    client_info=info,
                    artifact=artifact,
                    dry_run=True,
                    warnings=tuple(warnings),
                )

            config_changed = write_config(
                document, self._config.singbox_config, self._singbox.check_config
            )
            step("config.write", "success" if config_changed else "skipped", None)
            info_changed = write_client_info(self._config.client_info_file, info)
            step("client_info.write", "success" if info_changed else "skipped", None)

            started = False
            if start:
                started = self._start_service(config_changed or info_changed, prior)
                step("service.start", "success" if started else "skipped", None)

            self._registry.record_deployment(
                {
                    "state": state.value,
                    "domain": domain,
                    "strategy": decision.strategy.value,
                    "protocols": [p.value for p in protocols],
                    "ports": {a.protocol.value: a.port for a in allocations},
                    "certificate": artifact.to_dict() if artifact else None,
                    "engine_version": str(engine) if engine else None,
                    "last_failure": None,
                }
            )
        except PipelineError as exc:
            self._registry.record_failure(
                InstallState.FAILED.value, f"{state.value} run failed: {exc}"
            )
            step("install", "error", type(exc).__name__)
            raise

        return InstallResult(
            state=state,
            decision=decision,
            protocols=protocols,
            allocations=allocations,
            document=document,
            client_info=info,
            artifact=artifact,
            config_changed=config_changed,
            client_info_changed=info_changed,
            service_started=started,
            warnings=tuple(warnings),
        )

    def uninstall(self, *, dry_run: bool = False) -> list[str]:
        """Stop services and remove managed files; Caddy's data directory is kept."""
        unit = self._config.singbox.service
        targets = [
            self._config.singbox_config,
            self._config.client_info_file,
            self._config.cert_dir,
            self._systemd.unit_path(unit),
        ]
        if dry_run:
            return [str(path) for path in targets if path.exists()]

        removed: list[str] = []
        if self._systemd.unit_path(unit).exists():
            self._systemd.stop(unit)
            self._systemd.disable(unit)
            self._systemd.remove(unit)
            removed.append(str(self._systemd.unit_path(unit)))
        removed.extend(self._caddy.remove())
        for path in targets[:3]:
            if path.is_dir():
                shutil.rmtree(path)
                removed.append(str(path))
            elif path.exists():
                path.unlink()
                removed.append(str(path))
        self._registry.clear_deployment()
        return removed

    # ------------------------------------------------------------------
    def _check_engine_version(self) -> tuple[Version | None, list[str]]:
        check = self._singbox.check_version(
            self._config.singbox.min_version, self._config.singbox.recommended_version
        )
        if not check.supported:
            installed = check.installed or "unknown"
            raise SingBoxError(
                f"sing-box {installed} is older than the minimum supported {check.minimum}."
            )
        if check.outdated:
            return check.installed, [
                f"sing-box {check.installed} works; {check.recommended} is recommended."
            ]
        return check.installed, []

    def _credentials(
        self,
        inputs: InstallInputs,
        prior: PriorDeployment,
        protocols: tuple[Protocol, ...],
    ) -> CredentialSet:
        previous = prior.client_info
        private_key, public_key = inputs.private_key, inputs.public_key
        if private_key is None and public_key is None and previous and prior.private_key:
            private_key, public_key = prior.private_key, previous.public_key
        short_id = inputs.short_id
        if short_id is None and previous is not None:
            short_id = previous.short_id
        return self._materials.generate(
            uuid_value=inputs.uuid or (previous.uuid if previous else None),
            private_key=private_key,
            public_key=public_key,
            short_id=short_id,
            sni=inputs.sni or (previous.sni if previous else None),
            hysteria2_password=inputs.hysteria2_password
            or (previous.hy2_pass if previous else None),
            with_hysteria2=Protocol.HYSTERIA2 in protocols,
        )

    def _allocate_ports(
        self,
        inputs: InstallInputs,
        prior: PriorDeployment,
        protocols: tuple[Protocol, ...],
    ) -> tuple[PortAllocation, ...]:
        allocations: list[PortAllocation] = []
        for protocol in protocols:
            allocation = self._ports.allocate(
                protocol,
                inputs.requested_port(protocol),
                reserved={a.port for a in allocations},
                previous=prior.port(protocol),
            )
            allocations.append(allocation)
        return tuple(allocations)

    def _guard_caddy_ports(
        self,
        decision: StrategyDecision,
        allocations: tuple[PortAllocation, ...],
    ) -> None:
        if not decision.strategy.issues_certificates:
            return
        caddy_ports = {
            self._caddy.http_port: "caddy.http_port",
            self._caddy.https_port: "caddy.https_port",
            self._caddy.fallback_port: "caddy.fallback_port",
        }
        for allocation in allocations:
            name = caddy_ports.get(allocation.port)
            if name is not None:
                raise ValidationError(
                    name,
                    f"port {allocation.port} is also used by the "
                    f"{allocation.protocol.value} inbound",
                )

    def _build_inbounds(
        self,
        protocols: tuple[Protocol, ...],
        credentials: CredentialSet,
        artifact: CertificateArtifact | None,
        allocations: tuple[PortAllocation, ...],
        domain: str,
    ) -> list[InboundDescriptor]:
        ports = {allocation.protocol: allocation.port for allocation in allocations}
        inbounds: list[InboundDescriptor] = []
        for protocol in protocols:
            if protocol is Protocol.REALITY:
                inbounds.append(build_reality_inbound(credentials, ports[protocol]))
            elif protocol is Protocol.WS_TLS:
                inbounds.append(
                    build_ws_tls_inbound(credentials, artifact, ports[protocol], domain=domain)
                )
            else:
                inbounds.append(build_hysteria2_inbound(credentials, artifact, ports[protocol]))
        return inbounds

    def _start_service(self, changed: bool, prior: PriorDeployment) -> bool:
        unit = self._config.singbox.service
        try:
            unit_changed = self._systemd.render_unit(
                unit,
                SINGBOX_UNIT_TEMPLATE,
                {
                    "singbox_bin": str(self._singbox.bin),
                    "config_path": str(self._config.singbox_config),
                },
            )
            if not (changed or unit_changed or not prior.service_active):
                return False
            self._systemd.enable(unit)
            self._systemd.restart(unit)
        except SystemdError as exc:
            raise SingBoxError(f"Unable to start {unit}: {exc}") from exc
        return True


def _describe_ports(allocations: tuple[PortAllocation, ...]) -> str:
    return ",".join(f"{a.protocol.value}={a.port}" for a in allocations)


def _client_info(
    domain: str,
    credentials: CredentialSet,
    allocations: tuple[PortAllocation, ...],
    artifact: CertificateArtifact | None,
    decision: StrategyDecision,
) -> ClientInfo:
    ports = {allocation.protocol: allocation.port for allocation in allocations}
    return ClientInfo(
        domain=domain,
        uuid=credentials.uuid,
        public_key=credentials.reality.public_key,
        short_id=credentials.short_id,
        sni=credentials.sni,
        reality_port=ports.get(Protocol.REALITY),
        ws_port=ports.get(Protocol.WS_TLS),
        hy2_port=ports.get(Protocol.HYSTERIA2),
        hy2_pass=credentials.hysteria2_password if Protocol.HYSTERIA2 in ports else None,
        cert_fullchain=str(artifact.fullchain) if artifact else None,
        cert_key=str(artifact.key) if artifact else None,
        cert_mode=decision.strategy.value,
    )


__all__ = [
    "InstallOrchestrator",
    "InstallResult",
    "InstallState",
    "PriorDeployment",
    "read_prior_deployment",
]
