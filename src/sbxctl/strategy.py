"""Certificate strategy resolution.

The strategy is decided exactly once per run by :func:`resolve_strategy` and
the resulting :class:`StrategyDecision` is threaded through the pipeline.
Precedence:

1. Certificate files supplied -> ``PRE_SUPPLIED_FILES`` (files must validate).
2. Explicit ``CERT_MODE`` -> honoured (DNS additionally needs an API token).
3. A domain without Reality-only mode, where the protocol selection includes a
   TLS-bearing protocol -> ``HTTP_CHALLENGE`` (automatic).
4. Anything else -> ``NONE``.

Resolution is deterministic and has no side effects beyond reading the
supplied certificate files.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from .errors import StrategyConflict, ValidationError
from .inputs import InstallInputs
from .validation import require_valid, validate_cert_files


class CertificateStrategy(Enum):
    """How TLS material for WS-TLS and Hysteria2 is obtained."""

    PRE_SUPPLIED_FILES = "pre_supplied_files"
    HTTP_CHALLENGE = "http_challenge"
    DNS_CHALLENGE = "dns_challenge"
    NONE = "none"

    @property
    def issues_certificates(self) -> bool:
        """Return True when the Caddy companion must obtain a certificate."""
        return self in {CertificateStrategy.HTTP_CHALLENGE, CertificateStrategy.DNS_CHALLENGE}

    @property
    def challenge(self) -> str | None:
        """Return the ACME challenge name used in the Caddyfile."""
        if self is CertificateStrategy.HTTP_CHALLENGE:
            return "http"
        if self is CertificateStrategy.DNS_CHALLENGE:
            return "dns"
        return None


CERT_MODE_ALIASES: dict[str, CertificateStrategy] = {
    "http": CertificateStrategy.HTTP_CHALLENGE,
    "caddy": CertificateStrategy.HTTP_CHALLENGE,
    "le_http": CertificateStrategy.HTTP_CHALLENGE,
    "dns": CertificateStrategy.DNS_CHALLENGE,
    "cf_dns": CertificateStrategy.DNS_CHALLENGE,
}


@dataclass(frozen=True)
class StrategyDecision:
    """The single certificate strategy chosen for a run."""

    strategy: CertificateStrategy
    domain: str | None = None
    fullchain: Path | None = None
    key: Path | None = None
    api_token: str | None = field(default=None, repr=False)
    automatic: bool = False
    notes: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a log-safe representation (the API token is never included)."""
        return {
            "strategy": self.strategy.value,
            "domain": self.domain,
            "fullchain": str(self.fullchain) if self.fullchain else None,
            "key": str(self.key) if self.key else None,
            "api_token_present": bool(self.api_token),
            "automatic": self.automatic,
            "notes": list(self.notes),
        }


def resolve_strategy(inputs: InstallInputs) -> StrategyDecision:
    """Return the certificate strategy implied by *inputs*."""
    has_chain = inputs.cert_fullchain is not None
    has_key = inputs.cert_key is not None
    if has_chain != has_key:
        raise StrategyConflict(
            ("CERT_FULLCHAIN", "CERT_KEY"),
            "certificate and key must be supplied together",
        )
    if inputs.cert_fullchain is not None and inputs.cert_key is not None:
        require_valid(validate_cert_files(inputs.cert_fullchain, inputs.cert_key), "cert_files")
        notes: tuple[str, ...] = ()
        if inputs.cert_mode:
            notes = (f"CERT_MODE={inputs.cert_mode} ignored: certificate files take precedence.",)
        return StrategyDecision(
            strategy=CertificateStrategy.PRE_SUPPLIED_FILES,
            domain=inputs.domain,
            fullchain=inputs.cert_fullchain,
            key=inputs.cert_key,
            notes=notes,
        )

    if inputs.cert_mode:
        strategy = CERT_MODE_ALIASES.get(inputs.cert_mode)
        if strategy is None:
            allowed = ", ".join(sorted(CERT_MODE_ALIASES))
            raise ValidationError(
                "cert_mode", f"unsupported mode {inputs.cert_mode!r} ({allowed})"
            )
        if inputs.domain is None or inputs.domain_is_ip:
            raise StrategyConflict(
                ("CERT_MODE", "DOMAIN"),
                "ACME issuance needs a DNS domain name, not an IP address",
            )
        if strategy is CertificateStrategy.DNS_CHALLENGE and not inputs.api_token:
            raise StrategyConflict(
                ("CERT_MODE", "CF_API_TOKEN"),
                "DNS-01 issuance requires a Cloudflare API token",
            )
        return StrategyDecision(
            strategy=strategy,
            domain=inputs.domain,
            api_token=inputs.api_token if strategy is CertificateStrategy.DNS_CHALLENGE else None,
        )

    wants_tls = inputs.protocols is None or any(p.requires_tls for p in inputs.protocols)
    if (
        inputs.domain is not None
        and not inputs.domain_is_ip
        and not inputs.reality_only
        and wants_tls
    ):
        return StrategyDecision(
            strategy=CertificateStrategy.HTTP_CHALLENGE,
            domain=inputs.domain,
            automatic=True,
            notes=(
                "No CERT_MODE given; using HTTP-01 issuance via Caddy. "
                "Set REALITY_ONLY=1 to skip certificates.",
            ),
        )

    return StrategyDecision(strategy=CertificateStrategy.NONE, domain=inputs.domain)


__all__ = [
    "CERT_MODE_ALIASES",
    "CertificateStrategy",
    "StrategyDecision",
    "resolve_strategy",
]
