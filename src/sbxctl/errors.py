"""Error kinds raised by the provisioning pipeline and their exit codes."""
from __future__ import annotations

from collections.abc import Iterable
from enum import IntEnum


class ExitCode(IntEnum):
    """Well-known exit codes enforced across the CLI."""

    OK = 0
    VALIDATION = 2
    ENVIRONMENT = 3
    PROVIDER = 4


class PipelineError(RuntimeError):
    """Base class for errors that abort an install run.

    Every subclass leaves the previously written configuration untouched; the
    orchestrator only replaces files after all checks passed.
    """

    exit_code: ExitCode = ExitCode.PROVIDER


class ValidationError(PipelineError):
    """A user-supplied or generated value failed validation."""

    exit_code = ExitCode.VALIDATION

    def __init__(self, field: str, reason: str) -> None:
        """Record the offending *field* and the human readable *reason*."""
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


class StrategyConflict(PipelineError):
    """Inputs imply mutually exclusive certificate strategies."""

    exit_code = ExitCode.VALIDATION

    def __init__(self, inputs: Iterable[str], reason: str) -> None:
        """Record the conflicting input names and why they conflict."""
        self.inputs = tuple(inputs)
        self.reason = reason
        joined = ", ".join(self.inputs)
        super().__init__(f"Conflicting inputs ({joined}): {reason}")


class IssuanceFailure(PipelineError):
    """Certificate issuance did not complete (timeout or companion failure)."""

    exit_code = ExitCode.ENVIRONMENT


class MissingCertificate(PipelineError):
    """A TLS-bearing protocol was requested without a certificate artifact."""

    exit_code = ExitCode.VALIDATION

    def __init__(self, protocol: str) -> None:
        """Record which *protocol* lacked certificate material."""
        self.protocol = protocol
        super().__init__(
            f"Protocol '{protocol}' requires a TLS certificate but no certificate "
            "strategy produced one. Supply DOMAIN (and optionally CERT_MODE) or "
            "CERT_FULLCHAIN/CERT_KEY, or use Reality only."
        )


class SchemaCheckFailure(PipelineError):
    """The proxy engine rejected the assembled configuration."""

    exit_code = ExitCode.PROVIDER

    def __init__(self, diagnostic: str) -> None:
        """Keep the engine *diagnostic* verbatim for the operator."""
        self.diagnostic = diagnostic
        super().__init__(f"sing-box rejected the configuration:\n{diagnostic}")


__all__ = [
    "ExitCode",
    "IssuanceFailure",
    "MissingCertificate",
    "PipelineError",
    "SchemaCheckFailure",
    "StrategyConflict",
    "ValidationError",
]
