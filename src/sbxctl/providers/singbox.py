"""Thin wrapper around the ``sing-box`` binary.

Only three engine features are used: minting Reality keypairs, checking a
configuration file and reporting the version. Installing or upgrading the
binary itself is outside sbxctl's scope.
"""
from __future__ import annotations

import re
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path

from packaging.version import InvalidVersion, Version

from ..errors import ExitCode, PipelineError, SchemaCheckFailure
from ..materials import RealityKeypair

_VERSION_PATTERN = re.compile(r"version\s+v?(\d+\.\d+\.\d+\S*)", re.IGNORECASE)


class SingBoxError(PipelineError):
    """Raised when the sing-box binary is missing or misbehaves."""

    exit_code = ExitCode.ENVIRONMENT


@dataclass(frozen=True)
class VersionCheck:
    """Result of comparing the installed engine with the version policy."""

    installed: Version | None
    minimum: Version
    recommended: Version

    @property
    def supported(self) -> bool:
        """Return True when the installed engine meets the minimum."""
        return self.installed is not None and self.installed >= self.minimum

    @property
    def outdated(self) -> bool:
        """Return True when the engine works but is below the recommendation."""
        return self.supported and self.installed is not None and self.installed < self.recommended

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "installed": str(self.installed) if self.installed else None,
            "minimum": str(self.minimum),
            "recommended": str(self.recommended),
            "supported": self.supported,
            "outdated": self.outdated,
        }


@dataclass(slots=True)
class SingBoxProvider:
    """Invoke the sing-box binary."""

    bin: Path = Path("/usr/local/bin/sing-box")

    def generate_reality_keypair(self) -> RealityKeypair:
        """Run ``sing-box generate reality-keypair`` and parse its output."""
        result = self._run(["generate", "reality-keypair"], error_prefix="keypair generation")
        private_key = public_key = None
        for line in result.stdout.splitlines():
            label, _, value = line.partition(":")
            normalized = label.strip().lower().replace(" ", "")
            if normalized == "privatekey":
                private_key = value.strip()
            elif normalized == "publickey":
                public_key = value.strip()
        if not private_key or not public_key:
            raise SingBoxError(
                f"Unexpected output from {self.bin} generate reality-keypair: "
                f"{result.stdout.strip() or 'no output'}"
            )
        return RealityKeypair(private_key=private_key, public_key=public_key)

    def check_config(self, path: Path) -> None:
        """Run ``sing-box check -c PATH``; raise with the engine diagnostic on rejection."""
        try:
            result = subprocess.run(  # noqa: S603
                [str(self.bin), "check", "-c", str(path)],
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SingBoxError(f"sing-box binary not found at {self.bin}") from exc
        if result.returncode != 0:
            diagnostic = (result.stderr or "").strip() or (result.stdout or "").strip()
            raise SchemaCheckFailure(diagnostic or f"exit status {result.returncode}")

    def version(self) -> Version | None:
        """Return the installed engine version, or None when unparseable."""
        result = self._run(["version"], error_prefix="version query")
        match = _VERSION_PATTERN.search(result.stdout)
        if match is None:
            return None
        try:
            return Version(match.group(1))
        except InvalidVersion:
            return None

    def check_version(self, minimum: str, recommended: str) -> VersionCheck:
        """Compare the installed version against *minimum* and *recommended*."""
        return VersionCheck(
            installed=self.version(),
            minimum=Version(minimum),
            recommended=Version(recommended),
        )

    # ------------------------------------------------------------------
    def _run(self, args: Sequence[str], *, error_prefix: str) -> subprocess.CompletedProcess[str]:
        command = [str(self.bin), *args]
        try:
            result = subprocess.run(  # noqa: S603
                command,
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as exc:
            raise SingBoxError(f"sing-box binary not found at {self.bin}") from exc
        if result.returncode != 0:
            message = (result.stderr or result.stdout or "no output").strip()
            raise SingBoxError(
                f"sing-box {error_prefix} failed (exit {result.returncode}): {message}"
            )
        return result


__all__ = ["SingBoxError", "SingBoxProvider", "VersionCheck"]
