"""YAML registry recording the provisioned deployment.

The registry directory (``/var/lib/sbxctl`` by default) holds
``deployment.yml``. It tracks the resolved certificate strategy, the enabled
protocols and ports, the engine version and the outcome of the last run. The
registry never stores secrets; those live in the sing-box configuration and
the Client-Info Record.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Mapping
from copy import deepcopy
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import yaml

DEPLOYMENT_FILE = "deployment.yml"


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        path = self.path_for(name)
        if not path.exists():
            return deepcopy(default)
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as exc:
            raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
        return data if data is not None else deepcopy(default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        self.ensure_root()
        path = self.path_for(name)

        tmp_fd, tmp_name = tempfile.mkstemp(dir=str(self.root), prefix=f".{path.name}.")
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                yaml.safe_dump(dict(payload), handle, sort_keys=False)
            os.replace(tmp_path, path)
            os.chmod(path, 0o640)
        finally:
            tmp_path.unlink(missing_ok=True)

    # Deployment helpers -----------------------------------------------
    def read_deployment(self) -> dict[str, Any]:
        """Return the contents of ``deployment.yml`` (empty mapping if missing)."""
        value = self.read(DEPLOYMENT_FILE, default={})
        if not isinstance(value, Mapping):
            raise StateRegistryError(f"{self.path_for(DEPLOYMENT_FILE)} must contain a mapping.")
        return dict(value)

    def record_deployment(self, updates: Mapping[str, object]) -> dict[str, Any]:
        """Merge *updates* into the deployment entry and persist it.

        Port and domain changes are appended to ``port_history`` and
        ``domain_history`` so operators can trace why client links changed.
        """
        now = _now_iso()
        current = self.read_deployment()
        merged: dict[str, Any] = dict(current)

        previous_ports = current.get("ports")
        new_ports = updates.get("ports")
        if isinstance(previous_ports, Mapping) and isinstance(new_ports, Mapping):
            if dict(previous_ports) != dict(new_ports):
                history = list(current.get("port_history") or [])
                history.append({"ports": dict(previous_ports), "changed_at": now})
                merged["port_history"] = history

        previous_domain = current.get("domain")
        new_domain = updates.get("domain")
        if previous_domain and new_domain and previous_domain != new_domain:
            domain_history = list(current.get("domain_history") or [])
            domain_history.append({"domain": previous_domain, "changed_at": now})
            merged["domain_history"] = domain_history

        merged.update(dict(updates))
        merged.setdefault("created_at", now)
        merged["updated_at"] = now
        self.write(DEPLOYMENT_FILE, merged)
        return merged

    def record_failure(self, state: str, message: str) -> None:
        """Record a failed run without touching the last good deployment data."""
        current = self.read_deployment()
        current["last_failure"] = {"state": state, "message": message, "at": _now_iso()}
        self.write(DEPLOYMENT_FILE, current)

    def clear_deployment(self) -> None:
        """Remove ``deployment.yml``."""
        self.path_for(DEPLOYMENT_FILE).unlink(missing_ok=True)


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds")


__all__ = ["DEPLOYMENT_FILE", "StateRegistry", "StateRegistryError"]
