"""Provider interfaces for sbxctl."""
from __future__ import annotations

from .caddy import CaddyCertificate, CaddyError, CaddyProvider, CaddyRenderResult
from .singbox import SingBoxError, SingBoxProvider, VersionCheck
from .systemd import SystemdError, SystemdProvider

__all__ = [
    "CaddyCertificate",
    "CaddyError",
    "CaddyProvider",
    "CaddyRenderResult",
    "SingBoxError",
    "SingBoxProvider",
    "SystemdError",
    "SystemdProvider",
    "VersionCheck",
]
