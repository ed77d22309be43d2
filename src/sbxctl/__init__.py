"""sbxctl package bootstrap.

Exposes the package version used by the CLI ``--version`` flag and the
deployment registry.
"""
from __future__ import annotations

__all__ = ["__version__", "get_version"]

# NOTE: keep in sync with ``pyproject.toml``.
__version__ = "0.3.0"


def get_version() -> str:
    """Return the current package version."""
    return __version__
