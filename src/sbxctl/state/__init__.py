"""Persistent state helpers."""
from __future__ import annotations

from .registry import DEPLOYMENT_FILE, StateRegistry, StateRegistryError

__all__ = ["DEPLOYMENT_FILE", "StateRegistry", "StateRegistryError"]
