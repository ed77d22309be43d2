"""Backup index and entry helpers."""
from __future__ import annotations

import json
import os
import secrets
import shutil
import tempfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path


class BackupError(RuntimeError):
    """Raised when backup operations fail."""


class BackupRegistryError(BackupError):
    """Raised when backup index interactions fail."""


def now_iso() -> str:
    """Return the current UTC time in the index timestamp format."""
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


def _normalise_identifier(value: str) -> str:
    normalised = value.strip()
    if not normalised:
        raise BackupRegistryError("Backup identifier must be a non-empty string.")
    return normalised


@dataclass(slots=True)
class BackupsRegistry:
    """Manage the JSON backup index under the backups directory."""

    root: Path
    index: Path

    def __post_init__(self) -> None:
        """Normalise root/index paths after initialisation."""
        self.root = self.root.expanduser()
        self.index = self.index.expanduser()

    def ensure_root(self) -> None:
        """Ensure the backup root exists and is private to root."""
        try:
            self.root.mkdir(parents=True, exist_ok=True)
            os.chmod(self.root, 0o700)
        except OSError as exc:  # pragma: no cover - permissions env-specific
            raise BackupRegistryError(f"Failed to prepare backup root {self.root}: {exc}") from exc

    def read(self) -> dict[str, object]:
        """Return the parsed backups index (empty structure when missing)."""
        if not self.index.exists():
            return {"backups": []}
        try:
            data = json.loads(self.index.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise BackupRegistryError(f"Backup index corrupted ({self.index}): {exc}") from exc
        if not isinstance(data, Mapping):
            raise BackupRegistryError(f"Backup index must be a JSON object ({self.index}).")
        return dict(data)

    def write(self, payload: Mapping[str, object]) -> None:
        """Atomically persist *payload* to the backups index."""
        self.ensure_root()
        tmp_fd, tmp_name = tempfile.mkstemp(
            dir=str(self.index.parent),
            prefix=f".{self.index.name}.",
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=False)
                handle.write("\n")
            os.replace(tmp_path, self.index)
            os.chmod(self.index, 0o600)
        except OSError as exc:
            raise BackupRegistryError(f"Failed to write backup index: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def append(self, entry: Mapping[str, object]) -> None:
        """Append *entry* to the backups index."""
        entries = self.list_entries()
        entries.append(dict(entry))
        self.write({"backups": entries})

    def list_entries(self) -> list[dict[str, object]]:
        """Return the backup entries, oldest first."""
        backups = self.read().get("backups", [])
        if not isinstance(backups, list):
            return []
        return [dict(item) for item in backups if isinstance(item, Mapping)]

    def find_by_id(self, backup_id: str) -> dict[str, object] | None:
        """Return the entry for *backup_id* if present."""
        normalized = _normalise_identifier(backup_id)
        for entry in self.list_entries():
            if str(entry.get("id", "")).strip() == normalized:
                return entry
        return None

    def update_entry(
        self,
        backup_id: str,
        mutator: Callable[[dict[str, object]], None],
    ) -> dict[str, object]:
        """Apply *mutator* to the entry for *backup_id* and persist changes."""
        normalized = _normalise_identifier(backup_id)
        entries = self.list_entries()
        for position, entry in enumerate(entries):
            if str(entry.get("id", "")).strip() == normalized:
                mutator(entry)
                entries[position] = entry
                self.write({"backups": entries})
                return entry
        raise BackupRegistryError(f"Backup '{normalized}' not found in index.")

    def generate_identifier(self) -> str:
        """Return a unique backup identifier."""
        timestamp = datetime.now(tz=UTC).strftime("%Y%m%d-%H%M%S")
        return f"sbx-backup-{timestamp}-{secrets.token_hex(3)}"


@dataclass(slots=True)
class BackupEntryBuilder:
    """Helper for constructing backup index entries."""

    archive_path: Path
    algorithm: str
    checksum: str
    size_bytes: int
    contents: list[str]
    message: str | None = None
    compression_level: int | None = None

    def build(self, *, backup_id: str) -> dict[str, object]:
        """Return the JSON-serialisable entry for the backup index."""
        entry: dict[str, object] = {
            "id": backup_id,
            "created_at": now_iso(),
            "path": str(self.archive_path),
            "algorithm": self.algorithm,
            "size_bytes": self.size_bytes,
            "checksum": {"algorithm": "sha256", "value": self.checksum},
            "status": "available",
            "contents": list(self.contents),
        }
        if self.compression_level is not None:
            entry["compression_level"] = self.compression_level
        if self.message:
            entry["message"] = self.message
        return entry


def copy_into(source: Path, destination: Path) -> None:
    """Copy or mirror *source* into *destination*."""
    if source.is_dir():
        shutil.copytree(source, destination, dirs_exist_ok=True)
    else:
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(source, destination)


__all__ = [
    "BackupEntryBuilder",
    "BackupError",
    "BackupRegistryError",
    "BackupsRegistry",
    "copy_into",
    "now_iso",
]
