"""Backup and restore of a deployment's files.

A backup captures the sing-box configuration, the Client-Info Record, the
certificate directory, the Caddyfile and the deployment registry into one
archive with a SHA-256 sidecar and an entry in ``backups.json``.
"""
from __future__ import annotations

import json
import shutil
import tempfile
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from pathlib import Path

from .archive import (
    compression_extension,
    compute_checksum,
    create_archive,
    extract_archive,
    infer_algorithm,
    write_checksum_file,
)
from .backups import BackupEntryBuilder, BackupError, BackupsRegistry, copy_into, now_iso

MANIFEST_NAME = "manifest.json"


@dataclass(frozen=True)
class BackupResult:
    """Outcome of a backup run."""

    backup_id: str
    archive: Path
    checksum: str
    checksum_file: Path | None
    size_bytes: int
    contents: tuple[str, ...]
    planned: bool = False

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "id": self.backup_id,
            "archive": str(self.archive),
            "checksum": self.checksum,
            "checksum_file": str(self.checksum_file) if self.checksum_file else None,
            "size_bytes": self.size_bytes,
            "contents": list(self.contents),
            "status": "planned" if self.planned else "created",
        }


@dataclass(frozen=True)
class RestoreResult:
    """Outcome of a restore run."""

    backup_id: str
    restored: tuple[str, ...]
    replaced: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "id": self.backup_id,
            "restored": list(self.restored),
            "replaced": list(self.replaced),
        }


class BackupService:
    """Create, verify and restore deployment backups."""

    def __init__(
        self,
        registry: BackupsRegistry,
        sources: Mapping[str, Path],
        *,
        algorithm: str = "gzip",
        compression_level: int | None = None,
    ) -> None:
        """*sources* maps archive-relative names to live filesystem paths."""
        self._registry = registry
        self._sources = dict(sources)
        self._algorithm = algorithm
        self._compression_level = compression_level

    @property
    def registry(self) -> BackupsRegistry:
        """Return the backing index."""
        return self._registry

    def create(self, *, message: str | None = None, dry_run: bool = False) -> BackupResult:
        """Archive every existing source."""
        present = {name: path for name, path in self._sources.items() if path.exists()}
        if not present:
            raise BackupError("Nothing to back up; no deployment files were found.")
        backup_id = self._registry.generate_identifier()
        archive_path = (
            self._registry.root / f"{backup_id}.{compression_extension(self._algorithm)}"
        )
        contents = tuple(sorted(present))
        if dry_run:
            return BackupResult(backup_id, archive_path, "", None, 0, contents, planned=True)

        self._registry.ensure_root()
        staging = Path(tempfile.mkdtemp(prefix=f".{backup_id}-", dir=str(self._registry.root)))
        try:
            payload = staging / backup_id
            payload.mkdir()
            for name, path in present.items():
                copy_into(path, payload / name)
            (payload / MANIFEST_NAME).write_text(
                json.dumps(
                    {"id": backup_id, "created_at": now_iso(), "contents": list(contents)},
                    indent=2,
                ),
                encoding="utf-8",
            )
            create_archive(payload, archive_path, self._algorithm, self._compression_level)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        checksum = compute_checksum(archive_path)
        checksum_path = write_checksum_file(archive_path, checksum)
        size = archive_path.stat().st_size
        entry = BackupEntryBuilder(
            archive_path=archive_path,
            algorithm=self._algorithm,
            checksum=checksum,
            size_bytes=size,
            contents=list(contents),
            message=message,
            compression_level=self._compression_level,
        ).build(backup_id=backup_id)
        self._registry.append(entry)
        return BackupResult(backup_id, archive_path, checksum, checksum_path, size, contents)

    def verify(self, backup_id: str) -> dict[str, object]:
        """Recompute the checksum of *backup_id* and record the outcome."""
        entry = self._require(backup_id)
        archive_path = Path(str(entry.get("path", "")))
        checksum_info = entry.get("checksum")
        expected = ""
        if isinstance(checksum_info, Mapping):
            expected = str(checksum_info.get("value", ""))
        if not archive_path.is_file():
            status, observed = "missing", None
        else:
            observed = compute_checksum(archive_path)
            status = "available" if not expected or observed == expected else "corrupt"

        def mutator(payload: dict[str, object]) -> None:
            payload["status"] = status
            payload["verified_at"] = now_iso()

        self._registry.update_entry(backup_id, mutator)
        return {"id": backup_id, "status": status, "expected": expected, "observed": observed}

    def restore(
        self,
        backup_id: str,
        *,
        checker: Callable[[Path], None] | None = None,
        config_name: str = "singbox/config.json",
    ) -> RestoreResult:
        """Restore *backup_id* over the live files.

        The archive checksum is verified first and *checker* runs against the
        archived configuration before anything is replaced. Live files are
        copied aside and put back if applying the backup fails.
        """
        entry = self._require(backup_id)
        verification = self.verify(backup_id)
        if verification["status"] != "available":
            raise BackupError(
                f"Backup {backup_id} is {verification['status']}; refusing to restore."
            )
        archive_path = Path(str(entry["path"]))
        algorithm = infer_algorithm(archive_path, entry.get("algorithm"))

        staging = Path(
            tempfile.mkdtemp(prefix=f".restore-{backup_id}-", dir=str(self._registry.root))
        )
        try:
            extract_archive(archive_path, algorithm, staging / "extracted")
            payload = staging / "extracted" / backup_id
            if not payload.is_dir():
                raise BackupError("Backup archive is missing its payload directory.")
            archived_config = payload / config_name
            if checker is not None and archived_config.exists():
                checker(archived_config)
            return self._apply(backup_id, payload, staging / "rollback")
        finally:
            shutil.rmtree(staging, ignore_errors=True)

    # ------------------------------------------------------------------
    def _require(self, backup_id: str) -> dict[str, object]:
        entry = self._registry.find_by_id(backup_id)
        if entry is None:
            raise BackupError(f"Backup '{backup_id}' not found in index.")
        return entry

    def _apply(self, backup_id: str, payload: Path, rollback_root: Path) -> RestoreResult:
        restored: list[str] = []
        snapshots: dict[str, Path] = {}
        created: list[Path] = []
        try:
            for name, destination in self._sources.items():
                source = payload / name
                if not source.exists():
                    continue
                if destination.exists():
                    snapshot = rollback_root / name
                    copy_into(destination, snapshot)
                    snapshots[name] = snapshot
                else:
                    created.append(destination)
                copy_into(source, destination)
                restored.append(str(destination))
        except (OSError, shutil.Error) as exc:
            for name, snapshot in snapshots.items():
                copy_into(snapshot, self._sources[name])
            for path in created:
                if path.is_dir():
                    shutil.rmtree(path, ignore_errors=True)
                else:
                    path.unlink(missing_ok=True)
            raise BackupError(
                f"Restore of {backup_id} failed and was rolled back: {exc}"
            ) from exc
        return RestoreResult(
            backup_id=backup_id,
            restored=tuple(restored),
            replaced=tuple(sorted(snapshots)),
        )


__all__ = ["BackupResult", "BackupService", "RestoreResult"]
