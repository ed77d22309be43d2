"""Tar archive and checksum helpers for backups."""
from __future__ import annotations

import hashlib
import os
import shutil
import subprocess
from pathlib import Path

from .backups import BackupError


def compression_extension(algorithm: str) -> str:
    """Return the archive file extension for *algorithm*."""
    if algorithm == "gzip":
        return "tar.gz"
    if algorithm == "zstd":
        return "tar.zst"
    return "tar"


def infer_algorithm(archive_path: Path, recorded: object = None) -> str:
    """Return the compression used for *archive_path*."""
    value = str(recorded or "").strip().lower()
    if value in {"gzip", "zstd", "none"}:
        return value
    name = archive_path.name.lower()
    if name.endswith(".tar.zst"):
        return "zstd"
    if name.endswith(".tar.gz"):
        return "gzip"
    return "none"


def _tar_bin() -> str:
    tar_bin = shutil.which("tar")
    if tar_bin is None:
        raise BackupError("The 'tar' command is required for backups.")
    return tar_bin


def create_archive(
    source_dir: Path,
    archive_path: Path,
    algorithm: str,
    compression_level: int | None,
) -> None:
    """Create an archive from *source_dir* at *archive_path*."""
    env = os.environ.copy()
    cmd: list[str] = [_tar_bin()]
    if algorithm == "gzip":
        cmd.extend(["-czf", str(archive_path)])
        if compression_level is not None:
            env["GZIP"] = f"-{compression_level}"
    elif algorithm == "zstd":
        cmd.extend(["--zstd", "-cf", str(archive_path)])
        if compression_level is not None:
            env["ZSTD_CLEVEL"] = str(compression_level)
    else:
        cmd.extend(["-cf", str(archive_path)])
    cmd.extend(["-C", str(source_dir.parent), source_dir.name])

    result = subprocess.run(  # noqa: S603 - controlled command execution
        cmd,
        capture_output=True,
        text=True,
        env=env,
        check=False,
    )
    if result.returncode != 0:
        message = result.stderr or result.stdout or "tar command failed"
        raise BackupError(message.strip())
    os.chmod(archive_path, 0o600)


def extract_archive(archive_path: Path, algorithm: str, destination: Path) -> None:
    """Extract *archive_path* below *destination*."""
    destination.mkdir(parents=True, exist_ok=True)
    cmd: list[str] = [_tar_bin()]
    if algorithm == "zstd":
        cmd.extend(["--zstd", "-xf", str(archive_path)])
    elif algorithm == "gzip":
        cmd.extend(["-xzf", str(archive_path)])
    else:
        cmd.extend(["-xf", str(archive_path)])
    cmd.extend(["--no-same-owner", "-C", str(destination)])

    result = subprocess.run(  # noqa: S603 - controlled command
        cmd,
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0:
        message = (result.stderr or result.stdout or "tar extraction failed").strip()
        raise BackupError(f"Failed to extract backup archive: {message}")


def compute_checksum(path: Path) -> str:
    """Return the SHA-256 checksum for *path*."""
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    return digest.hexdigest()


def write_checksum_file(archive_path: Path, checksum: str) -> Path:
    """Write ``<archive>.sha256`` and return the checksum path."""
    checksum_path = archive_path.with_name(f"{archive_path.name}.sha256")
    checksum_path.write_text(f"{checksum}  {archive_path.name}\n", encoding="utf-8")
    os.chmod(checksum_path, 0o600)
    return checksum_path


__all__ = [
    "compression_extension",
    "compute_checksum",
    "create_archive",
    "extract_archive",
    "infer_algorithm",
    "write_checksum_file",
]
