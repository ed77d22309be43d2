"""Tests for the backup index and backup service."""
from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from sbxctl.archive import compression_extension, infer_algorithm
from sbxctl.backup_service import BackupService
from sbxctl.backups import BackupError, BackupRegistryError, BackupsRegistry
from sbxctl.errors import SchemaCheckFailure

requires_tar = pytest.mark.skipif(shutil.which("tar") is None, reason="tar not installed")


@pytest.fixture
def live(tmp_path: Path) -> dict[str, Path]:
    """Create a small deployment tree."""
    conf = tmp_path / "etc" / "sing-box"
    conf.mkdir(parents=True)
    (conf / "config.json").write_text('{"inbounds": []}\n', encoding="utf-8")
    (conf / "client-info.txt").write_text('DOMAIN="1.2.3.4"\n', encoding="utf-8")
    certs = tmp_path / "etc" / "ssl"
    (certs / "proxy.example.com").mkdir(parents=True)
    (certs / "proxy.example.com" / "fullchain.pem").write_text("chain", encoding="utf-8")
    return {
        "singbox/config.json": conf / "config.json",
        "singbox/client-info.txt": conf / "client-info.txt",
        "certs": certs,
        "caddy/Caddyfile": tmp_path / "etc" / "caddy" / "Caddyfile",
    }


def _service(tmp_path: Path, sources: dict[str, Path], algorithm: str = "gzip") -> BackupService:
    root = tmp_path / "backups"
    return BackupService(
        BackupsRegistry(root=root, index=root / "backups.json"), sources, algorithm=algorithm
    )


def test_registry_append_and_find(tmp_path: Path) -> None:
    """Entries are appended to the JSON index and looked up by id."""
    registry = BackupsRegistry(root=tmp_path / "b", index=tmp_path / "b" / "backups.json")
    assert registry.list_entries() == []
    registry.append({"id": "sbx-backup-1", "status": "available"})
    assert registry.find_by_id(" sbx-backup-1 ") == {"id": "sbx-backup-1", "status": "available"}
    assert registry.find_by_id("other") is None
    assert registry.generate_identifier().startswith("sbx-backup-")
    assert registry.index.stat().st_mode & 0o777 == 0o600


def test_registry_rejects_corrupt_index(tmp_path: Path) -> None:
    """A broken index is an error, not an empty list."""
    index = tmp_path / "backups.json"
    index.write_text("{", encoding="utf-8")
    with pytest.raises(BackupRegistryError, match="corrupted"):
        BackupsRegistry(root=tmp_path, index=index).read()


def test_algorithm_helpers() -> None:
    """File extensions and recorded algorithms agree."""
    assert compression_extension("gzip") == "tar.gz"
    assert compression_extension("none") == "tar"
    assert infer_algorithm(Path("a.tar.zst")) == "zstd"
    assert infer_algorithm(Path("a.tar"), "gzip") == "gzip"


def test_dry_run_plans_without_writing(tmp_path: Path, live: dict[str, Path]) -> None:
    """Dry runs list the existing sources only."""
    result = _service(tmp_path, live).create(dry_run=True)
    assert result.planned
    assert result.contents == ("certs", "singbox/client-info.txt", "singbox/config.json")
    assert not (tmp_path / "backups").exists()


def test_nothing_to_back_up(tmp_path: Path) -> None:
    """A clean host has nothing to archive."""
    with pytest.raises(BackupError, match="Nothing to back up"):
        _service(tmp_path, {"singbox/config.json": tmp_path / "missing.json"}).create()


@requires_tar
def test_create_verify_and_restore(tmp_path: Path, live: dict[str, Path]) -> None:
    """A backup round trip restores modified files and detects corruption."""
    service = _service(tmp_path, live)
    result = service.create(message="before upgrade")
    assert result.archive.name.endswith(".tar.gz")
    assert result.archive.stat().st_mode & 0o777 == 0o600
    assert result.checksum_file is not None and result.checksum_file.exists()
    (entry,) = service.registry.list_entries()
    assert entry["message"] == "before upgrade"

    assert service.verify(result.backup_id)["status"] == "available"

    live["singbox/config.json"].write_text('{"changed": true}\n', encoding="utf-8")
    checked: list[Path] = []
    restored = service.restore(result.backup_id, checker=checked.append)
    assert live["singbox/config.json"].read_text(encoding="utf-8") == '{"inbounds": []}\n'
    assert checked and checked[0].name == "config.json"
    assert "singbox/config.json" in restored.replaced
    assert (live["certs"] / "proxy.example.com" / "fullchain.pem").exists()

    with result.archive.open("ab") as handle:
        handle.write(b"tampered")
    assert service.verify(result.backup_id)["status"] == "corrupt"
    with pytest.raises(BackupError, match="corrupt"):
        service.restore(result.backup_id)


@requires_tar
def test_restore_refuses_rejected_config(tmp_path: Path, live: dict[str, Path]) -> None:
    """The archived configuration is checked before any file is replaced."""
    service = _service(tmp_path, live, algorithm="none")
    result = service.create()
    live["singbox/config.json"].write_text('{"current": true}\n', encoding="utf-8")

    def reject(path: Path) -> None:
        raise SchemaCheckFailure("unknown field")

    with pytest.raises(SchemaCheckFailure):
        service.restore(result.backup_id, checker=reject)
    assert live["singbox/config.json"].read_text(encoding="utf-8") == '{"current": true}\n'


def test_restore_unknown_backup(tmp_path: Path, live: dict[str, Path]) -> None:
    """Unknown identifiers are reported."""
    with pytest.raises(BackupError, match="not found"):
        _service(tmp_path, live).restore("sbx-backup-missing")
