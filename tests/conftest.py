"""Shared fixtures for the sbxctl test suite."""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from packaging.version import Version

from sbxctl.errors import SchemaCheckFailure
from sbxctl.materials import RealityKeypair
from sbxctl.providers.singbox import VersionCheck

REALITY_PRIVATE = "aGVsbG8tcHJpdmF0ZS1rZXktZm9yLXRlc3RzLW9ubHk"
REALITY_PUBLIC = "cHVibGljLWtleS1mb3ItdGVzdHMtb25seS0xMjM0NTY"
TEST_UUID = "0b6f1c7e-4d5a-4c1e-9b0a-2f3e4d5c6b7a"

CertFactory = Callable[..., tuple[Path, Path]]


def write_certificate(
    directory: Path,
    *,
    domain: str = "proxy.example.com",
    days: int = 90,
    name: str = "fullchain",
) -> tuple[Path, Path]:
    """Write a self-signed certificate and key; return ``(fullchain, key)``."""
    directory.mkdir(parents=True, exist_ok=True)
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)])
    now = datetime.now(UTC)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=days))
        .add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
        .sign(key, hashes.SHA256())
    )
    cert_path = directory / f"{name}.pem"
    key_path = directory / f"{name}.key"
    cert_path.write_bytes(certificate.public_bytes(serialization.Encoding.PEM))
    key_path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    return cert_path, key_path


@pytest.fixture
def cert_factory(tmp_path: Path) -> CertFactory:
    """Return a helper writing self-signed certificates below ``tmp_path``."""

    def factory(**kwargs: object) -> tuple[Path, Path]:
        return write_certificate(tmp_path / "pki", **kwargs)  # type: ignore[arg-type]

    return factory


class FakeSingBox:
    """In-memory stand-in for :class:`sbxctl.providers.SingBoxProvider`."""

    def __init__(self, *, reject: str | None = None, version: str = "1.12.0") -> None:
        """*reject* makes ``check_config`` fail with that diagnostic."""
        self.bin = Path("/usr/local/bin/sing-box")
        self.reject = reject
        self.installed = version
        self.keypair_calls = 0
        self.checked: list[Path] = []

    def generate_reality_keypair(self) -> RealityKeypair:
        self.keypair_calls += 1
        return RealityKeypair(private_key=REALITY_PRIVATE, public_key=REALITY_PUBLIC)

    def check_config(self, path: Path) -> None:
        self.checked.append(path)
        if self.reject is not None:
            raise SchemaCheckFailure(self.reject)

    def version(self) -> Version:
        return Version(self.installed)

    def check_version(self, minimum: str, recommended: str) -> VersionCheck:
        return VersionCheck(
            installed=Version(self.installed),
            minimum=Version(minimum),
            recommended=Version(recommended),
        )


@pytest.fixture
def fake_singbox() -> FakeSingBox:
    """Return a sing-box double that accepts every configuration."""
    return FakeSingBox()
