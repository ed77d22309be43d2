"""Pure validators for deployment inputs and generated materials.

Every check takes a single candidate value and returns a
:class:`ValidationResult`; none of them mutate state. :func:`require_valid`
turns a failed result into a :class:`~sbxctl.errors.ValidationError` naming the
field.
"""
from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol, cast

from cryptography import x509
from cryptography.hazmat.primitives import serialization

from .errors import ValidationError

SHORT_ID_PATTERN = re.compile(r"^[0-9a-fA-F]{0,8}$")
REALITY_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
UUID_PATTERN = re.compile(
    r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$"
)
LABEL_PATTERN = re.compile(r"^[A-Za-z0-9]([A-Za-z0-9-]{0,61}[A-Za-z0-9])?$")
MAX_DOMAIN_LENGTH = 253


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a single validation check."""

    ok: bool
    reason: str = ""

    def __bool__(self) -> bool:
        """Allow ``if validate_x(...):`` checks."""
        return self.ok


VALID = ValidationResult(True)


def _invalid(reason: str) -> ValidationResult:
    return ValidationResult(False, reason)


def require_valid(result: ValidationResult, field: str) -> None:
    """Raise :class:`ValidationError` for *field* when *result* failed."""
    if not result.ok:
        raise ValidationError(field, result.reason)


# Reality materials ------------------------------------------------------
def validate_short_id(value: str) -> ValidationResult:
    """Accept 0-8 hexadecimal characters.

    The empty string is accepted; sing-box treats it as "no short ID".
    """
    if SHORT_ID_PATTERN.fullmatch(value):
        return VALID
    if len(value) > 8:
        return _invalid(f"short ID must be at most 8 hex characters (got {len(value)})")
    return _invalid("short ID must contain only hexadecimal characters [0-9a-fA-F]")


def validate_reality_keypair(private_key: str, public_key: str) -> ValidationResult:
    """Both halves must be non-empty base64url strings without padding."""
    for label, value in (("private key", private_key), ("public key", public_key)):
        if not value:
            return _invalid(f"Reality {label} must not be empty")
        if not REALITY_KEY_PATTERN.fullmatch(value):
            return _invalid(f"Reality {label} must be base64url without padding")
    if private_key == public_key:
        return _invalid("Reality private and public keys must differ")
    return VALID


def validate_reality_sni(name: str) -> ValidationResult:
    """Accept a syntactically valid DNS name for the Reality camouflage target."""
    if not name:
        return _invalid("SNI must not be empty")
    if "://" in name or any(char.isspace() for char in name):
        return _invalid("SNI must be a bare host name without scheme or whitespace")
    return _check_hostname(name, label="SNI")


def validate_uuid(value: str) -> ValidationResult:
    """Accept the canonical 8-4-4-4-12 hexadecimal UUID form."""
    if UUID_PATTERN.fullmatch(value):
        return VALID
    return _invalid("UUID must use the 8-4-4-4-12 hexadecimal format")


def validate_hysteria2_password(value: str) -> ValidationResult:
    """Passwords end up in URIs; reject empty values and whitespace."""
    if not value:
        return _invalid("Hysteria2 password must not be empty")
    if any(char.isspace() for char in value) or any(char in value for char in "@#/?"):
        return _invalid("Hysteria2 password must not contain whitespace or URI delimiters")
    return VALID


# Network inputs ---------------------------------------------------------
def validate_port(value: object) -> ValidationResult:
    """Accept integers (or digit strings) in 1-65535."""
    if isinstance(value, bool):
        return _invalid("port must be an integer")
    if isinstance(value, str):
        if not value.strip().isdigit():
            return _invalid(f"port must be numeric (got {value!r})")
        value = int(value.strip())
    if not isinstance(value, int):
        return _invalid("port must be an integer")
    if not 1 <= value <= 65535:
        return _invalid(f"port must be between 1 and 65535 (got {value})")
    return VALID


def validate_domain(value: str) -> ValidationResult:
    """Accept a public DNS name; reject IP literals and localhost."""
    if not value:
        return _invalid("domain must not be empty")
    if is_ip_address(value):
        return _invalid("domain must be a DNS name, not an IP address")
    if value.lower().rstrip(".") in {"localhost", "localhost.localdomain"}:
        return _invalid("localhost cannot receive public certificates")
    return _check_hostname(value, label="domain")


def validate_ip_address(value: str, *, allow_private: bool = False) -> ValidationResult:
    """Accept a public IPv4 address (private ranges only when allowed)."""
    try:
        address = ipaddress.ip_address(value)
    except ValueError:
        return _invalid(f"{value!r} is not an IP address")
    if address.version != 4:
        return _invalid("only IPv4 addresses are supported as server address")
    if address.is_unspecified or address.is_loopback or address.is_multicast:
        return _invalid(f"{value} is not a routable address")
    if address.is_private and not allow_private:
        return _invalid(f"{value} is a private address")
    return VALID


def is_ip_address(value: str) -> bool:
    """Return True when *value* parses as an IPv4 or IPv6 literal."""
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return False
    return True


def _check_hostname(value: str, *, label: str) -> ValidationResult:
    name = value.rstrip(".")
    if len(name) > MAX_DOMAIN_LENGTH:
        return _invalid(f"{label} exceeds {MAX_DOMAIN_LENGTH} characters")
    if "." not in name:
        return _invalid(f"{label} must contain at least one dot")
    for part in name.split("."):
        if not LABEL_PATTERN.fullmatch(part):
            return _invalid(
                f"{label} label {part!r} must be 1-63 alphanumeric or hyphen characters "
                "without leading or trailing hyphen"
            )
    return VALID


# Certificate material ---------------------------------------------------
class PublicKeyProtocol(Protocol):
    """Public keys exposing ``public_bytes``."""

    def public_bytes(
        self,
        *,
        encoding: serialization.Encoding,
        format: serialization.PublicFormat,
    ) -> bytes:
        """Return the public key bytes in the requested encoding/format."""


class PrivateKeyProtocol(Protocol):
    """Private keys that can provide a matching public key."""

    def public_key(self) -> PublicKeyProtocol:
        """Return the associated public key object."""


def load_certificate(path: Path) -> x509.Certificate:
    """Load the first certificate of a PEM (or DER) file."""
    data = path.read_bytes()
    try:
        return x509.load_pem_x509_certificate(data)
    except ValueError:
        return x509.load_der_x509_certificate(data)


def load_private_key(path: Path) -> PrivateKeyProtocol:
    """Load an unencrypted PEM private key."""
    private_key = serialization.load_pem_private_key(path.read_bytes(), password=None)
    return cast(PrivateKeyProtocol, private_key)


def public_keys_match(cert: x509.Certificate, private_key: PrivateKeyProtocol) -> bool:
    """Compare the certificate key and the private key's public half."""
    spki = serialization.PublicFormat.SubjectPublicKeyInfo
    cert_bytes = cert.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=spki,
    )
    key_bytes = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=spki,
    )
    return cert_bytes == key_bytes


def certificate_not_after(cert: x509.Certificate) -> datetime:
    """Return the certificate expiry as an aware UTC datetime."""
    moment = getattr(cert, "not_valid_after_utc", None)
    if isinstance(moment, datetime):
        return moment
    legacy = cert.not_valid_after  # pragma: no cover - cryptography < 42
    return legacy.replace(tzinfo=UTC) if legacy.tzinfo is None else legacy.astimezone(UTC)


def validate_cert_files(fullchain: Path, key: Path) -> ValidationResult:
    """Both files must exist, be non-empty, parse and belong together."""
    for label, path in (("certificate", fullchain), ("private key", key)):
        if not path.exists():
            return _invalid(f"{label} file {path} does not exist")
        if not path.is_file():
            return _invalid(f"{label} path {path} is not a regular file")
        try:
            size = path.stat().st_size
        except OSError as exc:
            return _invalid(f"{label} file {path} is not readable: {exc}")
        if size == 0:
            return _invalid(f"{label} file {path} is empty")

    try:
        cert = load_certificate(fullchain)
    except (OSError, ValueError) as exc:
        return _invalid(f"failed to parse certificate {fullchain}: {exc}")
    try:
        private_key = load_private_key(key)
    except (OSError, ValueError, TypeError) as exc:
        return _invalid(f"failed to parse private key {key}: {exc}")
    if not public_keys_match(cert, private_key):
        return _invalid("certificate does not match the private key")
    return VALID


__all__ = [
    "ValidationResult",
    "certificate_not_after",
    "is_ip_address",
    "load_certificate",
    "load_private_key",
    "public_keys_match",
    "require_valid",
    "validate_cert_files",
    "validate_domain",
    "validate_hysteria2_password",
    "validate_ip_address",
    "validate_port",
    "validate_reality_keypair",
    "validate_reality_sni",
    "validate_short_id",
    "validate_uuid",
]
