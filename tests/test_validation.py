"""Tests for the pure validators."""
from __future__ import annotations

from pathlib import Path

import pytest

from conftest import CertFactory
from sbxctl.errors import ValidationError
from sbxctl.validation import (
    is_ip_address,
    require_valid,
    validate_cert_files,
    validate_domain,
    validate_hysteria2_password,
    validate_ip_address,
    validate_port,
    validate_reality_keypair,
    validate_reality_sni,
    validate_short_id,
    validate_uuid,
)


@pytest.mark.parametrize("value", ["", "a", "0123abcd", "ABCDEF12", "00"])
def test_short_id_accepts_up_to_eight_hex_characters(value: str) -> None:
    """Empty and up to eight hex digits are valid short IDs."""
    assert validate_short_id(value)


@pytest.mark.parametrize("value", ["123456789", "xyz", "12 34", "0x12"])
def test_short_id_rejects_long_or_non_hex_values(value: str) -> None:
    """Nine characters or non-hex input fail with a reason."""
    result = validate_short_id(value)
    assert not result
    assert "short ID" in result.reason


def test_short_id_reason_mentions_length() -> None:
    """Overlong values explain the limit."""
    assert "at most 8" in validate_short_id("a" * 9).reason


def test_reality_keypair_requires_both_distinct_halves() -> None:
    """Empty, padded or identical keys are rejected."""
    assert validate_reality_keypair("abc_DEF-123", "xyz_UVW-789")
    assert not validate_reality_keypair("", "xyz")
    assert not validate_reality_keypair("abc=", "xyz")
    assert not validate_reality_keypair("same", "same")


def test_reality_sni_requires_a_bare_hostname() -> None:
    """Schemes, whitespace and single labels are refused."""
    assert validate_reality_sni("www.microsoft.com")
    assert not validate_reality_sni("")
    assert not validate_reality_sni("https://www.microsoft.com")
    assert not validate_reality_sni("www microsoft.com")
    assert not validate_reality_sni("localhost")


def test_uuid_format() -> None:
    """Only the canonical 8-4-4-4-12 form passes."""
    assert validate_uuid("0b6f1c7e-4d5a-4c1e-9b0a-2f3e4d5c6b7a")
    assert not validate_uuid("0b6f1c7e4d5a4c1e9b0a2f3e4d5c6b7a")
    assert not validate_uuid("not-a-uuid")


def test_hysteria2_password_rejects_uri_delimiters() -> None:
    """Passwords are embedded in URIs, so delimiters are refused."""
    assert validate_hysteria2_password("d3adbeefcafe")
    assert not validate_hysteria2_password("")
    assert not validate_hysteria2_password("pa ss")
    assert not validate_hysteria2_password("pa@ss")


@pytest.mark.parametrize(("value", "ok"), [(1, True), ("443", True), (65535, True)])
def test_port_accepts_valid_values(value: object, ok: bool) -> None:
    """Integers and digit strings within range pass."""
    assert bool(validate_port(value)) is ok


@pytest.mark.parametrize("value", [0, 65536, "abc", True, None, -1])
def test_port_rejects_invalid_values(value: object) -> None:
    """Out-of-range, boolean and non-numeric ports fail."""
    assert not validate_port(value)


def test_domain_and_ip_detection() -> None:
    """Domains must be DNS names; IP literals are detected separately."""
    assert validate_domain("proxy.example.com")
    assert not validate_domain("1.2.3.4")
    assert not validate_domain("localhost")
    assert not validate_domain("-bad-.example.com")
    assert is_ip_address("1.2.3.4")
    assert is_ip_address("2001:db8::1")
    assert not is_ip_address("proxy.example.com")


def test_ip_address_must_be_public_ipv4() -> None:
    """Private, loopback and IPv6 addresses are rejected by default."""
    assert validate_ip_address("1.2.3.4")
    assert not validate_ip_address("10.0.0.1")
    assert validate_ip_address("10.0.0.1", allow_private=True)
    assert not validate_ip_address("127.0.0.1")
    assert not validate_ip_address("2001:4860::1")


def test_require_valid_raises_validation_error() -> None:
    """A failed result becomes a ValidationError naming the field."""
    with pytest.raises(ValidationError) as excinfo:
        require_valid(validate_short_id("zz"), "short_id")
    assert excinfo.value.field == "short_id"
    assert "short_id" in str(excinfo.value)


def test_cert_files_must_exist_and_match(tmp_path: Path, cert_factory: CertFactory) -> None:
    """Matching files pass; missing, empty or mismatched files fail."""
    fullchain, key = cert_factory()
    assert validate_cert_files(fullchain, key)

    missing = validate_cert_files(tmp_path / "absent.pem", key)
    assert not missing and "does not exist" in missing.reason

    empty = tmp_path / "empty.pem"
    empty.write_text("", encoding="utf-8")
    assert "is empty" in validate_cert_files(empty, key).reason

    _, other_key = cert_factory(name="other")
    mismatch = validate_cert_files(fullchain, other_key)
    assert not mismatch and "does not match" in mismatch.reason


def test_cert_files_reject_garbage(tmp_path: Path, cert_factory: CertFactory) -> None:
    """Unparseable content reports a parse failure."""
    _, key = cert_factory()
    garbage = tmp_path / "garbage.pem"
    garbage.write_text("not a certificate", encoding="utf-8")
    result = validate_cert_files(garbage, key)
    assert not result
    assert "failed to parse certificate" in result.reason
