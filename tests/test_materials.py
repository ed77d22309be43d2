"""Tests for credential generation."""
from __future__ import annotations

import uuid

import pytest

from conftest import REALITY_PRIVATE, REALITY_PUBLIC, TEST_UUID, FakeSingBox
from sbxctl.errors import ValidationError
from sbxctl.materials import DEFAULT_SNI, MaterialGenerator


def _generator(keypairs: FakeSingBox) -> MaterialGenerator:
    return MaterialGenerator(
        keypairs,
        token_hex=lambda size: "ab" * size,
        uuid_factory=lambda: uuid.UUID(TEST_UUID),
    )


def test_generates_missing_fields(fake_singbox: FakeSingBox) -> None:
    """Absent values are generated with the injected sources."""
    credentials = _generator(fake_singbox).generate(with_hysteria2=True)
    assert credentials.uuid == TEST_UUID
    assert credentials.reality.private_key == REALITY_PRIVATE
    assert credentials.reality.public_key == REALITY_PUBLIC
    assert credentials.short_id == "abababab"
    assert credentials.short_ids == ["abababab"]
    assert credentials.sni == DEFAULT_SNI
    assert credentials.hysteria2_password == "ab" * 16
    assert fake_singbox.keypair_calls == 1


def test_supplied_values_are_kept(fake_singbox: FakeSingBox) -> None:
    """Supplied, valid values pass through and no keypair is minted."""
    credentials = _generator(fake_singbox).generate(
        uuid_value="11111111-2222-3333-4444-555555555555",
        private_key="priv_key",
        public_key="pub_key",
        short_id="",
        sni="www.apple.com",
    )
    assert credentials.uuid == "11111111-2222-3333-4444-555555555555"
    assert credentials.reality.private_key == "priv_key"
    assert credentials.short_id == ""
    assert credentials.short_ids == [""]
    assert credentials.sni == "www.apple.com"
    assert credentials.hysteria2_password is None
    assert fake_singbox.keypair_calls == 0


def test_invalid_supplied_short_id_is_not_replaced(fake_singbox: FakeSingBox) -> None:
    """Bad operator input aborts instead of being regenerated."""
    with pytest.raises(ValidationError) as excinfo:
        _generator(fake_singbox).generate(short_id="123456789")
    assert excinfo.value.field == "short_id"


def test_half_keypair_is_rejected(fake_singbox: FakeSingBox) -> None:
    """A private key without its public half is an error."""
    with pytest.raises(ValidationError) as excinfo:
        _generator(fake_singbox).generate(private_key="priv_key")
    assert "public key is missing" in str(excinfo.value)


def test_private_key_is_not_in_repr(fake_singbox: FakeSingBox) -> None:
    """The Reality private key never appears in reprs."""
    credentials = _generator(fake_singbox).generate()
    assert REALITY_PRIVATE not in repr(credentials)
