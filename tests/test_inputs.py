"""Tests for the immutable install inputs."""
from __future__ import annotations

import dataclasses

import pytest

from sbxctl.errors import ValidationError
from sbxctl.inputs import ALL_PROTOCOLS, InstallInputs, Protocol, load_inputs


def test_load_inputs_reads_environment() -> None:
    """Known environment variables map onto input fields."""
    inputs = load_inputs(
        {
            "DOMAIN": "proxy.example.com.",
            "CERT_MODE": "DNS",
            "CF_Token": "secret-token",
            "REALITY_PORT": "8443",
            "PROTOCOLS": "hy2,reality",
            "UNRELATED": "ignored",
        }
    )
    assert inputs.domain == "proxy.example.com"
    assert inputs.cert_mode == "dns"
    assert inputs.api_token == "secret-token"
    assert inputs.reality_port == 8443
    assert inputs.protocols == (Protocol.REALITY, Protocol.HYSTERIA2)


def test_empty_environment_values_count_as_absent() -> None:
    """Blank variables do not override defaults."""
    inputs = load_inputs({"DOMAIN": "  ", "SNI": "", "REALITY_ONLY": ""})
    assert inputs.domain is None
    assert inputs.sni is None
    assert inputs.reality_only is False


def test_overrides_win_and_none_is_ignored() -> None:
    """CLI overrides replace env values; unset flags leave env alone."""
    inputs = load_inputs(
        {"DOMAIN": "env.example.com", "SNI": "www.apple.com"},
        {"domain": "cli.example.com", "sni": None, "reality_only": True},
    )
    assert inputs.domain == "cli.example.com"
    assert inputs.sni == "www.apple.com"
    assert inputs.reality_only is True


def test_explicit_empty_short_id_is_kept() -> None:
    """An override of "" means "no short ID" rather than "generate one"."""
    inputs = load_inputs({}, {"short_id": ""})
    assert inputs.short_id == ""


def test_inputs_are_frozen() -> None:
    """Stages cannot mutate the shared inputs."""
    inputs = load_inputs({"DOMAIN": "proxy.example.com"})
    with pytest.raises(dataclasses.FrozenInstanceError):
        inputs.domain = "other.example.com"  # type: ignore[misc]


@pytest.mark.parametrize(
    ("env", "field"),
    [
        ({"DOMAIN": "localhost"}, "domain"),
        ({"DOMAIN": "10.0.0.1"}, "domain"),
        ({"REALITY_PORT": "70000"}, "reality_port"),
        ({"PROTOCOLS": "vmess"}, "protocols"),
        ({"REALITY_ONLY": "maybe"}, "reality_only"),
    ],
)
def test_invalid_inputs_raise_validation_error(env: dict[str, str], field: str) -> None:
    """Malformed values name the offending field."""
    with pytest.raises(ValidationError) as excinfo:
        load_inputs(env)
    assert excinfo.value.field == field


def test_unknown_override_is_rejected() -> None:
    """Typos in programmatic overrides are not silently dropped."""
    with pytest.raises(ValidationError):
        load_inputs({}, {"domian": "proxy.example.com"})


def test_domain_is_ip_detection() -> None:
    """A public IP is accepted as the server address and flagged."""
    inputs = load_inputs({"DOMAIN": "1.2.3.4"})
    assert inputs.domain_is_ip
    assert not load_inputs({"DOMAIN": "proxy.example.com"}).domain_is_ip


def test_selected_protocols() -> None:
    """Explicit lists win; otherwise certificates decide between Reality and all three."""
    domain = InstallInputs(domain="proxy.example.com")
    assert domain.selected_protocols(certificates_available=True) == ALL_PROTOCOLS
    assert domain.selected_protocols(certificates_available=False) == (Protocol.REALITY,)

    reality_only = InstallInputs(domain="proxy.example.com", reality_only=True)
    assert reality_only.selected_protocols(certificates_available=True) == (Protocol.REALITY,)

    ip = InstallInputs(domain="1.2.3.4")
    assert ip.selected_protocols(certificates_available=True) == (Protocol.REALITY,)

    explicit = InstallInputs(domain="1.2.3.4", protocols=(Protocol.WS_TLS,))
    assert explicit.selected_protocols(certificates_available=False) == (Protocol.WS_TLS,)


def test_protocol_properties() -> None:
    """Only Reality runs without a certificate; tags are stable."""
    assert not Protocol.REALITY.requires_tls
    assert Protocol.WS_TLS.requires_tls
    assert Protocol.HYSTERIA2.requires_tls
    assert Protocol.HYSTERIA2.tag == "in-hy2"


def test_to_dict_redacts_secrets() -> None:
    """Secrets never reach logs."""
    inputs = load_inputs(
        {"DOMAIN": "proxy.example.com", "CF_API_TOKEN": "tok", "HY2_PASS": "pw"},
        {"private_key": "priv", "public_key": "pub"},
    )
    data = inputs.to_dict()
    assert data["api_token"] == "***"
    assert data["private_key"] == "***"
    assert data["hysteria2_password"] == "***"
    assert data["public_key"] == "pub"
