"""Tests for listen port allocation."""
from __future__ import annotations

import socket

import pytest

from sbxctl.errors import ValidationError
from sbxctl.inputs import Protocol
from sbxctl.network import has_ipv6
from sbxctl.ports import PortAllocator, port_in_use

DEFAULTS = {Protocol.REALITY: 443, Protocol.WS_TLS: 8444, Protocol.HYSTERIA2: 8443}
FALLBACKS = {Protocol.REALITY: 24443, Protocol.WS_TLS: 24444, Protocol.HYSTERIA2: 24445}


def _allocator(busy: set[int], probes: list[tuple[int, bool]] | None = None) -> PortAllocator:
    def probe(port: int, udp: bool) -> bool:
        if probes is not None:
            probes.append((port, udp))
        return port in busy

    return PortAllocator(
        DEFAULTS, FALLBACKS, retries=3, retry_delay=0, probe=probe, sleep=lambda _: None
    )


def test_free_default_port_is_used() -> None:
    """The default port is chosen when nothing holds it."""
    allocation = _allocator(set()).allocate(Protocol.REALITY)
    assert allocation.port == 443
    assert not allocation.fallback


def test_busy_port_is_retried_then_falls_back() -> None:
    """A busy port is probed ``retries`` times before falling back."""
    probes: list[tuple[int, bool]] = []
    allocation = _allocator({443}, probes).allocate(Protocol.REALITY)
    assert allocation.port == 24443
    assert allocation.fallback
    assert allocation.requested == 443
    assert "in use" in allocation.reason
    assert probes.count((443, False)) == 3


def test_hysteria2_is_probed_over_udp() -> None:
    """Hysteria2 listens on QUIC, so the UDP port is what matters."""
    probes: list[tuple[int, bool]] = []
    _allocator(set(), probes).allocate(Protocol.HYSTERIA2)
    assert probes == [(8443, True)]


def test_requested_port_wins_over_previous() -> None:
    """Explicit requests beat the remembered port."""
    allocation = _allocator(set()).allocate(Protocol.WS_TLS, 9000, previous=8444)
    assert allocation.port == 9000


def test_previous_port_is_trusted_even_when_busy() -> None:
    """The running sing-box holds its own port; reconfigure keeps it."""
    allocation = _allocator({24443}).allocate(Protocol.REALITY, previous=24443)
    assert allocation.port == 24443
    assert not allocation.fallback


def test_reserved_port_forces_fallback() -> None:
    """A port already given to another inbound is never shared."""
    allocation = _allocator(set()).allocate(Protocol.WS_TLS, 443, reserved={443})
    assert allocation.port == 24444
    assert "another inbound" in allocation.reason


def test_busy_fallback_is_an_error() -> None:
    """When the fallback is taken as well the run aborts."""
    with pytest.raises(ValidationError) as excinfo:
        _allocator({443, 24443}).allocate(Protocol.REALITY)
    assert excinfo.value.field == "ports"


def test_port_in_use_detects_bound_socket() -> None:
    """A listening TCP socket on localhost makes its port busy."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as holder:
        holder.bind(("0.0.0.0", 0))  # noqa: S104
        holder.listen(1)
        port = holder.getsockname()[1]
        assert port_in_use(port) is True


def test_has_ipv6_handles_unreachable_network(monkeypatch: pytest.MonkeyPatch) -> None:
    """Socket errors mean no IPv6 route."""

    class Broken:
        def __init__(self, *args: object) -> None:
            raise OSError("Address family not supported")

    monkeypatch.setattr("sbxctl.network.socket.socket", Broken)
    assert has_ipv6() is False
