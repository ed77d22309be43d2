"""Host network detection."""
from __future__ import annotations

import logging
import socket
from collections.abc import Sequence

import httpx

from .validation import validate_ip_address

IPV6_PROBE_ADDRESS = "2001:4860:4860::8888"

LOGGER = logging.getLogger(__name__)


def has_ipv6(probe_address: str = IPV6_PROBE_ADDRESS) -> bool:
    """Return True when the host has a route to the IPv6 internet.

    Connecting a UDP socket sends no packets; it only asks the kernel for a
    route.
    """
    try:
        with socket.socket(socket.AF_INET6, socket.SOCK_DGRAM) as sock:
            sock.connect((probe_address, 53))
            address = sock.getsockname()[0]
    except OSError:
        return False
    return not address.startswith("fe80") and address != "::1"


def detect_public_ip(
    services: Sequence[str],
    *,
    timeout: float = 5.0,
    transport: httpx.BaseTransport | None = None,
) -> str | None:
    """Ask each echo service in turn for this host's public IPv4 address.

    The first answer that is a public IPv4 address wins. Returns None when
    every service failed or answered with something else.
    """
    with httpx.Client(timeout=timeout, transport=transport) as client:
        for service in services:
            try:
                response = client.get(service)
                response.raise_for_status()
            except httpx.HTTPError as exc:
                LOGGER.debug("Public IP lookup via %s failed: %s", service, exc)
                continue
            candidate = response.text.strip()
            if validate_ip_address(candidate):
                return candidate
            LOGGER.debug("Public IP lookup via %s returned %r", service, candidate[:64])
    return None


__all__ = ["detect_public_ip", "has_ipv6"]
