"""Listen port allocation for the sing-box inbounds."""
from __future__ import annotations

import errno
import socket
import time
from collections.abc import Callable, Collection, Mapping
from dataclasses import dataclass

from .errors import ValidationError
from .inputs import Protocol

PortProbe = Callable[[int, bool], bool]


def port_in_use(port: int, udp: bool = False) -> bool:
    """Return True when *port* cannot be bound on the wildcard address."""
    kind = socket.SOCK_DGRAM if udp else socket.SOCK_STREAM
    for family, address in ((socket.AF_INET6, "::"), (socket.AF_INET, "0.0.0.0")):  # noqa: S104
        try:
            sock = socket.socket(family, kind)
        except OSError:
            continue
        with sock:
            if not udp:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind((address, port))
            except PermissionError:
                # Privileged ports cannot be probed without root; assume free.
                return False
            except OSError as exc:
                if exc.errno == errno.EADDRINUSE:
                    return True
                continue
            return False
    return False


@dataclass(frozen=True)
class PortAllocation:
    """Chosen port for one protocol."""

    protocol: Protocol
    port: int
    requested: int
    fallback: bool = False
    reason: str = ""

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "protocol": self.protocol.value,
            "port": self.port,
            "requested": self.requested,
            "fallback": self.fallback,
            "reason": self.reason,
        }


class PortAllocator:
    """Pick a free port per protocol, falling back when the preferred one is busy.

    A busy port is re-probed ``retries`` times before the fallback port is
    tried. A port the previous deployment already used is trusted, since the
    running sing-box is what holds it.
    """

    def __init__(
        self,
        defaults: Mapping[Protocol, int],
        fallbacks: Mapping[Protocol, int],
        *,
        retries: int = 3,
        retry_delay: float = 2.0,
        probe: PortProbe = port_in_use,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        """Store the port policy and the probing collaborators."""
        self._defaults = dict(defaults)
        self._fallbacks = dict(fallbacks)
        self._retries = max(1, retries)
        self._retry_delay = retry_delay
        self._probe = probe
        self._sleep = sleep

    def allocate(
        self,
        protocol: Protocol,
        requested: int | None = None,
        *,
        reserved: Collection[int] = (),
        previous: int | None = None,
    ) -> PortAllocation:
        """Return the port *protocol* should listen on."""
        preferred = requested or previous or self._defaults[protocol]
        udp = protocol is Protocol.HYSTERIA2
        if preferred not in reserved and (preferred == previous or self._is_free(preferred, udp)):
            return PortAllocation(protocol, preferred, preferred)

        fallback = self._fallbacks[protocol]
        reason = (
            f"port {preferred} already assigned to another inbound"
            if preferred in reserved
            else f"port {preferred} is in use"
        )
        if fallback in reserved or fallback == preferred:
            raise ValidationError("ports", f"{reason} and fallback {fallback} is unavailable")
        if fallback != previous and self._probe(fallback, udp):
            raise ValidationError(
                "ports", f"{reason} and fallback port {fallback} is in use as well"
            )
        return PortAllocation(protocol, fallback, preferred, fallback=True, reason=reason)

    def _is_free(self, port: int, udp: bool) -> bool:
        for attempt in range(self._retries):
            if not self._probe(port, udp):
                return True
            if attempt + 1 < self._retries:
                self._sleep(self._retry_delay)
        return False


__all__ = ["PortAllocation", "PortAllocator", "port_in_use"]
