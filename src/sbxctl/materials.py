"""Credential material for a deployment.

:class:`MaterialGenerator` fills in whatever the operator (or a previous
deployment) did not supply. Supplied values are validated and kept; a value
that fails validation aborts the run instead of being silently replaced.
"""
from __future__ import annotations

import secrets
import typing
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field

from .errors import ValidationError
from .validation import (
    require_valid,
    validate_hysteria2_password,
    validate_reality_keypair,
    validate_reality_sni,
    validate_short_id,
    validate_uuid,
)

DEFAULT_SNI = "www.microsoft.com"


@dataclass(frozen=True)
class RealityKeypair:
    """x25519 keypair in sing-box's base64url encoding."""

    private_key: str = field(repr=False)
    public_key: str


@dataclass(frozen=True)
class CredentialSet:
    """Secrets and identifiers shared by the configured inbounds.

    The UUID is deliberately shared by Reality and WS-TLS. Only the public key
    of the Reality pair may leave the server.
    """

    uuid: str
    reality: RealityKeypair
    short_id: str
    sni: str
    hysteria2_password: str | None = field(default=None, repr=False)

    @property
    def short_ids(self) -> list[str]:
        """Return the short ID as the one-element list sing-box expects."""
        return [self.short_id]


class KeypairSource(typing.Protocol):
    """Anything able to mint a Reality keypair (normally the sing-box binary)."""

    def generate_reality_keypair(self) -> RealityKeypair:
        """Return a fresh keypair."""


class MaterialGenerator:
    """Produce a validated :class:`CredentialSet`."""

    def __init__(
        self,
        keypairs: KeypairSource,
        *,
        token_hex: Callable[[int], str] = secrets.token_hex,
        uuid_factory: Callable[[], uuid.UUID] = uuid.uuid4,
    ) -> None:
        """Use *keypairs* for Reality keys and the given randomness sources."""
        self._keypairs = keypairs
        self._token_hex = token_hex
        self._uuid_factory = uuid_factory

    def generate(
        self,
        *,
        uuid_value: str | None = None,
        private_key: str | None = None,
        public_key: str | None = None,
        short_id: str | None = None,
        sni: str | None = None,
        hysteria2_password: str | None = None,
        with_hysteria2: bool = False,
    ) -> CredentialSet:
        """Return credentials, generating only the absent fields."""
        if uuid_value is None:
            uuid_value = str(self._uuid_factory())
        require_valid(validate_uuid(uuid_value), "uuid")

        if private_key is None and public_key is None:
            keypair = self._keypairs.generate_reality_keypair()
        elif private_key is None or public_key is None:
            missing = "public key" if public_key is None else "private key"
            raise ValidationError(
                "reality_keypair", f"both halves are required; the {missing} is missing"
            )
        else:
            keypair = RealityKeypair(private_key=private_key, public_key=public_key)
        require_valid(
            validate_reality_keypair(keypair.private_key, keypair.public_key),
            "reality_keypair",
        )

        if short_id is None:
            short_id = self._token_hex(4)
        require_valid(validate_short_id(short_id), "short_id")

        if sni is None:
            sni = DEFAULT_SNI
        require_valid(validate_reality_sni(sni), "sni")

        if hysteria2_password is None and with_hysteria2:
            hysteria2_password = self._token_hex(16)
        if hysteria2_password is not None:
            require_valid(validate_hysteria2_password(hysteria2_password), "hysteria2_password")

        return CredentialSet(
            uuid=uuid_value,
            reality=keypair,
            short_id=short_id,
            sni=sni,
            hysteria2_password=hysteria2_password,
        )


__all__ = [
    "DEFAULT_SNI",
    "CredentialSet",
    "KeypairSource",
    "MaterialGenerator",
    "RealityKeypair",
]
