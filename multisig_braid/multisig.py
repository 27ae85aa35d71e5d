"""Multisig descriptors: one concrete m-of-n locking script.

A :class:`Multisig` is built from an ordered list of public keys (or from a
bare multisig script) and wrapped according to its :class:`AddressType`::

    P2SH        p2sh(p2ms)
    P2SH-P2WSH  p2sh(p2wsh(p2ms))
    P2WSH       p2wsh(p2ms)

Keys are embedded in the order given. Callers that need BIP67 ordering sort
them first; :mod:`multisig_braid.braid` does so for every derived descriptor.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Dict, Sequence, Tuple

from .address_types import AddressType, MULTISIG_ADDRESS_TYPES
from .networks import Network, coerce_network
from .script import Payment, ScriptService, StandardScriptService, decode_multisig_script

logger = logging.getLogger(__name__)

_DEFAULT_SERVICE = StandardScriptService()


@dataclass(frozen=True)
class Bip32Derivation:
    """Signer hint for one public key: root fingerprint and full path."""

    master_fingerprint: bytes
    path: str
    pubkey: bytes

    def to_dict(self) -> Dict[str, str]:
        return {
            "masterFingerprint": self.master_fingerprint.hex(),
            "path": self.path,
            "pubkey": self.pubkey.hex(),
        }


def _shape_of(payment: Payment) -> AddressType | None:
    if payment.redeem is None:
        return None
    if payment.name.startswith("p2sh-") and payment.redeem.redeem is not None:
        return AddressType.P2SH_P2WSH
    if payment.name.startswith("p2wsh-"):
        return AddressType.P2WSH
    if payment.name.startswith("p2sh-"):
        return AddressType.P2SH
    return None


@dataclass(frozen=True)
class Multisig:
    """A multisig locking script tagged with its address type.

    ``payment`` is the outermost payment (the one whose ``output`` is the
    scriptPubKey). ``address_type`` must agree with the nesting of
    ``payment``; construction fails otherwise.
    """

    network: Network
    address_type: AddressType
    payment: Payment
    braid_details: str | None = None
    bip32_derivation: Tuple[Bip32Derivation, ...] | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "network", coerce_network(self.network))
        object.__setattr__(self, "address_type", AddressType(self.address_type))
        shape = _shape_of(self.payment)
        if shape != self.address_type:
            raise ValueError(
                f"Payment nesting {self.payment.name} does not match address type {self.address_type}"
            )
        if self.bip32_derivation is not None:
            object.__setattr__(self, "bip32_derivation", tuple(self.bip32_derivation))

    @property
    def address(self) -> str:
        return self.payment.address or ""

    @property
    def multisig_payment(self) -> Payment:
        """The bare ``p2ms`` payment holding the keys."""

        if self.address_type == AddressType.P2SH_P2WSH:
            return self.payment.redeem.redeem
        return self.payment.redeem

    @property
    def redeem_script(self) -> Payment | None:
        if self.address_type == AddressType.P2WSH:
            return None
        return self.payment.redeem

    @property
    def witness_script(self) -> Payment | None:
        if self.address_type == AddressType.P2SH:
            return None
        return self.multisig_payment

    @property
    def required_signers(self) -> int:
        return self.multisig_payment.m

    @property
    def total_signers(self) -> int:
        return self.multisig_payment.n

    @property
    def public_keys(self) -> list[str]:
        return [pubkey.hex() for pubkey in self.multisig_payment.pubkeys]

    def with_braid_details(
        self, braid_details: str, bip32_derivation: Sequence[Bip32Derivation]
    ) -> "Multisig":
        return replace(self, braid_details=braid_details, bip32_derivation=tuple(bip32_derivation))

    def to_dict(self) -> Dict[str, Any]:
        redeem = self.redeem_script
        witness = self.witness_script
        return {
            "network": self.network.value,
            "addressType": self.address_type.value,
            "address": self.address,
            "requiredSigners": self.required_signers,
            "totalSigners": self.total_signers,
            "publicKeys": self.public_keys,
            "scriptHex": self.payment.hex,
            "redeemScriptHex": redeem.hex if redeem else None,
            "witnessScriptHex": witness.hex if witness else None,
            "braidDetails": self.braid_details,
            "bip32Derivation": [
                derivation.to_dict() for derivation in self.bip32_derivation or ()
            ],
        }


def generate_multisig_from_raw(
    network: Network | str,
    address_type: AddressType | str,
    multisig: Payment,
    service: ScriptService | None = None,
) -> Multisig | None:
    """Wrap a bare ``p2ms`` payment for ``address_type``.

    Returns ``None`` for an unrecognized address type so callers can test for support.
    """

    if str(address_type) not in MULTISIG_ADDRESS_TYPES:
        logger.debug("Unsupported multisig address type %s", address_type)
        return None
    service = service or _DEFAULT_SERVICE
    network = coerce_network(network)
    address_type = AddressType(str(address_type))

    if address_type == AddressType.P2SH:
        payment = service.p2sh(multisig, network)
    elif address_type == AddressType.P2SH_P2WSH:
        payment = service.p2sh(service.p2wsh(multisig, network), network)
    else:
        payment = service.p2wsh(multisig, network)
    return Multisig(network=network, address_type=address_type, payment=payment)


def generate_multisig_from_public_keys(
    network: Network | str,
    address_type: AddressType | str,
    required_signers: int,
    *public_keys: str,
    service: ScriptService | None = None,
) -> Multisig | None:
    """Build a descriptor from public key hex strings, in the order given."""

    service = service or _DEFAULT_SERVICE
    multisig = service.p2ms(required_signers, [bytes.fromhex(key) for key in public_keys])
    return generate_multisig_from_raw(network, address_type, multisig, service=service)


def generate_multisig_from_hex(
    network: Network | str,
    address_type: AddressType | str,
    multisig_script_hex: str,
    service: ScriptService | None = None,
) -> Multisig | None:
    """Build a descriptor from a bare multisig script in hex.

    Raises:
        ValueError: If the hex does not decode to a multisig script.
    """

    service = service or _DEFAULT_SERVICE
    try:
        script = bytes.fromhex(multisig_script_hex)
    except ValueError as exc:
        raise ValueError(f"Invalid multisig script hex: {exc}") from exc
    m, pubkeys = decode_multisig_script(script)
    multisig = service.p2ms(m, pubkeys)
    return generate_multisig_from_raw(network, address_type, multisig, service=service)


def multisig_address_type(multisig: Multisig) -> AddressType:
    return multisig.address_type


def multisig_required_signers(multisig: Multisig) -> int:
    return multisig.required_signers


def multisig_total_signers(multisig: Multisig) -> int:
    return multisig.total_signers


def multisig_script(multisig: Multisig) -> Payment:
    """Return the bare multisig payment, whichever script it lives in."""

    return multisig.multisig_payment


def multisig_redeem_script(multisig: Multisig) -> Payment | None:
    return multisig.redeem_script


def multisig_witness_script(multisig: Multisig) -> Payment | None:
    return multisig.witness_script


def multisig_public_keys(multisig: Multisig) -> list[str]:
    return multisig.public_keys


def multisig_address(multisig: Multisig) -> str:
    return multisig.address


def multisig_braid_details(multisig: Multisig) -> str | None:
    return multisig.braid_details
