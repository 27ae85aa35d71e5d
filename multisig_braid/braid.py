"""Braids: a set of extended public keys plus the multisig policy they share.

A braid fixes the network, address type, signer threshold and one unhardened
index (conventionally 0 for deposit and 1 for change). Every address in the
braid lives below that index, so ``deposit_braid`` at index ``0`` produces
``0/0``, ``0/1``, ... and never ``1/0``.

Example
-------
>>> braid = Braid.from_json(config_json)
>>> multisig = derive_multisig_by_index(braid, 5)
>>> multisig.address
'2N...'
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Sequence, Tuple

from .address_types import AddressType, coerce_address_type
from .keys import (
    ExtendedPublicKey,
    derive_child_public_key,
    extended_public_key_root_fingerprint,
    get_masked_derivation,
    validate_extended_public_key,
)
from .multisig import Bip32Derivation, Multisig, generate_multisig_from_public_keys
from .networks import Network
from .paths import UNHARDENED, bip32_path_to_sequence, validate_bip32_index, validate_bip32_path

logger = logging.getLogger(__name__)

# Placeholder master fingerprint for keys whose origin is unknown. Signing
# still works as long as at least one key in the set carries a real one.
FAKE_ROOT_FINGERPRINT = "00000000"


class BraidIndexError(ValueError):
    """Raised when a path does not descend from the braid's index."""


def _base58(xpub: ExtendedPublicKey | str) -> str:
    return xpub if isinstance(xpub, str) else xpub.base58_string


def _xpub_to_json(xpub: ExtendedPublicKey | str) -> Any:
    if isinstance(xpub, str):
        return xpub
    if xpub.path is None and xpub.root_fingerprint is None:
        return xpub.base58_string
    return xpub.to_dict()


def _xpub_from_json(value: Any) -> ExtendedPublicKey | str:
    if isinstance(value, str):
        return value
    return ExtendedPublicKey.from_dict(value)


@dataclass(frozen=True)
class Braid:
    """A validated braid. Construction fails rather than producing a partial one."""

    network: Network
    address_type: AddressType
    extended_public_keys: Tuple[ExtendedPublicKey | str, ...]
    required_signers: int
    index: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "address_type", coerce_address_type(self.address_type))
        try:
            network = Network(str(self.network))
        except ValueError as exc:
            raise ValueError(
                "Expected network to be one of: "
                f"{', '.join(network.value for network in Network)}."
            ) from exc
        object.__setattr__(self, "network", network)

        keys = tuple(self.extended_public_keys)
        for xpub in keys:
            error = validate_extended_public_key(_base58(xpub), network)
            if error:
                raise ValueError(error)
        object.__setattr__(self, "extended_public_keys", keys)

        if isinstance(self.required_signers, bool) or not isinstance(self.required_signers, int):
            raise ValueError("requiredSigners must be an integer.")
        if self.required_signers > len(keys):
            raise ValueError("Can't have more requiredSigners than there are keys.")

        index = str(self.index)
        error = validate_bip32_index(index, UNHARDENED)
        if error:
            raise ValueError(error)
        object.__setattr__(self, "index", index)

    @property
    def sequence(self) -> List[int]:
        return bip32_path_to_sequence(f"/{self.index}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Braid":
        return cls(
            network=data["network"],
            address_type=data["addressType"],
            extended_public_keys=tuple(
                _xpub_from_json(value) for value in data["extendedPublicKeys"]
            ),
            required_signers=data["requiredSigners"],
            index=data["index"],
        )

    @classmethod
    def from_json(cls, value: str) -> "Braid":
        try:
            data = json.loads(value)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid braid JSON: {exc}") from exc
        return cls.from_dict(data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "network": self.network.value,
            "addressType": self.address_type.value,
            "extendedPublicKeys": [_xpub_to_json(xpub) for xpub in self.extended_public_keys],
            "requiredSigners": self.required_signers,
            "index": self.index,
        }

    def to_json(self) -> str:
        return braid_config(self)


def braid_config(braid: Braid) -> str:
    """Serialize ``braid`` to the compact JSON stored as ``braid_details``."""

    return json.dumps(braid.to_dict(), separators=(",", ":"))


def validate_bip32_path_for_braid(braid: Braid, path: str) -> None:
    """Check that ``path`` is well formed and starts at the braid's index.

    ``"0/0"`` and ``"m/0/0"`` are equivalent; a leading ``/`` is not a valid
    path.

    Raises
    ------
    ValueError
        For a malformed path.
    BraidIndexError
        When the first segment is not the braid's index.
    """

    error = validate_bip32_path(path)
    if error:
        raise ValueError(error)
    path_to_check = path if path.startswith("m/") or path.startswith("/") else "/" + path
    sequence = bip32_path_to_sequence(path_to_check)
    if str(sequence[0]) != braid.index:
        raise BraidIndexError(f"Cannot derive paths outside of the braid's index: {braid.index}")


def extended_public_key_origin_path(xpub: ExtendedPublicKey | str) -> str:
    if isinstance(xpub, ExtendedPublicKey) and xpub.path:
        return xpub.path
    return get_masked_derivation(_base58(xpub), "unknown")


def _derive_public_key_objects(braid: Braid, path: str) -> Dict[str, Bip32Derivation]:
    validate_bip32_path_for_braid(braid, path)
    suffix = path[2:] if path.startswith("m/") else path

    derived: Dict[str, Bip32Derivation] = {}
    for xpub in braid.extended_public_keys:
        pubkey = derive_child_public_key(_base58(xpub), path, braid.network)
        root_fingerprint = extended_public_key_root_fingerprint(xpub)
        if not root_fingerprint:
            logger.warning("No root fingerprint for %s, using placeholder", _base58(xpub)[:12])
            root_fingerprint = FAKE_ROOT_FINGERPRINT
        derived[pubkey] = Bip32Derivation(
            master_fingerprint=bytes.fromhex(root_fingerprint),
            path=f"{extended_public_key_origin_path(xpub)}/{suffix}",
            pubkey=bytes.fromhex(pubkey),
        )
    return derived


def _index_path(braid: Braid, index: int | str) -> str:
    return f"{braid.index}/{index}"


def generate_public_keys_at_path(braid: Braid, path: str) -> List[str]:
    """Return the braid's public keys at ``path``, sorted per BIP67."""

    return sorted(_derive_public_key_objects(braid, path))


def generate_public_keys_at_index(braid: Braid, index: int | str) -> List[str]:
    return generate_public_keys_at_path(braid, _index_path(braid, index))


def generate_bip32_derivation_by_path(braid: Braid, path: str) -> List[Bip32Derivation]:
    """Return one derivation record per extended public key, in braid order."""

    return list(_derive_public_key_objects(braid, path).values())


def generate_bip32_derivation_by_index(braid: Braid, index: int | str) -> List[Bip32Derivation]:
    return generate_bip32_derivation_by_path(braid, _index_path(braid, index))


def _braid_aware_multisig(
    braid: Braid, pubkeys: Sequence[str], bip32_derivation: Iterable[Bip32Derivation]
) -> Multisig:
    multisig = generate_multisig_from_public_keys(
        braid.network, braid.address_type, braid.required_signers, *pubkeys
    )
    return multisig.with_braid_details(braid_config(braid), list(bip32_derivation))


def derive_multisig_by_path(braid: Braid, path: str) -> Multisig:
    """Derive the braid's multisig descriptor at ``path`` (e.g. ``"0/7"``)."""

    derived = _derive_public_key_objects(braid, path)
    logger.debug("Derived %d keys for braid index %s at %s", len(derived), braid.index, path)
    return _braid_aware_multisig(braid, sorted(derived), derived.values())


def derive_multisig_by_index(braid: Braid, index: int | str) -> Multisig:
    return derive_multisig_by_path(braid, _index_path(braid, index))


def generate_braid(
    network: Network | str,
    address_type: AddressType | str,
    extended_public_keys: Sequence[ExtendedPublicKey | str],
    required_signers: int,
    index: str | int,
) -> Braid:
    return Braid(
        network=network,
        address_type=address_type,
        extended_public_keys=tuple(extended_public_keys),
        required_signers=required_signers,
        index=index,
    )
