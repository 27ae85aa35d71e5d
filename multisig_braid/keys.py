"""Extended public keys, BIP32 public derivation and fingerprints.

Public-key arithmetic runs on the ``cryptography`` secp256k1 backend: the
tweak ``IL * G`` comes from :func:`ec.derive_private_key` and is added to the
parent point with affine arithmetic.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Tuple

from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from .address_types import AddressType
from .encoding import base58_check_decode, base58_check_encode
from .networks import Network, coerce_network, is_testnet_family, network_data
from .paths import HARDENING_OFFSET, bip32_path_to_sequence, validate_bip32_path
from .utils import hash160, validate_hex

logger = logging.getLogger(__name__)

SECP256K1_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141
SECP256K1_FIELD_SIZE = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEFFFFFC2F

EXTENDED_PUBLIC_KEY_VERSIONS: Dict[str, str] = {
    "xpub": "0488b21e",
    "ypub": "049d7cb2",
    "zpub": "04b24746",
    "Ypub": "0295b43f",
    "Zpub": "02aa7ed3",
    "tpub": "043587cf",
    "upub": "044a5262",
    "vpub": "045f1cf6",
    "Upub": "024289ef",
    "Vpub": "02575483",
}
MAINNET_PREFIXES = frozenset({"xpub", "ypub", "zpub", "Ypub", "Zpub"})
TESTNET_PREFIXES = frozenset({"tpub", "upub", "vpub", "Upub", "Vpub"})
_PREFIX_BY_VERSION = {version: prefix for prefix, version in EXTENDED_PUBLIC_KEY_VERSIONS.items()}

EXTENDED_KEY_LENGTH = 78
MIN_EXTENDED_PUBLIC_KEY_LENGTH = 111


class HardenedDerivationError(ValueError):
    """Raised when public derivation is asked to follow a hardened segment."""


class NetworkMismatchError(ValueError):
    """Raised when an extended key belongs to a different network family."""


def validate_prefix(prefix: str) -> None:
    if prefix not in EXTENDED_PUBLIC_KEY_VERSIONS:
        raise ValueError(f'Invalid prefix "{prefix}" for extended public key.')


def validate_root_fingerprint(root_fingerprint: Any) -> str:
    """Return an error message for a malformed root fingerprint, or ``""``."""

    if root_fingerprint is None or root_fingerprint == "":
        return "Root fingerprint cannot be blank."
    if not isinstance(root_fingerprint, str) or len(root_fingerprint) != 8:
        return "Root fingerprint must be an 8-character hex string."
    if validate_hex(root_fingerprint):
        return "Root fingerprint must be an 8-character hex string."
    return ""


def _load_point(pubkey: bytes) -> ec.EllipticCurvePublicKey:
    return ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), pubkey)


def _compressed(public_key: ec.EllipticCurvePublicKey) -> bytes:
    return public_key.public_bytes(
        serialization.Encoding.X962, serialization.PublicFormat.CompressedPoint
    )


def _point_add(
    p1: ec.EllipticCurvePublicNumbers, p2: ec.EllipticCurvePublicNumbers
) -> ec.EllipticCurvePublicNumbers:
    """Add two secp256k1 points in affine coordinates."""
    x1, y1 = p1.x, p1.y
    x2, y2 = p2.x, p2.y
    p = SECP256K1_FIELD_SIZE

    if x1 == x2:
        if y1 == y2:
            lam = (3 * x1 * x1 * pow(2 * y1, -1, p)) % p
        else:
            raise ValueError("Point addition results in point at infinity")
    else:
        lam = ((y2 - y1) * pow(x2 - x1, -1, p)) % p

    x3 = (lam * lam - x1 - x2) % p
    y3 = (lam * (x1 - x3) - y1) % p
    return ec.EllipticCurvePublicNumbers(x3, y3, ec.SECP256K1())


def is_key_compressed(pubkey: str | bytes) -> bool:
    raw = bytes.fromhex(pubkey) if isinstance(pubkey, str) else pubkey
    return len(raw) == 33 and raw[0] in (2, 3)


def compress_public_key(pubkey_hex: str) -> str:
    """Return the 33-byte compressed form of an uncompressed public key."""

    raw = bytes.fromhex(pubkey_hex)
    prefix = 0x03 if raw[64] & 1 else 0x02
    return (bytes([prefix]) + raw[1:33]).hex()


def validate_public_key(pubkey_hex: str | None, address_type: AddressType | str | None = None) -> str:
    """Return an error message for an invalid public key, or ``""``.

    Uncompressed keys are rejected for the segwit address types.
    """

    if pubkey_hex is None or pubkey_hex == "":
        return "Public key cannot be blank."
    error = validate_hex(pubkey_hex)
    if error:
        return error
    try:
        _load_point(bytes.fromhex(pubkey_hex))
    except ValueError:
        return "Invalid public key."

    if not is_key_compressed(pubkey_hex) and address_type is not None:
        if str(address_type) in (AddressType.P2SH_P2WSH.value, AddressType.P2WSH.value):
            return f"{address_type} does not support uncompressed public keys."
    return ""


def get_fingerprint_from_public_key(pubkey_hex: str) -> int:
    """Return the BIP32 fingerprint of a public key as an unsigned integer."""

    if not is_key_compressed(pubkey_hex):
        pubkey_hex = compress_public_key(pubkey_hex)
    return int.from_bytes(hash160(bytes.fromhex(pubkey_hex))[:4], "big")


def fingerprint_to_fixed_length_hex(fingerprint: int) -> str:
    return f"{fingerprint:08x}"


@dataclass(frozen=True)
class ExtendedPublicKey:
    """One BIP32 node: key material plus optional origin metadata.

    ``network`` selects the serialized version bytes when the key is built
    from components; keys decoded from base58 keep the version they were
    read with, so ypub/zpub style strings round-trip unchanged.
    """

    depth: int
    index: int
    chaincode: str
    pubkey: str
    parent_fingerprint: int
    network: Network = Network.MAINNET
    version: str | None = None
    path: str | None = None
    root_fingerprint: str | None = None
    sequence: Tuple[int, ...] | None = field(default=None, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "network", coerce_network(self.network))
        if self.depth < 0 or self.index < 0:
            raise ValueError("Extended public key depth and index must be non-negative")

        pubkey_error = validate_public_key(self.pubkey)
        if pubkey_error:
            raise ValueError(pubkey_error)
        if not is_key_compressed(self.pubkey):
            object.__setattr__(self, "pubkey", compress_public_key(self.pubkey))

        if len(self.chaincode) != 64 or validate_hex(self.chaincode):
            raise ValueError("xpub derivation requires 32-byte chaincode")

        if self.version is None:
            prefix = "tpub" if is_testnet_family(self.network) else "xpub"
            object.__setattr__(self, "version", EXTENDED_PUBLIC_KEY_VERSIONS[prefix])

        if self.path is not None:
            path_error = validate_bip32_path(self.path)
            if path_error:
                raise ValueError(path_error)
            object.__setattr__(self, "sequence", tuple(bip32_path_to_sequence(self.path)))

        if self.root_fingerprint is not None:
            fingerprint_error = validate_root_fingerprint(self.root_fingerprint)
            if fingerprint_error:
                raise ValueError(fingerprint_error)

    @classmethod
    def from_path(
        cls,
        path: str,
        pubkey: str,
        chaincode: str,
        parent_fingerprint: int,
        network: Network | str = Network.MAINNET,
        root_fingerprint: str | None = None,
    ) -> "ExtendedPublicKey":
        """Build a key whose depth and child index come from its absolute path."""

        path_error = validate_bip32_path(path)
        if path_error:
            raise ValueError(path_error)
        sequence = bip32_path_to_sequence(path)
        return cls(
            depth=len(path.split("/")) - 1,
            index=sequence[-1] if sequence else 0,
            chaincode=chaincode,
            pubkey=pubkey,
            parent_fingerprint=parent_fingerprint,
            network=network,
            path=path,
            root_fingerprint=root_fingerprint,
        )

    @classmethod
    def decode(cls, data: bytes) -> "ExtendedPublicKey":
        if len(data) != EXTENDED_KEY_LENGTH:
            raise ValueError(f"Extended key must be {EXTENDED_KEY_LENGTH} bytes, got {len(data)}")
        version = data[0:4].hex()
        prefix = _PREFIX_BY_VERSION.get(version)
        if prefix is None:
            raise ValueError(f"Unknown extended public key version {version}")
        return cls(
            version=version,
            depth=data[4],
            parent_fingerprint=int.from_bytes(data[5:9], "big"),
            index=int.from_bytes(data[9:13], "big"),
            chaincode=data[13:45].hex(),
            pubkey=data[45:78].hex(),
            network=Network.TESTNET if prefix in TESTNET_PREFIXES else Network.MAINNET,
        )

    @classmethod
    def from_base58(cls, value: str) -> "ExtendedPublicKey":
        return cls.decode(base58_check_decode(value.strip()))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExtendedPublicKey":
        """Rebuild a key from :meth:`to_dict` output (or a compatible record)."""

        base58_string = data.get("base58String")
        if base58_string:
            key = cls.from_base58(base58_string)
            # base58 only distinguishes mainnet from the testnet family
            network = coerce_network(data.get("network") or key.network)
            if is_testnet_family(network) != is_testnet_family(key.network):
                raise NetworkMismatchError(
                    f"Extended public key {base58_string[:4]} cannot be used on {network.value}"
                )
            return replace(
                key,
                network=network,
                path=data.get("path") or None,
                root_fingerprint=data.get("rootFingerprint") or None,
            )
        if data.get("path"):
            return cls.from_path(
                data["path"],
                data["pubkey"],
                data["chaincode"],
                data["parentFingerprint"],
                network=data.get("network") or Network.MAINNET,
                root_fingerprint=data.get("rootFingerprint") or None,
            )
        return cls(
            depth=data["depth"],
            index=data["index"],
            chaincode=data["chaincode"],
            pubkey=data["pubkey"],
            parent_fingerprint=data["parentFingerprint"],
            network=data.get("network") or Network.MAINNET,
            root_fingerprint=data.get("rootFingerprint") or None,
        )

    @property
    def prefix(self) -> str:
        return _PREFIX_BY_VERSION[self.version]

    @property
    def base58_string(self) -> str:
        return self.to_base58()

    def encode(self) -> bytes:
        return (
            bytes.fromhex(self.version)
            + bytes([self.depth])
            + self.parent_fingerprint.to_bytes(4, "big")
            + self.index.to_bytes(4, "big")
            + bytes.fromhex(self.chaincode)
            + bytes.fromhex(self.pubkey)
        )

    def to_base58(self) -> str:
        return base58_check_encode(self.encode())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "index": self.index,
            "depth": self.depth,
            "chaincode": self.chaincode,
            "pubkey": self.pubkey,
            "parentFingerprint": self.parent_fingerprint,
            "network": self.network.value,
            "version": self.version,
            "rootFingerprint": self.root_fingerprint,
            "base58String": self.base58_string,
        }

    def with_network(self, network: Network | str) -> "ExtendedPublicKey":
        network = coerce_network(network)
        prefix = "tpub" if is_testnet_family(network) else "xpub"
        return replace(self, network=network, version=EXTENDED_PUBLIC_KEY_VERSIONS[prefix])

    def with_bip32_path(self, path: str) -> "ExtendedPublicKey":
        return replace(self, path=path)

    def with_root_fingerprint(self, root_fingerprint: str) -> "ExtendedPublicKey":
        return replace(self, root_fingerprint=root_fingerprint)

    def derive_child(self, index: int) -> "ExtendedPublicKey":
        """Derive the unhardened child at ``index`` (BIP32 CKDpub)."""

        if index >= HARDENING_OFFSET:
            raise HardenedDerivationError(
                f"Cannot derive hardened child {index - HARDENING_OFFSET}' from a public key"
            )
        parent_pubkey = bytes.fromhex(self.pubkey)
        digest = hmac.new(
            bytes.fromhex(self.chaincode),
            parent_pubkey + index.to_bytes(4, "big"),
            hashlib.sha512,
        ).digest()
        il, ir = digest[:32], digest[32:]
        tweak = int.from_bytes(il, "big")
        if tweak == 0 or tweak >= SECP256K1_ORDER:
            raise ValueError(f"Invalid child key at index {index}")

        tweak_point = ec.derive_private_key(tweak, ec.SECP256K1(), default_backend()).public_key()
        child_point = _point_add(
            _load_point(parent_pubkey).public_numbers(), tweak_point.public_numbers()
        )
        child_pubkey = _compressed(child_point.public_key(default_backend()))

        child_path = None
        if self.path is not None:
            child_path = f"{self.path}/{index}"
        return ExtendedPublicKey(
            depth=self.depth + 1,
            index=index,
            chaincode=ir.hex(),
            pubkey=child_pubkey.hex(),
            parent_fingerprint=get_fingerprint_from_public_key(self.pubkey),
            network=self.network,
            version=self.version,
            path=child_path,
            root_fingerprint=self.root_fingerprint,
        )

    def derive_path(self, path: str) -> "ExtendedPublicKey":
        """Derive along a relative (``0/1``) or absolute (``m/0/1``) path."""

        node = self
        for index in _parse_relative_path(path):
            node = node.derive_child(index)
        return node


def _parse_relative_path(path: str) -> List[int]:
    if path.startswith("m/"):
        path = path[2:]
    elif path in ("m", ""):
        return []
    indices = []
    for segment in path.split("/"):
        if segment.endswith("'") or segment.endswith("h"):
            raise HardenedDerivationError(
                f"Cannot derive hardened path segment {segment} from a public key"
            )
        if not segment.isdigit():
            raise ValueError(f"Invalid BIP32 path segment: {segment!r}")
        indices.append(int(segment))
    return indices


def _node_for_network(extended_public_key: str, network: Network | str) -> ExtendedPublicKey:
    network = coerce_network(network)
    node = ExtendedPublicKey.from_base58(extended_public_key)
    expected_version = f"{network_data(network).bip32_public:08x}"
    if node.version != expected_version:
        raise NetworkMismatchError(
            f"Extended public key prefix {node.prefix} does not match network {network.value}"
        )
    return node


def derive_child_public_key(extended_public_key: str, bip32_path: str, network: Network | str) -> str:
    """Return the compressed public key hex at ``bip32_path`` below the key."""

    node = _node_for_network(extended_public_key, network).derive_path(bip32_path)
    logger.debug("Derived %s at %s", node.pubkey, bip32_path)
    return node.pubkey


def derive_child_extended_public_key(
    extended_public_key: str, bip32_path: str, network: Network | str
) -> str:
    return _node_for_network(extended_public_key, network).derive_path(bip32_path).to_base58()


def derive_extended_public_key(
    bip32_path: str,
    pubkey: str,
    chaincode: str,
    parent_fingerprint: int,
    network: Network | str = Network.MAINNET,
) -> str:
    return ExtendedPublicKey.from_path(
        bip32_path, pubkey, chaincode, parent_fingerprint, network=network
    ).to_base58()


def extended_public_key_root_fingerprint(extended_public_key: ExtendedPublicKey | str) -> str | None:
    if isinstance(extended_public_key, str):
        return None
    return extended_public_key.root_fingerprint or None


def convert_extended_public_key(extended_public_key: str, target_prefix: str) -> str:
    """Re-encode an extended key under another prefix of the same network.

    Raises:
        NetworkMismatchError: If the target prefix belongs to the other
            network family (e.g. ``xpub`` to ``tpub``).
        ValueError: For unknown prefixes or undecodable keys.
    """

    source_prefix = extended_public_key[:4]
    try:
        validate_prefix(target_prefix)
        validate_prefix(source_prefix)
        decoded = base58_check_decode(extended_public_key.strip())
    except ValueError as exc:
        raise ValueError(f"Unable to convert extended public key: {exc}") from exc

    if (source_prefix in MAINNET_PREFIXES) != (target_prefix in MAINNET_PREFIXES):
        raise NetworkMismatchError(
            "Unable to convert extended public key: "
            f"cannot convert {source_prefix} to {target_prefix} across networks"
        )
    return base58_check_encode(bytes.fromhex(EXTENDED_PUBLIC_KEY_VERSIONS[target_prefix]) + decoded[4:])


def validate_extended_public_key_for_network(extended_public_key: str, network: Network | str) -> str:
    if is_testnet_family(network):
        if extended_public_key[:4] != "tpub":
            return "Extended public key must begin with 'xpub' or 'tpub'."
    elif extended_public_key[:4] != "xpub":
        return "Extended public key must begin with 'xpub'."
    return ""


def validate_extended_public_key(extended_public_key: str | None, network: Network | str) -> str:
    """Return an error message for an invalid extended public key, or ``""``."""

    if extended_public_key is None or extended_public_key == "":
        return "Extended public key cannot be blank."
    if len(extended_public_key) < 4:
        return f"Invalid extended public key. Value {extended_public_key} is too short"

    prefix_error = validate_extended_public_key_for_network(extended_public_key, network)
    if prefix_error:
        return prefix_error

    if len(extended_public_key) < MIN_EXTENDED_PUBLIC_KEY_LENGTH:
        return "Extended public key is too short."

    try:
        ExtendedPublicKey.from_base58(extended_public_key)
    except ValueError:
        return "Invalid extended public key."
    return ""


def get_masked_derivation(xpub: str, bip32_path: str, to_mask: str = "unknown") -> str:
    """Replace an unknown origin path with ``m/0/...`` at the key's depth."""

    if to_mask in bip32_path.lower():
        depth = ExtendedPublicKey.from_base58(xpub).depth
        return "m" + "/0" * depth
    return bip32_path
