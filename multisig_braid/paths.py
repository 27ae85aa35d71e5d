"""BIP32 derivation path parsing and validation."""

from __future__ import annotations

import re
from typing import Iterable, List

from .address_types import AddressType
from .networks import Network, coerce_network

HARDENING_OFFSET = 2**31

BIP32_PATH_REGEX = re.compile(r"^(m/)?(\d+'?/)*\d+'?$")
BIP32_HARDENED_PATH_REGEX = re.compile(r"^(m/)?(\d+'/)*\d+'$")
BIP32_UNHARDENED_PATH_REGEX = re.compile(r"^(m/)?(\d+/)*\d+$")
BIP32_INDEX_REGEX = re.compile(r"^\d+'?$")
MAX_BIP32_HARDENED_NODE_INDEX = 2**31 - 1
MAX_BIP32_NODE_INDEX = 2**32 - 1

HARDENED = "hardened"
UNHARDENED = "unhardened"


def hardened_bip32_index(index: int | str) -> int:
    return int(index) + HARDENING_OFFSET


def bip32_path_to_sequence(path: str) -> List[int]:
    """Convert ``m/45'/0'/0'`` style paths to integer indices.

    The first segment is always dropped (it is ``m`` for absolute paths), so
    relative paths must be passed with a leading ``/``.
    """

    sequence = []
    for segment in path.split("/")[1:]:
        if segment.endswith("'"):
            sequence.append(int(segment[:-1]) + HARDENING_OFFSET)
        else:
            sequence.append(int(segment))
    return sequence


def bip32_sequence_to_path(sequence: Iterable[int]) -> str:
    segments = []
    for index in sequence:
        if index >= HARDENING_OFFSET:
            segments.append(f"{index - HARDENING_OFFSET}'")
        else:
            segments.append(str(index))
    return "m/" + "/".join(segments)


def validate_bip32_path(path: str | None, mode: str | None = None) -> str:
    """Return an error message for an invalid BIP32 path, or ``""``.

    Parameters
    ----------
    path:
        Absolute (``m/...``) or relative path.
    mode:
        ``"hardened"`` to require every segment hardened, ``"unhardened"`` to
        forbid hardened segments, or ``None`` for no constraint.
    """

    if path is None or path == "":
        return "BIP32 path cannot be blank."
    if not BIP32_PATH_REGEX.match(path):
        return "BIP32 path is invalid."
    if mode == HARDENED and not BIP32_HARDENED_PATH_REGEX.match(path):
        return "BIP32 path must be fully-hardened."
    if mode == UNHARDENED and not BIP32_UNHARDENED_PATH_REGEX.match(path):
        return "BIP32 path cannot include hardened segments."

    for segment in path.lower().split("/")[1:]:
        error = validate_bip32_index(segment)
        if error:
            return error
    return ""


def validate_bip32_index(index: str | None, mode: str | None = None) -> str:
    """Return an error message for an invalid single path segment, or ``""``."""

    if index is None or index == "":
        return "BIP32 index cannot be blank."
    if not BIP32_INDEX_REGEX.match(index):
        return "BIP32 index is invalid."

    hardened = index.endswith("'")
    number_string = index[:-1] if hardened else index
    number = int(number_string)
    if str(number) != number_string:
        return "Invalid BIP32 index."

    if number > (MAX_BIP32_HARDENED_NODE_INDEX if hardened else MAX_BIP32_NODE_INDEX):
        return "BIP32 index is too high."

    if mode == HARDENED and not hardened and number <= MAX_BIP32_HARDENED_NODE_INDEX:
        return "BIP32 index must be hardened."
    if mode == UNHARDENED and (hardened or number > MAX_BIP32_HARDENED_NODE_INDEX):
        return "BIP32 index cannot be hardened."
    return ""


def multisig_bip32_root(address_type, network: Network | str) -> str | None:
    """Return the conventional account root for a multisig address type.

    P2SH uses BIP45 (``m/45'/c'/0'``); the segwit types use BIP48 script
    types 1 and 2. ``c`` is the coin type: 0 on mainnet, 1 elsewhere.
    """

    coin_path = "0'" if coerce_network(network) == Network.MAINNET else "1'"
    try:
        address_type = AddressType(address_type)
    except ValueError:
        return None
    if address_type == AddressType.P2SH:
        return f"m/45'/{coin_path}/0'"
    if address_type == AddressType.P2SH_P2WSH:
        return f"m/48'/{coin_path}/0'/1'"
    return f"m/48'/{coin_path}/0'/2'"


def multisig_bip32_path(address_type, network: Network | str, relative_path: str = "0") -> str | None:
    root = multisig_bip32_root(address_type, network)
    if root:
        return f"{root}/{relative_path}"
    return None


def get_parent_bip32_path(path: str) -> str:
    """Return ``path`` without its last segment, or a validation error."""

    error = validate_bip32_path(path)
    if error:
        return error
    return "/".join(path.split("/")[:-1])


def get_relative_bip32_path(parent_path: str, child_path: str) -> str:
    """Return the part of ``child_path`` below ``parent_path``.

    Validation failures are returned as messages, matching the other
    validators in this module.
    """

    if parent_path == child_path:
        return ""
    error = validate_bip32_path(parent_path) or validate_bip32_path(child_path)
    if error:
        return error
    if not child_path.startswith(parent_path):
        return "The provided bip32Path does not start with the chroot."
    return child_path[len(parent_path) + 1:]
