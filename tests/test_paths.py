from __future__ import annotations

import pytest

from multisig_braid.address_types import AddressType
from multisig_braid.networks import Network
from multisig_braid.paths import (
    HARDENED,
    UNHARDENED,
    bip32_path_to_sequence,
    bip32_sequence_to_path,
    get_parent_bip32_path,
    get_relative_bip32_path,
    hardened_bip32_index,
    multisig_bip32_path,
    multisig_bip32_root,
    validate_bip32_index,
    validate_bip32_path,
)


def test_path_sequence_round_trip() -> None:
    sequence = bip32_path_to_sequence("m/45'/0'/0'/0/5")
    assert sequence == [2147483693, 2147483648, 2147483648, 0, 5]
    assert bip32_sequence_to_path(sequence) == "m/45'/0'/0'/0/5"


def test_relative_paths_need_a_leading_segment() -> None:
    assert bip32_path_to_sequence("/0/7") == [0, 7]
    assert hardened_bip32_index("45") == 2147483693


@pytest.mark.parametrize(
    ("path", "mode", "message"),
    [
        ("", None, "BIP32 path cannot be blank."),
        ("m/foo", None, "BIP32 path is invalid."),
        ("/0/0", None, "BIP32 path is invalid."),
        ("m/45'/0", HARDENED, "BIP32 path must be fully-hardened."),
        ("m/45'/0", UNHARDENED, "BIP32 path cannot include hardened segments."),
        ("m/2147483648'", None, "BIP32 index is too high."),
        ("m/4294967296", None, "BIP32 index is too high."),
        ("m/01", None, "Invalid BIP32 index."),
    ],
)
def test_validate_bip32_path_messages(path: str, mode: str | None, message: str) -> None:
    assert validate_bip32_path(path, mode) == message


def test_validate_bip32_path_accepts_good_paths() -> None:
    assert validate_bip32_path("m/45'/0'/0'") == ""
    assert validate_bip32_path("0/0") == ""
    assert validate_bip32_path("m/45'/0'", HARDENED) == ""
    assert validate_bip32_path("m/0/1", UNHARDENED) == ""


def test_validate_bip32_index_modes() -> None:
    assert validate_bip32_index("") == "BIP32 index cannot be blank."
    assert validate_bip32_index("x") == "BIP32 index is invalid."
    assert validate_bip32_index("0", HARDENED) == "BIP32 index must be hardened."
    assert validate_bip32_index("0'", UNHARDENED) == "BIP32 index cannot be hardened."
    assert validate_bip32_index("2147483648", UNHARDENED) == "BIP32 index cannot be hardened."
    assert validate_bip32_index("44'", HARDENED) == ""


def test_multisig_roots_follow_bip45_and_bip48() -> None:
    assert multisig_bip32_root(AddressType.P2SH, Network.MAINNET) == "m/45'/0'/0'"
    assert multisig_bip32_root("P2SH-P2WSH", Network.TESTNET) == "m/48'/1'/0'/1'"
    assert multisig_bip32_root("P2WSH", "regtest") == "m/48'/1'/0'/2'"
    assert multisig_bip32_root("P2TR", Network.MAINNET) is None
    assert multisig_bip32_path("P2WSH", Network.MAINNET, "0/3") == "m/48'/0'/0'/2'/0/3"


def test_parent_and_relative_paths() -> None:
    assert get_parent_bip32_path("m/45'/0'/0'/0") == "m/45'/0'/0'"
    assert get_parent_bip32_path("bogus") == "BIP32 path is invalid."
    assert get_relative_bip32_path("m/45'/0'/0'", "m/45'/0'/0'/0/5") == "0/5"
    assert get_relative_bip32_path("m/45'", "m/45'") == ""
    assert (
        get_relative_bip32_path("m/48'", "m/45'/0'")
        == "The provided bip32Path does not start with the chroot."
    )
