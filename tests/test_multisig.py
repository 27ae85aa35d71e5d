from __future__ import annotations

import pytest

from multisig_braid.address_types import AddressType
from multisig_braid.multisig import (
    Bip32Derivation,
    Multisig,
    generate_multisig_from_hex,
    generate_multisig_from_public_keys,
    multisig_address,
    multisig_address_type,
    multisig_braid_details,
    multisig_public_keys,
    multisig_redeem_script,
    multisig_required_signers,
    multisig_script,
    multisig_total_signers,
    multisig_witness_script,
)
from multisig_braid.networks import Network
from multisig_braid.script import StandardScriptService, compile_script, script_to_asm

PUBKEY_A = "02a8513d9931896d5d3afc8063148db75d8851fd1fc41b1098ba2a6a766db563d4"
PUBKEY_B = "03938dd09bf3dd29ddf41f264858accfa40b330c98e0ed27caf77734fac00139ba"
MULTISIG_SCRIPT_HEX = (
    "522102a8513d9931896d5d3afc8063148db75d8851fd1fc41b1098ba2a6a766db563d4"
    "2103938dd09bf3dd29ddf41f264858accfa40b330c98e0ed27caf77734fac00139ba52ae"
)


def test_p2sh_descriptor_from_public_keys() -> None:
    multisig = generate_multisig_from_public_keys(Network.TESTNET, "P2SH", 2, PUBKEY_A, PUBKEY_B)
    assert multisig.address == "2N5KgAnFFpmk5TRMiCicRZDQS8FFNCKqKf1"
    assert multisig.payment.hex == "a9148479072d5a550ee0900b5af7e70af575527a879d87"
    assert multisig_redeem_script(multisig).hex == MULTISIG_SCRIPT_HEX
    assert multisig_witness_script(multisig) is None
    assert multisig_required_signers(multisig) == 2
    assert multisig_total_signers(multisig) == 2
    assert multisig_public_keys(multisig) == [PUBKEY_A, PUBKEY_B]


def test_p2sh_p2wsh_descriptor_nests_witness_program() -> None:
    multisig = generate_multisig_from_public_keys(
        Network.TESTNET, AddressType.P2SH_P2WSH, 2, PUBKEY_A, PUBKEY_B
    )
    assert multisig.payment.hex == "a914dac0270cbf87a65c0cf4fd2295eb44c756b288ec87"
    assert multisig.redeem_script.hex == (
        "0020deeb888c0a0a1871a3da4c2e75ffab5eb17e9d27fccd41bc3d683a2674f93aa1"
    )
    assert multisig.witness_script.hex == MULTISIG_SCRIPT_HEX
    assert multisig.multisig_payment.name == "p2ms"
    assert multisig.payment.name == "p2sh-p2wsh-p2ms"


def test_p2wsh_descriptor_has_no_redeem_script() -> None:
    multisig = generate_multisig_from_public_keys(Network.TESTNET, "P2WSH", 2, PUBKEY_A, PUBKEY_B)
    assert multisig.payment.hex == (
        "0020ba2514cdd3a3c202eb4394e550a0fc116cb834f34662a019be8a52c62351d068"
    )
    assert multisig_address(multisig) == (
        "tb1qhgj3fnwn50pq966rjnj4pg8uz9ktsd8nge32qxd73ffvvg636p5q54g7m0"
    )
    assert multisig.redeem_script is None
    assert multisig.witness_script.hex == MULTISIG_SCRIPT_HEX


def test_regtest_segwit_addresses_use_bcrt() -> None:
    multisig = generate_multisig_from_public_keys(Network.REGTEST, "P2WSH", 2, PUBKEY_A, PUBKEY_B)
    assert multisig.address.startswith("bcrt1q")


def test_mainnet_p2sh_address() -> None:
    multisig = generate_multisig_from_public_keys(
        Network.MAINNET,
        "P2SH",
        2,
        "02583c4776b51691f4e036c8e0eb160f3464a2de9ae4c6818b7945c78fc6bace79",
        "02b024e76d6c2d8c22d9550467e97ced251ead5592529f9c813c1d818f7e89a35a",
    )
    assert multisig.address == "3PiCF26aq57Wo5DJEbFNTVwD1bLCUEpAYZ"


def test_keys_are_embedded_in_given_order() -> None:
    multisig = generate_multisig_from_public_keys(Network.TESTNET, "P2SH", 1, PUBKEY_B, PUBKEY_A)
    assert multisig.public_keys == [PUBKEY_B, PUBKEY_A]
    assert multisig.address != "2N5KgAnFFpmk5TRMiCicRZDQS8FFNCKqKf1"


def test_from_hex_matches_from_public_keys() -> None:
    from_hex = generate_multisig_from_hex(Network.TESTNET, "P2SH", MULTISIG_SCRIPT_HEX)
    from_keys = generate_multisig_from_public_keys(Network.TESTNET, "P2SH", 2, PUBKEY_A, PUBKEY_B)
    assert from_hex == from_keys


def test_from_hex_rejects_bad_scripts() -> None:
    with pytest.raises(ValueError, match="Invalid multisig script hex"):
        generate_multisig_from_hex(Network.TESTNET, "P2SH", "zz")
    with pytest.raises(ValueError):
        generate_multisig_from_hex(Network.TESTNET, "P2SH", "a9148479072d5a550ee0900b5af7e70af575527a879d87")


def test_unknown_address_type_yields_none() -> None:
    assert generate_multisig_from_public_keys(Network.TESTNET, "P2TR", 2, PUBKEY_A, PUBKEY_B) is None


def test_too_many_required_signers() -> None:
    with pytest.raises(ValueError, match="cannot exceed"):
        generate_multisig_from_public_keys(Network.TESTNET, "P2SH", 3, PUBKEY_A, PUBKEY_B)


def test_address_type_must_match_payment_nesting() -> None:
    service = StandardScriptService()
    p2ms = service.p2ms(2, [bytes.fromhex(PUBKEY_A), bytes.fromhex(PUBKEY_B)])
    with pytest.raises(ValueError, match="does not match address type"):
        Multisig(Network.TESTNET, AddressType.P2WSH, service.p2sh(p2ms, Network.TESTNET))


def test_to_dict_includes_scripts_and_derivations() -> None:
    derivation = Bip32Derivation(
        master_fingerprint=bytes.fromhex("f57ec65d"),
        path="m/45'/1'/100'/0/0",
        pubkey=bytes.fromhex(PUBKEY_A),
    )
    multisig = generate_multisig_from_public_keys(
        Network.TESTNET, "P2SH-P2WSH", 2, PUBKEY_A, PUBKEY_B
    ).with_braid_details("{}", [derivation])

    data = multisig.to_dict()
    assert data["addressType"] == "P2SH-P2WSH"
    assert data["witnessScriptHex"] == MULTISIG_SCRIPT_HEX
    assert data["braidDetails"] == "{}"
    assert data["bip32Derivation"] == [
        {"masterFingerprint": "f57ec65d", "path": "m/45'/1'/100'/0/0", "pubkey": PUBKEY_A}
    ]


def test_accessors_read_the_descriptor() -> None:
    multisig = generate_multisig_from_public_keys(Network.TESTNET, "P2WSH", 2, PUBKEY_A, PUBKEY_B)
    assert multisig_address_type(multisig) == AddressType.P2WSH
    assert multisig_script(multisig).output.hex() == MULTISIG_SCRIPT_HEX
    assert multisig_braid_details(multisig) is None
    assert multisig_braid_details(multisig.with_braid_details("{}", [])) == "{}"


def test_script_asm_round_trip() -> None:
    asm = f"OP_2 {PUBKEY_A} {PUBKEY_B} OP_2 OP_CHECKMULTISIG"
    assert script_to_asm(bytes.fromhex(MULTISIG_SCRIPT_HEX)) == asm
    assert compile_script(asm).hex() == MULTISIG_SCRIPT_HEX
    with pytest.raises(ValueError, match="Invalid ASM token: OP_NOPE"):
        compile_script("OP_NOPE")
