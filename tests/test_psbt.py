from __future__ import annotations

from dataclasses import replace

import pytest

from multisig_braid.braid import Braid, derive_multisig_by_index, derive_multisig_by_path, generate_braid
from multisig_braid.keys import ExtendedPublicKey
from multisig_braid.networks import Network
from multisig_braid.outputs import MultisigOutput
from multisig_braid.psbt import (
    PSBT,
    PSBTError,
    add_signatures_to_psbt,
    auto_load_psbt,
    parse_signature_array_from_psbt,
    parse_signatures_from_psbt,
    translate_psbt,
)
from multisig_braid.transactions import unsigned_multisig_psbt, unsigned_multisig_transaction

from vectors import (
    ACCOUNT_PATH,
    OPEN_SOURCE_FINGERPRINT,
    OPEN_SOURCE_TPUB,
    P2SH_SPEND,
    SPENDS,
    UNCHAINED_FINGERPRINT,
    UNCHAINED_TPUB,
    spend_inputs,
    spend_outputs,
)


def _braid(index: str) -> Braid:
    keys = [
        ExtendedPublicKey.from_base58(tpub).with_bip32_path(ACCOUNT_PATH).with_root_fingerprint(fp)
        for tpub, fp in (
            (OPEN_SOURCE_TPUB, OPEN_SOURCE_FINGERPRINT),
            (UNCHAINED_TPUB, UNCHAINED_FINGERPRINT),
        )
    ]
    return generate_braid(Network.TESTNET, "P2SH", keys, 2, index)


@pytest.fixture
def p2sh_psbt_parts():
    inputs = spend_inputs(P2SH_SPEND, multisig=derive_multisig_by_path(_braid("0"), "0/0"))
    (receive_address, receive_amount), (change_address, change_amount) = P2SH_SPEND["outputs"]
    change = derive_multisig_by_index(_braid("1"), 0)
    assert change.address == change_address
    outputs = [
        MultisigOutput(address=receive_address, amount_sats=receive_amount),
        MultisigOutput(address=change_address, amount_sats=change_amount, multisig=change),
    ]
    return inputs, outputs


def test_unsigned_psbt_matches_vector(p2sh_psbt_parts) -> None:
    inputs, outputs = p2sh_psbt_parts
    psbt = unsigned_multisig_psbt(Network.TESTNET, inputs, outputs)
    assert psbt.txn == P2SH_SPEND["unsigned_hex"]
    assert psbt.to_base64() == P2SH_SPEND["psbt"]


def test_unsigned_psbt_with_global_xpubs(p2sh_psbt_parts) -> None:
    inputs, outputs = p2sh_psbt_parts
    psbt = unsigned_multisig_psbt(Network.TESTNET, inputs, outputs, include_global_xpubs=True)
    assert {xpub.master_fingerprint.hex() for xpub in psbt.global_xpubs} == {
        OPEN_SOURCE_FINGERPRINT,
        UNCHAINED_FINGERPRINT,
    }
    assert {xpub.path for xpub in psbt.global_xpubs} == {ACCOUNT_PATH}
    reparsed = PSBT.from_base64(psbt.to_base64())
    assert len(reparsed.global_xpubs) == 2


def test_unsigned_psbt_requires_braids_and_funding_hex(p2sh_psbt_parts) -> None:
    with pytest.raises(ValueError, match="cannot be traced back"):
        unsigned_multisig_psbt(Network.TESTNET, spend_inputs(P2SH_SPEND), spend_outputs(P2SH_SPEND))

    inputs, outputs = p2sh_psbt_parts
    with pytest.raises(ValueError, match="missing its funding transaction hex"):
        unsigned_multisig_psbt(
            Network.TESTNET, [replace(item, transaction_hex=None) for item in inputs], outputs
        )


def test_psbt_round_trips() -> None:
    psbt = PSBT.from_base64(P2SH_SPEND["psbt"])
    assert psbt.to_base64() == P2SH_SPEND["psbt"]
    assert auto_load_psbt(psbt.to_hex()).to_base64() == P2SH_SPEND["psbt"]
    assert auto_load_psbt("not a psbt") is None
    assert auto_load_psbt(None) is None


def test_malformed_psbts_raise() -> None:
    with pytest.raises(PSBTError):
        PSBT.from_base64(P2SH_SPEND["psbt"][:40])
    with pytest.raises(PSBTError, match="magic"):
        PSBT.from_hex("00" * 10)


@pytest.mark.parametrize("spend", SPENDS, ids=lambda spend: spend["address_type"])
def test_parse_partially_signed(spend: dict) -> None:
    signed = spend["psbt_partially_signed"]
    assert parse_signatures_from_psbt(signed) == {spend["signer_public_key"]: spend["signatures"]}
    assert parse_signature_array_from_psbt(signed) == spend["signatures"]
    psbt = PSBT.from_base64(signed)
    assert all(psbt.validate_signatures_of_input(index) for index in range(len(psbt.inputs)))


def test_unsigned_psbt_has_no_signatures() -> None:
    assert parse_signatures_from_psbt(P2SH_SPEND["psbt"]) is None


@pytest.mark.parametrize("spend", SPENDS, ids=lambda spend: spend["address_type"])
def test_add_signatures(spend: dict) -> None:
    signer = spend["signer_public_key"]
    signed = add_signatures_to_psbt(
        Network.TESTNET, spend["psbt"], [signer] * len(spend["signatures"]), spend["signatures"]
    )
    assert parse_signatures_from_psbt(signed) == {signer: spend["signatures"]}


def test_add_signatures_rejects_wrong_input() -> None:
    signer = P2SH_SPEND["signer_public_key"]
    shuffled = list(reversed(P2SH_SPEND["signatures"]))
    with pytest.raises(PSBTError, match="One or more invalid signatures."):
        add_signatures_to_psbt(Network.TESTNET, P2SH_SPEND["psbt"], [signer] * 3, shuffled)


def test_translate_psbt() -> None:
    translated = translate_psbt(
        Network.TESTNET,
        "P2SH",
        P2SH_SPEND["psbt"],
        {"xfp": OPEN_SOURCE_FINGERPRINT, "path": ACCOUNT_PATH},
    )
    assert [item.txid for item in translated["unchained_inputs"]] == [
        utxo["txid"] for utxo in P2SH_SPEND["utxos"]
    ]
    assert {item.amount_sats for item in translated["unchained_inputs"]} == {100000}
    assert translated["unchained_inputs"][0].multisig.address == P2SH_SPEND["address"]
    assert [(o.address, o.amount_sats) for o in translated["unchained_outputs"]] == P2SH_SPEND["outputs"]
    assert [d.path for d in translated["bip32_derivations"]] == ["m/45'/1'/100'/0/0"] * 3


def test_translate_psbt_errors() -> None:
    with pytest.raises(ValueError, match="only P2SH"):
        translate_psbt(Network.TESTNET, "P2WSH", P2SH_SPEND["psbt"], {"xfp": "", "path": ""})
    with pytest.raises(ValueError, match="Signing key details not included"):
        translate_psbt(
            Network.TESTNET, "P2SH", P2SH_SPEND["psbt"], {"xfp": "deadbeef", "path": ACCOUNT_PATH}
        )


def test_psbt_and_legacy_builders_agree_for_any_input_order(p2sh_psbt_parts) -> None:
    inputs, outputs = p2sh_psbt_parts
    shuffled = [inputs[1], inputs[2], inputs[0]]
    legacy = unsigned_multisig_transaction(Network.TESTNET, shuffled, outputs)
    psbt = unsigned_multisig_psbt(Network.TESTNET, shuffled, outputs)
    assert psbt.txn == legacy.to_hex() == P2SH_SPEND["unsigned_hex"]
    assert psbt.to_base64() == P2SH_SPEND["psbt"]


def test_add_signatures_leaves_caller_psbt_untouched() -> None:
    signer = P2SH_SPEND["signer_public_key"]
    signatures = P2SH_SPEND["signatures"]
    psbt = PSBT.from_base64(P2SH_SPEND["psbt"])

    swapped = [signatures[1], signatures[0], signatures[2]]
    with pytest.raises(PSBTError, match="One or more invalid signatures."):
        add_signatures_to_psbt(Network.TESTNET, psbt, [signer] * 3, swapped)
    assert all(not item.partial_sigs for item in psbt.inputs)
    assert psbt.to_base64() == P2SH_SPEND["psbt"]

    signed = add_signatures_to_psbt(Network.TESTNET, psbt, [signer] * 3, signatures)
    assert parse_signatures_from_psbt(signed) == {signer: signatures}
    assert psbt.to_base64() == P2SH_SPEND["psbt"]
