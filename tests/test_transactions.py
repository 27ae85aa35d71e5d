from __future__ import annotations

import pytest
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed

from multisig_braid.inputs import MultisigInput
from multisig_braid.multisig import generate_multisig_from_hex, generate_multisig_from_public_keys
from multisig_braid.networks import Network
from multisig_braid.outputs import MultisigOutput
from multisig_braid.script import compile_script
from multisig_braid.signatures import multisig_signature_hash
from multisig_braid.transactions import signed_multisig_transaction, unsigned_multisig_transaction

from vectors import SPENDS, spend_inputs, spend_outputs

P2SH_REDEEM_SCRIPT = (
    "522103684f6787d61cc6af5ea660129f97e312ce0e5276abaf569e842f167c46301260"
    "21030c58cc16013c7fdf510ab2b68be808e0de2b25d0f36bb17c60bafd11bb052d9e"
    "21020cc7153dd76284f35f8caa86a7d1cae228b10f1bb94dcdbc34ce579b2ea08e1053ae"
)
P2SH_SIGNATURES = [
    "30440220564e4623beaed42fb0302a2ee2e78e1e7cbee5ed256285b831450b70e8dbc2fa"
    "022018a29525a2deccbf397a4952d64a9b317bbd926d44418ec3f6cff4b2001b474c",
    "30440220707beb7625cb4b9925bbae2668d34d44de78879728e14bc40d0c84ea7947c986"
    "0220230dcbde54882b481e287d852d2545bb0d955af13984d06ff62ba4bd1de6cd59",
]
P2SH_SIGNED_HEX = (
    "0100000001d73e679ff387f1a0628c2ad9d3a966cef05b0931d9f0ea8ba7df3712486c6d91"
    "01000000fc004730440220564e4623beaed42fb0302a2ee2e78e1e7cbee5ed256285b83145"
    "0b70e8dbc2fa022018a29525a2deccbf397a4952d64a9b317bbd926d44418ec3f6cff4b200"
    "1b474c014730440220707beb7625cb4b9925bbae2668d34d44de78879728e14bc40d0c84ea"
    "7947c9860220230dcbde54882b481e287d852d2545bb0d955af13984d06ff62ba4bd1de6cd"
    "59014c69522103684f6787d61cc6af5ea660129f97e312ce0e5276abaf569e842f167c4630"
    "126021030c58cc16013c7fdf510ab2b68be808e0de2b25d0f36bb17c60bafd11bb052d9e21"
    "020cc7153dd76284f35f8caa86a7d1cae228b10f1bb94dcdbc34ce579b2ea08e1053aeffff"
    "ffff02a086010000000000160014e09bf5948b620e2f0c239bcf0b8d7cc4e72e5057963f0f"
    "000000000016001449cd70ee02b303694f3f07b5c0d6f34cce0c84f500000000"
)

SEGWIT_WITNESS_SCRIPT = (
    "522102a8513d9931896d5d3afc8063148db75d8851fd1fc41b1098ba2a6a766db563d4"
    "2103938dd09bf3dd29ddf41f264858accfa40b330c98e0ed27caf77734fac00139ba52ae"
)
P2SH_P2WSH_SIGNATURES = [
    "30450221009c3ffa779e7b9d7e3c16797f6a115a041e1df6026e963b20bb71990d351e5e84"
    "0220020361210576fba1b77846693ccf4fc81839bbf677cc24f41dc32127bad1a4be01",
    "304402206066043094575afffae92f17cb19503bc2bb9b80cd040462b4237f8fc14b39d102"
    "2008a9c89d39032d1732b80320194595c7f0411750b426b7c16e8d99b957c3abde01",
]
P2SH_P2WSH_SIGNED_HEX = (
    "0100000000010107091656218918c30f79148797c87aa5c2dd49335c46614c6c94ce24c30c"
    "4ba400000000232200207850fda5543a1a1d0ce8fe3e7dcd8f27935f3582530c5c3a8fc288"
    "b185687c44ffffffff01de8501000000000017a914eddeacef07dcb1b1162a2ba777f8fbda"
    "176614ed8704004830450221009c3ffa779e7b9d7e3c16797f6a115a041e1df6026e963b20"
    "bb71990d351e5e840220020361210576fba1b77846693ccf4fc81839bbf677cc24f41dc321"
    "27bad1a4be0147304402206066043094575afffae92f17cb19503bc2bb9b80cd040462b423"
    "7f8fc14b39d1022008a9c89d39032d1732b80320194595c7f0411750b426b7c16e8d99b957"
    "c3abde0147522102a8513d9931896d5d3afc8063148db75d8851fd1fc41b1098ba2a6a766d"
    "b563d42103938dd09bf3dd29ddf41f264858accfa40b330c98e0ed27caf77734fac00139ba"
    "52ae00000000"
)
P2WSH_SIGNATURES = [
    "3044022055a8e9b906ec3d838d508f654cbcd6619564c36613bdffc73cc35b9254d082ea02"
    "2026004844cc43ddd24fdbe201a1f0abd6202aac4249ef5965d5dc8cfed39e604301",
    "3045022100f6fed44d15fabe1b90be230489b350043065a665ab51c4fb700e966a7d76c63c"
    "02204bc315b359014201e4f5bc285aae000414755bcae48f17d9df490a433575d6e301",
]
P2WSH_SIGNED_HEX = (
    "01000000000101a4e3c1c3692cdf7673d8bf0e42b6bd323e7e2f02512a803e5b097fa0ae8e"
    "554b0000000000ffffffff0109860100000000002200201e78ff93203125e473770a2113fe"
    "ace9cbd1856704ed02a6df73cc5382d26cb50400473044022055a8e9b906ec3d838d508f65"
    "4cbcd6619564c36613bdffc73cc35b9254d082ea022026004844cc43ddd24fdbe201a1f0ab"
    "d6202aac4249ef5965d5dc8cfed39e604301483045022100f6fed44d15fabe1b90be230489"
    "b350043065a665ab51c4fb700e966a7d76c63c02204bc315b359014201e4f5bc285aae0004"
    "14755bcae48f17d9df490a433575d6e30147522102a8513d9931896d5d3afc8063148db75d"
    "8851fd1fc41b1098ba2a6a766db563d42103938dd09bf3dd29ddf41f264858accfa40b330c"
    "98e0ed27caf77734fac00139ba52ae00000000"
)


def _p2sh_spend():
    inputs = [
        MultisigInput(
            txid="916d6c481237dfa78beaf0d931095bf0ce66a9d3d92a8c62a0f187f39f673ed7",
            index=1,
            multisig=generate_multisig_from_hex(Network.TESTNET, "P2SH", P2SH_REDEEM_SCRIPT),
        )
    ]
    outputs = [
        MultisigOutput(address="tb1quzdlt9ytvg8z7rprn08shrtucnnju5zhf7jlsf", amount_sats=100000),
        MultisigOutput(address="tb1qf8xhpmszkvpkjnelq76up4hnfn8qep8406safy", amount_sats=999318),
    ]
    return inputs, outputs


def _segwit_spend(address_type: str, txid: str, address: str, amount: int):
    inputs = [
        MultisigInput(
            txid=txid,
            index=0,
            multisig=generate_multisig_from_hex(Network.TESTNET, address_type, SEGWIT_WITNESS_SCRIPT),
            amount_sats=100000,
        )
    ]
    return inputs, [MultisigOutput(address=address, amount_sats=amount)]


@pytest.mark.parametrize("spend", SPENDS, ids=lambda spend: spend["address_type"])
def test_unsigned_transaction_matches_vector(spend: dict) -> None:
    transaction = unsigned_multisig_transaction(
        Network.TESTNET, spend_inputs(spend), spend_outputs(spend)
    )
    assert transaction.to_hex() == spend["unsigned_hex"]


def test_unsigned_transaction_sorts_inputs() -> None:
    spend = SPENDS[0]
    shuffled = list(reversed(spend_inputs(spend)))
    transaction = unsigned_multisig_transaction(Network.TESTNET, shuffled, spend_outputs(spend))
    assert transaction.to_hex() == spend["unsigned_hex"]


def test_unsigned_transaction_validates() -> None:
    spend = SPENDS[0]
    with pytest.raises(ValueError, match="At least one input is required."):
        unsigned_multisig_transaction(Network.TESTNET, [], spend_outputs(spend))
    with pytest.raises(ValueError, match="At least one output is required."):
        unsigned_multisig_transaction(Network.TESTNET, spend_inputs(spend), [])
    inputs = spend_inputs(spend)
    with pytest.raises(ValueError, match="Duplicate input"):
        unsigned_multisig_transaction(Network.TESTNET, inputs + inputs[:1], spend_outputs(spend))
    with pytest.raises(ValueError, match="Has an invalid 'address' property"):
        unsigned_multisig_transaction(
            Network.MAINNET, inputs, spend_outputs(spend)
        )


def test_signed_p2sh_transaction() -> None:
    inputs, outputs = _p2sh_spend()
    signed = signed_multisig_transaction(
        Network.TESTNET, inputs, outputs, [[P2SH_SIGNATURES[0]], [P2SH_SIGNATURES[1]]]
    )
    assert signed.to_hex() == P2SH_SIGNED_HEX


def test_signed_p2sh_p2wsh_transaction() -> None:
    inputs, outputs = _segwit_spend(
        "P2SH-P2WSH",
        "a44b0cc324ce946c4c61465c3349ddc2a57ac8978714790fc318892156160907",
        "2NEvxtWnKxqcKDYnx8bYXhabQE33P5xAT5S",
        99806,
    )
    signed = signed_multisig_transaction(
        Network.TESTNET, inputs, outputs, [[P2SH_P2WSH_SIGNATURES[0]], [P2SH_P2WSH_SIGNATURES[1]]]
    )
    assert signed.to_hex() == P2SH_P2WSH_SIGNED_HEX


def test_signed_p2wsh_transaction() -> None:
    inputs, outputs = _segwit_spend(
        "P2WSH",
        "4b558eaea07f095b3e802a51022f7e3e32bdb6420ebfd87376df2c69c3c1e3a4",
        "tb1qreu0lyeqxyj7gumhpgs38l4va89arpt8qnks9fklw0x98qkjdj6sgg3anx",
        99849,
    )
    signed = signed_multisig_transaction(
        Network.TESTNET, inputs, outputs, [[P2WSH_SIGNATURES[1]], [P2WSH_SIGNATURES[0]]]
    )
    assert signed.to_hex() == P2WSH_SIGNED_HEX


@pytest.mark.parametrize(
    ("transaction_signatures", "message"),
    [
        ([], "At least one transaction signature is required."),
        ([[P2SH_SIGNATURES[0]]], "Insufficient signatures for input 1: require 2, received 1."),
        (
            [[P2SH_SIGNATURES[0]], []],
            "Insufficient input signatures for transaction signature 2: require 1, received 0.",
        ),
        ([[P2SH_SIGNATURES[0]], [P2SH_SIGNATURES[0]]], "Duplicate signature for input 1"),
        ([[P2SH_SIGNATURES[0]], ["foo"]], "Invalid signature for input 1: foo"),
        ([[P2SH_SIGNATURES[0]], [P2WSH_SIGNATURES[0]]], "Invalid signature for input 1"),
    ],
)
def test_signed_transaction_errors(transaction_signatures: list, message: str) -> None:
    inputs, outputs = _p2sh_spend()
    with pytest.raises(ValueError) as excinfo:
        signed_multisig_transaction(Network.TESTNET, inputs, outputs, transaction_signatures)
    assert str(excinfo.value).startswith(message)


OUT_OF_RANGE_SIGNATURE = "3026" + "0221" + "01" + "ff" * 32 + "020101" + "01"


def test_signature_with_oversized_integer_is_invalid() -> None:
    inputs, outputs = _p2sh_spend()
    with pytest.raises(ValueError) as excinfo:
        signed_multisig_transaction(
            Network.TESTNET, inputs, outputs, [[P2SH_SIGNATURES[0]], [OUT_OF_RANGE_SIGNATURE]]
        )
    assert str(excinfo.value).startswith(f"Invalid signature for input 1: {OUT_OF_RANGE_SIGNATURE}")
    assert "out of range" in str(excinfo.value)


def _cosigner_keys(count: int) -> list:
    return [ec.derive_private_key(secret, ec.SECP256K1()) for secret in range(1, count + 1)]


def _compressed_hex(private_key: ec.EllipticCurvePrivateKey) -> str:
    return private_key.public_key().public_bytes(
        serialization.Encoding.X962, serialization.PublicFormat.CompressedPoint
    ).hex()


@pytest.mark.parametrize("address_type", ["P2SH", "P2SH-P2WSH", "P2WSH"])
def test_extra_cosigner_signatures_are_capped_at_required(address_type: str) -> None:
    private_keys = _cosigner_keys(3)
    public_keys = [_compressed_hex(key) for key in private_keys]
    multisig = generate_multisig_from_public_keys(Network.TESTNET, address_type, 2, *public_keys)
    inputs = [MultisigInput("ab" * 32, 0, multisig, amount_sats=100000)]
    outputs = spend_outputs(SPENDS[2])
    digest = multisig_signature_hash(Network.TESTNET, inputs, outputs, 0)
    signatures = [
        key.sign(digest, ec.ECDSA(Prehashed(hashes.SHA256()))).hex() + "01" for key in private_keys
    ]

    # cosigners hand in their signatures in reverse script order
    signed = signed_multisig_transaction(
        Network.TESTNET, inputs, outputs, [[signature] for signature in reversed(signatures)]
    )

    txin = signed.inputs[0]
    if address_type == "P2SH":
        assert txin.script_sig == compile_script(
            f"OP_0 {signatures[0]} {signatures[1]} {multisig.redeem_script.output.hex()}"
        )
    else:
        assert [item.hex() for item in txin.witness] == [
            "",
            signatures[0],
            signatures[1],
            multisig.witness_script.output.hex(),
        ]
