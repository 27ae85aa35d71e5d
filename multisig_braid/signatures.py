"""Signature hashing, DER handling and verification for multisig inputs."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Iterator, List, Sequence

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    Prehashed,
    decode_dss_signature,
    encode_dss_signature,
)

from .inputs import MultisigInput, sort_inputs
from .keys import SECP256K1_ORDER
from .networks import Network
from .outputs import MultisigOutput
from .transaction import SIGHASH_ALL, Transaction

logger = logging.getLogger(__name__)


def signature_no_sighash_type(signature: str) -> str:
    """Strip a trailing sighash byte from a hex DER signature if present.

    The DER length byte describes the body; when it accounts for every byte
    after the header, there is no sighash byte to strip.
    """

    declared = int(signature[2:4], 16)
    if declared == (len(signature) - 4) // 2 and len(signature) % 2 == 0:
        return signature
    return signature[:-2]


def multisig_signature_buffer(signature: bytes) -> bytes:
    """Return the 64-byte ``r || s`` form of a DER signature.

    DER integers gain a leading zero byte when their top bit is set and lose
    leading zeros otherwise; both are normalized to 32 bytes.

    Raises
    ------
    ValueError
        If ``signature`` is not strict DER or ``r``/``s`` fall outside the
        curve order.
    """

    try:
        r, s = decode_dss_signature(signature)
    except ValueError as exc:
        raise ValueError(f"Invalid DER signature: {signature.hex()}") from exc
    if not (0 < r < SECP256K1_ORDER and 0 < s < SECP256K1_ORDER):
        raise ValueError(f"Invalid DER signature: {signature.hex()} (r or s out of range)")
    return r.to_bytes(32, "big") + s.to_bytes(32, "big")


def verify_signature(pubkey: bytes, message_hash: bytes, signature64: bytes) -> bool:
    """Verify a 64-byte ``r || s`` signature over a precomputed 32-byte hash."""

    try:
        public_key = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), pubkey)
    except ValueError:
        return False
    der = encode_dss_signature(
        int.from_bytes(signature64[:32], "big"), int.from_bytes(signature64[32:], "big")
    )
    try:
        public_key.verify(der, message_hash, ec.ECDSA(Prehashed(hashes.SHA256())))
    except InvalidSignature:
        return False
    return True


def input_signature_hash(transaction: Transaction, input_index: int, item: MultisigInput) -> bytes:
    """SIGHASH_ALL digest of an assembled ``transaction`` for the input spending ``item``."""

    if item.multisig.address_type.is_segwit:
        if item.amount_sats is None:
            raise ValueError(f"Input {input_index} needs an amount to sign a segwit spend")
        return transaction.hash_for_witness_v0(
            input_index, item.multisig.witness_script.output, int(item.amount_sats), SIGHASH_ALL
        )
    return transaction.hash_for_signature(
        input_index, item.multisig.redeem_script.output, SIGHASH_ALL
    )


def multisig_signature_hash(
    network: Network | str,
    inputs: Sequence[MultisigInput],
    outputs: Sequence[MultisigOutput],
    input_index: int,
) -> bytes:
    """Return the SIGHASH_ALL digest for ``input_index``.

    ``input_index`` refers to BIP69 order, the order inputs take in the
    assembled transaction. Segwit inputs hash the witness script and amount
    per BIP143; P2SH inputs use the legacy algorithm over the redeem script.
    """

    from .transactions import unsigned_multisig_transaction

    ordered = sort_inputs(inputs)
    transaction = unsigned_multisig_transaction(network, ordered, outputs)
    return input_signature_hash(transaction, input_index, ordered[input_index])


def signature_signer(public_keys: Iterable[str], message_hash: bytes, signature: str) -> str | bool:
    """Return the key in ``public_keys`` that signed ``message_hash``, or ``False``."""

    signature64 = multisig_signature_buffer(bytes.fromhex(signature_no_sighash_type(signature)))
    for pubkey in public_keys:
        if verify_signature(bytes.fromhex(pubkey), message_hash, signature64):
            return pubkey
    return False


def validate_multisig_signature(
    network: Network | str,
    inputs: Sequence[MultisigInput],
    outputs: Sequence[MultisigOutput],
    input_index: int,
    signature: str,
) -> str | bool:
    """Return the public key hex that produced ``signature``, or ``False``.

    Raises
    ------
    ValueError
        If ``signature`` is not a DER signature.
    """

    message_hash = multisig_signature_hash(network, inputs, outputs, input_index)
    item = sort_inputs(inputs)[input_index]
    pubkey = signature_signer(item.multisig.public_keys, message_hash, signature)
    if not pubkey:
        logger.debug("Signature for input %d matched no key of %s", input_index, item.multisig.address)
    return pubkey


class DuplicateSignatureError(ValueError):
    """Raised when a key signs the same input twice."""


class SignatureAccumulator:
    """Signatures for one input, keyed by the public key that made them."""

    def __init__(self) -> None:
        self._signatures: Dict[str, str] = {}

    def __len__(self) -> int:
        return len(self._signatures)

    def __contains__(self, pubkey: object) -> bool:
        return pubkey in self._signatures

    def __iter__(self) -> Iterator[str]:
        return iter(self._signatures)

    def add(self, pubkey: str, signature: str) -> None:
        if pubkey in self._signatures:
            raise DuplicateSignatureError(f"Duplicate signature for public key {pubkey}")
        self._signatures[pubkey] = signature

    def ordered_for(self, pubkeys: Iterable[str]) -> List[str]:
        """Signatures in the order their keys appear in ``pubkeys``."""

        return [self._signatures[pubkey] for pubkey in pubkeys if pubkey in self._signatures]
