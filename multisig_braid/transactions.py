"""Assemble unsigned and fully signed multisig transactions.

Inputs are always placed in BIP69 order, so the legacy transaction and the
PSBT built from the same inputs and outputs carry identical unsigned bytes
however the caller ordered them. Signature lists follow that same order.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, List, Sequence

from .address_types import AddressType
from .braid import Braid
from .inputs import MultisigInput, sort_inputs, validate_multisig_inputs
from .keys import ExtendedPublicKey
from .multisig import Multisig
from .networks import Network, coerce_network
from .outputs import MultisigOutput, validate_outputs
from .psbt import GlobalXpub, PSBT, global_xpub_record, psbt_input_formatter, psbt_output_formatter
from .script import OP_0, address_to_output_script, push_data
from .signatures import (
    DuplicateSignatureError,
    SignatureAccumulator,
    input_signature_hash,
    signature_no_sighash_type,
    signature_signer,
)
from .transaction import SIGHASH_ALL, Transaction, TxIn, TxOut

logger = logging.getLogger(__name__)

TRANSACTION_VERSION = 1


def _validated(
    network: Network,
    inputs: Sequence[MultisigInput],
    outputs: Sequence[MultisigOutput],
    braid_required: bool = False,
) -> List[MultisigInput]:
    error = validate_multisig_inputs(inputs, braid_required=braid_required)
    if error:
        raise ValueError(error)
    error = validate_outputs(network, outputs)
    if error:
        raise ValueError(error)
    ordered = sort_inputs(inputs)
    if [item.utxo_id for item in ordered] != [item.utxo_id for item in inputs]:
        logger.debug("Reordered %d inputs per BIP69", len(ordered))
    return ordered


def _build(network: Network, inputs: Sequence[MultisigInput], outputs: Sequence[MultisigOutput]) -> Transaction:
    return Transaction(
        version=TRANSACTION_VERSION,
        inputs=[TxIn.from_txid(item.txid, int(item.index)) for item in inputs],
        outputs=[
            TxOut(int(output.amount_sats), address_to_output_script(output.address, network))
            for output in outputs
        ],
    )


def unsigned_multisig_transaction(
    network: Network | str,
    inputs: Sequence[MultisigInput],
    outputs: Sequence[MultisigOutput],
) -> Transaction:
    """Validate and assemble the unsigned transaction.

    Raises
    ------
    ValueError
        With the first input or output validation message.
    """

    network = coerce_network(network)
    ordered = _validated(network, inputs, outputs)
    return _build(network, ordered, outputs)


def _global_xpubs(network: Network, inputs: Sequence[MultisigInput]) -> List[GlobalXpub]:
    records: Dict[str, ExtendedPublicKey] = {}
    for item in inputs:
        if not item.multisig.braid_details:
            continue
        braid = Braid.from_json(item.multisig.braid_details)
        for xpub in braid.extended_public_keys:
            node = ExtendedPublicKey.from_base58(xpub) if isinstance(xpub, str) else xpub
            records.setdefault(node.base58_string, node)
    return [global_xpub_record(node, network) for node in records.values()]


def unsigned_multisig_psbt(
    network: Network | str,
    inputs: Sequence[MultisigInput],
    outputs: Sequence[MultisigOutput],
    include_global_xpubs: bool = False,
) -> PSBT:
    """Assemble a PSBT for the same transaction :func:`unsigned_multisig_transaction` builds.

    Every input must trace back to a braid. With ``include_global_xpubs``
    the braid keys are added once each as global xpub records.
    """

    network = coerce_network(network)
    ordered = _validated(network, inputs, outputs, braid_required=True)
    psbt = PSBT(
        unsigned_tx=_build(network, ordered, outputs),
        inputs=[psbt_input_formatter(item) for item in ordered],
        outputs=[psbt_output_formatter(output) for output in outputs],
    )
    if include_global_xpubs:
        psbt.global_xpubs = _global_xpubs(network, ordered)
    return psbt


def multisig_witness_field(multisig: Multisig, sorted_signatures: Sequence[str]) -> List[bytes]:
    """Witness stack: dummy element, signatures with SIGHASH_ALL, witness script."""

    witness = [b""]
    witness.extend(
        bytes.fromhex(signature_no_sighash_type(signature)) + bytes([SIGHASH_ALL])
        for signature in sorted_signatures
    )
    witness.append(multisig.witness_script.output)
    return witness


def multisig_script_sig(multisig: Multisig, sorted_signatures: Sequence[str]) -> bytes:
    """P2SH scriptSig: ``OP_0 <sig>... <redeem script>``."""

    script = bytes([OP_0])
    for signature in sorted_signatures:
        script += push_data(bytes.fromhex(signature_no_sighash_type(signature)) + bytes([SIGHASH_ALL]))
    return script + push_data(multisig.redeem_script.output)


def signed_multisig_transaction(
    network: Network | str,
    inputs: Sequence[MultisigInput],
    outputs: Sequence[MultisigOutput],
    transaction_signatures: Sequence[Sequence[str]] | None,
) -> Transaction:
    """Combine signer signature sets into a fully signed transaction.

    ``transaction_signatures`` holds one list per signer, each with one
    signature per input in BIP69 order. Empty entries are skipped, so a
    signer may leave inputs unsigned as long as every input still collects
    its required signatures.
    """

    network = coerce_network(network)
    unsigned = unsigned_multisig_transaction(network, inputs, outputs)
    if not transaction_signatures:
        raise ValueError("At least one transaction signature is required.")
    ordered = sort_inputs(inputs)

    for position, signature_set in enumerate(transaction_signatures, start=1):
        if len(signature_set) < len(ordered):
            raise ValueError(
                f"Insufficient input signatures for transaction signature {position}: "
                f"require {len(ordered)}, received {len(signature_set)}."
            )
        if len(signature_set) > len(ordered):
            logger.warning(
                "Transaction signature %d has %d entries for %d inputs; ignoring the extra",
                position,
                len(signature_set),
                len(ordered),
            )

    signed_inputs = []
    for input_index, item in enumerate(ordered):
        number = input_index + 1
        input_signatures = [
            signature_set[input_index]
            for signature_set in transaction_signatures
            if signature_set[input_index]
        ]
        required = item.multisig.required_signers
        if len(input_signatures) < required:
            raise ValueError(
                f"Insufficient signatures for input {number}: "
                f"require {required}, received {len(input_signatures)}."
            )

        message_hash = input_signature_hash(unsigned, input_index, item)
        accumulator = SignatureAccumulator()
        for signature in input_signatures:
            try:
                pubkey = signature_signer(item.multisig.public_keys, message_hash, signature)
            except ValueError as exc:
                raise ValueError(f"Invalid signature for input {number}: {signature} ({exc})") from exc
            if not pubkey:
                raise ValueError(
                    f"Invalid signature for input {number}: {signature} "
                    f"(matches none of {', '.join(item.multisig.public_keys)})"
                )
            try:
                accumulator.add(pubkey, signature)
            except DuplicateSignatureError as exc:
                raise ValueError(f"Duplicate signature for input {number}: {signature}") from exc
        # OP_CHECKMULTISIG consumes exactly m signatures
        sorted_signatures = accumulator.ordered_for(item.multisig.public_keys)[:required]
        if len(accumulator) > required:
            logger.debug(
                "Input %d has %d valid signatures; using the first %d in script order",
                number,
                len(accumulator),
                required,
            )

        txin = unsigned.inputs[input_index]
        address_type = item.multisig.address_type
        if address_type == AddressType.P2WSH:
            txin = replace(txin, witness=tuple(multisig_witness_field(item.multisig, sorted_signatures)))
        elif address_type == AddressType.P2SH_P2WSH:
            txin = replace(
                txin,
                script_sig=push_data(item.multisig.redeem_script.output),
                witness=tuple(multisig_witness_field(item.multisig, sorted_signatures)),
            )
        else:
            txin = replace(txin, script_sig=multisig_script_sig(item.multisig, sorted_signatures))
        signed_inputs.append(txin)

    return Transaction(
        version=unsigned.version,
        inputs=signed_inputs,
        outputs=unsigned.outputs,
        locktime=unsigned.locktime,
    )
