"""Multisig transaction inputs: the input record, BIP69 sorting and validation."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Sequence

from .multisig import Multisig
from .utils import validate_hex

TXID_LENGTH = 64


@dataclass(frozen=True)
class MultisigInput:
    """A UTXO locked to ``multisig``.

    ``txid`` is in display (big-endian) order. ``transaction_hex`` is the
    full funding transaction; it is required for PSBTs, where segwit inputs
    take their witness UTXO from it and P2SH inputs embed it whole.
    ``bip32_path`` selects the braid leaf when the descriptor alone is
    ambiguous.
    """

    txid: str | None
    index: int | str | None
    multisig: Multisig | None
    amount_sats: int | str | None = None
    transaction_hex: str | None = None
    bip32_path: str | None = None

    @property
    def utxo_id(self) -> str:
        """``txid:index`` with the txid lowercased and the index as an integer.

        Only meaningful for an input that passes :func:`validate_multisig_input`.
        """

        return f"{self.txid.lower()}:{int(self.index)}"


def sort_inputs(inputs: Iterable[MultisigInput]) -> List[MultisigInput]:
    """Return ``inputs`` in BIP69 order: ascending txid, then output index."""

    return sorted(inputs, key=lambda item: (item.txid.lower(), int(item.index)))


def validate_multisig_inputs(
    inputs: Sequence[MultisigInput] | None, braid_required: bool = False
) -> str:
    """Return the first problem found across ``inputs``, or ``""``."""

    if not inputs:
        return "At least one input is required."
    seen: set[str] = set()
    for item in inputs:
        if braid_required and item.multisig is not None and not item.multisig.braid_details:
            return "At least one input cannot be traced back to its set of extended public keys."
        error = validate_multisig_input(item)
        if error:
            return error
        if item.utxo_id in seen:
            return f"Duplicate input: {item.utxo_id}"
        seen.add(item.utxo_id)
    return ""


def validate_multisig_input(item: MultisigInput) -> str:
    if not item.txid:
        return "Does not have a transaction ID ('txid') property."
    error = validate_transaction_id(item.txid)
    if error:
        return error
    if item.index is None or item.index == "":
        return "Does not have a transaction index ('index') property."
    error = validate_transaction_index(item.index)
    if error:
        return error
    if item.multisig is None:
        return "Does not have a multisig object ('multisig') property."
    return ""


def validate_transaction_id(txid: str | None) -> str:
    if txid is None or txid == "":
        return "TXID cannot be blank."
    error = validate_hex(txid)
    if error:
        return f"TXID is invalid ({error})"
    if len(txid) != TXID_LENGTH:
        return f"TXID is invalid (must be {TXID_LENGTH}-characters)"
    return ""


def validate_transaction_index(index: int | str | None) -> str:
    if index is None or index == "":
        return "Index cannot be blank."
    try:
        value = int(index)
    except (TypeError, ValueError):
        return "Index is invalid"
    if value < 0:
        return "Index cannot be negative."
    return ""


def total_input_amount_sats(inputs: Iterable[MultisigInput]) -> int:
    return sum(int(item.amount_sats or 0) for item in inputs)
