"""Transaction outputs: the output record and amount/address validation."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Sequence, Tuple

from .addresses import validate_address
from .multisig import Bip32Derivation, Multisig
from .networks import Network

DUST_LIMIT_SATS = 546


@dataclass(frozen=True)
class MultisigOutput:
    """A payment to ``address``.

    Change outputs carry the ``multisig`` they pay back into so PSBTs can
    describe them. Outputs without one may carry pre-computed script and
    derivation metadata instead.
    """

    address: str | None
    amount_sats: int | str | None
    multisig: Multisig | None = None
    bip32_derivation: Tuple[Bip32Derivation, ...] | None = None
    redeem_script: bytes | None = None
    witness_script: bytes | None = None


def validate_outputs(
    network: Network | str,
    outputs: Sequence[MultisigOutput] | None,
    input_amount_sats: int | str | None = None,
) -> str:
    if not outputs:
        return "At least one output is required."
    for output in outputs:
        error = validate_output(network, output, input_amount_sats)
        if error:
            return error
    return ""


def validate_output(
    network: Network | str, output: MultisigOutput, input_amount_sats: int | str | None = None
) -> str:
    if output.amount_sats is None or output.amount_sats == "":
        return "Does not have an 'amountSats' property."
    error = validate_output_amount(output.amount_sats, input_amount_sats)
    if error:
        return error
    if not output.address:
        return "Does not have an 'address' property."
    error = validate_address(output.address, network)
    if error:
        return f"Has an invalid 'address' property: {error}."
    return ""


def _finite(value) -> Decimal | None:
    try:
        number = Decimal(str(value))
    except InvalidOperation:
        return None
    return number if number.is_finite() else None


def validate_output_amount(
    amount_sats: int | str | None,
    max_sats: int | str | None = None,
    min_sats: int | str = DUST_LIMIT_SATS,
) -> str:
    """Return an error for an unusable output amount, or ``""``.

    Amounts must be positive and strictly above ``min_sats`` (the dust
    limit). ``max_sats``, usually the input total, is an upper bound when
    given.
    """

    amount = _finite(amount_sats)
    if amount is None:
        return "Invalid output amount."
    if amount <= 0:
        return "Output amount must be positive."
    if amount <= Decimal(str(min_sats)):
        return "Output amount is too small."
    if max_sats is not None:
        total = _finite(max_sats)
        if total is None:
            return "Invalid total input amount."
        if total <= 0:
            return "Total input amount must be positive."
        if amount > total:
            return "Output amount is too large."
    return ""
