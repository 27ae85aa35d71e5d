"""Fee-rate and fee validation plus linear fee estimates for multisig spends."""

from __future__ import annotations

import logging
from decimal import ROUND_CEILING, Decimal, InvalidOperation
from typing import Callable, Dict

from .address_types import AddressType
from .sizes import (
    estimate_multisig_p2sh_p2wsh_transaction_vsize,
    estimate_multisig_p2sh_transaction_vsize,
    estimate_multisig_p2wsh_transaction_vsize,
)

logger = logging.getLogger(__name__)

MAX_FEE_RATE_SATS_PER_VBYTE = Decimal(1000)
MAX_FEE_SATS = Decimal(2500000)

_VSIZE_ESTIMATORS: Dict[str, Callable[[int, int, int, int], int]] = {
    AddressType.P2SH.value: estimate_multisig_p2sh_transaction_vsize,
    AddressType.P2SH_P2WSH.value: estimate_multisig_p2sh_p2wsh_transaction_vsize,
    AddressType.P2WSH.value: estimate_multisig_p2wsh_transaction_vsize,
}


def _parse(value) -> Decimal | None:
    try:
        number = Decimal(str(value))
    except InvalidOperation:
        return None
    return number if number.is_finite() else None


def _plain(value: Decimal) -> str:
    if value == value.to_integral_value():
        return str(int(value))
    return format(value.normalize(), "f")


def calculate_fee_sats(fee_rate_sat_vb: int | float | str, vsize: int) -> int:
    """Return the ceil'd fee in satoshis for the provided vsize."""

    fee = Decimal(str(fee_rate_sat_vb)) * vsize
    return int(fee.to_integral_value(rounding=ROUND_CEILING))


def validate_fee_rate(fee_rate_sats_per_vbyte) -> str:
    """Return an error for an unusable fee rate (sats/vbyte), or ``""``."""

    rate = _parse(fee_rate_sats_per_vbyte)
    if rate is None:
        return "Invalid fee rate."
    if rate < 0:
        return "Fee rate cannot be negative."
    if rate > MAX_FEE_RATE_SATS_PER_VBYTE:
        return "Fee rate is too high."
    return ""


def validate_fee(fee_sats, input_amount_sats) -> str:
    """Return an error for an unusable absolute fee, or ``""``.

    The fee may not exceed the inputs it spends, nor ``MAX_FEE_SATS``.
    """

    fee = _parse(fee_sats)
    if fee is None:
        return "Invalid fee."
    total = _parse(input_amount_sats)
    if total is None:
        return "Invalid total input amount."
    if fee < 0:
        return "Fee cannot be negative."
    if total <= 0:
        return "Total input amount must be positive."
    if fee > total or fee > MAX_FEE_SATS:
        return "Fee is too high."
    return ""


def estimate_multisig_transaction_vsize(
    address_type: AddressType | str, num_inputs: int, num_outputs: int, m: int, n: int
) -> int | None:
    estimator = _VSIZE_ESTIMATORS.get(str(address_type))
    if estimator is None:
        logger.debug("No vsize formula for address type %s", address_type)
        return None
    return estimator(num_inputs, num_outputs, m, n)


def estimate_multisig_transaction_fee_rate(
    *,
    address_type: AddressType | str,
    num_inputs: int,
    num_outputs: int,
    m: int,
    n: int,
    fees_in_satoshis: int | str,
) -> str | None:
    """Return the fee rate (sats/vbyte) implied by an absolute fee."""

    vsize = estimate_multisig_transaction_vsize(address_type, num_inputs, num_outputs, m, n)
    if vsize is None:
        return None
    return _plain(Decimal(str(fees_in_satoshis)) / Decimal(vsize))


def estimate_multisig_transaction_fee(
    *,
    address_type: AddressType | str,
    num_inputs: int,
    num_outputs: int,
    m: int,
    n: int,
    fees_per_byte_in_satoshis: int | float | str,
) -> str | None:
    """Return the estimated fee in whole satoshis, rounded up, as a string.

    Returns ``None`` for an unknown address type.
    """

    vsize = estimate_multisig_transaction_vsize(address_type, num_inputs, num_outputs, m, n)
    if vsize is None:
        return None
    return str(calculate_fee_sats(fees_per_byte_in_satoshis, vsize))
