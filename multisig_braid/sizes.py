"""Virtual-size estimates for multisig spends, one formula per address type.

Every formula assumes all inputs share one address type and ``m``-of-``n``
policy; mixed-type spends are not modelled.
"""

from __future__ import annotations

import math

from .encoding import compact_size_length

WITNESS_SCALE_FACTOR = 4
P2WSH_OUTPUT_SCRIPT_SIZE = 34


def estimate_multisig_p2sh_transaction_vsize(
    num_inputs: int, num_outputs: int, m: int, n: int
) -> int:
    base = 41 * num_inputs + 34 * num_outputs + 30
    # 72-byte signature plus push byte, 33-byte key plus push byte.
    signatures = (72 + 1) * m * num_inputs + (33 + 1) * n * num_inputs + 4 * num_inputs
    return base + signatures


def estimate_multisig_p2sh_p2wsh_transaction_vsize(
    num_inputs: int, num_outputs: int, m: int, n: int
) -> int:
    base = 76 * num_inputs + 34 * num_outputs + 30
    witness = 72 * m * num_inputs + 33 * n * num_inputs + 6 * num_inputs
    return math.ceil(0.75 * base + 0.25 * (base + witness))


def _txin_size() -> int:
    # prevout hash, prevout index, sequence, empty scriptSig length
    return 32 + 4 + 4 + 1


def _txout_size(script_size: int = P2WSH_OUTPUT_SCRIPT_SIZE) -> int:
    return 8 + compact_size_length(script_size) + script_size


def multisig_redeem_script_size(n: int) -> int:
    """OP_m, ``n`` pushed 33-byte keys, OP_n, OP_CHECKMULTISIG."""

    return 1 + n + 33 * n + 1 + 1


def multisig_witness_size(m: int, n: int) -> int:
    """Worst-case witness for one input: dummy, ``m`` 73-byte sigs, script."""

    items = compact_size_length(1 + m + 1)
    return items + 1 + m + 73 * m + 1 + multisig_redeem_script_size(n)


def _p2wsh_base_size(num_inputs: int, num_outputs: int) -> int:
    return (
        4
        + 4
        + compact_size_length(num_inputs)
        + num_inputs * _txin_size()
        + compact_size_length(num_outputs)
        + num_outputs * _txout_size()
    )


def _p2wsh_witness_size(num_inputs: int, m: int, n: int) -> int:
    # marker and flag bytes, then one witness stack per input
    return 2 + compact_size_length(num_inputs) + num_inputs * multisig_witness_size(m, n)


def estimate_multisig_p2wsh_transaction_vsize(
    num_inputs: int, num_outputs: int, m: int, n: int
) -> int:
    base = _p2wsh_base_size(num_inputs, num_outputs)
    witness = _p2wsh_witness_size(num_inputs, m, n)
    weight = base * (WITNESS_SCALE_FACTOR - 1) + base + witness
    return math.ceil(weight / WITNESS_SCALE_FACTOR)
