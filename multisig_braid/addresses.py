"""Address validation for the supported networks."""

from __future__ import annotations

import re

from .networks import Network, coerce_network, is_testnet_family
from .script import address_to_output_script

MAINNET_ADDRESS_MAGIC_BYTE_PATTERN = "^(bc1|[13])"
TESTNET_ADDRESS_MAGIC_BYTE_PATTERN = "^(tb1|bcrt1|[mn2])"
ADDRESS_BODY_PATTERN = "[A-HJ-NP-Za-km-z1-9]+$"
BECH32_ADDRESS_MAGIC_BYTE_REGEX = re.compile(r"^(tb|bc)")
BECH32_ADDRESS_BODY_PATTERN = "[ac-hj-np-z02-9]+$"


def _decodes(address: str, network: Network) -> bool:
    # Testnet-family prefixes are shared, so any of those networks may own it.
    candidates = [Network.TESTNET, Network.REGTEST] if is_testnet_family(network) else [network]
    for candidate in candidates:
        try:
            address_to_output_script(address, candidate)
        except ValueError:
            continue
        return True
    return False


def validate_address(address: str | None, network: Network | str) -> str:
    """Return an error message for an address not valid on ``network``, or ``""``."""

    if not address or not address.strip():
        return "Address cannot be blank."

    network = coerce_network(network)
    testnet = is_testnet_family(network)
    magic = TESTNET_ADDRESS_MAGIC_BYTE_PATTERN if testnet else MAINNET_ADDRESS_MAGIC_BYTE_PATTERN
    body = (
        BECH32_ADDRESS_BODY_PATTERN
        if BECH32_ADDRESS_MAGIC_BYTE_REGEX.match(address)
        else ADDRESS_BODY_PATTERN
    )
    if not re.match(magic + body, address):
        if testnet:
            return (
                "Address must start with one of 'tb1', 'm', 'n', or '2' "
                "followed by letters or digits."
            )
        return "Address must start with either of 'bc1', '1' or '3' followed by letters or digits."

    return "" if _decodes(address, network) else "Address is invalid."
