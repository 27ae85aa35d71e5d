"""Multisig address types supported by the library."""

from __future__ import annotations

from enum import Enum


class AddressType(str, Enum):
    """Script nesting for a multisig locking script.

    ``P2SH`` wraps the bare multisig script directly, ``P2WSH`` commits to it
    as a witness script and ``P2SH_P2WSH`` nests that witness program inside
    a P2SH redeem script.
    """

    P2SH = "P2SH"
    P2SH_P2WSH = "P2SH-P2WSH"
    P2WSH = "P2WSH"

    def __str__(self) -> str:
        return self.value

    @property
    def is_segwit(self) -> bool:
        return self != AddressType.P2SH


MULTISIG_ADDRESS_TYPES = tuple(address_type.value for address_type in AddressType)


def coerce_address_type(value: "AddressType | str") -> AddressType:
    if isinstance(value, AddressType):
        return value
    try:
        return AddressType(value)
    except ValueError as exc:
        raise ValueError(
            f"Expected addressType to be one of: {', '.join(MULTISIG_ADDRESS_TYPES)}. "
            f"You sent {value}"
        ) from exc
