"""Hex, base64, hashing and unit-conversion helpers."""

from __future__ import annotations

import hashlib
import re
from decimal import ROUND_DOWN, Decimal, InvalidOperation

from Crypto.Hash import RIPEMD160

VALID_BASE64_REGEX = re.compile(
    r"^(?:[A-Za-z0-9+/]{4})*(?:[A-Za-z0-9+/]{2}==|[A-Za-z0-9+/]{3}=|[A-Za-z0-9+/]{4})$"
)
VALID_HEX_REGEX = re.compile(r"^[0-9A-Fa-f]*$")

SATOSHIS_PER_BITCOIN = Decimal(10) ** 8


def to_hex_string(data: bytes | bytearray) -> str:
    return bytes(data).hex()


def valid_base64(value: str) -> bool:
    return bool(VALID_BASE64_REGEX.match(value))


def validate_hex(value: str) -> str:
    """Return an error message for malformed hex, or ``""`` when valid."""

    if len(value) % 2:
        return "Invalid hex: odd-length string."
    if not VALID_HEX_REGEX.match(value):
        return "Invalid hex: only characters a-f, A-F and 0-9 allowed."
    return ""


def _to_decimal(value: str | int | float | Decimal) -> Decimal:
    try:
        return Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"Invalid amount: {value}") from exc


def _plain(value: Decimal) -> str:
    if value == 0:
        return "0"
    return format(value.normalize(), "f")


def satoshis_to_bitcoins(satoshis: str | int | Decimal) -> str:
    """Convert satoshis to a BTC string, discarding fractional satoshis."""

    rounded = _to_decimal(satoshis).to_integral_value(rounding=ROUND_DOWN)
    return _plain(rounded / SATOSHIS_PER_BITCOIN)


def bitcoins_to_satoshis(btc: str | int | float | Decimal) -> str:
    """Convert a BTC amount to a satoshi string, rounding down."""

    value = _to_decimal(btc) * SATOSHIS_PER_BITCOIN
    return _plain(value.to_integral_value(rounding=ROUND_DOWN))


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def hash256(data: bytes) -> bytes:
    """Double SHA256, as used for txids and Base58Check checksums."""

    return sha256(sha256(data))


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))."""

    return RIPEMD160.new(sha256(data)).digest()
