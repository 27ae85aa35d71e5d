"""Base58Check, bech32/bech32m and compact-size encodings.

These are the byte-level codecs shared by extended keys, addresses,
transactions and PSBTs.
"""

from __future__ import annotations

from typing import List

from .utils import hash256

b58_digits = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"

BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
BECH32_CONST = 1
BECH32M_CONST = 0x2BC830A3


def base58_encode(data: bytes) -> str:
    value = int.from_bytes(data, "big")
    output: List[str] = []
    while value > 0:
        value, remainder = divmod(value, 58)
        output.append(b58_digits[remainder])
    encoded = "".join(output[::-1])

    leading_zero_count = 0
    for byte in data:
        if byte == 0:
            leading_zero_count += 1
        else:
            break

    return b58_digits[0] * leading_zero_count + encoded


def base58_decode(value: str) -> bytes:
    number = 0
    for character in value:
        if character not in b58_digits:
            raise ValueError(f"Invalid Base58 character: {character}")
        number = number * 58 + b58_digits.index(character)

    decoded = number.to_bytes((number.bit_length() + 7) // 8, "big") if number else b""

    padding = 0
    for character in value:
        if character == b58_digits[0]:
            padding += 1
        else:
            break
    return b"\x00" * padding + decoded


def base58_check_encode(payload: bytes) -> str:
    """Encode ``payload`` (version bytes included) with a 4-byte checksum."""

    return base58_encode(payload + hash256(payload)[:4])


def base58_check_decode(value: str) -> bytes:
    """Decode a Base58Check string and return the payload without checksum."""

    raw = base58_decode(value)
    if len(raw) < 5:
        raise ValueError("Base58Check payload is too short")
    payload, checksum = raw[:-4], raw[-4:]
    if hash256(payload)[:4] != checksum:
        raise ValueError("Invalid Base58Check checksum")
    return payload


def bech32_polymod(values: list[int]) -> int:
    """Compute bech32 checksum polymod."""
    GEN = [0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3]
    chk = 1
    for value in values:
        b = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ value
        for i in range(5):
            chk ^= GEN[i] if ((b >> i) & 1) else 0
    return chk


def bech32_hrp_expand(hrp: str) -> list[int]:
    """Expand HRP for bech32 checksum."""
    return [ord(x) >> 5 for x in hrp] + [0] + [ord(x) & 31 for x in hrp]


def bech32_create_checksum(hrp: str, data: list[int], const: int) -> list[int]:
    values = bech32_hrp_expand(hrp) + data
    polymod = bech32_polymod(values + [0, 0, 0, 0, 0, 0]) ^ const
    return [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]


def convertbits(data, frombits: int, tobits: int, pad: bool = True) -> list[int] | None:
    """Regroup ``data`` from ``frombits``-wide to ``tobits``-wide values.

    Returns ``None`` when the input cannot be converted without loss.
    """
    acc = 0
    bits = 0
    ret = []
    maxv = (1 << tobits) - 1
    max_acc = (1 << (frombits + tobits - 1)) - 1

    for value in data:
        if value < 0 or (value >> frombits):
            return None
        acc = ((acc << frombits) | value) & max_acc
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            ret.append((acc >> bits) & maxv)

    if pad:
        if bits:
            ret.append((acc << (tobits - bits)) & maxv)
    elif bits >= frombits or ((acc << (tobits - bits)) & maxv):
        return None

    return ret


def segwit_address_encode(hrp: str, witver: int, witprog: bytes) -> str:
    """Encode a segwit address: bech32 for v0, bech32m for v1 and later.

    Args:
        hrp: Human-readable part (``bc``, ``tb`` or ``bcrt``)
        witver: Witness version (0-16)
        witprog: Witness program bytes

    Returns:
        The encoded address
    """
    const = BECH32M_CONST if witver >= 1 else BECH32_CONST
    data = convertbits(witprog, 8, 5)
    if data is None:
        raise ValueError("Failed to convert witness program to 5-bit")
    combined = [witver] + data
    checksum = bech32_create_checksum(hrp, combined, const)
    return hrp + "1" + "".join(BECH32_CHARSET[d] for d in combined + checksum)


def segwit_address_decode(hrp: str, address: str) -> tuple[int, bytes]:
    """Decode a segwit address for ``hrp`` into ``(witver, witprog)``.

    Raises:
        ValueError: If the address is malformed, has the wrong hrp or fails
            its checksum.
    """
    if address.lower() != address and address.upper() != address:
        raise ValueError("Mixed-case bech32 address")
    address = address.lower()
    pos = address.rfind("1")
    if pos < 1 or pos + 7 > len(address) or len(address) > 90:
        raise ValueError("Invalid bech32 separator position")
    if address[:pos] != hrp:
        raise ValueError(f"Unexpected bech32 prefix {address[:pos]!r}, expected {hrp!r}")
    if any(character not in BECH32_CHARSET for character in address[pos + 1:]):
        raise ValueError("Invalid bech32 character")

    data = [BECH32_CHARSET.find(character) for character in address[pos + 1:]]
    const = bech32_polymod(bech32_hrp_expand(hrp) + data)
    if const not in (BECH32_CONST, BECH32M_CONST):
        raise ValueError("Invalid bech32 checksum")

    witver = data[0]
    witprog = convertbits(data[1:-6], 5, 8, pad=False)
    if witprog is None or not 2 <= len(witprog) <= 40 or witver > 16:
        raise ValueError("Invalid witness program")
    if witver == 0 and len(witprog) not in (20, 32):
        raise ValueError("Invalid witness v0 program length")
    expected_const = BECH32_CONST if witver == 0 else BECH32M_CONST
    if const != expected_const:
        raise ValueError("Witness version does not match checksum variant")
    return witver, bytes(witprog)


def ser_compact_size(n: int) -> bytes:
    """Serialize an integer as a Bitcoin compact size."""
    if n < 253:
        return bytes([n])
    elif n <= 0xFFFF:
        return b"\xfd" + n.to_bytes(2, "little")
    elif n <= 0xFFFFFFFF:
        return b"\xfe" + n.to_bytes(4, "little")
    else:
        return b"\xff" + n.to_bytes(8, "little")


def compact_size_length(n: int) -> int:
    return len(ser_compact_size(n))


def ser_string(data: bytes) -> bytes:
    """Length-prefix ``data`` with a compact size."""

    return ser_compact_size(len(data)) + data


class ByteReader:
    """Sequential reader over a bytes buffer for wire-format parsing."""

    def __init__(self, data: bytes) -> None:
        self.data = data
        self.offset = 0

    def remaining(self) -> int:
        return len(self.data) - self.offset

    def read(self, size: int) -> bytes:
        if size > self.remaining():
            raise ValueError(
                f"Unexpected end of data: wanted {size} bytes at offset {self.offset}"
            )
        chunk = self.data[self.offset:self.offset + size]
        self.offset += size
        return chunk

    def peek(self, size: int = 1) -> bytes:
        return self.data[self.offset:self.offset + size]

    def read_uint(self, size: int) -> int:
        return int.from_bytes(self.read(size), "little")

    def read_compact_size(self) -> int:
        prefix = self.read(1)[0]
        if prefix < 253:
            return prefix
        if prefix == 253:
            return self.read_uint(2)
        if prefix == 254:
            return self.read_uint(4)
        return self.read_uint(8)

    def read_string(self) -> bytes:
        return self.read(self.read_compact_size())
