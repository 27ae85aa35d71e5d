"""Script construction for bare multisig, P2SH and P2WSH payments.

Multisig descriptors depend on the :class:`ScriptService` protocol rather
than on a concrete builder, so an alternative script library can be plugged
in. :class:`StandardScriptService` is the in-tree implementation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Protocol, Sequence, Tuple

from .encoding import (
    base58_check_decode,
    base58_check_encode,
    segwit_address_decode,
    segwit_address_encode,
)
from .networks import Network, network_data
from .utils import hash160, sha256

OP_0 = 0x00
OP_PUSHDATA1 = 0x4C
OP_PUSHDATA2 = 0x4D
OP_PUSHDATA4 = 0x4E
OP_1NEGATE = 0x4F
OP_1 = 0x51
OP_16 = 0x60
OP_DUP = 0x76
OP_EQUAL = 0x87
OP_EQUALVERIFY = 0x88
OP_HASH160 = 0xA9
OP_CHECKSIG = 0xAC
OP_CHECKMULTISIG = 0xAE

OPCODE_NAMES = {
    OP_0: "OP_0",
    OP_PUSHDATA1: "OP_PUSHDATA1",
    OP_PUSHDATA2: "OP_PUSHDATA2",
    OP_PUSHDATA4: "OP_PUSHDATA4",
    OP_1NEGATE: "OP_1NEGATE",
    OP_DUP: "OP_DUP",
    OP_EQUAL: "OP_EQUAL",
    OP_EQUALVERIFY: "OP_EQUALVERIFY",
    OP_HASH160: "OP_HASH160",
    OP_CHECKSIG: "OP_CHECKSIG",
    OP_CHECKMULTISIG: "OP_CHECKMULTISIG",
}
OPCODE_NAMES.update({OP_1 + n: f"OP_{n + 1}" for n in range(16)})
OPCODES_BY_NAME = {name: code for code, name in OPCODE_NAMES.items()}
OPCODES_BY_NAME["OP_FALSE"] = OP_0
OPCODES_BY_NAME["OP_TRUE"] = OP_1

MAX_SCRIPT_ELEMENT_SIZE = 520
MAX_MULTISIG_KEYS = 16


def push_data(data: bytes) -> bytes:
    """Return the minimal push opcode sequence for ``data``."""

    length = len(data)
    if length > MAX_SCRIPT_ELEMENT_SIZE:
        raise ValueError(f"Push of {length} bytes exceeds {MAX_SCRIPT_ELEMENT_SIZE}")
    if length < OP_PUSHDATA1:
        return bytes([length]) + data
    if length <= 0xFF:
        return bytes([OP_PUSHDATA1, length]) + data
    return bytes([OP_PUSHDATA2]) + length.to_bytes(2, "little") + data


def small_int_opcode(value: int) -> int:
    if value == 0:
        return OP_0
    if not 1 <= value <= 16:
        raise ValueError(f"Small integer out of range: {value}")
    return OP_1 + value - 1


def decode_small_int(opcode: int) -> int | None:
    if opcode == OP_0:
        return 0
    if OP_1 <= opcode <= OP_16:
        return opcode - OP_1 + 1
    return None


def parse_script(script: bytes) -> List[int | bytes]:
    """Split a script into opcodes (ints) and pushed data (bytes)."""

    chunks: List[int | bytes] = []
    offset = 0
    while offset < len(script):
        opcode = script[offset]
        offset += 1
        if 0 < opcode < OP_PUSHDATA1:
            size = opcode
        elif opcode == OP_PUSHDATA1:
            size = script[offset] if offset < len(script) else -1
            offset += 1
        elif opcode == OP_PUSHDATA2:
            size = int.from_bytes(script[offset:offset + 2], "little")
            offset += 2
        elif opcode == OP_PUSHDATA4:
            size = int.from_bytes(script[offset:offset + 4], "little")
            offset += 4
        else:
            chunks.append(opcode)
            continue
        if size < 0 or offset + size > len(script):
            raise ValueError("Script push exceeds script length")
        chunks.append(script[offset:offset + size])
        offset += size
    return chunks


def script_to_asm(script: bytes) -> str:
    parts = []
    for chunk in parse_script(script):
        if isinstance(chunk, bytes):
            parts.append(chunk.hex())
        else:
            parts.append(OPCODE_NAMES.get(chunk, f"OP_UNKNOWN{chunk}"))
    return " ".join(parts)


def compile_script(asm: str) -> bytes:
    """Compile a space-separated ASM string (opcode names and hex pushes)."""

    script = b""
    for token in asm.split():
        if token in OPCODES_BY_NAME:
            script += bytes([OPCODES_BY_NAME[token]])
            continue
        try:
            data = bytes.fromhex(token)
        except ValueError as exc:
            raise ValueError(f"Invalid ASM token: {token}") from exc
        script += push_data(data)
    return script


def decode_multisig_script(script: bytes) -> Tuple[int, List[bytes]]:
    """Return ``(m, pubkeys)`` for an ``OP_m <keys> OP_n OP_CHECKMULTISIG`` script.

    Raises:
        ValueError: If ``script`` is not a well-formed bare multisig script.
    """

    chunks = parse_script(script)
    if len(chunks) < 4 or chunks[-1] != OP_CHECKMULTISIG:
        raise ValueError("Script is not a multisig script")
    m = decode_small_int(chunks[0]) if isinstance(chunks[0], int) else None
    n = decode_small_int(chunks[-2]) if isinstance(chunks[-2], int) else None
    pubkeys = chunks[1:-2]
    if m is None or n is None or m < 1:
        raise ValueError("Multisig script has invalid signer counts")
    if any(not isinstance(pubkey, bytes) or len(pubkey) not in (33, 65) for pubkey in pubkeys):
        raise ValueError("Multisig script contains an invalid public key push")
    if len(pubkeys) != n or m > n:
        raise ValueError(f"Multisig script declares {m}-of-{n} with {len(pubkeys)} keys")
    return m, list(pubkeys)


@dataclass(frozen=True)
class Payment:
    """A locking script and, for wrapping payments, the script it commits to."""

    name: str
    output: bytes
    redeem: "Payment | None" = None
    address: str | None = None
    m: int | None = None
    pubkeys: Tuple[bytes, ...] = ()

    @property
    def n(self) -> int:
        return len(self.pubkeys)

    @property
    def hex(self) -> str:
        return self.output.hex()


class ScriptService(Protocol):
    """Capability interface for building multisig payment scripts."""

    def p2ms(self, m: int, pubkeys: Sequence[bytes]) -> Payment:
        """Return the bare ``m``-of-``n`` multisig payment."""

    def p2sh(self, redeem: Payment, network: Network) -> Payment:
        """Return a P2SH payment committing to ``redeem``."""

    def p2wsh(self, redeem: Payment, network: Network) -> Payment:
        """Return a native P2WSH payment committing to ``redeem``."""


class StandardScriptService:
    """Builds standard scripts with the in-tree encoders."""

    def p2ms(self, m: int, pubkeys: Sequence[bytes]) -> Payment:
        n = len(pubkeys)
        if n == 0 or n > MAX_MULTISIG_KEYS:
            raise ValueError(f"Multisig requires between 1 and {MAX_MULTISIG_KEYS} public keys")
        if m < 1:
            raise ValueError("Required signers must be at least 1")
        if m > n:
            raise ValueError(f"Required signers ({m}) cannot exceed total signers ({n})")
        output = bytes([small_int_opcode(m)])
        for pubkey in pubkeys:
            output += push_data(pubkey)
        output += bytes([small_int_opcode(n), OP_CHECKMULTISIG])
        return Payment(name="p2ms", output=output, m=m, pubkeys=tuple(pubkeys))

    def p2sh(self, redeem: Payment, network: Network) -> Payment:
        script_hash = hash160(redeem.output)
        output = bytes([OP_HASH160]) + push_data(script_hash) + bytes([OP_EQUAL])
        address = base58_check_encode(bytes([network_data(network).script_hash]) + script_hash)
        return Payment(
            name=f"p2sh-{redeem.name}",
            output=output,
            redeem=redeem,
            address=address,
            m=redeem.m,
            pubkeys=redeem.pubkeys,
        )

    def p2wsh(self, redeem: Payment, network: Network) -> Payment:
        program = sha256(redeem.output)
        output = bytes([OP_0]) + push_data(program)
        address = segwit_address_encode(network_data(network).bech32_hrp, 0, program)
        return Payment(
            name=f"p2wsh-{redeem.name}",
            output=output,
            redeem=redeem,
            address=address,
            m=redeem.m,
            pubkeys=redeem.pubkeys,
        )


def address_to_output_script(address: str, network: Network) -> bytes:
    """Return the scriptPubKey paying to ``address`` on ``network``.

    Raises:
        ValueError: If the address is malformed or belongs to another network.
    """

    params = network_data(network)
    if address.lower().startswith(params.bech32_hrp + "1"):
        witver, program = segwit_address_decode(params.bech32_hrp, address)
        return bytes([small_int_opcode(witver)]) + push_data(program)

    payload = base58_check_decode(address)
    if len(payload) != 21:
        raise ValueError(f"Invalid address payload length for {address}")
    version, digest = payload[0], payload[1:]
    if version == params.pubkey_hash:
        return bytes([OP_DUP, OP_HASH160]) + push_data(digest) + bytes([OP_EQUALVERIFY, OP_CHECKSIG])
    if version == params.script_hash:
        return bytes([OP_HASH160]) + push_data(digest) + bytes([OP_EQUAL])
    raise ValueError(f"Address {address} does not belong to network {network}")


def output_script_to_address(script: bytes, network: Network) -> str | None:
    """Return the address for a standard scriptPubKey, or ``None``."""

    params = network_data(network)
    if len(script) == 23 and script[:2] == bytes([OP_HASH160, 20]) and script[-1] == OP_EQUAL:
        return base58_check_encode(bytes([params.script_hash]) + script[2:22])
    if (
        len(script) == 25
        and script[:3] == bytes([OP_DUP, OP_HASH160, 20])
        and script[-2:] == bytes([OP_EQUALVERIFY, OP_CHECKSIG])
    ):
        return base58_check_encode(bytes([params.pubkey_hash]) + script[3:23])
    if 4 <= len(script) <= 42 and script[1] == len(script) - 2:
        witver = decode_small_int(script[0])
        if witver is not None:
            return segwit_address_encode(params.bech32_hrp, witver, script[2:])
    return None
