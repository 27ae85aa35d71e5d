"""Bitcoin transaction wire format and signature-hash preimages."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field, replace
from typing import List, Sequence

from .encoding import ByteReader, ser_compact_size, ser_string
from .utils import hash256

SIGHASH_ALL = 0x01
DEFAULT_SEQUENCE = 0xFFFFFFFF
DEFAULT_VERSION = 1


@dataclass(frozen=True)
class TxIn:
    """A transaction input. ``prev_hash`` is in wire (little-endian) order."""

    prev_hash: bytes
    prev_index: int
    script_sig: bytes = b""
    sequence: int = DEFAULT_SEQUENCE
    witness: Sequence[bytes] = ()

    @classmethod
    def from_txid(cls, txid: str, index: int, sequence: int = DEFAULT_SEQUENCE) -> "TxIn":
        return cls(prev_hash=bytes.fromhex(txid)[::-1], prev_index=int(index), sequence=sequence)

    @property
    def txid(self) -> str:
        return self.prev_hash[::-1].hex()

    def serialize(self, script_sig: bytes | None = None) -> bytes:
        script = self.script_sig if script_sig is None else script_sig
        return (
            self.prev_hash
            + struct.pack("<I", self.prev_index)
            + ser_string(script)
            + struct.pack("<I", self.sequence)
        )

    def serialize_witness(self) -> bytes:
        return ser_compact_size(len(self.witness)) + b"".join(
            ser_string(item) for item in self.witness
        )


@dataclass(frozen=True)
class TxOut:
    value: int
    script_pubkey: bytes

    def serialize(self) -> bytes:
        return struct.pack("<q", self.value) + ser_string(self.script_pubkey)


@dataclass(frozen=True)
class Transaction:
    version: int = DEFAULT_VERSION
    inputs: List[TxIn] = field(default_factory=list)
    outputs: List[TxOut] = field(default_factory=list)
    locktime: int = 0

    @property
    def has_witness(self) -> bool:
        return any(txin.witness for txin in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        segwit = include_witness and self.has_witness
        data = struct.pack("<i", self.version)
        if segwit:
            data += b"\x00\x01"
        data += ser_compact_size(len(self.inputs))
        data += b"".join(txin.serialize() for txin in self.inputs)
        data += ser_compact_size(len(self.outputs))
        data += b"".join(txout.serialize() for txout in self.outputs)
        if segwit:
            data += b"".join(txin.serialize_witness() for txin in self.inputs)
        data += struct.pack("<I", self.locktime)
        return data

    def to_hex(self) -> str:
        return self.serialize().hex()

    def txid(self) -> str:
        return hash256(self.serialize(include_witness=False))[::-1].hex()

    @classmethod
    def deserialize(cls, data: bytes) -> "Transaction":
        reader = ByteReader(data)
        version = struct.unpack("<i", reader.read(4))[0]
        segwit = reader.peek(2) == b"\x00\x01"
        if segwit:
            reader.read(2)

        inputs = []
        for _ in range(reader.read_compact_size()):
            prev_hash = reader.read(32)
            prev_index = reader.read_uint(4)
            script_sig = reader.read_string()
            sequence = reader.read_uint(4)
            inputs.append(TxIn(prev_hash, prev_index, script_sig, sequence))

        outputs = []
        for _ in range(reader.read_compact_size()):
            value = struct.unpack("<q", reader.read(8))[0]
            outputs.append(TxOut(value, reader.read_string()))

        if segwit:
            inputs = [
                replace(txin, witness=tuple(reader.read_string() for _ in range(reader.read_compact_size())))
                for txin in inputs
            ]
        locktime = reader.read_uint(4)
        if reader.remaining():
            raise ValueError(f"Transaction has {reader.remaining()} trailing bytes")
        return cls(version=version, inputs=inputs, outputs=outputs, locktime=locktime)

    @classmethod
    def from_hex(cls, value: str) -> "Transaction":
        try:
            data = bytes.fromhex(value)
        except ValueError as exc:
            raise ValueError(f"Invalid transaction hex: {exc}") from exc
        return cls.deserialize(data)

    def hash_for_signature(self, input_index: int, script_code: bytes, sighash_type: int = SIGHASH_ALL) -> bytes:
        """Legacy signature hash: only ``input_index`` carries ``script_code``."""

        if sighash_type != SIGHASH_ALL:
            raise ValueError("Only SIGHASH_ALL is supported")
        if not 0 <= input_index < len(self.inputs):
            raise ValueError(f"Input index {input_index} out of range")
        data = struct.pack("<i", self.version)
        data += ser_compact_size(len(self.inputs))
        for position, txin in enumerate(self.inputs):
            data += txin.serialize(script_code if position == input_index else b"")
        data += ser_compact_size(len(self.outputs))
        data += b"".join(txout.serialize() for txout in self.outputs)
        data += struct.pack("<I", self.locktime)
        data += struct.pack("<I", sighash_type)
        return hash256(data)

    def hash_for_witness_v0(
        self, input_index: int, script_code: bytes, amount: int, sighash_type: int = SIGHASH_ALL
    ) -> bytes:
        """BIP143 signature hash for a version 0 witness input."""

        if sighash_type != SIGHASH_ALL:
            raise ValueError("Only SIGHASH_ALL is supported")
        if not 0 <= input_index < len(self.inputs):
            raise ValueError(f"Input index {input_index} out of range")
        hash_prevouts = hash256(
            b"".join(txin.prev_hash + struct.pack("<I", txin.prev_index) for txin in self.inputs)
        )
        hash_sequence = hash256(b"".join(struct.pack("<I", txin.sequence) for txin in self.inputs))
        hash_outputs = hash256(b"".join(txout.serialize() for txout in self.outputs))
        txin = self.inputs[input_index]
        preimage = (
            struct.pack("<i", self.version)
            + hash_prevouts
            + hash_sequence
            + txin.prev_hash
            + struct.pack("<I", txin.prev_index)
            + ser_string(script_code)
            + struct.pack("<q", amount)
            + struct.pack("<I", txin.sequence)
            + hash_outputs
            + struct.pack("<I", self.locktime)
            + struct.pack("<I", sighash_type)
        )
        return hash256(preimage)
