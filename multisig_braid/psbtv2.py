"""Version 2 partially signed transactions (BIP370).

A v2 PSBT has no global unsigned transaction. Its version, locktime and
per-input outpoints and per-output amounts are spread over the maps, and the
inputs and outputs can be added or removed while ``tx_modifiable`` allows it.
``PSBTV2.from_v0`` and ``PSBTV2.to_v0`` map to and from :class:`PSBT`, which
the signing helpers work with.
"""

from __future__ import annotations

import base64
import logging
import struct
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Tuple

from .encoding import ByteReader, ser_compact_size
from .psbt import (
    PSBT,
    PSBT_GLOBAL_UNSIGNED_TX,
    PSBT_GLOBAL_VERSION,
    PSBT_GLOBAL_XPUB,
    PSBT_MAGIC_BYTES,
    GlobalXpub,
    PSBTError,
    PSBTInput,
    PSBTOutput,
    _decode_base64,
    _decode_derivation,
    _decode_hex,
    _encode_derivation,
    _read_map,
    _serialize_map,
)
from .transaction import DEFAULT_SEQUENCE, Transaction, TxIn, TxOut

logger = logging.getLogger(__name__)

PSBT_GLOBAL_TX_VERSION = 0x02
PSBT_GLOBAL_FALLBACK_LOCKTIME = 0x03
PSBT_GLOBAL_INPUT_COUNT = 0x04
PSBT_GLOBAL_OUTPUT_COUNT = 0x05
PSBT_GLOBAL_TX_MODIFIABLE = 0x06

PSBT_IN_PREVIOUS_TXID = 0x0E
PSBT_IN_OUTPUT_INDEX = 0x0F
PSBT_IN_SEQUENCE = 0x10
PSBT_IN_REQUIRED_TIME_LOCKTIME = 0x11
PSBT_IN_REQUIRED_HEIGHT_LOCKTIME = 0x12

PSBT_OUT_AMOUNT = 0x03
PSBT_OUT_SCRIPT = 0x04

TX_MODIFIABLE_INPUTS = 0x01
TX_MODIFIABLE_OUTPUTS = 0x02
TX_MODIFIABLE_SIGHASH_SINGLE = 0x04

SIGHASH_NONE = 0x02
SIGHASH_SINGLE = 0x03
SIGHASH_ANYONECANPAY = 0x80

# nLockTime values below this are block heights, the rest are timestamps
LOCKTIME_THRESHOLD = 500_000_000

_GLOBAL_KEYS = {
    PSBT_GLOBAL_UNSIGNED_TX,
    PSBT_GLOBAL_TX_VERSION,
    PSBT_GLOBAL_FALLBACK_LOCKTIME,
    PSBT_GLOBAL_INPUT_COUNT,
    PSBT_GLOBAL_OUTPUT_COUNT,
    PSBT_GLOBAL_TX_MODIFIABLE,
    PSBT_GLOBAL_VERSION,
}
_INPUT_KEYS = {
    PSBT_IN_PREVIOUS_TXID,
    PSBT_IN_OUTPUT_INDEX,
    PSBT_IN_SEQUENCE,
    PSBT_IN_REQUIRED_TIME_LOCKTIME,
    PSBT_IN_REQUIRED_HEIGHT_LOCKTIME,
}
_OUTPUT_KEYS = {PSBT_OUT_AMOUNT, PSBT_OUT_SCRIPT}


def _uint32(value: bytes | None) -> int | None:
    if value is None:
        return None
    return struct.unpack("<I", value)[0]


def _split_entries(entries: List[Tuple[bytes, bytes]], key_types: set) -> Tuple[Dict[int, bytes], List[Tuple[bytes, bytes]]]:
    """Separate keyless v2 fields from the entries shared with version 0."""

    v2_fields = {}
    rest = []
    for key, value in entries:
        if len(key) == 1 and key[0] in key_types:
            v2_fields[key[0]] = value
        else:
            rest.append((key, value))
    return v2_fields, rest


def _shared_fields(item: Any, base: type) -> Dict[str, Any]:
    values = {}
    for item_field in fields(base):
        value = getattr(item, item_field.name)
        values[item_field.name] = dict(value) if isinstance(value, dict) else value
    return values


@dataclass
class PSBTV2Input(PSBTInput):
    """A v2 input map. ``previous_txid`` is in wire (little-endian) order."""

    previous_txid: bytes = b""
    output_index: int = 0
    sequence: int | None = None
    required_time_locktime: int | None = None
    required_height_locktime: int | None = None

    @property
    def txid(self) -> str:
        return self.previous_txid[::-1].hex()

    def entries(self) -> List[Tuple[bytes, bytes]]:
        entries = super().entries()
        entries.append((bytes([PSBT_IN_PREVIOUS_TXID]), self.previous_txid))
        entries.append((bytes([PSBT_IN_OUTPUT_INDEX]), struct.pack("<I", self.output_index)))
        if self.sequence is not None:
            entries.append((bytes([PSBT_IN_SEQUENCE]), struct.pack("<I", self.sequence)))
        if self.required_time_locktime is not None:
            entries.append(
                (bytes([PSBT_IN_REQUIRED_TIME_LOCKTIME]), struct.pack("<I", self.required_time_locktime))
            )
        if self.required_height_locktime is not None:
            entries.append(
                (bytes([PSBT_IN_REQUIRED_HEIGHT_LOCKTIME]), struct.pack("<I", self.required_height_locktime))
            )
        return entries

    @classmethod
    def from_entries(cls, entries: List[Tuple[bytes, bytes]]) -> "PSBTV2Input":
        v2_fields, rest = _split_entries(entries, _INPUT_KEYS)
        if PSBT_IN_PREVIOUS_TXID not in v2_fields or PSBT_IN_OUTPUT_INDEX not in v2_fields:
            raise PSBTError("PSBT version 2 input needs a previous txid and an output index")
        previous_txid = v2_fields[PSBT_IN_PREVIOUS_TXID]
        if len(previous_txid) != 32:
            raise PSBTError(f"Invalid previous txid of {len(previous_txid)} bytes")
        item = super().from_entries(rest)
        item.previous_txid = previous_txid
        item.output_index = _uint32(v2_fields[PSBT_IN_OUTPUT_INDEX])
        item.sequence = _uint32(v2_fields.get(PSBT_IN_SEQUENCE))
        item.required_time_locktime = _uint32(v2_fields.get(PSBT_IN_REQUIRED_TIME_LOCKTIME))
        item.required_height_locktime = _uint32(v2_fields.get(PSBT_IN_REQUIRED_HEIGHT_LOCKTIME))
        return item


@dataclass
class PSBTV2Output(PSBTOutput):
    amount: int = 0
    script: bytes = b""

    def entries(self) -> List[Tuple[bytes, bytes]]:
        entries = super().entries()
        entries.append((bytes([PSBT_OUT_AMOUNT]), struct.pack("<q", self.amount)))
        entries.append((bytes([PSBT_OUT_SCRIPT]), self.script))
        return entries

    @classmethod
    def from_entries(cls, entries: List[Tuple[bytes, bytes]]) -> "PSBTV2Output":
        v2_fields, rest = _split_entries(entries, _OUTPUT_KEYS)
        if PSBT_OUT_AMOUNT not in v2_fields or PSBT_OUT_SCRIPT not in v2_fields:
            raise PSBTError("PSBT version 2 output needs an amount and a script")
        item = super().from_entries(rest)
        item.amount = struct.unpack("<q", v2_fields[PSBT_OUT_AMOUNT])[0]
        item.script = v2_fields[PSBT_OUT_SCRIPT]
        return item


@dataclass
class PSBTV2:
    tx_version: int = 2
    fallback_locktime: int | None = None
    tx_modifiable: int = 0
    inputs: List[PSBTV2Input] = field(default_factory=list)
    outputs: List[PSBTV2Output] = field(default_factory=list)
    global_xpubs: List[GlobalXpub] = field(default_factory=list)
    unknown: Dict[bytes, bytes] = field(default_factory=dict)

    psbt_version = 2

    @property
    def input_count(self) -> int:
        return len(self.inputs)

    @property
    def output_count(self) -> int:
        return len(self.outputs)

    def is_modifiable(self, flags: int) -> bool:
        return self.tx_modifiable & flags == flags

    @property
    def nlocktime(self) -> int | None:
        """Locktime of the transaction these maps describe.

        Inputs may require a height or a time lock. The largest height wins
        when every locked input accepts a height, otherwise the largest time
        when every locked input accepts a time. ``None`` means the
        requirements cannot be met together.
        """

        locked = [
            item
            for item in self.inputs
            if item.required_time_locktime is not None or item.required_height_locktime is not None
        ]
        if not locked:
            return self.fallback_locktime or 0
        if all(item.required_height_locktime is not None for item in locked):
            return max(item.required_height_locktime for item in locked)
        if all(item.required_time_locktime is not None for item in locked):
            return max(item.required_time_locktime for item in locked)
        return None

    def validate(self, allow_tx_version_1: bool = False) -> None:
        if self.tx_version < 2 and not (allow_tx_version_1 and self.tx_version == 1):
            raise PSBTError(
                f"PSBT version 2 needs transaction version 2 or higher, got {self.tx_version}"
            )
        for index, item in enumerate(self.inputs):
            if len(item.previous_txid) != 32:
                raise PSBTError(f"Input {index} has no previous txid")
            if item.required_time_locktime is not None and item.required_time_locktime < LOCKTIME_THRESHOLD:
                raise PSBTError(f"Input {index} requires a time locktime below {LOCKTIME_THRESHOLD}")
            if item.required_height_locktime is not None and not (
                0 < item.required_height_locktime < LOCKTIME_THRESHOLD
            ):
                raise PSBTError(f"Input {index} requires a height locktime outside 1-{LOCKTIME_THRESHOLD - 1}")

    def add_global_xpub(self, extended_public_key: bytes, master_fingerprint: bytes, path: str) -> None:
        self.global_xpubs.append(GlobalXpub(extended_public_key, master_fingerprint, path))

    def add_input(self, item: PSBTV2Input) -> None:
        if not self.is_modifiable(TX_MODIFIABLE_INPUTS):
            raise PSBTError("PSBT inputs are not modifiable")
        self.inputs.append(item)
        if self.nlocktime is None:
            self.inputs.pop()
            raise PSBTError("Input locktime requirement conflicts with the other inputs")

    def add_output(self, item: PSBTV2Output) -> None:
        if not self.is_modifiable(TX_MODIFIABLE_OUTPUTS):
            raise PSBTError("PSBT outputs are not modifiable")
        self.outputs.append(item)

    def delete_input(self, index: int) -> None:
        if not self.is_modifiable(TX_MODIFIABLE_INPUTS):
            raise PSBTError("PSBT inputs are not modifiable")
        del self.inputs[index]

    def delete_output(self, index: int) -> None:
        if not self.is_modifiable(TX_MODIFIABLE_OUTPUTS):
            raise PSBTError("PSBT outputs are not modifiable")
        if self.is_modifiable(TX_MODIFIABLE_SIGHASH_SINGLE) and index < len(self.inputs):
            # a SIGHASH_SINGLE signature on the paired input commits to this output
            paired = self.inputs[index]
            if paired.partial_sigs:
                logger.info("Removing %d signatures on input %d with its paired output", len(paired.partial_sigs), index)
                paired.partial_sigs.clear()
        del self.outputs[index]

    def add_partial_sig(self, input_index: int, pubkey: bytes, signature: bytes) -> None:
        """Store a signature and narrow ``tx_modifiable`` to what it commits to."""

        if not 0 <= input_index < len(self.inputs):
            raise PSBTError(f"PSBT has no input {input_index}")
        if len(pubkey) not in (33, 65):
            raise PSBTError(f"Invalid public key of {len(pubkey)} bytes")
        if not signature:
            raise PSBTError("Empty signature")
        item = self.inputs[input_index]
        if pubkey in item.partial_sigs:
            raise PSBTError(f"Input {input_index} already has a signature for {pubkey.hex()}")
        sighash_type = signature[-1]
        if item.sighash_type is not None and item.sighash_type != sighash_type:
            raise PSBTError(
                f"Signature sighash type {sighash_type:#04x} does not match input {input_index} "
                f"sighash type {item.sighash_type:#04x}"
            )

        flags = self.tx_modifiable
        if not sighash_type & SIGHASH_ANYONECANPAY:
            flags &= ~TX_MODIFIABLE_INPUTS
        base_type = sighash_type & 0x1F
        if base_type != SIGHASH_NONE:
            flags &= ~TX_MODIFIABLE_OUTPUTS
        if base_type == SIGHASH_SINGLE:
            flags |= TX_MODIFIABLE_SIGHASH_SINGLE
        item.partial_sigs[pubkey] = signature
        self.tx_modifiable = flags

    def remove_partial_sig(self, input_index: int, pubkey: bytes | None = None) -> None:
        item = self.inputs[input_index]
        if pubkey is None:
            item.partial_sigs.clear()
        elif item.partial_sigs.pop(pubkey, None) is None:
            raise PSBTError(f"Input {input_index} has no signature for {pubkey.hex()}")

    def serialize(self) -> bytes:
        global_entries = list(self.unknown.items())
        global_entries.append((bytes([PSBT_GLOBAL_TX_VERSION]), struct.pack("<i", self.tx_version)))
        if self.fallback_locktime is not None:
            global_entries.append(
                (bytes([PSBT_GLOBAL_FALLBACK_LOCKTIME]), struct.pack("<I", self.fallback_locktime))
            )
        global_entries.append((bytes([PSBT_GLOBAL_INPUT_COUNT]), ser_compact_size(len(self.inputs))))
        global_entries.append((bytes([PSBT_GLOBAL_OUTPUT_COUNT]), ser_compact_size(len(self.outputs))))
        if self.tx_modifiable:
            global_entries.append((bytes([PSBT_GLOBAL_TX_MODIFIABLE]), bytes([self.tx_modifiable])))
        global_entries.append((bytes([PSBT_GLOBAL_VERSION]), struct.pack("<I", self.psbt_version)))
        for xpub in self.global_xpubs:
            global_entries.append(
                (
                    bytes([PSBT_GLOBAL_XPUB]) + xpub.extended_public_key,
                    _encode_derivation(xpub.master_fingerprint, xpub.path),
                )
            )
        data = PSBT_MAGIC_BYTES + _serialize_map(global_entries)
        data += b"".join(_serialize_map(item.entries()) for item in self.inputs)
        data += b"".join(_serialize_map(item.entries()) for item in self.outputs)
        return data

    def to_base64(self) -> str:
        return base64.b64encode(self.serialize()).decode("ascii")

    def to_hex(self) -> str:
        return self.serialize().hex()

    @classmethod
    def parse(cls, data: bytes, allow_tx_version_1: bool = False) -> "PSBTV2":
        if not data.startswith(PSBT_MAGIC_BYTES):
            raise PSBTError("Missing PSBT magic bytes")
        reader = ByteReader(data[len(PSBT_MAGIC_BYTES):])
        try:
            global_fields = {}
            global_xpubs = []
            unknown = {}
            for key, value in _read_map(reader):
                if len(key) == 1 and key[0] in _GLOBAL_KEYS:
                    global_fields[key[0]] = value
                elif key[0] == PSBT_GLOBAL_XPUB:
                    fingerprint, path = _decode_derivation(value)
                    global_xpubs.append(GlobalXpub(key[1:], fingerprint, path))
                else:
                    unknown[key] = value
            version = _uint32(global_fields.get(PSBT_GLOBAL_VERSION)) or 0
            if version != 2:
                raise PSBTError(f"Expected PSBT version 2, got {version}")
            if PSBT_GLOBAL_UNSIGNED_TX in global_fields:
                raise PSBTError("PSBT version 2 must not include an unsigned transaction")
            for required in (PSBT_GLOBAL_TX_VERSION, PSBT_GLOBAL_INPUT_COUNT, PSBT_GLOBAL_OUTPUT_COUNT):
                if required not in global_fields:
                    raise PSBTError(f"PSBT version 2 is missing global key {required:#04x}")
            input_count = ByteReader(global_fields[PSBT_GLOBAL_INPUT_COUNT]).read_compact_size()
            output_count = ByteReader(global_fields[PSBT_GLOBAL_OUTPUT_COUNT]).read_compact_size()
            modifiable = global_fields.get(PSBT_GLOBAL_TX_MODIFIABLE, b"\x00")
            if len(modifiable) != 1:
                raise PSBTError(f"Invalid tx modifiable field of {len(modifiable)} bytes")
            psbt = cls(
                tx_version=struct.unpack("<i", global_fields[PSBT_GLOBAL_TX_VERSION])[0],
                fallback_locktime=_uint32(global_fields.get(PSBT_GLOBAL_FALLBACK_LOCKTIME)),
                tx_modifiable=modifiable[0],
                inputs=[PSBTV2Input.from_entries(_read_map(reader)) for _ in range(input_count)],
                outputs=[PSBTV2Output.from_entries(_read_map(reader)) for _ in range(output_count)],
                global_xpubs=global_xpubs,
                unknown=unknown,
            )
        except PSBTError:
            raise
        except (ValueError, IndexError, struct.error) as exc:
            raise PSBTError(f"Malformed PSBT: {exc}") from exc
        psbt.validate(allow_tx_version_1)
        return psbt

    @classmethod
    def from_base64(cls, value: str, allow_tx_version_1: bool = False) -> "PSBTV2":
        return cls.parse(_decode_base64(value), allow_tx_version_1)

    @classmethod
    def from_hex(cls, value: str, allow_tx_version_1: bool = False) -> "PSBTV2":
        return cls.parse(_decode_hex(value), allow_tx_version_1)

    @classmethod
    def from_v0(cls, psbt: PSBT | str, allow_tx_version_1: bool = False) -> "PSBTV2":
        """Convert a version 0 PSBT.

        Inputs and outputs start out modifiable and the existing partial
        signatures then narrow that, as if they were added one by one.
        Transactions of version 1, which BIP370 does not allow, need
        ``allow_tx_version_1``.
        """

        if isinstance(psbt, str):
            psbt = PSBT.from_base64(psbt)
        unsigned = psbt.unsigned_tx
        unknown = dict(psbt.unknown)
        unknown.pop(bytes([PSBT_GLOBAL_VERSION]), None)
        converted = cls(
            tx_version=unsigned.version,
            fallback_locktime=unsigned.locktime,
            tx_modifiable=TX_MODIFIABLE_INPUTS | TX_MODIFIABLE_OUTPUTS,
            global_xpubs=list(psbt.global_xpubs),
            unknown=unknown,
        )
        for txin, item in zip(unsigned.inputs, psbt.inputs):
            values = _shared_fields(item, PSBTInput)
            values["partial_sigs"] = {}
            converted.inputs.append(
                PSBTV2Input(
                    previous_txid=txin.prev_hash,
                    output_index=txin.prev_index,
                    sequence=None if txin.sequence == DEFAULT_SEQUENCE else txin.sequence,
                    **values,
                )
            )
        for txout, item in zip(unsigned.outputs, psbt.outputs):
            converted.outputs.append(
                PSBTV2Output(amount=txout.value, script=txout.script_pubkey, **_shared_fields(item, PSBTOutput))
            )
        converted.validate(allow_tx_version_1)
        for index, item in enumerate(psbt.inputs):
            for pubkey, signature in item.partial_sigs.items():
                converted.add_partial_sig(index, pubkey, signature)
        return converted

    def to_v0(self) -> PSBT:
        locktime = self.nlocktime
        if locktime is None:
            raise PSBTError("Inputs have conflicting height and time locktime requirements")
        unsigned = Transaction(
            version=self.tx_version,
            inputs=[
                TxIn(
                    prev_hash=item.previous_txid,
                    prev_index=item.output_index,
                    sequence=DEFAULT_SEQUENCE if item.sequence is None else item.sequence,
                )
                for item in self.inputs
            ],
            outputs=[TxOut(item.amount, item.script) for item in self.outputs],
            locktime=locktime,
        )
        return PSBT(
            unsigned,
            [PSBTInput(**_shared_fields(item, PSBTInput)) for item in self.inputs],
            [PSBTOutput(**_shared_fields(item, PSBTOutput)) for item in self.outputs],
            list(self.global_xpubs),
            dict(self.unknown),
        )
