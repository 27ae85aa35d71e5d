"""Partially signed transactions (BIP174, version 0).

Only the fields a multisig coordinator needs are modelled; any other key is
kept verbatim so a PSBT survives a parse/serialize cycle. Every map is
written with its entries sorted by key bytes. Version 2 PSBTs (BIP370) live
in ``psbtv2``; ``auto_load_psbt`` converts them to this model.
"""

from __future__ import annotations

import base64
import binascii
import logging
import struct
from dataclasses import dataclass, field
from typing import Any, Dict, List, Sequence, Tuple

from .address_types import AddressType
from .braid import (
    FAKE_ROOT_FINGERPRINT,
    Braid,
    extended_public_key_origin_path,
    generate_bip32_derivation_by_index,
)
from .encoding import ByteReader, ser_string
from .inputs import MultisigInput
from .keys import ExtendedPublicKey
from .multisig import Bip32Derivation, Multisig, generate_multisig_from_hex
from .networks import Network, coerce_network
from .outputs import MultisigOutput
from .paths import bip32_path_to_sequence, bip32_sequence_to_path
from .script import output_script_to_address
from .signatures import multisig_signature_buffer, verify_signature
from .transaction import SIGHASH_ALL, Transaction, TxOut

logger = logging.getLogger(__name__)

PSBT_MAGIC_HEX = "70736274ff"
PSBT_MAGIC_B64 = "cHNidP8"
PSBT_MAGIC_BYTES = bytes([0x70, 0x73, 0x62, 0x74, 0xFF])

PSBT_GLOBAL_UNSIGNED_TX = 0x00
PSBT_GLOBAL_XPUB = 0x01
PSBT_GLOBAL_VERSION = 0xFB

PSBT_IN_NON_WITNESS_UTXO = 0x00
PSBT_IN_WITNESS_UTXO = 0x01
PSBT_IN_PARTIAL_SIG = 0x02
PSBT_IN_SIGHASH_TYPE = 0x03
PSBT_IN_REDEEM_SCRIPT = 0x04
PSBT_IN_WITNESS_SCRIPT = 0x05
PSBT_IN_BIP32_DERIVATION = 0x06

PSBT_OUT_REDEEM_SCRIPT = 0x00
PSBT_OUT_WITNESS_SCRIPT = 0x01
PSBT_OUT_BIP32_DERIVATION = 0x02


class PSBTError(ValueError):
    """Raised for malformed PSBTs and for signatures that fail to verify."""


def _encode_derivation(master_fingerprint: bytes, path: str) -> bytes:
    return master_fingerprint + b"".join(
        struct.pack("<I", index) for index in bip32_path_to_sequence(path)
    )


def _decode_derivation(value: bytes) -> Tuple[bytes, str]:
    if len(value) < 4 or len(value) % 4:
        raise PSBTError(f"Invalid BIP32 derivation value of {len(value)} bytes")
    sequence = [struct.unpack("<I", value[i:i + 4])[0] for i in range(4, len(value), 4)]
    return value[:4], bip32_sequence_to_path(sequence)


def _derivation_entries(key_type: int, derivations: Dict[bytes, Bip32Derivation]) -> List[Tuple[bytes, bytes]]:
    return [
        (bytes([key_type]) + pubkey, _encode_derivation(d.master_fingerprint, d.path))
        for pubkey, d in derivations.items()
    ]


def _derivations_by_pubkey(derivations: Sequence[Bip32Derivation] | None) -> Dict[bytes, Bip32Derivation]:
    return {derivation.pubkey: derivation for derivation in derivations or ()}


def _serialize_map(entries: List[Tuple[bytes, bytes]]) -> bytes:
    data = b"".join(ser_string(key) + ser_string(value) for key, value in sorted(entries))
    return data + b"\x00"


def _read_map(reader: ByteReader) -> List[Tuple[bytes, bytes]]:
    entries = []
    seen = set()
    while True:
        key = reader.read_string()
        if not key:
            return entries
        if key in seen:
            raise PSBTError(f"Duplicate PSBT key {key.hex()}")
        seen.add(key)
        entries.append((key, reader.read_string()))


@dataclass
class GlobalXpub:
    extended_public_key: bytes
    master_fingerprint: bytes
    path: str


@dataclass
class PSBTInput:
    non_witness_utxo: bytes | None = None
    witness_utxo: TxOut | None = None
    partial_sigs: Dict[bytes, bytes] = field(default_factory=dict)
    sighash_type: int | None = None
    redeem_script: bytes | None = None
    witness_script: bytes | None = None
    bip32_derivations: Dict[bytes, Bip32Derivation] = field(default_factory=dict)
    unknown: Dict[bytes, bytes] = field(default_factory=dict)

    def entries(self) -> List[Tuple[bytes, bytes]]:
        entries = list(self.unknown.items())
        if self.non_witness_utxo is not None:
            entries.append((bytes([PSBT_IN_NON_WITNESS_UTXO]), self.non_witness_utxo))
        if self.witness_utxo is not None:
            entries.append((bytes([PSBT_IN_WITNESS_UTXO]), self.witness_utxo.serialize()))
        for pubkey, signature in self.partial_sigs.items():
            entries.append((bytes([PSBT_IN_PARTIAL_SIG]) + pubkey, signature))
        if self.sighash_type is not None:
            entries.append((bytes([PSBT_IN_SIGHASH_TYPE]), struct.pack("<I", self.sighash_type)))
        if self.redeem_script is not None:
            entries.append((bytes([PSBT_IN_REDEEM_SCRIPT]), self.redeem_script))
        if self.witness_script is not None:
            entries.append((bytes([PSBT_IN_WITNESS_SCRIPT]), self.witness_script))
        entries.extend(_derivation_entries(PSBT_IN_BIP32_DERIVATION, self.bip32_derivations))
        return entries

    @classmethod
    def from_entries(cls, entries: List[Tuple[bytes, bytes]]) -> "PSBTInput":
        item = cls()
        for key, value in entries:
            key_type, key_data = key[0], key[1:]
            if key_type == PSBT_IN_NON_WITNESS_UTXO and not key_data:
                item.non_witness_utxo = value
            elif key_type == PSBT_IN_WITNESS_UTXO and not key_data:
                reader = ByteReader(value)
                amount = struct.unpack("<q", reader.read(8))[0]
                item.witness_utxo = TxOut(amount, reader.read_string())
            elif key_type == PSBT_IN_PARTIAL_SIG:
                item.partial_sigs[key_data] = value
            elif key_type == PSBT_IN_SIGHASH_TYPE and not key_data:
                item.sighash_type = struct.unpack("<I", value)[0]
            elif key_type == PSBT_IN_REDEEM_SCRIPT and not key_data:
                item.redeem_script = value
            elif key_type == PSBT_IN_WITNESS_SCRIPT and not key_data:
                item.witness_script = value
            elif key_type == PSBT_IN_BIP32_DERIVATION:
                fingerprint, path = _decode_derivation(value)
                item.bip32_derivations[key_data] = Bip32Derivation(fingerprint, path, key_data)
            else:
                item.unknown[key] = value
        return item


@dataclass
class PSBTOutput:
    redeem_script: bytes | None = None
    witness_script: bytes | None = None
    bip32_derivations: Dict[bytes, Bip32Derivation] = field(default_factory=dict)
    unknown: Dict[bytes, bytes] = field(default_factory=dict)

    def entries(self) -> List[Tuple[bytes, bytes]]:
        entries = list(self.unknown.items())
        if self.redeem_script is not None:
            entries.append((bytes([PSBT_OUT_REDEEM_SCRIPT]), self.redeem_script))
        if self.witness_script is not None:
            entries.append((bytes([PSBT_OUT_WITNESS_SCRIPT]), self.witness_script))
        entries.extend(_derivation_entries(PSBT_OUT_BIP32_DERIVATION, self.bip32_derivations))
        return entries

    @classmethod
    def from_entries(cls, entries: List[Tuple[bytes, bytes]]) -> "PSBTOutput":
        item = cls()
        for key, value in entries:
            key_type, key_data = key[0], key[1:]
            if key_type == PSBT_OUT_REDEEM_SCRIPT and not key_data:
                item.redeem_script = value
            elif key_type == PSBT_OUT_WITNESS_SCRIPT and not key_data:
                item.witness_script = value
            elif key_type == PSBT_OUT_BIP32_DERIVATION:
                fingerprint, path = _decode_derivation(value)
                item.bip32_derivations[key_data] = Bip32Derivation(fingerprint, path, key_data)
            else:
                item.unknown[key] = value
        return item


@dataclass
class PSBT:
    unsigned_tx: Transaction
    inputs: List[PSBTInput] = field(default_factory=list)
    outputs: List[PSBTOutput] = field(default_factory=list)
    global_xpubs: List[GlobalXpub] = field(default_factory=list)
    unknown: Dict[bytes, bytes] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.inputs:
            self.inputs = [PSBTInput() for _ in self.unsigned_tx.inputs]
        if not self.outputs:
            self.outputs = [PSBTOutput() for _ in self.unsigned_tx.outputs]
        if len(self.inputs) != len(self.unsigned_tx.inputs):
            raise PSBTError("PSBT input count does not match its transaction")
        if len(self.outputs) != len(self.unsigned_tx.outputs):
            raise PSBTError("PSBT output count does not match its transaction")

    @property
    def txn(self) -> str:
        """Hex of the unsigned transaction."""

        return self.unsigned_tx.serialize(include_witness=False).hex()

    def serialize(self) -> bytes:
        global_entries = list(self.unknown.items())
        global_entries.append(
            (bytes([PSBT_GLOBAL_UNSIGNED_TX]), self.unsigned_tx.serialize(include_witness=False))
        )
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
    def parse(cls, data: bytes) -> "PSBT":
        if not data.startswith(PSBT_MAGIC_BYTES):
            raise PSBTError("Missing PSBT magic bytes")
        reader = ByteReader(data[len(PSBT_MAGIC_BYTES):])
        try:
            unsigned_tx = None
            global_xpubs = []
            unknown = {}
            for key, value in _read_map(reader):
                if key == bytes([PSBT_GLOBAL_UNSIGNED_TX]):
                    unsigned_tx = Transaction.deserialize(value)
                elif key[0] == PSBT_GLOBAL_XPUB:
                    fingerprint, path = _decode_derivation(value)
                    global_xpubs.append(GlobalXpub(key[1:], fingerprint, path))
                else:
                    unknown[key] = value
            if unsigned_tx is None:
                version = _version_from_globals(unknown)
                if version >= 2:
                    raise PSBTError(f"PSBT version {version} has no unsigned transaction; load it with PSBTV2")
                raise PSBTError("PSBT has no unsigned transaction")
            inputs = [PSBTInput.from_entries(_read_map(reader)) for _ in unsigned_tx.inputs]
            outputs = [PSBTOutput.from_entries(_read_map(reader)) for _ in unsigned_tx.outputs]
        except PSBTError:
            raise
        except (ValueError, IndexError, struct.error) as exc:
            raise PSBTError(f"Malformed PSBT: {exc}") from exc
        return cls(unsigned_tx, inputs, outputs, global_xpubs, unknown)

    @classmethod
    def from_base64(cls, value: str) -> "PSBT":
        return cls.parse(_decode_base64(value))

    @classmethod
    def from_hex(cls, value: str) -> "PSBT":
        return cls.parse(_decode_hex(value))

    def signature_hash(self, input_index: int, sighash_type: int = SIGHASH_ALL) -> bytes:
        """Digest a signer commits to for ``input_index``, from PSBT data alone."""

        item = self.inputs[input_index]
        if item.witness_script is not None:
            amount = self._input_amount(input_index)
            return self.unsigned_tx.hash_for_witness_v0(
                input_index, item.witness_script, amount, sighash_type
            )
        if item.redeem_script is None:
            raise PSBTError(f"Input {input_index} has no redeem or witness script")
        return self.unsigned_tx.hash_for_signature(input_index, item.redeem_script, sighash_type)

    def _input_amount(self, input_index: int) -> int:
        item = self.inputs[input_index]
        if item.witness_utxo is not None:
            return item.witness_utxo.value
        if item.non_witness_utxo is not None:
            funding = Transaction.deserialize(item.non_witness_utxo)
            return funding.outputs[self.unsigned_tx.inputs[input_index].prev_index].value
        raise PSBTError(f"Input {input_index} has no UTXO information")

    def validate_signatures_of_input(self, input_index: int, pubkey: bytes | None = None) -> bool:
        item = self.inputs[input_index]
        candidates = {
            key: signature
            for key, signature in item.partial_sigs.items()
            if pubkey is None or key == pubkey
        }
        if not candidates:
            return False
        for key, signature in candidates.items():
            message_hash = self.signature_hash(input_index, signature[-1])
            signature64 = multisig_signature_buffer(signature[:-1])
            if not verify_signature(key, message_hash, signature64):
                return False
        return True


def _decode_base64(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except binascii.Error as exc:
        raise PSBTError(f"Invalid PSBT base64: {exc}") from exc


def _decode_hex(value: str) -> bytes:
    try:
        return bytes.fromhex(value)
    except ValueError as exc:
        raise PSBTError(f"Invalid PSBT hex: {exc}") from exc


def _psbt_bytes(value: bytes | str) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if value[:10] == PSBT_MAGIC_HEX:
        return _decode_hex(value)
    if value[:7] == PSBT_MAGIC_B64:
        return _decode_base64(value)
    raise PSBTError("Value is not a PSBT in hex or base64")


def _version_from_globals(entries: Dict[bytes, bytes]) -> int:
    value = entries.get(bytes([PSBT_GLOBAL_VERSION]))
    if value is None:
        return 0
    if len(value) != 4:
        raise PSBTError(f"Invalid PSBT version field of {len(value)} bytes")
    return struct.unpack("<I", value)[0]


def get_psbt_version_number(psbt: bytes | str) -> int:
    """PSBT version from the global map, 0 when the version key is absent."""

    data = _psbt_bytes(psbt)
    if not data.startswith(PSBT_MAGIC_BYTES):
        raise PSBTError("Missing PSBT magic bytes")
    try:
        entries = dict(_read_map(ByteReader(data[len(PSBT_MAGIC_BYTES):])))
    except PSBTError:
        raise
    except ValueError as exc:
        raise PSBTError(f"Malformed PSBT: {exc}") from exc
    return _version_from_globals(entries)


def auto_load_psbt(value: Any) -> PSBT | None:
    """Load a PSBT from base64 or hex, detected by its magic prefix.

    Version 2 PSBTs are converted to the version 0 model. Returns ``None``
    for anything that does not start like a PSBT.
    """

    if not isinstance(value, str):
        return None
    if value[:10] != PSBT_MAGIC_HEX and value[:7] != PSBT_MAGIC_B64:
        return None
    data = _psbt_bytes(value)
    if get_psbt_version_number(data) >= 2:
        from .psbtv2 import PSBTV2

        return PSBTV2.parse(data, allow_tx_version_1=True).to_v0()
    return PSBT.parse(data)


def _braid_bip32_derivation(multisig: Multisig, index: int = 0) -> List[Bip32Derivation]:
    if multisig.bip32_derivation:
        return list(multisig.bip32_derivation)
    if not multisig.braid_details:
        return []
    return generate_bip32_derivation_by_index(Braid.from_json(multisig.braid_details), index)


def _multisig_lock(multisig: Multisig) -> Tuple[bytes | None, bytes | None]:
    redeem = multisig.redeem_script
    witness = multisig.witness_script
    return (redeem.output if redeem else None, witness.output if witness else None)


def psbt_input_formatter(item: MultisigInput) -> PSBTInput:
    """Describe ``item`` for a PSBT signer.

    Segwit inputs carry the funding output as their witness UTXO; P2SH
    inputs carry the whole funding transaction. The funding transaction is
    assumed to be in ``transaction_hex`` either way.
    """

    if not item.transaction_hex:
        raise ValueError(f"Input {item.utxo_id} is missing its funding transaction hex")
    multisig = item.multisig
    redeem_script, witness_script = _multisig_lock(multisig)

    formatted = PSBTInput(redeem_script=redeem_script, witness_script=witness_script)
    if multisig.address_type.is_segwit:
        funding = Transaction.from_hex(item.transaction_hex)
        formatted.witness_utxo = funding.outputs[int(item.index)]
    else:
        formatted.non_witness_utxo = bytes.fromhex(item.transaction_hex)

    index = bip32_path_to_sequence(item.bip32_path)[-1] if item.bip32_path else 0
    formatted.bip32_derivations = _derivations_by_pubkey(_braid_bip32_derivation(multisig, index))
    return formatted


def psbt_output_formatter(output: MultisigOutput) -> PSBTOutput:
    """Describe ``output``; change outputs get their scripts and derivations."""

    if output.multisig is not None:
        redeem_script, witness_script = _multisig_lock(output.multisig)
        return PSBTOutput(
            redeem_script=redeem_script,
            witness_script=witness_script,
            bip32_derivations=_derivations_by_pubkey(_braid_bip32_derivation(output.multisig)),
        )
    return PSBTOutput(
        redeem_script=output.redeem_script,
        witness_script=output.witness_script,
        bip32_derivations=_derivations_by_pubkey(output.bip32_derivation),
    )


def global_xpub_record(extended_public_key: ExtendedPublicKey, network: Network | str) -> GlobalXpub:
    """Global xpub entry for ``extended_public_key`` encoded for ``network``."""

    node = extended_public_key.with_network(network)
    return GlobalXpub(
        extended_public_key=node.encode(),
        master_fingerprint=bytes.fromhex(node.root_fingerprint or FAKE_ROOT_FINGERPRINT),
        path=extended_public_key_origin_path(node),
    )


def _load(psbt: PSBT | str) -> PSBT | None:
    if isinstance(psbt, PSBT):
        return psbt
    return auto_load_psbt(psbt)


def translate_psbt(
    network: Network | str,
    address_type: AddressType | str,
    psbt: PSBT | str,
    signing_key_details: Dict[str, str],
) -> Dict[str, Any] | None:
    """Unpack a P2SH PSBT into inputs, outputs and the signer's derivations.

    ``signing_key_details`` holds the signer's ``xfp`` (root fingerprint
    hex) and ``path`` (account path prefix). One matching derivation is
    returned per input.
    """

    if str(address_type) != AddressType.P2SH.value:
        raise ValueError("Unsupported addressType -- only P2SH is supported right now")
    network = coerce_network(network)
    loaded = _load(psbt)
    if loaded is None:
        return None

    bip32_derivations = []
    for item in loaded.inputs:
        matches = [
            derivation
            for derivation in item.bip32_derivations.values()
            if derivation.path.startswith(signing_key_details["path"])
            and derivation.master_fingerprint.hex() == signing_key_details["xfp"]
        ]
        if not matches:
            raise ValueError("Signing key details not included in PSBT")
        bip32_derivations.append(matches[0])

    unchained_inputs = []
    for txin, item in zip(loaded.unsigned_tx.inputs, loaded.inputs):
        if item.non_witness_utxo is None or item.redeem_script is None:
            raise PSBTError(f"Input {txin.txid}:{txin.prev_index} lacks P2SH signing data")
        funding = Transaction.deserialize(item.non_witness_utxo)
        unchained_inputs.append(
            MultisigInput(
                txid=txin.txid,
                index=txin.prev_index,
                amount_sats=funding.outputs[txin.prev_index].value,
                transaction_hex=item.non_witness_utxo.hex(),
                multisig=generate_multisig_from_hex(network, address_type, item.redeem_script.hex()),
            )
        )

    unchained_outputs = [
        MultisigOutput(
            address=output_script_to_address(txout.script_pubkey, network),
            amount_sats=txout.value,
        )
        for txout in loaded.unsigned_tx.outputs
    ]
    return {
        "unchained_inputs": unchained_inputs,
        "unchained_outputs": unchained_outputs,
        "bip32_derivations": bip32_derivations,
    }


def _as_bytes(value: bytes | str) -> bytes:
    return bytes.fromhex(value) if isinstance(value, str) else value


def add_signatures_to_psbt(
    network: Network | str,
    psbt: PSBT | str,
    pubkeys: Sequence[bytes | str],
    signatures: Sequence[bytes | str],
) -> str | None:
    """Insert one signature per input and return the PSBT as base64.

    ``signatures[i]`` (DER plus sighash byte) signs input ``i`` with
    ``pubkeys[i]``.

    Raises
    ------
    PSBTError
        If any signature does not verify.
    """

    coerce_network(network)
    loaded = _load(psbt)
    if loaded is None:
        return None
    if loaded is psbt:
        # signatures go into a copy; the caller's PSBT is never modified
        loaded = PSBT.parse(psbt.serialize())
    for input_index, signature in enumerate(signatures):
        pubkey = _as_bytes(pubkeys[input_index])
        signature_bytes = _as_bytes(signature)
        loaded.inputs[input_index].partial_sigs[pubkey] = signature_bytes
        try:
            valid = loaded.validate_signatures_of_input(input_index, pubkey)
        except ValueError as exc:
            raise PSBTError("One or more invalid signatures.") from exc
        if not valid:
            raise PSBTError("One or more invalid signatures.")
        logger.debug("Added signature from %s to input %d", pubkey.hex(), input_index)
    return loaded.to_base64()


def _num_signers(psbt: PSBT) -> int:
    if not psbt.inputs:
        return 0
    return len(psbt.inputs[0].partial_sigs)


def parse_signatures_from_psbt(psbt: PSBT | str) -> Dict[str, List[str]] | None:
    """Return ``{pubkey_hex: [signature_hex per input]}``, or ``None`` if unsigned.

    The signer count is taken from the first input.
    """

    loaded = _load(psbt)
    if loaded is None:
        return None
    num_signers = _num_signers(loaded)
    if num_signers < 1:
        return None

    signature_set: Dict[str, List[str]] = {}
    for item in loaded.inputs:
        for pubkey, signature in list(item.partial_sigs.items())[:num_signers]:
            signature_set.setdefault(pubkey.hex(), []).append(signature.hex())
    return signature_set


def parse_signature_array_from_psbt(psbt: PSBT | str) -> List[str] | List[List[str]] | None:
    """Return signatures grouped per signer position.

    A single signer yields a flat list (one signature per input); several
    signers yield a list of such lists.
    """

    loaded = _load(psbt)
    if loaded is None:
        return None
    num_signers = _num_signers(loaded)
    if num_signers < 1:
        return None

    signature_arrays: List[List[str]] = [[] for _ in range(num_signers)]
    for item in loaded.inputs:
        for position, signature in enumerate(list(item.partial_sigs.values())[:num_signers]):
            signature_arrays[position].append(signature.hex())
    return signature_arrays[0] if num_signers == 1 else signature_arrays
