"""Bitcoin multisig braids, descriptors, transactions and PSBTs."""

from .address_types import AddressType, MULTISIG_ADDRESS_TYPES
from .networks import Network
from .keys import ExtendedPublicKey, NetworkMismatchError, derive_child_public_key
from .multisig import (
    Bip32Derivation,
    Multisig,
    generate_multisig_from_hex,
    generate_multisig_from_public_keys,
)
from .braid import (
    Braid,
    BraidIndexError,
    derive_multisig_by_index,
    derive_multisig_by_path,
    generate_braid,
)
from .inputs import MultisigInput, sort_inputs
from .outputs import MultisigOutput
from .fees import estimate_multisig_transaction_fee, estimate_multisig_transaction_fee_rate
from .transaction import Transaction
from .transactions import (
    signed_multisig_transaction,
    unsigned_multisig_psbt,
    unsigned_multisig_transaction,
)
from .psbt import (
    PSBT,
    PSBTError,
    add_signatures_to_psbt,
    auto_load_psbt,
    get_psbt_version_number,
    parse_signatures_from_psbt,
    translate_psbt,
)
from .psbtv2 import PSBTV2

__all__ = [
    "AddressType",
    "MULTISIG_ADDRESS_TYPES",
    "Network",
    "ExtendedPublicKey",
    "NetworkMismatchError",
    "derive_child_public_key",
    "Bip32Derivation",
    "Multisig",
    "generate_multisig_from_hex",
    "generate_multisig_from_public_keys",
    "Braid",
    "BraidIndexError",
    "derive_multisig_by_index",
    "derive_multisig_by_path",
    "generate_braid",
    "MultisigInput",
    "MultisigOutput",
    "sort_inputs",
    "estimate_multisig_transaction_fee",
    "estimate_multisig_transaction_fee_rate",
    "Transaction",
    "signed_multisig_transaction",
    "unsigned_multisig_psbt",
    "unsigned_multisig_transaction",
    "PSBT",
    "PSBTError",
    "add_signatures_to_psbt",
    "auto_load_psbt",
    "get_psbt_version_number",
    "parse_signatures_from_psbt",
    "translate_psbt",
    "PSBTV2",
]
