"""Bitcoin network identifiers and their chain parameters."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Network(str, Enum):
    MAINNET = "mainnet"
    TESTNET = "testnet"
    REGTEST = "regtest"
    SIGNET = "signet"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class NetworkParams:
    """Address and key-serialization magic bytes for one network."""

    bech32_hrp: str
    pubkey_hash: int
    script_hash: int
    bip32_public: int


MAINNET_PARAMS = NetworkParams(
    bech32_hrp="bc", pubkey_hash=0x00, script_hash=0x05, bip32_public=0x0488B21E
)
TESTNET_PARAMS = NetworkParams(
    bech32_hrp="tb", pubkey_hash=0x6F, script_hash=0xC4, bip32_public=0x043587CF
)
REGTEST_PARAMS = NetworkParams(
    bech32_hrp="bcrt", pubkey_hash=0x6F, script_hash=0xC4, bip32_public=0x043587CF
)

_PARAMS = {
    Network.MAINNET: MAINNET_PARAMS,
    Network.TESTNET: TESTNET_PARAMS,
    Network.REGTEST: REGTEST_PARAMS,
    Network.SIGNET: TESTNET_PARAMS,
}

_LABELS = {
    Network.MAINNET: "Mainnet",
    Network.TESTNET: "Testnet",
    Network.REGTEST: "Regtest",
    Network.SIGNET: "Signet",
}


def coerce_network(value: Network | str) -> Network:
    """Return ``value`` as a :class:`Network`, raising ``ValueError`` if unknown."""

    if isinstance(value, Network):
        return value
    try:
        return Network(str(value).lower())
    except ValueError as exc:
        raise ValueError(f"Invalid network: {value}") from exc


def network_data(network: Network | str) -> NetworkParams:
    return _PARAMS[coerce_network(network)]


def network_label(network: Network | str) -> str:
    return _LABELS[coerce_network(network)]


def is_testnet_family(network: Network | str) -> bool:
    return coerce_network(network) != Network.MAINNET


def get_network_from_prefix(prefix: str) -> Network:
    """Map an extended public key prefix (xpub, tpub, ...) to its network."""

    normalized = prefix.lower()
    if normalized in {"xpub", "ypub", "zpub"}:
        return Network.MAINNET
    if normalized in {"tpub", "upub", "vpub"}:
        return Network.TESTNET
    raise ValueError(f"Unrecognized extended public key prefix {prefix}")
