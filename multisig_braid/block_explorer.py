"""Block explorer URLs and a small read-only client for a mempool.space style API.

The client only fetches what input assembly needs: funding transactions and
address UTXOs. It never broadcasts.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

import requests
from requests import RequestException

from .config import LibraryConfig, load_library_config
from .inputs import MultisigInput
from .multisig import Multisig
from .networks import Network, coerce_network
from .transaction import Transaction

logger = logging.getLogger(__name__)

BASE_URL_MAINNET = "https://mempool.space"
BASE_URL_TESTNET = "https://mempool.space/testnet"
BASE_URL_SIGNET = "https://mempool.space/signet"


class BlockExplorerError(RuntimeError):
    """Raised when the explorer is unreachable or answers with an error."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def block_explorer_base_url(network: Network | str, config: LibraryConfig | None = None) -> str:
    network = coerce_network(network)
    if config is not None and network in config.explorer_urls:
        return config.explorer_urls[network]
    if network == Network.MAINNET:
        return BASE_URL_MAINNET
    if network == Network.SIGNET:
        return BASE_URL_SIGNET
    return BASE_URL_TESTNET


def block_explorer_url(path: str, network: Network | str, config: LibraryConfig | None = None) -> str:
    return f"{block_explorer_base_url(network, config)}{path}"


def block_explorer_api_url(path: str, network: Network | str, config: LibraryConfig | None = None) -> str:
    return f"{block_explorer_base_url(network, config)}/api{path}"


def block_explorer_transaction_url(txid: str, network: Network | str, config: LibraryConfig | None = None) -> str:
    return block_explorer_url(f"/tx/{txid}", network, config)


def block_explorer_address_url(address: str, network: Network | str, config: LibraryConfig | None = None) -> str:
    return block_explorer_url(f"/address/{address}", network, config)


class BlockExplorerClient:
    """Read-only HTTP client for the explorer API of one network."""

    def __init__(
        self,
        network: Network | str,
        config: LibraryConfig | None = None,
        session: requests.Session | None = None,
    ) -> None:
        self.network = coerce_network(network)
        self.config = config or LibraryConfig(network=self.network)
        self._session = session or requests.Session()

    @classmethod
    def from_config(cls, config: LibraryConfig | None = None) -> "BlockExplorerClient":
        config = config or load_library_config()
        return cls(config.network, config)

    def _get(self, path: str) -> requests.Response:
        url = block_explorer_api_url(path, self.network, self.config)
        logger.debug("GET %s", url)
        try:
            response = self._session.get(url, timeout=self.config.request_timeout)
        except RequestException as exc:
            logger.error(
                "Explorer request failed: %s", exc, exc_info=logger.isEnabledFor(logging.DEBUG)
            )
            raise BlockExplorerError(f"Block explorer request to {url} failed") from exc
        if not response.ok:
            logger.error("Explorer HTTP error %s from %s", response.status_code, url)
            raise BlockExplorerError(
                f"Block explorer returned HTTP {response.status_code} for {url}",
                status_code=response.status_code,
            )
        return response

    def get_transaction_hex(self, txid: str) -> str:
        return self._get(f"/tx/{txid}/hex").text.strip()

    def get_address_utxos(self, address: str) -> List[Dict[str, Any]]:
        response = self._get(f"/address/{address}/utxo")
        try:
            utxos = response.json()
        except ValueError as exc:
            raise BlockExplorerError("Block explorer returned malformed JSON") from exc
        if not isinstance(utxos, list):
            raise BlockExplorerError(f"Unexpected UTXO response for {address}")
        return utxos

    def build_input(
        self, txid: str, index: int, multisig: Multisig, bip32_path: str | None = None
    ) -> MultisigInput:
        """Fetch the funding transaction and describe output ``index`` as an input."""

        transaction_hex = self.get_transaction_hex(txid)
        funding = Transaction.from_hex(transaction_hex)
        if index >= len(funding.outputs):
            raise ValueError(f"Transaction {txid} has no output {index}")
        return MultisigInput(
            txid=txid,
            index=index,
            multisig=multisig,
            amount_sats=funding.outputs[index].value,
            transaction_hex=transaction_hex,
            bip32_path=bip32_path,
        )
