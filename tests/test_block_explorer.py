from __future__ import annotations

from typing import Any

import pytest
import requests

from multisig_braid.block_explorer import (
    BlockExplorerClient,
    BlockExplorerError,
    block_explorer_address_url,
    block_explorer_api_url,
    block_explorer_base_url,
    block_explorer_transaction_url,
)
from multisig_braid.config import LibraryConfig
from multisig_braid.networks import Network

from vectors import P2SH_SPEND, spend_multisig


class StubResponse:
    def __init__(self, status_code: int = 200, text: str = "", payload: Any = None) -> None:
        self.status_code = status_code
        self.text = text
        self._payload = payload

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self) -> Any:
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class StubSession:
    def __init__(self, responses: dict[str, StubResponse] | None = None, error: Exception | None = None) -> None:
        self.responses = responses or {}
        self.error = error
        self.calls: list[tuple[str, float]] = []

    def get(self, url: str, timeout: float) -> StubResponse:
        self.calls.append((url, timeout))
        if self.error is not None:
            raise self.error
        return self.responses.get(url, StubResponse(status_code=404))


def test_default_urls_per_network() -> None:
    assert block_explorer_base_url(Network.MAINNET) == "https://mempool.space"
    assert block_explorer_base_url("testnet") == "https://mempool.space/testnet"
    assert block_explorer_base_url(Network.REGTEST) == "https://mempool.space/testnet"
    assert block_explorer_base_url(Network.SIGNET) == "https://mempool.space/signet"
    assert block_explorer_transaction_url("ab" * 32, Network.MAINNET) == (
        "https://mempool.space/tx/" + "ab" * 32
    )
    assert block_explorer_address_url("2N5K", Network.TESTNET) == (
        "https://mempool.space/testnet/address/2N5K"
    )
    assert block_explorer_api_url("/blocks", Network.SIGNET) == "https://mempool.space/signet/api/blocks"


def test_configured_url_wins() -> None:
    config = LibraryConfig(
        network=Network.REGTEST, explorer_urls={Network.REGTEST: "http://localhost:3002"}
    )
    assert block_explorer_base_url(Network.REGTEST, config) == "http://localhost:3002"
    assert block_explorer_base_url(Network.MAINNET, config) == "https://mempool.space"


def test_build_input_fetches_funding_transaction() -> None:
    utxo = P2SH_SPEND["utxos"][0]
    url = f"https://mempool.space/testnet/api/tx/{utxo['txid']}/hex"
    session = StubSession({url: StubResponse(text=utxo["transaction_hex"] + "\n")})
    config = LibraryConfig(network=Network.TESTNET, request_timeout=7.5)
    client = BlockExplorerClient(Network.TESTNET, config, session=session)

    item = client.build_input(utxo["txid"], utxo["index"], spend_multisig(P2SH_SPEND), "0/0")

    assert session.calls == [(url, 7.5)]
    assert item.amount_sats == 100000
    assert item.transaction_hex == utxo["transaction_hex"]
    assert item.bip32_path == "0/0"
    with pytest.raises(ValueError, match="has no output 5"):
        client.build_input(utxo["txid"], 5, spend_multisig(P2SH_SPEND))


def test_address_utxos() -> None:
    address = P2SH_SPEND["address"]
    url = f"https://mempool.space/testnet/api/address/{address}/utxo"
    payload = [{"txid": "ab" * 32, "vout": 0, "value": 100000}]
    client = BlockExplorerClient(Network.TESTNET, session=StubSession({url: StubResponse(payload=payload)}))
    assert client.get_address_utxos(address) == payload


def test_address_utxos_rejects_unexpected_payloads() -> None:
    address = P2SH_SPEND["address"]
    url = f"https://mempool.space/testnet/api/address/{address}/utxo"
    client = BlockExplorerClient(Network.TESTNET, session=StubSession({url: StubResponse(payload={"error": 1})}))
    with pytest.raises(BlockExplorerError, match="Unexpected UTXO response"):
        client.get_address_utxos(address)
    client = BlockExplorerClient(Network.TESTNET, session=StubSession({url: StubResponse(text="<html>")}))
    with pytest.raises(BlockExplorerError, match="malformed JSON"):
        client.get_address_utxos(address)


def test_http_errors_carry_status_code() -> None:
    client = BlockExplorerClient(Network.MAINNET, session=StubSession())
    with pytest.raises(BlockExplorerError) as excinfo:
        client.get_transaction_hex("ab" * 32)
    assert excinfo.value.status_code == 404


def test_connection_errors_are_wrapped() -> None:
    session = StubSession(error=requests.ConnectionError("refused"))
    client = BlockExplorerClient(Network.MAINNET, session=session)
    with pytest.raises(BlockExplorerError, match="request to https://mempool.space/api/tx/"):
        client.get_transaction_hex("ab" * 32)


def test_from_config_uses_configured_network() -> None:
    config = LibraryConfig(network=Network.SIGNET)
    client = BlockExplorerClient.from_config(config)
    assert client.network == Network.SIGNET
    assert client.config is config
