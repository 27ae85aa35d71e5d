from pathlib import Path

import pytest

from multisig_braid import config as config_module
from multisig_braid.config import (
    DEFAULT_REQUEST_TIMEOUT,
    ConfigurationError,
    LibraryConfig,
    load_library_config,
    set_default_config_path,
)
from multisig_braid.networks import Network


@pytest.fixture(autouse=True)
def isolated_config(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_PATH", tmp_path / "missing.yaml")
    monkeypatch.setattr(config_module, "_CONFIG_PATH_OVERRIDE", None)


def test_defaults_without_any_source() -> None:
    config = load_library_config(env={})
    assert isinstance(config, LibraryConfig)
    assert config.network == Network.MAINNET
    assert config.explorer_urls == {}
    assert config.request_timeout == DEFAULT_REQUEST_TIMEOUT


def test_yaml_file_is_read(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
        network: signet
        explorer:
          timeout: 5
          urls:
            signet: https://explorer.example/signet/
        """
    )

    config = load_library_config(config_path=config_path, env={})

    assert config.network == Network.SIGNET
    assert config.request_timeout == 5.0
    assert config.explorer_urls == {Network.SIGNET: "https://explorer.example/signet"}


def test_environment_beats_yaml_and_overrides_beat_environment(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text("network: testnet\nexplorer:\n  timeout: 5\n")
    env_map = {
        "MULTISIG_BRAID_NETWORK": "regtest",
        "MULTISIG_BRAID_REQUEST_TIMEOUT": "12",
        "MULTISIG_BRAID_EXPLORER_URL": "http://localhost:3002",
    }

    config = load_library_config(config_path=config_path, env=env_map)
    assert config.network == Network.REGTEST
    assert config.request_timeout == 12.0
    assert config.explorer_urls == {Network.REGTEST: "http://localhost:3002"}

    config = load_library_config(
        config_path=config_path,
        env=env_map,
        overrides={"network": "testnet", "explorer_urls": {"testnet": "https://blockstream.info/testnet"}},
    )
    assert config.network == Network.TESTNET
    assert config.explorer_urls[Network.TESTNET] == "https://blockstream.info/testnet"


def test_default_path_override_is_remembered(tmp_path: Path) -> None:
    config_path = tmp_path / "custom.yaml"
    config_path.write_text("network: testnet\n")
    set_default_config_path(config_path)

    assert load_library_config(env={}).network == Network.TESTNET


def test_explicit_missing_file_is_an_error(tmp_path: Path) -> None:
    with pytest.raises(ConfigurationError, match="Config file not found"):
        load_library_config(config_path=tmp_path / "nope.yaml", env={})


@pytest.mark.parametrize(
    ("contents", "env_map", "message"),
    [
        ("- just\n- a list\n", {}, "YAML mapping"),
        ("network: dogecoin\n", {}, "Invalid network"),
        ("explorer: nope\n", {}, "'explorer' to be a mapping"),
        ("explorer:\n  urls:\n    mainnet: ftp://example\n", {}, "Invalid explorer URL"),
        ("{}\n", {"MULTISIG_BRAID_REQUEST_TIMEOUT": "soon"}, "Invalid request timeout"),
        ("{}\n", {"MULTISIG_BRAID_REQUEST_TIMEOUT": "0"}, "must be positive"),
    ],
)
def test_invalid_configuration(tmp_path: Path, contents: str, env_map: dict, message: str) -> None:
    config_path = tmp_path / "config.yaml"
    config_path.write_text(contents)
    with pytest.raises(ConfigurationError, match=message):
        load_library_config(config_path=config_path, env=env_map)
