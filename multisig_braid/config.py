"""Shared configuration loader for multisig-braid."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping
from urllib.parse import urlparse

import yaml

from .networks import Network, coerce_network


class ConfigurationError(RuntimeError):
    """Raised when configuration is invalid."""


DEFAULT_CONFIG_PATH = Path.home() / ".multisig_braid.yaml"
DEFAULT_REQUEST_TIMEOUT = 30.0
_CONFIG_PATH_OVERRIDE: Path | None = None


@dataclass
class LibraryConfig:
    """Defaults shared by the CLI and the block explorer client."""

    network: Network = Network.MAINNET
    explorer_urls: Dict[Network, str] = field(default_factory=dict)
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT


def set_default_config_path(path: str | Path | None) -> None:
    """Remember a user-supplied config path for future loads."""

    global _CONFIG_PATH_OVERRIDE
    _CONFIG_PATH_OVERRIDE = Path(path).expanduser() if path else None


def _load_config_file(path: Path, *, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigurationError(f"Config file not found: {path}")
        return {}

    try:
        loaded = yaml.safe_load(path.read_text()) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - delegated to PyYAML
        raise ConfigurationError(f"Invalid YAML in config file {path}: {exc}") from exc

    if not isinstance(loaded, dict):
        raise ConfigurationError(f"Expected {path} to contain a YAML mapping")
    return loaded


def _first_value(*values: Any, default: Any = None) -> Any:
    for value in values:
        if value is not None:
            return value
    return default


def _coerce_network(raw: Any, *, source: str) -> Network | None:
    if raw is None:
        return None
    try:
        return coerce_network(raw)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid network in {source}: {raw}") from exc


def _coerce_timeout(raw: Any, *, source: str) -> float | None:
    if raw is None:
        return None
    try:
        timeout = float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid request timeout in {source}: {raw}") from exc
    if timeout <= 0:
        raise ConfigurationError(f"Request timeout in {source} must be positive: {raw}")
    return timeout


def _check_url(raw: str, *, source: str) -> str:
    parsed = urlparse(raw)
    if parsed.scheme not in {"http", "https"} or not parsed.hostname:
        raise ConfigurationError(f"Invalid explorer URL in {source}: {raw}")
    return raw.rstrip("/")


def _explorer_urls(section: Any, *, source: str) -> Dict[Network, str]:
    if not section:
        return {}
    if not isinstance(section, dict):
        raise ConfigurationError(f"Expected 'explorer.urls' to be a mapping in {source}")
    return {
        _coerce_network(name, source=source): _check_url(str(url), source=source)
        for name, url in section.items()
    }


def load_library_config(
    *,
    config_path: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> LibraryConfig:
    """Load configuration from overrides, ``MULTISIG_BRAID_*`` variables and YAML.

    The YAML file may contain::

        network: testnet
        explorer:
          timeout: 10
          urls:
            testnet: https://explorer.example/testnet
    """

    env_map = os.environ if env is None else env
    explicit_path = config_path is not None or _CONFIG_PATH_OVERRIDE is not None
    path = (
        Path(config_path).expanduser()
        if config_path is not None
        else _CONFIG_PATH_OVERRIDE or DEFAULT_CONFIG_PATH
    )

    file_config = _load_config_file(path, required=explicit_path)
    explorer_section = file_config.get("explorer", {}) or {}
    if not isinstance(explorer_section, dict):
        raise ConfigurationError(f"Expected 'explorer' to be a mapping in {path}")

    override_map = dict(overrides or {})

    network = _first_value(
        _coerce_network(override_map.get("network"), source="overrides"),
        _coerce_network(env_map.get("MULTISIG_BRAID_NETWORK"), source="environment"),
        _coerce_network(file_config.get("network"), source=str(path)),
        default=Network.MAINNET,
    )
    timeout = _first_value(
        _coerce_timeout(override_map.get("request_timeout"), source="overrides"),
        _coerce_timeout(env_map.get("MULTISIG_BRAID_REQUEST_TIMEOUT"), source="environment"),
        _coerce_timeout(explorer_section.get("timeout"), source=str(path)),
        default=DEFAULT_REQUEST_TIMEOUT,
    )

    explorer_urls = _explorer_urls(explorer_section.get("urls"), source=str(path))
    env_url = env_map.get("MULTISIG_BRAID_EXPLORER_URL")
    if env_url:
        explorer_urls[network] = _check_url(env_url, source="environment")
    explorer_urls.update(
        _explorer_urls(override_map.get("explorer_urls"), source="overrides")
    )

    return LibraryConfig(network=network, explorer_urls=explorer_urls, request_timeout=timeout)
