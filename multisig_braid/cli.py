"""Command-line interface for multisig-braid.

The CLI is a thin façade over the library: derive braid addresses, estimate
fees, build explorer links and read signatures out of PSBTs, without writing
Python.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Sequence

from .address_types import MULTISIG_ADDRESS_TYPES
from .block_explorer import (
    block_explorer_address_url,
    block_explorer_api_url,
    block_explorer_base_url,
    block_explorer_transaction_url,
)
from .braid import Braid, BraidIndexError, derive_multisig_by_path
from .config import ConfigurationError, LibraryConfig, load_library_config, set_default_config_path
from .fees import estimate_multisig_transaction_fee, validate_fee_rate
from .networks import Network
from .psbt import PSBTError, auto_load_psbt, parse_signatures_from_psbt

logger = logging.getLogger(__name__)

COMPACT_JSON_SEPARATORS = (",", ":")


class CLIError(RuntimeError):
    """Raised when CLI arguments are invalid."""


def _read_text_argument(raw: str) -> str:
    """Return ``raw`` itself, or the contents of the file it names."""

    path = Path(raw).expanduser()
    try:
        if path.is_file():
            return path.read_text().strip()
    except OSError as exc:
        raise CLIError(f"Unable to read {raw}: {exc}") from exc
    return raw.strip()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Bitcoin multisig braid tooling")
    parser.add_argument(
        "--network",
        choices=[network.value for network in Network],
        help="Bitcoin network (defaults to the configured network, else mainnet)",
    )
    parser.add_argument("--config", help="Path to a YAML config file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    derive_parser = subparsers.add_parser(
        "derive", help="derive the multisig address of a braid at a path"
    )
    derive_parser.add_argument("braid", help="Braid JSON, or a file containing it")
    derive_parser.add_argument("path", help="Path below the braid, e.g. 0/5")

    fee_parser = subparsers.add_parser("estimate-fee", help="estimate a multisig spend fee in sats")
    fee_parser.add_argument("--address-type", required=True, choices=MULTISIG_ADDRESS_TYPES)
    fee_parser.add_argument("--inputs", type=int, required=True, help="Number of inputs")
    fee_parser.add_argument("--outputs", type=int, required=True, help="Number of outputs")
    fee_parser.add_argument("-m", type=int, required=True, help="Required signers")
    fee_parser.add_argument("-n", type=int, required=True, help="Total signers")
    fee_parser.add_argument("--fee-rate", required=True, help="Fee rate in sats/vbyte")

    url_parser = subparsers.add_parser("explorer-url", help="print a block explorer URL")
    url_parser.add_argument("kind", choices=["tx", "address", "api", "base"])
    url_parser.add_argument("value", nargs="?", default="", help="txid, address or API path")

    sigs_parser = subparsers.add_parser(
        "psbt-signatures", help="list partial signatures in a PSBT, keyed by public key"
    )
    sigs_parser.add_argument("psbt", help="Base64 or hex PSBT, or a file containing it")
    return parser


def _resolve_config(args: argparse.Namespace) -> LibraryConfig:
    if args.config:
        set_default_config_path(args.config)
    overrides = {"network": args.network} if args.network else None
    return load_library_config(overrides=overrides)


def cmd_derive(args: argparse.Namespace, config: LibraryConfig) -> None:
    braid = Braid.from_json(_read_text_argument(args.braid))
    if args.network and braid.network != config.network:
        raise CLIError(f"Braid is for {braid.network.value}, not {config.network.value}")
    multisig = derive_multisig_by_path(braid, args.path)
    print(json.dumps(multisig.to_dict(), indent=2))


def cmd_estimate_fee(args: argparse.Namespace) -> None:
    error = validate_fee_rate(args.fee_rate)
    if error:
        raise CLIError(error)
    fee = estimate_multisig_transaction_fee(
        address_type=args.address_type,
        num_inputs=args.inputs,
        num_outputs=args.outputs,
        m=args.m,
        n=args.n,
        fees_per_byte_in_satoshis=args.fee_rate,
    )
    print(fee)


def cmd_explorer_url(args: argparse.Namespace, config: LibraryConfig) -> None:
    network = config.network
    if args.kind == "base":
        print(block_explorer_base_url(network, config))
        return
    if not args.value:
        raise CLIError(f"explorer-url {args.kind} requires a value")
    if args.kind == "tx":
        print(block_explorer_transaction_url(args.value, network, config))
    elif args.kind == "address":
        print(block_explorer_address_url(args.value, network, config))
    else:
        path = args.value if args.value.startswith("/") else f"/{args.value}"
        print(block_explorer_api_url(path, network, config))


def cmd_psbt_signatures(args: argparse.Namespace) -> None:
    raw = _read_text_argument(args.psbt)
    if auto_load_psbt(raw) is None:
        raise CLIError("Input is not a base64 or hex PSBT")
    signatures = parse_signatures_from_psbt(raw)
    print(json.dumps(signatures or {}, separators=COMPACT_JSON_SEPARATORS))


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO)
    try:
        if args.command == "estimate-fee":
            cmd_estimate_fee(args)
        elif args.command == "psbt-signatures":
            cmd_psbt_signatures(args)
        else:
            config = _resolve_config(args)
            if args.command == "derive":
                cmd_derive(args, config)
            elif args.command == "explorer-url":
                cmd_explorer_url(args, config)
            else:  # pragma: no cover - argparse enforces choices
                raise CLIError(f"Unknown command: {args.command}")
    except KeyboardInterrupt:  # pragma: no cover - interactive use
        logger.info("Interrupted by user")
    except (CLIError, ConfigurationError, PSBTError, BraidIndexError, ValueError) as exc:
        parser.exit(1, f"error: {exc}\n")


if __name__ == "__main__":
    main(sys.argv[1:])
