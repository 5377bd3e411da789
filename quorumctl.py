#!/usr/bin/env python3
# coding: utf-8

import argparse
import logging
import sys
from getpass import getpass
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from platform import platform

from buidl.libsec_status import is_libsec_enabled

from quorum.caravan import CaravanSignatureExtractor
from quorum.config import NodeConfig, load_wallet_catalog, load_wallet_config
from quorum.coordinator import PSBTCoordinator
from quorum.descriptor import CHANGE, RECEIVE, DescriptorBuilder
from quorum.detector import DEFAULT_GAP_LIMIT, WalletOwnershipDetector
from quorum.errors import QuorumError
from quorum.replacement import ReplacementEngine
from quorum.rpc import BitcoinRPC
from quorum.signing import KeySigner, WalletSigner
from quorum.wallet import WatchWalletManager, watch_wallet_name


#####################################################################
# CLI UX
#####################################################################


RESET_TERMINAL_COLOR = "\033[0m"


def blue_fg(string):
    return f"\033[34m{string}{RESET_TERMINAL_COLOR}"


def yellow_fg(string):
    return f"\033[93m{string}{RESET_TERMINAL_COLOR}"


def green_fg(string):
    return f"\033[32m{string}{RESET_TERMINAL_COLOR}"


def red_fg(string):
    return f"\033[31m{string}{RESET_TERMINAL_COLOR}"


def print_blue(string):
    print(blue_fg(string))


def print_yellow(string):
    print(yellow_fg(string))


def print_green(string):
    print(green_fg(string))


def print_red(string):
    print(red_fg(string))


def _abort(msg):
    print_red(msg)
    sys.exit(1)


def _get_version(dist):
    try:
        return version(dist)
    except PackageNotFoundError:
        return "Unknown"


def _read_arg(value):
    """A literal value, or the contents of a file when value is a path"""
    path = Path(value)
    if len(value) < 4096 and path.is_file():
        return path.read_text().strip()
    return value.strip()


def _read_wif(wif_file):
    if wif_file:
        return Path(wif_file).read_text().strip()
    return getpass(prompt=blue_fg("Enter WIF (Wallet Import Format) to use for signing: ")).strip()


def _parse_outputs(pairs):
    outputs = {}
    for pair in pairs:
        address, _, amount = pair.rpartition(":")
        if not address or not amount.isdigit():
            _abort(f"Outputs look like address:satoshis, got `{pair}`")
        outputs[address] = outputs.get(address, 0) + int(amount)
    return outputs


def _signers(args):
    signers = [WalletSigner(name) for name in args.signer_wallet or []]
    for wif_file in args.signer_wif_file or []:
        signers.append(KeySigner(_read_wif(wif_file)))
    return signers


def _coordinator(args):
    node = NodeConfig.from_env(network=args.network)
    return PSBTCoordinator(BitcoinRPC(node))


#####################################################################
# Commands
#####################################################################


def cmd_descriptors(args):
    config = load_wallet_config(args.config)
    receive, change = DescriptorBuilder(config).descriptors()
    print_yellow(f"{config.name}: {config.quorum.m_of_n} {config.address_type}")
    print(f"receive: {receive.checksummed}")
    print(f"change: {change.checksummed}")
    print(f"watch wallet: {watch_wallet_name(config)}")


def cmd_address(args):
    config = load_wallet_config(args.config)
    builder = DescriptorBuilder(config)
    branch = CHANGE if args.change else RECEIVE
    start = config.starting_address_index if args.index is None else args.index
    for offset, address in enumerate(builder.addresses(branch, start, args.count)):
        print(f"#{start + offset}: {address}")


def cmd_provision(args):
    config = load_wallet_config(args.config)
    coordinator = _coordinator(args)
    name = WatchWalletManager(coordinator.rpc).provision(config, rescan=args.rescan)
    print_green(f"Watch wallet {name} is ready")


def cmd_create(args):
    config = load_wallet_config(args.config)
    coordinator = _coordinator(args)
    funded = coordinator.create(
        watch_wallet_name(config),
        _parse_outputs(args.to),
        fee_rate=args.fee_rate,
        replaceable=not args.no_rbf,
    )
    print_yellow(f"Fee: {funded.fee:,} sats")
    print(funded.psbt)


def cmd_sign(args):
    coordinator = _coordinator(args)
    psbt = _read_arg(args.psbt)
    signers = _signers(args)
    if not signers:
        _abort("Give at least one --signer-wallet or --signer-wif-file")
    for signer in signers:
        report = coordinator.apply_signer(psbt, signer)
        for result in report.results:
            print_blue(f"{signer} {result}")
        psbt = report.psbt
    print_yellow(f"State: {coordinator.signing_state(psbt)}")
    print(psbt)


def cmd_state(args):
    coordinator = _coordinator(args)
    psbt = _read_arg(args.psbt)
    print(coordinator.signing_state(psbt))


def cmd_finalize(args):
    coordinator = _coordinator(args)
    result = coordinator.finalize(_read_arg(args.psbt))
    if not result.complete:
        print_yellow("PSBT is not complete, more signatures are needed")
        print(result.psbt)
        sys.exit(2)
    if args.broadcast:
        print_green(coordinator.broadcast(result.transaction_hex))
    else:
        print(result.transaction_hex)


def cmd_broadcast(args):
    coordinator = _coordinator(args)
    print_green(coordinator.broadcast(_read_arg(args.hex)))


def cmd_extract(args):
    extractor = CaravanSignatureExtractor(args.network or "regtest")
    record = extractor.extract(_read_arg(args.psbt), _read_wif(args.wif_file))
    print(record.to_json())


def cmd_detect(args):
    catalog = load_wallet_catalog(args.catalog)
    network = args.network or (catalog[0].network if catalog else "regtest")
    detector = WalletOwnershipDetector(network, gap_limit=args.gap_limit)
    config = detector.detect(_read_arg(args.psbt), catalog)
    if config is None:
        _abort("No known wallet config owns this PSBT")
    print_green(f"{config.name} ({config.quorum.m_of_n} {config.address_type})")


def cmd_bump(args):
    config = load_wallet_config(args.config)
    coordinator = _coordinator(args)
    engine = ReplacementEngine(coordinator)
    result = engine.replace(
        watch_wallet_name(config),
        args.txid,
        _parse_outputs(args.to),
        args.fee_rate,
        _signers(args),
    )
    if not result.broadcast:
        print_yellow(f"Replacement is {coordinator.signing_state(result.psbt)}, not broadcast")
        print(result.psbt)
        sys.exit(2)
    print_green(f"{args.txid} replaced by {result.txid}")


def cmd_version_info(args):
    print_yellow(f"quorum Version: {_get_version('quorum')}")
    print_yellow(f"buidl Version: {_get_version('buidl')}")
    print_yellow(f"Python Version: {sys.version_info}")
    print_yellow(f"Platform: {platform()}")
    print_yellow(f"libsecp256k1 Configured: {is_libsec_enabled()}")


def build_parser():
    parser = argparse.ArgumentParser(
        description="Coordinate k-of-n multisig transactions with PSBTs and bitcoind."
    )
    parser.add_argument(
        "--network",
        choices=("mainnet", "testnet", "regtest", "signet"),
        help="Defaults to $BITCOIN_NETWORK or regtest",
    )
    parser.add_argument("--verbose", action="store_true", help="Print debug logging")
    sub = parser.add_subparsers(dest="command")
    sub.required = True

    p = sub.add_parser("descriptors", help="Show a wallet config's descriptors")
    p.add_argument("config", help="Caravan wallet config JSON file")
    p.set_defaults(func=cmd_descriptors)

    p = sub.add_parser("address", help="Derive addresses locally")
    p.add_argument("config")
    p.add_argument("--change", action="store_true")
    p.add_argument("--index", type=int)
    p.add_argument("--count", type=int, default=1)
    p.set_defaults(func=cmd_address)

    p = sub.add_parser("provision", help="Create or refresh the node's watch wallet")
    p.add_argument("config")
    p.add_argument("--rescan", action="store_true", help="Import with timestamp 0")
    p.set_defaults(func=cmd_provision)

    p = sub.add_parser("create", help="Create an unsigned PSBT")
    p.add_argument("config")
    p.add_argument("--to", action="append", required=True, help="address:satoshis")
    p.add_argument("--fee-rate", type=float, help="sat/vB")
    p.add_argument("--no-rbf", action="store_true")
    p.set_defaults(func=cmd_create)

    signer_args = argparse.ArgumentParser(add_help=False)
    signer_args.add_argument("--signer-wallet", action="append", help="node wallet holding a key")
    signer_args.add_argument("--signer-wif-file", action="append", help="file with a WIF key")

    p = sub.add_parser("sign", help="Apply signers to a PSBT", parents=[signer_args])
    p.add_argument("psbt", help="base64 PSBT or a file containing one")
    p.set_defaults(func=cmd_sign)

    p = sub.add_parser("state", help="Show how far a PSBT is signed")
    p.add_argument("psbt")
    p.set_defaults(func=cmd_state)

    p = sub.add_parser("finalize", help="Finalize a PSBT")
    p.add_argument("psbt")
    p.add_argument("--broadcast", action="store_true")
    p.set_defaults(func=cmd_finalize)

    p = sub.add_parser("broadcast", help="Broadcast a finalized transaction")
    p.add_argument("hex")
    p.set_defaults(func=cmd_broadcast)

    p = sub.add_parser("extract", help="Caravan signature JSON for one key")
    p.add_argument("psbt")
    p.add_argument("--wif-file", help="Prompted for when omitted")
    p.set_defaults(func=cmd_extract)

    p = sub.add_parser("detect", help="Find the wallet config that owns a PSBT")
    p.add_argument("psbt")
    p.add_argument("--catalog", required=True, help="Directory of wallet config JSON files")
    p.add_argument("--gap-limit", type=int, default=DEFAULT_GAP_LIMIT)
    p.set_defaults(func=cmd_detect)

    p = sub.add_parser("bump", help="Replace an unconfirmed transaction (RBF)", parents=[signer_args])
    p.add_argument("config")
    p.add_argument("--txid", required=True)
    p.add_argument("--to", action="append", required=True, help="address:satoshis")
    p.add_argument("--fee-rate", type=float, required=True, help="sat/vB")
    p.set_defaults(func=cmd_bump)

    p = sub.add_parser("version_info", help="Print versions for debugging")
    p.set_defaults(func=cmd_version_info)
    return parser


if __name__ == "__main__":
    args = build_parser().parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    try:
        args.func(args)
    except QuorumError as e:
        _abort(f"{e.__class__.__name__}: {e}")
    except ValueError as e:
        _abort(str(e))
