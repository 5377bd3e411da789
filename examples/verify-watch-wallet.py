import argparse
import sys

from quorum.config import NodeConfig, load_wallet_config
from quorum.descriptor import BRANCHES, DescriptorBuilder
from quorum.rpc import BitcoinRPC
from quorum.wallet import WatchWalletManager


def _abort(msg):
    print("ABORTING, ADDRESSES DO NOT MATCH:\n")
    print(msg)
    sys.exit(1)


if __name__ == "__main__":

    parser = argparse.ArgumentParser(
        description="Check that bitcoind derives the same multisig addresses as your wallet config."
    )
    parser.add_argument(
        "--config",
        help="Caravan wallet config /path/to/file.json",
        required=True,
    )
    parser.add_argument("--limit", type=int, default=20)
    parser.add_argument("--offset", type=int, default=0)

    args = parser.parse_args()

    config = load_wallet_config(args.config)
    builder = DescriptorBuilder(config)
    manager = WatchWalletManager(BitcoinRPC(NodeConfig.from_env(network=config.network)))

    start, end = args.offset, args.offset + args.limit - 1
    for branch in BRANCHES:
        node_addresses = manager.derive_addresses(config, branch, start, end, builder=builder)
        for cnt, node_address in enumerate(node_addresses):
            local_address = builder.address(branch, start + cnt)
            if local_address != node_address:
                _abort(
                    f"#{branch}/{start + cnt}: bitcoind has {node_address}, config gives {local_address}"
                )
            print(f"Address #{branch}/{start + cnt}: {local_address}")
