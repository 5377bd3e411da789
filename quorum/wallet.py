import logging
import re

from quorum.descriptor import BRANCHES, DescriptorBuilder
from quorum.errors import DescriptorMismatch, ImportFailed, RPCError
from quorum.rpc import RPC_WALLET_ALREADY_LOADED, RPC_WALLET_NOT_FOUND


logger = logging.getLogger(__name__)


def watch_wallet_name(config):
    """
    Deterministic node wallet name for a config: "My Team Vault" becomes
    "my_team_vault_watch".
    """
    return re.sub(r"\s+", "_", config.name.strip()).lower() + "_watch"


class WatchWalletManager:
    def __init__(self, rpc):
        self.rpc = rpc

    def wallet_name(self, config):
        return watch_wallet_name(config)

    def ensure_loaded(self, name):
        """
        Loads (or creates) a blank, private key disabled descriptor wallet.

        Returns True if the wallet had to be created.
        """
        if name in self.rpc.list_wallets():
            return False
        try:
            self.rpc.load_wallet(name)
            logger.info("loaded watch wallet %s", name)
            return False
        except RPCError as e:
            if e.code == RPC_WALLET_ALREADY_LOADED:
                return False
            if e.code != RPC_WALLET_NOT_FOUND:
                raise
        self.rpc.create_wallet(name, disable_private_keys=True, blank=True)
        logger.info("created watch wallet %s", name)
        return True

    def provision(self, config, rescan=False):
        """
        Make the node's watch wallet for this config hold exactly its
        receive and change descriptors. Safe to call repeatedly.

        Returns the wallet name.
        """
        builder = DescriptorBuilder(config)
        name = self.wallet_name(config)
        self.ensure_loaded(name)
        existing = [d.desc for d in self.rpc.list_descriptors(name)]
        requests = []
        for descriptor in builder.descriptors():
            if any(descriptor.matches(desc) for desc in existing):
                logger.debug("%s already imported into %s", descriptor, name)
                continue
            info = self.rpc.get_descriptor_info(descriptor.script_template)
            if info.checksum != descriptor.checksum:
                raise DescriptorMismatch(
                    f"bitcoind computed checksum {info.checksum} for {descriptor.script_template}, "
                    f"expected {descriptor.checksum}"
                )
            requests.append(
                descriptor.import_request(
                    timestamp=0 if rescan else "now",
                    next_index=config.starting_address_index,
                )
            )
        if requests:
            results = self.rpc.import_descriptors(name, requests)
            for request, result in zip(requests, results):
                for warning in result.warnings:
                    logger.warning("importing into %s: %s", name, warning)
                if not result.success:
                    raise ImportFailed(request["desc"], result.error)
            logger.info("imported %d descriptor(s) into %s", len(requests), name)
        self.verify(config, builder)
        return name

    def verify(self, config, builder=None):
        """
        Compare the node's first receive address against local derivation.
        """
        builder = builder or DescriptorBuilder(config)
        index = config.starting_address_index
        node_address = self.derive_address(config, 0, index, builder=builder)
        local_address = builder.address(0, index)
        if node_address != local_address:
            raise DescriptorMismatch(
                f"bitcoind derived {node_address} at receive index {index}, expected {local_address}"
            )

    def derive_address(self, config, branch, index, builder=None):
        return self.derive_addresses(config, branch, index, index, builder=builder)[0]

    def derive_addresses(self, config, branch, start, end, builder=None):
        """Addresses for branch indexes start..end, both inclusive"""
        if branch not in BRANCHES:
            raise ValueError(f"branch must be 0 (receive) or 1 (change): {branch}")
        if start < 0 or end < start:
            raise ValueError(f"Invalid address range {start}..{end}")
        builder = builder or DescriptorBuilder(config)
        descriptor = builder.descriptor(branch)
        return self.rpc.derive_addresses(descriptor.checksummed, start, end)
