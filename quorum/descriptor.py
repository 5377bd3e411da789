import logging
import re

from buidl.bech32 import (
    BECH32_ALPHABET,
    bech32_create_checksum,
    bech32_verify_checksum,
    encode_bech32,
    group_32,
)
from buidl.descriptor import calc_core_checksum
from buidl.helper import int_to_big_endian
from buidl.op import number_to_op_code
from buidl.script import (
    P2WPKHScriptPubKey,
    P2WSHScriptPubKey,
    RedeemScript,
    WitnessScript,
    address_to_script_pubkey,
)

from quorum.config import MAX_SIGNERS, normalize_xpub
from quorum.errors import ConfigInvalid


logger = logging.getLogger(__name__)

RECEIVE = 0
CHANGE = 1
BRANCHES = (RECEIVE, CHANGE)

# how far past the starting index the node should watch
IMPORT_RANGE_SIZE = 1000

TEMPLATES = {
    "P2WSH": "wsh(sortedmulti({body}))",
    "P2SH_P2WSH": "sh(wsh(sortedmulti({body})))",
    "P2SH": "sh(sortedmulti({body}))",
}

BECH32_HRP = {
    "mainnet": "bc",
    "testnet": "tb",
    "signet": "tb",
    "regtest": "bcrt",
}

ORIGIN_RE = re.compile(r"\[[0-9a-fA-F]{8}[^\]]*\]")


def strip_checksum(descriptor):
    return descriptor.split("#")[0]


def normalize_descriptor(descriptor):
    """
    Drops the checksum and writes hardened origin steps with ' so that
    descriptors echoed back by different bitcoind versions compare equal.
    """
    return ORIGIN_RE.sub(
        lambda m: m.group(0).replace("h", "'").replace("H", "'"),
        strip_checksum(descriptor.strip()),
    )


def encode_segwit_address(script_pubkey, network):
    """Bech32 address of a segwit ScriptPubKey, regtest included"""
    hrp = BECH32_HRP[network]
    raw = script_pubkey.raw_serialize()
    version = raw[0]
    if version > 0:
        version -= 0x50
    data = [version] + group_32(raw[2 : 2 + raw[1]])
    return hrp + "1" + encode_bech32(data + bech32_create_checksum(hrp, data))


def decode_address(address, network):
    """
    Returns the ScriptPubKey an address pays to.

    buidl refuses the bcrt human readable part, so segwit addresses are
    decoded here for every network.
    """
    hrp = BECH32_HRP[network]
    if address.lower().startswith(hrp + "1"):
        raw_data = address.lower()[len(hrp) + 1 :]
        try:
            data = [BECH32_ALPHABET.index(c) for c in raw_data]
        except ValueError:
            raise ValueError(f"bad address: {address}")
        if not bech32_verify_checksum(hrp, data):
            raise ValueError(f"bad address: {address}")
        number = 0
        for digit in data[1:-6]:
            number = (number << 5) + digit
        num_bytes = (len(data) - 7) * 5 // 8
        number >>= (len(data) - 7) * 5 % 8
        program = int_to_big_endian(number, num_bytes)
        if data[0] != 0 or num_bytes not in (20, 32):
            raise ValueError(f"unsupported witness program: {address}")
        if num_bytes == 32:
            return P2WSHScriptPubKey(program)
        return P2WPKHScriptPubKey(program)
    return address_to_script_pubkey(address)


class OutputDescriptor:
    def __init__(self, script_template, branch, range_start, range_end, checksum=None):
        self.script_template = script_template
        self.branch = branch
        self.range_start = range_start
        self.range_end = range_end
        calculated = calc_core_checksum(script_template)
        if checksum and checksum != calculated:
            raise ConfigInvalid(
                f"Calculated checksum `{calculated}` != supplied checksum `{checksum}`"
            )
        self.checksum = calculated

    def __repr__(self):
        return self.checksummed

    def __eq__(self, other):
        return (
            isinstance(other, OutputDescriptor)
            and self.checksummed == other.checksummed
            and self.range_start == other.range_start
            and self.range_end == other.range_end
        )

    @property
    def checksummed(self):
        return f"{self.script_template}#{self.checksum}"

    @property
    def is_change(self):
        return self.branch == CHANGE

    def matches(self, descriptor):
        """Whether a descriptor string (as echoed by the node) is this one"""
        return normalize_descriptor(descriptor) == normalize_descriptor(
            self.script_template
        )

    def import_request(self, timestamp="now", next_index=None):
        request = {
            "desc": self.checksummed,
            "active": True,
            "internal": self.is_change,
            "range": [self.range_start, self.range_end],
            "timestamp": timestamp,
        }
        if next_index is not None:
            request["next_index"] = next_index
        return request


class DescriptorBuilder:
    """
    Turns a MultisigWalletConfig into its receive and change descriptors,
    and derives the scripts and addresses those descriptors describe.
    """

    def __init__(self, config):
        quorum = config.quorum
        if quorum.total_signers != len(config.keys):
            raise ConfigInvalid(
                f"totalSigners is {quorum.total_signers} but {len(config.keys)} keys were supplied"
            )
        if quorum.required_signers < 1 or quorum.required_signers > quorum.total_signers:
            raise ConfigInvalid(f"Invalid m-of-n: {quorum.m_of_n}")
        if len(config.keys) > MAX_SIGNERS:
            raise ConfigInvalid(f"At most {MAX_SIGNERS} keys fit in a sortedmulti")
        if config.address_type not in TEMPLATES:
            raise ConfigInvalid(f"Unknown address type {config.address_type}")
        for key in config.keys:
            # raises ConfigInvalid on malformed or wrong-network keys
            if normalize_xpub(key.xpub, config.network) != key.xpub:
                raise ConfigInvalid(f"{key.name} has a non-canonical xpub {key.xpub}")
        self.config = config
        self.keys = sorted(config.keys, key=lambda k: k.xpub)
        self._hd_pubs = [k.hd_pub() for k in self.keys]
        self._branch_pubs = {}

    @property
    def range_start(self):
        return 0

    @property
    def range_end(self):
        return self.config.starting_address_index + IMPORT_RANGE_SIZE - 1

    def descriptor_text(self, branch):
        if branch not in BRANCHES:
            raise ValueError(f"branch must be 0 (receive) or 1 (change): {branch}")
        body = str(self.config.quorum.required_signers)
        for key in self.keys:
            body += f",[{key.origin}]{key.xpub}/{branch}/*"
        return TEMPLATES[self.config.address_type].format(body=body)

    def descriptor(self, branch):
        return OutputDescriptor(
            self.descriptor_text(branch), branch, self.range_start, self.range_end
        )

    def descriptors(self):
        """Returns (receive, change)"""
        return self.descriptor(RECEIVE), self.descriptor(CHANGE)

    def _branch_pub(self, key_index, branch):
        cache_key = (key_index, branch)
        if cache_key not in self._branch_pubs:
            self._branch_pubs[cache_key] = self._hd_pubs[key_index].child(branch)
        return self._branch_pubs[cache_key]

    def child_pubkeys(self, branch, index):
        """SEC pubkeys at branch/index, in descriptor key order"""
        return [
            self._branch_pub(i, branch).child(index).sec()
            for i in range(len(self._hd_pubs))
        ]

    def multisig_commands(self, branch, index):
        secs = sorted(self.child_pubkeys(branch, index))
        return (
            [number_to_op_code(self.config.quorum.required_signers)]
            + secs
            + [number_to_op_code(len(secs)), 174]
        )

    def scripts(self, branch, index):
        """
        Returns a dict with the script_pubkey, redeem_script and
        witness_script (the last two may be None) for an address.
        """
        if type(index) is not int or index < 0:
            raise ValueError(f"Address index must be a non-negative int: {index}")
        commands = self.multisig_commands(branch, index)
        address_type = self.config.address_type
        if address_type == "P2SH":
            redeem_script = RedeemScript(commands)
            return {
                "script_pubkey": redeem_script.script_pubkey(),
                "redeem_script": redeem_script,
                "witness_script": None,
            }
        witness_script = WitnessScript(commands)
        if address_type == "P2WSH":
            return {
                "script_pubkey": witness_script.script_pubkey(),
                "redeem_script": None,
                "witness_script": witness_script,
            }
        redeem_script = witness_script.script_pubkey().redeem_script()
        return {
            "script_pubkey": redeem_script.script_pubkey(),
            "redeem_script": redeem_script,
            "witness_script": witness_script,
        }

    def address(self, branch, index):
        script_pubkey = self.scripts(branch, index)["script_pubkey"]
        if self.config.address_type == "P2WSH":
            return encode_segwit_address(script_pubkey, self.config.network)
        return script_pubkey.address(self.config.key_network)

    def addresses(self, branch, start, count):
        return [self.address(branch, i) for i in range(start, start + count)]
