import json
import logging
import re

from os import getenv
from pathlib import Path

from buidl.descriptor import is_valid_xfp_hex
from buidl.hd import XPUB, HDPublicKey, is_valid_bip32_path

from quorum.errors import ConfigInvalid


logger = logging.getLogger(__name__)

NETWORKS = ("mainnet", "testnet", "regtest", "signet")

# buidl only knows mainnet and testnet version bytes
KEY_NETWORK = {
    "mainnet": "mainnet",
    "testnet": "testnet",
    "regtest": "testnet",
    "signet": "testnet",
}

ADDRESS_TYPES = ("P2SH", "P2SH_P2WSH", "P2WSH")

# Caravan writes the wrapped segwit type with a dash
ADDRESS_TYPE_ALIASES = {
    "P2SH-P2WSH": "P2SH_P2WSH",
}

# sortedmulti is limited by the 520 byte push limit of p2sh
MAX_SIGNERS = 15

DEFAULT_RPC_PORTS = {
    "mainnet": 8332,
    "testnet": 18332,
    "regtest": 18443,
    "signet": 38332,
}


def normalize_path(path):
    """
    Return a bip32 path that uses ' for hardened children, as in m/48'/1'/0'/2'
    """
    return path.strip().lower().replace("h", "'")


def normalize_xpub(xpub, network):
    """
    Returns the plain xpub/tpub form of any SLIP-132 extended public key.

    Bitcoin Core only understands the plain version bytes and the descriptor
    checksum is calculated over the exact string, so Zpub/Vpub style keys are
    converted before they go anywhere near a descriptor.
    """
    try:
        hd_pub = HDPublicKey.parse(xpub.strip())
    except (ValueError, KeyError) as e:
        raise ConfigInvalid(f"Invalid extended public key `{xpub}`: {e}")
    expected = KEY_NETWORK[network]
    if hd_pub.network != expected:
        raise ConfigInvalid(
            f"Extended public key {xpub} is for {hd_pub.network}, but the wallet is on {network}"
        )
    return hd_pub.xpub(version=XPUB[hd_pub.network])


class QuorumConfig:
    def __init__(self, required_signers, total_signers):
        for value in (required_signers, total_signers):
            if type(value) is not int:
                raise ConfigInvalid(f"Quorum values must be ints: {value!r}")
        if total_signers < 1 or total_signers > MAX_SIGNERS:
            raise ConfigInvalid(
                f"totalSigners must be between 1 and {MAX_SIGNERS}: {total_signers}"
            )
        if required_signers < 1 or required_signers > total_signers:
            raise ConfigInvalid(
                f"Invalid m-of-n: {required_signers}-of-{total_signers}"
            )
        self.required_signers = required_signers
        self.total_signers = total_signers

    def __repr__(self):
        return self.m_of_n

    def __eq__(self, other):
        return (
            isinstance(other, QuorumConfig)
            and self.required_signers == other.required_signers
            and self.total_signers == other.total_signers
        )

    @property
    def m_of_n(self):
        return f"{self.required_signers}-of-{self.total_signers}"

    @classmethod
    def from_dict(cls, data):
        try:
            return cls(data["requiredSigners"], data["totalSigners"])
        except (KeyError, TypeError):
            raise ConfigInvalid(f"Quorum needs requiredSigners and totalSigners: {data}")

    def to_dict(self):
        return {
            "requiredSigners": self.required_signers,
            "totalSigners": self.total_signers,
        }


class ExtendedKeyRecord:
    """
    One cosigner of a multisig wallet: the account level xpub along with
    the root fingerprint and the path it was derived at.
    """

    def __init__(self, name, xpub, bip32_path, xfp, method=None):
        if not is_valid_bip32_path(bip32_path):
            raise ConfigInvalid(f"Invalid BIP32 path `{bip32_path}` for {name}")
        if not xfp or not is_valid_xfp_hex(xfp.lower()):
            raise ConfigInvalid(f"Invalid hex fingerprint `{xfp}` for {name}")
        self.name = name
        self.xpub = xpub
        self.bip32_path = normalize_path(bip32_path)
        self.xfp = xfp.lower()
        self.method = method

    def __repr__(self):
        return f"[{self.xfp}{self.bip32_path[1:]}]{self.xpub}"

    def __eq__(self, other):
        return (
            isinstance(other, ExtendedKeyRecord)
            and self.xpub == other.xpub
            and self.xfp == other.xfp
            and self.bip32_path == other.bip32_path
        )

    def __hash__(self):
        return hash((self.xpub, self.xfp, self.bip32_path))

    @property
    def origin(self):
        return f"{self.xfp}{self.bip32_path[1:]}"

    def hd_pub(self):
        return HDPublicKey.parse(self.xpub)

    @classmethod
    def from_dict(cls, data, network):
        try:
            xpub = normalize_xpub(data["xpub"], network)
            return cls(
                name=data.get("name", ""),
                xpub=xpub,
                bip32_path=data["bip32Path"],
                xfp=data.get("xfp"),
                method=data.get("method"),
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise ConfigInvalid(f"Malformed extended public key entry {data}: {e}")

    def to_dict(self):
        result = {
            "name": self.name,
            "xpub": self.xpub,
            "bip32Path": self.bip32_path,
            "xfp": self.xfp,
        }
        if self.method:
            result["method"] = self.method
        return result


class MultisigWalletConfig:
    """
    The deterministic seed of a watch-only multisig wallet.

    Everything else (descriptors, scripts, addresses, the node wallet name)
    is derived from these fields, so instances are never mutated.
    """

    def __init__(
        self,
        name,
        network,
        address_type,
        quorum,
        keys,
        starting_address_index=0,
    ):
        if not name or not name.strip():
            raise ConfigInvalid("Wallet config needs a name")
        if network not in NETWORKS:
            raise ConfigInvalid(f"Unknown network `{network}`")
        address_type = ADDRESS_TYPE_ALIASES.get(address_type, address_type)
        if address_type not in ADDRESS_TYPES:
            raise ConfigInvalid(
                f"addressType must be one of {', '.join(ADDRESS_TYPES)}: {address_type}"
            )
        if quorum.total_signers != len(keys):
            raise ConfigInvalid(
                f"Quorum {quorum} does not match the {len(keys)} extended public keys supplied"
            )
        if len(set(k.xpub for k in keys)) != len(keys):
            raise ConfigInvalid(f"Duplicate extended public key in {name}")
        if type(starting_address_index) is not int or starting_address_index < 0:
            raise ConfigInvalid(
                f"startingAddressIndex must be a non-negative int: {starting_address_index}"
            )
        self.name = name
        self.network = network
        self.address_type = address_type
        self.quorum = quorum
        self.keys = tuple(keys)
        self.starting_address_index = starting_address_index

    def __repr__(self):
        return f"{self.name} ({self.quorum} {self.address_type} on {self.network})"

    @property
    def key_network(self):
        """The network name buidl uses for keys and addresses of this wallet"""
        return KEY_NETWORK[self.network]

    @classmethod
    def from_dict(cls, data):
        if not isinstance(data, dict):
            raise ConfigInvalid(f"Wallet config must be an object: {data!r}")
        network = data.get("network")
        if network not in NETWORKS:
            raise ConfigInvalid(f"Unknown network `{network}`")
        keys = data.get("extendedPublicKeys")
        if not isinstance(keys, list) or not keys:
            raise ConfigInvalid("extendedPublicKeys must be a non-empty list")
        return cls(
            name=data.get("name"),
            network=network,
            address_type=data.get("addressType"),
            quorum=QuorumConfig.from_dict(data.get("quorum") or {}),
            keys=[ExtendedKeyRecord.from_dict(k, network) for k in keys],
            starting_address_index=data.get("startingAddressIndex", 0),
        )

    @classmethod
    def from_json(cls, text):
        try:
            data = json.loads(text)
        except ValueError as e:
            raise ConfigInvalid(f"Wallet config is not valid JSON: {e}")
        return cls.from_dict(data)

    def to_dict(self):
        return {
            "name": self.name,
            "network": self.network,
            "addressType": self.address_type,
            "quorum": self.quorum.to_dict(),
            "extendedPublicKeys": [k.to_dict() for k in self.keys],
            "startingAddressIndex": self.starting_address_index,
        }

    def to_json(self):
        return json.dumps(self.to_dict(), indent=2)


def load_wallet_config(path):
    return MultisigWalletConfig.from_json(Path(path).read_text())


def load_wallet_catalog(directory):
    """
    Load every *.json wallet config in a directory, sorted by file name.
    """
    catalog = []
    names = set()
    for path in sorted(Path(directory).glob("*.json")):
        config = load_wallet_config(path)
        if config.name in names:
            raise ConfigInvalid(f"Duplicate wallet name {config.name} in {path}")
        names.add(config.name)
        logger.debug("loaded wallet config %s from %s", config.name, path)
        catalog.append(config)
    return catalog


class NodeConfig:
    """Where and how to reach the bitcoind JSON-RPC server"""

    def __init__(
        self,
        host="127.0.0.1",
        port=None,
        user=None,
        password=None,
        network="regtest",
        protocol="http",
        timeout=None,
        cookie_file=None,
    ):
        if network not in NETWORKS:
            raise ConfigInvalid(f"Unknown network `{network}`")
        if protocol not in ("http", "https"):
            raise ConfigInvalid(f"Unsupported RPC protocol `{protocol}`")
        self.host = host
        self.port = port or DEFAULT_RPC_PORTS[network]
        self.user = user
        self.password = password
        self.network = network
        self.protocol = protocol
        self.timeout = timeout
        self.cookie_file = cookie_file

    def __repr__(self):
        return f"NodeConfig({self.url}, {self.network})"

    @property
    def url(self):
        return f"{self.protocol}://{self.host}:{self.port}"

    def credentials(self):
        """
        Returns (user, password), reading the cookie file when no password is set
        """
        if self.password is None and self.cookie_file:
            cookie = Path(self.cookie_file).read_text().strip()
            user, _, password = cookie.partition(":")
            return user, password
        return self.user, self.password

    @classmethod
    def from_env(cls, **overrides):
        network = overrides.pop("network", None) or getenv("BITCOIN_NETWORK", "regtest")
        port = getenv("BITCOIN_RPC_PORT")
        timeout = getenv("BITCOIN_RPC_TIMEOUT")
        if port is not None and not re.match(r"^\d+$", port):
            raise ConfigInvalid(f"BITCOIN_RPC_PORT must be a number: {port}")
        settings = {
            "host": getenv("BITCOIN_RPC_HOST", "127.0.0.1"),
            "port": int(port) if port else None,
            "user": getenv("BITCOIN_RPC_USER"),
            "password": getenv("BITCOIN_RPC_PASSWORD"),
            "protocol": getenv("BITCOIN_RPC_PROTOCOL", "http"),
            "timeout": float(timeout) if timeout else None,
            "cookie_file": getenv("BITCOIN_RPC_COOKIE"),
        }
        settings.update({k: v for k, v in overrides.items() if v is not None})
        return cls(network=network, **settings)
