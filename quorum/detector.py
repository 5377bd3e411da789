import logging

from quorum.descriptor import BRANCHES, DescriptorBuilder
from quorum.errors import DescriptorMismatch
from quorum.signing import parse_psbt


logger = logging.getLogger(__name__)

DEFAULT_GAP_LIMIT = 20


def claimed_scripts(psbt_in):
    """
    What an input says it spends: its scriptPubKey when the utxo is known,
    otherwise the exact redeem and witness script pair.
    """
    claims = set()
    script_pubkey = psbt_in.script_pubkey()
    if script_pubkey is not None:
        claims.add(("script_pubkey", script_pubkey.raw_serialize()))
    elif psbt_in.redeem_script is not None or psbt_in.witness_script is not None:
        claims.add(_script_pair(psbt_in.redeem_script, psbt_in.witness_script))
    return claims


def _script_pair(redeem_script, witness_script):
    return (
        "scripts",
        redeem_script.raw_serialize() if redeem_script is not None else None,
        witness_script.raw_serialize() if witness_script is not None else None,
    )


def derived_scripts(builder, branch, index):
    scripts = builder.scripts(branch, index)
    return {
        ("script_pubkey", scripts["script_pubkey"].raw_serialize()),
        _script_pair(scripts["redeem_script"], scripts["witness_script"]),
    }


def derivation_hints(psbt_obj, config):
    """
    (branch, index) pairs named by the PSBT's BIP32 derivations for keys
    whose fingerprint and account path belong to this config.
    """
    hints = []
    for psbt_in in psbt_obj.psbt_ins:
        for named_pub in psbt_in.named_pubs.values():
            xfp = named_pub.root_fingerprint.hex()
            for key in config.keys:
                prefix = key.bip32_path + "/"
                if key.xfp != xfp or not named_pub.root_path.startswith(prefix):
                    continue
                rest = named_pub.root_path[len(prefix) :].split("/")
                if len(rest) != 2 or not all(r.isdigit() for r in rest):
                    continue
                hint = (int(rest[0]), int(rest[1]))
                if hint[0] in BRANCHES and hint not in hints:
                    hints.append(hint)
    return hints


class WalletOwnershipDetector:
    """
    Figures out which known wallet config a PSBT spends from by deriving
    each config's scripts and comparing them to what the inputs claim.
    """

    def __init__(self, network, gap_limit=DEFAULT_GAP_LIMIT):
        self.network = network
        self.gap_limit = gap_limit

    def owns(self, psbt_obj, config, claims=None):
        if claims is None:
            claims = set()
            for psbt_in in psbt_obj.psbt_ins:
                claims |= claimed_scripts(psbt_in)
        if not claims:
            return False
        builder = DescriptorBuilder(config)
        tried = set()
        for branch, index in derivation_hints(psbt_obj, config):
            tried.add((branch, index))
            if derived_scripts(builder, branch, index) & claims:
                return True
        start = config.starting_address_index
        for index in range(start, start + self.gap_limit):
            for branch in BRANCHES:
                if (branch, index) in tried:
                    continue
                if derived_scripts(builder, branch, index) & claims:
                    return True
        return False

    def detect_all(self, psbt, catalog):
        psbt_obj = parse_psbt(psbt, self.network)
        claims = set()
        for psbt_in in psbt_obj.psbt_ins:
            claims |= claimed_scripts(psbt_in)
        return [c for c in catalog if self.owns(psbt_obj, c, claims)]

    def detect(self, psbt, catalog):
        """
        Returns the first config in catalog order that owns any input, or None.
        """
        matches = self.detect_all(psbt, catalog)
        if not matches:
            logger.info("no wallet config owns this psbt")
            return None
        if len(matches) > 1:
            logger.warning(
                "psbt matches %d wallet configs (%s), using %s",
                len(matches),
                ", ".join(c.name for c in matches),
                matches[0].name,
            )
        return matches[0]

    def require(self, psbt, catalog):
        config = self.detect(psbt, catalog)
        if config is None:
            raise DescriptorMismatch(
                f"none of the {len(catalog)} known wallet configs owns this psbt"
            )
        return config
