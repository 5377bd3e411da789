import logging

from io import BytesIO

from buidl.ecc import PrivateKey, S256Point, Signature
from buidl.psbt import PSBT

from quorum.config import KEY_NETWORK
from quorum.errors import SigningFailure
from quorum.psbt_maps import PSBTMaps


logger = logging.getLogger(__name__)

SIGNED = "signed"
SKIPPED = "skipped"
FAILED = "failed"


def parse_psbt(psbt_b64, network):
    """
    Parse a base64 PSBT for a wallet network (regtest included).

    buidl refuses a whole PSBT when one partial signature does not verify,
    so partial signatures are taken out before buidl parses it and put back
    on the inputs afterwards. Use valid_signatures() to tell them apart.
    """
    maps = PSBTMaps.parse_base64(psbt_b64)
    stream = BytesIO(maps.without_partial_sigs().serialize())
    psbt_obj = PSBT.parse(stream, network=KEY_NETWORK[network])
    for i, psbt_in in enumerate(psbt_obj.psbt_ins):
        psbt_in.sigs.update(maps.partial_sigs(i))
    return psbt_obj


def merge_signatures(psbt_b64, psbt_obj):
    """
    Base64 PSBT with psbt_obj's partial signatures added to psbt_b64, the
    PSBT psbt_obj was parsed from. Every other record keeps its bytes.
    """
    maps = PSBTMaps.parse_base64(psbt_b64)
    for i, psbt_in in enumerate(psbt_obj.psbt_ins):
        for sec, sig in psbt_in.sigs.items():
            maps.set_partial_sig(i, sec, sig)
    return maps.serialize_base64()


def is_finalized(psbt_in):
    return bool(psbt_in.witness) or bool(
        psbt_in.script_sig and psbt_in.script_sig.commands
    )


def multisig_script(psbt_in):
    """The script whose OP_CHECKMULTISIG the input satisfies, if known"""
    if psbt_in.witness_script is not None:
        return psbt_in.witness_script
    if psbt_in.redeem_script is not None and psbt_in.redeem_script.commands[-1:] == [
        174
    ]:
        return psbt_in.redeem_script
    return None


def input_pubkeys(psbt_in):
    """SEC pubkeys an input's multisig script commits to"""
    script = multisig_script(psbt_in)
    if script is None:
        return []
    return [c for c in script.commands if type(c) == bytes and len(c) == 33]


def signature_sets(psbt_obj):
    return [set(psbt_in.sigs.keys()) for psbt_in in psbt_obj.psbt_ins]


def valid_signatures(psbt_obj, input_index):
    """
    SEC pubkeys of the cosigners whose partial signature on this input
    verifies against its sighash.

    parse_psbt() leaves partial signatures unchecked.
    """
    psbt_in = psbt_obj.psbt_ins[input_index]
    cosigners = set(input_pubkeys(psbt_in))
    valid = set()
    if psbt_in.prev_out is None and psbt_in.prev_tx is None:
        # no amount to build a sighash from
        return valid
    for sec, sig in psbt_in.sigs.items():
        if sec not in cosigners or len(sig) < 2:
            continue
        hash_type = sig[-1]
        try:
            if psbt_in.use_segwit_signature():
                z = psbt_obj.tx_obj.sig_hash_bip143(
                    input_index,
                    psbt_in.redeem_script,
                    psbt_in.witness_script,
                    hash_type=hash_type,
                )
            else:
                z = psbt_obj.tx_obj.sig_hash_legacy(
                    input_index, psbt_in.redeem_script, hash_type=hash_type
                )
            verified = S256Point.parse(sec).verify(z, Signature.parse(sig[:-1]))
        except (ValueError, RuntimeError, IndexError) as e:
            logger.debug("bad signature from %s on input %d: %s", sec.hex(), input_index, e)
            continue
        if verified:
            valid.add(sec)
        else:
            logger.warning("invalid signature from %s on input %d", sec.hex(), input_index)
    return valid


class InputSigningResult:
    def __init__(self, index, status, public_key=None, error=None):
        self.index = index
        self.status = status
        self.public_key = public_key
        self.error = error

    def __repr__(self):
        if self.error:
            return f"input {self.index}: {self.status} ({self.error.reason})"
        return f"input {self.index}: {self.status}"

    @property
    def reason(self):
        return self.error.reason if self.error else None

    @classmethod
    def skipped(cls, index, reason, public_key=None):
        return cls(index, SKIPPED, public_key, SigningFailure(index, reason))

    @classmethod
    def failed(cls, index, reason, public_key=None):
        return cls(index, FAILED, public_key, SigningFailure(index, reason))


class SigningReport:
    """What one signer did to each input of a PSBT"""

    def __init__(self, signer, psbt, results):
        self.signer = signer
        self.psbt = psbt
        self.results = results

    def __repr__(self):
        return f"SigningReport({self.signer}: {len(self.signed)} signed, {len(self.failed)} failed)"

    def _with_status(self, status):
        return [r for r in self.results if r.status == status]

    @property
    def signed(self):
        return self._with_status(SIGNED)

    @property
    def skipped(self):
        return self._with_status(SKIPPED)

    @property
    def failed(self):
        return self._with_status(FAILED)

    @property
    def signed_anything(self):
        return len(self.signed) > 0


def sign_inputs(psbt_obj, private_key):
    """
    Try to sign every input of a parsed PSBT with one private key.

    Inputs are independent: one that cannot be signed is recorded and the
    rest are still attempted. Signatures go straight into psbt_in.sigs.
    """
    sec = private_key.point.sec()
    pubkey_hex = sec.hex()
    results = []
    for i, psbt_in in enumerate(psbt_obj.psbt_ins):
        if is_finalized(psbt_in):
            results.append(InputSigningResult.skipped(i, "input is finalized"))
            continue
        if sec in valid_signatures(psbt_obj, i):
            results.append(
                InputSigningResult.skipped(i, "already signed by this key", pubkey_hex)
            )
            continue
        if psbt_in.prev_out is None and psbt_in.prev_tx is None:
            results.append(InputSigningResult.failed(i, "no utxo information"))
            continue
        if multisig_script(psbt_in) is None:
            results.append(InputSigningResult.failed(i, "no redeem or witness script"))
            continue
        if sec not in input_pubkeys(psbt_in):
            results.append(InputSigningResult.skipped(i, "key is not a cosigner"))
            continue
        try:
            if psbt_in.use_segwit_signature():
                sig = psbt_obj.tx_obj.get_sig_segwit(
                    i, private_key, psbt_in.redeem_script, psbt_in.witness_script
                )
            else:
                sig = psbt_obj.tx_obj.get_sig_legacy(
                    i, private_key, psbt_in.redeem_script
                )
        except (ValueError, RuntimeError, KeyError, TypeError) as e:
            logger.warning("could not sign input %d: %s", i, e)
            results.append(InputSigningResult.failed(i, str(e), pubkey_hex))
            continue
        psbt_in.sigs[sec] = sig
        results.append(InputSigningResult(i, SIGNED, pubkey_hex))
    return results


class WalletSigner:
    """A node wallet that holds one of the cosigner keys"""

    def __init__(self, wallet_name):
        self.wallet_name = wallet_name

    def __repr__(self):
        return f"wallet:{self.wallet_name}"

    def sign(self, rpc, psbt, network):
        before = signature_sets(parse_psbt(psbt, network))
        processed = rpc.wallet_process_psbt(self.wallet_name, psbt, sign=True)
        after_obj = parse_psbt(processed.psbt, network)
        results = []
        for i, (psbt_in, had) in enumerate(zip(after_obj.psbt_ins, before)):
            added = set(psbt_in.sigs.keys()) - had
            if added:
                results.append(InputSigningResult(i, SIGNED, sorted(added)[0].hex()))
            elif is_finalized(psbt_in):
                results.append(InputSigningResult.skipped(i, "input is finalized"))
            else:
                results.append(
                    InputSigningResult.skipped(i, "wallet added no signature")
                )
        return SigningReport(self, processed.psbt, results)


class KeySigner:
    """A raw WIF private key, signed with locally"""

    def __init__(self, wif):
        try:
            self.private_key = PrivateKey.parse(wif.strip())
        except (ValueError, RuntimeError, TypeError, IndexError) as e:
            raise ValueError(f"Not a valid WIF private key: {e}")

    def __repr__(self):
        return f"key:{self.public_key[:16]}..."

    @property
    def public_key(self):
        return self.private_key.point.sec().hex()

    def sign(self, rpc, psbt, network):
        psbt_obj = parse_psbt(psbt, network)
        results = sign_inputs(psbt_obj, self.private_key)
        if any(r.status == SIGNED for r in results):
            psbt = merge_signatures(psbt, psbt_obj)
        return SigningReport(self, psbt, results)
