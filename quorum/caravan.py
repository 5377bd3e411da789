import json
import logging

from quorum.signing import (
    SIGNED,
    KeySigner,
    merge_signatures,
    parse_psbt,
    sign_inputs,
    valid_signatures,
)


logger = logging.getLogger(__name__)


class SignatureInterchangeRecord:
    """
    One cosigner's signatures in the positional form Caravan imports:
    signatures[i] belongs to input i, None where this key did not sign.
    """

    def __init__(self, transaction_hex, signatures, signing_public_key):
        self.transaction_hex = transaction_hex
        self.signatures = tuple(signatures)
        self.signing_public_key = signing_public_key

    def __repr__(self):
        signed = len([s for s in self.signatures if s is not None])
        return f"SignatureInterchangeRecord({signed}/{len(self.signatures)} inputs, {self.signing_public_key})"

    def to_dict(self):
        return {
            "hex": self.transaction_hex,
            "signatures": list(self.signatures),
            "signingPubKey": self.signing_public_key,
        }

    def to_json(self):
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_dict(cls, data):
        return cls(data["hex"], data["signatures"], data["signingPubKey"])


class CaravanSignatureExtractor:
    def __init__(self, network):
        self.network = network

    def extract(self, psbt, wif):
        """
        Sign every input this key can and return its signatures by position.

        A signature this key had already placed on an input is reported as
        well, so extracting twice gives the same record.
        """
        signer = KeySigner(wif)
        sec = signer.private_key.point.sec()
        psbt_obj = parse_psbt(psbt, self.network)
        results = sign_inputs(psbt_obj, signer.private_key)
        signatures = []
        for i, (psbt_in, result) in enumerate(zip(psbt_obj.psbt_ins, results)):
            sig = psbt_in.sigs.get(sec) if sec in valid_signatures(psbt_obj, i) else None
            if sig is None:
                logger.debug("no signature for %s", result)
            signatures.append(sig.hex() if sig is not None else None)
        if any(r.status == SIGNED for r in results):
            psbt = merge_signatures(psbt, psbt_obj)
        if all(s is None for s in signatures):
            logger.warning("key %s produced no signatures for this psbt", signer.public_key)
        return SignatureInterchangeRecord(psbt, signatures, signer.public_key)
