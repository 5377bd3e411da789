import logging

from buidl.op import op_code_to_number

from quorum.errors import (
    BroadcastRejected,
    IncompletePSBT,
    InsufficientFunds,
    RPCError,
)
from quorum.rpc import RPC_WALLET_INSUFFICIENT_FUNDS, sats_to_btc
from quorum.signing import is_finalized, multisig_script, parse_psbt, valid_signatures


logger = logging.getLogger(__name__)

UNSIGNED = "unsigned"
PARTIALLY_SIGNED = "partially-signed"
COMPLETE = "complete"
FINALIZED = "finalized"


class SigningState:
    """
    Where a PSBT is in the signing round.

    signatures is the minimum, over all inputs, of distinct valid
    signatures from keys in that input's script. required is the largest
    threshold any input needs.
    """

    def __init__(self, stage, signatures, required):
        self.stage = stage
        self.signatures = signatures
        self.required = required

    def __repr__(self):
        if self.stage == PARTIALLY_SIGNED:
            return f"{self.stage}({self.signatures}/{self.required})"
        return self.stage

    def __eq__(self, other):
        return (
            isinstance(other, SigningState)
            and self.stage == other.stage
            and self.signatures == other.signatures
            and self.required == other.required
        )

    @property
    def complete(self):
        return self.stage in (COMPLETE, FINALIZED)


def signing_state(psbt_obj):
    counts, required, finalized = [], [], []
    for i, psbt_in in enumerate(psbt_obj.psbt_ins):
        if is_finalized(psbt_in):
            finalized.append(True)
            continue
        finalized.append(False)
        script = multisig_script(psbt_in)
        if script is None:
            # nothing to satisfy yet, so nothing counts
            counts.append(0)
            required.append(None)
            continue
        needed = op_code_to_number(script.commands[0])
        counts.append(len(valid_signatures(psbt_obj, i)))
        required.append(needed)
    if all(finalized):
        return SigningState(FINALIZED, None, None)
    known = [r for r in required if r is not None]
    most_required = max(known) if known else None
    least_signed = min(counts)
    if None not in required and all(c >= r for c, r in zip(counts, required)):
        return SigningState(COMPLETE, least_signed, most_required)
    if not any(counts):
        return SigningState(UNSIGNED, 0, most_required)
    return SigningState(PARTIALLY_SIGNED, least_signed, most_required)


class PSBTCoordinator:
    """
    Drives a PSBT from creation through signing rounds to broadcast.

    PSBTs travel as base64 strings: every method takes one and returns a
    new one, and nothing is kept between calls.
    """

    def __init__(self, rpc):
        self.rpc = rpc

    @property
    def network(self):
        return self.rpc.config.network

    def parse(self, psbt):
        return parse_psbt(psbt, self.network)

    def create(self, wallet_name, outputs, fee_rate=None, replaceable=True, inputs=None):
        """
        Fund a PSBT paying outputs ({address: satoshis}) from a watch wallet.

        fee_rate is in sat/vB; without one the node estimates. inputs, a
        list of {"txid", "vout"}, pins the coins to spend (replacement uses
        this) while still letting the node add more.
        """
        if not outputs:
            raise ValueError("At least one output is required")
        requested = []
        for address, amount in outputs.items():
            if type(amount) is not int or amount <= 0:
                raise ValueError(f"Output amount must be a positive int of satoshis: {address} {amount!r}")
            requested.append({address: sats_to_btc(amount)})
        options = {"includeWatching": True, "replaceable": bool(replaceable)}
        if fee_rate is not None:
            if fee_rate <= 0:
                raise ValueError(f"Fee rate must be positive: {fee_rate}")
            options["fee_rate"] = str(fee_rate)
        if inputs:
            options["add_inputs"] = True
            inputs = [{"txid": i["txid"], "vout": i["vout"]} for i in inputs]
        try:
            funded = self.rpc.wallet_create_funded_psbt(
                wallet_name, requested, inputs=inputs, options=options
            )
        except RPCError as e:
            if e.code == RPC_WALLET_INSUFFICIENT_FUNDS or "Insufficient funds" in (
                e.message or ""
            ):
                raise InsufficientFunds(f"{wallet_name}: {e.message}")
            raise
        logger.info(
            "created psbt from %s paying %d output(s), fee %d sats",
            wallet_name,
            len(requested),
            funded.fee,
        )
        return funded

    def apply_signer(self, psbt, signer):
        """
        Let one signer (WalletSigner or KeySigner) add what it can.

        Applying the same signer twice leaves the signature sets unchanged.
        """
        report = signer.sign(self.rpc, psbt, self.network)
        for result in report.failed:
            logger.warning("%s failed on %s", signer, result)
        if not report.signed_anything:
            logger.warning("%s added no signatures", signer)
        else:
            logger.info("%s signed %d input(s)", signer, len(report.signed))
        return report

    def sign_until_complete(self, psbt, signers):
        """
        Thread a PSBT through signers in order until the quorum is met.

        Returns (psbt, reports); check signing_state() to see whether the
        signers were enough.
        """
        reports = []
        for signer in signers:
            if self.signing_state(psbt).complete:
                break
            report = self.apply_signer(psbt, signer)
            reports.append(report)
            psbt = report.psbt
        return psbt, reports

    def signing_state(self, psbt):
        return signing_state(self.parse(psbt))

    def finalize(self, psbt):
        """
        An incomplete PSBT is a normal result: complete is False and the
        returned psbt can go through more signing rounds.
        """
        result = self.rpc.finalize_psbt(psbt)
        if not result.complete:
            logger.info("psbt is not complete yet: %s", self.signing_state(psbt))
            if result.psbt is None:
                result.psbt = psbt
        return result

    def broadcast(self, transaction_hex):
        try:
            txid = self.rpc.send_raw_transaction(transaction_hex)
        except RPCError as e:
            logger.error("broadcast rejected: %s", e.message)
            raise BroadcastRejected(e.message, e.code)
        logger.info("broadcast %s", txid)
        return txid

    def finalize_and_broadcast(self, psbt):
        result = self.finalize(psbt)
        if not result.complete:
            raise IncompletePSBT(
                f"cannot broadcast, psbt is {self.signing_state(psbt)}", psbt=result.psbt
            )
        return self.broadcast(result.transaction_hex)

    def describe(self, psbt):
        return self.rpc.decode_psbt(psbt)
