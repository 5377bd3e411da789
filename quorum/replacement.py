import logging

from decimal import Decimal

from quorum.errors import BroadcastRejected, IncompletePSBT, ReplacementRaceLost


logger = logging.getLogger(__name__)

# sequences below this signal BIP125 replaceability
BIP125_SEQUENCE_LIMIT = 0xFFFFFFFE


def signals_replaceability(tx_obj):
    """True when any input opts into BIP125 replacement"""
    return any(tx_in.sequence < BIP125_SEQUENCE_LIMIT for tx_in in tx_obj.tx_ins)


class ReplacementResult:
    def __init__(
        self,
        original_txid,
        fee_rate,
        psbt,
        reports=None,
        finalization=None,
        txid=None,
    ):
        self.original_txid = original_txid
        self.fee_rate = fee_rate
        self.psbt = psbt
        self.reports = reports or []
        self.finalization = finalization
        # only set once the replacement was broadcast
        self.txid = txid

    def __repr__(self):
        return f"ReplacementResult({self.original_txid} -> {self.txid or 'not broadcast'})"

    @property
    def broadcast(self):
        return self.txid is not None


class ReplacementEngine:
    """
    Fee-bumps an unconfirmed transaction by re-running the whole
    create/sign/finalize/broadcast pipeline over the same inputs.
    """

    def __init__(self, coordinator):
        self.coordinator = coordinator

    @property
    def rpc(self):
        return self.coordinator.rpc

    def _original_entry(self, wallet_name, txid):
        entry = self.rpc.get_mempool_entry(txid)
        if entry is not None:
            return entry
        tx = self.rpc.get_transaction(wallet_name, txid)
        if tx is not None and tx.confirmations > 0:
            raise ReplacementRaceLost(txid)
        raise ValueError(f"{txid} is not in the mempool, nothing to replace")

    def build(self, wallet_name, original_txid, outputs, fee_rate):
        """
        Returns a funded, unsigned replacement PSBT spending the original's
        inputs to outputs ({address: satoshis}) at a higher fee rate (sat/vB).
        """
        fee_rate = Decimal(str(fee_rate))
        entry = self._original_entry(wallet_name, original_txid)
        if fee_rate <= entry.fee_rate:
            raise ValueError(
                f"Replacement fee rate {fee_rate} sat/vB must be above the original's "
                f"{entry.fee_rate:.2f} sat/vB"
            )
        original = self.rpc.get_raw_transaction(original_txid)
        if not any(i["sequence"] < BIP125_SEQUENCE_LIMIT for i in original.inputs):
            logger.warning(
                "%s does not signal replaceability, the node may refuse to replace it",
                original_txid,
            )
        funded = self.coordinator.create(
            wallet_name,
            outputs,
            fee_rate=fee_rate,
            replaceable=True,
            inputs=original.inputs,
        )
        logger.info(
            "built replacement for %s at %s sat/vB (was %.2f)",
            original_txid,
            fee_rate,
            entry.fee_rate,
        )
        return funded

    def replace(self, wallet_name, original_txid, outputs, fee_rate, signers):
        """
        Build, sign, finalize and broadcast a replacement.

        When the signers do not reach the quorum the result carries the
        partially signed PSBT and no txid. A rejection after the original
        confirmed is reported as ReplacementRaceLost.
        """
        funded = self.build(wallet_name, original_txid, outputs, fee_rate)
        psbt, reports = self.coordinator.sign_until_complete(funded.psbt, signers)
        finalization = self.coordinator.finalize(psbt)
        result = ReplacementResult(
            original_txid, fee_rate, psbt, reports=reports, finalization=finalization
        )
        if not finalization.complete:
            logger.warning(
                "replacement for %s is %s, not broadcasting",
                original_txid,
                self.coordinator.signing_state(psbt),
            )
            return result
        self._original_entry(wallet_name, original_txid)
        try:
            result.txid = self.coordinator.broadcast(finalization.transaction_hex)
        except BroadcastRejected:
            tx = self.rpc.get_transaction(wallet_name, original_txid)
            if tx is not None and tx.confirmations > 0:
                raise ReplacementRaceLost(original_txid)
            raise
        return result

    def replace_or_raise(self, wallet_name, original_txid, outputs, fee_rate, signers):
        result = self.replace(wallet_name, original_txid, outputs, fee_rate, signers)
        if not result.broadcast:
            raise IncompletePSBT(
                f"signers did not complete the replacement of {original_txid}",
                psbt=result.psbt,
            )
        return result

    def confirm(self, original_txid, replacement_txid):
        """
        True once the original has left the mempool and the replacement is in it.
        """
        original = self.rpc.get_mempool_entry(original_txid)
        replacement = self.rpc.get_mempool_entry(replacement_txid)
        return original is None and replacement is not None
