import json
import logging

from base64 import b64encode
from decimal import Decimal
from itertools import count
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from quorum.errors import RPCConnectionError, RPCError


logger = logging.getLogger(__name__)

SATS_PER_BTC = 100_000_000

# bitcoind error codes that the coordinator reacts to
RPC_WALLET_INSUFFICIENT_FUNDS = -6
RPC_INVALID_ADDRESS_OR_KEY = -5
RPC_WALLET_NOT_FOUND = -18
RPC_WALLET_ALREADY_LOADED = -35


def btc_to_sats(btc):
    return int(Decimal(str(btc)) * SATS_PER_BTC)


def sats_to_btc(sats):
    """Decimal string amount in BTC, the way bitcoind accepts it"""
    if type(sats) is not int:
        raise ValueError(f"Amount must be an int of satoshis: {sats!r}")
    return format((Decimal(sats) / SATS_PER_BTC).quantize(Decimal("0.00000001")), "f")


def _encode_default(obj):
    if isinstance(obj, Decimal):
        return format(obj, "f")
    raise TypeError(f"{obj!r} is not JSON serializable")


class FundedPSBT:
    def __init__(self, psbt, fee, change_position):
        self.psbt = psbt
        self.fee = fee
        self.change_position = change_position

    def __repr__(self):
        return f"FundedPSBT(fee={self.fee}, change_position={self.change_position})"

    @classmethod
    def from_result(cls, result):
        return cls(
            psbt=result["psbt"],
            fee=btc_to_sats(result["fee"]),
            change_position=result.get("changepos", -1),
        )


class ProcessedPSBT:
    def __init__(self, psbt, complete):
        self.psbt = psbt
        self.complete = complete

    @classmethod
    def from_result(cls, result):
        return cls(psbt=result["psbt"], complete=bool(result.get("complete")))


class FinalizationResult:
    """
    Outcome of finalizepsbt: transaction_hex is only set when complete,
    psbt is the (possibly partially finalized) PSBT otherwise.
    """

    def __init__(self, complete, transaction_hex=None, psbt=None):
        self.complete = complete
        self.transaction_hex = transaction_hex if complete else None
        self.psbt = psbt

    def __repr__(self):
        return f"FinalizationResult(complete={self.complete})"

    @classmethod
    def from_result(cls, result):
        return cls(
            complete=bool(result.get("complete")),
            transaction_hex=result.get("hex"),
            psbt=result.get("psbt"),
        )


class DescriptorInfo:
    def __init__(self, descriptor, checksum, is_range, is_solvable, has_private_keys):
        self.descriptor = descriptor
        self.checksum = checksum
        self.is_range = is_range
        self.is_solvable = is_solvable
        self.has_private_keys = has_private_keys

    @classmethod
    def from_result(cls, result):
        return cls(
            descriptor=result["descriptor"],
            checksum=result["checksum"],
            is_range=result.get("isrange", False),
            is_solvable=result.get("issolvable", False),
            has_private_keys=result.get("hasprivatekeys", False),
        )


class ImportResult:
    def __init__(self, success, warnings=None, error=None):
        self.success = success
        self.warnings = warnings or []
        self.error = error

    @classmethod
    def from_result(cls, result):
        error = result.get("error")
        return cls(
            success=bool(result.get("success")),
            warnings=result.get("warnings"),
            error=error.get("message") if error else None,
        )


class WalletDescriptor:
    def __init__(self, desc, active, internal, range=None, next_index=None):
        self.desc = desc
        self.active = active
        self.internal = internal
        self.range = range
        self.next_index = next_index

    @classmethod
    def from_result(cls, result):
        return cls(
            desc=result["desc"],
            active=result.get("active", False),
            internal=result.get("internal", False),
            range=result.get("range"),
            next_index=result.get("next", result.get("next_index")),
        )


class MempoolEntry:
    def __init__(self, txid, vsize, fee, replaceable=None):
        self.txid = txid
        self.vsize = vsize
        self.fee = fee
        self.replaceable = replaceable

    def __repr__(self):
        return f"MempoolEntry({self.txid}, {self.fee} sats, {self.vsize} vB)"

    @property
    def fee_rate(self):
        """sat/vB"""
        return Decimal(self.fee) / Decimal(self.vsize)

    @classmethod
    def from_result(cls, txid, result):
        if "fees" in result:
            fee = result["fees"]["base"]
        else:
            fee = result["fee"]
        return cls(
            txid=txid,
            vsize=result["vsize"],
            fee=btc_to_sats(fee),
            replaceable=result.get("bip125-replaceable"),
        )


class RawTransaction:
    """Verbose getrawtransaction output reduced to what replacement needs"""

    def __init__(self, txid, hex, inputs, outputs, confirmations=0):
        self.txid = txid
        self.hex = hex
        # [{"txid", "vout", "sequence"}]
        self.inputs = inputs
        # [{"address", "amount" (sats), "script_pubkey"}]
        self.outputs = outputs
        self.confirmations = confirmations

    @classmethod
    def from_result(cls, result):
        inputs = [
            {"txid": vin["txid"], "vout": vin["vout"], "sequence": vin["sequence"]}
            for vin in result["vin"]
        ]
        outputs = []
        for vout in result["vout"]:
            script_pubkey = vout["scriptPubKey"]
            outputs.append(
                {
                    "address": script_pubkey.get("address"),
                    "amount": btc_to_sats(vout["value"]),
                    "script_pubkey": script_pubkey.get("hex"),
                }
            )
        return cls(
            txid=result["txid"],
            hex=result["hex"],
            inputs=inputs,
            outputs=outputs,
            confirmations=result.get("confirmations", 0),
        )


class WalletTransaction:
    def __init__(self, txid, confirmations, replaced_by=None):
        self.txid = txid
        self.confirmations = confirmations
        self.replaced_by = replaced_by

    @classmethod
    def from_result(cls, result):
        return cls(
            txid=result["txid"],
            confirmations=result.get("confirmations", 0),
            replaced_by=result.get("replaced_by_txid"),
        )


class DecodedPSBT:
    def __init__(self, txid, fee, inputs, outputs):
        self.txid = txid
        # sats, None when the node lacks the utxo data to compute it
        self.fee = fee
        self.inputs = inputs
        self.outputs = outputs

    @property
    def total_output(self):
        return sum(o["amount"] for o in self.outputs)

    @property
    def signature_counts(self):
        return [len(i["partial_signatures"]) for i in self.inputs]

    @classmethod
    def from_result(cls, result):
        tx = result["tx"]
        inputs = []
        for vin, psbt_in in zip(tx["vin"], result["inputs"]):
            inputs.append(
                {
                    "txid": vin["txid"],
                    "vout": vin["vout"],
                    "sequence": vin["sequence"],
                    "partial_signatures": psbt_in.get("partial_signatures", {}),
                    "finalized": "final_scriptwitness" in psbt_in
                    or "final_scriptSig" in psbt_in,
                }
            )
        outputs = [
            {
                "address": vout["scriptPubKey"].get("address"),
                "amount": btc_to_sats(vout["value"]),
            }
            for vout in tx["vout"]
        ]
        fee = result.get("fee")
        return cls(
            txid=tx["txid"],
            fee=btc_to_sats(fee) if fee is not None else None,
            inputs=inputs,
            outputs=outputs,
        )


class BitcoinRPC:
    """
    Minimal bitcoind JSON-RPC client.

    Every method makes exactly one HTTP request and returns a typed
    result; raw JSON never leaves this module except through call().
    """

    def __init__(self, config):
        self.config = config
        self._ids = count(1)

    def url_for(self, wallet=None):
        if wallet is None:
            return self.config.url + "/"
        return f"{self.config.url}/wallet/{quote(wallet, safe='')}"

    def _headers(self):
        headers = {"Content-Type": "application/json"}
        user, password = self.config.credentials()
        if user is not None:
            token = b64encode(f"{user}:{password or ''}".encode()).decode()
            headers["Authorization"] = f"Basic {token}"
        return headers

    def call(self, method, params=None, wallet=None):
        payload = {
            "jsonrpc": "1.0",
            "id": f"quorum-{next(self._ids)}",
            "method": method,
            "params": params or [],
        }
        data = json.dumps(payload, default=_encode_default).encode()
        req = Request(self.url_for(wallet), data=data, headers=self._headers())
        kwargs = {}
        if self.config.timeout is not None:
            kwargs["timeout"] = self.config.timeout
        logger.debug("rpc %s wallet=%s", method, wallet)
        try:
            body = urlopen(req, **kwargs).read()
        except HTTPError as e:
            if e.code in (401, 403):
                raise RPCConnectionError(
                    f"bitcoind at {self.config.url} rejected the RPC credentials"
                )
            # bitcoind reports RPC errors with a JSON body on non-200 responses
            body = e.read()
        except (URLError, OSError) as e:
            raise RPCConnectionError(f"could not reach bitcoind at {self.config.url}: {e}")
        try:
            response = json.loads(body, parse_float=Decimal)
        except ValueError:
            raise RPCError(None, f"unexpected response: {body[:200]!r}", method)
        error = response.get("error")
        if error:
            raise RPCError(error.get("code"), error.get("message"), method)
        return response.get("result")

    # node

    def list_wallets(self):
        return self.call("listwallets")

    def load_wallet(self, name):
        return self.call("loadwallet", [name])

    def create_wallet(self, name, disable_private_keys=True, blank=True):
        return self.call(
            "createwallet", [name, disable_private_keys, blank, "", False, True, True]
        )

    def get_descriptor_info(self, descriptor):
        return DescriptorInfo.from_result(self.call("getdescriptorinfo", [descriptor]))

    def derive_addresses(self, descriptor, start=None, end=None):
        params = [descriptor]
        if start is not None:
            params.append([start, end if end is not None else start])
        return self.call("deriveaddresses", params)

    def decode_psbt(self, psbt):
        return DecodedPSBT.from_result(self.call("decodepsbt", [psbt]))

    def finalize_psbt(self, psbt, extract=True):
        return FinalizationResult.from_result(self.call("finalizepsbt", [psbt, extract]))

    def send_raw_transaction(self, transaction_hex):
        return self.call("sendrawtransaction", [transaction_hex])

    def get_mempool_entry(self, txid):
        """Returns None when the transaction is not in the mempool"""
        try:
            return MempoolEntry.from_result(txid, self.call("getmempoolentry", [txid]))
        except RPCError as e:
            if e.code == RPC_INVALID_ADDRESS_OR_KEY:
                return None
            raise

    def get_raw_transaction(self, txid):
        return RawTransaction.from_result(self.call("getrawtransaction", [txid, True]))

    # wallet

    def list_descriptors(self, wallet):
        result = self.call("listdescriptors", wallet=wallet)
        return [WalletDescriptor.from_result(d) for d in result["descriptors"]]

    def import_descriptors(self, wallet, requests):
        result = self.call("importdescriptors", [requests], wallet=wallet)
        return [ImportResult.from_result(r) for r in result]

    def wallet_create_funded_psbt(self, wallet, outputs, inputs=None, options=None):
        """outputs are [{address: btc amount string}]"""
        result = self.call(
            "walletcreatefundedpsbt",
            [inputs or [], outputs, 0, options or {}, True],
            wallet=wallet,
        )
        return FundedPSBT.from_result(result)

    def wallet_process_psbt(self, wallet, psbt, sign=True, finalize=False):
        result = self.call(
            "walletprocesspsbt", [psbt, sign, "ALL", True, finalize], wallet=wallet
        )
        return ProcessedPSBT.from_result(result)

    def get_transaction(self, wallet, txid):
        """Returns None when the wallet does not know the transaction"""
        try:
            return WalletTransaction.from_result(
                self.call("gettransaction", [txid, True], wallet=wallet)
            )
        except RPCError as e:
            if e.code == RPC_INVALID_ADDRESS_OR_KEY:
                return None
            raise
