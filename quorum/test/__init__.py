from decimal import ROUND_CEILING, Decimal
from io import BytesIO
from unittest import TestCase

from buidl.descriptor import calc_core_checksum
from buidl.hd import HDPrivateKey, HDPublicKey
from buidl.helper import hash160, hash256
from buidl.op import op_code_to_number
from buidl.psbt import PSBT, PSBT_IN_NON_WITNESS_UTXO, NamedHDPublicKey
from buidl.script import P2WPKHScriptPubKey
from buidl.tx import Tx, TxIn, TxOut

from quorum.config import KEY_NETWORK, MultisigWalletConfig, NodeConfig
from quorum.descriptor import (
    BRANCHES,
    DescriptorBuilder,
    decode_address,
    encode_segwit_address,
    normalize_descriptor,
    strip_checksum,
)
from quorum.errors import RPCError
from quorum.rpc import BitcoinRPC, btc_to_sats
from quorum.psbt_maps import PSBTMaps
from quorum.replacement import signals_replaceability
from quorum.signing import merge_signatures, multisig_script, parse_psbt, valid_signatures
from quorum.wallet import watch_wallet_name


ACCOUNT_PATH = "m/48'/1'/0'/2'"
SATS = 100_000_000

_COSIGNERS = {}


class Cosigner:
    """A test signing device: root key, fingerprint and account xpub"""

    def __init__(self, name, seed):
        self.name = name
        self.root = HDPrivateKey.from_seed(seed, network="testnet")
        self.xfp = self.root.fingerprint().hex()
        self.account = self.root.traverse(ACCOUNT_PATH)
        self.xpub = self.account.xpub()

    def key_record(self):
        return {
            "name": self.name,
            "xpub": self.xpub,
            "bip32Path": ACCOUNT_PATH,
            "xfp": self.xfp,
        }

    def wif(self, branch, index):
        return self.account.child(branch).child(index).private_key.wif()

    def sec(self, branch, index):
        return self.account.child(branch).child(index).private_key.point.sec()


def cosigner(name):
    """Cosigners are slow to derive, so each one is only built once"""
    if name not in _COSIGNERS:
        _COSIGNERS[name] = Cosigner(name, f"quorum test cosigner {name}".encode())
    return _COSIGNERS[name]


def wallet_config(
    name="Team Vault",
    required=2,
    signers=("alice", "bob", "carol"),
    address_type="P2WSH",
    network="regtest",
    starting_address_index=0,
):
    return MultisigWalletConfig.from_dict(
        {
            "name": name,
            "network": network,
            "addressType": address_type,
            "quorum": {"requiredSigners": required, "totalSigners": len(signers)},
            "extendedPublicKeys": [cosigner(s).key_record() for s in signers],
            "startingAddressIndex": starting_address_index,
        }
    )


def recipient_address(label="recipient", network="regtest"):
    return encode_segwit_address(P2WPKHScriptPubKey(hash160(label.encode())), network)


def to_btc(sats):
    return Decimal(sats) / SATS


def tx_vsize(tx_obj):
    if tx_obj.segwit:
        weight = len(tx_obj.serialize_legacy()) * 3 + len(tx_obj.serialize_segwit())
        return (weight + 3) // 4
    return len(tx_obj.serialize_legacy())


class FakeWallet:
    def __init__(self, name, disable_private_keys, blank):
        self.name = name
        self.disable_private_keys = disable_private_keys
        self.blank = blank
        self.loaded = True
        self.descriptors = []
        self.roots = []
        self.utxos = []
        self.next_change = 0


class FakeBitcoind(BitcoinRPC):
    """
    In-process stand-in for bitcoind.

    PSBTs are built, signed and finalized with buidl, so the coordinator
    sees the same bytes it would get from a real node. Funds only exist
    where fund() put them.
    """

    def __init__(self, network="regtest"):
        super().__init__(NodeConfig(network=network, user="quorum", password="test"))
        self.network = network
        self.wallets = {}
        self.configs = {}
        self.calls = []
        self.mempool = {}
        self.confirmed = {}
        # outpoint -> txid spending it (mempool or confirmed)
        self.spent = {}
        self.prevouts = {}
        self.scripts = {}
        # (code, message) errors to raise on the next sendrawtransaction
        self.rejections = []
        self._funding_count = 0

    # test helpers

    def register_config(self, config):
        """Let the fake derive scripts for a config, as if bitcoind had its descriptors"""
        self.configs[watch_wallet_name(config)] = config

    def add_watch_wallet(self, config):
        self.register_config(config)
        name = watch_wallet_name(config)
        wallet = self.wallets.get(name) or FakeWallet(name, True, True)
        self.wallets[name] = wallet
        return wallet

    def add_signer_wallet(self, name, *cosigners):
        wallet = FakeWallet(name, False, False)
        wallet.roots = [c.root for c in cosigners]
        self.wallets[name] = wallet
        return wallet

    def fund(self, config, *amounts, branch=0):
        """Pay each amount (sats) to successive addresses of a config"""
        wallet = self.add_watch_wallet(config)
        builder = DescriptorBuilder(config)
        for amount in amounts:
            index = config.starting_address_index + len(
                [u for u in wallet.utxos if u["branch"] == branch]
            )
            script_pubkey = builder.scripts(branch, index)["script_pubkey"]
            self._funding_count += 1
            funding_tx = Tx(
                1,
                [TxIn(hash256(f"funding {self._funding_count}".encode()), 0)],
                [TxOut(amount, script_pubkey)],
                0,
                network=KEY_NETWORK[self.network],
            )
            txid = funding_tx.id()
            self.prevouts[(txid, 0)] = funding_tx.tx_outs[0]
            self.confirmed[txid] = funding_tx
            wallet.utxos.append(
                {
                    "txid": txid,
                    "vout": 0,
                    "amount": amount,
                    "branch": branch,
                    "index": index,
                    "tx": funding_tx,
                }
            )
        return wallet

    def mine(self):
        for txid, entry in list(self.mempool.items()):
            self.confirmed[txid] = entry["tx"]
        self.mempool = {}

    def methods_called(self):
        return [c[0] for c in self.calls]

    # transport

    def call(self, method, params=None, wallet=None):
        params = params or []
        self.calls.append((method, params, wallet))
        handler = getattr(self, "rpc_" + method, None)
        if handler is None:
            raise RPCError(-32601, "Method not found", method)
        if wallet is not None:
            if wallet not in self.wallets or not self.wallets[wallet].loaded:
                raise RPCError(
                    -18, "Requested wallet does not exist or is not loaded", method
                )
            return handler(params, self.wallets[wallet])
        return handler(params)

    # node

    def rpc_listwallets(self, params):
        return [name for name, w in self.wallets.items() if w.loaded]

    def rpc_loadwallet(self, params):
        name = params[0]
        if name not in self.wallets:
            raise RPCError(-18, f"Wallet file verification failed. Failed to load database path '{name}'. Path does not exist.", "loadwallet")
        if self.wallets[name].loaded:
            raise RPCError(-35, f"Wallet \"{name}\" is already loaded.", "loadwallet")
        self.wallets[name].loaded = True
        return {"name": name, "warning": ""}

    def rpc_createwallet(self, params):
        name, disable_private_keys, blank = params[0], params[1], params[2]
        if name in self.wallets:
            raise RPCError(-4, f"Wallet file verification failed. Failed to create database path '{name}'. Database already exists.", "createwallet")
        self.wallets[name] = FakeWallet(name, disable_private_keys, blank)
        return {"name": name, "warning": ""}

    def rpc_getdescriptorinfo(self, params):
        descriptor = strip_checksum(params[0])
        return {
            "descriptor": descriptor + "#" + calc_core_checksum(descriptor),
            "checksum": calc_core_checksum(descriptor),
            "isrange": "*" in descriptor,
            "issolvable": True,
            "hasprivatekeys": False,
        }

    def _builder_for(self, descriptor):
        for config in self.configs.values():
            builder = DescriptorBuilder(config)
            for branch in BRANCHES:
                if builder.descriptor(branch).matches(descriptor):
                    return builder, branch
        raise RPCError(-5, "Missing checksum", "deriveaddresses")

    def rpc_deriveaddresses(self, params):
        builder, branch = self._builder_for(params[0])
        start, end = params[1] if len(params) > 1 else (0, 0)
        return [builder.address(branch, i) for i in range(start, end + 1)]

    def rpc_decodepsbt(self, params):
        psbt_obj = parse_psbt(params[0], self.network)
        tx_obj = psbt_obj.tx_obj
        inputs, total_in = [], 0
        for psbt_in in psbt_obj.psbt_ins:
            decoded = {
                "partial_signatures": {
                    sec.hex(): sig.hex() for sec, sig in psbt_in.sigs.items()
                }
            }
            if psbt_in.witness:
                decoded["final_scriptwitness"] = [i.hex() for i in psbt_in.witness.items]
            inputs.append(decoded)
            total_in += psbt_in.tx_in._value or 0
        vout = []
        for n, tx_out in enumerate(tx_obj.tx_outs):
            vout.append(
                {
                    "value": to_btc(tx_out.amount),
                    "n": n,
                    "scriptPubKey": {
                        "hex": tx_out.script_pubkey.raw_serialize().hex(),
                        "address": self.scripts.get(tx_out.script_pubkey.raw_serialize()),
                    },
                }
            )
        total_out = sum(o.amount for o in tx_obj.tx_outs)
        return {
            "tx": {
                "txid": tx_obj.id(),
                "vin": [
                    {
                        "txid": t.prev_tx.hex(),
                        "vout": t.prev_index,
                        "sequence": t.sequence,
                    }
                    for t in tx_obj.tx_ins
                ],
                "vout": vout,
            },
            "inputs": inputs,
            "fee": to_btc(total_in - total_out),
        }

    def rpc_finalizepsbt(self, params):
        psbt_b64 = params[0]
        psbt_obj = parse_psbt(psbt_b64, self.network)
        for i, psbt_in in enumerate(psbt_obj.psbt_ins):
            script = multisig_script(psbt_in)
            if script is None:
                return {"psbt": psbt_b64, "complete": False}
            valid = valid_signatures(psbt_obj, i)
            if len(valid) < op_code_to_number(script.commands[0]):
                return {"psbt": psbt_b64, "complete": False}
            psbt_in.sigs = {sec: sig for sec, sig in psbt_in.sigs.items() if sec in valid}
        psbt_obj.finalize()
        tx_obj = psbt_obj.tx_obj.clone()
        tx_obj.segwit = any(psbt_in.witness for psbt_in in psbt_obj.psbt_ins)
        for tx_in, psbt_in in zip(tx_obj.tx_ins, psbt_obj.psbt_ins):
            tx_in.script_sig = psbt_in.script_sig
            if tx_obj.segwit and psbt_in.witness:
                tx_in.witness = psbt_in.witness
        return {"hex": tx_obj.serialize().hex(), "complete": True}

    def rpc_sendrawtransaction(self, params):
        tx_obj = Tx.parse_hex(params[0], network=KEY_NETWORK[self.network])
        txid = tx_obj.id()
        if self.rejections:
            code, message = self.rejections.pop(0)
            raise RPCError(code, message, "sendrawtransaction")
        if txid in self.mempool or txid in self.confirmed:
            raise RPCError(-27, "Transaction already in block chain", "sendrawtransaction")
        total_in, conflicts = 0, set()
        outpoints = []
        for tx_in in tx_obj.tx_ins:
            outpoint = (tx_in.prev_tx.hex(), tx_in.prev_index)
            if outpoint not in self.prevouts:
                raise RPCError(-25, "bad-txns-inputs-missingorspent", "sendrawtransaction")
            spender = self.spent.get(outpoint)
            if spender in self.confirmed:
                raise RPCError(-25, "bad-txns-inputs-missingorspent", "sendrawtransaction")
            if spender is not None:
                conflicts.add(spender)
            total_in += self.prevouts[outpoint].amount
            outpoints.append(outpoint)
        fee = total_in - sum(o.amount for o in tx_obj.tx_outs)
        vsize = tx_vsize(tx_obj)
        for conflict in conflicts:
            original = self.mempool[conflict]
            if not signals_replaceability(original["tx"]):
                raise RPCError(-26, "txn-mempool-conflict", "sendrawtransaction")
            if fee * original["vsize"] <= original["fee"] * vsize:
                raise RPCError(
                    -26,
                    f"insufficient fee, rejecting replacement {txid}; new feerate is not higher than the replaced transaction",
                    "sendrawtransaction",
                )
            if fee < original["fee"] + vsize:
                raise RPCError(
                    -26,
                    f"insufficient fee, rejecting replacement {txid}, not enough additional fees to relay",
                    "sendrawtransaction",
                )
        for conflict in conflicts:
            for outpoint in self.mempool.pop(conflict)["outpoints"]:
                self.spent.pop(outpoint, None)
        for outpoint in outpoints:
            self.spent[outpoint] = txid
        self.mempool[txid] = {
            "tx": tx_obj,
            "fee": fee,
            "vsize": vsize,
            "outpoints": outpoints,
        }
        return txid

    def rpc_getmempoolentry(self, params):
        entry = self.mempool.get(params[0])
        if entry is None:
            raise RPCError(-5, "Transaction not in mempool", "getmempoolentry")
        return {
            "vsize": entry["vsize"],
            "fees": {"base": to_btc(entry["fee"])},
            "bip125-replaceable": signals_replaceability(entry["tx"]),
        }

    def rpc_getrawtransaction(self, params):
        txid = params[0]
        if txid in self.mempool:
            tx_obj, confirmations = self.mempool[txid]["tx"], 0
        elif txid in self.confirmed:
            tx_obj, confirmations = self.confirmed[txid], 1
        else:
            raise RPCError(-5, "No such mempool or blockchain transaction", "getrawtransaction")
        result = {
            "txid": txid,
            "hex": tx_obj.serialize().hex(),
            "vin": [
                {"txid": t.prev_tx.hex(), "vout": t.prev_index, "sequence": t.sequence}
                for t in tx_obj.tx_ins
            ],
            "vout": [
                {
                    "value": to_btc(o.amount),
                    "n": n,
                    "scriptPubKey": {
                        "hex": o.script_pubkey.raw_serialize().hex(),
                        "address": self.scripts.get(o.script_pubkey.raw_serialize()),
                    },
                }
                for n, o in enumerate(tx_obj.tx_outs)
            ],
        }
        if confirmations:
            result["confirmations"] = confirmations
        return result

    # wallet

    def rpc_listdescriptors(self, params, wallet):
        # recent bitcoind versions echo hardened steps as h
        echoed = []
        for d in wallet.descriptors:
            desc = normalize_descriptor(d["desc"])
            desc = desc.replace("'", "h")
            echoed.append(dict(d, desc=desc + "#" + calc_core_checksum(desc)))
        return {"wallet_name": wallet.name, "descriptors": echoed}

    def rpc_importdescriptors(self, params, wallet):
        results = []
        for request in params[0]:
            desc = request["desc"]
            descriptor, _, checksum = desc.partition("#")
            if checksum != calc_core_checksum(descriptor):
                results.append(
                    {
                        "success": False,
                        "error": {
                            "code": -5,
                            "message": f"Provided checksum '{checksum}' does not match computed checksum '{calc_core_checksum(descriptor)}'",
                        },
                    }
                )
                continue
            wallet.descriptors.append(
                {
                    "desc": desc,
                    "active": request.get("active", False),
                    "internal": request.get("internal", False),
                    "range": request.get("range"),
                    "timestamp": request.get("timestamp"),
                    "next": request.get("next_index", 0),
                }
            )
            results.append({"success": True})
        return results

    def _named_pubs(self, config, branch, index):
        lookup = {}
        for key in config.keys:
            account = NamedHDPublicKey.from_hd_pub(
                HDPublicKey.parse(key.xpub), key.xfp, key.bip32_path
            )
            child = account.child(branch).child(index)
            lookup[child.sec()] = child
        return lookup

    def _script_lookups(self, builder, branch, index, pubkey_lookup, redeem_lookup, witness_lookup):
        scripts = builder.scripts(branch, index)
        if scripts["redeem_script"] is not None:
            redeem_lookup[scripts["redeem_script"].hash160()] = scripts["redeem_script"]
        if scripts["witness_script"] is not None:
            witness_lookup[scripts["witness_script"].sha256()] = scripts["witness_script"]
        pubkey_lookup.update(self._named_pubs(builder.config, branch, index))

    def rpc_walletcreatefundedpsbt(self, params, wallet):
        inputs, outputs, _, options = params[0], params[1], params[2], params[3]
        config = self.configs.get(wallet.name)
        if config is None:
            raise RPCError(-4, "Insufficient funds", "walletcreatefundedpsbt")
        builder = DescriptorBuilder(config)
        fee_rate = Decimal(str(options.get("fee_rate", 1)))
        sequence = 0xFFFFFFFD if options.get("replaceable", True) else 0xFFFFFFFE
        tx_outs, target = [], 0
        for output in outputs:
            for address, amount in output.items():
                script_pubkey = decode_address(address, self.network)
                self.scripts[script_pubkey.raw_serialize()] = address
                tx_outs.append(TxOut(btc_to_sats(amount), script_pubkey))
                target += btc_to_sats(amount)
        selected = []
        by_outpoint = {(u["txid"], u["vout"]): u for u in wallet.utxos}
        for pinned in inputs:
            utxo = by_outpoint.get((pinned["txid"], pinned["vout"]))
            if utxo is None:
                raise RPCError(-4, "Not found pre-selected input", "walletcreatefundedpsbt")
            selected.append(utxo)
        available = [
            u
            for u in wallet.utxos
            if (u["txid"], u["vout"]) not in self.spent and u not in selected
        ]
        m, n = config.quorum.required_signers, config.quorum.total_signers
        per_input = 41 + (m * 74 + n * 34 + 10) // 4 + 1
        if config.address_type == "P2SH":
            per_input = 41 + m * 74 + n * 34 + 10

        def estimated_fee(count):
            vsize = 11 + count * per_input + (len(tx_outs) + 1) * 43
            return int((fee_rate * vsize).to_integral_value(rounding=ROUND_CEILING))

        def funded():
            return sum(u["amount"] for u in selected) >= target + estimated_fee(len(selected))

        if not selected or (options.get("add_inputs") and not funded()):
            for utxo in available:
                if selected and funded():
                    break
                selected.append(utxo)
        if not selected or not funded():
            raise RPCError(-4, "Insufficient funds", "walletcreatefundedpsbt")
        fee = estimated_fee(len(selected))
        change = sum(u["amount"] for u in selected) - target - fee
        pubkey_lookup, redeem_lookup, witness_lookup = {}, {}, {}
        change_position = -1
        if change > 1000:
            index = wallet.next_change
            wallet.next_change += 1
            change_script = builder.scripts(1, index)["script_pubkey"]
            self.scripts[change_script.raw_serialize()] = builder.address(1, index)
            change_position = len(tx_outs)
            tx_outs.append(TxOut(change, change_script))
            self._script_lookups(builder, 1, index, pubkey_lookup, redeem_lookup, witness_lookup)
        else:
            fee += change
        tx_ins, tx_lookup = [], {}
        for utxo in selected:
            tx_ins.append(TxIn(bytes.fromhex(utxo["txid"]), utxo["vout"], sequence=sequence))
            tx_lookup[utxo["tx"].hash()] = utxo["tx"]
            self._script_lookups(
                builder, utxo["branch"], utxo["index"], pubkey_lookup, redeem_lookup, witness_lookup
            )
        tx_obj = Tx(2, tx_ins, tx_outs, 0, network=KEY_NETWORK[self.network])
        psbt_obj = PSBT.create(
            tx_obj,
            tx_lookup=tx_lookup,
            pubkey_lookup=pubkey_lookup,
            redeem_lookup=redeem_lookup,
            witness_lookup=witness_lookup,
        )
        # bitcoind gives segwit inputs both UTXO records
        maps = PSBTMaps.parse(BytesIO(psbt_obj.serialize()))
        for i, (psbt_in, utxo) in enumerate(zip(psbt_obj.psbt_ins, selected)):
            if psbt_in.prev_tx is None:
                maps.set_input_record(i, PSBT_IN_NON_WITNESS_UTXO, utxo["tx"].serialize())
        return {
            "psbt": maps.serialize_base64(),
            "fee": to_btc(fee),
            "changepos": change_position,
        }

    def rpc_walletprocesspsbt(self, params, wallet):
        psbt_obj = parse_psbt(params[0], self.network)
        if params[1] and not wallet.disable_private_keys:
            for root in wallet.roots:
                psbt_obj.sign(root)
        complete = all(
            len(valid_signatures(psbt_obj, i))
            >= op_code_to_number(multisig_script(p).commands[0])
            for i, p in enumerate(psbt_obj.psbt_ins)
            if multisig_script(p) is not None
        )
        return {"psbt": merge_signatures(params[0], psbt_obj), "complete": complete}

    def rpc_gettransaction(self, params, wallet):
        txid = params[0]
        if txid in self.confirmed:
            return {"txid": txid, "confirmations": 1}
        if txid in self.mempool:
            return {"txid": txid, "confirmations": 0}
        raise RPCError(-5, "Invalid or non-wallet transaction id", "gettransaction")


class FakeNodeTestCase(TestCase):
    """Gives each test a fresh fake node with a funded 2-of-3 watch wallet"""

    network = "regtest"
    address_type = "P2WSH"
    funding = (SATS, SATS // 2)

    def setUp(self):
        self.node = FakeBitcoind(network=self.network)
        self.config = wallet_config(address_type=self.address_type, network=self.network)
        self.wallet_name = watch_wallet_name(self.config)
        self.node.fund(self.config, *self.funding)
        for name in ("alice", "bob", "carol"):
            self.node.add_signer_wallet(f"{name}_signer", cosigner(name))
