from base64 import b64decode, b64encode
from binascii import Error as Base64Error
from io import BytesIO

from buidl.helper import read_varstr, serialize_key_value
from buidl.psbt import (
    PSBT_DELIMITER,
    PSBT_GLOBAL_UNSIGNED_TX,
    PSBT_IN_PARTIAL_SIG,
    PSBT_MAGIC,
    PSBT_SEPARATOR,
)
from buidl.tx import Tx


def read_map(s):
    """Key/value records up to the next delimiter, in the order read"""
    records = []
    key = read_varstr(s)
    while key != b"":
        records.append((key, read_varstr(s)))
        key = read_varstr(s)
    return records


class PSBTMaps:
    """
    A PSBT kept as its raw BIP174 key/value maps.

    Records are never decoded or reordered, so serialize() gives back the
    bytes that were parsed plus any record added since. buidl's serializer
    writes one UTXO record per input and bitcoind gives segwit inputs two,
    so PSBTs handed back to the node are re-encoded from these maps.
    """

    def __init__(self, global_map, input_maps, output_maps):
        self.global_map = global_map
        self.input_maps = input_maps
        self.output_maps = output_maps

    @classmethod
    def parse(cls, s):
        if s.read(4) != PSBT_MAGIC:
            raise ValueError("Incorrect magic")
        if s.read(1) != PSBT_SEPARATOR:
            raise ValueError("No separator")
        try:
            global_map = read_map(s)
            tx_obj = None
            for key, value in global_map:
                if key == PSBT_GLOBAL_UNSIGNED_TX:
                    tx_obj = Tx.parse_legacy(BytesIO(value))
            if tx_obj is None:
                raise ValueError("transaction is required")
            input_maps = [read_map(s) for _ in tx_obj.tx_ins]
            output_maps = [read_map(s) for _ in tx_obj.tx_outs]
        except (IOError, IndexError):
            raise ValueError("PSBT ends before all of its maps were read")
        return cls(global_map, input_maps, output_maps)

    @classmethod
    def parse_base64(cls, b64):
        try:
            raw = b64decode(b64.strip(), validate=True)
        except Base64Error as e:
            raise ValueError(f"PSBT is not valid base64: {e}")
        return cls.parse(BytesIO(raw))

    def serialize(self):
        result = PSBT_MAGIC + PSBT_SEPARATOR
        for records in [self.global_map] + self.input_maps + self.output_maps:
            for key, value in records:
                result += serialize_key_value(key, value)
            result += PSBT_DELIMITER
        return result

    def serialize_base64(self):
        return b64encode(self.serialize()).decode("ascii")

    def partial_sigs(self, input_index):
        return {
            key[1:]: value
            for key, value in self.input_maps[input_index]
            if key[:1] == PSBT_IN_PARTIAL_SIG
        }

    def without_partial_sigs(self):
        input_maps = [
            [(k, v) for k, v in records if k[:1] != PSBT_IN_PARTIAL_SIG]
            for records in self.input_maps
        ]
        return self.__class__(self.global_map, input_maps, self.output_maps)

    def set_input_record(self, input_index, key, value):
        """Replaces the value of a key in place, or appends the record"""
        records = self.input_maps[input_index]
        for position, (k, _) in enumerate(records):
            if k == key:
                records[position] = (key, value)
                return
        records.append((key, value))

    def set_partial_sig(self, input_index, sec, sig):
        self.set_input_record(input_index, PSBT_IN_PARTIAL_SIG + sec, sig)
