"""
Draft transaction model and wire codec for Bitcoin and Elements.

The same ``Transaction`` holds both chains. On Elements each output carries
either explicit asset/value fields or the 33-byte commitments that replace
them once blinded, and the witness section additionally holds the
per-output surjection and range proofs.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field

from gdktx.constants import SEQUENCE_FINAL, TX_VERSION_2
from gdktx.crypto import b2h_rev, h2b_rev, hash256
from gdktx.errors import TransactionParseError

# Elements confidential field prefixes
EXPLICIT_PREFIX = 0x01
ASSET_COMMITMENT_PREFIXES = (0x0A, 0x0B)
VALUE_COMMITMENT_PREFIXES = (0x08, 0x09)
NONCE_COMMITMENT_PREFIXES = (0x02, 0x03)

# Elements outpoint index flags
OUTPOINT_ISSUANCE_FLAG = 1 << 31
OUTPOINT_PEGIN_FLAG = 1 << 30
OUTPOINT_INDEX_MASK = 0x3FFFFFFF


def encode_varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + value.to_bytes(2, "little")
    if value <= 0xFFFFFFFF:
        return b"\xfe" + value.to_bytes(4, "little")
    return b"\xff" + value.to_bytes(8, "little")


def read_varint(data: bytes, offset: int) -> tuple[int, int]:
    first = data[offset]
    offset += 1

    if first < 0xFD:
        return first, offset
    if first == 0xFD:
        return int.from_bytes(data[offset : offset + 2], "little"), offset + 2
    if first == 0xFE:
        return int.from_bytes(data[offset : offset + 4], "little"), offset + 4
    return int.from_bytes(data[offset : offset + 8], "little"), offset + 8


def encode_varbytes(data: bytes) -> bytes:
    return encode_varint(len(data)) + data


def encode_witness_stack(items: list[bytes]) -> bytes:
    return encode_varint(len(items)) + b"".join(encode_varbytes(item) for item in items)


class _Reader:
    """Bounds-checked cursor over raw transaction bytes."""

    def __init__(self, data: bytes):
        self.data = data
        self.offset = 0

    def read(self, n: int) -> bytes:
        if self.offset + n > len(self.data):
            raise TransactionParseError("Unexpected end of transaction data")
        chunk = self.data[self.offset : self.offset + n]
        self.offset += n
        return chunk

    def peek(self) -> int:
        if self.offset >= len(self.data):
            raise TransactionParseError("Unexpected end of transaction data")
        return self.data[self.offset]

    def varint(self) -> int:
        if self.offset >= len(self.data):
            raise TransactionParseError("Unexpected end of transaction data")
        value, self.offset = read_varint(self.data, self.offset)
        return value

    def varbytes(self) -> bytes:
        return self.read(self.varint())

    def witness_stack(self) -> list[bytes]:
        return [self.varbytes() for _ in range(self.varint())]

    def u32(self) -> int:
        return struct.unpack("<I", self.read(4))[0]


@dataclass
class TxIn:
    """Transaction input referencing a previous output by display-order txid."""

    txhash: str
    pt_idx: int
    sequence: int = SEQUENCE_FINAL
    script_sig: bytes = b""
    witness: list[bytes] = field(default_factory=list)

    def serialize_outpoint(self) -> bytes:
        return h2b_rev(self.txhash) + struct.pack("<I", self.pt_idx)


@dataclass
class TxOut:
    """
    Transaction output.

    ``asset``, ``value`` and ``nonce`` hold Elements commitments once the
    output is blinded; while empty the explicit ``asset_id``/``satoshi`` are
    serialized instead. The trailing fields are builder bookkeeping and are
    never serialized.
    """

    script: bytes
    satoshi: int = 0
    asset_id: str | None = None
    asset: bytes = b""
    value: bytes = b""
    nonce: bytes = b""
    surjection_proof: bytes = b""
    range_proof: bytes = b""

    address: str = field(default="", compare=False)
    blinding_key: bytes = field(default=b"", compare=False)
    is_change: bool = field(default=False, compare=False)
    is_fee: bool = field(default=False, compare=False)
    is_preblinded: bool = field(default=False, compare=False)
    addressee_index: int | None = field(default=None, compare=False)

    @property
    def is_confidential(self) -> bool:
        return bool(self.value) and self.value[0] in VALUE_COMMITMENT_PREFIXES

    @property
    def needs_blinding(self) -> bool:
        return bool(self.blinding_key) and not self.is_preblinded and not self.is_fee

    def serialize(self, is_elements: bool) -> bytes:
        if not is_elements:
            return struct.pack("<Q", self.satoshi) + encode_varbytes(self.script)

        if self.asset:
            asset = self.asset
        else:
            if not self.asset_id:
                raise ValueError("Explicit Elements output requires an asset id")
            asset = bytes([EXPLICIT_PREFIX]) + h2b_rev(self.asset_id)
        value = self.value or bytes([EXPLICIT_PREFIX]) + self.satoshi.to_bytes(8, "big")
        nonce = self.nonce or b"\x00"
        return asset + value + nonce + encode_varbytes(self.script)

    def serialize_witness(self) -> bytes:
        return encode_varbytes(self.surjection_proof) + encode_varbytes(self.range_proof)


@dataclass
class Transaction:
    """Mutable draft transaction, owned by a single builder at a time."""

    version: int = TX_VERSION_2
    locktime: int = 0
    inputs: list[TxIn] = field(default_factory=list)
    outputs: list[TxOut] = field(default_factory=list)
    is_elements: bool = False

    def add_input(self, txin: TxIn) -> int:
        self.inputs.append(txin)
        return len(self.inputs) - 1

    def add_output(self, txout: TxOut) -> int:
        self.outputs.append(txout)
        return len(self.outputs) - 1

    @property
    def has_witness(self) -> bool:
        if any(inp.witness for inp in self.inputs):
            return True
        if self.is_elements:
            return any(out.surjection_proof or out.range_proof for out in self.outputs)
        return False

    def _serialize_input(self, txin: TxIn) -> bytes:
        return (
            txin.serialize_outpoint()
            + encode_varbytes(txin.script_sig)
            + struct.pack("<I", txin.sequence)
        )

    def serialize(self, include_witness: bool = True) -> bytes:
        with_witness = include_witness and self.has_witness
        result = struct.pack("<I", self.version)

        if self.is_elements:
            result += bytes([1 if with_witness else 0])
        elif with_witness:
            # SegWit marker and flag
            result += bytes([0x00, 0x01])

        result += encode_varint(len(self.inputs))
        for txin in self.inputs:
            result += self._serialize_input(txin)

        result += encode_varint(len(self.outputs))
        for txout in self.outputs:
            result += txout.serialize(self.is_elements)

        if self.is_elements:
            result += struct.pack("<I", self.locktime)
            if with_witness:
                for txin in self.inputs:
                    # Issuance and inflation rangeproofs, script witness, pegin witness
                    result += b"\x00\x00" + encode_witness_stack(txin.witness) + b"\x00"
                for txout in self.outputs:
                    result += txout.serialize_witness()
            return result

        if with_witness:
            for txin in self.inputs:
                result += encode_witness_stack(txin.witness)
        result += struct.pack("<I", self.locktime)
        return result

    def to_hex(self) -> str:
        return self.serialize().hex()

    @property
    def txid(self) -> str:
        """Double SHA256 of the non-witness serialization, display order."""
        return b2h_rev(hash256(self.serialize(include_witness=False)))

    @property
    def size(self) -> int:
        return len(self.serialize())

    @property
    def weight(self) -> int:
        base = len(self.serialize(include_witness=False))
        return base * 3 + self.size

    @property
    def vsize(self) -> int:
        return (self.weight + 3) // 4

    def hash_prevouts(self) -> bytes:
        return hash256(b"".join(txin.serialize_outpoint() for txin in self.inputs))

    def hash_sequence(self) -> bytes:
        return hash256(b"".join(struct.pack("<I", txin.sequence) for txin in self.inputs))

    def hash_outputs(self, index: int | None = None) -> bytes:
        """Hash of all outputs, or of the single output at ``index``."""
        outputs = self.outputs if index is None else [self.outputs[index]]
        return hash256(b"".join(out.serialize(self.is_elements) for out in outputs))

    @classmethod
    def from_hex(cls, tx_hex: str, is_elements: bool = False) -> Transaction:
        try:
            raw = bytes.fromhex(tx_hex)
        except ValueError as e:
            raise TransactionParseError(f"Invalid transaction hex: {e}") from e
        return cls.parse(raw, is_elements)

    @classmethod
    def parse(cls, raw: bytes, is_elements: bool = False) -> Transaction:
        reader = _Reader(raw)
        tx = cls(is_elements=is_elements)
        tx.version = reader.u32()

        if is_elements:
            flag = reader.read(1)[0]
            if flag not in (0, 1):
                raise TransactionParseError(f"Invalid Elements witness flag: {flag}")
            has_witness = flag == 1
        else:
            has_witness = False
            if reader.peek() == 0x00:
                marker_flag = reader.read(2)
                if marker_flag[1] != 0x01:
                    raise TransactionParseError("Invalid SegWit marker")
                has_witness = True

        for _ in range(reader.varint()):
            txhash = b2h_rev(reader.read(32))
            pt_idx = reader.u32()
            if is_elements and pt_idx != 0xFFFFFFFF:
                if pt_idx & (OUTPOINT_ISSUANCE_FLAG | OUTPOINT_PEGIN_FLAG):
                    raise TransactionParseError("Issuance and peg-in inputs are not supported")
                pt_idx &= OUTPOINT_INDEX_MASK
            script_sig = reader.varbytes()
            sequence = reader.u32()
            tx.inputs.append(TxIn(txhash, pt_idx, sequence, script_sig))

        for _ in range(reader.varint()):
            if is_elements:
                tx.outputs.append(cls._parse_elements_output(reader))
            else:
                satoshi = struct.unpack("<Q", reader.read(8))[0]
                tx.outputs.append(TxOut(script=reader.varbytes(), satoshi=satoshi))

        if is_elements:
            tx.locktime = reader.u32()
            if has_witness:
                for txin in tx.inputs:
                    if reader.varbytes() or reader.varbytes():
                        raise TransactionParseError("Issuance rangeproofs are not supported")
                    txin.witness = reader.witness_stack()
                    if reader.witness_stack():
                        raise TransactionParseError("Peg-in witnesses are not supported")
                for txout in tx.outputs:
                    txout.surjection_proof = reader.varbytes()
                    txout.range_proof = reader.varbytes()
        else:
            if has_witness:
                for txin in tx.inputs:
                    txin.witness = reader.witness_stack()
            tx.locktime = reader.u32()

        if reader.offset != len(raw):
            raise TransactionParseError("Trailing data after transaction")
        return tx

    @staticmethod
    def _parse_elements_output(reader: _Reader) -> TxOut:
        txout = TxOut(script=b"")

        prefix = reader.peek()
        if prefix == EXPLICIT_PREFIX:
            txout.asset_id = b2h_rev(reader.read(33)[1:])
        elif prefix in ASSET_COMMITMENT_PREFIXES:
            txout.asset = reader.read(33)
        else:
            raise TransactionParseError(f"Invalid asset prefix: {prefix:#x}")

        prefix = reader.peek()
        if prefix == EXPLICIT_PREFIX:
            txout.satoshi = int.from_bytes(reader.read(9)[1:], "big")
        elif prefix in VALUE_COMMITMENT_PREFIXES:
            txout.value = reader.read(33)
        else:
            raise TransactionParseError(f"Invalid value prefix: {prefix:#x}")

        prefix = reader.peek()
        if prefix == 0x00:
            reader.read(1)
        elif prefix in NONCE_COMMITMENT_PREFIXES or prefix == EXPLICIT_PREFIX:
            txout.nonce = reader.read(33)
        else:
            raise TransactionParseError(f"Invalid nonce prefix: {prefix:#x}")

        txout.script = reader.varbytes()
        return txout
