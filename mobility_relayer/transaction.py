"""
Bitcoin transaction serialization and legacy P2PKH signing.
"""

from dataclasses import dataclass, field
from typing import List, Sequence, Tuple

from coincurve import PrivateKey

from .address import sha256d

SIGHASH_ALL = 0x01
DEFAULT_SEQUENCE = 0xFFFFFFFF


def reverse_bytes(data: bytes) -> bytes:
    """Reverse byte order (for Bitcoin little-endian display)."""
    return data[::-1]


def encode_varint(n: int) -> bytes:
    """Encode Bitcoin VarInt."""
    if n < 0xFD:
        return bytes([n])
    if n <= 0xFFFF:
        return b"\xfd" + n.to_bytes(2, "little")
    if n <= 0xFFFFFFFF:
        return b"\xfe" + n.to_bytes(4, "little")
    return b"\xff" + n.to_bytes(8, "little")


def parse_varint(data: bytes, offset: int = 0) -> Tuple[int, int]:
    """
    Parse Bitcoin VarInt.
    Returns (value, new_offset).
    """
    first = data[offset]
    if first < 0xFD:
        return first, offset + 1
    elif first == 0xFD:
        return int.from_bytes(data[offset + 1 : offset + 3], "little"), offset + 3
    elif first == 0xFE:
        return int.from_bytes(data[offset + 1 : offset + 5], "little"), offset + 5
    else:
        return int.from_bytes(data[offset + 1 : offset + 9], "little"), offset + 9


def push_data(data: bytes) -> bytes:
    """Minimal script push for data up to 75 bytes, OP_PUSHDATA1 above."""
    if len(data) < 0x4C:
        return bytes([len(data)]) + data
    if len(data) <= 0xFF:
        return b"\x4c" + bytes([len(data)]) + data
    return b"\x4d" + len(data).to_bytes(2, "little") + data


@dataclass
class TxIn:
    """Transaction input spending a previous output."""

    txid: str  # display (big-endian) hex
    vout: int
    script_sig: bytes = b""
    sequence: int = DEFAULT_SEQUENCE

    def serialize(self, script_sig: bytes | None = None) -> bytes:
        script = self.script_sig if script_sig is None else script_sig
        return (
            reverse_bytes(bytes.fromhex(self.txid))
            + self.vout.to_bytes(4, "little")
            + encode_varint(len(script))
            + script
            + self.sequence.to_bytes(4, "little")
        )


@dataclass
class TxOut:
    """Transaction output."""

    value: int
    script_pubkey: bytes

    def serialize(self) -> bytes:
        return (
            self.value.to_bytes(8, "little")
            + encode_varint(len(self.script_pubkey))
            + self.script_pubkey
        )


@dataclass
class Transaction:
    """Non-witness Bitcoin transaction."""

    inputs: List[TxIn] = field(default_factory=list)
    outputs: List[TxOut] = field(default_factory=list)
    version: int = 2
    locktime: int = 0

    def _serialize(self, script_sigs: Sequence[bytes]) -> bytes:
        parts = [self.version.to_bytes(4, "little"), encode_varint(len(self.inputs))]
        parts.extend(txin.serialize(sig) for txin, sig in zip(self.inputs, script_sigs))
        parts.append(encode_varint(len(self.outputs)))
        parts.extend(out.serialize() for out in self.outputs)
        parts.append(self.locktime.to_bytes(4, "little"))
        return b"".join(parts)

    def serialize(self) -> bytes:
        return self._serialize([txin.script_sig for txin in self.inputs])

    def to_hex(self) -> str:
        return self.serialize().hex()

    @property
    def txid(self) -> str:
        return reverse_bytes(sha256d(self.serialize())).hex()

    def legacy_sighash(
        self, index: int, script_code: bytes, sighash_type: int = SIGHASH_ALL
    ) -> bytes:
        """
        Signature hash for a pre-segwit input.

        The signed input carries the previous output's script, every other
        input an empty script.
        """
        script_sigs = [script_code if i == index else b"" for i in range(len(self.inputs))]
        preimage = self._serialize(script_sigs) + sighash_type.to_bytes(4, "little")
        return sha256d(preimage)


def sign_p2pkh_inputs(
    tx: Transaction,
    private_key: PrivateKey,
    script_pubkey: bytes,
    compressed: bool = True,
) -> None:
    """Sign every input of tx as a P2PKH spend of script_pubkey, in place."""
    pubkey = private_key.public_key.format(compressed=compressed)
    sighashes = [tx.legacy_sighash(i, script_pubkey) for i in range(len(tx.inputs))]

    for txin, sighash in zip(tx.inputs, sighashes):
        # coincurve signs the digest directly and returns a low-S DER signature
        der = private_key.sign(sighash, hasher=None)
        txin.script_sig = push_data(der + bytes([SIGHASH_ALL])) + push_data(pubkey)


def parse_tx_outputs(raw_tx: bytes) -> List[TxOut]:
    """
    Parse transaction outputs from a raw transaction (legacy or segwit).
    """
    offset = 4  # Skip version

    # Check for witness marker
    if raw_tx[offset] == 0x00 and raw_tx[offset + 1] == 0x01:
        offset += 2  # Skip marker and flag

    # Skip inputs
    input_count, offset = parse_varint(raw_tx, offset)
    for _ in range(input_count):
        offset += 32  # prev txid
        offset += 4  # prev vout
        script_len, offset = parse_varint(raw_tx, offset)
        offset += script_len  # script
        offset += 4  # sequence

    output_count, offset = parse_varint(raw_tx, offset)
    outputs = []

    for _ in range(output_count):
        value = int.from_bytes(raw_tx[offset : offset + 8], "little")
        offset += 8
        script_len, offset = parse_varint(raw_tx, offset)
        script_pubkey = raw_tx[offset : offset + script_len]
        offset += script_len
        outputs.append(TxOut(value=value, script_pubkey=script_pubkey))

    return outputs


def raw_txid(raw_tx: bytes) -> str:
    """
    Transaction id (display hex) of a raw transaction.

    Witness data is excluded from the hash, so segwit parents are
    reserialized without marker, flag and witnesses first.
    """
    if raw_tx[4] == 0x00 and raw_tx[5] == 0x01:
        offset = 6
        input_count, offset = parse_varint(raw_tx, offset)
        for _ in range(input_count):
            offset += 36
            script_len, offset = parse_varint(raw_tx, offset)
            offset += script_len + 4
        output_count, offset = parse_varint(raw_tx, offset)
        for _ in range(output_count):
            offset += 8
            script_len, offset = parse_varint(raw_tx, offset)
            offset += script_len
        raw_tx = raw_tx[:4] + raw_tx[6:offset] + raw_tx[-4:]

    return reverse_bytes(sha256d(raw_tx)).hex()
