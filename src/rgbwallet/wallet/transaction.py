"""
Bitcoin transaction serialization and BIP341 key-path signing.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field

from coincurve import PrivateKey

from rgbwallet.models import Outpoint
from rgbwallet.txid import TxidSource, canonicalize, to_internal_bytes
from rgbwallet.wallet.address import tagged_hash, taproot_tweak_private_key

TX_VERSION = 2
DEFAULT_SEQUENCE = 0xFFFFFFFD  # opt-in RBF
SIGHASH_DEFAULT = 0x00


class TransactionSigningError(Exception):
    pass


@dataclass
class TxIn:
    outpoint: Outpoint
    value: int
    script_pubkey: bytes
    sequence: int = DEFAULT_SEQUENCE
    witness: list[bytes] = field(default_factory=list)


@dataclass
class TxOut:
    value: int
    script_pubkey: bytes


@dataclass
class Transaction:
    inputs: list[TxIn]
    outputs: list[TxOut]
    version: int = TX_VERSION
    locktime: int = 0

    @property
    def has_witness(self) -> bool:
        return any(inp.witness for inp in self.inputs)

    def serialize(self, include_witness: bool = True) -> bytes:
        witness = include_witness and self.has_witness

        data = self.version.to_bytes(4, "little")
        if witness:
            data += b"\x00\x01"

        data += encode_varint(len(self.inputs))
        for inp in self.inputs:
            data += serialize_outpoint(inp.outpoint)
            data += b"\x00"  # empty scriptSig
            data += inp.sequence.to_bytes(4, "little")

        data += encode_varint(len(self.outputs))
        for out in self.outputs:
            data += serialize_output(out)

        if witness:
            for inp in self.inputs:
                data += encode_varint(len(inp.witness))
                for item in inp.witness:
                    data += encode_varint(len(item)) + item

        data += self.locktime.to_bytes(4, "little")
        return data

    @property
    def txid(self) -> str:
        digest = hash256(self.serialize(include_witness=False))
        return canonicalize(digest, TxidSource.BITCOIN_INTERNAL)

    @property
    def weight(self) -> int:
        base = len(self.serialize(include_witness=False))
        total = len(self.serialize(include_witness=True))
        return base * 3 + total

    @property
    def vsize(self) -> float:
        return self.weight / 4


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def sha256(data: bytes) -> bytes:
    return hashlib.sha256(data).digest()


def encode_varint(value: int) -> bytes:
    if value < 0xFD:
        return bytes([value])
    if value <= 0xFFFF:
        return b"\xfd" + value.to_bytes(2, "little")
    if value <= 0xFFFFFFFF:
        return b"\xfe" + value.to_bytes(4, "little")
    return b"\xff" + value.to_bytes(8, "little")


def serialize_outpoint(outpoint: Outpoint) -> bytes:
    return to_internal_bytes(outpoint.txid) + outpoint.vout.to_bytes(4, "little")


def serialize_output(out: TxOut) -> bytes:
    return (
        out.value.to_bytes(8, "little")
        + encode_varint(len(out.script_pubkey))
        + out.script_pubkey
    )


def compute_sighash_taproot(
    tx: Transaction, input_index: int, hash_type: int = SIGHASH_DEFAULT
) -> bytes:
    """
    BIP341 signature hash for a key-path spend with SIGHASH_DEFAULT.

    Every input's amount and scriptPubKey are committed to, so all
    ``TxIn.value`` and ``TxIn.script_pubkey`` fields must be filled in.
    """
    if input_index >= len(tx.inputs):
        raise TransactionSigningError("Input index out of range")
    if hash_type != SIGHASH_DEFAULT:
        raise TransactionSigningError(f"Unsupported sighash type: {hash_type}")

    sha_prevouts = sha256(b"".join(serialize_outpoint(inp.outpoint) for inp in tx.inputs))
    sha_amounts = sha256(b"".join(inp.value.to_bytes(8, "little") for inp in tx.inputs))
    sha_scriptpubkeys = sha256(
        b"".join(encode_varint(len(inp.script_pubkey)) + inp.script_pubkey for inp in tx.inputs)
    )
    sha_sequences = sha256(b"".join(inp.sequence.to_bytes(4, "little") for inp in tx.inputs))
    sha_outputs = sha256(b"".join(serialize_output(out) for out in tx.outputs))

    preimage = (
        b"\x00"  # sighash epoch
        + bytes([hash_type])
        + tx.version.to_bytes(4, "little")
        + tx.locktime.to_bytes(4, "little")
        + sha_prevouts
        + sha_amounts
        + sha_scriptpubkeys
        + sha_sequences
        + sha_outputs
        + b"\x00"  # spend type: key path, no annex
        + input_index.to_bytes(4, "little")
    )
    return tagged_hash("TapSighash", preimage)


def sign_taproot_input(
    tx: Transaction,
    input_index: int,
    private_key: PrivateKey,
    aux_randomness: bytes = b"",
) -> bytes:
    """Sign a BIP86 key-path input and set its witness.

    Args:
        tx: The transaction to sign
        input_index: Index of the input to sign
        private_key: Untweaked key whose BIP86 output is being spent
        aux_randomness: BIP340 auxiliary randomness (random if empty)

    Returns:
        64-byte Schnorr signature (SIGHASH_DEFAULT carries no type byte)
    """
    sighash = compute_sighash_taproot(tx, input_index)
    tweaked = taproot_tweak_private_key(private_key)
    try:
        signature = tweaked.sign_schnorr(sighash, aux_randomness)
    except ValueError as e:
        raise TransactionSigningError(f"Failed to sign input {input_index}: {e}") from e

    tx.inputs[input_index].witness = [signature]
    return signature


def estimate_signed_vsize(tx: Transaction) -> float:
    """Vsize the transaction will have once every input carries a key-path signature."""
    signed = Transaction(
        inputs=[
            TxIn(inp.outpoint, inp.value, inp.script_pubkey, inp.sequence, [bytes(64)])
            for inp in tx.inputs
        ],
        outputs=tx.outputs,
        version=tx.version,
        locktime=tx.locktime,
    )
    return signed.vsize
