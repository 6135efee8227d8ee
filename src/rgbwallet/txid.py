"""
Transaction id canonicalization.

Bitcoin stores a txid as 32 bytes in little-endian order and prints it
reversed (big-endian "display" order). The seal encoding library stores the
same little-endian bytes but hex-encodes them without reversing. The wallet
keys everything (storage rows, seal lookups, genesis records) on one form:
64 lowercase hex characters in display order.
"""

from __future__ import annotations

import string
from enum import Enum

from rgbwallet.errors import TxidFormatError

TXID_BYTES = 32
TXID_HEX_LENGTH = 64
MAX_VOUT = 0xFFFFFFFF

_HEX_DIGITS = frozenset(string.hexdigits)


class TxidSource(str, Enum):
    """Where a raw identifier came from, which fixes its byte order."""

    DISPLAY = "display"
    BITCOIN_INTERNAL = "bitcoin_internal"
    SEAL_INTERNAL = "seal_internal"
    SEAL_HEX = "seal_hex"


def _validate_hex(raw: str) -> str:
    if len(raw) != TXID_HEX_LENGTH:
        raise TxidFormatError(
            f"txid must be {TXID_HEX_LENGTH} hex characters, got {len(raw)}", raw=raw
        )
    if not set(raw) <= _HEX_DIGITS:
        raise TxidFormatError("txid contains non-hex characters", raw=raw)
    if raw != raw.lower() and raw != raw.upper():
        raise TxidFormatError("txid mixes upper and lower case", raw=raw)
    return raw.lower()


def canonicalize(raw: str | bytes | bytearray, source: TxidSource | None = None) -> str:
    """
    Normalize a transaction id to lowercase display-order hex.

    Args:
        raw: Hex text or 32 raw bytes
        source: Origin of ``raw``. Defaults to DISPLAY for text and
            BITCOIN_INTERNAL for bytes.

    Raises:
        TxidFormatError: wrong length, non-hex characters, mixed case, or a
            source that does not match the input type
    """
    if isinstance(raw, (bytes, bytearray)):
        source = source or TxidSource.BITCOIN_INTERNAL
        if source not in (TxidSource.BITCOIN_INTERNAL, TxidSource.SEAL_INTERNAL):
            raise TxidFormatError(f"byte input cannot come from {source.value}", raw=raw.hex())
        if len(raw) != TXID_BYTES:
            raise TxidFormatError(
                f"txid must be {TXID_BYTES} bytes, got {len(raw)}", raw=bytes(raw).hex()
            )
        return bytes(reversed(raw)).hex()

    if not isinstance(raw, str):
        raise TxidFormatError(f"unsupported txid type {type(raw).__name__}")

    source = source or TxidSource.DISPLAY
    text = _validate_hex(raw)
    if source == TxidSource.DISPLAY:
        return text
    if source == TxidSource.SEAL_HEX:
        return bytes.fromhex(text)[::-1].hex()
    raise TxidFormatError(f"text input cannot come from {source.value}", raw=raw)


def denormalize(canonical: str, target: TxidSource) -> str | bytes:
    """Convert a canonical txid into the form a given library expects."""
    text = canonicalize(canonical)
    if target == TxidSource.DISPLAY:
        return text
    internal = bytes.fromhex(text)[::-1]
    if target == TxidSource.SEAL_HEX:
        return internal.hex()
    return internal


def to_internal_bytes(canonical: str) -> bytes:
    """Little-endian txid bytes as used inside serialized transactions."""
    return bytes.fromhex(canonicalize(canonical))[::-1]


def validate_vout(vout: int) -> int:
    if isinstance(vout, bool) or not isinstance(vout, int) or not 0 <= vout <= MAX_VOUT:
        raise TxidFormatError(f"vout must be an unsigned 32-bit integer, got {vout!r}")
    return vout


def format_outpoint(txid: str, vout: int) -> str:
    return f"{canonicalize(txid)}:{validate_vout(vout)}"


def parse_outpoint(value: str) -> tuple[str, int]:
    """Split ``txid:vout`` into its canonical txid and output index."""
    txid, sep, vout_text = value.strip().rpartition(":")
    if not sep or not (vout_text.isascii() and vout_text.isdigit()):
        raise TxidFormatError("outpoint must look like txid:vout", raw=value)
    return canonicalize(txid), validate_vout(int(vout_text))


def seal_outpoint_string(internal: bytes | bytearray, vout: int) -> str:
    """Wallet-visible outpoint for an output referenced by the seal library."""
    return format_outpoint(canonicalize(internal, TxidSource.SEAL_INTERNAL), vout)
