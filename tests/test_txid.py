"""
Tests for rgbwallet.txid
"""

from __future__ import annotations

import pytest

from rgbwallet.errors import TxidFormatError
from rgbwallet.models import Outpoint
from rgbwallet.txid import (
    TxidSource,
    canonicalize,
    denormalize,
    format_outpoint,
    parse_outpoint,
    seal_outpoint_string,
    to_internal_bytes,
)

# Genesis coinbase txid in display order
DISPLAY = "4a5e1e4baab89f3a32518a88c31bc87f618f76673e2cc77ab2127b7afdeda33b"
INTERNAL = bytes.fromhex(DISPLAY)[::-1]


class TestCanonicalize:
    """Tests for canonicalize."""

    def test_display_text_unchanged(self) -> None:
        """Lowercase display hex is already canonical."""
        assert canonicalize(DISPLAY) == DISPLAY

    def test_uppercase_lowered(self) -> None:
        """All-uppercase hex is accepted and lowered."""
        assert canonicalize(DISPLAY.upper()) == DISPLAY

    def test_mixed_case_rejected(self) -> None:
        """Mixed case is rejected rather than guessed."""
        mixed = DISPLAY[:10].upper() + DISPLAY[10:]
        with pytest.raises(TxidFormatError):
            canonicalize(mixed)

    def test_wrong_length_rejected(self) -> None:
        """Text must be exactly 64 characters."""
        with pytest.raises(TxidFormatError) as exc_info:
            canonicalize(DISPLAY[:-2])
        assert exc_info.value.raw == DISPLAY[:-2]

    def test_non_hex_rejected(self) -> None:
        """Non-hex characters are rejected."""
        with pytest.raises(TxidFormatError):
            canonicalize("g" * 64)

    def test_bitcoin_internal_bytes_reversed(self) -> None:
        """Little-endian bytes from the Bitcoin library are reversed."""
        assert canonicalize(INTERNAL) == DISPLAY

    def test_seal_internal_bytes_reversed(self) -> None:
        """The seal library stores the same little-endian bytes."""
        assert canonicalize(INTERNAL, TxidSource.SEAL_INTERNAL) == DISPLAY

    def test_seal_hex_reversed(self) -> None:
        """The seal library's unreversed hex maps to display order."""
        assert canonicalize(INTERNAL.hex(), TxidSource.SEAL_HEX) == DISPLAY

    def test_short_bytes_rejected(self) -> None:
        """Byte input must be 32 bytes."""
        with pytest.raises(TxidFormatError):
            canonicalize(INTERNAL[:31])

    def test_bytes_with_text_source_rejected(self) -> None:
        """Bytes cannot claim to be display text."""
        with pytest.raises(TxidFormatError):
            canonicalize(INTERNAL, TxidSource.DISPLAY)


class TestDenormalize:
    """Tests for conversion back to library forms."""

    def test_to_internal_bytes(self) -> None:
        """Internal bytes are the reversed display bytes."""
        assert to_internal_bytes(DISPLAY) == INTERNAL

    def test_denormalize_targets(self) -> None:
        """Each target gets its native form."""
        assert denormalize(DISPLAY, TxidSource.DISPLAY) == DISPLAY
        assert denormalize(DISPLAY, TxidSource.BITCOIN_INTERNAL) == INTERNAL
        assert denormalize(DISPLAY, TxidSource.SEAL_HEX) == INTERNAL.hex()

    def test_reverse_and_hex_reproduces_display(self) -> None:
        """Reversing library bytes reproduces the user-facing string."""
        raw = denormalize(DISPLAY, TxidSource.SEAL_INTERNAL)
        assert isinstance(raw, bytes)
        assert raw[::-1].hex() == DISPLAY


class TestOutpoints:
    """Tests for outpoint strings."""

    def test_parse_outpoint(self) -> None:
        """Parsing canonicalizes the txid."""
        assert parse_outpoint(f"{DISPLAY.upper()}:3") == (DISPLAY, 3)

    def test_parse_outpoint_rejects_missing_vout(self) -> None:
        """A bare txid is not an outpoint."""
        with pytest.raises(TxidFormatError):
            parse_outpoint(DISPLAY)

    def test_parse_outpoint_rejects_negative_vout(self) -> None:
        """Negative vouts are rejected."""
        with pytest.raises(TxidFormatError):
            parse_outpoint(f"{DISPLAY}:-1")

    def test_vout_range(self) -> None:
        """vout must fit in 32 bits."""
        assert format_outpoint(DISPLAY, 0xFFFFFFFF) == f"{DISPLAY}:4294967295"
        with pytest.raises(TxidFormatError):
            format_outpoint(DISPLAY, 0x100000000)

    def test_same_output_same_string_everywhere(self) -> None:
        """Genesis, balance and claim paths agree on the outpoint string."""
        from_seal = seal_outpoint_string(INTERNAL, 1)
        from_bitcoin = str(Outpoint.from_internal(INTERNAL, 1))
        from_user = str(Outpoint.parse(f"{DISPLAY.upper()}:1"))
        assert from_seal == from_bitcoin == from_user == f"{DISPLAY}:1"
