"""
Tests for UTXO classification and coin selection.
"""

from __future__ import annotations

import itertools

import pytest

from rgbwallet.backends.base import EngineUtxo
from rgbwallet.constants import STANDARD_DUST_LIMIT
from rgbwallet.errors import InsufficientFunds, InvalidAmount, ProtocolError
from rgbwallet.models import (
    FeeRate,
    Outpoint,
    SealBinding,
    SpendFilter,
    UtxoFilter,
    UtxoRecord,
    UtxoStatus,
)
from rgbwallet.wallet.selection import (
    classify,
    classify_status,
    estimate_vsize,
    list_utxos,
    select_for_spend,
    spendable_candidates,
)


def txid(n: int) -> str:
    return f"{n:064x}"


def engine_utxo(n: int, value: int, confirmations: int = 6) -> EngineUtxo:
    return EngineUtxo(
        txid=txid(n), vout=0, value=value, address=f"addr{n}", confirmations=confirmations
    )


SEAL = SealBinding(contract_id="rgb:asset", ticker="TST", amount=1000)


@pytest.fixture
def records() -> list[UtxoRecord]:
    """Two free UTXOs, one large occupied UTXO, one unconfirmed and one unconfirmed sealed."""
    utxos = [
        engine_utxo(1, 50_000),
        engine_utxo(2, 20_000),
        engine_utxo(3, 500_000),
        engine_utxo(4, 80_000, confirmations=0),
        engine_utxo(5, 300_000, confirmations=0),
    ]
    seals = {Outpoint(txid(3), 0): [SEAL], Outpoint(txid(5), 0): [SEAL]}
    return classify(utxos, seals)


class TestClassification:
    """Tests for classify and classify_status."""

    def test_status_rules(self) -> None:
        """Unconfirmed wins, then occupied, then available."""
        assert classify_status(0, [SEAL]) == UtxoStatus.UNCONFIRMED
        assert classify_status(0, []) == UtxoStatus.UNCONFIRMED
        assert classify_status(3, [SEAL]) == UtxoStatus.OCCUPIED
        assert classify_status(3, []) == UtxoStatus.AVAILABLE

    def test_classify_records(self, records: list[UtxoRecord]) -> None:
        """Each engine UTXO gets one record with its seals."""
        by_txid = {r.outpoint.txid: r for r in records}
        assert by_txid[txid(1)].status == UtxoStatus.AVAILABLE
        assert by_txid[txid(3)].status == UtxoStatus.OCCUPIED
        assert by_txid[txid(3)].bound_seals == [SEAL]
        assert by_txid[txid(4)].status == UtxoStatus.UNCONFIRMED
        assert by_txid[txid(5)].status == UtxoStatus.UNCONFIRMED
        assert by_txid[txid(5)].carries_seals

    def test_duplicate_outpoint_rejected(self) -> None:
        """The live set never holds an outpoint twice."""
        with pytest.raises(ProtocolError):
            classify([engine_utxo(1, 1000), engine_utxo(1, 1000)], {})


class TestListing:
    """Tests for read-only listing."""

    def test_sorted_largest_first(self, records: list[UtxoRecord]) -> None:
        """Listings are ordered by amount, descending."""
        amounts = [r.amount_sats for r in list_utxos(records)]
        assert amounts == sorted(amounts, reverse=True)
        assert len(amounts) == 5

    def test_listing_includes_unconfirmed(self, records: list[UtxoRecord]) -> None:
        """Unconfirmed UTXOs show up in listings."""
        statuses = {r.status for r in list_utxos(records)}
        assert UtxoStatus.UNCONFIRMED in statuses

    def test_available_only(self, records: list[UtxoRecord]) -> None:
        """available_only keeps free confirmed UTXOs."""
        listed = list_utxos(records, UtxoFilter(available_only=True))
        assert [r.amount_sats for r in listed] == [50_000, 20_000]

    def test_rgb_only(self, records: list[UtxoRecord]) -> None:
        """rgb_only keeps seal-bearing UTXOs, confirmed or not."""
        listed = list_utxos(records, UtxoFilter(rgb_only=True))
        assert [r.amount_sats for r in listed] == [500_000, 300_000]


class TestSelection:
    """Tests for select_for_spend."""

    def test_never_selects_sealed(self, records: list[UtxoRecord]) -> None:
        """No filter combination lets a sealed UTXO through."""
        sealed = {Outpoint(txid(3), 0), Outpoint(txid(5), 0)}
        for allow_unconfirmed, min_amount in itertools.product([False, True], [None, 1, 60_000]):
            spend_filter = SpendFilter(
                allow_unconfirmed=allow_unconfirmed, min_amount_sats=min_amount
            )
            candidates = spendable_candidates(records, spend_filter)
            assert not sealed & {r.outpoint for r in candidates}
            try:
                selection = select_for_spend(records, 10_000, FeeRate(1), spend_filter)
            except InsufficientFunds:
                continue
            assert not sealed & set(selection.outpoints)

    def test_excludes_unconfirmed_by_default(self, records: list[UtxoRecord]) -> None:
        """Unconfirmed funds are only used on request."""
        default = spendable_candidates(records)
        assert Outpoint(txid(4), 0) not in {r.outpoint for r in default}
        opted_in = spendable_candidates(records, SpendFilter(allow_unconfirmed=True))
        assert Outpoint(txid(4), 0) in {r.outpoint for r in opted_in}

    def test_largest_first_with_change(self, records: list[UtxoRecord]) -> None:
        """The largest free UTXO funds a small spend and change is returned."""
        selection = select_for_spend(records, 10_000, FeeRate(2))
        assert selection.outpoints == [Outpoint(txid(1), 0)]
        expected_fee = FeeRate(2).fee_for(estimate_vsize(1, 2))
        assert selection.fee == expected_fee
        assert selection.change_value == 50_000 - 10_000 - expected_fee

    def test_dust_change_goes_to_fee(self) -> None:
        """Change below the dust limit is left to the miner."""
        utxos = classify([engine_utxo(1, 10_300)], {})
        selection = select_for_spend(utxos, 10_000, FeeRate(1))
        assert selection.change_value == 0
        assert selection.fee == 300

    def test_combines_utxos(self, records: list[UtxoRecord]) -> None:
        """Several UTXOs are combined when one is not enough."""
        selection = select_for_spend(records, 60_000, FeeRate(1))
        assert set(selection.outpoints) == {Outpoint(txid(1), 0), Outpoint(txid(2), 0)}

    def test_insufficient_funds_ignores_sealed_value(self, records: list[UtxoRecord]) -> None:
        """Sealed value does not count as available."""
        with pytest.raises(InsufficientFunds) as exc_info:
            select_for_spend(records, 100_000, FeeRate(1))
        err = exc_info.value
        assert err.available == 70_000
        assert err.shortfall == err.needed - err.available
        assert err.shortfall > 0

    @pytest.mark.parametrize("amount", [0, -5, STANDARD_DUST_LIMIT - 1])
    def test_invalid_amounts(self, records: list[UtxoRecord], amount: int) -> None:
        """Zero, negative and dust amounts are rejected."""
        with pytest.raises(InvalidAmount):
            select_for_spend(records, amount, FeeRate(1))

    def test_vsize_estimate(self) -> None:
        """One P2TR input and two outputs."""
        assert estimate_vsize(1, 2) == 10.5 + 57.5 + 86.0
