"""
UTXO classification and coin selection.

Every UTXO is labelled on each sync:
- Unconfirmed: no confirmations yet (whether or not a seal is bound to it)
- Occupied: at least one asset seal is bound to it
- Available: everything else

Selection never spends an output that carries a seal binding, whatever the
filter says. Unconfirmed outputs are only spent when the caller opts in.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from loguru import logger

from rgbwallet.backends.base import EngineUtxo
from rgbwallet.constants import (
    P2TR_INPUT_VBYTES,
    P2TR_OUTPUT_VBYTES,
    STANDARD_DUST_LIMIT,
    TX_OVERHEAD_VBYTES,
)
from rgbwallet.errors import InsufficientFunds, InvalidAmount, ProtocolError
from rgbwallet.models import (
    CoinSelection,
    FeeRate,
    Outpoint,
    SealBinding,
    SpendFilter,
    UtxoFilter,
    UtxoRecord,
    UtxoStatus,
)


def estimate_vsize(num_inputs: int, num_outputs: int) -> float:
    """Vsize of a transaction with Taproot key-path inputs and P2TR outputs."""
    return TX_OVERHEAD_VBYTES + num_inputs * P2TR_INPUT_VBYTES + num_outputs * P2TR_OUTPUT_VBYTES


def classify_status(confirmations: int, seals: list[SealBinding]) -> UtxoStatus:
    if confirmations == 0:
        return UtxoStatus.UNCONFIRMED
    if seals:
        return UtxoStatus.OCCUPIED
    return UtxoStatus.AVAILABLE


def classify(
    utxos: Iterable[EngineUtxo], seals: Mapping[Outpoint, list[SealBinding]]
) -> list[UtxoRecord]:
    """
    Build classified records for the engine's unspent outputs.

    Raises:
        ProtocolError: the engine reported the same outpoint twice
    """
    records: list[UtxoRecord] = []
    seen: set[Outpoint] = set()

    for utxo in utxos:
        outpoint = utxo.outpoint
        if outpoint in seen:
            raise ProtocolError(
                "Wallet engine reported a duplicate outpoint", outpoint=str(outpoint)
            )
        seen.add(outpoint)

        bound = list(seals.get(outpoint, []))
        confirmations = max(utxo.confirmations, 0)
        status = classify_status(confirmations, bound)
        records.append(
            UtxoRecord(
                outpoint=outpoint,
                amount_sats=utxo.value,
                confirmations=confirmations,
                status=status,
                bound_seals=bound,
                address=utxo.address,
            )
        )
        logger.debug(f"Classified {outpoint} ({utxo.value} sats) as {status.display_name}")

    return records


def list_utxos(
    records: Iterable[UtxoRecord], utxo_filter: UtxoFilter | None = None
) -> list[UtxoRecord]:
    """Read-only listing, largest amount first."""
    utxo_filter = utxo_filter or UtxoFilter()
    matching = [record for record in records if utxo_filter.matches(record)]
    return sorted(matching, key=lambda r: (-r.amount_sats, r.outpoint))


def spendable_candidates(
    records: Iterable[UtxoRecord], spend_filter: SpendFilter | None = None
) -> list[UtxoRecord]:
    """UTXOs that may fund a plain Bitcoin spend, largest first."""
    spend_filter = spend_filter or SpendFilter()
    candidates = []
    for record in records:
        if record.carries_seals or record.status == UtxoStatus.OCCUPIED:
            continue
        if not record.is_confirmed and not spend_filter.allow_unconfirmed:
            continue
        if (
            spend_filter.min_amount_sats is not None
            and record.amount_sats < spend_filter.min_amount_sats
        ):
            continue
        candidates.append(record)
    return sorted(candidates, key=lambda r: (-r.amount_sats, r.outpoint))


def select_for_spend(
    records: Iterable[UtxoRecord],
    target_amount: int,
    fee_rate: FeeRate,
    spend_filter: SpendFilter | None = None,
    num_outputs: int = 1,
) -> CoinSelection:
    """
    Greedy largest-first selection covering ``target_amount`` plus fee.

    Args:
        records: Classified UTXO set
        target_amount: Sats paid to the non-change outputs
        fee_rate: Fee rate for the vsize estimate
        spend_filter: Confirmation and minimum-amount policy
        num_outputs: Outputs other than change

    Returns:
        CoinSelection; change below the dust limit is left to the fee

    Raises:
        InvalidAmount: target is not positive or below the dust limit
        InsufficientFunds: eligible UTXOs cannot cover target plus fee
    """
    if target_amount <= 0:
        raise InvalidAmount("Amount must be positive", amount=target_amount)
    if target_amount < STANDARD_DUST_LIMIT:
        raise InvalidAmount(
            f"Amount is below the dust limit of {STANDARD_DUST_LIMIT} sats", amount=target_amount
        )

    candidates = spendable_candidates(records, spend_filter)

    selected: list[UtxoRecord] = []
    total = 0
    for record in candidates:
        selected.append(record)
        total += record.amount_sats

        fee_without_change = fee_rate.fee_for(estimate_vsize(len(selected), num_outputs))
        if total < target_amount + fee_without_change:
            continue

        fee_with_change = fee_rate.fee_for(estimate_vsize(len(selected), num_outputs + 1))
        change = total - target_amount - fee_with_change
        if change >= STANDARD_DUST_LIMIT:
            selection = CoinSelection(selected, total, change, fee_with_change)
        else:
            selection = CoinSelection(selected, total, 0, total - target_amount)

        logger.debug(
            f"Selected {len(selected)} UTXOs ({total} sats) for {target_amount} sats, "
            f"fee {selection.fee}, change {selection.change_value}"
        )
        return selection

    needed = target_amount + fee_rate.fee_for(estimate_vsize(max(len(candidates), 1), num_outputs))
    raise InsufficientFunds(needed, total)
