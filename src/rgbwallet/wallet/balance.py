"""
Asset and Bitcoin balance aggregation.

Seal data is fetched from the validation node on every call; nothing is
cached between calls.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from loguru import logger

from rgbwallet.backends.base import ValidationNode
from rgbwallet.errors import ContractNotFound
from rgbwallet.models import (
    AssetBalance,
    AssetInfo,
    Balance,
    OccupiedUtxo,
    Outpoint,
    SealBinding,
    UtxoBalance,
    UtxoRecord,
    UtxoStatus,
)
from rgbwallet.storage.assets import AssetRegistry


def aggregate(
    seals: Mapping[Outpoint, list[SealBinding]],
    assets: Mapping[str, AssetInfo] | None = None,
) -> list[AssetBalance]:
    """
    Group seal bindings into one AssetBalance per contract.

    Seals with an unresolved amount are listed in ``unresolved_outpoints``
    and left out of ``total``. Contracts appear in order of their first
    outpoint; per-UTXO entries are ordered by outpoint.
    """
    assets = assets or {}
    balances: dict[str, AssetBalance] = {}
    amounts: dict[str, dict[Outpoint, int]] = {}

    for outpoint in sorted(seals):
        for seal in seals[outpoint]:
            balance = balances.get(seal.contract_id)
            if balance is None:
                info = assets.get(seal.contract_id)
                balance = AssetBalance(
                    contract_id=seal.contract_id,
                    ticker=seal.ticker or (info.ticker if info else ""),
                    name=seal.name or (info.name if info else ""),
                    total=0,
                    precision=info.precision if info else None,
                )
                balances[seal.contract_id] = balance
                amounts[seal.contract_id] = {}

            if seal.amount is None:
                if outpoint not in balance.unresolved_outpoints:
                    balance.unresolved_outpoints.append(outpoint)
                logger.warning(
                    f"Seal amount for {seal.contract_id} at {outpoint} could not be resolved"
                )
                continue

            per_utxo = amounts[seal.contract_id]
            per_utxo[outpoint] = per_utxo.get(outpoint, 0) + seal.amount

    for contract_id, balance in balances.items():
        balance.utxo_balances = [
            UtxoBalance(outpoint, amount) for outpoint, amount in amounts[contract_id].items()
        ]
        balance.total = sum(entry.amount for entry in balance.utxo_balances)
        balance.verify()

    return list(balances.values())


def bitcoin_balance(records: Iterable[UtxoRecord]) -> Balance:
    confirmed = 0
    unconfirmed = 0
    occupied = 0
    for record in records:
        if record.status == UtxoStatus.UNCONFIRMED:
            unconfirmed += record.amount_sats
            continue
        confirmed += record.amount_sats
        if record.carries_seals:
            occupied += record.amount_sats
    return Balance(confirmed=confirmed, unconfirmed=unconfirmed, occupied=occupied)


class BalanceAggregator:
    """Per-asset and per-UTXO balances of the wallet's live outpoints."""

    def __init__(self, node: ValidationNode, registry: AssetRegistry | None = None):
        self.node = node
        self.registry = registry

    def _assets(self) -> dict[str, AssetInfo]:
        if self.registry is None:
            return {}
        return {info.contract_id: info for info in self.registry.list_assets()}

    async def lookup_seals(
        self, outpoints: Iterable[Outpoint]
    ) -> dict[Outpoint, list[SealBinding]]:
        unique = sorted(set(outpoints))
        if not unique:
            return {}
        return await self.node.lookup_seals(unique)

    async def compute_balances(self, outpoints: Iterable[Outpoint]) -> list[AssetBalance]:
        seals = await self.lookup_seals(outpoints)
        balances = aggregate(seals, self._assets())
        logger.debug(f"Computed balances for {len(balances)} contracts")
        return balances

    async def compute_balance(
        self, outpoints: Iterable[Outpoint], contract_id: str
    ) -> AssetBalance:
        for balance in await self.compute_balances(outpoints):
            if balance.contract_id == contract_id:
                return balance
        raise ContractNotFound(contract_id)

    async def get_occupied_utxos(self, outpoints: Iterable[Outpoint]) -> list[OccupiedUtxo]:
        """One entry per bound seal, ordered by outpoint."""
        seals = await self.lookup_seals(outpoints)
        return [
            OccupiedUtxo(
                outpoint=outpoint,
                contract_id=seal.contract_id,
                ticker=seal.ticker,
                amount=seal.amount,
            )
            for outpoint in sorted(seals)
            for seal in seals[outpoint]
        ]
