"""
Taproot descriptor wallet engine.

Derives BIP86 key-path addresses from a descriptor, discovers funds through a
block explorer with a gap-limit scan, and builds and signs key-path spends.
State (revealed indexes, unspent set, known txids, locked inputs) is kept in
a JSON file in the wallet directory.

Derivation path: m/86'/{coin}'/0'/{branch}/{index}
- branch: 0 (external/receive), 1 (internal/change)
"""

from __future__ import annotations

from pathlib import Path

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from rgbwallet.backends.base import (
    BlockExplorer,
    EngineSyncReport,
    EngineUtxo,
    ExplorerUtxo,
    SignedTransaction,
    StagedSync,
    TxOutput,
    WalletEngine,
)
from rgbwallet.constants import DEFAULT_GAP_LIMIT
from rgbwallet.errors import InsufficientFunds, InvalidAmount, StorageError, UtxoNotFound
from rgbwallet.models import AddressInfo, Keychain, Outpoint
from rgbwallet.wallet.address import address_to_scriptpubkey, pubkey_to_p2tr_script
from rgbwallet.wallet.bip32 import HDKey
from rgbwallet.wallet.keys import TaprootDescriptor
from rgbwallet.wallet.transaction import Transaction, TxIn, TxOut, sign_taproot_input


class StoredUtxo(BaseModel):
    txid: str
    vout: int
    value: int
    address: str
    keychain: Keychain
    index: int
    height: int | None = None


class EngineState(BaseModel):
    version: int = 1
    network: str
    revealed: dict[Keychain, int] = Field(
        default_factory=lambda: {Keychain.EXTERNAL: 0, Keychain.INTERNAL: 0}
    )
    used: dict[Keychain, list[int]] = Field(
        default_factory=lambda: {Keychain.EXTERNAL: [], Keychain.INTERNAL: []}
    )
    utxos: list[StoredUtxo] = Field(default_factory=list)
    known_txids: list[str] = Field(default_factory=list)
    locked: list[str] = Field(default_factory=list)
    tip_height: int = 0
    tip_hash: str = ""


class DescriptorWallet(WalletEngine):
    def __init__(
        self,
        descriptor: TaprootDescriptor,
        explorer: BlockExplorer,
        network: str = "regtest",
        state_path: Path | None = None,
        gap_limit: int = DEFAULT_GAP_LIMIT,
    ):
        self.descriptor = descriptor
        self.explorer = explorer
        self.network = network
        self.state_path = state_path
        self.gap_limit = gap_limit

        self._account_key = descriptor.account_key
        self._key_cache: dict[tuple[Keychain, int], HDKey] = {}

        self.state = self._load_state()
        self._dirty = False

    def _load_state(self) -> EngineState:
        if self.state_path is None or not self.state_path.exists():
            return EngineState(network=self.network)

        try:
            state = EngineState.model_validate_json(self.state_path.read_text("utf-8"))
        except OSError as e:
            raise StorageError(f"Cannot read engine state: {e}", path=str(self.state_path)) from e
        except ValidationError as e:
            raise StorageError(
                f"Corrupted engine state: {e.error_count()} errors", path=str(self.state_path)
            ) from e

        if state.network != self.network:
            raise StorageError(
                f"Engine state belongs to {state.network}, not {self.network}",
                path=str(self.state_path),
            )
        logger.debug(
            f"Loaded engine state: {len(state.utxos)} UTXOs, tip height {state.tip_height}"
        )
        return state

    def _key(self, keychain: Keychain, index: int) -> HDKey:
        cache_key = (keychain, index)
        if cache_key not in self._key_cache:
            self._key_cache[cache_key] = self._account_key.derive(f"m/{keychain.branch}/{index}")
        return self._key_cache[cache_key]

    def _address(self, keychain: Keychain, index: int) -> str:
        return self._key(keychain, index).get_address(self.network)

    def _address_info(self, keychain: Keychain, index: int) -> AddressInfo:
        return AddressInfo(
            index=index,
            address=self._address(keychain, index),
            keychain=keychain,
            used=index in self.state.used[keychain],
        )

    def reveal_next_address(self, keychain: Keychain = Keychain.EXTERNAL) -> AddressInfo:
        index = self.state.revealed[keychain]
        self.state.revealed[keychain] = index + 1
        self._dirty = True
        info = self._address_info(keychain, index)
        logger.debug(f"Revealed {keychain.value} address #{index}: {info.address}")
        return info

    def peek_address(self, keychain: Keychain, index: int) -> AddressInfo:
        if index < 0:
            raise ValueError("Address index cannot be negative")
        return self._address_info(keychain, index)

    def revealed_addresses(self, keychain: Keychain = Keychain.EXTERNAL) -> list[AddressInfo]:
        return [
            self._address_info(keychain, index) for index in range(self.state.revealed[keychain])
        ]

    def _confirmations(self, height: int | None, tip_height: int) -> int:
        if height is None or height > tip_height:
            return 0
        return tip_height - height + 1

    async def _scan_keychain(
        self, keychain: Keychain
    ) -> tuple[list[tuple[int, ExplorerUtxo]], int | None]:
        """
        Scan addresses of a keychain until ``gap_limit`` consecutive unused ones
        past the revealed range.

        Returns:
            (index, utxo) pairs found and the highest index that holds funds
        """
        found: list[tuple[int, ExplorerUtxo]] = []
        highest_used: int | None = None
        consecutive_empty = 0
        index = 0
        revealed = self.state.revealed[keychain]

        while index < revealed or consecutive_empty < self.gap_limit:
            address = self._address(keychain, index)
            utxos = await self.explorer.get_address_utxos(address)

            if utxos:
                consecutive_empty = 0
                highest_used = index
                found.extend((index, utxo) for utxo in utxos)
            elif index >= revealed:
                consecutive_empty += 1

            index += 1

        logger.debug(
            f"Scanned {index} {keychain.value} addresses, found {len(found)} UTXOs"
        )
        return found, highest_used

    async def prepare_sync(self) -> StagedSync:
        """
        Fetch the unspent set from the explorer into a new state.

        The current state is not touched; ``commit_sync`` applies the result.
        """
        tip_height = await self.explorer.get_tip_height()
        tip_hash = await self.explorer.get_tip_hash()

        scanned: dict[Keychain, tuple[list[tuple[int, ExplorerUtxo]], int | None]] = {}
        for keychain in Keychain:
            scanned[keychain] = await self._scan_keychain(keychain)

        new_utxos: list[StoredUtxo] = []
        new_used = {keychain: set(self.state.used[keychain]) for keychain in Keychain}
        new_revealed = dict(self.state.revealed)
        for keychain, (found, highest_used) in scanned.items():
            for index, utxo in found:
                new_utxos.append(
                    StoredUtxo(
                        txid=utxo.txid,
                        vout=utxo.vout,
                        value=utxo.value,
                        address=self._address(keychain, index),
                        keychain=keychain,
                        index=index,
                        height=utxo.block_height if utxo.confirmed else None,
                    )
                )
                new_used[keychain].add(index)
            if highest_used is not None and highest_used >= new_revealed[keychain]:
                new_revealed[keychain] = highest_used + 1

        old_heights: dict[str, set[tuple[int, int | None]]] = {}
        for stored in self.state.utxos:
            old_heights.setdefault(stored.txid, set()).add((stored.vout, stored.height))
        new_heights: dict[str, set[tuple[int, int | None]]] = {}
        for stored in new_utxos:
            new_heights.setdefault(stored.txid, set()).add((stored.vout, stored.height))

        known = set(self.state.known_txids)
        new_txids = set(new_heights) - known
        updated_txids = {
            txid
            for txid in (set(old_heights) | set(new_heights)) - new_txids
            if old_heights.get(txid) != new_heights.get(txid)
        }
        new_addresses = sum(new_revealed[k] - self.state.revealed[k] for k in Keychain)

        changed = (
            bool(new_txids)
            or bool(updated_txids)
            or new_addresses > 0
            or bool(self.state.locked)
            or tip_height != self.state.tip_height
            or tip_hash != self.state.tip_hash
        )

        new_utxos.sort(key=lambda u: (u.txid, u.vout))
        state = self.state.model_copy(
            update={
                "utxos": new_utxos,
                "known_txids": sorted(known | new_txids),
                "used": {k: sorted(v) for k, v in new_used.items()},
                "revealed": new_revealed,
                "locked": [],
                "tip_height": tip_height,
                "tip_hash": tip_hash,
            }
        )

        logger.debug(
            f"Prepared engine sync at height {tip_height}: {len(new_utxos)} UTXOs, "
            f"{len(new_txids)} new txs, {len(updated_txids)} updated"
        )
        report = EngineSyncReport(
            height=tip_height,
            tip_hash=tip_hash,
            new_txs=len(new_txids),
            updated_txs=len(updated_txids),
            new_addresses=new_addresses,
        )
        return StagedSync(report=report, utxos=self._unspent(state), state=(state, changed))

    def commit_sync(self, staged: StagedSync) -> None:
        state, changed = staged.state
        # addresses revealed while the sync was in flight stay revealed
        for keychain in Keychain:
            state.revealed[keychain] = max(state.revealed[keychain], self.state.revealed[keychain])
        self.state = state
        self._dirty = self._dirty or changed
        logger.info(f"Engine synced to height {state.tip_height}: {len(state.utxos)} UTXOs")

    def list_unspent(self) -> list[EngineUtxo]:
        return self._unspent(self.state)

    def _unspent(self, state: EngineState) -> list[EngineUtxo]:
        locked = set(state.locked)
        return [
            EngineUtxo(
                txid=stored.txid,
                vout=stored.vout,
                value=stored.value,
                address=stored.address,
                confirmations=self._confirmations(stored.height, state.tip_height),
                keychain=stored.keychain,
                index=stored.index,
                height=stored.height,
            )
            for stored in state.utxos
            if f"{stored.txid}:{stored.vout}" not in locked
        ]

    def _output_script(self, address: str) -> bytes:
        try:
            return address_to_scriptpubkey(address, self.network)
        except ValueError as e:
            raise InvalidAmount(f"Invalid address: {e}", address=address) from e

    def build_transaction(
        self, inputs: list[Outpoint], outputs: list[TxOutput]
    ) -> SignedTransaction:
        if not inputs:
            raise InvalidAmount("Transaction needs at least one input")
        if not outputs:
            raise InvalidAmount("Transaction needs at least one output")
        if len(set(inputs)) != len(inputs):
            raise InvalidAmount("Transaction spends the same outpoint twice")

        unspent = {utxo.outpoint: utxo for utxo in self.list_unspent()}
        tx_inputs = []
        keys = []
        for outpoint in inputs:
            utxo = unspent.get(outpoint)
            if utxo is None:
                raise UtxoNotFound(str(outpoint))
            key = self._key(utxo.keychain, utxo.index)
            keys.append(key)
            tx_inputs.append(
                TxIn(
                    outpoint=outpoint,
                    value=utxo.value,
                    script_pubkey=pubkey_to_p2tr_script(key.get_public_key_bytes()),
                )
            )

        tx_outputs = []
        for output in outputs:
            if output.value <= 0:
                raise InvalidAmount("Output value must be positive", address=output.address)
            tx_outputs.append(TxOut(output.value, self._output_script(output.address)))

        total_in = sum(inp.value for inp in tx_inputs)
        total_out = sum(out.value for out in tx_outputs)
        if total_out > total_in:
            raise InsufficientFunds(total_out, total_in)

        tx = Transaction(inputs=tx_inputs, outputs=tx_outputs)
        for index, key in enumerate(keys):
            sign_taproot_input(tx, index, key.private_key)

        signed = SignedTransaction(
            txid=tx.txid,
            raw_hex=tx.serialize().hex(),
            inputs=list(inputs),
            outputs=list(outputs),
            fee=total_in - total_out,
            vsize=tx.vsize,
        )
        logger.debug(
            f"Built transaction {signed.txid}: {len(inputs)} inputs, "
            f"{len(outputs)} outputs, fee {signed.fee} sats"
        )
        return signed

    async def broadcast(self, tx: SignedTransaction) -> str:
        txid = await self.explorer.broadcast(tx.raw_hex)
        locked = set(self.state.locked)
        locked.update(str(outpoint) for outpoint in tx.inputs)
        self.state.locked = sorted(locked)
        self._dirty = True
        return txid

    def persist(self) -> bool:
        if not self._dirty or self.state_path is None:
            return False

        tmp_path = self.state_path.with_suffix(".tmp")
        try:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(self.state.model_dump_json(indent=2), "utf-8")
            tmp_path.replace(self.state_path)
        except OSError as e:
            raise StorageError(f"Cannot write engine state: {e}", path=str(self.state_path)) from e

        self._dirty = False
        logger.debug(f"Persisted engine state to {self.state_path}")
        return True
