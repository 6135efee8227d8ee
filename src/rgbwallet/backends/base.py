"""
Interfaces of the external collaborators: the Bitcoin wallet engine, the
block-explorer indexer and the contract validation node.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from rgbwallet.errors import NetworkUnavailable
from rgbwallet.models import (
    AddressInfo,
    IssueAssetRequest,
    Keychain,
    Outpoint,
    PendingClaim,
    SealBinding,
)


@dataclass
class EngineUtxo:
    txid: str
    vout: int
    value: int
    address: str
    confirmations: int
    keychain: Keychain = Keychain.EXTERNAL
    index: int = 0
    height: int | None = None

    @property
    def outpoint(self) -> Outpoint:
        return Outpoint(self.txid, self.vout)


@dataclass
class EngineSyncReport:
    height: int
    tip_hash: str
    new_txs: int = 0
    updated_txs: int = 0
    new_addresses: int = 0


@dataclass
class StagedSync:
    """Result of a sync that has not been applied to the engine yet."""

    report: EngineSyncReport
    utxos: list[EngineUtxo] = field(default_factory=list)
    state: Any = None


@dataclass
class TxOutput:
    address: str
    value: int


@dataclass
class SignedTransaction:
    txid: str
    raw_hex: str
    inputs: list[Outpoint]
    outputs: list[TxOutput]
    fee: int
    vsize: float

    def vout_for(self, address: str) -> int | None:
        for index, output in enumerate(self.outputs):
            if output.address == address:
                return index
        return None


@dataclass
class ExplorerUtxo:
    txid: str
    vout: int
    value: int
    confirmed: bool
    block_height: int | None = None


@dataclass
class TxStatus:
    txid: str
    confirmed: bool
    block_height: int | None = None
    block_hash: str | None = None


@dataclass
class ContractInfo:
    contract_id: str
    ticker: str
    name: str
    supply: int
    precision: int
    genesis_outpoint: Outpoint | None = None


class BlockExplorer(ABC):
    """Block-explorer indexer (Esplora-style) used for chain state and broadcast."""

    @abstractmethod
    async def get_tip_height(self) -> int:
        """Get current blockchain height"""

    @abstractmethod
    async def get_tip_hash(self) -> str:
        """Get hash of the current chain tip"""

    @abstractmethod
    async def get_tx_status(self, txid: str) -> TxStatus | None:
        """Get confirmation status of a transaction, None if unknown"""

    @abstractmethod
    async def get_address_utxos(self, address: str) -> list[ExplorerUtxo]:
        """Get unspent outputs paying to an address"""

    @abstractmethod
    async def broadcast(self, raw_hex: str) -> str:
        """Broadcast a raw transaction, returns its txid"""

    @abstractmethod
    async def get_fee_estimates(self) -> dict[int, float]:
        """Fee rate estimates (sat/vB) keyed by confirmation target"""

    async def is_available(self) -> bool:
        """Check that the indexer answers."""
        try:
            await self.get_tip_height()
        except NetworkUnavailable:
            return False
        return True

    async def close(self) -> None:
        """Close backend connection"""
        pass


class WalletEngine(ABC):
    """
    Bitcoin wallet engine.

    Owns keys, address indexes and the on-disk wallet state. Coin selection is
    done by the caller; the engine builds and signs exactly the inputs and
    outputs it is given.
    """

    @abstractmethod
    def reveal_next_address(self, keychain: Keychain = Keychain.EXTERNAL) -> AddressInfo:
        """Reveal and return the next unused address"""

    @abstractmethod
    def peek_address(self, keychain: Keychain, index: int) -> AddressInfo:
        """Derive an address without revealing it"""

    @abstractmethod
    def revealed_addresses(self, keychain: Keychain = Keychain.EXTERNAL) -> list[AddressInfo]:
        """All addresses revealed so far, in index order"""

    @abstractmethod
    async def prepare_sync(self) -> StagedSync:
        """Fetch a fresh unspent set from the indexer without applying it"""

    @abstractmethod
    def commit_sync(self, staged: StagedSync) -> None:
        """Apply a staged sync to the in-memory state"""

    async def sync(self) -> EngineSyncReport:
        """Refresh the unspent set from the indexer and apply it."""
        staged = await self.prepare_sync()
        self.commit_sync(staged)
        return staged.report

    @abstractmethod
    def list_unspent(self) -> list[EngineUtxo]:
        """Unspent outputs known after the last sync"""

    @abstractmethod
    def build_transaction(
        self, inputs: list[Outpoint], outputs: list[TxOutput]
    ) -> SignedTransaction:
        """Build and sign a transaction spending exactly ``inputs``"""

    @abstractmethod
    async def broadcast(self, tx: SignedTransaction) -> str:
        """Broadcast a signed transaction and lock its inputs until the next sync"""

    @abstractmethod
    def persist(self) -> bool:
        """Write pending state changes to disk, returns True if anything was written"""


class ValidationNode(ABC):
    """Contract validation node that owns seal state."""

    @abstractmethod
    async def issue_asset(self, request: IssueAssetRequest) -> str:
        """Issue an asset bound to the request's genesis outpoint, returns the contract id"""

    @abstractmethod
    async def lookup_seals(self, outpoints: list[Outpoint]) -> dict[Outpoint, list[SealBinding]]:
        """Seals bound to each of the given outpoints (missing key means no seal)"""

    @abstractmethod
    async def submit_claim(self, claim: PendingClaim, signature: str | None = None) -> None:
        """
        Submit a consignment claim for a witness transaction.

        ``signature`` is the node-key signature over the witness id and the
        receiving outpoint.

        Raises:
            UtxoNotFound: the witness output is not visible to the node yet
            ClaimRejected: the node refused the consignment
            NetworkUnavailable: the node is unreachable or overloaded
        """

    @abstractmethod
    async def get_contract(self, contract_id: str) -> ContractInfo:
        """Contract metadata, raises ContractNotFound for unknown ids"""

    @abstractmethod
    async def export_genesis(self, contract_id: str) -> str:
        """Write the genesis consignment of a contract, returns its reference"""

    @abstractmethod
    async def generate_invoice(
        self,
        contract_id: str,
        amount: int,
        recipient_address: str,
        recipient_pubkey: str | None = None,
    ) -> str:
        """
        Encode an invoice asking for ``amount`` units of a contract.

        ``recipient_pubkey`` is the node identity key the sender authorizes
        the transfer to.

        Raises:
            ContractNotFound: the node does not know the contract
        """

    async def close(self) -> None:
        pass
