"""
Pytest configuration and fixtures for rgbwallet tests.

The wallet engine, block explorer and validation node are replaced by
in-memory fakes that follow the backend interfaces.
"""

from __future__ import annotations

import hashlib
from pathlib import Path

import pytest

from rgbwallet.backends.base import (
    BlockExplorer,
    ContractInfo,
    EngineSyncReport,
    EngineUtxo,
    ExplorerUtxo,
    SignedTransaction,
    StagedSync,
    TxOutput,
    TxStatus,
    ValidationNode,
    WalletEngine,
)
from rgbwallet.config import WalletSettings
from rgbwallet.errors import ContractNotFound, NetworkUnavailable, UtxoNotFound
from rgbwallet.models import (
    AddressInfo,
    IssueAssetRequest,
    Keychain,
    Outpoint,
    PendingClaim,
    SealBinding,
)
from rgbwallet.reconcile import ReconciliationCoordinator
from rgbwallet.storage.assets import AssetRegistry
from rgbwallet.storage.claims import ClaimStore


def make_txid(seed: int | str) -> str:
    return hashlib.sha256(str(seed).encode()).hexdigest()


class FakeWalletEngine(WalletEngine):
    def __init__(self, height: int = 100):
        self.height = height
        self.utxos: list[EngineUtxo] = []
        self.chain_utxos: list[EngineUtxo] = []
        self.revealed = {Keychain.EXTERNAL: 0, Keychain.INTERNAL: 0}
        self.known_txids: set[str] = set()
        self.locked: set[Outpoint] = set()
        self.broadcasts: list[SignedTransaction] = []
        self.sync_calls = 0
        self.persist_calls = 0
        self.fail_sync = False

    def address(self, keychain: Keychain, index: int) -> str:
        return f"bcrt1p{keychain.value}{index:04d}"

    def add_chain_utxo(
        self, seed: int | str, value: int, confirmations: int = 6, vout: int = 0
    ) -> Outpoint:
        """Make an output visible to the next sync."""
        utxo = EngineUtxo(
            txid=make_txid(seed),
            vout=vout,
            value=value,
            address=self.address(Keychain.EXTERNAL, 0),
            confirmations=confirmations,
        )
        self.chain_utxos.append(utxo)
        return utxo.outpoint

    def add_utxo(
        self, seed: int | str, value: int, confirmations: int = 6, vout: int = 0
    ) -> Outpoint:
        """Make an output visible immediately and on every later sync."""
        outpoint = self.add_chain_utxo(seed, value, confirmations, vout)
        self.utxos = list(self.chain_utxos)
        return outpoint

    def reveal_next_address(self, keychain: Keychain = Keychain.EXTERNAL) -> AddressInfo:
        index = self.revealed[keychain]
        self.revealed[keychain] = index + 1
        return AddressInfo(index=index, address=self.address(keychain, index), keychain=keychain)

    def peek_address(self, keychain: Keychain, index: int) -> AddressInfo:
        return AddressInfo(index=index, address=self.address(keychain, index), keychain=keychain)

    def revealed_addresses(self, keychain: Keychain = Keychain.EXTERNAL) -> list[AddressInfo]:
        return [self.peek_address(keychain, i) for i in range(self.revealed[keychain])]

    async def prepare_sync(self) -> StagedSync:
        self.sync_calls += 1
        if self.fail_sync:
            raise NetworkUnavailable("indexer down", url="http://fake")
        txids = {utxo.txid for utxo in self.chain_utxos}
        report = EngineSyncReport(
            height=self.height, tip_hash="ab" * 32, new_txs=len(txids - self.known_txids)
        )
        return StagedSync(report=report, utxos=list(self.chain_utxos), state=txids)

    def commit_sync(self, staged: StagedSync) -> None:
        self.known_txids |= staged.state
        self.utxos = list(staged.utxos)
        self.locked = set()

    def list_unspent(self) -> list[EngineUtxo]:
        return [utxo for utxo in self.utxos if utxo.outpoint not in self.locked]

    def build_transaction(
        self, inputs: list[Outpoint], outputs: list[TxOutput]
    ) -> SignedTransaction:
        unspent = {utxo.outpoint: utxo for utxo in self.list_unspent()}
        for outpoint in inputs:
            if outpoint not in unspent:
                raise UtxoNotFound(str(outpoint))
        total_in = sum(unspent[outpoint].value for outpoint in inputs)
        total_out = sum(output.value for output in outputs)
        return SignedTransaction(
            txid=make_txid(f"tx-{len(self.broadcasts)}-{inputs}"),
            raw_hex="02000000",
            inputs=list(inputs),
            outputs=list(outputs),
            fee=total_in - total_out,
            vsize=100.0,
        )

    async def broadcast(self, tx: SignedTransaction) -> str:
        self.broadcasts.append(tx)
        self.locked.update(tx.inputs)
        return tx.txid

    def persist(self) -> bool:
        self.persist_calls += 1
        return True


class FakeExplorer(BlockExplorer):
    def __init__(self):
        self.height = 100
        self.fee_estimates: dict[int, float] = {}
        self.tx_statuses: dict[str, list[TxStatus | None]] = {}
        self.address_utxos: dict[str, list[ExplorerUtxo]] = {}
        self.broadcasts: list[str] = []
        self.status_calls = 0
        self.closed = False

    async def get_tip_height(self) -> int:
        return self.height

    async def get_tip_hash(self) -> str:
        return "ab" * 32

    async def get_tx_status(self, txid: str) -> TxStatus | None:
        """Pops queued statuses; the last one repeats."""
        self.status_calls += 1
        queue = self.tx_statuses.get(txid)
        if not queue:
            return None
        return queue.pop(0) if len(queue) > 1 else queue[0]

    async def get_address_utxos(self, address: str) -> list[ExplorerUtxo]:
        return list(self.address_utxos.get(address, []))

    async def broadcast(self, raw_hex: str) -> str:
        self.broadcasts.append(raw_hex)
        return make_txid(raw_hex)

    async def get_fee_estimates(self) -> dict[int, float]:
        return dict(self.fee_estimates)

    async def close(self) -> None:
        self.closed = True


class FakeValidationNode(ValidationNode):
    def __init__(self):
        self.seals: dict[Outpoint, list[SealBinding]] = {}
        self.contracts: dict[str, ContractInfo] = {}
        self.submitted: list[tuple[PendingClaim, str | None]] = []
        self.claim_errors: list[Exception] = []
        self.invoices: list[tuple[str, int, str, str | None]] = []
        self.lookup_calls = 0
        self.fail_lookup = False
        self.closed = False

    def bind(
        self,
        outpoint: Outpoint,
        contract_id: str,
        ticker: str,
        amount: int | None,
        name: str | None = None,
    ) -> None:
        self.seals.setdefault(outpoint, []).append(
            SealBinding(contract_id=contract_id, ticker=ticker, amount=amount, name=name)
        )

    async def issue_asset(self, request: IssueAssetRequest) -> str:
        contract_id = f"rgb:{make_txid(request.ticker)[:16]}"
        genesis = Outpoint.parse(request.genesis_outpoint)
        self.bind(genesis, contract_id, request.ticker, request.supply, request.name)
        self.contracts[contract_id] = ContractInfo(
            contract_id=contract_id,
            ticker=request.ticker,
            name=request.name,
            supply=request.supply,
            precision=request.precision,
            genesis_outpoint=genesis,
        )
        return contract_id

    async def lookup_seals(self, outpoints: list[Outpoint]) -> dict[Outpoint, list[SealBinding]]:
        self.lookup_calls += 1
        if self.fail_lookup:
            raise NetworkUnavailable("validation node down", url="http://fake-node")
        return {op: list(self.seals[op]) for op in outpoints if op in self.seals}

    async def submit_claim(self, claim: PendingClaim, signature: str | None = None) -> None:
        self.submitted.append((claim, signature))
        if self.claim_errors:
            raise self.claim_errors.pop(0)

    async def get_contract(self, contract_id: str) -> ContractInfo:
        if contract_id not in self.contracts:
            raise ContractNotFound(contract_id)
        return self.contracts[contract_id]

    async def export_genesis(self, contract_id: str) -> str:
        if contract_id not in self.contracts:
            raise ContractNotFound(contract_id)
        return f"/consignments/{contract_id}/genesis.rgb"

    async def generate_invoice(
        self,
        contract_id: str,
        amount: int,
        recipient_address: str,
        recipient_pubkey: str | None = None,
    ) -> str:
        if contract_id not in self.contracts:
            raise ContractNotFound(contract_id)
        self.invoices.append((contract_id, amount, recipient_address, recipient_pubkey))
        return f"{contract_id}/{amount}@{recipient_address}"

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def test_mnemonic() -> str:
    """Test mnemonic (BIP39 test vector)"""
    return (
        "abandon abandon abandon abandon abandon abandon "
        "abandon abandon abandon abandon abandon about"
    )


@pytest.fixture
def fake_engine() -> FakeWalletEngine:
    return FakeWalletEngine()


@pytest.fixture
def fake_explorer() -> FakeExplorer:
    return FakeExplorer()


@pytest.fixture
def fake_node() -> FakeValidationNode:
    return FakeValidationNode()


@pytest.fixture
def claim_store(tmp_path: Path):
    store = ClaimStore(tmp_path / "rgb_claims.db")
    yield store
    store.close()


@pytest.fixture
def asset_registry(tmp_path: Path) -> AssetRegistry:
    return AssetRegistry(tmp_path / "assets.json")


@pytest.fixture
def coordinator(
    fake_engine: FakeWalletEngine,
    fake_explorer: FakeExplorer,
    fake_node: FakeValidationNode,
    claim_store: ClaimStore,
    asset_registry: AssetRegistry,
) -> ReconciliationCoordinator:
    return ReconciliationCoordinator(
        fake_engine,
        fake_explorer,
        fake_node,
        claim_store,
        asset_registry,
        node_private_key="11" * 32,
        confirmation_attempts=3,
        confirmation_delay=0,
    )


@pytest.fixture
def wallet_settings(tmp_path: Path) -> WalletSettings:
    """Settings with a temporary wallets directory and a fast KDF."""
    return WalletSettings(
        network="regtest",
        wallets_dir=tmp_path / "wallets",
        kdf_iterations=1000,
        confirmation_attempts=2,
        confirmation_delay=0,
        gap_limit=2,
    )
