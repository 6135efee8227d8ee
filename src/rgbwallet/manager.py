"""
Wallet lifecycle and the query surface used by front ends.

A loaded wallet is an explicit ``WalletContext`` handle passed to every
operation; the manager keeps no notion of a "current" wallet. Secrets are
only decrypted in ``load_wallet``: the mnemonic rebuilds the signing keys in
memory and is then dropped.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from rgbwallet.backends.base import BlockExplorer, ContractInfo, ValidationNode
from rgbwallet.backends.esplora import EsploraBackend
from rgbwallet.backends.node import HttpValidationNode
from rgbwallet.config import WalletSettings, get_settings
from rgbwallet.constants import ENGINE_STATE_FILE
from rgbwallet.errors import (
    EncryptionError,
    StorageError,
    WalletError,
    WalletExists,
    WalletNotLoaded,
)
from rgbwallet.models import (
    AddressInfo,
    AssetBalance,
    AssetInfo,
    Balance,
    FeeRate,
    Invoice,
    IssueAssetRequest,
    Keychain,
    OccupiedUtxo,
    Outpoint,
    PendingClaim,
    SyncResult,
    UtxoFilter,
    UtxoOperationResult,
    UtxoRecord,
    utc_now,
)
from rgbwallet.reconcile import ReconciliationCoordinator
from rgbwallet.storage.assets import AssetRegistry
from rgbwallet.storage.claims import ClaimStore, ConsignmentFile
from rgbwallet.storage.encryption import decrypt_secret, encrypt_secret
from rgbwallet.storage.filesystem import EncryptedWalletKeys, WalletFileStore, WalletMetadata
from rgbwallet.wallet.engine import DescriptorWallet
from rgbwallet.wallet.keys import derive_key_material, generate_mnemonic, validate_mnemonic

ExplorerFactory = Callable[[WalletSettings], BlockExplorer]
NodeFactory = Callable[[WalletSettings], ValidationNode]


def default_explorer(settings: WalletSettings) -> BlockExplorer:
    return EsploraBackend(settings.resolved_esplora_url(), timeout=settings.request_timeout)


def default_node(settings: WalletSettings) -> ValidationNode:
    return HttpValidationNode(settings.node_url, timeout=settings.request_timeout)


@dataclass
class WalletContext:
    """Handle to a loaded wallet. Invalid once closed."""

    name: str
    network: str
    wallet_dir: Path
    metadata: WalletMetadata
    node_public_key: str
    coordinator: ReconciliationCoordinator
    claims: ClaimStore
    registry: AssetRegistry
    closed: bool = False

    def ensure_open(self) -> ReconciliationCoordinator:
        if self.closed:
            raise WalletNotLoaded(self.name)
        return self.coordinator


class WalletManager:
    def __init__(
        self,
        settings: WalletSettings | None = None,
        explorer_factory: ExplorerFactory = default_explorer,
        node_factory: NodeFactory = default_node,
    ):
        self.settings = settings or get_settings()
        self.store = WalletFileStore(self.settings.wallets_dir)
        self.explorer_factory = explorer_factory
        self.node_factory = node_factory
        self._open: dict[str, WalletContext] = {}

    # -- lifecycle -----------------------------------------------------------

    def _store_wallet(self, name: str, mnemonic: str, password: str) -> WalletMetadata:
        if not password:
            raise EncryptionError("Password cannot be empty")
        if self.store.exists(name):
            raise WalletExists(name)

        network = self.settings.network
        iterations = self.settings.kdf_iterations
        material = derive_key_material(mnemonic, network)
        keys = EncryptedWalletKeys(
            encrypted_mnemonic=encrypt_secret(mnemonic, password, iterations),
            descriptor=material.descriptor.external,
            change_descriptor=material.descriptor.internal,
            node_public_key=material.node_public_key,
            encrypted_node_private_key=encrypt_secret(
                material.node_private_key, password, iterations
            ),
        )
        metadata = WalletMetadata(
            name=name,
            network=network,
            first_address=material.descriptor.account_key.derive("m/0/0").get_address(network),
        )
        self.store.create(metadata, keys)
        logger.info(f"Stored wallet '{name}' on {network}")
        return metadata

    def create_wallet(self, name: str, password: str) -> str:
        """
        Create a wallet from a fresh 12-word mnemonic.

        Returns:
            The mnemonic. It is not shown again; only its encrypted form is kept.
        """
        mnemonic = generate_mnemonic()
        self._store_wallet(name, mnemonic, password)
        return mnemonic

    def import_wallet(self, name: str, mnemonic: str, password: str) -> WalletMetadata:
        """
        Create a wallet from an existing mnemonic.

        Raises:
            MnemonicError: wrong word count, unknown word or bad checksum
            WalletExists: a wallet with this name already exists
        """
        return self._store_wallet(name, validate_mnemonic(mnemonic), password)

    def list_wallets(self) -> list[WalletMetadata]:
        return self.store.list_wallets()

    def delete_wallet(self, name: str) -> None:
        if name in self._open:
            raise WalletError("Close the wallet before deleting it", wallet=name)
        self.store.delete(name)

    async def load_wallet(self, name: str, password: str) -> WalletContext:
        """
        Decrypt a wallet and open its engine, claim store and backends.

        Raises:
            WalletNotFound: no wallet with this name
            EncryptionError: wrong password or tampered key file
            StorageError: wallet files unreadable, or for another network
        """
        if name in self._open:
            raise WalletError("Wallet is already loaded", wallet=name)

        metadata = self.store.load_metadata(name)
        wallet_dir = self.store.wallet_dir(name)
        if metadata.network != self.settings.network:
            raise StorageError(
                f"Wallet belongs to {metadata.network}, not {self.settings.network}",
                path=str(wallet_dir),
            )

        keys = self.store.load_keys(name)
        iterations = self.settings.kdf_iterations
        mnemonic = decrypt_secret(keys.encrypted_mnemonic, password, iterations)
        node_private_key = decrypt_secret(keys.encrypted_node_private_key, password, iterations)

        material = derive_key_material(mnemonic, metadata.network)
        if (
            material.descriptor.external != keys.descriptor
            or material.node_public_key != keys.node_public_key
            or material.node_private_key != node_private_key
        ):
            raise StorageError("Stored keys do not match the wallet mnemonic", path=str(wallet_dir))

        explorer = self.explorer_factory(self.settings)
        node = self.node_factory(self.settings)
        try:
            engine = DescriptorWallet(
                material.descriptor,
                explorer,
                network=metadata.network,
                state_path=wallet_dir / ENGINE_STATE_FILE,
                gap_limit=self.settings.gap_limit,
            )
            claims = ClaimStore.for_wallet_dir(wallet_dir)
        except WalletError:
            await explorer.close()
            await node.close()
            raise

        registry = AssetRegistry.for_wallet_dir(wallet_dir)
        coordinator = ReconciliationCoordinator(
            engine,
            explorer,
            node,
            claims,
            registry,
            node_private_key=node_private_key,
            confirmation_attempts=self.settings.confirmation_attempts,
            confirmation_delay=self.settings.confirmation_delay,
        )
        ctx = WalletContext(
            name=name,
            network=metadata.network,
            wallet_dir=wallet_dir,
            metadata=metadata,
            node_public_key=keys.node_public_key,
            coordinator=coordinator,
            claims=claims,
            registry=registry,
        )
        self._open[name] = ctx
        logger.info(f"Loaded wallet '{name}' ({metadata.network})")
        return ctx

    async def close(self, ctx: WalletContext) -> None:
        """Persist engine state and release the claim store and HTTP clients."""
        coordinator = ctx.ensure_open()
        ctx.closed = True
        self._open.pop(ctx.name, None)
        try:
            coordinator.engine.persist()
        finally:
            ctx.claims.close()
            await coordinator.explorer.close()
            await coordinator.node.close()
        logger.info(f"Closed wallet '{ctx.name}'")

    async def close_all(self) -> None:
        for ctx in list(self._open.values()):
            await self.close(ctx)

    # -- bitcoin -------------------------------------------------------------

    async def sync(self, ctx: WalletContext) -> SyncResult:
        result = await ctx.ensure_open().sync()
        ctx.metadata.last_sync = utc_now()
        self.store.save_metadata(ctx.metadata)
        return result

    async def get_balance(self, ctx: WalletContext) -> Balance:
        return await ctx.ensure_open().get_balance()

    def get_addresses(
        self, ctx: WalletContext, keychain: Keychain = Keychain.EXTERNAL
    ) -> list[AddressInfo]:
        return ctx.ensure_open().get_addresses(keychain)

    def new_address(self, ctx: WalletContext) -> AddressInfo:
        return ctx.ensure_open().new_address()

    async def list_utxos(
        self, ctx: WalletContext, utxo_filter: UtxoFilter | None = None
    ) -> list[UtxoRecord]:
        return await ctx.ensure_open().list_utxos(utxo_filter)

    async def create_utxo(
        self,
        ctx: WalletContext,
        amount: int,
        fee_rate: FeeRate | float | None = None,
        allow_unconfirmed: bool = False,
        wait_for_confirmation: bool = False,
    ) -> UtxoOperationResult:
        return await ctx.ensure_open().create_utxo(
            amount, fee_rate, allow_unconfirmed, wait_for_confirmation
        )

    async def send_bitcoin(
        self,
        ctx: WalletContext,
        address: str,
        amount: int,
        fee_rate: FeeRate | float | None = None,
        allow_unconfirmed: bool = False,
    ) -> UtxoOperationResult:
        return await ctx.ensure_open().send_bitcoin(address, amount, fee_rate, allow_unconfirmed)

    # -- assets --------------------------------------------------------------

    async def issue_asset(self, ctx: WalletContext, request: IssueAssetRequest) -> AssetInfo:
        return await ctx.ensure_open().issue_asset(request)

    def list_assets(self, ctx: WalletContext) -> list[AssetInfo]:
        ctx.ensure_open()
        return ctx.registry.list_assets()

    def get_asset_info(self, ctx: WalletContext, contract_id: str) -> AssetInfo:
        ctx.ensure_open()
        return ctx.registry.get(contract_id)

    async def get_asset_balances(self, ctx: WalletContext) -> list[AssetBalance]:
        return await ctx.ensure_open().compute_balances()

    async def get_asset_balance(self, ctx: WalletContext, contract_id: str) -> AssetBalance:
        return await ctx.ensure_open().compute_balance(contract_id)

    async def get_occupied_utxos(self, ctx: WalletContext) -> list[OccupiedUtxo]:
        return await ctx.ensure_open().get_occupied_utxos()

    async def get_contract_info(self, ctx: WalletContext, contract_id: str) -> ContractInfo:
        return await ctx.ensure_open().get_contract_info(contract_id)

    async def export_genesis(self, ctx: WalletContext, contract_id: str) -> str:
        return await ctx.ensure_open().export_genesis(contract_id)

    async def generate_invoice(self, ctx: WalletContext, contract_id: str, amount: int) -> Invoice:
        return await ctx.ensure_open().generate_invoice(contract_id, amount)

    def list_consignment_files(
        self, ctx: WalletContext, contract_id: str | None = None
    ) -> list[ConsignmentFile]:
        ctx.ensure_open()
        return ctx.claims.list_consignment_files(contract_id)

    # -- claims --------------------------------------------------------------

    async def accept_transfer(
        self,
        ctx: WalletContext,
        witness_id: str,
        recipient_address: str,
        expected_vout: int,
        contract_id: str,
        consignment_reference: str,
        actual_outpoint: Outpoint | str | None = None,
    ) -> PendingClaim:
        return await ctx.ensure_open().accept_transfer(
            witness_id,
            recipient_address,
            expected_vout,
            contract_id,
            consignment_reference,
            actual_outpoint,
        )

    async def retry_pending_claims(
        self, ctx: WalletContext, contract_id: str | None = None
    ) -> list[PendingClaim]:
        return await ctx.ensure_open().retry_pending_claims(contract_id)

    def get_pending_claims(
        self, ctx: WalletContext, contract_id: str | None = None
    ) -> list[PendingClaim]:
        ctx.ensure_open()
        return ctx.claims.get_pending_claims(contract_id)
