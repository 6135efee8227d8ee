"""
Reconciliation of the Bitcoin UTXO set with the asset seal set.

A sync refreshes the wallet engine, looks up seals for every unspent output
and classifies the result. The classified snapshot and the engine's on-disk
state are only replaced once every step has succeeded. Balances are not part
of a sync: they are computed from live seal data when asked for.

Inbound transfers are tracked as claims in the ClaimStore, independently of
sync. Network calls are never retried here; callers decide when to try again.
"""

from __future__ import annotations

import asyncio

from loguru import logger

from rgbwallet.backends.base import (
    BlockExplorer,
    ContractInfo,
    SignedTransaction,
    TxOutput,
    TxStatus,
    ValidationNode,
    WalletEngine,
)
from rgbwallet.constants import (
    DEFAULT_CONFIRMATION_ATTEMPTS,
    DEFAULT_CONFIRMATION_DELAY,
    FEE_TARGET_MEDIUM,
)
from rgbwallet.errors import (
    InvalidAmount,
    NetworkUnavailable,
    ProtocolError,
    Timeout,
    TxidFormatError,
    UtxoNotFound,
    UtxoOccupied,
    WalletError,
)
from rgbwallet.models import (
    AddressInfo,
    AssetBalance,
    AssetInfo,
    Balance,
    ClaimStatus,
    FeeRate,
    Invoice,
    IssueAssetRequest,
    Keychain,
    OccupiedUtxo,
    Outpoint,
    PendingClaim,
    SpendFilter,
    SyncResult,
    UtxoFilter,
    UtxoOperationResult,
    UtxoRecord,
)
from rgbwallet.storage.assets import AssetRegistry
from rgbwallet.storage.claims import ClaimStore
from rgbwallet.txid import canonicalize
from rgbwallet.wallet.balance import BalanceAggregator, bitcoin_balance
from rgbwallet.wallet.keys import node_public_key, sign_claim
from rgbwallet.wallet.selection import classify, list_utxos, select_for_spend


class ReconciliationCoordinator:
    """Drives sync, spends, issuance and claims for one loaded wallet."""

    def __init__(
        self,
        engine: WalletEngine,
        explorer: BlockExplorer,
        node: ValidationNode,
        claims: ClaimStore,
        registry: AssetRegistry,
        node_private_key: str | None = None,
        confirmation_attempts: int = DEFAULT_CONFIRMATION_ATTEMPTS,
        confirmation_delay: float = DEFAULT_CONFIRMATION_DELAY,
    ):
        self.engine = engine
        self.explorer = explorer
        self.node = node
        self.claims = claims
        self.registry = registry
        self.node_private_key = node_private_key
        self.confirmation_attempts = confirmation_attempts
        self.confirmation_delay = confirmation_delay

        self.balances = BalanceAggregator(node, registry)
        self._snapshot: list[UtxoRecord] = []
        self.last_sync: SyncResult | None = None

    @property
    def snapshot(self) -> list[UtxoRecord]:
        """UTXO records classified by the last successful sync."""
        return list(self._snapshot)

    def _live_outpoints(self) -> list[Outpoint]:
        return [utxo.outpoint for utxo in self.engine.list_unspent()]

    # -- sync and queries ----------------------------------------------------

    async def sync(self) -> SyncResult:
        """
        Refresh the UTXO set and reclassify it.

        Raises:
            NetworkUnavailable: the indexer or the validation node is unreachable;
                the previous snapshot and the engine state, in memory and on
                disk, are kept
        """
        staged = await self.engine.prepare_sync()
        seals = await self.balances.lookup_seals(utxo.outpoint for utxo in staged.utxos)
        records = classify(staged.utxos, seals)

        self.engine.commit_sync(staged)
        self.engine.persist()
        report = staged.report
        self._snapshot = records

        result = SyncResult(
            height=report.height,
            tip_hash=report.tip_hash,
            new_txs=report.new_txs,
            updated_txs=report.updated_txs,
            new_addresses=report.new_addresses,
        )
        self.last_sync = result
        occupied = sum(1 for record in records if record.carries_seals)
        logger.info(
            f"Synced to height {result.height}: {len(records)} UTXOs "
            f"({occupied} carrying seals), {result.new_txs} new txs"
        )
        return result

    async def classify_live(self) -> list[UtxoRecord]:
        """Classify the engine's current unspent set with fresh seal data."""
        utxos = self.engine.list_unspent()
        seals = await self.balances.lookup_seals(utxo.outpoint for utxo in utxos)
        return classify(utxos, seals)

    async def get_balance(self) -> Balance:
        return bitcoin_balance(await self.classify_live())

    async def list_utxos(self, utxo_filter: UtxoFilter | None = None) -> list[UtxoRecord]:
        return list_utxos(await self.classify_live(), utxo_filter)

    async def compute_balances(self) -> list[AssetBalance]:
        return await self.balances.compute_balances(self._live_outpoints())

    async def compute_balance(self, contract_id: str) -> AssetBalance:
        return await self.balances.compute_balance(self._live_outpoints(), contract_id)

    async def get_occupied_utxos(self) -> list[OccupiedUtxo]:
        return await self.balances.get_occupied_utxos(self._live_outpoints())

    async def get_contract_info(self, contract_id: str) -> ContractInfo:
        return await self.node.get_contract(contract_id)

    def get_addresses(self, keychain: Keychain = Keychain.EXTERNAL) -> list[AddressInfo]:
        return self.engine.revealed_addresses(keychain)

    def new_address(self, keychain: Keychain = Keychain.EXTERNAL) -> AddressInfo:
        info = self.engine.reveal_next_address(keychain)
        self.engine.persist()
        return info

    # -- spending ------------------------------------------------------------

    async def resolve_fee_rate(
        self, fee_rate: FeeRate | float | None, target: int = FEE_TARGET_MEDIUM
    ) -> FeeRate:
        """
        Turn a caller-supplied fee rate into a FeeRate.

        With no rate given, the indexer estimate for ``target`` blocks is used
        (the closest target it reports), or the medium preset when the indexer
        has no estimates.
        """
        if isinstance(fee_rate, FeeRate):
            return fee_rate
        if fee_rate is not None:
            return FeeRate(float(fee_rate))

        estimates = await self.explorer.get_fee_estimates()
        positive = {t: rate for t, rate in estimates.items() if rate > 0}
        if not positive:
            logger.debug("No fee estimates from indexer, using medium preset")
            return FeeRate.medium()

        closest = min(positive, key=lambda t: (abs(t - target), t))
        logger.debug(f"Fee estimate for {closest} blocks: {positive[closest]} sat/vB")
        return FeeRate(positive[closest])

    async def _pay(
        self, address: str, amount: int, fee_rate: FeeRate, allow_unconfirmed: bool
    ) -> tuple[SignedTransaction, str]:
        records = await self.classify_live()
        selection = select_for_spend(
            records, amount, fee_rate, SpendFilter(allow_unconfirmed=allow_unconfirmed)
        )

        outputs = [TxOutput(address, amount)]
        if selection.change_value > 0:
            change = self.engine.reveal_next_address(Keychain.INTERNAL)
            outputs.append(TxOutput(change.address, selection.change_value))

        tx = self.engine.build_transaction(selection.outpoints, outputs)
        txid = await self.engine.broadcast(tx)
        self.engine.persist()
        return tx, txid

    async def create_utxo(
        self,
        amount: int,
        fee_rate: FeeRate | float | None = None,
        allow_unconfirmed: bool = False,
        wait_for_confirmation: bool = False,
    ) -> UtxoOperationResult:
        """
        Pay ``amount`` sats to a fresh receive address of this wallet.

        The new output is meant to become a genesis or receive seal. With
        ``wait_for_confirmation`` the call polls until the transaction confirms
        and then syncs, so the returned outpoint is immediately usable.

        Raises:
            InvalidAmount: amount below the dust limit or bad fee rate
            InsufficientFunds: no eligible UTXOs cover amount plus fee
            Timeout: the transaction did not confirm while waiting
        """
        rate = await self.resolve_fee_rate(fee_rate)
        address = self.engine.reveal_next_address(Keychain.EXTERNAL).address
        tx, txid = await self._pay(address, amount, rate, allow_unconfirmed)

        result = _operation_result(tx, txid, address, amount, rate)
        logger.info(f"Created UTXO {result.outpoint} with {amount} sats (fee {tx.fee} sats)")

        if wait_for_confirmation:
            await self.wait_for_confirmation(txid)
            await self.sync()
        return result

    async def send_bitcoin(
        self,
        address: str,
        amount: int,
        fee_rate: FeeRate | float | None = None,
        allow_unconfirmed: bool = False,
    ) -> UtxoOperationResult:
        """Send plain Bitcoin; outputs carrying asset seals are never spent."""
        rate = await self.resolve_fee_rate(fee_rate)
        tx, txid = await self._pay(address, amount, rate, allow_unconfirmed)

        result = _operation_result(tx, txid, address, amount, rate)
        logger.info(f"Sent {amount} sats to {address} in {txid}")
        return result

    async def wait_for_confirmation(
        self, txid: str, attempts: int | None = None, delay: float | None = None
    ) -> TxStatus:
        """
        Poll the indexer until ``txid`` confirms.

        Raises:
            Timeout: still unconfirmed after the last attempt
        """
        txid = canonicalize(txid)
        attempts = attempts if attempts is not None else self.confirmation_attempts
        delay = delay if delay is not None else self.confirmation_delay
        if attempts < 1:
            raise ValueError("attempts must be at least 1")

        for attempt in range(1, attempts + 1):
            status = await self.explorer.get_tx_status(txid)
            if status is not None and status.confirmed:
                logger.info(f"Transaction {txid} confirmed at height {status.block_height}")
                return status

            logger.debug(f"Waiting for {txid} to confirm ({attempt}/{attempts})")
            if attempt < attempts:
                await asyncio.sleep(delay)

        raise Timeout(
            f"Transaction not confirmed after {attempts} attempts", txid=txid, attempts=attempts
        )

    # -- issuance ------------------------------------------------------------

    async def issue_asset(self, request: IssueAssetRequest) -> AssetInfo:
        """
        Issue a new asset whose genesis seal is one of this wallet's UTXOs.

        The asset is registered before its genesis consignment is exported, so
        a failed export can be repeated with ``export_genesis``.

        Raises:
            UtxoNotFound: the genesis outpoint is not in the wallet's unspent set
            UtxoOccupied: the genesis outpoint already carries a seal
        """
        genesis = Outpoint.parse(request.genesis_outpoint)
        if genesis not in set(self._live_outpoints()):
            raise UtxoNotFound(str(genesis))

        existing = (await self.balances.lookup_seals([genesis])).get(genesis)
        if existing:
            raise UtxoOccupied(str(genesis), existing[0].contract_id)

        contract_id = await self.node.issue_asset(request)
        info = AssetInfo(
            contract_id=contract_id,
            ticker=request.ticker,
            name=request.name,
            supply=request.supply,
            precision=request.precision,
            genesis_txid=genesis.txid,
            genesis_vout=genesis.vout,
        )
        self.registry.add(info)
        logger.info(
            f"Issued {request.supply} {request.ticker} as {contract_id} on genesis {genesis}"
        )
        await self.export_genesis(contract_id)
        return info

    async def export_genesis(self, contract_id: str) -> str:
        """
        Export the genesis consignment of an asset issued by this wallet.

        Raises:
            AssetNotFound: the asset was not issued by this wallet
        """
        self.registry.get(contract_id)
        reference = await self.node.export_genesis(contract_id)
        if self.claims.track_consignment_file(contract_id, reference, is_genesis=True):
            logger.debug(f"Tracking genesis consignment {reference} for {contract_id}")
        return reference

    async def generate_invoice(self, contract_id: str, amount: int) -> Invoice:
        """
        Create an invoice for receiving ``amount`` units into a fresh address.

        The invoice carries the node identity public key when the wallet has
        one, so the sender can authorize the transfer to it.

        Raises:
            InvalidAmount: amount is not positive
            ContractNotFound: the validation node does not know the contract
        """
        if amount <= 0:
            raise InvalidAmount("Invoice amount must be positive", amount=amount)

        address = self.engine.reveal_next_address(Keychain.EXTERNAL).address
        self.engine.persist()
        pubkey = node_public_key(self.node_private_key) if self.node_private_key else None
        invoice = await self.node.generate_invoice(contract_id, amount, address, pubkey)
        logger.info(f"Generated invoice for {amount} of {contract_id} to {address}")
        return Invoice(
            invoice=invoice,
            contract_id=contract_id,
            amount=amount,
            recipient_address=address,
            recipient_pubkey=pubkey,
        )

    # -- claims --------------------------------------------------------------

    def _find_received_outpoint(self, witness_id: str, recipient_address: str) -> Outpoint | None:
        """Unspent output paying ``recipient_address``, preferring the witness transaction."""
        try:
            witness_txid = canonicalize(witness_id)
        except TxidFormatError:
            witness_txid = None

        matches = sorted(
            utxo.outpoint
            for utxo in self.engine.list_unspent()
            if utxo.address == recipient_address
        )
        for outpoint in matches:
            if outpoint.txid == witness_txid:
                return outpoint
        return matches[0] if matches else None

    async def accept_transfer(
        self,
        witness_id: str,
        recipient_address: str,
        expected_vout: int,
        contract_id: str,
        consignment_reference: str,
        actual_outpoint: Outpoint | str | None = None,
    ) -> PendingClaim:
        """
        Record an inbound transfer as a pending claim and try to claim it.

        The receiving outpoint is taken from ``actual_outpoint`` or looked up
        among the wallet's unspent outputs paying ``recipient_address``. A claim
        whose output is not in the wallet yet stays pending and is not sent to
        the node.

        Returns:
            The claim after the attempt: claimed, failed, or still pending

        Raises:
            DuplicateClaim: the witness was already recorded for this contract
            NetworkUnavailable: the node is unreachable; the claim stays pending
        """
        if isinstance(actual_outpoint, str):
            actual_outpoint = Outpoint.parse(actual_outpoint)

        claim_id = self.claims.insert_pending_claim(
            PendingClaim(
                witness_id=witness_id,
                recipient_address=recipient_address,
                expected_vout=expected_vout,
                contract_id=contract_id,
                consignment_reference=consignment_reference,
                actual_txid=actual_outpoint.txid if actual_outpoint else None,
                actual_vout=actual_outpoint.vout if actual_outpoint else None,
            )
        )
        if self.claims.track_consignment_file(contract_id, consignment_reference):
            logger.debug(f"Tracking consignment {consignment_reference} for {contract_id}")

        return await self._attempt_claim(self.claims.get_claim(claim_id))

    async def _attempt_claim(self, claim: PendingClaim) -> PendingClaim:
        if claim.id is None:
            raise ProtocolError("Claim has not been stored", witness_id=claim.witness_id)

        outpoint = claim.actual_outpoint
        if outpoint is None:
            outpoint = self._find_received_outpoint(claim.witness_id, claim.recipient_address)
            if outpoint is None:
                logger.warning(
                    f"Claim {claim.id} left pending: no output to {claim.recipient_address} yet"
                )
                return claim
            claim = self.claims.record_claim_outpoint(claim.id, outpoint)

        signature = None
        if self.node_private_key:
            signature = sign_claim(self.node_private_key, claim.witness_id, outpoint)

        try:
            await self.node.submit_claim(claim, signature)
        except UtxoNotFound as e:
            logger.warning(f"Claim {claim.id} left pending: {e}")
            return claim
        except NetworkUnavailable:
            logger.warning(f"Claim {claim.id} left pending: validation node unreachable")
            raise
        except WalletError as e:
            return self.claims.update_claim_status(claim.id, ClaimStatus.FAILED, str(e))

        return self.claims.mark_claim_completed(claim.id)

    async def retry_pending_claims(self, contract_id: str | None = None) -> list[PendingClaim]:
        """Attempt every pending claim again, oldest first."""
        pending = self.claims.get_pending_claims(contract_id)
        if pending:
            logger.info(f"Retrying {len(pending)} pending claims")

        results = []
        for claim in pending:
            results.append(await self._attempt_claim(claim))
        return results


def _operation_result(
    tx: SignedTransaction, txid: str, address: str, amount: int, rate: FeeRate
) -> UtxoOperationResult:
    vout = tx.vout_for(address)
    if vout is None:
        raise ProtocolError("Transaction does not pay the requested address", txid=txid)
    return UtxoOperationResult(
        txid=txid,
        outpoint=Outpoint(txid, vout),
        amount=amount,
        fee=tx.fee,
        fee_rate=rate.sat_per_vb,
    )
