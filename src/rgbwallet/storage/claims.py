"""
Persistent store for inbound asset claims.

Claims live in a SQLite file inside the wallet directory, mirrored by an
in-memory index keyed by contract id. The index is filled lazily: a
contract's claims are loaded on first access, and the first unfiltered read
loads every contract. Each mutation commits to SQLite and updates the index
while holding one lock, so readers never see the two disagree.

A store instance must be the only writer of its database file.
"""

from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

from loguru import logger

from rgbwallet.constants import CLAIMS_DB_FILE
from rgbwallet.errors import (
    ClaimNotFound,
    DuplicateClaim,
    InvalidTransition,
    StorageError,
)
from rgbwallet.models import ClaimStatus, Outpoint, PendingClaim, utc_now

SCHEMA = """
CREATE TABLE IF NOT EXISTS pending_claims (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    witness_id TEXT NOT NULL,
    recipient_address TEXT NOT NULL,
    expected_vout INTEGER NOT NULL,
    contract_id TEXT NOT NULL,
    consignment_file TEXT NOT NULL,
    status TEXT NOT NULL CHECK (status IN ('pending', 'claimed', 'failed')),
    error TEXT,
    created_at INTEGER NOT NULL,
    claimed_at INTEGER,
    UNIQUE (witness_id, contract_id)
);

CREATE INDEX IF NOT EXISTS idx_pending_claims_status ON pending_claims (status);
CREATE INDEX IF NOT EXISTS idx_pending_claims_contract ON pending_claims (contract_id);
CREATE INDEX IF NOT EXISTS idx_pending_claims_created ON pending_claims (created_at);

CREATE TABLE IF NOT EXISTS consignment_files (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    contract_id TEXT NOT NULL,
    file_path TEXT NOT NULL UNIQUE,
    is_genesis INTEGER NOT NULL DEFAULT 0,
    accepted_at INTEGER NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_consignment_files_contract ON consignment_files (contract_id);
"""

# Columns added after the first schema version: (name, type)
MIGRATED_COLUMNS = [("actual_txid", "TEXT"), ("actual_vout", "INTEGER")]

CLAIM_COLUMNS = (
    "id, witness_id, recipient_address, expected_vout, contract_id, consignment_file, "
    "status, error, created_at, claimed_at, actual_txid, actual_vout"
)


@dataclass(frozen=True)
class ConsignmentFile:
    contract_id: str
    file_path: str
    is_genesis: bool
    accepted_at: datetime


def _to_timestamp(value: datetime | None) -> int | None:
    return int(value.timestamp()) if value is not None else None


def _from_timestamp(value: int | None) -> datetime | None:
    return datetime.fromtimestamp(value, UTC) if value is not None else None


def _order_key(claim: PendingClaim) -> tuple[datetime, int]:
    return claim.created_at, claim.id or 0


def _row_to_claim(row: sqlite3.Row) -> PendingClaim:
    return PendingClaim(
        id=row["id"],
        witness_id=row["witness_id"],
        recipient_address=row["recipient_address"],
        expected_vout=row["expected_vout"],
        contract_id=row["contract_id"],
        consignment_reference=row["consignment_file"],
        status=ClaimStatus(row["status"]),
        error=row["error"],
        created_at=_from_timestamp(row["created_at"]),
        claimed_at=_from_timestamp(row["claimed_at"]),
        actual_txid=row["actual_txid"],
        actual_vout=row["actual_vout"],
    )


class ClaimStore:
    """SQLite-backed claim storage with a read-through cache."""

    def __init__(self, db_path: Path | str):
        self.db_path = Path(db_path)
        self._lock = threading.RLock()
        self._cache: dict[str, list[PendingClaim]] = {}
        self._all_loaded = False

        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(self.db_path))
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._migrate()
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Failed to open claim database: {e}", path=str(self.db_path)) from e

        logger.debug(f"Opened claim store at {self.db_path}")

    @classmethod
    def for_wallet_dir(cls, wallet_dir: Path) -> ClaimStore:
        return cls(wallet_dir / CLAIMS_DB_FILE)

    def _migrate(self) -> None:
        self._conn.executescript(SCHEMA)
        existing = {row["name"] for row in self._conn.execute("PRAGMA table_info(pending_claims)")}
        for name, column_type in MIGRATED_COLUMNS:
            if name not in existing:
                logger.info(f"Migrating claim database: adding column {name}")
                self._conn.execute(f"ALTER TABLE pending_claims ADD COLUMN {name} {column_type}")
        self._conn.commit()

    def _query(self, sql: str, params: tuple = ()) -> list[sqlite3.Row]:
        try:
            return self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Claim query failed: {e}", path=str(self.db_path)) from e

    # -- cache -------------------------------------------------------------

    def _load_contract(self, contract_id: str) -> list[PendingClaim]:
        rows = self._query(
            f"SELECT {CLAIM_COLUMNS} FROM pending_claims "
            "WHERE contract_id = ? ORDER BY created_at, id",
            (contract_id,),
        )
        claims = [_row_to_claim(row) for row in rows]
        self._cache[contract_id] = claims
        logger.debug(f"Loaded {len(claims)} claims for contract {contract_id} into cache")
        return claims

    def _load_all(self) -> None:
        rows = self._query(f"SELECT {CLAIM_COLUMNS} FROM pending_claims ORDER BY created_at, id")
        cache: dict[str, list[PendingClaim]] = {}
        for row in rows:
            claim = _row_to_claim(row)
            cache.setdefault(claim.contract_id, []).append(claim)
        self._cache = cache
        self._all_loaded = True
        logger.debug(f"Loaded {len(rows)} claims for {len(cache)} contracts into cache")

    def _cached_contract(self, contract_id: str) -> list[PendingClaim]:
        if contract_id in self._cache:
            return self._cache[contract_id]
        if self._all_loaded:
            return []
        return self._load_contract(contract_id)

    def _cache_insert(self, claim: PendingClaim) -> None:
        entry = self._cache.get(claim.contract_id)
        if entry is not None:
            entry.append(claim)
            entry.sort(key=_order_key)
        elif self._all_loaded:
            self._cache[claim.contract_id] = [claim]
        # Otherwise the contract is not cached yet and will be read from disk.

    def _cache_replace(self, claim: PendingClaim) -> None:
        entry = self._cache.get(claim.contract_id)
        if entry is None:
            return
        for index, cached in enumerate(entry):
            if cached.id == claim.id:
                entry[index] = claim
                return

    def invalidate_cache(self) -> None:
        """Drop the in-memory index; the next read rebuilds it from disk."""
        with self._lock:
            self._cache = {}
            self._all_loaded = False
        logger.debug("Claim cache invalidated")

    # -- claims ------------------------------------------------------------

    def insert_pending_claim(self, claim: PendingClaim) -> int:
        """
        Insert a new pending claim.

        Returns:
            The id assigned by the database

        Raises:
            DuplicateClaim: a claim for the same witness and contract exists
            InvalidTransition: the claim is not in the pending state
            StorageError: the database write failed
        """
        if claim.status != ClaimStatus.PENDING:
            raise InvalidTransition(
                "New claims must start as pending",
                claim_id=claim.id,
                requested=claim.status.value,
            )

        stored = claim.model_copy(update={"error": None, "claimed_at": None})
        with self._lock:
            try:
                with self._conn:
                    cursor = self._conn.execute(
                        "INSERT INTO pending_claims (witness_id, recipient_address, expected_vout, "
                        "contract_id, consignment_file, status, error, created_at, claimed_at, "
                        "actual_txid, actual_vout) VALUES (?, ?, ?, ?, ?, ?, NULL, ?, NULL, ?, ?)",
                        (
                            stored.witness_id,
                            stored.recipient_address,
                            stored.expected_vout,
                            stored.contract_id,
                            stored.consignment_reference,
                            ClaimStatus.PENDING.value,
                            _to_timestamp(stored.created_at),
                            stored.actual_txid,
                            stored.actual_vout,
                        ),
                    )
            except sqlite3.IntegrityError as e:
                if "UNIQUE" in str(e):
                    raise DuplicateClaim(claim.witness_id, claim.contract_id) from e
                raise StorageError(f"Failed to insert claim: {e}", path=str(self.db_path)) from e
            except sqlite3.Error as e:
                raise StorageError(f"Failed to insert claim: {e}", path=str(self.db_path)) from e

            claim_id = cursor.lastrowid
            if claim_id is None:
                raise StorageError("Database assigned no claim id", path=str(self.db_path))
            stored = stored.model_copy(update={"id": claim_id})
            self._cache_insert(stored)

        logger.info(
            f"Recorded pending claim {claim_id} for witness {claim.witness_id} "
            f"(contract {claim.contract_id})"
        )
        return claim_id

    def get_pending_claims(self, contract_id: str | None = None) -> list[PendingClaim]:
        """Pending claims for one contract, or for every contract when ``None``."""
        with self._lock:
            if contract_id is None:
                if not self._all_loaded:
                    self._load_all()
                claims = sorted(
                    (claim for entry in self._cache.values() for claim in entry),
                    key=_order_key,
                )
            else:
                claims = self._cached_contract(contract_id)
            return [claim.model_copy() for claim in claims if claim.status == ClaimStatus.PENDING]

    def get_all_claims(self, contract_id: str) -> list[PendingClaim]:
        """All claims for a contract regardless of status, oldest first."""
        with self._lock:
            return [claim.model_copy() for claim in self._cached_contract(contract_id)]

    def get_claim(self, claim_id: int) -> PendingClaim:
        rows = self._query(f"SELECT {CLAIM_COLUMNS} FROM pending_claims WHERE id = ?", (claim_id,))
        if not rows:
            raise ClaimNotFound(claim_id)
        return _row_to_claim(rows[0])

    def mark_claim_completed(self, claim_id: int) -> PendingClaim:
        """Move a pending claim to claimed."""
        return self.update_claim_status(claim_id, ClaimStatus.CLAIMED)

    def update_claim_status(
        self, claim_id: int, status: ClaimStatus | str, error: str | None = None
    ) -> PendingClaim:
        """
        Move a pending claim to a terminal state.

        ``claimed`` sets ``claimed_at`` and requires no error; ``failed``
        requires an error message. Terminal claims never change again.

        Raises:
            ClaimNotFound: unknown id
            InvalidTransition: the claim is not pending, the target is pending or
                unknown, or the error message does not fit the target
        """
        try:
            status = ClaimStatus(status)
        except ValueError as e:
            raise InvalidTransition(
                "Unknown claim status", claim_id=claim_id, requested=str(status)
            ) from e
        if status == ClaimStatus.PENDING:
            raise InvalidTransition(
                "Claims cannot be moved back to pending",
                claim_id=claim_id,
                requested=status.value,
            )
        if status == ClaimStatus.FAILED and not error:
            raise InvalidTransition(
                "A failed claim requires an error message",
                claim_id=claim_id,
                requested=status.value,
            )
        if status == ClaimStatus.CLAIMED and error:
            raise InvalidTransition(
                "A claimed claim cannot carry an error message",
                claim_id=claim_id,
                requested=status.value,
            )

        with self._lock:
            try:
                with self._conn:
                    rows = self._conn.execute(
                        f"SELECT {CLAIM_COLUMNS} FROM pending_claims WHERE id = ?", (claim_id,)
                    ).fetchall()
                    if not rows:
                        raise ClaimNotFound(claim_id)

                    current = _row_to_claim(rows[0])
                    if current.status.is_terminal:
                        raise InvalidTransition(
                            "Claim is already in a terminal state",
                            claim_id=claim_id,
                            current=current.status.value,
                            requested=status.value,
                        )

                    claimed_at = utc_now() if status == ClaimStatus.CLAIMED else None
                    self._conn.execute(
                        "UPDATE pending_claims SET status = ?, error = ?, claimed_at = ? "
                        "WHERE id = ? AND status = ?",
                        (
                            status.value,
                            error,
                            _to_timestamp(claimed_at),
                            claim_id,
                            ClaimStatus.PENDING.value,
                        ),
                    )
            except sqlite3.Error as e:
                raise StorageError(
                    f"Failed to update claim {claim_id}: {e}", path=str(self.db_path)
                ) from e

            updated = current.model_copy(
                update={"status": status, "error": error, "claimed_at": claimed_at}
            )
            self._cache_replace(updated)

        if status == ClaimStatus.CLAIMED:
            logger.info(f"Claim {claim_id} completed (witness {current.witness_id})")
        else:
            logger.warning(f"Claim {claim_id} failed (witness {current.witness_id}): {error}")
        return updated.model_copy()

    def record_claim_outpoint(self, claim_id: int, outpoint: Outpoint) -> PendingClaim:
        """
        Store the receiving outpoint of a pending claim once it is known.

        Raises:
            ClaimNotFound: unknown id
            InvalidTransition: the claim is no longer pending
        """
        with self._lock:
            try:
                with self._conn:
                    rows = self._conn.execute(
                        f"SELECT {CLAIM_COLUMNS} FROM pending_claims WHERE id = ?", (claim_id,)
                    ).fetchall()
                    if not rows:
                        raise ClaimNotFound(claim_id)

                    current = _row_to_claim(rows[0])
                    if current.status != ClaimStatus.PENDING:
                        raise InvalidTransition(
                            "Only pending claims can change their outpoint",
                            claim_id=claim_id,
                            current=current.status.value,
                        )

                    self._conn.execute(
                        "UPDATE pending_claims SET actual_txid = ?, actual_vout = ? WHERE id = ?",
                        (outpoint.txid, outpoint.vout, claim_id),
                    )
            except sqlite3.Error as e:
                raise StorageError(
                    f"Failed to update claim {claim_id}: {e}", path=str(self.db_path)
                ) from e

            updated = current.model_copy(
                update={"actual_txid": outpoint.txid, "actual_vout": outpoint.vout}
            )
            self._cache_replace(updated)

        logger.debug(f"Claim {claim_id} receives at {outpoint}")
        return updated.model_copy()

    def get_claimed_utxos(self, contract_id: str) -> list[Outpoint]:
        """Outpoints recorded on completed claims of a contract."""
        rows = self._query(
            "SELECT actual_txid, actual_vout FROM pending_claims "
            "WHERE contract_id = ? AND status = ? AND actual_txid IS NOT NULL "
            "AND actual_vout IS NOT NULL ORDER BY created_at, id",
            (contract_id, ClaimStatus.CLAIMED.value),
        )
        return [Outpoint(row["actual_txid"], row["actual_vout"]) for row in rows]

    # -- consignment registry ---------------------------------------------

    def track_consignment_file(
        self, contract_id: str, file_path: str, is_genesis: bool = False
    ) -> bool:
        """Register an accepted consignment file, returns False if already tracked."""
        with self._lock:
            try:
                with self._conn:
                    cursor = self._conn.execute(
                        "INSERT OR IGNORE INTO consignment_files "
                        "(contract_id, file_path, is_genesis, accepted_at) VALUES (?, ?, ?, ?)",
                        (contract_id, file_path, int(is_genesis), _to_timestamp(utc_now())),
                    )
            except sqlite3.Error as e:
                raise StorageError(
                    f"Failed to track consignment file: {e}", path=str(self.db_path)
                ) from e
        return cursor.rowcount > 0

    def list_consignment_files(self, contract_id: str | None = None) -> list[ConsignmentFile]:
        if contract_id is None:
            rows = self._query(
                "SELECT contract_id, file_path, is_genesis, accepted_at "
                "FROM consignment_files ORDER BY accepted_at, id"
            )
        else:
            rows = self._query(
                "SELECT contract_id, file_path, is_genesis, accepted_at FROM consignment_files "
                "WHERE contract_id = ? ORDER BY accepted_at, id",
                (contract_id,),
            )
        return [
            ConsignmentFile(
                contract_id=row["contract_id"],
                file_path=row["file_path"],
                is_genesis=bool(row["is_genesis"]),
                accepted_at=datetime.fromtimestamp(row["accepted_at"], UTC),
            )
            for row in rows
        ]

    def close(self) -> None:
        with self._lock:
            self._conn.close()
        logger.debug(f"Closed claim store at {self.db_path}")
