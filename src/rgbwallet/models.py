"""
Wallet data models.

Views recomputed on every query (UTXO records, balances) are dataclasses;
records that are persisted or cross a process boundary use Pydantic.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from rgbwallet.constants import (
    FEE_RATE_HIGH,
    FEE_RATE_LOW,
    FEE_RATE_MEDIUM,
    SATS_PER_BTC,
)
from rgbwallet.errors import BalanceMismatch, InvalidAmount
from rgbwallet.txid import (
    MAX_VOUT,
    TxidSource,
    canonicalize,
    format_outpoint,
    parse_outpoint,
    validate_vout,
)

MAX_ASSET_AMOUNT = 2**64 - 1


def utc_now() -> datetime:
    """Current UTC time truncated to whole seconds (the storage resolution)."""
    return datetime.now(UTC).replace(microsecond=0)


class UtxoStatus(str, Enum):
    AVAILABLE = "available"
    OCCUPIED = "rgb_occupied"
    UNCONFIRMED = "unconfirmed"

    @property
    def display_name(self) -> str:
        return {
            UtxoStatus.AVAILABLE: "Available",
            UtxoStatus.OCCUPIED: "RGB-Occupied",
            UtxoStatus.UNCONFIRMED: "Unconfirmed",
        }[self]


class ClaimStatus(str, Enum):
    PENDING = "pending"
    CLAIMED = "claimed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self != ClaimStatus.PENDING


class Keychain(str, Enum):
    EXTERNAL = "external"
    INTERNAL = "internal"

    @property
    def branch(self) -> int:
        return 0 if self == Keychain.EXTERNAL else 1


@dataclass(frozen=True, order=True)
class Outpoint:
    """A transaction output. The txid is always stored in canonical form."""

    txid: str
    vout: int

    def __post_init__(self) -> None:
        object.__setattr__(self, "txid", canonicalize(self.txid))
        validate_vout(self.vout)

    def __str__(self) -> str:
        return f"{self.txid}:{self.vout}"

    @classmethod
    def parse(cls, value: str) -> Outpoint:
        txid, vout = parse_outpoint(value)
        return cls(txid, vout)

    @classmethod
    def from_internal(
        cls, internal: bytes, vout: int, source: TxidSource = TxidSource.BITCOIN_INTERNAL
    ) -> Outpoint:
        return cls(canonicalize(internal, source), vout)


@dataclass(frozen=True)
class SealBinding:
    """
    An asset seal bound to an outpoint.

    ``amount is None`` is the unresolved outcome: the seal exists but its
    quantity could not be read. It is never the same as zero.
    """

    contract_id: str
    ticker: str
    amount: int | None = None
    name: str | None = None

    @property
    def is_resolved(self) -> bool:
        return self.amount is not None


@dataclass
class UtxoRecord:
    outpoint: Outpoint
    amount_sats: int
    confirmations: int
    status: UtxoStatus
    bound_seals: list[SealBinding] = field(default_factory=list)
    address: str | None = None

    def __post_init__(self) -> None:
        if self.status == UtxoStatus.OCCUPIED and not self.bound_seals:
            raise ValueError(f"Occupied UTXO {self.outpoint} has no seal bindings")
        if self.status == UtxoStatus.AVAILABLE and self.bound_seals:
            raise ValueError(f"Available UTXO {self.outpoint} carries seal bindings")
        if self.status == UtxoStatus.UNCONFIRMED and self.confirmations != 0:
            raise ValueError(f"Unconfirmed UTXO {self.outpoint} has confirmations")

    @property
    def carries_seals(self) -> bool:
        return bool(self.bound_seals)

    @property
    def is_confirmed(self) -> bool:
        return self.confirmations > 0

    @property
    def amount_btc(self) -> float:
        return self.amount_sats / SATS_PER_BTC


@dataclass(frozen=True)
class UtxoBalance:
    outpoint: Outpoint
    amount: int


@dataclass
class AssetBalance:
    contract_id: str
    ticker: str
    name: str
    total: int
    utxo_balances: list[UtxoBalance] = field(default_factory=list)
    unresolved_outpoints: list[Outpoint] = field(default_factory=list)
    precision: int | None = None

    @property
    def is_complete(self) -> bool:
        """True when every bound seal had a resolvable amount."""
        return not self.unresolved_outpoints

    def verify(self) -> None:
        computed = sum(balance.amount for balance in self.utxo_balances)
        if computed != self.total:
            raise BalanceMismatch(self.contract_id, self.total, computed)


@dataclass(frozen=True)
class OccupiedUtxo:
    outpoint: Outpoint
    contract_id: str
    ticker: str
    amount: int | None


@dataclass(frozen=True)
class Balance:
    """Plain Bitcoin balance in satoshis."""

    confirmed: int
    unconfirmed: int
    occupied: int = 0

    @property
    def total(self) -> int:
        return self.confirmed + self.unconfirmed

    @property
    def spendable(self) -> int:
        return self.confirmed - self.occupied

    def is_empty(self) -> bool:
        return self.total == 0


@dataclass(frozen=True)
class AddressInfo:
    index: int
    address: str
    keychain: Keychain = Keychain.EXTERNAL
    used: bool = False


@dataclass(frozen=True)
class UtxoFilter:
    """Read-only listing filter. Never used for coin selection."""

    available_only: bool = False
    rgb_only: bool = False
    confirmed_only: bool = False
    min_amount_sats: int | None = None

    def matches(self, record: UtxoRecord) -> bool:
        if self.available_only and record.status != UtxoStatus.AVAILABLE:
            return False
        if self.rgb_only and not record.carries_seals:
            return False
        if self.confirmed_only and not record.is_confirmed:
            return False
        if self.min_amount_sats is not None and record.amount_sats < self.min_amount_sats:
            return False
        return True


@dataclass(frozen=True)
class SpendFilter:
    allow_unconfirmed: bool = False
    min_amount_sats: int | None = None


@dataclass(frozen=True)
class FeeRate:
    sat_per_vb: float

    def __post_init__(self) -> None:
        if not self.sat_per_vb > 0 or math.isinf(self.sat_per_vb):
            raise InvalidAmount("Fee rate must be positive", fee_rate=self.sat_per_vb)

    @classmethod
    def low(cls) -> FeeRate:
        return cls(FEE_RATE_LOW)

    @classmethod
    def medium(cls) -> FeeRate:
        return cls(FEE_RATE_MEDIUM)

    @classmethod
    def high(cls) -> FeeRate:
        return cls(FEE_RATE_HIGH)

    def fee_for(self, vsize: float) -> int:
        return math.ceil(self.sat_per_vb * vsize)


@dataclass
class CoinSelection:
    utxos: list[UtxoRecord]
    total_value: int
    change_value: int
    fee: int

    @property
    def outpoints(self) -> list[Outpoint]:
        return [utxo.outpoint for utxo in self.utxos]


@dataclass(frozen=True)
class UtxoOperationResult:
    txid: str
    outpoint: Outpoint
    amount: int
    fee: int
    fee_rate: float


@dataclass(frozen=True)
class Invoice:
    """Request for an asset transfer into one of this wallet's addresses."""

    invoice: str
    contract_id: str
    amount: int
    recipient_address: str
    recipient_pubkey: str | None = None


@dataclass(frozen=True)
class SyncResult:
    height: int
    tip_hash: str
    new_txs: int = 0
    updated_txs: int = 0
    new_addresses: int = 0

    def has_updates(self) -> bool:
        return self.new_txs > 0 or self.updated_txs > 0


class PendingClaim(BaseModel):
    """An inbound asset transfer tracked until it is claimed or fails."""

    id: int | None = None
    witness_id: str = Field(..., min_length=1)
    recipient_address: str
    expected_vout: int = Field(..., ge=0, le=MAX_VOUT)
    contract_id: str = Field(..., min_length=1)
    consignment_reference: str
    status: ClaimStatus = ClaimStatus.PENDING
    error: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    claimed_at: datetime | None = None
    actual_txid: str | None = None
    actual_vout: int | None = Field(default=None, ge=0, le=MAX_VOUT)

    @field_validator("actual_txid")
    @classmethod
    def validate_actual_txid(cls, v: str | None) -> str | None:
        # TxidFormatError is not a ValueError, so it propagates unwrapped
        return canonicalize(v) if v is not None else None

    @field_validator("created_at", "claimed_at")
    @classmethod
    def truncate_timestamp(cls, v: datetime | None) -> datetime | None:
        if v is None:
            return None
        if v.tzinfo is None:
            v = v.replace(tzinfo=UTC)
        return v.replace(microsecond=0)

    @property
    def actual_outpoint(self) -> Outpoint | None:
        if self.actual_txid is None or self.actual_vout is None:
            return None
        return Outpoint(self.actual_txid, self.actual_vout)


class IssueAssetRequest(BaseModel):
    ticker: str = Field(..., pattern=r"^[A-Z0-9]{1,8}$")
    name: str = Field(..., min_length=1, max_length=64)
    supply: int = Field(..., gt=0, le=MAX_ASSET_AMOUNT)
    precision: int = Field(default=0, ge=0, le=18)
    genesis_outpoint: str

    @field_validator("genesis_outpoint")
    @classmethod
    def normalize_outpoint(cls, v: str) -> str:
        txid, vout = parse_outpoint(v)
        return format_outpoint(txid, vout)


class AssetInfo(BaseModel):
    """Genesis record of an asset issued by this wallet."""

    contract_id: str
    ticker: str
    name: str
    supply: int
    precision: int
    genesis_txid: str
    genesis_vout: int
    issued_at: datetime = Field(default_factory=utc_now)

    @property
    def genesis_outpoint(self) -> Outpoint:
        return Outpoint(self.genesis_txid, self.genesis_vout)
