"""
Wallet error taxonomy.

Every error carries the identifiers needed to act on it (outpoint, contract id,
witness id, claim id) as attributes, and repeats them in its message.
"""

from __future__ import annotations

from typing import Any


class WalletError(Exception):
    """Base exception for all wallet errors."""

    def __init__(self, message: str, **context: Any) -> None:
        self.context = {key: value for key, value in context.items() if value is not None}
        for key, value in context.items():
            setattr(self, key, value)
        if self.context:
            details = ", ".join(f"{key}={value}" for key, value in self.context.items())
            message = f"{message} ({details})"
        super().__init__(message)


class StorageError(WalletError):
    """Raised when a backing file cannot be opened, queried or migrated."""

    def __init__(self, message: str, *, path: str | None = None, **context: Any) -> None:
        super().__init__(message, path=path, **context)


class EncryptionError(WalletError):
    """Raised on a wrong password, tampered ciphertext or malformed input."""

    pass


class NetworkUnavailable(WalletError):
    """Raised when the indexer or the validation node cannot be reached or is overloaded."""

    def __init__(
        self, message: str, *, url: str | None = None, status_code: int | None = None
    ) -> None:
        super().__init__(message, url=url, status_code=status_code)


class RemoteError(WalletError):
    """Raised when a remote service refuses a request with a client error status."""

    def __init__(
        self, message: str, *, url: str, status_code: int, reason: str | None = None
    ) -> None:
        super().__init__(message, url=url, status_code=status_code)
        self.reason = reason


class Timeout(WalletError):
    """Raised when a bounded polling loop runs out of attempts."""

    def __init__(
        self, message: str, *, txid: str | None = None, attempts: int | None = None
    ) -> None:
        super().__init__(message, txid=txid, attempts=attempts)


class TxidFormatError(WalletError):
    """Raised for a malformed or inconsistently-cased transaction id."""

    def __init__(self, message: str, *, raw: str | None = None) -> None:
        super().__init__(message, raw=raw)


class ContractNotFound(WalletError):
    """Raised when no seal for a contract is bound to any wallet UTXO."""

    def __init__(self, contract_id: str) -> None:
        super().__init__("Contract not found", contract_id=contract_id)


class AssetNotFound(WalletError):
    """Raised when no issued-asset record exists for a contract."""

    def __init__(self, contract_id: str) -> None:
        super().__init__("Asset not found in registry", contract_id=contract_id)


class DuplicateClaim(WalletError):
    """Raised when a claim for the same witness and contract already exists."""

    def __init__(self, witness_id: str, contract_id: str) -> None:
        super().__init__("Claim already exists", witness_id=witness_id, contract_id=contract_id)


class ClaimNotFound(WalletError):
    def __init__(self, claim_id: int) -> None:
        super().__init__("Claim not found", claim_id=claim_id)


class InvalidTransition(WalletError):
    """Raised when a claim status change is not allowed from its current state."""

    def __init__(
        self,
        message: str,
        *,
        claim_id: int | None = None,
        current: str | None = None,
        requested: str | None = None,
    ) -> None:
        super().__init__(message, claim_id=claim_id, current=current, requested=requested)


class InsufficientFunds(WalletError):
    """Raised when no combination of eligible UTXOs covers the target plus fee."""

    def __init__(self, needed: int, available: int) -> None:
        self.shortfall = needed - available
        super().__init__(
            f"Insufficient funds: need {needed} sats, have {available} sats",
            needed=needed,
            available=available,
            shortfall=self.shortfall,
        )


class InvalidAmount(WalletError):
    pass


class UtxoNotFound(WalletError):
    """Raised when an outpoint is not part of the wallet's UTXO set."""

    def __init__(self, outpoint: str, message: str = "UTXO not found in wallet") -> None:
        super().__init__(message, outpoint=outpoint)


class WalletNotFound(WalletError):
    def __init__(self, name: str) -> None:
        super().__init__("Wallet not found", wallet=name)


class WalletExists(WalletError):
    def __init__(self, name: str) -> None:
        super().__init__("Wallet already exists", wallet=name)


class WalletNotLoaded(WalletError):
    def __init__(self, name: str | None = None) -> None:
        super().__init__("Wallet is not loaded", wallet=name)


class BalanceMismatch(WalletError):
    """Raised when an asset total disagrees with the sum of its UTXO balances."""

    def __init__(self, contract_id: str, total: int, computed: int) -> None:
        super().__init__(
            "Asset balance total does not match per-UTXO amounts",
            contract_id=contract_id,
            total=total,
            computed=computed,
        )


class ProtocolError(WalletError):
    """Raised when a remote service answers with data the wallet did not ask for."""

    pass


class ClaimRejected(WalletError):
    """Raised when the validation node refuses a consignment claim."""

    def __init__(self, message: str, *, witness_id: str, contract_id: str) -> None:
        super().__init__(message, witness_id=witness_id, contract_id=contract_id)


class UtxoOccupied(WalletError):
    """Raised when an outpoint already carries an asset seal."""

    def __init__(self, outpoint: str, contract_id: str | None = None) -> None:
        super().__init__(
            "UTXO already carries an asset seal", outpoint=outpoint, contract_id=contract_id
        )


class MnemonicError(WalletError):
    """Raised for a mnemonic with a bad word count, unknown word or checksum."""

    pass


class InvalidWalletName(WalletError):
    def __init__(self, name: str) -> None:
        super().__init__("Invalid wallet name", wallet=name)
