"""
On-disk wallet layout.

    <wallets_dir>/<name>/
        keys.json          encrypted mnemonic and node key, public descriptors
        wallet.json        metadata (name, network, timestamps)
        descriptor.txt     external and internal descriptors, one per line
        engine_state.json  wallet engine state
        assets.json        issued asset registry
        rgb_claims.db      claim database
"""

from __future__ import annotations

import re
import shutil
from datetime import datetime
from pathlib import Path
from typing import TypeVar

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from rgbwallet.constants import DESCRIPTOR_FILE, KEYS_FILE, METADATA_FILE
from rgbwallet.errors import InvalidWalletName, StorageError, WalletExists, WalletNotFound
from rgbwallet.models import utc_now

ModelT = TypeVar("ModelT", bound=BaseModel)

WALLET_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,63}$")


class WalletMetadata(BaseModel):
    """Non-sensitive wallet information, readable without a password."""

    name: str
    network: str
    created_at: datetime = Field(default_factory=utc_now)
    last_sync: datetime | None = None
    first_address: str | None = None


class EncryptedWalletKeys(BaseModel):
    encrypted_mnemonic: str
    descriptor: str
    change_descriptor: str
    node_public_key: str
    encrypted_node_private_key: str


class WalletFileStore:
    """Reads and writes wallet directories under one base directory."""

    def __init__(self, wallets_dir: Path):
        self.wallets_dir = Path(wallets_dir).expanduser()

    def wallet_dir(self, name: str) -> Path:
        if not WALLET_NAME_PATTERN.match(name):
            raise InvalidWalletName(name)
        return self.wallets_dir / name

    def exists(self, name: str) -> bool:
        return (self.wallet_dir(name) / METADATA_FILE).exists()

    def _write_json(self, path: Path, model: BaseModel) -> None:
        tmp_path = path.with_suffix(".tmp")
        try:
            tmp_path.write_text(model.model_dump_json(indent=2), "utf-8")
            tmp_path.replace(path)
        except OSError as e:
            raise StorageError(f"Cannot write {path.name}: {e}", path=str(path)) from e

    def _read_model(self, path: Path, model_type: type[ModelT]) -> ModelT:
        try:
            return model_type.model_validate_json(path.read_text("utf-8"))
        except OSError as e:
            raise StorageError(f"Cannot read {path.name}: {e}", path=str(path)) from e
        except ValidationError as e:
            raise StorageError(
                f"Corrupted {path.name}: {e.error_count()} errors", path=str(path)
            ) from e

    def create(self, metadata: WalletMetadata, keys: EncryptedWalletKeys) -> Path:
        """
        Create a wallet directory and write its key, metadata and descriptor files.

        Raises:
            WalletExists: the directory already exists
            StorageError: the files could not be written
        """
        wallet_path = self.wallet_dir(metadata.name)
        if wallet_path.exists():
            raise WalletExists(metadata.name)

        try:
            wallet_path.mkdir(parents=True)
        except OSError as e:
            raise StorageError(f"Cannot create wallet directory: {e}", path=str(wallet_path)) from e

        self._write_json(wallet_path / KEYS_FILE, keys)
        self._write_json(wallet_path / METADATA_FILE, metadata)
        descriptor_path = wallet_path / DESCRIPTOR_FILE
        try:
            descriptor_path.write_text(f"{keys.descriptor}\n{keys.change_descriptor}\n", "utf-8")
        except OSError as e:
            raise StorageError(f"Cannot write descriptor: {e}", path=str(descriptor_path)) from e

        logger.info(f"Created wallet directory {wallet_path}")
        return wallet_path

    def load_metadata(self, name: str) -> WalletMetadata:
        wallet_path = self.wallet_dir(name)
        if not (wallet_path / METADATA_FILE).exists():
            raise WalletNotFound(name)
        return self._read_model(wallet_path / METADATA_FILE, WalletMetadata)

    def load_keys(self, name: str) -> EncryptedWalletKeys:
        wallet_path = self.wallet_dir(name)
        if not wallet_path.exists():
            raise WalletNotFound(name)
        return self._read_model(wallet_path / KEYS_FILE, EncryptedWalletKeys)

    def save_metadata(self, metadata: WalletMetadata) -> None:
        wallet_path = self.wallet_dir(metadata.name)
        if not wallet_path.exists():
            raise WalletNotFound(metadata.name)
        self._write_json(wallet_path / METADATA_FILE, metadata)

    def list_wallets(self) -> list[WalletMetadata]:
        """Metadata of every wallet, newest first. Unreadable entries are skipped."""
        if not self.wallets_dir.exists():
            return []

        wallets = []
        for path in sorted(self.wallets_dir.iterdir()):
            metadata_path = path / METADATA_FILE
            if not path.is_dir() or not metadata_path.exists():
                continue
            try:
                metadata = self._read_model(metadata_path, WalletMetadata)
            except StorageError as e:
                logger.warning(f"Skipping wallet at {path}: {e}")
                continue
            wallets.append(metadata)

        wallets.sort(key=lambda m: m.created_at, reverse=True)
        return wallets

    def delete(self, name: str) -> None:
        """Remove a wallet directory and everything in it."""
        wallet_path = self.wallet_dir(name)
        if not wallet_path.exists():
            raise WalletNotFound(name)
        try:
            shutil.rmtree(wallet_path)
        except OSError as e:
            raise StorageError(f"Cannot delete wallet: {e}", path=str(wallet_path)) from e
        logger.info(f"Deleted wallet {name}")
