"""
Tests for the wallet directory layout and the asset registry.
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest

from rgbwallet.constants import DESCRIPTOR_FILE, KEYS_FILE, METADATA_FILE
from rgbwallet.errors import (
    AssetNotFound,
    InvalidWalletName,
    StorageError,
    WalletExists,
    WalletNotFound,
)
from rgbwallet.models import AssetInfo
from rgbwallet.storage.assets import AssetRegistry
from rgbwallet.storage.filesystem import EncryptedWalletKeys, WalletFileStore, WalletMetadata


def make_keys() -> EncryptedWalletKeys:
    return EncryptedWalletKeys(
        encrypted_mnemonic="aa",
        descriptor="tr(xpub/0/*)#abcdefgh",
        change_descriptor="tr(xpub/1/*)#hgfedcba",
        node_public_key="02" + "11" * 32,
        encrypted_node_private_key="bb",
    )


def make_asset(contract_id: str, issued_at: datetime) -> AssetInfo:
    return AssetInfo(
        contract_id=contract_id,
        ticker="TST",
        name="Test",
        supply=1000,
        precision=0,
        genesis_txid="cc" * 32,
        genesis_vout=0,
        issued_at=issued_at,
    )


@pytest.fixture
def file_store(tmp_path: Path) -> WalletFileStore:
    return WalletFileStore(tmp_path / "wallets")


class TestWalletFileStore:
    """Tests for WalletFileStore."""

    def test_create_writes_files(self, file_store: WalletFileStore) -> None:
        """Keys, metadata and descriptors land in the wallet directory."""
        path = file_store.create(WalletMetadata(name="alice", network="regtest"), make_keys())
        assert (path / KEYS_FILE).exists()
        assert (path / METADATA_FILE).exists()
        lines = (path / DESCRIPTOR_FILE).read_text().splitlines()
        assert lines == ["tr(xpub/0/*)#abcdefgh", "tr(xpub/1/*)#hgfedcba"]
        assert file_store.exists("alice")

    def test_create_twice(self, file_store: WalletFileStore) -> None:
        """Wallet names are unique."""
        file_store.create(WalletMetadata(name="alice", network="regtest"), make_keys())
        with pytest.raises(WalletExists):
            file_store.create(WalletMetadata(name="alice", network="regtest"), make_keys())

    def test_load(self, file_store: WalletFileStore) -> None:
        """Stored metadata and keys read back unchanged."""
        metadata = WalletMetadata(name="alice", network="regtest", first_address="bcrt1pxyz")
        file_store.create(metadata, make_keys())
        assert file_store.load_metadata("alice") == metadata
        assert file_store.load_keys("alice") == make_keys()

    def test_missing_wallet(self, file_store: WalletFileStore) -> None:
        """Unknown wallets raise WalletNotFound."""
        with pytest.raises(WalletNotFound):
            file_store.load_metadata("nobody")
        with pytest.raises(WalletNotFound):
            file_store.delete("nobody")

    @pytest.mark.parametrize("name", ["", "../escape", "a/b", ".hidden", "x" * 65])
    def test_invalid_names(self, file_store: WalletFileStore, name: str) -> None:
        """Names cannot escape the wallets directory."""
        with pytest.raises(InvalidWalletName):
            file_store.wallet_dir(name)

    def test_corrupted_metadata(self, file_store: WalletFileStore) -> None:
        """Unparseable files raise StorageError."""
        path = file_store.create(WalletMetadata(name="alice", network="regtest"), make_keys())
        (path / METADATA_FILE).write_text("{not json")
        with pytest.raises(StorageError):
            file_store.load_metadata("alice")

    def test_list_newest_first(self, file_store: WalletFileStore) -> None:
        """Listings are newest first and skip broken entries."""
        old = datetime(2024, 1, 1, tzinfo=UTC)
        new = datetime(2024, 6, 1, tzinfo=UTC)
        file_store.create(
            WalletMetadata(name="old", network="regtest", created_at=old), make_keys()
        )
        file_store.create(
            WalletMetadata(name="new", network="regtest", created_at=new), make_keys()
        )
        broken = file_store.create(WalletMetadata(name="broken", network="regtest"), make_keys())
        (broken / METADATA_FILE).write_text("[]")

        assert [m.name for m in file_store.list_wallets()] == ["new", "old"]

    def test_list_without_directory(self, tmp_path: Path) -> None:
        """A missing wallets directory lists nothing."""
        assert WalletFileStore(tmp_path / "absent").list_wallets() == []

    def test_save_metadata_and_delete(self, file_store: WalletFileStore) -> None:
        """Metadata updates persist and delete removes the directory."""
        metadata = WalletMetadata(name="alice", network="regtest")
        path = file_store.create(metadata, make_keys())
        metadata.last_sync = datetime(2024, 6, 1, tzinfo=UTC)
        file_store.save_metadata(metadata)
        assert file_store.load_metadata("alice").last_sync == metadata.last_sync

        file_store.delete("alice")
        assert not path.exists()
        assert not file_store.exists("alice")


class TestAssetRegistry:
    """Tests for AssetRegistry."""

    def test_empty(self, asset_registry: AssetRegistry) -> None:
        """A missing file is an empty registry."""
        assert asset_registry.list_assets() == []
        with pytest.raises(AssetNotFound):
            asset_registry.get("rgb:none")

    def test_add_and_get(self, asset_registry: AssetRegistry) -> None:
        """Added assets can be read back by contract id."""
        info = make_asset("rgb:a", datetime(2024, 1, 1, tzinfo=UTC))
        asset_registry.add(info)
        assert asset_registry.get("rgb:a") == info
        assert AssetRegistry(asset_registry.path).get("rgb:a") == info

    def test_oldest_first_and_replace(self, asset_registry: AssetRegistry) -> None:
        """Listings are oldest first and re-adding replaces the record."""
        asset_registry.add(make_asset("rgb:b", datetime(2024, 2, 1, tzinfo=UTC)))
        asset_registry.add(make_asset("rgb:a", datetime(2024, 1, 1, tzinfo=UTC)))
        asset_registry.add(make_asset("rgb:b", datetime(2024, 3, 1, tzinfo=UTC)))

        listed = asset_registry.list_assets()
        assert [a.contract_id for a in listed] == ["rgb:a", "rgb:b"]
        assert listed[1].issued_at == datetime(2024, 3, 1, tzinfo=UTC)

    def test_corrupted(self, asset_registry: AssetRegistry) -> None:
        """A corrupted file raises StorageError."""
        asset_registry.path.write_text('{"assets": 5}')
        with pytest.raises(StorageError):
            asset_registry.list_assets()
