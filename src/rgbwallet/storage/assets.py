"""
Registry of assets issued by a wallet, stored as ``assets.json`` in the
wallet directory.
"""

from __future__ import annotations

from pathlib import Path

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from rgbwallet.constants import ASSETS_FILE
from rgbwallet.errors import AssetNotFound, StorageError
from rgbwallet.models import AssetInfo


class AssetRegistryFile(BaseModel):
    version: int = 1
    assets: list[AssetInfo] = Field(default_factory=list)


class AssetRegistry:
    def __init__(self, path: Path):
        self.path = path

    @classmethod
    def for_wallet_dir(cls, wallet_dir: Path) -> AssetRegistry:
        return cls(wallet_dir / ASSETS_FILE)

    def _read(self) -> AssetRegistryFile:
        if not self.path.exists():
            return AssetRegistryFile()
        try:
            return AssetRegistryFile.model_validate_json(self.path.read_text("utf-8"))
        except OSError as e:
            raise StorageError(f"Cannot read asset registry: {e}", path=str(self.path)) from e
        except ValidationError as e:
            raise StorageError(
                f"Corrupted asset registry: {e.error_count()} errors", path=str(self.path)
            ) from e

    def _write(self, registry: AssetRegistryFile) -> None:
        tmp_path = self.path.with_suffix(".tmp")
        try:
            tmp_path.write_text(registry.model_dump_json(indent=2), "utf-8")
            tmp_path.replace(self.path)
        except OSError as e:
            raise StorageError(f"Cannot write asset registry: {e}", path=str(self.path)) from e

    def add(self, info: AssetInfo) -> None:
        """Record an issued asset, replacing an earlier record for the same contract."""
        registry = self._read()
        registry.assets = [a for a in registry.assets if a.contract_id != info.contract_id]
        registry.assets.append(info)
        self._write(registry)
        logger.debug(f"Registered asset {info.ticker} ({info.contract_id})")

    def get(self, contract_id: str) -> AssetInfo:
        for info in self._read().assets:
            if info.contract_id == contract_id:
                return info
        raise AssetNotFound(contract_id)

    def list_assets(self) -> list[AssetInfo]:
        """Issued assets, oldest first."""
        return sorted(self._read().assets, key=lambda a: (a.issued_at, a.contract_id))
