"""
Configuration management for the RGB wallet.
"""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Literal

from loguru import logger
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from rgbwallet.constants import (
    DEFAULT_CONFIRMATION_ATTEMPTS,
    DEFAULT_CONFIRMATION_DELAY,
    DEFAULT_ESPLORA_URLS,
    DEFAULT_GAP_LIMIT,
    DEFAULT_NODE_URL,
    KDF_ITERATIONS,
)

NetworkName = Literal["mainnet", "testnet", "signet", "regtest"]

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


class WalletSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="RGB_WALLET_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    network: NetworkName = "regtest"

    wallets_dir: Path = Field(
        default_factory=lambda: Path.home() / ".rgb-wallet" / "wallets",
        description="Directory holding one subdirectory per wallet",
    )

    esplora_url: str | None = Field(
        default=None, description="Esplora API base URL (defaults per network)"
    )
    node_url: str = Field(default=DEFAULT_NODE_URL, description="Validation node base URL")

    request_timeout: float = 30.0

    confirmation_attempts: int = DEFAULT_CONFIRMATION_ATTEMPTS
    confirmation_delay: float = DEFAULT_CONFIRMATION_DELAY

    gap_limit: int = DEFAULT_GAP_LIMIT
    kdf_iterations: int = KDF_ITERATIONS

    log_level: str = "INFO"

    @field_validator("request_timeout")
    @classmethod
    def validate_timeout(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("request_timeout must be positive")
        return v

    @field_validator("confirmation_attempts", "gap_limit", "kdf_iterations")
    @classmethod
    def validate_positive_int(cls, v: int) -> int:
        if v < 1:
            raise ValueError("must be at least 1")
        return v

    @field_validator("confirmation_delay")
    @classmethod
    def validate_delay(cls, v: float) -> float:
        if v < 0:
            raise ValueError("confirmation_delay cannot be negative")
        return v

    def resolved_esplora_url(self) -> str:
        if self.esplora_url:
            return self.esplora_url.rstrip("/")
        return DEFAULT_ESPLORA_URLS[self.network]


def get_settings() -> WalletSettings:
    return WalletSettings()


def setup_logging(level: str = "INFO") -> None:
    logger.remove()

    logger.add(
        sys.stderr,
        format=LOG_FORMAT,
        level=level.upper(),
        colorize=True,
    )
