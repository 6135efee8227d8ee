"""
rgbwallet - Bitcoin wallet with RGB asset seal tracking

Keeps the Bitcoin UTXO set and the asset seal set consistent, aggregates
per-asset balances, and tracks inbound asset claims.
"""

__version__ = "0.1.0"

from rgbwallet.config import WalletSettings, get_settings, setup_logging
from rgbwallet.errors import WalletError
from rgbwallet.manager import WalletContext, WalletManager
from rgbwallet.reconcile import ReconciliationCoordinator

__all__ = [
    "ReconciliationCoordinator",
    "WalletContext",
    "WalletError",
    "WalletManager",
    "WalletSettings",
    "get_settings",
    "setup_logging",
]
