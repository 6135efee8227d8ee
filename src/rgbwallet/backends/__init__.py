"""
External collaborator backends.

Available backends:
- EsploraBackend: Esplora / mempool.space REST indexer
- HttpValidationNode: contract validation node over HTTP
"""

from rgbwallet.backends.base import (
    BlockExplorer,
    ContractInfo,
    EngineSyncReport,
    EngineUtxo,
    ExplorerUtxo,
    SignedTransaction,
    TxOutput,
    TxStatus,
    ValidationNode,
    WalletEngine,
)
from rgbwallet.backends.esplora import EsploraBackend
from rgbwallet.backends.node import HttpValidationNode

__all__ = [
    "BlockExplorer",
    "ContractInfo",
    "EngineSyncReport",
    "EngineUtxo",
    "EsploraBackend",
    "ExplorerUtxo",
    "HttpValidationNode",
    "SignedTransaction",
    "TxOutput",
    "TxStatus",
    "ValidationNode",
    "WalletEngine",
]
