"""
Bitcoin, indexer and storage constants for the RGB wallet.

Vsize weights follow BIP341 key-path spends:
- input: 41 non-witness bytes (164 WU) + 66 witness bytes = 230 WU = 57.5 vB
- output: 8 value + 1 length + 34 script = 43 vB
- overhead: version, locktime, counts (10 vB) + segwit marker/flag (0.5 vB)
"""

from __future__ import annotations

# Standard P2PKH dust limit in Bitcoin Core
STANDARD_DUST_LIMIT = 546  # satoshis

SATS_PER_BTC = 100_000_000

# Transaction size estimates (virtual bytes)
TX_OVERHEAD_VBYTES = 10.5
P2TR_INPUT_VBYTES = 57.5
P2TR_OUTPUT_VBYTES = 43.0

# Fee rate presets (sat/vB)
FEE_RATE_LOW = 1.0
FEE_RATE_MEDIUM = 5.0
FEE_RATE_HIGH = 10.0

# Esplora confirmation targets mapped onto the presets
FEE_TARGET_HIGH = 1
FEE_TARGET_MEDIUM = 3
FEE_TARGET_LOW = 6

# Default Esplora endpoints per network
DEFAULT_ESPLORA_URLS: dict[str, str] = {
    "mainnet": "https://mempool.space/api",
    "testnet": "https://mempool.space/testnet/api",
    "signet": "https://mempool.space/signet/api",
    "regtest": "http://localhost:3002",
}

DEFAULT_NODE_URL = "http://localhost:40403"

# Password-based key derivation for secrets at rest
KDF_ITERATIONS = 600_000
KDF_SALT_SIZE = 16

# Wallet directory layout
KEYS_FILE = "keys.json"
METADATA_FILE = "wallet.json"
DESCRIPTOR_FILE = "descriptor.txt"
ENGINE_STATE_FILE = "engine_state.json"
ASSETS_FILE = "assets.json"
CLAIMS_DB_FILE = "rgb_claims.db"

# BIP86 purpose and the node identity key path
BIP86_PURPOSE = 86
NODE_KEY_PATH = "m/1337'/0'/0'/0/0"
MNEMONIC_WORDS = 12

DEFAULT_GAP_LIMIT = 20

# Bounded confirmation polling
DEFAULT_CONFIRMATION_ATTEMPTS = 30
DEFAULT_CONFIRMATION_DELAY = 2.0  # seconds
