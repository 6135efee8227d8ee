"""
Key derivation, the Taproot wallet engine, UTXO classification and balances.
"""
