"""
Per-wallet persistence: claims, assets, encrypted keys and the directory layout.
"""
