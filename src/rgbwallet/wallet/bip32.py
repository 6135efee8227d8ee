"""
BIP32 HD key derivation for the wallet.

Account keys are serialized as extended keys (xprv/xpub, tprv/tpub on
test networks) for output descriptors.
"""

from __future__ import annotations

import hashlib
import hmac

from coincurve import PrivateKey, PublicKey

# secp256k1 curve order
SECP256K1_N = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)

HARDENED = 0x80000000

BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"

XPRV_VERSION_MAINNET = bytes.fromhex("0488ade4")
XPRV_VERSION_TESTNET = bytes.fromhex("04358394")
XPUB_VERSION_MAINNET = bytes.fromhex("0488b21e")
XPUB_VERSION_TESTNET = bytes.fromhex("043587cf")


def hash256(data: bytes) -> bytes:
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))"""
    h = hashlib.new("ripemd160")
    h.update(hashlib.sha256(data).digest())
    return h.digest()


def base58_encode(data: bytes) -> str:
    num = int.from_bytes(data, "big")

    result = ""
    while num > 0:
        num, remainder = divmod(num, 58)
        result = BASE58_ALPHABET[remainder] + result

    for byte in data:
        if byte == 0:
            result = BASE58_ALPHABET[0] + result
        else:
            break

    return result


def base58check_encode(payload: bytes) -> str:
    return base58_encode(payload + hash256(payload)[:4])


def parse_path(path: str) -> list[int]:
    """
    Parse a derivation path (e.g., "m/86'/0'/0'/0/0") into child indexes.
    ' or h indicates hardened derivation
    """
    if not path.startswith("m"):
        raise ValueError("Path must start with 'm'")

    indexes = []
    for part in path.split("/")[1:]:
        if not part:
            continue

        hardened = part.endswith("'") or part.endswith("h")
        index_str = part.rstrip("'h")
        if not index_str.isdigit():
            raise ValueError(f"Invalid path component: {part}")
        index = int(index_str)
        if index >= HARDENED:
            raise ValueError(f"Path index out of range: {part}")

        indexes.append(index + HARDENED if hardened else index)
    return indexes


def format_path(indexes: list[int]) -> str:
    parts = ["m"]
    for index in indexes:
        parts.append(f"{index - HARDENED}'" if index >= HARDENED else str(index))
    return "/".join(parts)


class HDKey:
    """
    Hierarchical Deterministic Key for Bitcoin.
    Implements BIP32 private derivation and extended key serialization.
    """

    def __init__(
        self,
        private_key: PrivateKey,
        chain_code: bytes,
        depth: int = 0,
        parent_fingerprint: bytes = b"\x00\x00\x00\x00",
        child_number: int = 0,
    ):
        self._private_key = private_key
        self._public_key = private_key.public_key
        self.chain_code = chain_code
        self.depth = depth
        self.parent_fingerprint = parent_fingerprint
        self.child_number = child_number

    @property
    def private_key(self) -> PrivateKey:
        return self._private_key

    @property
    def public_key(self) -> PublicKey:
        return self._public_key

    @property
    def fingerprint(self) -> bytes:
        """First four bytes of HASH160 of the compressed public key."""
        return hash160(self.get_public_key_bytes())[:4]

    @classmethod
    def from_seed(cls, seed: bytes) -> HDKey:
        """Create master HD key from seed"""
        hmac_result = hmac.new(b"Bitcoin seed", seed, hashlib.sha512).digest()
        key_bytes = hmac_result[:32]
        chain_code = hmac_result[32:]

        private_key = PrivateKey(key_bytes)

        return cls(private_key, chain_code, depth=0)

    def _serialize(self, version: bytes, key_data: bytes) -> str:
        payload = (
            version
            + bytes([self.depth])
            + self.parent_fingerprint
            + self.child_number.to_bytes(4, "big")
            + self.chain_code
            + key_data
        )
        return base58check_encode(payload)

    def to_xprv(self, network: str = "mainnet") -> str:
        version = XPRV_VERSION_MAINNET if network == "mainnet" else XPRV_VERSION_TESTNET
        return self._serialize(version, b"\x00" + self._private_key.secret)

    def to_xpub(self, network: str = "mainnet") -> str:
        version = XPUB_VERSION_MAINNET if network == "mainnet" else XPUB_VERSION_TESTNET
        return self._serialize(version, self.get_public_key_bytes())

    def derive(self, path: str) -> HDKey:
        """
        Derive child key from path notation (e.g., "m/86'/0'/0'/0/0").
        The path is relative to this key.
        """
        key = self
        for index in parse_path(path):
            key = key._derive_child(index)
        return key

    def _derive_child(self, index: int) -> HDKey:
        """Derive a child key at the given index"""
        hardened = index >= HARDENED

        if hardened:
            priv_bytes = self._private_key.secret
            data = b"\x00" + priv_bytes + index.to_bytes(4, "big")
        else:
            pub_bytes = self._public_key.format(compressed=True)
            data = pub_bytes + index.to_bytes(4, "big")

        hmac_result = hmac.new(self.chain_code, data, hashlib.sha512).digest()
        key_offset = hmac_result[:32]
        child_chain = hmac_result[32:]

        parent_key_int = int.from_bytes(self._private_key.secret, "big")
        offset_int = int.from_bytes(key_offset, "big")

        if offset_int >= SECP256K1_N:
            raise ValueError("Invalid child key")

        child_key_int = (parent_key_int + offset_int) % SECP256K1_N

        if child_key_int == 0:
            raise ValueError("Invalid child key")

        child_key_bytes = child_key_int.to_bytes(32, "big")
        child_private_key = PrivateKey(child_key_bytes)

        return HDKey(
            child_private_key,
            child_chain,
            depth=self.depth + 1,
            parent_fingerprint=self.fingerprint,
            child_number=index,
        )

    def get_private_key_bytes(self) -> bytes:
        """Get private key as 32 bytes"""
        return self._private_key.secret

    def get_public_key_bytes(self, compressed: bool = True) -> bytes:
        """Get public key bytes"""
        return self._public_key.format(compressed=compressed)

    def get_address(self, network: str = "mainnet") -> str:
        """Get P2TR (BIP86 key-path) address for this key"""
        from rgbwallet.wallet.address import pubkey_to_p2tr_address

        return pubkey_to_p2tr_address(self.get_public_key_bytes(), network)
