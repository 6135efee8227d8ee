"""
Mnemonic handling and key material for a wallet.

Mnemonics follow BIP39 with the English word list; the Bitcoin keychains are
BIP86 Taproot descriptors and the validation-node identity key lives on a
separate hardened path.
"""

from __future__ import annotations

import hashlib
import secrets
import unicodedata
from dataclasses import dataclass
from functools import lru_cache
from importlib import resources

from coincurve import PrivateKey

from rgbwallet.constants import BIP86_PURPOSE, MNEMONIC_WORDS, NODE_KEY_PATH
from rgbwallet.errors import MnemonicError
from rgbwallet.models import Outpoint
from rgbwallet.wallet.bip32 import HDKey

VALID_WORD_COUNTS = (12, 15, 18, 21, 24)

DESCRIPTOR_INPUT_CHARSET = (
    "0123456789()[],'/*abcdefgh@:$%{}"
    "IJKLMNOPQRSTUVWXYZ&+-.;<=>?!^_|~"
    'ijklmnopqrstuvwxyzABCDEFGH`#"\\ '
)
DESCRIPTOR_CHECKSUM_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
DESCRIPTOR_GENERATOR = [0xF5DEE51989, 0xA9FDCA3312, 0x1BAE9C5C15, 0x3A36AD0B53, 0x3670CC7A29]


@lru_cache(maxsize=1)
def wordlist() -> list[str]:
    """The 2048-word BIP39 English list."""
    text = resources.files("rgbwallet.wallet").joinpath("wordlist/english.txt").read_text("utf-8")
    words = [line.strip() for line in text.splitlines() if line.strip()]
    if len(words) != 2048:
        raise RuntimeError(f"BIP39 word list has {len(words)} entries")
    return words


def entropy_to_mnemonic(entropy: bytes) -> str:
    if len(entropy) not in (16, 20, 24, 28, 32):
        raise MnemonicError(f"Invalid entropy length: {len(entropy)} bytes")

    checksum_bits = len(entropy) * 8 // 32
    checksum = hashlib.sha256(entropy).digest()[0] >> (8 - checksum_bits)
    bits = (int.from_bytes(entropy, "big") << checksum_bits) | checksum
    word_count = (len(entropy) * 8 + checksum_bits) // 11

    words = wordlist()
    indexes = [(bits >> (11 * (word_count - 1 - i))) & 0x7FF for i in range(word_count)]
    return " ".join(words[index] for index in indexes)


def generate_mnemonic(word_count: int = MNEMONIC_WORDS) -> str:
    """Generate a fresh BIP39 mnemonic from the OS random source."""
    if word_count not in VALID_WORD_COUNTS:
        raise MnemonicError(f"Unsupported word count: {word_count}")
    entropy_bytes = word_count * 11 * 32 // 33 // 8
    return entropy_to_mnemonic(secrets.token_bytes(entropy_bytes))


def normalize_mnemonic(mnemonic: str) -> str:
    return " ".join(unicodedata.normalize("NFKD", mnemonic).lower().split())


def validate_mnemonic(mnemonic: str) -> str:
    """
    Check word count, vocabulary and checksum of a mnemonic.

    Returns:
        The normalized mnemonic

    Raises:
        MnemonicError: if any check fails
    """
    normalized = normalize_mnemonic(mnemonic)
    words = normalized.split()
    if len(words) not in VALID_WORD_COUNTS:
        raise MnemonicError(f"Mnemonic must have 12-24 words, got {len(words)}")

    lookup = {word: index for index, word in enumerate(wordlist())}
    bits = 0
    for position, word in enumerate(words, start=1):
        if word not in lookup:
            raise MnemonicError(f"Word {position} is not in the BIP39 word list")
        bits = (bits << 11) | lookup[word]

    checksum_bits = len(words) * 11 // 33
    entropy_bits = len(words) * 11 - checksum_bits
    entropy = (bits >> checksum_bits).to_bytes(entropy_bits // 8, "big")
    expected = hashlib.sha256(entropy).digest()[0] >> (8 - checksum_bits)
    if bits & ((1 << checksum_bits) - 1) != expected:
        raise MnemonicError("Invalid mnemonic checksum")

    return normalized


def mnemonic_to_seed(mnemonic: str, passphrase: str = "") -> bytes:
    """Convert BIP39 mnemonic to seed."""
    mnemonic_bytes = unicodedata.normalize("NFKD", mnemonic).encode("utf-8")
    salt = unicodedata.normalize("NFKD", "mnemonic" + passphrase).encode("utf-8")
    return hashlib.pbkdf2_hmac("sha512", mnemonic_bytes, salt, 2048, dklen=64)


def descriptor_checksum(descriptor: str) -> str:
    """Bitcoin Core output descriptor checksum (8 characters)."""
    symbols: list[int] = []
    groups: list[int] = []
    for char in descriptor:
        value = DESCRIPTOR_INPUT_CHARSET.find(char)
        if value < 0:
            raise ValueError(f"Invalid descriptor character: {char!r}")
        symbols.append(value & 31)
        groups.append(value >> 5)
        if len(groups) == 3:
            symbols.append(groups[0] * 9 + groups[1] * 3 + groups[2])
            groups = []
    if len(groups) == 1:
        symbols.append(groups[0])
    elif len(groups) == 2:
        symbols.append(groups[0] * 3 + groups[1])

    chk = 1
    for value in symbols + [0] * 8:
        top = chk >> 35
        chk = (chk & 0x7FFFFFFFF) << 5 ^ value
        for i in range(5):
            chk ^= DESCRIPTOR_GENERATOR[i] if ((top >> i) & 1) else 0
    chk ^= 1

    return "".join(DESCRIPTOR_CHECKSUM_CHARSET[(chk >> (5 * (7 - i))) & 31] for i in range(8))


def account_path(network: str) -> str:
    coin_type = 0 if network == "mainnet" else 1
    return f"m/{BIP86_PURPOSE}'/{coin_type}'/0'"


@dataclass(frozen=True)
class TaprootDescriptor:
    """
    A BIP86 single-key Taproot descriptor pair.

    Rendered as ``tr([fingerprint/86'/coin'/0']<account key>/<branch>/*)#checksum``.
    Only the account xpub is rendered; the signing key is rebuilt in memory
    from the decrypted mnemonic.
    """

    account_key: HDKey
    fingerprint: str
    account_path: str
    network: str

    def render(self, branch: int) -> str:
        key = self.account_key.to_xpub(self.network)
        origin = self.account_path.replace("m", self.fingerprint, 1)
        body = f"tr([{origin}]{key}/{branch}/*)"
        return f"{body}#{descriptor_checksum(body)}"

    @property
    def external(self) -> str:
        return self.render(0)

    @property
    def internal(self) -> str:
        return self.render(1)

    @classmethod
    def from_master(cls, master: HDKey, network: str) -> TaprootDescriptor:
        path = account_path(network)
        return cls(
            account_key=master.derive(path),
            fingerprint=master.fingerprint.hex(),
            account_path=path,
            network=network,
        )


@dataclass(frozen=True)
class KeyMaterial:
    descriptor: TaprootDescriptor
    node_public_key: str
    node_private_key: str


def derive_key_material(mnemonic: str, network: str, passphrase: str = "") -> KeyMaterial:
    """Derive the wallet descriptor and the node identity key from a mnemonic."""
    master = HDKey.from_seed(mnemonic_to_seed(mnemonic, passphrase))
    node_key = master.derive(NODE_KEY_PATH)
    return KeyMaterial(
        descriptor=TaprootDescriptor.from_master(master, network),
        node_public_key=node_key.get_public_key_bytes().hex(),
        node_private_key=node_key.get_private_key_bytes().hex(),
    )


def sign_claim(node_private_key: str, witness_id: str, outpoint: Outpoint) -> str:
    """
    Sign a claim of ``witness_id`` into ``outpoint`` with the node identity key.

    The message is ``"<witness_id>:<txid>:<vout>"`` with the canonical txid;
    the signature is DER-encoded ECDSA over its SHA256, hex encoded.
    """
    private_key = PrivateKey(bytes.fromhex(node_private_key))
    message = f"{witness_id}:{outpoint}".encode()
    return private_key.sign(message).hex()


def node_public_key(node_private_key: str) -> str:
    """Compressed public key of the node identity key, hex encoded."""
    return PrivateKey(bytes.fromhex(node_private_key)).public_key.format().hex()
