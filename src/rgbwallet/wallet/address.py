"""
Bitcoin address utilities: bech32/bech32m (BIP173/BIP350) and BIP86
key-path Taproot outputs (BIP341).
"""

from __future__ import annotations

import hashlib

from coincurve import PrivateKey, PublicKey

from rgbwallet.wallet.bip32 import SECP256K1_N

CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
BECH32_CONST = 1
BECH32M_CONST = 0x2BC830A3

NETWORK_HRP = {
    "mainnet": "bc",
    "testnet": "tb",
    "signet": "tb",
    "regtest": "bcrt",
}


def bech32_polymod(values: list[int]) -> int:
    """Bech32 checksum polymod"""
    gen = [0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3]
    chk = 1
    for v in values:
        b = chk >> 25
        chk = (chk & 0x1FFFFFF) << 5 ^ v
        for i in range(5):
            chk ^= gen[i] if ((b >> i) & 1) else 0
    return chk


def bech32_hrp_expand(hrp: str) -> list[int]:
    """Expand HRP for bech32"""
    return [ord(x) >> 5 for x in hrp] + [0] + [ord(x) & 31 for x in hrp]


def bech32_create_checksum(hrp: str, data: list[int], const: int) -> list[int]:
    values = bech32_hrp_expand(hrp) + data
    polymod = bech32_polymod(values + [0, 0, 0, 0, 0, 0]) ^ const
    return [(polymod >> 5 * (5 - i)) & 31 for i in range(6)]


def bech32_encode(hrp: str, data: list[int], const: int = BECH32_CONST) -> str:
    combined = data + bech32_create_checksum(hrp, data, const)
    return hrp + "1" + "".join([CHARSET[d] for d in combined])


def bech32_decode(address: str) -> tuple[str, list[int], int]:
    """
    Decode a bech32 or bech32m string.

    Returns:
        (hrp, data without checksum, checksum constant)
    """
    if address.lower() != address and address.upper() != address:
        raise ValueError("Mixed-case bech32 string")
    address = address.lower()

    pos = address.rfind("1")
    if pos < 1 or pos + 7 > len(address) or len(address) > 90:
        raise ValueError("Invalid bech32 separator position or length")
    if any(ord(c) < 33 or ord(c) > 126 for c in address):
        raise ValueError("Invalid bech32 character")

    hrp = address[:pos]
    try:
        data = [CHARSET.index(c) for c in address[pos + 1 :]]
    except ValueError as e:
        raise ValueError("Invalid bech32 data character") from e

    const = bech32_polymod(bech32_hrp_expand(hrp) + data)
    if const not in (BECH32_CONST, BECH32M_CONST):
        raise ValueError("Invalid bech32 checksum")
    return hrp, data[:-6], const


def convertbits(data: bytes | list[int], frombits: int, tobits: int, pad: bool = True) -> list[int]:
    """Convert between bit groups"""
    acc = 0
    bits = 0
    ret = []
    maxv = (1 << tobits) - 1
    max_acc = (1 << (frombits + tobits - 1)) - 1

    for value in data:
        if value < 0 or value >> frombits:
            raise ValueError("Invalid bits")
        acc = ((acc << frombits) | value) & max_acc
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            ret.append((acc >> bits) & maxv)

    if pad:
        if bits:
            ret.append((acc << (tobits - bits)) & maxv)
    elif bits >= frombits or ((acc << (tobits - bits)) & maxv):
        raise ValueError("Invalid bits")

    return ret


def encode_segwit_address(hrp: str, version: int, program: bytes) -> str:
    const = BECH32_CONST if version == 0 else BECH32M_CONST
    return bech32_encode(hrp, [version] + convertbits(program, 8, 5), const)


def decode_segwit_address(address: str, network: str) -> tuple[int, bytes]:
    """
    Decode a segwit address for the given network.

    Returns:
        (witness version, witness program)
    """
    hrp, data, const = bech32_decode(address)
    if hrp != NETWORK_HRP[network]:
        raise ValueError(f"Address {address} is not a {network} address")
    if not data:
        raise ValueError("Empty witness data")

    version = data[0]
    if version > 16:
        raise ValueError(f"Invalid witness version: {version}")
    if (version == 0) != (const == BECH32_CONST):
        raise ValueError("Wrong checksum variant for witness version")

    program = bytes(convertbits(data[1:], 5, 8, pad=False))
    if not 2 <= len(program) <= 40:
        raise ValueError(f"Invalid witness program length: {len(program)}")
    if version == 0 and len(program) not in (20, 32):
        raise ValueError(f"Invalid v0 witness program length: {len(program)}")
    return version, program


def address_to_scriptpubkey(address: str, network: str) -> bytes:
    """scriptPubKey for a segwit address: OP_n <program>"""
    version, program = decode_segwit_address(address, network)
    opcode = 0x00 if version == 0 else 0x50 + version
    return bytes([opcode, len(program)]) + program


def tagged_hash(tag: str, data: bytes) -> bytes:
    """BIP340 tagged hash: SHA256(SHA256(tag) || SHA256(tag) || data)"""
    tag_hash = hashlib.sha256(tag.encode()).digest()
    return hashlib.sha256(tag_hash + tag_hash + data).digest()


def taproot_output_key(pubkey_bytes: bytes) -> bytes:
    """
    BIP86 output key for an internal key without a script tree.

    Args:
        pubkey_bytes: 33-byte compressed or 32-byte x-only internal key

    Returns:
        32-byte x-only output key Q = P + H_TapTweak(P)*G
    """
    if len(pubkey_bytes) == 33:
        x_only = pubkey_bytes[1:]
    elif len(pubkey_bytes) == 32:
        x_only = pubkey_bytes
    else:
        raise ValueError(f"Invalid internal key length: {len(pubkey_bytes)}")

    tweak = tagged_hash("TapTweak", x_only)
    if int.from_bytes(tweak, "big") >= SECP256K1_N:
        raise ValueError("Taproot tweak out of range")

    # Lift x to the point with even y
    internal = PublicKey(b"\x02" + x_only)
    return internal.add(tweak).format(compressed=True)[1:]


def taproot_tweak_private_key(private_key: PrivateKey) -> PrivateKey:
    """Private key for a BIP86 key-path spend of the key's output."""
    secret = int.from_bytes(private_key.secret, "big")
    compressed = private_key.public_key.format(compressed=True)
    if compressed[0] == 0x03:
        secret = SECP256K1_N - secret

    tweak = int.from_bytes(tagged_hash("TapTweak", compressed[1:]), "big")
    tweaked = (secret + tweak) % SECP256K1_N
    if tweaked == 0:
        raise ValueError("Invalid tweaked key")
    return PrivateKey.from_int(tweaked)


def pubkey_to_p2tr_address(pubkey_bytes: bytes, network: str = "mainnet") -> str:
    """BIP86 key-path P2TR address (bech32m, witness v1)."""
    return encode_segwit_address(NETWORK_HRP[network], 1, taproot_output_key(pubkey_bytes))


def pubkey_to_p2tr_script(pubkey_bytes: bytes) -> bytes:
    """P2TR scriptPubKey (OP_1 <32-byte output key>)"""
    return bytes([0x51, 0x20]) + taproot_output_key(pubkey_bytes)


def is_valid_address(address: str, network: str) -> bool:
    try:
        decode_segwit_address(address, network)
    except (ValueError, KeyError):
        return False
    return True
