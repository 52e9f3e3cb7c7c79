"""
Bitcoin address and key encoding utilities.

Supports base58check (P2PKH, P2SH, WIF) and bech32/bech32m
(P2WPKH, P2WSH, P2TR) for mainnet and testnet.
"""

import hashlib
from dataclasses import dataclass
from typing import Optional, Tuple

from .errors import ConfigurationError, InvalidAddressError

# Bech32 charset
BECH32_CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"

# Checksum constants (BIP-173 / BIP-350)
BECH32_CONST = 1
BECH32M_CONST = 0x2BC830A3

# Base58 character set
BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"


@dataclass(frozen=True)
class NetworkParams:
    """Address prefixes for a Bitcoin network."""

    name: str
    hrp: str
    p2pkh_version: int
    p2sh_version: int
    wif_version: int


NETWORKS = {
    "mainnet": NetworkParams("mainnet", "bc", 0x00, 0x05, 0x80),
    "testnet": NetworkParams("testnet", "tb", 0x6F, 0xC4, 0xEF),
}


def get_network(name: str) -> NetworkParams:
    """Look up network parameters by name."""
    try:
        return NETWORKS[name]
    except KeyError:
        raise ConfigurationError(f"Unknown Bitcoin network: {name}") from None


def sha256d(data: bytes) -> bytes:
    """Double SHA256 hash."""
    return hashlib.sha256(hashlib.sha256(data).digest()).digest()


def hash160(data: bytes) -> bytes:
    """RIPEMD160(SHA256(data))."""
    r = hashlib.new("ripemd160")
    r.update(hashlib.sha256(data).digest())
    return r.digest()


# ============================================================================
# Bech32 / Bech32m
# ============================================================================


def _bech32_polymod(values: list[int]) -> int:
    """Internal Bech32 polymod calculation."""
    GEN = [0x3B6A57B2, 0x26508E6D, 0x1EA119FA, 0x3D4233DD, 0x2A1462B3]
    chk = 1
    for v in values:
        b = chk >> 25
        chk = ((chk & 0x1FFFFFF) << 5) ^ v
        for i in range(5):
            if (b >> i) & 1:
                chk ^= GEN[i]
    return chk


def _bech32_hrp_expand(hrp: str) -> list[int]:
    """Expand HRP for checksum calculation."""
    return [ord(c) >> 5 for c in hrp] + [0] + [ord(c) & 31 for c in hrp]


def bech32_decode(bech: str) -> Optional[Tuple[str, list[int], int]]:
    """
    Decode a bech32 or bech32m string.

    Returns (hrp, data, checksum_const) or None if invalid.
    """
    if any(ord(c) < 33 or ord(c) > 126 for c in bech):
        return None
    if bech.lower() != bech and bech.upper() != bech:
        return None

    bech = bech.lower()
    pos = bech.rfind("1")
    if pos < 1 or pos + 7 > len(bech) or len(bech) > 90:
        return None

    hrp = bech[:pos]
    data_part = bech[pos + 1 :]
    if not all(c in BECH32_CHARSET for c in data_part):
        return None

    data = [BECH32_CHARSET.index(c) for c in data_part]
    const = _bech32_polymod(_bech32_hrp_expand(hrp) + data)
    if const not in (BECH32_CONST, BECH32M_CONST):
        return None

    return hrp, data[:-6], const


def convertbits(
    data: list[int], frombits: int, tobits: int, pad: bool = True
) -> Optional[list[int]]:
    """Convert between bit sizes."""
    acc = 0
    bits = 0
    ret = []
    maxv = (1 << tobits) - 1
    max_acc = (1 << (frombits + tobits - 1)) - 1

    for value in data:
        if value < 0 or (value >> frombits):
            return None
        acc = ((acc << frombits) | value) & max_acc
        bits += frombits
        while bits >= tobits:
            bits -= tobits
            ret.append((acc >> bits) & maxv)

    if pad:
        if bits:
            ret.append((acc << (tobits - bits)) & maxv)
    elif bits >= frombits or ((acc << (tobits - bits)) & maxv):
        return None

    return ret


def decode_segwit_address(hrp: str, address: str) -> Optional[Tuple[int, bytes]]:
    """
    Decode a segwit address for the given HRP.

    Returns (witness_version, witness_program) or None if invalid.
    """
    result = bech32_decode(address)
    if result is None:
        return None

    got_hrp, data, const = result
    if got_hrp != hrp or not data:
        return None

    version = data[0]
    if version > 16:
        return None

    decoded = _convertbits_program(data[1:])
    if decoded is None:
        return None

    if version == 0 and len(decoded) not in (20, 32):
        return None

    # v0 uses bech32, v1+ uses bech32m
    if (version == 0) != (const == BECH32_CONST):
        return None

    return version, decoded


def _convertbits_program(data: list[int]) -> Optional[bytes]:
    program = convertbits(data, 5, 8, False)
    if program is None or len(program) < 2 or len(program) > 40:
        return None
    return bytes(program)


# ============================================================================
# Base58Check
# ============================================================================


def base58_decode(s: str) -> Optional[bytes]:
    """Decode a Base58 string."""
    num = 0
    for c in s:
        if c not in BASE58_ALPHABET:
            return None
        num = num * 58 + BASE58_ALPHABET.index(c)

    result = []
    while num > 0:
        result.append(num & 0xFF)
        num >>= 8

    # Leading '1's encode leading zero bytes
    pad_size = len(s) - len(s.lstrip("1"))
    return b"\x00" * pad_size + bytes(reversed(result))


def base58_encode(data: bytes) -> str:
    """Encode bytes as Base58."""
    num = int.from_bytes(data, "big")
    encoded = ""
    while num > 0:
        num, rem = divmod(num, 58)
        encoded = BASE58_ALPHABET[rem] + encoded

    pad_size = len(data) - len(data.lstrip(b"\x00"))
    return "1" * pad_size + encoded


def base58check_decode(s: str) -> Optional[Tuple[int, bytes]]:
    """
    Decode a Base58Check encoded string.

    Returns:
        (version, payload) or None if invalid
    """
    data = base58_decode(s)
    if data is None or len(data) < 5:
        return None

    checksum = data[-4:]
    payload = data[:-4]
    if sha256d(payload)[:4] != checksum:
        return None

    return payload[0], payload[1:]


def base58check_encode(version: int, payload: bytes) -> str:
    """Encode a version byte and payload with a Base58Check checksum."""
    data = bytes([version]) + payload
    return base58_encode(data + sha256d(data)[:4])


# ============================================================================
# Addresses and scripts
# ============================================================================


def p2pkh_script(pubkey_hash: bytes) -> bytes:
    """OP_DUP OP_HASH160 <20 bytes> OP_EQUALVERIFY OP_CHECKSIG"""
    return b"\x76\xa9\x14" + pubkey_hash + b"\x88\xac"


def p2pkh_address(pubkey_hash: bytes, network: str) -> str:
    """Encode a pubkey hash as a P2PKH address."""
    return base58check_encode(get_network(network).p2pkh_version, pubkey_hash)


def address_to_script_pubkey(address: str, network: str) -> bytes:
    """
    Convert an address to its scriptPubKey.

    Raises:
        InvalidAddressError: if the address is malformed or belongs to another network
    """
    params = get_network(network)
    address = address.strip()

    if address.lower().startswith(params.hrp + "1"):
        decoded = decode_segwit_address(params.hrp, address)
        if decoded is None:
            raise InvalidAddressError(f"Invalid Bitcoin address format: {address}")
        version, program = decoded
        op_version = version + 0x50 if version else 0
        return bytes([op_version, len(program)]) + program

    decoded_b58 = base58check_decode(address)
    if decoded_b58 is None:
        raise InvalidAddressError(f"Invalid Bitcoin address format: {address}")

    version, payload = decoded_b58
    if len(payload) != 20:
        raise InvalidAddressError(f"Invalid Bitcoin address format: {address}")

    if version == params.p2pkh_version:
        return p2pkh_script(payload)
    if version == params.p2sh_version:
        # OP_HASH160 <20 bytes> OP_EQUAL
        return b"\xa9\x14" + payload + b"\x87"

    raise InvalidAddressError(f"Address {address} is not a {network} address")


def is_valid_btc_address(address: str, network: str) -> bool:
    """Check whether an address is a recognized format for the network."""
    if not address:
        return False
    try:
        address_to_script_pubkey(address, network)
    except InvalidAddressError:
        return False
    return True


# ============================================================================
# WIF private keys
# ============================================================================


def decode_wif(wif: str) -> Tuple[bytes, bool, str]:
    """
    Decode a WIF private key.

    Returns:
        (secret, compressed, network_name)

    Raises:
        ConfigurationError: if the key is not valid WIF
    """
    decoded = base58check_decode(wif.strip())
    if decoded is None:
        raise ConfigurationError("Invalid Bitcoin private key format")

    version, payload = decoded
    network = next(
        (name for name, params in NETWORKS.items() if params.wif_version == version),
        None,
    )
    if network is None:
        raise ConfigurationError("Invalid Bitcoin private key format")

    if len(payload) == 33 and payload[-1] == 0x01:
        return payload[:32], True, network
    if len(payload) == 32:
        return payload, False, network

    raise ConfigurationError("Invalid Bitcoin private key format")


def encode_wif(secret: bytes, network: str, compressed: bool = True) -> str:
    """Encode a 32-byte secret as WIF."""
    payload = secret + (b"\x01" if compressed else b"")
    return base58check_encode(get_network(network).wif_version, payload)
