"""
Watch-only address derivation for Kaspa.

A merchant hands over a ``kpub`` extended public key. Receive addresses are
the non-hardened children ``kpub/0/i``; nothing here can ever produce a
private key, so hardened indices are rejected outright.

Addresses use Kaspa's cashaddr-style encoding: ``kaspa:`` followed by the
base32 form of a version byte and the 32-byte x-only public key, and an
8-character polymod checksum.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import List, Protocol, Tuple, Union

import base58
from ecdsa import SECP256k1, VerifyingKey
from ecdsa.ellipticcurve import INFINITY
from ecdsa.keys import MalformedPointError

from kaspa_gateway.errors import DerivationFailure, InvalidAddressFormat, InvalidKeyFormat

logger = logging.getLogger(__name__)

KPUB_PREFIX = "kpub"
KPUB_VERSION = bytes.fromhex("038f332e")
KPUB_MIN_LENGTH = 110
KPUB_MAX_LENGTH = 120

HARDENED_OFFSET = 0x80000000
RECEIVE_CHAIN = 0

CHARSET = "qpzry9x8gf2tvdw0s3jn54khce6mua7l"
SCHNORR_VERSION = 0
CHECKSUM_LENGTH = 8


@dataclass(frozen=True)
class WatchOnlyKey:
    depth: int
    parent_fingerprint: bytes
    child_number: int
    chain_code: bytes
    public_key: bytes       # compressed SEC1, 33 bytes

    @classmethod
    def parse(cls, serialized: str) -> "WatchOnlyKey":
        if not isinstance(serialized, str):
            raise InvalidKeyFormat("Watch-only key must be a string")
        serialized = serialized.strip()
        if not serialized.startswith(KPUB_PREFIX):
            raise InvalidKeyFormat(f"Watch-only key must start with '{KPUB_PREFIX}'")
        if not KPUB_MIN_LENGTH <= len(serialized) <= KPUB_MAX_LENGTH:
            raise InvalidKeyFormat(f"Watch-only key has unexpected length {len(serialized)}")

        try:
            raw = base58.b58decode_check(serialized)
        except ValueError as e:
            raise InvalidKeyFormat(f"Watch-only key failed Base58Check decoding: {e}")

        if len(raw) != 78 or raw[:4] != KPUB_VERSION:
            raise InvalidKeyFormat("Watch-only key payload is not a kpub extended public key")

        public_key = raw[45:78]
        if public_key[0] not in (2, 3):
            raise InvalidKeyFormat("Watch-only key does not carry a compressed public key")
        try:
            VerifyingKey.from_string(public_key, curve=SECP256k1)
        except MalformedPointError:
            raise InvalidKeyFormat("Watch-only key public key is not on secp256k1")

        return cls(
            depth=raw[4],
            parent_fingerprint=raw[5:9],
            child_number=int.from_bytes(raw[9:13], "big"),
            chain_code=raw[13:45],
            public_key=public_key,
        )


@dataclass(frozen=True)
class DerivedAddress:
    index: int
    address: str


class AddressDeriver(Protocol):
    def derive(self, key, start_index: int, count: int) -> List[DerivedAddress]:
        ...


def _compress(point) -> bytes:
    prefix = b"\x03" if point.y() & 1 else b"\x02"
    return prefix + point.x().to_bytes(32, "big")


def derive_child(public_key: bytes, chain_code: bytes, index: int) -> Tuple[bytes, bytes]:
    """BIP32 public parent key -> public child key (CKDpub)."""
    if not 0 <= index < HARDENED_OFFSET:
        raise DerivationFailure(f"Index {index} needs private key material")

    digest = hmac.new(chain_code, public_key + index.to_bytes(4, "big"), hashlib.sha512).digest()
    tweak = int.from_bytes(digest[:32], "big")
    if tweak >= SECP256k1.order:
        raise DerivationFailure(f"Index {index} produced an invalid tweak")

    try:
        parent = VerifyingKey.from_string(public_key, curve=SECP256k1).pubkey.point
    except MalformedPointError as e:
        raise DerivationFailure(f"Parent public key is invalid: {e}")

    child = SECP256k1.generator * tweak + parent
    if child == INFINITY:
        raise DerivationFailure(f"Index {index} produced the point at infinity")

    return _compress(child), digest[32:]


def _polymod(values) -> int:
    c = 1
    for d in values:
        c0 = c >> 35
        c = ((c & 0x07ffffffff) << 5) ^ d
        if c0 & 0x01:
            c ^= 0x98f2bc8e61
        if c0 & 0x02:
            c ^= 0x79b76d99e2
        if c0 & 0x04:
            c ^= 0xf33e5fb3c4
        if c0 & 0x08:
            c ^= 0xae2eabe2a8
        if c0 & 0x10:
            c ^= 0x1e4f43e470
    return c ^ 1


def _convert_bits(data, from_bits: int, to_bits: int, pad: bool = True) -> List[int]:
    acc = 0
    bits = 0
    result = []
    max_value = (1 << to_bits) - 1
    for value in data:
        acc = (acc << from_bits) | value
        bits += from_bits
        while bits >= to_bits:
            bits -= to_bits
            result.append((acc >> bits) & max_value)
    if pad and bits:
        result.append((acc << (to_bits - bits)) & max_value)
    elif not pad and (bits >= from_bits or (acc << (to_bits - bits)) & max_value):
        raise ValueError("Invalid padding")
    return result


def _prefix_values(prefix: str) -> List[int]:
    return [ord(c) & 0x1f for c in prefix] + [0]


def encode_address(prefix: str, payload: bytes, version: int = SCHNORR_VERSION) -> str:
    data = _convert_bits(bytes([version]) + payload, 8, 5)
    checksum = _polymod(_prefix_values(prefix) + data + [0] * CHECKSUM_LENGTH)
    check_data = [(checksum >> 5 * (CHECKSUM_LENGTH - 1 - i)) & 0x1f for i in range(CHECKSUM_LENGTH)]
    return prefix + ":" + "".join(CHARSET[d] for d in data + check_data)


def decode_address(address: str, prefix: str = "kaspa") -> Tuple[int, bytes]:
    """Return ``(version, payload)`` or raise InvalidAddressFormat."""
    if not isinstance(address, str):
        raise InvalidAddressFormat("Address must be a string")
    address = normalize_address(address.strip().lower(), prefix)
    body = address[len(prefix) + 1:]
    if not 61 <= len(body) <= 63:
        raise InvalidAddressFormat(f"Address has unexpected length: {address}")
    try:
        values = [CHARSET.index(c) for c in body]
    except ValueError:
        raise InvalidAddressFormat(f"Address contains invalid characters: {address}")
    if _polymod(_prefix_values(prefix) + values) != 0:
        raise InvalidAddressFormat(f"Address checksum mismatch: {address}")
    try:
        raw = bytes(_convert_bits(values[:-CHECKSUM_LENGTH], 5, 8, pad=False))
    except ValueError:
        raise InvalidAddressFormat(f"Address payload is malformed: {address}")
    return raw[0], raw[1:]


def validate_address(address: str, prefix: str = "kaspa") -> str:
    decode_address(address, prefix)
    return normalize_address(address.strip().lower(), prefix)


def normalize_address(address: str, prefix: str = "kaspa") -> str:
    """The API requires the human-readable prefix on every address."""
    if address.startswith(prefix + ":"):
        return address
    return f"{prefix}:{address}"


class KaspaAddressDeriver:
    """Derives receive addresses from a kpub. Pure: no network, no storage."""

    def __init__(self, prefix: str = "kaspa", chain: int = RECEIVE_CHAIN):
        self.prefix = prefix
        self.chain = chain

    def derive(self, key: Union[str, WatchOnlyKey], start_index: int, count: int) -> List[DerivedAddress]:
        if isinstance(key, str):
            key = WatchOnlyKey.parse(key)
        if start_index < 0 or count < 0:
            raise DerivationFailure("Derivation range must be non-negative")
        if start_index + count > HARDENED_OFFSET:
            raise DerivationFailure("Derivation range reaches hardened indices")

        branch_key, branch_chain = derive_child(key.public_key, key.chain_code, self.chain)
        addresses = []
        for index in range(start_index, start_index + count):
            child_key, _ = derive_child(branch_key, branch_chain, index)
            addresses.append(DerivedAddress(index=index, address=encode_address(self.prefix, child_key[1:])))
        return addresses

    def derive_one(self, key: Union[str, WatchOnlyKey], index: int) -> str:
        return self.derive(key, index, 1)[0].address
