"""Address derivation for custodied wallets.

A stored wallet address must always be re-derivable from its decrypted
secret. These helpers derive, generate and normalize secrets per chain:

- solana: base58-encoded 64-byte keypair (solders)
- base:   0x-prefixed 32-byte secp256k1 key, EIP-55 checksummed address
"""

from __future__ import annotations

import json
import secrets
from typing import Protocol

import base58
from Crypto.Hash import keccak
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from solders.keypair import Keypair

from core.types import Chain


class InvalidSecretError(ValueError):
    """Raised when a secret cannot be parsed for its chain."""


class AddressDeriver(Protocol):
    def derive_address(self, chain: Chain, secret: str) -> str:
        """Return the public address controlled by `secret`."""

    def addresses_match(self, chain: Chain, left: str, right: str) -> bool:
        """Compare two addresses using the chain's equality rules."""


def _keccak256(data: bytes) -> bytes:
    digest = keccak.new(digest_bits=256)
    digest.update(data)
    return digest.digest()


def to_checksum_address(address: str) -> str:
    """EIP-55 mixed-case checksum encoding."""
    raw = address.lower().removeprefix("0x")
    if len(raw) != 40:
        raise InvalidSecretError("EVM address must be 20 bytes")
    hashed = _keccak256(raw.encode("ascii")).hex()
    return "0x" + "".join(
        ch.upper() if ch.isalpha() and int(hashed[i], 16) >= 8 else ch for i, ch in enumerate(raw)
    )


def _evm_key_bytes(secret: str) -> bytes:
    raw = secret.strip().removeprefix("0x")
    try:
        key = bytes.fromhex(raw)
    except ValueError as exc:
        raise InvalidSecretError("Invalid private key format") from exc
    if len(key) != 32:
        raise InvalidSecretError("Invalid private key length")
    return key


def evm_address_from_key(secret: str) -> str:
    value = int.from_bytes(_evm_key_bytes(secret), byteorder="big")
    try:
        # cryptography validates the scalar range for secp256k1.
        private_key = ec.derive_private_key(value, ec.SECP256K1())
    except ValueError as exc:
        raise InvalidSecretError("Private key out of range") from exc
    public_bytes = private_key.public_key().public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)
    return to_checksum_address(_keccak256(public_bytes[1:])[-20:].hex())


def _solana_keypair(secret: str) -> Keypair:
    text = secret.strip()
    try:
        if text.startswith("["):
            raw = bytes(json.loads(text))
        else:
            raw = base58.b58decode(text)
    except (ValueError, TypeError) as exc:
        raise InvalidSecretError("Invalid private key format") from exc
    if len(raw) != 64:
        raise InvalidSecretError("Invalid private key length")
    try:
        return Keypair.from_bytes(raw)
    except ValueError as exc:
        raise InvalidSecretError("Invalid private key format") from exc


class ChainAddressDeriver:
    """Default `AddressDeriver` for the supported chains."""

    def derive_address(self, chain: Chain, secret: str) -> str:
        if chain is Chain.SOLANA:
            return str(_solana_keypair(secret).pubkey())
        return evm_address_from_key(secret)

    def addresses_match(self, chain: Chain, left: str, right: str) -> bool:
        if chain is Chain.SOLANA:
            # base58 is case-sensitive
            return left == right
        return left.lower() == right.lower()

    def normalize_secret(self, chain: Chain, raw: str) -> str:
        """Canonical persisted form of an imported secret."""
        if chain is Chain.SOLANA:
            return str(_solana_keypair(raw))
        return "0x" + _evm_key_bytes(raw).hex()

    def generate(self, chain: Chain) -> tuple[str, str]:
        """Create a fresh wallet. Returns (address, secret)."""
        if chain is Chain.SOLANA:
            keypair = Keypair()
            return str(keypair.pubkey()), str(keypair)
        while True:
            secret = "0x" + secrets.token_bytes(32).hex()
            try:
                return evm_address_from_key(secret), secret
            except InvalidSecretError:
                # astronomically unlikely: scalar outside the curve order
                continue
