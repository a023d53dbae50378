"""Shared test fixtures for pytest.

Provides fast custody configuration, a controllable clock, in-memory stores
and a wired custody service used across multiple test files.
"""

from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from core.config import CustodyConfig
from core.custody import CustodyService, SessionStore
from core.storage import MemoryCustodyStore, MemoryTriggerOrderStore
from core.types import Chain, CreateTriggerOrderParams

# 32-byte server key used by legacy (v1) wallet blobs in tests.
LEGACY_KEY_HEX = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"

# Well-known EVM test key and its checksummed address.
EVM_SECRET = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"
EVM_ADDRESS = "0x2c7536E3605D9C16a7a3D7b1898e529396a65c23"


class FakeClock:
    """Manually advanced clock serving both datetime and unix-seconds callers."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def time(self) -> float:
        return self.now.timestamp()

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def legacy_encrypt(plaintext: str, key_hex: str = LEGACY_KEY_HEX) -> str:
    """Produce a legacy `ivHex:ciphertextHex` blob the way old deployments did."""
    iv = os.urandom(16)
    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
    encryptor = Cipher(algorithms.AES(bytes.fromhex(key_hex)), modes.CBC(iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()
    return f"{iv.hex()}:{ciphertext.hex()}"


def make_order_params(**overrides: object) -> CreateTriggerOrderParams:
    """A valid buy-when-price-below order; override any field."""
    fields: dict[str, object] = {
        "user_id": 42,
        "chat_id": 4200,
        "chain": Chain.SOLANA,
        "token_address": "TokenMint111111111111111111111111111111111",
        "token_symbol": "BONK",
        "side": "buy",
        "trigger_type": "price",
        "trigger_condition": "below",
        "trigger_value": Decimal("0.001"),
        "amount": "0.5",
        "amount_type": "fixed",
        "price_at_creation": Decimal("0.0012"),
        "slippage_bps": None,
    }
    fields.update(overrides)
    return CreateTriggerOrderParams(**fields)  # type: ignore[arg-type]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def custody_config() -> CustodyConfig:
    """Custody config with a cheap KDF so tests stay fast."""
    return CustodyConfig(legacy_key_hex=LEGACY_KEY_HEX, pbkdf2_iterations=1000)


@pytest.fixture
def custody_store() -> MemoryCustodyStore:
    return MemoryCustodyStore()


@pytest.fixture
def order_store() -> MemoryTriggerOrderStore:
    return MemoryTriggerOrderStore()


@pytest.fixture
def sessions(clock: FakeClock) -> SessionStore:
    return SessionStore(timeout_seconds=30 * 60, clock=clock.time)


@pytest.fixture
def custody(
    custody_store: MemoryCustodyStore,
    sessions: SessionStore,
    custody_config: CustodyConfig,
    clock: FakeClock,
) -> CustodyService:
    return CustodyService(store=custody_store, sessions=sessions, config=custody_config, clock=clock)
