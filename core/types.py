from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Literal, Mapping, Optional


class Chain(str, Enum):
    """Supported chains. Values are the persisted identifiers."""

    SOLANA = "solana"
    BASE = "base"

    @property
    def display_name(self) -> str:
        return "Solana" if self is Chain.SOLANA else "Base"

    @property
    def native_symbol(self) -> str:
        return "SOL" if self is Chain.SOLANA else "ETH"


OrderSide = Literal["buy", "sell"]
TriggerType = Literal["price", "marketcap"]
TriggerCondition = Literal["above", "below"]
AmountType = Literal["fixed", "percentage"]
OrderStatus = Literal["active", "triggered", "executed", "failed", "cancelled"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"executed", "failed", "cancelled"})


# ---------------------------------------------------------------------------
# Custody records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class UserSecurity:
    """Per-user security settings. `password_hash` is `saltHex:hashHex`."""

    user_id: int
    password_hash: str
    created_at: datetime
    anti_phishing_code: Optional[str] = None
    transfer_limits: Mapping[Chain, Decimal] = field(default_factory=dict)
    two_factor_secret: Optional[str] = None  # reserved, not implemented
    two_factor_enabled: bool = False  # reserved, not implemented
    last_password_change: Optional[datetime] = None


@dataclass(frozen=True)
class EncryptedWallet:
    """One wallet per (user, chain). The secret is only ever held as ciphertext."""

    user_id: int
    chain: Chain
    address: str
    encrypted_secret: str
    encryption_version: int = 1  # 1 = legacy server key, 2 = user password
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class WhitelistEntry:
    user_id: int
    chain: Chain
    address: str
    label: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass(frozen=True)
class SecurityEvent:
    user_id: int
    action: str
    created_at: datetime
    details: Optional[str] = None


# ---------------------------------------------------------------------------
# Trigger orders
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CreateTriggerOrderParams:
    user_id: int
    chat_id: int
    chain: Chain
    token_address: str
    token_symbol: str
    side: OrderSide
    trigger_type: TriggerType
    trigger_condition: TriggerCondition
    trigger_value: Decimal
    amount: str  # native amount for buys, whole percentage for sells
    amount_type: AmountType
    price_at_creation: Decimal
    slippage_bps: Optional[int] = None


@dataclass(frozen=True)
class TriggerOrder:
    id: int
    user_id: int
    chat_id: int
    chain: Chain
    token_address: str
    token_symbol: str
    side: OrderSide
    trigger_type: TriggerType
    trigger_condition: TriggerCondition
    trigger_value: Decimal
    amount: str
    amount_type: AmountType
    slippage_bps: int
    status: OrderStatus
    price_at_creation: Decimal
    created_at: datetime
    triggered_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    tx_hash: Optional[str] = None
    execution_price: Optional[Decimal] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def token_key(self) -> tuple[Chain, str]:
        """Lookup key shared with price snapshots (addresses compare case-insensitively)."""
        return (self.chain, self.token_address.lower())


# ---------------------------------------------------------------------------
# Collaborator payloads
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PriceSnapshot:
    """Market observation for a token at one poll."""

    price_usd: Decimal
    market_cap_usd: Decimal
    symbol: Optional[str] = None


@dataclass(frozen=True)
class SwapResult:
    """Outcome of a swap submitted by an execution collaborator."""

    success: bool
    tx_ref: Optional[str] = None
    explorer_url: Optional[str] = None
    error: Optional[str] = None
