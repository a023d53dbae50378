from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal
from threading import Lock
from typing import Literal, Mapping, Optional

from core.execution.interfaces import explorer_url
from core.types import Chain, SwapResult

logger = logging.getLogger(__name__)


@dataclass
class PaperFill:
    """Represents a simulated swap."""

    tx_ref: str
    chain: Chain
    token_address: str
    side: Literal["buy", "sell"]
    native_amount: Decimal
    token_amount: Decimal
    slippage_bps: int
    created_at: datetime


class PaperSwapExecutor:
    """Dry-run swap executor with simulated balances.

    Features:
    - Buys debit the native balance (when one is tracked) and credit tokens
      at a fixed `tokens_per_native` rate
    - Sells resolve a percentage of current holdings in smallest units, so a
      percentage of a dust balance can round to zero ("Amount too small")
    - Never touches a network and never inspects the secret key
    """

    def __init__(
        self,
        *,
        native_balances: Optional[Mapping[Chain, Decimal]] = None,
        tokens_per_native: Decimal = Decimal("1000"),
        token_decimals: int = 6,
    ) -> None:
        self._native: dict[Chain, Decimal] = dict(native_balances or {})
        self._tokens: dict[tuple[Chain, str], Decimal] = {}
        self._tokens_per_native = tokens_per_native
        self._unit = Decimal(1).scaleb(-token_decimals)
        self._lock = Lock()
        self.fills: list[PaperFill] = []

    def set_token_balance(self, chain: Chain, token_address: str, amount: Decimal) -> None:
        with self._lock:
            self._tokens[(chain, token_address.lower())] = Decimal(amount)

    def token_balance(self, chain: Chain, token_address: str) -> Decimal:
        with self._lock:
            return self._tokens.get((chain, token_address.lower()), Decimal("0"))

    def native_balance(self, chain: Chain) -> Optional[Decimal]:
        with self._lock:
            return self._native.get(chain)

    def _record(self, fill: PaperFill) -> SwapResult:
        self.fills.append(fill)
        logger.info(
            "PAPER %s %s %s on %s (native=%s, tokens=%s)",
            fill.side,
            fill.token_address,
            fill.tx_ref,
            fill.chain.value,
            fill.native_amount,
            fill.token_amount,
        )
        return SwapResult(success=True, tx_ref=fill.tx_ref, explorer_url=explorer_url(fill.chain, fill.tx_ref))

    async def buy(
        self,
        *,
        secret_key: str,
        chain: Chain,
        token_address: str,
        native_amount: Decimal,
        slippage_bps: int,
    ) -> SwapResult:
        if native_amount <= 0:
            return SwapResult(success=False, error="Invalid amount")

        key = (chain, token_address.lower())
        with self._lock:
            balance = self._native.get(chain)
            if balance is not None:
                if balance < native_amount:
                    return SwapResult(success=False, error="Insufficient balance")
                self._native[chain] = balance - native_amount
            received = (native_amount * self._tokens_per_native).quantize(self._unit, rounding=ROUND_DOWN)
            self._tokens[key] = self._tokens.get(key, Decimal("0")) + received
            fill = PaperFill(
                tx_ref=f"paper-{secrets.token_hex(16)}",
                chain=chain,
                token_address=token_address,
                side="buy",
                native_amount=native_amount,
                token_amount=received,
                slippage_bps=slippage_bps,
                created_at=datetime.now(timezone.utc),
            )
            return self._record(fill)

    async def sell_percentage(
        self,
        *,
        secret_key: str,
        chain: Chain,
        token_address: str,
        percent: int,
        slippage_bps: int,
    ) -> SwapResult:
        if not 1 <= percent <= 100:
            return SwapResult(success=False, error="Percentage must be between 1 and 100")

        key = (chain, token_address.lower())
        with self._lock:
            holdings = self._tokens.get(key, Decimal("0"))
            raw_balance = int(holdings / self._unit)
            if raw_balance <= 0:
                return SwapResult(success=False, error="No token balance found")
            raw_amount = raw_balance * percent // 100
            if raw_amount == 0:
                return SwapResult(success=False, error="Amount too small")

            amount = Decimal(raw_amount) * self._unit
            self._tokens[key] = holdings - amount
            proceeds = amount / self._tokens_per_native
            if chain in self._native:
                self._native[chain] += proceeds
            fill = PaperFill(
                tx_ref=f"paper-{secrets.token_hex(16)}",
                chain=chain,
                token_address=token_address,
                side="sell",
                native_amount=proceeds,
                token_amount=amount,
                slippage_bps=slippage_bps,
                created_at=datetime.now(timezone.utc),
            )
            return self._record(fill)
