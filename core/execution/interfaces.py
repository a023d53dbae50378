from __future__ import annotations

from decimal import Decimal
from typing import Protocol

from core.types import Chain, SwapResult

EXPLORER_TX_URLS: dict[Chain, str] = {
    Chain.SOLANA: "https://solscan.io/tx/{tx}",
    Chain.BASE: "https://basescan.org/tx/{tx}",
}


def explorer_url(chain: Chain, tx_ref: str) -> str:
    return EXPLORER_TX_URLS[chain].format(tx=tx_ref)


class SwapExecutor(Protocol):
    """Protocol for swap execution on a chain (paper or live).

    Implementations receive the resolved secret key per call and must never
    log it or echo it back in `SwapResult.error`. Failures are returned as
    `SwapResult(success=False, error=...)`; raising is treated as a failure
    by the caller.
    """

    async def buy(
        self,
        *,
        secret_key: str,
        chain: Chain,
        token_address: str,
        native_amount: Decimal,
        slippage_bps: int,
    ) -> SwapResult:
        """Spend a fixed native amount (SOL/ETH) on `token_address`."""

    async def sell_percentage(
        self,
        *,
        secret_key: str,
        chain: Chain,
        token_address: str,
        percent: int,
        slippage_bps: int,
    ) -> SwapResult:
        """Sell `percent` of current holdings, resolved at call time."""
