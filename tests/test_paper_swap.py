"""Tests for the paper swap executor."""

from __future__ import annotations

from decimal import Decimal

import pytest

from core.execution.paper import PaperSwapExecutor
from core.types import Chain

TOKEN = "MintA"


@pytest.mark.asyncio
async def test_buy_credits_tokens_and_debits_native():
    executor = PaperSwapExecutor(native_balances={Chain.SOLANA: Decimal("2")})

    result = await executor.buy(
        secret_key="unused", chain=Chain.SOLANA, token_address=TOKEN, native_amount=Decimal("0.5"), slippage_bps=100
    )

    assert result.success is True
    assert result.tx_ref.startswith("paper-")
    assert result.explorer_url == f"https://solscan.io/tx/{result.tx_ref}"
    assert executor.native_balance(Chain.SOLANA) == Decimal("1.5")
    assert executor.token_balance(Chain.SOLANA, TOKEN) == Decimal("500")
    assert len(executor.fills) == 1


@pytest.mark.asyncio
async def test_buy_insufficient_balance():
    executor = PaperSwapExecutor(native_balances={Chain.BASE: Decimal("0.1")})

    result = await executor.buy(
        secret_key="unused", chain=Chain.BASE, token_address=TOKEN, native_amount=Decimal("1"), slippage_bps=100
    )

    assert result.success is False
    assert result.error == "Insufficient balance"
    assert executor.fills == []


@pytest.mark.asyncio
async def test_buy_invalid_amount():
    result = await PaperSwapExecutor().buy(
        secret_key="unused", chain=Chain.BASE, token_address=TOKEN, native_amount=Decimal("0"), slippage_bps=100
    )

    assert result.error == "Invalid amount"


@pytest.mark.asyncio
async def test_sell_percentage_resolves_holdings_at_call_time():
    executor = PaperSwapExecutor()
    executor.set_token_balance(Chain.SOLANA, TOKEN, Decimal("1000"))

    result = await executor.sell_percentage(
        secret_key="unused", chain=Chain.SOLANA, token_address=TOKEN, percent=25, slippage_bps=100
    )

    assert result.success is True
    assert executor.token_balance(Chain.SOLANA, TOKEN) == Decimal("750")
    assert executor.fills[0].native_amount == Decimal("0.25")


@pytest.mark.asyncio
async def test_sell_without_balance():
    result = await PaperSwapExecutor().sell_percentage(
        secret_key="unused", chain=Chain.SOLANA, token_address=TOKEN, percent=50, slippage_bps=100
    )

    assert result.success is False
    assert result.error == "No token balance found"


@pytest.mark.asyncio
async def test_sell_dust_is_too_small():
    executor = PaperSwapExecutor(token_decimals=6)
    executor.set_token_balance(Chain.SOLANA, TOKEN, Decimal("0.000001"))

    result = await executor.sell_percentage(
        secret_key="unused", chain=Chain.SOLANA, token_address=TOKEN, percent=50, slippage_bps=100
    )

    assert result.success is False
    assert result.error == "Amount too small"


@pytest.mark.asyncio
@pytest.mark.parametrize("percent", [0, 101])
async def test_sell_rejects_out_of_range_percentage(percent):
    result = await PaperSwapExecutor().sell_percentage(
        secret_key="unused", chain=Chain.SOLANA, token_address=TOKEN, percent=percent, slippage_bps=100
    )

    assert result.error == "Percentage must be between 1 and 100"
