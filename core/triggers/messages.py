"""Chat messages for trigger order outcomes (Telegram Markdown)."""

from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from core.types import TriggerOrder

_MARKDOWN_SPECIAL = re.compile(r"([_*`\[])")


def _fixed(value: Decimal, places: int) -> str:
    return f"{value.quantize(Decimal(1).scaleb(-places), rounding=ROUND_HALF_UP):f}"


def format_number(value: Decimal) -> str:
    """Compact K/M/B notation with two decimals."""
    value = Decimal(value)
    if value >= 1_000_000_000:
        return _fixed(value / 1_000_000_000, 2) + "B"
    if value >= 1_000_000:
        return _fixed(value / 1_000_000, 2) + "M"
    if value >= 1_000:
        return _fixed(value / 1_000, 2) + "K"
    return _fixed(value, 2)


def format_price(price: Decimal) -> str:
    """Price with precision tiers suited to micro-cap tokens."""
    price = Decimal(price)
    if price == 0:
        return "0"
    if price < Decimal("0.00000001"):
        return f"{price:.2e}"
    if price < Decimal("0.0001"):
        return _fixed(price, 8)
    if price < Decimal("0.01"):
        return _fixed(price, 6)
    if price < 1:
        return _fixed(price, 4)
    return _fixed(price, 2)


def escape_markdown(text: str) -> str:
    """Escape the entity characters of Telegram's legacy Markdown mode."""
    return _MARKDOWN_SPECIAL.sub(r"\\\1", text)


def trigger_label(order: TriggerOrder) -> str:
    kind = "Price" if order.trigger_type == "price" else "Market Cap"
    return f"{kind} {order.trigger_condition} ${format_number(order.trigger_value)}"


def amount_label(order: TriggerOrder) -> str:
    if order.side == "buy":
        return f"{order.amount} {order.chain.native_symbol}"
    return f"{order.amount}%"


def order_executed_message(
    order: TriggerOrder,
    *,
    tx_ref: str,
    execution_price: Decimal,
    explorer_url: Optional[str] = None,
) -> str:
    side_emoji = "🟢" if order.side == "buy" else "🔴"
    link = f"🔗 [View Transaction]({explorer_url})" if explorer_url else f"`{tx_ref}`"
    return "\n".join(
        [
            f"{side_emoji} *LIMIT ORDER EXECUTED*",
            "",
            f"📊 *{escape_markdown(order.token_symbol)}* ({order.chain.display_name})",
            "",
            f"• Type: {order.side.upper()}",
            f"• Trigger: {trigger_label(order)}",
            f"• Amount: {amount_label(order)}",
            f"• Execution Price: ${format_price(execution_price)}",
            "",
            link,
        ]
    )


def order_failed_message(order: TriggerOrder, *, error: str) -> str:
    return "\n".join(
        [
            "⚠️ *LIMIT ORDER FAILED*",
            "",
            f"📊 *{escape_markdown(order.token_symbol)}* ({order.chain.display_name})",
            f"• Order ID: #{order.id}",
            f"• Type: {order.side.upper()}",
            "",
            f"❌ Error: {escape_markdown(error)}",
            "",
            "_The order has been marked as failed. Create a new order if needed._",
        ]
    )
