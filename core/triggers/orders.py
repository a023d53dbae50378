"""Trigger order service: the UI-facing API for creating and managing orders.

Validation happens here, before anything touches the store. Status changes
after creation belong to the scheduler, except cancellation by the owner
while an order is still active.
"""

from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from typing import Optional

from core.persistence.interfaces import TriggerOrderStore
from core.triggers.scheduler import TriggerScheduler
from core.types import Chain, CreateTriggerOrderParams, TriggerOrder

logger = logging.getLogger(__name__)

MIN_SLIPPAGE_BPS = 1
MAX_SLIPPAGE_BPS = 5000


class OrderValidationError(ValueError):
    """Raised when order parameters are invalid. Nothing is persisted."""


def _positive_decimal(value: object, name: str) -> Decimal:
    try:
        result = Decimal(str(value))
    except InvalidOperation as exc:
        raise OrderValidationError(f"{name} must be a number") from exc
    if not result.is_finite() or result <= 0:
        raise OrderValidationError(f"{name} must be greater than 0")
    return result


def validate_order_params(params: CreateTriggerOrderParams) -> None:
    if not isinstance(params.chain, Chain):
        raise OrderValidationError(f"Unsupported chain: {params.chain!r}")
    if not params.token_address.strip():
        raise OrderValidationError("Token address is required")
    if params.side not in ("buy", "sell"):
        raise OrderValidationError(f"Invalid side: {params.side!r}")
    if params.trigger_type not in ("price", "marketcap"):
        raise OrderValidationError(f"Invalid trigger type: {params.trigger_type!r}")
    if params.trigger_condition not in ("above", "below"):
        raise OrderValidationError(f"Invalid trigger condition: {params.trigger_condition!r}")

    _positive_decimal(params.trigger_value, "Trigger value")

    if params.side == "buy":
        if params.amount_type != "fixed":
            raise OrderValidationError("Buy orders use a fixed native amount")
        _positive_decimal(params.amount, "Amount")
    else:
        if params.amount_type != "percentage":
            raise OrderValidationError("Sell orders use a percentage of holdings")
        if not params.amount.strip().isdigit() or not 1 <= int(params.amount) <= 100:
            raise OrderValidationError("Sell percentage must be a whole number between 1 and 100")

    if params.slippage_bps is not None and not MIN_SLIPPAGE_BPS <= params.slippage_bps <= MAX_SLIPPAGE_BPS:
        raise OrderValidationError(f"Slippage must be between {MIN_SLIPPAGE_BPS} and {MAX_SLIPPAGE_BPS} bps")
    if params.price_at_creation < 0:
        raise OrderValidationError("Price at creation cannot be negative")


class TriggerOrderService:
    def __init__(self, *, store: TriggerOrderStore, scheduler: Optional[TriggerScheduler] = None) -> None:
        self.store = store
        self.scheduler = scheduler

    def create_order(self, params: CreateTriggerOrderParams) -> TriggerOrder:
        validate_order_params(params)
        order = self.store.create_trigger_order(params=params)
        logger.info(
            "Created order #%d: %s %s when %s %s %s",
            order.id,
            order.side,
            order.token_symbol,
            order.trigger_type,
            order.trigger_condition,
            order.trigger_value,
        )
        if self.scheduler is not None:
            self.scheduler.ensure_running()
        return order

    def cancel_order(self, order_id: int, user_id: int) -> bool:
        cancelled = self.store.cancel_order(order_id=order_id, user_id=user_id)
        if cancelled:
            logger.info("Order #%d cancelled by user %s", order_id, user_id)
        return cancelled

    def cancel_all_orders(self, user_id: int) -> int:
        count = self.store.cancel_all_user_orders(user_id=user_id)
        logger.info("Cancelled %d order(s) for user %s", count, user_id)
        return count

    def get_active_orders(self, user_id: int) -> list[TriggerOrder]:
        return list(self.store.list_user_active_orders(user_id=user_id))

    def get_order_history(self, user_id: int, limit: int = 20) -> list[TriggerOrder]:
        return list(self.store.list_user_order_history(user_id=user_id, limit=limit))

    def get_order(self, order_id: int) -> Optional[TriggerOrder]:
        return self.store.get_trigger_order(order_id=order_id)
