"""Tests for trigger order validation and the order service."""

from __future__ import annotations

from decimal import Decimal
from unittest.mock import Mock

import pytest

from conftest import make_order_params
from core.triggers.orders import OrderValidationError, TriggerOrderService, validate_order_params
from core.types import Chain


@pytest.fixture
def service(order_store) -> TriggerOrderService:
    return TriggerOrderService(store=order_store)


# ============================================================================
# Validation
# ============================================================================


def test_valid_buy_and_sell():
    validate_order_params(make_order_params())
    validate_order_params(make_order_params(side="sell", amount="100", amount_type="percentage"))


@pytest.mark.parametrize(
    "overrides,message",
    [
        ({"chain": "ethereum"}, "Unsupported chain"),
        ({"token_address": "  "}, "Token address is required"),
        ({"side": "hold"}, "Invalid side"),
        ({"trigger_type": "volume"}, "Invalid trigger type"),
        ({"trigger_condition": "equal"}, "Invalid trigger condition"),
        ({"trigger_value": Decimal("0")}, "Trigger value must be greater than 0"),
        ({"amount": "0"}, "Amount must be greater than 0"),
        ({"amount": "lots"}, "Amount must be a number"),
        ({"amount_type": "percentage"}, "Buy orders use a fixed native amount"),
        ({"side": "sell", "amount": "50", "amount_type": "fixed"}, "Sell orders use a percentage"),
        ({"side": "sell", "amount": "0", "amount_type": "percentage"}, "whole number between 1 and 100"),
        ({"side": "sell", "amount": "101", "amount_type": "percentage"}, "whole number between 1 and 100"),
        ({"side": "sell", "amount": "12.5", "amount_type": "percentage"}, "whole number between 1 and 100"),
        ({"slippage_bps": 0}, "Slippage must be between 1 and 5000 bps"),
        ({"slippage_bps": 5001}, "Slippage must be between 1 and 5000 bps"),
        ({"price_at_creation": Decimal("-1")}, "Price at creation cannot be negative"),
    ],
)
def test_invalid_params(overrides, message):
    with pytest.raises(OrderValidationError, match=message):
        validate_order_params(make_order_params(**overrides))


def test_invalid_order_is_not_persisted(service, order_store):
    with pytest.raises(OrderValidationError):
        service.create_order(make_order_params(trigger_value=Decimal("-5")))

    assert order_store.list_active_orders() == []


# ============================================================================
# Service
# ============================================================================


def test_create_order(service):
    order = service.create_order(make_order_params(slippage_bps=250))

    assert order.status == "active"
    assert order.slippage_bps == 250
    assert service.get_order(order.id) == order
    assert service.get_active_orders(42) == [order]


def test_create_order_starts_scheduler(order_store):
    scheduler = Mock()
    service = TriggerOrderService(store=order_store, scheduler=scheduler)

    service.create_order(make_order_params())

    scheduler.ensure_running.assert_called_once_with()


def test_cancel_order(service):
    order = service.create_order(make_order_params())

    assert service.cancel_order(order.id, user_id=7) is False
    assert service.cancel_order(order.id, user_id=42) is True
    assert service.cancel_order(order.id, user_id=42) is False
    assert service.get_active_orders(42) == []


def test_cancel_all_orders(service):
    service.create_order(make_order_params())
    service.create_order(make_order_params(chain=Chain.BASE, token_address="0xbeef"))

    assert service.cancel_all_orders(42) == 2
    assert service.cancel_all_orders(42) == 0


def test_order_history(service):
    ids = [service.create_order(make_order_params()).id for _ in range(3)]
    service.cancel_order(ids[1], user_id=42)

    history = service.get_order_history(42, limit=2)

    assert [o.id for o in history] == [ids[2], ids[1]]
    assert history[1].status == "cancelled"
