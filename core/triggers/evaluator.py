"""Trigger condition evaluation.

Pure functions, no I/O. `above` matches when the observed value is at or
over the target, `below` when it is at or under. A zero or missing
observation is never a match.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Optional

from core.types import PriceSnapshot, TriggerCondition, TriggerOrder, TriggerType


def condition_met(current: Decimal, target: Decimal, condition: TriggerCondition) -> bool:
    if condition == "above":
        return current >= target
    return current <= target


def observed_value(snapshot: PriceSnapshot, trigger_type: TriggerType) -> Decimal:
    return snapshot.price_usd if trigger_type == "price" else snapshot.market_cap_usd


def evaluate(order: TriggerOrder, snapshot: Optional[PriceSnapshot]) -> Optional[Decimal]:
    """Return the observed value if `order` should fire on `snapshot`, else None."""
    if snapshot is None or order.status != "active":
        return None
    current = observed_value(snapshot, order.trigger_type)
    if current <= 0:
        return None
    if condition_met(current, order.trigger_value, order.trigger_condition):
        return current
    return None
