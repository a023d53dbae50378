"""Trigger (limit-style) orders: evaluation, scheduling and the order service."""

from core.triggers.audit import AuditEvent, TriggerAuditLogger
from core.triggers.evaluator import condition_met, evaluate, observed_value
from core.triggers.orders import OrderValidationError, TriggerOrderService, validate_order_params
from core.triggers.scheduler import (
    WALLET_LOCKED_ERROR,
    CycleReport,
    KeyProvider,
    MarketDataProvider,
    Notifier,
    TriggerScheduler,
    redact,
)

__all__ = [
    "AuditEvent",
    "CycleReport",
    "KeyProvider",
    "MarketDataProvider",
    "Notifier",
    "OrderValidationError",
    "TriggerAuditLogger",
    "TriggerOrderService",
    "TriggerScheduler",
    "WALLET_LOCKED_ERROR",
    "condition_met",
    "evaluate",
    "observed_value",
    "redact",
    "validate_order_params",
]
