"""Audit trail for the trigger scheduler.

Structured events for every cycle, price miss and order transition, with
enough context to reconstruct what the scheduler saw and did.

All timestamps use timezone-aware UTC datetimes for consistency. Event
context never carries secrets.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Literal, Optional


EventType = Literal[
    "cycle",
    "price_miss",
    "order_triggered",
    "order_executed",
    "order_failed",
    "notification_failed",
    "error",
]

Severity = Literal["debug", "info", "warning", "error"]


@dataclass
class AuditEvent:
    """Structured audit event for scheduler decisions and actions."""

    event_type: EventType
    message: str
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    severity: Severity = "info"
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {**asdict(self), "timestamp": self.timestamp.isoformat()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AuditEvent:
        """Rebuild an event from `to_dict()` output. Accepts a trailing `Z`."""
        values = dict(data)
        raw = values.get("timestamp")
        if isinstance(raw, str):
            values["timestamp"] = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        return cls(**values)


class TriggerAuditLogger:
    """Bounded in-memory audit log for scheduler events."""

    def __init__(self, max_events: int = 10_000) -> None:
        self.max_events = max_events
        self.events: list[AuditEvent] = []
        self._lock = Lock()

    def log(self, event: AuditEvent) -> None:
        with self._lock:
            self.events.append(event)
            overflow = len(self.events) - self.max_events
            if overflow > 0:
                del self.events[:overflow]

    def log_cycle(self, *, tokens: int, prices: int, evaluated: int, triggered: int) -> None:
        self.log(
            AuditEvent(
                event_type="cycle",
                message=f"Cycle: {tokens} token(s), {prices} price(s), {evaluated} order(s), {triggered} triggered",
                severity="debug",
                context={"tokens": tokens, "prices": prices, "evaluated": evaluated, "triggered": triggered},
            )
        )

    def log_price_miss(self, *, chain: str, token_address: str, reason: str) -> None:
        self.log(
            AuditEvent(
                event_type="price_miss",
                message=f"No price for {token_address} on {chain}: {reason}",
                severity="warning",
                context={"chain": chain, "token_address": token_address, "reason": reason},
            )
        )

    def log_order_triggered(self, *, order_id: int, observed: str, target: str) -> None:
        self.log(
            AuditEvent(
                event_type="order_triggered",
                message=f"Order #{order_id} triggered at {observed} (target {target})",
                context={"order_id": order_id, "observed": observed, "target": target},
            )
        )

    def log_order_executed(self, *, order_id: int, tx_ref: str, execution_price: str) -> None:
        self.log(
            AuditEvent(
                event_type="order_executed",
                message=f"Order #{order_id} executed: {tx_ref}",
                context={"order_id": order_id, "tx_ref": tx_ref, "execution_price": execution_price},
            )
        )

    def log_order_failed(self, *, order_id: int, error: str) -> None:
        self.log(
            AuditEvent(
                event_type="order_failed",
                message=f"Order #{order_id} failed: {error}",
                severity="warning",
                context={"order_id": order_id, "error": error},
            )
        )

    def log_notification_failed(self, *, order_id: int, chat_id: int) -> None:
        self.log(
            AuditEvent(
                event_type="notification_failed",
                message=f"Notification for order #{order_id} to chat {chat_id} failed",
                severity="warning",
                context={"order_id": order_id, "chat_id": chat_id},
            )
        )

    def log_error(self, error_message: str, context: Optional[dict[str, Any]] = None) -> None:
        self.log(AuditEvent(event_type="error", message=error_message, severity="error", context=context or {}))

    def get_events(
        self,
        event_type: Optional[EventType] = None,
        order_id: Optional[int] = None,
    ) -> list[AuditEvent]:
        with self._lock:
            events = list(self.events)
        return [
            e
            for e in events
            if (event_type is None or e.event_type == event_type)
            and (order_id is None or e.context.get("order_id") == order_id)
        ]

    def clear(self) -> None:
        with self._lock:
            self.events.clear()

    def to_json_list(self) -> list[dict[str, Any]]:
        """Export all events as JSON-serializable list."""
        with self._lock:
            return [event.to_dict() for event in self.events]
