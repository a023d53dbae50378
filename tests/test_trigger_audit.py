"""Tests for the trigger scheduler audit trail."""

from __future__ import annotations

from core.triggers.audit import AuditEvent, TriggerAuditLogger


def test_events_filter_by_type_and_order():
    audit = TriggerAuditLogger()
    audit.log_order_triggered(order_id=1, observed="5200000", target="5000000")
    audit.log_order_executed(order_id=1, tx_ref="tx-1", execution_price="0.0052")
    audit.log_order_failed(order_id=2, error="Insufficient balance")

    assert [e.event_type for e in audit.get_events(order_id=1)] == ["order_triggered", "order_executed"]
    assert [e.context["order_id"] for e in audit.get_events(event_type="order_failed")] == [2]


def test_log_is_bounded():
    audit = TriggerAuditLogger(max_events=3)
    for i in range(5):
        audit.log_error(f"error {i}")

    assert [e.message for e in audit.events] == ["error 2", "error 3", "error 4"]


def test_event_roundtrip_through_dict():
    audit = TriggerAuditLogger()
    audit.log_price_miss(chain="base", token_address="0xbeef", reason="no data")

    data = audit.to_json_list()[0]
    event = AuditEvent.from_dict({**data, "timestamp": data["timestamp"].replace("+00:00", "Z")})

    assert event.event_type == "price_miss"
    assert event.severity == "warning"
    assert event.context == {"chain": "base", "token_address": "0xbeef", "reason": "no data"}
    assert event.timestamp.tzinfo is not None


def test_clear():
    audit = TriggerAuditLogger()
    audit.log_cycle(tokens=1, prices=1, evaluated=2, triggered=0)
    audit.clear()

    assert audit.get_events() == []
