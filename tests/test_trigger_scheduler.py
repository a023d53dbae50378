"""Tests for the trigger scheduler: evaluation, execution and notification."""

from __future__ import annotations

import asyncio
import random
import threading
from decimal import Decimal
from typing import Optional
from unittest.mock import AsyncMock

import pytest

from conftest import EVM_SECRET, make_order_params
from core.config import SchedulerConfig
from core.execution.paper import PaperSwapExecutor
from core.triggers.scheduler import WALLET_LOCKED_ERROR, TriggerScheduler, redact
from core.types import Chain, PriceSnapshot, SwapResult

USER = 42
PASSWORD = "abcdef"
TOKEN = "0xBeeF000000000000000000000000000000000001"

FAST = SchedulerConfig(
    poll_interval_seconds=1.0,
    jitter_seconds=0.5,
    price_request_delay_seconds=0,
    price_timeout_seconds=0.5,
    execution_timeout_seconds=0.5,
    notification_timeout_seconds=0.5,
)


class FakeMarketData:
    def __init__(self, snapshots: Optional[dict] = None, *, delays: Optional[dict] = None) -> None:
        self.snapshots = {k.lower(): v for k, v in (snapshots or {}).items()}
        self.delays = {k.lower(): v for k, v in (delays or {}).items()}
        self.calls: list[tuple[Chain, str]] = []

    async def get_price(self, chain: Chain, token_address: str) -> Optional[PriceSnapshot]:
        self.calls.append((chain, token_address))
        await asyncio.sleep(self.delays.get(token_address.lower(), 0))
        value = self.snapshots.get(token_address.lower())
        if isinstance(value, Exception):
            raise value
        return value


class RecordingExecutor:
    """Swap executor double that records calls and returns a canned result."""

    def __init__(self, result: Optional[SwapResult] = None, *, delay: float = 0, error: Exception | None = None):
        self.result = result or SwapResult(success=True, tx_ref="0xtx", explorer_url="https://basescan.org/tx/0xtx")
        self.delay = delay
        self.error = error
        self.calls: list[dict] = []

    async def _run(self, **kwargs) -> SwapResult:
        self.calls.append(kwargs)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.result

    async def buy(self, **kwargs) -> SwapResult:
        return await self._run(side="buy", **kwargs)

    async def sell_percentage(self, **kwargs) -> SwapResult:
        return await self._run(side="sell", **kwargs)


def _snapshot(price="0.0052", market_cap="5200000") -> PriceSnapshot:
    return PriceSnapshot(price_usd=Decimal(price), market_cap_usd=Decimal(market_cap))


@pytest.fixture
def unlocked(custody):
    custody.setup_password(USER, PASSWORD)
    custody.import_wallet(USER, Chain.BASE, EVM_SECRET, PASSWORD)
    assert custody.unlock(USER, PASSWORD).success
    return custody


@pytest.fixture
def notifier() -> AsyncMock:
    mock = AsyncMock()
    mock.notify.return_value = True
    return mock


def _scheduler(order_store, custody, market_data, executor, notifier=None, **kwargs) -> TriggerScheduler:
    return TriggerScheduler(
        store=order_store,
        custody=custody,
        market_data=market_data,
        executor=executor,
        notifier=notifier,
        config=kwargs.pop("config", FAST),
        **kwargs,
    )


def _sell_on_marketcap(order_store):
    return order_store.create_trigger_order(
        params=make_order_params(
            chain=Chain.BASE,
            token_address=TOKEN,
            token_symbol="DEGEN",
            side="sell",
            trigger_type="marketcap",
            trigger_condition="above",
            trigger_value=Decimal("5000000"),
            amount="50",
            amount_type="percentage",
        )
    )


def _buy_on_price(order_store, **overrides):
    params = {
        "chain": Chain.BASE,
        "token_address": TOKEN,
        "trigger_type": "price",
        "trigger_condition": "below",
        "trigger_value": Decimal("0.006"),
        "amount": "0.01",
    }
    params.update(overrides)
    return order_store.create_trigger_order(params=make_order_params(**params))


# ============================================================================
# Execution
# ============================================================================


@pytest.mark.asyncio
async def test_marketcap_trigger_executes_once_and_notifies(order_store, unlocked, notifier):
    order = _sell_on_marketcap(order_store)
    executor = PaperSwapExecutor()
    executor.set_token_balance(Chain.BASE, TOKEN, Decimal("1000"))
    scheduler = _scheduler(order_store, unlocked, FakeMarketData({TOKEN: _snapshot()}), executor, notifier)

    report = await scheduler.run_once()

    assert report.executed == [order.id]
    stored = order_store.get_trigger_order(order_id=order.id)
    assert stored.status == "executed"
    assert stored.execution_price == Decimal("0.0052")
    assert stored.tx_hash == executor.fills[0].tx_ref
    assert stored.triggered_at is not None and stored.executed_at is not None
    assert executor.token_balance(Chain.BASE, TOKEN) == Decimal("500")

    notifier.notify.assert_awaited_once()
    chat_id, message = notifier.notify.await_args.args
    assert chat_id == 4200
    assert "LIMIT ORDER EXECUTED" in message

    # A second cycle finds nothing left to do.
    again = await scheduler.run_once()
    assert again.tokens_checked == 0
    assert notifier.notify.await_count == 1


@pytest.mark.asyncio
async def test_buy_passes_amount_key_and_slippage(order_store, unlocked):
    order = _buy_on_price(order_store, slippage_bps=300)
    executor = RecordingExecutor()
    scheduler = _scheduler(order_store, unlocked, FakeMarketData({TOKEN: _snapshot()}), executor)

    await scheduler.run_once()

    assert executor.calls == [
        {
            "side": "buy",
            "secret_key": EVM_SECRET,
            "chain": Chain.BASE,
            "token_address": TOKEN,
            "native_amount": Decimal("0.01"),
            "slippage_bps": 300,
        }
    ]
    assert order_store.get_trigger_order(order_id=order.id).tx_hash == "0xtx"


@pytest.mark.asyncio
async def test_condition_not_met_leaves_order_active(order_store, unlocked):
    order = _buy_on_price(order_store, trigger_value=Decimal("0.004"))
    executor = RecordingExecutor()
    scheduler = _scheduler(order_store, unlocked, FakeMarketData({TOKEN: _snapshot()}), executor)

    report = await scheduler.run_once()

    assert report.orders_evaluated == 1
    assert report.executed == [] and report.failed == []
    assert executor.calls == []
    assert order_store.get_trigger_order(order_id=order.id).status == "active"


@pytest.mark.asyncio
async def test_concurrent_cycles_execute_at_most_once(order_store, unlocked):
    order = _buy_on_price(order_store)
    executor = RecordingExecutor(delay=0.01)
    market = FakeMarketData({TOKEN: _snapshot()})
    first = _scheduler(order_store, unlocked, market, executor)
    second = _scheduler(order_store, unlocked, market, executor)

    reports = await asyncio.gather(first.run_once(), second.run_once(), first.run_once())

    assert len(executor.calls) == 1
    assert sum(len(r.executed) for r in reports) == 1
    assert order_store.get_trigger_order(order_id=order.id).status == "executed"


@pytest.mark.asyncio
async def test_tokens_fetched_once_per_cycle(order_store, unlocked):
    _buy_on_price(order_store, trigger_value=Decimal("0.001"))
    _buy_on_price(order_store, token_address=TOKEN.lower(), trigger_value=Decimal("0.001"))
    market = FakeMarketData({TOKEN: _snapshot()})
    scheduler = _scheduler(order_store, unlocked, market, RecordingExecutor())

    report = await scheduler.run_once()

    assert report.tokens_checked == 1
    assert report.orders_evaluated == 2
    assert market.calls == [(Chain.BASE, TOKEN)]


@pytest.mark.asyncio
async def test_price_requests_are_spaced(order_store, unlocked):
    _buy_on_price(order_store, trigger_value=Decimal("0.001"))
    _buy_on_price(order_store, token_address="0xother", trigger_value=Decimal("0.001"))
    sleep = AsyncMock()
    config = SchedulerConfig(price_request_delay_seconds=0.2)
    scheduler = _scheduler(
        order_store, unlocked, FakeMarketData({TOKEN: _snapshot()}), RecordingExecutor(), config=config, sleep=sleep
    )

    await scheduler.run_once()

    sleep.assert_awaited_once_with(0.2)


# ============================================================================
# Failures
# ============================================================================


@pytest.mark.asyncio
async def test_locked_wallet_fails_order(order_store, custody, notifier):
    custody.setup_password(USER, PASSWORD)
    custody.import_wallet(USER, Chain.BASE, EVM_SECRET, PASSWORD)
    order = _buy_on_price(order_store)
    executor = RecordingExecutor()
    scheduler = _scheduler(order_store, custody, FakeMarketData({TOKEN: _snapshot()}), executor, notifier)

    report = await scheduler.run_once()

    assert report.failed == [order.id]
    assert executor.calls == []
    stored = order_store.get_trigger_order(order_id=order.id)
    assert stored.status == "failed"
    assert stored.error == WALLET_LOCKED_ERROR
    notifier.notify.assert_awaited_once()
    assert "LIMIT ORDER FAILED" in notifier.notify.await_args.args[1]


@pytest.mark.asyncio
async def test_swap_failure_result(order_store, unlocked, notifier):
    order = _buy_on_price(order_store)
    executor = RecordingExecutor(SwapResult(success=False, error="Insufficient balance"))
    scheduler = _scheduler(order_store, unlocked, FakeMarketData({TOKEN: _snapshot()}), executor, notifier)

    await scheduler.run_once()

    stored = order_store.get_trigger_order(order_id=order.id)
    assert stored.status == "failed"
    assert stored.error == "Insufficient balance"
    assert scheduler.audit_logger.get_events(event_type="order_failed", order_id=order.id)


@pytest.mark.asyncio
async def test_swap_timeout_fails_order(order_store, unlocked):
    order = _buy_on_price(order_store)
    executor = RecordingExecutor(delay=5)
    config = SchedulerConfig(execution_timeout_seconds=0.01, price_request_delay_seconds=0)
    scheduler = _scheduler(order_store, unlocked, FakeMarketData({TOKEN: _snapshot()}), executor, config=config)

    report = await scheduler.run_once()

    assert report.failed == [order.id]
    assert order_store.get_trigger_order(order_id=order.id).error == "Execution timed out after 0.01s"


@pytest.mark.asyncio
async def test_executor_exception_is_redacted(order_store, unlocked, notifier):
    order = _buy_on_price(order_store)
    executor = RecordingExecutor(error=RuntimeError(f"signer rejected key {EVM_SECRET[2:]}"))
    scheduler = _scheduler(order_store, unlocked, FakeMarketData({TOKEN: _snapshot()}), executor, notifier)

    await scheduler.run_once()

    stored = order_store.get_trigger_order(order_id=order.id)
    assert stored.status == "failed"
    assert EVM_SECRET[2:] not in stored.error
    assert "[REDACTED]" in stored.error
    assert EVM_SECRET[2:] not in notifier.notify.await_args.args[1]


@pytest.mark.asyncio
async def test_price_miss_keeps_order_active(order_store, unlocked):
    order = _buy_on_price(order_store)
    market = FakeMarketData({TOKEN: None})
    scheduler = _scheduler(order_store, unlocked, market, RecordingExecutor())

    report = await scheduler.run_once()

    assert report.prices_fetched == 0
    assert report.orders_evaluated == 0
    assert order_store.get_trigger_order(order_id=order.id).status == "active"
    assert scheduler.audit_logger.get_events(event_type="price_miss")


@pytest.mark.asyncio
async def test_price_error_does_not_block_other_tokens(order_store, unlocked):
    broken = _buy_on_price(order_store, token_address="0xbroken")
    healthy = _buy_on_price(order_store)
    market = FakeMarketData({TOKEN: _snapshot(), "0xbroken": RuntimeError("boom")})
    scheduler = _scheduler(order_store, unlocked, market, RecordingExecutor())

    report = await scheduler.run_once()

    assert report.executed == [healthy.id]
    assert order_store.get_trigger_order(order_id=broken.id).status == "active"


@pytest.mark.asyncio
async def test_zero_price_is_not_a_match(order_store, unlocked):
    order = _buy_on_price(order_store)
    scheduler = _scheduler(order_store, unlocked, FakeMarketData({TOKEN: _snapshot("0", "0")}), RecordingExecutor())

    await scheduler.run_once()

    assert order_store.get_trigger_order(order_id=order.id).status == "active"


@pytest.mark.asyncio
async def test_notification_failure_does_not_change_outcome(order_store, unlocked):
    order = _buy_on_price(order_store)
    notifier = AsyncMock()
    notifier.notify.side_effect = RuntimeError("telegram down")
    scheduler = _scheduler(order_store, unlocked, FakeMarketData({TOKEN: _snapshot()}), RecordingExecutor(), notifier)

    report = await scheduler.run_once()

    assert report.executed == [order.id]
    assert order_store.get_trigger_order(order_id=order.id).status == "executed"
    assert scheduler.audit_logger.get_events(event_type="notification_failed", order_id=order.id)


@pytest.mark.asyncio
async def test_price_timeout_is_a_miss(order_store, unlocked):
    slow = _buy_on_price(order_store, token_address="0xslow")
    healthy = _buy_on_price(order_store)
    market = FakeMarketData({TOKEN: _snapshot(), "0xslow": _snapshot()}, delays={"0xslow": 5})
    config = SchedulerConfig(price_timeout_seconds=0.01, price_request_delay_seconds=0)
    scheduler = _scheduler(order_store, unlocked, market, RecordingExecutor(), config=config)

    report = await scheduler.run_once()

    assert report.prices_fetched == 1
    assert report.executed == [healthy.id]
    stored = order_store.get_trigger_order(order_id=slow.id)
    assert stored.status == "active"
    assert stored.error is None
    misses = scheduler.audit_logger.get_events(event_type="price_miss")
    assert [e.context["token_address"] for e in misses] == ["0xslow"]
    assert "timed out" in misses[0].context["reason"]
    assert scheduler.audit_logger.get_events(event_type="error") == []


@pytest.mark.asyncio
async def test_store_error_after_swap_still_notifies(order_store, unlocked, notifier, monkeypatch):
    stranded = _buy_on_price(order_store)
    other = _buy_on_price(order_store)
    mark_executed = order_store.mark_executed

    def flaky_mark_executed(*, order_id, **kwargs):
        if order_id == stranded.id:
            raise RuntimeError("database is locked")
        return mark_executed(order_id=order_id, **kwargs)

    monkeypatch.setattr(order_store, "mark_executed", flaky_mark_executed)
    executor = RecordingExecutor()
    scheduler = _scheduler(order_store, unlocked, FakeMarketData({TOKEN: _snapshot()}), executor, notifier)

    report = await scheduler.run_once()

    assert sorted(report.executed) == sorted([stranded.id, other.id])
    assert order_store.get_trigger_order(order_id=other.id).status == "executed"
    assert order_store.get_trigger_order(order_id=stranded.id).status == "triggered"
    assert notifier.notify.await_count == 2
    assert all("0xtx" in call.args[1] for call in notifier.notify.await_args_list)
    errors = scheduler.audit_logger.get_events(event_type="error", order_id=stranded.id)
    assert "database is locked" in errors[0].message

    # A claimed order is never swapped again.
    await scheduler.run_once()
    assert len(executor.calls) == 2


@pytest.mark.asyncio
async def test_claim_error_does_not_abort_cycle(order_store, unlocked, monkeypatch):
    broken = _buy_on_price(order_store)
    healthy = _buy_on_price(order_store)
    mark_triggered = order_store.mark_triggered

    def flaky_mark_triggered(*, order_id, at):
        if order_id == broken.id:
            raise RuntimeError("connection reset")
        return mark_triggered(order_id=order_id, at=at)

    monkeypatch.setattr(order_store, "mark_triggered", flaky_mark_triggered)
    scheduler = _scheduler(order_store, unlocked, FakeMarketData({TOKEN: _snapshot()}), RecordingExecutor())

    report = await scheduler.run_once()

    assert report.executed == [healthy.id]
    assert order_store.get_trigger_order(order_id=broken.id).status == "active"
    assert scheduler.audit_logger.get_events(event_type="error", order_id=broken.id)


@pytest.mark.asyncio
async def test_store_calls_run_off_the_event_loop(order_store, unlocked, monkeypatch):
    _buy_on_price(order_store)
    loop_thread = threading.get_ident()
    seen: list[tuple[str, int]] = []
    for name in ("tokens_with_active_orders", "list_active_orders", "mark_triggered", "mark_executed"):

        def recording(*args, _name=name, _real=getattr(order_store, name), **kwargs):
            seen.append((_name, threading.get_ident()))
            return _real(*args, **kwargs)

        monkeypatch.setattr(order_store, name, recording)
    scheduler = _scheduler(order_store, unlocked, FakeMarketData({TOKEN: _snapshot()}), RecordingExecutor())

    await scheduler.run_once()

    assert {name for name, _ in seen} == {
        "tokens_with_active_orders",
        "list_active_orders",
        "mark_triggered",
        "mark_executed",
    }
    assert all(thread != loop_thread for _, thread in seen)


def test_redact():
    secret = "0x" + "ab" * 32

    assert redact(f"bad key {secret}", secret) == "bad key [REDACTED]"
    assert redact(f"bad key {secret[2:]}", secret) == "bad key [REDACTED]"
    assert redact("nothing here", secret) == "nothing here"
    assert redact("nothing here", None) == "nothing here"


# ============================================================================
# Loop
# ============================================================================


@pytest.mark.asyncio
async def test_run_stops_after_max_iterations(order_store, unlocked):
    sleep = AsyncMock()
    config = SchedulerConfig(poll_interval_seconds=12, jitter_seconds=3, max_iterations=3)
    scheduler = _scheduler(
        order_store, unlocked, FakeMarketData(), RecordingExecutor(), config=config, sleep=sleep, rng=random.Random(7)
    )

    await scheduler.run()

    assert sleep.await_count == 2
    for call in sleep.await_args_list:
        assert 12 <= call.args[0] <= 15


@pytest.mark.asyncio
async def test_run_survives_cycle_errors(order_store, unlocked):
    sleep = AsyncMock()
    config = SchedulerConfig(max_iterations=2)
    scheduler = _scheduler(order_store, unlocked, FakeMarketData(), RecordingExecutor(), config=config, sleep=sleep)
    scheduler.run_once = AsyncMock(side_effect=[RuntimeError("db down"), None])

    await scheduler.run()

    assert scheduler.run_once.await_count == 2
    assert scheduler.audit_logger.get_events(event_type="error")


@pytest.mark.asyncio
async def test_start_is_idempotent_and_stop_cancels(order_store, unlocked):
    scheduler = _scheduler(order_store, unlocked, FakeMarketData(), RecordingExecutor())

    task = scheduler.start()
    assert scheduler.start() is task
    assert scheduler.ensure_running() is True
    await asyncio.sleep(0)

    await scheduler.stop()

    assert scheduler.is_running is False
    assert task.done()


def test_ensure_running_without_event_loop(order_store, unlocked):
    scheduler = _scheduler(order_store, unlocked, FakeMarketData(), RecordingExecutor())

    assert scheduler.ensure_running() is False
    assert scheduler.is_running is False
