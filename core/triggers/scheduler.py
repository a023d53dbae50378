"""Trigger scheduler - polling evaluator and execution driver.

Each cycle:
1. Collects the distinct (chain, token) pairs that have active orders
2. Fetches a price snapshot per token (timeout-bounded, misses tolerated)
3. Reloads active orders and evaluates their trigger conditions
4. Executes matching orders concurrently; each execution starts with the
   active -> triggered compare-and-set, so an order runs at most once
5. Records executed/failed and notifies the order's chat exactly once

Store calls run in worker threads (`asyncio.to_thread`) so a slow database
does not stall concurrent executions. A store error while recording an
outcome is logged and audited; the order stays 'triggered' and the chat is
still notified.

Cycles never overlap inside `run()`: the next one is scheduled only after
the previous one finished, at `poll_interval + uniform(0, jitter)` seconds.
The design assumes a single scheduler instance per order store.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Awaitable, Callable, Optional, Protocol, Sequence

from core.config import SchedulerConfig
from core.execution.interfaces import SwapExecutor
from core.persistence.interfaces import TriggerOrderStore
from core.triggers.audit import TriggerAuditLogger
from core.triggers.evaluator import evaluate
from core.triggers.messages import order_executed_message, order_failed_message
from core.types import Chain, PriceSnapshot, SwapResult, TriggerOrder

logger = logging.getLogger(__name__)

WALLET_LOCKED_ERROR = "Wallet locked - unlock your wallet so trigger orders can execute"
REDACTED = "[REDACTED]"


class MarketDataProvider(Protocol):
    async def get_price(self, chain: Chain, token_address: str) -> Optional[PriceSnapshot]:
        """Current price and market cap, or None on a miss."""
        ...


class Notifier(Protocol):
    async def notify(self, chat_id: int, message: str) -> bool:
        """Deliver a chat message. Returns False on failure."""
        ...


class KeyProvider(Protocol):
    def get_private_key(self, user_id: int, chain: Chain) -> Optional[str]:
        """The unlocked secret for (user, chain), or None when locked."""
        ...


@dataclass
class CycleReport:
    """What one poll cycle saw and did."""

    tokens_checked: int = 0
    prices_fetched: int = 0
    orders_evaluated: int = 0
    executed: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)  # lost the triggered CAS


def redact(message: str, secret: Optional[str]) -> str:
    """Remove every occurrence of `secret` (and its un-prefixed hex form) from `message`."""
    if not secret:
        return message
    for needle in {secret, secret.removeprefix("0x")}:
        if len(needle) >= 8:
            message = message.replace(needle, REDACTED)
    return message


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TriggerScheduler:
    """Drives active trigger orders to executed/failed."""

    def __init__(
        self,
        *,
        store: TriggerOrderStore,
        custody: KeyProvider,
        market_data: MarketDataProvider,
        executor: SwapExecutor,
        notifier: Optional[Notifier] = None,
        config: Optional[SchedulerConfig] = None,
        audit_logger: Optional[TriggerAuditLogger] = None,
        clock: Callable[[], datetime] = _utcnow,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store
        self.custody = custody
        self.market_data = market_data
        self.executor = executor
        self.notifier = notifier
        self.config = config or SchedulerConfig()
        self.audit_logger = audit_logger or TriggerAuditLogger()
        self._clock = clock
        self._sleep = sleep
        self._rng = rng or random.Random()

        self._running = False
        self._iteration = 0
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ========== Price fetching ==========

    async def _fetch_price(self, chain: Chain, token_address: str) -> Optional[PriceSnapshot]:
        try:
            snapshot = await asyncio.wait_for(
                self.market_data.get_price(chain, token_address),
                timeout=self.config.price_timeout_seconds,
            )
        except asyncio.TimeoutError:
            reason = f"timed out after {self.config.price_timeout_seconds:g}s"
        except Exception as exc:
            reason = str(exc) or exc.__class__.__name__
        else:
            if snapshot is not None:
                return snapshot
            reason = "no data"

        logger.warning("Price miss for %s on %s: %s", token_address, chain.value, reason)
        self.audit_logger.log_price_miss(chain=chain.value, token_address=token_address, reason=reason)
        return None

    async def _fetch_prices(self, tokens: Sequence[tuple[Chain, str]]) -> dict[tuple[Chain, str], PriceSnapshot]:
        prices: dict[tuple[Chain, str], PriceSnapshot] = {}
        for i, (chain, token_address) in enumerate(tokens):
            if i > 0 and self.config.price_request_delay_seconds > 0:
                # Stay under the provider's rate limit.
                await self._sleep(self.config.price_request_delay_seconds)
            snapshot = await self._fetch_price(chain, token_address)
            if snapshot is not None:
                prices[(chain, token_address.lower())] = snapshot
        return prices

    # ========== Execution ==========

    async def _dispatch_swap(self, order: TriggerOrder, secret_key: str) -> SwapResult:
        if order.side == "buy":
            return await self.executor.buy(
                secret_key=secret_key,
                chain=order.chain,
                token_address=order.token_address,
                native_amount=Decimal(order.amount),
                slippage_bps=order.slippage_bps,
            )
        return await self.executor.sell_percentage(
            secret_key=secret_key,
            chain=order.chain,
            token_address=order.token_address,
            percent=int(order.amount),
            slippage_bps=order.slippage_bps,
        )

    async def _notify(self, order: TriggerOrder, message: str) -> None:
        if self.notifier is None:
            return
        try:
            delivered = await asyncio.wait_for(
                self.notifier.notify(order.chat_id, message),
                timeout=self.config.notification_timeout_seconds,
            )
        except Exception as exc:
            logger.error("Notification for order #%d failed: %s", order.id, exc)
            delivered = False
        if not delivered:
            self.audit_logger.log_notification_failed(order_id=order.id, chat_id=order.chat_id)

    async def _write_outcome(self, order: TriggerOrder, write: Callable[..., bool], **values: object) -> None:
        """Persist a terminal status. Store errors are logged and audited, never raised."""
        try:
            recorded = await asyncio.to_thread(write, order_id=order.id, **values)
        except Exception as exc:
            logger.exception("Could not record the outcome of order #%d; it stays 'triggered'", order.id)
            self.audit_logger.log_error(
                f"Recording the outcome of order #{order.id} failed: {exc}", {"order_id": order.id}
            )
            return
        if not recorded:
            logger.error("Order #%d was not in 'triggered' when recording its outcome", order.id)

    async def _execute(self, order: TriggerOrder, snapshot: PriceSnapshot, observed: Decimal) -> str:
        """Run one triggered order to a terminal state. Returns the outcome."""
        claimed = await asyncio.to_thread(self.store.mark_triggered, order_id=order.id, at=self._clock())
        if not claimed:
            logger.debug("Order #%d already claimed; skipping", order.id)
            return "skipped"

        logger.info("Order #%d triggered! Current: %s, Target: %s", order.id, observed, order.trigger_value)
        self.audit_logger.log_order_triggered(order_id=order.id, observed=str(observed), target=str(order.trigger_value))

        secret = self.custody.get_private_key(order.user_id, order.chain)
        if secret is None:
            error = WALLET_LOCKED_ERROR
        else:
            try:
                result = await asyncio.wait_for(
                    self._dispatch_swap(order, secret),
                    timeout=self.config.execution_timeout_seconds,
                )
            except asyncio.TimeoutError:
                error = f"Execution timed out after {self.config.execution_timeout_seconds:g}s"
            except Exception as exc:
                error = str(exc) or exc.__class__.__name__
            else:
                if result.success:
                    return await self._record_executed(order, result, snapshot.price_usd)
                error = result.error or "Transaction failed"

        error = redact(error, secret)
        logger.error("Failed to execute order #%d: %s", order.id, error)
        await self._write_outcome(order, self.store.mark_failed, error=error, at=self._clock())
        self.audit_logger.log_order_failed(order_id=order.id, error=error)
        await self._notify(order, order_failed_message(order, error=error))
        return "failed"

    async def _record_executed(self, order: TriggerOrder, result: SwapResult, execution_price: Decimal) -> str:
        tx_ref = result.tx_ref or ""
        await self._write_outcome(
            order, self.store.mark_executed, tx_hash=tx_ref, execution_price=execution_price, at=self._clock()
        )
        logger.info("Order #%d executed: %s", order.id, tx_ref)
        self.audit_logger.log_order_executed(order_id=order.id, tx_ref=tx_ref, execution_price=str(execution_price))
        await self._notify(
            order,
            order_executed_message(
                order, tx_ref=tx_ref, execution_price=execution_price, explorer_url=result.explorer_url
            ),
        )
        return "executed"

    # ========== Loop ==========

    async def run_once(self) -> CycleReport:
        """Run one full poll cycle."""
        self._iteration += 1
        tokens = list(await asyncio.to_thread(self.store.tokens_with_active_orders))
        report = CycleReport(tokens_checked=len(tokens))
        if not tokens:
            return report

        prices = await self._fetch_prices(tokens)
        report.prices_fetched = len(prices)

        matched: list[tuple[TriggerOrder, PriceSnapshot, Decimal]] = []
        for order in await asyncio.to_thread(self.store.list_active_orders):
            snapshot = prices.get(order.token_key)
            if snapshot is None:
                continue
            report.orders_evaluated += 1
            observed = evaluate(order, snapshot)
            if observed is not None:
                matched.append((order, snapshot, observed))

        outcomes = await asyncio.gather(*(self._execute(o, s, v) for o, s, v in matched), return_exceptions=True)
        for (order, _, _), outcome in zip(matched, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Execution of order #%d raised: %s", order.id, outcome, exc_info=outcome)
                self.audit_logger.log_error(f"Execution of order #{order.id} raised: {outcome}", {"order_id": order.id})
                continue
            getattr(report, outcome).append(order.id)

        self.audit_logger.log_cycle(
            tokens=report.tokens_checked,
            prices=report.prices_fetched,
            evaluated=report.orders_evaluated,
            triggered=len(report.executed) + len(report.failed),
        )
        logger.debug(
            "Cycle %d: %d token(s), %d price(s), %d executed, %d failed",
            self._iteration,
            report.tokens_checked,
            report.prices_fetched,
            len(report.executed),
            len(report.failed),
        )
        return report

    def next_delay(self) -> float:
        return self.config.poll_interval_seconds + self._rng.uniform(0, self.config.jitter_seconds)

    async def run(self) -> None:
        """Run the polling loop until stopped or `max_iterations` is reached."""
        logger.info(
            "Starting trigger scheduler (poll %.1fs + jitter %.1fs)",
            self.config.poll_interval_seconds,
            self.config.jitter_seconds,
        )
        self._running = True
        iterations = 0
        try:
            while self._running:
                try:
                    await self.run_once()
                except Exception as exc:
                    logger.exception("Error in trigger monitoring cycle")
                    self.audit_logger.log_error(f"Cycle failed: {exc}")

                iterations += 1
                if self.config.max_iterations and iterations >= self.config.max_iterations:
                    logger.info("Reached max iterations (%d)", self.config.max_iterations)
                    break

                await self._sleep(self.next_delay())
        except asyncio.CancelledError:
            logger.info("Trigger scheduler cancelled")
        finally:
            self._running = False
            logger.info("Trigger scheduler stopped")

    def start(self) -> asyncio.Task[None]:
        """Start `run()` as a task on the running loop (idempotent)."""
        if self._task is not None and not self._task.done():
            return self._task
        self._task = asyncio.get_running_loop().create_task(self.run(), name="trigger-scheduler")
        return self._task

    def ensure_running(self) -> bool:
        """Start the loop if an event loop is running. Returns whether it is running."""
        if self.is_running:
            return True
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; trigger scheduler not started")
            return False
        self.start()
        return True

    async def stop(self) -> None:
        """Cancel the loop task and wait for it to finish."""
        self._running = False
        task, self._task = self._task, None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
